from __future__ import annotations

import json
import logging
import os

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from .analysis_profiles import list_profiles
from .blob_store import VercelBlobStore
from .image_inliner import RemoteImageInliner
from .model_providers import GeminiModelClient
from .risk_analysis import (
    AnalysisConfigurationError,
    AnalysisExecutionError,
    AnalysisMethodError,
    AnalysisProfileNotFoundError,
    METHOD_NOT_ALLOWED_MESSAGE,
    RiskAnalysisService,
    ensure_post_method,
    parse_analysis_request,
    resolve_profile,
)

logger = logging.getLogger(__name__)

# Non-POST verbs are routed to the handler so it can answer 405 with a JSON body.
ANALYZE_ROUTE_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]
ANALYZE_PATH_PREFIX = "/api/analyze"
CORS_ALLOW_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",")
    if origin.strip()
]

analysis_service = RiskAnalysisService(
    model_client=GeminiModelClient.from_env(),
    image_inliner=RemoteImageInliner.from_env(),
    blob_store=VercelBlobStore.from_env(),
)

app = FastAPI(title="RiskScan Analysis Service", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS or ["*"],
    allow_methods=["POST", "OPTIONS"],
    allow_headers=["*"],
)


def _error_response(
    status_code: int,
    error: str,
    *,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    content: dict[str, str] = {"error": error}
    if detail is not None:
        content["detail"] = detail
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def _method_not_allowed_response(message: str) -> JSONResponse:
    return _error_response(
        405,
        message,
        headers={"Allow": ", ".join(AnalysisMethodError.allowed_methods)},
    )


async def _read_json_body(request: Request) -> object:
    raw_body = await request.body()
    if not raw_body.strip():
        return {}
    return json.loads(raw_body)


async def _handle_analyze(request: Request, profile_id: str | None) -> JSONResponse:
    try:
        ensure_post_method(request.method)
        profile = resolve_profile(profile_id)
        analysis_request = parse_analysis_request(await _read_json_body(request))
        outcome = await run_in_threadpool(
            analysis_service.analyze,
            analysis_request,
            profile=profile,
        )
    except AnalysisMethodError as exc:
        return _method_not_allowed_response(str(exc))
    except AnalysisProfileNotFoundError as exc:
        return _error_response(404, str(exc))
    except AnalysisConfigurationError as exc:
        logger.error("Analysis is not configured: %s", exc)
        return _error_response(500, str(exc))
    except AnalysisExecutionError as exc:
        logger.error("Model invocation failed: %s", exc)
        return _error_response(500, "Analysis failed", detail=str(exc))
    except Exception as exc:
        logger.exception("Unexpected failure while handling analysis request")
        return _error_response(500, "Analysis failed", detail=str(exc) or exc.__class__.__name__)

    return JSONResponse(status_code=200, content=outcome.to_response())


@app.exception_handler(StarletteHTTPException)
async def analyze_http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Verbs outside ANALYZE_ROUTE_METHODS never reach _handle_analyze.
    if exc.status_code == 405 and request.url.path.startswith(ANALYZE_PATH_PREFIX):
        return _method_not_allowed_response(METHOD_NOT_ALLOWED_MESSAGE)
    return await http_exception_handler(request, exc)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/analyze/profiles")
async def get_analysis_profiles():
    return list_profiles()


@app.api_route("/api/analyze", methods=ANALYZE_ROUTE_METHODS)
async def analyze_report(request: Request):
    return await _handle_analyze(request, profile_id=None)


@app.api_route("/api/analyze/{profile_id}", methods=ANALYZE_ROUTE_METHODS)
async def analyze_report_with_profile(profile_id: str, request: Request):
    return await _handle_analyze(request, profile_id=profile_id)


def run() -> None:
    uvicorn.run(
        "riskscan.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    run()
