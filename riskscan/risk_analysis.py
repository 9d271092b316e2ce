from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .analysis_profiles import AnalysisProfile, get_profile
from .blob_store import BlobStore, VercelBlobStore, discard_transient_upload
from .image_inliner import RemoteImageInliner
from .model_providers import GeminiModelClient, ModelClient, ModelClientError, ModelPart, TextPart

logger = logging.getLogger(__name__)

VALID_RISK_LEVELS = ("low", "medium", "high")
DEFAULT_RISK_LEVEL = "medium"
IMAGE_NOTE_PREFIX = "IMAGE_NOTE:"
METHOD_NOT_ALLOWED_MESSAGE = "Method not allowed. Use POST."
NON_JSON_WARNING = "Model did not return valid JSON"
REQUEST_TEXT_FIELDS = ("messages_text", "user_context", "link_url", "extra_notes")


class AnalysisError(RuntimeError):
    pass


class AnalysisMethodError(AnalysisError):
    allowed_methods = ("POST",)


class AnalysisProfileNotFoundError(AnalysisError):
    pass


class AnalysisConfigurationError(AnalysisError):
    pass


class AnalysisExecutionError(AnalysisError):
    pass


class AnalysisRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    messages_text: str = ""
    user_context: str = ""
    link_url: str = ""
    extra_notes: str = ""
    image_url: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_to_text(cls, value: Any) -> str:
        if not value:
            return ""
        if isinstance(value, str):
            return value
        return str(value)

    @field_validator("image_url")
    @classmethod
    def _strip_image_url(cls, value: str) -> str:
        return value.strip()


class AnalysisResult(BaseModel):
    summary: str = ""
    risk_level: Literal["low", "medium", "high"] = DEFAULT_RISK_LEVEL
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    red_flags: list[Any] = Field(default_factory=list)
    inconsistencies: list[Any] = Field(default_factory=list)
    next_steps: list[Any] = Field(default_factory=list)
    safety_notes: list[Any] | None = None

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


@dataclass
class AnalysisOutcome:
    result: AnalysisResult | None
    raw_text: str
    profile_id: str

    @property
    def structured(self) -> bool:
        return self.result is not None

    def to_response(self) -> dict[str, Any]:
        if self.result is None:
            return {"ok": True, "warning": NON_JSON_WARNING, "raw": self.raw_text}
        return self.result.to_response()


def ensure_post_method(method: str) -> None:
    if method.upper() != "POST":
        raise AnalysisMethodError(METHOD_NOT_ALLOWED_MESSAGE)


def parse_analysis_request(payload: Any) -> AnalysisRequest:
    # Arrays, strings and other non-object bodies carry no fields.
    if not isinstance(payload, dict):
        payload = {}
    return AnalysisRequest.model_validate(payload)


def resolve_profile(profile_id: str | None) -> AnalysisProfile:
    profile = get_profile(profile_id)
    if profile is None:
        raise AnalysisProfileNotFoundError(f"Unknown analysis profile: {profile_id}")
    return profile


def reconcile_analysis_payload(
    payload: dict[str, Any],
    *,
    list_fields: tuple[str, ...],
) -> dict[str, Any]:
    """Coerce a parsed model reply into the response schema.

    Applying this to its own output returns the same mapping.
    """
    summary = payload.get("summary")
    if not isinstance(summary, str):
        summary = _stringify(summary) if summary else ""

    risk_level = payload.get("risk_level")
    if not isinstance(risk_level, str) or risk_level not in VALID_RISK_LEVELS:
        risk_level = DEFAULT_RISK_LEVEL

    normalized: dict[str, Any] = {
        "summary": summary,
        "risk_level": risk_level,
        "confidence": _normalize_confidence(payload.get("confidence")),
    }
    for field_name in list_fields:
        value = payload.get(field_name)
        normalized[field_name] = value if isinstance(value, list) else []
    return normalized


def build_analysis_result(payload: dict[str, Any], *, profile: AnalysisProfile) -> AnalysisResult:
    return AnalysisResult(**reconcile_analysis_payload(payload, list_fields=profile.list_fields))


class RiskAnalysisService:
    def __init__(
        self,
        *,
        model_client: ModelClient | None = None,
        image_inliner: RemoteImageInliner | None = None,
        blob_store: BlobStore | None = None,
    ) -> None:
        self.model_client = model_client or GeminiModelClient.from_env()
        self.image_inliner = image_inliner or RemoteImageInliner.from_env()
        self.blob_store = blob_store or VercelBlobStore.from_env()

    def analyze(self, request: AnalysisRequest, *, profile: AnalysisProfile) -> AnalysisOutcome:
        if not self.model_client.configured:
            api_key_env = getattr(self.model_client, "api_key_env", "model API key")
            raise AnalysisConfigurationError(f"Missing {api_key_env}")

        parts = self.build_model_parts(request, profile=profile)

        try:
            raw_text = self.model_client.generate(parts, model_override=profile.model_name)
        except ModelClientError as exc:
            raise AnalysisExecutionError(str(exc)) from exc
        finally:
            if request.image_url:
                discard_transient_upload(self.blob_store, request.image_url)

        parsed_payload = _parse_model_output_as_json(raw_text)
        if parsed_payload is None:
            logger.warning(
                "Model reply for profile %s was not valid JSON (%s chars)",
                profile.profile_id,
                len(raw_text),
            )
            return AnalysisOutcome(result=None, raw_text=raw_text, profile_id=profile.profile_id)

        return AnalysisOutcome(
            result=build_analysis_result(parsed_payload, profile=profile),
            raw_text=raw_text,
            profile_id=profile.profile_id,
        )

    def build_model_parts(self, request: AnalysisRequest, *, profile: AnalysisProfile) -> list[ModelPart]:
        text_part = TextPart(_build_prompt(request=request, profile=profile))
        parts: list[ModelPart] = [text_part]

        if request.image_url and profile.image_enabled:
            outcome = self.image_inliner.inline(request.image_url)
            if outcome.part is not None:
                parts.append(outcome.part)
            elif outcome.note:
                text_part.append_note(f"{IMAGE_NOTE_PREFIX} {outcome.note}")

        logger.info(
            "Prepared %s analysis request (parts=%s, image_requested=%s)",
            profile.profile_id,
            len(parts),
            bool(request.image_url),
        )
        return parts


def _build_prompt(*, request: AnalysisRequest, profile: AnalysisProfile) -> str:
    schema_lines = [
        '  "summary": string',
        '  "risk_level": "low" | "medium" | "high"',
        '  "confidence": number',
    ]
    schema_lines.extend(f'  "{field_name}": string[]' for field_name in profile.list_fields)

    schema_text = ",\n".join(schema_lines)
    sections = "\n\n".join(
        f"{field_name}:\n{getattr(request, field_name)}" for field_name in REQUEST_TEXT_FIELDS
    )

    prompt = (
        f"{profile.assistant_role}\n\n"
        "Return ONLY a valid JSON object.\n"
        "Do not include markdown, comments, or explanations.\n\n"
        "Schema:\n"
        "{\n"
        f"{schema_text}\n"
        "}\n\n"
        f"{sections}"
    )
    return prompt.strip()


def _parse_model_output_as_json(text: str) -> dict[str, Any] | None:
    if not isinstance(text, str):
        return None

    try:
        payload = json.loads(text)
    except ValueError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            payload = json.loads(text[start : end + 1])
        except ValueError:
            return None

    return payload if isinstance(payload, dict) else None


def _stringify(value: Any) -> str:
    """Render a JSON value as display text: lowercase booleans, comma-joined arrays."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    if isinstance(value, list):
        return ",".join(_stringify(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _normalize_confidence(raw_value: Any) -> float:
    value = _coerce_number(raw_value)
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


def _coerce_number(raw_value: Any) -> float:
    if raw_value is None:
        return 0.0
    if isinstance(raw_value, bool):
        return 1.0 if raw_value else 0.0
    if isinstance(raw_value, (int, float)):
        try:
            return float(raw_value)
        except OverflowError:
            return math.nan
    if isinstance(raw_value, str):
        stripped = raw_value.strip()
        if not stripped:
            return 0.0
        try:
            return float(stripped)
        except ValueError:
            return math.nan
    return math.nan
