from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Protocol, Union

import httpx

logger = logging.getLogger(__name__)

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


class ModelClientError(RuntimeError):
    pass


@dataclass
class TextPart:
    text: str

    def append_note(self, note: str) -> None:
        self.text += f"\n\n{note}"

    def to_payload(self) -> dict[str, Any]:
        return {"text": self.text}


@dataclass(frozen=True)
class InlineImagePart:
    mime_type: str
    data: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "inlineData": {
                "mimeType": self.mime_type,
                "data": self.data,
            }
        }


ModelPart = Union[TextPart, InlineImagePart]


class ModelClient(Protocol):
    default_model: str

    @property
    def configured(self) -> bool: ...

    def generate(self, parts: list[ModelPart], *, model_override: str | None = None) -> str: ...


class GeminiModelClient:
    label = "Gemini"
    api_key_env = "GEMINI_API_KEY"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        default_model: str,
        timeout_seconds: float,
        temperature: float = 0.2,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.api_key = api_key.strip()
        self.base_url = base_url.strip().rstrip("/")
        self.default_model = default_model.strip()
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.http_client = http_client

    @classmethod
    def from_env(cls) -> "GeminiModelClient":
        timeout_seconds = _parse_timeout_seconds(
            os.getenv("MODEL_REQUEST_TIMEOUT_SECONDS"),
            fallback=90.0,
        )
        temperature = _parse_optional_float(os.getenv("GEMINI_TEMPERATURE"))
        return cls(
            api_key=os.getenv(cls.api_key_env, ""),
            base_url=os.getenv("GEMINI_BASE_URL", DEFAULT_GEMINI_BASE_URL),
            default_model=os.getenv("GEMINI_MODEL", DEFAULT_GEMINI_MODEL) or DEFAULT_GEMINI_MODEL,
            timeout_seconds=timeout_seconds,
            temperature=0.2 if temperature is None else temperature,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def generate(self, parts: list[ModelPart], *, model_override: str | None = None) -> str:
        if not parts:
            raise ModelClientError("At least one part is required for a Gemini request.")
        if not self.api_key:
            raise ModelClientError(f"Gemini client is not configured (missing {self.api_key_env}).")

        model_used = (model_override or self.default_model).strip()
        if not model_used:
            raise ModelClientError("Gemini client is not configured (missing model).")
        if not self.base_url.startswith("http"):
            raise ModelClientError("Invalid Gemini base URL.")

        request_payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [part.to_payload() for part in parts],
                }
            ],
            "generationConfig": {
                "temperature": self.temperature,
                "responseMimeType": "application/json",
            },
        }

        url = f"{self.base_url}/models/{model_used}:generateContent"
        logger.info(
            "Requesting %s generateContent (model=%s, parts=%s)",
            self.label,
            model_used,
            len(parts),
        )
        response = self._post_json(
            url=url,
            headers={
                "x-goog-api-key": self.api_key,
                "Content-Type": "application/json",
            },
            request_payload=request_payload,
        )
        if response.status_code >= 400:
            detail = _extract_error_detail(response)
            raise ModelClientError(f"Gemini request failed ({response.status_code}): {detail}")
        try:
            payload = response.json()
        except Exception as exc:
            raise ModelClientError(f"Gemini response was not valid JSON: {exc}") from exc

        return _extract_gemini_text(payload)

    def _post_json(
        self,
        *,
        url: str,
        headers: dict[str, str],
        request_payload: dict[str, Any],
    ) -> httpx.Response:
        normalized_headers = dict(headers)
        normalized_headers.setdefault("Accept", "application/json")
        normalized_headers.setdefault("User-Agent", "RiskScan/1.0")
        try:
            if self.http_client is not None:
                return self.http_client.post(
                    url,
                    headers=normalized_headers,
                    json=request_payload,
                    timeout=self.timeout_seconds,
                )
            return httpx.post(
                url,
                headers=normalized_headers,
                json=request_payload,
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise ModelClientError(f"HTTP request failed: {exc}") from exc


def _extract_gemini_text(payload: Any) -> str:
    if not isinstance(payload, dict):
        raise ModelClientError("Invalid Gemini response payload.")
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        feedback = payload.get("promptFeedback")
        if isinstance(feedback, dict) and feedback.get("blockReason"):
            raise ModelClientError(f"Gemini blocked the prompt: {feedback['blockReason']}")
        raise ModelClientError("Gemini response does not contain candidates.")

    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    if not isinstance(content, dict):
        return ""
    chunks: list[str] = []
    for item in content.get("parts") or []:
        if isinstance(item, dict) and isinstance(item.get("text"), str):
            chunks.append(item["text"])
    return "".join(chunks)


def _extract_error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
        if isinstance(payload, dict):
            if isinstance(payload.get("error"), dict):
                message = payload["error"].get("message")
                if isinstance(message, str) and message:
                    return message
            detail = payload.get("detail")
            if isinstance(detail, str) and detail:
                return detail
    except Exception:
        pass
    body = response.text.strip()
    return body[:300] if body else "Unknown provider error"


def _parse_timeout_seconds(raw_value: str | None, *, fallback: float) -> float:
    if raw_value is None:
        return fallback
    try:
        parsed = float(raw_value)
    except Exception:
        return fallback
    if parsed <= 0:
        return fallback
    return parsed


def _parse_optional_float(raw_value: str | None) -> float | None:
    if raw_value is None:
        return None
    try:
        parsed = float(raw_value)
    except Exception:
        return None
    return parsed


def _parse_optional_int(raw_value: str | None) -> int | None:
    if raw_value is None:
        return None
    try:
        parsed = int(raw_value)
    except Exception:
        return None
    return parsed
