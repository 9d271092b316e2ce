from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx

from .model_providers import InlineImagePart, _parse_optional_int, _parse_timeout_seconds

logger = logging.getLogger(__name__)

DEFAULT_MAX_IMAGE_BYTES = 5 * 1024 * 1024
DEFAULT_IMAGE_MIME_TYPE = "image/jpeg"


@dataclass(frozen=True)
class ImageInlineOutcome:
    part: InlineImagePart | None = None
    note: str | None = None


class RemoteImageInliner:
    """Fetch an image by URL and turn it into an inline model part.

    Every failure (transport, status, size, content type) is reported as a
    note for the prompt instead of an exception, so a broken image URL never
    blocks the text analysis.
    """

    def __init__(
        self,
        *,
        max_bytes: int = DEFAULT_MAX_IMAGE_BYTES,
        timeout_seconds: float = 15.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.max_bytes = max_bytes
        self.timeout_seconds = timeout_seconds
        self.http_client = http_client

    @classmethod
    def from_env(cls) -> "RemoteImageInliner":
        max_bytes = _parse_optional_int(os.getenv("IMAGE_MAX_BYTES"))
        if max_bytes is None or max_bytes <= 0:
            max_bytes = DEFAULT_MAX_IMAGE_BYTES
        return cls(
            max_bytes=max_bytes,
            timeout_seconds=_parse_timeout_seconds(
                os.getenv("IMAGE_FETCH_TIMEOUT_SECONDS"),
                fallback=15.0,
            ),
        )

    def inline(self, image_url: str) -> ImageInlineOutcome:
        try:
            scheme = urlparse(image_url).scheme.lower()
            if scheme not in {"http", "https"}:
                return ImageInlineOutcome(note=f"Unsupported image_url scheme: {scheme or '(none)'}")
            if self.http_client is not None:
                return self._fetch(self.http_client, image_url)
            with httpx.Client(timeout=self.timeout_seconds, follow_redirects=True) as client:
                return self._fetch(client, image_url)
        except Exception as exc:
            logger.warning("Image fetch failed for %s: %s", image_url, exc)
            return ImageInlineOutcome(note=f"Exception fetching image_url: {exc}")

    def _fetch(self, client: httpx.Client, image_url: str) -> ImageInlineOutcome:
        with client.stream("GET", image_url, timeout=self.timeout_seconds, follow_redirects=True) as response:
            if not response.is_success:
                return ImageInlineOutcome(
                    note=f"Failed to fetch image_url. status={response.status_code}"
                )

            content_type = response.headers.get("content-type", "")
            declared_size = _parse_content_length(response.headers.get("content-length"))
            if declared_size is not None and declared_size > self.max_bytes:
                return ImageInlineOutcome(note=f"Image too large to fetch ({declared_size} bytes).")
            if not content_type.startswith("image/"):
                return ImageInlineOutcome(note=f"image_url content-type is not image: {content_type}")

            chunks: list[bytes] = []
            received = 0
            for chunk in response.iter_bytes():
                received += len(chunk)
                if received > self.max_bytes:
                    return ImageInlineOutcome(
                        note=f"Image too large to fetch (more than {self.max_bytes} bytes)."
                    )
                chunks.append(chunk)

        mime_type = content_type.split(";", 1)[0].strip() or DEFAULT_IMAGE_MIME_TYPE
        encoded = base64.b64encode(b"".join(chunks)).decode("ascii")
        logger.debug("Inlined image %s (%s, %s bytes)", image_url, mime_type, received)
        return ImageInlineOutcome(part=InlineImagePart(mime_type=mime_type, data=encoded))


def _parse_content_length(raw_value: str | None) -> int | None:
    if raw_value is None:
        return None
    try:
        return int(raw_value.strip())
    except ValueError:
        return None
