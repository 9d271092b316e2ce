from __future__ import annotations

import logging
import os
from typing import Protocol
from urllib.parse import urlparse

import httpx

from .model_providers import _parse_timeout_seconds

logger = logging.getLogger(__name__)

MANAGED_BLOB_HOST_SUFFIX = "blob.vercel-storage.com"
DEFAULT_BLOB_API_URL = "https://blob.vercel-storage.com"
BLOB_API_VERSION = "7"


class BlobStoreError(RuntimeError):
    pass


class BlobStore(Protocol):
    def owns(self, url: str) -> bool: ...

    def delete(self, url: str) -> None: ...


class VercelBlobStore:
    def __init__(
        self,
        *,
        token: str,
        api_url: str = DEFAULT_BLOB_API_URL,
        timeout_seconds: float = 10.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.token = token.strip()
        self.api_url = api_url.strip().rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.http_client = http_client

    @classmethod
    def from_env(cls) -> "VercelBlobStore":
        return cls(
            token=os.getenv("BLOB_READ_WRITE_TOKEN", ""),
            api_url=os.getenv("VERCEL_BLOB_API_URL", DEFAULT_BLOB_API_URL),
            timeout_seconds=_parse_timeout_seconds(
                os.getenv("BLOB_REQUEST_TIMEOUT_SECONDS"),
                fallback=10.0,
            ),
        )

    @property
    def configured(self) -> bool:
        return bool(self.token)

    def owns(self, url: str) -> bool:
        try:
            host = (urlparse(url).hostname or "").lower()
        except ValueError:
            return False
        return host == MANAGED_BLOB_HOST_SUFFIX or host.endswith(f".{MANAGED_BLOB_HOST_SUFFIX}")

    def delete(self, url: str) -> None:
        if not self.token:
            raise BlobStoreError("Blob store is not configured (missing BLOB_READ_WRITE_TOKEN).")

        headers = {
            "Authorization": f"Bearer {self.token}",
            "x-api-version": BLOB_API_VERSION,
            "Content-Type": "application/json",
        }
        try:
            if self.http_client is not None:
                response = self.http_client.post(
                    f"{self.api_url}/delete",
                    headers=headers,
                    json={"urls": [url]},
                    timeout=self.timeout_seconds,
                )
            else:
                response = httpx.post(
                    f"{self.api_url}/delete",
                    headers=headers,
                    json={"urls": [url]},
                    timeout=self.timeout_seconds,
                )
        except httpx.HTTPError as exc:
            raise BlobStoreError(f"Blob delete request failed: {exc}") from exc

        if response.status_code >= 400:
            raise BlobStoreError(f"Blob delete failed ({response.status_code}): {response.text[:300]}")


def discard_transient_upload(blob_store: BlobStore | None, image_url: str) -> bool:
    """Fire-and-forget delete of an uploaded image.

    Returns whether a delete was issued and succeeded. Failures are logged and
    never raised; the analysis result does not depend on them.
    """
    if blob_store is None or not image_url:
        return False

    try:
        if not blob_store.owns(image_url):
            return False
        if getattr(blob_store, "configured", True) is False:
            logger.info("Skipping blob cleanup for %s: blob store is not configured", image_url)
            return False
        blob_store.delete(image_url)
    except Exception:
        logger.warning("Best-effort blob cleanup failed for %s", image_url, exc_info=True)
        return False
    logger.debug("Deleted transient upload %s", image_url)
    return True
