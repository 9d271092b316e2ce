from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import httpx
import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from riskscan.blob_store import BlobStoreError, VercelBlobStore, discard_transient_upload  # noqa: E402

MANAGED_URL = "https://abc123.public.blob.vercel-storage.com/uploads/shot-xyz.png"


def _store_for(handler, *, token: str = "vercel_blob_rw_test") -> VercelBlobStore:
    return VercelBlobStore(
        token=token,
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        (MANAGED_URL, True),
        ("https://blob.vercel-storage.com/file.png", True),
        ("https://images.example.com/blob.vercel-storage.com.png", False),
        ("https://blob.vercel-storage.com.evil.example/file.png", False),
        ("not a url", False),
    ],
)
def test_owns_matches_managed_namespace(url, expected):
    assert VercelBlobStore(token="t").owns(url) is expected


def test_delete_posts_urls_with_bearer_token():
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers.get("authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={})

    _store_for(handler).delete(MANAGED_URL)

    assert captured["url"] == "https://blob.vercel-storage.com/delete"
    assert captured["auth"] == "Bearer vercel_blob_rw_test"
    assert captured["body"] == {"urls": [MANAGED_URL]}


def test_delete_raises_on_error_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, text="forbidden")

    with pytest.raises(BlobStoreError, match="403"):
        _store_for(handler).delete(MANAGED_URL)


class _FailingBlobStore:
    def __init__(self) -> None:
        self.deleted: list[str] = []

    def owns(self, url: str) -> bool:
        return True

    def delete(self, url: str) -> None:
        self.deleted.append(url)
        raise BlobStoreError("storage unavailable")


def test_discard_transient_upload_swallows_and_logs_failures(caplog):
    store = _FailingBlobStore()

    with caplog.at_level(logging.WARNING, logger="riskscan.blob_store"):
        deleted = discard_transient_upload(store, MANAGED_URL)

    assert deleted is False
    assert store.deleted == [MANAGED_URL]
    assert "Best-effort blob cleanup failed" in caplog.text


def test_discard_transient_upload_skips_foreign_and_unconfigured():
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not be called
        raise AssertionError("unexpected delete")

    assert discard_transient_upload(_store_for(handler), "https://images.example.com/a.png") is False
    assert discard_transient_upload(_store_for(handler, token=""), MANAGED_URL) is False
    assert discard_transient_upload(None, MANAGED_URL) is False


def test_discard_transient_upload_deletes_managed_url():
    deleted: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        deleted.extend(json.loads(request.content)["urls"])
        return httpx.Response(200, json={})

    assert discard_transient_upload(_store_for(handler), MANAGED_URL) is True
    assert deleted == [MANAGED_URL]


def test_discard_transient_upload_tolerates_malformed_url():
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not be called
        raise AssertionError("unexpected delete")

    assert VercelBlobStore(token="t").owns("http://[bad") is False
    assert discard_transient_upload(_store_for(handler), "http://[bad") is False


class _RaisingOwnershipStore:
    def owns(self, url: str) -> bool:
        raise ValueError("Invalid IPv6 URL")

    def delete(self, url: str) -> None:  # pragma: no cover - must not be called
        raise AssertionError("unexpected delete")


def test_discard_transient_upload_swallows_ownership_errors(caplog):
    with caplog.at_level(logging.WARNING, logger="riskscan.blob_store"):
        deleted = discard_transient_upload(_RaisingOwnershipStore(), "http://[bad")

    assert deleted is False
    assert "Best-effort blob cleanup failed" in caplog.text
