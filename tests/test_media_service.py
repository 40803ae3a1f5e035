import asyncio
import hashlib
import time
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from app.services.media_service import (
    MediaRelocationError,
    build_signed_media_url,
    relocate_media,
    resolve_storage_path,
    verify_signed_media_path,
)
from app.services.normalizer import MediaReference

IMAGE_BYTES = b"\xff\xd8\xff\xe0fake-jpeg-bytes"


def _mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _query(url: str) -> dict:
    parsed = urlparse(url)
    return {key: values[0] for key, values in parse_qs(parsed.query).items()} | {"path": parsed.path}


class TestSignedUrls:
    def test_build_and_verify(self):
        url = build_signed_media_url("messenger/2026/01/abc.jpg", ttl_seconds=3600)
        assert url.startswith("https://api.example.com/media/messenger/2026/01/abc.jpg?")
        query = _query(url)
        assert verify_signed_media_path("messenger/2026/01/abc.jpg", int(query["expires"]), query["sig"]) is True

    def test_wrong_path_rejected(self):
        query = _query(build_signed_media_url("a.jpg", ttl_seconds=3600))
        assert verify_signed_media_path("b.jpg", int(query["expires"]), query["sig"]) is False

    def test_expired_rejected(self):
        query = _query(build_signed_media_url("a.jpg", ttl_seconds=3600))
        assert verify_signed_media_path("a.jpg", int(time.time()) - 10, query["sig"]) is False

    def test_non_positive_ttl_never_expires(self):
        query = _query(build_signed_media_url("a.jpg", ttl_seconds=0))
        assert query["expires"] == "0"
        assert verify_signed_media_path("a.jpg", 0, query["sig"]) is True

    def test_no_secret(self, test_settings, monkeypatch):
        monkeypatch.setattr(test_settings, "media_signing_secret", None)
        assert build_signed_media_url("a.jpg") is None
        assert verify_signed_media_path("a.jpg", 0, "sig") is False

    def test_storage_path_cannot_escape(self):
        assert resolve_storage_path("../../etc/passwd") is None
        assert resolve_storage_path("whatsapp/2026/01/a.jpg") is not None


class TestRelocateMedia:
    def test_direct_url(self, test_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == "https://cdn.example.com/photo.jpg"
            return httpx.Response(200, content=IMAGE_BYTES, headers={"content-type": "image/jpeg"})

        reference = MediaReference(provider_type="image", media_type="image", url="https://cdn.example.com/photo.jpg")
        info = asyncio.run(relocate_media(reference, provider="messenger", client=_mock_client(handler)))

        digest = hashlib.sha256(IMAGE_BYTES).hexdigest()
        assert info.size == len(IMAGE_BYTES)
        assert info.sha256 == digest
        assert info.mime == "image/jpeg"
        assert info.path.startswith("messenger/")
        assert info.path.endswith(f"{digest}.jpg")
        assert (Path(test_settings.media_storage_dir) / info.path).read_bytes() == IMAGE_BYTES
        assert info.url.startswith("https://api.example.com/media/messenger/")

    def test_whatsapp_media_id_lookup(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.host, request.headers.get("authorization")))
            if request.url.host == "graph.facebook.com":
                return httpx.Response(
                    200, json={"url": "https://lookaside.example.com/media/1", "mime_type": "audio/ogg", "file_size": 4}
                )
            return httpx.Response(200, content=b"OggS", headers={"content-type": "audio/ogg"})

        reference = MediaReference(provider_type="audio", media_type="audio", media_id="MEDIA_1")
        info = asyncio.run(relocate_media(reference, provider="whatsapp", access_token="wa-token", client=_mock_client(handler)))

        assert info.mime == "audio/ogg"
        assert info.size == 4
        assert seen == [
            ("graph.facebook.com", "Bearer wa-token"),
            ("lookaside.example.com", "Bearer wa-token"),
        ]

    def test_download_failure_raises_with_source(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        reference = MediaReference(provider_type="image", media_type="image", url="https://cdn.example.com/gone.jpg")
        with pytest.raises(MediaRelocationError) as exc_info:
            asyncio.run(relocate_media(reference, provider="instagram", client=_mock_client(handler)))
        assert exc_info.value.reason.startswith("download_failed")
        assert exc_info.value.source_url == "https://cdn.example.com/gone.jpg"

    def test_too_large(self, test_settings, monkeypatch):
        monkeypatch.setattr(test_settings, "media_max_bytes", 4)

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=IMAGE_BYTES)

        reference = MediaReference(provider_type="image", media_type="image", url="https://cdn.example.com/big.jpg")
        with pytest.raises(MediaRelocationError) as exc_info:
            asyncio.run(relocate_media(reference, provider="messenger", client=_mock_client(handler)))
        assert exc_info.value.reason == "too_large"
        leftovers = [p for p in Path(test_settings.media_storage_dir).rglob("*") if p.is_file()]
        assert leftovers == []

    def test_whatsapp_without_token(self):
        reference = MediaReference(provider_type="image", media_type="image", media_id="MEDIA_1")
        with pytest.raises(MediaRelocationError) as exc_info:
            asyncio.run(relocate_media(reference, provider="whatsapp", client=_mock_client(lambda r: httpx.Response(500))))
        assert exc_info.value.reason == "missing_access_token"

    def test_blocked_scheme(self):
        reference = MediaReference(provider_type="file", media_type="file", url="file:///etc/passwd")
        with pytest.raises(MediaRelocationError) as exc_info:
            asyncio.run(relocate_media(reference, provider="messenger", client=_mock_client(lambda r: httpx.Response(200))))
        assert exc_info.value.reason == "blocked_url"

    def test_requires_signing_secret(self, test_settings, monkeypatch):
        monkeypatch.setattr(test_settings, "media_signing_secret", None)
        reference = MediaReference(provider_type="image", media_type="image", url="https://cdn.example.com/x.jpg")
        with pytest.raises(MediaRelocationError) as exc_info:
            asyncio.run(relocate_media(reference, provider="messenger"))
        assert exc_info.value.reason == "media_signing_secret_not_configured"

    def test_unwritable_storage_raises_relocation_error(self, test_settings, monkeypatch, tmp_path):
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("occupied")
        monkeypatch.setattr(test_settings, "media_storage_dir", str(blocker / "media"))

        reference = MediaReference(provider_type="image", media_type="image", url="https://cdn.example.com/x.jpg")
        with pytest.raises(MediaRelocationError) as exc_info:
            asyncio.run(
                relocate_media(reference, provider="messenger", client=_mock_client(lambda r: httpx.Response(200, content=IMAGE_BYTES)))
            )
        assert exc_info.value.reason.startswith("storage_failed:")
        assert exc_info.value.source_url == "https://cdn.example.com/x.jpg"
