"""Relocate provider-hosted media into local storage behind signed URLs."""

import hashlib
import hmac
import mimetypes
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlparse
from uuid import uuid4

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.normalizer import MediaReference

logger = get_logger("media_service")


@dataclass
class MediaInfo:
    url: str
    mime: Optional[str]
    size: int
    path: str
    sha256: str
    name: Optional[str] = None


class MediaRelocationError(Exception):
    def __init__(self, reason: str, source_url: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.source_url = source_url


def _normalize_media_path(path: str) -> str:
    normalized = (path or "").strip().lstrip("/")
    return normalized.replace("\\", "/")


def _sign_media_path(path: str, expires: int, secret: str) -> str:
    payload = f"{path}:{expires}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def build_signed_media_url(relative_path: str, *, ttl_seconds: Optional[int] = None) -> Optional[str]:
    """Build signed public URL for a file under ``media_storage_dir``.

    A non-positive TTL produces a non-expiring link (``expires=0``).
    """
    secret = settings.media_signing_secret
    if not secret:
        logger.error("MEDIA_SIGNING_SECRET not configured")
        return None
    ttl = ttl_seconds if ttl_seconds is not None else settings.media_url_ttl_seconds
    expires = int(time.time()) + max(int(ttl), 60) if ttl and ttl > 0 else 0
    normalized_path = _normalize_media_path(relative_path)
    signature = _sign_media_path(normalized_path, expires, secret)
    quoted_path = quote(normalized_path, safe="/")
    return f"{settings.media_public_base_url.rstrip('/')}/media/{quoted_path}?expires={expires}&sig={signature}"


def verify_signed_media_path(relative_path: str, expires: int, signature: str) -> bool:
    secret = settings.media_signing_secret
    if not secret:
        logger.error("MEDIA_SIGNING_SECRET not configured")
        return False
    if not signature:
        return False
    if expires and expires < int(time.time()):
        return False
    normalized_path = _normalize_media_path(relative_path)
    expected = _sign_media_path(normalized_path, expires, secret)
    return hmac.compare_digest(expected, signature)


def resolve_storage_path(relative_path: str) -> Optional[Path]:
    """Absolute path inside the storage dir, or None when the path escapes it."""
    base_dir = Path(settings.media_storage_dir).resolve()
    target_path = (base_dir / _normalize_media_path(relative_path)).resolve()
    if base_dir not in target_path.parents:
        return None
    return target_path


def _guess_extension(mime: Optional[str], file_name: Optional[str]) -> str:
    if file_name:
        suffix = Path(file_name).suffix
        if suffix:
            return suffix
    if mime:
        ext = mimetypes.guess_extension(mime.split(";")[0].strip())
        if ext:
            return ext
    return ""


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Failed to remove partial media file", extra={"context": {"path": str(path), "error": str(exc)}})


def _is_allowed_media_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


async def _lookup_whatsapp_media(client: httpx.AsyncClient, media_id: str, access_token: str) -> dict:
    url = f"{settings.graph_api_base_url.rstrip('/')}/{settings.graph_api_version}/{media_id}"
    try:
        response = await client.get(url, headers={"Authorization": f"Bearer {access_token}"})
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise MediaRelocationError(f"media_lookup_failed:{exc}", media_id) from exc
    if not isinstance(data, dict) or not data.get("url"):
        raise MediaRelocationError("media_lookup_missing_url", media_id)
    return data


async def _download_to_storage(
    client: httpx.AsyncClient,
    url: str,
    *,
    provider: str,
    headers: Optional[dict] = None,
    mime_hint: Optional[str] = None,
    file_name: Optional[str] = None,
) -> tuple[str, int, str, Optional[str]]:
    """Stream ``url`` into storage; returns (relative_path, size, sha256, mime)."""
    if not _is_allowed_media_url(url):
        raise MediaRelocationError("blocked_url", url)

    storage_dir = Path(settings.media_storage_dir)
    now = datetime.now(timezone.utc)
    relative_dir = Path(provider) / f"{now:%Y}" / f"{now:%m}"
    target_dir = storage_dir / relative_dir
    partial_path = target_dir / f".{uuid4().hex}.part"

    max_bytes = settings.media_max_bytes
    digest = hashlib.sha256()
    size_bytes = 0
    mime = mime_hint
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        async with client.stream("GET", url, headers=headers or {}) as response:
            response.raise_for_status()
            content_type = response.headers.get("content-type")
            if content_type:
                mime = content_type.split(";")[0].strip()
            with partial_path.open("wb") as handle:
                async for chunk in response.aiter_bytes():
                    if not chunk:
                        continue
                    size_bytes += len(chunk)
                    if size_bytes > max_bytes:
                        raise MediaRelocationError("too_large", url)
                    digest.update(chunk)
                    handle.write(chunk)
    except MediaRelocationError:
        _discard(partial_path)
        raise
    except httpx.HTTPError as exc:
        _discard(partial_path)
        raise MediaRelocationError(f"download_failed:{exc}", url) from exc
    except OSError as exc:
        _discard(partial_path)
        raise MediaRelocationError(f"storage_failed:{exc}", url) from exc

    sha256 = digest.hexdigest()
    final_name = f"{sha256}{_guess_extension(mime, file_name)}"
    try:
        partial_path.replace(target_dir / final_name)
    except OSError as exc:
        _discard(partial_path)
        raise MediaRelocationError(f"storage_failed:{exc}", url) from exc
    return (relative_dir / final_name).as_posix(), size_bytes, sha256, mime


async def relocate_media(
    reference: MediaReference,
    *,
    provider: str,
    access_token: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> MediaInfo:
    """Copy provider media into our storage and return a stable signed URL.

    WhatsApp references carry a media id that must be resolved through the Graph API
    (authenticated download); Messenger/Instagram references carry a direct CDN URL.
    Raises ``MediaRelocationError`` on any failure.
    """
    if not settings.media_signing_secret:
        raise MediaRelocationError("media_signing_secret_not_configured", reference.source)

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=settings.http_timeout_seconds, follow_redirects=True)
    try:
        mime_hint = reference.mime_hint
        size_hint = None
        headers = None
        url = reference.url
        if not url:
            if not reference.media_id:
                raise MediaRelocationError("missing_media_reference")
            if not access_token:
                raise MediaRelocationError("missing_access_token", reference.media_id)
            info = await _lookup_whatsapp_media(client, reference.media_id, access_token)
            url = info["url"]
            mime_hint = info.get("mime_type") or mime_hint
            size_hint = info.get("file_size")
            headers = {"Authorization": f"Bearer {access_token}"}

        try:
            relative_path, size, sha256, mime = await _download_to_storage(
                client,
                url,
                provider=provider,
                headers=headers,
                mime_hint=mime_hint,
                file_name=reference.filename,
            )
        except MediaRelocationError as exc:
            # Report the provider URL, not the internal reference
            exc.source_url = exc.source_url or url
            raise
    finally:
        if owns_client:
            await client.aclose()

    public_url = build_signed_media_url(relative_path)
    if not public_url:
        raise MediaRelocationError("signing_failed", url)

    if size_hint and str(size_hint) != str(size):
        logger.warning(
            "Media size differs from provider metadata",
            extra={"context": {"provider": provider, "expected": size_hint, "actual": size}},
        )

    logger.info(
        "Media relocated",
        extra={"context": {"provider": provider, "path": relative_path, "size_bytes": size, "mime": mime}},
    )
    return MediaInfo(url=public_url, mime=mime, size=size, path=relative_path, sha256=sha256, name=reference.filename)
