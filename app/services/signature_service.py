import hashlib
import hmac
from typing import Optional

from app.config import settings
from app.logging_config import get_logger
from app.models import Channel

logger = get_logger("signature_service")

SIGNATURE_HEADER = "X-Hub-Signature-256"
SIGNATURE_PREFIX = "sha256="


def compute_signature(payload_body: bytes, app_secret: str) -> str:
    digest = hmac.new(app_secret.encode("utf-8"), payload_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_webhook_signature(payload_body: bytes, signature_header: Optional[str], app_secret: Optional[str]) -> bool:
    """Verify a Meta ``X-Hub-Signature-256`` header against the raw request body.

    Missing secret or missing header never verifies.
    """
    if not app_secret or not signature_header:
        return False
    if not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    expected = compute_signature(payload_body, app_secret)
    return hmac.compare_digest(expected, signature_header.strip())


def resolve_app_secret(*channels: Optional[Channel]) -> Optional[str]:
    """App secret from the first channel config that has one, else the global setting."""
    for channel in channels:
        if channel is None:
            continue
        secret = (channel.config or {}).get("app_secret")
        if secret:
            return secret
    return settings.meta_app_secret


def is_request_authentic(payload_body: bytes, signature_header: Optional[str], app_secret: Optional[str]) -> bool:
    """Apply the ingestion policy: verify when a secret exists, fail closed when one is required."""
    if app_secret:
        return verify_webhook_signature(payload_body, signature_header, app_secret)
    if settings.webhook_signature_required:
        logger.error("Webhook app secret not configured, rejecting request")
        return False
    logger.warning(
        "Accepting unsigned webhook: no app secret and signatures not required",
        extra={"context": {"has_signature": bool(signature_header)}},
    )
    return True
