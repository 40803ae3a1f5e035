import json
from typing import Iterable, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Channel
from app.services.auto_reply_service import AutoReplyDispatcher
from app.services.channel_service import is_subscription_valid
from app.services.intake_service import IntakeResult
from app.services.signature_service import SIGNATURE_HEADER, is_request_authentic, resolve_app_secret

logger = get_logger("webhook")


def subscription_challenge(
    channels: Iterable[Optional[Channel]],
    mode: Optional[str],
    verify_token: Optional[str],
    challenge: Optional[str],
) -> PlainTextResponse:
    if is_subscription_valid(channels, mode, verify_token):
        logger.info("Webhook subscription verified")
        return PlainTextResponse(challenge or "", status_code=status.HTTP_200_OK)
    logger.warning("Webhook subscription verification failed", extra={"context": {"mode": mode}})
    return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)


async def read_verified_payload(request: Request, channels: Iterable[Optional[Channel]], schema: type[BaseModel]):
    """Verify the signature over the raw body, then validate it against ``schema``."""
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    secrets = [resolve_app_secret(channel) for channel in channels if channel is not None] or [resolve_app_secret()]
    # With no secret anywhere, the single None candidate applies the fail-closed policy
    candidates = list(dict.fromkeys(secret for secret in secrets if secret)) or [None]
    if not any(is_request_authentic(raw_body, signature, secret) for secret in candidates):
        logger.warning(
            "Webhook signature rejected",
            extra={"context": {"path": request.url.path, "has_signature": bool(signature)}},
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")

    try:
        data = json.loads(raw_body)
        return schema.model_validate(data)
    except (ValueError, ValidationError) as exc:
        logger.warning(
            "Malformed webhook payload",
            extra={"context": {"path": request.url.path, "error": str(exc)[:500]}},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed payload")


def get_dispatcher(request: Request) -> AutoReplyDispatcher:
    return request.app.state.auto_reply_dispatcher


def finalize(db: Session, request: Request, result: IntakeResult, provider: str) -> dict:
    """Commit the request's work, then hand queued AI jobs to the dispatcher."""
    db.commit()
    dispatcher = get_dispatcher(request)
    for job in result.jobs:
        dispatcher.dispatch(job)
    logger.info("Webhook processed", extra={"context": {"provider": provider, **result.as_context()}})
    return {"status": "ok"}


def fail(db: Session, provider: str, exc: Exception) -> HTTPException:
    db.rollback()
    logger.error(
        "Webhook processing failed",
        extra={"context": {"provider": provider, "error": str(exc)}},
        exc_info=True,
    )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal Server Error")
