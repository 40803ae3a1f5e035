"""Webhook ingestion: normalized events -> contacts, conversations and messages.

Per inbound message the order is fixed: resolve contact, resolve conversation,
evaluate the auto-reply policy, relocate media, persist, then queue the AI job.
The caller commits and only then hands the queued jobs to the dispatcher.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from app.logging_config import bind_context, get_logger
from app.models import Channel, Message
from app.schemas.meta import MetaWebhook
from app.schemas.whatsapp import WhatsAppWebhook
from app.services import contact_service
from app.services.auto_reply_service import AutoReplyJob, apply_plan, plan_auto_reply
from app.services.channel_service import get_access_token
from app.services.conversation_service import find_or_create, update_last_message
from app.services.media_service import MediaRelocationError, relocate_media
from app.services.message_service import (
    external_message_exists,
    mark_read_by_watermark,
    save_message,
    update_status_by_external_id,
)
from app.services.normalizer import (
    DeliveryReceipt,
    NormalizedMessage,
    ReadReceipt,
    StatusUpdate,
    apply_media,
    apply_media_failure,
    normalize_messaging_event,
    normalize_whatsapp_message,
    normalize_whatsapp_status,
)

logger = get_logger("intake")


@dataclass
class IntakeResult:
    messages: list[Message] = field(default_factory=list)
    jobs: list[AutoReplyJob] = field(default_factory=list)
    receipts: int = 0
    skipped: int = 0

    def as_context(self) -> dict:
        return {
            "messages": len(self.messages),
            "jobs": len(self.jobs),
            "receipts": self.receipts,
            "skipped": self.skipped,
        }


async def _relocate(
    normalized: NormalizedMessage,
    access_token: Optional[str],
    media_client: Optional[httpx.AsyncClient],
) -> None:
    try:
        media = await relocate_media(
            normalized.media,
            provider=normalized.provider,
            access_token=access_token,
            client=media_client,
        )
    except MediaRelocationError as exc:
        logger.error(
            "Media relocation failed",
            extra={
                "context": {
                    "provider": normalized.provider,
                    "external_id": normalized.external_id,
                    "media_type": normalized.type,
                    "error": exc.reason,
                }
            },
        )
        apply_media_failure(normalized, exc.reason, exc.source_url)
        return
    except Exception as exc:
        logger.exception(
            "Unexpected media relocation error",
            extra={
                "context": {
                    "provider": normalized.provider,
                    "external_id": normalized.external_id,
                    "media_type": normalized.type,
                }
            },
        )
        apply_media_failure(normalized, f"relocation_error:{exc}", normalized.media.source)
        return
    apply_media(normalized, media.url, media.mime, media.size, media.name)


async def ingest_message(
    db: Session,
    normalized: NormalizedMessage,
    *,
    channel: Optional[Channel],
    media_client: Optional[httpx.AsyncClient] = None,
) -> tuple[Optional[Message], Optional[AutoReplyJob]]:
    """Persist one inbound message. Returns (None, None) for a duplicate delivery."""
    log = bind_context(logger, provider=normalized.provider, external_id=normalized.external_id)
    if external_message_exists(db, normalized.provider, normalized.external_id):
        log.info("Duplicate inbound message skipped")
        return None, None

    access_token = get_access_token(channel)
    profile = None
    if access_token and contact_service.get_by_external_id(db, normalized.provider, normalized.sender_id) is None:
        profile = await asyncio.to_thread(
            contact_service.fetch_profile, normalized.provider, normalized.sender_id, access_token
        )
    contact = contact_service.find_or_create_by_external_id(
        db,
        normalized.provider,
        normalized.sender_id,
        display_name_hint=normalized.contact_name,
        profile=profile,
    )
    conversation = find_or_create(db, contact.id, normalized.provider, channel.id if channel else None)

    plan = plan_auto_reply(db, channel, conversation, normalized.body, normalized.is_plain_text)

    if normalized.media is not None:
        await _relocate(normalized, access_token, media_client)

    message = save_message(
        db,
        conversation.id,
        body=normalized.body,
        message_type=normalized.type,
        sender_type="user",
        sender_id=normalized.sender_id,
        provider=normalized.provider,
        external_id=normalized.external_id,
        media_url=normalized.media_url,
        media_mime=normalized.media_mime,
        media_size=normalized.media_size,
        media_name=normalized.media_name,
        message_metadata=normalized.metadata,
    )
    update_last_message(db, conversation.id)
    job = apply_plan(db, plan, channel, conversation, normalized.body)
    log.info(
        "Inbound message stored",
        context={"message_id": str(message.id), "conversation_id": str(conversation.id), "type": message.type},
    )
    return message, job


def apply_receipt(db: Session, event) -> int:
    """Apply a receipt-style event. Returns the number of messages touched."""
    if isinstance(event, DeliveryReceipt):
        touched = 0
        for external_id in event.external_ids:
            if update_status_by_external_id(db, event.provider, external_id, "delivered") is not None:
                touched += 1
        return touched
    if isinstance(event, ReadReceipt):
        if event.watermark is None:
            return 0
        return mark_read_by_watermark(db, event.provider, event.sender_id, event.watermark)
    if isinstance(event, StatusUpdate):
        if event.status == "failed":
            logger.warning(
                "Provider reported failed delivery",
                extra={"context": {"provider": event.provider, "external_id": event.external_id, "errors": event.errors}},
            )
        return 1 if update_status_by_external_id(db, event.provider, event.external_id, event.status) else 0
    return 0


async def process_whatsapp_payload(
    db: Session,
    payload: WhatsAppWebhook,
    *,
    channel: Optional[Channel],
    media_client: Optional[httpx.AsyncClient] = None,
) -> IntakeResult:
    result = IntakeResult()
    for entry in payload.entry:
        for change in entry.changes:
            value = change.value
            for status in value.statuses:
                result.receipts += apply_receipt(db, normalize_whatsapp_status(status))
            for wa_message in value.messages:
                normalized = normalize_whatsapp_message(
                    wa_message,
                    value.contact_name(wa_message.from_),
                    envelope=value.envelope(wa_message),
                )
                message, job = await ingest_message(db, normalized, channel=channel, media_client=media_client)
                if message is None:
                    result.skipped += 1
                    continue
                result.messages.append(message)
                if job is not None:
                    result.jobs.append(job)
    return result


def _own_account_ids(channel: Optional[Channel]) -> set:
    if channel is None:
        return set()
    config = channel.config or {}
    return {value for value in (config.get("page_id"), config.get("account_id")) if value}


async def process_messaging_payload(
    db: Session,
    payload: MetaWebhook,
    *,
    provider: str,
    channel: Optional[Channel],
    media_client: Optional[httpx.AsyncClient] = None,
) -> IntakeResult:
    """Messenger/Instagram ``entry[].messaging[]`` events."""
    result = IntakeResult()
    own_ids = _own_account_ids(channel)
    for entry in payload.entry:
        if entry.changes and not entry.messaging:
            logger.info(
                "Ignoring change notifications",
                extra={"context": {"provider": provider, "fields": [change.get("field") for change in entry.changes]}},
            )
        for event in entry.messaging:
            if event.sender.id in own_ids and event.message is not None:
                result.skipped += 1
                continue
            normalized = normalize_messaging_event(provider, event)
            if normalized is None:
                result.skipped += 1
                continue
            if not isinstance(normalized, NormalizedMessage):
                result.receipts += apply_receipt(db, normalized)
                continue
            message, job = await ingest_message(db, normalized, channel=channel, media_client=media_client)
            if message is None:
                result.skipped += 1
                continue
            result.messages.append(message)
            if job is not None:
                result.jobs.append(job)
    return result
