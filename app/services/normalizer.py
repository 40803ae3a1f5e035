"""Turn provider webhook events into one canonical message shape.

Each provider payload is validated by its pydantic schema first; the functions here
only see typed objects and return one of the ``Normalized*`` variants below.
Media is not downloaded here: a ``MediaReference`` is attached and the intake step
resolves it through the media relocator, then calls ``apply_media`` or
``apply_media_failure``.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union

from app.schemas.meta import Attachment, MessagingEvent
from app.schemas.whatsapp import WhatsAppMessage, WhatsAppStatus

MEDIA_TYPES = ("image", "audio", "video", "file", "document")

MEDIA_TYPE_ALIASES = {
    "image": "image",
    "photo": "image",
    "sticker": "image",
    "audio": "audio",
    "voice": "audio",
    "ptt": "audio",
    "video": "video",
    "ig_reel": "video",
    "reel": "video",
    "document": "document",
    "pdf": "document",
    "file": "file",
}

# Attachment kinds that carry links or structured content, not downloadable media
NON_MEDIA_ATTACHMENTS = {"fallback", "template", "location"}

MEDIA_ERROR_TEMPLATE = "[Error al procesar {media_type}: {reason}] {source}"


@dataclass
class MediaReference:
    provider_type: str
    media_type: str
    media_id: Optional[str] = None
    url: Optional[str] = None
    mime_hint: Optional[str] = None
    filename: Optional[str] = None

    @property
    def source(self) -> str:
        return self.url or self.media_id or ""


@dataclass
class NormalizedMessage:
    provider: str
    sender_id: str
    type: str
    body: Optional[str]
    metadata: dict
    external_id: Optional[str] = None
    recipient_id: Optional[str] = None
    contact_name: Optional[str] = None
    caption: Optional[str] = None
    sent_at: Optional[datetime] = None
    media: Optional[MediaReference] = None
    media_url: Optional[str] = None
    media_mime: Optional[str] = None
    media_size: Optional[int] = None
    media_name: Optional[str] = None

    @property
    def is_plain_text(self) -> bool:
        return self.type == "text" and self.media is None and bool((self.body or "").strip())


@dataclass
class DeliveryReceipt:
    provider: str
    external_ids: list[str] = field(default_factory=list)


@dataclass
class ReadReceipt:
    provider: str
    sender_id: str
    watermark: datetime


@dataclass
class StatusUpdate:
    provider: str
    external_id: str
    status: str
    errors: Optional[list] = None


NormalizedEvent = Union[NormalizedMessage, DeliveryReceipt, ReadReceipt, StatusUpdate]


def normalize_media_type(raw_type: Optional[str], mime: Optional[str] = None) -> str:
    raw = (raw_type or "").strip().lower()
    if raw in MEDIA_TYPE_ALIASES:
        return MEDIA_TYPE_ALIASES[raw]
    if mime:
        if mime.startswith("image/"):
            return "image"
        if mime.startswith("audio/"):
            return "audio"
        if mime.startswith("video/"):
            return "video"
    return "file"


def parse_timestamp(value) -> Optional[datetime]:
    """Provider timestamps arrive as seconds or milliseconds, as int or str."""
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number > 1e12:
        number = number / 1000
    return datetime.fromtimestamp(number, tz=timezone.utc)


def _whatsapp_text_body(message: WhatsAppMessage) -> Optional[str]:
    if message.type == "text":
        return message.text.body if message.text else None
    if message.type == "button" and message.button:
        return message.button.get("text") or message.button.get("payload")
    if message.type == "interactive" and message.interactive:
        reply = message.interactive.get("button_reply") or message.interactive.get("list_reply") or {}
        return reply.get("title") or reply.get("id")
    if message.type == "location" and message.location:
        location = message.location
        label = location.get("name") or location.get("address") or ""
        coordinates = f"{location.get('latitude')},{location.get('longitude')}"
        return f"[location] {label} {coordinates}".replace("  ", " ").strip()
    if message.type == "reaction" and message.reaction:
        return f"[reaction] {message.reaction.get('emoji') or ''}".strip()
    if message.type == "contacts" and message.contacts:
        names = [
            (contact.get("name") or {}).get("formatted_name") or ""
            for contact in message.contacts
        ]
        return f"[contacts] {', '.join(name for name in names if name)}".strip()
    return f"[{message.type}]"


def normalize_whatsapp_message(
    message: WhatsAppMessage,
    contact_name: Optional[str] = None,
    envelope: Optional[dict] = None,
) -> NormalizedMessage:
    """``envelope`` is the change value the message arrived in, kept verbatim under ``raw``."""
    media = message.media
    raw = envelope if envelope is not None else {"messages": [message.raw()]}
    metadata = {
        **message.raw(),
        "raw": raw,
        "has_media": media is not None,
        "media_type": message.type if media is not None else None,
        "whatsapp_from": message.from_,
        "phone_number_id": (raw.get("metadata") or {}).get("phone_number_id"),
    }
    normalized = NormalizedMessage(
        provider="whatsapp",
        sender_id=message.from_,
        external_id=message.id,
        contact_name=contact_name,
        sent_at=parse_timestamp(message.timestamp),
        type="text",
        body=None,
        metadata=metadata,
    )

    if media is None:
        normalized.body = _whatsapp_text_body(message)
        return normalized

    normalized.type = normalize_media_type(message.type, media.mime_type)
    normalized.caption = media.caption
    normalized.body = media.caption
    normalized.media = MediaReference(
        provider_type=message.type,
        media_type=normalized.type,
        media_id=media.id,
        mime_hint=media.mime_type,
        filename=media.filename,
    )
    normalized.media_name = media.filename
    return normalized


def normalize_whatsapp_status(status: WhatsAppStatus) -> StatusUpdate:
    return StatusUpdate(provider="whatsapp", external_id=status.id, status=status.status, errors=status.errors)


def _attachment_reference(attachment: Attachment) -> Optional[MediaReference]:
    if attachment.type in NON_MEDIA_ATTACHMENTS or not attachment.url:
        return None
    return MediaReference(
        provider_type=attachment.type,
        media_type=normalize_media_type(attachment.type),
        url=attachment.url,
    )


def _postback_body(event: MessagingEvent) -> str:
    postback = event.postback
    if postback.title:
        return postback.title
    payload = postback.payload
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, ensure_ascii=False)


def _correlation_key(provider: str) -> str:
    return "instagram_igsid" if provider == "instagram" else "messenger_psid"


def normalize_messaging_event(provider: str, event: MessagingEvent) -> Optional[NormalizedEvent]:
    """Normalize one Messenger/Instagram ``messaging[]`` event.

    Returns ``None`` for events that must not be ingested (echoes, unsupported kinds).
    """
    sender_id = event.sender.id
    recipient_id = event.recipient.id if event.recipient else None
    sent_at = parse_timestamp(event.timestamp)

    if event.message is not None:
        message = event.message
        if message.is_echo:
            return None

        correlation = {
            _correlation_key(provider): sender_id,
            "recipient_id": recipient_id,
        }
        reference = None
        if message.attachments:
            first = message.attachments[0]
            reference = _attachment_reference(first)
            message_type = reference.media_type if reference else normalize_media_type(first.type)
            fallback_label = first.type
        elif message.image is not None and message.image.url:
            reference = MediaReference(provider_type="image", media_type="image", url=message.image.url, mime_hint="image/jpeg")
            message_type = "image"
            fallback_label = "image"
        elif message.video is not None and message.video.url:
            reference = MediaReference(provider_type="video", media_type="video", url=message.video.url, mime_hint="video/mp4")
            message_type = "video"
            fallback_label = "video"
        else:
            message_type = "text"
            fallback_label = None

        body = message.text
        if not body and message_type != "text":
            body = fallback_label or "Media"
        if reference is None and message_type != "text" and message.attachments:
            # Link/template attachments: keep the link as text
            first = message.attachments[0]
            message_type = "text"
            link = first.url or (first.payload.title if first.payload else None)
            body = message.text or link or first.type

        metadata = {**message.raw(), **correlation, "raw": event.raw(), "has_media": reference is not None}
        if message.quick_reply and message.quick_reply.payload:
            metadata["quick_reply_payload"] = message.quick_reply.payload

        return NormalizedMessage(
            provider=provider,
            sender_id=sender_id,
            recipient_id=recipient_id,
            external_id=message.mid,
            sent_at=sent_at,
            type=message_type,
            body=body,
            caption=message.text,
            metadata=metadata,
            media=reference,
        )

    if event.postback is not None:
        return NormalizedMessage(
            provider=provider,
            sender_id=sender_id,
            recipient_id=recipient_id,
            external_id=event.postback.mid,
            sent_at=sent_at,
            type="postback",
            body=_postback_body(event),
            metadata={
                **event.postback.model_dump(exclude_unset=True),
                "raw": event.raw(),
                _correlation_key(provider): sender_id,
                "recipient_id": recipient_id,
                "has_media": False,
            },
        )

    if event.delivery is not None:
        return DeliveryReceipt(provider=provider, external_ids=list(event.delivery.mids))

    if event.read is not None:
        return ReadReceipt(provider=provider, sender_id=sender_id, watermark=parse_timestamp(event.read.watermark))

    return None


def apply_media(normalized: NormalizedMessage, url: str, mime: Optional[str], size: Optional[int], name: Optional[str] = None) -> None:
    normalized.media_url = url
    normalized.media_mime = mime or (normalized.media.mime_hint if normalized.media else None)
    normalized.media_size = size
    normalized.media_name = name or normalized.media_name


def media_error_body(media_type: str, reason: str, source: str, caption: Optional[str] = None) -> str:
    text = MEDIA_ERROR_TEMPLATE.format(media_type=media_type, reason=reason, source=source).strip()
    if caption:
        return f"{text}\n\n{caption}"
    return text


def apply_media_failure(normalized: NormalizedMessage, reason: str, source: Optional[str] = None) -> None:
    """Keep the attempted media type and swap the body for an error placeholder."""
    reference = normalized.media
    provider_type = reference.provider_type if reference else normalized.type
    origin = source or (reference.source if reference else "")
    normalized.body = media_error_body(provider_type, reason, origin, normalized.caption)
    normalized.metadata["media_error"] = reason
    normalized.media_url = None
    normalized.media_size = None
