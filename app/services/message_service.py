from datetime import datetime, timezone
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Message
from app.services.state_machine import MessageStatus, can_transition_message

logger = get_logger("message_service")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def save_message(
    db: Session,
    conversation_id: UUID,
    *,
    sender_type: str,
    body: Optional[str] = None,
    message_type: str = "text",
    sender_id: Optional[str] = None,
    provider: Optional[str] = None,
    external_id: Optional[str] = None,
    status: str = "sent",
    media_url: Optional[str] = None,
    media_mime: Optional[str] = None,
    media_size: Optional[int] = None,
    media_name: Optional[str] = None,
    message_metadata: Optional[dict] = None,
) -> Message:
    """Save message to database."""
    message = Message(
        conversation_id=conversation_id,
        body=body,
        type=message_type,
        sender_type=sender_type,
        sender_id=sender_id,
        provider=provider,
        external_id=external_id,
        status=status,
        media_url=media_url,
        media_mime=media_mime,
        media_size=media_size,
        media_name=media_name,
        message_metadata=message_metadata or {},
        created_at=_now(),
    )
    db.add(message)
    db.flush()
    return message


def get_last_message(db: Session, conversation_id: UUID) -> Optional[Message]:
    """Most recent message in a conversation."""
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .first()
    )


def external_message_exists(db: Session, provider: str, external_id: Optional[str]) -> bool:
    if not external_id:
        return False
    return (
        db.query(Message.id).filter(Message.provider == provider, Message.external_id == external_id).first()
        is not None
    )


def update_status_by_external_id(db: Session, provider: str, external_id: str, status: str) -> Optional[Message]:
    """Apply a delivery/read/failed receipt to the message it refers to."""
    message = (
        db.query(Message).filter(Message.provider == provider, Message.external_id == external_id).first()
    )
    if message is None:
        logger.info(
            "Receipt for unknown message",
            extra={"context": {"provider": provider, "external_id": external_id, "status": status}},
        )
        return None
    if not can_transition_message(message.status, status):
        return message
    message.status = status
    db.flush()
    return message


def mark_read_by_watermark(db: Session, provider: str, sender_id: str, watermark: datetime) -> int:
    """Mark every message of a sender created at or before the watermark as read."""
    updated = (
        db.query(Message)
        .filter(
            Message.provider == provider,
            Message.sender_id == sender_id,
            Message.created_at <= watermark,
            Message.status.in_([MessageStatus.SENT.value, MessageStatus.DELIVERED.value]),
        )
        .update({Message.status: MessageStatus.READ.value}, synchronize_session="fetch")
    )
    db.flush()
    return updated


def list_messages(db: Session, conversation_id: UUID, after_message_id: Optional[UUID] = None) -> list[Message]:
    """Conversation messages oldest first, optionally only those after a known message."""
    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    if after_message_id is not None:
        anchor = (
            db.query(Message.created_at)
            .filter(Message.id == after_message_id, Message.conversation_id == conversation_id)
            .first()
        )
        if anchor is not None:
            query = query.filter(Message.created_at > anchor.created_at)
    return query.order_by(Message.created_at.asc()).all()


def list_recent_messages(db: Session, conversation_id: UUID, limit: int) -> list[Message]:
    """Last ``limit`` messages, returned oldest first."""
    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def list_new_messages(
    db: Session,
    conversation_id: UUID,
    sender_types: Iterable[str],
    seen_ids: set,
    since: Optional[datetime] = None,
) -> list[Message]:
    """Messages of the given sender types not yet in ``seen_ids``."""
    query = db.query(Message).filter(
        Message.conversation_id == conversation_id,
        Message.sender_type.in_(list(sender_types)),
    )
    if since is not None:
        query = query.filter(Message.created_at >= since)
    rows = query.order_by(Message.created_at.asc()).all()
    return [row for row in rows if row.id not in seen_ids]
