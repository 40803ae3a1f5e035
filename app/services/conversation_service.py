from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Contact, Conversation
from app.services.state_machine import ConversationStatus, close

logger = get_logger("conversation_service")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_open_conversation(db: Session, contact_id: UUID, channel: str) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(
            Conversation.contact_id == contact_id,
            Conversation.channel == channel,
            Conversation.status == ConversationStatus.OPEN.value,
        )
        .order_by(Conversation.created_at.desc())
        .first()
    )


def find_or_create(
    db: Session,
    contact_id: UUID,
    channel: str,
    channel_id: Optional[UUID] = None,
    metadata: Optional[dict] = None,
) -> Conversation:
    """Find the open conversation for (contact, channel) or open a new one.

    At most one conversation per (contact, channel type) is open, whichever configured
    channel it started on. The insert runs in a SAVEPOINT; losing the race against the
    open-conversation unique index falls back to the row the other request created.
    """
    conversation = get_open_conversation(db, contact_id, channel)
    if conversation:
        if channel_id is not None and conversation.channel_id is not None and conversation.channel_id != channel_id:
            logger.warning(
                "Open conversation belongs to another channel of the same type",
                extra={
                    "context": {
                        "conversation_id": str(conversation.id),
                        "conversation_channel_id": str(conversation.channel_id),
                        "channel_id": str(channel_id),
                    }
                },
            )
        return conversation

    now = _now()
    conversation = Conversation(
        contact_id=contact_id,
        channel_id=channel_id,
        channel=channel,
        status=ConversationStatus.OPEN.value,
        conversation_metadata=metadata or {},
        last_message_at=now,
        created_at=now,
    )
    try:
        with db.begin_nested():
            db.add(conversation)
            db.flush()
    except IntegrityError:
        existing = get_open_conversation(db, contact_id, channel)
        if existing is None:
            raise
        logger.info(
            "Open conversation already existed, reusing",
            extra={"context": {"conversation_id": str(existing.id), "channel": channel}},
        )
        return existing

    logger.info(
        "Conversation created",
        extra={"context": {"conversation_id": str(conversation.id), "channel": channel, "contact_id": str(contact_id)}},
    )
    return conversation


def update_last_message(db: Session, conversation_id: UUID) -> None:
    """Stamp ``last_message_at``; called after every persisted message."""
    db.query(Conversation).filter(Conversation.id == conversation_id).update(
        {Conversation.last_message_at: _now()}, synchronize_session="fetch"
    )
    db.flush()


def get_conversation(db: Session, conversation_id: UUID) -> Optional[Conversation]:
    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def find_open_widget_conversation(db: Session, channel_id: UUID, visitor_id: str) -> Optional[Conversation]:
    """Open website conversation of a visitor on one widget channel."""
    return (
        db.query(Conversation)
        .join(Contact, Conversation.contact_id == Contact.id)
        .filter(
            Conversation.channel_id == channel_id,
            Conversation.channel == "website",
            Conversation.status == ConversationStatus.OPEN.value,
            Contact.widget_visitor_id == visitor_id,
        )
        .order_by(Conversation.created_at.desc())
        .first()
    )


def mark_handoff(db: Session, conversation: Conversation) -> None:
    if conversation.handoff_at is None:
        conversation.handoff_at = _now()
        db.flush()
        logger.info("Conversation handed off to a human", extra={"context": {"conversation_id": str(conversation.id)}})


def close_conversation(db: Session, conversation: Conversation) -> Conversation:
    """Close an open conversation. Raises InvalidTransitionError if already closed."""
    conversation.status = close(conversation.status).value
    conversation.closed_at = _now()
    db.flush()
    logger.info("Conversation closed", extra={"context": {"conversation_id": str(conversation.id)}})
    return conversation
