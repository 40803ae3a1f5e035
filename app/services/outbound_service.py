import asyncio
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Channel, Contact, Conversation, Message
from app.services.channel_service import get_access_token
from app.services.conversation_service import update_last_message
from app.services.graph_client import client_for_channel
from app.services.message_service import save_message
from app.services.result import Result
from app.services.state_machine import MessageStatus

logger = get_logger("outbound_service")

RECIPIENT_FIELDS = {
    "whatsapp": "whatsapp_id",
    "messenger": "messenger_psid",
    "instagram": "instagram_igsid",
}


def send_text(channel: Optional[Channel], conversation: Conversation, contact: Optional[Contact], text: str) -> Result[Optional[str]]:
    """Deliver text to the contact on the conversation's provider.

    Website conversations need no provider call; the widget stream picks the message up.
    Returns the provider message id on success.
    """
    if conversation.channel == "website":
        return Result.success(None)

    field = RECIPIENT_FIELDS.get(conversation.channel)
    recipient_id = getattr(contact, field, None) if (contact is not None and field) else None
    if not recipient_id:
        return Result.failure("Conversation has no provider recipient", "missing_recipient")
    if channel is None:
        return Result.failure("No channel configured for conversation", "missing_channel")

    access_token = get_access_token(channel)
    if not access_token:
        return Result.failure("Channel has no access token", "missing_access_token")

    response = client_for_channel(channel.type, access_token).send_text(channel.type, channel.config or {}, recipient_id, text)
    result = Result.from_response(response, "message_id", code="send_failed")
    if not result.ok:
        logger.error(
            "Outbound send failed",
            extra={"context": {"conversation_id": str(conversation.id), "channel": conversation.channel, "error": result.error}},
        )
    return result


def deliver_message(
    db: Session,
    *,
    channel: Optional[Channel],
    conversation: Conversation,
    text: str,
    sender_type: str,
    sender_id: Optional[str] = None,
    message_metadata: Optional[dict] = None,
) -> tuple[Message, Result[Optional[str]]]:
    """Persist an outgoing agent/bot message and send it to the provider.

    The message is stored even when the send fails; it is then marked ``failed``.
    """
    result = send_text(channel, conversation, conversation.contact, text)
    message = record_outbound(
        db,
        conversation=conversation,
        text=text,
        sender_type=sender_type,
        result=result,
        sender_id=sender_id,
        message_metadata=message_metadata,
    )
    return message, result


async def deliver_message_async(
    db: Session,
    *,
    channel: Optional[Channel],
    conversation: Conversation,
    text: str,
    sender_type: str,
    sender_id: Optional[str] = None,
    message_metadata: Optional[dict] = None,
) -> tuple[Message, Result[Optional[str]]]:
    """``deliver_message`` for coroutines: the provider call runs in a worker thread."""
    contact = conversation.contact
    result = await asyncio.to_thread(send_text, channel, conversation, contact, text)
    message = record_outbound(
        db,
        conversation=conversation,
        text=text,
        sender_type=sender_type,
        result=result,
        sender_id=sender_id,
        message_metadata=message_metadata,
    )
    return message, result


def record_outbound(
    db: Session,
    *,
    conversation: Conversation,
    text: str,
    sender_type: str,
    result: Result[Optional[str]],
    sender_id: Optional[str] = None,
    message_metadata: Optional[dict] = None,
) -> Message:
    metadata = dict(message_metadata or {})
    if not result.ok:
        metadata["send_error"] = result.error
    message = save_message(
        db,
        conversation.id,
        body=text,
        sender_type=sender_type,
        sender_id=sender_id,
        provider=conversation.channel,
        external_id=result.value if result.ok else None,
        status=MessageStatus.SENT.value if result.ok else MessageStatus.FAILED.value,
        message_metadata=metadata,
    )
    update_last_message(db, conversation.id)
    return message
