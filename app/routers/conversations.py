from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.models import Channel
from app.schemas.conversation import ConversationOut
from app.schemas.message import AgentMessageRequest, AgentMessageResponse, MessageOut
from app.services.conversation_service import close_conversation, get_conversation
from app.services.outbound_service import deliver_message
from app.services.state_machine import ConversationStatus, InvalidTransitionError

logger = get_logger("conversations")

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_api_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN not configured")
    if provided != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _load_conversation(db: Session, conversation_id: UUID):
    conversation = get_conversation(db, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


@router.post("/{conversation_id}/messages", response_model=AgentMessageResponse)
def send_agent_message(
    conversation_id: UUID,
    data: AgentMessageRequest,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Store an agent reply and deliver it through the conversation's provider."""
    _require_admin_token(x_admin_token)
    if not data.body.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message body required")
    conversation = _load_conversation(db, conversation_id)
    if conversation.status != ConversationStatus.OPEN.value:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Conversation is closed")

    channel = db.query(Channel).filter(Channel.id == conversation.channel_id).first() if conversation.channel_id else None
    message, result = deliver_message(
        db,
        channel=channel,
        conversation=conversation,
        text=data.body,
        sender_type="agent",
        sender_id=data.agent_id,
    )
    db.commit()
    logger.info(
        "Agent message stored",
        extra={"context": {"conversation_id": str(conversation.id), "message_id": str(message.id), "delivered": result.ok}},
    )
    return AgentMessageResponse(
        success=True,
        message=MessageOut.model_validate(message),
        delivered=result.ok,
        error=result.error,
    )


@router.post("/{conversation_id}/close", response_model=ConversationOut)
def close_conversation_endpoint(
    conversation_id: UUID,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    try:
        conversation = close_conversation(db, _load_conversation(db, conversation_id))
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    db.commit()
    return ConversationOut.model_validate(conversation)
