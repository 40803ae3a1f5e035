from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.schemas.message import MessageOut


class VisitorInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class WidgetMessageRequest(BaseModel):
    token: Optional[str] = None
    message: Optional[str] = None
    visitor_id: Optional[str] = None
    visitor_info: Optional[VisitorInfo] = None
    conversation_id: Optional[UUID] = None


class WidgetMessageResponse(BaseModel):
    success: bool
    conversation_id: UUID
    ai_enabled: bool = False
    handoff_to_human: bool = False
    reason: Optional[str] = None


class WidgetConfigResponse(BaseModel):
    channel_id: UUID
    channel_name: Optional[str] = None
    welcome_title: str
    welcome_message: str
    widget_color: str
    position: str
    reply_time: str
    online_status: str
    pre_chat_form_enabled: bool
    ai_enabled: bool = False


class WidgetConversationResponse(BaseModel):
    conversation_id: Optional[UUID] = None


class WidgetMessagesResponse(BaseModel):
    messages: list[MessageOut]


def stream_message_payload(message: Any) -> dict:
    """Shape of a message inside a widget stream event."""
    return {
        "id": str(message.id),
        "body": message.body,
        "sender_type": message.sender_type,
        "type": message.type,
        "media_url": message.media_url,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }
