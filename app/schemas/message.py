from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    conversation_id: UUID
    body: Optional[str] = None
    type: str
    sender_type: str
    status: str
    external_id: Optional[str] = None
    media_url: Optional[str] = None
    media_mime: Optional[str] = None
    media_size: Optional[int] = None
    media_name: Optional[str] = None
    created_at: datetime


class AgentMessageRequest(BaseModel):
    body: str
    agent_id: Optional[str] = None


class AgentMessageResponse(BaseModel):
    success: bool
    message: MessageOut
    delivered: bool
    error: Optional[str] = None
