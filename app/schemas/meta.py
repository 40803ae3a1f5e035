from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class MessagingParty(BaseModel):
    id: str


class AttachmentPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    url: Optional[str] = None
    title: Optional[str] = None
    sticker_id: Optional[int] = None


class Attachment(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "file"  # image, audio, video, file, fallback, template, share, ...
    payload: Optional[AttachmentPayload] = None

    @property
    def url(self) -> Optional[str]:
        return self.payload.url if self.payload else None


class DirectMedia(BaseModel):
    """Instagram shape where image/video sit directly under ``message``."""

    model_config = ConfigDict(extra="allow")

    url: Optional[str] = None


class QuickReply(BaseModel):
    payload: Optional[str] = None


class MessagingMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    mid: Optional[str] = None
    text: Optional[str] = None
    is_echo: bool = False
    attachments: list[Attachment] = Field(default_factory=list)
    image: Optional[DirectMedia] = None
    video: Optional[DirectMedia] = None
    quick_reply: Optional[QuickReply] = None

    def raw(self) -> dict:
        return self.model_dump(exclude_unset=True)


class Postback(BaseModel):
    model_config = ConfigDict(extra="allow")

    mid: Optional[str] = None
    title: Optional[str] = None
    payload: Any = None


class Delivery(BaseModel):
    mids: list[str] = Field(default_factory=list)
    watermark: Optional[int] = None


class Read(BaseModel):
    watermark: int
    mid: Optional[str] = None


class MessagingEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    sender: MessagingParty
    recipient: Optional[MessagingParty] = None
    timestamp: Optional[int] = None
    message: Optional[MessagingMessage] = None
    postback: Optional[Postback] = None
    delivery: Optional[Delivery] = None
    read: Optional[Read] = None

    def raw(self) -> dict:
        return self.model_dump(exclude_unset=True)


class MetaEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    time: Optional[int] = None
    messaging: list[MessagingEvent] = Field(default_factory=list)
    changes: list[dict[str, Any]] = Field(default_factory=list)


class MetaWebhook(BaseModel):
    object: str
    entry: list[MetaEntry] = Field(default_factory=list)
