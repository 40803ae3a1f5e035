from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

WHATSAPP_MEDIA_TYPES = ("image", "audio", "video", "document", "sticker")


class WhatsAppText(BaseModel):
    body: str = ""


class WhatsAppMedia(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    mime_type: Optional[str] = None
    sha256: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None


class WhatsAppMessage(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = None
    from_: str = Field(alias="from")
    timestamp: Optional[str] = None
    type: str = "text"
    text: Optional[WhatsAppText] = None
    image: Optional[WhatsAppMedia] = None
    audio: Optional[WhatsAppMedia] = None
    video: Optional[WhatsAppMedia] = None
    document: Optional[WhatsAppMedia] = None
    sticker: Optional[WhatsAppMedia] = None
    location: Optional[dict[str, Any]] = None
    button: Optional[dict[str, Any]] = None
    interactive: Optional[dict[str, Any]] = None
    reaction: Optional[dict[str, Any]] = None
    contacts: Optional[list[dict[str, Any]]] = None

    @property
    def media(self) -> Optional[WhatsAppMedia]:
        if self.type not in WHATSAPP_MEDIA_TYPES:
            return None
        return getattr(self, self.type, None)

    def raw(self) -> dict:
        return self.model_dump(by_alias=True, exclude_unset=True)


class WhatsAppProfile(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None


class WhatsAppContact(BaseModel):
    model_config = ConfigDict(extra="allow")

    wa_id: Optional[str] = None
    profile: Optional[WhatsAppProfile] = None


class WhatsAppStatus(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    status: str  # sent, delivered, read, failed
    recipient_id: Optional[str] = None
    timestamp: Optional[str] = None
    errors: Optional[list[dict[str, Any]]] = None


class WhatsAppValue(BaseModel):
    model_config = ConfigDict(extra="allow")

    messaging_product: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    contacts: list[WhatsAppContact] = Field(default_factory=list)
    messages: list[WhatsAppMessage] = Field(default_factory=list)
    statuses: list[WhatsAppStatus] = Field(default_factory=list)

    def contact_name(self, wa_id: str) -> Optional[str]:
        """Profile name for a sender, falling back to the first listed contact."""
        for contact in self.contacts:
            if contact.wa_id == wa_id and contact.profile:
                return contact.profile.name
        if self.contacts and self.contacts[0].profile:
            return self.contacts[0].profile.name
        return None

    def envelope(self, message: WhatsAppMessage) -> dict:
        """The change value as received, narrowed to one message."""
        data = self.model_dump(by_alias=True, exclude_unset=True, exclude={"messages", "statuses"})
        data["messages"] = [message.raw()]
        return data


class WhatsAppChange(BaseModel):
    field: Optional[str] = None
    value: WhatsAppValue = Field(default_factory=WhatsAppValue)


class WhatsAppEntry(BaseModel):
    id: Optional[str] = None
    changes: list[WhatsAppChange] = Field(default_factory=list)


class WhatsAppWebhook(BaseModel):
    object: str = "whatsapp_business_account"
    entry: list[WhatsAppEntry] = Field(default_factory=list)
