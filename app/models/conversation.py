import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, Uuid, text
from sqlalchemy.orm import relationship

from app.database import Base, JSONType


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        # One open conversation per (contact, channel); closed ones are unrestricted
        Index(
            "uq_conversations_open_contact_channel",
            "contact_id",
            "channel",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    contact_id = Column(Uuid, ForeignKey("contacts.id"))
    channel_id = Column(Uuid, ForeignKey("channels.id"))
    channel = Column(Text, nullable=False)  # whatsapp, messenger, instagram, website
    status = Column(Text, nullable=False, default="open")  # open, closed
    conversation_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    handoff_at = Column(DateTime(timezone=True))
    last_message_at = Column(DateTime(timezone=True))
    closed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)

    contact = relationship("Contact", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation")
