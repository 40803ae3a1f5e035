import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from app.database import Base, JSONType


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_provider_external_id", "provider", "external_id"),
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False)
    body = Column(Text)
    type = Column(Text, nullable=False, default="text")  # text, image, audio, video, file, document, postback
    sender_type = Column(Text, nullable=False)  # user, agent, bot
    sender_id = Column(Text)
    provider = Column(Text)  # whatsapp, messenger, instagram, website
    external_id = Column(Text)
    status = Column(Text, nullable=False, default="sent")  # sent, delivered, read, failed
    media_url = Column(Text)
    media_mime = Column(Text)
    media_size = Column(Integer)
    media_name = Column(Text)
    message_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
