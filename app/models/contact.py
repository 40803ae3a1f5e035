import uuid

from sqlalchemy import Column, DateTime, Text, Uuid
from sqlalchemy.orm import relationship

from app.database import Base


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text)
    phone = Column(Text)
    email = Column(Text)
    avatar_url = Column(Text)
    whatsapp_id = Column(Text, unique=True)
    messenger_psid = Column(Text, unique=True)
    instagram_igsid = Column(Text, unique=True)
    widget_visitor_id = Column(Text, unique=True)
    source = Column(Text)  # whatsapp, messenger, instagram, website
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True))
    last_interaction_at = Column(DateTime(timezone=True))

    conversations = relationship("Conversation", back_populates="contact")
