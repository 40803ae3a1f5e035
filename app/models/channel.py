import uuid

from sqlalchemy import Column, DateTime, Text, Uuid

from app.database import Base, JSONType


class Channel(Base):
    __tablename__ = "channels"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text)
    type = Column(Text, nullable=False)  # whatsapp, facebook, instagram, website
    status = Column(Text, nullable=False, default="active")  # active, inactive
    config = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True))
