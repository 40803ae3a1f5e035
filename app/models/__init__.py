from app.models.channel import Channel
from app.models.contact import Contact
from app.models.conversation import Conversation
from app.models.message import Message

__all__ = [
    "Channel",
    "Contact",
    "Conversation",
    "Message",
]
