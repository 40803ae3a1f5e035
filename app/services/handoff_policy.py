from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.services.message_service import get_last_message


def is_ai_enabled(channel_config: Optional[dict]) -> bool:
    config = channel_config or {}
    if not config.get("ai_enabled"):
        return False
    ai_config = config.get("ai_config") or {}
    return ai_config.get("response_mode") != "agent_only"


def should_auto_reply(db: Session, channel_config: Optional[dict], conversation_id: UUID) -> bool:
    """Decide whether the AI may answer the message that is about to be stored.

    Must be evaluated before the inbound message is persisted: the last stored
    message is the one said before it. A human agent speaking last keeps the AI out.
    """
    if not is_ai_enabled(channel_config):
        return False

    previous = get_last_message(db, conversation_id)
    if previous is None:
        return True
    return previous.sender_type in ("user", "bot")
