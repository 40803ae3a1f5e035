from typing import Iterable, Optional

from sqlalchemy.orm import Session

from app.models import Channel

META_CHANNEL_TYPES = ("whatsapp", "facebook", "instagram")

# Conversation/message provider tag -> channel type that configures it
PROVIDER_CHANNEL_TYPES = {
    "whatsapp": "whatsapp",
    "messenger": "facebook",
    "instagram": "instagram",
    "website": "website",
}

ACCESS_TOKEN_KEYS = {
    "whatsapp": "access_token",
    "facebook": "page_access_token",
    "instagram": "access_token",
}


def list_active_channels(db: Session, channel_types: Iterable[str]) -> list[Channel]:
    """Active channels of the given types, most recently updated first."""
    return (
        db.query(Channel)
        .filter(Channel.type.in_(list(channel_types)), Channel.status == "active")
        .order_by(Channel.updated_at.desc().nulls_last(), Channel.created_at.desc())
        .all()
    )


def get_active_channel(db: Session, channel_type: str) -> Optional[Channel]:
    """Authoritative active channel for a type; ties go to the most recently updated row."""
    channels = list_active_channels(db, [channel_type])
    return channels[0] if channels else None


def get_channel_by_widget_token(db: Session, token: str) -> Optional[Channel]:
    if not token:
        return None
    channels = db.query(Channel).filter(Channel.type == "website").all()
    for channel in channels:
        if (channel.config or {}).get("widget_token") == token:
            return channel
    return None


def get_access_token(channel: Optional[Channel]) -> Optional[str]:
    if channel is None:
        return None
    key = ACCESS_TOKEN_KEYS.get(channel.type)
    if not key:
        return None
    return (channel.config or {}).get(key)


def is_subscription_valid(channels: Iterable[Optional[Channel]], mode: Optional[str], verify_token: Optional[str]) -> bool:
    """Meta subscription handshake: mode must be ``subscribe`` and the token must match a channel."""
    if mode != "subscribe" or not verify_token:
        return False
    for channel in channels:
        if channel is None:
            continue
        configured = (channel.config or {}).get("verify_token")
        if configured and configured == verify_token:
            return True
    return False
