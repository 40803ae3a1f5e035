from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Contact
from app.services.graph_client import client_for_channel

logger = get_logger("contact_service")

EXTERNAL_ID_COLUMNS = {
    "whatsapp": "whatsapp_id",
    "messenger": "messenger_psid",
    "instagram": "instagram_igsid",
    "website": "widget_visitor_id",
}

PROFILE_CHANNEL_TYPES = {"messenger": "facebook", "instagram": "instagram"}

WIDGET_PLACEHOLDER_NAME = "Visitante Web"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _external_column(provider_family: str):
    column_name = EXTERNAL_ID_COLUMNS.get(provider_family)
    if not column_name:
        raise ValueError(f"Unknown provider family: {provider_family}")
    return getattr(Contact, column_name)


def _display_name(profile: dict) -> Optional[str]:
    name = (profile.get("name") or "").strip()
    if name:
        return name
    full = " ".join(part for part in (profile.get("first_name"), profile.get("last_name")) if part).strip()
    if full:
        return full
    return (profile.get("username") or "").strip() or None


def fetch_profile(provider_family: str, external_id: str, access_token: str) -> Optional[dict]:
    """Best-effort profile lookup; never raises."""
    channel_type = PROFILE_CHANNEL_TYPES.get(provider_family)
    if not channel_type:
        return None
    try:
        profile = client_for_channel(channel_type, access_token).fetch_profile(external_id, provider_family)
    except Exception as exc:
        logger.warning(
            "Profile fetch failed",
            extra={"context": {"provider": provider_family, "external_id": external_id, "error": str(exc)}},
        )
        return None
    if not profile:
        logger.info(
            "Profile fetch returned nothing",
            extra={"context": {"provider": provider_family, "external_id": external_id}},
        )
    return profile


def get_by_external_id(db: Session, provider_family: str, external_id: str) -> Optional[Contact]:
    return db.query(Contact).filter(_external_column(provider_family) == external_id).first()


def find_or_create_by_external_id(
    db: Session,
    provider_family: str,
    external_id: str,
    display_name_hint: Optional[str] = None,
    access_token: Optional[str] = None,
    *,
    profile: Optional[dict] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
) -> Contact:
    """Resolve the contact for a provider-scoped id, creating it on first sight.

    Refreshes an empty name from the hint and stamps ``last_interaction_at`` on every call.
    Profile enrichment is only attempted for new contacts. Async callers fetch the
    ``profile`` off the event loop and pass it in; otherwise it is fetched here when an
    access token is available.
    """
    now = _now()
    contact = get_by_external_id(db, provider_family, external_id)

    if contact is None:
        name = display_name_hint
        avatar_url = None
        if profile is None and access_token:
            profile = fetch_profile(provider_family, external_id, access_token)
        if profile:
            name = _display_name(profile) or name
            avatar_url = profile.get("profile_pic")
        if not name and provider_family == "website":
            name = WIDGET_PLACEHOLDER_NAME

        contact = Contact(
            name=name,
            email=email,
            phone=phone or (external_id if provider_family == "whatsapp" else None),
            avatar_url=avatar_url,
            source=provider_family,
            created_at=now,
        )
        setattr(contact, EXTERNAL_ID_COLUMNS[provider_family], external_id)
        try:
            with db.begin_nested():
                db.add(contact)
                db.flush()
            logger.info(
                "Contact created",
                extra={"context": {"provider": provider_family, "external_id": external_id, "contact_id": str(contact.id)}},
            )
        except IntegrityError:
            # A concurrent request created it first
            contact = get_by_external_id(db, provider_family, external_id)
            if contact is None:
                raise
    elif display_name_hint and not contact.name:
        contact.name = display_name_hint
        contact.updated_at = now

    if email and not contact.email:
        contact.email = email
    if phone and not contact.phone:
        contact.phone = phone

    contact.last_interaction_at = now
    db.flush()
    return contact


def touch_last_interaction(db: Session, contact: Contact) -> None:
    contact.last_interaction_at = _now()
    db.flush()
