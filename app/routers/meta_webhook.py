"""Single callback URL for every Meta product, dispatched on the payload ``object``."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy.orm import Session

from app.database import get_db
from app.routers.common import fail, finalize, read_verified_payload, subscription_challenge
from app.schemas.meta import MetaWebhook
from app.schemas.whatsapp import WhatsAppWebhook
from app.services.channel_service import META_CHANNEL_TYPES, get_active_channel, list_active_channels
from app.services.intake_service import process_messaging_payload, process_whatsapp_payload

router = APIRouter(prefix="/webhooks/meta", tags=["webhooks"])

# payload object -> (provider tag, channel type)
OBJECT_ROUTES = {
    "whatsapp_business_account": ("whatsapp", "whatsapp"),
    "page": ("messenger", "facebook"),
    "instagram": ("instagram", "instagram"),
}


class MetaEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: str


@router.get("")
async def verify_meta_subscription(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    db: Session = Depends(get_db),
):
    channels = list_active_channels(db, META_CHANNEL_TYPES)
    return subscription_challenge(channels, hub_mode, hub_verify_token, hub_challenge)


@router.post("")
async def receive_meta_webhook(request: Request, db: Session = Depends(get_db)):
    channels = list_active_channels(db, META_CHANNEL_TYPES) or [None]
    envelope = await read_verified_payload(request, channels, MetaEnvelope)
    route = OBJECT_ROUTES.get(envelope.object)
    if route is None:
        return JSONResponse({"status": "ignored"}, status_code=404)

    provider, channel_type = route
    channel = get_active_channel(db, channel_type)
    schema = WhatsAppWebhook if provider == "whatsapp" else MetaWebhook
    try:
        payload = schema.model_validate(envelope.model_dump())
    except ValidationError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed payload")

    try:
        if provider == "whatsapp":
            result = await process_whatsapp_payload(db, payload, channel=channel)
        else:
            result = await process_messaging_payload(db, payload, provider=provider, channel=channel)
    except Exception as exc:
        raise fail(db, provider, exc)
    return finalize(db, request, result, provider)
