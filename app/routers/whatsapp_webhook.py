from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.database import get_db
from app.routers.common import fail, finalize, read_verified_payload, subscription_challenge
from app.schemas.whatsapp import WhatsAppWebhook
from app.services.channel_service import get_active_channel
from app.services.intake_service import process_whatsapp_payload

router = APIRouter(prefix="/webhooks/whatsapp", tags=["webhooks"])


@router.get("")
async def verify_whatsapp_subscription(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    db: Session = Depends(get_db),
):
    return subscription_challenge([get_active_channel(db, "whatsapp")], hub_mode, hub_verify_token, hub_challenge)


@router.post("")
async def receive_whatsapp_webhook(request: Request, db: Session = Depends(get_db)):
    channel = get_active_channel(db, "whatsapp")
    payload = await read_verified_payload(request, [channel], WhatsAppWebhook)
    if payload.object != "whatsapp_business_account":
        return JSONResponse({"status": "ignored"}, status_code=404)

    try:
        result = await process_whatsapp_payload(db, payload, channel=channel)
    except Exception as exc:
        raise fail(db, "whatsapp", exc)
    return finalize(db, request, result, "whatsapp")
