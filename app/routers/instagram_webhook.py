from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.database import get_db
from app.routers.common import fail, finalize, read_verified_payload, subscription_challenge
from app.schemas.meta import MetaWebhook
from app.services.channel_service import get_active_channel
from app.services.intake_service import process_messaging_payload

router = APIRouter(prefix="/webhooks/instagram", tags=["webhooks"])


@router.get("")
async def verify_instagram_subscription(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    db: Session = Depends(get_db),
):
    return subscription_challenge([get_active_channel(db, "instagram")], hub_mode, hub_verify_token, hub_challenge)


@router.post("")
async def receive_instagram_webhook(request: Request, db: Session = Depends(get_db)):
    channel = get_active_channel(db, "instagram")
    payload = await read_verified_payload(request, [channel], MetaWebhook)
    if payload.object != "instagram":
        return JSONResponse({"status": "ignored"}, status_code=404)

    try:
        result = await process_messaging_payload(db, payload, provider="instagram", channel=channel)
    except Exception as exc:
        raise fail(db, "instagram", exc)
    return finalize(db, request, result, "instagram")
