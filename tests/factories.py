import json
import uuid
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from app.models import Channel
from app.services.signature_service import SIGNATURE_HEADER, compute_signature

APP_SECRET = "test-app-secret"
ADMIN_TOKEN = "test-admin-token"
WIDGET_TOKEN = "widget-token-123"
VERIFY_TOKEN = "verify-me"


def make_channel(db, channel_type: str, config: dict = None, status: str = "active", **kwargs) -> Channel:
    now = datetime.now(timezone.utc)
    channel = Channel(
        id=uuid.uuid4(),
        name=kwargs.pop("name", f"{channel_type} channel"),
        type=channel_type,
        status=status,
        config=config or {},
        created_at=kwargs.pop("created_at", now),
        updated_at=kwargs.pop("updated_at", now),
    )
    db.add(channel)
    db.commit()
    return channel


def signed_post(client: TestClient, path: str, payload, secret: str = APP_SECRET, signature: str = None):
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: signature if signature is not None else compute_signature(body, secret),
    }
    return client.post(path, content=body, headers=headers)


def whatsapp_payload(messages=None, statuses=None, contacts=None) -> dict:
    value = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": "15550001111", "phone_number_id": "1234567890"},
    }
    if contacts is not None:
        value["contacts"] = contacts
    if messages is not None:
        value["messages"] = messages
    if statuses is not None:
        value["statuses"] = statuses
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA_ID", "changes": [{"field": "messages", "value": value}]}],
    }


def messaging_payload(object_type: str, events: list, entry_id: str = "PAGE_ID") -> dict:
    return {"object": object_type, "entry": [{"id": entry_id, "time": 1700000000000, "messaging": events}]}
