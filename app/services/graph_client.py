from typing import Optional

import httpx

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("graph_client")

PROFILE_FIELDS = {
    "messenger": "first_name,last_name,name,profile_pic",
    "instagram": "name,username,profile_pic",
}


class MetaGraphClient:
    """Thin client for the Meta Graph API (profiles, media lookup, outbound text)."""

    def __init__(
        self,
        access_token: str,
        *,
        base_url: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.access_token = access_token
        self.base_url = (base_url or settings.graph_api_base_url).rstrip("/")
        self.api_version = api_version or settings.graph_api_version
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self.transport = transport

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{self.api_version}/{path.lstrip('/')}"

    def _make_request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
    ) -> dict:
        """Make request to the Graph API. Errors are returned as ``{"ok": False, ...}``."""
        url = self._url(path)
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers={"Authorization": f"Bearer {self.access_token}"},
                )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "Graph API request failed",
                extra={"context": {"path": path, "error": str(e)}},
            )
            return {"ok": False, "error": str(e)}

        if response.status_code >= 400 or (isinstance(data, dict) and data.get("error")):
            error = data.get("error") if isinstance(data, dict) else None
            logger.warning(
                "Graph API error response",
                extra={"context": {"path": path, "status": response.status_code, "error": error}},
            )
            return {"ok": False, "status": response.status_code, "error": error}

        return {"ok": True, "data": data}

    def fetch_profile(self, user_id: str, provider: str) -> Optional[dict]:
        """Fetch public profile fields for a page- or Instagram-scoped user id."""
        fields = PROFILE_FIELDS.get(provider)
        if not fields:
            return None
        result = self._make_request("GET", user_id, params={"fields": fields})
        if not result["ok"]:
            return None
        data = result["data"]
        return data if isinstance(data, dict) else None

    def send_text(self, channel_type: str, config: dict, recipient_id: str, text: str) -> dict:
        """Send a plain text message through the channel's provider.

        Returns ``{"ok": True, "message_id": ...}`` or ``{"ok": False, "error": ...}``.
        """
        if channel_type == "whatsapp":
            phone_number_id = config.get("phone_number_id")
            if not phone_number_id:
                return {"ok": False, "error": "missing_phone_number_id"}
            result = self._make_request(
                "POST",
                f"{phone_number_id}/messages",
                json={
                    "messaging_product": "whatsapp",
                    "to": recipient_id,
                    "type": "text",
                    "text": {"body": text},
                },
            )
            if not result["ok"]:
                return result
            messages = result["data"].get("messages") or [{}]
            return {"ok": True, "message_id": messages[0].get("id")}

        if channel_type == "facebook":
            page_id = config.get("page_id") or "me"
            path = f"{page_id}/messages"
        elif channel_type == "instagram":
            account_id = config.get("account_id")
            if not account_id:
                return {"ok": False, "error": "missing_account_id"}
            path = f"{account_id}/messages"
        else:
            return {"ok": False, "error": f"unsupported_channel:{channel_type}"}

        result = self._make_request(
            "POST",
            path,
            json={
                "recipient": {"id": recipient_id},
                "message": {"text": text},
                "messaging_type": "RESPONSE",
            },
        )
        if not result["ok"]:
            return result
        return {"ok": True, "message_id": result["data"].get("message_id")}


def client_for_channel(channel_type: str, access_token: str) -> MetaGraphClient:
    """Instagram-login tokens talk to graph.instagram.com, everything else to graph.facebook.com."""
    if channel_type == "instagram":
        return MetaGraphClient(access_token, base_url=settings.instagram_graph_base_url)
    return MetaGraphClient(access_token)
