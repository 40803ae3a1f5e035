import json

import httpx

from app.services.graph_client import MetaGraphClient, client_for_channel


def _client(handler) -> MetaGraphClient:
    return MetaGraphClient("token-1", transport=httpx.MockTransport(handler))


class TestSendText:
    def test_whatsapp(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"messages": [{"id": "wamid.OUT"}]})

        result = _client(handler).send_text("whatsapp", {"phone_number_id": "123"}, "51999888777", "Hola")

        assert result == {"ok": True, "message_id": "wamid.OUT"}
        assert captured["path"] == "/v22.0/123/messages"
        assert captured["body"]["to"] == "51999888777"
        assert captured["body"]["text"] == {"body": "Hola"}

    def test_messenger_defaults_to_me(self):
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200, json={"recipient_id": "PSID_1", "message_id": "m_out"})

        result = _client(handler).send_text("facebook", {}, "PSID_1", "Hola")
        assert result["message_id"] == "m_out"
        assert paths == ["/v22.0/me/messages"]

    def test_instagram_requires_account(self):
        result = _client(lambda r: httpx.Response(200, json={})).send_text("instagram", {}, "IG_1", "Hola")
        assert result == {"ok": False, "error": "missing_account_id"}

    def test_error_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": {"message": "Invalid OAuth access token", "code": 190}})

        result = _client(handler).send_text("facebook", {"page_id": "PAGE"}, "PSID_1", "Hola")
        assert result["ok"] is False
        assert result["status"] == 400
        assert result["error"]["code"] == 190

    def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable")

        result = _client(handler).send_text("facebook", {}, "PSID_1", "Hola")
        assert result["ok"] is False


class TestProfile:
    def test_fetch_profile(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["fields"] == "first_name,last_name,name,profile_pic"
            return httpx.Response(200, json={"first_name": "Luis", "id": "PSID_1"})

        assert _client(handler).fetch_profile("PSID_1", "messenger")["first_name"] == "Luis"

    def test_unknown_provider(self):
        assert _client(lambda r: httpx.Response(200, json={})).fetch_profile("x", "whatsapp") is None


class TestClientForChannel:
    def test_instagram_base_url(self):
        assert client_for_channel("instagram", "t").base_url == "https://graph.instagram.com"
        assert client_for_channel("facebook", "t").base_url == "https://graph.facebook.com"
