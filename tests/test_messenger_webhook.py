import asyncio
import threading
import time
from unittest.mock import AsyncMock, patch

import pytest

from app.models import Contact, Conversation, Message
from app.schemas.meta import MessagingEvent
from app.services.intake_service import ingest_message
from app.services.media_service import MediaInfo
from app.services.message_service import save_message
from app.services.normalizer import normalize_messaging_event
from factories import VERIFY_TOKEN, make_channel, messaging_payload, signed_post

PSID = "PSID_1"


def _event(**data) -> dict:
    return {"sender": {"id": PSID}, "recipient": {"id": "PAGE_ID"}, "timestamp": int(time.time() * 1000), **data}


def _post(client, *events):
    return signed_post(client, "/webhooks/messenger", messaging_payload("page", list(events)))


@pytest.fixture
def channel(db_session):
    return make_channel(
        db_session,
        "facebook",
        {"verify_token": VERIFY_TOKEN, "page_id": "PAGE_ID", "page_access_token": "page-token"},
    )


@pytest.fixture(autouse=True)
def profile():
    with patch(
        "app.services.contact_service.fetch_profile",
        return_value={"first_name": "Luis", "last_name": "Pérez", "profile_pic": "https://cdn.example.com/luis.jpg"},
    ) as mock_fetch:
        yield mock_fetch


class TestMessengerMessages:
    def test_challenge(self, client, channel):
        response = client.get(
            "/webhooks/messenger",
            params={"hub.mode": "subscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "abc123"},
        )
        assert response.status_code == 200
        assert response.text == "abc123"

    def test_text_creates_contact_with_profile(self, client, db_session, channel, profile):
        response = _post(client, _event(message={"mid": "m_1", "text": "Hola"}))

        assert response.status_code == 200
        profile.assert_called_once_with("messenger", PSID, "page-token")
        contact = db_session.query(Contact).one()
        assert contact.name == "Luis Pérez"
        assert contact.messenger_psid == PSID
        assert contact.avatar_url == "https://cdn.example.com/luis.jpg"

        message = db_session.query(Message).one()
        assert message.body == "Hola"
        assert message.provider == "messenger"
        assert message.sender_id == PSID
        assert message.message_metadata["messenger_psid"] == PSID
        assert db_session.query(Conversation).one().channel == "messenger"

    def test_echo_is_not_stored(self, client, db_session, channel):
        response = _post(client, _event(message={"mid": "m_echo", "text": "Respuesta", "is_echo": True}))
        assert response.status_code == 200
        assert db_session.query(Message).count() == 0

    def test_page_sent_message_is_skipped(self, client, db_session, channel):
        event = {"sender": {"id": "PAGE_ID"}, "recipient": {"id": PSID}, "message": {"mid": "m_page", "text": "Hola"}}
        _post(client, event)
        assert db_session.query(Message).count() == 0

    def test_postback(self, client, db_session, channel):
        _post(client, _event(postback={"mid": "p_1", "title": "Ver catálogo", "payload": "CATALOG"}))
        message = db_session.query(Message).one()
        assert message.type == "postback"
        assert message.body == "Ver catálogo"

    def test_image_attachment(self, client, db_session, channel):
        info = MediaInfo(url="https://api.example.com/media/m.jpg", mime="image/jpeg", size=10, path="m.jpg", sha256="s")
        with patch("app.services.intake_service.relocate_media", new=AsyncMock(return_value=info)):
            _post(
                client,
                _event(message={"mid": "m_img", "attachments": [{"type": "image", "payload": {"url": "https://scontent.example.com/i.jpg"}}]}),
            )
        message = db_session.query(Message).one()
        assert message.type == "image"
        assert message.body == "image"
        assert message.media_url == "https://api.example.com/media/m.jpg"

    def test_unwritable_media_storage_still_persists(self, client, db_session, channel, test_settings, monkeypatch, tmp_path):
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("occupied")
        monkeypatch.setattr(test_settings, "media_storage_dir", str(blocker / "media"))

        response = _post(
            client,
            _event(message={"mid": "m_img", "attachments": [{"type": "image", "payload": {"url": "https://scontent.example.com/i.jpg"}}]}),
        )

        assert response.status_code == 200
        message = db_session.query(Message).one()
        assert message.type == "image"
        assert message.body.startswith("[Error al procesar image: storage_failed:")
        assert "https://scontent.example.com/i.jpg" in message.body
        assert message.media_url is None

    def test_raw_event_is_kept(self, client, db_session, channel):
        event = _event(message={"mid": "m_raw", "text": "Hola", "quick_reply": None})
        _post(client, event)

        raw = db_session.query(Message).one().message_metadata["raw"]
        assert raw["timestamp"] == event["timestamp"]
        assert raw["sender"] == {"id": PSID}
        assert raw["recipient"] == {"id": "PAGE_ID"}
        assert raw["message"]["quick_reply"] is None

    def test_wrong_object(self, client, channel):
        response = signed_post(client, "/webhooks/messenger", messaging_payload("instagram", []))
        assert response.status_code == 404


class TestMessengerReceipts:
    def test_delivery(self, client, db_session, channel):
        _post(client, _event(message={"mid": "m_1", "text": "Hola"}))
        conversation = db_session.query(Conversation).one()
        save_message(db_session, conversation.id, sender_type="bot", body="¡Hola!", provider="messenger", external_id="m_out")
        db_session.commit()

        _post(client, _event(delivery={"mids": ["m_out"], "watermark": int(time.time() * 1000)}))
        assert db_session.query(Message).filter(Message.external_id == "m_out").one().status == "delivered"

    def test_read_watermark_marks_sender_messages(self, client, db_session, channel):
        _post(client, _event(message={"mid": "m_1", "text": "Hola"}))
        _post(client, _event(message={"mid": "m_2", "text": "¿Siguen ahí?"}))
        watermark = int(time.time() * 1000) + 1000

        response = _post(client, _event(read={"watermark": watermark}))

        assert response.status_code == 200
        messages = db_session.query(Message).all()
        assert len(messages) == 2
        assert {message.status for message in messages} == {"read"}

    def test_read_watermark_in_the_past_changes_nothing(self, client, db_session, channel):
        _post(client, _event(message={"mid": "m_1", "text": "Hola"}))
        _post(client, _event(read={"watermark": 1000}))
        assert db_session.query(Message).one().status == "sent"


class TestProfileLookup:
    def test_profile_fetch_runs_off_the_event_loop(self, db_session, channel, profile):
        loop_threads = []
        fetch_threads = []

        def fetch(*args):
            fetch_threads.append(threading.get_ident())
            return {"first_name": "Luis"}

        profile.side_effect = fetch

        async def scenario():
            loop_threads.append(threading.get_ident())
            event = MessagingEvent.model_validate(_event(message={"mid": "m_thread", "text": "Hola"}))
            return await ingest_message(db_session, normalize_messaging_event("messenger", event), channel=channel)

        message, _ = asyncio.run(scenario())

        assert message is not None
        assert fetch_threads and fetch_threads[0] != loop_threads[0]
        assert db_session.query(Contact).one().name == "Luis"

    def test_known_contact_is_not_fetched_again(self, client, db_session, channel, profile):
        _post(client, _event(message={"mid": "m_1", "text": "Hola"}))
        _post(client, _event(message={"mid": "m_2", "text": "¿Sigues ahí?"}))
        profile.assert_called_once()
