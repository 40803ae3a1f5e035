import asyncio
import threading
import uuid
from unittest.mock import Mock, patch

import pytest

from app.models import Conversation, Message
from app.services.ai_service import HANDOFF_MESSAGE
from app.services.auto_reply_service import (
    AutoReplyDispatcher,
    AutoReplyJob,
    AutoReplyPlan,
    apply_plan,
    execute_job,
    plan_auto_reply,
)
from app.services.contact_service import find_or_create_by_external_id
from app.services.conversation_service import find_or_create, mark_handoff
from app.services.message_service import save_message
from app.services.result import Result
from factories import make_channel

AI_CHANNEL_CONFIG = {
    "access_token": "wa-token",
    "phone_number_id": "1234567890",
    "ai_enabled": True,
    "ai_config": {"response_mode": "hybrid", "fallback_message": "Un agente te responderá."},
}


@pytest.fixture
def channel(db_session):
    return make_channel(db_session, "whatsapp", AI_CHANNEL_CONFIG)


@pytest.fixture
def conversation(db_session, channel):
    contact = find_or_create_by_external_id(db_session, "whatsapp", "51999888777", display_name_hint="Ana")
    return find_or_create(db_session, contact.id, "whatsapp", channel.id)


@pytest.fixture
def graph_client():
    client = Mock()
    client.send_text.return_value = {"ok": True, "message_id": "wamid.out"}
    with patch("app.services.outbound_service.client_for_channel", return_value=client):
        yield client


class TestPlanAutoReply:
    def test_plain_text_replies(self, db_session, channel, conversation):
        plan = plan_auto_reply(db_session, channel, conversation, "Hola", is_plain_text=True)
        assert plan.reply is True
        assert plan.handoff is False

    def test_media_never_replies(self, db_session, channel, conversation):
        assert plan_auto_reply(db_session, channel, conversation, None, is_plain_text=False) == AutoReplyPlan()

    def test_agent_spoke_last(self, db_session, channel, conversation):
        save_message(db_session, conversation.id, sender_type="agent", body="Te atiendo yo")
        assert plan_auto_reply(db_session, channel, conversation, "Gracias", is_plain_text=True).allowed is False

    def test_handoff_keyword(self, db_session, channel, conversation):
        plan = plan_auto_reply(db_session, channel, conversation, "Quiero un humano", is_plain_text=True)
        assert plan.handoff is True
        assert plan.reply is False

    def test_after_handoff_ai_stays_out(self, db_session, channel, conversation):
        mark_handoff(db_session, conversation)
        assert plan_auto_reply(db_session, channel, conversation, "Hola", is_plain_text=True).allowed is False

    def test_ai_disabled(self, db_session, conversation):
        channel = make_channel(db_session, "whatsapp", {"ai_enabled": False})
        assert plan_auto_reply(db_session, channel, conversation, "Hola", is_plain_text=True).allowed is False

    def test_auto_reply_switched_off(self, db_session, conversation):
        channel = make_channel(db_session, "whatsapp", {"ai_enabled": True, "ai_config": {"auto_reply": False}})
        assert plan_auto_reply(db_session, channel, conversation, "Hola", is_plain_text=True).reply is False


class TestApplyPlan:
    def test_reply_job(self, db_session, channel, conversation):
        job = apply_plan(db_session, AutoReplyPlan(allowed=True), channel, conversation, "Hola")
        assert job.kind == "reply"
        assert job.user_message == "Hola"
        assert job.channel_id == channel.id

    def test_handoff_marks_conversation(self, db_session, channel, conversation):
        job = apply_plan(db_session, AutoReplyPlan(allowed=True, handoff=True), channel, conversation, "humano")
        assert job.kind == "handoff_notice"
        assert conversation.handoff_at is not None

    def test_nothing_to_do(self, db_session, channel, conversation):
        assert apply_plan(db_session, AutoReplyPlan(), channel, conversation, "Hola") is None


class TestExecuteJob:
    def _job(self, conversation, channel, kind="reply"):
        return AutoReplyJob(kind=kind, conversation_id=conversation.id, channel_id=channel.id, user_message="Hola")

    def test_reply_is_stored_and_sent(self, db_session, channel, conversation, graph_client):
        save_message(db_session, conversation.id, sender_type="user", body="Hola", provider="whatsapp")
        job = self._job(conversation, channel)
        db_session.commit()

        with patch("app.services.auto_reply_service.generate_ai_response", return_value=Result.success("¡Hola Ana!")) as mock_ai:
            asyncio.run(execute_job(job, session_factory=lambda: db_session))

        assert mock_ai.call_args.kwargs["contact_name"] == "Ana"
        graph_client.send_text.assert_called_once_with("whatsapp", AI_CHANNEL_CONFIG, "51999888777", "¡Hola Ana!")
        reply = db_session.query(Message).filter(Message.sender_type == "bot").one()
        assert reply.body == "¡Hola Ana!"
        assert reply.external_id == "wamid.out"
        assert reply.status == "sent"
        assert reply.message_metadata["is_auto_reply"] is True

    def test_ai_failure_sends_fallback(self, db_session, channel, conversation, graph_client):
        job = self._job(conversation, channel)
        db_session.commit()

        with patch("app.services.auto_reply_service.generate_ai_response", return_value=Result.failure("boom", "ai_error")):
            asyncio.run(execute_job(job, session_factory=lambda: db_session))

        reply = db_session.query(Message).filter(Message.sender_type == "bot").one()
        assert reply.body == "Un agente te responderá."
        assert reply.message_metadata["fallback"] is True

    def test_handoff_notice(self, db_session, channel, conversation, graph_client):
        job = self._job(conversation, channel, kind="handoff_notice")
        db_session.commit()

        with patch("app.services.auto_reply_service.generate_ai_response") as mock_ai:
            asyncio.run(execute_job(job, session_factory=lambda: db_session))

        mock_ai.assert_not_called()
        reply = db_session.query(Message).filter(Message.sender_type == "bot").one()
        assert reply.body == HANDOFF_MESSAGE
        assert reply.message_metadata["handoff"] is True

    def test_skips_when_handed_off_meanwhile(self, db_session, channel, conversation, graph_client):
        job = self._job(conversation, channel)
        mark_handoff(db_session, conversation)
        db_session.commit()

        with patch("app.services.auto_reply_service.generate_ai_response") as mock_ai:
            asyncio.run(execute_job(job, session_factory=lambda: db_session))

        mock_ai.assert_not_called()
        assert db_session.query(Message).count() == 0

    def test_send_failure_is_stored_as_failed(self, db_session, channel, conversation, graph_client):
        graph_client.send_text.return_value = {"ok": False, "error": {"message": "token expired"}}
        job = self._job(conversation, channel)
        db_session.commit()

        with patch("app.services.auto_reply_service.generate_ai_response", return_value=Result.success("Hola")):
            asyncio.run(execute_job(job, session_factory=lambda: db_session))

        reply = db_session.query(Message).one()
        assert reply.status == "failed"
        assert "token expired" in reply.message_metadata["send_error"]

    def test_missing_conversation(self, db_session, channel, graph_client):
        job = AutoReplyJob(kind="reply", conversation_id=uuid.uuid4(), channel_id=channel.id)
        db_session.commit()
        asyncio.run(execute_job(job, session_factory=lambda: db_session))
        graph_client.send_text.assert_not_called()
        assert db_session.query(Message).count() == 0

    def test_provider_send_runs_off_the_event_loop(self, db_session, channel, conversation, graph_client):
        job = self._job(conversation, channel)
        db_session.commit()
        loop_threads = []
        send_threads = []

        def send_text(*args):
            send_threads.append(threading.get_ident())
            return {"ok": True, "message_id": "wamid.out"}

        graph_client.send_text.side_effect = send_text

        async def scenario():
            loop_threads.append(threading.get_ident())
            await execute_job(job, session_factory=lambda: db_session)

        with patch("app.services.auto_reply_service.generate_ai_response", return_value=Result.success("Hola")):
            asyncio.run(scenario())

        assert send_threads and send_threads[0] != loop_threads[0]

    def test_model_requested_handoff(self, db_session, channel, conversation, graph_client):
        job = self._job(conversation, channel)
        conversation_id = conversation.id
        db_session.commit()

        reply_text = "Te comunico con un asesor. <<HANDOFF_TO_HUMAN>>"
        with patch("app.services.auto_reply_service.generate_ai_response", return_value=Result.success(reply_text)):
            asyncio.run(execute_job(job, session_factory=lambda: db_session))

        reply = db_session.query(Message).filter(Message.sender_type == "bot").one()
        assert reply.body == "Te comunico con un asesor."
        assert reply.message_metadata["handoff"] is True
        graph_client.send_text.assert_called_once_with("whatsapp", AI_CHANNEL_CONFIG, "51999888777", "Te comunico con un asesor.")
        assert db_session.query(Conversation).filter(Conversation.id == conversation_id).one().handoff_at is not None


class TestDispatcher:
    def test_dispatch_runs_job_and_logs_failures(self):
        async def scenario():
            dispatcher = AutoReplyDispatcher()
            job = AutoReplyJob(kind="reply", conversation_id=None, channel_id=None)
            with patch("app.services.auto_reply_service.execute_job", side_effect=RuntimeError("boom")) as mock_execute:
                task = dispatcher.dispatch(job)
                assert dispatcher.pending == 1
                await asyncio.gather(task, return_exceptions=True)
                await asyncio.sleep(0)
            return dispatcher, mock_execute

        dispatcher, mock_execute = asyncio.run(scenario())
        mock_execute.assert_called_once()
        assert dispatcher.pending == 0

    def test_shutdown_cancels_pending(self):
        async def scenario():
            dispatcher = AutoReplyDispatcher()
            started = asyncio.Event()

            async def slow_job(job, session_factory):
                started.set()
                await asyncio.sleep(60)

            with patch("app.services.auto_reply_service.execute_job", side_effect=slow_job):
                task = dispatcher.dispatch(AutoReplyJob(kind="reply", conversation_id=None, channel_id=None))
                await started.wait()
                await dispatcher.shutdown()
            return dispatcher, task

        dispatcher, task = asyncio.run(scenario())
        assert task.cancelled()
        assert dispatcher.pending == 0
