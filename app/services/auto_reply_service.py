import asyncio
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app import database
from app.logging_config import get_logger
from app.models import Channel, Conversation
from app.services.ai_service import (
    HANDOFF_MESSAGE,
    generate_ai_response,
    get_conversation_history,
    load_ai_config,
    matches_handoff_keyword,
    split_handoff_marker,
)
from app.services.conversation_service import get_conversation, mark_handoff
from app.services.handoff_policy import should_auto_reply
from app.services.outbound_service import deliver_message_async
from app.services.state_machine import ConversationStatus

logger = get_logger("auto_reply")


@dataclass
class AutoReplyJob:
    kind: str  # reply, handoff_notice
    conversation_id: UUID
    channel_id: Optional[UUID]
    user_message: str = ""


@dataclass
class AutoReplyPlan:
    allowed: bool = False
    handoff: bool = False

    @property
    def reply(self) -> bool:
        return self.allowed and not self.handoff


def plan_auto_reply(
    db: Session,
    channel: Optional[Channel],
    conversation: Conversation,
    text: Optional[str],
    is_plain_text: bool,
) -> AutoReplyPlan:
    """Evaluate the AI policy for an inbound message that has NOT been stored yet."""
    if channel is None or not is_plain_text:
        return AutoReplyPlan()
    if conversation.handoff_at is not None:
        return AutoReplyPlan()
    if not should_auto_reply(db, channel.config, conversation.id):
        return AutoReplyPlan()

    config = load_ai_config(channel.config)
    if matches_handoff_keyword(text, config.handoff_keywords):
        return AutoReplyPlan(allowed=True, handoff=True)
    return AutoReplyPlan(allowed=config.auto_reply)


def apply_plan(
    db: Session,
    plan: AutoReplyPlan,
    channel: Optional[Channel],
    conversation: Conversation,
    text: Optional[str],
) -> Optional[AutoReplyJob]:
    """Run the synchronous part of a plan (handoff marking) and return the job to dispatch."""
    channel_id = channel.id if channel else None
    if plan.handoff:
        mark_handoff(db, conversation)
        return AutoReplyJob(kind="handoff_notice", conversation_id=conversation.id, channel_id=channel_id)
    if plan.reply:
        return AutoReplyJob(kind="reply", conversation_id=conversation.id, channel_id=channel_id, user_message=text or "")
    return None


async def execute_job(job: AutoReplyJob, session_factory=None) -> None:
    """Background half of an auto reply. Owns its session for its whole lifetime."""
    db = (session_factory or database.SessionLocal)()
    try:
        conversation = get_conversation(db, job.conversation_id)
        if conversation is None:
            logger.warning("Auto reply for missing conversation", extra={"context": {"conversation_id": str(job.conversation_id)}})
            return
        channel = db.query(Channel).filter(Channel.id == job.channel_id).first() if job.channel_id else None
        config = load_ai_config(channel.config if channel else None)

        if job.kind == "handoff_notice":
            text = HANDOFF_MESSAGE
            metadata = {"is_auto_reply": True, "handoff": True}
        else:
            if conversation.handoff_at is not None or conversation.status != ConversationStatus.OPEN.value:
                return
            if config.auto_reply_delay:
                await asyncio.sleep(float(config.auto_reply_delay))
            history = get_conversation_history(db, conversation.id)
            contact_name = conversation.contact.name if conversation.contact else None
            result = await asyncio.to_thread(
                generate_ai_response,
                config,
                history,
                contact_name=contact_name,
                channel=conversation.channel,
            )
            if not result.ok:
                logger.warning(
                    "AI reply failed, using fallback",
                    extra={"context": {"conversation_id": str(conversation.id), "error": result.error, "code": result.error_code}},
                )
            text = result.unwrap_or(config.fallback_message)
            metadata = {"is_auto_reply": True, "model": config.model}
            if not result.ok:
                metadata["fallback"] = True
            else:
                text, handoff = split_handoff_marker(text)
                if handoff:
                    mark_handoff(db, conversation)
                    metadata["handoff"] = True
                    text = text or HANDOFF_MESSAGE

        message, send_result = await deliver_message_async(
            db,
            channel=channel,
            conversation=conversation,
            text=text,
            sender_type="bot",
            message_metadata=metadata,
        )
        db.commit()
        logger.info(
            "Auto reply stored",
            extra={
                "context": {
                    "conversation_id": str(conversation.id),
                    "message_id": str(message.id),
                    "kind": job.kind,
                    "delivered": send_result.ok,
                }
            },
        )
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


class AutoReplyDispatcher:
    """Runs auto-reply jobs as detached tasks, decoupled from the request that queued them."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, job: AutoReplyJob) -> asyncio.Task:
        task = asyncio.create_task(execute_job(job, self.session_factory))
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Auto reply task failed",
                extra={"context": {"error": str(exc)}},
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
