import asyncio
import json
import time
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from app import database
from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.models import Channel, Conversation
from app.routers.common import get_dispatcher
from app.schemas.message import MessageOut
from app.schemas.widget import (
    WidgetConfigResponse,
    WidgetConversationResponse,
    WidgetMessageRequest,
    WidgetMessageResponse,
    WidgetMessagesResponse,
    stream_message_payload,
)
from app.services.ai_service import (
    AIConfig,
    build_system_prompt,
    get_conversation_history,
    get_llm_provider,
    load_ai_config,
    split_handoff_marker,
)
from app.services.auto_reply_service import apply_plan, plan_auto_reply
from app.services.channel_service import get_channel_by_widget_token
from app.services.contact_service import find_or_create_by_external_id
from app.services.conversation_service import (
    find_open_widget_conversation,
    find_or_create,
    get_conversation,
    mark_handoff,
    update_last_message,
)
from app.services.handoff_policy import is_ai_enabled
from app.services.llm import LLMProvider
from app.services.message_service import list_messages, list_new_messages, save_message
from app.services.state_machine import ConversationStatus

logger = get_logger("widget")

router = APIRouter(prefix="/widget", tags=["widget"])

WIDGET_DEFAULTS = {
    "welcome_title": "Chatea con nosotros",
    "welcome_message": "¡Hola! 👋 ¿En qué podemos ayudarte?",
    "widget_color": "#3B82F6",
    "position": "right",
    "reply_time": "few_minutes",
    "online_status": "auto",
    "pre_chat_form_enabled": True,
}

STREAM_SENDER_TYPES = ("agent", "bot")


def _require_channel(db: Session, token: Optional[str]) -> Channel:
    if not token:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Token required")
    channel = get_channel_by_widget_token(db, token)
    if channel is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invalid token")
    return channel


def _channel_conversation(
    db: Session, channel: Channel, conversation_id: UUID, visitor_id: Optional[str] = None
) -> Optional[Conversation]:
    """Conversation of this widget channel; when ``visitor_id`` is given it must own it."""
    conversation = get_conversation(db, conversation_id)
    if conversation is None or conversation.channel_id != channel.id:
        return None
    if visitor_id is not None:
        contact = conversation.contact
        if contact is None or contact.widget_visitor_id != visitor_id:
            logger.warning(
                "Widget conversation belongs to another visitor",
                extra={"context": {"conversation_id": str(conversation_id), "channel_id": str(channel.id)}},
            )
            return None
    return conversation


@router.get("/config", response_model=WidgetConfigResponse)
def get_widget_config(token: Optional[str] = Query(default=None), db: Session = Depends(get_db)):
    channel = _require_channel(db, token)
    config = channel.config or {}
    display = {key: default if config.get(key) is None else config[key] for key, default in WIDGET_DEFAULTS.items()}
    return WidgetConfigResponse(
        channel_id=channel.id,
        channel_name=channel.name,
        ai_enabled=is_ai_enabled(config),
        **display,
    )


@router.get("/conversation", response_model=WidgetConversationResponse)
def get_widget_conversation(
    token: Optional[str] = Query(default=None),
    visitor_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    if not visitor_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Token and visitor_id required")
    channel = _require_channel(db, token)
    conversation = find_open_widget_conversation(db, channel.id, visitor_id)
    return WidgetConversationResponse(conversation_id=conversation.id if conversation else None)


def _accept_visitor_message(db: Session, data: WidgetMessageRequest, request: Request):
    """Store a visitor message and evaluate the auto-reply policy.

    Returns (channel, conversation, plan, job). The caller decides how the job runs.
    """
    if not data.token or not (data.message or "").strip() or not data.visitor_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Token, message and visitor_id required")
    channel = _require_channel(db, data.token)
    visitor_info = data.visitor_info

    contact = find_or_create_by_external_id(
        db,
        "website",
        data.visitor_id,
        display_name_hint=visitor_info.name if visitor_info else None,
        email=visitor_info.email if visitor_info else None,
        phone=visitor_info.phone if visitor_info else None,
    )

    conversation = None
    if data.conversation_id:
        conversation = _channel_conversation(db, channel, data.conversation_id, data.visitor_id)
        if conversation is not None and conversation.status != ConversationStatus.OPEN.value:
            conversation = None
    if conversation is None:
        conversation = find_or_create(
            db,
            contact.id,
            "website",
            channel.id,
            metadata={
                "visitor_id": data.visitor_id,
                "visitor_info": visitor_info.model_dump(exclude_none=True) if visitor_info else None,
                "user_agent": request.headers.get("user-agent"),
                "origin": request.headers.get("origin"),
            },
        )

    plan = plan_auto_reply(db, channel, conversation, data.message, is_plain_text=True)

    message = save_message(
        db,
        conversation.id,
        body=data.message,
        sender_type="user",
        sender_id=data.visitor_id,
        provider="website",
        message_metadata={"visitor_id": data.visitor_id},
    )
    update_last_message(db, conversation.id)
    job = apply_plan(db, plan, channel, conversation, data.message)
    db.commit()

    logger.info(
        "Widget message stored",
        extra={"context": {"conversation_id": str(conversation.id), "message_id": str(message.id), "job": job.kind if job else None}},
    )
    return channel, conversation, plan, job


@router.post("/message", response_model=WidgetMessageResponse)
async def post_widget_message(data: WidgetMessageRequest, request: Request, db: Session = Depends(get_db)):
    channel, conversation, plan, job = _accept_visitor_message(db, data, request)
    if job is not None:
        get_dispatcher(request).dispatch(job)
    return WidgetMessageResponse(
        success=True,
        conversation_id=conversation.id,
        ai_enabled=is_ai_enabled(channel.config),
        handoff_to_human=plan.handoff,
    )


def _event(payload: dict) -> dict:
    return {"data": json.dumps(payload, ensure_ascii=False)}


def _store_streamed_reply(
    conversation_id: UUID,
    text: str,
    metadata: dict,
    *,
    handoff: bool = False,
    session_factory=None,
) -> None:
    db = (session_factory or database.SessionLocal)()
    try:
        conversation = get_conversation(db, conversation_id)
        if conversation is None:
            logger.warning("Streamed reply for missing conversation", extra={"context": {"conversation_id": str(conversation_id)}})
            return
        if text:
            save_message(db, conversation_id, body=text, sender_type="bot", provider="website", message_metadata=metadata)
            update_last_message(db, conversation_id)
        if handoff:
            mark_handoff(db, conversation)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


async def widget_ai_reply_stream(
    conversation_id: UUID,
    *,
    provider: LLMProvider,
    config: AIConfig,
    system_prompt: str,
    history: list,
    session_factory=None,
):
    """Stream an AI reply to the widget and store it once complete.

    Frames: ``start``, one ``chunk`` per delta, then ``done``. If the provider fails the
    fallback text is stored and sent in an ``error`` frame. A reply carrying the handoff
    marker is stored without it and hands the conversation to a human.
    """
    yield _event({"type": "start", "conversation_id": str(conversation_id)})
    parts = []
    try:
        async for chunk in provider.stream_reply(
            system_prompt,
            history,
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        ):
            parts.append(chunk)
            yield _event({"type": "chunk", "content": chunk})
    except Exception as exc:
        logger.error(
            "Streaming AI reply failed, using fallback",
            extra={"context": {"conversation_id": str(conversation_id), "error": str(exc), "model": config.model}},
        )
        _store_streamed_reply(
            conversation_id,
            config.fallback_message,
            {"is_auto_reply": True, "streamed": True, "fallback": True},
            session_factory=session_factory,
        )
        yield _event({"type": "error", "fallback": config.fallback_message})
        return

    text, handoff = split_handoff_marker("".join(parts))
    metadata = {"is_auto_reply": True, "streamed": True, "model": config.model}
    if handoff:
        metadata["handoff"] = True
    _store_streamed_reply(conversation_id, text, metadata, handoff=handoff, session_factory=session_factory)
    logger.info(
        "Streamed AI reply stored",
        extra={"context": {"conversation_id": str(conversation_id), "handoff": handoff, "chunks": len(parts)}},
    )
    yield _event({"type": "done", "full_response": text, "handoff_to_human": handoff})


@router.post("/ai-stream")
async def stream_widget_ai_reply(data: WidgetMessageRequest, request: Request, db: Session = Depends(get_db)):
    """Like ``/message`` but the AI reply is streamed back on this response as SSE."""
    channel, conversation, plan, job = _accept_visitor_message(db, data, request)

    if job is None or job.kind != "reply":
        if job is not None:
            get_dispatcher(request).dispatch(job)
        return WidgetMessageResponse(
            success=True,
            conversation_id=conversation.id,
            ai_enabled=plan.allowed,
            handoff_to_human=plan.handoff,
            reason="handoff" if plan.handoff else "ai_not_replying",
        )

    config = load_ai_config(channel.config)
    provider = get_llm_provider(config)
    if provider is None:
        # The background path stores and sends the fallback text
        get_dispatcher(request).dispatch(job)
        return WidgetMessageResponse(
            success=True,
            conversation_id=conversation.id,
            ai_enabled=False,
            reason="ai_not_available",
        )

    contact_name = data.visitor_info.name if data.visitor_info and data.visitor_info.name else None
    if contact_name is None and conversation.contact is not None:
        contact_name = conversation.contact.name
    return EventSourceResponse(
        widget_ai_reply_stream(
            conversation.id,
            provider=provider,
            config=config,
            system_prompt=build_system_prompt(config, contact_name=contact_name, channel="website"),
            history=get_conversation_history(db, conversation.id),
        ),
        headers={"Cache-Control": "no-cache, no-transform"},
    )


@router.get("/messages", response_model=WidgetMessagesResponse)
def get_widget_messages(
    token: Optional[str] = Query(default=None),
    conversation_id: Optional[UUID] = Query(default=None),
    last_message_id: Optional[UUID] = Query(default=None),
    visitor_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    channel = _require_channel(db, token)
    if conversation_id is None:
        return WidgetMessagesResponse(messages=[])
    if _channel_conversation(db, channel, conversation_id, visitor_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    messages = list_messages(db, conversation_id, after_message_id=last_message_id)
    return WidgetMessagesResponse(messages=[MessageOut.model_validate(message) for message in messages])


async def widget_event_stream(
    request: Request,
    conversation_id: UUID,
    *,
    session_factory=None,
    ping_seconds: Optional[float] = None,
    poll_seconds: Optional[float] = None,
):
    """Live feed of agent/bot messages for one conversation.

    The subscription owns one DB session from connect to disconnect.
    """
    ping_seconds = ping_seconds if ping_seconds is not None else settings.widget_stream_ping_seconds
    poll_seconds = poll_seconds if poll_seconds is not None else settings.widget_stream_poll_seconds
    db = (session_factory or database.SessionLocal)()
    since = datetime.now(timezone.utc)
    seen: set = set()
    last_ping = time.monotonic()
    logger.info("Widget stream opened", extra={"context": {"conversation_id": str(conversation_id)}})
    try:
        yield _event({"type": "connected"})
        while True:
            if await request.is_disconnected():
                break
            for message in list_new_messages(db, conversation_id, STREAM_SENDER_TYPES, seen, since):
                seen.add(message.id)
                yield _event({"type": "message", "message": stream_message_payload(message)})
            # End the read transaction so the next poll sees newly committed rows
            db.rollback()
            if time.monotonic() - last_ping >= ping_seconds:
                last_ping = time.monotonic()
                yield _event({"type": "ping"})
            await asyncio.sleep(poll_seconds)
    finally:
        db.close()
        logger.info("Widget stream closed", extra={"context": {"conversation_id": str(conversation_id)}})


@router.get("/stream")
def stream_widget_conversation(
    request: Request,
    token: Optional[str] = Query(default=None),
    conversation_id: Optional[UUID] = Query(default=None),
    visitor_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    if not token or conversation_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing token or conversation_id")
    channel = get_channel_by_widget_token(db, token)
    if channel is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if _channel_conversation(db, channel, conversation_id, visitor_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")

    return EventSourceResponse(
        widget_event_stream(request, conversation_id),
        headers={"Cache-Control": "no-cache, no-transform"},
    )
