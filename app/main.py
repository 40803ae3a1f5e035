from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.logging_config import get_logger, setup_logging
from app.routers import (
    conversations,
    instagram_webhook,
    media,
    messenger_webhook,
    meta_webhook,
    whatsapp_webhook,
    widget,
)
from app.services.auto_reply_service import AutoReplyDispatcher

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Omnichannel Intake API",
    description="Webhook intake and message normalization for WhatsApp, Messenger, Instagram and the website widget",
    version="0.1.0",
)

# The widget is embedded on third-party sites and calls these endpoints from the browser
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=86400,
)

app.state.auto_reply_dispatcher = AutoReplyDispatcher()

app.include_router(whatsapp_webhook.router)
app.include_router(messenger_webhook.router)
app.include_router(instagram_webhook.router)
app.include_router(meta_webhook.router)
app.include_router(widget.router)
app.include_router(media.router)
app.include_router(conversations.router)


@app.on_event("shutdown")
async def stop_auto_reply_tasks() -> None:
    dispatcher: AutoReplyDispatcher = app.state.auto_reply_dispatcher
    if dispatcher.pending:
        logger.info("Cancelling pending auto replies", extra={"context": {"pending": dispatcher.pending}})
    await dispatcher.shutdown()


@app.get("/health")
async def health():
    return {"status": "ok"}
