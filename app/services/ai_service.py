from typing import List, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.services.llm import LLMProvider, OpenAIProvider
from app.services.message_service import list_recent_messages
from app.services.result import Result

logger = get_logger("ai_service")

DEFAULT_SYSTEM_PROMPT = (
    "Eres un asistente de atención al cliente amigable y profesional. "
    "Tu objetivo es ayudar a los clientes respondiendo sus preguntas de manera clara y concisa. "
    "Si no conoces la respuesta, admítelo honestamente. "
    "Si el usuario necesita ayuda especializada, ofrece transferirlo a un agente humano."
)
DEFAULT_FALLBACK_MESSAGE = "Lo siento, no pude procesar tu mensaje. Un agente te atenderá pronto."
HANDOFF_MESSAGE = "Entiendo que prefieres hablar con un agente humano. Transfiriendo tu conversación..."
DEFAULT_HANDOFF_KEYWORDS = ["agente", "humano", "persona", "hablar con alguien"]
# Emitted by the model when it decides a human should take over
HANDOFF_MARKER = "<<HANDOFF_TO_HUMAN>>"

SUPPORTED_PROVIDERS = ("openai",)


class AIConfig(BaseModel):
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_key: Optional[str] = None
    response_mode: str = "hybrid"  # ai_only, agent_only, hybrid
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    temperature: float = 0.7
    max_tokens: int = 500
    auto_reply: bool = True
    auto_reply_delay: float = 0
    handoff_keywords: List[str] = Field(default_factory=lambda: list(DEFAULT_HANDOFF_KEYWORDS))
    fallback_message: str = DEFAULT_FALLBACK_MESSAGE


def load_ai_config(channel_config: Optional[dict]) -> AIConfig:
    raw = (channel_config or {}).get("ai_config") or {}
    cleaned = {key: value for key, value in raw.items() if value is not None and value != ""}
    return AIConfig.model_validate(cleaned)


def matches_handoff_keyword(text: Optional[str], keywords: List[str]) -> bool:
    """Case-insensitive substring match against the configured handoff keywords."""
    normalized = (text or "").casefold()
    if not normalized:
        return False
    return any(keyword and keyword.casefold() in normalized for keyword in keywords)


def split_handoff_marker(text: Optional[str]) -> Tuple[str, bool]:
    """Strip the handoff marker from a reply. Returns (clean_text, handoff_requested)."""
    text = text or ""
    if HANDOFF_MARKER not in text:
        return text.strip(), False
    return text.replace(HANDOFF_MARKER, "").strip(), True


def get_llm_provider(config: AIConfig) -> Optional[LLMProvider]:
    if config.provider not in SUPPORTED_PROVIDERS:
        logger.warning("Unsupported AI provider", extra={"context": {"provider": config.provider}})
        return None
    api_key = config.api_key or settings.openai_api_key
    if not api_key:
        logger.warning("AI provider has no API key configured")
        return None
    return OpenAIProvider(api_key=api_key, default_model=config.model)


def get_conversation_history(db: Session, conversation_id: UUID, limit: Optional[int] = None) -> List[dict]:
    """Recent messages as chat turns: visitor/contact messages are ``user``, the rest ``assistant``."""
    messages = list_recent_messages(db, conversation_id, limit or settings.ai_context_messages)
    history = []
    for msg in messages:
        if not msg.body:
            continue
        role = "user" if msg.sender_type == "user" else "assistant"
        history.append({"role": role, "content": msg.body})
    return history


def build_system_prompt(config: AIConfig, *, contact_name: Optional[str] = None, channel: Optional[str] = None) -> str:
    system_prompt = config.system_prompt
    details = []
    if contact_name:
        details.append(f"Nombre del cliente: {contact_name}")
    if channel:
        details.append(f"Canal: {channel}")
    if details:
        system_prompt = f"{system_prompt}\n\n" + "\n".join(details)
    return system_prompt


def generate_ai_response(
    config: AIConfig,
    history: List[dict],
    *,
    contact_name: Optional[str] = None,
    channel: Optional[str] = None,
    provider: Optional[LLMProvider] = None,
) -> Result[str]:
    """Generate a reply for the conversation history. Never raises."""
    provider = provider or get_llm_provider(config)
    if provider is None:
        return Result.failure("AI provider not available", "ai_unavailable")

    try:
        response = provider.reply(
            build_system_prompt(config, contact_name=contact_name, channel=channel),
            history,
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
    except Exception as e:
        logger.error("AI generation failed", extra={"context": {"error": str(e), "model": config.model}})
        return Result.failure(str(e), "ai_error")

    content = response.text
    if not content:
        return Result.failure("Empty AI response", "ai_empty")
    return Result.success(content)
