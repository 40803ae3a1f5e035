import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None

    @property
    def text(self) -> str:
        return (self.content or "").strip()


class LLMError(Exception):
    """Raised when a provider call fails or returns an error status."""


class LLMProvider(ABC):
    """Chat-completion backend used by the auto-responder."""

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> LLMResponse:
        """Generate response from LLM."""

    async def stream(self, messages: List[dict], **options) -> AsyncIterator[str]:
        """Yield the reply as text chunks.

        Providers without native streaming produce the whole reply as one chunk.
        """
        response = await asyncio.to_thread(self.generate, messages, **options)
        if response.content:
            yield response.content

    def reply(self, system_prompt: str, history: List[dict], **options) -> LLMResponse:
        """Answer a conversation: system prompt first, then the chat turns oldest first."""
        return self.generate(_with_system(system_prompt, history), **options)

    def stream_reply(self, system_prompt: str, history: List[dict], **options) -> AsyncIterator[str]:
        return self.stream(_with_system(system_prompt, history), **options)


def _with_system(system_prompt: str, history: List[dict]) -> List[dict]:
    return [{"role": "system", "content": system_prompt}, *history]
