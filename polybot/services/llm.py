"""
Language-model adapter for /ask and chat mode.

Wraps the Anthropic Messages API. ``ask`` is single-shot; ``converse`` sends a
session's Conversation history and records the exchange only when the model
answered, so a failed call never leaves a dangling user turn.
"""

from __future__ import annotations

from typing import Any, Optional

import anthropic
import structlog

from polybot.config import LLMConfig
from polybot.errors import LLMError
from polybot.sessions import Conversation

logger = structlog.get_logger(__name__)


def _response_text(response: Any) -> str:
    parts = [
        getattr(block, "text", "")
        for block in getattr(response, "content", None) or []
        if getattr(block, "type", None) == "text"
    ]
    text = "".join(parts).strip()
    if not text:
        raise LLMError("model returned no text")
    return text


class LanguageModel:
    def __init__(self, config: LLMConfig, client: Optional[Any] = None) -> None:
        self._config = config
        if client is None and config.is_available:
            client = anthropic.AsyncAnthropic(api_key=config.api_key)
        self._client = client

    @property
    def available(self) -> bool:
        return self._client is not None

    @property
    def chat_prompt(self) -> str:
        return self._config.chat_prompt

    async def _complete(self, system: str, messages: list[dict[str, str]]) -> str:
        if self._client is None:
            raise LLMError("no language model configured (set ANTHROPIC_API_KEY)")
        try:
            response = await self._client.messages.create(
                model=self._config.model,
                max_tokens=self._config.max_tokens,
                system=system,
                messages=messages,
            )
        except anthropic.APIError as e:
            raise LLMError(f"model request failed: {e}") from e
        return _response_text(response)

    async def ask(self, question: str) -> str:
        return await self._complete(
            self._config.ask_prompt,
            [{"role": "user", "content": question}],
        )

    async def converse(self, conversation: Conversation, text: str) -> str:
        answer = await self._complete(
            conversation.system_prompt or self._config.chat_prompt,
            conversation.messages_with(text),
        )
        conversation.add_exchange(text, answer)
        logger.debug("llm.conversation_turn", history_length=len(conversation))
        return answer
