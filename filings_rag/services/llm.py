# =============================================================================
# Chat Model Client — OpenAI-Compatible Streaming
# =============================================================================
#
# The /chat endpoint is a thin consumer of the retrieval service: it puts the
# context bundle into a system prompt and streams the model's answer back.
# This module is the only place that talks to the chat model.
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# Matches the SimilarityIndex and Embedder protocols. Tests substitute a
# fake with the same `stream()` method.
#
# DESIGN DECISION: Native SDK over framework wrappers.
# The openai SDK with a custom base_url covers OpenAI and every provider
# exposing an OpenAI-compatible API (DeepSeek, Qwen, ...).
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   └── OpenAICompatibleProvider
#       └── stream()    — async iterator of text deltas
#   get_llm_provider()  — lazy singleton, reads from config
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Protocol

from openai import AsyncOpenAI

from filings_rag.config import settings
from filings_rag.errors import ConfigurationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """Interface the chat endpoint depends on."""

    def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """
        Stream the completion as text deltas.

        Args:
            messages: Conversation as dicts with "role" and "content"
                ("user" / "assistant"; pass the system prompt separately).
            system: System prompt, sent as the first message.
            temperature: Override sampling temperature (default from config).
            max_tokens: Override max output tokens (default from config).
        """
        ...


# ---------------------------------------------------------------------------
# Implementation: OpenAI-Compatible
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Chat provider for any API that follows the OpenAI chat completions API.

    Switching providers is a config change:
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        if client is not None:
            self._client = client
            return

        resolved_key = api_key or settings.llm_api_key or settings.openai_api_key
        if not resolved_key:
            raise ConfigurationError(
                "No API key configured for the chat model. "
                "Set LLM_API_KEY or OPENAI_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        resolved_base_url = base_url or settings.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    def _request_kwargs(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict:
        # OpenAI: system prompt goes as the first message
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        return {
            "model": self._model,
            "messages": all_messages,
            "max_tokens": max_tokens if max_tokens is not None else self._max_tokens,
            "temperature": temperature if temperature is not None else self._temperature,
        }

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        response = await self._client.chat.completions.create(
            **self._request_kwargs(messages, system, temperature, max_tokens),
            stream=True,
        )
        async for event in response:
            # The final usage-only event has no choices
            if not event.choices:
                continue
            delta = event.choices[0].delta.content
            if delta:
                yield delta


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

# Lazy singleton — avoid re-creating client on every request
_provider: OpenAICompatibleProvider | None = None


def get_llm_provider() -> OpenAICompatibleProvider:
    """Return the configured chat provider, created on first use."""
    global _provider
    if _provider is None:
        _provider = OpenAICompatibleProvider()
    return _provider
