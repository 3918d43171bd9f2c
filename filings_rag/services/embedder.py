# =============================================================================
# Embedding Service — Query and Batch Vector Generation
# =============================================================================
#
# Generates vector embeddings using any OpenAI-compatible embedding API.
#
# The retrieval service depends only on the `Embedder` protocol:
#     async embed(text) -> list[float]
# OpenAIEmbedder is the production implementation; tests pass fakes.
#
# ERROR MAPPING:
# Every SDK failure (rate limit, timeout, connection error, 5xx, bad
# request) becomes EmbeddingProviderError, as does a vector of the wrong
# dimension. A missing API key is a ConfigurationError, which is never
# retried. Retries live in the caller's RetryPolicy, not here.
#
# TOKEN LIMITS:
# - Each text: max 8,191 tokens
# - embed_batch() sends settings.embedding_batch_size texts per call
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from openai import AsyncOpenAI, OpenAIError

from filings_rag.config import settings
from filings_rag.errors import ConfigurationError, EmbeddingProviderError

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    """Capability interface: turn one text into one dense vector."""

    async def embed(self, text: str) -> list[float]:
        ...


# ---------------------------------------------------------------------------
# Embedding Client — Lazy Singleton
# ---------------------------------------------------------------------------
# API key resolution order:
#   1. OPENAI_API_KEY (explicit embedding key)
#   2. LLM_API_KEY (shared key for an OpenAI-compatible provider)
# ---------------------------------------------------------------------------

_client: AsyncOpenAI | None = None


def _get_client() -> AsyncOpenAI:
    """Lazily initialize and cache the async embedding client."""
    global _client
    if _client is None:
        resolved_key = settings.openai_api_key or settings.llm_api_key
        if not resolved_key:
            raise ConfigurationError(
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        if settings.embedding_base_url:
            client_kwargs["base_url"] = settings.embedding_base_url

        _client = AsyncOpenAI(**client_kwargs)

        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            settings.embedding_model,
            settings.embedding_base_url or "https://api.openai.com/v1",
        )
    return _client


class OpenAIEmbedder:
    """
    Embedder backed by the OpenAI embeddings endpoint.

    The client is injectable for tests; by default the shared lazy
    singleton is used.
    """

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        dimensions: int | None = None,
    ) -> None:
        self._client = client
        self._model = model or settings.embedding_model
        self._dimensions = dimensions or settings.embedding_dimensions

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = _get_client()
        return self._client

    async def embed(self, text: str) -> list[float]:
        """Embed a single query string."""
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        """
        Embed texts in one API call, returned in input order.

        Raises:
            EmbeddingProviderError: On any SDK error, a short response,
                or a vector whose length is not the configured dimension.
        """
        if not texts:
            return []

        try:
            response = await self.client.embeddings.create(
                model=self._model,
                input=list(texts),
                dimensions=self._dimensions,
            )
        except OpenAIError as e:
            raise EmbeddingProviderError(f"Embedding request failed: {e}") from e

        if len(response.data) != len(texts):
            raise EmbeddingProviderError(
                f"Expected {len(texts)} embeddings, got {len(response.data)}"
            )

        # Index-sort so output order always matches input order
        vectors = [item.embedding for item in sorted(response.data, key=lambda x: x.index)]

        for vector in vectors:
            if len(vector) != self._dimensions:
                raise EmbeddingProviderError(
                    f"Embedding has {len(vector)} dimensions, "
                    f"expected {self._dimensions}"
                )

        logger.debug(
            "Embedded %d texts (model=%s, prompt_tokens=%d)",
            len(texts),
            self._model,
            response.usage.prompt_tokens if response.usage else 0,
        )
        return vectors


# ---------------------------------------------------------------------------
# Write-Path Helpers
# ---------------------------------------------------------------------------


def prepare_text_for_embedding(
    content: str,
    title: str | None = None,
    summary: str | None = None,
    topics: Sequence[str] | None = None,
) -> str:
    """
    Combine chunk content with its section metadata for embedding.

    Produces:
        Title: ...

        Summary: ...

        Topics: a, b

        Content: ...
    Missing parts are skipped.
    """
    parts: list[str] = []
    if title:
        parts.append(f"Title: {title}")
    if summary:
        parts.append(f"Summary: {summary}")
    if topics:
        parts.append(f"Topics: {', '.join(topics)}")
    parts.append(f"Content: {content}")
    return "\n\n".join(parts)


async def embed_batch(
    texts: Sequence[str],
    batch_size: int | None = None,
    embedder: OpenAIEmbedder | None = None,
) -> list[list[float]]:
    """
    Generate embeddings for many texts, in sub-batches.

    Returns embeddings in the SAME ORDER as the input texts.
    """
    if not texts:
        return []

    embedder = embedder or OpenAIEmbedder()
    _batch_size = batch_size or settings.embedding_batch_size

    all_embeddings: list[list[float]] = []
    for i in range(0, len(texts), _batch_size):
        batch = texts[i : i + _batch_size]
        logger.info(
            "Embedding batch %d–%d of %d texts",
            i + 1, min(i + _batch_size, len(texts)), len(texts),
        )
        all_embeddings.extend(await embedder.embed_many(batch))

    return all_embeddings
