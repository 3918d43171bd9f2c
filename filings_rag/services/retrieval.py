# =============================================================================
# Retrieval Service — Query → Tenant-Scoped Context Bundle
# =============================================================================
#
# The single public read operation of the service:
#
#   retrieve_context(query_text, company_id, options)
#     1. Validate input (empty query / missing tenant → InvalidInput)
#     2. Embed the query            ─┐ each step wrapped in
#     3. Search the similarity index ─┘ retry_with_backoff()
#     4. Format the chunks, most similar first, with provenance headers
#     5. Return RetrievedContext(context, num_results, chunks)
#
# Zero matching chunks is a normal outcome (context="", num_results=0); the
# downstream model is told there is no context and answers accordingly.
#
# The service never writes. Identical calls against an unchanged store
# return identical bundles.
#
# CONTEXT FORMAT (blocks joined by "\n\n---\n\n"):
#
#   [Source 1 | Document: FY2024 Annual Report | Section: Outlook | Pages: 4-5 | Relevance: 90.0%]
#   <chunk text>
#
#   Extracted facts:
#   [TB] New plant operational (expansion, 2025-06)
#   [PAQL] Margin pressure from input costs (profitability)
#   [PAQN] Revenue: 1200.0 INR crore - Period: FY2024 - up 12% YoY
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from filings_rag.config import settings
from filings_rag.errors import (
    EmbeddingProviderError,
    IndexUnavailable,
    InvalidInput,
    RetrievalError,
)
from filings_rag.models.facts import (
    ExtractedFact,
    QualitativeFact,
    QuantitativeFact,
    TimeBasedFact,
)
from filings_rag.services.embedder import Embedder, OpenAIEmbedder
from filings_rag.services.retry import RetryPolicy, retry_with_backoff
from filings_rag.services.vectorstore import (
    ScoredChunk,
    SimilarityIndex,
    get_similarity_index,
)

logger = logging.getLogger(__name__)

CONTEXT_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True)
class RetrievalOptions:
    """
    Bounds for one retrieval call.

    limit is an upper bound on returned chunks; similarity_threshold is the
    minimum cosine similarity (inclusive).
    """

    limit: int = 5
    similarity_threshold: float = 0.6

    def __post_init__(self) -> None:
        if isinstance(self.limit, bool) or not isinstance(self.limit, int) or self.limit < 1:
            raise InvalidInput("limit must be an integer >= 1")
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise InvalidInput("similarity_threshold must be within [0, 1]")


@dataclass
class RetrievedContext:
    """Context bundle handed to the downstream language model."""

    context: str
    num_results: int
    chunks: list[ScoredChunk] = field(default_factory=list)


def _is_transient(error: Exception, attempt: int) -> bool:
    """
    Domain errors say whether they are retryable; anything else raised by
    a provider SDK or driver (timeouts, resets) is assumed transient.
    """
    if isinstance(error, RetrievalError):
        return error.retryable
    return True


def default_retry_policy() -> RetryPolicy:
    """RetryPolicy built from the retry_* settings."""
    return RetryPolicy(
        max_retries=settings.retry_max_retries,
        base_delay_ms=settings.retry_base_delay_ms,
        backoff_multiplier=settings.retry_backoff_multiplier,
        max_delay_ms=settings.retry_max_delay_ms,
        jitter=settings.retry_jitter,
        should_retry=_is_transient,
    )


# ---------------------------------------------------------------------------
# Context Formatting
# ---------------------------------------------------------------------------


def _format_pages(chunk: ScoredChunk) -> str | None:
    if chunk.page_start is None:
        return None
    if chunk.page_end is None or chunk.page_end == chunk.page_start:
        return str(chunk.page_start)
    return f"{chunk.page_start}-{chunk.page_end}"


def format_source_header(position: int, chunk: ScoredChunk) -> str:
    parts = [f"Source {position}"]
    parts.append(f"Document: {chunk.document_title or 'Unknown'}")
    if chunk.section_title:
        parts.append(f"Section: {chunk.section_title}")
    pages = _format_pages(chunk)
    if pages:
        parts.append(f"Pages: {pages}")
    parts.append(f"Relevance: {chunk.similarity * 100:.1f}%")
    return "[" + " | ".join(parts) + "]"


def format_fact(fact: ExtractedFact) -> str:
    """Render one extracted fact as a single tagged line."""
    if isinstance(fact, TimeBasedFact):
        return f"[TB] {fact.description} ({fact.event_type}, {fact.expected_date or 'TBD'})"
    if isinstance(fact, QualitativeFact):
        return f"[PAQL] {fact.context} ({fact.topic})"
    if isinstance(fact, QuantitativeFact):
        line = f"[PAQN] {fact.metric_name}: {fact.value} {fact.unit}"
        if fact.period:
            line += f" - Period: {fact.period}"
        if fact.context:
            line += f" - {fact.context}"
        return line
    raise TypeError(f"Unknown fact type: {type(fact).__name__}")


def format_context(chunks: Sequence[ScoredChunk]) -> str:
    """
    Concatenate chunks into the context bundle.

    Chunks must already be ordered by similarity descending; source
    numbers follow that order.
    """
    blocks = []
    for position, chunk in enumerate(chunks, start=1):
        block = f"{format_source_header(position, chunk)}\n{chunk.text}"
        if chunk.facts:
            fact_lines = "\n".join(format_fact(f) for f in chunk.facts)
            block += f"\n\nExtracted facts:\n{fact_lines}"
        blocks.append(block)
    return CONTEXT_SEPARATOR.join(blocks)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class RetrievalService:
    """
    Embeds a query and fetches the tenant's most relevant chunks.

    Dependencies are injected so tests can pass fakes:
        service = RetrievalService(embedder=FakeEmbedder(), index=FakeIndex())
    """

    def __init__(
        self,
        embedder: Embedder,
        index: SimilarityIndex,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._embedder = embedder
        self._index = index
        self._policy = retry_policy or default_retry_policy()

    def _policy_for(self, step: str) -> RetryPolicy:
        if self._policy.on_retry is not None:
            return self._policy

        def _log_retry(error: Exception, attempt: int, delay_ms: float) -> None:
            logger.warning(
                "%s attempt %d failed (%s), retrying in %.0f ms",
                step, attempt + 1, error, delay_ms,
            )

        return self._policy.merged(on_retry=_log_retry)

    async def retrieve_context(
        self,
        query_text: str,
        company_id: str,
        options: RetrievalOptions | None = None,
    ) -> RetrievedContext:
        """
        Retrieve a context bundle for `query_text` within one company.

        Raises:
            InvalidInput: Empty query or missing company_id. Never retried.
            EmbeddingProviderError: Embedding kept failing after all retries.
            IndexUnavailable: Index search kept failing after all retries.
            ConfigurationError: No embedding API key. Never retried.
        """
        options = options or RetrievalOptions()

        if not query_text or not query_text.strip():
            raise InvalidInput("query_text must not be empty")
        if not company_id or not str(company_id).strip():
            raise InvalidInput("company_id is required")
        company_id = str(company_id)

        # --- Step 1: Embed ---
        embed_result = await retry_with_backoff(
            lambda: self._embedder.embed(query_text),
            self._policy_for("Embedding"),
        )
        if not embed_result.success:
            _raise_step_failure(embed_result, EmbeddingProviderError, "Query embedding")
        query_embedding = embed_result.data

        # --- Step 2: Search ---
        search_result = await retry_with_backoff(
            lambda: self._index.search(
                query_embedding,
                company_id,
                limit=options.limit,
                similarity_threshold=options.similarity_threshold,
            ),
            self._policy_for("Index search"),
        )
        if not search_result.success:
            _raise_step_failure(search_result, IndexUnavailable, "Similarity search")
        chunks: list[ScoredChunk] = search_result.data or []

        # Bundle is bounded by limit and threshold whatever the backend returns
        chunks = sorted(
            (c for c in chunks if c.similarity >= options.similarity_threshold),
            key=lambda c: (-c.similarity, c.chunk_id),
        )[: options.limit]

        if not chunks:
            logger.info(
                "No chunks above threshold %.2f for company_id=%s",
                options.similarity_threshold, company_id,
            )
            return RetrievedContext(context="", num_results=0, chunks=[])

        logger.info(
            "Retrieved %d chunks for company_id=%s (top=%.3f)",
            len(chunks), company_id, chunks[0].similarity,
        )
        return RetrievedContext(
            context=format_context(chunks),
            num_results=len(chunks),
            chunks=chunks,
        )


def _raise_step_failure(result, exhausted_error: type[RetrievalError], step: str):
    """
    Turn a failed RetryResult into the caller-facing exception.

    Exhausted retries become `exhausted_error`; a failure that
    should_retry rejected is re-raised unchanged.
    """
    error = result.error
    if not result.retries_exhausted:
        raise error
    if isinstance(error, exhausted_error):
        raise error
    raise exhausted_error(
        f"{step} failed after {result.total_attempts} attempts: {error}"
    ) from error


# ---------------------------------------------------------------------------
# Default Instance — Lazy Singleton
# ---------------------------------------------------------------------------

_service: RetrievalService | None = None


def get_retrieval_service() -> RetrievalService:
    """Build (once) the service wired to the configured embedder and index."""
    global _service
    if _service is None:
        _service = RetrievalService(
            embedder=OpenAIEmbedder(),
            index=get_similarity_index(),
        )
    return _service


async def retrieve_context(
    query_text: str,
    company_id: str,
    options: RetrievalOptions | None = None,
) -> RetrievedContext:
    """Module-level shortcut for get_retrieval_service().retrieve_context()."""
    return await get_retrieval_service().retrieve_context(query_text, company_id, options)
