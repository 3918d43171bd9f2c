# =============================================================================
# Similarity Index — Tenant-Scoped ANN Search Behind a Protocol
# =============================================================================
#
# Answers one question: "the K chunks most similar to vector V that belong
# to company T and score at least S". Two backends implement the same
# protocol:
#
#   SimilarityIndex (Protocol)
#   ├── PgVectorIndex      — HNSW index on document_chunks.embedding
#   │   ├── add_chunks()   — attach embeddings to committed chunk rows
#   │   └── search()       — ordered ANN query, tenant + threshold in WHERE
#   └── ChromaIndex        — ChromaDB collection (HNSW, cosine space)
#       ├── add_chunks()   — upsert vectors with provenance metadata
#       └── search()       — `where={"company_id": ...}` pre-filter
#
# TENANT ISOLATION: the company filter is applied inside the index query
# (pre-filter), never on the returned rows. Otherwise another tenant's
# near-duplicates could fill all K slots before filtering.
#
# SCORES: cosine similarity = 1 - cosine distance, rounded to SCORE_DECIMALS
# places. Both backends store float32 vectors, so a chunk lying exactly on
# the threshold comes back a few ULPs either side of it; rounding puts it
# back on the boundary. A chunk is kept when its rounded similarity >=
# threshold. Results are ordered by similarity descending, ties broken by
# chunk id so identical calls return identical orderings.
#
# FAILURES: a missing HNSW index (bootstrap not run), database errors and
# Chroma errors surface as IndexUnavailable, which callers treat as
# retryable.
#
# CONSISTENCY: a chunk's vector is visible only once its transaction (or
# Chroma upsert) commits. Readers never wait on writers.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

import chromadb
from chromadb.errors import ChromaError
from sqlalchemy import select, text, update
from sqlalchemy.exc import SQLAlchemyError

from filings_rag.config import settings
from filings_rag.db.engine import async_session_factory
from filings_rag.db.models import HNSW_INDEX_NAME, Chunk, Company, Document
from filings_rag.errors import IndexUnavailable, InvalidInput
from filings_rag.models.facts import ExtractedFact, FactCategory, dump_facts, parse_facts

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ScoredChunk:
    """
    A single result from similarity search.

    Carries the chunk text, its similarity score and enough provenance
    (document, section, pages, company) for the consumer to cite sources.
    """

    chunk_id: str
    doc_id: str
    chunk_index: int
    text: str
    similarity: float  # cosine similarity, higher = more relevant
    section_title: str | None = None
    page_start: int | None = None
    page_end: int | None = None
    document_title: str | None = None
    document_type: str | None = None
    document_date: str | None = None
    reporting_period: str | None = None
    company_name: str | None = None
    company_sector: str | None = None
    facts: list[ExtractedFact] = field(default_factory=list)


@dataclass
class IndexedChunk:
    """
    A committed chunk and its embedding, ready to be added to an index.

    Provenance fields are denormalised so that backends without joins
    (Chroma) can still return citable results.
    """

    chunk_id: str
    doc_id: str
    chunk_index: int
    text: str
    embedding: list[float]
    section_title: str | None = None
    page_start: int | None = None
    page_end: int | None = None
    document_title: str | None = None
    document_type: str | None = None
    document_date: str | None = None
    reporting_period: str | None = None
    company_name: str | None = None
    company_sector: str | None = None
    facts: list[ExtractedFact] = field(default_factory=list)

    @classmethod
    def from_orm(
        cls, chunk: Chunk, document: Document, company: Company,
    ) -> IndexedChunk:
        if chunk.embedding is None:
            raise InvalidInput(f"Chunk {chunk.id} has no embedding to index")
        return cls(
            chunk_id=str(chunk.id),
            doc_id=str(document.id),
            chunk_index=chunk.chunk_index,
            text=chunk.chunk_text,
            embedding=list(chunk.embedding),
            section_title=chunk.section_title,
            page_start=chunk.page_start,
            page_end=chunk.page_end,
            document_title=document.title or document.filename,
            document_type=document.document_type,
            document_date=(
                document.document_date.isoformat() if document.document_date else None
            ),
            reporting_period=document.reporting_period,
            company_name=company.name,
            company_sector=company.sector,
            facts=chunk.typed_facts(),
        )


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class SimilarityIndex(Protocol):
    """
    Capability interface for tenant-scoped similarity search.

    The retrieval service depends only on this protocol, never on a
    concrete backend.
    """

    async def add_chunks(
        self,
        company_id: str,
        chunks: Sequence[IndexedChunk],
    ) -> None:
        """
        Incrementally add (or replace) chunk vectors for one tenant.

        Raises:
            InvalidInput: If an embedding has the wrong dimension.
            IndexUnavailable: If the backend cannot be written.
        """
        ...

    async def search(
        self,
        query_embedding: list[float],
        company_id: str,
        limit: int = 5,
        similarity_threshold: float = 0.6,
    ) -> list[ScoredChunk]:
        """
        Return up to `limit` chunks of `company_id` with
        similarity >= similarity_threshold, most similar first.

        Raises:
            InvalidInput: Bad vector dimension, limit or threshold.
            IndexUnavailable: Index missing or backend unreachable.
        """
        ...


def _validate_query(
    query_embedding: Sequence[float],
    company_id: str,
    limit: int,
    similarity_threshold: float,
    dimensions: int,
) -> None:
    if not company_id:
        raise InvalidInput("company_id is required")
    if len(query_embedding) != dimensions:
        raise InvalidInput(
            f"Query vector has {len(query_embedding)} dimensions, expected {dimensions}"
        )
    if limit < 1:
        raise InvalidInput("limit must be >= 1")
    if not 0.0 <= similarity_threshold <= 1.0:
        raise InvalidInput("similarity_threshold must be within [0, 1]")


def _validate_chunks(chunks: Sequence[IndexedChunk], dimensions: int) -> None:
    for chunk in chunks:
        if len(chunk.embedding) != dimensions:
            raise InvalidInput(
                f"Chunk {chunk.chunk_id} embedding has {len(chunk.embedding)} "
                f"dimensions, expected {dimensions}"
            )


def _safe_facts(raw: list[dict] | None, category: FactCategory) -> list[ExtractedFact]:
    """Parse stored facts; a malformed column is logged and skipped."""
    try:
        return parse_facts(raw, category)
    except InvalidInput as e:
        logger.warning("Skipping malformed %s facts: %s", category, e)
        return []


SCORE_DECIMALS = 6

# Half a unit in the last kept decimal: a raw score this far below the
# threshold still rounds up onto it.
_SCORE_TOLERANCE = 0.5 * 10**-SCORE_DECIMALS


def similarity_from_distance(distance: float) -> float:
    """Cosine distance to the rounded similarity reported and compared."""
    return round(1.0 - float(distance), SCORE_DECIMALS)


# ---------------------------------------------------------------------------
# Implementation 1: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------

ITERATIVE_SCAN_MIN_VERSION = (0, 8)


def _version_tuple(version: str) -> tuple[int, ...]:
    """Parse "0.8.0" into (0, 8, 0); non-numeric suffixes are ignored."""
    return tuple(int(part) for part in re.findall(r"\d+", version))


class PgVectorIndex:
    """
    pgvector-backed similarity index.

    Search is one ordered query: chunks joined to their document and
    company, filtered by company_id and by the threshold inside the WHERE,
    ordered by cosine distance so PostgreSQL can use the HNSW index.

    hnsw.iterative_scan (pgvector >= 0.8) lets the HNSW scan keep going
    until `limit` rows survive the tenant filter instead of stopping at
    ef_search candidates. On older pgvector the setting is skipped (see
    _ensure_ready).
    """

    def __init__(
        self,
        session_factory=None,
        dimensions: int | None = None,
        ef_search: int = 100,
        iterative_scan: str | None = "strict_order",
    ) -> None:
        if iterative_scan not in (None, "strict_order", "relaxed_order"):
            raise ValueError(f"Unknown hnsw.iterative_scan mode: {iterative_scan}")
        self._session_factory = session_factory or async_session_factory
        self._dimensions = dimensions or settings.embedding_dimensions
        self._ef_search = int(ef_search)
        self._iterative_scan = iterative_scan
        self._ready = False

    async def _ensure_ready(self, session) -> None:
        """
        Fail with IndexUnavailable until the bootstrap has built the HNSW index.

        Also reads the pgvector version once: before 0.8 there is no
        hnsw.iterative_scan, so the setting is dropped for this instance.
        """
        if self._ready:
            return
        version = (await session.execute(
            text("SELECT extversion FROM pg_extension WHERE extname = 'vector'")
        )).scalar_one_or_none()
        if version is None:
            raise IndexUnavailable(
                "pgvector extension is not installed. "
                "Run: python -m filings_rag.db.bootstrap bootstrap"
            )
        result = await session.execute(
            text("SELECT 1 FROM pg_indexes WHERE indexname = :name"),
            {"name": HNSW_INDEX_NAME},
        )
        if result.scalar_one_or_none() is None:
            raise IndexUnavailable(
                f"HNSW index {HNSW_INDEX_NAME} not found. "
                "Run: python -m filings_rag.db.bootstrap indexes"
            )
        if self._iterative_scan and _version_tuple(version) < ITERATIVE_SCAN_MIN_VERSION:
            logger.warning(
                "pgvector %s does not support hnsw.iterative_scan; "
                "tenant-filtered searches may return fewer than `limit` rows",
                version,
            )
            self._iterative_scan = None
        self._ready = True

    async def add_chunks(
        self,
        company_id: str,
        chunks: Sequence[IndexedChunk],
    ) -> None:
        """
        Attach embeddings to existing chunk rows of this tenant.

        pgvector maintains the HNSW graph on write, so no rebuild is needed.
        All vectors of one call commit together.
        """
        if not chunks:
            return
        _validate_chunks(chunks, self._dimensions)

        tenant_docs = select(Document.id).where(
            Document.company_id == uuid.UUID(str(company_id))
        )
        updated = 0
        try:
            async with self._session_factory() as session:
                for chunk in chunks:
                    result = await session.execute(
                        update(Chunk)
                        .where(Chunk.id == uuid.UUID(chunk.chunk_id))
                        .where(Chunk.doc_id.in_(tenant_docs))
                        .values(embedding=chunk.embedding)
                    )
                    updated += result.rowcount or 0
                await session.commit()
        except SQLAlchemyError as e:
            raise IndexUnavailable(f"pgvector write failed: {e}") from e

        if updated != len(chunks):
            logger.warning(
                "Indexed %d of %d chunks for company_id=%s "
                "(others missing or owned by another tenant)",
                updated, len(chunks), company_id,
            )
        else:
            logger.info(
                "Indexed %d chunk embeddings for company_id=%s", updated, company_id,
            )

    async def search(
        self,
        query_embedding: list[float],
        company_id: str,
        limit: int = 5,
        similarity_threshold: float = 0.6,
    ) -> list[ScoredChunk]:
        _validate_query(
            query_embedding, company_id, limit, similarity_threshold, self._dimensions,
        )
        try:
            tenant = uuid.UUID(str(company_id))
        except ValueError as e:
            raise InvalidInput(f"Invalid company_id: {company_id}") from e

        distance = Chunk.embedding.cosine_distance(query_embedding)
        stmt = (
            select(Chunk, Document, Company, distance.label("distance"))
            .join(Document, Chunk.doc_id == Document.id)
            .join(Company, Document.company_id == Company.id)
            .where(Document.company_id == tenant)
            .where(Chunk.embedding.is_not(None))
            .where(1 - distance >= similarity_threshold - _SCORE_TOLERANCE)
            .order_by(distance, Chunk.id)
            .limit(limit)
        )

        try:
            async with self._session_factory() as session:
                await self._ensure_ready(session)
                await session.execute(text(f"SET LOCAL hnsw.ef_search = {self._ef_search}"))
                if self._iterative_scan:
                    await session.execute(
                        text(f"SET LOCAL hnsw.iterative_scan = {self._iterative_scan}")
                    )
                result = await session.execute(stmt)
                rows = result.all()
        except SQLAlchemyError as e:
            raise IndexUnavailable(f"pgvector search failed: {e}") from e

        logger.debug(
            "pgvector search returned %d rows (company_id=%s, limit=%d, threshold=%.2f)",
            len(rows), company_id, limit, similarity_threshold,
        )

        scored: list[ScoredChunk] = []
        for chunk, document, company, dist in rows:
            similarity = similarity_from_distance(dist)
            if similarity < similarity_threshold:
                continue
            scored.append(ScoredChunk(
                chunk_id=str(chunk.id),
                doc_id=str(document.id),
                chunk_index=chunk.chunk_index,
                text=chunk.chunk_text,
                similarity=similarity,
                section_title=chunk.section_title,
                page_start=chunk.page_start,
                page_end=chunk.page_end,
                document_title=document.title or document.filename,
                document_type=document.document_type,
                document_date=(
                    document.document_date.isoformat() if document.document_date else None
                ),
                reporting_period=document.reporting_period,
                company_name=company.name,
                company_sector=company.sector,
                facts=[
                    *_safe_facts(chunk.time_based_facts, "TB"),
                    *_safe_facts(chunk.qualitative_facts, "PAQL"),
                    *_safe_facts(chunk.quantitative_facts, "PAQN"),
                ],
            ))
        return scored


# ---------------------------------------------------------------------------
# Implementation 2: ChromaDB
# ---------------------------------------------------------------------------

_FACT_KEYS: dict[FactCategory, str] = {
    "TB": "time_based_facts",
    "PAQL": "qualitative_facts",
    "PAQN": "quantitative_facts",
}


class ChromaIndex:
    """
    ChromaDB-backed similarity index.

    One collection for all tenants; every record carries `company_id` in
    its metadata and every query passes it as the `where` clause, so the
    HNSW search only ever sees the caller's tenant.

    ChromaDB supports both in-process and client/server modes:
    - In-process (default): no extra infra
    - Client/server: set CHROMA_URL
    """

    def __init__(
        self,
        client=None,
        collection_name: str | None = None,
        dimensions: int | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif settings.chroma_url:
            self._client = chromadb.HttpClient(host=settings.chroma_url)
        else:
            self._client = chromadb.Client()

        self._dimensions = dimensions or settings.embedding_dimensions
        self._collection = self._client.get_or_create_collection(
            name=collection_name or settings.chroma_collection,
            metadata={"hnsw:space": "cosine"},
        )

    async def add_chunks(
        self,
        company_id: str,
        chunks: Sequence[IndexedChunk],
    ) -> None:
        """Upsert chunk vectors with tenant and provenance metadata."""
        if not chunks:
            return
        _validate_chunks(chunks, self._dimensions)

        metadatas = [_chunk_metadata(company_id, c) for c in chunks]

        def _sync_upsert() -> None:
            self._collection.upsert(
                ids=[c.chunk_id for c in chunks],
                documents=[c.text for c in chunks],
                embeddings=[c.embedding for c in chunks],
                metadatas=metadatas,
            )

        try:
            await asyncio.to_thread(_sync_upsert)
        except (ChromaError, ValueError, ConnectionError) as e:
            raise IndexUnavailable(f"Chroma upsert failed: {e}") from e

        logger.info(
            "Upserted %d chunks for company_id=%s in ChromaDB", len(chunks), company_id,
        )

    async def search(
        self,
        query_embedding: list[float],
        company_id: str,
        limit: int = 5,
        similarity_threshold: float = 0.6,
    ) -> list[ScoredChunk]:
        """
        Tenant-filtered similarity search in ChromaDB.

        The Python client is synchronous, so the query runs in a worker
        thread to keep the event loop free.
        """
        _validate_query(
            query_embedding, company_id, limit, similarity_threshold, self._dimensions,
        )

        def _sync_search() -> dict:
            return self._collection.query(
                query_embeddings=[query_embedding],
                n_results=limit,
                where={"company_id": str(company_id)},
                include=["documents", "metadatas", "distances"],
            )

        try:
            results = await asyncio.to_thread(_sync_search)
        except (ChromaError, ValueError, ConnectionError) as e:
            raise IndexUnavailable(f"Chroma search failed: {e}") from e

        scored: list[ScoredChunk] = []
        if results and results["ids"] and results["ids"][0]:
            for i, chroma_id in enumerate(results["ids"][0]):
                similarity = similarity_from_distance(results["distances"][0][i])
                if similarity < similarity_threshold:
                    continue
                metadata = results["metadatas"][0][i] or {}
                content = results["documents"][0][i] or ""
                scored.append(_scored_from_metadata(chroma_id, content, similarity, metadata))

        scored.sort(key=lambda c: (-c.similarity, c.chunk_id))
        logger.debug(
            "Chroma search returned %d results (company_id=%s, limit=%d)",
            len(scored), company_id, limit,
        )
        return scored[:limit]


def _chunk_metadata(company_id: str, chunk: IndexedChunk) -> dict:
    by_category: dict[str, list[ExtractedFact]] = {key: [] for key in _FACT_KEYS.values()}
    for fact in chunk.facts:
        by_category[_FACT_KEYS[fact.category]].append(fact)

    metadata = {
        "company_id": str(company_id),
        "doc_id": chunk.doc_id,
        "chunk_index": chunk.chunk_index,
        "section_title": chunk.section_title,
        "page_start": chunk.page_start,
        "page_end": chunk.page_end,
        "document_title": chunk.document_title,
        "document_type": chunk.document_type,
        "document_date": chunk.document_date,
        "reporting_period": chunk.reporting_period,
        "company_name": chunk.company_name,
        "company_sector": chunk.company_sector,
        **{key: json.dumps(dump_facts(facts)) for key, facts in by_category.items()},
    }
    return _sanitise_chroma_metadata(metadata)


def _scored_from_metadata(
    chunk_id: str, content: str, similarity: float, metadata: dict,
) -> ScoredChunk:
    facts: list[ExtractedFact] = []
    for category, key in _FACT_KEYS.items():
        raw = metadata.get(key)
        if raw:
            facts.extend(_safe_facts(json.loads(raw), category))

    return ScoredChunk(
        chunk_id=chunk_id,
        doc_id=str(metadata.get("doc_id", "")),
        chunk_index=int(metadata.get("chunk_index", 0)),
        text=content,
        similarity=similarity,
        section_title=metadata.get("section_title"),
        page_start=metadata.get("page_start"),
        page_end=metadata.get("page_end"),
        document_title=metadata.get("document_title"),
        document_type=metadata.get("document_type"),
        document_date=metadata.get("document_date"),
        reporting_period=metadata.get("reporting_period"),
        company_name=metadata.get("company_name"),
        company_sector=metadata.get("company_sector"),
        facts=facts,
    )


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    Sanitise metadata for ChromaDB compatibility.

    ChromaDB metadata values must be str, int, float, or bool. None values
    are dropped (read back as missing keys); lists become comma-separated
    strings.
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_indexes: dict[str, PgVectorIndex | ChromaIndex] = {}


def get_similarity_index(
    override_type: str | None = None,
) -> PgVectorIndex | ChromaIndex:
    """
    Return the configured similarity index backend (cached per type).

    Reads `vectorstore_type` from settings:
    - "pgvector" → PgVectorIndex (default)
    - "chroma" → ChromaIndex
    """
    store_type = override_type or settings.vectorstore_type
    if store_type not in ("pgvector", "chroma"):
        raise ValueError(f"Unknown vectorstore_type: {store_type}")

    if store_type not in _indexes:
        if store_type == "chroma":
            logger.info("Using ChromaDB similarity index")
            _indexes[store_type] = ChromaIndex()
        else:
            logger.info("Using pgvector similarity index")
            _indexes[store_type] = PgVectorIndex()
    return _indexes[store_type]
