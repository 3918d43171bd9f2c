# =============================================================================
# Catalog Writer — Company / Document / Chunk Write Path
# =============================================================================
#
# The ingestion pipeline (PDF parsing, section detection, fact extraction)
# runs outside this service. Once it has chunk texts, facts and embeddings,
# it hands them to save_document(), which:
#
#   1. Gets or creates the company (case-insensitive name match)
#   2. Creates the document row
#   3. Inserts its chunks with chunk_index = 1..N and tiktoken token counts
#   4. Sets the document's total_chunks / total_pages counters
#   5. Commits, then pushes the vectors into the similarity index
#
# Steps 1-4 share one transaction: a failed save leaves no partial document.
# Step 5 is incremental; no index rebuild is ever needed.
#
# Also provides the read helpers behind GET /companies and the tenant
# deletion used by operators.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date

import tiktoken
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from filings_rag.config import settings
from filings_rag.db.models import Chunk, Company, Document
from filings_rag.errors import InvalidInput
from filings_rag.models.facts import (
    ExtractedFact,
    QualitativeFact,
    QuantitativeFact,
    TimeBasedFact,
    dump_facts,
)
from filings_rag.services.vectorstore import IndexedChunk, SimilarityIndex

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class NewDocument:
    """Document metadata as produced by the ingestion pipeline."""

    filename: str
    storage_path: str
    title: str | None = None
    document_type: str | None = None
    file_type: str = "pdf"
    document_date: date | None = None
    reporting_period: str | None = None
    total_pages: int | None = None


@dataclass
class NewChunk:
    """One chunk of a new document, in reading order."""

    text: str
    embedding: list[float] | None = None
    page_start: int | None = None
    page_end: int | None = None
    section_title: str | None = None
    facts: list[ExtractedFact] = field(default_factory=list)


@dataclass
class SavedDocument:
    company_id: str
    document_id: str
    chunk_ids: list[str]
    total_chunks: int


@dataclass
class CompanySummary:
    """A company that has at least one document."""

    id: str
    name: str
    sector: str
    ticker: str | None
    document_count: int


# ---------------------------------------------------------------------------
# Tiktoken Encoder — Cached Singleton
# ---------------------------------------------------------------------------
# cl100k_base is the encoding of text-embedding-3-small, so token_count
# matches what the embedding model actually sees.
# ---------------------------------------------------------------------------

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Lazily initialize and cache the tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def count_tokens(text: str) -> int:
    return len(_get_encoder().encode(text))


# ---------------------------------------------------------------------------
# Company Registry
# ---------------------------------------------------------------------------


async def get_or_create_company(
    session: AsyncSession,
    name: str,
    sector: str,
    ticker: str | None = None,
) -> Company:
    """
    Return the company whose name matches `name` case-insensitively,
    creating it if none exists.

    The existing company's sector and ticker are left untouched.
    """
    name = name.strip() if name else ""
    if not name:
        raise InvalidInput("Company name is required")

    stmt = (
        select(Company)
        .where(Company.name.ilike(name))
        .order_by(Company.created_at)
        .limit(1)
    )
    company = (await session.execute(stmt)).scalar_one_or_none()
    if company is not None:
        return company

    company = Company(name=name, sector=sector, ticker=ticker)
    session.add(company)
    await session.flush()
    logger.info("Created company '%s' (id=%s)", name, company.id)
    return company


async def list_available_companies(session: AsyncSession) -> list[CompanySummary]:
    """Companies with at least one document, ordered by name."""
    doc_count = func.count(Document.id).label("document_count")
    stmt = (
        select(Company, doc_count)
        .join(Document, Document.company_id == Company.id)
        .group_by(Company.id)
        .order_by(Company.name)
    )
    rows = (await session.execute(stmt)).all()
    return [
        CompanySummary(
            id=str(company.id),
            name=company.name,
            sector=company.sector,
            ticker=company.ticker,
            document_count=count,
        )
        for company, count in rows
    ]


async def delete_company(session: AsyncSession, company_id: str) -> bool:
    """
    Delete a company and, through ON DELETE CASCADE, all of its documents
    and chunks. Returns False if no such company exists.
    """
    result = await session.execute(
        delete(Company).where(Company.id == uuid.UUID(str(company_id)))
    )
    deleted = bool(result.rowcount)
    if deleted:
        logger.info("Deleted company id=%s with all documents and chunks", company_id)
    return deleted


# ---------------------------------------------------------------------------
# Document Write Path
# ---------------------------------------------------------------------------


def _split_facts(facts: Sequence[ExtractedFact]) -> tuple[list, list, list]:
    tb = [f for f in facts if isinstance(f, TimeBasedFact)]
    paql = [f for f in facts if isinstance(f, QualitativeFact)]
    paqn = [f for f in facts if isinstance(f, QuantitativeFact)]
    return dump_facts(tb), dump_facts(paql), dump_facts(paqn)


async def save_document(
    session: AsyncSession,
    company_name: str,
    sector: str,
    document: NewDocument,
    chunks: Sequence[NewChunk],
    index: SimilarityIndex | None = None,
    ticker: str | None = None,
) -> SavedDocument:
    """
    Persist a document and its chunks, then index their vectors.

    The session is committed here so the index only ever sees committed
    chunks. Chunks without an embedding are stored but not indexed.

    Raises:
        InvalidInput: No chunks, or an embedding of the wrong dimension.
    """
    if not chunks:
        raise InvalidInput("A document needs at least one chunk")
    for position, chunk in enumerate(chunks, start=1):
        if chunk.embedding is not None and len(chunk.embedding) != settings.embedding_dimensions:
            raise InvalidInput(
                f"Chunk {position} embedding has {len(chunk.embedding)} dimensions, "
                f"expected {settings.embedding_dimensions}"
            )

    company = await get_or_create_company(session, company_name, sector, ticker)

    doc = Document(
        company_id=company.id,
        filename=document.filename,
        title=document.title or document.filename,
        document_type=document.document_type,
        file_type=document.file_type,
        storage_path=document.storage_path,
        document_date=document.document_date,
        reporting_period=document.reporting_period,
        total_pages=document.total_pages,
        total_chunks=len(chunks),
    )
    session.add(doc)
    await session.flush()

    rows: list[Chunk] = []
    for position, chunk in enumerate(chunks, start=1):
        tb, paql, paqn = _split_facts(chunk.facts)
        row = Chunk(
            doc_id=doc.id,
            chunk_index=position,
            chunk_text=chunk.text,
            page_start=chunk.page_start,
            page_end=chunk.page_end,
            section_title=chunk.section_title,
            token_count=count_tokens(chunk.text),
            embedding=chunk.embedding,
            time_based_facts=tb,
            qualitative_facts=paql,
            quantitative_facts=paqn,
        )
        session.add(row)
        rows.append(row)

    await session.flush()
    await session.commit()

    logger.info(
        "Saved document '%s' (id=%s) with %d chunks for company '%s'",
        doc.title, doc.id, len(rows), company.name,
    )

    if index is not None:
        indexed = [
            IndexedChunk.from_orm(row, doc, company)
            for row in rows
            if row.embedding is not None
        ]
        await index.add_chunks(str(company.id), indexed)

    return SavedDocument(
        company_id=str(company.id),
        document_id=str(doc.id),
        chunk_ids=[str(row.id) for row in rows],
        total_chunks=len(rows),
    )
