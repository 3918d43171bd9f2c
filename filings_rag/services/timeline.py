# =============================================================================
# Timeline Service — Dated Facts for One Company
# =============================================================================
#
# The second read path over the chunk store. Where retrieval ranks chunks
# by similarity, the timeline lays a company's documents and extracted
# facts out on a date axis:
#
#   fetch_timeline_data(session, company_id, start, end, layers)
#     1. Documents of the company (optionally within [start, end]),
#        ordered by document date
#     2. Every chunk's TB / PAQL / PAQN facts flattened into data points:
#          TB   → parse_flexible_date(expected_date)
#          PAQL → the document's date (qualitative facts carry none)
#          PAQN → parse_flexible_date(period)
#        Facts whose date cannot be determined are left out.
#     3. The overall date range across documents and data points
#
# Tenant-scoped like retrieval: company_id is required and every query
# filters on it.
#
# Layers: "TB", "PAQL", "PAQN" select data points; "DOCUMENT" is accepted
# for clients that toggle document markers, and documents are always
# returned. No layers means all of them.
# =============================================================================

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Literal

from dateutil.parser import parse as parse_date
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from filings_rag.db.models import Chunk, Company, Document
from filings_rag.errors import InvalidInput
from filings_rag.models.facts import (
    ExtractedFact,
    FactCategory,
    QualitativeFact,
    QuantitativeFact,
    TimeBasedFact,
    parse_facts,
)

logger = logging.getLogger(__name__)

TimelineLayer = Literal["TB", "PAQL", "PAQN", "DOCUMENT"]

ALL_LAYERS: tuple[TimelineLayer, ...] = ("TB", "PAQL", "PAQN", "DOCUMENT")


# ---------------------------------------------------------------------------
# Flexible Date Parsing
# ---------------------------------------------------------------------------
# Extracted facts carry free-text dates: "2025-06-30", "Q3 2024", "FY2025",
# "March 2025", "late 2024". Each maps to the first day of the period it
# names; "early" / "mid" / "late" map to February / July / November.
# ---------------------------------------------------------------------------

_SEASONS = {"early": 2, "mid": 7, "late": 11}

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ISO_DATETIME = re.compile(r"^\d{4}-\d{2}-\d{2}T")
_QUARTER = re.compile(r"^Q([1-4])\s+(\d{4})$", re.IGNORECASE)
_FISCAL_YEAR = re.compile(r"^FY\s*(\d{4})$", re.IGNORECASE)
_YEAR = re.compile(r"^(\d{4})$")
_SEASON_YEAR = re.compile(r"^(early|mid|late)\s+(\d{4})$", re.IGNORECASE)

# Everything else ("Jan 2024", "March 15, 2025") goes to dateutil; fields
# it does not find default to the first day of the period.
_PARSE_DEFAULT = datetime(2000, 1, 1)


def parse_flexible_date(value: str | None) -> date | None:
    """
    Parse a free-text fact date, or return None if it names no date.

    Examples:
        "2024-01-15"    → 2024-01-15
        "Q4 2023"       → 2023-10-01
        "FY 2024"       → 2024-01-01
        "Jan 2024"      → 2024-01-01
        "late 2024"     → 2024-11-01
        "TBD"           → None
    """
    if not value:
        return None
    text = value.strip()

    try:
        if _ISO_DATE.match(text):
            return date.fromisoformat(text)
        if _ISO_DATETIME.match(text):
            return datetime.fromisoformat(text).date()
    except ValueError:
        return None

    match = _QUARTER.match(text)
    if match:
        quarter, year = int(match.group(1)), int(match.group(2))
        return date(year, (quarter - 1) * 3 + 1, 1)

    # Fiscal years are assumed to start in January
    match = _FISCAL_YEAR.match(text) or _YEAR.match(text)
    if match:
        return date(int(match.group(1)), 1, 1)

    match = _SEASON_YEAR.match(text)
    if match:
        return date(int(match.group(2)), _SEASONS[match.group(1).lower()], 1)

    try:
        return parse_date(text, default=_PARSE_DEFAULT).date()
    except (ValueError, OverflowError):
        return None


def date_range(dates: Sequence[date | None]) -> tuple[date | None, date | None]:
    """Earliest and latest of the given dates; (None, None) when there are none."""
    known = [d for d in dates if d is not None]
    if not known:
        return None, None
    return min(known), max(known)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class TimelineDocument:
    doc_id: str
    document_title: str
    document_type: str | None
    document_date: date | None
    company_id: str
    company_name: str
    sector: str | None
    ticker: str | None


@dataclass
class TimelineDataPoint:
    """One dated fact, with the chunk and document it came from."""

    id: str
    date: date
    layer: TimelineLayer
    title: str
    description: str | None
    document_id: str
    document_title: str
    chunk_id: str
    section_title: str | None
    company_id: str
    company_name: str
    fact: ExtractedFact


@dataclass
class TimelineData:
    documents: list[TimelineDocument] = field(default_factory=list)
    data_points: list[TimelineDataPoint] = field(default_factory=list)
    date_min: date | None = None
    date_max: date | None = None


# ---------------------------------------------------------------------------
# Fact → Data Point
# ---------------------------------------------------------------------------


def _label(value: str) -> str:
    """Turn "capacity_expansion" into "CAPACITY EXPANSION"."""
    return value.replace("_", " ").upper()


def _format_value(value: float) -> str:
    return str(int(value)) if value.is_integer() else str(value)


def _fact_point(
    fact: ExtractedFact, document_date: date | None,
) -> tuple[date, str, str | None] | None:
    """(date, title, description) for a fact, or None if it has no date."""
    if isinstance(fact, TimeBasedFact):
        when = parse_flexible_date(fact.expected_date)
        title, description = _label(fact.event_type), fact.description
    elif isinstance(fact, QualitativeFact):
        when = document_date
        title, description = _label(fact.topic), fact.context
    elif isinstance(fact, QuantitativeFact):
        when = parse_flexible_date(fact.period)
        title = _label(fact.metric_name)
        description = f"{_format_value(fact.value)} {fact.unit}"
        if fact.context:
            description += f" - {fact.context}"
    else:
        raise TypeError(f"Unknown fact type: {type(fact).__name__}")

    if when is None:
        return None
    return when, title, description


def _column_facts(raw: list[dict] | None, category: FactCategory) -> list[ExtractedFact]:
    try:
        return parse_facts(raw, category)
    except InvalidInput as e:
        logger.warning("Skipping malformed %s facts on the timeline: %s", category, e)
        return []


def _resolve_layers(layers: Sequence[str] | None) -> set[str]:
    if not layers:
        return set(ALL_LAYERS)
    requested = {layer.upper() for layer in layers}
    unknown = requested - set(ALL_LAYERS)
    if unknown:
        raise InvalidInput(
            f"Unknown timeline layer(s): {', '.join(sorted(unknown))}. "
            f"Valid layers: {', '.join(ALL_LAYERS)}"
        )
    return requested


# ---------------------------------------------------------------------------
# Timeline Query
# ---------------------------------------------------------------------------


async def fetch_timeline_data(
    session: AsyncSession,
    company_id: str,
    start: date | None = None,
    end: date | None = None,
    layers: Sequence[str] | None = None,
) -> TimelineData:
    """
    Documents and dated facts of one company, for a timeline view.

    Args:
        company_id: Tenant whose documents are read. Required.
        start, end: Inclusive bounds applied to document dates and to
            data point dates.
        layers: Fact layers to include (default: all).

    Raises:
        InvalidInput: Missing or malformed company_id, unknown layer, or
            start after end.
    """
    if not company_id or not str(company_id).strip():
        raise InvalidInput("company_id is required")
    try:
        tenant = uuid.UUID(str(company_id))
    except ValueError as e:
        raise InvalidInput(f"Invalid company_id: {company_id}") from e
    if start and end and start > end:
        raise InvalidInput("start must not be after end")
    include = _resolve_layers(layers)

    # --- Documents ---
    doc_stmt = (
        select(Document, Company)
        .join(Company, Document.company_id == Company.id)
        .where(Document.company_id == tenant)
        .order_by(Document.document_date.asc().nulls_last(), Document.id)
    )
    if start:
        doc_stmt = doc_stmt.where(Document.document_date >= start)
    if end:
        doc_stmt = doc_stmt.where(Document.document_date <= end)

    documents = [
        TimelineDocument(
            doc_id=str(document.id),
            document_title=document.title or "Untitled Document",
            document_type=document.document_type,
            document_date=document.document_date,
            company_id=str(company.id),
            company_name=company.name,
            sector=company.sector,
            ticker=company.ticker,
        )
        for document, company in (await session.execute(doc_stmt)).all()
    ]

    # --- Facts ---
    chunk_stmt = (
        select(
            Chunk.id.label("chunk_id"),
            Chunk.doc_id,
            Chunk.section_title,
            Chunk.time_based_facts,
            Chunk.qualitative_facts,
            Chunk.quantitative_facts,
            Document.title.label("document_title"),
            Document.document_date,
            Company.id.label("company_id"),
            Company.name.label("company_name"),
        )
        .join(Document, Chunk.doc_id == Document.id)
        .join(Company, Document.company_id == Company.id)
        .where(Document.company_id == tenant)
        .order_by(Document.document_date.asc().nulls_last(), Document.id, Chunk.chunk_index)
    )

    columns: list[tuple[FactCategory, str]] = [
        ("TB", "time_based_facts"),
        ("PAQL", "qualitative_facts"),
        ("PAQN", "quantitative_facts"),
    ]
    points: list[TimelineDataPoint] = []
    for row in (await session.execute(chunk_stmt)).all():
        for category, column in columns:
            if category not in include:
                continue
            for fact in _column_facts(getattr(row, column), category):
                point = _fact_point(fact, row.document_date)
                if not point:
                    continue
                when, title, description = point
                if (start and when < start) or (end and when > end):
                    continue
                points.append(TimelineDataPoint(
                    id=f"{row.chunk_id}-{category.lower()}-{len(points)}",
                    date=when,
                    layer=category,
                    title=title,
                    description=description,
                    document_id=str(row.doc_id),
                    document_title=row.document_title or "Untitled",
                    chunk_id=str(row.chunk_id),
                    section_title=row.section_title,
                    company_id=str(row.company_id),
                    company_name=row.company_name,
                    fact=fact,
                ))

    # Stable: facts on the same date keep document and chunk order
    points.sort(key=lambda p: p.date)

    date_min, date_max = date_range(
        [d.document_date for d in documents] + [p.date for p in points]
    )
    logger.info(
        "Timeline for company_id=%s: %d documents, %d data points (layers=%s)",
        company_id, len(documents), len(points), ",".join(sorted(include)),
    )
    return TimelineData(
        documents=documents,
        data_points=points,
        date_min=date_min,
        date_max=date_max,
    )
