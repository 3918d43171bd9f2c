# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming OUT of the API.
#
# DESIGN DECISION: Separate response models from DB models.
# Chunks carry 1536-dimensional embeddings; those never go over the wire.
# Response models control exactly what's exposed.
# =============================================================================

import datetime as dt

from pydantic import BaseModel, ConfigDict, Field

from filings_rag.models.facts import QualitativeFact, QuantitativeFact, TimeBasedFact


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


class CompanyResponse(BaseModel):
    """A company that has at least one ingested document."""

    id: str
    name: str
    sector: str
    ticker: str | None = None
    document_count: int

    model_config = ConfigDict(from_attributes=True)


class SourceChunk(BaseModel):
    """Provenance of one retrieved chunk."""

    chunk_id: str
    doc_id: str
    document_title: str | None = None
    section_title: str | None = None
    page_start: int | None = None
    page_end: int | None = None
    similarity: float = Field(description="Cosine similarity (0-1, higher = more relevant)")
    text: str

    model_config = ConfigDict(from_attributes=True)


class RetrieveResponse(BaseModel):
    """Response for POST /retrieve."""

    context: str = Field(description="Formatted context bundle; empty when nothing matched")
    num_results: int
    sources: list[SourceChunk] = Field(default_factory=list)


class TimelineDocumentResponse(BaseModel):
    doc_id: str
    document_title: str
    document_type: str | None = None
    document_date: dt.date | None = None
    company_id: str
    company_name: str
    sector: str | None = None
    ticker: str | None = None

    model_config = ConfigDict(from_attributes=True)


class TimelineDataPointResponse(BaseModel):
    """One dated fact. `fact` keeps the camelCase shape it is stored in."""

    id: str
    date: dt.date
    layer: str = Field(description="TB, PAQL or PAQN")
    title: str
    description: str | None = None
    document_id: str
    document_title: str
    chunk_id: str
    section_title: str | None = None
    company_id: str
    company_name: str
    fact: TimeBasedFact | QualitativeFact | QuantitativeFact

    model_config = ConfigDict(from_attributes=True)


class DateRange(BaseModel):
    min: dt.date | None = None
    max: dt.date | None = None


class TimelineResponse(BaseModel):
    """Response for GET /timeline."""

    documents: list[TimelineDocumentResponse] = Field(default_factory=list)
    data_points: list[TimelineDataPointResponse] = Field(default_factory=list)
    date_range: DateRange
