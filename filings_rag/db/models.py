# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────┐       ┌───────────────────────┐       ┌───────────────────────────────┐
# │  companies   │       │  documents            │       │  document_chunks              │
# ├──────────────┤       ├───────────────────────┤       ├───────────────────────────────┤
# │ id (PK)      │──1:N─▶│ id (PK)               │──1:N─▶│ id (PK)                       │
# │ name         │       │ company_id (FK)       │       │ doc_id (FK → documents.id)    │
# │ sector       │       │ filename / title      │       │ chunk_index (1-based)         │
# │ ticker       │       │ document_type         │       │ chunk_text                    │
# │ created_at   │       │ file_type             │       │ page_start / page_end         │
# │ updated_at   │       │ storage_path          │       │ section_title / token_count   │
# └──────────────┘       │ document_date         │       │ embedding (vector(1536))      │
#                        │ reporting_period      │       │ time_based_facts (jsonb)      │
#                        │ total_pages/chunks    │       │ qualitative_facts (jsonb)     │
#                        │ uploaded_at           │       │ quantitative_facts (jsonb)    │
#                        └───────────────────────┘       │ created_at                    │
#                                                        └───────────────────────────────┘
#
# Tenant isolation: a Company is the tenant. Every Document belongs to exactly
# one Company and every Chunk to exactly one Document, so a chunk's tenant is
# always reachable through doc_id → documents.company_id. Deleting a company
# cascades through both levels (FK ON DELETE CASCADE + ORM delete-orphan).
#
# The HNSW index on embedding and the GIN indexes on the fact columns are NOT
# declared here. They are built by the post-migration bootstrap step
# (filings_rag.db.bootstrap) once the pgvector extension is installed.
# Only plain B-tree indexes live in the ORM metadata.
# =============================================================================

import uuid
from datetime import date, datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from filings_rag.config import settings
from filings_rag.models.facts import ExtractedFact, parse_facts


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class shared by all ORM models."""

    pass


class Company(Base):
    """
    A tenant. Root of data isolation for documents and chunks.
    """

    __tablename__ = "companies"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sector: Mapped[str] = mapped_column(String(100), nullable=False)
    ticker: Mapped[str | None] = mapped_column(String(10), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    documents: Mapped[list["Document"]] = relationship(
        "Document",
        back_populates="company",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Company(id={self.id}, name='{self.name}', sector='{self.sector}')>"


class Document(Base):
    """
    One ingested source file (annual report, quarterly filing, ...).

    Immutable after creation except for the counters total_pages and
    total_chunks, which the catalog writer sets once chunking is done.
    """

    __tablename__ = "documents"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )

    company_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
    )

    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Annual Report, Quarterly Report, Investor Presentation, ...
    document_type: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # pdf, xlsx
    file_type: Mapped[str] = mapped_column(String(50), nullable=False)
    storage_path: Mapped[str] = mapped_column(Text, nullable=False)

    # Date the document refers to, and its period label (Q4 2023, FY 2023)
    document_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    reporting_period: Mapped[str | None] = mapped_column(String(50), nullable=True)

    total_pages: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_chunks: Mapped[int | None] = mapped_column(Integer, nullable=True)

    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    company: Mapped["Company"] = relationship("Company", back_populates="documents")

    chunks: Mapped[list["Chunk"]] = relationship(
        "Chunk",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Chunk.chunk_index",
    )

    def __repr__(self) -> str:
        return (
            f"<Document(id={self.id}, company_id={self.company_id}, "
            f"filename='{self.filename}')>"
        )


class Chunk(Base):
    """
    A bounded span of a document's text: the atomic unit of retrieval.

    Chunks are written by the ingestion collaborator and are read-only to
    the retrieval service.
    """

    __tablename__ = "document_chunks"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )

    doc_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Reading order within the document: 1, 2, 3, ... (gaps allowed)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_text: Mapped[str] = mapped_column(Text, nullable=False)

    page_start: Mapped[int | None] = mapped_column(Integer, nullable=True)
    page_end: Mapped[int | None] = mapped_column(Integer, nullable=True)
    section_title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    token_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # NULL until the embedding step has run; otherwise exactly
    # settings.embedding_dimensions floats.
    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )

    # Structured facts. Never NULL, empty array by default.
    time_based_facts: Mapped[list[dict]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default=text("'[]'::jsonb"),
    )
    qualitative_facts: Mapped[list[dict]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default=text("'[]'::jsonb"),
    )
    quantitative_facts: Mapped[list[dict]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default=text("'[]'::jsonb"),
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    document: Mapped["Document"] = relationship("Document", back_populates="chunks")

    __table_args__ = (
        UniqueConstraint("doc_id", "chunk_index", name="uq_chunks_doc_index"),
        CheckConstraint("chunk_index >= 1", name="ck_chunks_index_positive"),
    )

    def typed_facts(self) -> list[ExtractedFact]:
        """All extracted facts as typed variants, TB then PAQL then PAQN."""
        return [
            *parse_facts(self.time_based_facts, "TB"),
            *parse_facts(self.qualitative_facts, "PAQL"),
            *parse_facts(self.quantitative_facts, "PAQN"),
        ]

    def __repr__(self) -> str:
        return (
            f"<Chunk(id={self.id}, doc_id={self.doc_id}, "
            f"index={self.chunk_index}, tokens={self.token_count})>"
        )


# =============================================================================
# B-tree Indexes
# =============================================================================
# The specialised HNSW / GIN indexes are created by db/bootstrap.py.
# =============================================================================

company_name_idx = Index("idx_companies_name", Company.name)

document_company_idx = Index("idx_documents_company", Document.company_id)

document_date_idx = Index("idx_documents_date", Document.document_date)

chunk_document_idx = Index("idx_chunks_doc", Chunk.doc_id)

# Built by db/bootstrap.py; the pgvector similarity index refuses queries
# until it exists.
HNSW_INDEX_NAME = "idx_chunks_embedding_hnsw"
