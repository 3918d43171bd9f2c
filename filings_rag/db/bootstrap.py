# =============================================================================
# Store Bootstrap — pgvector Extension, Tables and Specialised Indexes
# =============================================================================
#
# One-off operator command, run in this order on a fresh database:
#
#   python -m filings_rag.db.bootstrap bootstrap   # CREATE EXTENSION vector
#   python -m filings_rag.db.bootstrap tables      # ORM schema (B-tree indexes)
#   python -m filings_rag.db.bootstrap indexes     # HNSW + GIN indexes
#
# Every statement is idempotent (IF NOT EXISTS), so re-running any mode is
# safe. Until `indexes` has run, the pgvector similarity index reports
# IndexUnavailable.
#
# HNSW PARAMETERS:
#   m = 16               — graph connectivity per node
#   ef_construction = 64 — candidate list size while building
#   vector_cosine_ops    — cosine distance, matching `<=>` at query time
#
# The GIN indexes on the three fact columns serve structured fact queries;
# similarity search does not use them.
#
# Uses the sync engine (psycopg2): this runs outside any event loop.
# =============================================================================

from __future__ import annotations

import argparse
import logging
import sys

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from filings_rag.config import settings
from filings_rag.db.engine import get_sync_engine, get_sync_session
from filings_rag.db.models import HNSW_INDEX_NAME, Base

logger = logging.getLogger(__name__)

EXTENSION_STATEMENTS = [
    "CREATE EXTENSION IF NOT EXISTS vector",
]

INDEX_STATEMENTS = [
    f"CREATE INDEX IF NOT EXISTS {HNSW_INDEX_NAME} "
    "ON document_chunks USING hnsw (embedding vector_cosine_ops) "
    "WITH (m = 16, ef_construction = 64)",
    "CREATE INDEX IF NOT EXISTS idx_chunks_time_based_gin "
    "ON document_chunks USING gin (time_based_facts)",
    "CREATE INDEX IF NOT EXISTS idx_chunks_qualitative_gin "
    "ON document_chunks USING gin (qualitative_facts)",
    "CREATE INDEX IF NOT EXISTS idx_chunks_quantitative_gin "
    "ON document_chunks USING gin (quantitative_facts)",
]

MODES = ("bootstrap", "tables", "indexes")


class BootstrapError(Exception):
    """A bootstrap step cannot run; the message tells the operator what to do."""


def _run_statements(statements: list[str]) -> None:
    with get_sync_session() as session:
        for statement in statements:
            logger.debug("Executing: %s", statement)
            session.execute(text(statement))


def install_extension() -> None:
    """Pre-migration: enable pgvector."""
    _run_statements(EXTENSION_STATEMENTS)
    logger.info("pgvector extension enabled")


def create_tables() -> None:
    """Create companies, documents and document_chunks (no-op if present)."""
    try:
        Base.metadata.create_all(get_sync_engine())
    except SQLAlchemyError as e:
        if 'type "vector" does not exist' in str(e):
            raise BootstrapError(
                "pgvector extension is not installed. "
                "Run: python -m filings_rag.db.bootstrap bootstrap"
            ) from e
        raise
    logger.info("Tables created: %s", ", ".join(sorted(Base.metadata.tables)))


def create_indexes() -> None:
    """Post-migration: build the HNSW index and the three GIN indexes."""
    try:
        _run_statements(INDEX_STATEMENTS)
    except SQLAlchemyError as e:
        message = str(e)
        if 'type "vector" does not exist' in message or (
            'operator class "vector_cosine_ops" does not exist' in message
        ):
            raise BootstrapError(
                "pgvector extension is not installed. "
                "Run: python -m filings_rag.db.bootstrap bootstrap"
            ) from e
        if "does not exist" in message:
            raise BootstrapError(
                "Tables do not exist yet. "
                "Run: python -m filings_rag.db.bootstrap tables"
            ) from e
        raise
    logger.info(
        "Indexes created: %s (HNSW) and GIN indexes on the fact columns",
        HNSW_INDEX_NAME,
    )


def run(mode: str) -> None:
    if mode == "bootstrap":
        install_extension()
    elif mode == "tables":
        create_tables()
    elif mode == "indexes":
        create_indexes()
    else:
        raise BootstrapError(f"Unknown mode: {mode}. Valid modes: {', '.join(MODES)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="python -m filings_rag.db.bootstrap",
        description="Prepare the PostgreSQL store for the retrieval service.",
    )
    parser.add_argument(
        "mode",
        nargs="?",
        default="bootstrap",
        choices=MODES,
        help="bootstrap: enable pgvector; tables: create schema; "
        "indexes: build HNSW and GIN indexes (default: bootstrap)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        run(args.mode)
    except BootstrapError as e:
        logger.error("%s", e)
        return 1
    except SQLAlchemyError as e:
        logger.error("Bootstrap '%s' failed: %s", args.mode, e)
        return 1

    logger.info("Bootstrap '%s' completed", args.mode)
    return 0


if __name__ == "__main__":
    sys.exit(main())
