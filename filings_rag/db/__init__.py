# =============================================================================
# Database Package
# =============================================================================
# Provides async SQLAlchemy engine, session management, ORM models and the
# store bootstrap CLI.
#
# Key exports:
#   - get_async_session: FastAPI dependency for database sessions
#   - Base: SQLAlchemy declarative base for ORM models
#   - Company, Document, Chunk: tenant, source file and retrieval unit
# =============================================================================
