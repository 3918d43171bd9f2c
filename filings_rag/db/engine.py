# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Async SQLAlchemy engine (asyncpg) for the FastAPI handlers, the retrieval
# path and the catalog writer. All queries use `await session.execute(...)`.
#
# SESSION LIFECYCLE:
# 1. Request arrives (or a service opens its own session)
# 2. A session is created from async_session_factory
# 3. Work is done; on exit the session commits
# 4. On exception the transaction is rolled back
#
# A separate, lazily created sync engine (psycopg2) serves the store
# bootstrap CLI, which runs outside any event loop.
# =============================================================================

from collections.abc import AsyncGenerator, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from filings_rag.config import settings

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# - echo: logs every SQL statement when debug is on.
# - pool_size / max_overflow: persistent and burst connection counts.
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=10,
)

# expire_on_commit=False: loaded attributes stay readable after commit,
# which async code relies on (no implicit lazy refresh outside a session).
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Sync Engine — For the Bootstrap CLI (Lazy Initialization)
# ---------------------------------------------------------------------------
# Created on first use so that psycopg2 is only needed by the bootstrap
# command, never by the API server.
# ---------------------------------------------------------------------------

_sync_engine = None
_sync_session_factory = None


def get_sync_engine():
    """Lazily create and cache the sync SQLAlchemy engine."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(
            settings.database_url_sync,
            echo=settings.debug,
            pool_size=2,
            max_overflow=0,
        )
    return _sync_engine


def _get_sync_session_factory():
    """Lazily create and cache the sync session factory."""
    global _sync_session_factory
    if _sync_session_factory is None:
        _sync_session_factory = sessionmaker(
            bind=get_sync_engine(),
            class_=Session,
            expire_on_commit=False,
        )
    return _sync_session_factory


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """
    Context manager that provides a sync database session.

    Usage:
        with get_sync_session() as session:
            session.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            # Auto-commits on exit, auto-rollbacks on exception
    """
    factory = _get_sync_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    Usage in route handlers:
        @router.get("/companies")
        async def list_companies(session: AsyncSession = Depends(get_async_session)):
            ...

    Commits when the handler returns, rolls back on exception.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
