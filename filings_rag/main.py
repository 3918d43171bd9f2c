# =============================================================================
# FastAPI Application Entry Point
# =============================================================================
#
# Run locally:
#   uvicorn filings_rag.main:app --reload
#
# Routes:
#   GET  /health     — liveness, no auth
#   GET  /companies  — tenants with documents
#   POST /retrieve   — context bundle for a question
#   POST /chat       — streamed, retrieval-grounded answer
#   GET  /timeline   — documents and dated facts of one company
#
# Store preparation is a separate step:
#   python -m filings_rag.db.bootstrap [bootstrap|tables|indexes]
# =============================================================================

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from filings_rag.api import chat, companies, retrieve, timeline
from filings_rag.config import settings
from filings_rag.db.engine import async_engine
from filings_rag.models.responses import HealthResponse

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting %s v%s (vectorstore=%s)",
        settings.app_name, settings.app_version, settings.vectorstore_type,
    )
    yield
    await async_engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Tenant-scoped retrieval of company filing context for language models",
    lifespan=lifespan,
)

app.include_router(companies.router)
app.include_router(retrieve.router)
app.include_router(chat.router)
app.include_router(timeline.router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    return HealthResponse(version=settings.app_version, service=settings.app_name)
