# =============================================================================
# Timeline API — Documents and Dated Facts for One Company
# =============================================================================
#
# GET /timeline?company_id=...&start=2024-01-01&end=2025-12-31&layers=TB&layers=PAQN
#
# ERROR MAPPING:
#   missing company_id        → 400 "Company ID is required"
#   InvalidInput              → 400 (bad id, unknown layer, start > end)
#   database failure          → 500 "Failed to fetch timeline data"
# =============================================================================

from __future__ import annotations

import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from filings_rag.api.deps import require_auth
from filings_rag.db.engine import get_async_session
from filings_rag.errors import InvalidInput
from filings_rag.models.responses import (
    DateRange,
    TimelineDataPointResponse,
    TimelineDocumentResponse,
    TimelineResponse,
)
from filings_rag.services.timeline import fetch_timeline_data

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Timeline"], dependencies=[Depends(require_auth)])


@router.get(
    "/timeline",
    response_model=TimelineResponse,
    summary="Documents and dated facts of one company",
)
async def get_timeline(
    company_id: str | None = Query(default=None, description="Tenant to read"),
    start: date | None = Query(default=None, description="Inclusive lower bound"),
    end: date | None = Query(default=None, description="Inclusive upper bound"),
    layers: list[str] | None = Query(
        default=None,
        description="Repeat to select several of TB, PAQL, PAQN, DOCUMENT (default: all)",
    ),
    session: AsyncSession = Depends(get_async_session),
) -> TimelineResponse:
    if not company_id:
        raise HTTPException(status_code=400, detail="Company ID is required")

    try:
        data = await fetch_timeline_data(session, company_id, start, end, layers)
    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except SQLAlchemyError as e:
        logger.exception("Timeline query failed for company_id=%s", company_id)
        raise HTTPException(status_code=500, detail="Failed to fetch timeline data") from e

    return TimelineResponse(
        documents=[TimelineDocumentResponse.model_validate(d) for d in data.documents],
        data_points=[TimelineDataPointResponse.model_validate(p) for p in data.data_points],
        date_range=DateRange(min=data.date_min, max=data.date_max),
    )
