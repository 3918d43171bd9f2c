# =============================================================================
# Companies API — Tenants Available for Chat
# =============================================================================
#
# GET /companies lists the companies that have at least one ingested
# document; a company with no documents has nothing to retrieve from.
# =============================================================================

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from filings_rag.api.deps import require_auth
from filings_rag.db.engine import get_async_session
from filings_rag.models.responses import CompanyResponse
from filings_rag.services.catalog import list_available_companies

router = APIRouter(tags=["Companies"], dependencies=[Depends(require_auth)])


@router.get(
    "/companies",
    response_model=list[CompanyResponse],
    summary="List companies with ingested documents",
)
async def list_companies(
    session: AsyncSession = Depends(get_async_session),
) -> list[CompanyResponse]:
    companies = await list_available_companies(session)
    return [CompanyResponse.model_validate(c) for c in companies]
