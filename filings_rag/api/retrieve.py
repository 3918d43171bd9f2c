# =============================================================================
# Retrieve API — Context Bundle Without Generation
# =============================================================================
#
# POST /retrieve exposes the retrieval service directly, for callers that
# bring their own model.
#
# ERROR MAPPING:
#   InvalidInput           → 400
#   EmbeddingProviderError → 502 (upstream failed after retries)
#   IndexUnavailable       → 503 (index missing or unreachable)
#   ConfigurationError     → 500 (deployment problem, detail only in the log)
#   no matching chunks     → 200 with num_results = 0
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from filings_rag.api.deps import require_auth
from filings_rag.config import settings
from filings_rag.errors import (
    ConfigurationError,
    EmbeddingProviderError,
    IndexUnavailable,
    InvalidInput,
)
from filings_rag.models.requests import RetrieveRequest
from filings_rag.models.responses import RetrieveResponse, SourceChunk
from filings_rag.services.retrieval import RetrievalOptions, get_retrieval_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Retrieval"], dependencies=[Depends(require_auth)])


@router.post(
    "/retrieve",
    response_model=RetrieveResponse,
    summary="Retrieve the context bundle for a question",
)
async def retrieve_endpoint(request: RetrieveRequest) -> RetrieveResponse:
    try:
        options = RetrievalOptions(
            limit=request.limit if request.limit is not None else settings.retrieval_limit,
            similarity_threshold=(
                request.similarity_threshold
                if request.similarity_threshold is not None
                else settings.retrieval_similarity_threshold
            ),
        )
        result = await get_retrieval_service().retrieve_context(
            request.query, request.company_id, options,
        )
    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except EmbeddingProviderError as e:
        logger.error("Embedding provider failed: %s", e)
        raise HTTPException(status_code=502, detail="Embedding provider unavailable") from e
    except IndexUnavailable as e:
        logger.error("Similarity index unavailable: %s", e)
        raise HTTPException(status_code=503, detail="Similarity index unavailable") from e
    except ConfigurationError as e:
        logger.error("Retrieval is misconfigured: %s", e)
        raise HTTPException(status_code=500, detail="Service misconfigured") from e

    return RetrieveResponse(
        context=result.context,
        num_results=result.num_results,
        sources=[
            SourceChunk(
                chunk_id=c.chunk_id,
                doc_id=c.doc_id,
                document_title=c.document_title,
                section_title=c.section_title,
                page_start=c.page_start,
                page_end=c.page_end,
                similarity=round(c.similarity, 4),
                text=c.text,
            )
            for c in result.chunks
        ],
    )
