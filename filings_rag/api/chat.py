# =============================================================================
# Chat API — Retrieval-Grounded Streaming Answers
# =============================================================================
#
# POST /chat is a thin consumer of the retrieval service:
#
#   1. Validate the body (messages, company_id, a non-empty user message)
#   2. retrieve_context(latest user utterance, company_id, limit=5, t=0.6)
#   3. Build the system prompt around the context bundle
#   4. Stream the chat model's answer back as text/plain
#
# Any failure before streaming starts is a 500 with a generic body; the
# detail only goes to the server log.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from filings_rag.api.deps import require_auth
from filings_rag.models.requests import ChatMessage, ChatRequest
from filings_rag.services.llm import LLMProvider, get_llm_provider
from filings_rag.services.retrieval import RetrievalOptions, get_retrieval_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Chat"], dependencies=[Depends(require_auth)])

CHAT_RETRIEVAL_OPTIONS = RetrievalOptions(limit=5, similarity_threshold=0.6)

SYSTEM_PROMPT_TEMPLATE = """You are an AI assistant helping users understand company documents and financial information.

You have access to relevant information from company documents. Use this context to answer the user's question accurately and concisely.

IMPORTANT RULES:
1. ONLY use information from the provided context
2. If the context doesn't contain relevant information, say "I don't have information about that in the available documents"
3. Always cite which document/section your information comes from
4. Be precise with numbers, dates, and metrics
5. If you're not certain about something, acknowledge the uncertainty
6. Cite sources by their [Source n] label

Context from documents ({num_results} relevant sources found):
{context}

Now answer the user's question based ONLY on the above context."""


def build_system_prompt(context: str, num_results: int) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(
        num_results=num_results,
        context=context or "(no relevant context found)",
    )


def _to_model_messages(messages: list[ChatMessage]) -> list[dict[str, str]]:
    """Keep user/assistant turns as plain-text messages for the model."""
    converted = []
    for message in messages:
        if message.role not in ("user", "assistant"):
            continue
        content = message.text()
        if content:
            converted.append({"role": message.role, "content": content})
    return converted


async def _stream_answer(
    provider: LLMProvider,
    messages: list[dict[str, str]],
    system: str,
) -> AsyncIterator[str]:
    try:
        async for delta in provider.stream(messages, system=system):
            yield delta
    except Exception:
        # Headers are already sent; the client sees a truncated answer.
        logger.exception("Chat stream failed mid-response")


# ---------------------------------------------------------------------------
# POST /chat
# ---------------------------------------------------------------------------


@router.post(
    "/chat",
    summary="Ask a question about one company's documents",
    response_class=StreamingResponse,
    responses={
        400: {"description": "Missing messages, company_id or user message"},
        401: {"description": "Missing or invalid auth cookie"},
        500: {"description": "Retrieval or model failure"},
    },
)
async def chat_endpoint(request: ChatRequest):
    if not request.messages:
        return PlainTextResponse("Messages are required", status_code=400)
    if not request.company_id:
        return PlainTextResponse("Company ID is required", status_code=400)

    user_messages = [m for m in request.messages if m.role == "user"]
    if not user_messages:
        return PlainTextResponse("No user message found", status_code=400)

    query_text = user_messages[-1].text()
    if not query_text.strip():
        return PlainTextResponse("Empty message content", status_code=400)

    logger.info(
        "Chat request: company_id=%s, query='%s'",
        request.company_id, query_text[:80],
    )

    try:
        retrieved = await get_retrieval_service().retrieve_context(
            query_text, request.company_id, CHAT_RETRIEVAL_OPTIONS,
        )
        provider = get_llm_provider()
    except Exception:
        logger.exception("Chat request failed for company_id=%s", request.company_id)
        return JSONResponse({"error": "An error occurred"}, status_code=500)

    logger.debug("Chat context (%d sources):\n%s", retrieved.num_results, retrieved.context)

    return StreamingResponse(
        _stream_answer(
            provider,
            _to_model_messages(request.messages),
            build_system_prompt(retrieved.context, retrieved.num_results),
        ),
        media_type="text/plain; charset=utf-8",
    )
