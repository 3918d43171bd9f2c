# =============================================================================
# Filings RAG Context Service
# =============================================================================
# Multi-tenant retrieval over company filings: embed a question, find the
# company's most similar chunks above a threshold, and hand a cited context
# bundle to a language model.
#
# Package structure:
#   filings_rag/
#   ├── api/          → FastAPI route handlers (companies, retrieve, chat)
#   ├── db/           → Engine, sessions, ORM models, store bootstrap CLI
#   ├── models/       → Pydantic V2 request/response and fact schemas
#   └── services/     → Retrieval, similarity index, embeddings, retry,
#                        catalog writer, chat model client
# =============================================================================
