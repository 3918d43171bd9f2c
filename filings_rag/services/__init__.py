# =============================================================================
# Services Package — Business Logic
# =============================================================================
# Contains the core business logic, separated from API handlers:
#   - retrieval.py: Query → tenant-scoped context bundle
#   - vectorstore.py: Similarity index protocol (pgvector, Chroma)
#   - embedder.py: OpenAI embedding generation (query and batch)
#   - retry.py: Exponential backoff wrapper for network-bound steps
#   - catalog.py: Company / document / chunk write path
#   - timeline.py: Dated facts per company, flexible fact-date parsing
#   - llm.py: OpenAI-compatible chat streaming
# =============================================================================
