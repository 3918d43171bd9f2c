# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request/response schemas for the API, plus the typed fact variants stored
# in the chunk JSONB columns. These are SEPARATE from the database models
# (filings_rag/db/models.py).
# =============================================================================
