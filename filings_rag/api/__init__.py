# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - companies.py: Tenants with at least one document
#   - retrieve.py: Context bundle for a question (no generation)
#   - chat.py: Retrieval-grounded streaming answers
#   - timeline.py: Documents and dated facts of one company
#   - deps.py: Cookie auth gate shared by all routers
# =============================================================================
