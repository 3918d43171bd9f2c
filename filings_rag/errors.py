# =============================================================================
# Retrieval Errors
# =============================================================================
#
# Taxonomy:
#   InvalidInput            — empty query, missing tenant, bad options.
#                             Fatal, never retried.
#   EmbeddingProviderError  — rate limit, network error, malformed response
#                             from the embedding provider. Retried.
#   IndexUnavailable        — similarity index missing or unreachable.
#                             Retried.
#   ConfigurationError      — missing API key or other deployment mistake.
#                             Fatal, never retried.
#
# "No results" is not an error: retrieval returns num_results == 0.
#
# The API layer maps these to HTTP status codes; nothing below the API
# layer knows about HTTP.
# =============================================================================

from __future__ import annotations


class RetrievalError(Exception):
    """Base class for all retrieval-path failures."""

    retryable: bool = False


class InvalidInput(RetrievalError):
    """The caller supplied a query, tenant or option that cannot be served."""


class EmbeddingProviderError(RetrievalError):
    """The embedding provider failed or returned an unusable vector."""

    retryable = True


class IndexUnavailable(RetrievalError):
    """The similarity index is not built yet or cannot be queried."""

    retryable = True


class ConfigurationError(RetrievalError):
    """The service is deployed without a setting it needs (e.g. an API key)."""
