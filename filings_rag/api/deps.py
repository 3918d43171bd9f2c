# =============================================================================
# Auth Dependency — Boolean Cookie Gate
# =============================================================================
#
# All routes except /health depend on require_auth(). The gate is a single
# check: the request must carry the configured cookie with the configured
# value. Issuing that cookie (password form, session lifetime) happens
# elsewhere.
#
# DESIGN DECISION: FastAPI dependency (not middleware) for auth.
# - Each router opts in via Depends(require_auth)
# - Testable via dependency_overrides[get_settings]
# - When auth_enabled=False every request passes
# =============================================================================

from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request

from filings_rag.config import Settings, get_settings

logger = logging.getLogger(__name__)


def is_authenticated(request: Request, settings: Settings) -> bool:
    if not settings.auth_enabled:
        return True
    return request.cookies.get(settings.auth_cookie_name) == settings.auth_cookie_value


async def require_auth(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Reject the request with 401 unless the auth cookie is present and valid.

    Raises:
        HTTPException 401: Missing or wrong auth cookie.
    """
    if not is_authenticated(request, settings):
        logger.info("Rejected unauthenticated request to %s", request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")
