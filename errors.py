"""
Domain errors for the booking core.

Every failure is scoped to the request that produced it. The exception
handler registered in ``main`` turns these into JSON responses with the
same ``{"detail": ...}`` shape FastAPI uses for ``HTTPException``.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class MarketplaceError(Exception):
    status_code = 500
    retryable = False

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class ValidationFailed(MarketplaceError):
    """Malformed or missing input; rejected before touching storage."""
    status_code = 400


class NotAuthorized(MarketplaceError):
    """The acting identity is not the one the transition requires."""
    status_code = 403


class NotFound(MarketplaceError):
    status_code = 404


class Conflict(MarketplaceError):
    """The row is not in the expected prior state. Callers may re-fetch."""
    status_code = 409


class CollaboratorFailure(MarketplaceError):
    """Supabase or Stripe call failed. Nothing was committed; safe to retry."""
    status_code = 502
    retryable = True


async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.status_code, exc.detail)

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "retryable": exc.retryable},
    )
