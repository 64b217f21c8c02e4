"""
API routes - combined router from all domain modules.

Shared error mapping lives here; every sub-router imports what it needs
from this package.
"""

from fastapi import APIRouter, HTTPException

from raceleague.utils.exceptions import (
    MatchLifecycleError,
    ValidationError,
    ConflictError,
    NotFoundError,
    PreconditionError,
    IntegrityError,
)

# ---------------------------------------------------------------------------
# Shared error mapping
# ---------------------------------------------------------------------------
ERROR_STATUS_CODES = (
    (NotFoundError, 404),
    (ValidationError, 400),
    (ConflictError, 409),
    (PreconditionError, 409),
    (IntegrityError, 422),
)


def http_error(error: MatchLifecycleError) -> HTTPException:
    """HTTPException carrying the status code for a lifecycle error."""
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


# ---------------------------------------------------------------------------
# Import sub-routers and combine
# ---------------------------------------------------------------------------
from raceleague.api.routes.matches import router as matches_router
from raceleague.api.routes.games import router as games_router
from raceleague.api.routes.schedules import router as schedules_router

router = APIRouter()
router.include_router(matches_router)
router.include_router(games_router)
router.include_router(schedules_router)
