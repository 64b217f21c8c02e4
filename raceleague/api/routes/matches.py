"""Match management, finalization and rating recalculation route handlers."""

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from raceleague.api.routes import http_error
from raceleague.database.db import get_db_session
from raceleague.models.schemas import MatchCreate, RecalculateRequest, UserAction
from raceleague.services import match_repository as repo
from raceleague.services import match_service, rating_service
from raceleague.services.match_orchestrator import get_match_orchestrator
from raceleague.utils.exceptions import MatchLifecycleError

logger = logging.getLogger(__name__)
router = APIRouter()


# ---------------------------------------------------------------------------
# Match endpoints
# ---------------------------------------------------------------------------


@router.post("/api/matches")
async def create_match(payload: MatchCreate, session: AsyncSession = Depends(get_db_session)):
    """Create a WAITING match."""
    try:
        match = await match_service.create_match(
            session,
            payload.season_id,
            payload.scheduled_start,
            payload.min_players,
            payload.max_players,
            deadline=payload.deadline,
        )
        return match_service.match_summary(match)
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error creating match: {str(e)}")


@router.get("/api/matches/{match_id}")
async def get_match(match_id: int, session: AsyncSession = Depends(get_db_session)):
    try:
        return match_service.match_summary(await repo.get_match(session, match_id))
    except MatchLifecycleError as e:
        raise http_error(e)


@router.post("/api/matches/{match_id}/join")
async def join_match(
    match_id: int, payload: UserAction, session: AsyncSession = Depends(get_db_session)
):
    try:
        await match_service.join_match(session, match_id, payload.user_id)
        return match_service.match_summary(await repo.get_match(session, match_id))
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error joining match: {str(e)}")


@router.post("/api/matches/{match_id}/leave")
async def leave_match(
    match_id: int, payload: UserAction, session: AsyncSession = Depends(get_db_session)
):
    try:
        await match_service.leave_match(session, match_id, payload.user_id)
        return match_service.match_summary(await repo.get_match(session, match_id))
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error leaving match: {str(e)}")


@router.post("/api/matches/{match_id}/cancel")
async def cancel_match(match_id: int, session: AsyncSession = Depends(get_db_session)):
    """Cancel a match (moderator action)."""
    try:
        match = await match_service.cancel_match(session, match_id)
        return match_service.match_summary(match)
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error cancelling match: {str(e)}")


@router.delete("/api/matches/{match_id}")
async def delete_match(match_id: int, session: AsyncSession = Depends(get_db_session)):
    try:
        await match_service.delete_match(session, match_id)
        return {"success": True}
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error deleting match: {str(e)}")


# ---------------------------------------------------------------------------
# Ratings
# ---------------------------------------------------------------------------


@router.post("/api/matches/{match_id}/finalize")
async def finalize_match(match_id: int, session: AsyncSession = Depends(get_db_session)):
    """
    Apply ratings to a match and mark it FINALIZED.

    Returns:
        dict: match_id and one rating change per rated participant
    """
    try:
        changes = await get_match_orchestrator().finalize_match(session, match_id)
        return {"match_id": match_id, "changes": [asdict(change) for change in changes]}
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Error finalizing match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error finalizing match: {str(e)}")


@router.post("/api/ratings/recalculate")
async def recalculate_ratings(
    payload: RecalculateRequest, session: AsyncSession = Depends(get_db_session)
):
    """Replay a season's finalized matches from a match number on."""
    try:
        replayed = await rating_service.recalculate_from_match(
            session, payload.season_id, payload.from_match_number
        )
        return {"season_id": payload.season_id, "replayed_matches": replayed}
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Error recalculating season {payload.season_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error recalculating ratings: {str(e)}")
