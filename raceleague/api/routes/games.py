"""Score, screenshot, track and split vote route handlers for a game."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from raceleague.api.routes import http_error
from raceleague.database.db import get_db_session
from raceleague.models.schemas import (
    ModeratorAction,
    ScoreSubmit,
    ScreenshotCreate,
    SplitVoteResult,
    SplitVoteStatus,
    TracksUpdate,
    UserAction,
)
from raceleague.services import match_repository as repo
from raceleague.services import score_service, split_vote_service
from raceleague.utils.datetime_utils import isoformat_or_none
from raceleague.utils.exceptions import MatchLifecycleError

logger = logging.getLogger(__name__)
router = APIRouter()


async def _score_response(session: AsyncSession, game_id: int, participant) -> dict:
    game = await repo.get_game(session, game_id)
    return score_service.score_payload(game, participant)


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------


@router.post("/api/games/{game_id}/scores")
async def submit_score(
    game_id: int, payload: ScoreSubmit, session: AsyncSession = Depends(get_db_session)
):
    """Submit a player's race results (PENDING until a moderator verifies them)."""
    try:
        participant = await score_service.submit_score(
            session, game_id, payload.user_id, payload.races
        )
        return await _score_response(session, game_id, participant)
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error submitting score: {str(e)}")


@router.post("/api/games/{game_id}/scores/{user_id}/verify")
async def verify_score(
    game_id: int,
    user_id: int,
    payload: ModeratorAction,
    session: AsyncSession = Depends(get_db_session),
):
    try:
        participant = await score_service.verify_score(
            session, game_id, user_id, payload.moderator_id
        )
        return await _score_response(session, game_id, participant)
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error verifying score: {str(e)}")


@router.post("/api/games/{game_id}/scores/{user_id}/reject")
async def reject_score(
    game_id: int,
    user_id: int,
    payload: ModeratorAction,
    session: AsyncSession = Depends(get_db_session),
):
    """Reject a score and ask the player for a new screenshot."""
    try:
        participant = await score_service.reject_score(
            session, game_id, user_id, payload.moderator_id
        )
        return await _score_response(session, game_id, participant)
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error rejecting score: {str(e)}")


@router.post("/api/games/{game_id}/screenshots")
async def record_screenshot(
    game_id: int, payload: ScreenshotCreate, session: AsyncSession = Depends(get_db_session)
):
    try:
        screenshot = await score_service.record_screenshot(
            session, game_id, payload.user_id, payload.type, payload.file_url
        )
        return {
            "id": screenshot.id,
            "game_id": screenshot.game_id,
            "user_id": screenshot.user_id,
            "type": screenshot.type.value,
            "file_url": screenshot.file_url,
            "uploaded_at": isoformat_or_none(screenshot.uploaded_at),
        }
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error recording screenshot: {str(e)}")


@router.put("/api/games/{game_id}/tracks")
async def update_tracks(
    game_id: int, payload: TracksUpdate, session: AsyncSession = Depends(get_db_session)
):
    try:
        game = await score_service.update_tracks(session, game_id, payload.track_ids)
        return {"game_id": game.id, "tracks": game.tracks}
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error updating tracks: {str(e)}")


# ---------------------------------------------------------------------------
# Split vote
# ---------------------------------------------------------------------------


@router.post("/api/games/{game_id}/split-vote", response_model=SplitVoteResult)
async def cast_split_vote(
    game_id: int, payload: UserAction, session: AsyncSession = Depends(get_db_session)
):
    """Vote to replace a leaked passcode."""
    try:
        return await split_vote_service.cast_split_vote(session, game_id, payload.user_id)
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error casting split vote: {str(e)}")


@router.get("/api/games/{game_id}/split-vote", response_model=SplitVoteStatus)
async def get_split_vote_status(
    game_id: int, user_id: int, session: AsyncSession = Depends(get_db_session)
):
    try:
        return await split_vote_service.get_split_vote_status(session, game_id, user_id)
    except MatchLifecycleError as e:
        raise http_error(e)


@router.post("/api/games/{game_id}/split-vote/force", response_model=SplitVoteResult)
async def force_regenerate(game_id: int, session: AsyncSession = Depends(get_db_session)):
    """Regenerate the passcode without votes (moderator action)."""
    try:
        return await split_vote_service.force_regenerate(session, game_id)
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error regenerating passcode: {str(e)}")
