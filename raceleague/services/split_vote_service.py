"""
Split vote: players in a live game can vote to have the passcode replaced
(e.g. after it leaked on a stream). Once ceil(participants / 3) players
have voted at the current passcode version, a new passcode is generated
and the version bumps, which leaves the old votes behind.
"""

import logging
import math
import random
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, func, and_
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession

from raceleague.database.models import Game, MatchStatus, SplitVote
from raceleague.models.schemas import LiveUpdateEvent, SplitVoteResult, SplitVoteStatus
from raceleague.services import match_repository as repo
from raceleague.services.match_orchestrator import generate_passcode
from raceleague.services.notification_sink import get_notification_sink
from raceleague.services.websocket_manager import get_websocket_manager
from raceleague.utils.constants import SPLIT_VOTE_DIVISOR
from raceleague.utils.datetime_utils import utcnow, isoformat_or_none
from raceleague.utils.exceptions import ConflictError, NotFoundError, PreconditionError

logger = logging.getLogger(__name__)


def required_votes(participant_count: int) -> int:
    """Votes needed to regenerate: ceil(participants / 3), at least 1."""
    return max(1, math.ceil(participant_count / SPLIT_VOTE_DIVISOR))


async def _count_votes(session: AsyncSession, game_id: int, passcode_version: int) -> int:
    result = await session.execute(
        select(func.count(SplitVote.id)).where(
            and_(SplitVote.game_id == game_id, SplitVote.passcode_version == passcode_version)
        )
    )
    return result.scalar_one()


async def _has_voted(session: AsyncSession, game_id: int, user_id: int, passcode_version: int) -> bool:
    result = await session.execute(
        select(SplitVote.id).where(
            and_(
                SplitVote.game_id == game_id,
                SplitVote.user_id == user_id,
                SplitVote.passcode_version == passcode_version,
            )
        )
    )
    return result.first() is not None


def _require_live(game: Game) -> None:
    match = game.match
    if match.status != MatchStatus.IN_PROGRESS:
        raise PreconditionError(f"Match {match.id} is {match.status.value}, passcode is fixed")
    if game.passcode_published_at is None:
        raise PreconditionError(f"Game {game.id} passcode has not been published yet")


async def _regenerate(
    session: AsyncSession,
    game: Game,
    from_version: int,
    now: datetime,
    rng: Optional[random.Random],
) -> Optional[str]:
    """
    Replace the passcode if it is still at from_version.

    The version check makes concurrent threshold votes regenerate once.
    Returns the new passcode, or None if another caller got there first.
    """
    passcode = generate_passcode(rng)
    result = await session.execute(
        update(Game)
        .where(and_(Game.id == game.id, Game.passcode_version == from_version))
        .values(
            passcode=passcode,
            passcode_version=from_version + 1,
            passcode_published_at=now,
        )
    )
    if (result.rowcount or 0) != 1:
        return None
    return passcode


async def _announce_regenerated(game: Game, passcode: str, version: int, now: datetime) -> None:
    match = game.match
    payload = {
        "match_id": match.id,
        "game_id": game.id,
        "passcode": passcode,
        "passcode_version": version,
        "published_at": isoformat_or_none(now),
        "category": match.season.category.value,
        "season_number": match.season.season_number,
        "match_number": match.match_number,
    }
    await get_websocket_manager().emit(LiveUpdateEvent.PASSCODE_REGENERATED, payload)
    await get_notification_sink().post_passcode(game.discord_channel_id, payload)


async def cast_split_vote(
    session: AsyncSession,
    game_id: int,
    user_id: int,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> SplitVoteResult:
    """
    Record a vote and regenerate the passcode once the threshold is reached.

    Raises:
        NotFoundError: Unknown game, or the user is not in the match
        PreconditionError: Match not IN_PROGRESS or passcode not yet published
        ConflictError: User already voted at this passcode version
    """
    now = now or utcnow()
    game = await repo.get_game(session, game_id)
    _require_live(game)
    if not any(p.user_id == user_id for p in game.match.participants):
        raise NotFoundError(f"User {user_id} is not a participant of match {game.match_id}")

    version = game.passcode_version
    if await _has_voted(session, game_id, user_id, version):
        raise ConflictError(f"User {user_id} already voted at passcode version {version}")

    session.add(SplitVote(game_id=game_id, user_id=user_id, passcode_version=version))
    try:
        await session.flush()
    except sa_exc.IntegrityError:
        await session.rollback()
        raise ConflictError(f"User {user_id} already voted at passcode version {version}")

    required = required_votes(len(game.match.participants))
    votes = await _count_votes(session, game_id, version)
    if votes < required:
        await session.commit()
        logger.info(f"Split vote for game {game_id}: {votes}/{required}")
        await get_websocket_manager().emit(
            LiveUpdateEvent.SPLIT_VOTE_UPDATED,
            {
                "match_id": game.match_id,
                "game_id": game_id,
                "current_votes": votes,
                "required_votes": required,
                "passcode_version": version,
            },
        )
        return SplitVoteResult(
            regenerated=False,
            current_votes=votes,
            required_votes=required,
            passcode_version=version,
        )

    passcode = await _regenerate(session, game, version, now, rng)
    await session.commit()
    if passcode is None:
        # Someone else's vote already crossed the threshold
        current = await repo.get_game(session, game_id)
        return SplitVoteResult(
            regenerated=False,
            current_votes=await _count_votes(session, game_id, current.passcode_version),
            required_votes=required,
            passcode_version=current.passcode_version,
        )

    logger.info(f"Split vote regenerated passcode for game {game_id} (v{version + 1})")
    await _announce_regenerated(game, passcode, version + 1, now)
    return SplitVoteResult(
        regenerated=True,
        current_votes=0,
        required_votes=required,
        passcode_version=version + 1,
        new_passcode=passcode,
    )


async def force_regenerate(
    session: AsyncSession,
    game_id: int,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> SplitVoteResult:
    """Moderator override: regenerate the passcode without votes."""
    now = now or utcnow()
    game = await repo.get_game(session, game_id)
    _require_live(game)

    version = game.passcode_version
    passcode = await _regenerate(session, game, version, now, rng)
    await session.commit()
    if passcode is None:
        raise ConflictError(f"Game {game_id} passcode changed concurrently")

    logger.info(f"Moderator regenerated passcode for game {game_id} (v{version + 1})")
    await _announce_regenerated(game, passcode, version + 1, now)
    return SplitVoteResult(
        regenerated=True,
        current_votes=0,
        required_votes=required_votes(len(game.match.participants)),
        passcode_version=version + 1,
        new_passcode=passcode,
    )


async def get_split_vote_status(session: AsyncSession, game_id: int, user_id: int) -> SplitVoteStatus:
    game = await repo.get_game(session, game_id)
    version = game.passcode_version
    return SplitVoteStatus(
        current_votes=await _count_votes(session, game_id, version),
        required_votes=required_votes(len(game.match.participants)),
        has_voted=await _has_voted(session, game_id, user_id, version),
        passcode_version=version,
    )
