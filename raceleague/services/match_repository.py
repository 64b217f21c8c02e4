"""
Match and game persistence helpers.

Thin query layer the lifecycle services share. Functions take the caller's
AsyncSession and only flush; committing is the caller's job (or
with_transaction's).
"""

import logging
from datetime import datetime
from typing import Optional, List, Callable, Awaitable, TypeVar

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from raceleague.database.models import (
    EventCategory,
    Match,
    MatchStatus,
    MatchParticipant,
    Game,
    GameParticipant,
    Season,
    UserSeasonStats,
)
from raceleague.utils.exceptions import NotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _match_loader():
    return (
        selectinload(Match.season),
        selectinload(Match.participants).selectinload(MatchParticipant.user),
        selectinload(Match.games)
        .selectinload(Game.participants)
        .selectinload(GameParticipant.race_results),
    )


async def find_match(session: AsyncSession, match_id: int) -> Optional[Match]:
    """Load a match with its season, roster and games (always fresh from the database)."""
    result = await session.execute(
        select(Match)
        .where(Match.id == match_id)
        .options(*_match_loader())
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_match(session: AsyncSession, match_id: int) -> Match:
    """Like find_match but raises NotFoundError."""
    match = await find_match(session, match_id)
    if match is None:
        raise NotFoundError(f"Match {match_id} not found")
    return match


async def find_game(session: AsyncSession, game_id: int) -> Optional[Game]:
    """Load a game with its participants and its match (season and roster included)."""
    result = await session.execute(
        select(Game)
        .where(Game.id == game_id)
        .options(
            selectinload(Game.participants).selectinload(GameParticipant.race_results),
            selectinload(Game.match).selectinload(Match.season),
            selectinload(Game.match).selectinload(Match.participants),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_game(session: AsyncSession, game_id: int) -> Game:
    game = await find_game(session, game_id)
    if game is None:
        raise NotFoundError(f"Game {game_id} not found")
    return game


def current_game(match: Match) -> Optional[Game]:
    """The highest-numbered game of a match (one per match in practice)."""
    if not match.games:
        return None
    return max(match.games, key=lambda g: g.game_number)


async def update_match_status(
    session: AsyncSession,
    match: Match,
    status: MatchStatus,
    **fields,
) -> Match:
    """Set a match's status (and any extra columns) and flush."""
    previous = match.status
    match.status = status
    for key, value in fields.items():
        setattr(match, key, value)
    await session.flush()
    logger.info(f"Match {match.id}: {previous.value} -> {status.value}")
    return match


async def create_game(session: AsyncSession, match_id: int, game_number: int = 1) -> Game:
    """Create a game for a match and flush to get its id."""
    game = Game(match_id=match_id, game_number=game_number, passcode_version=1, participants=[])
    session.add(game)
    await session.flush()
    return game


async def find_participant(
    session: AsyncSession, game_id: int, user_id: int
) -> Optional[GameParticipant]:
    result = await session.execute(
        select(GameParticipant)
        .where(and_(GameParticipant.game_id == game_id, GameParticipant.user_id == user_id))
        .options(selectinload(GameParticipant.race_results))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def upsert_participant(
    session: AsyncSession,
    game_id: int,
    user_id: int,
    **values,
) -> GameParticipant:
    """Create the (game, user) participant row or update the existing one."""
    participant = await find_participant(session, game_id, user_id)
    if participant is None:
        participant = GameParticipant(game_id=game_id, user_id=user_id, race_results=[])
        session.add(participant)
    for key, value in values.items():
        setattr(participant, key, value)
    await session.flush()
    return participant


async def with_transaction(
    session: AsyncSession,
    fn: Callable[[AsyncSession], Awaitable[T]],
) -> T:
    """
    Run fn inside the session's transaction and commit, or roll back and re-raise.

    Everything fn writes lands together or not at all.
    """
    try:
        result = await fn(session)
        await session.commit()
        return result
    except Exception:
        await session.rollback()
        raise


async def find_overdue_waiting_matches(session: AsyncSession, now: datetime) -> List[Match]:
    """WAITING matches whose scheduled start has already passed."""
    result = await session.execute(
        select(Match)
        .where(and_(Match.status == MatchStatus.WAITING, Match.scheduled_start <= now))
        .order_by(Match.scheduled_start.asc(), Match.id.asc())
    )
    return list(result.scalars().all())


async def find_overdue_in_progress_matches(session: AsyncSession, now: datetime) -> List[Match]:
    """IN_PROGRESS matches whose deadline has passed."""
    result = await session.execute(
        select(Match)
        .where(
            and_(
                Match.status == MatchStatus.IN_PROGRESS,
                Match.deadline.is_not(None),
                Match.deadline <= now,
            )
        )
        .order_by(Match.deadline.asc())
    )
    return list(result.scalars().all())


async def find_season_matches(session: AsyncSession, season_id: int) -> List[Match]:
    """All non-cancelled matches of a season."""
    result = await session.execute(
        select(Match).where(
            and_(Match.season_id == season_id, Match.status != MatchStatus.CANCELLED)
        )
    )
    return list(result.scalars().all())


async def get_season(session: AsyncSession, season_id: int) -> Season:
    season = await session.get(Season, season_id)
    if season is None:
        raise NotFoundError(f"Season {season_id} not found")
    return season


async def find_active_season(session: AsyncSession, category: EventCategory) -> Optional[Season]:
    """Latest active season of a category, or None."""
    result = await session.execute(
        select(Season)
        .where(and_(Season.category == category, Season.is_active.is_(True)))
        .order_by(Season.season_number.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_season_stats(
    session: AsyncSession, user_ids: List[int], season_id: int
) -> dict:
    """Map of user_id to UserSeasonStats for the users that already have a row."""
    if not user_ids:
        return {}
    result = await session.execute(
        select(UserSeasonStats).where(
            and_(UserSeasonStats.season_id == season_id, UserSeasonStats.user_id.in_(user_ids))
        )
    )
    return {row.user_id: row for row in result.scalars().all()}
