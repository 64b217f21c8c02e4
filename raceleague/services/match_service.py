"""
Match management: create, join, leave, cancel, delete, and season renumbering.

Every match-number write goes through reassign_match_numbers so WAITING
numbers in a season stay contiguous.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from raceleague.database.models import (
    Match,
    MatchStatus,
    MatchParticipant,
    User,
    Game,
)
from raceleague.models.schemas import (
    JobType,
    LiveUpdateEvent,
    StartMatchPayload,
    ReminderMatchPayload,
    DeleteDiscordChannelPayload,
)
from raceleague.services import match_repository as repo
from raceleague.services.job_queue import get_job_queue
from raceleague.services.notification_sink import get_notification_sink
from raceleague.services.websocket_manager import get_websocket_manager
from raceleague.utils.constants import (
    REMINDER_MIN_LEAD_SECONDS,
    REMINDER_BEFORE_START_SECONDS,
    CHANNEL_CLEANUP_DELAY_SECONDS,
)
from raceleague.utils.datetime_utils import utcnow, ensure_utc, isoformat_or_none
from raceleague.utils.exceptions import (
    ValidationError,
    ConflictError,
    NotFoundError,
    PreconditionError,
)

logger = logging.getLogger(__name__)

CANCEL_REASON_MODERATOR = "cancelled_by_moderator"


def match_summary(match: Match) -> Dict[str, Any]:
    """Event/announcement payload describing a match."""
    season = match.season
    return {
        "match_id": match.id,
        "season_id": match.season_id,
        "category": season.category.value if season else None,
        "season_number": season.season_number if season else None,
        "match_number": match.match_number,
        "status": match.status.value,
        "current_players": match.current_players,
        "min_players": match.min_players,
        "max_players": match.max_players,
        "scheduled_start": isoformat_or_none(match.scheduled_start),
        "deadline": isoformat_or_none(match.deadline),
        "recurring_schedule_id": match.recurring_schedule_id,
    }


# ============================================================================
# Renumbering
# ============================================================================

async def reassign_match_numbers(session: AsyncSession, season_id: int) -> None:
    """
    Renumber the WAITING matches of a season.

    Matches that have left WAITING keep their numbers (locked). WAITING
    matches are numbered contiguously from max(locked) + 1, ordered by
    scheduled start then id. Numbers are nulled first so the per-season
    unique constraint never sees a transient duplicate.
    """
    matches = await repo.find_season_matches(session, season_id)
    locked = [m for m in matches if m.status != MatchStatus.WAITING]
    flexible = sorted(
        (m for m in matches if m.status == MatchStatus.WAITING),
        key=lambda m: (m.scheduled_start, m.id),
    )
    max_locked = max((m.match_number for m in locked if m.match_number is not None), default=0)

    for match in flexible:
        match.match_number = None
    await session.flush()

    for number, match in enumerate(flexible, start=max_locked + 1):
        match.match_number = number
    await session.flush()

    logger.debug(
        f"Season {season_id}: renumbered {len(flexible)} waiting match(es) from {max_locked + 1}"
    )


# ============================================================================
# Create
# ============================================================================

async def create_match(
    session: AsyncSession,
    season_id: int,
    scheduled_start: datetime,
    min_players: int,
    max_players: int,
    deadline: Optional[datetime] = None,
    now: Optional[datetime] = None,
    recurring_schedule_id: Optional[int] = None,
    announce: bool = True,
) -> Match:
    """
    Create a WAITING match with its game and schedule its jobs.

    The start job fires at scheduled_start. A reminder is scheduled 5 minutes
    before start when the match is at least an hour away. Matches generated
    by a recurring schedule pass announce=False so a week of them does not
    flood the announce channel.

    Raises:
        NotFoundError: Unknown season
        ValidationError: Start in the past, deadline before start, bad player bounds
    """
    now = now or utcnow()
    scheduled_start = ensure_utc(scheduled_start)
    deadline = ensure_utc(deadline)

    season = await repo.get_season(session, season_id)
    if scheduled_start <= now:
        raise ValidationError("Scheduled start must be in the future")
    if deadline is not None and deadline <= scheduled_start:
        raise ValidationError("Deadline must be after the scheduled start")
    if min_players < 2 or max_players < min_players:
        raise ValidationError("Player bounds must satisfy 2 <= min_players <= max_players")

    match = Match(
        season_id=season.id,
        status=MatchStatus.WAITING,
        scheduled_start=scheduled_start,
        deadline=deadline,
        min_players=min_players,
        max_players=max_players,
        current_players=0,
        recurring_schedule_id=recurring_schedule_id,
    )
    session.add(match)
    await session.flush()
    await repo.create_game(session, match.id)

    queue = get_job_queue()
    lead_seconds = (scheduled_start - now).total_seconds()
    await queue.enqueue(
        session,
        JobType.START_MATCH,
        StartMatchPayload(match_id=match.id),
        delay_seconds=lead_seconds,
        job_id=JobType.START_MATCH.job_id(match.id),
        now=now,
    )
    if lead_seconds >= REMINDER_MIN_LEAD_SECONDS:
        await queue.enqueue(
            session,
            JobType.REMINDER_MATCH,
            ReminderMatchPayload(match_id=match.id),
            delay_seconds=lead_seconds - REMINDER_BEFORE_START_SECONDS,
            job_id=JobType.REMINDER_MATCH.job_id(match.id),
            now=now,
        )

    await reassign_match_numbers(session, season.id)
    await session.commit()

    match = await repo.get_match(session, match.id)
    logger.info(f"Created match {match.id} (#{match.match_number}) in season {season.id}")

    summary = match_summary(match)
    await get_websocket_manager().emit(LiveUpdateEvent.MATCH_CREATED, summary)
    if announce:
        await get_notification_sink().announce_created(summary)
    return match


# ============================================================================
# Roster
# ============================================================================

async def join_match(
    session: AsyncSession, match_id: int, user_id: int, now: Optional[datetime] = None
) -> MatchParticipant:
    """
    Add a user to a WAITING match.

    Raises:
        NotFoundError: Unknown match or user
        PreconditionError: Match is not WAITING or already full
        ConflictError: User already joined
    """
    now = now or utcnow()
    match = await repo.get_match(session, match_id)
    if match.status != MatchStatus.WAITING:
        raise PreconditionError(f"Cannot join match {match_id} in status {match.status.value}")
    if await session.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found")
    if any(p.user_id == user_id for p in match.participants):
        raise ConflictError(f"User {user_id} already joined match {match_id}")
    if match.current_players >= match.max_players:
        raise PreconditionError(f"Match {match_id} is full")

    async def _join(s: AsyncSession) -> MatchParticipant:
        # Seat is taken only if the row still has room when the write lands
        result = await s.execute(
            update(Match)
            .where(
                and_(
                    Match.id == match_id,
                    Match.status == MatchStatus.WAITING,
                    Match.current_players < Match.max_players,
                )
            )
            .values(current_players=Match.current_players + 1)
        )
        if (result.rowcount or 0) != 1:
            raise PreconditionError(f"Match {match_id} is full")
        participant = MatchParticipant(match_id=match_id, user_id=user_id, joined_at=now)
        s.add(participant)
        await s.flush()
        return participant

    participant = await repo.with_transaction(session, _join)
    match = await repo.get_match(session, match_id)
    await get_websocket_manager().emit(LiveUpdateEvent.MATCH_UPDATED, match_summary(match))
    return participant


async def leave_match(session: AsyncSession, match_id: int, user_id: int) -> None:
    """
    Remove a user from a WAITING match.

    Raises:
        NotFoundError: Unknown match, or the user is not a participant
        PreconditionError: Match is not WAITING
    """
    match = await repo.get_match(session, match_id)
    if match.status != MatchStatus.WAITING:
        raise PreconditionError(f"Cannot leave match {match_id} in status {match.status.value}")
    result = await session.execute(
        select(MatchParticipant).where(
            and_(MatchParticipant.match_id == match_id, MatchParticipant.user_id == user_id)
        )
    )
    participant = result.scalar_one_or_none()
    if participant is None:
        raise NotFoundError(f"User {user_id} is not in match {match_id}")

    async def _leave(s: AsyncSession) -> None:
        await s.delete(participant)
        await s.execute(
            update(Match)
            .where(Match.id == match_id)
            .values(current_players=Match.current_players - 1)
        )
        await s.flush()

    await repo.with_transaction(session, _leave)
    match = await repo.get_match(session, match_id)
    await get_websocket_manager().emit(LiveUpdateEvent.MATCH_UPDATED, match_summary(match))


# ============================================================================
# Cancel / Delete
# ============================================================================

async def mark_cancelled(
    session: AsyncSession,
    match: Match,
    reason: str,
    now: Optional[datetime] = None,
) -> Optional[Game]:
    """
    Transition a match to CANCELLED inside the caller's transaction.

    Clears the match number, drops pending start/reminder/reveal jobs,
    schedules channel cleanup when the game has a channel, and renumbers the
    season. Returns the match's game, if any, for follow-up notifications.
    """
    now = now or utcnow()
    queue = get_job_queue()
    game = repo.current_game(match)

    await repo.update_match_status(
        session, match, MatchStatus.CANCELLED, match_number=None, cancel_reason=reason
    )
    await queue.cancel(session, JobType.START_MATCH.job_id(match.id))
    await queue.cancel(session, JobType.REMINDER_MATCH.job_id(match.id))
    if game is not None:
        await queue.cancel(session, JobType.REVEAL_PASSCODE.job_id(game.id))
        if game.discord_channel_id:
            await schedule_channel_cleanup(session, game, now)

    await reassign_match_numbers(session, match.season_id)
    return game


async def schedule_channel_cleanup(session: AsyncSession, game: Game, now: Optional[datetime] = None) -> None:
    """Delete the game's Discord channel 24 hours from now."""
    await get_job_queue().enqueue(
        session,
        JobType.DELETE_DISCORD_CHANNEL,
        DeleteDiscordChannelPayload(game_id=game.id, channel_id=game.discord_channel_id),
        delay_seconds=CHANNEL_CLEANUP_DELAY_SECONDS,
        job_id=JobType.DELETE_DISCORD_CHANNEL.job_id(game.id),
        now=now,
    )


async def notify_cancelled(match: Match, game: Optional[Game], reason: str) -> None:
    """Live event, announcement and channel notice for a cancelled match."""
    summary = match_summary(match)
    summary["reason"] = reason
    await get_websocket_manager().emit(LiveUpdateEvent.MATCH_CANCELLED, summary)
    sink = get_notification_sink()
    if not await sink.announce_cancelled(summary):
        logger.warning(f"Cancellation announcement for match {match.id} was not delivered")
    if game is not None and game.discord_channel_id:
        await sink.post_cancellation(game.discord_channel_id, summary)


async def cancel_match(
    session: AsyncSession,
    match_id: int,
    reason: str = CANCEL_REASON_MODERATOR,
    now: Optional[datetime] = None,
) -> Match:
    """
    Cancel a WAITING or IN_PROGRESS match.

    Raises:
        NotFoundError: Unknown match
        PreconditionError: Match already completed, finalized or cancelled
    """
    match = await repo.get_match(session, match_id)
    if match.status not in (MatchStatus.WAITING, MatchStatus.IN_PROGRESS):
        raise PreconditionError(f"Cannot cancel match {match_id} in status {match.status.value}")

    game = await mark_cancelled(session, match, reason, now)
    await session.commit()
    logger.info(f"Match {match_id} cancelled ({reason})")

    await notify_cancelled(match, game, reason)
    return match


async def delete_match(session: AsyncSession, match_id: int) -> None:
    """
    Delete a WAITING match and its pending jobs.

    Raises:
        NotFoundError: Unknown match
        PreconditionError: Match has already started
    """
    match = await repo.get_match(session, match_id)
    if match.status != MatchStatus.WAITING:
        raise PreconditionError(f"Cannot delete match {match_id} in status {match.status.value}")

    season_id = match.season_id
    queue = get_job_queue()
    await queue.cancel(session, JobType.START_MATCH.job_id(match.id))
    await queue.cancel(session, JobType.REMINDER_MATCH.job_id(match.id))
    await session.delete(match)
    await session.flush()
    await reassign_match_numbers(session, season_id)
    await session.commit()
    logger.info(f"Deleted match {match_id}")

    await get_websocket_manager().emit(
        LiveUpdateEvent.MATCH_UPDATED, {"match_id": match_id, "season_id": season_id, "deleted": True}
    )
