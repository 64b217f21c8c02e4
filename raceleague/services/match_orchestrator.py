"""
Match lifecycle orchestrator.

Owns the match/game state machine:

    WAITING -> IN_PROGRESS | CANCELLED
    IN_PROGRESS -> COMPLETED | CANCELLED
    COMPLETED -> FINALIZED

Job handlers may be delivered more than once (queue redelivery, recovery
requeue). Each handler therefore starts by reloading the match and checking
its status; a handler that finds the match already past the expected state
returns without doing anything.
"""

import logging
import random
from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession

from raceleague.database import db
from raceleague.database.models import (
    Match,
    MatchStatus,
    Game,
    ParticipantStatus,
)
from raceleague.models.schemas import (
    JobType,
    LiveUpdateEvent,
    StartMatchPayload,
    ReminderMatchPayload,
    RevealPasscodePayload,
    DeleteDiscordChannelPayload,
)
from raceleague.services import match_repository as repo
from raceleague.services import match_service
from raceleague.services import rating_service
from raceleague.services.job_queue import JobQueue, get_job_queue
from raceleague.services.notification_sink import get_notification_sink
from raceleague.services.team_assignment import (
    PlayerForAssignment,
    TeamAssignment,
    assign_teams,
    color_name,
)
from raceleague.services.websocket_manager import get_websocket_manager
from raceleague.utils.constants import INITIAL_RATING, PASSCODE_REVEAL_DELAY_SECONDS
from raceleague.utils.datetime_utils import utcnow, isoformat_or_none
from raceleague.utils.exceptions import PreconditionError, IntegrityError

logger = logging.getLogger(__name__)

CANCEL_REASON_INSUFFICIENT_PLAYERS = "insufficient_players"
CANCEL_REASON_INVALID_PLAYER_COUNT = "invalid_player_count"


def generate_passcode(rng: Optional[random.Random] = None) -> str:
    """
    Random 4-digit zero-padded passcode.

    Independent per call; two live games can share a passcode.
    """
    return f"{(rng or random).randint(0, 9999):04d}"


class MatchOrchestrator:
    """Reacts to lifecycle jobs and drives match/game transitions."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_job_handlers(self, queue: Optional[JobQueue] = None) -> None:
        """Bind every lifecycle job type to its handler. Call before starting the worker."""
        queue = queue or get_job_queue()
        queue.register_handler(JobType.START_MATCH, self._handle_start)
        queue.register_handler(JobType.REMINDER_MATCH, self._handle_reminder)
        queue.register_handler(JobType.REVEAL_PASSCODE, self._handle_reveal)
        queue.register_handler(JobType.DELETE_DISCORD_CHANNEL, self._handle_delete_channel)
        logger.info("Match lifecycle job handlers registered")

    async def _handle_start(self, payload: StartMatchPayload) -> None:
        await self.on_start(payload.match_id)

    async def _handle_reminder(self, payload: ReminderMatchPayload) -> None:
        await self.on_reminder(payload.match_id)

    async def _handle_reveal(self, payload: RevealPasscodePayload) -> None:
        await self.on_reveal_passcode(payload.game_id)

    async def _handle_delete_channel(self, payload: DeleteDiscordChannelPayload) -> None:
        await self.on_delete_channel(payload.game_id, payload.channel_id)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def on_start(self, match_id: int, now: Optional[datetime] = None) -> Optional[Game]:
        """
        Start a match at its scheduled time.

        Precondition: the match is WAITING. Anything else (already started,
        cancelled, deleted) makes this a no-op, so duplicate delivery is safe.

        Short rosters cancel the match. Team categories get teams assigned and
        hold the passcode for PASSCODE_REVEAL_DELAY_SECONDS; other categories
        publish the passcode immediately.

        Returns:
            The started game, or None if the match did not start
        """
        now = now or utcnow()
        async with db.AsyncSessionLocal() as session:
            match = await repo.find_match(session, match_id)
            if match is None:
                logger.warning(f"Match {match_id} not found for start")
                return None
            if match.status != MatchStatus.WAITING:
                logger.info(f"Match {match_id} is {match.status.value}, start skipped")
                return None

            if match.current_players < match.min_players:
                logger.warning(
                    f"Match {match_id} does not have enough players "
                    f"({match.current_players}/{match.min_players})"
                )
                await self._cancel(session, match, CANCEL_REASON_INSUFFICIENT_PLAYERS, now)
                return None

            category = match.season.category
            game = repo.current_game(match) or await repo.create_game(session, match.id)

            assignment: Optional[TeamAssignment] = None
            if category.is_team:
                assignment = await self._assign_teams(session, match, game)
                if assignment is None:
                    await self._cancel(session, match, CANCEL_REASON_INVALID_PLAYER_COUNT, now)
                    return None
            else:
                await self._create_participants(session, match, game)

            game.passcode = generate_passcode(self._rng)
            game.started_at = now
            if category.is_team:
                game.passcode_published_at = None
                await get_job_queue().enqueue(
                    session,
                    JobType.REVEAL_PASSCODE,
                    RevealPasscodePayload(game_id=game.id),
                    delay_seconds=PASSCODE_REVEAL_DELAY_SECONDS,
                    job_id=JobType.REVEAL_PASSCODE.job_id(game.id),
                    now=now,
                )
            else:
                game.passcode_published_at = now

            await repo.update_match_status(session, match, MatchStatus.IN_PROGRESS, actual_start=now)
            await session.commit()
            logger.info(f"Started match {match_id} with game {game.id}")

            await self._announce_start(session, match, game, assignment)
            return game

    async def _cancel(self, session: AsyncSession, match: Match, reason: str, now: datetime) -> None:
        game = await match_service.mark_cancelled(session, match, reason, now)
        await session.commit()
        logger.info(f"Match {match.id} cancelled ({reason})")
        await match_service.notify_cancelled(match, game, reason)

    async def _create_participants(self, session: AsyncSession, match: Match, game: Game) -> None:
        """UNSUBMITTED score rows for every rostered player."""
        for participant in match.participants:
            if await repo.find_participant(session, game.id, participant.user_id) is None:
                await repo.upsert_participant(
                    session, game.id, participant.user_id, status=ParticipantStatus.UNSUBMITTED
                )

    async def _assign_teams(
        self, session: AsyncSession, match: Match, game: Game
    ) -> Optional[TeamAssignment]:
        """Run team assignment and persist the layout; None when no shape fits."""
        user_ids = [p.user_id for p in match.participants]
        stats = await repo.get_season_stats(session, user_ids, match.season_id)
        players = [
            PlayerForAssignment(
                user_id=p.user_id,
                rating=stats[p.user_id].internal_rating if p.user_id in stats else INITIAL_RATING,
                joined_at=p.joined_at,
            )
            for p in match.participants
        ]
        assignment = assign_teams(match.season.category, players, self._rng)
        if assignment is None:
            return None

        game.team_config = assignment.config.encode()
        game.team_colors = assignment.team_colors
        for user_id, team_index in assignment.team_index_by_user().items():
            await repo.upsert_participant(
                session,
                game.id,
                user_id,
                team_index=team_index,
                is_excluded=False,
                status=ParticipantStatus.UNSUBMITTED,
            )
        for user_id in assignment.excluded_user_ids:
            await repo.upsert_participant(
                session,
                game.id,
                user_id,
                team_index=None,
                is_excluded=True,
                status=ParticipantStatus.UNSUBMITTED,
            )
        return assignment

    async def _announce_start(
        self,
        session: AsyncSession,
        match: Match,
        game: Game,
        assignment: Optional[TeamAssignment],
    ) -> None:
        """Live events and Discord channel for a freshly started match."""
        ws = get_websocket_manager()
        published = game.passcode_published_at is not None
        started = match_service.match_summary(match)
        started.update(
            game_id=game.id,
            passcode=game.passcode if published else None,
            passcode_published=published,
            team_config=game.team_config,
            started_at=isoformat_or_none(game.started_at),
        )
        await ws.emit(LiveUpdateEvent.MATCH_STARTED, started)

        if assignment is not None:
            await ws.emit(LiveUpdateEvent.TEAM_ASSIGNED, team_payload(match, game, assignment))

        channel_params = {
            "category": match.season.category.value,
            "season_number": match.season.season_number,
            "match_number": match.match_number,
            "participant_discord_ids": [
                p.user.discord_id for p in match.participants if p.user and p.user.discord_id
            ],
            "passcode": game.passcode if published else None,
            "passcode_version": game.passcode_version,
        }
        channel_id = await get_notification_sink().create_channel(channel_params)
        if channel_id:
            game.discord_channel_id = channel_id
            try:
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.warning(f"Failed to save Discord channel for game {game.id}: {e}")

    # ------------------------------------------------------------------
    # Reminder / reveal / cleanup
    # ------------------------------------------------------------------

    async def on_reminder(self, match_id: int) -> bool:
        """Announce a match 5 minutes before start. Precondition: WAITING."""
        async with db.AsyncSessionLocal() as session:
            match = await repo.find_match(session, match_id)
        if match is None:
            logger.warning(f"Match {match_id} not found for reminder")
            return False
        if match.status != MatchStatus.WAITING:
            logger.info(f"Match {match_id} is {match.status.value}, reminder skipped")
            return False
        return await get_notification_sink().announce_reminder(match_service.match_summary(match))

    async def on_reveal_passcode(self, game_id: int, now: Optional[datetime] = None) -> bool:
        """
        Publish a held passcode. Precondition: the match is IN_PROGRESS and the
        passcode has not been published yet.
        """
        now = now or utcnow()
        async with db.AsyncSessionLocal() as session:
            game = await repo.find_game(session, game_id)
            if game is None:
                logger.warning(f"Game {game_id} not found for passcode reveal")
                return False
            match = game.match
            if match.status != MatchStatus.IN_PROGRESS:
                logger.info(f"Match {match.id} is {match.status.value}, reveal skipped")
                return False
            if game.passcode_published_at is not None or not game.passcode:
                logger.info(f"Game {game_id} passcode already published, reveal skipped")
                return False

            game.passcode_published_at = now
            await session.commit()
            logger.info(f"Revealed passcode for game {game_id}")

            payload = {
                "match_id": match.id,
                "game_id": game.id,
                "passcode": game.passcode,
                "passcode_version": game.passcode_version,
                "category": match.season.category.value,
                "season_number": match.season.season_number,
                "match_number": match.match_number,
            }
        await get_websocket_manager().emit(LiveUpdateEvent.PASSCODE_REVEALED, payload)
        await get_notification_sink().post_passcode(game.discord_channel_id, payload)
        return True

    async def on_delete_channel(self, game_id: int, channel_id: Optional[str] = None) -> bool:
        """Delete a game's Discord channel and forget it on the game."""
        async with db.AsyncSessionLocal() as session:
            game = await repo.find_game(session, game_id)
            channel_id = channel_id or (game.discord_channel_id if game else None)
            if not channel_id:
                logger.info(f"Game {game_id} has no Discord channel to delete")
                return False

            deleted = await get_notification_sink().delete_channel(channel_id)
            if deleted and game is not None and game.discord_channel_id == channel_id:
                game.discord_channel_id = None
                await session.commit()
            return deleted

    # ------------------------------------------------------------------
    # Deadline
    # ------------------------------------------------------------------

    async def on_deadline(self, now: Optional[datetime] = None) -> List[int]:
        """
        Complete every IN_PROGRESS match whose deadline has passed.

        Returns:
            Ids of the matches moved to COMPLETED
        """
        now = now or utcnow()
        async with db.AsyncSessionLocal() as session:
            overdue = [m.id for m in await repo.find_overdue_in_progress_matches(session, now)]

        completed = []
        for match_id in overdue:
            try:
                if await self.complete_match(match_id, now):
                    completed.append(match_id)
            except Exception as e:
                logger.error(f"Failed to complete match {match_id}: {e}", exc_info=True)
        return completed

    async def complete_match(self, match_id: int, now: Optional[datetime] = None) -> bool:
        """
        Move one overdue match to COMPLETED with a rating preview.

        Precondition: IN_PROGRESS with deadline <= now.
        """
        now = now or utcnow()
        async with db.AsyncSessionLocal() as session:
            match = await repo.find_match(session, match_id)
            if match is None or match.status != MatchStatus.IN_PROGRESS:
                return False
            if match.deadline is None or match.deadline > now:
                return False

            try:
                preview = await rating_service.preview_ratings(session, match)
            except IntegrityError as e:
                logger.info(f"No rating preview for match {match_id}: {e}")
                preview = []

            await repo.update_match_status(session, match, MatchStatus.COMPLETED)
            await session.commit()
            logger.info(f"Match {match_id} completed at deadline")

            payload = match_service.match_summary(match)
            payload["ratings"] = [p.model_dump() for p in preview]
        await get_websocket_manager().emit(LiveUpdateEvent.MATCH_COMPLETED, payload)
        return True

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def finalize_match(
        self, session: AsyncSession, match_id: int, now: Optional[datetime] = None
    ) -> List[rating_service.RatingChange]:
        """
        Apply ratings and mark the match FINALIZED in one transaction.

        Raises:
            NotFoundError: Unknown match
            PreconditionError: Match is not IN_PROGRESS or COMPLETED
            IntegrityError: Game cannot be rated (see rating_service)
        """
        now = now or utcnow()
        match = await repo.get_match(session, match_id)
        if match.status not in (MatchStatus.IN_PROGRESS, MatchStatus.COMPLETED):
            raise PreconditionError(f"Cannot finalize match {match_id} in status {match.status.value}")

        async def _finalize(s: AsyncSession):
            changes = await rating_service.apply_match_ratings(s, match)
            await repo.update_match_status(s, match, MatchStatus.FINALIZED)
            game = repo.current_game(match)
            if game is not None and game.discord_channel_id:
                await match_service.schedule_channel_cleanup(s, game, now)
            return changes

        changes = await repo.with_transaction(session, _finalize)
        logger.info(f"Match {match_id} finalized ({len(changes)} rated participants)")

        match = await repo.get_match(session, match_id)
        results = rating_service.results_payload(match, changes)
        payload = match_service.match_summary(match)
        payload["results"] = results
        await get_websocket_manager().emit(LiveUpdateEvent.MATCH_FINALIZED, payload)
        if not await get_notification_sink().announce_results(payload):
            logger.warning(f"Results announcement for match {match_id} was not delivered")
        return changes


def team_payload(match: Match, game: Game, assignment: TeamAssignment) -> Dict[str, Any]:
    """team-assigned event body."""
    teams = []
    for index, members in enumerate(assignment.teams):
        slot = assignment.team_colors[index] if index < len(assignment.team_colors) else None
        teams.append({
            "team_index": index,
            "color": slot,
            "color_name": color_name(slot) if slot is not None else None,
            "user_ids": members,
        })
    return {
        "match_id": match.id,
        "game_id": game.id,
        "team_config": assignment.config.encode(),
        "teams": teams,
        "excluded_user_ids": assignment.excluded_user_ids,
    }


# Global orchestrator instance
_match_orchestrator: Optional[MatchOrchestrator] = None


def get_match_orchestrator() -> MatchOrchestrator:
    """Get the global match orchestrator instance."""
    global _match_orchestrator
    if _match_orchestrator is None:
        _match_orchestrator = MatchOrchestrator()
    return _match_orchestrator
