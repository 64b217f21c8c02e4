"""
Score submission and moderation.

Players submit per-race results (PENDING); moderators verify or reject
them. Verification in CLASSIC-family categories is guarded by a position
conflict check across every counted score in the game.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Optional, List, Dict

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from raceleague.database.models import (
    Game,
    GameParticipant,
    GameScreenshot,
    MatchStatus,
    ParticipantStatus,
    RaceResult,
    ScreenshotType,
    Track,
    User,
)
from raceleague.models.schemas import LiveUpdateEvent, RaceInput
from raceleague.services import match_repository as repo
from raceleague.services.notification_sink import get_notification_sink
from raceleague.services.race_scoring import score_races, race_count
from raceleague.services.websocket_manager import get_websocket_manager
from raceleague.utils.datetime_utils import utcnow, isoformat_or_none
from raceleague.utils.exceptions import (
    ValidationError,
    ConflictError,
    NotFoundError,
    PreconditionError,
)

logger = logging.getLogger(__name__)

# Match states in which scores may still change
SCORING_STATUSES = (MatchStatus.IN_PROGRESS, MatchStatus.COMPLETED)

INDIVIDUAL_SCREENSHOTS = (ScreenshotType.INDIVIDUAL_1, ScreenshotType.INDIVIDUAL_2)


def score_payload(game: Game, participant: GameParticipant) -> Dict:
    """score-updated event body, also returned by the score routes."""
    return {
        "match_id": game.match_id,
        "game_id": game.id,
        "user_id": participant.user_id,
        "status": participant.status.value,
        "total_score": participant.total_score,
        "eliminated_at_race": participant.eliminated_at_race,
        "verified_at": isoformat_or_none(participant.verified_at),
    }


def _find_in_game(game: Game, user_id: int) -> Optional[GameParticipant]:
    for participant in game.participants:
        if participant.user_id == user_id:
            return participant
    return None


def _require_in_match(game: Game, user_id: int) -> None:
    if not any(p.user_id == user_id for p in game.match.participants):
        raise NotFoundError(f"User {user_id} is not a participant of match {game.match_id}")


def find_position_conflict(participants: List[GameParticipant]) -> Optional[int]:
    """
    First race number where claimed finishing positions overlap, or None.

    k players tied at position P occupy P..P+k-1, so a later claim inside
    that span conflicts with the tie.
    """
    claims: Dict[int, Counter] = {}
    for participant in participants:
        for race in participant.race_results:
            if race.position is None:
                continue
            claims.setdefault(race.race_number, Counter())[race.position] += 1

    for race_number in sorted(claims):
        occupied_until = 0
        for position in sorted(claims[race_number]):
            if position <= occupied_until:
                return race_number
            occupied_until = position + claims[race_number][position] - 1
    return None


# ============================================================================
# Submission
# ============================================================================

async def submit_score(
    session: AsyncSession,
    game_id: int,
    user_id: int,
    races: List[RaceInput],
    now: Optional[datetime] = None,
) -> GameParticipant:
    """
    Record a player's race results as a PENDING score.

    A REJECTED score may be resubmitted; a VERIFIED one may not.

    Raises:
        NotFoundError: Unknown game, or the user is not in the match
        PreconditionError: Match is not accepting scores, or the player was
            excluded by team assignment
        ConflictError: Score already verified
        ValidationError: Bad race numbers or positions
    """
    now = now or utcnow()
    game = await repo.get_game(session, game_id)
    match = game.match
    if match.status not in SCORING_STATUSES:
        raise PreconditionError(f"Match {match.id} is {match.status.value}, scores are closed")
    _require_in_match(game, user_id)

    existing = _find_in_game(game, user_id)
    if existing is not None:
        if existing.is_excluded:
            raise PreconditionError(f"User {user_id} was excluded from game {game_id}")
        if existing.status == ParticipantStatus.VERIFIED:
            raise ConflictError(f"Score for user {user_id} is already verified")

    rows, total, eliminated_at = score_races(match.season.category, races)

    participant = await repo.upsert_participant(
        session,
        game_id,
        user_id,
        status=ParticipantStatus.PENDING,
        total_score=total,
        eliminated_at_race=eliminated_at,
        submitted_at=now,
        verified_by=None,
        verified_at=None,
    )
    # Old rows must be gone before the new ones hit uq_race_result
    participant.race_results.clear()
    await session.flush()
    participant.race_results.extend(RaceResult(**row) for row in rows)
    await session.commit()
    logger.info(f"User {user_id} submitted {total} points for game {game_id}")

    await get_websocket_manager().emit(LiveUpdateEvent.SCORE_UPDATED, score_payload(game, participant))
    return participant


# ============================================================================
# Moderation
# ============================================================================

async def verify_score(
    session: AsyncSession,
    game_id: int,
    user_id: int,
    moderator_id: int,
    now: Optional[datetime] = None,
) -> GameParticipant:
    """
    Move a PENDING score to VERIFIED.

    A REJECTED score can be verified as submitted once the player has
    uploaded the requested individual screenshot.

    Raises:
        NotFoundError: Unknown game or participant
        ConflictError: Already verified, or overlapping positions in a race
        PreconditionError: Score not PENDING, a rejected score still waiting
            on its screenshot, or another counted player has not submitted yet
    """
    now = now or utcnow()
    game = await repo.get_game(session, game_id)
    participant = _find_in_game(game, user_id)
    if participant is None:
        raise NotFoundError(f"No score for user {user_id} in game {game_id}")
    if participant.status == ParticipantStatus.VERIFIED:
        raise ConflictError(f"Score for user {user_id} is already verified")
    if participant.status == ParticipantStatus.REJECTED:
        if participant.screenshot_requested:
            raise PreconditionError(f"Score for user {user_id} is waiting for a new screenshot")
    elif participant.status != ParticipantStatus.PENDING:
        raise PreconditionError(f"Score for user {user_id} is {participant.status.value}")

    counted = [p for p in game.participants if not p.is_excluded]
    waiting_on = [p.user_id for p in counted if p.status == ParticipantStatus.UNSUBMITTED]
    if waiting_on:
        raise PreconditionError(f"Waiting for scores from {len(waiting_on)} participant(s)")

    if game.match.season.category.is_classic_family:
        contenders = [
            p for p in counted
            if p.status != ParticipantStatus.REJECTED or p.user_id == user_id
        ]
        race_number = find_position_conflict(contenders)
        if race_number is not None:
            raise ConflictError(f"Position conflict in race {race_number}")

    participant.status = ParticipantStatus.VERIFIED
    participant.verified_by = moderator_id
    participant.verified_at = now
    participant.rejected_by = None
    participant.rejected_at = None
    await session.commit()
    logger.info(f"Moderator {moderator_id} verified score of user {user_id} in game {game_id}")

    await get_websocket_manager().emit(LiveUpdateEvent.SCORE_UPDATED, score_payload(game, participant))
    return participant


async def reject_score(
    session: AsyncSession,
    game_id: int,
    user_id: int,
    moderator_id: int,
    now: Optional[datetime] = None,
) -> GameParticipant:
    """
    Reject a PENDING score and ask the player for new screenshots.

    Raises:
        NotFoundError: Unknown game or participant
        ConflictError: Score already verified
        PreconditionError: Score is not PENDING
    """
    now = now or utcnow()
    game = await repo.get_game(session, game_id)
    participant = _find_in_game(game, user_id)
    if participant is None:
        raise NotFoundError(f"No score for user {user_id} in game {game_id}")
    if participant.status == ParticipantStatus.VERIFIED:
        raise ConflictError(f"Score for user {user_id} is already verified")
    if participant.status != ParticipantStatus.PENDING:
        raise PreconditionError(f"Score for user {user_id} is {participant.status.value}")

    participant.status = ParticipantStatus.REJECTED
    participant.rejected_by = moderator_id
    participant.rejected_at = now
    participant.verified_by = None
    participant.verified_at = None
    participant.screenshot_requested = True
    await session.execute(
        update(GameScreenshot)
        .where(
            and_(
                GameScreenshot.game_id == game_id,
                GameScreenshot.user_id == user_id,
                GameScreenshot.type.in_(INDIVIDUAL_SCREENSHOTS),
                GameScreenshot.deleted_at.is_(None),
            )
        )
        .values(deleted_at=now)
    )
    await session.commit()
    logger.info(f"Moderator {moderator_id} rejected score of user {user_id} in game {game_id}")

    await get_websocket_manager().emit(LiveUpdateEvent.SCORE_UPDATED, score_payload(game, participant))
    user = await session.get(User, user_id)
    await get_notification_sink().post_screenshot_request(
        game.discord_channel_id,
        {
            "discord_id": user.discord_id if user else None,
            "display_name": user.display_name if user else str(user_id),
        },
    )
    return participant


# ============================================================================
# Screenshots and tracks
# ============================================================================

async def record_screenshot(
    session: AsyncSession,
    game_id: int,
    user_id: int,
    screenshot_type: ScreenshotType,
    file_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> GameScreenshot:
    """Store an uploaded screenshot; an individual one satisfies a pending request."""
    now = now or utcnow()
    game = await repo.get_game(session, game_id)
    _require_in_match(game, user_id)

    screenshot = GameScreenshot(
        game_id=game_id,
        user_id=user_id,
        type=screenshot_type,
        file_url=file_url,
        uploaded_at=now,
    )
    session.add(screenshot)

    participant = _find_in_game(game, user_id)
    if (
        participant is not None
        and participant.screenshot_requested
        and screenshot_type in INDIVIDUAL_SCREENSHOTS
    ):
        participant.screenshot_requested = False
    await session.commit()
    return screenshot


async def update_tracks(session: AsyncSession, game_id: int, track_ids: List[int]) -> Game:
    """
    Set the ordered track list of a game.

    Raises:
        NotFoundError: Unknown game
        ValidationError: Duplicate or unknown track ids, or more tracks than races
    """
    game = await repo.get_game(session, game_id)
    if len(set(track_ids)) != len(track_ids):
        raise ValidationError("Duplicate track id")
    limit = race_count(game.match.season.category)
    if len(track_ids) > limit:
        raise ValidationError(f"At most {limit} tracks can be set")

    if track_ids:
        result = await session.execute(select(Track.id).where(Track.id.in_(track_ids)))
        known = {row[0] for row in result.all()}
        unknown = [t for t in track_ids if t not in known]
        if unknown:
            raise ValidationError(f"Unknown track id(s): {unknown}")

    game.tracks = list(track_ids)
    await session.commit()

    await get_websocket_manager().emit(
        LiveUpdateEvent.MATCH_UPDATED,
        {"match_id": game.match_id, "game_id": game.id, "tracks": game.tracks},
    )
    return game
