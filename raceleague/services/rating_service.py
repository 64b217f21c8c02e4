"""
Rating persistence: turn a game's results into UserSeasonStats and
RatingHistory rows, preview ratings without writing, and replay a season
from a given match after an admin correction.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Dict, Optional

from sqlalchemy import select, delete, and_
from sqlalchemy.ext.asyncio import AsyncSession

from raceleague.database.models import (
    Match,
    MatchStatus,
    Game,
    GameParticipant,
    ParticipantStatus,
    EventCategory,
    UserSeasonStats,
    RatingHistory,
)
from raceleague.models.schemas import RatingPreview
from raceleague.services import match_repository as repo
from raceleague.services.rating_algorithm import (
    RatingParticipant,
    RatingChange,
    PlacementEntry,
    assign_positions,
    calculate_rating_changes,
)
from raceleague.services.team_assignment import TeamConfig, calculate_team_scores
from raceleague.utils.constants import INITIAL_RATING
from raceleague.utils.exceptions import IntegrityError

logger = logging.getLogger(__name__)

# Scores in these states count toward ratings
RATED_STATUSES = (ParticipantStatus.PENDING, ParticipantStatus.VERIFIED)

# Counters copied between UserSeasonStats and RatingHistory snapshots
STAT_FIELDS = (
    "internal_rating",
    "display_rating",
    "season_high_rating",
    "convergence_points",
    "total_matches",
    "total_points",
    "total_positions",
    "first_places",
    "second_places",
    "third_places",
    "survived_count",
    "mvp_count",
)


@dataclass
class MatchRatingContext:
    """Everything needed to rate one game."""
    match: Match
    game: Game
    category: EventCategory
    rated: List[GameParticipant]
    positions: Dict[int, int]
    stats: Dict[int, UserSeasonStats]
    team_scores: Optional[List[Dict[str, int]]] = None
    mvp_user_ids: List[int] = field(default_factory=list)

    @property
    def team_mode(self) -> bool:
        return self.category.is_team

    def rating_participants(self) -> List[RatingParticipant]:
        participants = []
        for gp in self.rated:
            row = self.stats.get(gp.user_id)
            participants.append(
                RatingParticipant(
                    user_id=gp.user_id,
                    position=self.positions[gp.user_id],
                    internal_rating=row.internal_rating if row else INITIAL_RATING,
                    display_rating=row.display_rating if row else 0,
                    season_high=row.season_high_rating if row else 0,
                    convergence_points=row.convergence_points if row else 0.0,
                    games_played=row.total_matches if row else 0,
                    team_index=gp.team_index,
                )
            )
        return participants


async def build_context(session: AsyncSession, match: Match) -> MatchRatingContext:
    """
    Collect rated participants, positions and current stats for a match.

    Raises:
        IntegrityError: No game, fewer than two rated participants, or a team
            game without a team layout
    """
    game = repo.current_game(match)
    if game is None:
        raise IntegrityError(f"Match {match.id} has no game to rate")
    category = match.season.category

    rated = [
        gp for gp in game.participants
        if not gp.is_excluded and gp.status in RATED_STATUSES and gp.total_score is not None
    ]

    team_scores = None
    mvp_user_ids: List[int] = []
    if category.is_team:
        if not game.team_config:
            raise IntegrityError(f"Team game {game.id} has no team configuration")
        rated = [gp for gp in rated if gp.team_index is not None]
        config = TeamConfig.decode(game.team_config)
        teams: List[List[int]] = [[] for _ in range(config.team_count)]
        for gp in rated:
            if gp.team_index >= config.team_count:
                raise IntegrityError(f"Participant {gp.user_id} has team {gp.team_index} outside {game.team_config}")
            teams[gp.team_index].append(gp.user_id)
        scores = {gp.user_id: gp.total_score for gp in rated}
        team_scores = calculate_team_scores(scores, teams)
        rank_by_team = {t["team_index"]: t["rank"] for t in team_scores}
        positions = {gp.user_id: rank_by_team[gp.team_index] for gp in rated}

        winners = [gp for gp in rated if rank_by_team[gp.team_index] == 1]
        if winners:
            best = max(gp.total_score for gp in winners)
            mvp_user_ids = [gp.user_id for gp in winners if gp.total_score == best]
    else:
        positions = assign_positions(
            PlacementEntry(
                user_id=gp.user_id,
                total_score=gp.total_score,
                eliminated_at_race=gp.eliminated_at_race,
            )
            for gp in rated
        )

    if len(rated) < 2:
        raise IntegrityError(f"Match {match.id} has fewer than two rated participants")

    stats = await repo.get_season_stats(session, [gp.user_id for gp in rated], match.season_id)
    return MatchRatingContext(
        match=match,
        game=game,
        category=category,
        rated=rated,
        positions=positions,
        stats=stats,
        team_scores=team_scores,
        mvp_user_ids=mvp_user_ids,
    )


async def preview_ratings(session: AsyncSession, match: Match) -> List[RatingPreview]:
    """Projected rating changes for a match; writes nothing."""
    ctx = await build_context(session, match)
    changes = calculate_rating_changes(ctx.rating_participants(), team_mode=ctx.team_mode)
    return [
        RatingPreview(
            user_id=c.user_id,
            position=c.position,
            internal_rating_change=round(c.internal_rating_change, 2),
            new_internal_rating=round(c.new_internal_rating, 2),
            new_display_rating=c.new_display_rating,
        )
        for c in changes
    ]


async def apply_match_ratings(session: AsyncSession, match: Match) -> List[RatingChange]:
    """
    Compute ratings for a match and write stats and history (flush only).

    Callers run this inside one transaction together with the status change
    so stats, history and FINALIZED land atomically.
    """
    ctx = await build_context(session, match)
    changes = calculate_rating_changes(ctx.rating_participants(), team_mode=ctx.team_mode)
    by_user = {gp.user_id: gp for gp in ctx.rated}

    for change in changes:
        gp = by_user[change.user_id]
        row = ctx.stats.get(change.user_id)
        if row is None:
            row = UserSeasonStats(
                user_id=change.user_id,
                season_id=match.season_id,
                internal_rating=INITIAL_RATING,
                display_rating=0,
                season_high_rating=0,
                convergence_points=0.0,
                total_matches=0,
                total_points=0,
                total_positions=0,
                first_places=0,
                second_places=0,
                third_places=0,
                survived_count=0,
                mvp_count=0,
            )
            session.add(row)

        row.internal_rating = change.new_internal_rating
        row.display_rating = change.new_display_rating
        row.season_high_rating = change.new_season_high
        row.convergence_points = change.new_convergence_points
        row.total_matches = change.new_games_played
        row.total_points += gp.total_score or 0
        row.total_positions += change.position
        if change.position == 1:
            row.first_places += 1
        elif change.position == 2:
            row.second_places += 1
        elif change.position == 3:
            row.third_places += 1
        if gp.eliminated_at_race is None:
            row.survived_count += 1
        if change.user_id in ctx.mvp_user_ids:
            row.mvp_count += 1

        history = RatingHistory(
            user_id=change.user_id,
            season_id=match.season_id,
            match_id=match.id,
            match_number=match.match_number,
            position=change.position,
            internal_rating_change=change.internal_rating_change,
        )
        for name in STAT_FIELDS:
            setattr(history, name, getattr(row, name))
        session.add(history)

    if ctx.team_scores is not None:
        ctx.game.team_scores = ctx.team_scores
    await session.flush()
    return changes


def results_payload(match: Match, changes: List[RatingChange]) -> List[Dict]:
    """Result rows for announcements, best position first."""
    game = repo.current_game(match)
    scores = {gp.user_id: gp.total_score for gp in game.participants} if game else {}
    names = {p.user_id: (p.user.display_name if p.user else str(p.user_id)) for p in match.participants}
    rows = [
        {
            "user_id": c.user_id,
            "name": names.get(c.user_id, str(c.user_id)),
            "position": c.position,
            "score": scores.get(c.user_id) or 0,
            "rating_change": round(c.internal_rating_change, 2),
            "display_rating": c.new_display_rating,
        }
        for c in changes
    ]
    return sorted(rows, key=lambda r: (r["position"], -r["score"]))


# ============================================================================
# Recalculation
# ============================================================================

async def _restore_from_anchor(
    session: AsyncSession, user_id: int, season_id: int, before_match_number: int
) -> None:
    """Reset a user's stats to their last snapshot before the given match number."""
    result = await session.execute(
        select(RatingHistory)
        .where(
            and_(
                RatingHistory.user_id == user_id,
                RatingHistory.season_id == season_id,
                RatingHistory.match_number < before_match_number,
            )
        )
        .order_by(RatingHistory.match_number.desc(), RatingHistory.id.desc())
        .limit(1)
    )
    anchor = result.scalar_one_or_none()

    stats = await repo.get_season_stats(session, [user_id], season_id)
    row = stats.get(user_id)
    if row is None:
        if anchor is None:
            return
        row = UserSeasonStats(user_id=user_id, season_id=season_id)
        session.add(row)

    if anchor is not None:
        for name in STAT_FIELDS:
            setattr(row, name, getattr(anchor, name))
    else:
        row.internal_rating = INITIAL_RATING
        row.display_rating = 0
        row.season_high_rating = 0
        row.convergence_points = 0.0
        for name in STAT_FIELDS[4:]:
            setattr(row, name, 0)


async def recalculate_from_match(
    session: AsyncSession, season_id: int, from_match_number: int
) -> int:
    """
    Replay every FINALIZED match of a season from from_match_number on.

    Affected users are restored from their latest history snapshot before
    that match (or initial values), history from that match on is removed,
    and matches are re-rated in match-number order. All in one transaction.

    Returns:
        Number of matches replayed
    """
    result = await session.execute(
        select(Match.id)
        .where(
            and_(
                Match.season_id == season_id,
                Match.status == MatchStatus.FINALIZED,
                Match.match_number >= from_match_number,
            )
        )
        .order_by(Match.match_number.asc())
    )
    match_ids = [row[0] for row in result.all()]
    if not match_ids:
        return 0

    async def _replay(s: AsyncSession) -> int:
        history_users = await s.execute(
            select(RatingHistory.user_id).where(RatingHistory.match_id.in_(match_ids))
        )
        participant_users = await s.execute(
            select(GameParticipant.user_id)
            .join(Game, Game.id == GameParticipant.game_id)
            .where(Game.match_id.in_(match_ids))
        )
        user_ids = {row[0] for row in history_users.all()} | {row[0] for row in participant_users.all()}

        for user_id in sorted(user_ids):
            await _restore_from_anchor(s, user_id, season_id, from_match_number)
        await s.execute(delete(RatingHistory).where(RatingHistory.match_id.in_(match_ids)))
        await s.flush()

        for match_id in match_ids:
            match = await repo.get_match(s, match_id)
            await apply_match_ratings(s, match)
        return len(match_ids)

    replayed = await repo.with_transaction(session, _replay)
    logger.info(f"Season {season_id}: replayed {replayed} match(es) from #{from_match_number}")
    return replayed
