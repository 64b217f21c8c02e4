"""
Multi-player rating calculation.

Pure functions: no database access. Given each participant's current
rating state and finishing position, compute internal rating deltas and the
resulting display rating, season high and convergence points.

Pipeline:
1. Raw Elo delta per player (all-comparison or proximity-comparison)
2. Zero-sum enforcement (subtract the mean delta)
3. Cap (scale every delta so the largest magnitude is MAX_RATING_CHANGE)
4. Position bonus for the podium with minimum guarantee, funded by the
   players outside the podium (individual mode only)
5. Convergence points and display rating
"""

import math
from dataclasses import dataclass
from typing import List, Dict, Optional, Iterable

from raceleague.utils.constants import (
    K_FACTOR,
    RATING_SCALE,
    MAX_RATING_CHANGE,
    INITIAL_COMPARISON_GAMES,
    COMPARISON_RANGE,
    POSITION_BONUS,
    MIN_GUARANTEE,
    CONVERGENCE_THRESHOLD,
    CONVERGENCE_POINTS_TOP,
    CONVERGENCE_POINTS_13_TO_16,
    CONVERGENCE_POINTS_17_TO_20,
    CONVERGENCE_POINTS_DEFAULT,
)


@dataclass
class RatingParticipant:
    """Current rating state and result of one participant."""
    user_id: int
    position: int  # 1 = first; tied players share a position
    internal_rating: float
    display_rating: int
    season_high: int
    convergence_points: float
    games_played: int
    team_index: Optional[int] = None


@dataclass
class RatingChange:
    """Computed outcome for one participant."""
    user_id: int
    position: int
    old_internal_rating: float
    new_internal_rating: float
    internal_rating_change: float
    old_display_rating: int
    new_display_rating: int
    old_season_high: int
    new_season_high: int
    old_convergence_points: float
    new_convergence_points: float
    old_games_played: int
    new_games_played: int


@dataclass
class PlacementEntry:
    """Score line used to derive finishing positions."""
    user_id: int
    total_score: int
    eliminated_at_race: Optional[int] = None


# ============================================================================
# Positions
# ============================================================================

def assign_positions(entries: Iterable[PlacementEntry]) -> Dict[int, int]:
    """
    Derive finishing positions with standard competition ranking.

    Players who survived every race are ranked by total score (equal scores
    share a position). Eliminated players rank below all survivors, grouped
    by the race they went out in: a later elimination ranks above an earlier
    one and everyone in a group shares the group's position.

    Returns:
        Mapping of user_id to position
    """
    entries = list(entries)
    survivors = sorted(
        (e for e in entries if e.eliminated_at_race is None),
        key=lambda e: -e.total_score,
    )
    eliminated = sorted(
        (e for e in entries if e.eliminated_at_race is not None),
        key=lambda e: -e.eliminated_at_race,
    )

    positions: Dict[int, int] = {}
    for index, entry in enumerate(survivors):
        if index > 0 and entry.total_score == survivors[index - 1].total_score:
            positions[entry.user_id] = positions[survivors[index - 1].user_id]
        else:
            positions[entry.user_id] = index + 1

    offset = len(survivors)
    for index, entry in enumerate(eliminated):
        if index > 0 and entry.eliminated_at_race == eliminated[index - 1].eliminated_at_race:
            positions[entry.user_id] = positions[eliminated[index - 1].user_id]
        else:
            positions[entry.user_id] = offset + index + 1

    return positions


# ============================================================================
# Elo Helpers
# ============================================================================

def expected_score(rating: float, opponent_rating: float) -> float:
    """
    Expected score of a player against one opponent.

    Formula: 1 / (1 + 10^((opponent - rating) / 1000))
    """
    return 1.0 / (1.0 + 10 ** ((opponent_rating - rating) / RATING_SCALE))


def actual_score(position: int, opponent_position: int) -> float:
    """1 for beating the opponent, 0.5 for a tie, 0 for losing."""
    if position < opponent_position:
        return 1.0
    if position == opponent_position:
        return 0.5
    return 0.0


def _delta_against(player: RatingParticipant, opponents: List[RatingParticipant]) -> float:
    if not opponents:
        return 0.0
    expected = sum(expected_score(player.internal_rating, o.internal_rating) for o in opponents)
    actual = sum(actual_score(player.position, o.position) for o in opponents)
    count = len(opponents)
    return K_FACTOR * (actual / count - expected / count)


def select_comparison_ranks(rank: int, total: int) -> List[int]:
    """
    Rating ranks (1 = highest rated) a player compares against in proximity mode.

    Normally COMPARISON_RANGE above and below. Near the top or bottom of the
    field the window shifts toward the populated side to keep the total.
    """
    wanted = COMPARISON_RANGE * 2
    above_available = rank - 1
    below_available = total - rank

    above = min(COMPARISON_RANGE, above_available)
    below = min(COMPARISON_RANGE, below_available)
    if above + below < wanted:
        if above < COMPARISON_RANGE:
            below = min(wanted - above, below_available)
        else:
            above = min(wanted - below, above_available)

    return [rank - i for i in range(1, above + 1)] + [rank + i for i in range(1, below + 1)]


def uses_all_comparison(player: RatingParticipant, team_mode: bool) -> bool:
    """Team mode and players still in their first games compare against everyone."""
    return team_mode or player.games_played < INITIAL_COMPARISON_GAMES


def raw_rating_delta(
    player: RatingParticipant,
    participants: List[RatingParticipant],
    team_mode: bool = False,
) -> float:
    """Raw Elo delta of one player before zero-sum, cap and bonus."""
    if uses_all_comparison(player, team_mode):
        opponents = [p for p in participants if p.user_id != player.user_id]
        if team_mode and player.team_index is not None:
            opponents = [p for p in opponents if p.team_index != player.team_index]
        return _delta_against(player, opponents)

    by_rating = sorted(participants, key=lambda p: (-p.internal_rating, p.user_id))
    rank = next(i for i, p in enumerate(by_rating, start=1) if p.user_id == player.user_id)
    opponents = [by_rating[r - 1] for r in select_comparison_ranks(rank, len(by_rating))]
    return _delta_against(player, opponents)


# ============================================================================
# Adjustments
# ============================================================================

def enforce_zero_sum(deltas: Dict[int, float]) -> None:
    """Subtract the mean delta from every delta so the total is zero."""
    if not deltas:
        return
    mean = sum(deltas.values()) / len(deltas)
    for user_id in deltas:
        deltas[user_id] -= mean


def cap_max_change(deltas: Dict[int, float]) -> None:
    """Scale all deltas by one factor so the largest magnitude is MAX_RATING_CHANGE."""
    if not deltas:
        return
    largest = max(abs(v) for v in deltas.values())
    if largest > MAX_RATING_CHANGE:
        factor = MAX_RATING_CHANGE / largest
        for user_id in deltas:
            deltas[user_id] *= factor


def _collect(deltas: Dict[int, float], payers: List[int], amount: float) -> float:
    """
    Take `amount` evenly from payers without pushing anyone below -MAX_RATING_CHANGE.

    A payer that hits the floor pays what it can and the rest is spread over
    the others. Returns the amount actually collected.
    """
    remaining = amount
    open_payers = list(payers)
    while remaining > 1e-9 and open_payers:
        share = remaining / len(open_payers)
        still_open = []
        for user_id in open_payers:
            room = deltas[user_id] + MAX_RATING_CHANGE
            paid = min(share, room)
            deltas[user_id] -= paid
            remaining -= paid
            if room > share:
                still_open.append(user_id)
        open_payers = still_open
    return amount - remaining


def apply_position_bonuses(deltas: Dict[int, float], participants: List[RatingParticipant]) -> None:
    """
    Add the podium bonus and lift podium players to their minimum guarantee.

    The total granted is collected evenly from players outside the podium so
    the zero-sum property survives. Grants never push anyone past the cap.
    Skipped entirely when every participant is on the podium.
    """
    podium = [p for p in participants if p.position in POSITION_BONUS]
    payers = [p.user_id for p in participants if p.position not in POSITION_BONUS]
    if not podium or not payers:
        return

    grants: Dict[int, float] = {}
    for p in podium:
        current = deltas[p.user_id]
        target = max(current + POSITION_BONUS[p.position], MIN_GUARANTEE[p.position])
        target = min(target, MAX_RATING_CHANGE)
        if target > current:
            grants[p.user_id] = target - current

    total = sum(grants.values())
    if total <= 0:
        return

    collected = _collect(deltas, payers, total)
    # Only when the payers are all at the floor does this fall short
    ratio = collected / total
    for user_id, grant in grants.items():
        deltas[user_id] += grant * ratio


# ============================================================================
# Convergence
# ============================================================================

def convergence_points_for_position(position: int) -> float:
    """Convergence points earned for a finishing position."""
    if position in CONVERGENCE_POINTS_TOP:
        return CONVERGENCE_POINTS_TOP[position]
    if 13 <= position <= 16:
        return CONVERGENCE_POINTS_13_TO_16
    if 17 <= position <= 20:
        return CONVERGENCE_POINTS_17_TO_20
    return CONVERGENCE_POINTS_DEFAULT


def convergence_multiplier(convergence_points: float) -> float:
    """Sine ramp reaching 1.0 exactly at CONVERGENCE_THRESHOLD points."""
    if convergence_points <= CONVERGENCE_THRESHOLD:
        return math.sin(math.pi / (2 * CONVERGENCE_THRESHOLD) * convergence_points)
    return 1.0


def display_rating(internal_rating: float, convergence_points: float) -> int:
    """Visible rating: ceil(internal * multiplier), never negative."""
    return max(0, math.ceil(internal_rating * convergence_multiplier(convergence_points)))


# ============================================================================
# Main Entry Point
# ============================================================================

def calculate_rating_changes(
    participants: List[RatingParticipant],
    team_mode: bool = False,
) -> List[RatingChange]:
    """
    Calculate rating changes for all participants of one game.

    Args:
        participants: Every rated participant with current state and position
        team_mode: Team games compare everyone against all opposing-team
            players and skip the podium bonus

    Returns:
        One RatingChange per participant, in input order
    """
    deltas: Dict[int, float] = {
        p.user_id: raw_rating_delta(p, participants, team_mode) for p in participants
    }

    enforce_zero_sum(deltas)
    cap_max_change(deltas)
    if not team_mode:
        apply_position_bonuses(deltas, participants)

    changes: List[RatingChange] = []
    for p in participants:
        delta = deltas[p.user_id]
        new_internal = p.internal_rating + delta
        new_points = p.convergence_points + convergence_points_for_position(p.position)
        new_display = display_rating(new_internal, new_points)
        changes.append(
            RatingChange(
                user_id=p.user_id,
                position=p.position,
                old_internal_rating=p.internal_rating,
                new_internal_rating=new_internal,
                internal_rating_change=delta,
                old_display_rating=p.display_rating,
                new_display_rating=new_display,
                old_season_high=p.season_high,
                new_season_high=max(p.season_high, new_display),
                old_convergence_points=p.convergence_points,
                new_convergence_points=new_points,
                old_games_played=p.games_played,
                new_games_played=p.games_played + 1,
            )
        )
    return changes
