"""
Race scoring: turn a player's per-race finishing positions into a total score.
"""

from typing import List, Optional, Tuple

from raceleague.database.models import EventCategory
from raceleague.models.schemas import RaceInput
from raceleague.utils.constants import (
    CLASSIC_RACE_COUNT,
    CLASSIC_MAX_POSITIONS,
    CLASSIC_ELIMINATION_THRESHOLDS,
    GP_RACE_COUNT,
    GP_MAX_POSITIONS,
    GP_ELIMINATION_THRESHOLDS,
)
from raceleague.utils.exceptions import ValidationError


def race_count(category: EventCategory) -> int:
    return CLASSIC_RACE_COUNT if category.is_classic_family else GP_RACE_COUNT


def max_positions(category: EventCategory) -> List[int]:
    return CLASSIC_MAX_POSITIONS if category.is_classic_family else GP_MAX_POSITIONS


def elimination_thresholds(category: EventCategory) -> List[Optional[int]]:
    return CLASSIC_ELIMINATION_THRESHOLDS if category.is_classic_family else GP_ELIMINATION_THRESHOLDS


def points_for_position(category: EventCategory, position: int) -> int:
    """CLASSIC family: 105 - 5 * position. GP family: 200 for 1st, else 200 - 2 * position."""
    if category.is_classic_family:
        return 105 - 5 * position
    if position == 1:
        return 200
    return 200 - 2 * position


def score_races(
    category: EventCategory,
    races: List[RaceInput],
) -> Tuple[List[dict], int, Optional[int]]:
    """
    Validate submitted races and compute points per race.

    A position at or past the race's elimination threshold eliminates the
    player; a disconnect scores 0 and also eliminates. Races after the
    elimination are recorded with no position and no points.

    Returns:
        (race rows, total score, eliminated_at_race or None)

    Raises:
        ValidationError: duplicate race numbers, too many races, or a position
            outside 1..max for that race
    """
    count = race_count(category)
    limits = max_positions(category)
    thresholds = elimination_thresholds(category)

    numbers = [r.race_number for r in races]
    if len(set(numbers)) != len(numbers):
        raise ValidationError("Duplicate race number in submission")
    if any(n > count for n in numbers):
        raise ValidationError(f"{category.value} has only {count} races")

    rows: List[dict] = []
    total = 0
    eliminated_at: Optional[int] = None
    for race in sorted(races, key=lambda r: r.race_number):
        number = race.race_number
        if eliminated_at is not None:
            rows.append(_row(number, None, None, eliminated=False, disconnected=False))
            continue

        if race.is_disconnected:
            eliminated_at = number
            rows.append(_row(number, None, 0, eliminated=True, disconnected=True))
            continue

        position = race.position
        if position is None or not 1 <= position <= limits[number - 1]:
            raise ValidationError(
                f"Race {number}: position must be between 1 and {limits[number - 1]}"
            )

        points = points_for_position(category, position)
        total += points
        threshold = thresholds[number - 1]
        is_eliminated = threshold is not None and position >= threshold
        if is_eliminated:
            eliminated_at = number
        rows.append(_row(number, position, points, eliminated=is_eliminated, disconnected=False))

    return rows, total, eliminated_at


def _row(number, position, points, eliminated, disconnected) -> dict:
    return {
        "race_number": number,
        "position": position,
        "points": points,
        "is_eliminated": eliminated,
        "is_disconnected": disconnected,
    }


def calculate_total_score(
    category: EventCategory, races: List[RaceInput]
) -> Tuple[int, Optional[int]]:
    """(total score, eliminated_at_race) for a submission."""
    _, total, eliminated_at = score_races(category, races)
    return total, eliminated_at
