"""
Team configuration selection and snake-draft team assignment.

Pure functions. Randomness comes from an optional `random.Random` so callers
(and tests) can seed it.
"""

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Optional, Tuple

from raceleague.database.models import EventCategory
from raceleague.utils.constants import (
    TEAM_CLASSIC_MIN_PLAYERS,
    TEAM_CLASSIC_MAX_PLAYERS,
    TEAM_GP_MIN_PLAYERS,
    TEAM_GP_MAX_PLAYERS,
    TEAM_CLASSIC_COLOR_SLOTS,
    TEAM_GP_COLOR_SLOTS,
    TEAM_COLOR_NAMES,
    MIN_TEAM_SIZE,
    MIN_TEAM_COUNT,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TeamConfig:
    """A team shape: team_count teams of team_size players."""
    team_size: int
    team_count: int

    @property
    def player_count(self) -> int:
        return self.team_size * self.team_count

    def encode(self) -> str:
        return f"{self.team_size}x{self.team_count}"

    @classmethod
    def decode(cls, value: str) -> "TeamConfig":
        size, count = value.lower().split("x")
        return cls(team_size=int(size), team_count=int(count))


@dataclass
class PlayerForAssignment:
    user_id: int
    rating: float
    joined_at: datetime


@dataclass
class TeamAssignment:
    """Result of assigning a roster to teams."""
    config: TeamConfig
    teams: List[List[int]]  # teams[team_index] = user ids
    excluded_user_ids: List[int] = field(default_factory=list)
    team_colors: List[int] = field(default_factory=list)

    def team_index_by_user(self) -> Dict[int, int]:
        return {
            user_id: team_index
            for team_index, members in enumerate(self.teams)
            for user_id in members
        }


# ============================================================================
# Configuration
# ============================================================================

def _player_limits(category: EventCategory) -> Tuple[int, int]:
    if category == EventCategory.TEAM_CLASSIC:
        return TEAM_CLASSIC_MIN_PLAYERS, TEAM_CLASSIC_MAX_PLAYERS
    if category == EventCategory.TEAM_GP:
        return TEAM_GP_MIN_PLAYERS, TEAM_GP_MAX_PLAYERS
    raise ValueError(f"{category.value} does not use teams")


def color_slots(category: EventCategory) -> List[int]:
    """Visual color slots available to a team category."""
    if category == EventCategory.TEAM_CLASSIC:
        return list(TEAM_CLASSIC_COLOR_SLOTS)
    if category == EventCategory.TEAM_GP:
        return list(TEAM_GP_COLOR_SLOTS)
    raise ValueError(f"{category.value} does not use teams")


def color_name(slot: int) -> str:
    return TEAM_COLOR_NAMES.get(slot, f"Team {slot}")


def valid_configs(player_count: int, max_team_count: int) -> List[TeamConfig]:
    """
    Every team shape that exactly divides player_count.

    Both the team size and the team count must be at least 2, and the team
    count cannot exceed the number of distinct colors.
    """
    configs = []
    for team_count in range(MIN_TEAM_COUNT, max_team_count + 1):
        if player_count % team_count:
            continue
        team_size = player_count // team_count
        if team_size >= MIN_TEAM_SIZE:
            configs.append(TeamConfig(team_size=team_size, team_count=team_count))
    # Ordered by team size, like "2x6, 3x4, 4x3, 6x2"
    return sorted(configs, key=lambda c: c.team_size)


def is_valid_player_count(category: EventCategory, player_count: int) -> bool:
    low, high = _player_limits(category)
    return low <= player_count <= high


def exclude_count(category: EventCategory, player_count: int) -> Optional[int]:
    """
    Minimum number of players to drop so the rest split into a valid shape.

    Returns None when the count is out of range or no shape is reachable.
    """
    if not is_valid_player_count(category, player_count):
        return None
    max_teams = len(color_slots(category))
    low, _ = _player_limits(category)
    for k in range(0, player_count - low + 1):
        if valid_configs(player_count - k, max_teams):
            return k
    return None


def select_config(
    category: EventCategory,
    player_count: int,
    rng: Optional[random.Random] = None,
) -> Optional[TeamConfig]:
    """Pick one valid shape uniformly at random for the players left after exclusion."""
    k = exclude_count(category, player_count)
    if k is None:
        return None
    configs = valid_configs(player_count - k, len(color_slots(category)))
    if not configs:
        return None
    return (rng or random).choice(configs)


# ============================================================================
# Assignment
# ============================================================================

def snake_draft(sorted_user_ids: List[int], team_count: int) -> List[List[int]]:
    """
    Deal players (strongest first) to teams 0..T-1, T-1..0, 0..T-1, ...

    The boundary team receives two players in a row when the direction flips,
    so neighbouring ranks land on different teams.
    """
    teams: List[List[int]] = [[] for _ in range(team_count)]
    direction = 1
    current = 0
    for user_id in sorted_user_ids:
        teams[current].append(user_id)
        nxt = current + direction
        if nxt >= team_count or nxt < 0:
            direction *= -1
        else:
            current = nxt
    return teams


def shuffle_teams(teams: List[List[int]], rng: Optional[random.Random] = None) -> None:
    """Fisher-Yates shuffle of team order in place."""
    rng = rng or random
    for i in range(len(teams) - 1, 0, -1):
        j = rng.randint(0, i)
        teams[i], teams[j] = teams[j], teams[i]


def pick_team_colors(
    category: EventCategory,
    team_count: int,
    rng: Optional[random.Random] = None,
) -> List[int]:
    """Random subset of the palette, sorted by slot number."""
    return sorted((rng or random).sample(color_slots(category), team_count))


def assign_teams(
    category: EventCategory,
    players: List[PlayerForAssignment],
    rng: Optional[random.Random] = None,
) -> Optional[TeamAssignment]:
    """
    Split a roster into balanced teams.

    The latest joiners are excluded when the roster does not divide into a
    valid shape. Remaining players are sorted by rating and snake-drafted,
    then team order is shuffled so the top-rated player is not always team 0.

    Returns:
        TeamAssignment, or None when the player count is invalid or no shape fits
    """
    player_count = len(players)
    k = exclude_count(category, player_count)
    if k is None:
        logger.warning(f"Invalid player count for {category.value}: {player_count}")
        return None

    config = select_config(category, player_count, rng)
    if config is None:
        logger.error(f"No valid team configuration for {player_count} players")
        return None

    latest_first = sorted(players, key=lambda p: p.joined_at, reverse=True)
    excluded = [p.user_id for p in latest_first[:k]]
    eligible = [p for p in players if p.user_id not in excluded]

    by_rating = sorted(eligible, key=lambda p: p.rating, reverse=True)
    teams = snake_draft([p.user_id for p in by_rating], config.team_count)
    shuffle_teams(teams, rng)

    logger.info(
        f"Assigned {len(eligible)} players to {config.team_count} teams "
        f"({config.encode()}), excluded {k}"
    )
    return TeamAssignment(
        config=config,
        teams=teams,
        excluded_user_ids=excluded,
        team_colors=pick_team_colors(category, config.team_count, rng),
    )


def calculate_team_scores(
    scores: Dict[int, int],
    teams: List[List[int]],
) -> List[Dict[str, int]]:
    """
    Sum member scores per team and rank teams by total.

    Equal totals share a rank; the next distinct total resumes at
    previous rank + tie group size.

    Returns:
        One {"team_index", "score", "rank"} dict per team, in team order
    """
    team_scores = [
        {"team_index": index, "score": sum(scores.get(u, 0) for u in members), "rank": 0}
        for index, members in enumerate(teams)
    ]
    ordered = sorted(team_scores, key=lambda t: t["score"], reverse=True)
    for index, team in enumerate(ordered):
        if index > 0 and team["score"] == ordered[index - 1]["score"]:
            team["rank"] = ordered[index - 1]["rank"]
        else:
            team["rank"] = index + 1
    return team_scores
