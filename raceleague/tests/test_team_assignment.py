"""
Tests for team configuration selection, snake draft and team scoring.
"""

import random
from datetime import timedelta

import pytest

from raceleague.database.models import EventCategory
from raceleague.services.team_assignment import (
    TeamConfig,
    PlayerForAssignment,
    valid_configs,
    exclude_count,
    select_config,
    snake_draft,
    pick_team_colors,
    assign_teams,
    calculate_team_scores,
    color_name,
)
from raceleague.utils.constants import TEAM_CLASSIC_COLOR_SLOTS
from raceleague.utils.datetime_utils import utcnow


def _roster(count, base_rating=1000, step=100):
    """Players rated from highest to lowest, joined one minute apart."""
    start = utcnow() - timedelta(hours=1)
    return [
        PlayerForAssignment(
            user_id=i + 1,
            rating=base_rating + step * (count - i),
            joined_at=start + timedelta(minutes=i),
        )
        for i in range(count)
    ]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_team_config_encoding():
    config = TeamConfig(team_size=4, team_count=3)
    assert config.encode() == "4x3"
    assert config.player_count == 12
    assert TeamConfig.decode("4x3") == config


def test_valid_configs_for_twelve_players():
    configs = [c.encode() for c in valid_configs(12, len(TEAM_CLASSIC_COLOR_SLOTS))]
    assert configs == ["2x6", "3x4", "4x3", "6x2"]


def test_valid_configs_respects_color_limit():
    # 24 players could be 2x12, but there are only 10 classic colors
    configs = [c.encode() for c in valid_configs(24, len(TEAM_CLASSIC_COLOR_SLOTS))]
    assert "2x12" not in configs
    assert "3x8" in configs


@pytest.mark.parametrize(
    "category,players,expected",
    [
        (EventCategory.TEAM_CLASSIC, 12, 0),
        (EventCategory.TEAM_CLASSIC, 13, 1),
        (EventCategory.TEAM_CLASSIC, 17, 1),
        (EventCategory.TEAM_CLASSIC, 19, 1),
        (EventCategory.TEAM_CLASSIC, 20, 0),
        (EventCategory.TEAM_CLASSIC, 11, None),
        (EventCategory.TEAM_CLASSIC, 21, None),
        (EventCategory.TEAM_GP, 30, 0),
        (EventCategory.TEAM_GP, 31, 1),
        (EventCategory.TEAM_GP, 29, None),
    ],
)
def test_exclude_count(category, players, expected):
    assert exclude_count(category, players) == expected


def test_select_config_is_one_of_the_valid_shapes():
    rng = random.Random(3)
    allowed = {c for c in valid_configs(12, len(TEAM_CLASSIC_COLOR_SLOTS))}
    seen = {select_config(EventCategory.TEAM_CLASSIC, 13, rng) for _ in range(50)}
    assert seen <= allowed
    assert len(seen) > 1


def test_non_team_category_has_no_config():
    with pytest.raises(ValueError):
        exclude_count(EventCategory.CLASSIC, 12)


# ---------------------------------------------------------------------------
# Draft
# ---------------------------------------------------------------------------


def test_snake_draft_reverses_at_the_boundaries():
    assert snake_draft([1, 2, 3, 4, 5, 6, 7, 8], 3) == [[1, 6, 7], [2, 5, 8], [3, 4]]


def test_snake_draft_two_teams():
    assert snake_draft([1, 2, 3, 4], 2) == [[1, 4], [2, 3]]


def test_team_colors_sorted_subset():
    colors = pick_team_colors(EventCategory.TEAM_CLASSIC, 4, random.Random(1))
    assert colors == sorted(colors)
    assert len(set(colors)) == 4
    assert set(colors) <= set(TEAM_CLASSIC_COLOR_SLOTS)


def test_color_names():
    assert color_name(1) == "Blue"
    assert color_name(16) == "Gold"


# ---------------------------------------------------------------------------
# Full assignment
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("seed", [1, 2, 3, 4, 5])
def test_twelve_player_team_classic_assignment_is_balanced(seed):
    """12 players: nobody excluded, equal team sizes, ratings spread by snake draft."""
    roster = _roster(12)
    ratings = {p.user_id: p.rating for p in roster}

    assignment = assign_teams(EventCategory.TEAM_CLASSIC, roster, random.Random(seed))

    assert assignment is not None
    assert assignment.excluded_user_ids == []
    assert assignment.config in valid_configs(12, len(TEAM_CLASSIC_COLOR_SLOTS))
    assert len(assignment.teams) == assignment.config.team_count
    assert all(len(team) == assignment.config.team_size for team in assignment.teams)
    assert sorted(u for team in assignment.teams for u in team) == list(range(1, 13))

    sums = [sum(ratings[u] for u in team) for team in assignment.teams]
    # Linear ratings 100 apart: snake draft keeps totals within (teams - 1) steps
    assert max(sums) - min(sums) <= 100 * (assignment.config.team_count - 1)

    assert len(assignment.team_colors) == assignment.config.team_count
    assert assignment.team_colors == sorted(assignment.team_colors)


def test_latest_joiner_is_excluded():
    roster = _roster(13)
    assignment = assign_teams(EventCategory.TEAM_CLASSIC, roster, random.Random(9))

    assert assignment is not None
    assert assignment.excluded_user_ids == [13]
    assert 13 not in assignment.team_index_by_user()
    assert len(assignment.team_index_by_user()) == 12


def test_invalid_player_count_returns_none():
    assert assign_teams(EventCategory.TEAM_CLASSIC, _roster(11), random.Random(1)) is None
    assert assign_teams(EventCategory.TEAM_GP, _roster(20), random.Random(1)) is None


# ---------------------------------------------------------------------------
# Team scores
# ---------------------------------------------------------------------------


def test_team_scores_share_rank_on_tie():
    scores = {1: 100, 2: 50, 3: 80, 4: 70, 5: 10, 6: 20}
    result = calculate_team_scores(scores, [[1, 2], [3, 4], [5, 6]])

    assert result == [
        {"team_index": 0, "score": 150, "rank": 1},
        {"team_index": 1, "score": 150, "rank": 1},
        {"team_index": 2, "score": 30, "rank": 3},
    ]


def test_team_scores_missing_member_counts_zero():
    result = calculate_team_scores({1: 40}, [[1, 2], [3, 4]])
    assert result[0] == {"team_index": 0, "score": 40, "rank": 1}
    assert result[1] == {"team_index": 1, "score": 0, "rank": 2}
