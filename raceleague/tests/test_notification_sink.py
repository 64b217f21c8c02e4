"""
Tests for the Discord notification sink.
HTTP is replaced with a recording fake; every call must stay best-effort.
"""

from types import SimpleNamespace

import pytest

from raceleague.services.notification_sink import (
    NotificationSink,
    channel_name,
    VIEW_CHANNEL,
)


PARTICIPANT_ID = "123456789012345678"


@pytest.fixture
def discord():
    """Enabled sink whose _request records calls instead of hitting Discord."""
    sink = NotificationSink(
        token="bot-token",
        guild_id="111111111111111111",
        category_id="222222222222222222",
        announce_channel_id="333333333333333333",
        enabled=True,
    )
    sink.requests = []

    async def fake_request(method, path, json=None):
        sink.requests.append((method, path, json))
        return SimpleNamespace(json=lambda: {"id": 444444444444444444})

    sink._request = fake_request
    return sink


def _channel_params(**overrides):
    params = {
        "category": "CLASSIC",
        "season_number": 3,
        "match_number": 12,
        "participant_discord_ids": [PARTICIPANT_ID, "not-a-snowflake", None],
        "passcode": "0420",
        "passcode_version": 1,
    }
    params.update(overrides)
    return params


def test_channel_name():
    assert channel_name("TEAM_GP", 2, 7) == "team_gp-s2-game7"


@pytest.mark.asyncio
async def test_create_channel_limits_visibility_and_posts_passcode(discord):
    channel_id = await discord.create_channel(_channel_params())

    assert channel_id == "444444444444444444"
    method, path, body = discord.requests[0]
    assert (method, path) == ("POST", "/guilds/111111111111111111/channels")
    assert body["name"] == "classic-s3-game12"
    assert body["parent_id"] == "222222222222222222"
    overwrites = body["permission_overwrites"]
    assert overwrites[0] == {"id": "111111111111111111", "type": 0, "deny": str(VIEW_CHANNEL)}
    assert [o["id"] for o in overwrites[1:]] == [PARTICIPANT_ID]

    method, path, message = discord.requests[1]
    assert path == "/channels/444444444444444444/messages"
    assert message["embeds"][0]["title"] == "Passcode: 0420"


@pytest.mark.asyncio
async def test_create_channel_without_passcode_posts_nothing(discord):
    await discord.create_channel(_channel_params(passcode=None))
    assert len(discord.requests) == 1


@pytest.mark.asyncio
async def test_regenerated_passcode_title_shows_version(discord):
    await discord.post_passcode("555", _channel_params(passcode="9999", passcode_version=3))
    assert discord.requests[0][2]["embeds"][0]["title"] == "New passcode (v3): 9999"


@pytest.mark.asyncio
async def test_announcements_go_to_the_announce_channel(discord):
    summary = {
        "category": "GP",
        "season_number": 1,
        "match_number": 4,
        "current_players": 17,
        "scheduled_start": "2026-10-19T20:00:00+00:00",
        "reason": "insufficient_players",
    }
    assert await discord.announce_created(summary) is True
    assert await discord.announce_reminder(summary) is True
    assert await discord.announce_cancelled(summary) is True

    paths = {path for _, path, _ in discord.requests}
    assert paths == {"/channels/333333333333333333/messages"}
    assert discord.requests[2][2]["embeds"][0]["description"] == "Reason: insufficient players"


@pytest.mark.asyncio
async def test_results_announcement_lists_positions(discord):
    payload = {
        "category": "CLASSIC",
        "season_number": 1,
        "match_number": 2,
        "results": [
            {"position": 1, "name": "Racer 1", "score": 300, "rating_change": 70.0},
            {"position": 2, "name": "Racer 2", "score": 250, "rating_change": -12.4},
        ],
    }
    await discord.announce_results(payload)

    description = discord.requests[0][2]["embeds"][0]["description"]
    assert description.splitlines() == ["1. Racer 1 (300 pts, +70)", "2. Racer 2 (250 pts, -12)"]


@pytest.mark.asyncio
async def test_screenshot_request_mentions_player(discord):
    await discord.post_screenshot_request("555", {"discord_id": PARTICIPANT_ID, "display_name": "Racer 1"})
    assert discord.requests[0][2]["content"].startswith(f"<@{PARTICIPANT_ID}>")


@pytest.mark.asyncio
async def test_delete_channel(discord):
    assert await discord.delete_channel("555") is True
    assert discord.requests == [("DELETE", "/channels/555", None)]
    assert await discord.delete_channel(None) is False


@pytest.mark.asyncio
async def test_failures_are_swallowed(discord):
    async def broken_request(method, path, json=None):
        raise RuntimeError("discord is down")

    discord._request = broken_request

    assert await discord.create_channel(_channel_params()) is None
    assert await discord.post_passcode("555", _channel_params()) is False
    assert await discord.announce_cancelled({"category": "GP", "season_number": 1}) is False


@pytest.mark.asyncio
async def test_disabled_sink_sends_nothing():
    sink = NotificationSink(token="", guild_id="111111111111111111", announce_channel_id="3", enabled=False)

    assert sink.is_enabled() is False
    assert await sink.create_channel(_channel_params()) is None
    assert await sink.announce_created({
        "category": "GP", "season_number": 1, "match_number": 1, "scheduled_start": None
    }) is False
