"""
Discord bot client for match announcements and per-game passcode channels.

Every call is best-effort: failures are logged and reported as False/None,
never raised, so a Discord outage cannot abort a match transition.
"""

import functools
import logging
import os
import re
from typing import Optional, List, Dict, Any

import httpx
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DISCORD_API_BASE = os.getenv("DISCORD_API_BASE", "https://discord.com/api/v10")
MATCH_URL_BASE = os.getenv("MATCH_URL_BASE", "https://example.com/matches")

# Discord channel type and permission bits used for passcode channels
GUILD_TEXT_CHANNEL = 0
VIEW_CHANNEL = 1 << 10
READ_MESSAGE_HISTORY = 1 << 16

# Discord snowflake ids are 17-19 digit numbers
SNOWFLAKE_PATTERN = re.compile(r"^\d{17,19}$")

COLOR_GREEN = 0x00FF00
COLOR_RED = 0xFF0000
COLOR_BLUE = 0x3498DB
COLOR_ORANGE = 0xFFA500


def best_effort(default):
    """Log and swallow any exception from a sink call, returning `default`."""
    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            try:
                return await fn(*args, **kwargs)
            except Exception:
                logger.warning(f"Notification {fn.__name__} failed", exc_info=True)
                return default
        return wrapper
    return decorator


def match_url(category: str, season_number: int, match_number: Optional[int]) -> str:
    return f"{MATCH_URL_BASE}/{category.lower()}/{season_number}/{match_number}"


def channel_name(category: str, season_number: int, match_number: Optional[int]) -> str:
    return f"{category.lower()}-s{season_number}-game{match_number}"


class NotificationSink:
    """Best-effort Discord REST client."""

    def __init__(
        self,
        token: Optional[str] = None,
        guild_id: Optional[str] = None,
        category_id: Optional[str] = None,
        announce_channel_id: Optional[str] = None,
        enabled: Optional[bool] = None,
    ):
        self.token = token if token is not None else os.getenv("DISCORD_BOT_TOKEN")
        self.guild_id = guild_id if guild_id is not None else os.getenv("DISCORD_GUILD_ID")
        self.category_id = category_id if category_id is not None else os.getenv("DISCORD_CATEGORY_ID")
        self.announce_channel_id = (
            announce_channel_id
            if announce_channel_id is not None
            else os.getenv("DISCORD_ANNOUNCE_CHANNEL_ID")
        )
        if enabled is None:
            enabled = os.getenv("DISCORD_BOT_ENABLED", "false").lower() == "true"
        self.enabled = enabled

    def is_enabled(self) -> bool:
        return bool(self.enabled and self.token)

    async def _request(
        self, method: str, path: str, json: Optional[Dict[str, Any]] = None
    ) -> Optional[httpx.Response]:
        """Send one API request. Returns the response, or None on any failure."""
        if not self.is_enabled():
            logger.debug(f"Discord bot disabled, skipping {method} {path}")
            return None
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                resp = await client.request(
                    method,
                    f"{DISCORD_API_BASE}{path}",
                    json=json,
                    headers={"Authorization": f"Bot {self.token}"},
                )
                resp.raise_for_status()
                return resp
        except Exception:
            logger.warning(f"Discord request failed: {method} {path}", exc_info=True)
            return None

    async def _send(self, channel_id: Optional[str], message: Dict[str, Any]) -> bool:
        if not channel_id:
            logger.debug("No Discord channel configured for message")
            return False
        resp = await self._request("POST", f"/channels/{channel_id}/messages", json=message)
        return resp is not None

    # ------------------------------------------------------------------
    # Announcements (league announcement channel)
    # ------------------------------------------------------------------

    @best_effort(False)
    async def announce_created(self, payload: Dict[str, Any]) -> bool:
        return await self._send(self.announce_channel_id, {
            "embeds": [{
                "title": f"{payload['category']} Season {payload['season_number']} Match #{payload['match_number']} scheduled",
                "description": f"Starts at {payload['scheduled_start']}",
                "color": COLOR_BLUE,
                "url": match_url(payload["category"], payload["season_number"], payload["match_number"]),
            }],
        })

    @best_effort(False)
    async def announce_reminder(self, payload: Dict[str, Any]) -> bool:
        return await self._send(self.announce_channel_id, {
            "content": "@here",
            "embeds": [{
                "title": f"{payload['category']} Match #{payload['match_number']} starts in 5 minutes",
                "description": f"{payload['current_players']} player(s) joined so far",
                "color": COLOR_ORANGE,
                "url": match_url(payload["category"], payload["season_number"], payload["match_number"]),
            }],
        })

    @best_effort(False)
    async def announce_cancelled(self, payload: Dict[str, Any]) -> bool:
        reason = payload.get("reason") or "cancelled"
        return await self._send(self.announce_channel_id, {
            "embeds": [{
                "title": f"{payload['category']} Season {payload['season_number']} match cancelled",
                "description": f"Reason: {reason.replace('_', ' ')}",
                "color": COLOR_RED,
            }],
        })

    @best_effort(False)
    async def announce_results(self, payload: Dict[str, Any]) -> bool:
        lines = [
            f"{row['position']}. {row['name']} ({row['score']} pts, {row['rating_change']:+.0f})"
            for row in payload.get("results", [])[:10]
        ]
        return await self._send(self.announce_channel_id, {
            "embeds": [{
                "title": f"{payload['category']} Season {payload['season_number']} Match #{payload['match_number']} results",
                "description": "\n".join(lines) or "No results",
                "color": COLOR_GREEN,
                "url": match_url(payload["category"], payload["season_number"], payload["match_number"]),
            }],
        })

    # ------------------------------------------------------------------
    # Passcode channel
    # ------------------------------------------------------------------

    @best_effort(None)
    async def create_channel(self, params: Dict[str, Any]) -> Optional[str]:
        """
        Create a private text channel for a game's participants.

        Args:
            params: category, season_number, match_number, participant_discord_ids,
                and optionally passcode (posted as the first message)

        Returns:
            The new channel id, or None if the channel could not be created
        """
        if not self.guild_id:
            if self.is_enabled():
                logger.warning("Discord guild ID not configured")
            return None

        overwrites: List[Dict[str, Any]] = [
            {"id": self.guild_id, "type": 0, "deny": str(VIEW_CHANNEL)},
        ]
        for discord_id in params.get("participant_discord_ids", []):
            if not SNOWFLAKE_PATTERN.match(discord_id or ""):
                logger.debug(f"Skipping invalid Discord ID: {discord_id}")
                continue
            overwrites.append({
                "id": discord_id,
                "type": 1,
                "allow": str(VIEW_CHANNEL | READ_MESSAGE_HISTORY),
            })

        body: Dict[str, Any] = {
            "name": channel_name(params["category"], params["season_number"], params["match_number"]),
            "type": GUILD_TEXT_CHANNEL,
            "permission_overwrites": overwrites,
        }
        if self.category_id:
            body["parent_id"] = self.category_id

        resp = await self._request("POST", f"/guilds/{self.guild_id}/channels", json=body)
        if resp is None:
            return None
        try:
            channel_id = str(resp.json()["id"])
        except Exception:
            logger.warning("Discord channel response had no id", exc_info=True)
            return None

        if params.get("passcode"):
            await self.post_passcode(channel_id, params)
        logger.info(f"Created Discord channel {body['name']} ({channel_id})")
        return channel_id

    @best_effort(False)
    async def post_passcode(self, channel_ref: Optional[str], payload: Dict[str, Any]) -> bool:
        title = f"Passcode: {payload['passcode']}"
        if payload.get("passcode_version", 1) > 1:
            title = f"New passcode (v{payload['passcode_version']}): {payload['passcode']}"
        return await self._send(channel_ref, {
            "content": "@here",
            "embeds": [{
                "title": title,
                "color": COLOR_GREEN,
                "fields": [
                    {
                        "name": "Score Submission",
                        "value": match_url(payload["category"], payload["season_number"], payload["match_number"]),
                        "inline": False,
                    },
                    {
                        "name": "Streamers",
                        "value": "Please hide the passcode on your stream!",
                        "inline": False,
                    },
                ],
            }],
        })

    @best_effort(False)
    async def post_cancellation(self, channel_ref: Optional[str], payload: Dict[str, Any]) -> bool:
        return await self._send(channel_ref, {
            "embeds": [{
                "title": "This match has been cancelled",
                "description": (payload.get("reason") or "cancelled").replace("_", " "),
                "color": COLOR_RED,
            }],
        })

    @best_effort(False)
    async def post_screenshot_request(self, channel_ref: Optional[str], payload: Dict[str, Any]) -> bool:
        mention = f"<@{payload['discord_id']}> " if payload.get("discord_id") else ""
        return await self._send(channel_ref, {
            "content": f"{mention}please upload new screenshots of your race results.",
            "embeds": [{
                "title": "Score rejected",
                "description": f"{payload.get('display_name', 'Player')}'s score needs new screenshots.",
                "color": COLOR_ORANGE,
            }],
        })

    @best_effort(False)
    async def delete_channel(self, channel_ref: Optional[str]) -> bool:
        if not channel_ref:
            return False
        resp = await self._request("DELETE", f"/channels/{channel_ref}")
        if resp is not None:
            logger.info(f"Deleted Discord channel {channel_ref}")
        return resp is not None


# Global sink instance
_notification_sink: Optional[NotificationSink] = None


def get_notification_sink() -> NotificationSink:
    """Get the global notification sink instance."""
    global _notification_sink
    if _notification_sink is None:
        _notification_sink = NotificationSink()
    return _notification_sink


def set_notification_sink(sink: Optional[NotificationSink]) -> None:
    """Replace the global sink (tests install a recording fake)."""
    global _notification_sink
    _notification_sink = sink
