"""
Pydantic models for job payloads, live-update events, service results and API request bodies.
"""

import enum
from datetime import datetime
from typing import Optional, List, Dict, Type
from pydantic import BaseModel, Field, ConfigDict

from raceleague.database.models import EventCategory, ScreenshotType


class JobType(str, enum.Enum):
    """Delayed job types handled by the match orchestrator."""

    START_MATCH = "start-match"
    REMINDER_MATCH = "reminder-match"
    REVEAL_PASSCODE = "reveal-passcode"
    DELETE_DISCORD_CHANNEL = "delete-discord-channel"

    def job_id(self, target_id: int) -> str:
        """Deterministic job id so enqueue-by-id is idempotent."""
        return f"{self.value}-{target_id}"


class LiveUpdateEvent(str, enum.Enum):
    """Events broadcast on the live-update bus."""

    MATCH_CREATED = "match-created"
    MATCH_STARTED = "match-started"
    MATCH_UPDATED = "match-updated"
    MATCH_CANCELLED = "match-cancelled"
    MATCH_COMPLETED = "match-completed"
    MATCH_FINALIZED = "match-finalized"
    TEAM_ASSIGNED = "team-assigned"
    PASSCODE_REVEALED = "passcode-revealed"
    PASSCODE_REGENERATED = "passcode-regenerated"
    SPLIT_VOTE_UPDATED = "split-vote-updated"
    SCORE_UPDATED = "score-updated"


class MatchJobPayload(BaseModel):
    """Payload for jobs that target a match."""

    model_config = ConfigDict(populate_by_name=True)
    match_id: int = Field(alias="matchId")


class GameJobPayload(BaseModel):
    """Payload for jobs that target a game."""

    model_config = ConfigDict(populate_by_name=True)
    game_id: int = Field(alias="gameId")


class StartMatchPayload(MatchJobPayload):
    pass


class ReminderMatchPayload(MatchJobPayload):
    pass


class RevealPasscodePayload(GameJobPayload):
    pass


class DeleteDiscordChannelPayload(GameJobPayload):
    # Channel id is captured at scheduling time; the game may be gone by then
    channel_id: Optional[str] = Field(default=None, alias="channelId")


JOB_PAYLOAD_MODELS: Dict[JobType, Type[BaseModel]] = {
    JobType.START_MATCH: StartMatchPayload,
    JobType.REMINDER_MATCH: ReminderMatchPayload,
    JobType.REVEAL_PASSCODE: RevealPasscodePayload,
    JobType.DELETE_DISCORD_CHANNEL: DeleteDiscordChannelPayload,
}


def parse_job_payload(job_type: JobType, payload: dict) -> BaseModel:
    """Validate a stored payload dict into its job-type model."""
    return JOB_PAYLOAD_MODELS[job_type].model_validate(payload)


class RaceInput(BaseModel):
    """One race as submitted by a player."""

    race_number: int = Field(ge=1)
    position: Optional[int] = None
    is_disconnected: bool = False


class TeamScore(BaseModel):
    """Aggregated team result."""

    team_index: int
    score: int
    rank: int


class RatingPreview(BaseModel):
    """Projected rating change for one participant."""

    user_id: int
    position: int
    internal_rating_change: float
    new_internal_rating: float
    new_display_rating: int


class SplitVoteResult(BaseModel):
    """Outcome of casting a split vote."""

    regenerated: bool
    current_votes: int
    required_votes: int
    passcode_version: int
    new_passcode: Optional[str] = None


class SplitVoteStatus(BaseModel):
    """Split vote state for a game as seen by one user."""

    current_votes: int
    required_votes: int
    has_voted: bool
    passcode_version: int


class RecoveryReport(BaseModel):
    """What one recovery pass changed."""

    ghost_jobs_removed: List[str] = Field(default_factory=list)
    matches_requeued: List[int] = Field(default_factory=list)


class RecurringRuleInput(BaseModel):
    """Weekdays (0-6, Monday=0) and a local "HH:MM" start time."""

    days_of_week: List[int]
    time_of_day: str


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class MatchCreate(BaseModel):
    season_id: int
    scheduled_start: datetime
    deadline: Optional[datetime] = None
    min_players: int
    max_players: int


class UserAction(BaseModel):
    user_id: int


class ModeratorAction(BaseModel):
    moderator_id: int


class ScoreSubmit(BaseModel):
    user_id: int
    races: List[RaceInput]


class ScreenshotCreate(BaseModel):
    user_id: int
    type: ScreenshotType
    file_url: Optional[str] = None


class TracksUpdate(BaseModel):
    track_ids: List[int]


class RecalculateRequest(BaseModel):
    season_id: int
    from_match_number: int = Field(ge=1)


class RecurringScheduleCreate(BaseModel):
    category: EventCategory
    rules: List[RecurringRuleInput]
    min_players: int = 12
    max_players: int = 20
    name: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[int] = None


class RecurringScheduleUpdate(BaseModel):
    rules: Optional[List[RecurringRuleInput]] = None
    min_players: Optional[int] = None
    max_players: Optional[int] = None
    name: Optional[str] = None
    notes: Optional[str] = None


class ScheduleToggle(BaseModel):
    enabled: bool
