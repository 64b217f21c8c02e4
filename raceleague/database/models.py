"""
SQLAlchemy ORM models for the race league match system.
"""

import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    Float,
    Enum,
    ForeignKey,
    UniqueConstraint,
    Index,
    JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from raceleague.database.db import Base, UTCDateTime

# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB, "postgresql")


class EventCategory(str, enum.Enum):
    """Season event category."""

    CLASSIC = "CLASSIC"
    TEAM_CLASSIC = "TEAM_CLASSIC"
    GP = "GP"
    TEAM_GP = "TEAM_GP"

    @property
    def is_team(self) -> bool:
        return self in (EventCategory.TEAM_CLASSIC, EventCategory.TEAM_GP)

    @property
    def is_classic_family(self) -> bool:
        return self in (EventCategory.CLASSIC, EventCategory.TEAM_CLASSIC)


class MatchStatus(str, enum.Enum):
    """Match lifecycle status."""

    WAITING = "WAITING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FINALIZED = "FINALIZED"
    CANCELLED = "CANCELLED"


class ParticipantStatus(str, enum.Enum):
    """Game participant score status."""

    UNSUBMITTED = "UNSUBMITTED"
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class ScreenshotType(str, enum.Enum):
    """Screenshot type enum."""

    INDIVIDUAL_1 = "INDIVIDUAL_1"
    INDIVIDUAL_2 = "INDIVIDUAL_2"
    FINAL = "FINAL"


class JobStatus(str, enum.Enum):
    """Scheduled job status enum."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class User(Base):
    """League member."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    display_name = Column(String, nullable=False)
    discord_id = Column(String, nullable=True)
    created_at = Column(UTCDateTime, server_default=func.now())


class Season(Base):
    """A numbered season of one event category."""

    __tablename__ = "seasons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    category = Column(Enum(EventCategory), nullable=False)
    season_number = Column(Integer, nullable=False)
    name = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    matches = relationship("Match", back_populates="season")

    __table_args__ = (
        UniqueConstraint("category", "season_number", name="uq_season_category_number"),
    )


class Track(Base):
    """Race course that can be attached to a game."""

    __tablename__ = "tracks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)


class RecurringSchedule(Base):
    """Template that keeps a category's upcoming matches created ahead of time."""

    __tablename__ = "recurring_schedules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # One schedule per category
    category = Column(Enum(EventCategory), nullable=False, unique=True)
    name = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    min_players = Column(Integer, default=12, nullable=False)
    max_players = Column(Integer, default=20, nullable=False)
    is_enabled = Column(Boolean, default=True, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    rules = relationship(
        "RecurringScheduleRule",
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="RecurringScheduleRule.id",
    )

    __table_args__ = (
        Index("idx_recurring_schedules_enabled", "is_enabled"),
    )


class RecurringScheduleRule(Base):
    """Weekdays and local start time at which a schedule creates matches."""

    __tablename__ = "recurring_schedule_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    schedule_id = Column(
        Integer, ForeignKey("recurring_schedules.id", ondelete="CASCADE"), nullable=False
    )
    days_of_week = Column(JSONType, nullable=False)  # 0-6, Monday=0
    time_of_day = Column(String, nullable=False)  # "HH:MM" in the schedule timezone
    # Latest start already generated; later runs only add occurrences after it
    last_scheduled_at = Column(UTCDateTime, nullable=True)

    schedule = relationship("RecurringSchedule", back_populates="rules")


class Match(Base):
    """A scheduled competitive session with a roster and a lifecycle."""

    __tablename__ = "matches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    season_id = Column(Integer, ForeignKey("seasons.id"), nullable=False)
    # Set when generated from a recurring schedule
    recurring_schedule_id = Column(
        Integer, ForeignKey("recurring_schedules.id", ondelete="SET NULL"), nullable=True
    )
    # Null while CANCELLED; contiguous across WAITING matches in a season
    match_number = Column(Integer, nullable=True)
    status = Column(Enum(MatchStatus), default=MatchStatus.WAITING, nullable=False)
    scheduled_start = Column(UTCDateTime, nullable=False)
    deadline = Column(UTCDateTime, nullable=True)
    actual_start = Column(UTCDateTime, nullable=True)
    min_players = Column(Integer, nullable=False)
    max_players = Column(Integer, nullable=False)
    current_players = Column(Integer, default=0, nullable=False)
    cancel_reason = Column(String, nullable=True)
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    season = relationship("Season", back_populates="matches")
    participants = relationship(
        "MatchParticipant", back_populates="match", cascade="all, delete-orphan"
    )
    games = relationship("Game", back_populates="match", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("season_id", "match_number", name="uq_match_season_number"),
        Index("idx_matches_status_start", "status", "scheduled_start"),
        Index("idx_matches_recurring_schedule", "recurring_schedule_id"),
    )


class MatchParticipant(Base):
    """A user who joined a match."""

    __tablename__ = "match_participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_id = Column(Integer, ForeignKey("matches.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    joined_at = Column(UTCDateTime, nullable=False)

    match = relationship("Match", back_populates="participants")
    user = relationship("User")

    __table_args__ = (
        UniqueConstraint("match_id", "user_id", name="uq_match_participant"),
    )


class Game(Base):
    """Scoring unit of a match: passcode, tracks, team layout and results."""

    __tablename__ = "games"

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_id = Column(Integer, ForeignKey("matches.id", ondelete="CASCADE"), nullable=False)
    game_number = Column(Integer, default=1, nullable=False)
    passcode = Column(String(4), nullable=True)
    passcode_version = Column(Integer, default=1, nullable=False)
    passcode_published_at = Column(UTCDateTime, nullable=True)
    started_at = Column(UTCDateTime, nullable=True)
    team_config = Column(String, nullable=True)  # "{teamSize}x{teamCount}"
    team_colors = Column(JSONType, nullable=True)  # list of color slot numbers
    team_scores = Column(JSONType, nullable=True)  # [{team_index, score, rank}]
    tracks = Column(JSONType, nullable=True)  # ordered track ids
    discord_channel_id = Column(String, nullable=True)
    created_at = Column(UTCDateTime, server_default=func.now())

    match = relationship("Match", back_populates="games")
    participants = relationship(
        "GameParticipant", back_populates="game", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("match_id", "game_number", name="uq_game_match_number"),
    )


class GameParticipant(Base):
    """A player's score record within a game."""

    __tablename__ = "game_participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    game_id = Column(Integer, ForeignKey("games.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    status = Column(
        Enum(ParticipantStatus), default=ParticipantStatus.UNSUBMITTED, nullable=False
    )
    total_score = Column(Integer, nullable=True)
    eliminated_at_race = Column(Integer, nullable=True)
    team_index = Column(Integer, nullable=True)
    is_excluded = Column(Boolean, default=False, nullable=False)
    submitted_at = Column(UTCDateTime, nullable=True)
    verified_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    verified_at = Column(UTCDateTime, nullable=True)
    rejected_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    rejected_at = Column(UTCDateTime, nullable=True)
    screenshot_requested = Column(Boolean, default=False, nullable=False)

    game = relationship("Game", back_populates="participants")
    race_results = relationship(
        "RaceResult",
        back_populates="participant",
        cascade="all, delete-orphan",
        order_by="RaceResult.race_number",
    )

    __table_args__ = (
        UniqueConstraint("game_id", "user_id", name="uq_game_participant"),
    )


class RaceResult(Base):
    """One race of a participant's submitted score."""

    __tablename__ = "race_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    game_participant_id = Column(
        Integer, ForeignKey("game_participants.id", ondelete="CASCADE"), nullable=False
    )
    race_number = Column(Integer, nullable=False)
    position = Column(Integer, nullable=True)  # null after elimination or on disconnect
    points = Column(Integer, nullable=True)
    is_eliminated = Column(Boolean, default=False, nullable=False)
    is_disconnected = Column(Boolean, default=False, nullable=False)

    participant = relationship("GameParticipant", back_populates="race_results")

    __table_args__ = (
        UniqueConstraint("game_participant_id", "race_number", name="uq_race_result"),
    )


class GameScreenshot(Base):
    """Uploaded score screenshot (soft-deleted when a score is rejected)."""

    __tablename__ = "game_screenshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    game_id = Column(Integer, ForeignKey("games.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    type = Column(Enum(ScreenshotType), nullable=False)
    file_url = Column(String, nullable=True)
    uploaded_at = Column(UTCDateTime, nullable=False)
    deleted_at = Column(UTCDateTime, nullable=True)


class SplitVote(Base):
    """A vote to regenerate the passcode of a game at one passcode version."""

    __tablename__ = "split_votes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    game_id = Column(Integer, ForeignKey("games.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    passcode_version = Column(Integer, nullable=False)
    created_at = Column(UTCDateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("game_id", "user_id", "passcode_version", name="uq_split_vote"),
    )


class UserSeasonStats(Base):
    """Per-season rating state and aggregate counters for a user."""

    __tablename__ = "user_season_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    season_id = Column(Integer, ForeignKey("seasons.id"), nullable=False)
    internal_rating = Column(Float, nullable=False)
    display_rating = Column(Integer, default=0, nullable=False)
    season_high_rating = Column(Integer, default=0, nullable=False)
    convergence_points = Column(Float, default=0.0, nullable=False)
    total_matches = Column(Integer, default=0, nullable=False)
    total_points = Column(Integer, default=0, nullable=False)
    total_positions = Column(Integer, default=0, nullable=False)
    first_places = Column(Integer, default=0, nullable=False)
    second_places = Column(Integer, default=0, nullable=False)
    third_places = Column(Integer, default=0, nullable=False)
    survived_count = Column(Integer, default=0, nullable=False)
    mvp_count = Column(Integer, default=0, nullable=False)
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "season_id", name="uq_user_season_stats"),
    )


class RatingHistory(Base):
    """
    Append-only snapshot of a user's season stats after a finalized match.

    Rows are the rollback anchor for recalculation, so they carry every
    counter that UserSeasonStats carries, not just the rating.
    """

    __tablename__ = "rating_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    season_id = Column(Integer, ForeignKey("seasons.id"), nullable=False)
    match_id = Column(Integer, ForeignKey("matches.id"), nullable=False)
    match_number = Column(Integer, nullable=True)
    position = Column(Integer, nullable=False)
    internal_rating_change = Column(Float, nullable=False)
    internal_rating = Column(Float, nullable=False)
    display_rating = Column(Integer, nullable=False)
    season_high_rating = Column(Integer, nullable=False)
    convergence_points = Column(Float, nullable=False)
    total_matches = Column(Integer, nullable=False)
    total_points = Column(Integer, nullable=False)
    total_positions = Column(Integer, nullable=False)
    first_places = Column(Integer, nullable=False)
    second_places = Column(Integer, nullable=False)
    third_places = Column(Integer, nullable=False)
    survived_count = Column(Integer, nullable=False)
    mvp_count = Column(Integer, nullable=False)
    created_at = Column(UTCDateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "match_id", name="uq_rating_history_user_match"),
        Index("idx_rating_history_user_season", "user_id", "season_id"),
    )


class ScheduledJob(Base):
    """Delayed job row; job_id is the idempotency key (e.g. start-match-12)."""

    __tablename__ = "scheduled_jobs"

    job_id = Column(String, primary_key=True)
    job_type = Column(String, nullable=False)
    payload = Column(JSONType, nullable=False)
    run_at = Column(UTCDateTime, nullable=False)
    status = Column(Enum(JobStatus), default=JobStatus.PENDING, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, server_default=func.now())
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_scheduled_jobs_status_run_at", "status", "run_at"),
    )
