"""
Recurring schedules: keep each category's next week of matches created.

A schedule holds one or more rules (weekdays + local start time). Matches
are generated through match_service.create_match for every occurrence in
the next RECURRING_HORIZON_DAYS days that is later than the rule's
last_scheduled_at, so repeated runs never create the same match twice.

The replenishment worker runs once at startup and then daily at local
midnight in the schedule timezone.
"""

import asyncio
import logging
import os
from datetime import datetime, time, timedelta
from typing import Optional, List, Dict

import pytz
from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from raceleague.database import db
from raceleague.database.models import (
    EventCategory,
    Match,
    MatchStatus,
    RecurringSchedule,
    RecurringScheduleRule,
)
from raceleague.models.schemas import RecurringRuleInput
from raceleague.services import match_repository as repo
from raceleague.services import match_service
from raceleague.utils.constants import (
    CATEGORY_SPAN_MINUTES,
    RECURRING_DEFAULT_MAX_PLAYERS,
    RECURRING_DEFAULT_MIN_PLAYERS,
    RECURRING_HORIZON_DAYS,
    SCHEDULE_TIMEZONE,
)
from raceleague.utils.datetime_utils import utcnow, ensure_utc
from raceleague.utils.exceptions import (
    MatchLifecycleError,
    ValidationError,
    ConflictError,
    NotFoundError,
)

logger = logging.getLogger(__name__)


def schedule_timezone():
    """Timezone rule times are written in (SCHEDULE_TIMEZONE env var)."""
    return pytz.timezone(os.getenv("SCHEDULE_TIMEZONE", SCHEDULE_TIMEZONE))


def parse_time_of_day(value: str) -> time:
    """Parse "HH:MM"; raises ValidationError on anything else."""
    parts = value.split(":") if isinstance(value, str) else []
    if len(parts) != 2 or not all(len(p) == 2 and p.isdigit() for p in parts):
        raise ValidationError(f"time_of_day must be HH:MM, got {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if hour > 23 or minute > 59:
        raise ValidationError(f"time_of_day out of range: {value}")
    return time(hour, minute)


def _minutes(value: str) -> int:
    parsed = parse_time_of_day(value)
    return parsed.hour * 60 + parsed.minute


def _validate_rules(rules: List[RecurringRuleInput]) -> None:
    if not rules:
        raise ValidationError("A schedule needs at least one rule")
    for rule in rules:
        if not rule.days_of_week:
            raise ValidationError("Each rule needs at least one weekday")
        if any(day < 0 or day > 6 for day in rule.days_of_week):
            raise ValidationError("days_of_week values must be between 0 and 6")
        parse_time_of_day(rule.time_of_day)


def _validate_players(min_players: int, max_players: int) -> None:
    if min_players < 2 or max_players < min_players or max_players > 99:
        raise ValidationError("Player bounds must satisfy 2 <= min_players <= max_players <= 99")


def _overlaps(start_a: int, span_a: int, start_b: int, span_b: int) -> bool:
    return start_a < start_b + span_b and start_b < start_a + span_a


async def _validate_no_time_overlap(
    session: AsyncSession,
    schedule_id: Optional[int],
    category: EventCategory,
    rules: List[RecurringRuleInput],
) -> None:
    """
    Rules sharing a weekday must be at least one match span apart, both
    within the schedule and against every other enabled schedule.
    """
    span = CATEGORY_SPAN_MINUTES.get(category.value)
    if not span:
        return

    for i, first in enumerate(rules):
        for second in rules[i + 1:]:
            if not set(first.days_of_week) & set(second.days_of_week):
                continue
            if _overlaps(_minutes(first.time_of_day), span, _minutes(second.time_of_day), span):
                raise ValidationError(
                    f"Time slots {first.time_of_day} and {second.time_of_day} overlap "
                    f"({span}-minute window required)"
                )

    query = (
        select(RecurringSchedule)
        .where(RecurringSchedule.is_enabled.is_(True))
        .options(selectinload(RecurringSchedule.rules))
    )
    if schedule_id is not None:
        query = query.where(RecurringSchedule.id != schedule_id)
    others = (await session.execute(query)).scalars().all()

    for rule in rules:
        start = _minutes(rule.time_of_day)
        for other in others:
            other_span = CATEGORY_SPAN_MINUTES.get(other.category.value, 0)
            if not other_span:
                continue
            for other_rule in other.rules:
                if not set(rule.days_of_week) & set(other_rule.days_of_week):
                    continue
                if _overlaps(start, span, _minutes(other_rule.time_of_day), other_span):
                    raise ValidationError(
                        f"Time {rule.time_of_day} overlaps with {other.category.value} schedule "
                        f"at {other_rule.time_of_day} ({span}-minute window required)"
                    )


# ============================================================================
# Occurrences and generation
# ============================================================================

def rule_occurrences(
    rule: RecurringScheduleRule,
    now: datetime,
    horizon_days: int = RECURRING_HORIZON_DAYS,
    tz=None,
) -> List[datetime]:
    """
    UTC start times of a rule within (now, now + horizon_days], skipping
    everything at or before the rule's last_scheduled_at.
    """
    tz = tz or schedule_timezone()
    start_time = parse_time_of_day(rule.time_of_day)
    horizon = now + timedelta(days=horizon_days)
    last = ensure_utc(rule.last_scheduled_at)
    local_today = now.astimezone(tz).date()

    occurrences = []
    for offset in range(horizon_days + 1):
        day = local_today + timedelta(days=offset)
        if day.weekday() not in rule.days_of_week:
            continue
        start = tz.localize(datetime.combine(day, start_time)).astimezone(pytz.UTC)
        if start <= now or start > horizon:
            continue
        if last is not None and start <= last:
            continue
        occurrences.append(start)
    return occurrences


async def generate_matches_for_schedule(
    session: AsyncSession,
    schedule: RecurringSchedule,
    now: Optional[datetime] = None,
    horizon_days: int = RECURRING_HORIZON_DAYS,
) -> List[int]:
    """
    Create the schedule's missing matches in the category's active season.

    A single occurrence that cannot be created is logged and skipped.

    Returns:
        Ids of the matches created
    """
    now = now or utcnow()
    season = await repo.find_active_season(session, schedule.category)
    if season is None:
        logger.warning(
            f"No active season for {schedule.category.value}, "
            f"skipping match generation for schedule {schedule.id}"
        )
        return []

    span = CATEGORY_SPAN_MINUTES.get(schedule.category.value)
    created = []
    for rule in schedule.rules:
        latest = ensure_utc(rule.last_scheduled_at)
        for start in rule_occurrences(rule, now, horizon_days):
            try:
                match = await match_service.create_match(
                    session,
                    season.id,
                    start,
                    schedule.min_players,
                    schedule.max_players,
                    deadline=start + timedelta(minutes=span) if span else None,
                    now=now,
                    recurring_schedule_id=schedule.id,
                    announce=False,
                )
            except MatchLifecycleError as e:
                logger.error(
                    f"Failed to create match for schedule {schedule.id} rule {rule.id} "
                    f"at {start.isoformat()}: {e}"
                )
                continue
            created.append(match.id)
            if latest is None or start > latest:
                latest = start

        if latest is not None:
            rule.last_scheduled_at = latest
    await session.commit()

    if created:
        logger.info(f"Schedule {schedule.id} created {len(created)} match(es)")
    return created


async def _delete_waiting_matches(session: AsyncSession, schedule: RecurringSchedule) -> int:
    """Delete the schedule's WAITING matches and let its rules regenerate from scratch."""
    result = await session.execute(
        select(Match.id)
        .where(
            and_(
                Match.recurring_schedule_id == schedule.id,
                Match.status == MatchStatus.WAITING,
            )
        )
        .order_by(Match.id)
    )
    match_ids = [row[0] for row in result.all()]
    for match_id in match_ids:
        await match_service.delete_match(session, match_id)

    for rule in schedule.rules:
        rule.last_scheduled_at = None
    await session.commit()

    if match_ids:
        logger.info(f"Deleted {len(match_ids)} waiting match(es) of schedule {schedule.id}")
    return len(match_ids)


# ============================================================================
# CRUD
# ============================================================================

async def find_schedule(session: AsyncSession, schedule_id: int) -> Optional[RecurringSchedule]:
    result = await session.execute(
        select(RecurringSchedule)
        .where(RecurringSchedule.id == schedule_id)
        .options(selectinload(RecurringSchedule.rules))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_schedule(session: AsyncSession, schedule_id: int) -> RecurringSchedule:
    schedule = await find_schedule(session, schedule_id)
    if schedule is None:
        raise NotFoundError(f"Recurring schedule {schedule_id} not found")
    return schedule


async def list_schedules(session: AsyncSession) -> List[RecurringSchedule]:
    result = await session.execute(
        select(RecurringSchedule)
        .options(selectinload(RecurringSchedule.rules))
        .order_by(RecurringSchedule.id)
    )
    return list(result.scalars().all())


async def create_schedule(
    session: AsyncSession,
    category: EventCategory,
    rules: List[RecurringRuleInput],
    min_players: int = RECURRING_DEFAULT_MIN_PLAYERS,
    max_players: int = RECURRING_DEFAULT_MAX_PLAYERS,
    name: Optional[str] = None,
    notes: Optional[str] = None,
    created_by: Optional[int] = None,
    now: Optional[datetime] = None,
) -> RecurringSchedule:
    """
    Create a category's schedule and generate its first week of matches.

    Raises:
        ValidationError: Bad rules, overlapping time slots, bad player bounds
        ConflictError: The category already has a schedule
    """
    _validate_rules(rules)
    _validate_players(min_players, max_players)
    existing = await session.execute(
        select(RecurringSchedule.id).where(RecurringSchedule.category == category)
    )
    if existing.first() is not None:
        raise ConflictError(f"A schedule already exists for category {category.value}")
    await _validate_no_time_overlap(session, None, category, rules)

    schedule = RecurringSchedule(
        category=category,
        name=name,
        notes=notes,
        min_players=min_players,
        max_players=max_players,
        is_enabled=True,
        created_by=created_by,
        rules=[
            RecurringScheduleRule(days_of_week=list(rule.days_of_week), time_of_day=rule.time_of_day)
            for rule in rules
        ],
    )
    session.add(schedule)
    await session.commit()
    logger.info(f"Created recurring schedule {schedule.id} for {category.value}")

    schedule = await get_schedule(session, schedule.id)
    await generate_matches_for_schedule(session, schedule, now)
    return await get_schedule(session, schedule.id)


async def update_schedule(
    session: AsyncSession,
    schedule_id: int,
    rules: Optional[List[RecurringRuleInput]] = None,
    min_players: Optional[int] = None,
    max_players: Optional[int] = None,
    name: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RecurringSchedule:
    """
    Update a schedule. New rules replace the old ones and the schedule's
    WAITING matches are regenerated; otherwise missing matches are filled in.
    """
    schedule = await get_schedule(session, schedule_id)
    if rules is not None:
        _validate_rules(rules)
        await _validate_no_time_overlap(session, schedule_id, schedule.category, rules)
    _validate_players(
        min_players if min_players is not None else schedule.min_players,
        max_players if max_players is not None else schedule.max_players,
    )

    if min_players is not None:
        schedule.min_players = min_players
    if max_players is not None:
        schedule.max_players = max_players
    if name is not None:
        schedule.name = name
    if notes is not None:
        schedule.notes = notes
    if rules is not None:
        schedule.rules = [
            RecurringScheduleRule(days_of_week=list(rule.days_of_week), time_of_day=rule.time_of_day)
            for rule in rules
        ]
    await session.commit()

    schedule = await get_schedule(session, schedule_id)
    if rules is not None:
        await _delete_waiting_matches(session, schedule)
    if schedule.is_enabled:
        await generate_matches_for_schedule(session, schedule, now)
    return await get_schedule(session, schedule_id)


async def set_schedule_enabled(
    session: AsyncSession, schedule_id: int, enabled: bool, now: Optional[datetime] = None
) -> RecurringSchedule:
    """Enabling generates the next week of matches; disabling removes the WAITING ones."""
    schedule = await get_schedule(session, schedule_id)
    schedule.is_enabled = enabled
    await session.commit()
    logger.info(f"Recurring schedule {schedule_id} {'enabled' if enabled else 'disabled'}")

    if enabled:
        await generate_matches_for_schedule(session, schedule, now)
    else:
        await _delete_waiting_matches(session, schedule)
    return await get_schedule(session, schedule_id)


async def delete_schedule(session: AsyncSession, schedule_id: int) -> None:
    """Delete a schedule; its WAITING matches go with it, started ones are unlinked."""
    schedule = await get_schedule(session, schedule_id)
    await _delete_waiting_matches(session, schedule)
    await session.execute(
        update(Match)
        .where(Match.recurring_schedule_id == schedule_id)
        .values(recurring_schedule_id=None)
    )
    await session.delete(schedule)
    await session.commit()
    logger.info(f"Deleted recurring schedule {schedule_id}")


def schedule_to_dict(schedule: RecurringSchedule) -> Dict:
    return {
        "id": schedule.id,
        "category": schedule.category.value,
        "name": schedule.name,
        "notes": schedule.notes,
        "min_players": schedule.min_players,
        "max_players": schedule.max_players,
        "is_enabled": schedule.is_enabled,
        "rules": [
            {
                "id": rule.id,
                "days_of_week": rule.days_of_week,
                "time_of_day": rule.time_of_day,
                "last_scheduled_at": rule.last_scheduled_at.isoformat() if rule.last_scheduled_at else None,
            }
            for rule in schedule.rules
        ],
    }


# ============================================================================
# Daily replenishment
# ============================================================================

async def replenish_all(now: Optional[datetime] = None) -> Dict[int, List[int]]:
    """
    Top up every enabled schedule. A failing schedule is logged and the
    rest still run.

    Returns:
        Map of schedule id to the ids of the matches created
    """
    now = now or utcnow()
    created: Dict[int, List[int]] = {}
    async with db.AsyncSessionLocal() as session:
        result = await session.execute(
            select(RecurringSchedule.id)
            .where(RecurringSchedule.is_enabled.is_(True))
            .order_by(RecurringSchedule.id)
        )
        schedule_ids = [row[0] for row in result.all()]

        for schedule_id in schedule_ids:
            try:
                schedule = await get_schedule(session, schedule_id)
                created[schedule_id] = await generate_matches_for_schedule(session, schedule, now)
            except Exception as e:
                await session.rollback()
                logger.error(f"Failed to replenish matches for schedule {schedule_id}: {e}", exc_info=True)

    logger.info(f"Replenishment complete. Processed {len(schedule_ids)} schedule(s)")
    return created


def seconds_until_next_run(now: datetime, tz=None) -> float:
    """Seconds from now until the next local midnight."""
    tz = tz or schedule_timezone()
    local_date = now.astimezone(tz).date()
    next_midnight = tz.localize(datetime.combine(local_date + timedelta(days=1), time.min))
    return max(1.0, (next_midnight - now).total_seconds())


class ScheduleReplenishmentService:
    """Background service that tops up recurring schedules once a day."""

    def __init__(self):
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def start(self) -> None:
        """Start the replenishment worker (first run happens immediately)."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._poll_loop())
            logger.info("Schedule replenishment worker started")

    def stop(self) -> None:
        """Stop the replenishment worker."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            logger.info("Schedule replenishment worker stopped")

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await replenish_all()
            except Exception as e:
                logger.error(f"Error in schedule replenishment worker: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=seconds_until_next_run(utcnow())
                )
                break
            except asyncio.TimeoutError:
                pass


# Global singleton
_replenishment_service = ScheduleReplenishmentService()


def get_replenishment_service() -> ScheduleReplenishmentService:
    """Get the global schedule replenishment service instance."""
    return _replenishment_service
