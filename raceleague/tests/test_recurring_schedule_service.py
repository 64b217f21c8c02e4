"""
Tests for recurring schedules: occurrence expansion, match generation,
schedule management and the daily replenishment worker.
"""

import asyncio
from datetime import datetime, timedelta

import pytest
import pytz
from sqlalchemy import select, update

from raceleague.database.models import (
    EventCategory,
    Match,
    MatchStatus,
    RecurringScheduleRule,
)
from raceleague.models.schemas import RecurringRuleInput
from raceleague.services import recurring_schedule_service
from raceleague.services.recurring_schedule_service import (
    ScheduleReplenishmentService,
    create_schedule,
    delete_schedule,
    generate_matches_for_schedule,
    get_replenishment_service,
    get_schedule,
    parse_time_of_day,
    replenish_all,
    rule_occurrences,
    seconds_until_next_run,
    set_schedule_enabled,
    update_schedule,
)
from raceleague.tests.factories import make_season
from raceleague.utils.exceptions import ValidationError, ConflictError, NotFoundError

TOKYO = pytz.timezone("Asia/Tokyo")
# Monday 2026-10-19, 12:00 in Tokyo
NOW = datetime(2026, 10, 19, 3, 0, tzinfo=pytz.UTC)


@pytest.fixture(autouse=True)
def tokyo_schedule(monkeypatch):
    monkeypatch.delenv("SCHEDULE_TIMEZONE", raising=False)


def _rule(days, at):
    return RecurringRuleInput(days_of_week=days, time_of_day=at)


async def _schedule_matches(db_session, schedule_id):
    result = await db_session.execute(
        select(Match)
        .where(Match.recurring_schedule_id == schedule_id)
        .order_by(Match.scheduled_start)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Occurrences
# ---------------------------------------------------------------------------


def test_parse_time_of_day():
    assert parse_time_of_day("07:05").hour == 7
    assert parse_time_of_day("23:59").minute == 59
    for bad in ["24:00", "7:05", "12:60", "noon", ""]:
        with pytest.raises(ValidationError):
            parse_time_of_day(bad)


def test_occurrences_are_local_times_within_the_horizon():
    # Monday 21:00 Tokyo is still ahead today; next Monday falls past the horizon
    evening = RecurringScheduleRule(days_of_week=[0], time_of_day="21:00")
    assert rule_occurrences(evening, NOW, tz=TOKYO) == [
        datetime(2026, 10, 19, 12, 0, tzinfo=pytz.UTC)
    ]

    # Monday 09:00 Tokyo has passed today; next Monday is inside the horizon
    morning = RecurringScheduleRule(days_of_week=[0], time_of_day="09:00")
    assert rule_occurrences(morning, NOW, tz=TOKYO) == [
        datetime(2026, 10, 26, 0, 0, tzinfo=pytz.UTC)
    ]


def test_occurrences_skip_starts_already_generated():
    rule = RecurringScheduleRule(
        days_of_week=[1, 3],
        time_of_day="20:00",
        last_scheduled_at=datetime(2026, 10, 20, 11, 0, tzinfo=pytz.UTC),
    )

    assert rule_occurrences(rule, NOW, tz=TOKYO) == [
        datetime(2026, 10, 22, 11, 0, tzinfo=pytz.UTC)
    ]


def test_seconds_until_next_local_midnight():
    assert seconds_until_next_run(NOW, tz=TOKYO) == 12 * 3600
    just_before = TOKYO.localize(datetime(2026, 10, 19, 23, 59, 59, 500000)).astimezone(pytz.UTC)
    assert seconds_until_next_run(just_before, tz=TOKYO) == 1.0


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_schedule_generates_the_coming_week(db_session, queue, sink, bus):
    season = await make_season(db_session)
    await db_session.commit()

    schedule = await create_schedule(
        db_session,
        EventCategory.CLASSIC,
        [_rule([1, 3], "20:00")],
        min_players=4,
        max_players=12,
        now=NOW,
    )

    matches = await _schedule_matches(db_session, schedule.id)
    assert [m.scheduled_start for m in matches] == [
        datetime(2026, 10, 20, 11, 0, tzinfo=pytz.UTC),
        datetime(2026, 10, 22, 11, 0, tzinfo=pytz.UTC),
    ]
    assert all(m.season_id == season.id for m in matches)
    assert all(m.status == MatchStatus.WAITING for m in matches)
    assert [(m.min_players, m.max_players) for m in matches] == [(4, 12), (4, 12)]
    assert [m.match_number for m in matches] == [1, 2]
    # Deadline is one match span after the start
    assert matches[0].deadline == matches[0].scheduled_start + timedelta(minutes=60)

    assert schedule.rules[0].last_scheduled_at == datetime(2026, 10, 22, 11, 0, tzinfo=pytz.UTC)
    assert bus.names() == ["match-created", "match-created"]
    assert "announce_created" not in sink.names()
    assert await queue.get_job(db_session, f"start-match-{matches[0].id}") is not None


@pytest.mark.asyncio
async def test_generation_is_idempotent(db_session, queue, sink, bus):
    await make_season(db_session)
    await db_session.commit()
    schedule = await create_schedule(db_session, EventCategory.CLASSIC, [_rule([1], "20:00")], now=NOW)

    again = await generate_matches_for_schedule(db_session, schedule, NOW)

    assert again == []
    assert len(await _schedule_matches(db_session, schedule.id)) == 1


@pytest.mark.asyncio
async def test_generation_without_active_season_creates_nothing(db_session, queue, sink, bus):
    season = await make_season(db_session)
    season.is_active = False
    await db_session.commit()

    schedule = await create_schedule(db_session, EventCategory.CLASSIC, [_rule([1], "20:00")], now=NOW)

    assert await _schedule_matches(db_session, schedule.id) == []
    assert schedule.rules[0].last_scheduled_at is None
    assert bus.names() == []


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_schedule_rejects_bad_rules(db_session, queue, sink, bus):
    with pytest.raises(ValidationError):
        await create_schedule(db_session, EventCategory.CLASSIC, [], now=NOW)
    with pytest.raises(ValidationError, match="between 0 and 6"):
        await create_schedule(db_session, EventCategory.CLASSIC, [_rule([7], "20:00")], now=NOW)
    with pytest.raises(ValidationError, match="HH:MM"):
        await create_schedule(db_session, EventCategory.CLASSIC, [_rule([1], "8pm")], now=NOW)
    with pytest.raises(ValidationError, match="Player bounds"):
        await create_schedule(
            db_session, EventCategory.CLASSIC, [_rule([1], "20:00")], min_players=10, max_players=8, now=NOW
        )


@pytest.mark.asyncio
async def test_rules_on_a_shared_weekday_must_not_overlap(db_session, queue, sink, bus):
    with pytest.raises(ValidationError, match="overlap"):
        await create_schedule(
            db_session,
            EventCategory.CLASSIC,
            [_rule([0], "20:00"), _rule([0, 2], "20:30")],
            now=NOW,
        )

    # Different weekdays never clash
    schedule = await create_schedule(
        db_session,
        EventCategory.CLASSIC,
        [_rule([0], "20:00"), _rule([2], "20:30")],
        now=NOW,
    )
    assert len(schedule.rules) == 2


@pytest.mark.asyncio
async def test_schedule_must_not_overlap_another_enabled_schedule(db_session, queue, sink, bus):
    await make_season(db_session)
    await db_session.commit()
    classic = await create_schedule(db_session, EventCategory.CLASSIC, [_rule([0], "20:00")], now=NOW)

    with pytest.raises(ValidationError, match="CLASSIC"):
        await create_schedule(db_session, EventCategory.GP, [_rule([0], "20:30")], now=NOW)

    # A disabled schedule no longer holds its slot
    await set_schedule_enabled(db_session, classic.id, False, now=NOW)
    gp = await create_schedule(db_session, EventCategory.GP, [_rule([0], "20:30")], now=NOW)
    assert gp.category == EventCategory.GP


@pytest.mark.asyncio
async def test_one_schedule_per_category(db_session, queue, sink, bus):
    await create_schedule(db_session, EventCategory.CLASSIC, [_rule([1], "20:00")], now=NOW)

    with pytest.raises(ConflictError):
        await create_schedule(db_session, EventCategory.CLASSIC, [_rule([4], "20:00")], now=NOW)


# ---------------------------------------------------------------------------
# Management
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_disable_removes_waiting_matches_and_enable_restores_them(db_session, queue, sink, bus):
    await make_season(db_session)
    await db_session.commit()
    schedule = await create_schedule(db_session, EventCategory.CLASSIC, [_rule([1, 3], "20:00")], now=NOW)
    first_id = (await _schedule_matches(db_session, schedule.id))[0].id

    schedule = await set_schedule_enabled(db_session, schedule.id, False, now=NOW)

    assert schedule.is_enabled is False
    assert await _schedule_matches(db_session, schedule.id) == []
    assert schedule.rules[0].last_scheduled_at is None
    assert await queue.get_job(db_session, f"start-match-{first_id}") is None

    schedule = await set_schedule_enabled(db_session, schedule.id, True, now=NOW)

    assert schedule.is_enabled is True
    assert len(await _schedule_matches(db_session, schedule.id)) == 2


@pytest.mark.asyncio
async def test_update_with_new_rules_regenerates_waiting_matches(db_session, queue, sink, bus):
    await make_season(db_session)
    await db_session.commit()
    schedule = await create_schedule(db_session, EventCategory.CLASSIC, [_rule([1, 3], "20:00")], now=NOW)

    schedule = await update_schedule(
        db_session, schedule.id, rules=[_rule([5], "21:00")], name="Saturday night", now=NOW
    )

    assert schedule.name == "Saturday night"
    assert [(r.days_of_week, r.time_of_day) for r in schedule.rules] == [([5], "21:00")]
    matches = await _schedule_matches(db_session, schedule.id)
    assert [m.scheduled_start for m in matches] == [datetime(2026, 10, 24, 12, 0, tzinfo=pytz.UTC)]
    assert matches[0].match_number == 1


@pytest.mark.asyncio
async def test_update_without_rules_only_fills_in(db_session, queue, sink, bus):
    await make_season(db_session)
    await db_session.commit()
    schedule = await create_schedule(db_session, EventCategory.CLASSIC, [_rule([1], "20:00")], now=NOW)
    original_ids = [m.id for m in await _schedule_matches(db_session, schedule.id)]

    schedule = await update_schedule(db_session, schedule.id, max_players=16, now=NOW + timedelta(days=2))

    assert schedule.max_players == 16
    matches = await _schedule_matches(db_session, schedule.id)
    assert matches[0].id == original_ids[0]
    # The horizon moved past next Tuesday, so one more match was added
    assert [m.scheduled_start for m in matches] == [
        datetime(2026, 10, 20, 11, 0, tzinfo=pytz.UTC),
        datetime(2026, 10, 27, 11, 0, tzinfo=pytz.UTC),
    ]


@pytest.mark.asyncio
async def test_delete_schedule_keeps_started_matches(db_session, queue, sink, bus):
    await make_season(db_session)
    await db_session.commit()
    schedule = await create_schedule(db_session, EventCategory.CLASSIC, [_rule([1, 3], "20:00")], now=NOW)
    started_id, waiting_id = [m.id for m in await _schedule_matches(db_session, schedule.id)]
    schedule_id = schedule.id
    await db_session.execute(
        update(Match).where(Match.id == started_id).values(status=MatchStatus.IN_PROGRESS)
    )
    await db_session.commit()

    await delete_schedule(db_session, schedule_id)

    with pytest.raises(NotFoundError):
        await get_schedule(db_session, schedule_id)
    assert await db_session.get(Match, waiting_id) is None
    started = (
        await db_session.execute(
            select(Match).where(Match.id == started_id).execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert started.recurring_schedule_id is None
    assert started.status == MatchStatus.IN_PROGRESS


# ---------------------------------------------------------------------------
# Replenishment
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_replenish_all_tops_up_enabled_schedules_only(db_session, queue, sink, bus):
    await make_season(db_session, EventCategory.CLASSIC)
    await make_season(db_session, EventCategory.GP)
    await db_session.commit()
    classic = await create_schedule(db_session, EventCategory.CLASSIC, [_rule([1], "20:00")], now=NOW)
    gp = await create_schedule(db_session, EventCategory.GP, [_rule([2], "10:00")], now=NOW)
    await set_schedule_enabled(db_session, gp.id, False, now=NOW)
    await db_session.commit()

    created = await replenish_all(now=NOW + timedelta(days=2))

    assert list(created) == [classic.id]
    assert len(created[classic.id]) == 1
    assert await _schedule_matches(db_session, gp.id) == []


@pytest.mark.asyncio
async def test_replenish_all_continues_past_a_failing_schedule(db_session, queue, sink, bus, monkeypatch):
    await make_season(db_session, EventCategory.CLASSIC)
    await make_season(db_session, EventCategory.GP)
    await db_session.commit()
    classic = await create_schedule(db_session, EventCategory.CLASSIC, [_rule([1], "20:00")], now=NOW)
    gp = await create_schedule(db_session, EventCategory.GP, [_rule([2], "10:00")], now=NOW)
    await db_session.commit()

    original = recurring_schedule_service.generate_matches_for_schedule

    async def classic_fails(session, schedule, now=None, **kwargs):
        if schedule.category == EventCategory.CLASSIC:
            raise RuntimeError("lost connection")
        return await original(session, schedule, now, **kwargs)

    monkeypatch.setattr(recurring_schedule_service, "generate_matches_for_schedule", classic_fails)

    created = await replenish_all(now=NOW + timedelta(days=2))

    assert classic.id not in created
    assert len(created[gp.id]) == 1


class FakeReplenish:
    def __init__(self, error=None):
        self.calls = 0
        self.error = error

    async def __call__(self, now=None):
        self.calls += 1
        if self.error:
            raise self.error
        return {}


async def _run_one_pass(monkeypatch, replenish):
    monkeypatch.setattr(recurring_schedule_service, "replenish_all", replenish)
    service = ScheduleReplenishmentService()
    service.start()
    for _ in range(100):
        if replenish.calls:
            break
        await asyncio.sleep(0.01)
    service.stop()
    return service


@pytest.mark.asyncio
async def test_worker_replenishes_immediately_on_start(monkeypatch):
    replenish = FakeReplenish()

    await _run_one_pass(monkeypatch, replenish)

    assert replenish.calls == 1


@pytest.mark.asyncio
async def test_worker_survives_a_failing_pass(monkeypatch):
    replenish = FakeReplenish(error=RuntimeError("database unavailable"))

    service = await _run_one_pass(monkeypatch, replenish)

    assert replenish.calls == 1
    assert service._stop_event.is_set()


def test_global_instance():
    assert get_replenishment_service() is get_replenishment_service()
