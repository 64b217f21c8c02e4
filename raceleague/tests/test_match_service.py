"""
Tests for match management: creation, scheduling, roster, cancel, delete and renumbering.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from raceleague.database import db
from raceleague.database.models import Match, MatchStatus
from raceleague.services import match_repository as repo
from raceleague.services.match_service import (
    create_match,
    join_match,
    leave_match,
    cancel_match,
    delete_match,
    reassign_match_numbers,
    CANCEL_REASON_MODERATOR,
)
from raceleague.tests.factories import make_season, make_users, make_match
from raceleague.utils.datetime_utils import utcnow
from raceleague.utils.exceptions import (
    ValidationError,
    ConflictError,
    NotFoundError,
    PreconditionError,
)


async def _numbers(db_session, season_id):
    matches = await repo.find_season_matches(db_session, season_id)
    return {m.id: m.match_number for m in matches}


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_match_schedules_start_and_reminder(db_session, queue, sink, bus):
    season = await make_season(db_session)
    await db_session.commit()
    now = utcnow()
    start = now + timedelta(hours=2)

    match = await create_match(db_session, season.id, start, min_players=2, max_players=12, now=now)

    assert match.status == MatchStatus.WAITING
    assert match.match_number == 1
    assert len(match.games) == 1

    start_job = await queue.get_job(db_session, f"start-match-{match.id}")
    reminder_job = await queue.get_job(db_session, f"reminder-match-{match.id}")
    assert start_job.run_at == start
    assert reminder_job.run_at == start - timedelta(minutes=5)

    assert bus.names() == ["match-created"]
    assert bus.payloads("match-created")[0]["match_number"] == 1
    assert sink.names() == ["announce_created"]


@pytest.mark.asyncio
async def test_create_match_without_reminder_when_start_is_close(db_session, queue, sink, bus):
    season = await make_season(db_session)
    await db_session.commit()
    now = utcnow()

    match = await create_match(db_session, season.id, now + timedelta(minutes=30), 2, 12, now=now)

    assert await queue.get_job(db_session, f"start-match-{match.id}") is not None
    assert await queue.get_job(db_session, f"reminder-match-{match.id}") is None


@pytest.mark.asyncio
async def test_create_match_validation(db_session, queue, sink, bus):
    season = await make_season(db_session)
    await db_session.commit()
    now = utcnow()
    start = now + timedelta(hours=1)

    with pytest.raises(ValidationError):
        await create_match(db_session, season.id, now - timedelta(minutes=1), 2, 12, now=now)
    with pytest.raises(ValidationError):
        await create_match(db_session, season.id, start, 2, 12, deadline=start, now=now)
    with pytest.raises(ValidationError):
        await create_match(db_session, season.id, start, 1, 12, now=now)
    with pytest.raises(ValidationError):
        await create_match(db_session, season.id, start, 8, 4, now=now)
    with pytest.raises(NotFoundError):
        await create_match(db_session, 999, start, 2, 12, now=now)


@pytest.mark.asyncio
async def test_numbers_follow_scheduled_start(db_session, queue, sink, bus):
    season = await make_season(db_session)
    await db_session.commit()
    now = utcnow()

    late = await create_match(db_session, season.id, now + timedelta(hours=5), 2, 12, now=now)
    early = await create_match(db_session, season.id, now + timedelta(hours=1), 2, 12, now=now)

    assert await _numbers(db_session, season.id) == {early.id: 1, late.id: 2}


# ---------------------------------------------------------------------------
# Renumbering
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_renumbering_keeps_locked_numbers(db_session):
    season = await make_season(db_session)
    now = utcnow()
    started = await make_match(
        db_session, season, status=MatchStatus.IN_PROGRESS, scheduled_start=now - timedelta(hours=1), match_number=1
    )
    b = await make_match(db_session, season, scheduled_start=now + timedelta(hours=3))
    a = await make_match(db_session, season, scheduled_start=now + timedelta(hours=2))
    c = await make_match(db_session, season, scheduled_start=now + timedelta(hours=4))
    await reassign_match_numbers(db_session, season.id)
    await db_session.commit()

    assert await _numbers(db_session, season.id) == {started.id: 1, a.id: 2, b.id: 3, c.id: 4}


@pytest.mark.asyncio
async def test_cancel_clears_number_and_closes_the_gap(db_session, queue, sink, bus):
    season = await make_season(db_session)
    await db_session.commit()
    now = utcnow()
    first = await create_match(db_session, season.id, now + timedelta(hours=1), 2, 12, now=now)
    second = await create_match(db_session, season.id, now + timedelta(hours=2), 2, 12, now=now)
    third = await create_match(db_session, season.id, now + timedelta(hours=3), 2, 12, now=now)

    cancelled = await cancel_match(db_session, second.id, now=now)

    assert cancelled.status == MatchStatus.CANCELLED
    assert cancelled.match_number is None
    assert cancelled.cancel_reason == CANCEL_REASON_MODERATOR
    assert await _numbers(db_session, season.id) == {first.id: 1, third.id: 2}
    assert await queue.get_job(db_session, f"start-match-{second.id}") is None
    assert await queue.get_job(db_session, f"reminder-match-{second.id}") is None
    assert bus.payloads("match-cancelled")[0]["reason"] == CANCEL_REASON_MODERATOR
    assert "announce_cancelled" in sink.names()


@pytest.mark.asyncio
async def test_cancel_finished_match_is_rejected(db_session, queue, sink, bus):
    season = await make_season(db_session)
    match = await make_match(db_session, season, status=MatchStatus.COMPLETED, match_number=1)
    await db_session.commit()

    with pytest.raises(PreconditionError):
        await cancel_match(db_session, match.id)


# ---------------------------------------------------------------------------
# Roster
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_join_and_leave_track_player_count(db_session, queue, sink, bus):
    season = await make_season(db_session)
    users = await make_users(db_session, 2)
    await db_session.commit()
    match = await create_match(db_session, season.id, utcnow() + timedelta(hours=1), 2, 12)

    await join_match(db_session, match.id, users[0].id)
    await join_match(db_session, match.id, users[1].id)
    match = await repo.get_match(db_session, match.id)
    assert match.current_players == 2
    assert {p.user_id for p in match.participants} == {users[0].id, users[1].id}

    await leave_match(db_session, match.id, users[0].id)
    match = await repo.get_match(db_session, match.id)
    assert match.current_players == 1
    assert [p.user_id for p in match.participants] == [users[1].id]
    assert bus.names().count("match-updated") == 3


@pytest.mark.asyncio
async def test_join_twice_conflicts(db_session, queue, sink, bus):
    season = await make_season(db_session)
    users = await make_users(db_session, 1)
    await db_session.commit()
    match = await create_match(db_session, season.id, utcnow() + timedelta(hours=1), 2, 12)

    await join_match(db_session, match.id, users[0].id)
    with pytest.raises(ConflictError):
        await join_match(db_session, match.id, users[0].id)


@pytest.mark.asyncio
async def test_join_full_or_started_match_is_rejected(db_session, bus):
    season = await make_season(db_session)
    users = await make_users(db_session, 3)
    full = await make_match(db_session, season, users=users[:2], max_players=2)
    started = await make_match(db_session, season, status=MatchStatus.IN_PROGRESS, match_number=5)
    await db_session.commit()

    with pytest.raises(PreconditionError):
        await join_match(db_session, full.id, users[2].id)
    with pytest.raises(PreconditionError):
        await join_match(db_session, started.id, users[2].id)
    with pytest.raises(NotFoundError):
        await join_match(db_session, full.id, 999)


@pytest.mark.asyncio
async def test_join_does_not_overfill_when_last_seat_is_taken_concurrently(db_session, monkeypatch, bus):
    season = await make_season(db_session)
    users = await make_users(db_session, 2)
    match = await make_match(db_session, season, users=users[:1], max_players=2)
    await db_session.commit()
    match_id = match.id
    member_id, joiner_id = users[0].id, users[1].id
    run_in_transaction = repo.with_transaction

    async def seat_taken_first(session, fn):
        # Another join commits between the capacity check and this write
        async with db.AsyncSessionLocal() as other:
            await other.execute(update(Match).where(Match.id == match_id).values(current_players=2))
            await other.commit()
        return await run_in_transaction(session, fn)

    monkeypatch.setattr(repo, "with_transaction", seat_taken_first)

    with pytest.raises(PreconditionError, match="full"):
        await join_match(db_session, match_id, joiner_id)

    match = await repo.get_match(db_session, match_id)
    assert match.current_players == 2
    assert [p.user_id for p in match.participants] == [member_id]
    assert bus.names() == []


@pytest.mark.asyncio
async def test_leave_requires_membership(db_session, bus):
    season = await make_season(db_session)
    users = await make_users(db_session, 2)
    match = await make_match(db_session, season, users=users[:1])
    await db_session.commit()

    with pytest.raises(NotFoundError):
        await leave_match(db_session, match.id, users[1].id)


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_delete_waiting_match_removes_jobs_and_renumbers(db_session, queue, sink, bus):
    season = await make_season(db_session)
    users = await make_users(db_session, 1)
    await db_session.commit()
    now = utcnow()
    first = await create_match(db_session, season.id, now + timedelta(hours=2), 2, 12, now=now)
    second = await create_match(db_session, season.id, now + timedelta(hours=3), 2, 12, now=now)
    await join_match(db_session, first.id, users[0].id)

    await delete_match(db_session, first.id)

    assert await repo.find_match(db_session, first.id) is None
    assert await queue.get_job(db_session, f"start-match-{first.id}") is None
    assert await queue.get_job(db_session, f"reminder-match-{first.id}") is None
    assert await _numbers(db_session, season.id) == {second.id: 1}
    assert bus.events[-1] == ("match-updated", {"match_id": first.id, "season_id": season.id, "deleted": True})


@pytest.mark.asyncio
async def test_delete_started_match_is_rejected(db_session, bus):
    season = await make_season(db_session)
    match = await make_match(db_session, season, status=MatchStatus.IN_PROGRESS, match_number=1)
    await db_session.commit()

    with pytest.raises(PreconditionError):
        await delete_match(db_session, match.id)
