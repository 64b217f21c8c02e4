"""
Tests for the recovery pass: ghost job pruning and overdue start requeue.
"""

import random
from datetime import timedelta

import pytest

from raceleague.database.models import MatchStatus, ScheduledJob, JobStatus
from raceleague.models.schemas import (
    JobType,
    StartMatchPayload,
    ReminderMatchPayload,
    RevealPasscodePayload,
    DeleteDiscordChannelPayload,
)
from raceleague.services import match_repository as repo
from raceleague.services.match_orchestrator import MatchOrchestrator
from raceleague.services.recovery_service import RecoveryService
from raceleague.tests.factories import make_season, make_users, make_match
from raceleague.utils.datetime_utils import utcnow


@pytest.fixture
def recovery(queue):
    return RecoveryService(queue=queue)


@pytest.mark.asyncio
async def test_overdue_waiting_match_is_requeued_once(db_session, queue, recovery):
    season = await make_season(db_session)
    now = utcnow()
    overdue = await make_match(db_session, season, scheduled_start=now - timedelta(minutes=10), match_number=1)
    await make_match(db_session, season, scheduled_start=now + timedelta(hours=1), match_number=2)
    await db_session.commit()

    report = await recovery.recover(now)

    assert report.matches_requeued == [overdue.id]
    assert report.ghost_jobs_removed == []
    job = await queue.get_job(db_session, f"start-match-{overdue.id}")
    assert job.status == JobStatus.PENDING
    assert job.run_at == now

    second = await recovery.recover(now)
    assert second.matches_requeued == []
    assert [j.job_id for j in await queue.list_delayed(db_session)] == [f"start-match-{overdue.id}"]


@pytest.mark.asyncio
async def test_overdue_match_with_pending_start_is_left_alone(db_session, queue, recovery):
    season = await make_season(db_session)
    now = utcnow()
    match = await make_match(db_session, season, scheduled_start=now - timedelta(seconds=5), match_number=1)
    await queue.enqueue(db_session, JobType.START_MATCH, StartMatchPayload(match_id=match.id), now=now)
    await db_session.commit()

    report = await recovery.recover(now)

    assert report.matches_requeued == []


@pytest.mark.asyncio
async def test_ghost_jobs_are_pruned(db_session, queue, recovery):
    season = await make_season(db_session)
    cancelled = await make_match(db_session, season, status=MatchStatus.CANCELLED)
    waiting = await make_match(db_session, season, match_number=1)
    finished = await make_match(db_session, season, status=MatchStatus.COMPLETED, match_number=2)
    live = await make_match(db_session, season, status=MatchStatus.IN_PROGRESS, match_number=3)
    finished_game = await repo.create_game(db_session, finished.id)
    live_game = await repo.create_game(db_session, live.id)

    delay = 3600
    await queue.enqueue(db_session, JobType.START_MATCH, StartMatchPayload(match_id=cancelled.id), delay)
    await queue.enqueue(db_session, JobType.REMINDER_MATCH, ReminderMatchPayload(match_id=cancelled.id), delay)
    await queue.enqueue(db_session, JobType.START_MATCH, StartMatchPayload(match_id=waiting.id), delay)
    await queue.enqueue(db_session, JobType.START_MATCH, StartMatchPayload(match_id=9999), delay)
    await queue.enqueue(db_session, JobType.REVEAL_PASSCODE, RevealPasscodePayload(game_id=finished_game.id), delay)
    await queue.enqueue(db_session, JobType.REVEAL_PASSCODE, RevealPasscodePayload(game_id=live_game.id), delay)
    await queue.enqueue(
        db_session,
        JobType.DELETE_DISCORD_CHANNEL,
        DeleteDiscordChannelPayload(game_id=finished_game.id, channel_id="500000000000000001"),
        delay,
    )
    db_session.add(
        ScheduledJob(
            job_id="start-match-broken",
            job_type=JobType.START_MATCH.value,
            payload={},
            run_at=utcnow() + timedelta(hours=1),
            status=JobStatus.PENDING,
        )
    )
    await db_session.commit()

    report = await recovery.recover()

    assert sorted(report.ghost_jobs_removed) == sorted([
        f"start-match-{cancelled.id}",
        f"reminder-match-{cancelled.id}",
        "start-match-9999",
        f"reveal-passcode-{finished_game.id}",
        "start-match-broken",
    ])
    remaining = {j.job_id for j in await queue.list_delayed(db_session)}
    assert remaining == {
        f"start-match-{waiting.id}",
        f"reveal-passcode-{live_game.id}",
        f"delete-discord-channel-{finished_game.id}",
    }


@pytest.mark.asyncio
async def test_requeued_start_runs_the_match(db_session, queue, recovery, sink, bus):
    """A match whose start job was lost is started by the next worker pass."""
    season = await make_season(db_session)
    users = await make_users(db_session, 3)
    match = await make_match(
        db_session, season, users=users, scheduled_start=utcnow() - timedelta(minutes=3), match_number=1
    )
    await db_session.commit()
    MatchOrchestrator(rng=random.Random(11)).register_job_handlers(queue)

    await recovery.recover()
    assert await queue.process_due_jobs() == 1

    match = await repo.get_match(db_session, match.id)
    assert match.status == MatchStatus.IN_PROGRESS
    assert bus.names() == ["match-started"]
