"""
Recovery service: reconciles the job queue with persisted match state.

Runs once at startup and then every 30 seconds. Each pass:
- removes pending jobs whose match (or game) no longer needs them
- requeues WAITING matches whose start time passed without a start job
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from raceleague.database import db
from raceleague.database.models import Match, MatchStatus, Game, JobStatus, ScheduledJob
from raceleague.models.schemas import (
    JobType,
    RecoveryReport,
    StartMatchPayload,
    parse_job_payload,
)
from raceleague.services import match_repository as repo
from raceleague.services.job_queue import JobQueue, get_job_queue
from raceleague.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

# How often the worker reconciles (seconds)
POLL_INTERVAL_SECONDS = 30

# Jobs that only make sense while their match is still WAITING
WAITING_MATCH_JOBS = (JobType.START_MATCH, JobType.REMINDER_MATCH)


class RecoveryService:
    """Background service that prunes ghost jobs and requeues missed starts."""

    def __init__(self, queue: Optional[JobQueue] = None):
        self._queue = queue
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def queue(self) -> JobQueue:
        return self._queue or get_job_queue()

    def start(self) -> None:
        """Start the background recovery worker (first pass runs immediately)."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._poll_loop())
            logger.info("Recovery worker started")

    def stop(self) -> None:
        """Stop the background recovery worker."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            logger.info("Recovery worker stopped")

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.recover()
            except Exception as e:
                logger.error(f"Error in recovery worker: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=POLL_INTERVAL_SECONDS)
                break
            except asyncio.TimeoutError:
                pass

    async def recover(self, now: Optional[datetime] = None) -> RecoveryReport:
        """
        One reconciliation pass. Safe to run repeatedly: a second pass right
        after the first finds nothing to do.
        """
        now = now or utcnow()
        report = RecoveryReport()
        queue = self.queue

        async with db.AsyncSessionLocal() as session:
            for job in await queue.list_delayed(session):
                if await self._is_ghost(session, job):
                    if await queue.cancel(session, job.job_id):
                        report.ghost_jobs_removed.append(job.job_id)

            for match in await repo.find_overdue_waiting_matches(session, now):
                job_id = JobType.START_MATCH.job_id(match.id)
                existing = await queue.get_job(session, job_id)
                if existing is not None and existing.status in (JobStatus.PENDING, JobStatus.RUNNING):
                    continue
                await queue.enqueue(
                    session,
                    JobType.START_MATCH,
                    StartMatchPayload(match_id=match.id),
                    delay_seconds=0,
                    job_id=job_id,
                    now=now,
                )
                report.matches_requeued.append(match.id)

            await session.commit()

        if report.ghost_jobs_removed:
            logger.info(f"Removed {len(report.ghost_jobs_removed)} ghost job(s): {report.ghost_jobs_removed}")
        if report.matches_requeued:
            logger.info(f"Requeued start for overdue match(es): {report.matches_requeued}")
        return report

    async def _is_ghost(self, session: AsyncSession, job: ScheduledJob) -> bool:
        """True when a pending job targets a match/game that no longer needs it."""
        try:
            job_type = JobType(job.job_type)
            payload = parse_job_payload(job_type, job.payload or {})
        except ValueError as e:
            logger.warning(f"Job {job.job_id} has an unreadable payload, removing: {e}")
            return True

        if job_type in WAITING_MATCH_JOBS:
            match = await session.get(Match, payload.match_id, populate_existing=True)
            return match is None or match.status != MatchStatus.WAITING

        if job_type == JobType.REVEAL_PASSCODE:
            game = await session.get(Game, payload.game_id, populate_existing=True)
            if game is None:
                return True
            match = await session.get(Match, game.match_id, populate_existing=True)
            return match is None or match.status != MatchStatus.IN_PROGRESS

        # Channel cleanup runs regardless of match state
        return False


# Global singleton
_recovery_service = RecoveryService()


def get_recovery_service() -> RecoveryService:
    """Get the global recovery service instance."""
    return _recovery_service
