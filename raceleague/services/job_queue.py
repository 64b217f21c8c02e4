"""
Delayed job queue backed by the scheduled_jobs table.

Handles the match lifecycle jobs (start, reminder, passcode reveal, channel
cleanup) with a database-backed queue that:
- Is idempotent by job id (enqueueing an already pending id is a no-op)
- Persists across server restarts (RUNNING rows left by a crash are requeued)
- Retries failed handlers with exponential backoff

Queue writes (enqueue, cancel) only flush so they commit atomically with the
caller's own changes.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, List, Callable, Awaitable

from pydantic import BaseModel
from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from raceleague.database import db
from raceleague.database.models import ScheduledJob, JobStatus
from raceleague.models.schemas import JobType, parse_job_payload
from raceleague.utils.constants import JOB_MAX_ATTEMPTS, JOB_BACKOFF_BASE_SECONDS
from raceleague.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

# How often the worker looks for due jobs (seconds)
POLL_INTERVAL_SECONDS = 1

JobHandler = Callable[[BaseModel], Awaitable[None]]


def backoff_seconds(attempt: int) -> int:
    """Delay before retrying after the given (1-based) failed attempt: 2s, 4s, 8s..."""
    return JOB_BACKOFF_BASE_SECONDS * (2 ** (attempt - 1))


class JobQueue:
    """Database-backed delayed job queue."""

    def __init__(self):
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._handlers: Dict[JobType, JobHandler] = {}

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        session: AsyncSession,
        job_type: JobType,
        payload: BaseModel,
        delay_seconds: float = 0,
        job_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ScheduledJob:
        """
        Schedule a job to run after delay_seconds.

        If a PENDING or RUNNING job with the same id exists it is returned
        unchanged. A COMPLETED or FAILED job with the same id is reset and
        rescheduled.

        Args:
            session: Database session (flushed, not committed)
            job_type: Job type, selects the handler
            payload: Job payload model for this job type
            delay_seconds: Delay from now; negative values run immediately
            job_id: Idempotency key; defaults to "{job_type}-{target id}"

        Returns:
            The scheduled job row
        """
        now = now or utcnow()
        run_at = now + timedelta(seconds=max(0, delay_seconds))
        if job_id is None:
            job_id = _default_job_id(job_type, payload)
        data = payload.model_dump(by_alias=True)

        existing = await session.get(ScheduledJob, job_id, populate_existing=True)
        if existing is not None:
            if existing.status in (JobStatus.PENDING, JobStatus.RUNNING):
                logger.debug(f"Job {job_id} already {existing.status.value}, not re-enqueued")
                return existing
            existing.job_type = job_type.value
            existing.payload = data
            existing.run_at = run_at
            existing.status = JobStatus.PENDING
            existing.attempts = 0
            existing.last_error = None
            existing.started_at = None
            existing.completed_at = None
            await session.flush()
            logger.info(f"Re-enqueued job {job_id} to run at {run_at.isoformat()}")
            return existing

        job = ScheduledJob(
            job_id=job_id,
            job_type=job_type.value,
            payload=data,
            run_at=run_at,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=JOB_MAX_ATTEMPTS,
        )
        session.add(job)
        await session.flush()
        logger.info(f"Enqueued job {job_id} to run at {run_at.isoformat()}")
        return job

    async def cancel(self, session: AsyncSession, job_id: str) -> bool:
        """
        Remove a pending job.

        A job that is already running cannot be recalled; its handler re-checks
        the match status instead. Returns True if a pending job was removed.
        """
        job = await session.get(ScheduledJob, job_id, populate_existing=True)
        if job is None or job.status != JobStatus.PENDING:
            return False
        await session.delete(job)
        await session.flush()
        logger.info(f"Cancelled job {job_id}")
        return True

    async def get_job(self, session: AsyncSession, job_id: str) -> Optional[ScheduledJob]:
        return await session.get(ScheduledJob, job_id, populate_existing=True)

    async def list_delayed(self, session: AsyncSession) -> List[ScheduledJob]:
        """All jobs still waiting to run, soonest first."""
        result = await session.execute(
            select(ScheduledJob)
            .where(ScheduledJob.status == JobStatus.PENDING)
            .order_by(ScheduledJob.run_at.asc())
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def register_handler(self, job_type: JobType, handler: JobHandler) -> None:
        """
        Register the coroutine that processes one job type.

        Raises:
            TypeError: If handler is not callable
        """
        if not callable(handler):
            raise TypeError(f"Handler for {job_type.value} must be callable")
        if job_type in self._handlers:
            logger.warning(f"Re-registering handler for {job_type.value} (previous handler replaced)")
        self._handlers[job_type] = handler

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def requeue_stale_running(self) -> int:
        """Return RUNNING jobs to PENDING; called at startup after a crash."""
        async with db.AsyncSessionLocal() as session:
            result = await session.execute(
                update(ScheduledJob)
                .where(ScheduledJob.status == JobStatus.RUNNING)
                .values(status=JobStatus.PENDING, started_at=None)
            )
            await session.commit()
            count = result.rowcount or 0
        if count:
            logger.info(f"Requeued {count} job(s) left running by a previous process")
        return count

    async def process_due_jobs(self, now: Optional[datetime] = None) -> int:
        """
        Run every job whose run_at has passed.

        Returns:
            Number of jobs executed (successfully or not)
        """
        now = now or utcnow()
        async with db.AsyncSessionLocal() as session:
            result = await session.execute(
                select(ScheduledJob.job_id)
                .where(and_(ScheduledJob.status == JobStatus.PENDING, ScheduledJob.run_at <= now))
                .order_by(ScheduledJob.run_at.asc())
            )
            due_ids = [row[0] for row in result.all()]

        executed = 0
        for job_id in due_ids:
            if await self._claim(job_id, now):
                await self._run_job(job_id, now)
                executed += 1
        return executed

    async def _claim(self, job_id: str, now: datetime) -> bool:
        """Mark a pending job RUNNING; False if another worker got it first."""
        async with db.AsyncSessionLocal() as session:
            result = await session.execute(
                update(ScheduledJob)
                .where(and_(ScheduledJob.job_id == job_id, ScheduledJob.status == JobStatus.PENDING))
                .values(
                    status=JobStatus.RUNNING,
                    started_at=now,
                    attempts=ScheduledJob.attempts + 1,
                )
            )
            await session.commit()
            return (result.rowcount or 0) == 1

    async def _run_job(self, job_id: str, now: datetime) -> None:
        """Dispatch a claimed job to its handler and record the outcome."""
        async with db.AsyncSessionLocal() as session:
            job = await session.get(ScheduledJob, job_id)
            if job is None:
                return
            job_type_value = job.job_type
            payload_data = dict(job.payload or {})

        error: Optional[str] = None
        try:
            job_type = JobType(job_type_value)
            handler = self._handlers.get(job_type)
            if handler is None:
                raise RuntimeError(
                    f"No handler registered for {job_type.value}. "
                    "Call register_handler() before starting the queue worker."
                )
            payload = parse_job_payload(job_type, payload_data)
            await handler(payload)
        except Exception as e:
            logger.error(f"Job {job_id} failed: {e}", exc_info=True)
            error = str(e) or e.__class__.__name__

        async with db.AsyncSessionLocal() as session:
            job = await session.get(ScheduledJob, job_id)
            if job is None:
                return
            if error is None:
                job.status = JobStatus.COMPLETED
                job.completed_at = utcnow()
                job.last_error = None
            elif job.attempts < job.max_attempts:
                delay = backoff_seconds(job.attempts)
                job.status = JobStatus.PENDING
                job.run_at = now + timedelta(seconds=delay)
                job.last_error = error
                logger.info(f"Job {job_id} will retry in {delay}s (attempt {job.attempts}/{job.max_attempts})")
            else:
                job.status = JobStatus.FAILED
                job.completed_at = utcnow()
                job.last_error = error
                logger.error(f"Job {job_id} failed permanently after {job.attempts} attempts")
            await session.commit()

    async def _process_queue_worker(self) -> None:
        """Background worker that runs due jobs until stopped."""
        while not self._stop_event.is_set():
            try:
                await self.process_due_jobs()
            except Exception as e:
                logger.error(f"Error in job queue worker: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=POLL_INTERVAL_SECONDS)
                break
            except asyncio.TimeoutError:
                pass

    async def _startup(self) -> None:
        try:
            await self.requeue_stale_running()
        except Exception as e:
            logger.error(f"Failed to requeue stale running jobs: {e}", exc_info=True)
        await self._process_queue_worker()

    def start_background_worker(self) -> None:
        """Start the background worker."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._startup())
            logger.info("Job queue worker started")

    def stop_background_worker(self) -> None:
        """Stop the background worker."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            logger.info("Job queue worker stopped")


def _default_job_id(job_type: JobType, payload: BaseModel) -> str:
    target = getattr(payload, "match_id", None)
    if target is None:
        target = getattr(payload, "game_id")
    return job_type.job_id(target)


# Global queue instance
_job_queue = JobQueue()


def get_job_queue() -> JobQueue:
    """Get the global job queue instance."""
    return _job_queue
