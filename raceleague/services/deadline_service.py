"""
Deadline service: moves IN_PROGRESS matches to COMPLETED once their
deadline has passed. Polls every minute.
"""

import asyncio
import logging
from typing import Optional

from raceleague.services.match_orchestrator import get_match_orchestrator

logger = logging.getLogger(__name__)

# How often the worker sweeps for overdue matches (seconds)
POLL_INTERVAL_SECONDS = 60


class DeadlineService:
    """Background service running the match deadline sweep."""

    def __init__(self):
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def start(self) -> None:
        """Start the background deadline worker."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._poll_loop())
            logger.info("Deadline worker started")

    def stop(self) -> None:
        """Stop the background deadline worker."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            logger.info("Deadline worker stopped")

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                completed = await get_match_orchestrator().on_deadline()
                if completed:
                    logger.info(f"Completed {len(completed)} match(es) at deadline: {completed}")
            except Exception as e:
                logger.error(f"Error in deadline worker: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=POLL_INTERVAL_SECONDS)
                break
            except asyncio.TimeoutError:
                pass


# Global singleton
_deadline_service = DeadlineService()


def get_deadline_service() -> DeadlineService:
    """Get the global deadline service instance."""
    return _deadline_service
