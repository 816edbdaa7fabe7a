"""Background scheduler for recurring crawls of customer sources."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from .errors import CrawlerError
from .job_queue import JobQueue
from .runs import RunManager

if TYPE_CHECKING:
    from .config import Settings
    from .db import InventoryDatabase

logger = logging.getLogger(__name__)


class CrawlScheduler:
    """Creates scheduled runs for due sources as a background task."""

    def __init__(self, db: InventoryDatabase, settings: Settings | None = None, check_interval: int = 60):
        """
        Initialize the scheduler.

        Args:
            db: Database instance for schedule management
            settings: Runtime settings (dedupe window)
            check_interval: Seconds between checks for due schedules (default: 60)
        """
        self.db = db
        self.queue = JobQueue(db)
        self.runs = RunManager(db, self.queue, settings)
        self.check_interval = check_interval
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        """Check if the scheduler is currently running."""
        return self._running

    def start(self):
        """Start the scheduler background task."""
        if self._running:
            logger.warning("Scheduler is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Scheduler started")

    def stop(self):
        """Stop the scheduler background task."""
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None
        logger.info("Scheduler stopped")

    async def _run_loop(self):
        """Main scheduler loop - checks for due schedules and creates runs."""
        while self._running:
            try:
                self.run_due_schedules()
            except Exception as e:
                logger.error(f"Scheduler error: {e}")

            await asyncio.sleep(self.check_interval)

    def run_due_schedules(self, now: datetime | None = None) -> list[int]:
        """Create runs for every due schedule. Returns the run ids (new or deduplicated)."""
        now = now or datetime.now(UTC)
        run_ids = []

        for schedule in self.db.get_due_schedules(now.isoformat()):
            customer_id = schedule["customer_id"]
            source_id = schedule["source_id"]
            try:
                result = self.runs.create_run(customer_id, source_id, trigger="scheduled")
            except CrawlerError as e:
                logger.warning(f"Scheduled run for source {source_id} skipped: {e}")
                continue

            if result.deduplicated:
                logger.debug(f"Source {source_id} already has an active run {result.run_id}")
            else:
                logger.info(f"Scheduled run {result.run_id} created for source {source_id}")
            run_ids.append(result.run_id)

            next_run = now + timedelta(minutes=schedule["interval_minutes"])
            self.db.mark_schedule_run(schedule["id"], now.isoformat(), next_run.isoformat())

        return run_ids

    def get_status(self) -> dict:
        """Get current scheduler status."""
        queue_status = self.queue.get_queue_status()
        return {
            "running": self._running,
            "pending_jobs": queue_status["pending"],
            "running_jobs": queue_status["running"],
            "check_interval": self.check_interval,
        }


# Global scheduler instance (set when app starts)
_scheduler: CrawlScheduler | None = None


def get_scheduler() -> CrawlScheduler | None:
    """Get the global scheduler instance."""
    return _scheduler


def init_scheduler(db: InventoryDatabase, settings: Settings | None = None, check_interval: int = 60) -> CrawlScheduler:
    """Initialize and return the global scheduler instance."""
    global _scheduler
    _scheduler = CrawlScheduler(db, settings, check_interval)
    return _scheduler
