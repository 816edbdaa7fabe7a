"""Worker process for executing crawl jobs from the queue."""

from __future__ import annotations

import asyncio
import logging
import signal
import uuid
from time import perf_counter

from .config import Settings, setup_logging
from .db import InventoryDatabase
from .fetcher import Fetcher, HttpFetcher
from .job_queue import QueuedJob
from .jobs import JobContext, handle_job
from .models import Ack, DeadLetter, Retry
from .storage import storage_from_settings

logger = logging.getLogger(__name__)


class Worker:
    """Worker that polls the job queue and executes crawl jobs in parallel."""

    def __init__(
        self,
        db: InventoryDatabase,
        fetcher: Fetcher,
        settings: Settings | None = None,
        stale_check_interval: float = 60.0,
    ):
        """
        Initialize the worker.

        Args:
            db: Database instance
            fetcher: Fetch capability shared by all jobs
            settings: Poll interval, concurrency and retry settings
            stale_check_interval: Seconds between stale job checks
        """
        self.db = db
        self.settings = settings or Settings()
        self.ctx = JobContext.create(db, fetcher, self.settings, storage_from_settings(self.settings))
        self.queue = self.ctx.queue
        self.poll_interval = self.settings.poll_interval
        self.stale_check_interval = stale_check_interval
        self.max_concurrent_jobs = max(1, self.settings.worker_concurrency)
        self.worker_id = f"worker-{uuid.uuid4().hex[:8]}"
        self._running = False
        self._running_jobs: dict[int, asyncio.Task] = {}

    async def start(self) -> None:
        """Start the worker loop."""
        self._running = True
        logger.info(f"Worker {self.worker_id} starting (max {self.max_concurrent_jobs} concurrent jobs)")

        # Setup signal handlers for graceful shutdown
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown)

        stale_task = asyncio.create_task(self._stale_job_checker())

        try:
            await self._run_loop()
        finally:
            stale_task.cancel()
            try:
                await stale_task
            except asyncio.CancelledError:
                pass
            logger.info(f"Worker {self.worker_id} stopped")

    async def _run_loop(self) -> None:
        """Main worker loop - poll queue and execute jobs in parallel."""
        while self._running:
            try:
                if self.poll_once():
                    # Don't sleep - immediately try to claim another job
                    continue
                await asyncio.sleep(self.poll_interval)

            except Exception as e:
                logger.error(f"Worker loop error: {e}")
                await asyncio.sleep(self.poll_interval)

    def poll_once(self) -> bool:
        """Claim one job if there is capacity. Returns True when a job was started."""
        self._cleanup_finished_tasks()
        if len(self._running_jobs) >= self.max_concurrent_jobs:
            return False

        job = self.queue.claim_next(self.worker_id)
        if job is None:
            return False

        task = asyncio.create_task(self.execute_job(job))
        self._running_jobs[job.id] = task
        return True

    def _cleanup_finished_tasks(self) -> None:
        """Remove completed tasks from the running jobs dict."""
        finished = [job_id for job_id, task in self._running_jobs.items() if task.done()]
        for job_id in finished:
            task = self._running_jobs.pop(job_id)
            if not task.cancelled() and task.exception():
                logger.error(f"Job {job_id} task raised exception: {task.exception()}")

    async def execute_job(self, job: QueuedJob) -> None:
        """Run the handler for one job and apply its outcome to the queue."""
        logger.info(f"Executing job {job.id} ({job.job_type}, attempt {job.attempts})")
        start_time = perf_counter()

        try:
            outcome = await handle_job(job, self.ctx)
        except Exception as e:
            # Handler bugs outside the run failure boundary; the run itself may
            # still be running and will show up as stale.
            logger.exception(f"Job {job.id} handler crashed: {e}")
            outcome = (
                Retry(self.settings.retry_delay_seconds)
                if job.attempts < self.settings.max_attempts
                else DeadLetter(f"Handler crashed: {e}")
            )

        self.queue.apply_outcome(job.id, outcome)
        duration = perf_counter() - start_time

        if isinstance(outcome, Ack):
            logger.info(f"Job {job.id} completed in {duration:.2f}s")
        elif isinstance(outcome, Retry):
            logger.warning(f"Job {job.id} will be retried in {outcome.delay_seconds:.0f}s")
        else:
            logger.error(f"Job {job.id} dead-lettered: {outcome.reason}")

    async def _stale_job_checker(self) -> None:
        """Periodically check for and reclaim stale jobs."""
        while self._running:
            await asyncio.sleep(self.stale_check_interval)
            try:
                reclaimed = self.queue.reclaim_stale_jobs(max_attempts=self.settings.max_attempts)
                if reclaimed > 0:
                    logger.warning(f"Reclaimed {reclaimed} stale jobs")
            except Exception as e:
                logger.error(f"Stale job check error: {e}")

    def _handle_shutdown(self) -> None:
        """Handle shutdown signals gracefully."""
        logger.info(f"Worker {self.worker_id} received shutdown signal")
        self._running = False

        # Note: running jobs will be reclaimed by stale job checker if interrupted
        if self._running_jobs:
            logger.warning(f"Interrupted {len(self._running_jobs)} running jobs - will be reclaimed")

    def get_status(self) -> dict:
        """Get current worker status."""
        return {
            "worker_id": self.worker_id,
            "running": self._running,
            "running_jobs": list(self._running_jobs.keys()),
            "running_job_count": len(self._running_jobs),
            "max_concurrent_jobs": self.max_concurrent_jobs,
            "queue_status": self.queue.get_queue_status(),
        }


async def run_worker(settings: Settings | None = None) -> None:
    """
    Run the worker (entry point for CLI).

    Args:
        settings: Runtime settings; read from the environment when omitted
    """
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)

    db = InventoryDatabase(settings.db_path)
    async with HttpFetcher(user_agent=settings.user_agent) as fetcher:
        worker = Worker(db, fetcher, settings)
        await worker.start()
