"""Run lifecycle: idempotent creation and monotonic status transitions."""

from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime, timedelta
from typing import Callable

from .config import Settings
from .db import InventoryDatabase
from .errors import NOT_FOUND, InvalidTransition, PreconditionError
from .job_queue import CRAWL_JOB, JobQueue
from .models import (
    ACTIVE_RUN_STATUSES,
    RUN_FAILED,
    RUN_QUEUED,
    RUN_RUNNING,
    RUN_SUCCESS,
    CreateRunResult,
    Run,
)

logger = logging.getLogger(__name__)

# Target status -> statuses it may be entered from.
ALLOWED_FROM: dict[str, tuple[str, ...]] = {
    RUN_RUNNING: (RUN_QUEUED,),
    RUN_SUCCESS: (RUN_RUNNING,),
    RUN_FAILED: (RUN_QUEUED, RUN_RUNNING),
}

MAX_ERROR_MESSAGE_LENGTH = 1000


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RunManager:
    """Creates runs and moves them through queued -> running -> success|failed."""

    def __init__(
        self,
        db: InventoryDatabase,
        queue: JobQueue,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.queue = queue
        self.settings = settings or Settings()
        self.clock = clock

    def create_run(self, customer_id: str, source_id: int, trigger: str = "manual") -> CreateRunResult:
        """Create a run and enqueue its crawl job, unless one is already in flight.

        A queued or running run for the same source created within the dedupe
        window is returned instead (``deduplicated=True``). The lookup and the
        insert are separate statements, so two simultaneous requests can both
        create a run.
        """
        if self.db.get_source(customer_id, source_id) is None:
            raise PreconditionError(f"Source {source_id} not found", code=NOT_FOUND)

        now = self.clock()
        window_start = now - timedelta(seconds=self.settings.dedupe_window_seconds)
        try:
            existing = self.db.find_recent_active_run(
                customer_id, source_id, ACTIVE_RUN_STATUSES, window_start.isoformat()
            )
        except sqlite3.Error as exc:
            logger.warning("Dedupe lookup failed for source %s, creating run anyway: %s", source_id, exc)
            existing = None

        if existing:
            logger.info(
                "enqueue_deduped customer=%s source=%s run=%s",
                customer_id,
                source_id,
                existing["id"],
            )
            return CreateRunResult(run_id=existing["id"], job_id=existing["job_id"], deduplicated=True)

        run_id = self.db.insert_run(customer_id, source_id, trigger, created_at=now.isoformat())
        job_id = self.queue.enqueue(
            CRAWL_JOB,
            payload={"source_id": source_id},
            correlation={"customer_id": customer_id, "run_id": run_id, "source_id": source_id},
        )
        self.db.update_run(customer_id, run_id, job_id=job_id)
        logger.info("Created run %s (job %s) for source %s [%s]", run_id, job_id, source_id, trigger)
        return CreateRunResult(run_id=run_id, job_id=job_id, deduplicated=False)

    def create_retry_run(self, previous: Run) -> Run:
        """Follow-up run for a source whose previous run already finished."""
        run_id = self.db.insert_run(
            previous.customer_id,
            previous.source_id,
            "retry",
            created_at=self.clock().isoformat(),
            retry_of=previous.id,
        )
        if previous.job_id is not None:
            self.db.update_run(previous.customer_id, run_id, job_id=previous.job_id)
        return self.get_run(previous.customer_id, run_id)

    # --- transitions ---

    def _transition(self, customer_id: str, run_id: int, to_status: str, **fields) -> Run:
        allowed = ALLOWED_FROM[to_status]
        if not self.db.transition_run(customer_id, run_id, allowed, to_status, **fields):
            current = self.db.get_run(customer_id, run_id)
            if current is None:
                raise PreconditionError(f"Run {run_id} not found", code=NOT_FOUND)
            raise InvalidTransition(f"Run {run_id} is {current['status']}, cannot move to {to_status}")
        return self.get_run(customer_id, run_id)

    def mark_running(self, customer_id: str, run_id: int) -> Run:
        return self._transition(customer_id, run_id, RUN_RUNNING, started_at=self.clock().isoformat())

    def mark_success(
        self,
        customer_id: str,
        run_id: int,
        items_seen: int = 0,
        items_new: int = 0,
        items_removed: int = 0,
    ) -> Run:
        return self._transition(
            customer_id,
            run_id,
            RUN_SUCCESS,
            finished_at=self.clock().isoformat(),
            items_seen=items_seen,
            items_new=items_new,
            items_removed=items_removed,
        )

    def mark_failed(self, customer_id: str, run_id: int, error_code: str, error_message: str) -> Run:
        return self._transition(
            customer_id,
            run_id,
            RUN_FAILED,
            finished_at=self.clock().isoformat(),
            error_code=error_code,
            error_message=(error_message or "")[:MAX_ERROR_MESSAGE_LENGTH],
        )

    # --- queries ---

    def get_run(self, customer_id: str, run_id: int) -> Run | None:
        row = self.db.get_run(customer_id, run_id)
        return Run.from_row(row) if row else None

    def list_runs(
        self,
        customer_id: str,
        source_id: int | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[Run]:
        return [Run.from_row(row) for row in self.db.list_runs(customer_id, source_id, status, limit)]

    def find_stale_runs(self, customer_id: str, threshold: timedelta | None = None) -> list[Run]:
        """Runs still queued or running longer than threshold.

        Nothing cancels a run in flight; this is the operator's view of runs
        whose worker has gone away.
        """
        threshold = threshold or timedelta(minutes=self.settings.stale_run_minutes)
        cutoff = (self.clock() - threshold).isoformat()
        rows = self.db.find_runs_in_status_before(customer_id, ACTIVE_RUN_STATUSES, cutoff)
        return [Run.from_row(row) for row in rows]
