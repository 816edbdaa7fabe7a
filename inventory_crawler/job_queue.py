"""SQLite-backed job queue for crawl jobs."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from .models import Ack, DeadLetter, Outcome, Retry

if TYPE_CHECKING:
    from .db import InventoryDatabase

logger = logging.getLogger(__name__)

# Stale job timeout - jobs running longer than this are considered abandoned
STALE_JOB_TIMEOUT_MINUTES = 30

JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_DEAD = "dead"

CRAWL_JOB = "crawl"


@dataclass
class QueuedJob:
    """A claimed job as handed to a job handler."""

    id: int
    job_type: str
    payload: dict = field(default_factory=dict)
    correlation: dict = field(default_factory=dict)
    attempts: int = 0
    worker_id: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> QueuedJob:
        def load(raw: str | None) -> dict:
            if not raw:
                return {}
            try:
                value = json.loads(raw)
            except json.JSONDecodeError:
                return {}
            return value if isinstance(value, dict) else {}

        return cls(
            id=row["id"],
            job_type=row["job_type"],
            payload=load(row.get("payload_json")),
            correlation=load(row.get("correlation_json")),
            attempts=row.get("attempts") or 0,
            worker_id=row.get("worker_id"),
        )


class JobQueue:
    """SQLite-backed job queue with atomic claim operations and delayed retries."""

    def __init__(self, db: InventoryDatabase):
        self.db = db
        self.db_path = db.db_path

    def enqueue(
        self,
        job_type: str,
        payload: dict,
        correlation: dict | None = None,
        priority: int = 0,
        delay_seconds: float = 0,
    ) -> int:
        """
        Add a job to the queue.

        Args:
            job_type: Handler name (e.g. "crawl")
            payload: Job input
            correlation: Ids that tie the job to a customer and run
            priority: Job priority (higher = more urgent)
            delay_seconds: Do not hand the job out before this many seconds

        Returns:
            Job ID
        """
        now = datetime.now(UTC)
        available_at = now + timedelta(seconds=delay_seconds)

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO job_queue
                    (job_type, status, priority, payload_json, correlation_json, created_at, available_at)
                VALUES (?, 'pending', ?, ?, ?, ?, ?)
                """,
                (
                    job_type,
                    priority,
                    json.dumps(payload),
                    json.dumps(correlation or {}),
                    now.isoformat(),
                    available_at.isoformat(),
                ),
            )
            job_id = cursor.lastrowid
            conn.commit()

        return job_id

    def claim_next(self, worker_id: str, now: datetime | None = None) -> QueuedJob | None:
        """
        Atomically claim the next available job.

        Only pending jobs whose available_at has passed are considered. The
        attempt counter is incremented on claim.

        Args:
            worker_id: Unique identifier for the worker claiming the job
            now: Override the current time (tests)

        Returns:
            The claimed job or None if no jobs available
        """
        now_iso = (now or datetime.now(UTC)).isoformat()

        with sqlite3.connect(self.db_path, isolation_level="IMMEDIATE") as conn:
            conn.row_factory = sqlite3.Row

            # Find and claim in one atomic operation using RETURNING
            cursor = conn.execute(
                """
                UPDATE job_queue
                SET status = 'running', claimed_at = ?, worker_id = ?, attempts = attempts + 1
                WHERE id = (
                    SELECT id FROM job_queue
                    WHERE status = 'pending' AND available_at <= ?
                    ORDER BY priority DESC, created_at ASC, id ASC
                    LIMIT 1
                )
                RETURNING *
                """,
                (now_iso, worker_id, now_iso),
            )
            row = cursor.fetchone()
            conn.commit()

            return QueuedJob.from_row(dict(row)) if row else None

    def ack(self, job_id: int) -> None:
        """Mark a job as done."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                UPDATE job_queue SET status = 'completed', completed_at = ?
                WHERE id = ?
                """,
                (datetime.now(UTC).isoformat(), job_id),
            )
            conn.commit()

    def retry(self, job_id: int, delay_seconds: float, error: str | None = None) -> None:
        """Put a job back in the queue, not to be handed out before delay_seconds."""
        available_at = datetime.now(UTC) + timedelta(seconds=max(0.0, delay_seconds))
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                UPDATE job_queue
                SET status = 'pending', available_at = ?, claimed_at = NULL,
                    worker_id = NULL, last_error = COALESCE(?, last_error)
                WHERE id = ?
                """,
                (available_at.isoformat(), error, job_id),
            )
            conn.commit()

    def dead_letter(self, job_id: int, reason: str) -> None:
        """Park a job permanently. It is never handed out again."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                UPDATE job_queue SET status = 'dead', completed_at = ?, last_error = ?
                WHERE id = ?
                """,
                (datetime.now(UTC).isoformat(), reason, job_id),
            )
            conn.commit()

    def apply_outcome(self, job_id: int, outcome: Outcome) -> None:
        """Apply a handler's outcome to the job row."""
        if isinstance(outcome, Ack):
            self.ack(job_id)
        elif isinstance(outcome, Retry):
            self.retry(job_id, outcome.delay_seconds)
        elif isinstance(outcome, DeadLetter):
            self.dead_letter(job_id, outcome.reason)
        else:
            raise TypeError(f"Unknown job outcome: {outcome!r}")

    def update_correlation(self, job_id: int, correlation: dict) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "UPDATE job_queue SET correlation_json = ? WHERE id = ?",
                (json.dumps(correlation), job_id),
            )
            conn.commit()

    def reclaim_stale_jobs(self, max_attempts: int = 3) -> int:
        """
        Find jobs that have been 'running' too long and reset them.

        Jobs that have been running longer than STALE_JOB_TIMEOUT_MINUTES
        are considered abandoned (worker crashed). They go back to pending
        unless they have used up max_attempts, in which case they are
        dead-lettered.

        Returns:
            Number of jobs reclaimed
        """
        now = datetime.now(UTC).isoformat()
        cutoff = (datetime.now(UTC) - timedelta(minutes=STALE_JOB_TIMEOUT_MINUTES)).isoformat()

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE job_queue
                SET status = 'pending', claimed_at = NULL, worker_id = NULL, available_at = ?
                WHERE status = 'running'
                AND claimed_at < ?
                AND attempts < ?
                """,
                (now, cutoff, max_attempts),
            )
            count = cursor.rowcount

            conn.execute(
                """
                UPDATE job_queue
                SET status = 'dead', last_error = 'Max attempts exceeded (stale job)',
                    completed_at = ?
                WHERE status = 'running'
                AND claimed_at < ?
                AND attempts >= ?
                """,
                (now, cutoff, max_attempts),
            )

            conn.commit()

        if count:
            logger.info(f"Reclaimed {count} stale job(s)")
        return count

    def get_queue_status(self) -> dict:
        """
        Get current queue statistics.

        Returns:
            Dict with counts for each status
        """
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "SELECT status, COUNT(*) FROM job_queue GROUP BY status"
            )
            stats = {JOB_PENDING: 0, JOB_RUNNING: 0, JOB_COMPLETED: 0, JOB_DEAD: 0}
            for status, count in cursor.fetchall():
                if status in stats:
                    stats[status] = count

            return stats

    def get_job(self, job_id: int) -> dict | None:
        """
        Get a specific job by ID.

        Args:
            job_id: ID of the job

        Returns:
            Job dict or None if not found
        """
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            cursor = conn.execute(
                "SELECT * FROM job_queue WHERE id = ?",
                (job_id,),
            )
            row = cursor.fetchone()
            return dict(row) if row else None
