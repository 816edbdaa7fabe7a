import sqlite3
import tempfile
import unittest
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest import mock


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class TestRunManager(unittest.TestCase):
    def setUp(self):
        from inventory_crawler.config import Settings
        from inventory_crawler.db import InventoryDatabase
        from inventory_crawler.job_queue import JobQueue
        from inventory_crawler.runs import RunManager

        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tmp.name) / "test.db"
        self.db = InventoryDatabase(db_path=self.db_path)
        self.queue = JobQueue(self.db)
        self.clock = FakeClock()
        self.runs = RunManager(self.db, self.queue, Settings(db_path=self.db_path), clock=self.clock)
        self.source_id = self.db.add_source("acme", "Acme Bil", "https://cars.example.com", {"seedUrls": []})

    def tearDown(self):
        self._tmp.cleanup()

    def test_create_run_enqueues_a_correlated_job(self):
        result = self.runs.create_run("acme", self.source_id)

        self.assertFalse(result.deduplicated)
        run = self.runs.get_run("acme", result.run_id)
        self.assertEqual(run.status, "queued")
        self.assertEqual(run.job_id, result.job_id)

        job = self.queue.claim_next("worker-1")
        self.assertEqual(job.id, result.job_id)
        self.assertEqual(job.job_type, "crawl")
        self.assertEqual(
            job.correlation,
            {"customer_id": "acme", "run_id": result.run_id, "source_id": self.source_id},
        )

    def test_requests_inside_the_window_are_deduplicated(self):
        first = self.runs.create_run("acme", self.source_id)
        self.clock.advance(seconds=10)
        with self.assertLogs("inventory_crawler.runs", level="INFO") as logs:
            second = self.runs.create_run("acme", self.source_id)

        self.assertEqual(second.run_id, first.run_id)
        self.assertEqual(second.job_id, first.job_id)
        self.assertTrue(second.deduplicated)
        self.assertTrue(any("enqueue_deduped" in line for line in logs.output))
        self.assertEqual(self.queue.get_queue_status()["pending"], 1)

        self.clock.advance(seconds=31)
        third = self.runs.create_run("acme", self.source_id)
        self.assertNotEqual(third.run_id, first.run_id)
        self.assertFalse(third.deduplicated)

    def test_finished_runs_are_not_deduplicated(self):
        first = self.runs.create_run("acme", self.source_id)
        self.runs.mark_running("acme", first.run_id)
        self.runs.mark_success("acme", first.run_id)

        second = self.runs.create_run("acme", self.source_id)
        self.assertNotEqual(second.run_id, first.run_id)

    def test_dedupe_lookup_failure_still_creates_a_run(self):
        with mock.patch.object(
            self.db, "find_recent_active_run", side_effect=sqlite3.OperationalError("database is locked")
        ):
            with self.assertLogs("inventory_crawler.runs", level="WARNING"):
                result = self.runs.create_run("acme", self.source_id)

        self.assertFalse(result.deduplicated)
        self.assertIsNotNone(self.runs.get_run("acme", result.run_id))

    def test_missing_source_is_a_precondition_failure(self):
        from inventory_crawler.errors import PreconditionError

        with self.assertRaises(PreconditionError) as ctx:
            self.runs.create_run("acme", 999)
        self.assertEqual(ctx.exception.code, "NOT_FOUND")

    def test_runs_are_isolated_per_customer(self):
        from inventory_crawler.errors import PreconditionError

        result = self.runs.create_run("acme", self.source_id)

        self.assertIsNone(self.runs.get_run("globex", result.run_id))
        self.assertEqual(self.runs.list_runs("globex"), [])
        with self.assertRaises(PreconditionError):
            self.runs.create_run("globex", self.source_id)
        with self.assertRaises(PreconditionError):
            self.runs.mark_running("globex", result.run_id)

    def test_transitions_are_monotonic(self):
        from inventory_crawler.errors import InvalidTransition

        run_id = self.runs.create_run("acme", self.source_id).run_id
        with self.assertRaises(InvalidTransition):
            self.runs.mark_success("acme", run_id)

        self.clock.advance(seconds=5)
        running = self.runs.mark_running("acme", run_id)
        self.assertEqual(running.status, "running")
        self.assertEqual(running.started_at, self.clock.now)

        done = self.runs.mark_success("acme", run_id, items_seen=12, items_new=3, items_removed=1)
        self.assertEqual(done.status, "success")
        self.assertEqual((done.items_seen, done.items_new, done.items_removed), (12, 3, 1))
        self.assertIsNotNone(done.finished_at)

        for transition in (
            lambda: self.runs.mark_running("acme", run_id),
            lambda: self.runs.mark_failed("acme", run_id, "SCRAPE_CRASH", "late failure"),
            lambda: self.runs.mark_success("acme", run_id),
        ):
            with self.assertRaises(InvalidTransition):
                transition()
        self.assertEqual(self.runs.get_run("acme", run_id).status, "success")

    def test_queued_run_can_fail_directly(self):
        run_id = self.runs.create_run("acme", self.source_id).run_id
        failed = self.runs.mark_failed("acme", run_id, "PROFILE_MISSING", "x" * 5000)

        self.assertEqual(failed.status, "failed")
        self.assertEqual(failed.error_code, "PROFILE_MISSING")
        self.assertEqual(len(failed.error_message), 1000)

    def test_retry_run_points_back_at_previous(self):
        previous_id = self.runs.create_run("acme", self.source_id).run_id
        self.runs.mark_failed("acme", previous_id, "SCRAPE_TIMEOUT", "timeout")
        previous = self.runs.get_run("acme", previous_id)

        follow_up = self.runs.create_retry_run(previous)
        self.assertEqual(follow_up.status, "queued")
        self.assertEqual(follow_up.trigger, "retry")
        self.assertEqual(follow_up.retry_of, previous_id)
        self.assertEqual(follow_up.job_id, previous.job_id)

    def test_find_stale_runs(self):
        stuck = self.runs.create_run("acme", self.source_id).run_id
        self.runs.mark_running("acme", stuck)

        self.assertEqual(self.runs.find_stale_runs("acme"), [])
        self.clock.advance(minutes=45)
        stale = self.runs.find_stale_runs("acme")
        self.assertEqual([run.id for run in stale], [stuck])
        self.assertEqual(self.runs.find_stale_runs("acme", threshold=timedelta(hours=2)), [])


if __name__ == "__main__":
    unittest.main()
