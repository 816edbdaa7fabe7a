import json
import tempfile
import unittest
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest import mock

from fakes import FakeFetcher

BASE = "https://cars.example.com"

LISTING = """
<a href="/bil/volvo-xc90">Volvo XC90</a>
<a href="/bil/saab-93">Saab 9-3</a>
"""

VOLVO = "<title>2024 Volvo XC90</title><p>Pris: 450 000 kr</p>"
SAAB = '<title>2008 Saab 9-3</title><meta property="og:image" content="https://img.example.com/saab.jpg">'


class CrawlJobTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        from inventory_crawler.config import Settings
        from inventory_crawler.db import InventoryDatabase
        from inventory_crawler.jobs import JobContext

        self._tmp = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self._tmp.name)
        self.settings = Settings(db_path=self.tmp_path / "test.db", retry_delay_seconds=60.0, max_attempts=3)
        self.db = InventoryDatabase(db_path=self.settings.db_path)
        self.fetcher = FakeFetcher(
            {
                f"{BASE}/lager": LISTING,
                f"{BASE}/bil/volvo-xc90": VOLVO,
                f"{BASE}/bil/saab-93": SAAB,
            }
        )
        self.ctx = JobContext.create(self.db, self.fetcher, self.settings)
        self.sleeps: list[float] = []

        async def record_sleep(seconds):
            self.sleeps.append(seconds)

        self.ctx.sleep = record_sleep
        self.queue = self.ctx.queue
        self.runs = self.ctx.runs
        self.source_id = self.add_source({"seedUrls": [f"{BASE}/lager"]})

    def tearDown(self):
        self._tmp.cleanup()

    def add_source(self, profile):
        return self.db.add_source("acme", "Acme Bil", BASE, profile)

    async def run_next(self, now=None):
        from inventory_crawler.jobs import handle_job

        job = self.queue.claim_next("worker-1", now=now)
        self.assertIsNotNone(job)
        return job, await handle_job(job, self.ctx)

    def event_codes(self, run_id):
        return [event["event_code"] for event in self.db.list_run_events("acme", run_id)]


class TestCrawlJobSuccess(CrawlJobTestCase):
    async def test_full_crawl(self):
        from inventory_crawler.models import Ack

        run_id = self.runs.create_run("acme", self.source_id).run_id
        _, outcome = await self.run_next()

        self.assertEqual(outcome, Ack())
        run = self.runs.get_run("acme", run_id)
        self.assertEqual(run.status, "success")
        self.assertEqual((run.items_seen, run.items_new, run.items_removed), (2, 2, 0))
        self.assertIsNone(run.error_code)

        self.assertEqual(
            self.event_codes(run_id),
            [
                "SYSTEM_JOB_START",
                "STORAGE_NOT_CONFIGURED",
                "DISCOVERY_START",
                "DISCOVERY_DONE",
                "DIFF_DONE",
                "REMOVALS_DONE",
                "DETAILS_START",
                "SCRAPE_FETCH_OK",
                "SCRAPE_PARSE_OK",
                "SCRAPE_FETCH_OK",
                "SCRAPE_PARSE_OK",
                "DETAILS_DONE",
                "SYSTEM_JOB_SUCCESS",
            ],
        )

        items = {item["source_item_id"]: item for item in self.db.list_items("acme", self.source_id)}
        self.assertEqual(items["volvo-xc90"]["title"], "2024 Volvo XC90")
        self.assertEqual(items["volvo-xc90"]["price_amount"], 450000)
        self.assertEqual(items["volvo-xc90"]["price_currency"], "SEK")
        self.assertEqual(items["saab-93"]["image_urls"], ["https://img.example.com/saab.jpg"])
        self.assertIsNotNone(items["saab-93"]["content_hash"])

    async def test_detail_failures_do_not_fail_the_run(self):
        from inventory_crawler.models import Ack

        self.fetcher.pages[f"{BASE}/bil/saab-93"] = (500, "error")
        run_id = self.runs.create_run("acme", self.source_id).run_id
        _, outcome = await self.run_next()

        self.assertEqual(outcome, Ack())
        events = self.db.list_run_events("acme", run_id)
        failed = [e for e in events if e["event_code"] == "SCRAPE_FETCH_FAIL"]
        self.assertEqual(len(failed), 1)
        self.assertEqual(failed[0]["level"], "warn")
        self.assertEqual(failed[0]["meta"]["status"], 500)
        done = next(e for e in events if e["event_code"] == "DETAILS_DONE")
        self.assertEqual(done["meta"], {"ok_count": 1, "fail_count": 1})

    async def test_politeness_delay_between_detail_fetches(self):
        source_id = self.add_source({"seedUrls": [f"{BASE}/lager"], "limits": {"politenessDelayMs": 250}})
        self.runs.create_run("acme", source_id)
        await self.run_next()

        self.assertEqual(self.sleeps, [0.25])

    async def test_max_new_per_run_caps_detail_fetches(self):
        source_id = self.add_source({"seedUrls": [f"{BASE}/lager"], "limits": {"maxNewPerRun": 1}})
        run_id = self.runs.create_run("acme", source_id).run_id
        await self.run_next()

        self.assertEqual(self.event_codes(run_id).count("SCRAPE_PARSE_OK"), 1)
        self.assertEqual(len(self.db.get_items_missing_details("acme", source_id, 10)), 1)

    async def test_redelivered_job_for_finished_run_is_acked(self):
        from inventory_crawler.jobs import handle_job
        from inventory_crawler.models import Ack

        run_id = self.runs.create_run("acme", self.source_id).run_id
        job, _ = await self.run_next()
        events_before = self.event_codes(run_id)

        self.assertEqual(await handle_job(job, self.ctx), Ack())
        self.assertEqual(self.event_codes(run_id), events_before)

    async def test_reclaimed_running_run_resumes(self):
        from inventory_crawler.models import Ack

        run_id = self.runs.create_run("acme", self.source_id).run_id
        self.runs.mark_running("acme", run_id)

        _, outcome = await self.run_next()

        self.assertEqual(outcome, Ack())
        start = self.db.list_run_events("acme", run_id)[0]
        self.assertEqual(start["event_code"], "SYSTEM_JOB_START")
        self.assertTrue(start["meta"]["resumed"])
        self.assertEqual(self.runs.get_run("acme", run_id).status, "success")


class TestCrawlJobRemovals(CrawlJobTestCase):
    async def test_items_missing_from_a_later_run_are_marked_removed(self):
        self.runs.create_run("acme", self.source_id)
        await self.run_next()

        self.fetcher.pages[f"{BASE}/lager"] = '<a href="/bil/volvo-xc90">Volvo XC90</a>'
        run_id = self.runs.create_run("acme", self.source_id).run_id
        await self.run_next()

        run = self.runs.get_run("acme", run_id)
        self.assertEqual((run.items_seen, run.items_new, run.items_removed), (1, 0, 1))
        active = [item["source_item_id"] for item in self.db.list_items("acme", self.source_id)]
        self.assertEqual(active, ["volvo-xc90"])
        removed = self.db.list_items("acme", self.source_id, active_only=False)
        self.assertEqual(len(removed), 2)

    async def test_empty_discovery_skips_removals(self):
        self.runs.create_run("acme", self.source_id)
        await self.run_next()

        self.fetcher.pages[f"{BASE}/lager"] = "<p>Inga bilar just nu</p>"
        run_id = self.runs.create_run("acme", self.source_id).run_id
        await self.run_next()

        run = self.runs.get_run("acme", run_id)
        self.assertEqual(run.status, "success")
        self.assertEqual(run.items_removed, 0)
        self.assertEqual(len(self.db.list_items("acme", self.source_id)), 2)
        removals = next(
            e for e in self.db.list_run_events("acme", run_id) if e["event_code"] == "REMOVALS_DONE"
        )
        self.assertTrue(removals["meta"]["skipped"])

    def test_removal_guard(self):
        from inventory_crawler.jobs import should_run_removals

        self.assertFalse(should_run_removals(0, 1))
        self.assertFalse(should_run_removals(4, 5))
        self.assertTrue(should_run_removals(5, 5))


class TestCrawlJobFailures(CrawlJobTestCase):
    async def test_timeout_is_retried_with_delay(self):
        from inventory_crawler.models import Retry

        self.fetcher.pages[f"{BASE}/lager"] = (None, "")
        run_id = self.runs.create_run("acme", self.source_id).run_id
        _, outcome = await self.run_next()

        self.assertEqual(outcome, Retry(delay_seconds=60.0))
        run = self.runs.get_run("acme", run_id)
        self.assertEqual(run.status, "failed")
        self.assertEqual(run.error_code, "SCRAPE_TIMEOUT")
        codes = self.event_codes(run_id)
        self.assertEqual(codes[0], "SYSTEM_JOB_START")
        self.assertEqual(codes[-1], "SYSTEM_JOB_FAIL")

    async def test_exhausted_attempts_are_dead_lettered(self):
        from inventory_crawler.jobs import handle_job
        from inventory_crawler.models import DeadLetter

        self.fetcher.pages[f"{BASE}/lager"] = (None, "")
        self.runs.create_run("acme", self.source_id)
        job = self.queue.claim_next("worker-1")
        job.attempts = 3

        outcome = await handle_job(job, self.ctx)

        self.assertIsInstance(outcome, DeadLetter)
        self.assertTrue(outcome.reason.startswith("SCRAPE_TIMEOUT"))

    async def test_http_404_is_permanent(self):
        from inventory_crawler.models import DeadLetter

        del self.fetcher.pages[f"{BASE}/lager"]
        run_id = self.runs.create_run("acme", self.source_id).run_id
        _, outcome = await self.run_next()

        self.assertIsInstance(outcome, DeadLetter)
        self.assertEqual(self.runs.get_run("acme", run_id).error_code, "SCRAPE_HTTP_404")

    async def test_server_errors_are_transient(self):
        from inventory_crawler.models import Retry

        self.fetcher.pages[f"{BASE}/lager"] = (503, "busy")
        self.runs.create_run("acme", self.source_id)
        _, outcome = await self.run_next()

        self.assertIsInstance(outcome, Retry)

    async def test_missing_correlation_is_dead_lettered_without_retry(self):
        from inventory_crawler.jobs import handle_job
        from inventory_crawler.job_queue import QueuedJob
        from inventory_crawler.models import DeadLetter

        run_id = self.runs.create_run("acme", self.source_id).run_id
        job = QueuedJob(id=99, job_type="crawl", payload={}, correlation={"customer_id": "acme", "run_id": run_id})

        outcome = await handle_job(job, self.ctx)

        self.assertIsInstance(outcome, DeadLetter)
        self.assertIn("source_id", outcome.reason)
        self.assertEqual(self.event_codes(run_id), ["QUEUE_MISSING_CORRELATION"])
        self.assertEqual(self.runs.get_run("acme", run_id).status, "queued")
        self.assertEqual(self.fetcher.calls, [])

    async def test_non_integer_source_id_fails_the_run_without_retry(self):
        from inventory_crawler.jobs import handle_job
        from inventory_crawler.job_queue import QueuedJob
        from inventory_crawler.models import DeadLetter

        run_id = self.runs.create_run("acme", self.source_id).run_id
        job = QueuedJob(
            id=99,
            job_type="crawl",
            payload={"source_id": "abc"},
            correlation={"customer_id": "acme", "run_id": run_id, "source_id": "abc"},
        )

        outcome = await handle_job(job, self.ctx)

        self.assertIsInstance(outcome, DeadLetter)
        self.assertIn("source_id", outcome.reason)
        self.assertEqual(self.event_codes(run_id), ["QUEUE_MISSING_CORRELATION"])
        run = self.runs.get_run("acme", run_id)
        self.assertEqual(run.status, "failed")
        self.assertEqual(run.error_code, "PRECONDITION_FAILED")
        self.assertEqual(self.fetcher.calls, [])

    async def test_numeric_string_source_id_is_accepted(self):
        from inventory_crawler.jobs import handle_job
        from inventory_crawler.models import Ack

        run_id = self.runs.create_run("acme", self.source_id).run_id
        job = self.queue.claim_next("worker-1")
        job.payload["source_id"] = str(self.source_id)

        outcome = await handle_job(job, self.ctx)

        self.assertIsInstance(outcome, Ack)
        self.assertEqual(self.runs.get_run("acme", run_id).status, "success")

    async def test_empty_correlation_is_dead_lettered(self):
        from inventory_crawler.jobs import handle_job
        from inventory_crawler.job_queue import QueuedJob
        from inventory_crawler.models import DeadLetter

        outcome = await handle_job(QueuedJob(id=1, job_type="crawl"), self.ctx)

        self.assertIsInstance(outcome, DeadLetter)
        self.assertTrue(outcome.reason.startswith("Missing correlation"))

    async def test_unknown_run_and_job_type_are_dead_lettered(self):
        from inventory_crawler.jobs import handle_job
        from inventory_crawler.job_queue import QueuedJob
        from inventory_crawler.models import DeadLetter

        unknown_run = QueuedJob(
            id=1, job_type="crawl", payload={"source_id": self.source_id}, correlation={"customer_id": "acme", "run_id": 404}
        )
        self.assertIsInstance(await handle_job(unknown_run, self.ctx), DeadLetter)
        self.assertIsInstance(await handle_job(QueuedJob(id=2, job_type="reindex"), self.ctx), DeadLetter)

    async def test_missing_profile_fails_the_run(self):
        from inventory_crawler.models import DeadLetter

        source_id = self.add_source(None)
        run_id = self.runs.create_run("acme", source_id).run_id
        _, outcome = await self.run_next()

        self.assertIsInstance(outcome, DeadLetter)
        self.assertTrue(outcome.reason.startswith("PROFILE_MISSING"))
        run = self.runs.get_run("acme", run_id)
        self.assertEqual(run.status, "failed")
        self.assertEqual(run.error_code, "PROFILE_MISSING")
        self.assertEqual(self.event_codes(run_id), ["SYSTEM_JOB_FAIL"])

    async def test_failed_run_is_retried_as_a_new_run(self):
        from inventory_crawler.models import Ack

        self.fetcher.pages[f"{BASE}/lager"] = (None, "")
        first_id = self.runs.create_run("acme", self.source_id).run_id
        job, outcome = await self.run_next()
        self.queue.apply_outcome(job.id, outcome)
        first_events = self.db.list_run_events("acme", first_id)

        self.fetcher.pages[f"{BASE}/lager"] = LISTING
        later = datetime.now(UTC) + timedelta(seconds=120)
        job, outcome = await self.run_next(now=later)

        self.assertEqual(outcome, Ack())
        self.assertEqual(job.attempts, 2)
        self.assertEqual(self.runs.get_run("acme", first_id).status, "failed")

        retry_run = self.runs.list_runs("acme", status="success")[0]
        self.assertEqual(retry_run.retry_of, first_id)
        self.assertEqual(retry_run.trigger, "retry")
        self.assertEqual(json.loads(self.queue.get_job(job.id)["correlation_json"])["run_id"], retry_run.id)

        after = self.db.list_run_events("acme", first_id)
        self.assertEqual(after[: len(first_events)], first_events)
        self.assertEqual(after[-1]["event_code"], "RUN_RETRY")


class TestDiagnostics(CrawlJobTestCase):
    async def test_failure_bundle_is_written(self):
        from inventory_crawler.storage import LocalObjectStorage

        storage = LocalObjectStorage(self.tmp_path / "diagnostics")
        self.ctx.storage = storage
        del self.fetcher.pages[f"{BASE}/lager"]
        run_id = self.runs.create_run("acme", self.source_id).run_id
        await self.run_next()

        self.assertNotIn("STORAGE_NOT_CONFIGURED", self.event_codes(run_id))
        diagnostics = self.db.list_diagnostics("acme", run_id)
        self.assertEqual([d["kind"] for d in diagnostics], ["trace"])
        key = diagnostics[0]["object_key"]
        self.assertEqual(key, f"acme/runs/{run_id}/trace.json")

        trace = json.loads(storage.get_object("diagnostics", key))
        self.assertEqual(trace["error_code"], "SCRAPE_HTTP_404")
        self.assertEqual(trace["discovery"]["pages_ok"], 0)

    async def test_html_sample_is_saved_when_available(self):
        from inventory_crawler.jobs import CrawlState, capture_diagnostics
        from inventory_crawler.storage import LocalObjectStorage

        self.ctx.storage = LocalObjectStorage(self.tmp_path / "diagnostics")
        run_id = self.runs.create_run("acme", self.source_id).run_id
        run = self.runs.get_run("acme", run_id)
        state = CrawlState(html_sample=VOLVO, sample_url=f"{BASE}/bil/volvo-xc90")

        keys = capture_diagnostics(run, "SCRAPE_CRASH", "boom", self.ctx, state)

        self.assertEqual(keys, [f"acme/runs/{run_id}/trace.json", f"acme/runs/{run_id}/sample.html"])
        self.assertEqual(
            self.ctx.storage.get_object("diagnostics", keys[1]).decode("utf-8"),
            VOLVO,
        )

    async def test_storage_failure_does_not_change_the_outcome(self):
        from inventory_crawler.models import DeadLetter

        storage = mock.Mock()
        storage.put_object.side_effect = OSError("disk full")
        self.ctx.storage = storage
        del self.fetcher.pages[f"{BASE}/lager"]
        run_id = self.runs.create_run("acme", self.source_id).run_id

        with self.assertLogs("inventory_crawler.jobs", level="WARNING"):
            _, outcome = await self.run_next()

        self.assertIsInstance(outcome, DeadLetter)
        self.assertEqual(self.db.list_diagnostics("acme", run_id), [])


if __name__ == "__main__":
    unittest.main()
