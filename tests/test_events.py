import sqlite3
import tempfile
import unittest
from pathlib import Path


class TestSanitizeMeta(unittest.TestCase):
    def test_secret_keys_are_redacted_recursively(self):
        from inventory_crawler.events import sanitize_meta

        meta = {
            "url": "https://cars.example.com/bil/1",
            "headers": {"Authorization": "Bearer abc", "Accept": "text/html"},
            "attempts": [{"api_key": "k1", "status": 500}],
            "session_id": "s-1",
        }
        self.assertEqual(
            sanitize_meta(meta),
            {
                "url": "https://cars.example.com/bil/1",
                "headers": {"Authorization": "[REDACTED]", "Accept": "text/html"},
                "attempts": [{"api_key": "[REDACTED]", "status": 500}],
                "session_id": "[REDACTED]",
            },
        )
        self.assertEqual(meta["headers"]["Authorization"], "Bearer abc")


class TestRunEventWriter(unittest.TestCase):
    def setUp(self):
        from inventory_crawler.db import InventoryDatabase
        from inventory_crawler.events import RunEventWriter

        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tmp.name) / "test.db"
        self.db = InventoryDatabase(db_path=self.db_path)
        self.events = RunEventWriter(self.db)

    def tearDown(self):
        self._tmp.cleanup()

    def test_events_are_appended_in_order_and_mirrored_to_logging(self):
        from inventory_crawler.events import EventCode, Stage

        with self.assertLogs("inventory_crawler.events", level="INFO") as logs:
            self.events.emit(7, "acme", Stage.SYSTEM, EventCode.SYSTEM_JOB_START, "info", "Crawl started")
            self.events.emit(
                7, "acme", Stage.DETAILS, EventCode.SCRAPE_FETCH_FAIL, "warn", "Detail fetch failed", {"status": 500}
            )

        self.assertEqual(logs.records[1].levelname, "WARNING")
        self.assertIn("[run 7] details SCRAPE_FETCH_FAIL", logs.output[1])

        stored = self.events.list_events("acme", 7)
        self.assertEqual([e["event_code"] for e in stored], ["SYSTEM_JOB_START", "SCRAPE_FETCH_FAIL"])
        self.assertIsNone(stored[0]["meta"])
        self.assertEqual(stored[1]["meta"], {"status": 500})
        self.assertEqual(self.events.list_events("globex", 7), [])

    def test_meta_is_sanitized_before_storage(self):
        from inventory_crawler.events import Stage

        self.events.emit(1, "acme", Stage.QUEUE, "QUEUE_MISSING_CORRELATION", "error", "x", {"token": "t"})

        with sqlite3.connect(self.db_path) as conn:
            raw = conn.execute("SELECT meta_json FROM run_events").fetchone()[0]
        self.assertNotIn('"t"', raw)
        self.assertIn("[REDACTED]", raw)

    def test_unknown_level_is_rejected(self):
        with self.assertRaises(ValueError):
            self.events.emit(1, "acme", "system", "SYSTEM_JOB_START", "fatal", "x")
        self.assertEqual(self.events.list_events("acme", 1), [])


if __name__ == "__main__":
    unittest.main()
