"""SQLite database operations for sources, runs, items and run events."""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from .config import DEFAULT_DB_PATH
from .models import DiscoveredItem, ExtractResult, RunEvent
from .utils import content_hash

# Columns a run update may touch. Status changes go through transition_run.
RUN_UPDATE_COLUMNS = {
    "started_at",
    "finished_at",
    "error_code",
    "error_message",
    "job_id",
    "items_seen",
    "items_new",
    "items_removed",
}


def _now() -> str:
    return datetime.now(UTC).isoformat()


class InventoryDatabase:
    """SQLite database for crawl sources, runs, discovered items and their audit trail.

    Every read and write that touches tenant data takes a ``customer_id`` and
    filters on it.
    """

    def __init__(self, db_path: Path | None = None):
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sources (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    customer_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    base_url TEXT NOT NULL,
                    profile_json TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_sources_customer
                ON sources (customer_id)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    customer_id TEXT NOT NULL,
                    source_id INTEGER NOT NULL,
                    trigger TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'queued',
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    finished_at TEXT,
                    error_code TEXT,
                    error_message TEXT,
                    job_id INTEGER,
                    retry_of INTEGER,
                    items_seen INTEGER DEFAULT 0,
                    items_new INTEGER DEFAULT 0,
                    items_removed INTEGER DEFAULT 0,
                    FOREIGN KEY (source_id) REFERENCES sources(id)
                )
            """)
            # Dedupe lookups: active runs for a source, newest first
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_runs_customer_source
                ON runs (customer_id, source_id, status, created_at DESC)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    customer_id TEXT NOT NULL,
                    source_id INTEGER NOT NULL,
                    source_item_id TEXT NOT NULL,
                    url TEXT NOT NULL,
                    title TEXT,
                    description TEXT,
                    price_amount INTEGER,
                    price_currency TEXT,
                    primary_image_url TEXT,
                    image_urls_json TEXT,
                    attributes_json TEXT,
                    content_hash TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    first_seen_at TEXT NOT NULL,
                    last_seen_at TEXT NOT NULL,
                    last_seen_run_id INTEGER,
                    removed_at TEXT,
                    detail_fetched_at TEXT,
                    UNIQUE(customer_id, source_id, source_item_id)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_items_active
                ON items (customer_id, source_id, is_active)
            """)

            # Run events are append-only; nothing in this module updates or deletes them
            conn.execute("""
                CREATE TABLE IF NOT EXISTS run_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id INTEGER NOT NULL,
                    customer_id TEXT NOT NULL,
                    stage TEXT NOT NULL,
                    event_code TEXT NOT NULL,
                    level TEXT NOT NULL,
                    message TEXT NOT NULL,
                    meta_json TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_run_events_run
                ON run_events (customer_id, run_id, id)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS diagnostics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    customer_id TEXT NOT NULL,
                    run_id INTEGER NOT NULL,
                    kind TEXT NOT NULL,
                    bucket TEXT NOT NULL,
                    object_key TEXT NOT NULL,
                    content_type TEXT,
                    size_bytes INTEGER,
                    created_at TEXT NOT NULL
                )
            """)

            # Job queue - persistent queue for crawl jobs (survives restarts)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS job_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_type TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    priority INTEGER DEFAULT 0,
                    payload_json TEXT,
                    correlation_json TEXT,
                    attempts INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL,
                    available_at TEXT NOT NULL,
                    claimed_at TEXT,
                    completed_at TEXT,
                    worker_id TEXT,
                    last_error TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_job_queue_status
                ON job_queue (status, available_at, priority DESC, created_at ASC)
            """)

            # Source schedules - configuration for automatic crawl runs
            conn.execute("""
                CREATE TABLE IF NOT EXISTS source_schedules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    customer_id TEXT NOT NULL,
                    source_id INTEGER NOT NULL,
                    enabled BOOLEAN DEFAULT 0,
                    interval_minutes INTEGER DEFAULT 1440,
                    last_run TEXT,
                    next_run TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(customer_id, source_id)
                )
            """)

            conn.commit()

    # --- sources ---

    def add_source(
        self,
        customer_id: str,
        name: str,
        base_url: str,
        profile: dict | None = None,
    ) -> int:
        """Register a crawlable site for a customer. Returns the source id."""
        now = _now()
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO sources (customer_id, name, base_url, profile_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (customer_id, name, base_url, json.dumps(profile) if profile is not None else None, now, now),
            )
            conn.commit()
            return cursor.lastrowid

    def update_source_profile(self, customer_id: str, source_id: int, profile: dict) -> bool:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE sources SET profile_json = ?, updated_at = ? WHERE id = ? AND customer_id = ?",
                (json.dumps(profile), _now(), source_id, customer_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    @staticmethod
    def _source_row(row: sqlite3.Row) -> dict:
        source = dict(row)
        raw = source.pop("profile_json", None)
        try:
            source["profile"] = json.loads(raw) if raw else None
        except json.JSONDecodeError:
            source["profile"] = None
            source["profile_invalid"] = True
        return source

    def get_source(self, customer_id: str, source_id: int) -> dict | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sources WHERE id = ? AND customer_id = ?",
                (source_id, customer_id),
            ).fetchone()
            return self._source_row(row) if row else None

    def list_sources(self, customer_id: str) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sources WHERE customer_id = ? ORDER BY id",
                (customer_id,),
            ).fetchall()
            return [self._source_row(row) for row in rows]

    # --- runs ---

    def insert_run(
        self,
        customer_id: str,
        source_id: int,
        trigger: str,
        created_at: str,
        retry_of: int | None = None,
    ) -> int:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO runs (customer_id, source_id, trigger, status, created_at, retry_of)
                VALUES (?, ?, ?, 'queued', ?, ?)
                """,
                (customer_id, source_id, trigger, created_at, retry_of),
            )
            conn.commit()
            return cursor.lastrowid

    def get_run(self, customer_id: str, run_id: int) -> dict | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM runs WHERE id = ? AND customer_id = ?",
                (run_id, customer_id),
            ).fetchone()
            return dict(row) if row else None

    def find_recent_active_run(
        self,
        customer_id: str,
        source_id: int,
        statuses: tuple[str, ...],
        created_since: str,
    ) -> dict | None:
        """Newest run for the source in one of statuses created at or after created_since."""
        placeholders = ", ".join("?" for _ in statuses)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM runs
                WHERE customer_id = ? AND source_id = ?
                AND status IN ({placeholders})
                AND created_at >= ?
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (customer_id, source_id, *statuses, created_since),
            ).fetchone()
            return dict(row) if row else None

    def transition_run(
        self,
        customer_id: str,
        run_id: int,
        from_statuses: tuple[str, ...],
        to_status: str,
        **fields,
    ) -> bool:
        """Move a run to to_status only if it is currently in from_statuses.

        The check and the write are one UPDATE, so a concurrent transition
        cannot slip in between. Returns False when the run was not in an
        allowed state (or does not exist for this customer).
        """
        unknown = set(fields) - RUN_UPDATE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown run columns: {sorted(unknown)}")

        assignments = ", ".join(["status = ?"] + [f"{col} = ?" for col in fields])
        placeholders = ", ".join("?" for _ in from_statuses)
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                f"""
                UPDATE runs SET {assignments}
                WHERE id = ? AND customer_id = ? AND status IN ({placeholders})
                """,
                (to_status, *fields.values(), run_id, customer_id, *from_statuses),
            )
            conn.commit()
            return cursor.rowcount > 0

    def update_run(self, customer_id: str, run_id: int, **fields) -> bool:
        """Update non-status run columns (job id, counters)."""
        if not fields:
            return False
        unknown = set(fields) - RUN_UPDATE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown run columns: {sorted(unknown)}")

        assignments = ", ".join(f"{col} = ?" for col in fields)
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                f"UPDATE runs SET {assignments} WHERE id = ? AND customer_id = ?",
                (*fields.values(), run_id, customer_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    def list_runs(
        self,
        customer_id: str,
        source_id: int | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[dict]:
        query = "SELECT * FROM runs WHERE customer_id = ?"
        params: list = [customer_id]
        if source_id is not None:
            query += " AND source_id = ?"
            params.append(source_id)
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            return [dict(row) for row in conn.execute(query, params).fetchall()]

    def find_runs_in_status_before(
        self,
        customer_id: str,
        statuses: tuple[str, ...],
        created_before: str,
    ) -> list[dict]:
        placeholders = ", ".join("?" for _ in statuses)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM runs
                WHERE customer_id = ? AND status IN ({placeholders})
                AND COALESCE(started_at, created_at) < ?
                ORDER BY created_at ASC
                """,
                (customer_id, *statuses, created_before),
            ).fetchall()
            return [dict(row) for row in rows]

    # --- items ---

    def upsert_items(
        self,
        customer_id: str,
        source_id: int,
        run_id: int,
        items: list[DiscoveredItem],
    ) -> int:
        """Insert or refresh discovered items. Returns how many were new."""
        now = _now()
        with sqlite3.connect(self.db_path) as conn:
            existing = {
                row[0]
                for row in conn.execute(
                    "SELECT source_item_id FROM items WHERE customer_id = ? AND source_id = ?",
                    (customer_id, source_id),
                )
            }
            conn.executemany(
                """
                INSERT INTO items (
                    customer_id, source_id, source_item_id, url,
                    is_active, first_seen_at, last_seen_at, last_seen_run_id
                )
                VALUES (?, ?, ?, ?, 1, ?, ?, ?)
                ON CONFLICT(customer_id, source_id, source_item_id) DO UPDATE SET
                    url = excluded.url,
                    is_active = 1,
                    removed_at = NULL,
                    last_seen_at = excluded.last_seen_at,
                    last_seen_run_id = excluded.last_seen_run_id
                """,
                [
                    (customer_id, source_id, item.source_item_id, item.url, now, now, run_id)
                    for item in items
                ],
            )
            conn.commit()
        return sum(1 for item in items if item.source_item_id not in existing)

    def mark_missing_items_removed(self, customer_id: str, source_id: int, run_id: int) -> int:
        """Deactivate active items of the source that run_id did not see."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE items SET is_active = 0, removed_at = ?
                WHERE customer_id = ? AND source_id = ? AND is_active = 1
                AND (last_seen_run_id IS NULL OR last_seen_run_id != ?)
                """,
                (_now(), customer_id, source_id, run_id),
            )
            conn.commit()
            return cursor.rowcount

    def get_items_missing_details(self, customer_id: str, source_id: int, limit: int) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM items
                WHERE customer_id = ? AND source_id = ? AND is_active = 1
                AND detail_fetched_at IS NULL
                ORDER BY first_seen_at ASC, id ASC
                LIMIT ?
                """,
                (customer_id, source_id, limit),
            ).fetchall()
            return [dict(row) for row in rows]

    def save_item_details(
        self,
        customer_id: str,
        source_id: int,
        source_item_id: str,
        details: ExtractResult,
    ) -> bool:
        payload = details.to_dict()
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE items SET
                    title = ?, description = ?, price_amount = ?, price_currency = ?,
                    primary_image_url = ?, image_urls_json = ?, attributes_json = ?,
                    content_hash = ?, detail_fetched_at = ?
                WHERE customer_id = ? AND source_id = ? AND source_item_id = ?
                """,
                (
                    details.title,
                    details.description,
                    details.price_amount,
                    details.price_currency,
                    details.primary_image_url,
                    json.dumps(details.image_urls),
                    json.dumps(details.attributes, ensure_ascii=False),
                    content_hash(payload),
                    _now(),
                    customer_id,
                    source_id,
                    source_item_id,
                ),
            )
            conn.commit()
            return cursor.rowcount > 0

    def list_items(
        self,
        customer_id: str,
        source_id: int | None = None,
        active_only: bool = True,
        limit: int = 100,
    ) -> list[dict]:
        query = "SELECT * FROM items WHERE customer_id = ?"
        params: list = [customer_id]
        if source_id is not None:
            query += " AND source_id = ?"
            params.append(source_id)
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY last_seen_at DESC, id DESC LIMIT ?"
        params.append(limit)

        items = []
        with self._connect() as conn:
            for row in conn.execute(query, params).fetchall():
                item = dict(row)
                item["image_urls"] = json.loads(item.pop("image_urls_json") or "[]")
                item["attributes"] = json.loads(item.pop("attributes_json") or "{}")
                item["is_active"] = bool(item["is_active"])
                items.append(item)
        return items

    # --- run events ---

    def insert_run_event(self, event: RunEvent) -> int:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO run_events (run_id, customer_id, stage, event_code, level, message, meta_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.run_id,
                    event.customer_id,
                    event.stage,
                    event.event_code,
                    event.level,
                    event.message,
                    json.dumps(event.meta, ensure_ascii=False, default=str) if event.meta is not None else None,
                    event.created_at.isoformat(),
                ),
            )
            conn.commit()
            return cursor.lastrowid

    def list_run_events(self, customer_id: str, run_id: int) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM run_events
                WHERE customer_id = ? AND run_id = ?
                ORDER BY id ASC
                """,
                (customer_id, run_id),
            ).fetchall()

        events = []
        for row in rows:
            event = dict(row)
            raw = event.pop("meta_json")
            event["meta"] = json.loads(raw) if raw else None
            events.append(event)
        return events

    # --- diagnostics ---

    def add_diagnostic(
        self,
        customer_id: str,
        run_id: int,
        kind: str,
        bucket: str,
        object_key: str,
        content_type: str,
        size_bytes: int,
    ) -> int:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO diagnostics (customer_id, run_id, kind, bucket, object_key, content_type, size_bytes, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (customer_id, run_id, kind, bucket, object_key, content_type, size_bytes, _now()),
            )
            conn.commit()
            return cursor.lastrowid

    def list_diagnostics(self, customer_id: str, run_id: int) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM diagnostics WHERE customer_id = ? AND run_id = ? ORDER BY id",
                (customer_id, run_id),
            ).fetchall()
            return [dict(row) for row in rows]

    # --- schedules ---

    def set_schedule(
        self,
        customer_id: str,
        source_id: int,
        enabled: bool,
        interval_minutes: int = 1440,
        next_run: str | None = None,
    ) -> None:
        """Create or update the crawl schedule of a source."""
        now = _now()
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO source_schedules
                    (customer_id, source_id, enabled, interval_minutes, next_run, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(customer_id, source_id) DO UPDATE SET
                    enabled = excluded.enabled,
                    interval_minutes = excluded.interval_minutes,
                    next_run = COALESCE(excluded.next_run, source_schedules.next_run),
                    updated_at = excluded.updated_at
                """,
                (customer_id, source_id, 1 if enabled else 0, interval_minutes, next_run or now, now, now),
            )
            conn.commit()

    def get_due_schedules(self, now: str) -> list[dict]:
        """Enabled schedules whose next_run is at or before now (all customers)."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM source_schedules
                WHERE enabled = 1 AND (next_run IS NULL OR next_run <= ?)
                ORDER BY next_run ASC
                """,
                (now,),
            ).fetchall()
            return [dict(row) for row in rows]

    def mark_schedule_run(self, schedule_id: int, last_run: str, next_run: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                UPDATE source_schedules SET last_run = ?, next_run = ?, updated_at = ?
                WHERE id = ?
                """,
                (last_run, next_run, _now(), schedule_id),
            )
            conn.commit()

    def list_schedules(self, customer_id: str) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM source_schedules WHERE customer_id = ? ORDER BY source_id",
                (customer_id,),
            ).fetchall()
            return [dict(row) for row in rows]
