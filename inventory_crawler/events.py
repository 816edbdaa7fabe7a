"""Run event log: an append-only audit trail per run, mirrored to logging."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from .models import RunEvent

logger = logging.getLogger(__name__)


class EventCode:
    """Stable event codes written to the run event log."""

    SYSTEM_JOB_START = "SYSTEM_JOB_START"
    SYSTEM_JOB_SUCCESS = "SYSTEM_JOB_SUCCESS"
    SYSTEM_JOB_FAIL = "SYSTEM_JOB_FAIL"
    SCRAPE_FETCH_OK = "SCRAPE_FETCH_OK"
    SCRAPE_FETCH_FAIL = "SCRAPE_FETCH_FAIL"
    SCRAPE_PARSE_OK = "SCRAPE_PARSE_OK"
    STORAGE_NOT_CONFIGURED = "STORAGE_NOT_CONFIGURED"
    DISCOVERY_START = "DISCOVERY_START"
    DISCOVERY_DONE = "DISCOVERY_DONE"
    DIFF_DONE = "DIFF_DONE"
    REMOVALS_DONE = "REMOVALS_DONE"
    DETAILS_START = "DETAILS_START"
    DETAILS_DONE = "DETAILS_DONE"
    QUEUE_MISSING_CORRELATION = "QUEUE_MISSING_CORRELATION"
    RUN_RETRY = "RUN_RETRY"


class Stage:
    SYSTEM = "system"
    QUEUE = "queue"
    DISCOVERY = "discovery"
    DIFF = "diff"
    DETAILS = "details"
    STORAGE = "storage"


LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

SECRET_KEYS = (
    "password",
    "secret",
    "token",
    "api_key",
    "apikey",
    "authorization",
    "cookie",
    "access_token",
    "refresh_token",
    "session",
)

REDACTED = "[REDACTED]"


def sanitize_meta(value: Any) -> Any:
    """Copy of value with secret-looking keys redacted, recursively."""
    if isinstance(value, dict):
        clean = {}
        for key, item in value.items():
            if any(secret in str(key).lower() for secret in SECRET_KEYS):
                clean[key] = REDACTED
            else:
                clean[key] = sanitize_meta(item)
        return clean
    if isinstance(value, (list, tuple)):
        return [sanitize_meta(item) for item in value]
    return value


class RunEventWriter:
    """Writes run events. Events are only ever inserted."""

    def __init__(self, db):
        self.db = db

    def emit(
        self,
        run_id: int,
        customer_id: str,
        stage: str,
        event_code: str,
        level: str,
        message: str,
        meta: dict | None = None,
    ) -> RunEvent:
        if level not in LEVELS:
            raise ValueError(f"Unknown event level '{level}'")

        event = RunEvent(
            run_id=run_id,
            customer_id=customer_id,
            stage=stage,
            event_code=event_code,
            level=level,
            message=message,
            created_at=datetime.now(UTC),
            meta=sanitize_meta(meta) if meta is not None else None,
        )
        self.db.insert_run_event(event)
        logger.log(
            LEVELS[level],
            "[run %s] %s %s: %s",
            run_id,
            stage,
            event_code,
            message,
        )
        return event

    def list_events(self, customer_id: str, run_id: int) -> list[dict]:
        return self.db.list_run_events(customer_id, run_id)
