"""Runtime settings, read from environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_DB_PATH = Path(__file__).parent.parent / "output" / "inventory.db"

# Path tokens that mark a URL as an inventory detail page when a site profile
# has no detail URL patterns of its own.
DEFAULT_DETAIL_URL_TOKENS = (
    "/bil/",
    "/kopa-bil/",
    "/fordon/",
    "/car/",
    "/cars/",
    "/vehicle/",
    "/auto/",
    "/detail",
    "/item/",
    "/product/",
    "/produkt/",
)

DEFAULT_USER_AGENT = "InventoryCrawler/1.0"

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass
class Settings:
    """Configuration shared by the worker, scheduler, API and CLI."""

    db_path: Path = DEFAULT_DB_PATH
    log_level: str = "INFO"
    diagnostics_dir: Path | None = None
    dedupe_window_seconds: int = 30
    retry_delay_seconds: float = 60.0
    max_attempts: int = 3
    worker_concurrency: int = 2
    poll_interval: float = 5.0
    stale_run_minutes: int = 30
    user_agent: str = DEFAULT_USER_AGENT
    detail_url_tokens: tuple[str, ...] = field(default=DEFAULT_DETAIL_URL_TOKENS)
    min_paragraph_length: int = 50
    max_html_bytes: int = 200_000
    removal_min_discovered: int = 1

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from INVENTORY_* environment variables (all optional)."""
        db_path = os.getenv("INVENTORY_DB_PATH")
        diagnostics_dir = os.getenv("INVENTORY_DIAGNOSTICS_DIR")
        tokens = [t.strip() for t in os.getenv("INVENTORY_DETAIL_TOKENS", "").split(",") if t.strip()]

        return cls(
            db_path=Path(db_path) if db_path else DEFAULT_DB_PATH,
            log_level=os.getenv("INVENTORY_LOG_LEVEL", "INFO"),
            diagnostics_dir=Path(diagnostics_dir) if diagnostics_dir else None,
            dedupe_window_seconds=_int_env("INVENTORY_DEDUPE_WINDOW_SECONDS", 30),
            retry_delay_seconds=_float_env("INVENTORY_RETRY_DELAY_SECONDS", 60.0),
            max_attempts=_int_env("INVENTORY_MAX_ATTEMPTS", 3),
            worker_concurrency=_int_env("INVENTORY_WORKER_CONCURRENCY", 2),
            poll_interval=_float_env("INVENTORY_POLL_INTERVAL", 5.0),
            stale_run_minutes=_int_env("INVENTORY_STALE_RUN_MINUTES", 30),
            user_agent=os.getenv("INVENTORY_USER_AGENT", DEFAULT_USER_AGENT),
            detail_url_tokens=tuple(tokens) or DEFAULT_DETAIL_URL_TOKENS,
            min_paragraph_length=_int_env("INVENTORY_MIN_PARAGRAPH_LENGTH", 50),
            max_html_bytes=_int_env("INVENTORY_MAX_HTML_BYTES", 200_000),
            removal_min_discovered=_int_env("INVENTORY_REMOVAL_MIN_DISCOVERED", 1),
        )


def setup_logging(level: str | int | None = None) -> None:
    """Configure application logging."""
    if level is None:
        level = os.getenv("INVENTORY_LOG_LEVEL", "INFO")

    if isinstance(level, str):
        level = _LEVELS.get(level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
