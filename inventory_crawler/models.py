"""Data models for the inventory crawler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

RUN_QUEUED = "queued"
RUN_RUNNING = "running"
RUN_SUCCESS = "success"
RUN_FAILED = "failed"

RUN_STATUSES = (RUN_QUEUED, RUN_RUNNING, RUN_SUCCESS, RUN_FAILED)
ACTIVE_RUN_STATUSES = (RUN_QUEUED, RUN_RUNNING)
TERMINAL_RUN_STATUSES = (RUN_SUCCESS, RUN_FAILED)

DEFAULT_CURRENCY = "SEK"


def _pick(data: dict, *keys: str, default: Any = None) -> Any:
    """Return the first key present in data (camelCase or snake_case)."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass(frozen=True)
class Limits:
    """Resource limits for one discovery pass and its detail fetches."""

    max_pages: int = 50
    max_items: int = 500
    max_duration_ms: int = 300_000
    max_new_per_run: int = 50
    politeness_delay_ms: int = 0
    timeout_ms: int = 15_000

    @classmethod
    def from_dict(cls, data: dict | None) -> Limits:
        data = data or {}
        defaults = cls()

        def num(value: Any, fallback: int) -> int:
            try:
                return max(0, int(value))
            except (TypeError, ValueError):
                return fallback

        return cls(
            max_pages=num(_pick(data, "maxPages", "max_pages"), defaults.max_pages),
            max_items=num(_pick(data, "maxItems", "max_items"), defaults.max_items),
            max_duration_ms=num(
                _pick(data, "maxDurationMs", "max_duration_ms"), defaults.max_duration_ms
            ),
            max_new_per_run=num(
                _pick(data, "maxNewPerRun", "max_new_per_run"), defaults.max_new_per_run
            ),
            politeness_delay_ms=num(
                _pick(data, "politenessDelayMs", "politeness_delay_ms"),
                defaults.politeness_delay_ms,
            ),
            timeout_ms=num(_pick(data, "timeoutMs", "timeout_ms"), defaults.timeout_ms),
        )

    def to_dict(self) -> dict:
        return {
            "maxPages": self.max_pages,
            "maxItems": self.max_items,
            "maxDurationMs": self.max_duration_ms,
            "maxNewPerRun": self.max_new_per_run,
            "politenessDelayMs": self.politeness_delay_ms,
            "timeoutMs": self.timeout_ms,
        }


@dataclass(frozen=True)
class IdFromUrl:
    """How a stable item id is derived from a detail URL."""

    mode: str = "last_segment"
    regex: str | None = None


@dataclass(frozen=True)
class SiteProfile:
    """Discovery and extraction configuration for one inventory site."""

    seed_urls: tuple[str, ...] = ()
    id_from_url: IdFromUrl = field(default_factory=IdFromUrl)
    detail_url_patterns: tuple[str, ...] = ()
    limits: Limits = field(default_factory=Limits)
    strategy: str = "html_links"
    sitemap_urls: tuple[str, ...] = ()
    vertical: str = "generic"

    @classmethod
    def from_dict(cls, data: dict) -> SiteProfile:
        """Build a profile from its persisted JSON form.

        Accepts the flat form (``seedUrls``, ``idFromUrl``, ...) and the nested
        form used by the probe (``discovery.seedUrls``, ``extract.vertical``).
        Unknown keys are ignored.
        """
        if not isinstance(data, dict):
            raise ValueError("Site profile must be a JSON object")

        discovery = data.get("discovery") if isinstance(data.get("discovery"), dict) else data
        extract = data.get("extract") if isinstance(data.get("extract"), dict) else data

        id_rule = _pick(discovery, "idFromUrl", "id_from_url", default={}) or {}
        if isinstance(id_rule, str):
            id_rule = {"mode": id_rule}

        strategy = _pick(discovery, "strategy", default="html_links")
        if strategy in (None, "unknown"):
            strategy = "html_links"

        return cls(
            seed_urls=tuple(str(u) for u in _pick(discovery, "seedUrls", "seed_urls", default=[])),
            id_from_url=IdFromUrl(
                mode=str(id_rule.get("mode") or "last_segment"),
                regex=id_rule.get("regex"),
            ),
            detail_url_patterns=tuple(
                str(p) for p in _pick(discovery, "detailUrlPatterns", "detail_url_patterns", default=[])
            ),
            limits=Limits.from_dict(data.get("limits")),
            strategy=str(strategy),
            sitemap_urls=tuple(
                str(u) for u in _pick(discovery, "sitemapUrls", "sitemap_urls", default=[])
            ),
            vertical=str(_pick(extract, "vertical", default="generic")),
        )

    def to_dict(self) -> dict:
        return {
            "strategy": self.strategy,
            "seedUrls": list(self.seed_urls),
            "sitemapUrls": list(self.sitemap_urls),
            "idFromUrl": {"mode": self.id_from_url.mode, "regex": self.id_from_url.regex},
            "detailUrlPatterns": list(self.detail_url_patterns),
            "vertical": self.vertical,
            "limits": self.limits.to_dict(),
        }


@dataclass
class DiscoveredItem:
    """A detail URL found during discovery."""

    source_item_id: str
    url: str

    def to_dict(self) -> dict:
        return {"source_item_id": self.source_item_id, "url": self.url}


@dataclass
class DiscoverResult:
    """Items found by one discovery pass plus counters for the run log."""

    items: list[DiscoveredItem]
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class FetchTrace:
    """Diagnostic record of one HTTP request."""

    url: str
    status: int | None
    duration_ms: int
    final_url: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "final_url": self.final_url,
            "status": self.status,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


@dataclass
class FetchResult:
    """Outcome of fetching a single URL."""

    status: int | None
    body: str
    final_url: str | None
    trace: FetchTrace | None = None

    @property
    def ok(self) -> bool:
        return self.status == 200 and bool(self.body)


@dataclass
class ExtractResult:
    """Fields heuristically extracted from a detail page."""

    title: str | None = None
    description: str | None = None
    price_amount: int | None = None
    price_currency: str | None = None
    primary_image_url: str | None = None
    image_urls: list[str] = field(default_factory=list)
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "title": self.title,
            "description": self.description,
            "price_amount": self.price_amount,
            "price_currency": self.price_currency,
            "primary_image_url": self.primary_image_url,
            "image_urls": list(self.image_urls),
            "attributes": dict(self.attributes),
        }


@dataclass
class Run:
    """A unit of crawl work and its lifecycle state."""

    id: int
    customer_id: str
    source_id: int
    trigger: str
    status: str
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None
    job_id: int | None = None
    retry_of: int | None = None
    items_seen: int = 0
    items_new: int = 0
    items_removed: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @classmethod
    def from_row(cls, row: dict) -> Run:
        def ts(value: str | None) -> datetime | None:
            return datetime.fromisoformat(value) if value else None

        return cls(
            id=row["id"],
            customer_id=row["customer_id"],
            source_id=row["source_id"],
            trigger=row["trigger"],
            status=row["status"],
            created_at=datetime.fromisoformat(row["created_at"]),
            started_at=ts(row.get("started_at")),
            finished_at=ts(row.get("finished_at")),
            error_code=row.get("error_code"),
            error_message=row.get("error_message"),
            job_id=row.get("job_id"),
            retry_of=row.get("retry_of"),
            items_seen=row.get("items_seen") or 0,
            items_new=row.get("items_new") or 0,
            items_removed=row.get("items_removed") or 0,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "source_id": self.source_id,
            "trigger": self.trigger,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "job_id": self.job_id,
            "retry_of": self.retry_of,
            "items_seen": self.items_seen,
            "items_new": self.items_new,
            "items_removed": self.items_removed,
        }


@dataclass(frozen=True)
class RunEvent:
    """One immutable entry in a run's audit trail."""

    run_id: int
    customer_id: str
    stage: str
    event_code: str
    level: str
    message: str
    created_at: datetime
    meta: dict | None = None

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "customer_id": self.customer_id,
            "stage": self.stage,
            "event_code": self.event_code,
            "level": self.level,
            "message": self.message,
            "meta": self.meta,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class CreateRunResult:
    """Result of an idempotent run-creation request."""

    run_id: int
    job_id: int | None
    deduplicated: bool = False

    def to_dict(self) -> dict:
        return {"run_id": self.run_id, "job_id": self.job_id, "deduplicated": self.deduplicated}


# --- Job outcomes ---


@dataclass(frozen=True)
class Ack:
    """Job processed; remove it from the queue."""


@dataclass(frozen=True)
class Retry:
    """Job failed transiently; redeliver after delay_seconds."""

    delay_seconds: float


@dataclass(frozen=True)
class DeadLetter:
    """Job failed permanently; never redeliver."""

    reason: str


Outcome = Ack | Retry | DeadLetter
