"""Crawl job handler: discovery, item diff, detail extraction, run finalization.

The handler never touches the queue row itself. It returns an outcome
(Ack, Retry or DeadLetter) and the worker applies it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .config import Settings
from .db import InventoryDatabase
from .discovery import discover
from .errors import NOT_FOUND, PRECONDITION_FAILED, PROFILE_MISSING, FetchError, classify_error
from .events import EventCode, RunEventWriter, Stage
from .extractors import extract
from .fetcher import Fetcher
from .job_queue import CRAWL_JOB, JobQueue, QueuedJob
from .models import RUN_QUEUED, RUN_SUCCESS, Ack, DeadLetter, FetchResult, Outcome, Retry, Run, SiteProfile
from .runs import RunManager
from .storage import DIAGNOSTICS_BUCKET, ObjectStorage
from .utils import truncate_html

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """Collaborators a job handler needs."""

    db: InventoryDatabase
    queue: JobQueue
    runs: RunManager
    events: RunEventWriter
    fetcher: Fetcher
    settings: Settings
    storage: ObjectStorage | None = None
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    @classmethod
    def create(
        cls,
        db: InventoryDatabase,
        fetcher: Fetcher,
        settings: Settings | None = None,
        storage: ObjectStorage | None = None,
    ) -> JobContext:
        settings = settings or Settings()
        queue = JobQueue(db)
        return cls(
            db=db,
            queue=queue,
            runs=RunManager(db, queue, settings),
            events=RunEventWriter(db),
            fetcher=fetcher,
            settings=settings,
            storage=storage,
        )


@dataclass
class CrawlState:
    """What a run has seen so far, kept for diagnostics on failure."""

    trace: list[dict] = field(default_factory=list)
    discovery_meta: dict = field(default_factory=dict)
    html_sample: str | None = None
    sample_url: str | None = None


def should_run_removals(discovered_count: int, min_discovered: int) -> bool:
    """Removal marking is skipped when discovery found too little to trust."""
    return discovered_count > 0 and discovered_count >= min_discovered


async def handle_job(job: QueuedJob, ctx: JobContext) -> Outcome:
    """Dispatch a claimed job to its handler by job type."""
    handler = JOB_HANDLERS.get(job.job_type)
    if handler is None:
        logger.error("Job %s has unknown type %r", job.id, job.job_type)
        return DeadLetter(f"Unknown job type: {job.job_type}")
    return await handler(job, ctx)


async def process_crawl_job(job: QueuedJob, ctx: JobContext) -> Outcome:
    """Process one crawl job for the run named in its correlation."""
    correlation = job.correlation or {}
    customer_id = correlation.get("customer_id")
    run_id = correlation.get("run_id")
    source_id = job.payload.get("source_id", correlation.get("source_id"))

    missing = [
        name
        for name, value in (("customer_id", customer_id), ("run_id", run_id), ("source_id", source_id))
        if value in (None, "")
    ]
    if missing:
        reason = f"Missing correlation: {', '.join(missing)}"
        if customer_id and run_id is not None and ctx.runs.get_run(customer_id, run_id):
            ctx.events.emit(
                run_id,
                customer_id,
                Stage.QUEUE,
                EventCode.QUEUE_MISSING_CORRELATION,
                "error",
                reason,
                {"job_id": job.id, "missing": missing},
            )
        else:
            logger.error("Job %s dead-lettered: %s", job.id, reason)
        return DeadLetter(reason)

    run = ctx.runs.get_run(customer_id, run_id)
    if run is None:
        logger.error("Job %s references unknown run %s for customer %s", job.id, run_id, customer_id)
        return DeadLetter(f"Run {run_id} not found")

    try:
        source_id = int(source_id)
    except (TypeError, ValueError):
        return _reject_malformed_source(job, run, source_id, ctx)

    if run.is_terminal:
        if run.status == RUN_SUCCESS:
            logger.info("Job %s redelivered for finished run %s, acking", job.id, run.id)
            return Ack()
        run = _start_retry_run(job, run, ctx)

    return await _execute_run(job, run, source_id, ctx)


def _reject_malformed_source(job: QueuedJob, run: Run, source_id: Any, ctx: JobContext) -> Outcome:
    reason = f"Malformed correlation: source_id {source_id!r} is not an integer"
    ctx.events.emit(
        run.id,
        run.customer_id,
        Stage.QUEUE,
        EventCode.QUEUE_MISSING_CORRELATION,
        "error",
        reason,
        {"job_id": job.id, "malformed": ["source_id"]},
    )
    if not run.is_terminal:
        ctx.runs.mark_failed(run.customer_id, run.id, PRECONDITION_FAILED, reason)
    return DeadLetter(reason)


def _start_retry_run(job: QueuedJob, previous: Run, ctx: JobContext) -> Run:
    """Failed runs are final; a redelivered job continues as a new run."""
    run = ctx.runs.create_retry_run(previous)
    ctx.events.emit(
        previous.id,
        previous.customer_id,
        Stage.SYSTEM,
        EventCode.RUN_RETRY,
        "info",
        f"Retrying as run {run.id}",
        {"job_id": job.id, "retry_run_id": run.id, "attempt": job.attempts},
    )
    ctx.queue.update_correlation(job.id, {**job.correlation, "run_id": run.id})
    return run


async def _execute_run(job: QueuedJob, run: Run, source_id: int, ctx: JobContext) -> Outcome:
    customer_id = run.customer_id
    base_meta = {"job_id": job.id, "attempt": job.attempts, "source_id": source_id}

    source = ctx.db.get_source(customer_id, source_id)
    if source is None:
        return _fail_precondition(run, NOT_FOUND, f"Source {source_id} not found", base_meta, ctx)

    profile = _load_profile(source)
    if profile is None:
        return _fail_precondition(
            run, PROFILE_MISSING, f"Source {source_id} has no usable site profile", base_meta, ctx
        )

    if run.status == RUN_QUEUED:
        ctx.runs.mark_running(customer_id, run.id)
        resumed = False
    else:
        # Reclaimed after a worker died mid-run.
        resumed = True
    ctx.events.emit(
        run.id,
        customer_id,
        Stage.SYSTEM,
        EventCode.SYSTEM_JOB_START,
        "info",
        "Crawl started",
        {**base_meta, "strategy": profile.strategy, "resumed": resumed},
    )
    if ctx.storage is None:
        ctx.events.emit(
            run.id,
            customer_id,
            Stage.STORAGE,
            EventCode.STORAGE_NOT_CONFIGURED,
            "warn",
            "Diagnostic storage not configured; failure bundles will not be saved",
        )

    state = CrawlState()
    try:
        counters = await _crawl(run, source, profile, ctx, state)
    except Exception as exc:
        return _fail_run(job, run, exc, ctx, state)

    ctx.runs.mark_success(customer_id, run.id, **counters)
    ctx.events.emit(
        run.id,
        customer_id,
        Stage.SYSTEM,
        EventCode.SYSTEM_JOB_SUCCESS,
        "info",
        "Crawl finished",
        {**base_meta, **counters},
    )
    return Ack()


def _load_profile(source: dict) -> SiteProfile | None:
    raw = source.get("profile")
    if not raw:
        return None
    try:
        profile = SiteProfile.from_dict(raw)
    except (TypeError, ValueError) as exc:
        logger.warning("Invalid site profile for source %s: %s", source.get("id"), exc)
        return None
    if not profile.seed_urls and not source.get("base_url"):
        return None
    return profile


async def _crawl(
    run: Run,
    source: dict,
    profile: SiteProfile,
    ctx: JobContext,
    state: CrawlState,
) -> dict[str, int]:
    customer_id = run.customer_id
    source_id = source["id"]
    settings = ctx.settings

    ctx.events.emit(
        run.id,
        customer_id,
        Stage.DISCOVERY,
        EventCode.DISCOVERY_START,
        "info",
        "Discovery started",
        {"strategy": profile.strategy, "seed_urls": list(profile.seed_urls)},
    )
    result = await discover(
        profile,
        ctx.fetcher,
        base_url=source.get("base_url"),
        detail_tokens=settings.detail_url_tokens,
        clock=ctx.clock,
    )
    state.discovery_meta = result.meta
    ctx.events.emit(
        run.id,
        customer_id,
        Stage.DISCOVERY,
        EventCode.DISCOVERY_DONE,
        "info",
        f"Discovered {len(result.items)} items",
        result.meta,
    )

    if not result.items and result.meta.get("pages_fetched", 0) > 0 and result.meta.get("pages_ok", 0) == 0:
        # Not one page answered: the site is unreachable, not empty.
        failure = result.meta.get("first_failure") or {}
        raise FetchError(
            failure.get("url") or source.get("base_url") or "",
            status=failure.get("status"),
            reason=failure.get("error"),
        )

    items_new = ctx.db.upsert_items(customer_id, source_id, run.id, result.items)
    ctx.events.emit(
        run.id,
        customer_id,
        Stage.DIFF,
        EventCode.DIFF_DONE,
        "info",
        "Items upserted",
        {"discovered_count": len(result.items), "new_count": items_new},
    )

    if should_run_removals(len(result.items), settings.removal_min_discovered):
        items_removed = ctx.db.mark_missing_items_removed(customer_id, source_id, run.id)
        skipped = False
    else:
        items_removed = 0
        skipped = True
    ctx.events.emit(
        run.id,
        customer_id,
        Stage.DIFF,
        EventCode.REMOVALS_DONE,
        "info",
        "Removal marking skipped" if skipped else "Removed items marked",
        {"removed_count": items_removed, "skipped": skipped},
    )

    await _fetch_details(run, source_id, profile, ctx, state)

    return {
        "items_seen": len(result.items),
        "items_new": items_new,
        "items_removed": items_removed,
    }


async def _fetch_details(
    run: Run,
    source_id: int,
    profile: SiteProfile,
    ctx: JobContext,
    state: CrawlState,
) -> None:
    """Fetch and extract items that have no details yet. Per-item failures are logged, not raised."""
    customer_id = run.customer_id
    limits = profile.limits
    pending = ctx.db.get_items_missing_details(customer_id, source_id, limits.max_new_per_run)
    ctx.events.emit(
        run.id,
        customer_id,
        Stage.DETAILS,
        EventCode.DETAILS_START,
        "info",
        f"Fetching details for {len(pending)} items",
        {"count": len(pending), "max_new_per_run": limits.max_new_per_run},
    )

    ok_count = 0
    fail_count = 0
    for index, item in enumerate(pending):
        if index and limits.politeness_delay_ms:
            await ctx.sleep(limits.politeness_delay_ms / 1000)

        url = item["url"]
        try:
            fetched = await ctx.fetcher.fetch(url, timeout_ms=limits.timeout_ms)
        except Exception as exc:
            fetched = FetchResult(status=None, body="", final_url=None)
            error = f"{exc.__class__.__name__}: {exc}"
        else:
            error = fetched.trace.error if fetched.trace else None
        if fetched.trace:
            state.trace.append(fetched.trace.to_dict())

        if not fetched.ok:
            fail_count += 1
            ctx.events.emit(
                run.id,
                customer_id,
                Stage.DETAILS,
                EventCode.SCRAPE_FETCH_FAIL,
                "warn",
                f"Detail fetch failed for {url}",
                {"url": url, "status": fetched.status, "error": error},
            )
            continue

        ctx.events.emit(
            run.id,
            customer_id,
            Stage.DETAILS,
            EventCode.SCRAPE_FETCH_OK,
            "info",
            f"Fetched {url}",
            {
                "url": url,
                "status": fetched.status,
                "duration_ms": fetched.trace.duration_ms if fetched.trace else None,
            },
        )

        body, truncated = truncate_html(fetched.body, ctx.settings.max_html_bytes)
        state.html_sample, state.sample_url = body, url
        details = extract(
            FetchResult(status=fetched.status, body=body, final_url=fetched.final_url or url, trace=fetched.trace),
            profile.vertical,
            ctx.settings,
        )
        ctx.db.save_item_details(customer_id, source_id, item["source_item_id"], details)
        ok_count += 1
        ctx.events.emit(
            run.id,
            customer_id,
            Stage.DETAILS,
            EventCode.SCRAPE_PARSE_OK,
            "info",
            f"Extracted {item['source_item_id']}",
            {
                "source_item_id": item["source_item_id"],
                "title": details.title,
                "price_amount": details.price_amount,
                "image_count": len(details.image_urls),
                "truncated": truncated,
            },
        )

    ctx.events.emit(
        run.id,
        customer_id,
        Stage.DETAILS,
        EventCode.DETAILS_DONE,
        "info",
        f"Details done: {ok_count} ok, {fail_count} failed",
        {"ok_count": ok_count, "fail_count": fail_count},
    )


def _fail_precondition(run: Run, code: str, message: str, meta: dict, ctx: JobContext) -> Outcome:
    ctx.runs.mark_failed(run.customer_id, run.id, code, message)
    ctx.events.emit(
        run.id,
        run.customer_id,
        Stage.SYSTEM,
        EventCode.SYSTEM_JOB_FAIL,
        "error",
        message,
        {**meta, "error_code": code, "retryable": False},
    )
    return DeadLetter(f"{code}: {message}")


def _fail_run(job: QueuedJob, run: Run, exc: Exception, ctx: JobContext, state: CrawlState) -> Outcome:
    error = classify_error(exc)
    message = str(exc) or exc.__class__.__name__
    logger.warning("Run %s failed (%s): %s", run.id, error.code, message, exc_info=not error.retryable)

    ctx.runs.mark_failed(run.customer_id, run.id, error.code, message)
    ctx.events.emit(
        run.id,
        run.customer_id,
        Stage.SYSTEM,
        EventCode.SYSTEM_JOB_FAIL,
        "error",
        message,
        {
            "job_id": job.id,
            "attempt": job.attempts,
            "error_code": error.code,
            "retryable": error.retryable,
            "exception": exc.__class__.__name__,
        },
    )
    capture_diagnostics(run, error.code, message, ctx, state)

    if error.retryable and job.attempts < ctx.settings.max_attempts:
        return Retry(ctx.settings.retry_delay_seconds)
    return DeadLetter(f"{error.code}: {message}")


def capture_diagnostics(run: Run, error_code: str, message: str, ctx: JobContext, state: CrawlState) -> list[str]:
    """Save a trace JSON and an HTML sample for a failed run.

    Best effort: storage problems are logged and never affect the run outcome.
    Returns the keys written.
    """
    if ctx.storage is None:
        return []

    prefix = f"{run.customer_id}/runs/{run.id}"
    written: list[str] = []
    try:
        trace = {
            "run_id": run.id,
            "source_id": run.source_id,
            "error_code": error_code,
            "error_message": message,
            "discovery": state.discovery_meta,
            "requests": state.trace,
        }
        data = json.dumps(trace, indent=2, default=str).encode("utf-8")
        key = f"{prefix}/trace.json"
        ctx.storage.put_object(DIAGNOSTICS_BUCKET, key, data, "application/json")
        ctx.db.add_diagnostic(run.customer_id, run.id, "trace", DIAGNOSTICS_BUCKET, key, "application/json", len(data))
        written.append(key)

        if state.html_sample:
            sample = state.html_sample.encode("utf-8")
            key = f"{prefix}/sample.html"
            ctx.storage.put_object(DIAGNOSTICS_BUCKET, key, sample, "text/html")
            ctx.db.add_diagnostic(run.customer_id, run.id, "html_sample", DIAGNOSTICS_BUCKET, key, "text/html", len(sample))
            written.append(key)
    except Exception as exc:
        logger.warning("Diagnostic capture failed for run %s: %r", run.id, exc)
    return written


JOB_HANDLERS: dict[str, Callable[[QueuedJob, JobContext], Awaitable[Outcome]]] = {
    CRAWL_JOB: process_crawl_job,
}
