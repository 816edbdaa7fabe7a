#!/usr/bin/env python3
"""CLI entry point for the inventory crawler."""

import argparse
import asyncio
import json
import subprocess
import sys
import time
from pathlib import Path
from urllib.parse import urlparse

from .config import Settings, setup_logging
from .db import InventoryDatabase
from .discovery import discover
from .errors import CrawlerError
from .extractors import extract, list_extractors
from .fetcher import HttpFetcher
from .job_queue import JobQueue
from .models import SiteProfile
from .runs import RunManager


def load_profile(path: str | None, url: str) -> SiteProfile:
    """Site profile from a JSON file, or a default profile seeded with url."""
    if not path:
        return SiteProfile(seed_urls=(url,))
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    profile = SiteProfile.from_dict(data)
    if not profile.seed_urls:
        profile = SiteProfile.from_dict({**profile.to_dict(), "seedUrls": [url]})
    return profile


async def run_discover(url: str, profile: SiteProfile, settings: Settings) -> int:
    """Run discovery once and print what was found."""
    async with HttpFetcher(user_agent=settings.user_agent) as fetcher:
        result = await discover(profile, fetcher, base_url=url, detail_tokens=settings.detail_url_tokens)

    print(f"\nDiscovered {len(result.items)} items:")
    for i, item in enumerate(result.items[:20], 1):
        print(f"  {i}. {item.source_item_id} - {item.url}")
    if len(result.items) > 20:
        print(f"  ... and {len(result.items) - 20} more")
    print(json.dumps(result.meta, indent=2, default=str))
    return 0


async def run_extract(url: str, vertical: str, settings: Settings) -> int:
    """Fetch one page and print the extracted fields."""
    async with HttpFetcher(user_agent=settings.user_agent) as fetcher:
        fetched = await fetcher.fetch(url)

    if not fetched.ok:
        error = fetched.trace.error if fetched.trace else None
        print(f"Error: fetch failed (status={fetched.status}, error={error})", file=sys.stderr)
        return 1

    details = extract(fetched, vertical, settings)
    print(json.dumps(details.to_dict(), indent=2, ensure_ascii=False))
    return 0


def run_serve() -> int:
    """Run both API server and worker with auto-restart on crash."""
    import signal
    import threading

    processes: dict[str, subprocess.Popen] = {}
    shutdown_event = threading.Event()
    root = Path(__file__).parent.parent

    def start_webserver() -> subprocess.Popen:
        return subprocess.Popen(
            [
                sys.executable, "-m", "uvicorn",
                "inventory_crawler.webapp.app:create_app",
                "--factory",
                "--host", "0.0.0.0",
                "--port", "8011",
            ],
            cwd=root,
        )

    def start_worker() -> subprocess.Popen:
        return subprocess.Popen(
            [sys.executable, "-m", "inventory_crawler.cli", "--worker"],
            cwd=root,
        )

    def monitor_process(name: str, starter) -> None:
        """Monitor a process and restart it on crash."""
        while not shutdown_event.is_set():
            proc = processes.get(name)
            if proc is None or proc.poll() is not None:
                if proc is not None:
                    print(f"[{name}] Process exited with code {proc.returncode}, restarting in 2s...")
                    time.sleep(2)
                else:
                    print(f"[{name}] Starting...")
                processes[name] = starter()
            time.sleep(1)

    def shutdown(signum, frame):
        print("\nShutting down...")
        shutdown_event.set()
        for name, proc in processes.items():
            if proc and proc.poll() is None:
                print(f"[{name}] Terminating...")
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    print("=" * 60)
    print("Starting API server (port 8011) and worker")
    print("Press Ctrl+C to stop")
    print("=" * 60)

    for name, starter in (("webserver", start_webserver), ("worker", start_worker)):
        threading.Thread(target=monitor_process, args=(name, starter), daemon=True).start()

    try:
        while not shutdown_event.is_set():
            time.sleep(0.5)
    except KeyboardInterrupt:
        shutdown(None, None)

    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Inventory crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m inventory_crawler.cli --worker                          # Run the job queue worker
  python -m inventory_crawler.cli --serve                           # Run API server + worker (dev mode)
  python -m inventory_crawler.cli --add-source acme https://cars.example --profile profile.json
  python -m inventory_crawler.cli --enqueue acme 1                  # Request a crawl of source 1
  python -m inventory_crawler.cli --discover https://cars.example   # One-off discovery
  python -m inventory_crawler.cli --extract https://cars.example/bil/volvo-xc90 --vertical vehicle
  python -m inventory_crawler.cli --events 12 --customer acme       # Show a run's event log
        """,
    )

    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--worker", "-w", action="store_true", help="Run the job queue worker")
    group.add_argument("--serve", action="store_true", help="Run API server and worker together (restarts on crash)")
    group.add_argument("--add-source", nargs=2, metavar=("CUSTOMER", "URL"), help="Register a site to crawl")
    group.add_argument("--enqueue", "-e", nargs=2, metavar=("CUSTOMER", "SOURCE_ID"), help="Request a crawl run")
    group.add_argument("--discover", metavar="URL", help="Run discovery against a URL and print the results")
    group.add_argument("--extract", metavar="URL", help="Fetch a detail page and print extracted fields")
    group.add_argument("--events", metavar="RUN_ID", type=int, help="Print the event log of a run")
    group.add_argument("--list", "-l", action="store_true", help="List available extractors")

    parser.add_argument("--profile", help="Site profile JSON file (--add-source, --discover)")
    parser.add_argument("--name", help="Source name (--add-source, defaults to the host)")
    parser.add_argument("--vertical", default="generic", help="Extractor vertical (--extract)")
    parser.add_argument("--customer", help="Customer id (--events)")

    args = parser.parse_args(argv)
    settings = Settings.from_env()
    setup_logging(settings.log_level)

    if args.list:
        print("Available extractors:")
        for name in list_extractors():
            print(f"  - {name}")
        return 0

    if args.serve:
        return run_serve()

    if args.worker:
        from .worker import run_worker
        print("Starting job queue worker...")
        print("Press Ctrl+C to stop")
        asyncio.run(run_worker(settings))
        return 0

    try:
        if args.discover:
            return asyncio.run(run_discover(args.discover, load_profile(args.profile, args.discover), settings))
        if args.extract:
            return asyncio.run(run_extract(args.extract, args.vertical, settings))
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    db = InventoryDatabase(settings.db_path)

    if args.add_source:
        customer_id, url = args.add_source
        try:
            profile = load_profile(args.profile, url)
        except (OSError, ValueError) as e:
            print(f"Error: invalid profile: {e}", file=sys.stderr)
            return 1
        name = args.name or urlparse(url).netloc or url
        source_id = db.add_source(customer_id, name, url, profile.to_dict())
        print(f"Source added: {name} (source_id={source_id})")
        return 0

    if args.enqueue:
        customer_id, raw_source_id = args.enqueue
        try:
            source_id = int(raw_source_id)
        except ValueError:
            print(f"Error: SOURCE_ID must be an integer, got '{raw_source_id}'", file=sys.stderr)
            return 1
        runs = RunManager(db, JobQueue(db), settings)
        try:
            result = runs.create_run(customer_id, source_id, trigger="cli")
        except CrawlerError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        if result.deduplicated:
            print(f"Run already in progress: run_id={result.run_id} (job_id={result.job_id})")
        else:
            print(f"Run created: run_id={result.run_id} (job_id={result.job_id})")
        return 0

    if args.events is not None:
        if not args.customer:
            print("Error: --events requires --customer", file=sys.stderr)
            return 1
        run = db.get_run(args.customer, args.events)
        if run is None:
            print(f"Error: run {args.events} not found", file=sys.stderr)
            return 1
        print(f"Run {run['id']} [{run['status']}] trigger={run['trigger']} error={run['error_code']}")
        for event in db.list_run_events(args.customer, args.events):
            print(f"  {event['created_at']} {event['level']:<5} {event['stage']:<10} {event['event_code']}: {event['message']}")
        return 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
