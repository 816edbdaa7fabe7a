"""FastAPI application factory."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from ..config import Settings
from ..db import InventoryDatabase
from ..job_queue import JobQueue
from ..runs import RunManager
from ..scheduler import init_scheduler
from .routes import router


def create_app(
    db: InventoryDatabase | None = None,
    settings: Settings | None = None,
    auto_start_scheduler: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or Settings.from_env()
    # Initialize database early so lifespan can use it
    database = db or InventoryDatabase(settings.db_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan - start/stop scheduler."""
        scheduler = init_scheduler(database, settings)
        app.state.scheduler = scheduler
        if auto_start_scheduler:
            scheduler.start()

        yield

        if scheduler.is_running:
            scheduler.stop()

    app = FastAPI(
        title="Inventory Crawler",
        description="Crawl customer inventory sites and track runs",
        version="0.1.0",
        lifespan=lifespan,
    )

    queue = JobQueue(database)
    app.state.db = database
    app.state.settings = settings
    app.state.queue = queue
    app.state.runs = RunManager(database, queue, settings)

    app.include_router(router)

    return app
