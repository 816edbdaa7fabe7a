"""FastAPI routes for the crawl API.

The calling customer is identified by the ``X-Customer-Id`` header; the
service in front of this API is responsible for authenticating it.
"""

from datetime import timedelta

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from pydantic import BaseModel

from ..errors import NOT_FOUND, PreconditionError
from ..models import SiteProfile
from ..scheduler import get_scheduler

router = APIRouter()


class SourceCreate(BaseModel):
    name: str
    base_url: str
    profile: dict | None = None


class ScheduleUpdate(BaseModel):
    enabled: bool = True
    interval_minutes: int = 1440


class CrawlRequest(BaseModel):
    source_id: int
    trigger: str = "api"


def get_db(request: Request):
    """Get database instance from app state."""
    return request.app.state.db


def get_runs(request: Request):
    return request.app.state.runs


def get_customer_id(x_customer_id: str | None = Header(default=None)) -> str:
    if not x_customer_id or not x_customer_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Customer-Id header required")
    return x_customer_id.strip()


def _validated_profile(profile: dict | None) -> dict | None:
    if profile is None:
        return None
    try:
        return SiteProfile.from_dict(profile).to_dict()
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid site profile: {exc}") from exc


@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}


# --- Sources ---


@router.post("/api/sources", status_code=status.HTTP_201_CREATED)
async def create_source(
    body: SourceCreate,
    customer_id: str = Depends(get_customer_id),
    db=Depends(get_db),
):
    profile = _validated_profile(body.profile)
    if profile is None:
        profile = SiteProfile(seed_urls=(body.base_url,)).to_dict()
    source_id = db.add_source(customer_id, body.name, body.base_url, profile)
    return db.get_source(customer_id, source_id)


@router.get("/api/sources")
async def list_sources(customer_id: str = Depends(get_customer_id), db=Depends(get_db)):
    return {"sources": db.list_sources(customer_id)}


@router.put("/api/sources/{source_id}/schedule")
async def update_schedule(
    source_id: int,
    body: ScheduleUpdate,
    customer_id: str = Depends(get_customer_id),
    db=Depends(get_db),
):
    if db.get_source(customer_id, source_id) is None:
        raise HTTPException(status_code=404, detail="Source not found")
    if body.interval_minutes < 1:
        raise HTTPException(status_code=400, detail="interval_minutes must be positive")
    db.set_schedule(customer_id, source_id, body.enabled, body.interval_minutes)
    return {"schedules": db.list_schedules(customer_id)}


# --- Runs ---


@router.post("/api/runs/crawl", status_code=status.HTTP_201_CREATED)
async def request_crawl(
    body: CrawlRequest,
    response: Response,
    customer_id: str = Depends(get_customer_id),
    runs=Depends(get_runs),
):
    try:
        result = runs.create_run(customer_id, body.source_id, trigger=body.trigger)
    except PreconditionError as exc:
        code = 404 if exc.code == NOT_FOUND else 400
        raise HTTPException(status_code=code, detail=str(exc)) from exc

    if result.deduplicated:
        response.status_code = status.HTTP_200_OK
    return result.to_dict()


@router.get("/api/runs")
async def list_runs(
    source_id: int | None = Query(default=None),
    run_status: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    customer_id: str = Depends(get_customer_id),
    runs=Depends(get_runs),
):
    return {"runs": [run.to_dict() for run in runs.list_runs(customer_id, source_id, run_status, limit)]}


@router.get("/api/runs/stale")
async def stale_runs(
    minutes: int | None = Query(default=None, ge=1),
    customer_id: str = Depends(get_customer_id),
    runs=Depends(get_runs),
):
    threshold = timedelta(minutes=minutes) if minutes else None
    return {"runs": [run.to_dict() for run in runs.find_stale_runs(customer_id, threshold)]}


@router.get("/api/runs/{run_id}")
async def get_run(run_id: int, customer_id: str = Depends(get_customer_id), runs=Depends(get_runs)):
    run = runs.get_run(customer_id, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run.to_dict()


@router.get("/api/runs/{run_id}/events")
async def get_run_events(
    run_id: int,
    customer_id: str = Depends(get_customer_id),
    runs=Depends(get_runs),
    db=Depends(get_db),
):
    if runs.get_run(customer_id, run_id) is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return {
        "events": db.list_run_events(customer_id, run_id),
        "diagnostics": db.list_diagnostics(customer_id, run_id),
    }


# --- Items ---


@router.get("/api/items")
async def list_items(
    source_id: int | None = Query(default=None),
    include_removed: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=1000),
    customer_id: str = Depends(get_customer_id),
    db=Depends(get_db),
):
    items = db.list_items(customer_id, source_id, active_only=not include_removed, limit=limit)
    return {"items": items}


# --- Queue ---


@router.get("/api/queue")
async def queue_status(request: Request, customer_id: str = Depends(get_customer_id)):
    scheduler = get_scheduler()
    return {
        "queue": request.app.state.queue.get_queue_status(),
        "scheduler": scheduler.get_status() if scheduler else None,
    }
