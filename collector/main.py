from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, status

from collector.config import settings
from collector.errors import SchedulerOverlapError, SchedulerStopTimeout, SourceNotFoundError, StoreError
from collector.ratelimit import RateLimitRegistry
from collector.scheduler import CrawlScheduler
from collector.store import Store
from collector.utils.logging import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = Store(settings.db_path)
    store.init_schema()
    reset = store.reset_running_sources()
    if reset:
        logger.warning("stale_running_sources_reset", count=reset)
    registry = RateLimitRegistry.from_settings(settings)
    scheduler = CrawlScheduler(settings, store, registry)

    # Only start the cron in non-test environments
    if settings.app_env != "test":
        scheduler.start()

    app.state.store = store
    app.state.scheduler = scheduler

    yield

    try:
        await scheduler.stop(settings.stop_timeout_seconds)
    except SchedulerStopTimeout as exc:
        logger.error("scheduler_stop_timeout", error=str(exc))
    finally:
        store.close()


app = FastAPI(
    title="Collector",
    description=(
        "Periodically ingests articles and comment trees from Reddit, Hacker News "
        "and Semantic Scholar into a local SQLite database."
    ),
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health", tags=["Health"])
def health(request: Request):
    """Health check: database reachable and scheduler state."""
    scheduler: CrawlScheduler = request.app.state.scheduler
    try:
        request.app.state.store.ping()
        database = "ok"
    except StoreError as exc:
        logger.error("health_db_ping_failed", error=str(exc))
        database = "unavailable"

    body = {
        "status": "ok" if database == "ok" else "degraded",
        "service": "collector",
        "environment": settings.app_env,
        "database": database,
        "scheduler": scheduler.state,
        "crawl_running": scheduler.is_running,
    }
    if database != "ok":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=body)
    return body


@app.get("/schedule", tags=["Crawl"])
def schedule(request: Request):
    entry = request.app.state.scheduler.get_schedule()
    return {
        "source_id": entry.source_id,
        "source_type": entry.source_type,
        "next_run": entry.next_run,
        "last_run_at": entry.last_run_at,
    }


@app.get("/metrics", tags=["Crawl"])
def metrics(request: Request):
    return request.app.state.store.metrics()


@app.post("/crawl", tags=["Crawl"], status_code=status.HTTP_202_ACCEPTED)
async def crawl(request: Request):
    """Trigger a full crawl now; 409 if one is already running."""
    try:
        request.app.state.scheduler.run_now()
    except SchedulerOverlapError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return {"status": "accepted"}


@app.post("/sources/{source_id}/crawl", tags=["Crawl"], status_code=status.HTTP_202_ACCEPTED)
async def crawl_source(source_id: str, request: Request):
    """Crawl a single source now; 404 if unknown, 409 if it is already running."""
    try:
        await request.app.state.scheduler.run_single_source(source_id)
    except SourceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SchedulerOverlapError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return {"status": "accepted", "source_id": source_id}
