"""
FastAPI app entrypoint.

HTTP: device registration, preferences, notification history, change-event intake, stats.
Background: APScheduler jobs for change events, quiet-hours deliveries, retries and maintenance.
"""
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from apscheduler.schedulers.background import BackgroundScheduler
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load .env from backend/ before any app code
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

from listing_alerts.api.routes import events, notifications, preferences, push, stats
from listing_alerts.config import settings
from listing_alerts.core.constants import (
    CHANGE_EVENTS_INTERVAL_SECONDS,
    CHANGE_EVENTS_JOB_ID,
    DEFERRED_INTERVAL_SECONDS,
    DEFERRED_JOB_ID,
    MAINTENANCE_INTERVAL_SECONDS,
    MAINTENANCE_JOB_ID,
    RETRY_INTERVAL_SECONDS,
    RETRY_JOB_ID,
)
from listing_alerts.scheduler.change_events_job import run_change_events_job
from listing_alerts.scheduler.deferred_job import run_deferred_job
from listing_alerts.scheduler.maintenance_job import run_maintenance_job
from listing_alerts.scheduler.retry_job import run_retry_job

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_scheduler = BackgroundScheduler()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.scheduler_enabled:
        # Each job also takes a DB lease, so overlapping runs and other replicas skip instead of doubling up
        _scheduler.add_job(
            run_change_events_job, "interval", seconds=CHANGE_EVENTS_INTERVAL_SECONDS, id=CHANGE_EVENTS_JOB_ID
        )
        _scheduler.add_job(run_deferred_job, "interval", seconds=DEFERRED_INTERVAL_SECONDS, id=DEFERRED_JOB_ID)
        _scheduler.add_job(run_retry_job, "interval", seconds=RETRY_INTERVAL_SECONDS, id=RETRY_JOB_ID)
        _scheduler.add_job(
            run_maintenance_job, "interval", seconds=MAINTENANCE_INTERVAL_SECONDS, id=MAINTENANCE_JOB_ID
        )
        _scheduler.start()
        app.state.scheduler = _scheduler
        logger.info("Scheduler started with %s jobs", len(_scheduler.get_jobs()))
    else:
        logger.info("SCHEDULER_ENABLED=false; serving API only")
    yield
    if _scheduler.running:
        _scheduler.shutdown(wait=False)


app = FastAPI(title="Listing Alerts", version="0.1.0", lifespan=lifespan)

# CORS: dev origins + optional CORS_ORIGINS env (comma-separated) for the admin dashboard
_cors_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
_cors_extra = os.getenv("CORS_ORIGINS", "")
if _cors_extra:
    _cors_origins.extend(o.strip() for o in _cors_extra.split(",") if o.strip())
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(push.router, tags=["push"])
app.include_router(preferences.router, tags=["preferences"])
app.include_router(notifications.router, tags=["notifications"])
app.include_router(events.router, tags=["events"])
app.include_router(stats.router, tags=["stats"])


@app.get("/", include_in_schema=False)
def root():
    return {"message": "Listing Alerts API", "docs": "/docs", "health": "/health"}


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
