"""FastAPI application.

Run with ``uvicorn mhealth_api.main:app``. Scheduled jobs are exposed under
``/jobs`` for an external cron; set ``MHEALTH_SCHEDULER_ENABLED=1`` to run them
from an in-process thread instead.
"""
from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
import logging
import time
from mhealth_core.config import Settings
from mhealth_core.scheduler import JobScheduler
from mhealth_core.db import Base, engine
from mhealth_core.logging_config import configure_logging
from .routes import users, routines, logs, profile, notifications, variables, jobs

logger = logging.getLogger("mhealth_api")

configure_logging()
settings = Settings()
scheduler = JobScheduler(settings=settings)

app = FastAPI(title="Modular Health API", version="0.1.0")

# Core middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def request_logger(request, call_next):  # type: ignore
    start = time.time()
    path = request.url.path
    if path.startswith("/health") or path.startswith("/api/health"):
        return await call_next(request)
    response = await call_next(request)
    duration_ms = int((time.time() - start) * 1000)
    logger.info("http %s %s -> %s (%dms)", request.method, path, response.status_code, duration_ms)
    return response

ROUTERS = [users.router, routines.router, logs.router, profile.router, notifications.router, variables.router, jobs.router]

# Group API routes under /api for the frontend, while keeping root mounting for cron callers and scripts.
api_router = APIRouter(prefix="/api")
for r in ROUTERS:
    api_router.include_router(r)
app.include_router(api_router)
for r in ROUTERS:
    app.include_router(r)


@app.on_event("startup")
async def on_startup():
    Base.metadata.create_all(bind=engine)
    if settings.scheduler_enabled:
        scheduler.start()
    logger.info("api.start version=%s scheduler=%s", app.version, "on" if settings.scheduler_enabled else "external")


@app.on_event("shutdown")
async def on_shutdown():
    if scheduler.is_running():
        scheduler.stop()
    logger.info("api.stop")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/health")
async def api_health():
    return {
        "backend": "ok",
        "scheduler": "running" if scheduler.is_running() else ("enabled" if settings.scheduler_enabled else "external"),
        "last_run_at": scheduler.last_run_at.isoformat() if scheduler.last_run_at else None,
        "push": "configured" if settings.push_configured else "disabled",
        "match_tolerance_minutes": settings.match_tolerance_minutes,
        "cadence_minutes": settings.scheduler_cadence_minutes,
        "version": app.version,
    }

__all__ = ["app", "scheduler", "settings"]
