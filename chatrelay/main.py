import asyncio
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import func
from sqlalchemy.orm import Session

from chatrelay.config import settings
from chatrelay.database import SessionLocal, get_db
from chatrelay.logging_config import get_logger, setup_logging
from chatrelay.models import Conversation, Job, Message
from chatrelay.routers import admin, chat, webhook
from chatrelay.services import job_service

setup_logging(settings.log_level)

app = FastAPI(
    title="Chatrelay API",
    description="Messaging pipeline between WhatsApp channels, an AI responder and human agents",
    version="0.1.0",
)


def _cors_origins() -> list[str]:
    """Comma-separated CORS_ALLOW_ORIGINS; empty or unset means any origin."""
    raw = os.environ.get("CORS_ALLOW_ORIGINS", "")
    return [origin.strip() for origin in raw.split(",") if origin.strip()] or ["*"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(chat.router)
app.include_router(admin.router)

worker_logger = get_logger("job_worker")
_worker_tasks: list[asyncio.Task] = []


def _is_job_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.job_worker_enabled


def _drain_once(queue: str) -> dict:
    with SessionLocal() as db:
        return job_service.process_queue(db, queue, limit=settings.job_process_limit)


def _release_stale() -> dict:
    with SessionLocal() as db:
        return job_service.release_stale_jobs(db, stale_seconds=settings.job_stale_seconds)


async def _job_worker_loop(queue: str) -> None:
    interval_seconds = max(settings.job_worker_interval_seconds, 0.1)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            results = await asyncio.to_thread(_drain_once, queue)
            if results["claimed"]:
                worker_logger.info("Job worker processed", extra={"context": {"queue": queue, **results}})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                "Job worker loop failed",
                extra={"context": {"queue": queue, "error": str(exc)}},
            )


async def _stale_job_reaper_loop() -> None:
    while True:
        try:
            await asyncio.sleep(max(settings.job_stale_seconds / 2, 1))
            await asyncio.to_thread(_release_stale)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error("Stale job reaper failed", extra={"context": {"error": str(exc)}})


@app.on_event("startup")
async def start_job_workers() -> None:
    if not _is_job_worker_enabled() or _worker_tasks:
        return
    for queue in job_service.QUEUES:
        for _ in range(max(settings.job_worker_concurrency, 1)):
            _worker_tasks.append(asyncio.create_task(_job_worker_loop(queue)))
    _worker_tasks.append(asyncio.create_task(_stale_job_reaper_loop()))
    worker_logger.info(
        "Job workers started",
        extra={"context": {"queues": list(job_service.QUEUES), "concurrency": settings.job_worker_concurrency}},
    )


@app.on_event("shutdown")
async def stop_job_workers() -> None:
    for task in _worker_tasks:
        task.cancel()
    for task in _worker_tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    _worker_tasks.clear()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    """Row counts, plus pending jobs per queue so a stuck worker is visible."""
    pending = dict(
        db.query(Job.queue, func.count(Job.id)).filter(Job.status == job_service.PENDING).group_by(Job.queue).all()
    )
    return {
        "status": "ok",
        "conversations": db.query(Conversation).count(),
        "messages": db.query(Message).count(),
        "pending_jobs": {queue: pending.get(queue, 0) for queue in job_service.QUEUES},
    }
