"""Durable job queue on the ``jobs`` table.

Workers claim rows with ``FOR UPDATE SKIP LOCKED`` so several workers can
drain the same named queue. Delivery is at-least-once: a job whose worker
dies stays PROCESSING until ``release_stale_jobs`` hands it out again, so
handlers must be idempotent.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from chatrelay.logging_config import bind, get_logger
from chatrelay.models import Job

logger = get_logger("job_service")

AI_QUEUE = "ai-responses"
OUTBOUND_QUEUE = "outbound"
QUEUES = (AI_QUEUE, OUTBOUND_QUEUE)

PENDING = "PENDING"
PROCESSING = "PROCESSING"
DONE = "DONE"
FAILED = "FAILED"


@dataclass
class JobHandler:
    run: Callable[[Session, dict], None]
    on_failure: Optional[Callable[[Session, dict, str], None]] = None
    retry_backoff_seconds: Callable[[], float] = lambda: 0.0


def _handlers() -> dict[str, JobHandler]:
    from chatrelay.services import ai_service, dispatch_service

    return {
        ai_service.JOB_KIND: JobHandler(
            run=ai_service.run_job,
            on_failure=ai_service.on_job_failed,
            retry_backoff_seconds=ai_service.retry_backoff_seconds,
        ),
        dispatch_service.JOB_KIND: JobHandler(run=dispatch_service.run_job),
    }


def enqueue_job(
    db: Session,
    *,
    queue: str,
    kind: str,
    payload: dict[str, Any],
    max_attempts: int = 1,
    delay_seconds: float = 0,
) -> Job:
    now = datetime.now(timezone.utc)
    job = Job(
        queue=queue,
        kind=kind,
        payload=payload,
        status=PENDING,
        attempts=0,
        max_attempts=max(max_attempts, 1),
        next_attempt_at=now + timedelta(seconds=delay_seconds) if delay_seconds else None,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    db.flush()
    logger.info(
        "Job enqueued",
        extra={"context": {"job_id": str(job.id), "queue": queue, "kind": kind, "payload": payload}},
    )
    return job


def claim_jobs(db: Session, *, queue: str, limit: int = 10) -> list[Job]:
    now = datetime.now(timezone.utc)
    jobs = (
        db.query(Job)
        .filter(
            Job.queue == queue,
            Job.status == PENDING,
            or_(Job.next_attempt_at.is_(None), Job.next_attempt_at <= now),
        )
        .order_by(Job.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .all()
    )
    for job in jobs:
        job.status = PROCESSING
        job.attempts = (job.attempts or 0) + 1
        job.updated_at = now
    db.commit()
    return jobs


def start_job(db: Session, job_id, attempt: int) -> bool:
    """Refresh the claim right before the handler runs.

    A batch is claimed at once, so later jobs can sit long enough for
    ``release_stale_jobs`` to hand them out again. The stamp only lands while
    the row is still PROCESSING on this attempt; False means another worker
    owns the job now.
    """
    touched = (
        db.query(Job)
        .filter(Job.id == job_id, Job.status == PROCESSING, Job.attempts == attempt)
        .update({Job.updated_at: datetime.now(timezone.utc)}, synchronize_session=False)
    )
    db.commit()
    return touched == 1


def complete_job(db: Session, job: Job) -> None:
    job.status = DONE
    job.last_error = None
    job.next_attempt_at = None
    job.updated_at = datetime.now(timezone.utc)
    db.commit()


def fail_job(db: Session, job: Job, error: str, *, retry_backoff_seconds: float = 0.0) -> bool:
    """Record a failed attempt. Returns True when another attempt is scheduled."""
    now = datetime.now(timezone.utc)
    job.last_error = error[:500]
    job.updated_at = now
    if job.attempts >= job.max_attempts:
        job.status = FAILED
        job.next_attempt_at = None
        db.commit()
        return False
    job.status = PENDING
    job.next_attempt_at = now + timedelta(seconds=retry_backoff_seconds)
    db.commit()
    return True


def release_stale_jobs(db: Session, *, stale_seconds: int) -> dict[str, int]:
    """Hand PROCESSING jobs abandoned by a dead worker back to the queue."""
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=stale_seconds)
    stale = db.query(Job).filter(Job.status == PROCESSING, Job.updated_at < cutoff).all()
    results = {"released": 0, "failed": 0}
    for job in stale:
        if job.attempts >= job.max_attempts:
            job.status = FAILED
            job.last_error = "stale_processing"
            results["failed"] += 1
        else:
            job.status = PENDING
            job.next_attempt_at = None
            results["released"] += 1
        job.updated_at = datetime.now(timezone.utc)
    db.commit()
    if stale:
        logger.warning("Stale jobs released", extra={"context": results})
    return results


def process_queue(db: Session, queue: str, *, limit: int = 10) -> dict[str, int]:
    """Claim up to ``limit`` jobs from ``queue`` and run them."""
    results = {"claimed": 0, "done": 0, "failed": 0, "retry_scheduled": 0, "skipped": 0}
    jobs = claim_jobs(db, queue=queue, limit=limit)
    results["claimed"] = len(jobs)
    if not jobs:
        return results

    # Commits expire the rows; keep what was claimed.
    claimed = [(job, job.id, job.kind, dict(job.payload or {}), job.attempts) for job in jobs]
    handlers = _handlers()
    for job, job_id, kind, payload, attempt in claimed:
        job_logger = bind(logger, job_id=str(job_id), queue=queue, kind=kind, attempt=attempt)
        handler = handlers.get(kind)
        if handler is None:
            job.attempts = job.max_attempts
            fail_job(db, job, f"unknown_job_kind:{kind}")
            job_logger.error("Job kind has no handler")
            results["failed"] += 1
            continue

        if not start_job(db, job_id, attempt):
            job_logger.warning("Job was released before it started; skipping")
            results["skipped"] += 1
            continue

        try:
            handler.run(db, payload)
            db.commit()
        except Exception as exc:
            db.rollback()
            job_logger.warning("Job attempt failed", context={"error": str(exc)})
            if fail_job(db, job, str(exc), retry_backoff_seconds=handler.retry_backoff_seconds()):
                results["retry_scheduled"] += 1
                continue
            results["failed"] += 1
            job_logger.error("Job failed permanently", context={"error": str(exc)})
            if handler.on_failure is not None:
                try:
                    handler.on_failure(db, payload, str(exc))
                    db.commit()
                except Exception as hook_exc:
                    db.rollback()
                    job_logger.error("Job failure hook raised", context={"error": str(hook_exc)})
            continue

        complete_job(db, job)
        results["done"] += 1
        job_logger.info("Job done")

    return results
