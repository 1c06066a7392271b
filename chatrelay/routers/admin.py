"""Operator endpoints: drain job queues, reset bridge detection."""

import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from chatrelay.channels.registry import get_bridge_detector
from chatrelay.config import settings
from chatrelay.database import get_db
from chatrelay.logging_config import get_logger
from chatrelay.services import job_service

logger = get_logger("admin")

router = APIRouter(prefix="/admin", tags=["admin"])


class BridgeCacheClearRequest(BaseModel):
    url: Optional[str] = None


def _require_admin_token(provided: Optional[str]) -> None:
    expected = os.environ.get("ADMIN_TOKEN")
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


@router.post("/jobs/process")
def process_jobs(
    queue: Optional[str] = None,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Run one pass over the job queues (all of them unless ``queue`` is given)."""
    _require_admin_token(x_admin_token)
    if queue is not None and queue not in job_service.QUEUES:
        raise HTTPException(status_code=400, detail=f"Unknown queue '{queue}'")

    released = job_service.release_stale_jobs(db, stale_seconds=settings.job_stale_seconds)
    results = {}
    for name in [queue] if queue else job_service.QUEUES:
        results[name] = job_service.process_queue(db, name, limit=settings.job_process_limit)
    if released["released"] or released["failed"]:
        results["released_stale"] = released["released"]
        results["failed_stale"] = released["failed"]
    logger.info("Job queues processed on demand", extra={"context": results})
    return results


@router.post("/bridge-cache/clear")
def clear_bridge_cache(
    request: Optional[BridgeCacheClearRequest] = None,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    url = request.url if request else None
    get_bridge_detector().clear_cache(url)
    logger.info("Bridge detection cache cleared", extra={"context": {"url": url or "all"}})
    return {"status": "cleared", "url": url}
