"""
cleanup.py — Retention maintenance routes.

Routes:
  DELETE /cleanup        — delete crises older than the retention window
  GET    /cleanup/stats  — how much a cleanup would remove right now

A record is "old" when either its ingestion time (created_at) or its event
time (pubDate) is before the cutoff. The delete route is rate limited since
it is the only write path exposed over HTTP.
"""

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from crisis_monitor.core.config import settings
from crisis_monitor.core.rate_limit import limiter
from crisis_monitor.models.incident import CleanupResponse, CleanupStatsResponse
from crisis_monitor.routes.crises import get_repository
from crisis_monitor.services.repository import CrisisRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cleanup", tags=["cleanup"])


def retention_cutoff() -> datetime:
    return datetime.now(tz=timezone.utc) - timedelta(days=settings.retention_days)


@router.delete("", response_model=CleanupResponse)
@limiter.limit(settings.cleanup_rate_limit)
async def cleanup(request: Request, repo: CrisisRepository = Depends(get_repository)):
    """Delete every crisis older than `retention_days`."""
    cutoff = retention_cutoff()
    try:
        deleted = await repo.delete_older_than(cutoff)
    except Exception as exc:
        logger.error("Cleanup failed: %s", exc)
        return JSONResponse(status_code=500, content={"error": "Failed to cleanup old entries"})
    return CleanupResponse(success=True, deleted_count=deleted, cutoff_date=cutoff)


@router.get("/stats", response_model=CleanupStatsResponse)
async def cleanup_stats(repo: CrisisRepository = Depends(get_repository)):
    """Counts of total vs. expired entries, for a maintenance dashboard."""
    cutoff = retention_cutoff()
    try:
        old = await repo.count_older_than(cutoff)
        total = await repo.count()
    except Exception as exc:
        logger.error("Cleanup stats failed: %s", exc)
        return JSONResponse(status_code=500, content={"error": "Failed to get cleanup stats"})
    percentage = round(old / total * 100) if total > 0 else 0
    return CleanupStatsResponse(
        total_entries=total,
        old_entries=old,
        cutoff_date=cutoff,
        percentage_old=percentage,
    )
