"""
crises.py — Snapshot and statistics routes.

Routes:
  GET /crises   — one-shot snapshot used by a viewer on load
  GET /stats    — total count + top countries (viewer refreshes every 30 s)

Both read from the `crises` collection through CrisisRepository. Store
failures answer 500 with an {"error": ...} body; a missing database
connection answers 503.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from crisis_monitor.core.config import settings
from crisis_monitor.core.database import get_db
from crisis_monitor.models.incident import Incident, StatsResponse, parse_timestamp
from crisis_monitor.services.repository import CrisisRepository

logger = logging.getLogger(__name__)

router = APIRouter(tags=["crises"])


def get_repository(db=Depends(get_db)) -> CrisisRepository:
    if db is None:
        raise HTTPException(status_code=503, detail="Database unavailable")
    return CrisisRepository.from_db(db)


def _to_incidents(docs: list[dict]) -> list[Incident]:
    incidents = []
    for doc in docs:
        try:
            incidents.append(Incident.from_document(doc))
        except ValidationError as exc:
            logger.warning("Skipping malformed crisis document %s: %s", doc.get("_id"), exc)
    return incidents


@router.get("/crises", response_model=list[Incident])
async def list_crises(
    since: Optional[str] = Query(default=None, description="ISO-8601; only records ingested at or after this"),
    limit: int = Query(default=settings.snapshot_default_limit, ge=1),
    repo: CrisisRepository = Depends(get_repository),
):
    """
    Most recent crises, newest pubDate first.

    `limit` is clamped to the configured maximum rather than rejected, and an
    unparsable `since` is ignored.
    """
    limit = min(limit, settings.snapshot_max_limit)
    since_dt = parse_timestamp(since)
    try:
        docs = await repo.snapshot(since_dt, limit)
    except Exception as exc:
        logger.error("Snapshot query failed: %s", exc)
        return JSONResponse(status_code=500, content={"error": "Failed to fetch crises"})
    return _to_incidents(docs)


@router.get("/stats", response_model=StatsResponse)
async def get_stats(repo: CrisisRepository = Depends(get_repository)):
    """Total incident count and the top countries by incident count."""
    try:
        total = await repo.count()
        top = await repo.top_countries(settings.stats_top_countries)
    except Exception as exc:
        logger.error("Stats query failed: %s", exc)
        return JSONResponse(status_code=500, content={"error": "Failed to fetch stats"})
    return StatsResponse(total=total, top_countries=top)
