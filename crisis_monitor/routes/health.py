"""
Health check endpoint.

Returns status + DB connectivity so callers can distinguish between
"API down" and "API up but DB unreachable". Also reports how many viewers
are currently subscribed to /events.
"""

import logging

from fastapi import APIRouter
from pydantic import BaseModel

from crisis_monitor.core import database as db_module
from crisis_monitor.core.config import settings
from crisis_monitor.services.change_feed import change_feed

logger = logging.getLogger(__name__)
router = APIRouter()

API_VERSION = "0.1.0"


class HealthResponse(BaseModel):
    status: str  # Always "ok" if the API process is alive
    version: str
    database: str  # "connected" | "disconnected"
    environment: str
    stream_subscribers: int


@router.get("", response_model=HealthResponse, summary="API health check")
async def health_check() -> HealthResponse:
    """
    Liveness of the API and its database connection.

    HTTP 200 even when the database is down; open streams keep pinging in
    that state and resume pushing updates once the store is back.
    """
    db_status = "disconnected"
    try:
        # Access via module reference so tests can patch db_module.db_client
        if db_module.db_client.client is not None:
            await db_module.db_client.client.admin.command("ping")
            db_status = "connected"
    except Exception as exc:
        logger.warning("DB ping failed: %s", exc)

    return HealthResponse(
        status="ok",
        version=API_VERSION,
        database=db_status,
        environment=settings.environment,
        stream_subscribers=len(change_feed.sessions),
    )
