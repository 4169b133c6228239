"""
MongoDB connection management using Motor (async driver).

A single DatabaseClient instance is shared across all requests and all
stream connections via a module-level singleton. FastAPI's dependency
injection (get_db) gives routes access without importing the singleton.

The change feed only reads from this pool. Every poll loop issues its own
awaitable query, so a slow query on one connection never stalls another
connection's timers.

The client is created tz-aware: every datetime read back from the store
carries UTC tzinfo, which keeps checkpoint comparisons well-defined.
"""

import logging
import re

import certifi
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from crisis_monitor.core.config import settings

logger = logging.getLogger(__name__)


class DatabaseClient:
    """
    Holds the Motor client and selected database.

    Tests replace .client and .db directly on the singleton.
    """

    client: AsyncIOMotorClient | None = None
    db: AsyncIOMotorDatabase | None = None


# Module-level singleton — all app code references this object
db_client = DatabaseClient()


async def connect_to_mongo() -> None:
    """
    Create the MongoDB connection and validate it with a ping.

    Called once at app startup (via lifespan). If MongoDB is unavailable
    the API still starts in degraded mode: DB-backed endpoints answer 503
    and open streams only emit pings until the store comes back.
    """
    logger.info("Connecting to MongoDB at %s", _redact_uri(settings.mongo_uri))
    try:
        options = {"serverSelectionTimeoutMS": 5000, "tz_aware": True}
        if _needs_tls(settings.mongo_uri):
            # certifi's CA bundle makes Atlas TLS work without system cert setup
            options["tlsCAFile"] = certifi.where()
        db_client.client = AsyncIOMotorClient(settings.mongo_uri, **options)
        db_client.db = db_client.client[settings.mongo_db_name]
        await db_client.client.admin.command("ping")
        logger.info("MongoDB connection established (db: %s)", settings.mongo_db_name)
    except Exception as exc:
        logger.warning(
            "MongoDB unavailable at startup: %s. "
            "API running in degraded mode — DB endpoints will fail.",
            exc,
        )
        db_client.client = None
        db_client.db = None


async def close_mongo_connection() -> None:
    """Close the MongoDB connection gracefully on app shutdown."""
    if db_client.client is not None:
        db_client.client.close()
        logger.info("MongoDB connection closed")


def get_db() -> AsyncIOMotorDatabase | None:
    """
    FastAPI dependency — inject the database into route handlers.

    Returns None when MongoDB is unavailable so routes can answer with a
    clean 503 instead of an unhandled 500.
    """
    return db_client.db


def _needs_tls(uri: str) -> bool:
    # Atlas SRV URIs imply TLS; plain local URIs only when asked for.
    return uri.startswith("mongodb+srv://") or "tls=true" in uri.lower() or "ssl=true" in uri.lower()


def _redact_uri(uri: str) -> str:
    """Strip credentials from URI before logging."""
    return re.sub(r"://[^:]+:[^@]+@", "://<redacted>@", uri)
