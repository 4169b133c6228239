"""
Global Crisis Monitor API — Application entry point.

Bootstraps FastAPI, wires up middleware, registers route groups,
and manages the MongoDB connection and the change-feed lifecycle.

Run locally:
    uvicorn crisis_monitor.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from crisis_monitor.core.config import settings
from crisis_monitor.core.database import close_mongo_connection, connect_to_mongo
from crisis_monitor.core.rate_limit import limiter
from crisis_monitor.routes.cleanup import router as cleanup_router
from crisis_monitor.routes.crises import router as crises_router
from crisis_monitor.routes.events import router as events_router
from crisis_monitor.routes.health import API_VERSION
from crisis_monitor.routes.health import router as health_router
from crisis_monitor.services.change_feed import change_feed

# ─── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ─── Lifespan ──────────────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Connect to MongoDB on startup; on shutdown close every open stream
    session before the connection pool goes away.
    """
    logger.info("Starting Global Crisis Monitor API (env: %s)", settings.environment)
    await connect_to_mongo()
    yield
    logger.info("Shutting down Global Crisis Monitor API")
    change_feed.close_all()
    await close_mongo_connection()


# ─── App ───────────────────────────────────────────────────────────────────────
app = FastAPI(
    title="Global Crisis Monitor API",
    description="Live, deduplicated map of incident reports ingested from external feeds.",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.environment != "production" else None,
    redoc_url="/redoc" if settings.environment != "production" else None,
)


# ─── Rate limiting ─────────────────────────────────────────────────────────────
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ─── Middleware ─────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Routes ────────────────────────────────────────────────────────────────────
app.include_router(health_router, prefix="/health", tags=["health"])
app.include_router(crises_router)
app.include_router(events_router)
app.include_router(cleanup_router)


@app.get("/", tags=["root"])
async def root():
    """API root — basic metadata."""
    return {
        "ok": True,
        "name": "Global Crisis Monitor API",
        "version": API_VERSION,
        "environment": settings.environment,
    }
