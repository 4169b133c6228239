"""
pytest configuration and shared fixtures for the Crisis Monitor tests.

Key concern: tests must not require a live MongoDB or a running API.
We achieve this by:
  1. Patching connect_to_mongo / close_mongo_connection to no-ops so
     FastAPI's lifespan doesn't try to reach a real database.
  2. Setting db_client.client/db = None (disconnected) by default; tests
     that need data override get_db with an in-memory FakeDB.
  3. Closing every change-feed session after each test so no poll or
     heartbeat task outlives its test.
"""

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

# Set env vars BEFORE importing the app so Settings picks them up correctly
os.environ.setdefault("ENVIRONMENT", "test")

BASE_TIME = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


# ── In-memory stand-in for a Motor collection ─────────────────────────────────

def _match_value(value, cond) -> bool:
    if isinstance(cond, dict) and any(k.startswith("$") for k in cond):
        if value is None:
            return False
        for op, operand in cond.items():
            if op == "$gt" and not value > operand:
                return False
            if op == "$gte" and not value >= operand:
                return False
            if op == "$lt" and not value < operand:
                return False
        return True
    return value == cond


def _matches(doc: dict, query: dict) -> bool:
    for key, cond in query.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in cond):
                return False
        elif not _match_value(doc.get(key), cond):
            return False
    return True


class FakeCursor:
    def __init__(self, docs):
        self._docs = list(docs)
        self._limit = None

    def sort(self, keys, direction=None):
        if isinstance(keys, str):
            keys = [(keys, direction or 1)]
        # Stable sorts applied last-key-first give a compound ordering
        for field, order in reversed(keys):
            self._docs.sort(key=lambda d: d.get(field), reverse=order < 0)
        return self

    def limit(self, n):
        self._limit = n
        return self

    async def to_list(self, length=None):
        docs = self._docs if self._limit is None else self._docs[: self._limit]
        return [dict(d) for d in docs]


class FakeCollection:
    def __init__(self, docs=None):
        self.docs: list[dict] = list(docs or [])
        self.queries: list[dict] = []

    def find(self, query=None):
        query = query or {}
        self.queries.append(query)
        return FakeCursor(d for d in self.docs if _matches(d, query))

    async def estimated_document_count(self):
        return len(self.docs)

    async def count_documents(self, query):
        return sum(1 for d in self.docs if _matches(d, query))

    def aggregate(self, pipeline):
        counts: dict = {}
        for d in self.docs:
            counts[d.get("country")] = counts.get(d.get("country"), 0) + 1
        limit = next((stage["$limit"] for stage in pipeline if "$limit" in stage), len(counts))
        rows = sorted(({"_id": k, "count": v} for k, v in counts.items()), key=lambda r: -r["count"])
        return FakeCursor(rows[:limit])

    async def delete_many(self, query):
        keep = [d for d in self.docs if not _matches(d, query)]
        result = MagicMock()
        result.deleted_count = len(self.docs) - len(keep)
        self.docs = keep
        return result


class BrokenCollection:
    """Every query fails, as during a store outage."""

    def find(self, query=None):
        raise ConnectionError("store unreachable")

    async def estimated_document_count(self):
        raise ConnectionError("store unreachable")

    async def count_documents(self, query):
        raise ConnectionError("store unreachable")

    def aggregate(self, pipeline):
        raise ConnectionError("store unreachable")

    async def delete_many(self, query):
        raise ConnectionError("store unreachable")


class FakeDB:
    def __init__(self, collection):
        self.collection = collection

    def __getitem__(self, name):
        return self.collection


def crisis_doc(doc_id, title="Report", *, minutes=0, pub_minutes=None, **extra) -> dict:
    """A raw `crises` document as the ingester would store it."""
    doc = {
        "_id": doc_id,
        "title": title,
        "description": "",
        "source": "Test Wire",
        "link": f"https://example.com/{doc_id}",
        "pubDate": BASE_TIME + timedelta(minutes=pub_minutes if pub_minutes is not None else minutes),
        "created_at": BASE_TIME + timedelta(minutes=minutes),
        "country": "Testland",
    }
    doc.update(extra)
    return doc


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def mock_db():
    """
    Patch the MongoDB lifecycle for every test and start disconnected.
    Also releases any stream sessions a test left open.
    """
    with (
        patch("crisis_monitor.main.connect_to_mongo", new_callable=AsyncMock),
        patch("crisis_monitor.main.close_mongo_connection", new_callable=AsyncMock),
    ):
        import crisis_monitor.core.database as db_module
        from crisis_monitor.services.change_feed import change_feed

        original_client = db_module.db_client.client
        original_db = db_module.db_client.db

        db_module.db_client.client = None
        db_module.db_client.db = None

        yield

        change_feed.close_all()
        db_module.db_client.client = original_client
        db_module.db_client.db = original_db


@pytest.fixture()
def make_incident():
    """Factory for Incident models with sensible defaults."""
    from crisis_monitor.models.incident import Incident

    def _make(doc_id, title="Report", description="", *, lat=None, lng=None, minutes=0, **extra):
        return Incident.model_validate({
            "_id": doc_id,
            "title": title,
            "description": description,
            "source": "Test Wire",
            "link": f"https://example.com/{doc_id}",
            "pubDate": BASE_TIME + timedelta(minutes=minutes),
            "created_at": BASE_TIME + timedelta(minutes=minutes),
            "lat": lat,
            "lng": lng,
            **extra,
        })

    return _make


@pytest.fixture()
async def client(mock_db):  # noqa: ARG001
    """HTTPX async test client wired to the FastAPI app (DB disconnected)."""
    from crisis_monitor.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def fake_collection():
    return FakeCollection()


@pytest.fixture()
async def crises_client(fake_collection):
    """Client whose get_db dependency returns a FakeDB over `fake_collection`."""
    from crisis_monitor.core.database import get_db
    from crisis_monitor.main import app

    app.dependency_overrides[get_db] = lambda: FakeDB(fake_collection)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
