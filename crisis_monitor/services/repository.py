"""
repository.py — Read/maintenance access to the `crises` collection.

The feed ingester (external) writes documents; this module only reads them
and prunes old ones. All methods are async Motor calls so concurrent stream
connections interleave on the event loop instead of blocking each other.

Document fields used here:
  created_at  — ingestion time, the change-feed cursor (indexed)
  pubDate     — event time, snapshot ordering
  country     — stats aggregation

Recommended indexes (created by scripts/seed_crises.py):
  db.crises.createIndex({ created_at: 1, _id: 1 })
  db.crises.createIndex({ pubDate: -1 })
"""

import logging
from datetime import datetime
from typing import Any, Optional

from crisis_monitor.core.config import settings

logger = logging.getLogger(__name__)


class CrisisRepository:
    """Thin async wrapper around one Motor collection."""

    def __init__(self, collection) -> None:
        self.collection = collection

    @classmethod
    def from_db(cls, db) -> "CrisisRepository":
        return cls(db[settings.mongo_collection])

    async def find_since(
        self,
        created_at: datetime,
        after_id: Any = None,
        limit: int = 100,
    ) -> list[dict]:
        """
        Records ingested after the (created_at, after_id) cursor, oldest first.

        Records sharing created_at with the cursor are ordered by _id, so a
        batch boundary falling inside a run of equal timestamps never skips
        the remainder of the run.
        """
        if after_id is None:
            query: dict = {"created_at": {"$gt": created_at}}
        else:
            query = {"$or": [
                {"created_at": {"$gt": created_at}},
                {"created_at": created_at, "_id": {"$gt": after_id}},
            ]}
        cursor = self.collection.find(query).sort([("created_at", 1), ("_id", 1)]).limit(limit)
        return await cursor.to_list(length=limit)

    async def snapshot(self, since: Optional[datetime], limit: int) -> list[dict]:
        """Most recent records by pubDate, optionally restricted to created_at ≥ since."""
        query: dict = {}
        if since is not None:
            query["created_at"] = {"$gte": since}
        cursor = self.collection.find(query).sort([("pubDate", -1)]).limit(limit)
        return await cursor.to_list(length=limit)

    async def count(self) -> int:
        return await self.collection.estimated_document_count()

    async def top_countries(self, limit: int) -> list[dict]:
        pipeline = [
            {"$group": {"_id": "$country", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
            {"$limit": limit},
        ]
        return await self.collection.aggregate(pipeline).to_list(length=limit)

    @staticmethod
    def _older_than(cutoff: datetime) -> dict:
        return {"$or": [
            {"created_at": {"$lt": cutoff}},
            {"pubDate": {"$lt": cutoff}},
        ]}

    async def count_older_than(self, cutoff: datetime) -> int:
        return await self.collection.count_documents(self._older_than(cutoff))

    async def delete_older_than(self, cutoff: datetime) -> int:
        result = await self.collection.delete_many(self._older_than(cutoff))
        logger.info("Deleted %d crises older than %s", result.deleted_count, cutoff.isoformat())
        return result.deleted_count
