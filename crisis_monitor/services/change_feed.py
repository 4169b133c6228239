"""
change_feed.py — Turns "records newer than a cursor" queries into a push stream.

Every /events subscriber gets its own ConnectionSession:

    checkpoint      (created_at, last _id) of the last delivered record
    poll_task       every poll_interval: query past the checkpoint, push
                    an `update` batch or a `ping`
    heartbeat_task  every heartbeat_interval: push a bare `:` comment

Frames are queued and drained by the HTTP response generator
(routes/events.py). When the client goes away the generator's `finally`
calls session.close(), which cancels both tasks. That is the only cleanup
path: a task that is not cancelled keeps a reference to a dead response
and fires forever.

Wire frames (Server-Sent Events):
    event: update\\ndata: [<incident>, ...]\\n\\n
    event: ping\\ndata: {}\\n\\n
    :\\n\\n

Delivery is at-least-once. The viewer's merge + spatial dedup tolerate
duplicates, so nothing here tries to be exactly-once.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Optional

from pydantic import ValidationError

from crisis_monitor.core.config import settings
from crisis_monitor.core.database import get_db
from crisis_monitor.models.incident import Incident, parse_timestamp
from crisis_monitor.services.repository import CrisisRepository

logger = logging.getLogger(__name__)

PING_FRAME = "event: ping\ndata: {}\n\n"
HEARTBEAT_FRAME = ":\n\n"

RepositoryProvider = Callable[[], Optional[CrisisRepository]]


def format_event(event: str, data: str) -> str:
    return f"event: {event}\ndata: {data}\n\n"


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _id_after(doc_id: Any, last_id: Any) -> bool:
    try:
        return doc_id > last_id
    except TypeError:
        # Mixed _id types (ObjectId next to str); order by string form
        return str(doc_id) > str(last_id)


@dataclass(frozen=True)
class Checkpoint:
    """Ingestion-time cursor. Only ever moves forward within a session."""

    created_at: datetime
    last_id: Any = None

    def advance(self, doc: dict) -> "Checkpoint":
        created = parse_timestamp(doc.get("created_at"))
        doc_id = doc.get("_id")
        if created is None or created < self.created_at:
            return self
        if created == self.created_at and self.last_id is not None and not _id_after(doc_id, self.last_id):
            return self
        return Checkpoint(created_at=created, last_id=doc_id)


def serialize_batch(docs: list[dict]) -> str:
    """JSON array of wire-shaped incidents; undecodable documents are skipped."""
    items = []
    for doc in docs:
        try:
            items.append(Incident.from_document(doc).to_wire())
        except ValidationError as exc:
            logger.warning("Skipping malformed crisis document %s: %s", doc.get("_id"), exc)
    return json.dumps(items)


class ConnectionSession:
    """Polling loop + heartbeat for one stream subscriber."""

    def __init__(
        self,
        repository: RepositoryProvider,
        *,
        poll_interval: float,
        heartbeat_interval: float,
        lookback: float,
        batch_limit: int,
        clock: Callable[[], datetime] = _utcnow,
        on_close: Optional[Callable[["ConnectionSession"], None]] = None,
    ) -> None:
        self._repository = repository
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.batch_limit = batch_limit
        self.checkpoint = Checkpoint(created_at=clock() - timedelta(seconds=lookback))
        self.poll_task: Optional[asyncio.Task] = None
        self.heartbeat_task: Optional[asyncio.Task] = None
        self.closed = False
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._on_close = on_close

    def start(self) -> None:
        """Schedule both timers on the running loop."""
        if self.closed or self.poll_task is not None:
            return
        self.poll_task = asyncio.create_task(self._poll_loop())
        self.heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def tick(self) -> str:
        """
        Run one poll and return the frame to send.

        Any failure (store error, undecodable batch) is logged and answered
        with a ping so the channel survives; the checkpoint only moves once
        the whole batch has been turned into a frame, so the next tick
        retries from the same place.
        """
        repo = self._repository()
        if repo is None:
            return PING_FRAME
        try:
            docs = await repo.find_since(
                self.checkpoint.created_at,
                self.checkpoint.last_id,
                limit=self.batch_limit,
            )
            if not docs:
                return PING_FRAME
            checkpoint = self.checkpoint
            for doc in docs:
                checkpoint = checkpoint.advance(doc)
            frame = format_event("update", serialize_batch(docs))
        except Exception as exc:
            logger.warning("Change feed tick failed: %s", exc)
            return PING_FRAME

        self.checkpoint = checkpoint
        logger.debug("Change feed pushing %d records (checkpoint %s)", len(docs), checkpoint.created_at)
        return frame

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                frame = await self.tick()
            except Exception:
                logger.exception("Change feed poll failed")
                frame = PING_FRAME
            self._emit(frame)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self._emit(HEARTBEAT_FRAME)

    def _emit(self, frame: str) -> None:
        if not self.closed:
            self._queue.put_nowait(frame)

    async def frames(self) -> AsyncIterator[str]:
        """Yield queued frames until the session is closed."""
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame

    def close(self) -> None:
        """Cancel both timers. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        for task in (self.poll_task, self.heartbeat_task):
            if task is not None:
                task.cancel()
        # Wake a consumer blocked in frames()
        self._queue.put_nowait(None)
        if self._on_close is not None:
            self._on_close(self)


def _default_repository() -> Optional[CrisisRepository]:
    db = get_db()
    return CrisisRepository.from_db(db) if db is not None else None


class IncrementalChangeFeed:
    """Creates and tracks one ConnectionSession per subscriber."""

    def __init__(
        self,
        repository: RepositoryProvider = _default_repository,
        *,
        poll_interval: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
        lookback: Optional[float] = None,
        batch_limit: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self.poll_interval = poll_interval if poll_interval is not None else settings.poll_interval_seconds
        self.heartbeat_interval = (
            heartbeat_interval if heartbeat_interval is not None else settings.heartbeat_interval_seconds
        )
        self.lookback = lookback if lookback is not None else settings.lookback_seconds
        self.batch_limit = batch_limit if batch_limit is not None else settings.feed_batch_limit
        self._clock = clock
        self.sessions: set[ConnectionSession] = set()

    def subscribe(self) -> ConnectionSession:
        session = ConnectionSession(
            self._repository,
            poll_interval=self.poll_interval,
            heartbeat_interval=self.heartbeat_interval,
            lookback=self.lookback,
            batch_limit=self.batch_limit,
            clock=self._clock,
            on_close=self._release,
        )
        self.sessions.add(session)
        session.start()
        logger.info("Stream subscriber connected (%d active)", len(self.sessions))
        return session

    def _release(self, session: ConnectionSession) -> None:
        self.sessions.discard(session)
        logger.info("Stream subscriber disconnected (%d active)", len(self.sessions))

    def close_all(self) -> None:
        for session in list(self.sessions):
            session.close()


# Module-level singleton
change_feed = IncrementalChangeFeed()
