"""
test_change_feed.py — Per-connection polling sessions behind GET /events.

Sessions are driven two ways:
  • tick() directly, for the query / checkpoint / frame logic
  • start() with millisecond intervals, for the timer + cleanup lifecycle

Run:
    pytest tests/test_change_feed.py -v
"""

import asyncio
import json
from datetime import timedelta

import pytest
from bson import ObjectId

from conftest import BASE_TIME, BrokenCollection, FakeCollection, crisis_doc
from crisis_monitor.routes.events import SSE_HEADERS, event_stream, stream_events
from crisis_monitor.services.change_feed import (
    HEARTBEAT_FRAME,
    PING_FRAME,
    Checkpoint,
    ConnectionSession,
    IncrementalChangeFeed,
    change_feed,
    format_event,
    serialize_batch,
)
from crisis_monitor.services.repository import CrisisRepository

# Sessions "connect" ten minutes after BASE_TIME; lookback reaches back one minute
NOW = BASE_TIME + timedelta(minutes=10)


def _session(collection=None, *, batch_limit=100, poll=5.0, heartbeat=20.0, on_close=None):
    repo = CrisisRepository(collection) if collection is not None else None
    return ConnectionSession(
        lambda: repo,
        poll_interval=poll,
        heartbeat_interval=heartbeat,
        lookback=60.0,
        batch_limit=batch_limit,
        clock=lambda: NOW,
        on_close=on_close,
    )


def _update_ids(frame: str) -> list[str]:
    assert frame.startswith("event: update\ndata: ")
    assert frame.endswith("\n\n")
    payload = frame[len("event: update\ndata: "):-2]
    return [item["_id"] for item in json.loads(payload)]


# ── Frames ───────────────────────────────────────────────────────────────────

class TestFrames:

    def test_format_event(self):
        assert format_event("update", "[]") == "event: update\ndata: []\n\n"

    def test_ping_and_heartbeat_shapes(self):
        assert PING_FRAME == "event: ping\ndata: {}\n\n"
        assert HEARTBEAT_FRAME == ":\n\n"

    def test_serialize_batch_uses_wire_names(self):
        items = json.loads(serialize_batch([crisis_doc("a", "Flood", lat=1.0, lng=2.0)]))
        assert items[0]["_id"] == "a"
        assert items[0]["pubDate"].startswith("2026-10-18T12:00:00")
        assert items[0]["lat"] == 1.0

    def test_serialize_batch_skips_malformed_documents(self):
        items = json.loads(serialize_batch([{"title": "no id"}, crisis_doc("ok")]))
        assert [i["_id"] for i in items] == ["ok"]


# ── Checkpoint ───────────────────────────────────────────────────────────────

class TestCheckpoint:

    def test_advances_to_newer_record(self):
        cp = Checkpoint(created_at=BASE_TIME).advance(crisis_doc("a", minutes=1))
        assert cp.created_at == BASE_TIME + timedelta(minutes=1)
        assert cp.last_id == "a"

    def test_never_moves_backwards(self):
        cp = Checkpoint(created_at=BASE_TIME + timedelta(minutes=5), last_id="m")
        assert cp.advance(crisis_doc("z", minutes=1)) is cp

    def test_equal_timestamp_orders_by_id(self):
        cp = Checkpoint(created_at=BASE_TIME, last_id="m")
        assert cp.advance(crisis_doc("a")) is cp
        assert cp.advance(crisis_doc("z")).last_id == "z"

    def test_mixed_id_types_compare_without_error(self):
        cp = Checkpoint(created_at=BASE_TIME, last_id="zzz")
        assert cp.advance(crisis_doc(ObjectId())) is cp

    def test_missing_created_at_is_ignored(self):
        cp = Checkpoint(created_at=BASE_TIME)
        assert cp.advance({"_id": "x"}) is cp


# ── tick() ───────────────────────────────────────────────────────────────────

class TestTick:

    def test_initial_checkpoint_is_now_minus_lookback(self):
        assert _session().checkpoint.created_at == NOW - timedelta(seconds=60)

    async def test_no_database_answers_ping(self):
        assert await _session().tick() == PING_FRAME

    async def test_no_new_records_answers_ping(self):
        assert await _session(FakeCollection()).tick() == PING_FRAME

    async def test_new_records_pushed_oldest_first(self):
        coll = FakeCollection([
            crisis_doc("late", minutes=9.9),
            crisis_doc("early", minutes=9.5),
        ])
        frame = await _session(coll).tick()
        assert _update_ids(frame) == ["early", "late"]

    async def test_records_before_lookback_not_delivered(self):
        coll = FakeCollection([crisis_doc("stale", minutes=5), crisis_doc("fresh", minutes=9.5)])
        assert _update_ids(await _session(coll).tick()) == ["fresh"]

    async def test_record_delivered_once_per_session(self):
        coll = FakeCollection([crisis_doc("a", minutes=9.5)])
        session = _session(coll)
        assert _update_ids(await session.tick()) == ["a"]
        assert await session.tick() == PING_FRAME

        coll.docs.append(crisis_doc("b", minutes=10.5))
        assert _update_ids(await session.tick()) == ["b"]

    async def test_checkpoint_moves_to_last_record(self):
        coll = FakeCollection([crisis_doc("a", minutes=9.5), crisis_doc("b", minutes=9.8)])
        session = _session(coll)
        await session.tick()
        assert session.checkpoint.created_at == BASE_TIME + timedelta(minutes=9.8)
        assert session.checkpoint.last_id == "b"

    async def test_equal_created_at_split_across_batches(self):
        """A batch limit inside a run of equal timestamps must not drop the rest."""
        coll = FakeCollection([crisis_doc(i, minutes=9.5) for i in ("c", "a", "b")])
        session = _session(coll, batch_limit=2)
        assert _update_ids(await session.tick()) == ["a", "b"]
        assert _update_ids(await session.tick()) == ["c"]
        assert await session.tick() == PING_FRAME

    async def test_query_uses_batch_limit(self):
        coll = FakeCollection([crisis_doc(f"d{n}", minutes=9.5 + n / 100) for n in range(5)])
        assert len(_update_ids(await _session(coll, batch_limit=3).tick())) == 3

    async def test_store_error_answers_ping_and_keeps_checkpoint(self):
        session = _session(BrokenCollection())
        before = session.checkpoint
        assert await session.tick() == PING_FRAME
        assert session.checkpoint == before


# ── Failures inside a tick ───────────────────────────────────────────────────

class _ListRepository:
    """Returns the same documents on every poll and counts the polls."""

    def __init__(self, docs):
        self.docs = docs
        self.calls = 0

    async def find_since(self, created_at, after_id=None, limit=100):
        self.calls += 1
        return list(self.docs)


def _repo_session(repo, *, poll=5.0):
    return ConnectionSession(
        lambda: repo,
        poll_interval=poll,
        heartbeat_interval=60,
        lookback=60.0,
        batch_limit=100,
        clock=lambda: NOW,
    )


class TestTickFailures:

    async def test_mixed_id_types_at_equal_timestamp(self):
        repo = _ListRepository([crisis_doc("str-id", minutes=9.5), crisis_doc(ObjectId(), minutes=9.5)])
        frame = await _repo_session(repo).tick()
        assert len(_update_ids(frame)) == 2

    async def test_mixed_id_types_keep_polling(self):
        repo = _ListRepository([crisis_doc("str-id", minutes=9.5), crisis_doc(ObjectId(), minutes=9.5)])
        session = _repo_session(repo, poll=0.01)
        session.start()
        await asyncio.sleep(0.1)
        assert repo.calls > 1
        assert not session.poll_task.done()
        session.close()

    async def test_undecodable_batch_answers_ping_and_keeps_checkpoint(self):
        session = _repo_session(_ListRepository([None]))
        before = session.checkpoint
        assert await session.tick() == PING_FRAME
        assert session.checkpoint == before

    async def test_poll_loop_survives_unexpected_error(self):
        session = _repo_session(_ListRepository([]), poll=0.01)
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return PING_FRAME

        session.tick = flaky
        session.start()
        frames = []
        async for frame in session.frames():
            frames.append(frame)
            if len(frames) == 2:
                break
        session.close()
        assert frames == [PING_FRAME, PING_FRAME]
        assert len(calls) >= 2


# ── Lifecycle ────────────────────────────────────────────────────────────────

class TestLifecycle:

    async def test_timers_emit_frames(self):
        session = _session(poll=0.01, heartbeat=0.01)
        session.start()
        seen = set()
        async for frame in session.frames():
            seen.add(frame)
            if {PING_FRAME, HEARTBEAT_FRAME} <= seen:
                break
        session.close()
        assert seen == {PING_FRAME, HEARTBEAT_FRAME}

    async def test_close_cancels_both_tasks(self):
        session = _session(poll=0.01, heartbeat=0.01)
        session.start()
        poll_task, heartbeat_task = session.poll_task, session.heartbeat_task

        session.close()
        await asyncio.gather(poll_task, heartbeat_task, return_exceptions=True)

        assert poll_task.cancelled()
        assert heartbeat_task.cancelled()

    async def test_close_is_idempotent(self):
        released = []
        session = _session(on_close=released.append)
        session.start()
        session.close()
        session.close()
        assert released == [session]

    async def test_frames_end_after_close(self):
        session = _session(poll=60, heartbeat=60)
        session.start()
        session.close()
        assert [f async for f in session.frames()] == []

    async def test_no_frames_queued_after_close(self):
        session = _session(poll=0.005, heartbeat=0.005)
        session.start()
        session.close()
        await asyncio.sleep(0.05)
        assert [f async for f in session.frames()] == []

    async def test_start_after_close_does_nothing(self):
        session = _session()
        session.close()
        session.start()
        assert session.poll_task is None


class TestIncrementalChangeFeed:

    async def test_subscribe_tracks_and_close_releases(self):
        feed = IncrementalChangeFeed(lambda: None, poll_interval=60, heartbeat_interval=60)
        first, second = feed.subscribe(), feed.subscribe()
        assert feed.sessions == {first, second}

        first.close()
        assert feed.sessions == {second}

    async def test_close_all(self):
        feed = IncrementalChangeFeed(lambda: None, poll_interval=60, heartbeat_interval=60)
        sessions = [feed.subscribe() for _ in range(3)]
        feed.close_all()
        assert feed.sessions == set()
        assert all(s.closed for s in sessions)

    async def test_sessions_have_independent_checkpoints(self):
        coll = FakeCollection([crisis_doc("a", minutes=9.5)])
        repo = CrisisRepository(coll)
        feed = IncrementalChangeFeed(
            lambda: repo, poll_interval=60, heartbeat_interval=60, lookback=60, clock=lambda: NOW,
        )
        one, two = feed.subscribe(), feed.subscribe()
        assert _update_ids(await one.tick()) == ["a"]
        assert _update_ids(await two.tick()) == ["a"]
        feed.close_all()


# ── Route plumbing ───────────────────────────────────────────────────────────

class TestEventStream:

    async def test_generator_exit_closes_session(self):
        session = _session(poll=0.01, heartbeat=60)
        session.start()
        stream = event_stream(session)

        assert await stream.__anext__() == PING_FRAME
        await stream.aclose()

        assert session.closed
        await asyncio.gather(session.poll_task, return_exceptions=True)
        assert session.poll_task.cancelled()

    async def test_stream_events_response(self):
        response = await stream_events()
        assert response.media_type == "text/event-stream"
        for key, value in SSE_HEADERS.items():
            assert response.headers[key.lower()] == value
        assert len(change_feed.sessions) == 1

        # The background task is the fallback cleanup path
        await response.background()
        assert change_feed.sessions == set()

    async def test_health_reports_subscribers(self, client):
        session = change_feed.subscribe()
        data = (await client.get("/health")).json()
        assert data["stream_subscribers"] == 1
        session.close()
