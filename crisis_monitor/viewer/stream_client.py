"""
stream_client.py — Reconnecting subscriber for the /events stream.

Two layers:

  ReconnectStateMachine   pure state + backoff bookkeeping, driven by the
                          three events opened / errored / torn_down. No I/O,
                          so tests drive it by calling those methods.

  ReconnectingStreamClient
                          one asyncio task that connects with httpx, decodes
                          Server-Sent Events, hands `update` batches to a
                          callback and feeds transport outcomes to the state
                          machine.

States:

    DISCONNECTED ──connect──▶ CONNECTING ──opened──▶ OPEN
                                  ▲                    │ errored
                                  └──── BACKOFF ◀──────┘
    any ──teardown──▶ DISCONNECTED (final)

Backoff: each consecutive failure bumps `attempt` (capped at 6) and waits
1000 ms · 2^attempt, i.e. 2 s, 4 s, … 64 s. A successful open resets the
attempt counter to 0.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx
from pydantic import ValidationError

from crisis_monitor.core.config import settings
from crisis_monitor.models.incident import Incident

logger = logging.getLogger(__name__)

# Read timeout well above the heartbeat interval; a silent socket this long is dead
STREAM_TIMEOUT = httpx.Timeout(10.0, read=60.0)


class StreamState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    BACKOFF = "backoff"


def backoff_delay_ms(attempt: int, base_delay_ms: int = 1000) -> int:
    return int(base_delay_ms * 2 ** attempt)


class ReconnectStateMachine:
    """Connection lifecycle bookkeeping for one stream subscriber."""

    def __init__(
        self,
        *,
        base_delay_ms: int = 1000,
        max_attempt: int = 6,
        on_transition: Optional[Callable[[StreamState], None]] = None,
    ) -> None:
        self.base_delay_ms = base_delay_ms
        self.max_attempt = max_attempt
        self.state = StreamState.DISCONNECTED
        self.attempt = 0
        self.delay_ms: Optional[int] = None
        self.torn_down = False
        self._on_transition = on_transition

    def _move(self, state: StreamState) -> None:
        if state is self.state:
            return
        self.state = state
        if self._on_transition is not None:
            self._on_transition(state)

    def connect(self) -> None:
        if self.torn_down:
            return
        self.delay_ms = None
        self._move(StreamState.CONNECTING)

    def opened(self) -> None:
        if self.torn_down:
            return
        self.attempt = 0
        self.delay_ms = None
        self._move(StreamState.OPEN)

    def errored(self) -> Optional[int]:
        """Record a failure; return the reconnect delay in ms, or None after teardown."""
        if self.torn_down:
            return None
        self.attempt = min(self.max_attempt, self.attempt + 1)
        self.delay_ms = backoff_delay_ms(self.attempt, self.base_delay_ms)
        self._move(StreamState.BACKOFF)
        return self.delay_ms

    def teardown(self) -> None:
        if self.torn_down:
            return
        self.delay_ms = None
        self._move(StreamState.DISCONNECTED)
        self.torn_down = True


@dataclass
class ServerSentEvent:
    event: str = "message"
    data: str = ""


class SSEDecoder:
    """Line-at-a-time Server-Sent Events decoder. Comment lines are dropped."""

    def __init__(self) -> None:
        self._event: Optional[str] = None
        self._data: list[str] = []

    def feed(self, line: str) -> Optional[ServerSentEvent]:
        line = line.rstrip("\r\n")
        if not line:
            if self._event is None and not self._data:
                return None
            event = ServerSentEvent(event=self._event or "message", data="\n".join(self._data))
            self._event, self._data = None, []
            return event
        if line.startswith(":"):
            # Heartbeat
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        return None


def parse_update(data: str) -> Optional[list[Incident]]:
    """Decode an `update` payload; None when it is not a valid incident array."""
    try:
        payload = json.loads(data)
    except (ValueError, RecursionError) as exc:
        # RecursionError: pathologically nested arrays
        logger.warning("Dropping malformed update payload: %s", exc)
        return None
    if not isinstance(payload, list):
        logger.warning("Dropping update payload: expected a list, got %s", type(payload).__name__)
        return None
    try:
        return [Incident.model_validate(item) for item in payload]
    except ValidationError as exc:
        logger.warning("Dropping update payload with invalid incident: %s", exc)
        return None


class ReconnectingStreamClient:
    """
    Keeps one /events subscription alive and forwards incident batches.

    Usage:
        client = ReconnectingStreamClient(f"{api_base}/events", on_update=store.apply_update)
        client.start()
        ...
        await client.close()
    """

    def __init__(
        self,
        url: str,
        *,
        on_update: Callable[[list[Incident]], None],
        on_state_change: Optional[Callable[[StreamState], None]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        base_delay_ms: Optional[int] = None,
        max_attempt: Optional[int] = None,
    ) -> None:
        self.url = url
        self._on_update = on_update
        self._on_state_change = on_state_change
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=STREAM_TIMEOUT)
        self._sleep = sleep
        self.machine = ReconnectStateMachine(
            base_delay_ms=base_delay_ms if base_delay_ms is not None else settings.reconnect_base_delay_ms,
            max_attempt=max_attempt if max_attempt is not None else settings.reconnect_max_attempt,
            on_transition=self._state_changed,
        )
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def state(self) -> StreamState:
        return self.machine.state

    def start(self) -> None:
        if self._closed or self._task is not None:
            return
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while not self.machine.torn_down:
            self.machine.connect()
            try:
                await self._consume()
                logger.info("Event stream closed by server")
            except (httpx.HTTPError, httpx.StreamError) as exc:
                logger.warning("Event stream failed: %s", exc)
            delay_ms = self.machine.errored()
            if delay_ms is None:
                return
            logger.info("Reconnecting in %d ms (attempt %d)", delay_ms, self.machine.attempt)
            await self._sleep(delay_ms / 1000)

    async def _consume(self) -> None:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        async with self._client.stream("GET", self.url, headers=headers) as response:
            response.raise_for_status()
            self.machine.opened()
            decoder = SSEDecoder()
            async for line in response.aiter_lines():
                event = decoder.feed(line)
                if event is not None:
                    self._dispatch(event)

    def _dispatch(self, event: ServerSentEvent) -> None:
        if self._closed or event.event != "update":
            return
        incidents = parse_update(event.data)
        if not incidents:
            return
        try:
            self._on_update(incidents)
        except Exception:
            logger.exception("Update handler failed")

    def _state_changed(self, state: StreamState) -> None:
        logger.debug("Event stream %s", state.value)
        if self._on_state_change is not None:
            self._on_state_change(state)

    async def close(self) -> None:
        """Tear down from any state: cancel a pending retry and drop the live stream."""
        if self._closed:
            return
        self._closed = True
        self.machine.teardown()
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._owns_client:
            await self._client.aclose()
