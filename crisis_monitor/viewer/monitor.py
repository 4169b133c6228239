"""
monitor.py — Viewer-side wiring of the live crisis map.

CrisisMonitor owns one httpx client and runs, independently:

  • a one-shot /crises snapshot merged into the IncidentStore
  • a /stats refresh every `stats_refresh_seconds`
  • a ReconnectingStreamClient merging /events batches into the store

Every store change or filter change rebuilds the DashboardView (dedup
included) and hands it to `on_render`; the ViewportFitter then decides
whether the map needs re-fitting. The rendering surface itself is the
caller's business; scripts/watch_crises.py logs to the console.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from crisis_monitor.core.config import settings
from crisis_monitor.models.incident import Incident, Severity, StatsResponse
from crisis_monitor.viewer.store import IncidentStore
from crisis_monitor.viewer.stream_client import STREAM_TIMEOUT, ReconnectingStreamClient, StreamState
from crisis_monitor.viewer.view import DashboardView, build_view
from crisis_monitor.viewer.viewport import FitRequest, ViewportFitter

logger = logging.getLogger(__name__)


class CrisisMonitor:
    def __init__(
        self,
        api_base: str = settings.api_base,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        on_render: Optional[Callable[[DashboardView], None]] = None,
        on_fit: Optional[Callable[[FitRequest], None]] = None,
        on_state_change: Optional[Callable[[StreamState], None]] = None,
        stats_interval: float = settings.stats_refresh_seconds,
        stream_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=STREAM_TIMEOUT)
        self._on_render = on_render
        self.stats_interval = stats_interval

        self.store = IncidentStore()
        self.fitter = ViewportFitter(on_fit or (lambda _request: None))
        self.stream = ReconnectingStreamClient(
            f"{self.api_base}/events",
            on_update=self.store.apply_update,
            on_state_change=on_state_change,
            http_client=self._client,
            sleep=stream_sleep,
        )
        self.store.subscribe(lambda _items: self.render())

        self.stats: Optional[StatsResponse] = None
        self.loading = True
        self.query = ""
        self.severity: Optional[Severity] = None
        self.focused_id: Optional[str] = None
        self.view: Optional[DashboardView] = None
        self._stats_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        await asyncio.gather(self.load_snapshot(), self.refresh_stats())
        self._stats_task = asyncio.create_task(self._stats_loop())
        self.stream.start()

    async def load_snapshot(self) -> None:
        try:
            response = await self._client.get(
                f"{self.api_base}/crises",
                params={"limit": self.store.cap},
            )
            response.raise_for_status()
            snapshot = [Incident.model_validate(doc) for doc in response.json()]
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Snapshot fetch failed: %s", exc)
            self.loading = False
            self.render()
            return
        self.loading = False
        logger.info("Loaded snapshot of %d crises", len(snapshot))
        self.store.load_snapshot(snapshot)

    async def refresh_stats(self) -> None:
        try:
            response = await self._client.get(f"{self.api_base}/stats")
            response.raise_for_status()
            self.stats = StatsResponse.model_validate(response.json())
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Stats refresh failed: %s", exc)
            return
        self.render()

    async def _stats_loop(self) -> None:
        while True:
            await asyncio.sleep(self.stats_interval)
            await self.refresh_stats()

    # ── Filters ───────────────────────────────────────────────────────────────

    def set_query(self, query: str) -> DashboardView:
        self.query = query
        return self.render()

    def set_severity(self, severity: Optional[Severity]) -> DashboardView:
        """None shows every severity."""
        self.severity = severity
        return self.render()

    def toggle_focus(self, incident_id: str) -> DashboardView:
        """Focus a single incident (shown ungrouped); focusing it again clears focus."""
        self.focused_id = None if self.focused_id == incident_id else incident_id
        return self.render()

    def clear_focus(self) -> DashboardView:
        self.focused_id = None
        return self.render()

    # ── Rendering ─────────────────────────────────────────────────────────────

    def render(self) -> DashboardView:
        view = build_view(
            self.store.items,
            query=self.query,
            severity=self.severity,
            focused_id=self.focused_id,
            total=self.stats.total if self.stats is not None else None,
        )
        self.view = view
        if self._on_render is not None:
            self._on_render(view)
        self.fitter.fit(view.markers)
        return view

    async def close(self) -> None:
        await self.stream.close()
        task, self._stats_task = self._stats_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._owns_client:
            await self._client.aclose()
