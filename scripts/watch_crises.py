#!/usr/bin/env python3
"""
watch_crises.py — Console viewer for a running Crisis Monitor API.

Loads the snapshot, subscribes to /events and prints the deduplicated
marker list each time it changes.

Usage:
    python scripts/watch_crises.py
    python scripts/watch_crises.py --api http://localhost:8000 --severity High
    python scripts/watch_crises.py --query flood --top 20
"""

import argparse
import asyncio
import logging

from dotenv import load_dotenv

load_dotenv()

from crisis_monitor.core.config import settings  # noqa: E402
from crisis_monitor.models.incident import Severity  # noqa: E402
from crisis_monitor.services.severity import severity_of  # noqa: E402
from crisis_monitor.viewer.monitor import CrisisMonitor  # noqa: E402
from crisis_monitor.viewer.view import DashboardView  # noqa: E402
from crisis_monitor.viewer.viewport import FitRequest  # noqa: E402

logger = logging.getLogger("watch_crises")


def _printer(top: int):
    last_markers: list[str] = []

    def render(view: DashboardView) -> None:
        lines = []
        for marker in view.markers[:top]:
            p = marker.primary
            group = f" (+{marker.size - 1} nearby)" if marker.grouped_count else ""
            lines.append(f"  [{severity_of(p).value:<8}] {p.title}{group}")
        if lines == last_markers:
            return
        last_markers[:] = lines
        counts = " ".join(f"{level.value}={n}" for level, n in view.counts.items())
        print(f"\n{view.alert.level} alert — {view.total} active crises — {counts}")
        print(f"{len(view.markers)} markers:")
        print("\n".join(lines) or "  (none)")

    return render


def _on_fit(request: FitRequest) -> None:
    bounds = request.bounds
    print(
        f"→ fit map to S{bounds.south:.2f} W{bounds.west:.2f} "
        f"N{bounds.north:.2f} E{bounds.east:.2f} (max zoom {request.max_zoom})"
    )


async def watch(api: str, query: str, severity: str | None, top: int) -> None:
    monitor = CrisisMonitor(
        api,
        on_render=_printer(top),
        on_fit=_on_fit,
        on_state_change=lambda state: logger.info("stream %s", state.value),
    )
    monitor.query = query
    monitor.severity = Severity(severity) if severity else None
    await monitor.start()
    try:
        await asyncio.Event().wait()
    finally:
        await monitor.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Watch the live crisis map from a terminal")
    parser.add_argument("--api", default=settings.api_base, help="API base URL")
    parser.add_argument("--query", default="", help="Only show crises matching this text")
    parser.add_argument(
        "--severity",
        choices=[s.value for s in Severity],
        default=None,
        help="Only show crises of this severity",
    )
    parser.add_argument("--top", type=int, default=25, help="How many markers to print")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )
    try:
        asyncio.run(watch(args.api, args.query, args.severity, args.top))
    except KeyboardInterrupt:
        print("\nStopped")
