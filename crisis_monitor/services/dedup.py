"""
dedup.py — Spatial deduplication of incidents into map markers.

Several feeds often report the same real-world event, and the same feed
item can arrive twice over the stream. Plotting all of them stacks markers
on top of each other, so the viewer collapses every group of incidents
within PROXIMITY_THRESHOLD of each other into one ClusterRepresentative
and shows the highest-priority incident of the group.

ALGORITHM
─────────
  1. Drop incidents without a usable location (missing or exactly 0,0).
  2. Sort by severity rank desc, then pubDate desc, then id (a total order,
     so the output does not depend on input order).
  3. Walk the sorted list. For each incident not yet processed, its group
     is every unprocessed incident (itself included) whose distance in
     degree-space is ≤ threshold.
  4. Emit the walking incident as primary, the rest as hidden members.
  5. Mark the whole group processed.

Distances are plain Euclidean in (lat, lng) degrees, not geodesic:
0.225° is ≈25 km at the equator and shrinks in longitude towards the poles.

SCALING
───────
LinearScan compares each incident against all others: quadratic, fine for
the 1500-item viewer buffer. GridIndex buckets points into threshold-sized
cells and only scans the 3×3 neighbourhood; it is a drop-in replacement
that yields identical output.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from typing import Callable, Iterable, Sequence

from crisis_monitor.models.incident import ClusterRepresentative, Incident
from crisis_monitor.services.severity import severity_of

logger = logging.getLogger(__name__)

# Degrees; roughly 25 km at the equator
PROXIMITY_THRESHOLD = 0.225
# Absorbs float error in coordinate differences, e.g. 45.225 - 45.0
_BOUNDARY_SLACK = 1e-9

Point = tuple[float, float]


def located(incidents: Iterable[Incident]) -> list[Incident]:
    """Incidents that can be placed on the map."""
    return [i for i in incidents if i.location is not None]


def priority_key(incident: Incident) -> tuple:
    """Sort key: most severe first, then newest pubDate, then id."""
    ts = incident.pub_date.timestamp() if incident.pub_date is not None else float("-inf")
    return (-severity_of(incident).rank, -ts, incident.id)


def within(a: Point, b: Point, threshold: float = PROXIMITY_THRESHOLD) -> bool:
    # Inclusive boundary
    return math.hypot(a[0] - b[0], a[1] - b[1]) <= threshold + _BOUNDARY_SLACK


class LinearScan:
    """Every point is a candidate neighbour of every other point."""

    def __init__(self, points: Sequence[Point], threshold: float) -> None:
        self._n = len(points)

    def candidates(self, pos: int) -> Iterable[int]:
        return range(self._n)


class GridIndex:
    """Uniform grid with cell size ≥ the match distance; neighbours live in the 3×3 block."""

    def __init__(self, points: Sequence[Point], threshold: float) -> None:
        self._cell = threshold + _BOUNDARY_SLACK
        self._points = points
        self._buckets: dict[tuple[int, int], list[int]] = defaultdict(list)
        for pos, point in enumerate(points):
            self._buckets[self._key(point)].append(pos)

    def _key(self, point: Point) -> tuple[int, int]:
        return (math.floor(point[0] / self._cell), math.floor(point[1] / self._cell))

    def candidates(self, pos: int) -> Iterable[int]:
        row, col = self._key(self._points[pos])
        found: list[int] = []
        for dr in (-1, 0, 1):
            for dc in (-1, 0, 1):
                found.extend(self._buckets.get((row + dr, col + dc), ()))
        # Ascending positions keep hidden members in priority order
        return sorted(found)


SpatialIndex = Callable[[Sequence[Point], float], "LinearScan | GridIndex"]


def dedupe(
    incidents: Iterable[Incident],
    *,
    threshold: float = PROXIMITY_THRESHOLD,
    index: SpatialIndex = LinearScan,
) -> list[ClusterRepresentative]:
    """
    Collapse spatially overlapping incidents into cluster representatives.

    Every located input incident ends up in exactly one representative,
    either as its primary or among its hidden members.
    """
    ordered = sorted(located(incidents), key=priority_key)
    points: list[Point] = [i.location for i in ordered]  # type: ignore[misc]
    spatial = index(points, threshold)
    processed = [False] * len(ordered)

    clusters: list[ClusterRepresentative] = []
    for pos, incident in enumerate(ordered):
        if processed[pos]:
            continue
        group = [
            j for j in spatial.candidates(pos)
            if not processed[j] and within(points[pos], points[j], threshold)
        ]
        for j in group:
            processed[j] = True
        hidden = [ordered[j] for j in group if j != pos]
        clusters.append(ClusterRepresentative(
            primary=incident,
            grouped_count=len(group) if len(group) > 1 else None,
            hidden_members=hidden or None,
        ))

    grouped = sum(1 for c in clusters if c.grouped_count)
    if grouped:
        logger.debug(
            "Deduplicated %d incidents into %d markers (%d grouped)",
            len(ordered), len(clusters), grouped,
        )
    return clusters
