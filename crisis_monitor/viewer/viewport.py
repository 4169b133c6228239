"""
viewport.py — Fit the map to the current set of markers.

Re-fitting on every render makes the map jump around while the user is
looking at it, so a fit is only requested when the set of primary ids
changes (order does not matter).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from crisis_monitor.models.incident import ClusterRepresentative

logger = logging.getLogger(__name__)

PADDING_RATIO = 0.1
MAX_ZOOM = 8


@dataclass(frozen=True)
class Bounds:
    south: float
    west: float
    north: float
    east: float

    @classmethod
    def from_points(cls, points: Iterable[tuple[float, float]]) -> "Bounds":
        lats, lngs = zip(*points)
        return cls(south=min(lats), west=min(lngs), north=max(lats), east=max(lngs))

    def pad(self, ratio: float) -> "Bounds":
        """Grow each side by `ratio` of the span on that axis."""
        lat_buffer = (self.north - self.south) * ratio
        lng_buffer = (self.east - self.west) * ratio
        return Bounds(
            south=self.south - lat_buffer,
            west=self.west - lng_buffer,
            north=self.north + lat_buffer,
            east=self.east + lng_buffer,
        )


@dataclass(frozen=True)
class FitRequest:
    """What the rendering surface is asked to show.

    A lone marker gives zero-span bounds; max_zoom keeps the map from
    zooming all the way in on it.
    """

    bounds: Bounds
    max_zoom: int = MAX_ZOOM


class ViewportFitter:
    """Requests a padded map fit whenever the displayed marker set changes."""

    def __init__(
        self,
        request_fit: Callable[[FitRequest], None],
        padding: float = PADDING_RATIO,
        max_zoom: int = MAX_ZOOM,
    ) -> None:
        self._request_fit = request_fit
        self.padding = padding
        self.max_zoom = max_zoom
        self._last_ids: Optional[frozenset[str]] = None

    def fit(self, clusters: Sequence[ClusterRepresentative]) -> Optional[FitRequest]:
        if not clusters:
            return None
        ids = frozenset(c.primary.id for c in clusters)
        if ids == self._last_ids:
            return None
        self._last_ids = ids

        points = [m.location for c in clusters for m in c.members if m.location is not None]
        if not points:
            return None
        request = FitRequest(
            bounds=Bounds.from_points(points).pad(self.padding),
            max_zoom=self.max_zoom,
        )
        try:
            self._request_fit(request)
        except Exception as exc:
            logger.warning("Error fitting bounds: %s", exc)
        return request
