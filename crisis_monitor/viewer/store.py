"""
store.py — Bounded, most-recent-first buffer of incidents on the viewer.

The buffer is fed twice: once by the /crises snapshot, then by every
`update` batch from the stream. No deduplication by id happens here; a
record delivered twice simply appears twice and the spatial dedup folds
the copies into one marker.
"""

from __future__ import annotations

import logging
from typing import Callable, Sequence

from crisis_monitor.core.config import settings
from crisis_monitor.models.incident import Incident

logger = logging.getLogger(__name__)

MAX_BUFFER = 1500


def merge_batch(
    existing: Sequence[Incident],
    batch: Sequence[Incident],
    cap: int = MAX_BUFFER,
) -> list[Incident]:
    """
    Prepend a feed batch (oldest → newest) and truncate to `cap`.

    The batch is reversed on the way in so the newest record sits at
    index 0 and the buffer stays most-recent-first.
    """
    return [*reversed(batch), *existing][:cap]


class IncidentStore:
    """Single-writer holder of the merged buffer; notifies listeners on change."""

    def __init__(self, cap: int = settings.viewer_buffer_size) -> None:
        self.cap = cap
        self.items: list[Incident] = []
        self._listeners: list[Callable[[list[Incident]], None]] = []

    def subscribe(self, listener: Callable[[list[Incident]], None]) -> None:
        self._listeners.append(listener)

    def load_snapshot(self, snapshot: Sequence[Incident]) -> None:
        """Merge a /crises snapshot (newest first)."""
        self._replace(merge_batch(self.items, list(reversed(snapshot)), self.cap))

    def apply_update(self, batch: Sequence[Incident]) -> None:
        """Merge a stream batch (oldest first)."""
        if not batch:
            return
        self._replace(merge_batch(self.items, batch, self.cap))

    def _replace(self, items: list[Incident]) -> None:
        self.items = items
        logger.debug("Incident buffer now holds %d items", len(items))
        for listener in self._listeners:
            listener(items)

    def __len__(self) -> int:
        return len(self.items)
