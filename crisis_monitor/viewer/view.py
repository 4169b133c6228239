"""
view.py — Pure derivations from the incident buffer to what the map shows.

Everything here is synchronous and side-effect free; CrisisMonitor calls
build_view() after every buffer change or filter change.

  markers   filtered + located incidents, spatially deduplicated
            (focus mode shows just the focused incident, ungrouped)
  recent    the 50 newest filtered incidents by pubDate (sidebar list)
  counts    per-severity totals over the whole buffer (unfiltered)
  alert     banner level: the highest severity with a non-zero count
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from crisis_monitor.models.incident import ClusterRepresentative, Incident, Severity
from crisis_monitor.services.dedup import dedupe, located
from crisis_monitor.services.severity import severity_of

RECENT_LIMIT = 50

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

_ALERT_DESCRIPTIONS = {
    Severity.CRITICAL: "Multiple critical incidents detected",
    Severity.HIGH: "High priority incidents active",
    Severity.MEDIUM: "Moderate incidents ongoing",
    Severity.LOW: "Low priority incidents",
}


@dataclass(frozen=True)
class AlertLevel:
    level: str  # "Critical" | "High" | "Medium" | "Low" | "None"
    description: str


@dataclass(frozen=True)
class DashboardView:
    markers: list[ClusterRepresentative]
    recent: list[Incident]
    counts: dict[Severity, int]
    alert: AlertLevel
    total: int


def matches_query(incident: Incident, query: str) -> bool:
    q = query.strip().lower()
    if not q:
        return True
    text = f"{incident.title} {incident.description} {incident.source} {incident.country or ''}"
    return q in text.lower()


def filter_incidents(
    items: Iterable[Incident],
    query: str = "",
    severity: Optional[Severity] = None,
) -> list[Incident]:
    """Text search across title/description/source/country plus an optional severity."""
    return [
        i for i in items
        if matches_query(i, query) and (severity is None or severity_of(i) is severity)
    ]


def severity_counts(items: Iterable[Incident]) -> dict[Severity, int]:
    counts = {level: 0 for level in Severity}
    for incident in items:
        counts[severity_of(incident)] += 1
    return counts


def alert_level(counts: dict[Severity, int]) -> AlertLevel:
    for level in (Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW):
        if counts.get(level, 0) > 0:
            return AlertLevel(level=level.value, description=_ALERT_DESCRIPTIONS[level])
    return AlertLevel(level="None", description="No active incidents")


def recent(items: Iterable[Incident], limit: int = RECENT_LIMIT) -> list[Incident]:
    return sorted(items, key=lambda i: i.pub_date or _EPOCH, reverse=True)[:limit]


def map_markers(items: Sequence[Incident], focused_id: Optional[str] = None) -> list[ClusterRepresentative]:
    if focused_id is None:
        return dedupe(items)
    focused = located(i for i in items if i.id == focused_id)
    return [ClusterRepresentative(primary=i) for i in focused]


def build_view(
    items: Sequence[Incident],
    *,
    query: str = "",
    severity: Optional[Severity] = None,
    focused_id: Optional[str] = None,
    total: Optional[int] = None,
) -> DashboardView:
    filtered = filter_incidents(items, query, severity)
    counts = severity_counts(items)
    return DashboardView(
        markers=map_markers(filtered, focused_id),
        recent=recent(filtered),
        counts=counts,
        alert=alert_level(counts),
        total=total if total is not None else len(items),
    )
