"""
severity.py — Keyword-based severity classification.

Severity is a pure function of an incident's title and description. It is
applied at the dedup / render boundary and never persisted, so the same
text always yields the same level.

The lexicons are checked in priority order; the first one with any
substring hit wins and everything else is Low.

USAGE
─────
    from crisis_monitor.services.severity import classify, severity_of

    classify("Major earthquake hits coast", "")   # → Severity.CRITICAL
    severity_of(incident)                          # same, from an Incident
"""

from __future__ import annotations

from typing import Optional

from crisis_monitor.models.incident import Incident, Severity

# Ordered highest priority first. Phrases are matched as lower-case substrings.
_LEXICONS: tuple[tuple[Severity, tuple[str, ...]], ...] = (
    (Severity.CRITICAL, (
        "massive",
        "catastrophic",
        "tsunami",
        "hurricane",
        "category 4",
        "major earthquake",
        "hundreds dead",
        "state of emergency",
    )),
    (Severity.HIGH, (
        "earthquake",
        "flood",
        "wildfire",
        "cyclone",
        "tornado",
        "landslide",
        "explosion",
        "outbreak",
    )),
    (Severity.MEDIUM, (
        "storm",
        "heavy rain",
        "evacuation",
        "accident",
        "conflict",
    )),
)


def classify(title: Optional[str], description: Optional[str]) -> Severity:
    """Return the severity level for a title/description pair. Never raises."""
    text = f"{title or ''} {description or ''}".lower()
    for level, keywords in _LEXICONS:
        if any(k in text for k in keywords):
            return level
    return Severity.LOW


def severity_of(incident: Incident) -> Severity:
    return classify(incident.title, incident.description)
