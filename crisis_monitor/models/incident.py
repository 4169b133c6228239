"""
incident.py — Pydantic models for crisis incidents and map clusters.

Wire shape
──────────
Incidents travel as the raw MongoDB document shape, so the field names on
the wire are the ones the feed ingester writes:

  {
    "_id":        "66f0c0...",          ← ObjectId, stringified
    "title":      "Flood warning ...",
    "description": "...",
    "source":     "ReliefWeb",
    "link":       "https://...",
    "pubDate":    "2026-10-18T09:12:00+00:00",   ← event time
    "created_at": "2026-10-18T09:14:03+00:00",   ← ingestion time (cursor)
    "country":    "Philippines",
    "lat": 14.6, "lng": 121.0
  }

Severity is deliberately NOT a field. It is derived from the text by
services/severity.py every time it is needed and never stored, so it can
never drift from the title/description it came from.
"""

from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Severity(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"

    @property
    def rank(self) -> int:
        """Critical=4 … Low=1; higher sorts first on the map."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Best-effort timestamp parsing for feed-provided dates.

    Accepts datetimes, ISO-8601 strings (with or without a trailing Z) and
    RFC-822 strings as found in RSS <pubDate>. Anything else → None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, str):
        s = value.strip()
        try:
            return _as_utc(datetime.fromisoformat(s.replace("Z", "+00:00")))
        except ValueError:
            pass
        try:
            return _as_utc(parsedate_to_datetime(s))
        except (TypeError, ValueError):
            return None
    return None


class Incident(BaseModel):
    """A single ingested crisis report. Immutable once constructed."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: str = Field(alias="_id")
    title: str = ""
    description: str = ""
    source: str = ""
    link: str = ""
    pub_date: Optional[datetime] = Field(default=None, alias="pubDate")
    created_at: Optional[datetime] = None
    country: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, v: Any) -> str:
        # ObjectId from Motor, plain str from JSON
        return str(v)

    @field_validator("title", "description", "source", "link", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("pub_date", "created_at", mode="before")
    @classmethod
    def _parse_dates(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    @property
    def location(self) -> Optional[tuple[float, float]]:
        """(lat, lng), or None when absent or exactly (0, 0)."""
        if self.lat is None or self.lng is None:
            return None
        if self.lat == 0 and self.lng == 0:
            return None
        return (self.lat, self.lng)

    @classmethod
    def from_document(cls, doc: dict) -> "Incident":
        return cls.model_validate(doc)

    def to_wire(self) -> dict:
        """JSON-safe dict using wire field names (_id, pubDate, created_at)."""
        return self.model_dump(mode="json", by_alias=True)


class ClusterRepresentative(BaseModel):
    """
    One map marker standing in for a group of overlapping incidents.

    grouped_count and hidden_members are None (and dropped from the wire
    form) for a marker that groups nothing.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    primary: Incident
    grouped_count: Optional[int] = Field(default=None, alias="groupedCount")
    hidden_members: Optional[list[Incident]] = Field(default=None, alias="hiddenMembers")

    @property
    def members(self) -> list[Incident]:
        """Primary first, then the hidden members in priority order."""
        return [self.primary, *(self.hidden_members or [])]

    @property
    def size(self) -> int:
        return self.grouped_count or 1

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ── API response shapes ───────────────────────────────────────────────────────

class CountryCount(BaseModel):
    """One row of the group-by-country aggregation ($group output shape)."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")
    count: int


class StatsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total: int
    top_countries: list[CountryCount] = Field(alias="topCountries")


class CleanupResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    deleted_count: int = Field(alias="deletedCount")
    cutoff_date: datetime = Field(alias="cutoffDate")


class CleanupStatsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_entries: int = Field(alias="totalEntries")
    old_entries: int = Field(alias="oldEntries")
    cutoff_date: datetime = Field(alias="cutoffDate")
    percentage_old: int = Field(alias="percentageOld")
