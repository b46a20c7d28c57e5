"""Calendar domain models shared by the grid builder, conflict probe and sync."""

from __future__ import annotations

from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def format_rfc3339(value: datetime) -> str:
    """Render *value* as a UTC RFC 3339 string with a ``Z`` suffix."""
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_rfc3339(value: str) -> datetime:
    """Parse an RFC 3339 timestamp, treating a missing offset as UTC."""
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Invalid RFC 3339 timestamp: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


class AvailabilityState(StrEnum):
    FREE = "free"
    BUSY = "busy"


class ConfidenceLevel(StrEnum):
    """Confidence attached to a slot.  Only ``MEDIUM`` is produced today."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Transparency(StrEnum):
    OPAQUE = "opaque"
    TRANSPARENT = "transparent"


class EventStatus(StrEnum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class EventVisibility(StrEnum):
    DEFAULT = "default"
    PUBLIC = "public"
    PRIVATE = "private"
    CONFIDENTIAL = "confidential"


class AvailabilitySlot(BaseModel):
    """One fixed-width slot of a day's availability grid."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    state: AvailabilityState
    confidence_level: ConfidenceLevel = ConfidenceLevel.MEDIUM

    def to_document(self) -> dict[str, Any]:
        return {
            "start": format_rfc3339(self.start),
            "end": format_rfc3339(self.end),
            "state": self.state.value,
            "confidenceLevel": self.confidence_level.value,
        }

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> AvailabilitySlot:
        return cls(
            start=parse_rfc3339(str(data["start"])),
            end=parse_rfc3339(str(data["end"])),
            state=AvailabilityState(data["state"]),
            confidence_level=ConfidenceLevel(data.get("confidenceLevel", "medium")),
        )


class BusyInterval(BaseModel):
    """A busy time range.

    All-day intervals carry :class:`date` boundaries with an exclusive end,
    timed intervals carry :class:`datetime` boundaries.  ``end`` may be
    missing or degenerate; :func:`ora.calendar.grid.normalize_interval`
    synthesizes a usable one.
    """

    start: datetime | date
    end: datetime | date | None = None
    is_all_day: bool = False
    transparency: Transparency | None = None

    @model_validator(mode="after")
    def _infer_all_day(self) -> BusyInterval:
        if not isinstance(self.start, datetime) and not self.is_all_day:
            self.is_all_day = True
        return self

    @property
    def is_transparent(self) -> bool:
        return self.transparency == Transparency.TRANSPARENT


class CalendarEvent(BusyInterval):
    """Canonical event shape produced from provider payloads."""

    event_id: str
    title: str = "Untitled event"
    location: str | None = None
    html_link: str | None = None
    status: EventStatus | None = None
    visibility: EventVisibility | None = None


class CalendarEventCreate(BaseModel):
    """Input for creating an event.

    For all-day events ``end`` is the last day the event covers (inclusive);
    when omitted the event covers ``start`` only.
    """

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1)
    start: datetime | date
    end: datetime | date | None = None
    is_all_day: bool = False
    location: str | None = None
    description: str | None = None

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string")
        return normalized

    @model_validator(mode="after")
    def _validate_boundaries(self) -> CalendarEventCreate:
        start_is_date = not isinstance(self.start, datetime)
        if start_is_date:
            self.is_all_day = True
        if self.is_all_day and not start_is_date:
            raise ValueError("all-day events must use date boundaries")
        if self.end is not None and isinstance(self.end, datetime) == self.is_all_day:
            raise ValueError("start and end must both be dates or both be datetimes")
        return self


class CalendarProfile(BaseModel):
    email: str | None = None
    summary: str | None = None
