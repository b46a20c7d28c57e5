"""Availability grid construction.

Turns busy intervals or calendar events into a gap-free grid of fixed-width
slots per calendar day.  Everything here is pure: the same inputs always
produce the same grid.

Days are anchored at local midnight in the grid's time zone.  Slot arithmetic
runs on UTC instants, so a day that gains or loses an hour to a DST change is
covered by the slots that actually fit between its two midnights.  The last
slot of a day is truncated at midnight when ``slot_minutes`` does not divide
the day evenly.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import UTC, date, datetime, time, timedelta, tzinfo

from ora.calendar.models import AvailabilitySlot, AvailabilityState, BusyInterval
from ora.config import DEFAULTS, CalendarDefaults

Grid = dict[str, list[AvailabilitySlot]]


def day_key(value: date) -> str:
    """Format *value* as the ``YYYY-MM-DD`` key used for day documents."""
    return value.isoformat()


def local_midnight(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def local_date(value: datetime | date, tz: tzinfo) -> date:
    """Return the calendar day *value* falls on in *tz*."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.date()
        return value.astimezone(tz).date()
    return value


def _as_instant(value: datetime | date, tz: tzinfo) -> datetime:
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=tz)
        return aware.astimezone(UTC)
    return local_midnight(value, tz).astimezone(UTC)


def normalize_interval(
    interval: BusyInterval,
    *,
    tz: tzinfo,
    defaults: CalendarDefaults = DEFAULTS,
) -> tuple[datetime, datetime]:
    """Return the concrete ``[start, end)`` UTC range covered by *interval*.

    All-day intervals span local midnights ``[start, end)`` (one day when the
    end is missing).  Timed intervals without an end last
    ``default_event_minutes``; an end at or before the start is replaced by
    ``start + min_probe_minutes``.
    """
    if interval.is_all_day:
        start_day = local_date(interval.start, tz)
        end_day = local_date(interval.end, tz) if interval.end is not None else None
        if end_day is None or end_day <= start_day:
            end_day = start_day + timedelta(days=1)
        return _as_instant(start_day, tz), _as_instant(end_day, tz)

    start = _as_instant(interval.start, tz)
    if interval.end is None:
        return start, start + defaults.default_event_duration
    end = _as_instant(interval.end, tz)
    if end <= start:
        end = start + defaults.min_probe_span
    return start, end


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open interval intersection test."""
    return a_start < b_end and a_end > b_start


def build_availability(
    intervals: Iterable[BusyInterval],
    start_date: date | datetime,
    days: int,
    slot_minutes: int | None = None,
    *,
    tz: tzinfo | None = None,
    respect_transparency: bool = False,
    defaults: CalendarDefaults = DEFAULTS,
) -> Grid:
    """Build the availability grid for *days* consecutive days.

    Parameters
    ----------
    intervals:
        Busy blocks or calendar events.  Any overlap with a slot marks that
        slot busy.
    start_date:
        First day of the grid.  A datetime is truncated to its local day.
    days:
        Number of days to produce.
    slot_minutes:
        Slot width; defaults to ``defaults.slot_minutes``.
    tz:
        Time zone the days are anchored in; defaults to ``defaults.timezone``.
    respect_transparency:
        When true, intervals marked ``transparent`` are ignored.  The
        personal grid leaves this off so free-marked events still block.

    Returns
    -------
    dict
        ``YYYY-MM-DD`` keys in chronological order, each mapped to that
        day's slots in chronological order.
    """
    width = defaults.slot_minutes if slot_minutes is None else slot_minutes
    if width <= 0:
        raise ValueError("slot_minutes must be positive")
    if days < 0:
        raise ValueError("days must not be negative")
    zone = tz if tz is not None else defaults.tzinfo

    ranges = [
        normalize_interval(interval, tz=zone, defaults=defaults)
        for interval in intervals
        if not (respect_transparency and interval.is_transparent)
    ]
    slot_width = timedelta(minutes=width)
    first_day = local_date(start_date, zone)

    grid: Grid = {}
    for offset in range(days):
        current = first_day + timedelta(days=offset)
        day_start = _as_instant(current, zone)
        day_end = _as_instant(current + timedelta(days=1), zone)
        day_minutes = (day_end - day_start).total_seconds() / 60
        slot_count = math.ceil(day_minutes / width)

        slots: list[AvailabilitySlot] = []
        for index in range(slot_count):
            slot_start = day_start + index * slot_width
            slot_end = min(slot_start + slot_width, day_end)
            busy = any(overlaps(slot_start, slot_end, start, end) for start, end in ranges)
            slots.append(
                AvailabilitySlot(
                    start=slot_start,
                    end=slot_end,
                    state=AvailabilityState.BUSY if busy else AvailabilityState.FREE,
                )
            )
        grid[day_key(current)] = slots
    return grid


def grid_to_documents(grid: Grid) -> dict[str, list[dict]]:
    """Serialize every day of *grid* into its stored slot list."""
    return {key: [slot.to_document() for slot in slots] for key, slots in grid.items()}
