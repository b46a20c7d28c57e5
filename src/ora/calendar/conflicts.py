"""Advisory conflict detection before event creation.

A candidate is normalized into a concrete probe window, the provider is asked
for events overlapping that window, and whatever comes back is reported as a
conflict.  Conflicts never hard-block: ``create_event`` raises
:class:`ConflictDetectedError` unless the caller passes ``allow_conflicts``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo

from ora.calendar.grid import local_date, local_midnight
from ora.calendar.models import CalendarEvent, CalendarEventCreate
from ora.calendar.provider import PRIMARY_CALENDAR_ID, GoogleCalendarClient
from ora.config import DEFAULTS, CalendarDefaults
from ora.errors import ConflictDetectedError

logger = logging.getLogger(__name__)

EventsFetcher = Callable[[datetime, datetime], Awaitable[list[CalendarEvent]]]


@dataclass(frozen=True)
class ProbeWindow:
    time_min: datetime
    time_max: datetime


def probe_window(
    candidate: CalendarEventCreate,
    *,
    tz: tzinfo | None = None,
    defaults: CalendarDefaults = DEFAULTS,
) -> ProbeWindow:
    """Return the ``[time_min, time_max)`` window to probe for *candidate*.

    All-day candidates cover local midnight of ``start`` through the midnight
    after their last day.  Timed candidates use the explicit end, or
    ``default_event_minutes`` when it is missing, and never less than
    ``min_probe_minutes``.
    """
    zone = tz if tz is not None else defaults.tzinfo

    if candidate.is_all_day:
        first_day = local_date(candidate.start, zone)
        last_day = local_date(candidate.end, zone) if candidate.end is not None else first_day
        if last_day < first_day:
            last_day = first_day
        return ProbeWindow(
            time_min=local_midnight(first_day, zone),
            time_max=local_midnight(last_day + timedelta(days=1), zone),
        )

    start = candidate.start
    if isinstance(start, datetime) and start.tzinfo is None:
        start = start.replace(tzinfo=zone)
    end = candidate.end
    if end is None:
        end = start + defaults.default_event_duration
    else:
        if isinstance(end, datetime) and end.tzinfo is None:
            end = end.replace(tzinfo=zone)
        if end <= start:
            end = start + defaults.min_probe_span
    return ProbeWindow(time_min=start, time_max=end)


async def check_conflicts(
    candidate: CalendarEventCreate,
    fetch_events: EventsFetcher,
    *,
    tz: tzinfo | None = None,
    defaults: CalendarDefaults = DEFAULTS,
) -> list[CalendarEvent]:
    """Return the existing events overlapping *candidate*; empty means no conflict."""
    window = probe_window(candidate, tz=tz, defaults=defaults)
    return list(await fetch_events(window.time_min, window.time_max))


class ConflictDetector:
    """Conflict probe and guarded event creation against one calendar."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        *,
        calendar_id: str = PRIMARY_CALENDAR_ID,
        tz: tzinfo | None = None,
        defaults: CalendarDefaults = DEFAULTS,
    ) -> None:
        self._client = client
        self._calendar_id = calendar_id
        self._tz = tz
        self._defaults = defaults

    async def _fetch(self, time_min: datetime, time_max: datetime) -> list[CalendarEvent]:
        return await self._client.list_events(time_min, time_max, calendar_id=self._calendar_id)

    async def check(self, candidate: CalendarEventCreate) -> list[CalendarEvent]:
        return await check_conflicts(candidate, self._fetch, tz=self._tz, defaults=self._defaults)

    async def create_event(
        self,
        payload: CalendarEventCreate,
        *,
        allow_conflicts: bool = False,
    ) -> CalendarEvent:
        """Create *payload* after a conflict probe.

        Raises
        ------
        ConflictDetectedError
            When overlapping events exist and ``allow_conflicts`` is false.
        """
        conflicts = await self.check(payload)
        if conflicts:
            if not allow_conflicts:
                raise ConflictDetectedError(conflicts)
            logger.info(
                "Creating event despite %d conflict(s) (allow_conflicts=True)", len(conflicts)
            )
        return await self._client.create_event(payload, calendar_id=self._calendar_id)
