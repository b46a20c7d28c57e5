"""Friend "right now" presence.

Presence is read from a friend's published day document
(``availability/{uid}/days/{todayKey}``) or computed directly from events.
Anything that cannot be answered, such as no document, no slot covering now,
or a refused read, is ``unknown``; a document older than the stale window
is ``stale``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from enum import StrEnum
from typing import Any

from ora.calendar.grid import day_key, local_date, normalize_interval
from ora.calendar.models import AvailabilitySlot, AvailabilityState, BusyInterval
from ora.config import DEFAULTS, CalendarDefaults
from ora.errors import StoragePermissionDeniedError
from ora.store.base import DocumentStore, Subscription, availability_day_path, coerce_timestamp

logger = logging.getLogger(__name__)


class PresenceState(StrEnum):
    FREE = "free"
    BUSY = "busy"
    UNKNOWN = "unknown"
    STALE = "stale"


@dataclass(frozen=True)
class AvailabilitySnapshot:
    state: PresenceState
    updated_at: datetime | None = None


UNKNOWN = AvailabilitySnapshot(PresenceState.UNKNOWN)


def _parse_slot(raw: Any) -> AvailabilitySlot | None:
    if not isinstance(raw, Mapping):
        return None
    try:
        return AvailabilitySlot.from_document(dict(raw))
    except (KeyError, TypeError, ValueError):
        return None


def resolve_now_slot(slots: Iterable[Any] | None, now: datetime) -> PresenceState:
    """State of the slot with ``start <= now < end``; ``unknown`` when none does."""
    if not slots:
        return PresenceState.UNKNOWN
    for raw in slots:
        slot = raw if isinstance(raw, AvailabilitySlot) else _parse_slot(raw)
        if slot is None:
            continue
        if slot.start <= now < slot.end:
            return PresenceState(slot.state.value)
    return PresenceState.UNKNOWN


def resolve_presence(
    document: Mapping[str, Any] | None,
    now: datetime,
    *,
    stale_after: timedelta = DEFAULTS.presence_stale_after,
) -> AvailabilitySnapshot:
    if document is None:
        return UNKNOWN
    updated_at = coerce_timestamp(document.get("updatedAt"))
    if updated_at is not None and now - updated_at > stale_after:
        return AvailabilitySnapshot(PresenceState.STALE, updated_at)
    return AvailabilitySnapshot(resolve_now_slot(document.get("slots"), now), updated_at)


def event_presence(
    events: Iterable[BusyInterval],
    now: datetime,
    *,
    tz: tzinfo | None = None,
    defaults: CalendarDefaults = DEFAULTS,
) -> PresenceState:
    """Busy when any opaque event covers *now*.  Transparent events are ignored."""
    zone = tz if tz is not None else defaults.tzinfo
    instant = now.astimezone(UTC)
    for event in events:
        if event.is_transparent:
            continue
        start, end = normalize_interval(event, tz=zone, defaults=defaults)
        if start <= instant < end:
            return PresenceState.BUSY
    return PresenceState.FREE


async def read_presence(
    store: DocumentStore,
    friend_uid: str,
    now: datetime,
    *,
    tz: tzinfo | None = None,
    defaults: CalendarDefaults = DEFAULTS,
) -> AvailabilitySnapshot:
    """One-shot read of a friend's presence through a viewer-scoped store."""
    zone = tz if tz is not None else defaults.tzinfo
    path = availability_day_path(friend_uid, day_key(local_date(now, zone)))
    try:
        document = await store.get(path)
    except StoragePermissionDeniedError:
        logger.debug("Presence read refused for %s", friend_uid)
        return UNKNOWN
    return resolve_presence(document, now, stale_after=defaults.presence_stale_after)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PresenceWatcher:
    """Live presence for a set of friends.

    Subscribes to each friend's day document for today and keeps the latest
    :class:`AvailabilitySnapshot` per friend.  *on_change* is called with
    ``(friend_uid, snapshot)`` after every update.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        on_change: Callable[[str, AvailabilitySnapshot], None] | None = None,
        tz: tzinfo | None = None,
        defaults: CalendarDefaults = DEFAULTS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._on_change = on_change
        self._tz = tz if tz is not None else defaults.tzinfo
        self._defaults = defaults
        self._clock = clock
        self._subscriptions: dict[str, Subscription] = {}
        self.snapshots: dict[str, AvailabilitySnapshot] = {}

    def _publish(self, friend_uid: str, snapshot: AvailabilitySnapshot) -> None:
        self.snapshots[friend_uid] = snapshot
        if self._on_change is not None:
            self._on_change(friend_uid, snapshot)

    async def watch(self, friend_uid: str) -> None:
        if friend_uid in self._subscriptions:
            return
        now = self._clock()
        path = availability_day_path(friend_uid, day_key(local_date(now, self._tz)))

        def _on_snapshot(document: dict[str, Any] | None) -> None:
            self._publish(
                friend_uid,
                resolve_presence(
                    document, self._clock(), stale_after=self._defaults.presence_stale_after
                ),
            )

        try:
            self._subscriptions[friend_uid] = await self._store.subscribe(path, _on_snapshot)
        except StoragePermissionDeniedError:
            logger.debug("Presence subscription refused for %s", friend_uid)
            self._publish(friend_uid, UNKNOWN)

    async def unwatch(self, friend_uid: str) -> None:
        subscription = self._subscriptions.pop(friend_uid, None)
        if subscription is not None:
            await subscription.close()
        self.snapshots.pop(friend_uid, None)

    async def sync(self, friend_uids: Iterable[str]) -> None:
        """Watch exactly *friend_uids*, dropping any other subscription."""
        wanted = set(friend_uids)
        for uid in list(self._subscriptions):
            if uid not in wanted:
                await self.unwatch(uid)
        for uid in sorted(wanted):
            await self.watch(uid)

    async def close(self) -> None:
        for uid in list(self._subscriptions):
            await self.unwatch(uid)
