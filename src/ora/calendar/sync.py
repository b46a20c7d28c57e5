"""Availability sync orchestration.

Two entry points publish availability grids into the document store:

- the scheduled sweep (:meth:`CalendarSyncOrchestrator.run_sweep`) walks every
  account with granted consent and sync enabled, refreshes its stored
  refresh token, fetches free/busy for the forward horizon and rewrites the
  day documents together with ``lastCalendarSyncAt`` in one batch;
- the interactive path (:meth:`CalendarSyncOrchestrator.publish_availability`)
  writes a grid built from events the client already holds, guarded by an
  advisory auto-sync cooldown.

The sweep never raises.  Errors matching the revocation pattern flip the
account to ``revoked`` so it is not retried; every other failure is recorded
against the uid and the sweep moves on.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from enum import StrEnum
from typing import Any

import httpx
from pydantic import BaseModel, Field

from ora.calendar.grid import build_availability, day_key, local_date, local_midnight
from ora.calendar.models import AvailabilitySlot, BusyInterval
from ora.calendar.oauth import GoogleTokenEndpoint, RefreshTokenSource
from ora.calendar.provider import GoogleCalendarClient
from ora.config import DEFAULTS, CalendarDefaults
from ora.core.logging import uid_context
from ora.errors import NoClientConfigError
from ora.store.base import (
    SERVER_TIMESTAMP,
    USERS,
    DocumentStore,
    availability_day_path,
    calendar_token_path,
    coerce_timestamp,
    user_path,
)

logger = logging.getLogger(__name__)

CONSENT_GRANTED = "granted"
CONSENT_REVOKED = "revoked"
SOURCE_SWEEP = "google_calendar"
SOURCE_CLIENT = "client_publish"
MISSING_REFRESH_TOKEN = "Missing refresh token."

_REVOCATION_PATTERN = re.compile(r"invalid_grant|token\b.*\brevoked", re.IGNORECASE | re.DOTALL)


def is_revocation_error(error: BaseException | str) -> bool:
    """True when *error* says the user's grant was revoked or expired."""
    if isinstance(error, str):
        return bool(_REVOCATION_PATTERN.search(error))
    error_code = getattr(error, "error_code", None)
    if isinstance(error_code, str) and error_code == "invalid_grant":
        return True
    return bool(_REVOCATION_PATTERN.search(str(error)))


class SyncStatus(StrEnum):
    SYNCED = "synced"
    REVOKED = "revoked"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncOutcome:
    uid: str
    status: SyncStatus
    error: str | None = None
    days_written: int = 0


class FailedAccount(BaseModel):
    uid: str
    error: str


class SweepSummary(BaseModel):
    ok: bool = True
    scanned: int = 0
    synced: int = 0
    revoked: list[str] = Field(default_factory=list)
    failed: list[FailedAccount] = Field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(UTC)


ClientFactory = Callable[[RefreshTokenSource], GoogleCalendarClient]


class CalendarSyncOrchestrator:
    """Publishes per-day availability documents for calendar accounts."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        token_endpoint: GoogleTokenEndpoint | None = None,
        http_client: httpx.AsyncClient | None = None,
        client_factory: ClientFactory | None = None,
        defaults: CalendarDefaults = DEFAULTS,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._endpoint = token_endpoint
        self._http_client = http_client
        self._client_factory = client_factory
        self._defaults = defaults
        self._tz = tz if tz is not None else defaults.tzinfo
        self._clock = clock

    def _client_for(self, source: RefreshTokenSource) -> GoogleCalendarClient:
        if self._client_factory is not None:
            return self._client_factory(source)
        return GoogleCalendarClient(
            source,
            self._http_client,
            default_event_minutes=self._defaults.default_event_minutes,
        )

    def _day_window(self, now: datetime, days: int) -> tuple[datetime, datetime]:
        first_day = local_date(now, self._tz)
        return (
            local_midnight(first_day, self._tz),
            local_midnight(first_day + timedelta(days=days), self._tz),
        )

    # ------------------------------------------------------------------
    # Scheduled path
    # ------------------------------------------------------------------

    async def sync_account(self, uid: str, *, now: datetime | None = None) -> SyncOutcome:
        """Refresh one account's availability from its stored refresh token."""
        with uid_context(uid):
            try:
                return await self._sync_account(uid, now or self._clock())
            except Exception as exc:
                message = str(exc) or type(exc).__name__
                if is_revocation_error(exc):
                    await self.mark_revoked(uid)
                    logger.warning("Calendar grant revoked; sync disabled")
                    return SyncOutcome(uid=uid, status=SyncStatus.REVOKED, error=message)
                logger.warning("Calendar sync failed: %s", message, exc_info=True)
                return SyncOutcome(uid=uid, status=SyncStatus.FAILED, error=message)

    async def _sync_account(self, uid: str, now: datetime) -> SyncOutcome:
        token_doc = await self._store.get(calendar_token_path(uid))
        refresh_token = (token_doc or {}).get("refreshToken")
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            return SyncOutcome(uid=uid, status=SyncStatus.FAILED, error=MISSING_REFRESH_TOKEN)
        if self._endpoint is None:
            raise NoClientConfigError("Missing Google OAuth credentials.")

        source = RefreshTokenSource(self._endpoint, refresh_token.strip())
        client = self._client_for(source)
        days = self._defaults.sync_horizon_days
        time_min, time_max = self._day_window(now, days)
        try:
            busy = await client.free_busy(time_min, time_max)
        finally:
            await client.aclose()

        grid = await self._write_grid(
            uid,
            busy,
            start=time_min,
            days=days,
            source=SOURCE_SWEEP,
            user_fields={
                "lastCalendarSyncAt": SERVER_TIMESTAMP,
                "calendarConsentStatus": CONSENT_GRANTED,
            },
        )
        logger.info(
            "Calendar availability synced (%d day(s), %d busy block(s))", len(grid), len(busy)
        )
        return SyncOutcome(uid=uid, status=SyncStatus.SYNCED, days_written=len(grid))

    async def mark_revoked(self, uid: str) -> None:
        await self._store.set(
            user_path(uid),
            {
                "calendarConsentStatus": CONSENT_REVOKED,
                "calendarSyncEnabled": False,
                "updatedAt": SERVER_TIMESTAMP,
            },
            merge=True,
        )

    async def run_sweep(self, *, now: datetime | None = None) -> SweepSummary:
        """Sync every opted-in account, isolating per-account failures."""
        started = now or self._clock()
        accounts = await self._store.query(
            USERS,
            {"calendarConsentStatus": CONSENT_GRANTED, "calendarSyncEnabled": True},
            limit=self._defaults.sweep_page_size,
        )
        semaphore = asyncio.Semaphore(max(self._defaults.sweep_concurrency, 1))

        async def _guarded(uid: str) -> SyncOutcome:
            async with semaphore:
                try:
                    return await self.sync_account(uid, now=started)
                except Exception as exc:
                    logger.exception("Calendar sweep iteration crashed for %s", uid)
                    return SyncOutcome(
                        uid=uid, status=SyncStatus.FAILED, error=str(exc) or type(exc).__name__
                    )

        outcomes = await asyncio.gather(*(_guarded(doc.id) for doc in accounts))

        summary = SweepSummary(scanned=len(accounts))
        for outcome in outcomes:
            if outcome.status == SyncStatus.SYNCED:
                summary.synced += 1
            elif outcome.status == SyncStatus.REVOKED:
                summary.revoked.append(outcome.uid)
            else:
                summary.failed.append(
                    FailedAccount(uid=outcome.uid, error=outcome.error or "Unknown error")
                )
        logger.info(
            "Calendar sweep finished: scanned=%d synced=%d revoked=%d failed=%d",
            summary.scanned,
            summary.synced,
            len(summary.revoked),
            len(summary.failed),
        )
        return summary

    # ------------------------------------------------------------------
    # Interactive path
    # ------------------------------------------------------------------

    async def publish_availability(
        self,
        uid: str,
        events: Iterable[BusyInterval],
        *,
        now: datetime | None = None,
    ) -> dict[str, list[AvailabilitySlot]]:
        """Publish a grid built from client-held *events* for the publish horizon."""
        current = now or self._clock()
        days = self._defaults.publish_horizon_days
        start, _ = self._day_window(current, days)
        grid = await self._write_grid(
            uid, list(events), start=start, days=days, source=SOURCE_CLIENT
        )
        with uid_context(uid):
            logger.info("Availability published from client events (%d day(s))", len(grid))
        return grid

    async def last_published_at(self, uid: str, *, now: datetime | None = None) -> datetime | None:
        """Return ``updatedAt`` of today's day document, if any."""
        current = now or self._clock()
        document = await self._store.get(
            availability_day_path(uid, day_key(local_date(current, self._tz)))
        )
        if document is None:
            return None
        return coerce_timestamp(document.get("updatedAt"))

    def should_auto_sync(
        self, last_updated_at: datetime | None, *, now: datetime | None = None
    ) -> bool:
        """Advisory cooldown: skip when the last publish is newer than the window."""
        if last_updated_at is None:
            return True
        current = now or self._clock()
        return current - last_updated_at >= self._defaults.auto_sync_cooldown

    async def auto_publish(
        self,
        uid: str,
        events: Iterable[BusyInterval],
        *,
        now: datetime | None = None,
    ) -> bool:
        """Publish unless the cooldown says a recent publish is still fresh."""
        current = now or self._clock()
        last = await self.last_published_at(uid, now=current)
        if not self.should_auto_sync(last, now=current):
            logger.debug("Skipping auto publish for %s; last publish at %s", uid, last)
            return False
        await self.publish_availability(uid, events, now=current)
        return True

    # ------------------------------------------------------------------

    async def _write_grid(
        self,
        uid: str,
        intervals: list[BusyInterval],
        *,
        start: datetime,
        days: int,
        source: str,
        user_fields: dict[str, Any] | None = None,
    ) -> dict[str, list[AvailabilitySlot]]:
        """Write every day of the grid, plus *user_fields* on ``users/{uid}``, in one batch."""
        grid = build_availability(
            intervals,
            start,
            days,
            tz=self._tz,
            defaults=self._defaults,
        )
        batch = self._store.batch()
        for key, slots in grid.items():
            batch.set(
                availability_day_path(uid, key),
                {
                    "slots": [slot.to_document() for slot in slots],
                    "source": source,
                    "updatedAt": SERVER_TIMESTAMP,
                },
                merge=True,
            )
        if user_fields:
            batch.set(user_path(uid), user_fields, merge=True)
        await batch.commit()
        return grid
