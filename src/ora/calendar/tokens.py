"""Access-token lifecycle for an interactive calendar session.

A :class:`TokenLifecycle` owns one session's access token:

- ``acquire(INTERACTIVE)`` always shows the consent prompt;
  ``acquire(SILENT)`` retries a prior grant without a prompt and returns
  ``None`` when the provider declines.
- Every acquisition writes ``{accessToken, expiresAt}`` to session storage and
  sets the durable "connected" flag so a later session can try a silent
  re-acquisition first.
- ``handle_unauthorized`` is the one path taken on a provider 401.  It drops
  the token (keeping the flag) and notifies listeners, which is how the
  owning :class:`CalendarSession` moves to ``ERROR``.

The prompt itself is an external collaborator behind :class:`TokenGrantor`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any, Protocol

from ora.calendar.models import CalendarProfile
from ora.calendar.oauth import (
    CALENDAR_EVENTS_SCOPE,
    CALENDAR_READONLY_SCOPE,
    TokenGrant,
    coerce_expires_in_seconds,
)
from ora.calendar.provider import GoogleCalendarClient
from ora.config import DEFAULTS, CalendarDefaults
from ora.errors import (
    AuthRequiredError,
    NoClientConfigError,
    OraError,
    SessionExpiredError,
    TokenExchangeError,
    UserCancelledError,
)

logger = logging.getLogger(__name__)

TOKEN_STORAGE_KEY = "ora-google-calendar-token"
CONNECTED_FLAG_KEY = "ora-google-calendar-connected"
SESSION_SCOPES = (CALENDAR_READONLY_SCOPE, CALENDAR_EVENTS_SCOPE)

MIN_TOKEN_TTL_SECONDS = 60
EXPIRY_SKEW_SECONDS = 30

# Provider error codes meaning "a prompt would be needed", returned on silent attempts.
SILENT_DECLINE_CODES = frozenset(
    {"interaction_required", "consent_required", "login_required", "access_denied"}
)


class AcquireMode(StrEnum):
    INTERACTIVE = "interactive"
    SILENT = "silent"


class ConnectionStatus(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class KeyValueStorage(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStorage:
    """Dict-backed :class:`KeyValueStorage`."""

    def __init__(self) -> None:
        self.items: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self.items.get(key)

    def set(self, key: str, value: str) -> None:
        self.items[key] = value

    def remove(self, key: str) -> None:
        self.items.pop(key, None)


class TokenGrantor(Protocol):
    """Shows (or skips) the provider consent prompt and returns a grant.

    Raises :class:`UserCancelledError` when the user dismisses the prompt and
    :class:`TokenExchangeError` when the provider answers with an error.
    """

    async def request_access_token(
        self,
        *,
        client_id: str,
        scopes: tuple[str, ...],
        prompt: str,
        hint: str | None = None,
    ) -> TokenGrant: ...


@dataclass(frozen=True)
class StoredToken:
    access_token: str
    expires_at: datetime

    def __repr__(self) -> str:
        return f"StoredToken(access_token='[REDACTED]', expires_at={self.expires_at.isoformat()})"

    def to_json(self) -> str:
        return json.dumps(
            {
                "accessToken": self.access_token,
                "expiresAt": int(self.expires_at.timestamp() * 1000),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> StoredToken | None:
        try:
            payload = json.loads(raw)
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        access_token = payload.get("accessToken")
        expires_at = payload.get("expiresAt")
        if not isinstance(access_token, str) or not access_token:
            return None
        if isinstance(expires_at, bool) or not isinstance(expires_at, int | float):
            return None
        if not expires_at:
            return None
        return cls(access_token, datetime.fromtimestamp(expires_at / 1000, tz=UTC))


def _utcnow() -> datetime:
    return datetime.now(UTC)


ExpiredListener = Callable[[SessionExpiredError], None]


class TokenLifecycle:
    """Acquisition, validity, persistence and invalidation of one access token."""

    refreshable = False

    def __init__(
        self,
        grantor: TokenGrantor,
        *,
        client_id: str | None,
        session_storage: KeyValueStorage,
        durable_storage: KeyValueStorage,
        scopes: tuple[str, ...] = SESSION_SCOPES,
        defaults: CalendarDefaults = DEFAULTS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._grantor = grantor
        self._client_id = client_id
        self._session = session_storage
        self._durable = durable_storage
        self._scopes = scopes
        self._defaults = defaults
        self._clock = clock
        self._token: StoredToken | None = None
        self._expired_listeners: list[ExpiredListener] = []
        self._generation = 0

    @property
    def token(self) -> StoredToken | None:
        return self._token

    @property
    def generation(self) -> int:
        """Bumped by every full invalidation; grants started earlier are discarded."""
        return self._generation

    @property
    def was_connected(self) -> bool:
        return self._durable.get(CONNECTED_FLAG_KEY) == "1"

    def add_expired_listener(self, listener: ExpiredListener) -> None:
        self._expired_listeners.append(listener)

    def is_valid(self, token: StoredToken | None = None) -> bool:
        """True when *token* (default: the held one) outlives the safety margin."""
        candidate = token if token is not None else self._token
        if candidate is None:
            return False
        return self._clock() < candidate.expires_at - self._defaults.token_safety_margin

    def should_attempt_silent(self) -> bool:
        return not self.is_valid() and self.was_connected

    async def acquire(self, mode: AcquireMode, *, hint: str | None = None) -> StoredToken | None:
        """Obtain a new access token.

        Returns ``None`` only for a declined SILENT attempt; every other
        failure raises.
        """
        if not self._client_id:
            raise NoClientConfigError()

        prompt = "consent" if mode == AcquireMode.INTERACTIVE else ""
        generation = self._generation
        try:
            grant = await self._grantor.request_access_token(
                client_id=self._client_id,
                scopes=self._scopes,
                prompt=prompt,
                hint=hint,
            )
        except UserCancelledError:
            if mode == AcquireMode.SILENT:
                logger.debug("Silent token acquisition dismissed; staying disconnected")
                return None
            raise
        except TokenExchangeError as exc:
            if mode == AcquireMode.SILENT and exc.error_code in SILENT_DECLINE_CODES:
                logger.debug("Silent token acquisition declined (%s)", exc.error_code)
                return None
            raise

        if generation != self._generation:
            logger.info("Discarding calendar grant that arrived after a disconnect")
            return None
        return self._store(grant)

    def _store(self, grant: TokenGrant) -> StoredToken:
        ttl = max(coerce_expires_in_seconds(grant.expires_in), MIN_TOKEN_TTL_SECONDS)
        token = StoredToken(
            access_token=grant.access_token,
            expires_at=self._clock() + timedelta(seconds=ttl - EXPIRY_SKEW_SECONDS),
        )
        self._token = token
        self._session.set(TOKEN_STORAGE_KEY, token.to_json())
        self._durable.set(CONNECTED_FLAG_KEY, "1")
        return token

    def restore(self) -> StoredToken | None:
        """Load the session-persisted token, discarding it when expired."""
        raw = self._session.get(TOKEN_STORAGE_KEY)
        if not raw:
            return None
        token = StoredToken.from_json(raw)
        if token is None:
            self._session.remove(TOKEN_STORAGE_KEY)
            return None
        if token.expires_at <= self._clock():
            self.invalidate(keep_connected_flag=True)
            return None
        self._token = token
        return token

    def invalidate(self, *, keep_connected_flag: bool = False) -> None:
        self._token = None
        self._session.remove(TOKEN_STORAGE_KEY)
        if not keep_connected_flag:
            self._durable.remove(CONNECTED_FLAG_KEY)
            self._generation += 1

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        token = self._token
        if force_refresh or token is None or not self.is_valid(token):
            raise AuthRequiredError("No Google Calendar session is active.")
        return token.access_token

    def handle_unauthorized(self) -> OraError:
        self.invalidate(keep_connected_flag=True)
        error = SessionExpiredError()
        for listener in list(self._expired_listeners):
            listener(error)
        return error


_TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    ConnectionStatus.DISCONNECTED: frozenset({ConnectionStatus.CONNECTING}),
    ConnectionStatus.CONNECTING: frozenset(
        {ConnectionStatus.CONNECTED, ConnectionStatus.ERROR, ConnectionStatus.DISCONNECTED}
    ),
    ConnectionStatus.CONNECTED: frozenset(
        {
            ConnectionStatus.CONNECTED,
            ConnectionStatus.CONNECTING,
            ConnectionStatus.ERROR,
            ConnectionStatus.DISCONNECTED,
        }
    ),
    ConnectionStatus.ERROR: frozenset({ConnectionStatus.CONNECTING, ConnectionStatus.DISCONNECTED}),
}


class CalendarSession:
    """Connection state of one user's calendar session.

    ``DISCONNECTED -> CONNECTING -> CONNECTED -> {ERROR, DISCONNECTED}``, with
    ``CONNECTED -> CONNECTED`` on every successful refresh.
    """

    def __init__(
        self,
        tokens: TokenLifecycle,
        client: GoogleCalendarClient,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.tokens = tokens
        self.client = client
        self.status = ConnectionStatus.DISCONNECTED
        self.error: str | None = None
        self.profile: CalendarProfile | None = None
        self.last_sync: datetime | None = None
        self._clock = clock
        self._generation = 0
        self._inflight: asyncio.Task[ConnectionStatus] | None = None
        self._tasks: set[asyncio.Task[ConnectionStatus]] = set()
        tokens.add_expired_listener(self._on_expired)

    def _transition(self, target: ConnectionStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise RuntimeError(f"Invalid session transition {self.status} -> {target}")
        logger.debug("Calendar session %s -> %s", self.status, target)
        self.status = target

    def _fail(self, message: str) -> None:
        if self.status != ConnectionStatus.ERROR:
            if ConnectionStatus.ERROR not in _TRANSITIONS[self.status]:
                self._transition(ConnectionStatus.CONNECTING)
            self._transition(ConnectionStatus.ERROR)
        self.error = message

    def _on_expired(self, error: SessionExpiredError) -> None:
        self.profile = None
        self.last_sync = None
        self._fail(error.message)

    async def _join(
        self, work: Callable[[int], Coroutine[Any, Any, ConnectionStatus]]
    ) -> ConnectionStatus:
        # Concurrent connect/resume calls share the operation already running.
        if self._inflight is None or self._inflight.done():
            task = asyncio.create_task(work(self._generation))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            self._inflight = task
        return await asyncio.shield(self._inflight)

    def _stale(self, generation: int) -> bool:
        return generation != self._generation

    async def connect(self) -> ConnectionStatus:
        """Interactive connect.  Failures land in ``ERROR`` with a message."""
        return await self._join(self._connect)

    async def _connect(self, generation: int) -> ConnectionStatus:
        if self._stale(generation):
            return self.status
        self.error = None
        self._transition(ConnectionStatus.CONNECTING)
        try:
            token = await self.tokens.acquire(AcquireMode.INTERACTIVE)
        except OraError as exc:
            if not self._stale(generation):
                self._fail(exc.message)
            return self.status
        if token is None or self._stale(generation):
            return self.status
        return await self._refresh(generation)

    async def resume(self) -> ConnectionStatus:
        """Restore a session on load: stored token first, then a silent attempt."""
        if self.status == ConnectionStatus.CONNECTED:
            return self.status
        return await self._join(self._resume)

    async def _resume(self, generation: int) -> ConnectionStatus:
        if self._stale(generation):
            return self.status
        token = self.tokens.restore()
        if token is None and self.tokens.should_attempt_silent():
            self._transition(ConnectionStatus.CONNECTING)
            try:
                token = await self.tokens.acquire(AcquireMode.SILENT)
            except OraError as exc:
                logger.info("Silent calendar reconnect failed: %s", exc.message)
                token = None
            if self._stale(generation):
                return self.status
            if token is None:
                self._transition(ConnectionStatus.DISCONNECTED)
                return self.status
        if token is None:
            return self.status
        if self.status != ConnectionStatus.CONNECTING:
            self._transition(ConnectionStatus.CONNECTING)
        return await self._refresh(generation)

    async def refresh(self) -> ConnectionStatus:
        """Probe the provider with the held token and mark the session connected."""
        return await self._refresh(self._generation)

    async def _refresh(self, generation: int) -> ConnectionStatus:
        try:
            profile = await self.client.get_profile()
        except SessionExpiredError:
            return self.status
        except OraError as exc:
            if not self._stale(generation):
                self._fail(exc.message)
            return self.status
        if self._stale(generation):
            logger.debug("Dropping calendar profile fetched before a disconnect")
            return self.status
        self.profile = profile
        self._transition(ConnectionStatus.CONNECTED)
        self.last_sync = self._clock()
        self.error = None
        return self.status

    def disconnect(self) -> None:
        self._generation += 1
        self._inflight = None
        self.tokens.invalidate(keep_connected_flag=False)
        self.profile = None
        self.last_sync = None
        self.error = None
        if self.status != ConnectionStatus.DISCONNECTED:
            self._transition(ConnectionStatus.DISCONNECTED)
