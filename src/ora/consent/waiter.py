"""Client-side wait for the consent popup to report back.

The popup's completion page posts ``{"type": "ora-calendar-consent", "ok": ...}``
to its opener.  Message delivery can be blocked (closed opener, browser
policy), so a non-successful outcome is double-checked once against the
stored share flag after a short delay.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from ora.config import DEFAULTS, CalendarDefaults
from ora.consent.flow import CONSENT_MESSAGE_TYPE

logger = logging.getLogger(__name__)


class ConsentSignal(StrEnum):
    MESSAGE = "message"
    TIMEOUT = "timeout"
    CLOSED = "closed"


@dataclass(frozen=True)
class ConsentOutcome:
    ok: bool
    signal: ConsentSignal
    verified_by_poll: bool = False


class ConsentWaiter:
    """Resolve-once future settled by the first completion signal.

    Parameters
    ----------
    check_own_share:
        Optional coroutine returning whether the share flag is now set.  It
        is polled once when the first signal was not a success.
    defaults:
        Supplies the timeout and the fallback poll delay.
    """

    def __init__(
        self,
        check_own_share: Callable[[], Awaitable[bool]] | None = None,
        *,
        defaults: CalendarDefaults = DEFAULTS,
    ) -> None:
        self._check_own_share = check_own_share
        self._timeout = defaults.consent_timeout_seconds
        self._fallback_delay = defaults.consent_fallback_delay_seconds
        self._future: asyncio.Future[ConsentOutcome] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def _resolve(self, outcome: ConsentOutcome) -> bool:
        if self._future.done():
            return False
        self._future.set_result(outcome)
        return True

    def deliver(self, message: Mapping[str, Any] | Any) -> bool:
        """Feed a window message; returns True if it settled the waiter."""
        if not isinstance(message, Mapping) or message.get("type") != CONSENT_MESSAGE_TYPE:
            return False
        outcome = ConsentOutcome(ok=message.get("ok") is True, signal=ConsentSignal.MESSAGE)
        return self._resolve(outcome)

    def popup_closed(self) -> bool:
        return self._resolve(ConsentOutcome(ok=False, signal=ConsentSignal.CLOSED))

    async def wait(self) -> ConsentOutcome:
        try:
            outcome = await asyncio.wait_for(asyncio.shield(self._future), timeout=self._timeout)
        except TimeoutError:
            self._resolve(ConsentOutcome(ok=False, signal=ConsentSignal.TIMEOUT))
            outcome = self._future.result()

        if outcome.ok or self._check_own_share is None:
            return outcome

        await asyncio.sleep(self._fallback_delay)
        if await self._check_own_share():
            logger.info("Consent %s signal overridden by stored share flag", outcome.signal)
            return ConsentOutcome(ok=True, signal=outcome.signal, verified_by_poll=True)
        return outcome
