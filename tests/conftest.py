"""Shared fixtures for the ORA test suite."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from ora.store.memory import InMemoryDocumentStore

FROZEN_NOW = datetime(2026, 3, 10, 9, 15, tzinfo=UTC)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FROZEN_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store(clock: FrozenClock) -> InMemoryDocumentStore:
    return InMemoryDocumentStore(clock=clock)


Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
def mock_http() -> Callable[[Handler], httpx.AsyncClient]:
    """Factory for ``httpx.AsyncClient`` instances answered by a handler function."""

    def _build(handler: Handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _build
