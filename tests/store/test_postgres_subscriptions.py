"""Tests for LISTEN/NOTIFY snapshot delivery in the Postgres document store."""

from __future__ import annotations

import asyncio
import json

import pytest

from ora.store.postgres import NOTIFY_CHANNEL, PostgresDocumentStore

pytestmark = pytest.mark.unit


class FakeConnection:
    def __init__(self) -> None:
        self.listeners = []

    async def add_listener(self, channel, callback) -> None:
        self.listeners.append((channel, callback))

    async def remove_listener(self, channel, callback) -> None:
        self.listeners.remove((channel, callback))

    def notify(self, payload: str) -> None:
        for channel, callback in list(self.listeners):
            callback(self, 4242, channel, payload)


class FakePool:
    """Just enough of ``asyncpg.Pool`` for subscriptions and reads."""

    def __init__(self) -> None:
        self.rows: dict[str, dict] = {}
        self.conn = FakeConnection()
        self.released = []
        self.gate: asyncio.Event | None = None

    async def acquire(self) -> FakeConnection:
        return self.conn

    async def release(self, conn) -> None:
        self.released.append(conn)

    async def fetchval(self, query: str, path: str):
        if self.gate is not None:
            await self.gate.wait()
        value = self.rows.get(path)
        return None if value is None else json.dumps(value)


@pytest.fixture
def pool() -> FakePool:
    return FakePool()


class TestSubscribe:
    async def test_delivers_current_value_then_notified_changes(self, pool):
        seen = []
        subscription = await PostgresDocumentStore(pool).subscribe("users/u1", seen.append)

        pool.rows["users/u1"] = {"a": 1}
        pool.conn.notify("users/u1")
        pool.conn.notify("users/u2")
        deliveries = list(subscription._deliveries)

        assert len(deliveries) == 1
        await asyncio.gather(*deliveries)
        assert seen == [None, {"a": 1}]
        assert pool.conn.listeners[0][0] == NOTIFY_CHANNEL

    async def test_close_cancels_pending_deliveries(self, pool):
        seen = []
        subscription = await PostgresDocumentStore(pool).subscribe("users/u1", seen.append)
        pool.gate = asyncio.Event()

        pool.conn.notify("users/u1")
        pending = list(subscription._deliveries)
        await asyncio.sleep(0)
        await subscription.close()

        assert pending and all(task.cancelled() for task in pending)
        assert seen == [None]
        assert pool.conn.listeners == []
        assert pool.released == [pool.conn]

