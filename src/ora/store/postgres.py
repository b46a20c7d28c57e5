"""Document store backed by a PostgreSQL JSONB table.

Each document is one row of ``documents`` keyed by its full path.  Batches
run inside a single transaction; every written path is announced with
``pg_notify`` on :data:`NOTIFY_CHANNEL`, which is delivered only once the
transaction commits, so subscribers never see a partially applied batch.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, date, datetime
from typing import Any

import asyncpg

from ora.store.base import (
    Document,
    DocumentStore,
    SnapshotCallback,
    Subscription,
    WriteOp,
    apply_write,
    split_path,
)

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "ora_documents"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    path TEXT PRIMARY KEY,
    collection TEXT NOT NULL,
    data JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS documents_collection_idx ON documents (collection);
"""


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_jsonb(value: Any) -> str:
    return json.dumps(value, default=_json_default)


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value returned by asyncpg without a registered codec."""
    if not isinstance(val, str):
        return val
    return json.loads(val)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class _PostgresSubscription(Subscription):
    def __init__(
        self,
        store: PostgresDocumentStore,
        conn: asyncpg.Connection,
        listener: Callable[..., None],
        deliveries: set[asyncio.Task[None]],
    ) -> None:
        self._store = store
        self._conn = conn
        self._listener = listener
        self._deliveries = deliveries
        self._closed = False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._conn.remove_listener(NOTIFY_CHANNEL, self._listener)
        finally:
            # A callback may close its own subscription; never wait on the running task.
            pending = [task for task in self._deliveries if task is not asyncio.current_task()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            await self._store._pool.release(self._conn)


class PostgresDocumentStore(DocumentStore):
    def __init__(
        self,
        pool: asyncpg.Pool,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._pool = pool
        self._clock = clock

    @classmethod
    async def connect(cls, dsn: str, **pool_kwargs: Any) -> PostgresDocumentStore:
        """Open a pool for *dsn* and make sure the ``documents`` table exists."""
        pool = await asyncpg.create_pool(dsn, **pool_kwargs)
        store = cls(pool)
        await store.ensure_schema()
        return store

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    async def close(self) -> None:
        await self._pool.close()

    async def get(self, path: str) -> dict[str, Any] | None:
        split_path(path)
        row = await self._pool.fetchval("SELECT data FROM documents WHERE path = $1", path)
        if row is None:
            return None
        return decode_jsonb(row)

    async def query(
        self,
        collection: str,
        filters: Mapping[str, Any] | None = None,
        *,
        limit: int | None = None,
    ) -> list[Document]:
        rows = await self._pool.fetch(
            """
            SELECT path, data FROM documents
            WHERE collection = $1 AND data @> $2::jsonb
            ORDER BY path
            LIMIT $3
            """,
            collection,
            encode_jsonb(dict(filters or {})),
            limit,
        )
        return [Document(path=row["path"], data=decode_jsonb(row["data"])) for row in rows]

    async def commit(self, ops: list[WriteOp]) -> None:
        now = self._clock()
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                staged: dict[str, dict[str, Any]] = {}
                for op in ops:
                    if op.path in staged:
                        current = staged[op.path]
                    elif op.kind == "set":
                        current = None
                    else:
                        raw = await conn.fetchval(
                            "SELECT data FROM documents WHERE path = $1 FOR UPDATE",
                            op.path,
                        )
                        current = decode_jsonb(raw) if raw is not None else None
                    staged[op.path] = apply_write(current, op, now)

                for path, data in staged.items():
                    collection, _ = split_path(path)
                    await conn.execute(
                        """
                        INSERT INTO documents (path, collection, data, updated_at)
                        VALUES ($1, $2, $3::jsonb, now())
                        ON CONFLICT (path) DO UPDATE
                            SET data = EXCLUDED.data,
                                updated_at = now()
                        """,
                        path,
                        collection,
                        encode_jsonb(data),
                    )
                    await conn.execute("SELECT pg_notify($1, $2)", NOTIFY_CHANNEL, path)

    async def subscribe(self, path: str, callback: SnapshotCallback) -> Subscription:
        split_path(path)
        conn = await self._pool.acquire()
        loop = asyncio.get_running_loop()
        deliveries: set[asyncio.Task[None]] = set()

        async def _deliver() -> None:
            try:
                callback(await self.get(path))
            except Exception:
                logger.exception("Snapshot delivery for %s failed", path)

        def _listener(_conn: Any, _pid: int, _channel: str, payload: str) -> None:
            if payload == path:
                task = loop.create_task(_deliver())
                deliveries.add(task)
                task.add_done_callback(deliveries.discard)

        try:
            await conn.add_listener(NOTIFY_CHANNEL, _listener)
        except Exception:
            await self._pool.release(conn)
            raise
        subscription = _PostgresSubscription(self, conn, _listener, deliveries)
        await _deliver()
        return subscription
