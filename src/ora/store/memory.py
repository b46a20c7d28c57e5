"""In-process document store.

Backs the unit tests and single-process deployments.  Batches are applied
under a lock against a staged copy so a failing op leaves no partial writes.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from ora.store.base import (
    Document,
    DocumentStore,
    SnapshotCallback,
    Subscription,
    WriteOp,
    _CallbackRegistry,
    apply_write,
    split_path,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class _MemorySubscription(Subscription):
    def __init__(self, store: InMemoryDocumentStore, path: str, callback: SnapshotCallback):
        self._store = store
        self._path = path
        self._callback = callback
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._store._listeners.remove(self._path, self._callback)


class InMemoryDocumentStore(DocumentStore):
    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._docs: dict[str, dict[str, Any]] = {}
        self._clock = clock
        self._lock = asyncio.Lock()
        self._listeners = _CallbackRegistry()
        self.commits = 0

    async def get(self, path: str) -> dict[str, Any] | None:
        split_path(path)
        data = self._docs.get(path)
        return copy.deepcopy(data) if data is not None else None

    async def query(
        self,
        collection: str,
        filters: Mapping[str, Any] | None = None,
        *,
        limit: int | None = None,
    ) -> list[Document]:
        results: list[Document] = []
        for path in sorted(self._docs):
            parent, _ = split_path(path)
            if parent != collection:
                continue
            data = self._docs[path]
            if filters and any(data.get(key) != value for key, value in filters.items()):
                continue
            results.append(Document(path=path, data=copy.deepcopy(data)))
            if limit is not None and len(results) >= limit:
                break
        return results

    async def commit(self, ops: list[WriteOp]) -> None:
        async with self._lock:
            now = self._clock()
            staged: dict[str, dict[str, Any]] = {}
            for op in ops:
                current = staged.get(op.path, self._docs.get(op.path))
                staged[op.path] = apply_write(current, op, now)
            self._docs.update(staged)
            self.commits += 1
        for path, data in staged.items():
            self._listeners.notify(path, data)

    async def subscribe(self, path: str, callback: SnapshotCallback) -> Subscription:
        split_path(path)
        self._listeners.add(path, callback)
        callback(await self.get(path))
        return _MemorySubscription(self, path, callback)

    def paths(self, prefix: str = "") -> list[str]:
        """Return stored document paths starting with *prefix*, sorted."""
        return sorted(path for path in self._docs if path.startswith(prefix))

    async def delete(self, path: str) -> None:
        async with self._lock:
            self._docs.pop(path, None)
        self._listeners.notify(path, None)
