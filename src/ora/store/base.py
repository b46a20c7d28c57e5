"""Document store contract used by the sync, friends and consent code.

The store is document-oriented: every document lives at a slash separated
path such as ``users/{uid}`` or ``availability/{uid}/days/{dayKey}`` and
holds a JSON-compatible mapping.  Operations:

- ``get`` / ``set`` (optionally merging) / ``update`` single documents
- ``query`` a collection with equality filters
- ``batch`` several writes and commit them atomically
- ``subscribe`` to changes of a single document

:data:`SERVER_TIMESTAMP` may appear as a top-level field value in any write
and is replaced with the store's clock at commit time.
"""

from __future__ import annotations

import abc
import copy
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from ora.errors import DocumentNotFoundError, StoragePermissionDeniedError

logger = logging.getLogger(__name__)

USERS = "users"
CALENDAR_TOKENS = "calendarTokens"
AVAILABILITY = "availability"
FRIEND_REQUESTS = "friendRequests"


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP: Any = _ServerTimestamp()

SnapshotCallback = Callable[[dict[str, Any] | None], None]
ReadPolicy = Callable[[str, dict[str, Any] | None], Awaitable[bool]]


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def user_path(uid: str) -> str:
    return f"{USERS}/{uid}"


def calendar_token_path(uid: str) -> str:
    return f"{CALENDAR_TOKENS}/{uid}"


def availability_days_collection(uid: str) -> str:
    return f"{AVAILABILITY}/{uid}/days"


def availability_day_path(uid: str, day_key: str) -> str:
    return f"{availability_days_collection(uid)}/{day_key}"


def friend_request_id(from_uid: str, to_uid: str) -> str:
    return f"{from_uid}_{to_uid}"


def friend_request_path(from_uid: str, to_uid: str) -> str:
    return f"{FRIEND_REQUESTS}/{friend_request_id(from_uid, to_uid)}"


def split_path(path: str) -> tuple[str, str]:
    """Split a document path into ``(collection, document_id)``."""
    segments = [segment for segment in path.split("/") if segment]
    if len(segments) < 2 or len(segments) % 2:
        raise ValueError(f"Not a document path: {path!r}")
    return "/".join(segments[:-1]), segments[-1]


def coerce_timestamp(value: Any) -> datetime | None:
    """Return *value* as an aware datetime, accepting ISO strings from JSON stores."""
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, str) and value.strip():
        normalized = value.strip()
        if normalized.endswith("Z"):
            normalized = f"{normalized[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    return None


# ---------------------------------------------------------------------------
# Write operations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Document:
    path: str
    data: dict[str, Any]

    @property
    def id(self) -> str:
        return split_path(self.path)[1]


@dataclass(frozen=True)
class WriteOp:
    kind: Literal["set", "merge", "update"]
    path: str
    data: dict[str, Any]


def _resolve_sentinels(data: Mapping[str, Any], now: datetime) -> dict[str, Any]:
    resolved: dict[str, Any] = {}
    for key, value in data.items():
        if value is SERVER_TIMESTAMP:
            resolved[key] = now
        elif isinstance(value, Mapping):
            resolved[key] = _resolve_sentinels(value, now)
        else:
            resolved[key] = copy.deepcopy(value)
    return resolved


def _deep_merge(base: dict[str, Any], incoming: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in incoming.items():
        existing = merged.get(key)
        if isinstance(existing, dict) and isinstance(value, Mapping):
            merged[key] = _deep_merge(existing, value)
        else:
            merged[key] = value
    return merged


def apply_write(current: dict[str, Any] | None, op: WriteOp, now: datetime) -> dict[str, Any]:
    """Return the document produced by applying *op* on top of *current*.

    ``set`` replaces, ``merge`` deep-merges nested maps, ``update`` replaces
    top-level fields and requires the document to exist.
    """
    data = _resolve_sentinels(op.data, now)
    if op.kind == "set":
        return data
    if op.kind == "merge":
        return _deep_merge(current or {}, data)
    if current is None:
        raise DocumentNotFoundError(op.path)
    return {**current, **data}


class WriteBatch:
    """Collects writes that are committed together or not at all."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store
        self.ops: list[WriteOp] = []
        self._committed = False

    def set(self, path: str, data: Mapping[str, Any], *, merge: bool = False) -> WriteBatch:
        split_path(path)
        self.ops.append(WriteOp("merge" if merge else "set", path, dict(data)))
        return self

    def update(self, path: str, data: Mapping[str, Any]) -> WriteBatch:
        split_path(path)
        self.ops.append(WriteOp("update", path, dict(data)))
        return self

    def __len__(self) -> int:
        return len(self.ops)

    async def commit(self) -> None:
        if self._committed:
            raise RuntimeError("WriteBatch has already been committed")
        self._committed = True
        if self.ops:
            await self._store.commit(self.ops)


# ---------------------------------------------------------------------------
# Store contract
# ---------------------------------------------------------------------------


class Subscription(abc.ABC):
    """Handle returned by :meth:`DocumentStore.subscribe`."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Stop delivering snapshots.  Safe to call more than once."""


class DocumentStore(abc.ABC):
    """Abstract document store."""

    @abc.abstractmethod
    async def get(self, path: str) -> dict[str, Any] | None:
        """Return the document at *path*, or ``None`` when it does not exist."""

    @abc.abstractmethod
    async def query(
        self,
        collection: str,
        filters: Mapping[str, Any] | None = None,
        *,
        limit: int | None = None,
    ) -> list[Document]:
        """Return documents of *collection* whose fields equal every filter value."""

    @abc.abstractmethod
    async def commit(self, ops: list[WriteOp]) -> None:
        """Apply *ops* atomically."""

    @abc.abstractmethod
    async def subscribe(self, path: str, callback: SnapshotCallback) -> Subscription:
        """Deliver the current document and every later change to *callback*."""

    async def set(self, path: str, data: Mapping[str, Any], *, merge: bool = False) -> None:
        await self.batch().set(path, data, merge=merge).commit()

    async def update(self, path: str, data: Mapping[str, Any]) -> None:
        await self.batch().update(path, data).commit()

    def batch(self) -> WriteBatch:
        return WriteBatch(self)


class ScopedDocumentStore(DocumentStore):
    """Read-authorizing view over another store.

    Every read is checked against *policy* with the document's current data
    (``None`` when absent) and raises :class:`StoragePermissionDeniedError`
    when the policy refuses.  Writes pass through unchanged.
    """

    def __init__(self, inner: DocumentStore, policy: ReadPolicy) -> None:
        self._inner = inner
        self._policy = policy

    async def _check(self, path: str, data: dict[str, Any] | None) -> None:
        if not await self._policy(path, data):
            raise StoragePermissionDeniedError(path)

    async def get(self, path: str) -> dict[str, Any] | None:
        data = await self._inner.get(path)
        await self._check(path, data)
        return data

    async def query(
        self,
        collection: str,
        filters: Mapping[str, Any] | None = None,
        *,
        limit: int | None = None,
    ) -> list[Document]:
        documents = await self._inner.query(collection, filters, limit=limit)
        for document in documents:
            await self._check(document.path, document.data)
        return documents

    async def commit(self, ops: list[WriteOp]) -> None:
        await self._inner.commit(ops)

    async def subscribe(self, path: str, callback: SnapshotCallback) -> Subscription:
        await self._check(path, await self._inner.get(path))
        return await self._inner.subscribe(path, callback)


@dataclass
class _CallbackRegistry:
    """Per-path snapshot callbacks shared by the concrete stores."""

    callbacks: dict[str, list[SnapshotCallback]] = field(default_factory=dict)

    def add(self, path: str, callback: SnapshotCallback) -> None:
        self.callbacks.setdefault(path, []).append(callback)

    def remove(self, path: str, callback: SnapshotCallback) -> None:
        listeners = self.callbacks.get(path, [])
        if callback in listeners:
            listeners.remove(callback)
        if not listeners:
            self.callbacks.pop(path, None)

    def notify(self, path: str, data: dict[str, Any] | None) -> None:
        for callback in list(self.callbacks.get(path, [])):
            try:
                callback(copy.deepcopy(data))
            except Exception:
                logger.exception("Snapshot callback for %s raised", path)
