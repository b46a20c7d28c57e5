"""Document store abstraction and implementations."""

from ora.store.base import (
    SERVER_TIMESTAMP,
    Document,
    DocumentStore,
    ScopedDocumentStore,
    Subscription,
    WriteBatch,
    availability_day_path,
    calendar_token_path,
    coerce_timestamp,
    friend_request_id,
    friend_request_path,
    user_path,
)
from ora.store.memory import InMemoryDocumentStore

__all__ = [
    "SERVER_TIMESTAMP",
    "Document",
    "DocumentStore",
    "InMemoryDocumentStore",
    "ScopedDocumentStore",
    "Subscription",
    "WriteBatch",
    "availability_day_path",
    "calendar_token_path",
    "coerce_timestamp",
    "friend_request_id",
    "friend_request_path",
    "user_path",
]
