"""Per-viewer read authorization for the document store.

Readers only see what the relationship allows:

- ``users/*`` is readable by any signed-in viewer (profile and search).
- ``calendarTokens/{uid}`` is never readable through a viewer scope.
- ``friendRequests/{id}`` is readable by its two parties; a missing record
  is refused like any unreadable one.
- ``availability/{owner}/days/*`` is readable by the owner, and by a friend
  whose accepted record carries the owner's share flag.
"""

from __future__ import annotations

from typing import Any

from ora.friends.models import FriendRequest, FriendRequestStatus
from ora.store.base import (
    AVAILABILITY,
    CALENDAR_TOKENS,
    FRIEND_REQUESTS,
    USERS,
    DocumentStore,
    ScopedDocumentStore,
    friend_request_id,
    friend_request_path,
)


class FriendReadPolicy:
    def __init__(self, raw_store: DocumentStore, viewer_uid: str) -> None:
        self._store = raw_store
        self.viewer_uid = viewer_uid

    async def _owner_shares_with_viewer(self, owner_uid: str) -> bool:
        for from_uid, to_uid in ((owner_uid, self.viewer_uid), (self.viewer_uid, owner_uid)):
            data = await self._store.get(friend_request_path(from_uid, to_uid))
            if data is None:
                continue
            request = FriendRequest.from_document(friend_request_id(from_uid, to_uid), data)
            if request.status == FriendRequestStatus.ACCEPTED and request.shared_by(owner_uid):
                return True
        return False

    async def __call__(self, path: str, data: dict[str, Any] | None) -> bool:
        segments = path.split("/")
        collection = segments[0]
        if collection == USERS:
            return True
        if collection == CALENDAR_TOKENS:
            return False
        if collection == FRIEND_REQUESTS:
            if data is None:
                return False
            return self.viewer_uid in (data.get("fromUid"), data.get("toUid"))
        if collection == AVAILABILITY and len(segments) >= 2:
            owner_uid = segments[1]
            if owner_uid == self.viewer_uid:
                return True
            return await self._owner_shares_with_viewer(owner_uid)
        return False


def viewer_store(raw_store: DocumentStore, viewer_uid: str) -> ScopedDocumentStore:
    """Wrap *raw_store* so reads are authorized for *viewer_uid*."""
    return ScopedDocumentStore(raw_store, FriendReadPolicy(raw_store, viewer_uid))
