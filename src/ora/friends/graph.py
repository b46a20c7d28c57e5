"""Friend request state machine.

Each direction of a relationship is its own record at
``friendRequests/{fromUid}_{toUid}``::

    pending -> accepted | declined | cancelled
    accepted -> removed

The two share flags on a record are independent: ``fromCalendarShared`` is
the requester's grant, ``toCalendarShared`` the recipient's.  Accepting a
request hands off to a share-consent trigger after the accept is written;
a failing trigger leaves the friendship accepted and the flag false.

Existence checks go through best-effort reads: a permission error from the
store means "absent" and is logged, never raised.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from ora.errors import (
    FriendshipNotFoundError,
    InvalidTransitionError,
    SelfRequestError,
    StoragePermissionDeniedError,
)
from ora.friends.models import (
    FriendEntry,
    FriendRequest,
    FriendRequestStatus,
    PublicUser,
    SendRequestResult,
    ShareConsentResult,
)
from ora.store.base import (
    FRIEND_REQUESTS,
    SERVER_TIMESTAMP,
    USERS,
    DocumentStore,
    friend_request_id,
    friend_request_path,
    user_path,
)

logger = logging.getLogger(__name__)

USER_SEARCH_LIMIT = 3

# (sharer_uid, friend_uid) -> starts the consent round trip granting friend read access
ShareConsentTrigger = Callable[[str, str], Awaitable[Any]]


class FriendGraph:
    """Request / accept / decline / cancel / remove over a document store."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        share_consent_trigger: ShareConsentTrigger | None = None,
    ) -> None:
        self._store = store
        self._share_consent_trigger = share_consent_trigger

    async def _safe_get(self, path: str) -> dict[str, Any] | None:
        try:
            return await self._store.get(path)
        except StoragePermissionDeniedError:
            logger.warning("Store read skipped due to permissions: %s", path)
            return None

    async def _get_request(self, from_uid: str, to_uid: str) -> FriendRequest | None:
        data = await self._safe_get(friend_request_path(from_uid, to_uid))
        if data is None:
            return None
        return FriendRequest.from_document(friend_request_id(from_uid, to_uid), data)

    async def accepted_record(self, uid: str, friend_uid: str) -> FriendRequest | None:
        """Return whichever directional record between the two is accepted."""
        for from_uid, to_uid in ((uid, friend_uid), (friend_uid, uid)):
            request = await self._get_request(from_uid, to_uid)
            if request is not None and request.status == FriendRequestStatus.ACCEPTED:
                return request
        return None

    async def has_accepted(self, uid: str, friend_uid: str) -> bool:
        return await self.accepted_record(uid, friend_uid) is not None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def send_request(self, from_uid: str, to_uid: str) -> SendRequestResult:
        if from_uid == to_uid:
            raise SelfRequestError()

        existing = await self._get_request(from_uid, to_uid)
        if existing is not None:
            if existing.status == FriendRequestStatus.PENDING:
                return SendRequestResult.ALREADY_PENDING
            if existing.status == FriendRequestStatus.ACCEPTED:
                return SendRequestResult.ALREADY_FRIENDS

        reverse = await self._get_request(to_uid, from_uid)
        if reverse is not None:
            if reverse.status == FriendRequestStatus.PENDING:
                return SendRequestResult.INCOMING_EXISTS
            if reverse.status == FriendRequestStatus.ACCEPTED:
                return SendRequestResult.ALREADY_FRIENDS

        await self._store.set(
            friend_request_path(from_uid, to_uid),
            {
                "fromUid": from_uid,
                "toUid": to_uid,
                "status": FriendRequestStatus.PENDING.value,
                "createdAt": SERVER_TIMESTAMP,
                "respondedAt": None,
                "fromCalendarShared": False,
                "toCalendarShared": False,
            },
        )
        logger.info("Friend request sent %s -> %s", from_uid, to_uid)
        return SendRequestResult.SENT

    async def _transition_pending(
        self,
        from_uid: str,
        to_uid: str,
        target: FriendRequestStatus,
        reset_flag: str,
    ) -> bool:
        """Move a pending record to *target*.  Returns False when already there."""
        request = await self._get_request(from_uid, to_uid)
        request_id = friend_request_id(from_uid, to_uid)
        if request is None:
            raise InvalidTransitionError(f"Friend request {request_id} does not exist")
        if request.status == target:
            return False
        if request.status != FriendRequestStatus.PENDING:
            raise InvalidTransitionError(
                f"Friend request {request_id} is {request.status}, expected pending"
            )
        await self._store.update(
            friend_request_path(from_uid, to_uid),
            {"status": target.value, "respondedAt": SERVER_TIMESTAMP, reset_flag: False},
        )
        return True

    async def accept(self, from_uid: str, viewer_uid: str) -> ShareConsentResult:
        """Accept ``from_uid``'s request to *viewer_uid* and kick off share consent."""
        changed = await self._transition_pending(
            from_uid, viewer_uid, FriendRequestStatus.ACCEPTED, "toCalendarShared"
        )
        if not changed:
            return ShareConsentResult(triggered=False)
        logger.info("Friend request accepted %s -> %s", from_uid, viewer_uid)
        return await self._trigger_share_consent(viewer_uid, from_uid)

    async def decline(self, from_uid: str, viewer_uid: str) -> None:
        await self._transition_pending(
            from_uid, viewer_uid, FriendRequestStatus.DECLINED, "toCalendarShared"
        )

    async def cancel(self, viewer_uid: str, to_uid: str) -> None:
        await self._transition_pending(
            viewer_uid, to_uid, FriendRequestStatus.CANCELLED, "fromCalendarShared"
        )

    async def remove(self, uid: str, friend_uid: str) -> None:
        request = await self.accepted_record(uid, friend_uid)
        if request is None:
            raise FriendshipNotFoundError()
        await self._store.update(
            friend_request_path(request.from_uid, request.to_uid),
            {
                "status": FriendRequestStatus.REMOVED.value,
                "respondedAt": SERVER_TIMESTAMP,
                "fromCalendarShared": False,
                "toCalendarShared": False,
            },
        )
        logger.info("Friendship removed %s <-> %s", uid, friend_uid)

    # ------------------------------------------------------------------
    # Share flags
    # ------------------------------------------------------------------

    async def _trigger_share_consent(self, sharer_uid: str, friend_uid: str) -> ShareConsentResult:
        if self._share_consent_trigger is None:
            return ShareConsentResult(triggered=False)
        try:
            await self._share_consent_trigger(sharer_uid, friend_uid)
        except Exception as exc:
            logger.warning(
                "Share consent for %s -> %s failed; friendship stays accepted",
                sharer_uid,
                friend_uid,
                exc_info=True,
            )
            return ShareConsentResult(triggered=True, error=str(exc) or type(exc).__name__)
        return ShareConsentResult(triggered=True)

    async def enable_share(self, uid: str, friend_uid: str) -> ShareConsentResult:
        """Retry the share consent for an existing friendship."""
        if not await self.has_accepted(uid, friend_uid):
            raise FriendshipNotFoundError()
        return await self._trigger_share_consent(uid, friend_uid)

    async def check_own_share(self, uid: str, friend_uid: str) -> bool:
        """True iff *uid*'s own share flag is set on the accepted record."""
        request = await self.accepted_record(uid, friend_uid)
        return request is not None and request.shared_by(uid)

    async def mark_share_completed(self, sharer_uid: str, friend_uid: str) -> None:
        """Set *sharer_uid*'s share flag after its calendar ACL was granted."""
        request = await self.accepted_record(sharer_uid, friend_uid)
        if request is None:
            raise FriendshipNotFoundError()
        flag = "fromCalendarShared" if request.from_uid == sharer_uid else "toCalendarShared"
        path = friend_request_path(request.from_uid, request.to_uid)
        await self._store.update(path, {flag: True})

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def _requests(
        self, field: str, uid: str, status: FriendRequestStatus | None
    ) -> list[FriendRequest]:
        filters: dict[str, Any] = {field: uid}
        if status is not None:
            filters["status"] = status.value
        documents = await self._store.query(FRIEND_REQUESTS, filters)
        return [FriendRequest.from_document(doc.id, doc.data) for doc in documents]

    async def incoming_requests(self, uid: str) -> list[FriendRequest]:
        requests = await self._requests("toUid", uid, None)
        return [r for r in requests if r.status == FriendRequestStatus.PENDING]

    async def outgoing_requests(self, uid: str) -> list[FriendRequest]:
        requests = await self._requests("fromUid", uid, None)
        return [r for r in requests if r.status == FriendRequestStatus.PENDING]

    async def list_friends(self, uid: str) -> list[FriendEntry]:
        accepted = [
            *await self._requests("fromUid", uid, FriendRequestStatus.ACCEPTED),
            *await self._requests("toUid", uid, FriendRequestStatus.ACCEPTED),
        ]
        return [FriendEntry.from_request(request, uid) for request in accepted]

    async def search_users(self, term: str) -> list[PublicUser]:
        """Exact, case-insensitive email lookup.  Terms without ``@`` match nothing."""
        cleaned = term.strip().lower()
        if not cleaned or "@" not in cleaned:
            return []
        documents = await self._store.query(USERS, {"emailLower": cleaned}, limit=USER_SEARCH_LIMIT)
        return [PublicUser.from_document(doc.id, doc.data) for doc in documents]

    async def get_users(self, uids: Iterable[str]) -> dict[str, PublicUser]:
        users: dict[str, PublicUser] = {}
        for uid in dict.fromkeys(uid for uid in uids if uid):
            data = await self._safe_get(user_path(uid))
            if data is not None:
                users[uid] = PublicUser.from_document(uid, data)
        return users
