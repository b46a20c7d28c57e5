"""Friend request records and their read-only projections."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from ora.store.base import coerce_timestamp


class FriendRequestStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    REMOVED = "removed"

    @classmethod
    def parse(cls, value: Any) -> FriendRequestStatus:
        """Parse a stored status, accepting the legacy ``canceled`` spelling."""
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized == "canceled":
                return cls.CANCELLED
            try:
                return cls(normalized)
            except ValueError:
                pass
        return cls.PENDING


TERMINAL_STATUSES = frozenset(
    {FriendRequestStatus.DECLINED, FriendRequestStatus.CANCELLED, FriendRequestStatus.REMOVED}
)


class SendRequestResult(StrEnum):
    SENT = "sent"
    ALREADY_PENDING = "already_pending"
    ALREADY_FRIENDS = "already_friends"
    INCOMING_EXISTS = "incoming_exists"


class FriendRequest(BaseModel):
    """One directional request record stored at ``friendRequests/{from}_{to}``."""

    id: str
    from_uid: str
    to_uid: str
    status: FriendRequestStatus = FriendRequestStatus.PENDING
    created_at: datetime | None = None
    responded_at: datetime | None = None
    from_calendar_shared: bool = False
    to_calendar_shared: bool = False

    @classmethod
    def from_document(cls, request_id: str, data: dict[str, Any]) -> FriendRequest:
        from_uid, _, to_uid = request_id.partition("_")
        return cls(
            id=request_id,
            from_uid=str(data.get("fromUid") or from_uid),
            to_uid=str(data.get("toUid") or to_uid),
            status=FriendRequestStatus.parse(data.get("status")),
            created_at=coerce_timestamp(data.get("createdAt")),
            responded_at=coerce_timestamp(data.get("respondedAt")),
            from_calendar_shared=bool(data.get("fromCalendarShared")),
            to_calendar_shared=bool(data.get("toCalendarShared")),
        )

    def other_uid(self, uid: str) -> str:
        return self.to_uid if self.from_uid == uid else self.from_uid

    def shared_by(self, uid: str) -> bool:
        """The share flag owned by *uid* on this record."""
        return self.from_calendar_shared if self.from_uid == uid else self.to_calendar_shared


class FriendVisibility(BaseModel):
    show_availability: bool = True
    show_event_title: bool = False
    show_event_type: bool = False


class FriendEntry(BaseModel):
    """A friend as seen by one viewer, derived from the accepted record."""

    request_id: str
    friend_uid: str
    created_at: datetime | None = None
    accepted_at: datetime | None = None
    calendar_shared_by_friend: bool = False
    calendar_shared_by_you: bool = False
    visibility: FriendVisibility = Field(default_factory=FriendVisibility)

    @classmethod
    def from_request(cls, request: FriendRequest, viewer_uid: str) -> FriendEntry:
        friend_uid = request.other_uid(viewer_uid)
        return cls(
            request_id=request.id,
            friend_uid=friend_uid,
            created_at=request.created_at,
            accepted_at=request.responded_at,
            calendar_shared_by_friend=request.shared_by(friend_uid),
            calendar_shared_by_you=request.shared_by(viewer_uid),
        )


class PublicUser(BaseModel):
    uid: str
    display_name: str | None = None
    handle: str | None = None
    photo_url: str | None = None
    email: str | None = None

    @classmethod
    def from_document(cls, uid: str, data: dict[str, Any]) -> PublicUser:
        return cls(
            uid=uid,
            display_name=data.get("displayName"),
            handle=data.get("handle"),
            photo_url=data.get("photoURL"),
            email=data.get("email"),
        )


class ShareConsentResult(BaseModel):
    """Outcome of the share-consent side effect triggered by ``accept``.

    ``retry_available`` tells the caller to offer an "enable share" action.
    """

    triggered: bool
    error: str | None = None

    @property
    def retry_available(self) -> bool:
        return not self.triggered or self.error is not None
