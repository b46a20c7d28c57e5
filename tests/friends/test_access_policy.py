"""Tests for viewer-scoped read authorization."""

from __future__ import annotations

import pytest

from ora.errors import StoragePermissionDeniedError
from ora.friends.access import FriendReadPolicy, viewer_store
from ora.friends.graph import FriendGraph

pytestmark = pytest.mark.unit

DAY = "availability/ann/days/2026-03-10"


@pytest.fixture
async def seeded(store):
    await store.set("users/ann", {"displayName": "Ann"})
    await store.set("calendarTokens/ann", {"refreshToken": "rt"})
    await store.set(DAY, {"slots": []})
    graph = FriendGraph(store)
    await graph.send_request("ann", "ben")
    await graph.accept("ann", "ben")
    await graph.send_request("cat", "ann")
    return graph


class TestFriendReadPolicy:
    async def test_profiles_are_public(self, store, seeded):
        assert await viewer_store(store, "zed").get("users/ann") == {"displayName": "Ann"}

    async def test_tokens_are_never_readable(self, store, seeded):
        with pytest.raises(StoragePermissionDeniedError):
            await viewer_store(store, "ann").get("calendarTokens/ann")

    async def test_requests_are_visible_to_parties_only(self, store, seeded):
        assert (await viewer_store(store, "ann").get("friendRequests/cat_ann"))["fromUid"] == "cat"
        assert (await viewer_store(store, "cat").get("friendRequests/cat_ann"))["toUid"] == "ann"
        with pytest.raises(StoragePermissionDeniedError):
            await viewer_store(store, "ben").get("friendRequests/cat_ann")

    async def test_missing_request_is_refused(self, store, seeded):
        with pytest.raises(StoragePermissionDeniedError):
            await viewer_store(store, "ann").get("friendRequests/ann_zed")

    async def test_owner_reads_own_availability(self, store, seeded):
        assert await viewer_store(store, "ann").get(DAY) == {"slots": []}

    async def test_friend_needs_owner_share_flag(self, store, seeded):
        with pytest.raises(StoragePermissionDeniedError):
            await viewer_store(store, "ben").get(DAY)

        await seeded.mark_share_completed("ann", "ben")

        assert await viewer_store(store, "ben").get(DAY) == {"slots": []}

    async def test_viewer_own_share_does_not_open_owner_calendar(self, store, seeded):
        await seeded.mark_share_completed("ben", "ann")

        with pytest.raises(StoragePermissionDeniedError):
            await viewer_store(store, "ben").get(DAY)

    async def test_pending_requester_cannot_read(self, store, seeded):
        await store.update("friendRequests/cat_ann", {"fromCalendarShared": True})

        assert not await FriendReadPolicy(store, "ann")("availability/cat/days/2026-03-10", None)

    async def test_removed_friendship_closes_access(self, store, seeded):
        await seeded.mark_share_completed("ann", "ben")
        await seeded.remove("ann", "ben")

        with pytest.raises(StoragePermissionDeniedError):
            await viewer_store(store, "ben").get(DAY)

    async def test_unknown_collections_are_refused(self, store):
        assert not await FriendReadPolicy(store, "ann")("secrets/x", {"a": 1})

    async def test_query_checks_every_document(self, store, seeded):
        with pytest.raises(StoragePermissionDeniedError):
            await viewer_store(store, "ben").query("friendRequests")
