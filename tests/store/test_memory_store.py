"""Tests for the in-process document store and the shared write semantics."""

from __future__ import annotations

import pytest

from ora.errors import DocumentNotFoundError, StoragePermissionDeniedError
from ora.store.base import SERVER_TIMESTAMP, ScopedDocumentStore, coerce_timestamp, split_path

pytestmark = pytest.mark.unit


class TestPaths:
    def test_split_document_path(self):
        collection, doc_id = split_path("availability/u1/days/2026-03-10")

        assert (collection, doc_id) == ("availability/u1/days", "2026-03-10")

    @pytest.mark.parametrize("path", ["users", "availability/u1/days", ""])
    def test_collection_paths_are_rejected(self, path):
        with pytest.raises(ValueError):
            split_path(path)

    def test_coerce_timestamp(self):
        parsed = coerce_timestamp("2026-03-10T09:00:00Z")

        assert parsed is not None
        assert parsed.isoformat() == "2026-03-10T09:00:00+00:00"
        assert coerce_timestamp("garbage") is None
        assert coerce_timestamp(42) is None


class TestWrites:
    async def test_set_replaces_and_resolves_server_timestamp(self, store, clock):
        await store.set("users/u1", {"a": 1, "b": 2})
        await store.set("users/u1", {"a": 3, "at": SERVER_TIMESTAMP})

        assert await store.get("users/u1") == {"a": 3, "at": clock()}

    async def test_merge_is_deep(self, store):
        await store.set("users/u1", {"prefs": {"theme": "dark", "lang": "en"}, "x": 1})
        await store.set("users/u1", {"prefs": {"lang": "fr"}}, merge=True)

        assert await store.get("users/u1") == {"prefs": {"theme": "dark", "lang": "fr"}, "x": 1}

    async def test_update_requires_existing_document(self, store):
        with pytest.raises(DocumentNotFoundError):
            await store.update("users/missing", {"a": 1})

    async def test_failed_batch_writes_nothing(self, store):
        batch = store.batch()
        batch.set("users/u1", {"a": 1})
        batch.update("users/missing", {"a": 1})

        with pytest.raises(DocumentNotFoundError):
            await batch.commit()

        assert await store.get("users/u1") is None
        assert store.commits == 0

    async def test_batch_commits_once(self, store):
        batch = store.batch().set("users/u1", {"a": 1}).set("users/u2", {"a": 2})
        await batch.commit()

        with pytest.raises(RuntimeError):
            await batch.commit()
        assert store.paths("users/") == ["users/u1", "users/u2"]

    async def test_reads_are_copies(self, store):
        await store.set("users/u1", {"tags": ["a"]})
        data = await store.get("users/u1")
        data["tags"].append("b")

        assert await store.get("users/u1") == {"tags": ["a"]}


class TestQuery:
    async def test_equality_filters_and_limit(self, store):
        await store.set("users/a", {"team": "x"})
        await store.set("users/b", {"team": "y"})
        await store.set("users/c", {"team": "x"})
        await store.set("availability/a/days/2026-03-10", {"team": "x"})

        docs = await store.query("users", {"team": "x"})

        assert [doc.id for doc in docs] == ["a", "c"]
        assert len(await store.query("users", limit=2)) == 2


class TestSubscribe:
    async def test_current_value_then_changes(self, store):
        seen = []
        subscription = await store.subscribe("users/u1", seen.append)

        await store.set("users/u1", {"a": 1})
        await store.delete("users/u1")
        await subscription.close()
        await store.set("users/u1", {"a": 2})

        assert seen == [None, {"a": 1}, None]

    async def test_callback_errors_do_not_break_writes(self, store):
        def broken(data):
            if data is not None:
                raise RuntimeError("listener bug")

        await store.subscribe("users/u1", broken)
        await store.set("users/u1", {"a": 1})

        assert await store.get("users/u1") == {"a": 1}


class TestScopedStore:
    async def test_policy_sees_current_data(self, store):
        await store.set("users/u1", {"private": True})
        calls = []

        async def policy(path, data):
            calls.append((path, data))
            return not (data or {}).get("private")

        scoped = ScopedDocumentStore(store, policy)

        with pytest.raises(StoragePermissionDeniedError):
            await scoped.get("users/u1")
        assert await scoped.get("users/u2") is None
        assert calls == [("users/u1", {"private": True}), ("users/u2", None)]

    async def test_writes_pass_through(self, store):
        async def deny(path, data):
            return False

        await ScopedDocumentStore(store, deny).set("users/u1", {"a": 1})

        assert await store.get("users/u1") == {"a": 1}
