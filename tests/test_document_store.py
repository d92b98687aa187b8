"""
Tests for the in-memory document store and write batches.

Verifies that:
- Batches apply all-or-nothing
- Version checks compare against the committed version
- Array sentinels and dotted paths resolve at commit time
- Equality and ArrayContains filters select documents
"""

import pytest

from orgaccess.storage import (
    ArrayContains,
    ArrayRemove,
    ArrayUnion,
    ConcurrentModificationError,
    MemoryDocumentStore,
)


@pytest.fixture
def store():
    return MemoryDocumentStore()


async def seed(store, collection, doc_id, data):
    batch = store.batch()
    batch.create(collection, doc_id, data)
    await batch.commit()


class TestWriteBatch:
    """Tests for batch commit semantics."""

    async def test_create_assigns_id_and_version(self, store):
        await seed(store, "things", "t1", {"name": "one"})

        doc = await store.get("things", "t1")
        assert doc == {"name": "one", "id": "t1", "version": 1}

    async def test_update_increments_version(self, store):
        await seed(store, "things", "t1", {"name": "one"})

        batch = store.batch()
        batch.update("things", "t1", {"name": "two"}, expected_version=1)
        await batch.commit()

        doc = await store.get("things", "t1")
        assert doc["name"] == "two"
        assert doc["version"] == 2

    async def test_version_mismatch_aborts_whole_batch(self, store):
        await seed(store, "things", "t1", {"name": "one"})
        await seed(store, "things", "t2", {"name": "two"})

        batch = store.batch()
        batch.update("things", "t1", {"name": "changed"})
        batch.update("things", "t2", {"name": "changed"}, expected_version=7)

        with pytest.raises(ConcurrentModificationError):
            await batch.commit()

        assert (await store.get("things", "t1"))["name"] == "one"
        assert (await store.get("things", "t2"))["name"] == "two"

    async def test_expected_version_checks_committed_state(self, store):
        """Two updates of one document in a batch both check the pre-batch version."""
        await seed(store, "things", "t1", {"tags": []})

        batch = store.batch()
        batch.update("things", "t1", {"tags": ArrayUnion("a")}, expected_version=1)
        batch.update("things", "t1", {"tags": ArrayUnion("b")}, expected_version=1)
        await batch.commit()

        doc = await store.get("things", "t1")
        assert doc["tags"] == ["a", "b"]

    async def test_create_over_existing_fails(self, store):
        await seed(store, "things", "t1", {"name": "one"})

        batch = store.batch()
        batch.create("things", "t1", {"name": "again"})
        with pytest.raises(ConcurrentModificationError):
            await batch.commit()

    async def test_update_missing_document_fails(self, store):
        batch = store.batch()
        batch.update("things", "missing", {"name": "x"})
        with pytest.raises(ConcurrentModificationError):
            await batch.commit()

    async def test_delete(self, store):
        await seed(store, "things", "t1", {"name": "one"})

        batch = store.batch()
        batch.delete("things", "t1", expected_version=1)
        await batch.commit()

        assert await store.get("things", "t1") is None

    async def test_commit_twice_raises(self, store):
        batch = store.batch()
        batch.create("things", "t1", {})
        await batch.commit()

        with pytest.raises(RuntimeError):
            await batch.commit()

    async def test_array_sentinels_and_dotted_paths(self, store):
        await seed(store, "things", "t1", {"permissions": {"custom": ["a:read"]}})

        batch = store.batch()
        batch.update("things", "t1", {
            "permissions.custom": ArrayUnion("a:read", "b:read"),
            "permissions.restricted": ArrayUnion("c:delete"),
        })
        await batch.commit()

        batch = store.batch()
        batch.update("things", "t1", {"permissions.custom": ArrayRemove("a:read")})
        await batch.commit()

        doc = await store.get("things", "t1")
        assert doc["permissions"] == {"custom": ["b:read"], "restricted": ["c:delete"]}


class TestQueries:
    """Tests for get/find."""

    async def test_find_with_filters(self, store):
        await seed(store, "members", "m1", {"org": "o1", "roles": ["r1"], "meta": {"k": 1}})
        await seed(store, "members", "m2", {"org": "o1", "roles": ["r2"], "meta": {"k": 2}})
        await seed(store, "members", "m3", {"org": "o2", "roles": ["r1"], "meta": {"k": 1}})

        by_org = await store.find("members", {"org": "o1"})
        assert {d["id"] for d in by_org} == {"m1", "m2"}

        by_role = await store.find("members", {"roles": ArrayContains("r1")})
        assert {d["id"] for d in by_role} == {"m1", "m3"}

        by_path = await store.find("members", {"meta.k": 1, "org": "o2"})
        assert [d["id"] for d in by_path] == ["m3"]

        assert await store.find("unknown") == []

    async def test_reads_return_copies(self, store):
        await seed(store, "things", "t1", {"tags": ["a"]})

        doc = await store.get("things", "t1")
        doc["tags"].append("mutated")

        assert (await store.get("things", "t1"))["tags"] == ["a"]
