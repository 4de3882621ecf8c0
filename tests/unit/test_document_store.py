"""
Unit Tests for the In-Memory Document Store
===========================================

Point operations, field mutators, query semantics and batch atomicity.
"""

import pytest

from core.exceptions import DocumentStoreError, EntityNotFoundError
from infrastructure.document_store import (
    ArrayUnion,
    Filter,
    Increment,
    InMemoryDocumentStore,
    apply_changes,
)


class TestPointOperations:
    async def test_set_and_get(self, store):
        await store.set("c", "a", {"x": 1})
        assert await store.get("c", "a") == {"x": 1}
        assert await store.get("c", "missing") is None

    async def test_get_returns_copy(self, store):
        await store.set("c", "a", {"nested": {"x": 1}})
        data = await store.get("c", "a")
        data["nested"]["x"] = 99
        assert (await store.get("c", "a"))["nested"]["x"] == 1

    async def test_set_replaces_without_merge(self, store):
        await store.set("c", "a", {"x": 1, "y": 2})
        await store.set("c", "a", {"x": 3})
        assert await store.get("c", "a") == {"x": 3}

    async def test_set_merge(self, store):
        await store.set("c", "a", {"x": 1, "y": 2})
        await store.set("c", "a", {"x": 3}, merge=True)
        assert await store.get("c", "a") == {"x": 3, "y": 2}

    async def test_update_missing_raises(self, store):
        with pytest.raises(EntityNotFoundError):
            await store.update("c", "missing", {"x": 1})

    async def test_add_generates_id(self, store):
        doc_id = await store.add("c", {"x": 1})
        assert len(doc_id) == 32
        assert await store.get("c", doc_id) == {"x": 1}

    async def test_delete(self, store):
        await store.set("c", "a", {"x": 1})
        await store.delete("c", "a")
        assert await store.get("c", "a") is None


class TestMutators:
    def test_increment_missing_counts_as_zero(self):
        assert apply_changes({}, {"n": Increment(2)}) == {"n": 2}

    def test_array_union_skips_present_values(self):
        result = apply_changes({"tags": ["a"]}, {"tags": ArrayUnion(["a", "b", "b"])})
        assert result == {"tags": ["a", "b"]}

    def test_dotted_paths(self):
        result = apply_changes({"progress": {"step": "x"}}, {"progress.percentage": 40})
        assert result == {"progress": {"step": "x", "percentage": 40}}

    async def test_increment_through_update(self, store):
        await store.set("c", "a", {"count": 1})
        await store.update("c", "a", {"count": Increment(1)})
        assert (await store.get("c", "a"))["count"] == 2


class TestQuery:
    @pytest.fixture
    async def seeded(self, store):
        await store.set("c", "b", {"n": 2, "tag": "x", "items": [1, 2]})
        await store.set("c", "a", {"n": 1, "tag": "y", "items": [3]})
        await store.set("c", "c", {"n": None, "tag": "x"})
        await store.set("c", "d", {"tag": "x"})
        return store

    async def test_default_order_is_id(self, seeded):
        docs = await seeded.query("c")
        assert [d.id for d in docs] == ["a", "b", "c", "d"]

    async def test_equality_and_range(self, seeded):
        docs = await seeded.query("c", [Filter("tag", "==", "x"), Filter("n", ">=", 2)])
        assert [d.id for d in docs] == ["b"]

    async def test_missing_field_reads_as_none(self, seeded):
        docs = await seeded.query("c", [Filter("n", "==", None)])
        assert [d.id for d in docs] == ["c", "d"]

    async def test_range_on_none_never_matches(self, seeded):
        docs = await seeded.query("c", [Filter("n", "<", 100)])
        assert [d.id for d in docs] == ["a", "b"]

    async def test_incomparable_types_do_not_match(self, seeded):
        docs = await seeded.query("c", [Filter("tag", ">", 5)])
        assert docs == []

    async def test_in_and_array_contains(self, seeded):
        assert [d.id for d in await seeded.query("c", [Filter("tag", "in", ["y"])])] == ["a"]
        assert [d.id for d in await seeded.query("c", [Filter("items", "array_contains", 2)])] == ["b"]

    async def test_order_by_with_limit(self, seeded):
        docs = await seeded.query("c", order_by=["n"], descending=True, limit=2)
        assert [d.id for d in docs] == ["b", "a"]

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            Filter("x", "~=", 1)


class TestBatch:
    async def test_commit_is_atomic(self, store):
        await store.set("c", "a", {"x": 1})
        batch = store.batch()
        batch.update("c", "a", {"x": 2})
        batch.update("c", "missing", {"x": 3})

        with pytest.raises(EntityNotFoundError):
            await batch.commit()

        assert (await store.get("c", "a"))["x"] == 1

    async def test_operations_see_earlier_writes(self, store):
        batch = store.batch()
        batch.set("c", "a", {"x": 1})
        batch.update("c", "a", {"x": Increment(1)})
        await batch.commit()

        assert (await store.get("c", "a"))["x"] == 2

    async def test_batch_is_bounded(self):
        batch = InMemoryDocumentStore().batch(max_operations=2)
        batch.set("c", "a", {})
        batch.set("c", "b", {})

        with pytest.raises(DocumentStoreError):
            batch.set("c", "c", {})

    async def test_empty_commit_is_noop(self, store):
        await store.batch().commit()
        assert store.count("c") == 0
