"""
Unit Tests for the Deduplication Engine
=======================================

Three-tier promotion (exact, semantic, distinct), batch merging into
duplicate groups and group maintenance.
"""

import pytest

from config.constants import Collections
from core.enums import DedupTier
from core.exceptions import EntityNotFoundError
from knowledge.deduplication import (
    DeduplicationEngine,
    calculate_reliability,
    content_hash,
    infer_category,
    normalize_content,
)
from knowledge.knowledge_repository import KnowledgeRepository

from conftest import make_entry, make_turn

ANSWER = "Our board meets monthly and reviews risk quarterly."


@pytest.fixture
def repository(store, clock):
    return KnowledgeRepository(store, clock=clock)


@pytest.fixture
def engine(repository, embedder, clock):
    return DeduplicationEngine(repository, embedder, clock=clock)


async def _save_turn(store, turn):
    await store.set(Collections.CHATS, turn.id, turn.to_document())
    return turn


class TestHelpers:
    def test_normalization_ignores_case_width_and_spacing(self):
        assert normalize_content("  Hello   WORLD ") == normalize_content("hello world")
        assert normalize_content("ＡＢＣ") == "abc"
        assert content_hash("A  b") == content_hash("a b")

    @pytest.mark.parametrize(
        "question, category",
        [
            ("What was our revenue?", "financial"),
            ("How do we cover ESG topics?", "esg"),
            ("Who sits on the board?", "governance"),
            ("Tell me about the office.", "company-info"),
            (None, "company-info"),
        ],
    )
    def test_infer_category(self, question, category):
        assert infer_category(question) == category

    @pytest.mark.parametrize(
        "length, edited, expected",
        [
            (300, False, 90),
            (300, True, 95),
            (600, False, 95),
            (600, True, 100),
            (50, False, 80),
            (50, True, 85),
        ],
    )
    def test_reliability(self, length, edited, expected):
        assert calculate_reliability("x" * length, edited) == expected


class TestPromote:
    async def test_distinct_creates_entry(self, engine, store, clock):
        turn = await _save_turn(store, make_turn(response=ANSWER, question="Who sits on the board?"))

        outcome = await engine.promote(turn)

        assert outcome.tier == DedupTier.DISTINCT
        data = await store.get(Collections.KNOWLEDGE_ENTRIES, outcome.knowledge_id)
        assert data["content"] == ANSWER
        assert data["category"] == "governance"
        assert data["source_chat_id"] == turn.id
        assert data["usage_count"] == 1
        assert data["created_at"] == clock.now
        chat = await store.get(Collections.CHATS, turn.id)
        assert chat["added_to_knowledge"] is True
        assert chat["knowledge_id"] == outcome.knowledge_id

    async def test_exact_duplicate_increments_usage(self, engine, store, embedder):
        first = await engine.promote(await _save_turn(store, make_turn(response=ANSWER)))
        calls_after_first = len(embedder.calls)

        second = await engine.promote(
            await _save_turn(store, make_turn(response="  OUR BOARD meets monthly and reviews risk quarterly. "))
        )

        assert second.tier == DedupTier.EXACT
        assert second.knowledge_id == first.knowledge_id
        assert len(embedder.calls) == calls_after_first
        assert len(await store.query(Collections.KNOWLEDGE_ENTRIES)) == 1
        data = await store.get(Collections.KNOWLEDGE_ENTRIES, first.knowledge_id)
        assert data["usage_count"] == 2

    async def test_exact_tier_is_partition_scoped(self, engine, store):
        await engine.promote(await _save_turn(store, make_turn("p1", ANSWER)))
        outcome = await engine.promote(await _save_turn(store, make_turn("p2", ANSWER)))

        assert outcome.tier == DedupTier.DISTINCT

    async def test_semantic_duplicate_at_threshold(self, engine, store, embedder):
        embedder.vectors[ANSWER] = [1.0, 0.0]
        paraphrase = "The board convenes every month and checks risks each quarter."
        embedder.vectors[paraphrase] = [0.96, 0.28]  # cosine 0.96

        first = await engine.promote(await _save_turn(store, make_turn(response=ANSWER)))
        turn = await _save_turn(store, make_turn(response=paraphrase))
        second = await engine.promote(turn)

        assert second.tier == DedupTier.SEMANTIC
        assert second.knowledge_id == first.knowledge_id
        assert second.similarity == pytest.approx(0.96)
        chat = await store.get(Collections.CHATS, turn.id)
        assert chat["similarity_score"] == pytest.approx(0.96)

    async def test_below_threshold_is_distinct(self, engine, store, embedder):
        embedder.vectors[ANSWER] = [1.0, 0.0]
        other = "Board meetings happen monthly; risk reviews are annual."
        embedder.vectors[other] = [0.94, 0.3412]  # cosine just under 0.95

        await engine.promote(await _save_turn(store, make_turn(response=ANSWER)))
        outcome = await engine.promote(await _save_turn(store, make_turn(response=other)))

        assert outcome.tier == DedupTier.DISTINCT
        assert len(await store.query(Collections.KNOWLEDGE_ENTRIES)) == 2

    async def test_archived_entries_do_not_match(self, engine, store):
        entry = make_entry("p1", ANSWER, archived=True)
        await store.set(Collections.KNOWLEDGE_ENTRIES, entry.id, entry.to_document())

        outcome = await engine.promote(await _save_turn(store, make_turn(response=ANSWER)))

        assert outcome.tier == DedupTier.DISTINCT


class TestMergeDuplicates:
    async def test_exact_cluster_picks_most_reliable(self, engine, store):
        low = make_entry("p1", ANSWER, reliability=80, usage_count=9)
        high = make_entry("p1", ANSWER.upper(), reliability=95, usage_count=1)
        for entry in (low, high):
            await store.set(Collections.KNOWLEDGE_ENTRIES, entry.id, entry.to_document())

        report = await engine.merge_duplicates("p1")

        assert report.groups_created == 1
        assert report.duplicates_found == 1
        groups = await store.query(Collections.KNOWLEDGE_GROUPS)
        group = groups[0].data
        assert group["representative_id"] == high.id
        assert group["duplicate_ids"] == [low.id]
        assert group["detection_method"] == DedupTier.EXACT.value
        assert (await store.get(Collections.KNOWLEDGE_ENTRIES, high.id))["is_representative"] is True
        low_data = await store.get(Collections.KNOWLEDGE_ENTRIES, low.id)
        assert low_data["duplicate_group_id"] == groups[0].id
        assert low_data["archived"] is False

    async def test_semantic_cluster(self, engine, store):
        a = make_entry("p1", "Alpha statement.", embedding=[1.0, 0.0])
        b = make_entry("p1", "Alpha paraphrased.", embedding=[0.99, 0.05])
        c = make_entry("p1", "Unrelated.", embedding=[0.0, 1.0])
        for entry in (a, b, c):
            await store.set(Collections.KNOWLEDGE_ENTRIES, entry.id, entry.to_document())

        report = await engine.merge_duplicates("p1")

        assert report.groups_created == 1
        group = (await store.query(Collections.KNOWLEDGE_GROUPS))[0].data
        assert group["detection_method"] == DedupTier.SEMANTIC.value
        assert set([group["representative_id"], *group["duplicate_ids"]]) == {a.id, b.id}
        assert (await store.get(Collections.KNOWLEDGE_ENTRIES, c.id))["duplicate_group_id"] is None

    async def test_rerun_does_not_regroup(self, engine, store):
        for entry in (make_entry("p1", ANSWER), make_entry("p1", ANSWER)):
            await store.set(Collections.KNOWLEDGE_ENTRIES, entry.id, entry.to_document())

        await engine.merge_duplicates("p1")
        report = await engine.merge_duplicates("p1")

        assert report.groups_created == 0
        assert len(await store.query(Collections.KNOWLEDGE_GROUPS)) == 1

    async def test_duplicate_stats(self, engine, store):
        for entry in (make_entry("p1", ANSWER), make_entry("p1", ANSWER), make_entry("p1", "Other.")):
            await store.set(Collections.KNOWLEDGE_ENTRIES, entry.id, entry.to_document())
        await engine.merge_duplicates("p1")

        stats = await engine.duplicate_stats("p1")

        assert stats.total_knowledge == 3
        assert stats.unique_knowledge == 2
        assert stats.duplicate_groups == 1
        assert stats.exact_matches == 1
        assert stats.semantic_matches == 0


class TestRemoveFromGroup:
    async def _grouped(self, engine, store, count=3):
        entries = [make_entry("p1", ANSWER, reliability=90 - i) for i in range(count)]
        for entry in entries:
            await store.set(Collections.KNOWLEDGE_ENTRIES, entry.id, entry.to_document())
        await engine.merge_duplicates("p1")
        group_id = (await store.query(Collections.KNOWLEDGE_GROUPS))[0].id
        return group_id, entries

    async def test_remove_duplicate_keeps_group(self, engine, store):
        group_id, entries = await self._grouped(engine, store)

        await engine.remove_from_group(group_id, entries[2].id)

        group = await store.get(Collections.KNOWLEDGE_GROUPS, group_id)
        assert group["duplicate_ids"] == [entries[1].id]
        assert entries[2].id not in group["similarity_scores"]
        assert (await store.get(Collections.KNOWLEDGE_ENTRIES, entries[2].id))["duplicate_group_id"] is None

    async def test_remove_representative_dissolves_group(self, engine, store):
        group_id, entries = await self._grouped(engine, store)

        await engine.remove_from_group(group_id, entries[0].id)

        assert await store.get(Collections.KNOWLEDGE_GROUPS, group_id) is None
        for entry in entries:
            data = await store.get(Collections.KNOWLEDGE_ENTRIES, entry.id)
            assert data["duplicate_group_id"] is None
            assert data["is_representative"] is False

    async def test_remove_last_duplicate_dissolves_group(self, engine, store):
        group_id, entries = await self._grouped(engine, store, count=2)

        await engine.remove_from_group(group_id, entries[1].id)

        assert await store.get(Collections.KNOWLEDGE_GROUPS, group_id) is None

    async def test_unknown_group(self, engine):
        with pytest.raises(EntityNotFoundError):
            await engine.remove_from_group("missing", "x")
