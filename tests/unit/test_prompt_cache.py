"""
Unit Tests for the Layered Prompt Cache Builder
===============================================
"""

from unittest.mock import AsyncMock

import pytest

from config.constants import Collections
from core.enums import CacheLayerId, PatternType
from core.exceptions import DocumentStoreError, TokenLimitExceededError
from core.models import ContextSegment, LearningPattern
from knowledge.knowledge_repository import KnowledgeRepository, PatternRepository, pattern_id
from optimization.prompt_cache import (
    CACHE_LAYERS,
    CORE_CONSTRAINTS,
    DEFAULT_DOMAIN_KNOWLEDGE,
    PromptCacheBuilder,
    check_token_budget,
    estimate_tokens,
)

from conftest import make_entry

QUESTION = "How should we describe our dividend policy?"
QUESTION_VECTOR = [1.0, 0.0, 0.0, 0.0]


@pytest.fixture
def builder(store, embedder):
    embedder.vectors[QUESTION] = QUESTION_VECTOR
    return PromptCacheBuilder(store, embedder, KnowledgeRepository(store), PatternRepository(store))


async def _add_pattern(store, partition_id, description, confidence):
    pattern = LearningPattern(
        id=pattern_id(partition_id, PatternType.TONE, description),
        partition_id=partition_id,
        type=PatternType.TONE,
        description=description,
        confidence=confidence,
    )
    await store.set(Collections.LEARNING_PATTERNS, pattern.id, pattern.to_document())


def test_layer_descriptors():
    assert CACHE_LAYERS[CacheLayerId.CORE].token_budget == 500
    assert CACHE_LAYERS[CacheLayerId.DOMAIN].target_hit_rate == 0.95
    assert CACHE_LAYERS[CacheLayerId.PROJECT].token_budget == 2500


async def test_layer_budget_does_not_truncate(builder, store):
    long_prompt = "Disclosure guidance. " * 200
    budget = CACHE_LAYERS[CacheLayerId.DOMAIN].token_budget
    await store.set(Collections.DOMAIN_PROMPTS, "a", {"content": long_prompt, "priority": 1, "active": True})

    segments = await builder.build("p1", QUESTION)

    assert estimate_tokens(segments[1].text) > budget
    assert segments[1].text == long_prompt.strip()


class TestBuild:
    async def test_empty_partition_has_two_layers(self, builder):
        segments = await builder.build("p1", QUESTION)

        assert [s.layer for s in segments] == [CacheLayerId.CORE, CacheLayerId.DOMAIN]
        assert segments[0].text == CORE_CONSTRAINTS
        assert segments[1].text == DEFAULT_DOMAIN_KNOWLEDGE
        assert all(s.cacheable for s in segments)

    async def test_domain_prompts_ordered_by_priority(self, builder, store):
        await store.set(Collections.DOMAIN_PROMPTS, "b", {"content": "Second", "priority": 2, "active": True})
        await store.set(Collections.DOMAIN_PROMPTS, "a", {"content": "First", "priority": 1, "active": True})
        await store.set(Collections.DOMAIN_PROMPTS, "c", {"content": "Hidden", "priority": 0, "active": False})

        segments = await builder.build("p1", QUESTION)

        assert segments[1].text == "First\n\nSecond"

    async def test_project_layer_holds_knowledge_and_patterns(self, builder, store):
        entry = make_entry("p1", "Dividends target a 30% payout ratio.", embedding=[0.9, 0.1, 0.0, 0.0])
        await store.set(Collections.KNOWLEDGE_ENTRIES, entry.id, entry.to_document())
        await _add_pattern(store, "p1", "Tone: formal", 90)
        await _add_pattern(store, "p1", "Tone: casual", 40)

        segments = await builder.build("p1", QUESTION)

        assert len(segments) == 3
        project = segments[2]
        assert project.layer == CacheLayerId.PROJECT
        assert "Dividends target a 30% payout ratio." in project.text
        assert "- Tone: formal" in project.text
        assert "Tone: casual" not in project.text

    async def test_retrieval_is_partition_scoped(self, builder, store):
        entry = make_entry("p2", "Other partition knowledge.", embedding=QUESTION_VECTOR)
        await store.set(Collections.KNOWLEDGE_ENTRIES, entry.id, entry.to_document())

        segments = await builder.build("p1", QUESTION)

        assert len(segments) == 2

    async def test_archived_entries_are_excluded(self, builder, store):
        entry = make_entry("p1", "Archived knowledge.", embedding=QUESTION_VECTOR, archived=True)
        await store.set(Collections.KNOWLEDGE_ENTRIES, entry.id, entry.to_document())

        segments = await builder.build("p1", QUESTION)

        assert len(segments) == 2

    async def test_identical_inputs_are_byte_identical(self, builder, store):
        for i, vector in enumerate(([0.9, 0.1, 0, 0], [0.9, 0.1, 0, 0], [0.8, 0.2, 0, 0])):
            entry = make_entry("p1", f"Fact number {i}.", embedding=list(vector))
            await store.set(Collections.KNOWLEDGE_ENTRIES, entry.id, entry.to_document())
        await _add_pattern(store, "p1", "Tone: formal", 85)
        await _add_pattern(store, "p1", "Tone: business", 85)

        first = await builder.build("p1", QUESTION)
        second = await builder.build("p1", QUESTION)

        assert [(s.layer, s.text) for s in first] == [(s.layer, s.text) for s in second]

    async def test_retrieval_records_usage(self, builder, store):
        entry = make_entry("p1", "Used knowledge.", embedding=QUESTION_VECTOR, usage_count=1)
        await store.set(Collections.KNOWLEDGE_ENTRIES, entry.id, entry.to_document())

        await builder.build("p1", QUESTION)

        data = await store.get(Collections.KNOWLEDGE_ENTRIES, entry.id)
        assert data["usage_count"] == 2
        assert data["last_used"] is not None

    async def test_retrieval_failure_is_skipped(self, store, embedder):
        knowledge = KnowledgeRepository(store)
        knowledge.search_similar = AsyncMock(side_effect=DocumentStoreError("down"))
        builder = PromptCacheBuilder(store, embedder, knowledge, PatternRepository(store))

        segments = await builder.build("p1", QUESTION)

        assert len(segments) == 2

    async def test_prefix_is_layers_one_and_two(self, builder):
        prefix = await builder.build_prefix()
        assert [s.layer for s in prefix] == [CacheLayerId.CORE, CacheLayerId.DOMAIN]


class TestTokenBudget:
    def test_estimate_is_conservative(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("a" * 70) >= 100

    def test_within_budget_returns_estimate(self):
        segments = [ContextSegment(layer=CacheLayerId.CORE, text="x" * 70)]
        expected = estimate_tokens("x" * 70) + estimate_tokens("y" * 7)
        assert check_token_budget(segments, [{"role": "user", "content": "y" * 7}]) == expected

    def test_over_budget_raises(self):
        segments = [ContextSegment(layer=CacheLayerId.CORE, text="x" * 700)]
        with pytest.raises(TokenLimitExceededError) as exc:
            check_token_budget(segments, [], limit=500)
        assert exc.value.estimated_tokens == estimate_tokens("x" * 700)
