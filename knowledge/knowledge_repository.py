"""
Knowledge Repository: Data Access for Entries, Groups and Learned Patterns

Encapsulates document-store access for the knowledge base:
- Exact lookups by normalized content hash
- Partition-scoped similarity search over stored embeddings
- Usage bookkeeping (usage_count / last_used)
- Increment-or-create upserts for LearningPatterns keyed on
  (partition, type, description)

Design Pattern: Repository Pattern over the DocumentStore capability
"""

import hashlib
from datetime import datetime
from typing import Callable, Iterable, Optional, Sequence

from loguru import logger

from config.constants import BATCH_LIMITS, RETRIEVAL_LIMITS, Collections
from core.enums import PatternType
from core.models import KnowledgeEntry, KnowledgeGroup, LearningPattern, utcnow
from infrastructure.document_store import ArrayUnion, DocumentStore, Filter, Increment
from infrastructure.embeddings import cosine_similarity
from knowledge.pattern_extractor import PatternCandidate

Clock = Callable[[], datetime]


def pattern_id(partition_id: str, pattern_type: PatternType, description: str) -> str:
    """Deterministic id so re-observed patterns land on the same document."""
    key = f"{partition_id}|{pattern_type.value}|{description}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:40]


class KnowledgeRepository:
    """
    Repository for knowledge entries and duplicate groups.

    Archived entries are invisible to lookups and search; they are never
    deleted.
    """

    def __init__(self, store: DocumentStore, clock: Clock = utcnow):
        """
        Initialize repository.

        Args:
            store: Document store backend
            clock: Time source, injectable for tests
        """
        self.store = store
        self._clock = clock
        logger.debug("KnowledgeRepository initialized")

    async def get(self, entry_id: str) -> Optional[KnowledgeEntry]:
        data = await self.store.get(Collections.KNOWLEDGE_ENTRIES, entry_id)
        return KnowledgeEntry.from_document(entry_id, data) if data else None

    async def find_by_hash(self, partition_id: str, normalized_hash: str) -> Optional[KnowledgeEntry]:
        """
        Exact-tier lookup.

        Args:
            partition_id: Partition to search within
            normalized_hash: Hash of the normalized content

        Returns:
            Oldest-id matching active entry, or None
        """
        docs = await self.store.query(
            Collections.KNOWLEDGE_ENTRIES,
            [
                Filter("partition_id", "==", partition_id),
                Filter("normalized_hash", "==", normalized_hash),
                Filter("archived", "==", False),
            ],
            limit=1,
        )
        return KnowledgeEntry.from_document(docs[0].id, docs[0].data) if docs else None

    async def list_active(self, partition_id: str) -> list[KnowledgeEntry]:
        docs = await self.store.query(
            Collections.KNOWLEDGE_ENTRIES,
            [Filter("partition_id", "==", partition_id), Filter("archived", "==", False)],
        )
        return [KnowledgeEntry.from_document(doc.id, doc.data) for doc in docs]

    async def search_similar(
        self,
        partition_id: str,
        embedding: Sequence[float],
        threshold: float,
        limit: int = RETRIEVAL_LIMITS.CONTEXT_RESULT_LIMIT,
    ) -> list[tuple[KnowledgeEntry, float]]:
        """
        Similarity search restricted to one partition.

        Args:
            partition_id: Partition to search within
            embedding: Query vector
            threshold: Minimum cosine similarity (inclusive)
            limit: Maximum results

        Returns:
            (entry, similarity) pairs ordered by similarity desc, then id
        """
        scored = []
        for entry in await self.list_active(partition_id):
            if not entry.embedding:
                continue
            similarity = cosine_similarity(embedding, entry.embedding)
            if similarity >= threshold:
                scored.append((entry, similarity))

        scored.sort(key=lambda pair: (-pair[1], pair[0].id))
        return scored[:limit]

    async def create(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        await self.store.set(Collections.KNOWLEDGE_ENTRIES, entry.id, entry.to_document())
        logger.info(
            f"Knowledge entry created | id={entry.id} | partition={entry.partition_id} | "
            f"category={entry.category} | reliability={entry.reliability}"
        )
        return entry

    async def record_usage(self, entry_ids: Iterable[str]) -> None:
        """Increment usage_count and touch last_used for each entry, atomically."""
        ids = list(dict.fromkeys(entry_ids))
        if not ids:
            return
        now = self._clock()
        for start in range(0, len(ids), BATCH_LIMITS.STORE_BATCH_LIMIT):
            batch = self.store.batch()
            for entry_id in ids[start : start + BATCH_LIMITS.STORE_BATCH_LIMIT]:
                batch.update(
                    Collections.KNOWLEDGE_ENTRIES,
                    entry_id,
                    {"usage_count": Increment(1), "last_used": now},
                )
            await batch.commit()

    async def get_group(self, group_id: str) -> Optional[KnowledgeGroup]:
        data = await self.store.get(Collections.KNOWLEDGE_GROUPS, group_id)
        return KnowledgeGroup.from_document(group_id, data) if data else None

    async def list_groups(self, partition_id: str) -> list[KnowledgeGroup]:
        docs = await self.store.query(
            Collections.KNOWLEDGE_GROUPS, [Filter("partition_id", "==", partition_id)]
        )
        return [KnowledgeGroup.from_document(doc.id, doc.data) for doc in docs]


class PatternRepository:
    """Storage for LearningPatterns with increment-or-create semantics."""

    def __init__(self, store: DocumentStore, clock: Clock = utcnow):
        self.store = store
        self._clock = clock

    async def get(self, partition_id: str, pattern_type: PatternType, description: str) -> Optional[LearningPattern]:
        doc_id = pattern_id(partition_id, pattern_type, description)
        data = await self.store.get(Collections.LEARNING_PATTERNS, doc_id)
        return LearningPattern.from_document(doc_id, data) if data else None

    async def list_for_partition(self, partition_id: str) -> list[LearningPattern]:
        docs = await self.store.query(
            Collections.LEARNING_PATTERNS, [Filter("partition_id", "==", partition_id)]
        )
        return [LearningPattern.from_document(doc.id, doc.data) for doc in docs]

    async def top_patterns(
        self,
        partition_id: str,
        min_confidence: float = RETRIEVAL_LIMITS.PATTERN_MIN_CONFIDENCE,
        limit: int = RETRIEVAL_LIMITS.PATTERN_RESULT_LIMIT,
    ) -> list[LearningPattern]:
        """High-confidence patterns ordered by confidence desc, then id."""
        docs = await self.store.query(
            Collections.LEARNING_PATTERNS,
            [
                Filter("partition_id", "==", partition_id),
                Filter("confidence", ">=", min_confidence),
            ],
        )
        patterns = [LearningPattern.from_document(doc.id, doc.data) for doc in docs]
        patterns.sort(key=lambda p: (-p.confidence, p.id))
        return patterns[:limit]

    async def apply_candidates(
        self,
        partition_id: str,
        candidates: Sequence[PatternCandidate],
        source_ids: Sequence[str] = (),
    ) -> dict[PatternType, int]:
        """
        Reinforce existing patterns or create new ones, in one atomic batch.

        Args:
            partition_id: Partition the candidates were observed in
            candidates: Analyzer output
            source_ids: Chat ids the candidates were extracted from

        Returns:
            Number of patterns touched per type
        """
        touched: dict[PatternType, int] = {}
        if not candidates:
            return touched

        now = self._clock()
        batch = self.store.batch()
        seen: set[str] = set()

        for candidate in candidates:
            doc_id = pattern_id(partition_id, candidate.type, candidate.description)
            if doc_id in seen:
                continue
            seen.add(doc_id)

            data = await self.store.get(Collections.LEARNING_PATTERNS, doc_id)
            if data:
                existing = LearningPattern.from_document(doc_id, data)
                examples = list(existing.examples)
                for example in candidate.examples:
                    if example not in examples:
                        examples.append(example)
                batch.update(
                    Collections.LEARNING_PATTERNS,
                    doc_id,
                    {
                        "confidence": min(
                            100.0, existing.confidence + BATCH_LIMITS.PATTERN_REINFORCEMENT_DELTA
                        ),
                        "occurrence_count": Increment(1),
                        "examples": examples[: BATCH_LIMITS.MAX_PATTERN_EXAMPLES],
                        "extracted_from": ArrayUnion(source_ids),
                        "last_seen_at": now,
                    },
                )
            else:
                pattern = LearningPattern(
                    id=doc_id,
                    partition_id=partition_id,
                    type=candidate.type,
                    description=candidate.description,
                    examples=list(candidate.examples)[: BATCH_LIMITS.MAX_PATTERN_EXAMPLES],
                    confidence=candidate.confidence,
                    extracted_from=list(dict.fromkeys(source_ids)),
                    created_at=now,
                    last_seen_at=now,
                )
                batch.set(Collections.LEARNING_PATTERNS, doc_id, pattern.to_document())

            touched[candidate.type] = touched.get(candidate.type, 0) + 1

        await batch.commit()
        logger.debug(f"Applied {len(seen)} pattern candidates | partition={partition_id}")
        return touched
