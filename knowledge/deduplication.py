"""
Deduplication Engine - Three-Tier Knowledge Promotion
======================================================

Approved chat turns are promoted into the knowledge base through a
funnel ordered from cheapest to most expensive check:

1. Exact: normalized-content hash match within the partition
2. Semantic: embedding similarity >= 0.95 within the partition
3. Distinct: a new KnowledgeEntry with inferred category and reliability

Most repeat answers are caught by tier 1 before any embedding is
computed. The batch side (``merge_duplicates``) clusters whatever slipped
through into KnowledgeGroups with a single representative.
"""

import hashlib
import re
import unicodedata
from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger

from config.constants import (
    BATCH_LIMITS,
    CATEGORY_KEYWORDS,
    RELIABILITY_SCORING,
    SIMILARITY_THRESHOLDS,
    Collections,
)
from core.enums import DedupTier
from core.exceptions import EntityNotFoundError
from core.models import ChatTurn, DedupOutcome, KnowledgeEntry, KnowledgeGroup, utcnow
from infrastructure.document_store import WriteBatch
from infrastructure.embeddings import EmbeddingProvider, cosine_similarity
from knowledge.knowledge_repository import KnowledgeRepository

_WHITESPACE = re.compile(r"\s+")


# =========================================================================
# PURE HELPERS
# =========================================================================


def normalize_content(text: str) -> str:
    """NFKC-fold, lower-case and collapse whitespace."""
    folded = unicodedata.normalize("NFKC", text or "").lower()
    return _WHITESPACE.sub(" ", folded).strip()


def content_hash(text: str) -> str:
    return hashlib.sha256(normalize_content(text).encode("utf-8")).hexdigest()


def infer_category(question: Optional[str]) -> str:
    """First category whose keyword appears in the question."""
    lowered = (question or "").lower()
    for category, keywords in CATEGORY_KEYWORDS.table.items():
        if any(keyword.lower() in lowered for keyword in keywords):
            return category
    return CATEGORY_KEYWORDS.default


def calculate_reliability(response: str, edited: bool) -> int:
    """
    Reliability for knowledge promoted from an approved turn.

    Base 90; a human edit adds 5 (capped at 95); long responses add 5
    (capped at 100); short ones lose 10; result clamped to [50, 100].
    """
    scoring = RELIABILITY_SCORING
    reliability = scoring.BASE

    if edited:
        reliability = min(scoring.EDITED_CAP, reliability + scoring.EDITED_BONUS)
    if len(response) > scoring.LONG_RESPONSE_CHARS:
        reliability = min(scoring.MAXIMUM, reliability + scoring.LONG_RESPONSE_BONUS)
    if len(response) < scoring.SHORT_RESPONSE_CHARS:
        reliability -= scoring.SHORT_RESPONSE_PENALTY

    return max(scoring.MINIMUM, min(scoring.MAXIMUM, reliability))


def _representative_order(entry: KnowledgeEntry):
    return (-entry.reliability, -entry.usage_count, entry.created_at, entry.id)


@dataclass
class MergeReport:
    partition_id: str
    duplicates_found: int = 0
    groups_created: int = 0


@dataclass
class DuplicateStats:
    total_knowledge: int
    unique_knowledge: int
    duplicate_groups: int
    total_duplicates: int
    exact_matches: int
    semantic_matches: int


# =========================================================================
# ENGINE
# =========================================================================


class DeduplicationEngine:
    """Classifies promoted turns and merges residual duplicates."""

    def __init__(
        self,
        repository: KnowledgeRepository,
        embedder: EmbeddingProvider,
        clock: Callable = utcnow,
        threshold: float = SIMILARITY_THRESHOLDS.DUPLICATE_CONTENT_THRESHOLD,
    ):
        self.repository = repository
        self.embedder = embedder
        self.threshold = threshold
        self._clock = clock

    @property
    def store(self):
        return self.repository.store

    async def promote(self, turn: ChatTurn) -> DedupOutcome:
        """
        Run an approved turn through the three tiers.

        Args:
            turn: Approved chat turn to promote

        Returns:
            DedupOutcome naming the tier and the entry the turn landed on
        """
        normalized_hash = content_hash(turn.response)

        # Tier 1
        match = await self.repository.find_by_hash(turn.partition_id, normalized_hash)
        if match is not None:
            await self.repository.record_usage([match.id])
            await self._link_chat(turn, match.id)
            logger.info(f"Exact duplicate | chat={turn.id} | knowledge={match.id}")
            return DedupOutcome(tier=DedupTier.EXACT, knowledge_id=match.id)

        # Tier 2
        embedding = await self.embedder.embed(turn.response)
        similar = await self.repository.search_similar(
            turn.partition_id, embedding, self.threshold, limit=1
        )
        if similar:
            entry, similarity = similar[0]
            await self.repository.record_usage([entry.id])
            await self._link_chat(turn, entry.id, similarity)
            logger.info(
                f"Semantic duplicate | chat={turn.id} | knowledge={entry.id} | similarity={similarity:.4f}"
            )
            return DedupOutcome(tier=DedupTier.SEMANTIC, knowledge_id=entry.id, similarity=similarity)

        # Tier 3
        now = self._clock()
        entry = KnowledgeEntry(
            partition_id=turn.partition_id,
            content=turn.response,
            normalized_hash=normalized_hash,
            question=turn.question or None,
            embedding=list(embedding),
            category=turn.category or infer_category(turn.question),
            reliability=calculate_reliability(turn.response, turn.edited),
            last_used=now,
            source_chat_id=turn.id,
            created_at=now,
        )
        await self.repository.create(entry)
        await self._link_chat(turn, entry.id)
        return DedupOutcome(tier=DedupTier.DISTINCT, knowledge_id=entry.id)

    async def _link_chat(self, turn: ChatTurn, knowledge_id: str, similarity: Optional[float] = None) -> None:
        changes = {"added_to_knowledge": True, "knowledge_id": knowledge_id}
        if similarity is not None:
            changes["similarity_score"] = similarity
        await self.store.set(Collections.CHATS, turn.id, changes, merge=True)

    # =====================================================================
    # BATCH MERGE
    # =====================================================================

    async def merge_duplicates(self, partition_id: str) -> MergeReport:
        """
        Cluster ungrouped active entries of a partition.

        Exact clusters (same normalized hash) are formed first, then
        semantic clusters over stored embeddings. Members are marked but
        never archived.
        """
        report = MergeReport(partition_id=partition_id)
        entries = [
            entry
            for entry in await self.repository.list_active(partition_id)
            if entry.duplicate_group_id is None
        ]
        entries.sort(key=lambda e: e.id)
        assigned: set[str] = set()

        by_hash: dict[str, list[KnowledgeEntry]] = {}
        for entry in entries:
            by_hash.setdefault(entry.normalized_hash, []).append(entry)

        for members in by_hash.values():
            if len(members) < 2:
                continue
            representative = min(members, key=_representative_order)
            scores = {m.id: 1.0 for m in members if m.id != representative.id}
            await self._create_group(partition_id, representative, members, scores, DedupTier.EXACT)
            assigned.update(m.id for m in members)
            report.groups_created += 1
            report.duplicates_found += len(scores)

        remaining = [e for e in entries if e.id not in assigned and e.embedding]
        for anchor in remaining:
            if anchor.id in assigned:
                continue
            cluster = [anchor]
            for candidate in remaining:
                if candidate.id == anchor.id or candidate.id in assigned:
                    continue
                if cosine_similarity(anchor.embedding, candidate.embedding) >= self.threshold:
                    cluster.append(candidate)
            if len(cluster) < 2:
                continue

            representative = min(cluster, key=_representative_order)
            scores = {
                m.id: round(cosine_similarity(representative.embedding, m.embedding), 6)
                for m in cluster
                if m.id != representative.id
            }
            await self._create_group(partition_id, representative, cluster, scores, DedupTier.SEMANTIC)
            assigned.update(m.id for m in cluster)
            report.groups_created += 1
            report.duplicates_found += len(scores)

        logger.info(
            f"Duplicate merge | partition={partition_id} | groups={report.groups_created} | "
            f"duplicates={report.duplicates_found}"
        )
        return report

    async def _create_group(
        self,
        partition_id: str,
        representative: KnowledgeEntry,
        members: list[KnowledgeEntry],
        scores: dict[str, float],
        method: DedupTier,
    ) -> KnowledgeGroup:
        group = KnowledgeGroup(
            partition_id=partition_id,
            representative_id=representative.id,
            duplicate_ids=sorted(scores),
            similarity_scores=scores,
            detection_method=method,
            created_at=self._clock(),
        )

        batch = self.store.batch()
        batch.set(Collections.KNOWLEDGE_GROUPS, group.id, group.to_document())
        for member in members:
            batch = await self._flush_if_full(batch)
            batch.update(
                Collections.KNOWLEDGE_ENTRIES,
                member.id,
                {
                    "duplicate_group_id": group.id,
                    "is_representative": member.id == representative.id,
                },
            )
        await batch.commit()
        return group

    async def _flush_if_full(self, batch: WriteBatch) -> WriteBatch:
        if len(batch) < BATCH_LIMITS.STORE_BATCH_LIMIT:
            return batch
        await batch.commit()
        return self.store.batch()

    # =====================================================================
    # GROUP MAINTENANCE
    # =====================================================================

    async def remove_from_group(self, group_id: str, entry_id: str) -> None:
        """
        Detach an entry from its duplicate group.

        Removing the representative, or the last duplicate, dissolves the
        group and clears every member.

        Raises:
            EntityNotFoundError: group does not exist
        """
        group = await self.repository.get_group(group_id)
        if group is None:
            raise EntityNotFoundError(Collections.KNOWLEDGE_GROUPS, group_id)

        cleared = {"duplicate_group_id": None, "is_representative": False}
        batch = self.store.batch()
        remaining = [i for i in group.duplicate_ids if i != entry_id]

        if entry_id == group.representative_id or not remaining:
            batch.delete(Collections.KNOWLEDGE_GROUPS, group_id)
            for member_id in group.member_ids:
                batch = await self._flush_if_full(batch)
                batch.update(Collections.KNOWLEDGE_ENTRIES, member_id, cleared)
            logger.info(f"Dissolved duplicate group {group_id}")
        else:
            scores = {k: v for k, v in group.similarity_scores.items() if k != entry_id}
            batch.set(
                Collections.KNOWLEDGE_GROUPS,
                group_id,
                {"duplicate_ids": remaining, "similarity_scores": scores},
                merge=True,
            )
            batch.update(Collections.KNOWLEDGE_ENTRIES, entry_id, cleared)
            logger.info(f"Removed {entry_id} from duplicate group {group_id}")

        await batch.commit()

    async def duplicate_stats(self, partition_id: str) -> DuplicateStats:
        total = len(await self.repository.list_active(partition_id))
        groups = await self.repository.list_groups(partition_id)

        total_duplicates = sum(len(g.duplicate_ids) for g in groups)
        exact = sum(len(g.duplicate_ids) for g in groups if g.detection_method == DedupTier.EXACT)

        return DuplicateStats(
            total_knowledge=total,
            unique_knowledge=total - total_duplicates,
            duplicate_groups=len(groups),
            total_duplicates=total_duplicates,
            exact_matches=exact,
            semantic_matches=total_duplicates - exact,
        )
