"""
Archival sweep for stale knowledge.

An active entry is archived once its last use (or its creation, when it
was never used) is older than the retention window. Entries are flagged,
never deleted, and every archival writes an ``archive_logs`` record in the
same batch as the flag.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from loguru import logger

from config.constants import BATCH_LIMITS, Collections
from core.models import KnowledgeEntry, new_id, utcnow
from infrastructure.document_store import DocumentStore, Filter

ARCHIVE_REASON = "unused_90_days"

# Each archived entry costs two writes: the flag and its log record
_ENTRIES_PER_BATCH = BATCH_LIMITS.STORE_BATCH_LIMIT // 2


@dataclass
class ArchiveReport:
    cutoff: datetime
    dry_run: bool
    candidate_ids: List[str] = field(default_factory=list)
    archived: int = 0


class ArchiveService:
    def __init__(
        self,
        store: DocumentStore,
        archive_after_days: int = BATCH_LIMITS.ARCHIVE_AFTER_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.archive_after_days = archive_after_days
        self._clock = clock

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        return (now or self._clock()) - timedelta(days=self.archive_after_days)

    async def find_candidates(self, now: Optional[datetime] = None) -> List[KnowledgeEntry]:
        cutoff = self.cutoff(now)
        docs = await self.store.query(
            Collections.KNOWLEDGE_ENTRIES, [Filter("archived", "==", False)]
        )
        entries = [KnowledgeEntry.from_document(doc.id, doc.data) for doc in docs]
        return [entry for entry in entries if (entry.last_used or entry.created_at) < cutoff]

    async def archive_stale(self, dry_run: bool = False, job_id: Optional[str] = None) -> ArchiveReport:
        """
        Archive every stale entry.

        Args:
            dry_run: Report candidates without writing
            job_id: Batch job responsible, recorded on each log

        Returns:
            ArchiveReport with the candidates and the archived count
        """
        now = self._clock()
        candidates = await self.find_candidates(now)
        report = ArchiveReport(
            cutoff=self.cutoff(now),
            dry_run=dry_run,
            candidate_ids=[entry.id for entry in candidates],
        )

        if dry_run:
            logger.info(f"Archive dry run: {len(candidates)} candidates before {report.cutoff.isoformat()}")
            return report

        for start in range(0, len(candidates), _ENTRIES_PER_BATCH):
            chunk = candidates[start : start + _ENTRIES_PER_BATCH]
            batch = self.store.batch()
            for entry in chunk:
                batch.update(
                    Collections.KNOWLEDGE_ENTRIES,
                    entry.id,
                    {"archived": True, "archived_at": now, "archived_reason": ARCHIVE_REASON},
                )
                batch.set(
                    Collections.ARCHIVE_LOGS,
                    new_id(),
                    {
                        "entry_id": entry.id,
                        "partition_id": entry.partition_id,
                        "reason": ARCHIVE_REASON,
                        "last_used": entry.last_used,
                        "usage_count": entry.usage_count,
                        "reliability": entry.reliability,
                        "archived_at": now,
                        "job_id": job_id,
                    },
                )
            await batch.commit()
            report.archived += len(chunk)

        logger.info(f"Archived {report.archived} knowledge entries")
        return report
