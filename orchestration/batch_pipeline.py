"""
Batch Maintenance Pipeline
==========================

One implementation behind both the weekly schedule and the manual trigger.

Steps (progress reported after each):
    fetch_window      10%
    retrieve_chats    20%
    extract_patterns  20-60%, advanced per chunk
    deduplicate       80%
    archive           95%
    update_statistics 100%

Work inside ``extract_patterns`` and ``deduplicate`` is chunked; every
chunk commits on its own and then persists ``{step, cursor}`` on the job.
When the time budget runs out between chunks the run checkpoints and
returns ``suspended``; the owner re-invokes ``run`` with the same token and
the pipeline resumes after the last committed chunk.

Failures inside one partition (one analyzer, one promotion, one merge)
are recorded on the job and in ``error_logs`` and never stop the run.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from itertools import groupby
from typing import Callable, Dict, List, Optional

from loguru import logger

from config.constants import BATCH_LIMITS, Collections
from core.enums import BatchJobType, BatchStep, PatternType
from core.exceptions import AdvisoryException, PartitionStepFailedError
from core.models import BatchCheckpoint, BatchJob, BatchJobResult, ChatTurn, utcnow
from infrastructure.document_store import DocumentStore, Filter
from infrastructure.monitoring import MetricsCollector
from knowledge.archive import ArchiveService
from knowledge.deduplication import DeduplicationEngine
from knowledge.knowledge_repository import PatternRepository
from knowledge.pattern_extractor import PatternExtractor, TextPair
from orchestration.batch_jobs import BatchJobRepository, record_error_log

COMPLETED = "completed"
SUSPENDED = "suspended"

_EXTRACT_START = BatchStep.RETRIEVE_CHATS.progress_percentage
_EXTRACT_END = BatchStep.EXTRACT_PATTERNS.progress_percentage


@dataclass
class Chunk:
    partition_id: str
    turns: List[ChatTurn] = field(default_factory=list)


def plan_chunks(turns: List[ChatTurn], chunk_size: int, min_tail: int = 1) -> List[Chunk]:
    """
    Split turns into chunks that never span partitions.

    Turns must already be ordered by (partition, approved_at, id). A
    partition's last chunk smaller than ``min_tail`` is folded into the
    chunk before it, so analyzers gated on a minimum sample still see
    those turns.
    """
    chunks: List[Chunk] = []
    for partition_id, group in groupby(turns, key=lambda t: t.partition_id):
        members = list(group)
        own: List[Chunk] = [
            Chunk(partition_id, members[start : start + chunk_size])
            for start in range(0, len(members), chunk_size)
        ]
        if len(own) > 1 and len(own[-1].turns) < min_tail:
            tail = own.pop()
            own[-1].turns.extend(tail.turns)
        chunks.extend(own)
    return chunks


class _BudgetExhausted(Exception):
    """Raised internally when the run must checkpoint and yield."""


class MaintenancePipeline:
    """
    Runs one batch job to completion or to its next checkpoint.

    Usage:
        pipeline = MaintenancePipeline(store, jobs, extractor, patterns, dedup, archive)
        outcome = await pipeline.run(job_id, owner_token)
    """

    def __init__(
        self,
        store: DocumentStore,
        jobs: BatchJobRepository,
        extractor: PatternExtractor,
        patterns: PatternRepository,
        dedup: DeduplicationEngine,
        archive: ArchiveService,
        *,
        chunk_size: int = BATCH_LIMITS.CHUNK_SIZE,
        time_budget_seconds: float = 480.0,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = utcnow,
        metrics_collector: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.jobs = jobs
        self.extractor = extractor
        self.patterns = patterns
        self.dedup = dedup
        self.archive = archive
        self.chunk_size = chunk_size
        self.time_budget_seconds = time_budget_seconds
        self._monotonic = monotonic
        self._clock = clock
        self._metrics = metrics_collector

    async def run(self, job_id: str, owner_token: str) -> Optional[str]:
        """
        Execute (or resume) a job.

        Args:
            job_id: Batch job to run
            owner_token: Token identifying this execution chain

        Returns:
            ``"completed"``, ``"suspended"``, or None when the job was not
            claimable (already running elsewhere or terminal)

        Raises:
            Any unexpected error, after the job is marked failed and logged
        """
        job = await self.jobs.claim(job_id, owner_token)
        if job is None:
            return None

        started = self._monotonic()
        try:
            outcome = await self._execute(job, started)
        except Exception as e:
            await self.jobs.fail(job_id, e)
            await record_error_log(
                self.store, "batch_pipeline", e, {"job_id": job_id, "job_type": job.type.value}
            )
            self._record_outcome(job, "failed", started)
            raise

        self._record_outcome(job, outcome, started)
        return outcome

    # =====================================================================
    # STEPS
    # =====================================================================

    async def _execute(self, job: BatchJob, started: float) -> str:
        resume_from = job.checkpoint
        result = job.result or BatchJobResult()

        # fetch_window and retrieve_chats only read, so they always rerun
        if resume_from is None:
            await self.jobs.update_progress(job.id, BatchStep.FETCH_WINDOW, BatchStep.FETCH_WINDOW.progress_percentage)

        turns = await self._retrieve_chats(job)
        partitions = await self._partitions_in_scope(job, turns)
        if resume_from is None:
            result.chats_analyzed = len(turns)
            result.partitions_processed = len(partitions)
            await self.jobs.update_progress(
                job.id, BatchStep.RETRIEVE_CHATS, _EXTRACT_START, current=0, total=len(turns)
            )

        logger.info(
            f"Batch job {job.id} | type={job.type.value} | chats={len(turns)} | "
            f"partitions={len(partitions)} | resume={resume_from}"
        )

        try:
            if self._should_run(BatchStep.EXTRACT_PATTERNS, resume_from):
                if job.type == BatchJobType.WEEKLY_PATTERN_EXTRACTION:
                    await self._extract_patterns(job, turns, result, resume_from, started)
                await self.jobs.update_progress(
                    job.id, BatchStep.EXTRACT_PATTERNS, _EXTRACT_END, current=len(turns), total=len(turns)
                )

            if self._should_run(BatchStep.DEDUPLICATE, resume_from):
                await self._deduplicate(job, turns, partitions, result, resume_from, started)
                await self.jobs.update_progress(
                    job.id, BatchStep.DEDUPLICATE, BatchStep.DEDUPLICATE.progress_percentage
                )
        except _BudgetExhausted:
            logger.warning(f"Batch job {job.id} suspended after {self._monotonic() - started:.1f}s")
            return SUSPENDED

        if self._should_run(BatchStep.ARCHIVE, resume_from):
            report = await self.archive.archive_stale(job_id=job.id)
            result.knowledge_archived = report.archived
            await self.jobs.save_checkpoint(job.id, BatchCheckpoint(step=BatchStep.UPDATE_STATISTICS), result)
            await self.jobs.update_progress(job.id, BatchStep.ARCHIVE, BatchStep.ARCHIVE.progress_percentage)

        await self._update_statistics(job, turns, partitions)
        await self.jobs.update_progress(
            job.id, BatchStep.UPDATE_STATISTICS, BatchStep.UPDATE_STATISTICS.progress_percentage
        )
        await self.jobs.complete(job.id, result)
        return COMPLETED

    @staticmethod
    def _should_run(step: BatchStep, checkpoint: Optional[BatchCheckpoint]) -> bool:
        return checkpoint is None or step.order >= checkpoint.step.order

    async def _retrieve_chats(self, job: BatchJob) -> List[ChatTurn]:
        period = job.target_period
        docs = await self.store.query(
            Collections.CHATS,
            [
                Filter("approved", "==", True),
                Filter("approved_at", ">=", period.start),
                Filter("approved_at", "<", period.end),
            ],
        )
        turns = [ChatTurn.from_document(doc.id, doc.data) for doc in docs]
        turns.sort(key=lambda t: (t.partition_id, t.approved_at, t.id))
        return turns

    async def _partitions_in_scope(self, job: BatchJob, turns: List[ChatTurn]) -> List[str]:
        partitions = {turn.partition_id for turn in turns}
        if job.type == BatchJobType.KNOWLEDGE_MAINTENANCE:
            docs = await self.store.query(
                Collections.KNOWLEDGE_ENTRIES, [Filter("archived", "==", False)]
            )
            partitions.update(doc.data["partition_id"] for doc in docs if doc.data.get("partition_id"))
        return sorted(partitions)

    async def _extract_patterns(
        self,
        job: BatchJob,
        turns: List[ChatTurn],
        result: BatchJobResult,
        resume_from: Optional[BatchCheckpoint],
        started: float,
    ) -> None:
        chunks = plan_chunks(turns, self.chunk_size, min_tail=self.extractor.min_pairs)
        cursor = resume_from.cursor if resume_from and resume_from.step == BatchStep.EXTRACT_PATTERNS else 0
        processed = sum(len(chunk.turns) for chunk in chunks[:cursor])

        for index in range(cursor, len(chunks)):
            self._check_budget(started)
            chunk = chunks[index]

            touched = await self._extract_chunk(job, chunk)
            for pattern_type, count in touched.items():
                key = pattern_type.value
                result.patterns_extracted[key] = result.patterns_extracted.get(key, 0) + count

            processed += len(chunk.turns)
            await self.jobs.save_checkpoint(
                job.id, BatchCheckpoint(step=BatchStep.EXTRACT_PATTERNS, cursor=index + 1), result
            )
            span = _EXTRACT_END - _EXTRACT_START
            percentage = _EXTRACT_START + int(span * processed / len(turns))
            await self.jobs.update_progress(
                job.id, BatchStep.EXTRACT_PATTERNS, percentage, current=processed, total=len(turns)
            )

    async def _extract_chunk(self, job: BatchJob, chunk: Chunk) -> Dict[PatternType, int]:
        pairs = [TextPair.from_turn(turn) for turn in chunk.turns]
        candidates = []

        for pattern_type in self.extractor.analyzers:
            try:
                candidates.extend(self.extractor.run_analyzer(pattern_type, pairs))
            except Exception as e:
                await self._record_partition_failure(
                    job, chunk.partition_id, BatchStep.EXTRACT_PATTERNS, e, analyzer=pattern_type.value
                )

        try:
            return await self.patterns.apply_candidates(
                chunk.partition_id, candidates, [turn.id for turn in chunk.turns]
            )
        except AdvisoryException as e:
            await self._record_partition_failure(job, chunk.partition_id, BatchStep.EXTRACT_PATTERNS, e)
            return {}

    async def _deduplicate(
        self,
        job: BatchJob,
        turns: List[ChatTurn],
        partitions: List[str],
        result: BatchJobResult,
        resume_from: Optional[BatchCheckpoint],
        started: float,
    ) -> None:
        cursor = resume_from.cursor if resume_from and resume_from.step == BatchStep.DEDUPLICATE else 0
        pending = [turn for turn in turns if not turn.added_to_knowledge]

        for index in range(cursor, len(partitions)):
            self._check_budget(started)
            partition_id = partitions[index]

            for turn in (t for t in pending if t.partition_id == partition_id):
                try:
                    await self.dedup.promote(turn)
                except Exception as e:
                    await self._record_partition_failure(job, partition_id, BatchStep.DEDUPLICATE, e)

            try:
                report = await self.dedup.merge_duplicates(partition_id)
                result.duplicates_found += report.duplicates_found
                result.groups_created += report.groups_created
            except Exception as e:
                await self._record_partition_failure(job, partition_id, BatchStep.DEDUPLICATE, e)

            await self.jobs.save_checkpoint(
                job.id, BatchCheckpoint(step=BatchStep.DEDUPLICATE, cursor=index + 1), result
            )

        await self.jobs.save_checkpoint(job.id, BatchCheckpoint(step=BatchStep.ARCHIVE), result)

    async def _update_statistics(self, job: BatchJob, turns: List[ChatTurn], partitions: List[str]) -> None:
        now = self._clock()
        counts: Dict[str, int] = {}
        for turn in turns:
            counts[turn.partition_id] = counts.get(turn.partition_id, 0) + 1

        batch = self.store.batch()
        for partition_id in partitions:
            if len(batch) >= BATCH_LIMITS.STORE_BATCH_LIMIT:
                await batch.commit()
                batch = self.store.batch()
            batch.set(
                Collections.PARTITION_STATS,
                partition_id,
                {
                    "partition_id": partition_id,
                    "chats_analyzed": counts.get(partition_id, 0),
                    "patterns_total": len(await self.patterns.list_for_partition(partition_id)),
                    "last_job_id": job.id,
                    "last_job_type": job.type.value,
                    "updated_at": now,
                },
                merge=True,
            )
        await batch.commit()

    # =====================================================================
    # HELPERS
    # =====================================================================

    def _check_budget(self, started: float) -> None:
        if self._monotonic() - started >= self.time_budget_seconds:
            raise _BudgetExhausted()

    async def _record_partition_failure(
        self,
        job: BatchJob,
        partition_id: str,
        step: BatchStep,
        error: Exception,
        analyzer: Optional[str] = None,
    ) -> None:
        failure = PartitionStepFailedError(
            f"{step.value} failed for partition {partition_id}: {error}",
            partition_id=partition_id,
            step=step.value,
            analyzer=analyzer,
            cause=error,
        )
        logger.error(f"Batch job {job.id} | {failure.message}")
        await self.jobs.append_error(job.id, failure)
        await record_error_log(self.store, "batch_pipeline", failure, {"job_id": job.id})

    def _record_outcome(self, job: BatchJob, outcome: str, started: float) -> None:
        if self._metrics:
            self._metrics.record_batch_job(job.type.value, outcome, self._monotonic() - started)
