"""
Batch Job Persistence

Stores maintenance job records in the ``batch_jobs`` collection so that
external observers can poll progress, and so that a suspended run can be
resumed from its checkpoint by the execution holding the owner token.
Also hosts the ``error_logs`` writer shared by the pipeline, the trigger
and the event handlers.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from loguru import logger

from config.constants import Collections
from core.enums import BatchJobStatus, BatchJobType, BatchStep
from core.exceptions import AdvisoryException, DocumentStoreError, EntityNotFoundError
from core.models import (
    BatchCheckpoint,
    BatchJob,
    BatchJobProgress,
    BatchJobResult,
    TargetPeriod,
    utcnow,
)
from infrastructure.document_store import ArrayUnion, DocumentStore, Filter


async def record_error_log(
    store: DocumentStore,
    source: str,
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Append an ``error_logs`` record; a failing write is logged, not raised.

    Args:
        store: Document store backend
        source: Component that observed the error
        error: The error itself
        context: Extra identifiers (job id, partition id, ...)
    """
    message = error.message if isinstance(error, AdvisoryException) else str(error)
    data = {
        "source": source,
        "error_type": type(error).__name__,
        "message": message,
        "context": {**(getattr(error, "context", None) or {}), **(context or {})},
        "timestamp": utcnow(),
    }
    try:
        await store.add(Collections.ERROR_LOGS, data)
    except DocumentStoreError as e:
        logger.error(f"Failed to persist error log | source={source} | error={e}")


class BatchJobRepository:
    """
    Repository for batch job records.

    Only the execution that claimed a job (holding its ``owner_token``)
    mutates it after creation.
    """

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        """
        Initialize repository.

        Args:
            store: Document store backend
            clock: Time source, injectable for tests
        """
        self.store = store
        self._clock = clock

    async def create(
        self,
        job_type: BatchJobType,
        target_period: TargetPeriod,
        triggered_by: str = "scheduler",
    ) -> BatchJob:
        job = BatchJob(
            type=job_type,
            target_period=target_period,
            triggered_by=triggered_by,
            created_at=self._clock(),
        )
        await self.store.set(Collections.BATCH_JOBS, job.id, job.to_document())
        logger.info(f"Batch job created | id={job.id} | type={job_type.value} | by={triggered_by}")
        return job

    async def get(self, job_id: str) -> Optional[BatchJob]:
        data = await self.store.get(Collections.BATCH_JOBS, job_id)
        return BatchJob.from_document(job_id, data) if data else None

    async def require(self, job_id: str) -> BatchJob:
        job = await self.get(job_id)
        if job is None:
            raise EntityNotFoundError(Collections.BATCH_JOBS, job_id)
        return job

    async def claim(self, job_id: str, owner_token: str) -> Optional[BatchJob]:
        """
        Take ownership of a job.

        Returns:
            The job when it was queued (now processing under ``owner_token``)
            or is already processing under the same token; None otherwise.
        """
        job = await self.get(job_id)
        if job is None:
            logger.warning(f"Batch job {job_id} not found, nothing to claim")
            return None

        if job.status == BatchJobStatus.QUEUED:
            now = self._clock()
            await self.store.update(
                Collections.BATCH_JOBS,
                job_id,
                {
                    "status": BatchJobStatus.PROCESSING.value,
                    "owner_token": owner_token,
                    "started_at": now,
                },
            )
            return job.model_copy(
                update={
                    "status": BatchJobStatus.PROCESSING,
                    "owner_token": owner_token,
                    "started_at": now,
                }
            )

        if job.status == BatchJobStatus.PROCESSING and job.owner_token == owner_token:
            logger.info(f"Resuming batch job {job_id} from {job.checkpoint}")
            return job

        logger.info(f"Batch job {job_id} not claimable | status={job.status.value}")
        return None

    async def has_processing(self, job_type: BatchJobType, exclude_id: Optional[str] = None) -> bool:
        docs = await self.store.query(
            Collections.BATCH_JOBS,
            [
                Filter("type", "==", job_type.value),
                Filter("status", "==", BatchJobStatus.PROCESSING.value),
            ],
        )
        return any(doc.id != exclude_id for doc in docs)

    async def update_progress(
        self,
        job_id: str,
        step: BatchStep,
        percentage: int,
        current: int = 0,
        total: int = 0,
    ) -> None:
        progress = BatchJobProgress(current=current, total=total, percentage=percentage, step=step)
        await self.store.update(Collections.BATCH_JOBS, job_id, {"progress": progress.to_document()})

    async def save_checkpoint(
        self,
        job_id: str,
        checkpoint: BatchCheckpoint,
        result: BatchJobResult,
    ) -> None:
        """Persist the resume point together with the running totals."""
        await self.store.update(
            Collections.BATCH_JOBS,
            job_id,
            {"checkpoint": checkpoint.to_document(), "result": result.to_document()},
        )

    async def append_error(self, job_id: str, error: AdvisoryException) -> None:
        await self.store.update(
            Collections.BATCH_JOBS,
            job_id,
            {"errors": ArrayUnion([error.to_dict()])},
        )

    async def complete(self, job_id: str, result: BatchJobResult) -> None:
        await self.store.update(
            Collections.BATCH_JOBS,
            job_id,
            {
                "status": BatchJobStatus.COMPLETED.value,
                "result": result.to_document(),
                "checkpoint": None,
                "completed_at": self._clock(),
            },
        )
        logger.success(f"Batch job {job_id} completed")

    async def fail(self, job_id: str, error: Exception) -> None:
        await self.store.update(
            Collections.BATCH_JOBS,
            job_id,
            {
                "status": BatchJobStatus.FAILED.value,
                "completed_at": self._clock(),
                "errors": ArrayUnion([{"error_type": type(error).__name__, "message": str(error)}]),
            },
        )
        logger.error(f"Batch job {job_id} failed: {error}")
