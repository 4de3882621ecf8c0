"""
Manual and scheduled entry points for batch maintenance jobs.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from loguru import logger

from config.constants import BATCH_LIMITS, Collections
from core.enums import BatchJobType
from core.exceptions import (
    AdvisoryException,
    BatchJobValidationError,
    DocumentStoreError,
    PermissionDeniedError,
)
from core.models import Actor, TargetPeriod, utcnow
from infrastructure.document_store import DocumentStore
from orchestration.batch_jobs import BatchJobRepository, record_error_log
from security import require_admin

RUN_JOB_TASK = "orchestration.tasks.run_maintenance_job_task"


def send_job_start(job_id: str) -> None:
    """Publish the job-start message to the worker queue."""
    from orchestration.celery_app import app

    app.send_task(RUN_JOB_TASK, kwargs={"job_id": job_id}, queue="batch", routing_key="batch")


def trailing_period(now: datetime, days: int = BATCH_LIMITS.TRAILING_WINDOW_DAYS) -> TargetPeriod:
    return TargetPeriod(start=now - timedelta(days=days), end=now)


def parse_job_type(value: Any) -> BatchJobType:
    try:
        return BatchJobType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in BatchJobType)
        raise BatchJobValidationError(f"Unknown job type {value!r}; expected one of: {allowed}")


def _parse_timestamp(value: Any, name: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise BatchJobValidationError(f"targetPeriod.{name} is not an ISO-8601 date: {value!r}")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_target_period(raw: Optional[Mapping[str, Any]], now: datetime) -> TargetPeriod:
    """Validated period; the trailing window when none is given."""
    if not raw:
        return trailing_period(now)

    if "start" not in raw or "end" not in raw:
        raise BatchJobValidationError("targetPeriod requires both start and end")

    start = _parse_timestamp(raw["start"], "start")
    end = _parse_timestamp(raw["end"], "end")
    if start >= end:
        raise BatchJobValidationError("targetPeriod.start must be before targetPeriod.end")
    return TargetPeriod(start=start, end=end)


async def trigger_batch_job(
    actor: Actor,
    request: Mapping[str, Any],
    *,
    jobs: BatchJobRepository,
    store: DocumentStore,
    publish: Callable[[str], None] = send_job_start,
    clock: Callable[[], datetime] = utcnow,
) -> Dict[str, Any]:
    """
    Admin-only manual trigger.

    Args:
        actor: Authenticated caller
        request: ``{"jobType": ..., "targetPeriod": {"start": ..., "end": ...}}``
        jobs: Batch job repository
        store: Document store for the invocation log
        publish: Job-start publisher
        clock: Time source

    Returns:
        ``{"success": True, "jobId": ...}``

    Raises:
        PermissionDeniedError: caller is anonymous or not an admin
        BatchJobValidationError: unknown job type or invalid period
    """
    try:
        if not actor.uid:
            raise PermissionDeniedError("Authentication required")
        require_admin(actor)

        now = clock()
        job_type = parse_job_type(request.get("jobType"))
        period = parse_target_period(request.get("targetPeriod"), now)

        job = await jobs.create(job_type, period, triggered_by=actor.uid)
        try:
            await store.add(
                Collections.MANUAL_TRIGGER_LOGS,
                {
                    "job_id": job.id,
                    "job_type": job_type.value,
                    "triggered_by": actor.uid,
                    "target_period": period.to_document(),
                    "timestamp": now,
                },
            )
        except DocumentStoreError as e:
            # an unlogged job is failed before anyone can pick it up
            await jobs.fail(job.id, e)
            raise
        publish(job.id)
    except AdvisoryException as e:
        logger.warning(f"Manual trigger rejected | actor={actor.uid} | error={e.message}")
        await record_error_log(store, "manual_trigger", e, {"actor_id": actor.uid})
        raise

    logger.info(f"Manual trigger accepted | job={job.id} | type={job_type.value} | actor={actor.uid}")
    return {"success": True, "jobId": job.id}
