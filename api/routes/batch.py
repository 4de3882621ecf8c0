"""
Batch Routes: Manual Trigger and Progress Polling
"""

from typing import Callable

from fastapi import APIRouter, Depends, status

from api.dependencies import (
    get_actor,
    get_batch_job_repository,
    get_document_store,
    get_job_publisher,
)
from api.schemas import BatchJobResponse, TriggerRequest, TriggerResponse
from core.models import Actor
from infrastructure.document_store import DocumentStore
from orchestration.batch_jobs import BatchJobRepository
from orchestration.trigger import trigger_batch_job
from security import require_admin

router = APIRouter(prefix="/batch-jobs", tags=["Batch"])


@router.post(
    "/trigger",
    response_model=TriggerResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a maintenance job (admin only)",
)
async def trigger(
    body: TriggerRequest,
    actor: Actor = Depends(get_actor),
    jobs: BatchJobRepository = Depends(get_batch_job_repository),
    store: DocumentStore = Depends(get_document_store),
    publish: Callable[[str], None] = Depends(get_job_publisher),
) -> TriggerResponse:
    result = await trigger_batch_job(
        actor, body.to_request(), jobs=jobs, store=store, publish=publish
    )
    return TriggerResponse(success=result["success"], jobId=result["jobId"])


@router.get("/{job_id}", response_model=BatchJobResponse)
async def get_job(
    job_id: str,
    actor: Actor = Depends(get_actor),
    jobs: BatchJobRepository = Depends(get_batch_job_repository),
) -> BatchJobResponse:
    require_admin(actor)
    job = await jobs.require(job_id)
    data = job.model_dump(mode="json")
    return BatchJobResponse(
        id=job.id,
        type=data["type"],
        status=data["status"],
        progress=data["progress"],
        target_period=data["target_period"],
        result=data["result"],
        errors=data["errors"],
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )
