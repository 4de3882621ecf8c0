"""
Celery Tasks: Batch Maintenance
===============================

Defines Celery tasks for:
- Running (and resuming) a maintenance job under an owner token
- The weekly scheduled job over the trailing window
- The periodic sweep of expired rate-limit windows
- The hourly cost budget check

A run that exhausts its time budget checkpoints and is re-enqueued with
the same owner token, so the next execution picks up after the last
committed chunk.
"""

import asyncio
from typing import Dict, Optional
from zoneinfo import ZoneInfo

from celery import Task
from loguru import logger

from config.settings import get_settings
from container import container
from core.enums import BatchJobType
from core.exceptions import CacheError
from core.models import utcnow
from optimization.cost_accountant import budgets_from_settings
from orchestration.batch_pipeline import SUSPENDED
from orchestration.celery_app import app
from orchestration.trigger import trailing_period

WEEKLY_LOCK = "batch:weekly-pattern-extraction"


def _run(coro):
    """Run a coroutine on the worker's event loop."""
    return asyncio.get_event_loop().run_until_complete(coro)


class MaintenanceBaseTask(Task):
    """Base task with lifecycle logging."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(
            f"Task failed | task_id={task_id} | task={self.name} | "
            f"error={exc} | traceback={einfo}"
        )

    def on_success(self, retval, task_id, args, kwargs):
        logger.info(f"Task succeeded | task_id={task_id} | task={self.name} | result={retval}")

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        logger.warning(
            f"Task retrying | task_id={task_id} | task={self.name} | "
            f"error={exc} | attempt={self.request.retries}"
        )


@app.task(
    base=MaintenanceBaseTask,
    bind=True,
    name="orchestration.tasks.run_maintenance_job_task",
    acks_late=True,
)
def run_maintenance_job_task(self, job_id: str, owner_token: Optional[str] = None) -> Dict:
    """
    Execute one slice of a maintenance job.

    Args:
        job_id: Batch job to run
        owner_token: Token of the execution chain; the first slice uses
            its own task id

    Returns:
        Dict with the job id and the slice outcome
    """
    token = owner_token or self.request.id
    pipeline = container.maintenance_pipeline()

    logger.info(f"Maintenance slice started | job={job_id} | task_id={self.request.id}")
    outcome = _run(pipeline.run(job_id, token))

    if outcome == SUSPENDED:
        run_maintenance_job_task.apply_async(kwargs={"job_id": job_id, "owner_token": token})
        logger.info(f"Maintenance job {job_id} re-enqueued from checkpoint")

    return {"job_id": job_id, "outcome": outcome or "skipped"}


async def _schedule_weekly() -> Optional[str]:
    redis = container.redis()
    jobs = container.batch_job_repository()

    try:
        if not await redis.acquire_lock(WEEKLY_LOCK):
            logger.info("Weekly job already scheduled for this slot, skipping")
            return None
    except CacheError as e:
        logger.warning(f"Schedule lock unavailable, relying on job status guard: {e}")

    job_type = BatchJobType.WEEKLY_PATTERN_EXTRACTION
    if await jobs.has_processing(job_type):
        logger.info("A weekly job is still processing, skipping this slot")
        return None

    job = await jobs.create(job_type, trailing_period(utcnow()), triggered_by="scheduler")
    return job.id


@app.task(base=MaintenanceBaseTask, name="orchestration.tasks.scheduled_weekly_task")
def scheduled_weekly_task() -> Dict:
    """Beat entry point for the weekly pattern-extraction job."""
    job_id = _run(_schedule_weekly())
    if job_id is None:
        return {"scheduled": False}

    run_maintenance_job_task.apply_async(kwargs={"job_id": job_id})
    return {"scheduled": True, "job_id": job_id}


@app.task(base=MaintenanceBaseTask, name="orchestration.tasks.sweep_rate_limits_task")
def sweep_rate_limits_task() -> Dict:
    """Delete rate-limit windows whose reset time has passed."""
    deleted = _run(container.admission_controller().sweep())
    logger.info(f"Rate-limit sweep removed {deleted} windows")
    return {"deleted": deleted}


@app.task(base=MaintenanceBaseTask, name="orchestration.tasks.check_cost_budgets_task")
def check_cost_budgets_task() -> Dict:
    """Check spend against the configured budgets in the business timezone."""
    settings = get_settings()
    budgets = budgets_from_settings(settings.cost_budget)
    now = utcnow().astimezone(ZoneInfo(settings.batch.timezone))

    alerts = _run(container.cost_accountant().check_budgets(budgets, now))
    over_budget = sum(1 for alert in alerts if alert["kind"] == "over_budget")
    logger.info(
        f"Budget check complete | budgets={len(budgets)} | alerts={len(alerts)} | over_budget={over_budget}"
    )
    return {"budgets_checked": len(budgets), "alerts": len(alerts), "over_budget": over_budget}
