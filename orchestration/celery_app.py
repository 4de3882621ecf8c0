"""
Celery Application Configuration
=================================

Configures the Celery worker and beat scheduler for batch maintenance:
- Redis as message broker and result backend
- A dedicated ``batch`` queue for maintenance runs
- Weekly pattern extraction on the configured cron slot
- Daily sweep of expired rate-limit windows
- Hourly cost budget check
- DI container bootstrap per worker process
"""

import asyncio
import os

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init, worker_process_shutdown
from kombu import Queue
from loguru import logger

from config.settings import get_settings
from container import container_manager

settings = get_settings()

app = Celery(
    "advisory_core",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=[
        "orchestration.tasks",
    ],
)

app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Beat evaluates crontabs in the business timezone
    timezone=settings.batch.timezone,
    enable_utc=True,
    # Task execution; the pipeline checkpoints before the soft limit
    task_track_started=True,
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    # Worker configuration
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=50,
    # Result backend
    result_expires=86400,
    # Task acknowledgment
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_queues=(
        Queue("batch", routing_key="batch", priority=5),
        Queue("maintenance", routing_key="maintenance", priority=3),
    ),
    task_default_queue="batch",
    task_default_routing_key="batch",
    # Monitoring
    worker_send_task_events=True,
    task_send_sent_event=True,
)

app.conf.beat_schedule = {
    "weekly-pattern-extraction": {
        "task": "orchestration.tasks.scheduled_weekly_task",
        "schedule": crontab(
            minute=0,
            hour=settings.batch.weekly_cron_hour,
            day_of_week=settings.batch.weekly_cron_day_of_week,
        ),
        "options": {"queue": "batch"},
    },
    "sweep-rate-limit-windows-daily": {
        "task": "orchestration.tasks.sweep_rate_limits_task",
        "schedule": crontab(minute=30, hour=3),
        "options": {"queue": "maintenance"},
    },
    "check-cost-budgets-hourly": {
        "task": "orchestration.tasks.check_cost_budgets_task",
        "schedule": crontab(minute=5),
        "options": {"queue": "maintenance"},
    },
}


@worker_process_init.connect
def on_worker_init(**kwargs):
    """Initialize DI container and resources when a Celery worker process starts."""
    try:
        logger.info(f"Celery worker process initializing... (PID: {os.getpid()})")
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        loop.run_until_complete(container_manager.initialize())
        logger.success(f"Container initialized successfully for worker (PID: {os.getpid()}).")
    except Exception as e:
        logger.critical(f"Failed to initialize container for worker (PID: {os.getpid()}): {e}")
        os._exit(1)


@worker_process_shutdown.connect
def on_worker_shutdown(**kwargs):
    """Cleanup DI container and resources when a Celery worker process shuts down."""
    try:
        logger.info(f"Celery worker process shutting down... (PID: {os.getpid()})")
        loop = asyncio.get_event_loop()
        loop.run_until_complete(container_manager.cleanup())
        loop.close()
        logger.success(f"Container resources cleaned up for worker (PID: {os.getpid()}).")
    except Exception as e:
        logger.error(f"Failed to cleanup container for worker (PID: {os.getpid()}): {e}")


if __name__ == "__main__":
    app.start()
