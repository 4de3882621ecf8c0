"""
API Dependencies: FastAPI Dependency Injection Helpers

Resolves the caller identity and container-managed services for routes.
Authentication happens upstream; the gateway forwards the verified
identity in ``X-User-Id`` / ``X-User-Role``.
"""

from typing import Callable, Optional

from fastapi import Header, Request

from container import container
from core.enums import ActorRole
from core.exceptions import PermissionDeniedError
from core.models import Actor
from infrastructure.database import DatabaseManager
from infrastructure.document_store import DocumentStore
from infrastructure.monitoring import MetricsCollector
from infrastructure.redis_client import RedisClient
from orchestration.batch_jobs import BatchJobRepository
from orchestration.trigger import send_job_start
from security import get_client_ip
from services.chat_service import ChatService


def get_actor(
    request: Request,
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Actor:
    """Caller identity from forwarded headers; anonymous when absent."""
    try:
        role = ActorRole(x_user_role) if x_user_role else ActorRole.CONSULTANT
    except ValueError:
        raise PermissionDeniedError(f"Unknown role {x_user_role!r}", actor_id=x_user_id)
    return Actor(uid=x_user_id or None, role=role, ip_address=get_client_ip(request))


def get_chat_service() -> ChatService:
    return container.chat_service()


def get_batch_job_repository() -> BatchJobRepository:
    return container.batch_job_repository()


def get_document_store() -> DocumentStore:
    return container.document_store()


def get_job_publisher() -> Callable[[str], None]:
    return send_job_start


def get_database_dependency() -> DatabaseManager:
    return container.database()


def get_redis_dependency() -> RedisClient:
    return container.redis()


def get_metrics_dependency() -> MetricsCollector:
    return container.metrics()
