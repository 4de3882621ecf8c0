"""
Pytest Configuration and Fixture Library

Shared test infrastructure:
- In-memory document store
- Deterministic embedding provider and scripted LLM vendor
- Controllable clocks for window, archive and warmer logic
- Isolated Prometheus registry per test
- Test data builders for chats, knowledge entries and actors
"""

import hashlib
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

# Set test environment variables before importing any modules
os.environ.update(
    {
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "REDIS_HOST": "localhost",
        "REDIS_PORT": "6379",
        "REDIS_DB": "15",
        "LLM_ANTHROPIC_API_KEY": "test-key",
        "ENVIRONMENT": "development",
    }
)

import pytest
from prometheus_client import CollectorRegistry

from core.enums import ActorRole
from core.models import (
    Actor,
    ChatTurn,
    CompletionResult,
    ContextSegment,
    KnowledgeEntry,
    UsageRecord,
)
from infrastructure.document_store import InMemoryDocumentStore
from infrastructure.embeddings import EmbeddingProvider
from infrastructure.llm_client import AbstractLLMClient
from infrastructure.monitoring import MetricsCollector
from knowledge.deduplication import content_hash

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ============================================================================
# FAKES
# ============================================================================


class MutableClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeEmbedder(EmbeddingProvider):
    """
    Deterministic embeddings.

    Texts registered in ``vectors`` get that vector; anything else gets a
    hash-derived vector, so unrelated texts are effectively orthogonal.
    """

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None):
        self.vectors = dict(vectors or {})
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [(byte - 127.5) / 127.5 for byte in digest]


class FakeLLMClient(AbstractLLMClient):
    """Scripted vendor returning a fixed completion and recording every call."""

    def __init__(
        self,
        text: str = "The integrated report should open with the top message.",
        usage: Optional[UsageRecord] = None,
        model: str = "test-model",
        error: Optional[Exception] = None,
    ):
        self.text = text
        self.usage = usage or UsageRecord(
            input_tokens=1000, cache_write_tokens=0, cache_read_tokens=4500, output_tokens=200
        )
        self.model = model
        self.error = error
        self.calls: List[dict] = []

    async def complete(
        self,
        system_segments: Sequence[ContextSegment],
        messages: Sequence[dict],
        max_tokens: Optional[int] = None,
    ) -> CompletionResult:
        self.calls.append(
            {"segments": list(system_segments), "messages": list(messages), "max_tokens": max_tokens}
        )
        if self.error is not None:
            raise self.error
        return CompletionResult(text=self.text, usage=self.usage, model=self.model)


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def llm_client() -> FakeLLMClient:
    return FakeLLMClient()


@pytest.fixture
def metrics() -> MetricsCollector:
    """Collector bound to a private registry to avoid duplicate registration."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def admin() -> Actor:
    return Actor(uid="admin-1", role=ActorRole.ADMIN, ip_address="10.0.0.1")


@pytest.fixture
def consultant() -> Actor:
    return Actor(uid="consultant-1", role=ActorRole.CONSULTANT, ip_address="10.0.0.2")


# ============================================================================
# TEST DATA BUILDERS
# ============================================================================


def make_turn(
    partition_id: str = "p1",
    response: str = "Our revenue grew 12% year over year, driven by the services segment.",
    *,
    original: Optional[str] = None,
    approved_at: Optional[datetime] = None,
    question: str = "How did revenue develop this year?",
    approved: bool = True,
    **kwargs,
) -> ChatTurn:
    return ChatTurn(
        partition_id=partition_id,
        question=question,
        response=response,
        original_response=original,
        edited=original is not None and original != response,
        approved=approved,
        approved_at=approved_at or BASE_TIME,
        approved_by="consultant-1",
        **kwargs,
    )


def make_entry(
    partition_id: str = "p1",
    content: str = "The board meets monthly.",
    *,
    embedding: Optional[List[float]] = None,
    **kwargs,
) -> KnowledgeEntry:
    return KnowledgeEntry(
        partition_id=partition_id,
        content=content,
        normalized_hash=content_hash(content),
        embedding=embedding or [],
        **kwargs,
    )
