"""
Domain Data Models
==================
Pydantic v2 schema definitions for:
- Static cache-layer descriptors and vendor usage records
- Audit, admission and batch-job documents
- Knowledge entries, duplicate groups and learned patterns

Documents round-trip through the document store via
``to_document()`` / ``from_document()``.

Architecture: Domain-Driven Design + Value Objects
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from core.enums import (
    ActorRole,
    BatchJobStatus,
    BatchJobType,
    BatchStep,
    CacheLayerId,
    DedupTier,
    PatternType,
    SecurityEventKind,
    UpdateCadence,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


# =============================================================================
# CONFIGURATION
# =============================================================================


class BaseModelConfig(BaseModel):
    """Base configuration for all models."""

    model_config = ConfigDict(
        validate_assignment=True,
        use_enum_values=False,
        arbitrary_types_allowed=True,
    )

    def to_document(self, exclude: Optional[set[str]] = None) -> dict[str, Any]:
        """Dump to a store-ready dict: enums become values, datetimes stay native."""
        return _plain(self.model_dump(mode="python", exclude=exclude or {"id"}))

    @classmethod
    def from_document(cls, doc_id: str, data: dict[str, Any]):
        return cls.model_validate({**data, "id": doc_id})


class FrozenModel(BaseModel):
    """Immutable value object."""

    model_config = ConfigDict(frozen=True)


# =============================================================================
# CALLERS
# =============================================================================


class Actor(FrozenModel):
    """An already-authenticated caller."""

    uid: Optional[str] = None
    role: ActorRole = ActorRole.CONSULTANT
    ip_address: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


# =============================================================================
# PROMPT CACHE & VENDOR USAGE
# =============================================================================


class CacheLayer(FrozenModel):
    """Static descriptor for one cache-stable context layer."""

    id: CacheLayerId
    token_budget: int = Field(..., gt=0)
    target_hit_rate: float = Field(..., ge=0.0, le=1.0)
    update_cadence: UpdateCadence


class ContextSegment(FrozenModel):
    """One system-context block sent to the vendor, optionally cache-marked."""

    layer: CacheLayerId
    text: str
    cacheable: bool = True


class UsageRecord(FrozenModel):
    """Token counters reported by the vendor for a single call."""

    input_tokens: int = Field(default=0, ge=0)
    cache_write_tokens: int = Field(default=0, ge=0)
    cache_read_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.cache_write_tokens
            + self.cache_read_tokens
            + self.output_tokens
        )


class CostBreakdown(FrozenModel):
    """USD cost per billing bucket; ``total`` is their exact sum."""

    input_cost: float = Field(..., ge=0.0)
    cache_write_cost: float = Field(..., ge=0.0)
    cache_read_cost: float = Field(..., ge=0.0)
    output_cost: float = Field(..., ge=0.0)

    @computed_field
    @property
    def total(self) -> float:
        return self.input_cost + self.cache_write_cost + self.cache_read_cost + self.output_cost


class CompletionResult(FrozenModel):
    """Vendor completion outcome."""

    text: str
    usage: UsageRecord
    model: str
    stop_reason: Optional[str] = None


# =============================================================================
# SECURITY & ADMISSION
# =============================================================================


class SecurityEvent(BaseModelConfig):
    """Append-only audit record of a blocked input or output."""

    id: str = Field(default_factory=new_id)
    kind: SecurityEventKind
    raw_input: str = Field(..., max_length=500)
    actor_id: Optional[str] = None
    partition_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class RateLimitWindow(BaseModelConfig):
    """Sliding-window counter for one caller on one resource."""

    id: str
    resource: str
    count: int = Field(..., ge=0)
    window_start: datetime
    reset_at: datetime


class AdmissionDecision(FrozenModel):
    """Outcome of an admission check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: Optional[datetime] = None
    retry_after_seconds: Optional[int] = None
    fail_open: bool = False


# =============================================================================
# BATCH JOBS
# =============================================================================


class TargetPeriod(BaseModelConfig):
    """Half-open time window [start, end) of approved chats to process."""

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def validate_order(self) -> "TargetPeriod":
        if self.start >= self.end:
            raise ValueError("start must be before end")
        return self


class BatchJobProgress(BaseModelConfig):
    current: int = 0
    total: int = 0
    percentage: int = Field(default=0, ge=0, le=100)
    step: Optional[BatchStep] = None


class BatchCheckpoint(BaseModelConfig):
    """Persisted resume point: the step in progress and its record cursor."""

    step: BatchStep
    cursor: int = Field(default=0, ge=0)


class BatchJobResult(BaseModelConfig):
    partitions_processed: int = 0
    chats_analyzed: int = 0
    patterns_extracted: dict[str, int] = Field(default_factory=dict)
    duplicates_found: int = 0
    groups_created: int = 0
    knowledge_archived: int = 0


class BatchJob(BaseModelConfig):
    """A maintenance job record, mutated only by its owning execution."""

    id: str = Field(default_factory=new_id)
    type: BatchJobType
    status: BatchJobStatus = BatchJobStatus.QUEUED
    progress: BatchJobProgress = Field(default_factory=BatchJobProgress)
    target_period: TargetPeriod
    checkpoint: Optional[BatchCheckpoint] = None
    owner_token: Optional[str] = None
    triggered_by: str = "scheduler"
    result: Optional[BatchJobResult] = None
    errors: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# =============================================================================
# KNOWLEDGE BASE
# =============================================================================


class ChatTurn(BaseModelConfig):
    """An approved conversation turn: question, model draft and final text."""

    id: str = Field(default_factory=new_id)
    partition_id: str
    question: str = ""
    response: str
    original_response: Optional[str] = None
    edited: bool = False
    approved: bool = True
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    category: Optional[str] = None
    added_to_knowledge: bool = False
    knowledge_id: Optional[str] = None

    @property
    def draft(self) -> str:
        """Text before human edits; the response itself when unedited."""
        return self.original_response if self.original_response is not None else self.response


class KnowledgeEntry(BaseModelConfig):
    """A reusable Q&A fragment; archived, never deleted."""

    id: str = Field(default_factory=new_id)
    partition_id: str
    content: str
    normalized_hash: str
    question: Optional[str] = None
    embedding: list[float] = Field(default_factory=list)
    category: str = "company-info"
    reliability: int = Field(default=90, ge=0, le=100)
    usage_count: int = Field(default=1, ge=0)
    last_used: Optional[datetime] = None
    archived: bool = False
    archived_at: Optional[datetime] = None
    version: int = 1
    source_chat_id: Optional[str] = None
    duplicate_group_id: Optional[str] = None
    is_representative: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class KnowledgeGroup(BaseModelConfig):
    """A duplicate cluster with one representative entry."""

    id: str = Field(default_factory=new_id)
    partition_id: str
    representative_id: str
    duplicate_ids: list[str] = Field(default_factory=list)
    similarity_scores: dict[str, float] = Field(default_factory=dict)
    detection_method: DedupTier
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def member_ids(self) -> list[str]:
        return [self.representative_id, *self.duplicate_ids]


class LearningPattern(BaseModelConfig):
    """A behavioral pattern keyed on (partition, type, description)."""

    id: str
    partition_id: str
    type: PatternType
    description: str
    examples: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=100.0)
    occurrence_count: int = Field(default=1, ge=1)
    extracted_from: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)


class DedupOutcome(FrozenModel):
    """Which tier handled a promoted turn and the entry it landed on."""

    tier: DedupTier
    knowledge_id: str
    similarity: Optional[float] = None
