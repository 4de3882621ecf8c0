"""
Domain Enumerations & Type Taxonomy
====================================
String enums for every closed set in the domain, serializable straight
into document-store fields.

Architecture: Type-Driven Design
"""

from enum import Enum, IntEnum


class ErrorSeverity(IntEnum):
    """Error severity levels, ordered for alert thresholds."""

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50


class CacheLayerId(str, Enum):
    """The three cache-stable context layers, outermost first."""

    CORE = "core"
    DOMAIN = "domain"
    PROJECT = "project"


class UpdateCadence(str, Enum):
    """How often a cache layer's content is expected to change."""

    NEVER = "never"
    QUARTERLY = "quarterly"
    DAILY = "daily"


class SecurityEventKind(str, Enum):
    """Audit record kinds written by the security gate."""

    INJECTION_ATTEMPT = "injection_attempt"
    FORBIDDEN_OUTPUT = "forbidden_output"


class ProtectedResource(str, Enum):
    """Resources guarded by the admission controller."""

    VECTOR_SEARCH = "vector_search"
    FILE_UPLOAD = "file_upload"
    LLM = "llm"
    GENERAL = "general"


class DedupTier(str, Enum):
    """Which tier of the deduplication funnel classified a candidate."""

    EXACT = "exact"
    SEMANTIC = "semantic"
    DISTINCT = "distinct"


class PatternType(str, Enum):
    """Kinds of behavioral patterns learned from edited responses."""

    VOCABULARY = "vocabulary"
    STRUCTURE = "structure"
    EMPHASIS = "emphasis"
    TONE = "tone"
    LENGTH = "length"


class BatchJobType(str, Enum):
    """Maintenance jobs that can be triggered."""

    WEEKLY_PATTERN_EXTRACTION = "weekly-pattern-extraction"
    KNOWLEDGE_MAINTENANCE = "knowledge-maintenance"


class BatchJobStatus(str, Enum):
    """
    Batch job lifecycle.

    queued -> processing -> completed | failed
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchJobStatus.COMPLETED, BatchJobStatus.FAILED)


class BatchStep(str, Enum):
    """Ordered steps of the maintenance pipeline."""

    FETCH_WINDOW = "fetch_window"
    RETRIEVE_CHATS = "retrieve_chats"
    EXTRACT_PATTERNS = "extract_patterns"
    DEDUPLICATE = "deduplicate"
    ARCHIVE = "archive"
    UPDATE_STATISTICS = "update_statistics"

    @property
    def progress_percentage(self) -> int:
        """Progress reported once this step has finished."""
        return {
            BatchStep.FETCH_WINDOW: 10,
            BatchStep.RETRIEVE_CHATS: 20,
            BatchStep.EXTRACT_PATTERNS: 60,
            BatchStep.DEDUPLICATE: 80,
            BatchStep.ARCHIVE: 95,
            BatchStep.UPDATE_STATISTICS: 100,
        }[self]

    @property
    def order(self) -> int:
        return list(BatchStep).index(self)


class ActorRole(str, Enum):
    """Roles carried by an already-authenticated caller."""

    ADMIN = "admin"
    CONSULTANT = "consultant"
    CLIENT = "client"


class BudgetPeriod(str, Enum):
    """Reporting windows a cost budget is measured over."""

    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class BudgetAlertKind(str, Enum):
    """Severity of a budget alert record."""

    THRESHOLD = "threshold"
    OVER_BUDGET = "over_budget"
