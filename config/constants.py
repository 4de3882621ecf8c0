"""
System Constants & Invariants
==============================
Immutable domain constants defining pricing, token budgets, similarity
thresholds, and maintenance-job boundaries.

Architecture: Value Objects + Namespace Organization
"""

from dataclasses import dataclass, field
from typing import Final, Mapping

# =============================================================================
# SEMANTIC THRESHOLDS
# =============================================================================


@dataclass(frozen=True)
class SemanticThresholds:
    """Cosine similarity thresholds used by retrieval and deduplication."""

    # Near-identical knowledge collapses into one entry
    DUPLICATE_CONTENT_THRESHOLD: float = 0.95

    # Minimum similarity for a knowledge entry to enter Layer 3
    CONTEXT_RETRIEVAL_THRESHOLD: float = 0.70


SIMILARITY_THRESHOLDS: Final = SemanticThresholds()


# =============================================================================
# VENDOR PRICING (USD per 1M tokens)
# =============================================================================


@dataclass(frozen=True)
class TokenPrices:
    """
    Per-million-token prices for the four billing buckets.

    Cache reads must stay strictly below the non-cached input price,
    otherwise savings reporting turns negative.
    """

    INPUT: float = 3.00
    CACHE_WRITE: float = 3.75
    CACHE_READ: float = 0.30
    OUTPUT: float = 15.00


DEFAULT_TOKEN_PRICES: Final = TokenPrices()

TOKENS_PER_PRICE_UNIT: Final[int] = 1_000_000


# =============================================================================
# TOKEN BUDGETS
# =============================================================================


@dataclass(frozen=True)
class TokenLimits:
    """Context-window budget for a single vendor call."""

    CONTEXT_WINDOW: int = 200_000
    AVAILABLE_FOR_DOCUMENT: int = 150_000
    SAFETY_MARGIN: int = 10_000

    # Rough chars-per-token ratio for mixed Japanese/English text
    CHARS_PER_TOKEN: float = 0.7

    # Keep-alive pings only need to touch the cache prefix
    WARMING_MAX_TOKENS: int = 1

    @property
    def usable_context(self) -> int:
        return self.CONTEXT_WINDOW - self.SAFETY_MARGIN


TOKEN_LIMITS: Final = TokenLimits()


# =============================================================================
# KNOWLEDGE SCORING
# =============================================================================


@dataclass(frozen=True)
class ReliabilityScoring:
    """Reliability score for knowledge promoted from an approved chat turn."""

    BASE: int = 90
    EDITED_BONUS: int = 5
    EDITED_CAP: int = 95
    LONG_RESPONSE_BONUS: int = 5
    SHORT_RESPONSE_PENALTY: int = 10
    LONG_RESPONSE_CHARS: int = 500
    SHORT_RESPONSE_CHARS: int = 100
    MINIMUM: int = 50
    MAXIMUM: int = 100


RELIABILITY_SCORING: Final = ReliabilityScoring()


@dataclass(frozen=True)
class RetrievalLimits:
    """Limits applied when assembling per-request context."""

    CONTEXT_RESULT_LIMIT: int = 10
    PATTERN_MIN_CONFIDENCE: int = 80
    PATTERN_RESULT_LIMIT: int = 10


RETRIEVAL_LIMITS: Final = RetrievalLimits()


# =============================================================================
# BATCH MAINTENANCE
# =============================================================================


@dataclass(frozen=True)
class BatchLimits:
    """Boundaries for the scheduled maintenance job."""

    CHUNK_SIZE: int = 50
    STORE_BATCH_LIMIT: int = 500
    ARCHIVE_AFTER_DAYS: int = 90
    TRAILING_WINDOW_DAYS: int = 7
    MIN_PAIRS_PER_ANALYZER: int = 3
    PATTERN_REINFORCEMENT_DELTA: int = 5
    MAX_PATTERN_EXAMPLES: int = 5


BATCH_LIMITS: Final = BatchLimits()


@dataclass(frozen=True)
class StructureThresholds:
    """Share of responses that must carry a marker before it counts as a habit."""

    PARAGRAPHS: float = 0.5
    LISTS: float = 0.3
    CODE_BLOCKS: float = 0.2
    HEADINGS: float = 0.2


STRUCTURE_THRESHOLDS: Final = StructureThresholds()


# =============================================================================
# ADMISSION CONTROL
# =============================================================================


@dataclass(frozen=True)
class RateLimitRule:
    """Sliding-window quota for one protected resource."""

    max_requests: int
    window_seconds: int


DEFAULT_RATE_LIMITS: Final[Mapping[str, RateLimitRule]] = {
    "vector_search": RateLimitRule(max_requests=30, window_seconds=60),
    "file_upload": RateLimitRule(max_requests=10, window_seconds=3600),
    "llm": RateLimitRule(max_requests=100, window_seconds=3600),
    "general": RateLimitRule(max_requests=300, window_seconds=300),
}


# =============================================================================
# COST BUDGETS
# =============================================================================


@dataclass(frozen=True)
class CostBudgets:
    """USD spend ceilings per reporting period and the warning threshold."""

    DAILY: float = 15.0
    WEEKLY: float = 75.0
    MONTHLY: float = 300.0
    ALERT_AT_PERCENT: float = 80.0


DEFAULT_COST_BUDGETS: Final = CostBudgets()


# =============================================================================
# CATEGORY INFERENCE
# =============================================================================


@dataclass(frozen=True)
class CategoryKeywords:
    """Keyword table for inferring a knowledge category from a question."""

    table: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: {
            "financial": ("財務", "決算", "売上", "利益", "revenue", "profit", "earnings", "financial"),
            "esg": ("esg", "環境", "サステナビリティ", "sustainability", "climate", "carbon"),
            "governance": ("ガバナンス", "取締役", "board", "governance", "director"),
            "strategy": ("戦略", "中期経営計画", "strategy", "mid-term plan", "roadmap"),
            "human-capital": ("人的資本", "人材", "human capital", "talent", "workforce"),
        }
    )
    default: str = "company-info"


CATEGORY_KEYWORDS: Final = CategoryKeywords()


# =============================================================================
# DOCUMENT STORE COLLECTIONS
# =============================================================================


class Collections:
    """Collection names used across the document store."""

    KNOWLEDGE_ENTRIES: Final[str] = "knowledge_entries"
    KNOWLEDGE_GROUPS: Final[str] = "knowledge_groups"
    LEARNING_PATTERNS: Final[str] = "learning_patterns"
    RATE_LIMITS: Final[str] = "rate_limits"
    BATCH_JOBS: Final[str] = "batch_jobs"
    SECURITY_EVENTS: Final[str] = "security_events"
    CHATS: Final[str] = "chats"
    DOMAIN_PROMPTS: Final[str] = "domain_prompts"
    USAGE_RECORDS: Final[str] = "usage_records"
    ERROR_LOGS: Final[str] = "error_logs"
    MANUAL_TRIGGER_LOGS: Final[str] = "manual_trigger_logs"
    ARCHIVE_LOGS: Final[str] = "archive_logs"
    PARTITION_STATS: Final[str] = "partition_stats"
    COST_ALERTS: Final[str] = "cost_alerts"
