"""
Exception Hierarchy & Error Handling Framework
===============================================
Type-safe exception taxonomy with structured context propagation,
retry metadata, and observability integration.

Architecture: Railway-Oriented Programming + Error Algebra
"""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from core.enums import ErrorSeverity

# =============================================================================
# BASE EXCEPTION CLASSES
# =============================================================================


class AdvisoryException(Exception):
    """
    Root exception for all application errors.

    Carries:
    - Unique error ID for tracing
    - Severity classification for alerting
    - Structured context dictionary
    - Retry metadata
    """

    def __init__(
        self,
        message: str,
        *,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[dict[str, Any]] = None,
        error_code: Optional[str] = None,
        retryable: bool = False,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.error_id: UUID = uuid4()
        self.message: str = message
        self.severity: ErrorSeverity = severity
        self.context: dict[str, Any] = context or {}
        self.error_code: Optional[str] = error_code
        self.retryable: bool = retryable
        self.timestamp: datetime = datetime.now(timezone.utc)

        if cause:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception for logging/telemetry."""
        return {
            "error_id": str(self.error_id),
            "error_type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.name,
            "error_code": self.error_code,
            "retryable": self.retryable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.__cause__) if self.__cause__ else None,
        }

    def __str__(self) -> str:
        parts = [f"[{self.severity.name}] {self.message}"]
        if self.error_code:
            parts.append(f"Code: {self.error_code}")
        if self.context:
            parts.append(f"Context: {self.context}")
        return " | ".join(parts)


# =============================================================================
# SECURITY GATE EXCEPTIONS
# =============================================================================


class SecurityGateError(AdvisoryException):
    """Base for input/output rejections raised by the security gate."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        super().__init__(message, **kwargs)


class InjectionDetectedError(SecurityGateError):
    """User input matched a prompt-injection pattern; nothing was billed."""

    def __init__(self, message: str = "Input rejected by injection filter", **kwargs):
        super().__init__(message, error_code="INJECTION_DETECTED", **kwargs)


class OutputValidationFailedError(SecurityGateError):
    """Generated text contained a forbidden term and was withheld."""

    def __init__(self, message: str = "Generated output failed validation", **kwargs):
        super().__init__(message, error_code="OUTPUT_VALIDATION_FAILED", **kwargs)


class InputValidationError(SecurityGateError):
    """Input violated length or character-mix constraints."""

    def __init__(self, message: str, *, reason: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code="INPUT_VALIDATION_FAILED",
            context={"reason": reason},
            **kwargs,
        )
        self.reason = reason


class PermissionDeniedError(AdvisoryException):
    """Caller lacks the role required for the operation."""

    def __init__(
        self,
        message: str = "Permission denied",
        *,
        actor_id: Optional[str] = None,
        required_role: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.WARNING,
            error_code="PERMISSION_DENIED",
            context={"actor_id": actor_id, "required_role": required_role},
            **kwargs,
        )


# =============================================================================
# ADMISSION & BUDGET EXCEPTIONS
# =============================================================================


class RateLimitExceededError(AdvisoryException):
    """Admission controller rejected the request."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        resource: Optional[str] = None,
        retry_after: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.WARNING,
            retryable=True,
            error_code="RATE_LIMIT_EXCEEDED",
            context={"resource": resource, "retry_after_seconds": retry_after},
            **kwargs,
        )
        self.resource = resource
        self.retry_after = retry_after


class TokenLimitExceededError(AdvisoryException):
    """Pre-flight token estimate exceeds the safety-margined context budget."""

    def __init__(
        self,
        message: str = "Request exceeds the context token budget",
        *,
        estimated_tokens: Optional[int] = None,
        limit: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            error_code="TOKEN_LIMIT_EXCEEDED",
            context={"estimated_tokens": estimated_tokens, "limit": limit},
            **kwargs,
        )
        self.estimated_tokens = estimated_tokens
        self.limit = limit


# =============================================================================
# VENDOR EXCEPTIONS
# =============================================================================


class VendorError(AdvisoryException):
    """Base exception for LLM vendor failures."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "VENDOR_ERROR")
        super().__init__(message, **kwargs)


class VendorRateLimitedError(VendorError):
    """Vendor answered with HTTP 429."""

    def __init__(
        self,
        message: str = "LLM vendor rate limit exceeded",
        *,
        retry_after: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            retryable=True,
            context={"retry_after_seconds": retry_after},
            error_code="VENDOR_RATE_LIMITED",
            **kwargs,
        )
        self.retry_after = retry_after


class VendorTokenError(VendorError):
    """Vendor rejected the request because of its token count."""

    def __init__(self, message: str = "LLM vendor rejected the token count", **kwargs):
        super().__init__(message, error_code="VENDOR_TOKEN_ERROR", **kwargs)


class VendorTimeoutError(VendorError):
    """Vendor request timed out after retries."""

    def __init__(self, message: str = "LLM vendor request timed out", **kwargs):
        super().__init__(message, retryable=True, error_code="VENDOR_TIMEOUT", **kwargs)


# =============================================================================
# STORAGE EXCEPTIONS
# =============================================================================


class InfrastructureError(AdvisoryException):
    """Base for storage and connectivity failures."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)


class DocumentStoreError(InfrastructureError):
    """Document store read/write failed."""

    def __init__(self, message: str, *, collection: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code="DOCUMENT_STORE_ERROR",
            context={"collection": collection},
            **kwargs,
        )


class DatabaseConnectionError(InfrastructureError):
    """Database engine could not be initialized or reached."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="DB_CONNECTION_FAILED", **kwargs)


class CacheError(InfrastructureError):
    """Redis operation failed."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        super().__init__(message, error_code="CACHE_ERROR", **kwargs)


class EntityNotFoundError(AdvisoryException):
    """Requested document does not exist."""

    def __init__(self, collection: str, entity_id: str, **kwargs):
        super().__init__(
            f"{collection}/{entity_id} not found",
            severity=ErrorSeverity.WARNING,
            error_code="ENTITY_NOT_FOUND",
            context={"collection": collection, "entity_id": entity_id},
            **kwargs,
        )
        self.collection = collection
        self.entity_id = entity_id


# =============================================================================
# BATCH JOB EXCEPTIONS
# =============================================================================


class BatchJobValidationError(AdvisoryException):
    """Trigger request carried an unknown job type or invalid period."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.WARNING,
            error_code="BATCH_JOB_INVALID",
            **kwargs,
        )


class PartitionStepFailedError(AdvisoryException):
    """One partition failed one pipeline step; recorded and skipped."""

    def __init__(
        self,
        message: str,
        *,
        partition_id: str,
        step: str,
        analyzer: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            error_code="PARTITION_STEP_FAILED",
            context={"partition_id": partition_id, "step": step, "analyzer": analyzer},
            **kwargs,
        )
        self.partition_id = partition_id
        self.step = step
        self.analyzer = analyzer
