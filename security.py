"""
Security Module: Prompt-Injection and Output Gate

Provides:
- ``detect_injection`` / ``validate_output``: pure, case-insensitive scans
- ``validate_input``: length and character-mix constraints
- ``SecurityGate``: screens input/output and persists audit events before
  raising the typed rejection
- ``require_admin`` and request helpers for the HTTP surface

Architectural Pattern: Security Utilities + Cross-Cutting Concerns
"""

import re
from typing import Optional

from loguru import logger

from config.constants import Collections
from core.enums import ActorRole, SecurityEventKind
from core.exceptions import (
    DocumentStoreError,
    InjectionDetectedError,
    InputValidationError,
    OutputValidationFailedError,
    PermissionDeniedError,
)
from core.models import Actor, SecurityEvent
from infrastructure.document_store import DocumentStore
from infrastructure.monitoring import MetricsCollector

MIN_INPUT_LENGTH = 5
MAX_INPUT_LENGTH = 10_000
MAX_SPECIAL_CHAR_RATIO = 0.3
AUDIT_INPUT_PREVIEW = 500

INJECTION_PATTERNS: tuple[re.Pattern, ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"ignore\s+(all\s+)?(previous|prior|above)\s+(instructions?|prompts?|rules?)",
        r"forget\s+.*instructions?",
        r"disregard\s+.*(above|previous|instructions?)",
        r"new\s+instructions?\s*:",
        r"system\s+prompt",
        r"(reveal|show|print|repeat)\s+(me\s+)?(your|the)\s+(instructions|configuration|rules|prompt)",
        r"you\s+are\s+(now\s+)?(claude|chatgpt|gpt|an?\s+ai)",
        r"anthropic",
        r"openai",
        r"role[\s-]*play",
        r"act\s+as\s+(an?\s+)?(different|new)\s+(assistant|ai|persona)",
        r"how\s+do\s+you\s+work",
        r"(以前|前|上記)の指示を(無視|忘れ)",
        r"指示を(無視|忘れ)",
        r"システムプロンプト",
        r"設定を(教えて|表示|見せて)",
        r"ロールプレイ",
        r"どのように動作",
    )
)

FORBIDDEN_OUTPUT_TERMS: tuple[str, ...] = (
    "claude",
    "anthropic",
    "api",
    "prompt",
    "language model",
    "ai model",
    "training data",
    "system prompt",
    "言語モデル",
    "AIモデル",
    "学習データ",
    "プロンプト",
)

_ASCII_TERM = re.compile(r"^[\x00-\x7f]+$")

FORBIDDEN_OUTPUT_PATTERNS: tuple[re.Pattern, ...] = tuple(
    re.compile(
        rf"(?<![a-z0-9]){re.escape(term)}s?(?![a-z0-9])" if _ASCII_TERM.match(term) else re.escape(term),
        re.IGNORECASE,
    )
    for term in FORBIDDEN_OUTPUT_TERMS
)

_NON_SPECIAL = re.compile(
    r"[a-zA-Z0-9\s\u3000-\u303f\u3040-\u309f\u30a0-\u30ff\u4e00-\u9faf\uff00-\uffef.,!?'\"()\-:;]"
)


def _fold(text: str) -> str:
    # Upper-casing first makes the result identical for s and s.upper()
    return text.upper().casefold()


def detect_injection(text: str) -> bool:
    """True when ``text`` matches any prompt-injection pattern."""
    folded = _fold(text)
    return any(pattern.search(folded) for pattern in INJECTION_PATTERNS)


def validate_output(text: str) -> bool:
    """True when generated ``text`` is free of forbidden terms."""
    folded = _fold(text)
    return not any(pattern.search(folded) for pattern in FORBIDDEN_OUTPUT_PATTERNS)


def validate_input(text: str) -> None:
    """
    Enforce basic shape constraints on user input.

    Raises:
        InputValidationError: on empty/oversized input or symbol-heavy text
    """
    stripped = text.strip() if text else ""
    if len(stripped) < MIN_INPUT_LENGTH:
        raise InputValidationError("Input is too short", reason="too_short")
    if len(stripped) > MAX_INPUT_LENGTH:
        raise InputValidationError("Input is too long", reason="too_long")

    special = len(stripped) - len(_NON_SPECIAL.findall(stripped))
    if special / len(stripped) > MAX_SPECIAL_CHAR_RATIO:
        raise InputValidationError("Input contains too many special characters", reason="special_chars")


def sanitize_text(text: str, max_length: int = MAX_INPUT_LENGTH) -> str:
    """Strip null bytes and control characters, keep newlines and tabs."""
    if not text:
        return ""
    sanitized = text.replace("\x00", "")
    sanitized = "".join(char for char in sanitized if ord(char) >= 32 or char in "\n\t")
    return sanitized[:max_length].strip()


def require_admin(actor: Actor) -> None:
    if actor.role != ActorRole.ADMIN:
        raise PermissionDeniedError(
            "Administrator role required", actor_id=actor.uid, required_role=ActorRole.ADMIN.value
        )


def get_client_ip(request) -> Optional[str]:
    """Client address, honouring reverse-proxy headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return request.client.host if request.client else None


class SecurityGate:
    """
    Screens pipeline input and output.

    A rejection is written to the ``security_events`` collection before the
    typed error is raised. Audit write failures are logged and never mask
    the rejection itself.
    """

    def __init__(
        self,
        store: DocumentStore,
        metrics_collector: Optional[MetricsCollector] = None,
    ):
        self._store = store
        self._metrics = metrics_collector

    async def record(
        self,
        kind: SecurityEventKind,
        raw_input: str,
        actor_id: Optional[str],
        partition_id: Optional[str] = None,
    ) -> SecurityEvent:
        event = SecurityEvent(
            kind=kind,
            raw_input=raw_input[:AUDIT_INPUT_PREVIEW],
            actor_id=actor_id,
            partition_id=partition_id,
        )
        logger.warning(
            f"Security event | kind={kind.value} | actor={actor_id} | partition={partition_id}"
        )
        if self._metrics:
            self._metrics.record_security_event(kind.value)
        try:
            await self._store.set(Collections.SECURITY_EVENTS, event.id, event.to_document())
        except DocumentStoreError as e:
            logger.error(f"Failed to persist security event {event.id}: {e}")
        return event

    async def check_input(self, text: str, actor: Actor, partition_id: Optional[str] = None) -> str:
        """Validate and screen user input; returns the sanitized text."""
        validate_input(text)
        if detect_injection(text):
            await self.record(SecurityEventKind.INJECTION_ATTEMPT, text, actor.uid, partition_id)
            raise InjectionDetectedError(context={"partition_id": partition_id})
        return sanitize_text(text)

    async def check_output(self, text: str, actor: Actor, partition_id: Optional[str] = None) -> None:
        if not validate_output(text):
            await self.record(SecurityEventKind.FORBIDDEN_OUTPUT, text, actor.uid, partition_id)
            raise OutputValidationFailedError(context={"partition_id": partition_id})
