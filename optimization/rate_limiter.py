"""
Admission Controller - Sliding-Window Rate Limiting
====================================================

Guards scarce downstream resources (vendor calls, vector search, file
ingestion) with a per-caller window counter persisted in the document
store:

- First request creates a window (count=1) and is admitted
- A window older than its length resets to count=1
- ``count >= max_requests`` rejects with retry-after metadata
- Otherwise the counter is incremented and the request admitted

Storage failures fail open. The read-check-write sequence is not
linearized, so concurrent bursts from one caller may over-admit slightly.
An optional in-process front cache rejects callers whose window is known
to be exhausted without a store round-trip.
"""

import math
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional, Union

from loguru import logger

from config.constants import BATCH_LIMITS, DEFAULT_RATE_LIMITS, Collections, RateLimitRule
from config.settings import RateLimitSettings
from core.enums import ProtectedResource
from core.exceptions import EntityNotFoundError, InfrastructureError, RateLimitExceededError
from core.models import AdmissionDecision, RateLimitWindow, utcnow
from infrastructure.document_store import DocumentStore, Filter, Increment
from infrastructure.monitoring import MetricsCollector

Clock = Callable[[], datetime]
Resource = Union[ProtectedResource, str]

_LOCAL_CACHE_MAX_ENTRIES = 10_000


def caller_key(uid: Optional[str] = None, ip_address: Optional[str] = None) -> str:
    """Authenticated identity first, network origin otherwise."""
    if uid:
        return f"user:{uid}"
    return f"ip:{ip_address or 'unknown'}"


def _resource_name(resource: Resource) -> str:
    return resource.value if isinstance(resource, ProtectedResource) else str(resource)


class AdmissionController:
    """Per-resource sliding-window admission control."""

    def __init__(
        self,
        store: DocumentStore,
        rules: Optional[Mapping[str, RateLimitRule]] = None,
        *,
        clock: Clock = utcnow,
        metrics_collector: Optional[MetricsCollector] = None,
        local_cache_enabled: bool = True,
        enabled: bool = True,
    ):
        self._store = store
        self._rules = dict(rules or DEFAULT_RATE_LIMITS)
        self._clock = clock
        self._metrics = metrics_collector
        self._enabled = enabled
        self._local_cache_enabled = local_cache_enabled
        self._local: "OrderedDict[str, RateLimitWindow]" = OrderedDict()

    @classmethod
    def from_settings(
        cls,
        store: DocumentStore,
        rate_limit_settings: RateLimitSettings,
        metrics_collector: Optional[MetricsCollector] = None,
    ) -> "AdmissionController":
        rules = {name: rate_limit_settings.rule_for(name) for name in rate_limit_settings.rules}
        return cls(
            store,
            rules,
            metrics_collector=metrics_collector,
            local_cache_enabled=rate_limit_settings.local_cache_enabled,
            enabled=rate_limit_settings.enabled,
        )

    def rule_for(self, resource: Resource) -> RateLimitRule:
        name = _resource_name(resource)
        return self._rules.get(name) or self._rules[ProtectedResource.GENERAL.value]

    @staticmethod
    def window_key(resource: Resource, key: str) -> str:
        return f"{_resource_name(resource)}:{key}"

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    async def check(self, resource: Resource, key: str) -> AdmissionDecision:
        """Decide whether one more request from ``key`` is admitted."""
        rule = self.rule_for(resource)
        resource_name = _resource_name(resource)
        if not self._enabled:
            return AdmissionDecision(allowed=True, limit=rule.max_requests, remaining=rule.max_requests)

        doc_id = self.window_key(resource, key)
        now = self._clock()
        window_length = timedelta(seconds=rule.window_seconds)

        cached = self._local.get(doc_id)
        if (
            cached is not None
            and cached.count >= rule.max_requests
            and now - cached.window_start < window_length
        ):
            return self._reject(resource_name, rule, cached, now)

        try:
            data = await self._store.get(Collections.RATE_LIMITS, doc_id)
            window = RateLimitWindow.from_document(doc_id, data) if data else None

            if window is None or now - window.window_start >= window_length:
                window = RateLimitWindow(
                    id=doc_id,
                    resource=resource_name,
                    count=1,
                    window_start=now,
                    reset_at=now + window_length,
                )
                await self._store.set(Collections.RATE_LIMITS, doc_id, window.to_document())
                self._remember(window)
                return self._admit(resource_name, rule, window)

            if window.count >= rule.max_requests:
                self._remember(window)
                return self._reject(resource_name, rule, window, now)

            await self._store.update(Collections.RATE_LIMITS, doc_id, {"count": Increment(1)})
            window = window.model_copy(update={"count": window.count + 1})
            self._remember(window)
            return self._admit(resource_name, rule, window)

        except (InfrastructureError, EntityNotFoundError) as e:
            logger.warning(
                f"Rate limit store unavailable, admitting request | key={doc_id} | error={e}"
            )
            if self._metrics:
                self._metrics.record_admission(resource_name, "fail_open")
            return AdmissionDecision(
                allowed=True, limit=rule.max_requests, remaining=rule.max_requests, fail_open=True
            )

    async def enforce(self, resource: Resource, key: str) -> AdmissionDecision:
        """
        Like ``check`` but raises on rejection.

        Raises:
            RateLimitExceededError: carrying retry-after seconds
        """
        decision = await self.check(resource, key)
        if not decision.allowed:
            raise RateLimitExceededError(
                f"Too many requests for {_resource_name(resource)}",
                resource=_resource_name(resource),
                retry_after=decision.retry_after_seconds,
            )
        return decision

    async def status(self, resource: Resource, key: str) -> AdmissionDecision:
        """Report the caller's current window without consuming quota."""
        rule = self.rule_for(resource)
        doc_id = self.window_key(resource, key)
        now = self._clock()
        data = await self._store.get(Collections.RATE_LIMITS, doc_id)
        if not data:
            return AdmissionDecision(allowed=True, limit=rule.max_requests, remaining=rule.max_requests)

        window = RateLimitWindow.from_document(doc_id, data)
        if now - window.window_start >= timedelta(seconds=rule.window_seconds):
            return AdmissionDecision(allowed=True, limit=rule.max_requests, remaining=rule.max_requests)

        remaining = max(0, rule.max_requests - window.count)
        return AdmissionDecision(
            allowed=remaining > 0,
            limit=rule.max_requests,
            remaining=remaining,
            reset_at=window.reset_at,
            retry_after_seconds=None if remaining else self._retry_after(window, now),
        )

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def sweep(self) -> int:
        """Delete windows whose ``reset_at`` has passed; returns how many."""
        now = self._clock()
        expired = await self._store.query(
            Collections.RATE_LIMITS, [Filter("reset_at", "<", now)]
        )

        deleted = 0
        for start in range(0, len(expired), BATCH_LIMITS.STORE_BATCH_LIMIT):
            batch = self._store.batch()
            for doc in expired[start : start + BATCH_LIMITS.STORE_BATCH_LIMIT]:
                batch.delete(Collections.RATE_LIMITS, doc.id)
            operations = len(batch)
            await batch.commit()
            deleted += operations

        for doc_id in [k for k, w in self._local.items() if w.reset_at < now]:
            self._local.pop(doc_id, None)

        logger.info(f"Rate limit sweep removed {deleted} expired windows")
        return deleted

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _remember(self, window: RateLimitWindow) -> None:
        if not self._local_cache_enabled:
            return
        self._local[window.id] = window
        self._local.move_to_end(window.id)
        while len(self._local) > _LOCAL_CACHE_MAX_ENTRIES:
            self._local.popitem(last=False)

    @staticmethod
    def _retry_after(window: RateLimitWindow, now: datetime) -> int:
        return max(1, math.ceil((window.reset_at - now).total_seconds()))

    def _admit(self, resource: str, rule: RateLimitRule, window: RateLimitWindow) -> AdmissionDecision:
        if self._metrics:
            self._metrics.record_admission(resource, "allowed")
        return AdmissionDecision(
            allowed=True,
            limit=rule.max_requests,
            remaining=max(0, rule.max_requests - window.count),
            reset_at=window.reset_at,
        )

    def _reject(
        self, resource: str, rule: RateLimitRule, window: RateLimitWindow, now: datetime
    ) -> AdmissionDecision:
        retry_after = self._retry_after(window, now)
        logger.info(f"Rate limit exceeded | key={window.id} | retry_after={retry_after}s")
        if self._metrics:
            self._metrics.record_admission(resource, "rejected")
        return AdmissionDecision(
            allowed=False,
            limit=rule.max_requests,
            remaining=0,
            reset_at=window.reset_at,
            retry_after_seconds=retry_after,
        )
