"""
Unit Tests for the Admission Controller
=======================================

Sliding-window admission: first request, saturation, window reset,
fail-open on storage errors and the expired-window sweep.
"""

from unittest.mock import AsyncMock

import pytest

from config.constants import Collections, RateLimitRule
from core.enums import ProtectedResource
from core.exceptions import DocumentStoreError, RateLimitExceededError
from optimization.rate_limiter import AdmissionController, caller_key

RULES = {
    "llm": RateLimitRule(max_requests=3, window_seconds=60),
    "general": RateLimitRule(max_requests=10, window_seconds=60),
}


@pytest.fixture
def controller(store, clock, metrics):
    return AdmissionController(store, RULES, clock=clock, metrics_collector=metrics)


def test_caller_key_prefers_identity():
    assert caller_key("u1", "1.2.3.4") == "user:u1"
    assert caller_key(None, "1.2.3.4") == "ip:1.2.3.4"
    assert caller_key() == "ip:unknown"


class TestCheck:
    async def test_first_request_creates_window(self, controller, store, clock):
        decision = await controller.check(ProtectedResource.LLM, "user:u1")

        assert decision.allowed is True
        assert decision.remaining == 2
        data = await store.get(Collections.RATE_LIMITS, "llm:user:u1")
        assert data["count"] == 1
        assert data["window_start"] == clock.now

    async def test_rejects_request_after_limit(self, controller, clock):
        for _ in range(3):
            assert (await controller.check(ProtectedResource.LLM, "user:u1")).allowed

        clock.advance(seconds=20)
        decision = await controller.check(ProtectedResource.LLM, "user:u1")

        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.retry_after_seconds == 40

    async def test_window_resets_after_length(self, controller, store, clock):
        for _ in range(3):
            await controller.check(ProtectedResource.LLM, "user:u1")

        clock.advance(seconds=60)
        decision = await controller.check(ProtectedResource.LLM, "user:u1")

        assert decision.allowed is True
        data = await store.get(Collections.RATE_LIMITS, "llm:user:u1")
        assert data["count"] == 1
        assert data["window_start"] == clock.now

    async def test_callers_are_independent(self, controller):
        for _ in range(3):
            await controller.check(ProtectedResource.LLM, "user:u1")

        assert (await controller.check(ProtectedResource.LLM, "user:u2")).allowed
        assert (await controller.check(ProtectedResource.LLM, "ip:10.0.0.9")).allowed

    async def test_unknown_resource_uses_general_rule(self, controller):
        decision = await controller.check("reports", "user:u1")
        assert decision.limit == 10

    async def test_local_cache_rejects_without_store_read(self, store, clock):
        controller = AdmissionController(store, RULES, clock=clock)
        for _ in range(4):
            await controller.check(ProtectedResource.LLM, "user:u1")

        store.get = AsyncMock(side_effect=AssertionError("store should not be read"))
        decision = await controller.check(ProtectedResource.LLM, "user:u1")

        assert decision.allowed is False

    async def test_fails_open_on_storage_error(self, clock, metrics):
        failing = AsyncMock()
        failing.get.side_effect = DocumentStoreError("unavailable")
        controller = AdmissionController(failing, RULES, clock=clock, metrics_collector=metrics)

        decision = await controller.check(ProtectedResource.LLM, "user:u1")

        assert decision.allowed is True
        assert decision.fail_open is True
        assert (
            metrics.registry.get_sample_value(
                "admission_decisions_total", {"resource": "llm", "decision": "fail_open"}
            )
            == 1
        )

    async def test_disabled_controller_admits_everything(self, store, clock):
        controller = AdmissionController(store, RULES, clock=clock, enabled=False)
        for _ in range(10):
            assert (await controller.check(ProtectedResource.LLM, "user:u1")).allowed
        assert await store.query(Collections.RATE_LIMITS) == []


class TestEnforce:
    async def test_raises_with_retry_after(self, controller):
        for _ in range(3):
            await controller.enforce(ProtectedResource.LLM, "user:u1")

        with pytest.raises(RateLimitExceededError) as exc:
            await controller.enforce(ProtectedResource.LLM, "user:u1")

        assert exc.value.resource == "llm"
        assert exc.value.retry_after == 60


class TestStatusAndSweep:
    async def test_status_does_not_consume(self, controller, store):
        await controller.check(ProtectedResource.LLM, "user:u1")

        status = await controller.status(ProtectedResource.LLM, "user:u1")
        status_again = await controller.status(ProtectedResource.LLM, "user:u1")

        assert status.remaining == status_again.remaining == 2
        assert (await store.get(Collections.RATE_LIMITS, "llm:user:u1"))["count"] == 1

    async def test_sweep_removes_only_expired(self, controller, store, clock):
        await controller.check(ProtectedResource.LLM, "user:old")
        clock.advance(seconds=45)
        await controller.check(ProtectedResource.LLM, "user:new")
        clock.advance(seconds=30)

        deleted = await controller.sweep()

        assert deleted == 1
        assert await store.get(Collections.RATE_LIMITS, "llm:user:old") is None
        assert await store.get(Collections.RATE_LIMITS, "llm:user:new") is not None
