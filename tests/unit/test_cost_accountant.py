"""
Unit Tests for the Cost Accountant
==================================

Covers per-bucket pricing, cache hit rate, savings, the price-table
invariants, persistence of usage records, period totals and the budget
check.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from config.constants import Collections
from config.settings import CostBudgetSettings
from core.enums import BudgetAlertKind, BudgetPeriod
from core.exceptions import DocumentStoreError
from core.models import UsageRecord
from optimization.cost_accountant import (
    Budget,
    CostAccountant,
    PriceTable,
    budgets_from_settings,
    cache_hit_rate,
    cost,
    cost_savings,
    period_window,
)

FIRST_CALL = UsageRecord(input_tokens=1000, cache_write_tokens=4500, cache_read_tokens=0, output_tokens=200)
REPEAT_CALL = UsageRecord(input_tokens=1000, cache_write_tokens=0, cache_read_tokens=4500, output_tokens=200)


class TestCost:
    def test_first_call_pays_cache_write(self):
        breakdown = cost(FIRST_CALL)

        assert breakdown.input_cost == pytest.approx(0.003)
        assert breakdown.cache_write_cost == pytest.approx(0.016875)
        assert breakdown.cache_read_cost == 0
        assert breakdown.output_cost == pytest.approx(0.003)
        assert breakdown.total == pytest.approx(0.022875)

    def test_repeat_call_reads_from_cache(self):
        breakdown = cost(REPEAT_CALL)

        assert breakdown.cache_read_cost == pytest.approx(0.00135)
        assert breakdown.total == pytest.approx(0.00735)
        assert cache_hit_rate(REPEAT_CALL) == 1.0
        assert cost_savings(REPEAT_CALL) == pytest.approx(0.01215)

    def test_total_is_sum_of_buckets(self):
        usage = UsageRecord(input_tokens=17, cache_write_tokens=3, cache_read_tokens=11, output_tokens=5)
        breakdown = cost(usage)

        assert breakdown.total == pytest.approx(
            breakdown.input_cost
            + breakdown.cache_write_cost
            + breakdown.cache_read_cost
            + breakdown.output_cost
        )

    def test_zero_usage_costs_nothing(self):
        assert cost(UsageRecord()).total == 0


class TestCacheHitRate:
    def test_nothing_cacheable_is_zero(self):
        assert cache_hit_rate(UsageRecord(input_tokens=100, output_tokens=10)) == 0.0

    def test_first_call_is_zero(self):
        assert cache_hit_rate(FIRST_CALL) == 0.0

    def test_partial_hit(self):
        usage = UsageRecord(cache_write_tokens=1000, cache_read_tokens=3000)
        assert cache_hit_rate(usage) == pytest.approx(0.75)


class TestPriceTable:
    def test_rejects_cache_read_not_below_input(self):
        with pytest.raises(ValueError):
            PriceTable(input=1.0, cache_read=1.0)

    def test_rejects_negative_prices(self):
        with pytest.raises(ValueError):
            PriceTable(output=-1.0)

    def test_custom_prices_flow_into_cost(self):
        prices = PriceTable(input=1.0, cache_write=2.0, cache_read=0.1, output=4.0)
        assert cost(REPEAT_CALL, prices).total == pytest.approx(0.001 + 0.00045 + 0.0008)


class TestCostAccountant:
    async def test_record_persists_usage(self, store, metrics):
        accountant = CostAccountant(store=store, metrics_collector=metrics)

        report = await accountant.record(REPEAT_CALL, partition_id="p1", actor_id="u1", model="m")

        assert report.hit_rate == 1.0
        docs = await store.query(Collections.USAGE_RECORDS)
        assert len(docs) == 1
        assert docs[0].data["partition_id"] == "p1"
        assert docs[0].data["cost"]["total"] == pytest.approx(0.00735)
        assert docs[0].data["cost_savings"] == pytest.approx(0.01215)

    async def test_record_feeds_metrics(self, metrics):
        accountant = CostAccountant(metrics_collector=metrics)

        await accountant.record(FIRST_CALL, partition_id="p1")

        value = metrics.registry.get_sample_value("llm_cost_usd_total", {"partition_id": "p1"})
        assert value == pytest.approx(0.022875)

    async def test_persistence_failure_does_not_raise(self):
        failing = AsyncMock()
        failing.add.side_effect = DocumentStoreError("down")
        accountant = CostAccountant(store=failing)

        report = await accountant.record(FIRST_CALL, partition_id="p1")

        assert report.breakdown.total == pytest.approx(0.022875)


NOW = datetime(2026, 3, 31, 15, 30, tzinfo=timezone.utc)


async def _add_usage(store, partition_id, total, when, hit_rate=0.5, savings=0.01):
    await store.add(
        Collections.USAGE_RECORDS,
        {
            "partition_id": partition_id,
            "cost": {"total": total},
            "cache_hit_rate": hit_rate,
            "cost_savings": savings,
            "timestamp": when,
        },
    )


class TestPeriodWindow:
    def test_hourly_is_trailing_hour(self):
        assert period_window(BudgetPeriod.HOURLY, NOW) == (NOW - timedelta(hours=1), NOW)

    def test_daily_starts_at_midnight(self):
        start, end = period_window(BudgetPeriod.DAILY, NOW)
        assert start == datetime(2026, 3, 31, tzinfo=timezone.utc)
        assert end == NOW

    def test_weekly_spans_seven_days_from_midnight(self):
        start, _ = period_window(BudgetPeriod.WEEKLY, NOW)
        assert start == datetime(2026, 3, 24, tzinfo=timezone.utc)

    def test_monthly_clamps_to_shorter_month(self):
        start, _ = period_window(BudgetPeriod.MONTHLY, NOW)
        assert start == datetime(2026, 2, 28, tzinfo=timezone.utc)

    def test_monthly_crosses_year(self):
        start, _ = period_window(BudgetPeriod.MONTHLY, datetime(2026, 1, 15, 9, tzinfo=timezone.utc))
        assert start == datetime(2025, 12, 15, tzinfo=timezone.utc)


class TestBudget:
    def test_under_threshold_is_quiet(self):
        assert Budget(BudgetPeriod.DAILY, 15.0).evaluate(11.9) is None

    def test_threshold_is_inclusive(self):
        assert Budget(BudgetPeriod.DAILY, 15.0).evaluate(12.0) == BudgetAlertKind.THRESHOLD

    def test_over_budget_wins_over_threshold(self):
        assert Budget(BudgetPeriod.DAILY, 15.0).evaluate(15.01) == BudgetAlertKind.OVER_BUDGET

    def test_spend_equal_to_amount_is_not_over(self):
        assert Budget(BudgetPeriod.DAILY, 15.0).evaluate(15.0) == BudgetAlertKind.THRESHOLD

    def test_rejects_non_positive_amount(self):
        with pytest.raises(ValueError):
            Budget(BudgetPeriod.DAILY, 0)

    def test_defaults_from_settings(self):
        budgets = budgets_from_settings(CostBudgetSettings())

        assert [(b.period, b.amount) for b in budgets] == [
            (BudgetPeriod.DAILY, 15.0),
            (BudgetPeriod.WEEKLY, 75.0),
            (BudgetPeriod.MONTHLY, 300.0),
        ]
        assert all(b.alert_at_percent == 80.0 for b in budgets)

    def test_disabled_settings_yield_no_budgets(self):
        assert budgets_from_settings(CostBudgetSettings(enabled=False)) == []


class TestUsageTotals:
    async def test_totals_respect_window_and_partition(self, store):
        accountant = CostAccountant(store=store)
        await _add_usage(store, "p1", 1.0, NOW - timedelta(minutes=10), hit_rate=1.0)
        await _add_usage(store, "p1", 2.0, NOW - timedelta(minutes=20), hit_rate=0.0)
        await _add_usage(store, "p2", 4.0, NOW - timedelta(minutes=30))
        await _add_usage(store, "p1", 8.0, NOW - timedelta(days=2))

        totals = await accountant.usage_totals(NOW - timedelta(hours=1), NOW, partition_id="p1")

        assert totals.total_cost == pytest.approx(3.0)
        assert totals.request_count == 2
        assert totals.cache_hit_rate == pytest.approx(0.5)
        assert totals.savings == pytest.approx(0.02)
        assert totals.average_cost_per_request == pytest.approx(1.5)

    async def test_totals_across_partitions(self, store):
        accountant = CostAccountant(store=store)
        await _add_usage(store, "p1", 1.0, NOW - timedelta(minutes=10))
        await _add_usage(store, "p2", 4.0, NOW - timedelta(minutes=30))

        assert (await accountant.usage_totals(NOW - timedelta(hours=1), NOW)).total_cost == pytest.approx(5.0)

        by_partition = await accountant.partition_totals(NOW - timedelta(hours=1), NOW)
        assert list(by_partition) == ["p1", "p2"]
        assert by_partition["p2"].total_cost == pytest.approx(4.0)

    async def test_empty_window(self, store):
        totals = await CostAccountant(store=store).usage_totals(NOW - timedelta(hours=1), NOW)

        assert totals.request_count == 0
        assert totals.cache_hit_rate == 0.0
        assert totals.average_cost_per_request == 0.0

    async def test_recorded_calls_are_counted(self, store):
        accountant = CostAccountant(store=store)
        await accountant.record(REPEAT_CALL, partition_id="p1")

        now = datetime.now(timezone.utc)
        totals = await accountant.usage_totals(now - timedelta(hours=1), now, partition_id="p1")

        assert totals.request_count == 1
        assert totals.total_cost == pytest.approx(0.00735)


class TestCheckBudgets:
    async def test_alerts_are_recorded_per_breached_period(self, store):
        accountant = CostAccountant(store=store)
        await _add_usage(store, "p1", 13.0, NOW - timedelta(hours=2))
        await _add_usage(store, "p1", 70.0, NOW - timedelta(days=3))
        budgets = [
            Budget(BudgetPeriod.DAILY, 15.0),
            Budget(BudgetPeriod.WEEKLY, 75.0),
            Budget(BudgetPeriod.MONTHLY, 300.0),
        ]

        alerts = await accountant.check_budgets(budgets, NOW)

        assert [(a["period"], a["kind"]) for a in alerts] == [
            ("daily", "threshold"),
            ("weekly", "over_budget"),
        ]
        assert alerts[0]["percentage_used"] == pytest.approx(13.0 / 15.0 * 100)
        docs = await store.query(Collections.COST_ALERTS, order_by=["period"])
        assert [doc.data["kind"] for doc in docs] == ["threshold", "over_budget"]

    async def test_quiet_when_within_budget(self, store):
        accountant = CostAccountant(store=store)
        await _add_usage(store, "p1", 1.0, NOW - timedelta(hours=2))

        assert await accountant.check_budgets([Budget(BudgetPeriod.DAILY, 15.0)], NOW) == []
        assert store.count(Collections.COST_ALERTS) == 0

    async def test_partition_scoped_check(self, store):
        accountant = CostAccountant(store=store)
        await _add_usage(store, "p1", 1.0, NOW - timedelta(hours=2))
        await _add_usage(store, "p2", 14.0, NOW - timedelta(hours=2))

        alerts = await accountant.check_budgets([Budget(BudgetPeriod.DAILY, 15.0)], NOW, partition_id="p1")

        assert alerts == []

    async def test_alert_persistence_failure_is_logged(self, store):
        await _add_usage(store, "p1", 20.0, NOW - timedelta(hours=2))
        store.add = AsyncMock(side_effect=DocumentStoreError("down"))
        accountant = CostAccountant(store=store)

        alerts = await accountant.check_budgets([Budget(BudgetPeriod.DAILY, 15.0)], NOW)

        assert alerts[0]["kind"] == "over_budget"
