"""
Cost Accountant: Usage to USD and Cache-Efficiency Metrics
===========================================================

Pure functions over a single ``UsageRecord``:
- ``cost``: per-bucket USD breakdown from a static price table
- ``cache_hit_rate``: read / (read + write), 0 when nothing was cacheable
- ``cost_savings``: what the cache reads would have cost as plain input

``CostAccountant`` persists one record per vendor call and feeds the
Prometheus counters. It only reports and never gates a request.

Period totals sum persisted records over a window, and the budget check
compares them against spend ceilings, writing a ``cost_alerts`` record
when a ceiling is near or passed.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from loguru import logger

from config.constants import DEFAULT_TOKEN_PRICES, TOKENS_PER_PRICE_UNIT, Collections
from config.settings import CostBudgetSettings, LLMSettings
from core.enums import BudgetAlertKind, BudgetPeriod
from core.exceptions import DocumentStoreError
from core.models import CostBreakdown, UsageRecord, utcnow
from infrastructure.document_store import DocumentStore, Filter
from infrastructure.monitoring import MetricsCollector


@dataclass(frozen=True)
class PriceTable:
    """USD per million tokens for each billing bucket."""

    input: float = DEFAULT_TOKEN_PRICES.INPUT
    cache_write: float = DEFAULT_TOKEN_PRICES.CACHE_WRITE
    cache_read: float = DEFAULT_TOKEN_PRICES.CACHE_READ
    output: float = DEFAULT_TOKEN_PRICES.OUTPUT

    def __post_init__(self):
        if min(self.input, self.cache_write, self.cache_read, self.output) < 0:
            raise ValueError("Prices must be non-negative")
        if self.cache_read >= self.input:
            raise ValueError("Cache-read price must be strictly below the input price")

    @classmethod
    def from_settings(cls, llm: LLMSettings) -> "PriceTable":
        return cls(
            input=llm.price_input,
            cache_write=llm.price_cache_write,
            cache_read=llm.price_cache_read,
            output=llm.price_output,
        )


DEFAULT_PRICES = PriceTable()


def _bucket_cost(tokens: int, price_per_million: float) -> float:
    return tokens * price_per_million / TOKENS_PER_PRICE_UNIT


def cost(usage: UsageRecord, prices: PriceTable = DEFAULT_PRICES) -> CostBreakdown:
    """Convert usage counters into a USD breakdown."""
    return CostBreakdown(
        input_cost=_bucket_cost(usage.input_tokens, prices.input),
        cache_write_cost=_bucket_cost(usage.cache_write_tokens, prices.cache_write),
        cache_read_cost=_bucket_cost(usage.cache_read_tokens, prices.cache_read),
        output_cost=_bucket_cost(usage.output_tokens, prices.output),
    )


def cache_hit_rate(usage: UsageRecord) -> float:
    """Share of cacheable tokens served from the vendor cache."""
    denominator = usage.cache_read_tokens + usage.cache_write_tokens
    if denominator == 0:
        return 0.0
    return usage.cache_read_tokens / denominator


def cost_savings(usage: UsageRecord, prices: PriceTable = DEFAULT_PRICES) -> float:
    """USD saved because cache reads were billed below the input price."""
    return usage.cache_read_tokens * (prices.input - prices.cache_read) / TOKENS_PER_PRICE_UNIT


@dataclass(frozen=True)
class CostReport:
    breakdown: CostBreakdown
    hit_rate: float
    savings: float


# =============================================================================
# PERIOD TOTALS AND BUDGETS
# =============================================================================


def _months_back(moment: datetime, months: int) -> datetime:
    month_index = moment.year * 12 + moment.month - 1 - months
    year, month = divmod(month_index, 12)
    day = min(moment.day, calendar.monthrange(year, month + 1)[1])
    return moment.replace(year=year, month=month + 1, day=day)


def period_window(period: BudgetPeriod, now: datetime) -> tuple[datetime, datetime]:
    """
    Window ``(start, now)`` a budget is measured over.

    Day boundaries are taken in ``now``'s own timezone, so pass a
    business-timezone timestamp for calendar-aligned windows.
    """
    if period == BudgetPeriod.HOURLY:
        return now - timedelta(hours=1), now

    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == BudgetPeriod.DAILY:
        return midnight, now
    if period == BudgetPeriod.WEEKLY:
        return midnight - timedelta(days=7), now
    return _months_back(midnight, 1), now


@dataclass(frozen=True)
class UsageTotals:
    total_cost: float = 0.0
    request_count: int = 0
    cache_hit_rate: float = 0.0
    savings: float = 0.0

    @property
    def average_cost_per_request(self) -> float:
        return self.total_cost / self.request_count if self.request_count else 0.0


def sum_usage(records: Sequence[dict]) -> UsageTotals:
    """Aggregate persisted usage records; the hit rate is the per-call mean."""
    if not records:
        return UsageTotals()
    return UsageTotals(
        total_cost=sum(r.get("cost", {}).get("total", 0.0) for r in records),
        request_count=len(records),
        cache_hit_rate=sum(r.get("cache_hit_rate", 0.0) for r in records) / len(records),
        savings=sum(r.get("cost_savings", 0.0) for r in records),
    )


@dataclass(frozen=True)
class Budget:
    """USD ceiling for one period, warning once ``alert_at_percent`` is reached."""

    period: BudgetPeriod
    amount: float
    alert_at_percent: float = 80.0

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError("Budget amount must be positive")

    def percentage_used(self, spend: float) -> float:
        return spend / self.amount * 100

    def evaluate(self, spend: float) -> Optional[BudgetAlertKind]:
        if spend > self.amount:
            return BudgetAlertKind.OVER_BUDGET
        if self.percentage_used(spend) >= self.alert_at_percent:
            return BudgetAlertKind.THRESHOLD
        return None


def budgets_from_settings(settings: CostBudgetSettings) -> list[Budget]:
    if not settings.enabled:
        return []
    return [
        Budget(BudgetPeriod.DAILY, settings.daily_usd, settings.alert_at_percent),
        Budget(BudgetPeriod.WEEKLY, settings.weekly_usd, settings.alert_at_percent),
        Budget(BudgetPeriod.MONTHLY, settings.monthly_usd, settings.alert_at_percent),
    ]


class CostAccountant:
    """Reporter for per-call usage; persistence failures are logged, not raised."""

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        prices: PriceTable = DEFAULT_PRICES,
        metrics_collector: Optional[MetricsCollector] = None,
    ):
        self._store = store
        self._prices = prices
        self._metrics = metrics_collector

    def report(self, usage: UsageRecord) -> CostReport:
        return CostReport(
            breakdown=cost(usage, self._prices),
            hit_rate=cache_hit_rate(usage),
            savings=cost_savings(usage, self._prices),
        )

    async def record(
        self,
        usage: UsageRecord,
        *,
        partition_id: str,
        actor_id: Optional[str] = None,
        model: Optional[str] = None,
    ) -> CostReport:
        report = self.report(usage)

        logger.info(
            f"Vendor call cost | partition={partition_id} | total=${report.breakdown.total:.6f} | "
            f"hit_rate={report.hit_rate:.2%} | savings=${report.savings:.6f}"
        )

        if self._metrics:
            self._metrics.record_cost(partition_id, report.breakdown, report.hit_rate, report.savings)

        if self._store is not None:
            try:
                await self._store.add(
                    Collections.USAGE_RECORDS,
                    {
                        "partition_id": partition_id,
                        "actor_id": actor_id,
                        "model": model,
                        "usage": usage.model_dump(),
                        "cost": report.breakdown.model_dump(),
                        "cache_hit_rate": report.hit_rate,
                        "cost_savings": report.savings,
                        "timestamp": utcnow(),
                    },
                )
            except DocumentStoreError as e:
                logger.error(f"Failed to persist usage record | partition={partition_id} | error={e}")

        return report

    async def usage_totals(
        self, start: datetime, end: datetime, partition_id: Optional[str] = None
    ) -> UsageTotals:
        """Totals over ``start <= timestamp <= end``, optionally for one partition."""
        if self._store is None:
            return UsageTotals()

        filters = [Filter("timestamp", ">=", start), Filter("timestamp", "<=", end)]
        if partition_id is not None:
            filters.append(Filter("partition_id", "==", partition_id))
        docs = await self._store.query(Collections.USAGE_RECORDS, filters)
        return sum_usage([doc.data for doc in docs])

    async def partition_totals(self, start: datetime, end: datetime) -> dict[str, UsageTotals]:
        """Per-partition totals over the window."""
        if self._store is None:
            return {}

        docs = await self._store.query(
            Collections.USAGE_RECORDS,
            [Filter("timestamp", ">=", start), Filter("timestamp", "<=", end)],
        )
        grouped: dict[str, list[dict]] = {}
        for doc in docs:
            grouped.setdefault(doc.data.get("partition_id"), []).append(doc.data)
        return {partition: sum_usage(records) for partition, records in sorted(grouped.items())}

    async def check_budgets(
        self,
        budgets: Sequence[Budget],
        now: Optional[datetime] = None,
        partition_id: Optional[str] = None,
    ) -> list[dict]:
        """
        Compare period spend with each budget and record an alert per breach.

        Args:
            budgets: Ceilings to check
            now: Reference time; its timezone sets the day boundaries
            partition_id: Restrict spend to one partition; all when None

        Returns:
            The alert documents written, in budget order
        """
        now = now or utcnow()
        alerts = []
        for budget in budgets:
            start, end = period_window(budget.period, now)
            totals = await self.usage_totals(start, end, partition_id)
            kind = budget.evaluate(totals.total_cost)
            if kind is None:
                continue

            alert = {
                "kind": kind.value,
                "period": budget.period.value,
                "partition_id": partition_id,
                "budget_usd": budget.amount,
                "spend_usd": totals.total_cost,
                "percentage_used": budget.percentage_used(totals.total_cost),
                "request_count": totals.request_count,
                "period_start": start,
                "period_end": end,
                "timestamp": utcnow(),
            }
            logger.warning(
                f"Cost budget {kind.value} | period={budget.period.value} | "
                f"spend=${totals.total_cost:.4f} | budget=${budget.amount:.2f} | "
                f"used={alert['percentage_used']:.1f}%"
            )
            alerts.append(alert)

            try:
                await self._store.add(Collections.COST_ALERTS, alert)
            except DocumentStoreError as e:
                logger.error(f"Failed to persist cost alert | period={budget.period.value} | error={e}")

        return alerts
