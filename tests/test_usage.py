from datetime import datetime, timezone

import pytest

from chatrelay.schemas import UsageRecord
from chatrelay.usage import UsageLedger, compute_cost, summarize_usage
from tests.fakes import MemoryUsageStore


def _record(provider: str, cost_usd: float, timestamp: str) -> UsageRecord:
    return UsageRecord(
        provider=provider,
        model="test-model",
        cost_nano_usd=int(cost_usd * 1_000_000_000),
        timestamp=timestamp,
    )


def test_compute_cost_uses_rate_table_and_default():
    assert compute_cost("claude-sonnet-4-5-20250929", 1_000_000, 0) == 3_000_000_000
    assert compute_cost("gemini-2.5-flash", 0, 1000) == 2_500_000
    assert compute_cost("tavily-search", 10, 10) == 0
    assert compute_cost("mystery-model", 1, 1) == 15000 + 75000
    assert compute_cost("claude-sonnet-4-5-20250929", -5, 0) == 0


def test_summary_splits_today_month_and_days():
    now = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
    records = [
        _record("anthropic", 1.0, "2025-03-15T01:00:00.000000Z"),
        _record("gemini", 0.5, "2025-03-15T02:00:00.000000Z"),
        _record("anthropic", 2.0, "2025-03-01T09:00:00.000000Z"),
        _record("perplexity", 4.0, "2025-02-27T09:00:00.000000Z"),
    ]
    summary = summarize_usage(records, now, monthly_budget_usd=50.0)

    assert summary.today.requests == 2
    assert summary.today.cost == pytest.approx(1.5)
    assert summary.this_month.requests == 3
    assert summary.this_month.by_api["anthropic"].requests == 2
    assert summary.this_month.by_api["anthropic"].cost == pytest.approx(3.0)
    assert "perplexity" not in summary.this_month.by_api
    assert [d.date for d in summary.daily_breakdown] == ["2025-02-27", "2025-03-01", "2025-03-15"]
    assert summary.budget.remaining == pytest.approx(46.5)
    assert summary.budget.percentage == pytest.approx(7.0)
    assert not summary.budget.warning
    assert not summary.budget.danger


def test_budget_warning_and_danger_thresholds():
    now = datetime(2025, 3, 15, tzinfo=timezone.utc)
    warn = summarize_usage([_record("anthropic", 8.5, "2025-03-02T00:00:00.000000Z")], now, 10.0)
    assert warn.budget.warning and not warn.budget.danger

    over = summarize_usage([_record("anthropic", 12.0, "2025-03-02T00:00:00.000000Z")], now, 10.0)
    assert over.budget.warning and over.budget.danger
    assert over.budget.remaining == 0.0
    assert over.budget.percentage == pytest.approx(120.0)


def test_empty_summary():
    summary = summarize_usage([], datetime(2025, 3, 15, tzinfo=timezone.utc), 50.0)
    assert summary.today.requests == 0
    assert summary.this_month.cost == 0.0
    assert summary.daily_breakdown == []
    assert summary.budget.remaining == 50.0


@pytest.mark.asyncio
async def test_ledger_appends_priced_record():
    store = MemoryUsageStore()
    ledger = UsageLedger(store)
    record = await ledger.record("gemini", "gemini-2.5-flash", 1000, 1000)
    assert store.records == [record]
    assert record.cost_nano_usd == 1000 * 300 + 1000 * 2500
    assert record.timestamp.endswith("Z")


@pytest.mark.asyncio
async def test_ledger_write_failure_is_not_raised():
    ledger = UsageLedger(MemoryUsageStore(fail=True))
    record = await ledger.record("anthropic", "claude-sonnet-4-5-20250929", 10, 10)
    assert record.provider == "anthropic"
