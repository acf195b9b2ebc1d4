import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable

from .db import utc_now
from .models import rate_for
from .schemas import BudgetStatus, DailyCost, ProviderUsage, UsagePeriod, UsageRecord, UsageSummary

logger = logging.getLogger("uvicorn.error")

NANO_PER_USD = 1_000_000_000
BUDGET_WARNING_RATIO = 0.8


def compute_cost(model: str, input_tokens: int, output_tokens: int) -> int:
    rate = rate_for(model)
    return max(0, input_tokens) * rate.input_nano + max(0, output_tokens) * rate.output_nano


class UsageLedger:
    """Append-only cost ledger; one record per finished upstream call."""

    def __init__(self, store):
        self.store = store
        self.lock = asyncio.Lock()

    async def record(self, provider: str, model: str, input_tokens: int, output_tokens: int) -> UsageRecord:
        record = UsageRecord(
            provider=provider,
            model=model,
            input_tokens=max(0, int(input_tokens or 0)),
            output_tokens=max(0, int(output_tokens or 0)),
            cost_nano_usd=compute_cost(model, int(input_tokens or 0), int(output_tokens or 0)),
            timestamp=utc_now(),
        )
        async with self.lock:
            try:
                await self.store.append_usage_record(record)
            except Exception:
                # A ledger write must not abort the answer that is already streaming.
                logger.exception("Failed to append usage record for %s/%s", provider, model)
        return record


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _usd(nano: int) -> float:
    return round(nano / NANO_PER_USD, 6)


def _add(period_nano: Dict[str, int], counts: Dict[str, int], provider: str, cost: int) -> None:
    period_nano[provider] = period_nano.get(provider, 0) + cost
    counts[provider] = counts.get(provider, 0) + 1


def _period(nano: Dict[str, int], counts: Dict[str, int]) -> UsagePeriod:
    by_api = {
        provider: ProviderUsage(requests=counts[provider], cost=_usd(nano[provider]))
        for provider in sorted(nano)
    }
    return UsagePeriod(requests=sum(counts.values()), cost=_usd(sum(nano.values())), by_api=by_api)


def summarize_usage(records: Iterable[UsageRecord], now: datetime, monthly_budget_usd: float) -> UsageSummary:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    today = now.date()
    today_nano: Dict[str, int] = {}
    today_counts: Dict[str, int] = {}
    month_nano: Dict[str, int] = {}
    month_counts: Dict[str, int] = {}
    daily: Dict[str, int] = {}
    for record in records:
        moment = _parse_timestamp(record.timestamp)
        day = moment.date()
        daily[day.isoformat()] = daily.get(day.isoformat(), 0) + record.cost_nano_usd
        if day == today:
            _add(today_nano, today_counts, record.provider, record.cost_nano_usd)
        if (day.year, day.month) == (today.year, today.month):
            _add(month_nano, month_counts, record.provider, record.cost_nano_usd)

    month_cost = sum(month_nano.values()) / NANO_PER_USD
    limit = float(monthly_budget_usd)
    percentage = (month_cost / limit * 100.0) if limit > 0 else 0.0
    budget = BudgetStatus(
        limit=limit,
        remaining=round(max(0.0, limit - month_cost), 6),
        percentage=round(percentage, 2),
        warning=limit > 0 and month_cost > limit * BUDGET_WARNING_RATIO,
        danger=limit > 0 and month_cost > limit,
    )
    return UsageSummary(
        today=_period(today_nano, today_counts),
        this_month=_period(month_nano, month_counts),
        daily_breakdown=[DailyCost(date=day, cost=_usd(cost)) for day, cost in sorted(daily.items())],
        budget=budget,
    )
