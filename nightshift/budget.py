"""Budget engine: turns provider usage into a per-cycle token allowance."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Mapping, Protocol

import anyio

from .config import KNOWN_PROVIDERS, Config
from .errors import BudgetError
from .models import AllowanceResult, BudgetEstimate, BudgetMode, BudgetSourceKind
from .usage import ResetTimeSource, UsageSource, days_until_weekly_reset

logger = logging.getLogger(__name__)


class BudgetSource(Protocol):
    async def get_budget(self, provider: str) -> BudgetEstimate: ...


class UsagePredictor(Protocol):
    async def predicted_usage(self, provider: str, weekly_budget: int) -> int: ...


# ---------------------------------------------------------------------------
# Allowance arithmetic
# ---------------------------------------------------------------------------

def end_of_week_multiplier(remaining_days: int, aggressive: bool) -> float:
    """Spend-up factor for the final two days of the week."""
    if not aggressive or remaining_days > 2:
        return 1.0
    return 1.0 + (3 - max(1, remaining_days)) * 0.5


def daily_allowance(
    weekly_budget: int,
    used_percent: float,
    max_percent: int,
    reserve_percent: int,
    predicted_usage: int = 0,
) -> AllowanceResult:
    daily_budget = max(0, weekly_budget) // 7
    used = int(daily_budget * used_percent / 100)
    remaining = daily_budget - used
    pre_reserve = int(remaining * max_percent / 100)
    reserve = int(daily_budget * reserve_percent / 100)
    return AllowanceResult(
        provider="",
        mode=BudgetMode.DAILY,
        allowance=max(0, pre_reserve - reserve - max(0, predicted_usage)),
        used_percent=used_percent,
        reserve_amount=reserve,
        predicted_usage=predicted_usage,
        remaining_days=1,
        weekly_budget=weekly_budget,
        budget_base=daily_budget,
    )


def weekly_allowance(
    weekly_budget: int,
    used_percent: float,
    remaining_days: int,
    max_percent: int,
    reserve_percent: int,
    predicted_usage: int = 0,
    aggressive_end_of_week: bool = False,
) -> AllowanceResult:
    """Per-day share of what is left this week.

    Integer truncation happens per day first: ``perDay`` is truncated, then
    ``preReserve`` is truncated after applying max_percent and the multiplier.
    """
    weekly_budget = max(0, weekly_budget)
    remaining_days = max(1, remaining_days)
    used = int(weekly_budget * used_percent / 100)
    remaining = weekly_budget - used
    per_day = int(remaining / remaining_days)
    multiplier = end_of_week_multiplier(remaining_days, aggressive_end_of_week)
    pre_reserve = int(per_day * max_percent / 100 * multiplier)
    pre_reserve = min(pre_reserve, remaining)
    reserve = int(weekly_budget * reserve_percent / 100)
    return AllowanceResult(
        provider="",
        mode=BudgetMode.WEEKLY,
        allowance=max(0, pre_reserve - reserve - max(0, predicted_usage)),
        used_percent=used_percent,
        reserve_amount=reserve,
        predicted_usage=predicted_usage,
        remaining_days=remaining_days,
        multiplier=multiplier,
        weekly_budget=weekly_budget,
        budget_base=weekly_budget,
    )


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class BudgetManager:
    """Computes allowances per provider.

    Calibration and trend prediction are optional; when they are missing or
    fail the configured budget and a zero prediction are used instead.
    """

    def __init__(
        self,
        config: Config,
        usage_sources: Mapping[str, UsageSource],
        budget_source: BudgetSource | None = None,
        trend: UsagePredictor | None = None,
    ):
        self.config = config
        self.usage_sources = dict(usage_sources)
        self.budget_source = budget_source
        self.trend = trend

    async def resolve_budget(self, provider: str) -> BudgetEstimate:
        estimate = BudgetEstimate(
            weekly_tokens=self.config.get_provider_budget(provider),
            source=BudgetSourceKind.CONFIG,
        )
        if self.budget_source is not None:
            try:
                found = await self.budget_source.get_budget(provider)
            except Exception as exc:
                logger.warning("budget source failed for %s, using config: %s", provider, exc)
            else:
                if found is not None and found.weekly_tokens > 0:
                    estimate = found
                    if estimate.source == BudgetSourceKind.NONE:
                        estimate.source = BudgetSourceKind.CALIBRATED
        if estimate.weekly_tokens <= 0:
            raise BudgetError(provider, f"invalid weekly budget: {estimate.weekly_tokens}")
        return estimate

    async def _used_percent(self, provider: str, source: UsageSource, mode: str, budget: int) -> float:
        try:
            return await anyio.to_thread.run_sync(source.get_used_percent, mode, budget)
        except BudgetError:
            raise
        except Exception as exc:
            raise BudgetError(provider, f"reading usage: {exc}") from exc

    async def _remaining_days(self, source: UsageSource, now: datetime) -> int:
        reset_time = None
        if isinstance(source, ResetTimeSource):
            try:
                reset_time = await anyio.to_thread.run_sync(source.get_reset_time, "weekly")
            except Exception as exc:
                logger.debug("reset time unavailable: %s", exc)
        if reset_time is not None and now.tzinfo is None:
            now = now.astimezone()
        return days_until_weekly_reset(now, self.config.budget.week_start_day, reset_time)

    async def _predicted(self, provider: str, weekly_budget: int) -> int:
        if self.trend is None:
            return 0
        try:
            return max(0, int(await self.trend.predicted_usage(provider, weekly_budget)))
        except Exception as exc:
            logger.warning("trend prediction failed for %s: %s", provider, exc)
            return 0

    async def calculate_allowance(
        self, provider: str, now: datetime | None = None
    ) -> AllowanceResult:
        if provider not in KNOWN_PROVIDERS or provider not in self.usage_sources:
            raise BudgetError(provider, "unknown or unconfigured provider")
        source = self.usage_sources[provider]
        cfg = self.config.budget
        now = now or datetime.now().astimezone()

        estimate = await self.resolve_budget(provider)
        weekly = estimate.weekly_tokens
        used_percent = await self._used_percent(provider, source, cfg.mode, weekly)
        predicted = await self._predicted(provider, weekly)

        if cfg.mode == BudgetMode.WEEKLY.value:
            remaining_days = await self._remaining_days(source, now)
            result = weekly_allowance(
                weekly, used_percent, remaining_days, cfg.max_percent,
                cfg.reserve_percent, predicted, cfg.aggressive_end_of_week,
            )
        else:
            result = daily_allowance(
                weekly, used_percent, cfg.max_percent, cfg.reserve_percent, predicted,
            )

        result.provider = provider
        result.budget_source = estimate.source
        result.budget_confidence = estimate.confidence
        result.budget_sample_count = estimate.sample_count
        logger.info(
            "allowance for %s: %d tokens (%s mode, %.1f%% used, budget %d from %s)",
            provider, result.allowance, result.mode.value, used_percent, weekly,
            estimate.source.value,
        )
        return result
