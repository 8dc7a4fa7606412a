"""Weekly budget inference from usage snapshots."""

from __future__ import annotations

import logging
import math
import statistics
from datetime import datetime

from .config import Config
from .db import Database
from .models import BudgetEstimate, BudgetSourceKind, Confidence
from .usage import week_start_for

logger = logging.getLogger(__name__)

# Coefficient of variation above which confidence drops one tier.
_HIGH_VARIANCE_CV = 0.15


def filter_outliers_mad(values: list[float]) -> list[float]:
    """Drop values further than 3×MAD from the median."""
    if len(values) < 3:
        return values
    med = statistics.median(values)
    mad = statistics.median(abs(v - med) for v in values)
    if mad == 0:
        exact = [v for v in values if v == med]
        return exact or values
    threshold = 3 * mad
    return [v for v in values if abs(v - med) <= threshold]


def round_to_nearest(value: float, step: int) -> int:
    if step <= 0:
        return int(value)
    return int(math.floor(value / step + 0.5) * step)


def confidence_for(sample_count: int, cv: float) -> Confidence:
    if sample_count <= 0:
        return Confidence.NONE
    if sample_count < 5:
        tier = Confidence.LOW
    elif sample_count < 20:
        tier = Confidence.MEDIUM
    else:
        tier = Confidence.HIGH
    if cv > _HIGH_VARIANCE_CV:
        tier = {
            Confidence.HIGH: Confidence.MEDIUM,
            Confidence.MEDIUM: Confidence.LOW,
        }.get(tier, Confidence.LOW)
    return tier


class Calibrator:
    """Infers a provider's real weekly budget.

    Each snapshot carrying both a provider-reported percent and a local token
    count yields one estimate, ``local_tokens / (pct / 100)``. The estimate is
    the median of this week's samples after outlier rejection, rounded to the
    nearest thousand tokens.
    """

    def __init__(self, db: Database, config: Config):
        self.db = db
        self.config = config

    async def calibrate(self, provider: str, now: datetime | None = None) -> BudgetEstimate:
        provider = provider.lower()
        budget_cfg = self.config.budget

        if budget_cfg.billing_mode == "api":
            return BudgetEstimate(
                weekly_tokens=self.config.get_provider_budget(provider),
                source=BudgetSourceKind.API,
                confidence=Confidence.HIGH,
            )
        if not budget_cfg.calibrate_enabled:
            return BudgetEstimate(
                weekly_tokens=self.config.get_provider_budget(provider),
                source=BudgetSourceKind.CONFIG,
            )

        week_start = week_start_for(now or datetime.now(), budget_cfg.week_start_day)
        samples = await self.db.calibration_samples(provider, week_start)
        values = [tokens / (pct / 100) for tokens, pct in samples if pct > 0]
        values = filter_outliers_mad(values)
        if not values:
            return BudgetEstimate()

        med = statistics.median(values)
        variance = statistics.pvariance(values) if len(values) > 1 else 0.0
        cv = math.sqrt(variance) / med if med else math.inf
        estimate = BudgetEstimate(
            weekly_tokens=round_to_nearest(med, 1000),
            source=BudgetSourceKind.CALIBRATED,
            confidence=confidence_for(len(values), cv),
            sample_count=len(values),
            variance=variance,
        )
        logger.debug(
            "calibrated %s: %d tokens from %d samples (cv=%.3f, %s)",
            provider, estimate.weekly_tokens, estimate.sample_count, cv,
            estimate.confidence.value,
        )
        return estimate

    async def get_budget(self, provider: str) -> BudgetEstimate:
        return await self.calibrate(provider)
