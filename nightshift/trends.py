"""Daytime usage prediction from snapshot history."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from .db import Database

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 14
MAX_LOOKBACK_DAYS = 30


class TrendAnalyzer:
    """Predicts how many tokens the user will still burn today.

    Snapshots record the running daily total (``local_daily``) at a given hour.
    Averaging by hour gives a typical day's curve; the gap between its peak and
    the current hour's value is what interactive use usually adds before the
    day ends.
    """

    def __init__(self, db: Database, lookback_days: int = DEFAULT_LOOKBACK_DAYS):
        if lookback_days <= 0:
            lookback_days = DEFAULT_LOOKBACK_DAYS
        self.db = db
        self.lookback_days = min(lookback_days, MAX_LOOKBACK_DAYS)

    async def predict_daytime_usage(
        self, provider: str, weekly_budget: int, now: datetime | None = None
    ) -> int:
        now = now or datetime.now().astimezone()
        since = now - timedelta(days=self.lookback_days)
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        averages = await self.db.hourly_averages(provider, since)
        if not averages:
            return 0

        daily_total = max(averages.values())
        earlier = [h for h in averages if h <= now.hour]
        current = averages[max(earlier)] if earlier else 0.0

        predicted = max(0.0, daily_total - current)
        if weekly_budget > 0:
            predicted = min(predicted, weekly_budget / 7)
        return int(round(predicted))

    async def predicted_usage(self, provider: str, weekly_budget: int) -> int:
        return await self.predict_daytime_usage(provider, weekly_budget)
