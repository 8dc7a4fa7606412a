"""Usage snapshot capture and background snapshot/prune loops."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Mapping

import anyio

from .db import Database
from .errors import NightshiftError
from .models import Snapshot
from .usage import week_start_for

logger = logging.getLogger(__name__)

PRUNE_INTERVAL = timedelta(hours=24)


def _infer_budget(weekly: int, scraped: float | None) -> int | None:
    if scraped is None or scraped <= 0 or weekly <= 0:
        return None
    return int(weekly / (scraped / 100))


def _reset_iso(source, mode: str) -> str:
    getter = getattr(source, "get_reset_time", None)
    if getter is None:
        return ""
    reset = getter(mode)
    return reset.isoformat() if reset else ""


class SnapshotCollector:
    """Records point-in-time usage for each provider.

    A *scraper* fills in the provider-reported percent for sources that
    cannot read it locally (Claude always, Codex without rate-limit logs).
    """

    def __init__(
        self,
        db: Database,
        sources: Mapping[str, object],
        week_start_day: str = "monday",
        scraper=None,
    ):
        self.db = db
        self.sources = dict(sources)
        self.week_start_day = week_start_day
        self.scraper = scraper

    def _read(self, provider: str, now: datetime) -> Snapshot:
        source = self.sources[provider]
        weekly = int(source.get_weekly_tokens())
        daily = int(source.get_today_tokens())
        scraper = getattr(source, "get_scraped_percent", None)
        scraped = scraper() if scraper is not None else None

        week_start = week_start_for(now, self.week_start_day)
        return Snapshot(
            provider=provider,
            timestamp=now,
            week_start=datetime(week_start.year, week_start.month, week_start.day,
                                tzinfo=now.tzinfo),
            local_tokens=weekly,
            local_daily=daily,
            scraped_pct=scraped,
            inferred_budget=_infer_budget(weekly, scraped),
            day_of_week=now.weekday(),
            hour_of_day=now.hour,
            session_reset_time=_reset_iso(source, "daily"),
            weekly_reset_time=_reset_iso(source, "weekly"),
        )

    async def take_snapshot(self, provider: str, now: datetime | None = None) -> Snapshot:
        if provider not in self.sources:
            raise KeyError(f"no usage source for provider {provider!r}")
        now = now or datetime.now().astimezone()
        snap = await anyio.to_thread.run_sync(self._read, provider, now)
        if snap.scraped_pct is None and self.scraper is not None:
            if self.scraper.supports(provider):
                await self._scrape_into(snap)
        await self.db.insert_snapshot(snap)
        logger.debug(
            "snapshot %s: weekly=%d daily=%d pct=%s",
            provider, snap.local_tokens, snap.local_daily, snap.scraped_pct,
        )
        return snap

    async def _scrape_into(self, snap: Snapshot) -> None:
        try:
            pct = await self.scraper.scrape(snap.provider)
        except (NightshiftError, OSError) as exc:
            logger.warning("usage scrape failed for %s: %s", snap.provider, exc)
            return
        if not 0 <= pct <= 100:
            logger.warning("ignoring out-of-range usage %.1f%% for %s", pct, snap.provider)
            return
        snap.scraped_pct = pct
        snap.inferred_budget = _infer_budget(snap.local_tokens, pct)

    async def take_all(self) -> list[Snapshot]:
        taken = []
        for provider in self.sources:
            try:
                taken.append(await self.take_snapshot(provider))
            except Exception as exc:
                logger.warning("snapshot failed for %s: %s", provider, exc)
        return taken


async def sleep_or_cancel(cancel: asyncio.Event, seconds: float) -> bool:
    """Wait *seconds*; return True if *cancel* fired first."""
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


async def run_snapshot_loop(
    collector: SnapshotCollector, interval: timedelta, cancel: asyncio.Event
) -> None:
    """Capture snapshots for all providers every *interval* until cancelled."""
    seconds = max(1.0, interval.total_seconds())
    while not cancel.is_set():
        await collector.take_all()
        if await sleep_or_cancel(cancel, seconds):
            break
    logger.debug("snapshot loop stopped")


async def run_prune_loop(
    db: Database,
    retention_days: int,
    cancel: asyncio.Event,
    interval: timedelta = PRUNE_INTERVAL,
) -> None:
    """Delete snapshots older than *retention_days* once per *interval*."""
    seconds = max(1.0, interval.total_seconds())
    while not cancel.is_set():
        try:
            removed = await db.prune_snapshots(retention_days)
            if removed:
                logger.info("pruned %d snapshot(s) older than %d days", removed, retention_days)
        except Exception as exc:
            logger.warning("snapshot prune failed: %s", exc)
        if await sleep_or_cancel(cancel, seconds):
            break
    logger.debug("prune loop stopped")
