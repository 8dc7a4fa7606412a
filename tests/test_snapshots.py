"""Tests for snapshot capture and background loops."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from nightshift.models import Snapshot
from nightshift.snapshots import SnapshotCollector, run_prune_loop, run_snapshot_loop, sleep_or_cancel

NOW = datetime(2026, 3, 11, 14, 0, tzinfo=timezone.utc)


class FakeSource:
    name = "fake"

    def __init__(self, weekly=175_000, daily=25_000, scraped=None, reset=None, error=None):
        self.weekly = weekly
        self.daily = daily
        self.scraped = scraped
        self.reset = reset
        self.error = error

    def get_weekly_tokens(self):
        if self.error is not None:
            raise self.error
        return self.weekly

    def get_today_tokens(self):
        return self.daily

    def get_scraped_percent(self):
        return self.scraped

    def get_reset_time(self, mode):
        return self.reset if mode == "weekly" else None


class PlainSource:
    """No scraped percent, no reset time."""

    def get_weekly_tokens(self):
        return 10_000

    def get_today_tokens(self):
        return 1_000


@pytest.mark.asyncio
async def test_take_snapshot_fields(memory_db):
    reset = NOW + timedelta(days=2)
    collector = SnapshotCollector(memory_db, {"codex": FakeSource(scraped=25.0, reset=reset)})
    snap = await collector.take_snapshot("codex", now=NOW)

    assert snap.id > 0
    assert snap.local_tokens == 175_000
    assert snap.local_daily == 25_000
    assert snap.scraped_pct == 25.0
    assert snap.inferred_budget == 700_000
    assert snap.week_start.date().isoformat() == "2026-03-09"
    assert snap.day_of_week == 2
    assert snap.hour_of_day == 14
    assert snap.weekly_reset_time == reset.isoformat()
    assert snap.session_reset_time == ""

    stored = await memory_db.latest_snapshot("codex")
    assert stored.inferred_budget == 700_000


@pytest.mark.asyncio
async def test_snapshot_without_scraped_percent(memory_db):
    collector = SnapshotCollector(memory_db, {"claude": PlainSource()})
    snap = await collector.take_snapshot("claude", now=NOW)
    assert snap.scraped_pct is None
    assert snap.inferred_budget is None
    assert snap.weekly_reset_time == ""


@pytest.mark.asyncio
async def test_sunday_week_start(memory_db):
    collector = SnapshotCollector(memory_db, {"claude": PlainSource()}, week_start_day="sunday")
    snap = await collector.take_snapshot("claude", now=NOW)
    assert snap.week_start.date().isoformat() == "2026-03-08"


@pytest.mark.asyncio
async def test_unknown_provider(memory_db):
    with pytest.raises(KeyError):
        await SnapshotCollector(memory_db, {}).take_snapshot("claude")


@pytest.mark.asyncio
async def test_take_all_skips_failures(memory_db):
    collector = SnapshotCollector(memory_db, {
        "claude": FakeSource(error=OSError("unreadable")),
        "codex": FakeSource(),
    })
    taken = await collector.take_all()
    assert [s.provider for s in taken] == ["codex"]


@pytest.mark.asyncio
async def test_sleep_or_cancel():
    cancel = asyncio.Event()
    assert await sleep_or_cancel(cancel, 0.01) is False
    cancel.set()
    assert await sleep_or_cancel(cancel, 10) is True


@pytest.mark.asyncio
async def test_snapshot_loop_stops_on_cancel(memory_db):
    """Loop captures immediately, then exits promptly once cancelled."""
    collector = SnapshotCollector(memory_db, {"codex": FakeSource()})
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel.set)
    await asyncio.wait_for(run_snapshot_loop(collector, timedelta(minutes=30), cancel), timeout=2)
    assert len(await memory_db.get_snapshots("codex")) == 1


@pytest.mark.asyncio
async def test_prune_loop(memory_db):
    old = datetime.now(timezone.utc) - timedelta(days=100)
    await memory_db.insert_snapshot(Snapshot(provider="codex", timestamp=old))
    await memory_db.insert_snapshot(Snapshot(provider="codex", timestamp=datetime.now(timezone.utc)))
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel.set)
    await asyncio.wait_for(run_prune_loop(memory_db, 90, cancel), timeout=2)
    assert len(await memory_db.get_snapshots("codex")) == 1


class FakeScraper:
    def __init__(self, pct=35.0, error=None):
        self.pct = pct
        self.error = error
        self.calls: list[str] = []

    def supports(self, provider):
        return provider in ("claude", "codex")

    async def scrape(self, provider):
        self.calls.append(provider)
        if self.error is not None:
            raise self.error
        return self.pct


@pytest.mark.asyncio
async def test_scraper_fills_claude_percent(memory_db):
    """Claude snapshots get the percent from the usage screen and feed calibration."""
    scraper = FakeScraper(pct=25.0)
    collector = SnapshotCollector(memory_db, {"claude": PlainSource()}, scraper=scraper)
    snap = await collector.take_snapshot("claude", now=NOW)

    assert scraper.calls == ["claude"]
    assert snap.scraped_pct == 25.0
    assert snap.inferred_budget == 40_000
    samples = await memory_db.calibration_samples("claude", snap.week_start.date())
    assert samples == [(10_000, 25.0)]


@pytest.mark.asyncio
async def test_scraper_skipped_when_percent_local(memory_db):
    scraper = FakeScraper()
    collector = SnapshotCollector(memory_db, {"codex": FakeSource(scraped=25.0)}, scraper=scraper)
    snap = await collector.take_snapshot("codex", now=NOW)
    assert scraper.calls == []
    assert snap.scraped_pct == 25.0


@pytest.mark.asyncio
async def test_scraper_failure_keeps_snapshot(memory_db):
    from nightshift.errors import ScrapeError

    scraper = FakeScraper(error=ScrapeError("no tmux pane"))
    collector = SnapshotCollector(memory_db, {"claude": PlainSource()}, scraper=scraper)
    snap = await collector.take_snapshot("claude", now=NOW)
    assert snap.scraped_pct is None
    assert await memory_db.latest_snapshot("claude") is not None


@pytest.mark.asyncio
async def test_scraper_out_of_range_ignored(memory_db):
    scraper = FakeScraper(pct=140.0)
    collector = SnapshotCollector(memory_db, {"claude": PlainSource()}, scraper=scraper)
    snap = await collector.take_snapshot("claude", now=NOW)
    assert snap.scraped_pct is None
    assert snap.inferred_budget is None
