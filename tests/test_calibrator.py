"""Tests for weekly budget calibration."""

from datetime import datetime, timedelta, timezone

import pytest

from nightshift.calibrator import Calibrator, confidence_for, filter_outliers_mad, round_to_nearest
from nightshift.config import Config
from nightshift.models import BudgetSourceKind, Confidence, Snapshot

NOW = datetime(2026, 3, 11, 14, 0, tzinfo=timezone.utc)
WEEK_START = datetime(2026, 3, 9, tzinfo=timezone.utc)


async def _add_samples(db, local_tokens, pct=10.0, week_start=WEEK_START, provider="codex"):
    for i, tokens in enumerate(local_tokens):
        ts = NOW - timedelta(hours=i + 1)
        await db.insert_snapshot(Snapshot(
            provider=provider, timestamp=ts, week_start=week_start,
            local_tokens=tokens, scraped_pct=pct,
            day_of_week=ts.weekday(), hour_of_day=ts.hour,
        ))


# --- Helpers ---

def test_filter_outliers_mad():
    """Values beyond 3×MAD from the median are dropped."""
    values = [690_000, 700_000, 710_000, 720_000, 5_000_000]
    assert filter_outliers_mad(values) == [690_000, 700_000, 710_000, 720_000]


def test_filter_outliers_needs_three_samples():
    assert filter_outliers_mad([1.0, 1000.0]) == [1.0, 1000.0]


def test_filter_outliers_zero_mad():
    """All-but-one identical → keep the identical values."""
    assert filter_outliers_mad([700.0, 700.0, 900.0]) == [700.0, 700.0]


def test_round_to_nearest_half_up():
    assert round_to_nearest(704_600, 1000) == 705_000
    assert round_to_nearest(1_500, 1000) == 2_000
    assert round_to_nearest(1_499, 1000) == 1_000


@pytest.mark.parametrize("count, cv, expected", [
    (0, 0.0, Confidence.NONE),
    (4, 0.0, Confidence.LOW),
    (5, 0.0, Confidence.MEDIUM),
    (19, 0.0, Confidence.MEDIUM),
    (20, 0.0, Confidence.HIGH),
    (20, 0.2, Confidence.MEDIUM),
    (10, 0.2, Confidence.LOW),
    (3, 0.5, Confidence.LOW),
])
def test_confidence_tiers(count, cv, expected):
    assert confidence_for(count, cv) == expected


# --- Calibrator ---

@pytest.mark.asyncio
async def test_no_samples_returns_empty_estimate(memory_db):
    """Zero samples → empty source and zero budget."""
    estimate = await Calibrator(memory_db, Config()).calibrate("codex", now=NOW)
    assert estimate.weekly_tokens == 0
    assert estimate.source == BudgetSourceKind.NONE
    assert estimate.confidence == Confidence.NONE
    assert estimate.sample_count == 0


@pytest.mark.asyncio
async def test_calibrated_median_after_outliers(memory_db):
    """Outlier dropped; median of the rest rounded to the nearest 1000."""
    await _add_samples(memory_db, [69_000, 70_000, 71_000, 72_000, 500_000])
    estimate = await Calibrator(memory_db, Config()).calibrate("codex", now=NOW)
    assert estimate.source == BudgetSourceKind.CALIBRATED
    assert estimate.weekly_tokens == 705_000
    assert estimate.sample_count == 4
    assert estimate.confidence == Confidence.LOW
    assert estimate.variance > 0


@pytest.mark.asyncio
async def test_only_current_week_samples(memory_db):
    """Snapshots from an earlier week are ignored."""
    await _add_samples(memory_db, [10_000] * 6, week_start=WEEK_START - timedelta(days=7))
    await _add_samples(memory_db, [80_000] * 6)
    estimate = await Calibrator(memory_db, Config()).calibrate("codex", now=NOW)
    assert estimate.weekly_tokens == 800_000
    assert estimate.sample_count == 6
    assert estimate.confidence == Confidence.MEDIUM


@pytest.mark.asyncio
async def test_many_consistent_samples_high_confidence(memory_db):
    await _add_samples(memory_db, [70_000] * 20)
    estimate = await Calibrator(memory_db, Config()).calibrate("codex", now=NOW)
    assert estimate.confidence == Confidence.HIGH
    assert estimate.weekly_tokens == 700_000


@pytest.mark.asyncio
async def test_api_billing_uses_config(memory_db):
    """billing_mode api → configured budget, source api, high confidence."""
    cfg = Config()
    cfg.budget.billing_mode = "api"
    cfg.budget.per_provider = {"codex": 2_000_000}
    await _add_samples(memory_db, [70_000] * 5)
    estimate = await Calibrator(memory_db, cfg).calibrate("codex", now=NOW)
    assert estimate.weekly_tokens == 2_000_000
    assert estimate.source == BudgetSourceKind.API
    assert estimate.confidence == Confidence.HIGH


@pytest.mark.asyncio
async def test_calibration_disabled_uses_config(memory_db):
    cfg = Config()
    cfg.budget.calibrate_enabled = False
    await _add_samples(memory_db, [70_000] * 5)
    estimate = await Calibrator(memory_db, cfg).calibrate("codex", now=NOW)
    assert estimate.weekly_tokens == 700_000
    assert estimate.source == BudgetSourceKind.CONFIG


@pytest.mark.asyncio
async def test_provider_name_case_insensitive(memory_db):
    await _add_samples(memory_db, [70_000] * 3)
    estimate = await Calibrator(memory_db, Config()).calibrate("CODEX", now=NOW)
    assert estimate.sample_count == 3
