"""Tests for task selection: filters, scoring, cooldowns, assignments."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from nightshift.config import Config
from nightshift.selector import Selector
from nightshift.tasks import TaskRegistry

PROJECT = "/repo"
ENABLED = ["lint-fix", "bug-finder", "docs-backfill", "changelog-synth"]


@pytest.fixture
def cfg():
    config = Config()
    config.tasks.enabled = list(ENABLED)
    return config


def _selector(cfg, db, seed=None):
    rng = random.Random(seed) if seed is not None else None
    return Selector(cfg, db, TaskRegistry.from_config(cfg), rng=rng)


def _types(picked):
    return [p.definition.type for p in picked]


# --- Ordering ---

@pytest.mark.asyncio
async def test_ties_break_by_name(cfg, memory_db):
    """Equal scores → name ascending."""
    picked = await _selector(cfg, memory_db).select_top_n(1_000_000, PROJECT, 10)
    assert _types(picked) == ["bug-finder", "changelog-synth", "docs-backfill", "lint-fix"]
    assert all(p.score == 3.0 for p in picked)
    assert picked[0].task_id == "bug-finder:/repo"


@pytest.mark.asyncio
async def test_priority_raises_score(cfg, memory_db):
    cfg.tasks.priorities = {"lint-fix": 5}
    picked = await _selector(cfg, memory_db).select_next(1_000_000, PROJECT)
    assert picked.definition.type == "lint-fix"
    assert picked.score == 8.0


@pytest.mark.asyncio
async def test_context_mention_bonus(cfg, memory_db):
    """+2 for a task type mentioned in the project instructions."""
    selector = _selector(cfg, memory_db)
    selector.set_context_mentions(["docs-backfill"])
    assert await selector.score_task("docs-backfill", PROJECT) == 5.0
    assert await selector.score_task("lint-fix", PROJECT) == 3.0
    picked = await selector.select_top_n(1_000_000, PROJECT, 2)
    assert _types(picked) == ["docs-backfill", "bug-finder"]


@pytest.mark.asyncio
async def test_staleness_uses_days_since_run(cfg, memory_db):
    now = datetime.now(timezone.utc)
    await memory_db.record_task_run(PROJECT, "docs-backfill", now=now - timedelta(days=10))
    score = await _selector(cfg, memory_db).score_task("docs-backfill", PROJECT)
    assert score == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_select_top_n_limits(cfg, memory_db):
    selector = _selector(cfg, memory_db)
    assert len(await selector.select_top_n(1_000_000, PROJECT, 2)) == 2
    assert await selector.select_top_n(1_000_000, PROJECT, 0) == []


@pytest.mark.asyncio
async def test_allowed_types_filter_before_limit(cfg, memory_db):
    """A project allow-list removes higher-scored tasks before top-N is taken."""
    cfg.tasks.priorities = {"lint-fix": 5}
    selector = _selector(cfg, memory_db)
    picked = await selector.select_top_n(1_000_000, PROJECT, 1, allowed=["changelog-synth"])
    assert _types(picked) == ["changelog-synth"]
    nxt = await selector.select_next(1_000_000, PROJECT, allowed=["docs-backfill"])
    assert nxt.definition.type == "docs-backfill"
    rand = await selector.select_random(1_000_000, PROJECT, allowed=["bug-finder"])
    assert rand.definition.type == "bug-finder"


# --- Filters ---

@pytest.mark.asyncio
async def test_budget_filter_uses_max_estimate(cfg, memory_db):
    """Only tasks whose max estimate fits the allowance are eligible."""
    picked = await _selector(cfg, memory_db).select_top_n(60_000, PROJECT, 10)
    assert _types(picked) == ["changelog-synth", "lint-fix"]


@pytest.mark.asyncio
async def test_nothing_fits_returns_none(cfg, memory_db):
    assert await _selector(cfg, memory_db).select_next(1_000, PROJECT) is None


@pytest.mark.asyncio
async def test_disabled_tasks_excluded(cfg, memory_db):
    cfg.tasks.disabled = ["bug-finder"]
    picked = await _selector(cfg, memory_db).select_top_n(1_000_000, PROJECT, 10)
    assert "bug-finder" not in _types(picked)


@pytest.mark.asyncio
async def test_disabled_by_default_needs_opt_in(memory_db):
    cfg = Config()
    selector = _selector(cfg, memory_db)
    eligible = await selector.eligible(10_000_000, PROJECT)
    assert "td-review" not in [t.type for t in eligible]
    cfg.tasks.enabled = ["td-review"]
    eligible = await selector.eligible(10_000_000, PROJECT)
    assert [t.type for t in eligible] == ["td-review"]


@pytest.mark.asyncio
async def test_assigned_tasks_excluded(cfg, memory_db):
    selector = _selector(cfg, memory_db)
    task_id = await selector.mark_assigned("bug-finder", PROJECT)
    assert task_id == "bug-finder:/repo"
    assert await selector.is_assigned(task_id)
    picked = await selector.select_top_n(1_000_000, PROJECT, 10)
    assert "bug-finder" not in _types(picked)

    await selector.clear_assigned(task_id)
    picked = await selector.select_top_n(1_000_000, PROJECT, 10)
    assert "bug-finder" in _types(picked)


@pytest.mark.asyncio
async def test_assignment_is_per_project(cfg, memory_db):
    selector = _selector(cfg, memory_db)
    await selector.mark_assigned("bug-finder", "/other")
    picked = await selector.select_top_n(1_000_000, PROJECT, 10)
    assert "bug-finder" in _types(picked)


# --- Cooldowns ---

@pytest.mark.asyncio
async def test_cooldown_from_default_interval(cfg, memory_db):
    """lint-fix ran an hour ago; its 24h default interval hides it."""
    now = datetime.now(timezone.utc)
    await memory_db.record_task_run(PROJECT, "lint-fix", now=now - timedelta(hours=1))
    selector = _selector(cfg, memory_db)
    on_cooldown, remaining, interval = await selector.is_on_cooldown("lint-fix", PROJECT, now=now)
    assert on_cooldown
    assert interval == timedelta(hours=24)
    assert remaining == timedelta(hours=23)
    picked = await selector.select_top_n(1_000_000, PROJECT, 10)
    assert "lint-fix" not in _types(picked)


@pytest.mark.asyncio
async def test_cooldown_expired(cfg, memory_db):
    now = datetime.now(timezone.utc)
    await memory_db.record_task_run(PROJECT, "lint-fix", now=now - timedelta(hours=25))
    on_cooldown, remaining, _ = await _selector(cfg, memory_db).is_on_cooldown(
        "lint-fix", PROJECT, now=now)
    assert not on_cooldown
    assert remaining == timedelta(0)


@pytest.mark.asyncio
async def test_configured_interval_overrides_default(cfg, memory_db):
    cfg.tasks.intervals = {"lint-fix": "30m"}
    now = datetime.now(timezone.utc)
    await memory_db.record_task_run(PROJECT, "lint-fix", now=now - timedelta(hours=1))
    on_cooldown, _, interval = await _selector(cfg, memory_db).is_on_cooldown(
        "lint-fix", PROJECT, now=now)
    assert not on_cooldown
    assert interval == timedelta(minutes=30)


@pytest.mark.asyncio
async def test_cooldown_never_run(cfg, memory_db):
    on_cooldown, remaining, interval = await _selector(cfg, memory_db).is_on_cooldown(
        "docs-backfill", PROJECT)
    assert not on_cooldown
    assert interval == timedelta(hours=168)


@pytest.mark.asyncio
async def test_cooldown_unknown_task(cfg, memory_db):
    assert await _selector(cfg, memory_db).is_on_cooldown("nope", PROJECT) == (
        False, timedelta(0), timedelta(0))


@pytest.mark.asyncio
async def test_simulated_cooldown(cfg, memory_db):
    """Simulated cooldowns hide tasks without touching the database."""
    selector = _selector(cfg, memory_db)
    selector.add_simulated_cooldown("bug-finder", PROJECT)
    assert selector.has_simulated_cooldown("bug-finder", PROJECT + "/")
    picked = await selector.select_top_n(1_000_000, PROJECT, 10)
    assert "bug-finder" not in _types(picked)
    assert await memory_db.last_task_run(PROJECT, "bug-finder") is None

    selector.clear_simulated_cooldowns()
    picked = await selector.select_top_n(1_000_000, PROJECT, 10)
    assert "bug-finder" in _types(picked)


# --- Random / assign ---

@pytest.mark.asyncio
async def test_select_random_from_eligible(cfg, memory_db):
    selector = _selector(cfg, memory_db, seed=7)
    seen = set()
    for _ in range(30):
        picked = await selector.select_random(1_000_000, PROJECT)
        seen.add(picked.definition.type)
        assert picked.score == 3.0
    assert seen <= set(ENABLED)
    assert len(seen) > 1


@pytest.mark.asyncio
async def test_select_random_empty(cfg, memory_db):
    assert await _selector(cfg, memory_db).select_random(100, PROJECT) is None


@pytest.mark.asyncio
async def test_select_and_assign(cfg, memory_db):
    selector = _selector(cfg, memory_db)
    picked = await selector.select_and_assign(1_000_000, PROJECT)
    assert picked.definition.type == "bug-finder"
    assert await memory_db.is_assigned("bug-finder:/repo")
    again = await selector.select_and_assign(1_000_000, PROJECT)
    assert again.definition.type == "changelog-synth"


@pytest.mark.asyncio
async def test_clear_stale_assignments(cfg, memory_db):
    old = datetime.now(timezone.utc) - timedelta(hours=3)
    await memory_db.mark_assigned("lint-fix:/repo", PROJECT, "lint-fix", assigned_at=old)
    selector = _selector(cfg, memory_db)
    assert await selector.clear_stale_assignments(timedelta(hours=2)) == 1
    assert not await memory_db.is_assigned("lint-fix:/repo")
