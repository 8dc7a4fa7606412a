"""Tests for task definitions and the registry."""

from datetime import timedelta

import pytest

from nightshift.config import Config, CustomTaskConfig
from nightshift.errors import RegistryError
from nightshift.tasks import (
    BUILTIN_TASKS, Category, CostTier, RiskLevel, TaskDefinition, TaskRegistry,
    custom_definition, default_interval_for,
)


def _custom(task_type="changelog-check", **kwargs):
    fields = dict(category="safe", cost_tier="low", risk_level="low")
    fields.update(kwargs)
    return CustomTaskConfig(type=task_type, name="Changelog Check", **fields)


def test_builtin_catalogue_size():
    """58 built-in tasks across all six categories."""
    assert len(BUILTIN_TASKS) == 58
    assert {d.category for d in BUILTIN_TASKS.values()} == set(Category)


def test_estimated_tokens_from_cost_tier():
    assert BUILTIN_TASKS["lint-fix"].estimated_tokens() == (10_000, 50_000)
    assert BUILTIN_TASKS["migration-rehearsal"].cost_tier == CostTier.VERY_HIGH
    assert BUILTIN_TASKS["migration-rehearsal"].risk_level == RiskLevel.HIGH
    assert BUILTIN_TASKS["migration-rehearsal"].estimated_tokens() == (500_000, 1_000_000)


def test_default_intervals():
    """Category defaults with per-task overrides."""
    assert default_interval_for(Category.PR) == timedelta(hours=168)
    assert default_interval_for(Category.SAFE) == timedelta(hours=336)
    assert default_interval_for(Category.EMERGENCY) == timedelta(hours=720)
    assert BUILTIN_TASKS["lint-fix"].default_interval == timedelta(hours=24)
    assert BUILTIN_TASKS["bug-finder"].default_interval == timedelta(hours=72)


def test_td_review_disabled_by_default():
    assert BUILTIN_TASKS["td-review"].disabled_by_default
    assert not BUILTIN_TASKS["lint-fix"].disabled_by_default


def test_labels():
    assert CostTier.VERY_HIGH.label == "Very High (500k+)"
    assert Category.PR.label == "It's done - here's the PR"


def test_registry_get_unknown():
    """Unknown task type → RegistryError."""
    with pytest.raises(RegistryError, match="unknown task type"):
        TaskRegistry().get("nope")


def test_register_custom_and_lookup():
    registry = TaskRegistry()
    definition = custom_definition(_custom())
    registry.register_custom(definition)
    assert registry.get("changelog-check") is definition
    assert registry.is_custom("changelog-check")
    assert "changelog-check" in registry.types()
    assert definition.default_interval == timedelta(hours=336)
    assert definition in registry.by_category(Category.SAFE)


def test_register_custom_collides_with_builtin():
    """A custom task may not shadow a built-in."""
    with pytest.raises(RegistryError, match="built-in"):
        TaskRegistry().register_custom(custom_definition(_custom("lint-fix")))


def test_register_custom_twice():
    registry = TaskRegistry()
    registry.register_custom(custom_definition(_custom()))
    with pytest.raises(RegistryError, match="twice"):
        registry.register_custom(custom_definition(_custom()))


def test_clear_custom():
    registry = TaskRegistry()
    registry.register_custom(custom_definition(_custom()))
    registry.clear_custom()
    assert not registry.is_custom("changelog-check")
    assert len(registry.all()) == 58


def test_custom_definition_invalid_category():
    with pytest.raises(RegistryError):
        custom_definition(_custom(category="misc"))


def test_custom_interval_kept():
    definition = custom_definition(_custom(interval=timedelta(hours=6)))
    assert definition.default_interval == timedelta(hours=6)


def test_from_config_builds_fresh_registry():
    """Each config load yields an independent registry."""
    cfg = Config()
    cfg.tasks.custom = [_custom()]
    first = TaskRegistry.from_config(cfg)
    cfg.tasks.custom = []
    second = TaskRegistry.from_config(cfg)
    assert first.is_custom("changelog-check")
    assert not second.is_custom("changelog-check")


def test_filters_by_cost_and_risk():
    registry = TaskRegistry()
    low = registry.by_cost_tier(CostTier.LOW)
    assert BUILTIN_TASKS["lint-fix"] in low
    assert all(d.cost_tier == CostTier.LOW for d in low)
    high_risk = registry.by_risk_level(RiskLevel.HIGH)
    assert BUILTIN_TASKS["migration-rehearsal"] in high_risk


def test_definitions_are_frozen():
    with pytest.raises(Exception):
        BUILTIN_TASKS["lint-fix"].name = "changed"  # type: ignore[misc]


def test_task_definition_equality():
    a = TaskDefinition("x", "X", "", Category.MAP, CostTier.LOW, RiskLevel.LOW, timedelta(0))
    b = TaskDefinition("x", "X", "", Category.MAP, CostTier.LOW, RiskLevel.LOW, timedelta(0))
    assert a == b
