"""Task definitions and the registry of built-in and custom tasks."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from .errors import RegistryError


class Category(str, Enum):
    PR = "pr"
    ANALYSIS = "analysis"
    OPTIONS = "options"
    SAFE = "safe"
    MAP = "map"
    EMERGENCY = "emergency"

    @property
    def label(self) -> str:
        return _CATEGORY_LABELS[self]


_CATEGORY_LABELS = {
    Category.PR: "It's done - here's the PR",
    Category.ANALYSIS: "Here's what I found",
    Category.OPTIONS: "Here are options",
    Category.SAFE: "I tried it safely",
    Category.MAP: "Here's the map",
    Category.EMERGENCY: "For when things go sideways",
}


class CostTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"

    @property
    def token_range(self) -> tuple[int, int]:
        return _COST_RANGES[self]

    @property
    def label(self) -> str:
        return _COST_LABELS[self]


_COST_RANGES = {
    CostTier.LOW: (10_000, 50_000),
    CostTier.MEDIUM: (50_000, 150_000),
    CostTier.HIGH: (150_000, 500_000),
    CostTier.VERY_HIGH: (500_000, 1_000_000),
}

_COST_LABELS = {
    CostTier.LOW: "Low (10-50k)",
    CostTier.MEDIUM: "Medium (50-150k)",
    CostTier.HIGH: "High (150-500k)",
    CostTier.VERY_HIGH: "Very High (500k+)",
}


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


_CATEGORY_INTERVALS = {
    Category.PR: timedelta(hours=168),
    Category.ANALYSIS: timedelta(hours=72),
    Category.OPTIONS: timedelta(hours=168),
    Category.SAFE: timedelta(hours=336),
    Category.MAP: timedelta(hours=168),
    Category.EMERGENCY: timedelta(hours=720),
}

_INTERVAL_OVERRIDES = {
    "lint-fix": timedelta(hours=24),
    "commit-normalize": timedelta(hours=24),
    "bug-finder": timedelta(hours=72),
    "security-footgun": timedelta(hours=72),
    "pii-scanner": timedelta(hours=72),
    "test-gap": timedelta(hours=72),
    "dead-code": timedelta(hours=72),
}


def default_interval_for(category: Category, task_type: str = "") -> timedelta:
    """Cooldown applied when config does not set one for *task_type*."""
    if task_type in _INTERVAL_OVERRIDES:
        return _INTERVAL_OVERRIDES[task_type]
    return _CATEGORY_INTERVALS[category]


@dataclass(frozen=True)
class TaskDefinition:
    """A reusable kind of work with cost and risk metadata."""

    type: str
    name: str
    description: str
    category: Category
    cost_tier: CostTier
    risk_level: RiskLevel
    default_interval: timedelta
    disabled_by_default: bool = False
    custom: bool = False

    def estimated_tokens(self) -> tuple[int, int]:
        return self.cost_tier.token_range


# ---------------------------------------------------------------------------
# Built-in catalogue
# ---------------------------------------------------------------------------

_L, _M, _H, _VH = CostTier.LOW, CostTier.MEDIUM, CostTier.HIGH, CostTier.VERY_HIGH
_RL, _RM, _RH = RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH

# (type, name, cost, risk, description)
_BUILTINS: dict[Category, list[tuple[str, str, CostTier, RiskLevel, str]]] = {
    Category.PR: [
        ("lint-fix", "Linter Fixes", _L, _RL,
         "Run the project's linters and fix the warnings they report."),
        ("bug-finder", "Bug Finder & Fixer", _H, _RM,
         "Find likely bugs and fix the ones with an obvious, contained fix."),
        ("auto-dry", "Auto DRY Refactoring", _H, _RM,
         "Consolidate duplicated code into shared helpers."),
        ("api-contract-verify", "API Contract Verification", _M, _RL,
         "Check handlers and clients against the declared API contract."),
        ("backward-compat", "Backward-Compatibility Checks", _M, _RL,
         "Detect changes that break existing callers or stored data."),
        ("build-optimize", "Build Time Optimization", _H, _RM,
         "Speed up the build by trimming redundant steps and dependencies."),
        ("docs-backfill", "Documentation Backfiller", _M, _RL,
         "Write missing docstrings and README sections for public code."),
        ("commit-normalize", "Commit Message Normalizer", _L, _RL,
         "Add a commit message template and hook matching the repo convention."),
        ("changelog-synth", "Changelog Synthesizer", _L, _RL,
         "Draft changelog entries from merged work since the last release."),
        ("release-notes", "Release Note Drafter", _L, _RL,
         "Draft release notes for the upcoming version."),
        ("adr-draft", "ADR Drafter", _M, _RL,
         "Write architecture decision records for undocumented decisions."),
        ("td-review", "TD Review Session", _H, _RM,
         "Review open technical-debt items and close or refresh them."),
    ],
    Category.ANALYSIS: [
        ("doc-drift", "Doc Drift Detector", _M, _RL,
         "Find documentation that no longer matches the code."),
        ("semantic-diff", "Semantic Diff Explainer", _M, _RL,
         "Explain the behavioural meaning of recent changes."),
        ("dead-code", "Dead Code Detector", _M, _RL,
         "List functions, modules and flags that nothing uses."),
        ("dependency-risk", "Dependency Risk Scanner", _M, _RL,
         "Flag outdated, abandoned or vulnerable dependencies."),
        ("test-gap", "Test Gap Finder", _M, _RL,
         "Find important code paths without test coverage."),
        ("test-flakiness", "Test Flakiness Analyzer", _M, _RL,
         "Identify tests that depend on timing, ordering or the network."),
        ("logging-audit", "Logging Quality Auditor", _M, _RL,
         "Review log statements for missing context and noisy output."),
        ("metrics-coverage", "Metrics Coverage Analyzer", _M, _RL,
         "Find critical paths without metrics."),
        ("perf-regression", "Performance Regression Spotter", _M, _RL,
         "Spot recent changes likely to have slowed hot paths."),
        ("cost-attribution", "Cost Attribution Estimator", _M, _RL,
         "Estimate which components drive infrastructure cost."),
        ("security-footgun", "Security Foot-Gun Finder", _M, _RL,
         "Look for insecure defaults and dangerous API usage."),
        ("pii-scanner", "PII Exposure Scanner", _M, _RL,
         "Find places where personal data is logged or leaked."),
        ("privacy-policy", "Privacy Policy Consistency Checker", _M, _RL,
         "Compare data handling in code with the published privacy policy."),
        ("schema-evolution", "Schema Evolution Advisor", _M, _RL,
         "Review schema changes for migration and compatibility risk."),
        ("event-taxonomy", "Event Taxonomy Normalizer", _M, _RL,
         "Propose consistent names for analytics and domain events."),
        ("roadmap-entropy", "Roadmap Entropy Detector", _M, _RL,
         "Find abandoned or contradictory work-in-progress."),
        ("bus-factor", "Bus-Factor Analyzer", _M, _RL,
         "Find areas of the code owned by a single contributor."),
        ("knowledge-silo", "Knowledge Silo Detector", _M, _RL,
         "Find knowledge concentrated in few people or documents."),
    ],
    Category.OPTIONS: [
        ("groomer", "Task Groomer", _M, _RL,
         "Refine open issues into actionable, well-scoped tasks."),
        ("guide-improver", "Guide/Skill Improver", _M, _RL,
         "Suggest improvements to contributor and agent guides."),
        ("idea-generator", "Idea Generator", _M, _RL,
         "Propose small improvements worth doing next."),
        ("tech-debt-classify", "Tech-Debt Classifier", _M, _RL,
         "Classify technical debt by cost and urgency."),
        ("why-annotator", "Why Does This Exist Annotator", _M, _RL,
         "Explain the origin of confusing code from its history."),
        ("edge-case-enum", "Edge-Case Enumerator", _M, _RL,
         "Enumerate edge cases the current code does not handle."),
        ("error-msg-improve", "Error-Message Improver", _M, _RL,
         "Rewrite unclear error messages."),
        ("slo-suggester", "SLO/SLA Candidate Suggester", _M, _RL,
         "Suggest service level objectives from the code's critical paths."),
        ("ux-copy-sharpener", "UX Copy Sharpener", _M, _RL,
         "Tighten user-facing text."),
        ("a11y-lint", "Accessibility Linting", _M, _RL,
         "Find accessibility problems in user interfaces."),
        ("service-advisor", "Should This Be a Service Advisor", _M, _RL,
         "Assess whether components should be split out or merged."),
        ("ownership-boundary", "Ownership Boundary Suggester", _M, _RL,
         "Propose code ownership boundaries."),
        ("oncall-estimator", "Oncall Load Estimator", _M, _RL,
         "Estimate on-call burden from error handling and alerting."),
    ],
    Category.SAFE: [
        ("migration-rehearsal", "Migration Rehearsal Runner", _VH, _RH,
         "Rehearse pending migrations against a throwaway copy."),
        ("contract-fuzzer", "Integration Contract Fuzzer", _H, _RM,
         "Fuzz integration boundaries with malformed input."),
        ("golden-path", "Golden-Path Recorder", _H, _RM,
         "Record the main user flows as reproducible scripts."),
        ("perf-profile", "Performance Profiling Runs", _H, _RM,
         "Profile hot paths and report the biggest costs."),
        ("allocation-profile", "Allocation/Hot-Path Profiling", _H, _RM,
         "Profile allocations in frequently executed code."),
    ],
    Category.MAP: [
        ("visibility-instrument", "Visibility Instrumentor", _M, _RL,
         "Map where the system lacks logs, metrics or traces."),
        ("repo-topology", "Repo Topology Visualizer", _M, _RL,
         "Describe module structure and dependency direction."),
        ("permissions-mapper", "Permissions/Auth Surface Mapper", _M, _RL,
         "Map every place that checks or grants permissions."),
        ("data-lifecycle", "Data Lifecycle Tracer", _M, _RL,
         "Trace how data is created, stored, copied and deleted."),
        ("feature-flag-monitor", "Feature Flag Lifecycle Monitor", _M, _RL,
         "List feature flags and flag the stale ones."),
        ("ci-signal-noise", "CI Signal-to-Noise Scorer", _M, _RL,
         "Score CI jobs by how often they catch real problems."),
        ("historical-context", "Historical Context Summarizer", _M, _RL,
         "Summarize the history of the most-changed areas."),
    ],
    Category.EMERGENCY: [
        ("runbook-gen", "Runbook Generator", _M, _RL,
         "Write runbooks for the failure modes the code handles."),
        ("rollback-plan", "Rollback Plan Generator", _M, _RL,
         "Write rollback plans for recent risky changes."),
        ("postmortem-gen", "Incident Postmortem Draft Generator", _M, _RL,
         "Draft postmortem templates for likely incidents."),
    ],
}

_DISABLED_BY_DEFAULT = {"td-review"}


def _build_builtins() -> dict[str, TaskDefinition]:
    defs: dict[str, TaskDefinition] = {}
    for category, entries in _BUILTINS.items():
        for task_type, name, cost, risk, description in entries:
            defs[task_type] = TaskDefinition(
                type=task_type,
                name=name,
                description=description,
                category=category,
                cost_tier=cost,
                risk_level=risk,
                default_interval=default_interval_for(category, task_type),
                disabled_by_default=task_type in _DISABLED_BY_DEFAULT,
            )
    return defs


BUILTIN_TASKS: dict[str, TaskDefinition] = _build_builtins()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class TaskRegistry:
    """Built-in plus custom task definitions.

    A fresh registry is built for every config load; custom entries are never
    mutated in place across loads.
    """

    def __init__(self) -> None:
        self._custom: dict[str, TaskDefinition] = {}

    @classmethod
    def from_config(cls, config) -> TaskRegistry:
        registry = cls()
        for entry in config.tasks.custom:
            registry.register_custom(custom_definition(entry))
        return registry

    def register_custom(self, definition: TaskDefinition) -> None:
        if definition.type in BUILTIN_TASKS:
            raise RegistryError(
                f"custom task {definition.type!r} conflicts with a built-in task"
            )
        if definition.type in self._custom:
            raise RegistryError(f"custom task {definition.type!r} registered twice")
        self._custom[definition.type] = definition

    def clear_custom(self) -> None:
        self._custom = {}

    def is_custom(self, task_type: str) -> bool:
        return task_type in self._custom

    def get(self, task_type: str) -> TaskDefinition:
        if task_type in BUILTIN_TASKS:
            return BUILTIN_TASKS[task_type]
        if task_type in self._custom:
            return self._custom[task_type]
        raise RegistryError(f"unknown task type: {task_type}")

    def all(self) -> list[TaskDefinition]:
        return list(BUILTIN_TASKS.values()) + list(self._custom.values())

    def types(self) -> list[str]:
        return [d.type for d in self.all()]

    def by_category(self, category: Category) -> list[TaskDefinition]:
        return [d for d in self.all() if d.category == category]

    def by_cost_tier(self, tier: CostTier) -> list[TaskDefinition]:
        return [d for d in self.all() if d.cost_tier == tier]

    def by_risk_level(self, risk: RiskLevel) -> list[TaskDefinition]:
        return [d for d in self.all() if d.risk_level == risk]


def custom_definition(entry) -> TaskDefinition:
    """Build a TaskDefinition from a CustomTaskConfig."""
    try:
        category = Category(entry.category)
        cost = CostTier(entry.cost_tier)
        risk = RiskLevel(entry.risk_level)
    except ValueError as exc:
        raise RegistryError(f"custom task {entry.type!r}: {exc}") from exc
    interval = entry.interval if entry.interval else default_interval_for(category)
    return TaskDefinition(
        type=entry.type,
        name=entry.name or entry.type,
        description=entry.description,
        category=category,
        cost_tier=cost,
        risk_level=risk,
        default_interval=interval,
        custom=True,
    )
