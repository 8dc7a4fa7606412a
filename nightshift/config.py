"""Layered config loading, merging and validation."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import yaml

from .errors import ConfigError

KNOWN_PROVIDERS = ("claude", "codex", "copilot")
DEFAULT_PREFERENCE = ("claude", "codex")
PROJECT_CONFIG_NAME = "nightshift.yaml"


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ScheduleConfig:
    cron: str = ""
    interval: str = ""
    window_start: str = ""
    window_end: str = ""


@dataclass
class BudgetConfig:
    mode: str = "daily"
    max_percent: int = 75
    reserve_percent: int = 5
    weekly_tokens: int = 700_000
    per_provider: dict[str, int] = field(default_factory=dict)
    billing_mode: str = "subscription"
    calibrate_enabled: bool = True
    week_start_day: str = "monday"
    snapshot_interval: str = "30m"
    snapshot_retention_days: int = 90
    aggressive_end_of_week: bool = False


@dataclass
class CustomTaskConfig:
    type: str = ""
    name: str = ""
    description: str = ""
    category: str = "analysis"
    cost_tier: str = "medium"
    risk_level: str = "low"
    interval: timedelta | None = None


@dataclass
class TasksConfig:
    enabled: list[str] = field(default_factory=list)
    disabled: list[str] = field(default_factory=list)
    priorities: dict[str, int] = field(default_factory=dict)
    intervals: dict[str, str] = field(default_factory=dict)
    custom: list[CustomTaskConfig] = field(default_factory=list)


@dataclass
class ProviderConfig:
    enabled: bool = True
    data_path: str = ""
    dangerously_skip_permissions: bool = True
    binary: str = ""
    monthly_requests: int = 0  # copilot only


@dataclass
class ProvidersConfig:
    claude: ProviderConfig = field(default_factory=ProviderConfig)
    codex: ProviderConfig = field(default_factory=ProviderConfig)
    copilot: ProviderConfig = field(default_factory=lambda: ProviderConfig(enabled=False))
    preference: list[str] = field(default_factory=lambda: list(DEFAULT_PREFERENCE))

    def get(self, name: str) -> ProviderConfig | None:
        return getattr(self, name, None) if name in KNOWN_PROVIDERS else None


@dataclass
class ProjectConfig:
    path: str = ""
    priority: int = 0
    tasks: list[str] = field(default_factory=list)


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "text"
    path: str = ""


@dataclass
class IntegrationsConfig:
    claude_md: bool = True
    agents_md: bool = True


@dataclass
class NotifyConfig:
    webhook_url: str = ""
    events: list[str] = field(default_factory=lambda: [
        "run.completed", "run.failed",
    ])


@dataclass
class OrchestratorConfig:
    max_iterations: int = 3
    agent_timeout: str = "30m"
    max_tasks_per_project: int = 1


@dataclass
class Config:
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    tasks: TasksConfig = field(default_factory=TasksConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    projects: list[ProjectConfig] = field(default_factory=list)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    integrations: IntegrationsConfig = field(default_factory=IntegrationsConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    db_path: str = ""

    # ---------------------------------------------------------------
    # Accessors
    # ---------------------------------------------------------------

    def get_provider_budget(self, provider: str) -> int:
        """Weekly token budget for *provider*: per-provider override or global."""
        value = self.budget.per_provider.get(provider)
        if value:
            return int(value)
        return self.budget.weekly_tokens

    def get_task_priority(self, task_type: str) -> int:
        return int(self.tasks.priorities.get(task_type, 0))

    def get_task_interval(self, task_type: str) -> timedelta:
        raw = self.tasks.intervals.get(task_type)
        if not raw:
            return timedelta(0)
        return parse_duration(raw)

    def is_task_enabled(self, task_type: str, disabled_by_default: bool = False) -> bool:
        if task_type in self.tasks.disabled:
            return False
        if disabled_by_default:
            return task_type in self.tasks.enabled
        if not self.tasks.enabled:
            return True
        return task_type in self.tasks.enabled


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([dhms])")
_DURATION_UNITS = {"d": "days", "h": "hours", "m": "minutes", "s": "seconds"}


def parse_duration(value: str | int | float) -> timedelta:
    """Parse ``"24h"``, ``"1h30m"``, ``"7d"``; bare numbers are seconds."""
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    text = value.strip().lower()
    if not text:
        return timedelta(0)
    if re.fullmatch(r"\d+(?:\.\d+)?", text):
        return timedelta(seconds=float(text))
    matches = _DURATION_RE.findall(text)
    if not matches or _DURATION_RE.sub("", text).strip():
        raise ConfigError(f"invalid duration: {value!r}")
    total = timedelta(0)
    for amount, unit in matches:
        total += timedelta(**{_DURATION_UNITS[unit]: float(amount)})
    return total


# ---------------------------------------------------------------------------
# Deep merge
# ---------------------------------------------------------------------------

def deep_merge(base: dict, override: dict) -> dict:
    """Field-level deep merge. Lists are replaced, None values ignored."""
    result = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# ---------------------------------------------------------------------------
# Dict → Config mapping
# ---------------------------------------------------------------------------

def _build_provider(data: dict, default: ProviderConfig) -> ProviderConfig:
    return ProviderConfig(
        enabled=bool(data.get("enabled", default.enabled)),
        data_path=data.get("data_path", default.data_path) or "",
        dangerously_skip_permissions=bool(data.get(
            "dangerously_skip_permissions", default.dangerously_skip_permissions)),
        binary=str(data.get("binary", default.binary) or ""),
        monthly_requests=int(data.get("monthly_requests", default.monthly_requests) or 0),
    )


def _build_custom_task(data: dict) -> CustomTaskConfig:
    interval = data.get("interval")
    return CustomTaskConfig(
        type=data.get("type", ""),
        name=data.get("name", ""),
        description=data.get("description", ""),
        category=str(data.get("category", "analysis")).lower(),
        cost_tier=str(data.get("cost_tier", data.get("cost", "medium"))).lower(),
        risk_level=str(data.get("risk_level", data.get("risk", "low"))).lower(),
        interval=parse_duration(interval) if interval else None,
    )


def _dict_to_config(data: dict) -> Config:
    cfg = Config()

    if "schedule" in data and isinstance(data["schedule"], dict):
        s = data["schedule"]
        cfg.schedule = ScheduleConfig(
            cron=s.get("cron", "") or "",
            interval=str(s.get("interval", "") or ""),
            window_start=s.get("window_start", "") or "",
            window_end=s.get("window_end", "") or "",
        )

    if "budget" in data and isinstance(data["budget"], dict):
        b = data["budget"]
        d = cfg.budget
        cfg.budget = BudgetConfig(
            mode=str(b.get("mode", d.mode)).lower(),
            max_percent=int(b.get("max_percent", d.max_percent)),
            reserve_percent=int(b.get("reserve_percent", d.reserve_percent)),
            weekly_tokens=int(b.get("weekly_tokens", d.weekly_tokens)),
            per_provider={k: int(v) for k, v in (b.get("per_provider") or {}).items()},
            billing_mode=str(b.get("billing_mode", d.billing_mode)).lower(),
            calibrate_enabled=bool(b.get("calibrate_enabled", d.calibrate_enabled)),
            week_start_day=str(b.get("week_start_day", d.week_start_day)).lower(),
            snapshot_interval=str(b.get("snapshot_interval", d.snapshot_interval)),
            snapshot_retention_days=int(
                b.get("snapshot_retention_days", d.snapshot_retention_days)),
            aggressive_end_of_week=bool(
                b.get("aggressive_end_of_week", d.aggressive_end_of_week)),
        )

    if "tasks" in data and isinstance(data["tasks"], dict):
        t = data["tasks"]
        cfg.tasks = TasksConfig(
            enabled=list(t.get("enabled") or []),
            disabled=list(t.get("disabled") or []),
            priorities={k: int(v) for k, v in (t.get("priorities") or {}).items()},
            intervals={k: str(v) for k, v in (t.get("intervals") or {}).items()},
            custom=[
                _build_custom_task(c) for c in (t.get("custom") or [])
                if isinstance(c, dict)
            ],
        )

    if "providers" in data and isinstance(data["providers"], dict):
        p = data["providers"]
        cfg.providers = ProvidersConfig(
            claude=_build_provider(p.get("claude") or {}, cfg.providers.claude),
            codex=_build_provider(p.get("codex") or {}, cfg.providers.codex),
            copilot=_build_provider(p.get("copilot") or {}, cfg.providers.copilot),
            preference=list(p.get("preference") or DEFAULT_PREFERENCE),
        )

    if isinstance(data.get("projects"), list):
        cfg.projects = []
        for entry in data["projects"]:
            if isinstance(entry, str):
                cfg.projects.append(ProjectConfig(path=entry))
            elif isinstance(entry, dict) and entry.get("path"):
                cfg.projects.append(ProjectConfig(
                    path=entry["path"],
                    priority=int(entry.get("priority", 0)),
                    tasks=list(entry.get("tasks") or []),
                ))

    if "logging" in data and isinstance(data["logging"], dict):
        lg = data["logging"]
        cfg.logging = LoggingConfig(
            level=str(lg.get("level", cfg.logging.level)).lower(),
            format=str(lg.get("format", cfg.logging.format)).lower(),
            path=lg.get("path", "") or "",
        )

    if "integrations" in data and isinstance(data["integrations"], dict):
        i = data["integrations"]
        cfg.integrations = IntegrationsConfig(
            claude_md=bool(i.get("claude_md", cfg.integrations.claude_md)),
            agents_md=bool(i.get("agents_md", cfg.integrations.agents_md)),
        )

    if "notify" in data and isinstance(data["notify"], dict):
        n = data["notify"]
        cfg.notify = NotifyConfig(
            webhook_url=n.get("webhook_url", "") or "",
            events=n.get("events", cfg.notify.events),
        )

    if "orchestrator" in data and isinstance(data["orchestrator"], dict):
        o = data["orchestrator"]
        d = cfg.orchestrator
        cfg.orchestrator = OrchestratorConfig(
            max_iterations=int(o.get("max_iterations", d.max_iterations)),
            agent_timeout=str(o.get("agent_timeout", d.agent_timeout)),
            max_tasks_per_project=int(
                o.get("max_tasks_per_project", d.max_tasks_per_project)),
        )

    if data.get("db_path"):
        cfg.db_path = data["db_path"]

    return cfg


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

_VALID_MODES = ("daily", "weekly")
_VALID_BILLING = ("subscription", "api")
_VALID_WEEK_START = ("monday", "sunday")
_VALID_LOG_LEVELS = ("debug", "info", "warn", "error")
_VALID_LOG_FORMATS = ("text", "json")


def validate(cfg: Config) -> None:
    """Raise ConfigError describing the first invalid setting."""
    b = cfg.budget
    if b.mode not in _VALID_MODES:
        raise ConfigError(f"invalid budget mode: {b.mode!r} (want daily or weekly)")
    if b.billing_mode not in _VALID_BILLING:
        raise ConfigError(f"invalid billing mode: {b.billing_mode!r}")
    if b.week_start_day not in _VALID_WEEK_START:
        raise ConfigError(f"invalid week_start_day: {b.week_start_day!r}")
    if not 0 <= b.max_percent <= 100:
        raise ConfigError(f"max_percent must be between 0 and 100, got {b.max_percent}")
    if not 0 <= b.reserve_percent <= 100:
        raise ConfigError(
            f"reserve_percent must be between 0 and 100, got {b.reserve_percent}")
    if b.weekly_tokens < 0:
        raise ConfigError("weekly_tokens must not be negative")

    if cfg.logging.level not in _VALID_LOG_LEVELS:
        raise ConfigError(f"invalid log level: {cfg.logging.level!r}")
    if cfg.logging.format not in _VALID_LOG_FORMATS:
        raise ConfigError(f"invalid log format: {cfg.logging.format!r}")

    if cfg.schedule.cron and cfg.schedule.interval:
        raise ConfigError("schedule: set either cron or interval, not both")
    if cfg.schedule.interval:
        parse_duration(cfg.schedule.interval)
    parse_duration(b.snapshot_interval)
    parse_duration(cfg.orchestrator.agent_timeout)
    for raw in cfg.tasks.intervals.values():
        parse_duration(raw)

    for name in cfg.providers.preference:
        if name not in KNOWN_PROVIDERS:
            raise ConfigError(f"unknown provider in preference list: {name!r}")
    if not any(cfg.providers.get(name).enabled for name in KNOWN_PROVIDERS):
        raise ConfigError("no providers enabled")

    if cfg.orchestrator.max_iterations < 1:
        raise ConfigError("orchestrator.max_iterations must be at least 1")

    seen: set[str] = set()
    for custom in cfg.tasks.custom:
        if not custom.type:
            raise ConfigError("custom task is missing 'type'")
        if custom.type in seen:
            raise ConfigError(f"custom task {custom.type!r} defined twice")
        seen.add(custom.type)


# ---------------------------------------------------------------------------
# Load config (layered)
# ---------------------------------------------------------------------------

def global_config_path() -> Path:
    override = os.environ.get("NIGHTSHIFT_CONFIG")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "nightshift" / "config.yaml"


def default_db_path() -> Path:
    return Path.home() / ".local" / "share" / "nightshift" / "nightshift.db"


def _read_yaml(path: Path, strict: bool) -> dict:
    if not path.exists():
        return {}
    try:
        parsed = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid {path.name}: {exc}") from exc
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        if strict:
            raise ConfigError(
                f"Invalid {path.name}: expected mapping, got {type(parsed).__name__}")
        return {}
    return parsed


def load_config(project_root: str | Path | None = None) -> Config:
    """Load and merge config from up to 3 layers.

    Priority (highest first):
      1. Environment variables (NIGHTSHIFT_BUDGET_MODE, NIGHTSHIFT_MAX_PERCENT,
         NIGHTSHIFT_LOG_LEVEL)
      2. <project_root>/nightshift.yaml
      3. ~/.config/nightshift/config.yaml (or $NIGHTSHIFT_CONFIG)
    """
    merged = _read_yaml(global_config_path(), strict=True)

    if project_root is not None:
        project_path = Path(project_root) / PROJECT_CONFIG_NAME
        merged = deep_merge(merged, _read_yaml(project_path, strict=True))

    cfg = _dict_to_config(merged)

    env_mode = os.environ.get("NIGHTSHIFT_BUDGET_MODE")
    if env_mode:
        cfg.budget.mode = env_mode.lower()

    env_max = os.environ.get("NIGHTSHIFT_MAX_PERCENT")
    if env_max:
        try:
            cfg.budget.max_percent = int(env_max)
        except ValueError as exc:
            raise ConfigError(f"NIGHTSHIFT_MAX_PERCENT is not an integer: {env_max!r}") from exc

    env_level = os.environ.get("NIGHTSHIFT_LOG_LEVEL")
    if env_level:
        cfg.logging.level = env_level.lower()

    if not cfg.db_path:
        cfg.db_path = str(default_db_path())

    validate(cfg)
    return cfg
