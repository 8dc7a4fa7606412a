"""Core data models for nightshift."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .tasks import TaskDefinition


class BudgetMode(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


class Confidence(str, Enum):
    NONE = ""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class BudgetSourceKind(str, Enum):
    NONE = ""
    CONFIG = "config"
    CALIBRATED = "calibrated"
    API = "api"


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------

@dataclass
class BudgetEstimate:
    """A provider's weekly token budget and how much we trust it."""

    weekly_tokens: int = 0
    source: BudgetSourceKind = BudgetSourceKind.NONE
    confidence: Confidence = Confidence.NONE
    sample_count: int = 0
    variance: float = 0.0


@dataclass
class AllowanceResult:
    """Breakdown of a per-cycle token allowance for one provider."""

    provider: str
    mode: BudgetMode
    allowance: int = 0
    used_percent: float = 0.0
    reserve_amount: int = 0
    predicted_usage: int = 0
    remaining_days: int = 0
    multiplier: float = 1.0
    weekly_budget: int = 0
    budget_base: int = 0
    budget_source: BudgetSourceKind = BudgetSourceKind.CONFIG
    budget_confidence: Confidence = Confidence.NONE
    budget_sample_count: int = 0


@dataclass
class Snapshot:
    """Point-in-time usage record for one provider."""

    provider: str
    timestamp: datetime
    week_start: datetime | None = None
    local_tokens: int = 0
    local_daily: int = 0
    scraped_pct: float | None = None
    inferred_budget: int | None = None
    day_of_week: int = 0
    hour_of_day: int = 0
    session_reset_time: str = ""
    weekly_reset_time: str = ""
    id: int = 0


# ---------------------------------------------------------------------------
# Selection / execution
# ---------------------------------------------------------------------------

@dataclass
class ScoredTask:
    """A task definition ranked for one project."""

    definition: TaskDefinition
    score: float
    project: str

    @property
    def task_id(self) -> str:
        return make_task_id(self.definition.type, self.project)


@dataclass
class Task:
    """A single execution instance handed to the orchestrator."""

    id: str
    title: str
    description: str = ""
    priority: int = 0
    type: str = ""


def make_task_id(task_type: str, project: str) -> str:
    return f"{task_type}:{project}"


class TaskStatus(str, Enum):
    PENDING = "pending"
    PLANNING = "planning"
    EXECUTING = "executing"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


class Phase(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    REVIEWING = "reviewing"


@dataclass
class LogEntry:
    time: datetime
    level: str
    message: str


@dataclass
class Result:
    """Terminal outcome of one orchestrated task."""

    task_id: str
    status: TaskStatus
    iterations: int = 0
    plan: dict | None = None
    output: str = ""
    output_type: str = ""
    output_ref: str = ""
    error: str = ""
    duration_sec: float = 0.0
    logs: list[LogEntry] = field(default_factory=list)


class EventType(str, Enum):
    TASK_START = "task_start"
    PHASE_START = "phase_start"
    PHASE_END = "phase_end"
    ITERATION_START = "iteration_start"
    TASK_END = "task_end"
    LOG = "log"


@dataclass
class Event:
    """Progress notification emitted while a task runs."""

    type: EventType
    time: datetime
    task_id: str = ""
    task_title: str = ""
    phase: Phase | None = None
    iteration: int = 0
    max_iter: int = 0
    duration_sec: float = 0.0
    status: TaskStatus | None = None
    error: str = ""
    level: str = ""
    message: str = ""


# ---------------------------------------------------------------------------
# Bookkeeping
# ---------------------------------------------------------------------------

@dataclass
class Assignment:
    """Persisted lock preventing a task from being picked twice."""

    task_id: str
    project: str
    task_type: str
    assigned_at: datetime


@dataclass
class RunRecord:
    """Summary of one project's work within a cycle."""

    id: str
    start_time: datetime
    project: str
    end_time: datetime | None = None
    tasks: list[str] = field(default_factory=list)
    tokens_used: int = 0
    status: str = ""  # "success" | "partial" | "failed" | "skipped"
    error: str = ""
