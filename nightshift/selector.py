"""Selector: rank and admit tasks for a project under a token allowance."""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta, timezone

from .config import Config
from .db import Database, normalize_path
from .errors import RegistryError
from .models import ScoredTask, make_task_id
from .tasks import TaskDefinition, TaskRegistry

logger = logging.getLogger(__name__)

CONTEXT_BONUS = 2.0


class Selector:
    """Filter → score → sort pipeline over the task registry.

    Filters, in order: enabled by config, max estimate within the allowance,
    not currently assigned, not on (real or simulated) cooldown. Ordering is
    score descending, then name ascending.
    """

    def __init__(
        self,
        config: Config,
        db: Database,
        registry: TaskRegistry,
        rng: random.Random | None = None,
    ):
        self.config = config
        self.db = db
        self.registry = registry
        self._rng = rng or random.Random()
        self._context_mentions: set[str] = set()
        self._simulated_cooldowns: set[str] = set()

    # ---------------------------------------------------------------
    # Scoring inputs
    # ---------------------------------------------------------------

    def set_context_mentions(self, mentions: list[str]) -> None:
        """Task types referenced in the project's CLAUDE.md / AGENTS.md."""
        self._context_mentions = set(mentions)

    async def score_task(self, task_type: str, project: str) -> float:
        score = float(self.config.get_task_priority(task_type))
        score += await self.db.staleness_bonus(project, task_type)
        if task_type in self._context_mentions:
            score += CONTEXT_BONUS
        return score

    # ---------------------------------------------------------------
    # Filters
    # ---------------------------------------------------------------

    def filter_enabled(self, tasks: list[TaskDefinition]) -> list[TaskDefinition]:
        return [
            t for t in tasks
            if self.config.is_task_enabled(t.type, t.disabled_by_default)
        ]

    @staticmethod
    def filter_by_budget(tasks: list[TaskDefinition], budget: int) -> list[TaskDefinition]:
        return [t for t in tasks if t.estimated_tokens()[1] <= budget]

    async def is_assigned(self, task_id: str) -> bool:
        return await self.db.is_assigned(task_id)

    async def filter_unassigned(
        self, tasks: list[TaskDefinition], project: str
    ) -> list[TaskDefinition]:
        project = normalize_path(project)
        result = []
        for t in tasks:
            if not await self.db.is_assigned(make_task_id(t.type, project)):
                result.append(t)
        return result

    def effective_interval(self, definition: TaskDefinition) -> timedelta:
        """Configured interval for the task type, else the definition's default."""
        configured = self.config.get_task_interval(definition.type)
        if configured > timedelta(0):
            return configured
        return definition.default_interval

    async def filter_by_cooldown(
        self, tasks: list[TaskDefinition], project: str, now: datetime | None = None
    ) -> list[TaskDefinition]:
        now = now or datetime.now(timezone.utc)
        result = []
        for t in tasks:
            if self.has_simulated_cooldown(t.type, project):
                continue
            on_cooldown, _, _ = await self._cooldown(t, project, now)
            if not on_cooldown:
                result.append(t)
        return result

    # ---------------------------------------------------------------
    # Cooldowns
    # ---------------------------------------------------------------

    async def _cooldown(
        self, definition: TaskDefinition, project: str, now: datetime
    ) -> tuple[bool, timedelta, timedelta]:
        interval = self.effective_interval(definition)
        if interval <= timedelta(0):
            return False, timedelta(0), timedelta(0)
        last_run = await self.db.last_task_run(project, definition.type)
        if last_run is None:
            return False, timedelta(0), interval
        elapsed = now - last_run
        if elapsed >= interval:
            return False, timedelta(0), interval
        return True, interval - elapsed, interval

    async def is_on_cooldown(
        self, task_type: str, project: str, now: datetime | None = None
    ) -> tuple[bool, timedelta, timedelta]:
        """Return (on_cooldown, remaining, interval) for a task type and project."""
        try:
            definition = self.registry.get(task_type)
        except RegistryError:
            return False, timedelta(0), timedelta(0)
        return await self._cooldown(definition, project, now or datetime.now(timezone.utc))

    def add_simulated_cooldown(self, task_type: str, project: str) -> None:
        """Hide a task from later selections without touching stored state."""
        self._simulated_cooldowns.add(make_task_id(task_type, normalize_path(project)))

    def clear_simulated_cooldowns(self) -> None:
        self._simulated_cooldowns = set()

    def has_simulated_cooldown(self, task_type: str, project: str) -> bool:
        return make_task_id(task_type, normalize_path(project)) in self._simulated_cooldowns

    # ---------------------------------------------------------------
    # Selection
    # ---------------------------------------------------------------

    async def eligible(
        self, budget: int, project: str, allowed: list[str] | None = None
    ) -> list[TaskDefinition]:
        """Tasks that pass every filter. *allowed* narrows to a project's task list."""
        tasks = self.registry.all()
        if allowed:
            tasks = [t for t in tasks if t.type in allowed]
        tasks = self.filter_enabled(tasks)
        tasks = self.filter_by_budget(tasks, budget)
        tasks = await self.filter_unassigned(tasks, project)
        tasks = await self.filter_by_cooldown(tasks, project)
        return tasks

    async def _scored(self, tasks: list[TaskDefinition], project: str) -> list[ScoredTask]:
        project = normalize_path(project)
        scored = [
            ScoredTask(definition=t, score=await self.score_task(t.type, project), project=project)
            for t in tasks
        ]
        scored.sort(key=lambda s: (-s.score, s.definition.name))
        return scored

    async def select_top_n(
        self, budget: int, project: str, n: int, allowed: list[str] | None = None
    ) -> list[ScoredTask]:
        if n <= 0:
            return []
        tasks = await self.eligible(budget, project, allowed)
        if not tasks:
            return []
        return (await self._scored(tasks, project))[:n]

    async def select_next(
        self, budget: int, project: str, allowed: list[str] | None = None
    ) -> ScoredTask | None:
        top = await self.select_top_n(budget, project, 1, allowed)
        return top[0] if top else None

    async def select_random(
        self, budget: int, project: str, allowed: list[str] | None = None
    ) -> ScoredTask | None:
        """Uniform pick from the eligible set; the score is still reported."""
        tasks = await self.eligible(budget, project, allowed)
        if not tasks:
            return None
        choice = self._rng.choice(tasks)
        return ScoredTask(
            definition=choice,
            score=await self.score_task(choice.type, normalize_path(project)),
            project=normalize_path(project),
        )

    async def select_and_assign(self, budget: int, project: str) -> ScoredTask | None:
        picked = await self.select_next(budget, project)
        if picked is None:
            return None
        await self.db.mark_assigned(picked.task_id, picked.project, picked.definition.type)
        return picked

    # ---------------------------------------------------------------
    # Assignment lifecycle
    # ---------------------------------------------------------------

    async def mark_assigned(self, task_type: str, project: str) -> str:
        project = normalize_path(project)
        task_id = make_task_id(task_type, project)
        await self.db.mark_assigned(task_id, project, task_type)
        return task_id

    async def clear_assigned(self, task_id: str) -> None:
        await self.db.clear_assigned(task_id)

    async def clear_stale_assignments(self, max_age: timedelta) -> int:
        cleared = await self.db.clear_stale_assignments(max_age)
        if cleared:
            logger.info("cleared %d stale assignment(s) older than %s", cleared, max_age)
        return cleared
