"""Run cycle: pick a provider, admit tasks per project, execute them in order."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Mapping

from .agents import Agent, create_agent
from .budget import BudgetManager
from .calibrator import Calibrator
from .config import KNOWN_PROVIDERS, Config, ProjectConfig, parse_duration
from .context import read_project_context
from .db import Database, normalize_path
from .errors import BudgetError, NightshiftError
from .models import AllowanceResult, RunRecord, ScoredTask, Task, TaskStatus
from .notifier import Notifier
from .orchestrator import EventHandler, Orchestrator, RunMetadata
from .selector import Selector
from .tasks import TaskRegistry
from .tmux import TmuxScraper
from .trends import TrendAnalyzer
from .usage import usage_source_for

logger = logging.getLogger(__name__)

STALE_ASSIGNMENT_AGE = timedelta(hours=2)


@dataclass
class TaskOutcome:
    project: str
    task_type: str
    task_id: str
    score: float
    estimated_tokens: int
    status: TaskStatus | None = None  # None → selected only (dry run)
    error: str = ""
    output_ref: str = ""
    iterations: int = 0


@dataclass
class RunReport:
    """What one cycle did, for display and notifications."""

    started: datetime
    provider: str = ""
    allowance: AllowanceResult | None = None
    outcomes: list[TaskOutcome] = field(default_factory=list)
    dry_run: bool = False
    skipped_reason: str = ""
    stale_cleared: int = 0
    cancelled: bool = False
    finished: datetime | None = None

    @property
    def failed(self) -> bool:
        executed = [o for o in self.outcomes if o.status is not None]
        return bool(executed) and all(o.status != TaskStatus.COMPLETED for o in executed)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def enabled_providers(config: Config) -> list[str]:
    return [p for p in KNOWN_PROVIDERS if config.providers.get(p).enabled]


def build_usage_sources(config: Config) -> dict:
    return {
        p: usage_source_for(
            p, config.providers.get(p).data_path, config.providers.get(p).monthly_requests)
        for p in enabled_providers(config)
    }


def build_scraper(config: Config, local_only: bool = False) -> TmuxScraper | None:
    """tmux scraper for provider-reported usage, or None when calibration is off."""
    if local_only or not config.budget.calibrate_enabled:
        return None
    if config.budget.billing_mode == "api":
        return None
    scraper = TmuxScraper()
    if not scraper.available():
        logger.info("tmux not found; usage calibration limited to local data")
        return None
    return scraper


def build_budget_manager(config: Config, db: Database, usage_sources: Mapping) -> BudgetManager:
    return BudgetManager(
        config,
        usage_sources,
        budget_source=Calibrator(db, config),
        trend=TrendAnalyzer(db, config.budget.snapshot_retention_days),
    )


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class Runner:
    """Executes scheduled cycles one project and one task at a time."""

    def __init__(
        self,
        config: Config,
        db: Database,
        registry: TaskRegistry | None = None,
        budget: BudgetManager | None = None,
        agents: Mapping[str, Agent] | None = None,
        event_handler: EventHandler | None = None,
        notifier: Notifier | None = None,
    ):
        self.config = config
        self.db = db
        self.registry = registry or TaskRegistry.from_config(config)
        self.budget = budget or build_budget_manager(config, db, build_usage_sources(config))
        self.agents = dict(agents) if agents is not None else {
            p: create_agent(p, config) for p in enabled_providers(config)
        }
        self.event_handler = event_handler
        self.notifier = notifier
        self.selector = Selector(config, db, self.registry)

    async def pick_provider(self) -> tuple[str, AllowanceResult] | None:
        """First preferred provider whose CLI is installed and has allowance left."""
        for provider in self.config.providers.preference:
            provider_cfg = self.config.providers.get(provider)
            if provider_cfg is None or not provider_cfg.enabled:
                continue
            agent = self.agents.get(provider)
            if agent is None or not agent.available():
                logger.info("provider %s skipped: CLI not available", provider)
                continue
            try:
                allowance = await self.budget.calculate_allowance(provider)
            except BudgetError as exc:
                logger.warning("provider %s skipped: %s", provider, exc)
                continue
            if allowance.allowance <= 0:
                logger.info("provider %s skipped: no allowance left", provider)
                continue
            return provider, allowance
        return None

    def _projects(self, only: list[str] | None) -> list[ProjectConfig]:
        projects = sorted(self.config.projects, key=lambda p: -p.priority)
        if only:
            wanted = {normalize_path(p) for p in only}
            projects = [p for p in projects if normalize_path(p.path) in wanted]
            known = {normalize_path(p.path) for p in projects}
            projects += [ProjectConfig(path=p) for p in only if normalize_path(p) not in known]
        return projects

    async def _select(
        self,
        budget: int,
        project: str,
        max_tasks: int,
        random_task: bool,
        task_type: str | None,
        allowed: list[str] | None = None,
    ) -> list[ScoredTask]:
        if task_type:
            definition = self.registry.get(task_type)
            score = await self.selector.score_task(task_type, project)
            return [ScoredTask(definition=definition, score=score, project=project)]
        if random_task:
            picked = await self.selector.select_random(budget, project, allowed)
            return [picked] if picked else []
        return await self.selector.select_top_n(budget, project, max_tasks, allowed)

    async def run_cycle(
        self,
        dry_run: bool = False,
        max_tasks: int | None = None,
        random_task: bool = False,
        projects: list[str] | None = None,
        task_type: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> RunReport:
        report = RunReport(started=datetime.now(timezone.utc), dry_run=dry_run)
        if max_tasks is None:
            max_tasks = self.config.orchestrator.max_tasks_per_project

        if not dry_run:
            report.stale_cleared = await self.selector.clear_stale_assignments(
                STALE_ASSIGNMENT_AGE)

        picked = await self.pick_provider()
        if picked is None:
            report.skipped_reason = "no provider with remaining allowance"
            logger.info("cycle skipped: %s", report.skipped_reason)
            return await self._finish(report)
        report.provider, report.allowance = picked
        remaining = report.allowance.allowance

        project_list = self._projects(projects)
        if not project_list:
            report.skipped_reason = "no projects configured"
            return await self._finish(report)

        for project_cfg in project_list:
            if cancel is not None and cancel.is_set():
                report.cancelled = True
                break
            if remaining <= 0:
                break
            remaining = await self._run_project(
                report, project_cfg, remaining, max_tasks, random_task, task_type, cancel)

        return await self._finish(report)

    async def _run_project(
        self,
        report: RunReport,
        project_cfg: ProjectConfig,
        remaining: int,
        max_tasks: int,
        random_task: bool,
        task_type: str | None,
        cancel: asyncio.Event | None,
    ) -> int:
        project = normalize_path(project_cfg.path)
        context = read_project_context(project, self.config.integrations)
        self.selector.set_context_mentions(context.mentions(self.registry.types()))

        candidates = await self._select(
            remaining, project, max_tasks, random_task, task_type, project_cfg.tasks)

        record = RunRecord(
            id=uuid.uuid4().hex, start_time=datetime.now(timezone.utc), project=project)
        executed = 0
        completed = 0

        for scored in candidates:
            if not report.dry_run and cancel is not None and cancel.is_set():
                report.cancelled = True
                break
            estimate = scored.definition.estimated_tokens()[1]
            if estimate > remaining and not task_type:
                continue
            outcome = TaskOutcome(
                project=project,
                task_type=scored.definition.type,
                task_id=scored.task_id,
                score=scored.score,
                estimated_tokens=estimate,
            )
            report.outcomes.append(outcome)
            remaining -= estimate

            if report.dry_run:
                self.selector.add_simulated_cooldown(scored.definition.type, project)
                continue

            executed += 1
            await self._execute(report, scored, outcome, context.prompt_section(), cancel)
            record.tasks.append(scored.definition.type)
            record.tokens_used += estimate
            if outcome.status == TaskStatus.COMPLETED:
                completed += 1

        if report.dry_run:
            return remaining

        if executed:
            await self.db.record_project_run(project)
        if executed == 0:
            record.status = "skipped"
        elif completed == executed:
            record.status = "success"
        elif completed:
            record.status = "partial"
        else:
            record.status = "failed"
            record.error = "; ".join(o.error for o in report.outcomes
                                     if o.project == project and o.error)
        record.end_time = datetime.now(timezone.utc)
        await self.db.add_run_record(record)
        return remaining

    async def _execute(
        self,
        report: RunReport,
        scored: ScoredTask,
        outcome: TaskOutcome,
        context: str,
        cancel: asyncio.Event | None,
    ) -> None:
        definition = scored.definition
        project = scored.project
        task = Task(
            id=scored.task_id,
            title=definition.name,
            description=definition.description,
            priority=int(scored.score),
            type=definition.type,
        )
        orchestrator = Orchestrator(
            agent=self.agents.get(report.provider),
            max_iterations=self.config.orchestrator.max_iterations,
            agent_timeout=parse_duration(self.config.orchestrator.agent_timeout).total_seconds(),
            event_handler=self.event_handler,
        )
        orchestrator.set_run_metadata(RunMetadata(
            provider=report.provider,
            task_type=definition.type,
            task_score=scored.score,
            cost_tier=definition.cost_tier.label,
            run_start=report.started,
        ))

        await self.db.mark_assigned(task.id, project, definition.type)
        try:
            result = await orchestrator.run_task(task, project, context=context, cancel=cancel)
        except NightshiftError as exc:
            outcome.status = TaskStatus.FAILED
            outcome.error = str(exc)
            logger.error("task %s could not start: %s", task.id, exc)
            return
        finally:
            await self.db.clear_assigned(task.id)

        outcome.status = result.status
        outcome.error = result.error
        outcome.output_ref = result.output_ref
        outcome.iterations = result.iterations
        if result.status == TaskStatus.COMPLETED:
            await self.db.record_task_run(project, definition.type)
        logger.info(
            "task %s finished: %s after %d iteration(s)",
            task.id, result.status.value, result.iterations,
        )

    async def _finish(self, report: RunReport) -> RunReport:
        report.finished = datetime.now(timezone.utc)
        if self.notifier is not None and not report.dry_run and report.outcomes:
            event = "run.failed" if report.failed else "run.completed"
            await self.notifier.notify(event, report)
        return report
