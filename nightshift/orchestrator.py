"""Orchestrator: drive one task through plan → implement → review iterations."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import anyio

from .agents import Agent, ExecuteResult, extract_json
from .errors import OrchestrationError
from .models import Event, EventType, LogEntry, Phase, Result, Task, TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 3
DEFAULT_AGENT_TIMEOUT = 30 * 60.0
# Extra time an agent call may take past the task deadline before it is abandoned.
DEFAULT_TIMEOUT_GRACE = 30.0

EventHandler = Callable[[Event], None]

_PR_URL_RE = re.compile(r"https://github\.com/[\w.-]+/[\w.-]+/pull/\d+")

METADATA_START = "<!-- nightshift:metadata"
METADATA_END = "nightshift:metadata -->"


# ---------------------------------------------------------------------------
# Structured agent outputs
# ---------------------------------------------------------------------------

@dataclass
class PlanOutput:
    steps: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    description: str = ""


@dataclass
class ImplementOutput:
    files_modified: list[str] = field(default_factory=list)
    summary: str = ""
    raw_output: str = ""


@dataclass
class ReviewOutput:
    passed: bool = False
    feedback: str = ""
    issues: list[str] = field(default_factory=list)


def _json_dict(res: ExecuteResult) -> dict | None:
    data = res.json if res.json is not None else extract_json(res.output)
    return data if isinstance(data, dict) else None


def _str_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value]


def parse_plan(res: ExecuteResult) -> PlanOutput:
    data = _json_dict(res)
    if data is None:
        return PlanOutput(description=res.output.strip())
    return PlanOutput(
        steps=_str_list(data.get("steps")),
        files=_str_list(data.get("files")),
        description=str(data.get("description") or ""),
    )


def parse_implement(res: ExecuteResult) -> ImplementOutput:
    data = _json_dict(res)
    if data is None:
        return ImplementOutput(summary=res.output.strip(), raw_output=res.output)
    return ImplementOutput(
        files_modified=_str_list(data.get("files_modified")),
        summary=str(data.get("summary") or ""),
        raw_output=res.output,
    )


_REVIEW_FAIL_WORDS = ("issue", "bug", "incomplete", "fail", "needs work", "not correct", "missing")
_REVIEW_PASS_WORDS = ("lgtm", "looks good", "approved", "passed", "correct and complete")


def infer_review_passed(output: str) -> bool:
    """Keyword verdict for reviews that did not answer in JSON."""
    text = output.lower()
    if not text.strip():
        return False
    if any(word in text for word in _REVIEW_FAIL_WORDS):
        return False
    return any(word in text for word in _REVIEW_PASS_WORDS)


def parse_review(res: ExecuteResult) -> ReviewOutput:
    data = _json_dict(res)
    if data is None or "passed" not in data:
        return ReviewOutput(
            passed=infer_review_passed(res.output),
            feedback=res.output.strip(),
        )
    return ReviewOutput(
        passed=bool(data.get("passed")),
        feedback=str(data.get("feedback") or ""),
        issues=_str_list(data.get("issues")),
    )


def extract_pr_url(text: str) -> str:
    """Last GitHub pull request URL in *text*, or ""."""
    matches = _PR_URL_RE.findall(text or "")
    return matches[-1] if matches else ""


# ---------------------------------------------------------------------------
# PR metadata block
# ---------------------------------------------------------------------------

@dataclass
class RunMetadata:
    """Cycle-level facts stamped into PR bodies."""

    provider: str = ""
    task_type: str = ""
    task_score: float = 0.0
    cost_tier: str = ""
    run_start: datetime | None = None


def format_duration(seconds: float) -> str:
    """Compact ``1h2m3s`` rendering, rounded to whole seconds."""
    total = int(seconds + 0.5)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def build_metadata_block(task: Task, result: Result, meta: RunMetadata | None = None) -> str:
    lines = [
        METADATA_START,
        f"task-id: {task.id}",
        f"task-type: {task.type}",
        f"task-title: {task.title}",
    ]
    if meta is not None:
        lines.append(f"provider: {meta.provider}")
        lines.append(f"score: {meta.task_score:.1f}")
        lines.append(f"cost-tier: {meta.cost_tier}")
    lines.append(f"iterations: {result.iterations}")
    lines.append(f"duration: {format_duration(result.duration_sec)}")
    if meta is not None and meta.run_start is not None:
        started = meta.run_start.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        lines.append(f"run-started: {started}")
    lines.append(METADATA_END)
    lines.append("")
    lines.append("---")
    lines.append("*Automated by [nightshift]*")
    return "\n".join(lines)


def parse_metadata_block(text: str) -> dict[str, str] | None:
    start = text.find(METADATA_START)
    if start < 0:
        return None
    end = text.find(METADATA_END, start + len(METADATA_START))
    if end < 0:
        return None
    fields: dict[str, str] = {}
    for line in text[start + len(METADATA_START):end].splitlines():
        key, sep, value = line.partition(": ")
        if sep and key.strip():
            fields[key.strip()] = value.strip()
    return fields


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class _Abort(Exception):
    """Internal: ends the run with FAILED status."""


class Orchestrator:
    """Runs one task at a time through a bounded agent conversation.

    Each iteration plans, implements and reviews. A passing review completes
    the task; a failing review feeds its feedback into the next iteration's
    plan. When iterations run out the task is abandoned. Agent errors, the
    task timeout and cancellation end the task as failed. All of these are
    reported through the returned Result; only a missing/unavailable agent
    or a malformed task raises.
    """

    def __init__(
        self,
        agent: Agent | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        agent_timeout: float = DEFAULT_AGENT_TIMEOUT,
        event_handler: EventHandler | None = None,
        timeout_grace: float = DEFAULT_TIMEOUT_GRACE,
    ):
        self.agent = agent
        self.max_iterations = max(1, max_iterations)
        self.agent_timeout = agent_timeout
        self.event_handler = event_handler
        self.timeout_grace = timeout_grace
        self.run_metadata: RunMetadata | None = None

    def set_run_metadata(self, meta: RunMetadata | None) -> None:
        self.run_metadata = meta

    # ---------------------------------------------------------------
    # Prompts
    # ---------------------------------------------------------------

    def build_plan_prompt(
        self, task: Task, context: str = "", feedback: str = "", iteration: int = 1
    ) -> str:
        parts = [
            "You are planning an unattended maintenance task on this repository.",
            "",
            f"Task ID: {task.id}",
            f"Title: {task.title}",
        ]
        if task.description:
            parts.append(f"Description: {task.description}")
        if context:
            parts += ["", context]
        if feedback:
            parts += [
                "",
                f"This is iteration {iteration}. The previous attempt was rejected in review:",
                feedback,
                "Revise the plan to address this feedback.",
            ]
        parts += [
            "",
            "Do not modify any files yet. Respond with JSON only:",
            '{"steps": ["..."], "files": ["..."], "description": "..."}',
        ]
        return "\n".join(parts)

    def build_implement_prompt(
        self, task: Task, plan: PlanOutput, iteration: int, feedback: str = ""
    ) -> str:
        parts = [
            f"Carry out the implementation for task {task.id}: {task.title}",
            f"This is iteration {iteration} of at most {self.max_iterations}.",
        ]
        if task.description:
            parts.append(f"Description: {task.description}")
        if plan.description:
            parts += ["", f"Plan: {plan.description}"]
        if plan.steps:
            parts += ["", "Steps:"] + [f"{i}. {s}" for i, s in enumerate(plan.steps, 1)]
        if plan.files:
            parts += ["", "Files: " + ", ".join(plan.files)]
        if feedback:
            parts += ["", "Reviewer feedback from the previous iteration:", feedback]
        if self.run_metadata is not None:
            progress = Result(task_id=task.id, status=TaskStatus.EXECUTING, iterations=iteration)
            parts += [
                "",
                "If you open a pull request, end its description with this block:",
                build_metadata_block(task, progress, self.run_metadata),
            ]
        parts += [
            "",
            "When done, respond with JSON only:",
            '{"files_modified": ["..."], "summary": "..."}',
        ]
        return "\n".join(parts)

    def build_review_prompt(self, task: Task, impl: ImplementOutput) -> str:
        parts = [
            f"Review the work just done for task {task.id}: {task.title}",
        ]
        if task.description:
            parts.append(f"Acceptance: {task.description}")
        if impl.files_modified:
            parts.append("Files modified: " + ", ".join(impl.files_modified))
        if impl.summary:
            parts.append(f"Summary: {impl.summary}")
        parts += [
            "",
            "Check that the change is correct and complete. Respond with JSON only:",
            '{"passed": true, "feedback": "...", "issues": ["..."]}',
        ]
        return "\n".join(parts)

    # ---------------------------------------------------------------
    # Events / logs
    # ---------------------------------------------------------------

    def _emit(self, event: Event) -> None:
        if self.event_handler is None:
            return
        try:
            self.event_handler(event)
        except Exception:
            logger.exception("event handler failed for %s", event.type.value)

    def _event(self, type_: EventType, task: Task, **kwargs) -> Event:
        return Event(
            type=type_,
            time=datetime.now(timezone.utc),
            task_id=task.id,
            task_title=task.title,
            max_iter=self.max_iterations,
            **kwargs,
        )

    def _log(self, result: Result, task: Task, level: str, message: str) -> None:
        result.logs.append(LogEntry(time=datetime.now(timezone.utc), level=level, message=message))
        logger.log(
            logging.WARNING if level == "warn" else getattr(logging, level.upper(), logging.INFO),
            "%s: %s", task.id, message,
        )
        self._emit(self._event(EventType.LOG, task, level=level, message=message))

    # ---------------------------------------------------------------
    # Execution
    # ---------------------------------------------------------------

    def _validate(self, task: Task | None) -> None:
        if self.agent is None:
            raise OrchestrationError("no agent configured")
        if task is None or not task.id or not task.title:
            raise OrchestrationError("invalid task: id and title are required")
        if not self.agent.available():
            raise OrchestrationError(f"agent {self.agent.name!r} is not available")

    async def _call_agent(
        self, prompt: str, workdir: str | Path, deadline: float
    ) -> ExecuteResult:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise _Abort(f"timeout after {self.agent_timeout:.0f}s")
        res: ExecuteResult | None = None
        with anyio.move_on_after(remaining + self.timeout_grace):
            try:
                res = await self.agent.execute(prompt, workdir, timeout=remaining)
            except Exception as exc:
                raise _Abort(f"agent error: {exc}") from exc
        if res is None:
            raise _Abort(f"timeout after {self.agent_timeout:.0f}s")
        if not res.is_success():
            raise _Abort(res.error or f"agent exited with code {res.exit_code}")
        return res

    async def _phase(
        self,
        phase: Phase,
        task: Task,
        iteration: int,
        prompt: str,
        workdir: str | Path,
        deadline: float,
        cancel: asyncio.Event | None,
    ) -> ExecuteResult:
        if cancel is not None and cancel.is_set():
            raise _Abort("cancelled")
        self._emit(self._event(EventType.PHASE_START, task, phase=phase, iteration=iteration))
        started = time.monotonic()
        try:
            return await self._call_agent(prompt, workdir, deadline)
        finally:
            self._emit(self._event(
                EventType.PHASE_END, task, phase=phase, iteration=iteration,
                duration_sec=time.monotonic() - started,
            ))

    async def run_task(
        self,
        task: Task,
        project_path: str | Path,
        context: str = "",
        cancel: asyncio.Event | None = None,
    ) -> Result:
        self._validate(task)
        workdir = project_path or "."
        start = time.monotonic()
        deadline = start + self.agent_timeout
        result = Result(task_id=task.id, status=TaskStatus.PLANNING)

        self._emit(self._event(EventType.TASK_START, task))
        self._log(result, task, "info", "starting task")

        feedback = ""
        try:
            for iteration in range(1, self.max_iterations + 1):
                if cancel is not None and cancel.is_set():
                    raise _Abort("cancelled")
                result.iterations = iteration
                self._emit(self._event(EventType.ITERATION_START, task, iteration=iteration))

                result.status = TaskStatus.PLANNING
                plan_res = await self._phase(
                    Phase.PLANNING, task, iteration,
                    self.build_plan_prompt(task, context, feedback, iteration),
                    workdir, deadline, cancel,
                )
                plan = parse_plan(plan_res)
                result.plan = {
                    "steps": plan.steps, "files": plan.files, "description": plan.description,
                }

                result.status = TaskStatus.EXECUTING
                impl_res = await self._phase(
                    Phase.EXECUTING, task, iteration,
                    self.build_implement_prompt(task, plan, iteration, feedback),
                    workdir, deadline, cancel,
                )
                impl = parse_implement(impl_res)
                result.output = impl.summary or impl.raw_output

                result.status = TaskStatus.REVIEWING
                review_res = await self._phase(
                    Phase.REVIEWING, task, iteration,
                    self.build_review_prompt(task, impl),
                    workdir, deadline, cancel,
                )
                review = parse_review(review_res)

                if review.passed:
                    result.status = TaskStatus.COMPLETED
                    pr_url = extract_pr_url(impl.raw_output + "\n" + impl.summary)
                    if pr_url:
                        result.output_type = "PR"
                        result.output_ref = pr_url
                    self._log(result, task, "info", "task completed")
                    break

                feedback = review.feedback
                if review.issues:
                    feedback = (feedback + "\n" if feedback else "") + "\n".join(
                        f"- {issue}" for issue in review.issues
                    )
                self._log(result, task, "warn", f"review failed (iteration {iteration})")
            else:
                result.status = TaskStatus.ABANDONED
                result.error = feedback or "review did not pass"
                self._log(
                    result, task, "warn",
                    f"task abandoned after {self.max_iterations} iterations",
                )
        except _Abort as exc:
            result.status = TaskStatus.FAILED
            result.error = str(exc)
            self._log(result, task, "error", f"task failed: {exc}")

        result.duration_sec = time.monotonic() - start
        self._emit(self._event(
            EventType.TASK_END, task, iteration=result.iterations,
            duration_sec=result.duration_sec, status=result.status, error=result.error,
        ))
        return result
