"""Coding agent CLIs driven as subprocesses: Claude Code, Codex and Copilot."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from .errors import BudgetError
from .usage import CopilotUsage

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30 * 60.0

# Seconds to wait for a killed process to be reaped.
_KILL_GRACE = 5.0

_FENCE_RE = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL)


@dataclass
class ExecuteResult:
    """Raw result from one agent invocation."""

    output: str = ""
    json: Any = None
    exit_code: int = 0
    duration_sec: float = 0.0
    error: str = ""

    def is_success(self) -> bool:
        return not self.error and self.exit_code == 0


class Agent(Protocol):
    name: str

    def available(self) -> bool: ...

    async def execute(
        self, prompt: str, workdir: str | Path, timeout: float | None = None
    ) -> ExecuteResult: ...


def extract_json(text: str) -> Any:
    """First JSON object or array found in *text* (fenced blocks preferred)."""
    if not text:
        return None
    for block in _FENCE_RE.findall(text):
        try:
            return json.loads(block.strip())
        except json.JSONDecodeError:
            continue
    stripped = text.strip()
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        pass
    decoder = json.JSONDecoder()
    for i, ch in enumerate(stripped):
        if ch not in "{[":
            continue
        try:
            value, _ = decoder.raw_decode(stripped, i)
        except json.JSONDecodeError:
            continue
        return value
    return None


class CLIAgent(ABC):
    """Runs a provider CLI once per prompt and captures its stdout.

    The prompt is passed as the final argument. stdout and stderr are drained
    together so a chatty CLI cannot fill a pipe and stall.
    """

    name = "cli"
    binary = ""

    def __init__(
        self,
        binary: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        skip_permissions: bool = True,
    ):
        self.binary = binary or self.binary
        self.timeout = timeout
        self.skip_permissions = skip_permissions

    @abstractmethod
    def build_args(self, prompt: str) -> list[str]:
        """Arguments after the binary, prompt included."""

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    async def execute(
        self, prompt: str, workdir: str | Path, timeout: float | None = None
    ) -> ExecuteResult:
        timeout = timeout if timeout and timeout > 0 else self.timeout
        start = time.monotonic()
        proc = None
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                *self.build_args(prompt),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(workdir),
            )
            try:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
            except asyncio.TimeoutError:
                return ExecuteResult(
                    exit_code=-1,
                    duration_sec=time.monotonic() - start,
                    error=f"timeout after {timeout:.0f}s",
                )
        except FileNotFoundError:
            return ExecuteResult(
                exit_code=-1,
                duration_sec=time.monotonic() - start,
                error=(
                    f"CLI not found: '{self.binary}'. "
                    "Please install it and ensure it is on PATH."
                ),
            )
        finally:
            if proc is not None and proc.returncode is None:
                await _kill(proc)

        output = stdout.decode(errors="replace")
        result = ExecuteResult(
            output=output,
            exit_code=proc.returncode or 0,
            duration_sec=time.monotonic() - start,
        )
        if result.exit_code != 0:
            result.error = stderr.decode(errors="replace").strip() or (
                f"{self.binary} exited with code {result.exit_code}"
            )
            return result
        result.json = extract_json(output)
        return result


async def _kill(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=_KILL_GRACE)
    except asyncio.TimeoutError:
        logger.warning("agent process %s did not exit after kill", proc.pid)


class ClaudeAgent(CLIAgent):
    """Claude Code in print mode.

    Invokes::

        claude --print [--dangerously-skip-permissions] <prompt>
    """

    name = "claude"
    binary = "claude"

    def build_args(self, prompt: str) -> list[str]:
        args = ["--print"]
        if self.skip_permissions:
            args.append("--dangerously-skip-permissions")
        args.append(prompt)
        return args


class CodexAgent(CLIAgent):
    """Codex CLI in non-interactive exec mode.

    Invokes::

        codex exec [--dangerously-bypass-approvals-and-sandbox] <prompt>
    """

    name = "codex"
    binary = "codex"

    def build_args(self, prompt: str) -> list[str]:
        args = ["exec"]
        if self.skip_permissions:
            args.append("--dangerously-bypass-approvals-and-sandbox")
        args.append(prompt)
        return args


class CopilotAgent(CLIAgent):
    """GitHub Copilot, either the standalone CLI or the ``gh`` extension.

    Invokes one of::

        copilot -p <prompt> --no-ask-user [--allow-all-tools] --silent
        gh copilot suggest -t shell --no-ask-user <prompt>

    Each invocation is one premium request; when *usage* is given the
    request is counted against the monthly allowance.
    """

    name = "copilot"
    binary = "copilot"

    def __init__(self, binary: str | None = None, usage=None, **kwargs):
        super().__init__(binary=binary or detect_copilot_binary(), **kwargs)
        self.usage = usage

    def build_args(self, prompt: str) -> list[str]:
        if Path(self.binary).name == "gh":
            return ["copilot", "suggest", "-t", "shell", "--no-ask-user", prompt]
        args = ["-p", prompt, "--no-ask-user"]
        if self.skip_permissions:
            args.append("--allow-all-tools")
        args.append("--silent")
        return args

    async def execute(
        self, prompt: str, workdir: str | Path, timeout: float | None = None
    ) -> ExecuteResult:
        result = await super().execute(prompt, workdir, timeout)
        if self.usage is not None and not result.error.startswith("CLI not found"):
            try:
                self.usage.record_request()
            except (OSError, BudgetError) as exc:
                logger.warning("cannot record copilot request: %s", exc)
        return result


def detect_copilot_binary() -> str:
    """Standalone ``copilot`` when installed, else the ``gh`` extension."""
    if shutil.which("copilot"):
        return "copilot"
    if shutil.which("gh"):
        return "gh"
    return "copilot"


def create_agent(provider: str, config) -> CLIAgent:
    """Instantiate the agent for *provider* from ProvidersConfig settings."""
    provider_cfg = config.providers.get(provider)
    skip = provider_cfg.dangerously_skip_permissions if provider_cfg else True
    binary = provider_cfg.binary or None if provider_cfg else None
    if provider == "claude":
        return ClaudeAgent(binary=binary, skip_permissions=skip)
    if provider == "codex":
        return CodexAgent(binary=binary, skip_permissions=skip)
    if provider == "copilot":
        usage = CopilotUsage(provider_cfg.data_path or None, provider_cfg.monthly_requests)
        return CopilotAgent(binary=binary, usage=usage, skip_permissions=skip)
    raise ValueError(f"Unknown provider: {provider}")
