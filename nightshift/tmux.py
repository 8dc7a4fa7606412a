"""Read provider-reported weekly usage from the interactive CLIs.

Claude Code keeps no machine-readable record of its weekly limit, so the
``/usage`` screen is rendered inside a detached tmux session and the
percentage is read back from the pane. Codex's ``/status`` screen is
handled the same way for when its session logs carry no rate limits.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import time
from dataclasses import dataclass
from typing import Callable

from .errors import ScrapeError

logger = logging.getLogger(__name__)

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07]*\x07")

_CLAUDE_ALL_MODELS_RE = re.compile(r"current\s+week\s*\(all\s+models\).*?(\d{1,3})%", re.I | re.S)
_CLAUDE_WEEK_RE = re.compile(r"current\s+week.*?(\d{1,3})%", re.I | re.S)
_CODEX_WEEKLY_RE = re.compile(r"weekly\s+limit[^\n]*?(\d{1,3})%\s*(left|used)?", re.I)


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def _percent(raw: str) -> float | None:
    value = float(raw)
    return value if 0 <= value <= 100 else None


def parse_claude_weekly_pct(screen: str) -> float | None:
    """Weekly percent used from Claude's ``/usage`` screen.

    The all-models line is preferred when several weekly bars are shown.
    """
    text = strip_ansi(screen)
    match = _CLAUDE_ALL_MODELS_RE.search(text) or _CLAUDE_WEEK_RE.search(text)
    return _percent(match.group(1)) if match else None


def parse_codex_weekly_pct(screen: str) -> float | None:
    """Weekly percent used from Codex's ``/status`` screen ("N% left" is inverted)."""
    match = _CODEX_WEEKLY_RE.search(strip_ansi(screen))
    if not match:
        return None
    pct = _percent(match.group(1))
    if pct is not None and (match.group(2) or "").lower() == "left":
        pct = 100 - pct
    return pct


@dataclass(frozen=True)
class _Screen:
    command: str
    slash: str
    ready: re.Pattern
    parse: Callable[[str], float | None]


SCREENS = {
    "claude": _Screen("claude", "/usage", re.compile(r"current\s+week", re.I),
                      parse_claude_weekly_pct),
    "codex": _Screen("codex", "/status", re.compile(r"weekly\s+limit", re.I),
                     parse_codex_weekly_pct),
}


class TmuxScraper:
    """Drives a provider CLI in a throwaway tmux session."""

    def __init__(
        self,
        binary: str = "tmux",
        timeout: float = 45.0,
        startup_timeout: float = 20.0,
        render_timeout: float = 15.0,
        poll_interval: float = 0.3,
    ):
        self.binary = binary
        self.timeout = timeout
        self.startup_timeout = startup_timeout
        self.render_timeout = render_timeout
        self.poll_interval = poll_interval

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def supports(self, provider: str) -> bool:
        return provider in SCREENS

    async def _tmux(self, *args: str) -> str:
        proc = await asyncio.create_subprocess_exec(
            self.binary, *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise ScrapeError(
                f"tmux {args[0]} failed: {stderr.decode(errors='replace').strip()}")
        return stdout.decode(errors="replace")

    async def capture(self, session: str) -> str:
        return await self._tmux("capture-pane", "-p", "-t", session, "-S", "-200")

    async def _wait_for(self, session: str, ready: Callable[[str], bool], timeout: float) -> str:
        deadline = time.monotonic() + timeout
        while True:
            screen = await self.capture(session)
            if ready(strip_ansi(screen)):
                return screen
            if time.monotonic() >= deadline:
                raise ScrapeError(f"timed out waiting for tmux session {session}")
            await asyncio.sleep(self.poll_interval)

    async def _drive(self, session: str, screen: _Screen) -> float:
        await self._tmux("send-keys", "-t", session, screen.command, "Enter")
        text = await self._wait_for(
            session,
            lambda s: sum(1 for line in s.splitlines() if line.strip()) > 5,
            self.startup_timeout,
        )
        if "do you trust" in strip_ansi(text).lower():
            await self._tmux("send-keys", "-t", session, "Enter")
        await self._tmux("send-keys", "-t", session, "-l", screen.slash)
        await asyncio.sleep(0.5)
        await self._tmux("send-keys", "-t", session, "Enter")
        text = await self._wait_for(
            session, lambda s: bool(screen.ready.search(s)), self.render_timeout)
        pct = screen.parse(text)
        if pct is None:
            raise ScrapeError(f"no weekly percentage on the {screen.slash} screen")
        return pct

    async def scrape(self, provider: str) -> float:
        """Weekly percent used as the provider itself reports it."""
        screen = SCREENS.get(provider)
        if screen is None:
            raise ScrapeError(f"no usage screen known for {provider}")
        session = f"nightshift-usage-{provider}-{time.time_ns()}"
        await self._tmux("new-session", "-d", "-s", session, "-x", "120", "-y", "40")
        try:
            return await asyncio.wait_for(self._drive(session, screen), self.timeout)
        except asyncio.TimeoutError as exc:
            raise ScrapeError(f"{provider} usage scrape timed out") from exc
        finally:
            try:
                await self._tmux("kill-session", "-t", session)
            except ScrapeError as exc:
                logger.debug("cleanup of %s failed: %s", session, exc)
