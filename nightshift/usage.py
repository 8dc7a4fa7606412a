"""Local usage readers for provider CLIs.

Each provider CLI keeps its own usage records on disk; these readers turn
them into a percent-of-budget figure and raw token counts for snapshots.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

from .errors import BudgetError

logger = logging.getLogger(__name__)

_WEEKDAYS = {"monday": 0, "sunday": 6}


@runtime_checkable
class UsageSource(Protocol):
    name: str

    def get_used_percent(self, mode: str, weekly_budget: int) -> float: ...


@runtime_checkable
class ResetTimeSource(Protocol):
    def get_reset_time(self, mode: str) -> datetime | None: ...


# ---------------------------------------------------------------------------
# Week boundaries
# ---------------------------------------------------------------------------

def week_start_for(now: datetime, week_start_day: str = "monday") -> date:
    """Date of the most recent configured week start on or before *now*."""
    target = _WEEKDAYS.get(week_start_day, 0)
    back = (now.weekday() - target) % 7
    return (now - timedelta(days=back)).date()


def days_until_weekly_reset(
    now: datetime,
    week_start_day: str = "monday",
    reset_time: datetime | None = None,
) -> int:
    """Whole days left in the usage week, never less than 1.

    A provider-reported reset time wins over the calendar week.
    """
    if reset_time is not None:
        seconds = (reset_time - now).total_seconds()
        if seconds > 0:
            return max(1, min(7, math.ceil(seconds / 86400)))
    target = _WEEKDAYS.get(week_start_day, 0)
    days = (target - now.weekday()) % 7
    return days or 7


def _check_mode(provider: str, mode: str) -> None:
    if mode not in ("daily", "weekly"):
        raise BudgetError(provider, f"invalid mode: {mode!r}")


# ---------------------------------------------------------------------------
# Claude
# ---------------------------------------------------------------------------

class ClaudeUsage:
    """Reads ``stats-cache.json`` written by the Claude Code CLI."""

    name = "claude"

    def __init__(self, data_dir: str | Path | None = None):
        self.data_dir = Path(data_dir).expanduser() if data_dir else Path.home() / ".claude"

    @property
    def stats_path(self) -> Path:
        return self.data_dir / "stats-cache.json"

    def tokens_by_date(self) -> dict[str, int]:
        path = self.stats_path
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise BudgetError(self.name, f"reading {path}: {exc}") from exc
        totals: dict[str, int] = {}
        for entry in data.get("dailyModelTokens") or []:
            day = entry.get("date")
            if not day:
                continue
            by_model = entry.get("tokensByModel") or {}
            totals[day] = totals.get(day, 0) + sum(int(v) for v in by_model.values())
        return totals

    def get_today_tokens(self, today: date | None = None) -> int:
        today = today or datetime.now().date()
        return self.tokens_by_date().get(today.isoformat(), 0)

    def get_weekly_tokens(self, today: date | None = None) -> int:
        """Tokens over the last 7 days, today included."""
        today = today or datetime.now().date()
        cutoff = today - timedelta(days=6)
        total = 0
        for day, tokens in self.tokens_by_date().items():
            try:
                d = date.fromisoformat(day)
            except ValueError:
                continue
            if cutoff <= d <= today:
                total += tokens
        return total

    def get_used_percent(self, mode: str, weekly_budget: int) -> float:
        _check_mode(self.name, mode)
        if weekly_budget <= 0:
            raise BudgetError(self.name, "weekly budget must be positive")
        if mode == "daily":
            return self.get_today_tokens() / (weekly_budget / 7) * 100
        return self.get_weekly_tokens() / weekly_budget * 100


# ---------------------------------------------------------------------------
# Codex
# ---------------------------------------------------------------------------

@dataclass
class RateLimitWindow:
    used_percent: float
    window_minutes: int
    resets_at: datetime | None = None


@dataclass
class RateLimits:
    primary: RateLimitWindow | None = None
    secondary: RateLimitWindow | None = None


def _parse_window(data) -> RateLimitWindow | None:
    if not isinstance(data, dict) or "used_percent" not in data:
        return None
    resets_at = data.get("resets_at")
    return RateLimitWindow(
        used_percent=float(data["used_percent"]),
        window_minutes=int(data.get("window_minutes") or 0),
        resets_at=(
            datetime.fromtimestamp(int(resets_at), timezone.utc) if resets_at else None
        ),
    )


def _billable(usage: dict) -> int:
    fresh_input = int(usage.get("input_tokens", 0)) - int(usage.get("cached_input_tokens", 0))
    return (
        max(0, fresh_input)
        + int(usage.get("output_tokens", 0))
        + int(usage.get("reasoning_output_tokens", 0))
    )


class CodexUsage:
    """Reads session JSONL logs written by the Codex CLI."""

    name = "codex"

    def __init__(self, data_dir: str | Path | None = None):
        self.data_dir = Path(data_dir).expanduser() if data_dir else Path.home() / ".codex"

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    def _session_files(self) -> list[Path]:
        if not self.sessions_dir.is_dir():
            return []
        files = list(self.sessions_dir.rglob("*.jsonl"))
        files.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        return files

    @staticmethod
    def _token_events(path: Path):
        try:
            lines = path.read_text().splitlines()
        except OSError as exc:
            logger.warning("cannot read codex session %s: %s", path, exc)
            return
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            payload = event.get("payload") or {}
            if event.get("type") == "event_msg" and payload.get("type") == "token_count":
                yield payload

    def parse_rate_limits(self, path: Path) -> RateLimits | None:
        """Last rate-limit report in one session file."""
        latest = None
        for payload in self._token_events(path):
            limits = payload.get("rate_limits")
            if isinstance(limits, dict):
                latest = limits
        if latest is None:
            return None
        return RateLimits(
            primary=_parse_window(latest.get("primary")),
            secondary=_parse_window(latest.get("secondary")),
        )

    def get_rate_limits(self) -> RateLimits | None:
        for path in self._session_files():
            limits = self.parse_rate_limits(path)
            if limits is not None:
                return limits
        return None

    def session_tokens(self, path: Path) -> int:
        """Billable tokens for one session (cumulative total at its last report)."""
        total = 0
        for payload in self._token_events(path):
            info = payload.get("info")
            if isinstance(info, dict) and isinstance(info.get("total_token_usage"), dict):
                total = _billable(info["total_token_usage"])
        return total

    def _tokens_between(self, start: date, end: date) -> int:
        total = 0
        for path in self._session_files():
            day = datetime.fromtimestamp(path.stat().st_mtime).date()
            if start <= day <= end:
                total += self.session_tokens(path)
        return total

    def get_today_tokens(self, today: date | None = None) -> int:
        today = today or datetime.now().date()
        return self._tokens_between(today, today)

    def get_weekly_tokens(self, today: date | None = None) -> int:
        today = today or datetime.now().date()
        return self._tokens_between(today - timedelta(days=6), today)

    def _window(self, mode: str) -> RateLimitWindow | None:
        limits = self.get_rate_limits()
        if limits is None:
            return None
        return limits.primary if mode == "daily" else limits.secondary

    def get_used_percent(self, mode: str, weekly_budget: int) -> float:
        _check_mode(self.name, mode)
        window = self._window(mode)
        if window is not None:
            return window.used_percent
        if weekly_budget <= 0:
            raise BudgetError(self.name, "weekly budget must be positive")
        if mode == "daily":
            return self.get_today_tokens() / (weekly_budget / 7) * 100
        return self.get_weekly_tokens() / weekly_budget * 100

    def get_reset_time(self, mode: str) -> datetime | None:
        window = self._window(mode)
        return window.resets_at if window else None

    def get_scraped_percent(self) -> float | None:
        """Provider-reported weekly percent, used to calibrate the budget."""
        limits = self.get_rate_limits()
        if limits is None or limits.secondary is None:
            return None
        return limits.secondary.used_percent


# ---------------------------------------------------------------------------
# Copilot
# ---------------------------------------------------------------------------

DEFAULT_COPILOT_MONTHLY_REQUESTS = 300


def first_of_next_month(now: datetime) -> datetime:
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


class CopilotUsage:
    """Counts premium requests nightshift itself sends through Copilot.

    Copilot keeps no local token log, so the counter lives in
    ``nightshift-usage.json`` under the data dir and starts over each
    calendar month (UTC).
    """

    name = "copilot"

    def __init__(self, data_dir: str | Path | None = None, monthly_limit: int = 0):
        self.data_dir = Path(data_dir).expanduser() if data_dir else Path.home() / ".copilot"
        self.monthly_limit = monthly_limit or DEFAULT_COPILOT_MONTHLY_REQUESTS

    @property
    def counter_path(self) -> Path:
        return self.data_dir / "nightshift-usage.json"

    def request_count(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        path = self.counter_path
        if not path.exists():
            return 0
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise BudgetError(self.name, f"reading {path}: {exc}") from exc
        if data.get("month") != now.strftime("%Y-%m"):
            return 0
        return int(data.get("request_count", 0))

    def record_request(self, now: datetime | None = None) -> int:
        """Bump this month's counter and return the new count."""
        now = now or datetime.now(timezone.utc)
        count = self.request_count(now) + 1
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.counter_path.write_text(json.dumps({
            "request_count": count,
            "month": now.strftime("%Y-%m"),
            "last_request": now.isoformat(),
        }))
        return count

    def get_used_percent(
        self, mode: str, weekly_budget: int = 0, now: datetime | None = None
    ) -> float:
        """Percent of the monthly request allowance; *weekly_budget* is unused."""
        _check_mode(self.name, mode)
        if self.monthly_limit <= 0:
            raise BudgetError(self.name, "monthly request limit must be positive")
        now = now or datetime.now(timezone.utc)
        requests = self.request_count(now)
        if mode == "weekly":
            return requests / self.monthly_limit * 100
        days_in_month = (first_of_next_month(now) - timedelta(days=1)).day
        per_day = requests / now.day
        return per_day / (self.monthly_limit / days_in_month) * 100

    def get_reset_time(self, mode: str) -> datetime | None:
        return first_of_next_month(datetime.now(timezone.utc))

    def get_today_tokens(self, today: date | None = None) -> int:
        return 0

    def get_weekly_tokens(self, today: date | None = None) -> int:
        return 0


def usage_source_for(provider: str, data_path: str = "", monthly_limit: int = 0):
    if provider == "claude":
        return ClaudeUsage(data_path or None)
    if provider == "codex":
        return CodexUsage(data_path or None)
    if provider == "copilot":
        return CopilotUsage(data_path or None, monthly_limit)
    raise BudgetError(provider, "no usage source for provider")
