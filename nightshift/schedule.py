"""Daemon schedule: next fire time from cron or interval, plus the run window."""

from __future__ import annotations

from datetime import datetime, time, timedelta

from apscheduler.triggers.cron import CronTrigger

from .config import ScheduleConfig, parse_duration
from .errors import ConfigError

DEFAULT_INTERVAL = timedelta(hours=1)


def _parse_clock(value: str) -> time:
    try:
        hour, minute = value.split(":", 1)
        return time(int(hour), int(minute))
    except ValueError as exc:
        raise ConfigError(f"invalid window time {value!r}, expected HH:MM") from exc


def in_window(schedule: ScheduleConfig, now: datetime) -> bool:
    """True when *now* falls inside [window_start, window_end).

    A window whose end is before its start wraps past midnight. No window
    configured means always inside.
    """
    if not schedule.window_start or not schedule.window_end:
        return True
    start = _parse_clock(schedule.window_start)
    end = _parse_clock(schedule.window_end)
    current = now.time().replace(second=0, microsecond=0)
    if start <= end:
        return start <= current < end
    return current >= start or current < end


def next_run(schedule: ScheduleConfig, now: datetime) -> datetime:
    """Next time the daemon should start a cycle."""
    if schedule.cron:
        try:
            trigger = CronTrigger.from_crontab(schedule.cron, timezone=now.tzinfo)
        except ValueError as exc:
            raise ConfigError(f"invalid cron expression {schedule.cron!r}: {exc}") from exc
        fire = trigger.get_next_fire_time(None, now)
        if fire is None:
            raise ConfigError(f"cron expression {schedule.cron!r} never fires")
        return fire

    interval = parse_duration(schedule.interval) if schedule.interval else DEFAULT_INTERVAL
    if interval <= timedelta(0):
        interval = DEFAULT_INTERVAL
    return now + interval
