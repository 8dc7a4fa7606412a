"""SQLite state persistence with WAL mode.

Holds the assignment locks, per-task run history used for cooldowns, cycle
run records and the usage snapshot history.
"""

from __future__ import annotations

import json
import os
from datetime import date, datetime, timedelta, timezone

import aiosqlite

from .models import Assignment, RunRecord, Snapshot

MAX_RUN_HISTORY = 100

_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    path TEXT PRIMARY KEY,
    last_run TEXT,
    run_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS task_history (
    project_path TEXT NOT NULL,
    task_type TEXT NOT NULL,
    last_run TEXT NOT NULL,
    PRIMARY KEY (project_path, task_type)
);

CREATE TABLE IF NOT EXISTS assigned_tasks (
    task_id TEXT PRIMARY KEY,
    project TEXT NOT NULL,
    task_type TEXT NOT NULL,
    assigned_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS run_history (
    id TEXT PRIMARY KEY,
    start_time TEXT NOT NULL,
    end_time TEXT,
    project TEXT NOT NULL,
    tasks TEXT NOT NULL DEFAULT '[]',
    tokens_used INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    error TEXT
);

CREATE TABLE IF NOT EXISTS snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    provider TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    week_start TEXT NOT NULL,
    local_tokens INTEGER NOT NULL,
    local_daily INTEGER NOT NULL DEFAULT 0,
    scraped_pct REAL,
    inferred_budget INTEGER,
    day_of_week INTEGER NOT NULL,
    hour_of_day INTEGER NOT NULL,
    session_reset_time TEXT DEFAULT '',
    weekly_reset_time TEXT DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_snapshots_provider_time ON snapshots(provider, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_snapshots_provider_week ON snapshots(provider, week_start);
CREATE INDEX IF NOT EXISTS idx_run_history_start ON run_history(start_time DESC);
"""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(dt: datetime) -> str:
    """Fixed-width UTC timestamp so string comparison orders correctly."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_path(path: str) -> str:
    """Canonical key for a project path (``~`` expanded, redundant parts removed)."""
    return os.path.normpath(os.path.expanduser(path))


class Database:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        if self.db_path != ":memory:":
            await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    # ---------------------------------------------------------------
    # Projects & task history
    # ---------------------------------------------------------------

    async def record_project_run(self, project: str, now: datetime | None = None) -> None:
        await self._conn.execute(
            """INSERT INTO projects (path, last_run, run_count) VALUES (?,?,1)
               ON CONFLICT(path) DO UPDATE SET
                 last_run=excluded.last_run,
                 run_count=projects.run_count + 1
            """,
            (normalize_path(project), _ts(now or _now())),
        )
        await self._conn.commit()

    async def last_project_run(self, project: str) -> datetime | None:
        cursor = await self._conn.execute(
            "SELECT last_run FROM projects WHERE path = ?", (normalize_path(project),)
        )
        row = await cursor.fetchone()
        return _parse_ts(row["last_run"]) if row else None

    async def project_run_count(self, project: str) -> int:
        cursor = await self._conn.execute(
            "SELECT run_count FROM projects WHERE path = ?", (normalize_path(project),)
        )
        row = await cursor.fetchone()
        return row["run_count"] if row else 0

    async def record_task_run(
        self, project: str, task_type: str, now: datetime | None = None
    ) -> None:
        await self._conn.execute(
            """INSERT INTO task_history (project_path, task_type, last_run)
               VALUES (?,?,?)
               ON CONFLICT(project_path, task_type) DO UPDATE SET
                 last_run=excluded.last_run
            """,
            (normalize_path(project), task_type, _ts(now or _now())),
        )
        await self._conn.commit()

    async def last_task_run(self, project: str, task_type: str) -> datetime | None:
        cursor = await self._conn.execute(
            "SELECT last_run FROM task_history WHERE project_path = ? AND task_type = ?",
            (normalize_path(project), task_type),
        )
        row = await cursor.fetchone()
        return _parse_ts(row["last_run"]) if row else None

    async def days_since_last_run(
        self, project: str, task_type: str, now: datetime | None = None
    ) -> int:
        """Whole days since the task last ran for *project*; -1 if never."""
        last = await self.last_task_run(project, task_type)
        if last is None:
            return -1
        return max(0, ((now or _now()) - last).days)

    async def staleness_bonus(
        self, project: str, task_type: str, now: datetime | None = None
    ) -> float:
        days = await self.days_since_last_run(project, task_type, now)
        if days < 0:
            return 3.0
        return min(days, 30) * 0.1

    # ---------------------------------------------------------------
    # Assignments
    # ---------------------------------------------------------------

    async def mark_assigned(
        self,
        task_id: str,
        project: str,
        task_type: str,
        assigned_at: datetime | None = None,
    ) -> None:
        await self._conn.execute(
            """INSERT INTO assigned_tasks (task_id, project, task_type, assigned_at)
               VALUES (?,?,?,?)
               ON CONFLICT(task_id) DO UPDATE SET
                 project=excluded.project,
                 task_type=excluded.task_type,
                 assigned_at=excluded.assigned_at
            """,
            (task_id, normalize_path(project), task_type, _ts(assigned_at or _now())),
        )
        await self._conn.commit()

    async def clear_assigned(self, task_id: str) -> None:
        await self._conn.execute(
            "DELETE FROM assigned_tasks WHERE task_id = ?", (task_id,)
        )
        await self._conn.commit()

    async def clear_all_assigned(self) -> int:
        cursor = await self._conn.execute("DELETE FROM assigned_tasks")
        await self._conn.commit()
        return cursor.rowcount

    async def is_assigned(self, task_id: str) -> bool:
        cursor = await self._conn.execute(
            "SELECT 1 FROM assigned_tasks WHERE task_id = ?", (task_id,)
        )
        return await cursor.fetchone() is not None

    async def get_assigned(self, task_id: str) -> Assignment | None:
        cursor = await self._conn.execute(
            "SELECT * FROM assigned_tasks WHERE task_id = ?", (task_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_assignment(row) if row else None

    async def list_assigned(self) -> list[Assignment]:
        cursor = await self._conn.execute(
            "SELECT * FROM assigned_tasks ORDER BY assigned_at"
        )
        rows = await cursor.fetchall()
        return [self._row_to_assignment(r) for r in rows]

    async def clear_stale_assignments(
        self, max_age: timedelta, now: datetime | None = None
    ) -> int:
        """Delete assignments older than *max_age*; return how many were removed."""
        cutoff = _ts((now or _now()) - max_age)
        cursor = await self._conn.execute(
            "DELETE FROM assigned_tasks WHERE assigned_at < ?", (cutoff,)
        )
        await self._conn.commit()
        return cursor.rowcount

    # ---------------------------------------------------------------
    # Run history
    # ---------------------------------------------------------------

    async def add_run_record(self, record: RunRecord) -> None:
        await self._conn.execute(
            """INSERT OR REPLACE INTO run_history
               (id, start_time, end_time, project, tasks, tokens_used, status, error)
               VALUES (?,?,?,?,?,?,?,?)""",
            (
                record.id, _ts(record.start_time),
                _ts(record.end_time) if record.end_time else None,
                normalize_path(record.project), json.dumps(record.tasks),
                record.tokens_used, record.status, record.error or None,
            ),
        )
        await self._conn.execute(
            """DELETE FROM run_history WHERE id NOT IN
               (SELECT id FROM run_history ORDER BY start_time DESC LIMIT ?)""",
            (MAX_RUN_HISTORY,),
        )
        await self._conn.commit()

    async def get_run_history(self, n: int = 10) -> list[RunRecord]:
        """Most recent *n* run records, newest first."""
        cursor = await self._conn.execute(
            "SELECT * FROM run_history ORDER BY start_time DESC LIMIT ?", (n,)
        )
        rows = await cursor.fetchall()
        return [self._row_to_run_record(r) for r in rows]

    # ---------------------------------------------------------------
    # Snapshots
    # ---------------------------------------------------------------

    async def insert_snapshot(self, snap: Snapshot) -> int:
        week_start = snap.week_start or snap.timestamp
        cursor = await self._conn.execute(
            """INSERT INTO snapshots
               (provider, timestamp, week_start, local_tokens, local_daily,
                scraped_pct, inferred_budget, day_of_week, hour_of_day,
                session_reset_time, weekly_reset_time)
               VALUES (?,?,?,?,?,?,?,?,?,?,?)""",
            (
                snap.provider, _ts(snap.timestamp), week_start.date().isoformat(),
                snap.local_tokens, snap.local_daily, snap.scraped_pct,
                snap.inferred_budget, snap.day_of_week, snap.hour_of_day,
                snap.session_reset_time, snap.weekly_reset_time,
            ),
        )
        await self._conn.commit()
        snap.id = cursor.lastrowid
        return snap.id

    async def get_snapshots(
        self, provider: str, since: datetime | None = None, limit: int | None = None
    ) -> list[Snapshot]:
        """Snapshots for *provider*, newest first."""
        sql = "SELECT * FROM snapshots WHERE provider = ?"
        params: list = [provider]
        if since is not None:
            sql += " AND timestamp >= ?"
            params.append(_ts(since))
        sql += " ORDER BY timestamp DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [self._row_to_snapshot(r) for r in rows]

    async def latest_snapshot(self, provider: str) -> Snapshot | None:
        snaps = await self.get_snapshots(provider, limit=1)
        return snaps[0] if snaps else None

    async def calibration_samples(
        self, provider: str, week_start: date
    ) -> list[tuple[int, float]]:
        """(local_tokens, scraped_pct) pairs usable for budget inference."""
        cursor = await self._conn.execute(
            """SELECT local_tokens, scraped_pct FROM snapshots
               WHERE provider = ? AND week_start >= ?
                 AND scraped_pct IS NOT NULL AND scraped_pct > 0
                 AND local_tokens > 0
               ORDER BY timestamp""",
            (provider, week_start.isoformat()),
        )
        rows = await cursor.fetchall()
        return [(r["local_tokens"], r["scraped_pct"]) for r in rows]

    async def hourly_averages(self, provider: str, since: datetime) -> dict[int, float]:
        """Average ``local_daily`` per hour of day since *since*."""
        cursor = await self._conn.execute(
            """SELECT hour_of_day, AVG(local_daily) AS avg_daily FROM snapshots
               WHERE provider = ? AND timestamp >= ?
               GROUP BY hour_of_day ORDER BY hour_of_day""",
            (provider, _ts(since)),
        )
        rows = await cursor.fetchall()
        return {r["hour_of_day"]: float(r["avg_daily"]) for r in rows}

    async def prune_snapshots(self, retention_days: int, now: datetime | None = None) -> int:
        if retention_days <= 0:
            return 0
        cutoff = _ts((now or _now()) - timedelta(days=retention_days))
        cursor = await self._conn.execute(
            "DELETE FROM snapshots WHERE timestamp < ?", (cutoff,)
        )
        await self._conn.commit()
        return cursor.rowcount

    # ---------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------

    @staticmethod
    def _row_to_assignment(row) -> Assignment:
        return Assignment(
            task_id=row["task_id"],
            project=row["project"],
            task_type=row["task_type"],
            assigned_at=_parse_ts(row["assigned_at"]),
        )

    @staticmethod
    def _row_to_run_record(row) -> RunRecord:
        return RunRecord(
            id=row["id"],
            start_time=_parse_ts(row["start_time"]),
            end_time=_parse_ts(row["end_time"]),
            project=row["project"],
            tasks=json.loads(row["tasks"]) if row["tasks"] else [],
            tokens_used=row["tokens_used"],
            status=row["status"],
            error=row["error"] or "",
        )

    @staticmethod
    def _row_to_snapshot(row) -> Snapshot:
        week_start = date.fromisoformat(row["week_start"])
        return Snapshot(
            id=row["id"],
            provider=row["provider"],
            timestamp=_parse_ts(row["timestamp"]),
            week_start=datetime(
                week_start.year, week_start.month, week_start.day, tzinfo=timezone.utc),
            local_tokens=row["local_tokens"],
            local_daily=row["local_daily"],
            scraped_pct=row["scraped_pct"],
            inferred_budget=row["inferred_budget"],
            day_of_week=row["day_of_week"],
            hour_of_day=row["hour_of_day"],
            session_reset_time=row["session_reset_time"] or "",
            weekly_reset_time=row["weekly_reset_time"] or "",
        )
