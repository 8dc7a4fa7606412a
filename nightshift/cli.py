"""nightshift CLI — typer-based command interface."""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import datetime, timedelta
from pathlib import Path

import typer

from .errors import NightshiftError

app = typer.Typer(
    name="nightshift",
    help="nightshift — overnight maintenance tasks within your AI token budget",
    no_args_is_help=True,
)
task_app = typer.Typer(help="Inspect the task catalogue.", no_args_is_help=True)
snapshot_app = typer.Typer(help="Capture and inspect usage snapshots.", no_args_is_help=True)
app.add_typer(task_app, name="task")
app.add_typer(snapshot_app, name="snapshot")

logger = logging.getLogger(__name__)

# -------------------------------------------------------------------
# Templates
# -------------------------------------------------------------------

DEFAULT_CONFIG_TEMPLATE = """\
# nightshift.yaml — project configuration
# Global defaults live in ~/.config/nightshift/config.yaml
schedule:
  interval: 1h
  window_start: "22:00"
  window_end: "06:00"

budget:
  mode: daily            # daily | weekly
  max_percent: 75
  reserve_percent: 5
  weekly_tokens: 700000
  billing_mode: subscription
  calibrate_enabled: true
  week_start_day: monday
  snapshot_interval: 30m
  snapshot_retention_days: 90
  aggressive_end_of_week: false

providers:
  preference: [claude, codex]
  claude:
    enabled: true
  codex:
    enabled: true
  copilot:
    enabled: false       # add to preference to use it
    monthly_requests: 300

projects:
  - path: .
    priority: 1

tasks:
  enabled: []
  disabled: []
  priorities:
    lint-fix: 2

orchestrator:
  max_iterations: 3
  agent_timeout: 30m
  max_tasks_per_project: 1

notify:
  webhook_url: ""
  events:
    - run.completed
    - run.failed
"""


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

def _get_project_root() -> Path:
    return Path.cwd()


def _run_async(coro):
    """Run an async coroutine from sync context."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


def _load(root: Path):
    from .config import load_config
    from .logging_setup import setup_logging

    try:
        config = load_config(root)
    except NightshiftError as e:
        typer.echo(f"  Config error: {e}", err=True)
        raise typer.Exit(1)
    setup_logging(config.logging)
    return config


async def _get_db(config):
    from .db import Database
    db_path = Path(config.db_path).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = Database(str(db_path))
    await db.init()
    return db


def _fmt_tokens(n: int) -> str:
    if n >= 1_000_000:
        return f"{n / 1_000_000:.1f}M"
    if n >= 1_000:
        return f"{n / 1_000:.0f}k"
    return str(n)


def _fmt_delta(delta: timedelta) -> str:
    hours = int(delta.total_seconds() // 3600)
    if hours >= 24:
        return f"{hours // 24}d{hours % 24}h"
    minutes = int(delta.total_seconds() % 3600 // 60)
    return f"{hours}h{minutes}m"


def _print_report(report) -> None:
    if report.skipped_reason:
        typer.echo(f"  Skipped: {report.skipped_reason}")
        return
    a = report.allowance
    typer.echo(
        f"  Provider: {report.provider} · allowance {_fmt_tokens(a.allowance)}"
        f" ({a.mode.value}, {a.used_percent:.1f}% used)"
    )
    if not report.outcomes:
        typer.echo("  No eligible tasks.")
        return

    status_icons = {"completed": "✅", "failed": "❌", "abandoned": "⏭️"}
    for o in report.outcomes:
        if o.status is None:
            typer.echo(
                f"  • {o.task_type:<24} score {o.score:>5.1f}  ~{_fmt_tokens(o.estimated_tokens):<6} {o.project}"
            )
            continue
        icon = status_icons.get(o.status.value, "  ")
        line = f"  {icon} {o.task_type:<24} {o.status.value:<10} {o.project}"
        if o.output_ref:
            line += f"  {o.output_ref}"
        typer.echo(line)
        if o.error:
            typer.echo(f"      {o.error}")
    if report.cancelled:
        typer.echo("  Cycle cancelled.")


# -------------------------------------------------------------------
# Commands
# -------------------------------------------------------------------

@app.command()
def init():
    """Write a starter nightshift.yaml in the current project."""
    from .config import PROJECT_CONFIG_NAME

    root = _get_project_root()
    config_path = root / PROJECT_CONFIG_NAME
    if config_path.exists():
        typer.echo(f"  Exists  {PROJECT_CONFIG_NAME}")
        return
    config_path.write_text(DEFAULT_CONFIG_TEMPLATE)
    typer.echo(f"  Created {PROJECT_CONFIG_NAME}")
    typer.echo("\n  nightshift initialized. Run `nightshift preview` to see what would run.")


@app.command()
def run(
    dry_run: bool = typer.Option(False, "--dry-run", help="Select tasks without executing"),
    max_tasks: int = typer.Option(None, "--max-tasks", help="Tasks per project"),
    random_task: bool = typer.Option(False, "--random-task", help="Pick one eligible task at random"),
    project: list[str] = typer.Option(None, "--project", "-p", help="Limit to project path(s)"),
    task: str = typer.Option(None, "--task", "-t", help="Run this task type"),
):
    """Run one cycle now."""
    root = _get_project_root()
    config = _load(root)

    async def _run():
        from .notifier import Notifier
        from .runner import Runner

        db = await _get_db(config)
        notifier = Notifier(config.notify.webhook_url, config.notify.events)
        try:
            runner = Runner(config, db, notifier=notifier)
            typer.echo("  nightshift — starting cycle...")
            report = await runner.run_cycle(
                dry_run=dry_run,
                max_tasks=max_tasks,
                random_task=random_task,
                projects=project or None,
                task_type=task,
            )
            _print_report(report)
            return report
        finally:
            await notifier.close()
            await db.close()

    try:
        report = _run_async(_run())
    except NightshiftError as e:
        typer.echo(f"  Error: {e}", err=True)
        raise typer.Exit(1)
    if report.failed:
        raise typer.Exit(1)


@app.command()
def preview(
    cycles: int = typer.Option(3, "--cycles", "-n", help="Number of cycles to simulate"),
    max_tasks: int = typer.Option(None, "--max-tasks", help="Tasks per project"),
):
    """Show what the next cycles would run, without executing anything."""
    root = _get_project_root()
    config = _load(root)

    async def _preview():
        from .runner import Runner

        db = await _get_db(config)
        try:
            runner = Runner(config, db)
            for i in range(1, cycles + 1):
                typer.echo(f"\n  Cycle {i}")
                typer.echo("  " + "─" * 50)
                report = await runner.run_cycle(dry_run=True, max_tasks=max_tasks)
                _print_report(report)
                if report.skipped_reason:
                    break
            typer.echo("")
        finally:
            await db.close()

    _run_async(_preview())


@app.command()
def budget(
    provider: str = typer.Argument(None, help="Show a single provider"),
):
    """Show the allowance breakdown per provider."""
    root = _get_project_root()
    config = _load(root)

    async def _budget():
        from .errors import BudgetError
        from .runner import build_budget_manager, build_usage_sources, enabled_providers

        db = await _get_db(config)
        try:
            manager = build_budget_manager(config, db, build_usage_sources(config))
            providers = [provider] if provider else enabled_providers(config)
            for name in providers:
                typer.echo(f"\n  {name}")
                typer.echo("  " + "─" * 40)
                try:
                    a = await manager.calculate_allowance(name)
                except BudgetError as e:
                    typer.echo(f"  Error: {e}")
                    continue
                source = a.budget_source.value or "none"
                typer.echo(f"  Mode:        {a.mode.value}")
                typer.echo(
                    f"  Weekly:      {_fmt_tokens(a.weekly_budget)}"
                    f" ({source}, {a.budget_confidence.value or 'n/a'} confidence,"
                    f" {a.budget_sample_count} samples)"
                )
                typer.echo(f"  Base:        {_fmt_tokens(a.budget_base)}")
                typer.echo(f"  Used:        {a.used_percent:.1f}%")
                if a.mode.value == "weekly":
                    typer.echo(f"  Days left:   {a.remaining_days} (x{a.multiplier:.1f})")
                typer.echo(f"  Reserve:     {_fmt_tokens(a.reserve_amount)}")
                typer.echo(f"  Predicted:   {_fmt_tokens(a.predicted_usage)}")
                typer.echo(f"  Allowance:   {_fmt_tokens(a.allowance)}")
            typer.echo("")
        finally:
            await db.close()

    _run_async(_budget())


@app.command()
def status(
    limit: int = typer.Option(10, "--limit", "-n", help="Recent runs to show"),
):
    """Show active assignments and recent runs."""
    root = _get_project_root()
    config = _load(root)

    async def _status():
        db = await _get_db(config)
        try:
            typer.echo("\n  nightshift — Status")
            typer.echo("  " + "─" * 50)
            assigned = await db.list_assigned()
            if assigned:
                typer.echo("  Assigned:")
                for a in assigned:
                    typer.echo(f"    {a.task_id}  since {a.assigned_at:%Y-%m-%d %H:%M}")
            else:
                typer.echo("  No tasks assigned.")

            runs = await db.get_run_history(limit)
            if not runs:
                typer.echo("  No runs recorded.")
                return
            typer.echo("\n  Recent runs:")
            for r in runs:
                tasks = ", ".join(r.tasks) if r.tasks else "—"
                typer.echo(
                    f"    {r.start_time:%Y-%m-%d %H:%M}  {r.status:<8} {r.project}  [{tasks}]"
                )
                if r.error:
                    typer.echo(f"      {r.error}")
        finally:
            await db.close()

    _run_async(_status())


@app.command()
def daemon():
    """Run cycles on the configured schedule until interrupted."""
    root = _get_project_root()
    config = _load(root)

    async def _daemon():
        from .config import parse_duration
        from .notifier import Notifier
        from .runner import Runner, build_scraper, build_usage_sources
        from .schedule import in_window, next_run
        from .snapshots import SnapshotCollector, sleep_or_cancel, run_prune_loop, run_snapshot_loop

        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, cancel.set)

        db = await _get_db(config)
        notifier = Notifier(config.notify.webhook_url, config.notify.events)
        sources = build_usage_sources(config)
        collector = SnapshotCollector(
            db, sources, config.budget.week_start_day, build_scraper(config))
        background = [
            asyncio.create_task(run_snapshot_loop(
                collector, parse_duration(config.budget.snapshot_interval), cancel)),
            asyncio.create_task(run_prune_loop(
                db, config.budget.snapshot_retention_days, cancel)),
        ]
        runner = Runner(config, db, notifier=notifier)
        typer.echo("  nightshift daemon started.")
        try:
            while not cancel.is_set():
                now = datetime.now().astimezone()
                if in_window(config.schedule, now):
                    report = await runner.run_cycle(cancel=cancel)
                    _print_report(report)
                else:
                    logger.debug("outside run window, skipping cycle")
                wake = next_run(config.schedule, datetime.now().astimezone())
                delay = (wake - datetime.now().astimezone()).total_seconds()
                logger.info("next cycle at %s", wake.isoformat(timespec="seconds"))
                if await sleep_or_cancel(cancel, max(1.0, delay)):
                    break
        finally:
            cancel.set()
            await asyncio.gather(*background, return_exceptions=True)
            await notifier.close()
            await db.close()
            typer.echo("  nightshift daemon stopped.")

    try:
        _run_async(_daemon())
    except NightshiftError as e:
        typer.echo(f"  Error: {e}", err=True)
        raise typer.Exit(1)


# -------------------------------------------------------------------
# task
# -------------------------------------------------------------------

@task_app.command("list")
def task_list(
    category: str = typer.Option(None, "--category", "-c", help="Filter by category"),
):
    """List registered tasks."""
    from .tasks import Category, TaskRegistry

    config = _load(_get_project_root())
    try:
        registry = TaskRegistry.from_config(config)
    except NightshiftError as e:
        typer.echo(f"  Error: {e}", err=True)
        raise typer.Exit(1)

    if category:
        try:
            tasks = registry.by_category(Category(category.lower()))
        except ValueError:
            typer.echo(f"  Unknown category '{category}'.", err=True)
            raise typer.Exit(1)
    else:
        tasks = registry.all()

    typer.echo(f"\n  {'Type':<26} {'Category':<10} {'Cost':<18} {'Risk':<7} {'On'}")
    typer.echo(f"  {'---':<26} {'---':<10} {'---':<18} {'---':<7} {'---'}")
    for t in tasks:
        enabled = "yes" if config.is_task_enabled(t.type, t.disabled_by_default) else "no"
        typer.echo(
            f"  {t.type:<26} {t.category.value:<10} {t.cost_tier.label:<18} "
            f"{t.risk_level.value:<7} {enabled}"
        )
    typer.echo(f"\n  {len(tasks)} task(s)")


@task_app.command("show")
def task_show(
    task_type: str = typer.Argument(..., help="Task type"),
    project: str = typer.Option(None, "--project", "-p", help="Show cooldown for this project"),
):
    """Show one task definition."""
    from .tasks import TaskRegistry

    config = _load(_get_project_root())
    try:
        registry = TaskRegistry.from_config(config)
        t = registry.get(task_type)
    except NightshiftError as e:
        typer.echo(f"  Error: {e}", err=True)
        raise typer.Exit(1)

    low, high = t.estimated_tokens()
    typer.echo(f"\n  {t.type}{' (custom)' if t.custom else ''}")
    typer.echo(f"  Name:      {t.name}")
    typer.echo(f"  Category:  {t.category.label}")
    typer.echo(f"  Cost:      {t.cost_tier.label} ({_fmt_tokens(low)}-{_fmt_tokens(high)})")
    typer.echo(f"  Risk:      {t.risk_level.value}")
    typer.echo(f"  Priority:  {config.get_task_priority(t.type)}")
    typer.echo(f"  Enabled:   {'yes' if config.is_task_enabled(t.type, t.disabled_by_default) else 'no'}")
    typer.echo(f"\n  {t.description}")

    if not project:
        return

    async def _cooldown():
        from .selector import Selector

        db = await _get_db(config)
        try:
            selector = Selector(config, db, registry)
            on_cooldown, remaining, interval = await selector.is_on_cooldown(t.type, project)
            if on_cooldown:
                typer.echo(
                    f"\n  Cooldown:  {_fmt_delta(remaining)} left of {_fmt_delta(interval)}")
            else:
                typer.echo(f"\n  Cooldown:  ready (interval {_fmt_delta(interval)})")
        finally:
            await db.close()

    _run_async(_cooldown())


# -------------------------------------------------------------------
# snapshot
# -------------------------------------------------------------------

@snapshot_app.command("capture")
def snapshot_capture(
    provider: str = typer.Argument(None, help="Capture a single provider"),
    local_only: bool = typer.Option(
        False, "--local-only", help="Skip reading usage from the provider CLIs"),
):
    """Record a usage snapshot now."""
    config = _load(_get_project_root())

    async def _capture():
        from .runner import build_scraper, build_usage_sources
        from .snapshots import SnapshotCollector

        db = await _get_db(config)
        try:
            collector = SnapshotCollector(
                db, build_usage_sources(config), config.budget.week_start_day,
                build_scraper(config, local_only))
            if provider:
                try:
                    snaps = [await collector.take_snapshot(provider)]
                except KeyError:
                    typer.echo(f"  Provider '{provider}' is not enabled.", err=True)
                    raise typer.Exit(1)
            else:
                snaps = await collector.take_all()
            for s in snaps:
                pct = f"{s.scraped_pct:.1f}%" if s.scraped_pct is not None else "—"
                typer.echo(
                    f"  {s.provider:<8} week {_fmt_tokens(s.local_tokens):<7}"
                    f" today {_fmt_tokens(s.local_daily):<7} scraped {pct}"
                )
        finally:
            await db.close()

    _run_async(_capture())


@snapshot_app.command("list")
def snapshot_list(
    provider: str = typer.Argument(..., help="Provider"),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """Show recent snapshots for a provider."""
    config = _load(_get_project_root())

    async def _list():
        db = await _get_db(config)
        try:
            snaps = await db.get_snapshots(provider, limit=limit)
            if not snaps:
                typer.echo(f"  No snapshots for '{provider}'.")
                return
            typer.echo(f"\n  {'Time':<17} {'Week':<8} {'Today':<8} {'Scraped':<8} {'Inferred'}")
            for s in snaps:
                pct = f"{s.scraped_pct:.1f}%" if s.scraped_pct is not None else "—"
                inferred = _fmt_tokens(s.inferred_budget) if s.inferred_budget else "—"
                typer.echo(
                    f"  {s.timestamp:%Y-%m-%d %H:%M} {_fmt_tokens(s.local_tokens):<8}"
                    f" {_fmt_tokens(s.local_daily):<8} {pct:<8} {inferred}"
                )
        finally:
            await db.close()

    _run_async(_list())


@snapshot_app.command("prune")
def snapshot_prune(
    days: int = typer.Option(None, "--days", help="Retention in days (default from config)"),
):
    """Delete snapshots older than the retention period."""
    config = _load(_get_project_root())
    retention = days if days is not None else config.budget.snapshot_retention_days

    async def _prune():
        db = await _get_db(config)
        try:
            removed = await db.prune_snapshots(retention)
            typer.echo(f"  Pruned {removed} snapshot(s) older than {retention} days.")
        finally:
            await db.close()

    _run_async(_prune())


if __name__ == "__main__":
    app()
