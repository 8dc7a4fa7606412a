"""Shared fixtures for nightshift tests."""

import logging

import pytest
import pytest_asyncio
import structlog

from nightshift.agents import ExecuteResult
from nightshift.config import Config, ProjectConfig


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep tests away from the real ~/.config and the NIGHTSHIFT_* variables."""
    monkeypatch.setenv("NIGHTSHIFT_CONFIG", str(tmp_path / "global-config.yaml"))
    for var in ("NIGHTSHIFT_BUDGET_MODE", "NIGHTSHIFT_MAX_PERCENT", "NIGHTSHIFT_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    yield
    # setup_logging() detaches the package logger from the root; undo for caplog
    logger = logging.getLogger("nightshift")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
    structlog.reset_defaults()


@pytest.fixture
def tmp_project(tmp_path):
    """Temporary project: nightshift.yaml + CLAUDE.md"""
    project = tmp_path / "project"
    project.mkdir()
    (project / "CLAUDE.md").write_text("""\
# Project Rules

## Conventions
- Use ruff for formatting
- Keep functions small

## Tasks
- Run lint-fix regularly
""")
    (project / "nightshift.yaml").write_text(f"""\
budget:
  mode: daily
  max_percent: 75
  reserve_percent: 5
  weekly_tokens: 700000
providers:
  preference: [claude, codex]
projects:
  - path: {project}
    priority: 1
db_path: {tmp_path / "state.db"}
""")
    return project


@pytest.fixture
def config(tmp_path):
    """Plain Config with one project and defaults elsewhere."""
    cfg = Config()
    cfg.projects = [ProjectConfig(path=str(tmp_path), priority=1)]
    cfg.db_path = ":memory:"
    return cfg


@pytest_asyncio.fixture
async def db(tmp_path):
    """Real SQLite file database (WAL mode)."""
    from nightshift.db import Database
    db = Database(str(tmp_path / "test.db"))
    await db.init()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def memory_db():
    """In-memory database for fast unit tests."""
    from nightshift.db import Database
    db = Database(":memory:")
    await db.init()
    yield db
    await db.close()


class FakeAgent:
    """Agent double returning scripted results in order (last one repeats)."""

    name = "fake"

    def __init__(self, results=None, available=True):
        self.results = list(results or [])
        self._available = available
        self.prompts: list[str] = []
        self.timeouts: list[float | None] = []

    def available(self) -> bool:
        return self._available

    async def execute(self, prompt, workdir, timeout=None):
        self.prompts.append(prompt)
        self.timeouts.append(timeout)
        if not self.results:
            return ExecuteResult(output="ok")
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


def agent_result(output="", data=None, error="", exit_code=0):
    return ExecuteResult(output=output, json=data, error=error, exit_code=exit_code)


@pytest.fixture
def fake_agent():
    return FakeAgent()
