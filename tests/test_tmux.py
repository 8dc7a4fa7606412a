"""Tests for reading provider usage screens through tmux."""

import pytest

from nightshift.config import Config
from nightshift.errors import ScrapeError
from nightshift.runner import build_scraper
from nightshift.tmux import (
    TmuxScraper, parse_claude_weekly_pct, parse_codex_weekly_pct, strip_ansi,
)

CLAUDE_USAGE = """\
 Settings:  Status   Config   Usage

 Current session
 ██████                                  12% used
 Resets 3pm (Europe/Berlin)

 Current week (all models)
 \x1b[1m█████████\x1b[0m                               18% used
 Resets Mar 16, 9am

 Current week (Opus)
 ██                                      4% used
"""

CODEX_STATUS = """\
  Model:            gpt-5-codex
  5h limit:         [███░░░░░] 30% used
  Weekly limit:     [██████░░] 62% left (resets 09:00 on 16 Mar)
"""


# --- Parsing ---

def test_strip_ansi():
    assert strip_ansi("\x1b[1;32mok\x1b[0m") == "ok"


def test_parse_claude_prefers_all_models():
    assert parse_claude_weekly_pct(CLAUDE_USAGE) == 18.0


def test_parse_claude_plain_week_line():
    assert parse_claude_weekly_pct("Current week\n  ███ 42% used") == 42.0


def test_parse_claude_missing_or_out_of_range():
    assert parse_claude_weekly_pct("Current session 12% used") is None
    assert parse_claude_weekly_pct("Current week 250% used") is None


def test_parse_codex_left_is_inverted():
    assert parse_codex_weekly_pct(CODEX_STATUS) == 38.0
    assert parse_codex_weekly_pct("Weekly limit: 20% used") == 20.0
    assert parse_codex_weekly_pct("5h limit: 20% used") is None


# --- Session driving ---

class ScriptedScraper(TmuxScraper):
    """Answers tmux commands from a scripted sequence of pane contents."""

    def __init__(self, screens, **kwargs):
        kwargs.setdefault("poll_interval", 0.001)
        kwargs.setdefault("startup_timeout", 0.05)
        kwargs.setdefault("render_timeout", 0.05)
        super().__init__(**kwargs)
        self.screens = list(screens)
        self.commands: list[tuple[str, ...]] = []

    async def _tmux(self, *args):
        self.commands.append(args)
        if args[0] == "capture-pane":
            return self.screens.pop(0) if len(self.screens) > 1 else self.screens[0]
        return ""


STARTED = "\n".join(f"line {i}" for i in range(8))


@pytest.mark.asyncio
async def test_scrape_claude_session():
    scraper = ScriptedScraper([STARTED, STARTED, CLAUDE_USAGE])
    assert await scraper.scrape("claude") == 18.0

    names = [c[0] for c in scraper.commands]
    assert names[0] == "new-session"
    assert names[-1] == "kill-session"
    session = scraper.commands[0][scraper.commands[0].index("-s") + 1]
    assert session.startswith("nightshift-usage-claude-")
    assert ("send-keys", "-t", session, "claude", "Enter") in scraper.commands
    assert ("send-keys", "-t", session, "-l", "/usage") in scraper.commands


@pytest.mark.asyncio
async def test_scrape_accepts_trust_prompt():
    trust = STARTED + "\nDo you trust the files in this folder?"
    scraper = ScriptedScraper([trust, CLAUDE_USAGE])
    await scraper.scrape("claude")
    enters = [c for c in scraper.commands if c[0] == "send-keys" and c[-1] == "Enter"]
    # launch, trust prompt, submit /usage
    assert len(enters) == 3


@pytest.mark.asyncio
async def test_scrape_timeout_still_kills_session():
    scraper = ScriptedScraper([STARTED])
    with pytest.raises(ScrapeError):
        await scraper.scrape("claude")
    assert scraper.commands[-1][0] == "kill-session"


@pytest.mark.asyncio
async def test_scrape_unknown_provider():
    with pytest.raises(ScrapeError):
        await ScriptedScraper([""]).scrape("copilot")


# --- Wiring ---

def test_build_scraper_respects_calibration_settings(monkeypatch):
    monkeypatch.setattr("nightshift.tmux.shutil.which", lambda name: f"/usr/bin/{name}")
    cfg = Config()
    assert isinstance(build_scraper(cfg), TmuxScraper)
    assert build_scraper(cfg, local_only=True) is None
    cfg.budget.billing_mode = "api"
    assert build_scraper(cfg) is None
    cfg.budget.billing_mode = "subscription"
    cfg.budget.calibrate_enabled = False
    assert build_scraper(cfg) is None


def test_build_scraper_without_tmux(monkeypatch):
    monkeypatch.setattr("nightshift.tmux.shutil.which", lambda name: None)
    assert build_scraper(Config()) is None
