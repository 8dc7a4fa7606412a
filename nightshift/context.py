"""Project instruction files (CLAUDE.md / AGENTS.md) as agent context."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from .config import IntegrationsConfig

_CLAUDE_MD = ("claude.md", "CLAUDE.md", ".claude.md")
_AGENTS_MD = ("agents.md", "AGENTS.md", ".agents.md")

_SECTION_KINDS = {
    "convention": "convention",
    "coding": "convention",
    "style": "convention",
    "task": "task",
    "todo": "task",
    "constraint": "constraint",
    "restriction": "constraint",
    "safety": "constraint",
}

_HEADER_RE = re.compile(r"^#+\s*(.+)")
_BULLET_RE = re.compile(r"^\s*[-*]\s+(.+)")


@dataclass
class Hint:
    kind: str  # "convention" | "task" | "constraint"
    content: str
    source: str


@dataclass
class ProjectContext:
    """Instruction-file content gathered for one project."""

    text: str = ""
    hints: list[Hint] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)

    def mentions(self, task_types: list[str]) -> list[str]:
        """Task types whose id appears as a whole word in the instruction files."""
        lowered = self.text.lower()
        found = []
        for task_type in task_types:
            pattern = r"(?<![\w-])" + re.escape(task_type.lower()) + r"(?![\w-])"
            if re.search(pattern, lowered):
                found.append(task_type)
        return found

    def prompt_section(self) -> str:
        if not self.hints:
            return ""
        lines = ["## Project guidance"]
        for hint in self.hints:
            lines.append(f"- ({hint.kind}) {hint.content}")
        return "\n".join(lines)


def _first_existing(project: Path, names: tuple[str, ...]) -> Path | None:
    for name in names:
        path = project / name
        if path.is_file():
            return path
    return None


def parse_hints(content: str, source: str) -> list[Hint]:
    """Collect bullets listed under convention, task and constraint headings."""
    hints: list[Hint] = []
    current: str | None = None
    for line in content.splitlines():
        header = _HEADER_RE.match(line)
        if header:
            title = header.group(1).lower()
            current = next(
                (kind for key, kind in _SECTION_KINDS.items() if key in title), None
            )
            continue
        if current is None:
            continue
        bullet = _BULLET_RE.match(line)
        if bullet:
            hints.append(Hint(kind=current, content=bullet.group(1).strip(), source=source))
    return hints


def read_project_context(project: str | Path, integrations: IntegrationsConfig) -> ProjectContext:
    project = Path(project).expanduser()
    ctx = ProjectContext()
    candidates = []
    if integrations.claude_md:
        candidates.append(_first_existing(project, _CLAUDE_MD))
    if integrations.agents_md:
        candidates.append(_first_existing(project, _AGENTS_MD))

    texts = []
    for path in candidates:
        if path is None:
            continue
        content = path.read_text(encoding="utf-8", errors="replace")
        texts.append(content)
        ctx.sources.append(str(path))
        ctx.hints.extend(parse_hints(content, path.name))
    ctx.text = "\n\n".join(texts)
    return ctx
