"""Home directory scaffold with default config and agent templates."""

from __future__ import annotations

from pathlib import Path

from autodelegate.config import CONFIG_FILENAME, OrchestratorConfig
from autodelegate.orchestrator.contracts import write_json
from autodelegate.orchestrator.models import QueueDir
from autodelegate.orchestrator.queue import QueueStore

DEFAULT_ROUTING_ORDER = ("claude-generalist",)

CLAUDE_AGENT_TEMPLATE: dict[str, object] = {
    "name": "claude-generalist",
    "enabled": True,
    "description": "Default Claude Code worker for delegated tasks.",
    "command": "claude",
    "promptMode": "argument",
    "defaultArgs": ["--permission-mode", "acceptEdits", "-p"],
    "useWorktree": True,
}

CODEX_AGENT_EXAMPLE: dict[str, object] = {
    "name": "codex-generalist",
    "enabled": False,
    "description": "Example config. Copy to codex.agent.json and tune args.",
    "command": "codex",
    "promptMode": "argument",
    "defaultArgs": [],
    "useWorktree": True,
}


def scaffold_home(home: Path, *, force: bool = False) -> list[Path]:
    """Create the queue layout and default files; return the files written."""

    store = QueueStore(home)
    store.ensure_layout()
    written: list[Path] = []
    for queue_dir in QueueDir:
        keep = store.dir(queue_dir) / ".gitkeep"
        if force or not keep.exists():
            keep.write_text("", "utf-8")
            written.append(keep)

    defaults = {
        home / CONFIG_FILENAME: OrchestratorConfig(routing_order=DEFAULT_ROUTING_ORDER).to_payload(),
        home / "agents" / "claude.agent.json": CLAUDE_AGENT_TEMPLATE,
        home / "agents" / "codex.agent.example.json": CODEX_AGENT_EXAMPLE,
    }
    for path, payload in defaults.items():
        if force or not path.exists():
            write_json(path, dict(payload))
            written.append(path)
    return written
