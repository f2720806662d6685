"""Controllers for the daemon, submit, status and init CLI commands."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from autodelegate.config import DaemonSettings
from autodelegate.orchestrator.contracts import (
    AGENT_FILE_SUFFIX,
    compact_timestamp,
    load_json,
    slugify,
    to_iso,
    utc_now,
    write_json,
)
from autodelegate.orchestrator.models import QueueDir
from autodelegate.orchestrator.queue import QueueStore
from autodelegate.orchestrator.registry import command_exists
from autodelegate.orchestrator.scaffold import scaffold_home
from autodelegate.orchestrator.worker import DaemonWorker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DaemonCommand:
    """CLI input for the daemon loop."""

    home: Path | None
    poll_ms: int | None
    once: bool


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for task submission."""

    home: Path | None
    title: str
    prompt: str
    agent: str | None = None
    tool: str | None = None
    cwd: str | None = None
    max_attempts: int = 2
    task_id: str | None = None
    command_args: tuple[str, ...] = ()
    env: tuple[str, ...] = ()


@dataclass(slots=True)
class StatusCommand:
    """CLI input for queue status."""

    home: Path | None


@dataclass(slots=True)
class InitCommand:
    """CLI input for home scaffolding."""

    home: Path | None
    force: bool = False


class DelegationCliController:
    """Coordinates queue, daemon and inspection CLI operations."""

    def run_daemon(self, command: DaemonCommand) -> list[str]:
        settings = DaemonSettings.from_env(home=command.home, poll_interval_ms=command.poll_ms)
        QueueStore(settings.home).ensure_layout()

        logger.info("Autodelegate daemon started.")
        logger.info("Repo root: %s", settings.repo_root)
        logger.info("Home: %s", settings.home)
        if not settings.disable_global_agents:
            logger.info("Global agents: %s", settings.global_agents_dir)

        worker = DaemonWorker(settings=settings)
        summary = worker.run_loop(once=command.once)
        logger.info("Autodelegate daemon stopped.")
        return [
            "Daemon summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"retried={summary.retried} failed={summary.failed} "
            f"waiting={summary.waiting} idle_polls={summary.idle_polls}",
        ]

    def submit(self, command: SubmitCommand) -> list[str]:
        if not command.title.strip() or not command.prompt.strip():
            raise ValueError("Both --title and --prompt are required.")
        if command.max_attempts < 1:
            raise ValueError("--max-attempts must be a positive number.")

        settings = DaemonSettings.from_env(home=command.home)
        inbox = QueueStore(settings.home).dir(QueueDir.INBOX)
        inbox.mkdir(parents=True, exist_ok=True)

        now = utc_now()
        stamp = compact_timestamp(now)
        task_id = command.task_id or f"{slugify(command.title)}-{stamp}"
        payload: dict[str, object] = {
            "id": task_id,
            "title": command.title,
            "prompt": command.prompt,
            "agent": command.agent,
            "tool": command.tool,
            "cwd": command.cwd,
            "commandArgs": list(command.command_args) or None,
            "env": _parse_env_pairs(command.env) or None,
            "maxAttempts": command.max_attempts,
            "attempt": 0,
            "createdAt": to_iso(now),
        }
        payload = {key: value for key, value in payload.items() if value not in (None, "")}

        path = inbox / f"{stamp}-{slugify(task_id)}.json"
        # The daemon lists only *.json, so the staging file is never claimed.
        staging = inbox / f".{path.name}.tmp"
        write_json(staging, payload)
        os.replace(staging, path)
        return [f"Queued task: {path}", f"Task id: {task_id}"]

    def status(self, command: StatusCommand) -> list[str]:
        settings = DaemonSettings.from_env(home=command.home)
        counts = QueueStore(settings.home).counts()
        lines = [
            "Autodelegate status",
            f"Repo: {settings.repo_root}",
            f"Home: {settings.home}",
            f"Inbox: {counts[QueueDir.INBOX]}",
            f"Processing: {counts[QueueDir.PROCESSING]}",
            f"Completed: {counts[QueueDir.COMPLETED]}",
            f"Failed: {counts[QueueDir.FAILED]}",
        ]

        agents_dir = settings.project_agents_dir
        agent_files = sorted(agents_dir.glob(f"*{AGENT_FILE_SUFFIX}")) if agents_dir.is_dir() else []
        if not agent_files:
            return lines

        lines.append("Agents:")
        for path in agent_files:
            try:
                raw = load_json(path)
            except (ValueError, TypeError):
                lines.append(f"- {path.name}: invalid JSON")
                continue
            enabled = raw.get("enabled") is not False
            agent_command = str(raw.get("command") or "")
            installed = bool(agent_command) and command_exists(agent_command)
            lines.append(
                f"- {raw.get('name') or path.name}: enabled={str(enabled).lower()} "
                f"command={agent_command or 'n/a'} installed={str(installed).lower()}",
            )
        return lines

    def init(self, command: InitCommand) -> list[str]:
        settings = DaemonSettings.from_env(home=command.home)
        written = scaffold_home(settings.home, force=command.force)
        lines = [f"Initialized autodelegate home: {settings.home}"]
        lines.extend(f"Wrote {path}" for path in written if path.name != ".gitkeep")
        lines.append("Next: add/update agent configs, then run autodelegate daemon.")
        return lines


def _parse_env_pairs(pairs: tuple[str, ...]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, separator, value = pair.partition("=")
        if not separator or not key.strip():
            raise ValueError(f"Invalid --env value {pair!r}; expected KEY=VALUE.")
        env[key.strip()] = value
    return env
