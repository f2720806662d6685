"""Shared test fixtures."""

from __future__ import annotations

import json
import os
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from autodelegate.config import DaemonSettings
from autodelegate.orchestrator.queue import QueueStore

ECHO_AGENT_ARGS = ["-m", "autodelegate.orchestrator.backend.echo_agent"]

AgentWriter = Callable[..., Path]
TaskWriter = Callable[..., Path]


@pytest.fixture()
def base_environ() -> dict[str, str]:
    """Host environment without autodelegate overrides, global agents disabled."""

    env = {key: value for key, value in os.environ.items() if not key.startswith("AUTO_DELEGATE_")}
    env["AUTO_DELEGATE_DISABLE_GLOBAL_AGENTS"] = "1"
    return env


@pytest.fixture()
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    QueueStore(path).ensure_layout()
    return path


@pytest.fixture()
def settings(tmp_path: Path, home: Path, base_environ: dict[str, str]) -> DaemonSettings:
    repo_root = tmp_path / "repo"
    repo_root.mkdir(exist_ok=True)
    return DaemonSettings.from_env(home=home, repo_root=repo_root, environ=base_environ)


@pytest.fixture()
def write_agent(home: Path) -> AgentWriter:
    """Write ``<file_stem>.agent.json`` running the echo agent with ``sys.executable``."""

    def _write(  # noqa: PLR0913
        name: str = "echo",
        *,
        extra_args: list[str] | None = None,
        prompt_mode: str = "argument",
        use_worktree: bool = False,
        enabled: bool = True,
        env: dict[str, str] | None = None,
        directory: Path | None = None,
        file_stem: str | None = None,
    ) -> Path:
        target_dir = directory or home / "agents"
        target_dir.mkdir(parents=True, exist_ok=True)
        payload: dict[str, object] = {
            "name": name,
            "enabled": enabled,
            "command": sys.executable,
            "promptMode": prompt_mode,
            "defaultArgs": [*ECHO_AGENT_ARGS, *(extra_args or [])],
            "useWorktree": use_worktree,
        }
        if env:
            payload["env"] = env
        path = target_dir / f"{file_stem or name}.agent.json"
        path.write_text(json.dumps(payload), "utf-8")
        return path

    return _write


@pytest.fixture()
def write_task(home: Path) -> TaskWriter:
    """Drop a raw task document into ``inbox/``."""

    def _write(name: str, payload: dict[str, object] | str) -> Path:
        path = home / "inbox" / name
        body = payload if isinstance(payload, str) else json.dumps(payload)
        path.write_text(body, "utf-8")
        return path

    return _write
