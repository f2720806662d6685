"""Backend interface for agent execution."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from autodelegate.orchestrator.models import AgentSpec, Task


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one task attempt."""

    agent: AgentSpec
    task: Task
    prompt: str
    cwd: Path
    stdout_path: Path
    stderr_path: Path
    base_env: Mapping[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome; exactly one of ``exit_code`` and ``signal`` is set."""

    exit_code: int | None
    signal: str | None
    stdout_path: Path
    stderr_path: Path
    stdout_truncated: bool = False
    stderr_truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def failure_code(self) -> str:
        """``exit_<code>`` or ``exit_<SIGNAME>`` for a signal-terminated agent."""

        return f"exit_{self.exit_code if self.exit_code is not None else self.signal}"


class AgentBackend(Protocol):
    """Protocol implemented by agent runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run a task attempt and return execution metadata."""
