"""Domain models for the file-backed task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class QueueDir(str, Enum):
    """Queue directories; a task's directory is its lifecycle state."""

    INBOX = "inbox"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class EventStatus(str, Enum):
    """Status values written to the event log."""

    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    WAITING = "waiting"


class FailureReason(str, Enum):
    """Failure reasons that do not depend on the agent exit status."""

    INVALID_JSON = "invalid_json"
    MISSING_PROMPT = "missing_prompt"
    INVALID_TASK = "invalid_task"
    RUNTIME_EXCEPTION = "runtime_exception"


class PromptMode(str, Enum):
    """How the prompt reaches the agent process."""

    ARGUMENT = "argument"
    STDIN = "stdin"


@dataclass(frozen=True, slots=True)
class AgentSpec:
    """One routable agent definition, normalized at load time."""

    name: str
    command: str
    enabled: bool = True
    description: str = ""
    prompt_mode: PromptMode = PromptMode.ARGUMENT
    default_args: tuple[str, ...] = ()
    use_worktree: bool = True
    env: dict[str, str] = field(default_factory=dict, hash=False)


@dataclass(slots=True)
class Task:
    """Task payload read from a queue file.

    ``payload`` keeps the document exactly as read so that rewrites preserve
    keys this model does not know about.
    """

    id: str
    prompt: str
    payload: dict[str, Any]
    title: str = ""
    agent: str | None = None
    tool: str | None = None
    cwd: str | None = None
    command_args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    max_attempts: int | None = None
    attempt: int = 0
    last_error: str | None = None
    last_tried_at: str | None = None

    def effective_max_attempts(self, default: int) -> int:
        return self.max_attempts if self.max_attempts is not None else default

    def to_payload(self) -> dict[str, Any]:
        """Serialize back to the task file shape, keeping unknown keys."""

        payload = dict(self.payload)
        payload["attempt"] = self.attempt
        if self.last_error is not None:
            payload["lastError"] = self.last_error
        if self.last_tried_at is not None:
            payload["lastTriedAt"] = self.last_tried_at
        return payload


@dataclass(slots=True)
class RunSummary:
    """Summary written once per execution attempt."""

    status: str
    task_id: str
    agent: str
    tool: str
    started_at: str
    finished_at: str
    duration_ms: int
    exit_code: int | None
    signal: str | None
    run_dir: str
    worktree: str | None = None
    branch: str | None = None
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    error: str | None = None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "status": self.status,
            "taskId": self.task_id,
            "agent": self.agent,
            "tool": self.tool,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "durationMs": self.duration_ms,
            "exitCode": self.exit_code,
            "signal": self.signal,
            "runDir": self.run_dir,
            "worktree": self.worktree,
            "branch": self.branch,
            "stdoutTruncated": self.stdout_truncated,
            "stderrTruncated": self.stderr_truncated,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload
