"""File-based contracts for task and agent JSON documents."""

from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from autodelegate.orchestrator.models import AgentSpec, FailureReason, PromptMode, Task

AGENT_FILE_SUFFIX = ".agent.json"
TASK_FILE_SUFFIX = ".json"
_SLUG_MAX_CHARS = 60
_NON_SLUG_CHARS = re.compile(r"[^a-z0-9]+")


class InvalidTaskPayload(ValueError):
    """Task file content is defective; retrying cannot help."""

    def __init__(
        self,
        message: str,
        *,
        reason: FailureReason,
        task_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.task_id = task_id


class AgentLoadError(ValueError):
    """Agent definition file cannot be used."""


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def iso_now() -> str:
    return to_iso(utc_now())


def to_iso(value: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a ``Z`` suffix."""

    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def compact_timestamp(value: datetime | None = None) -> str:
    """Filename-safe timestamp such as ``20260219-101502123Z``."""

    iso = to_iso(value or utc_now())
    return iso.replace("-", "").replace(":", "").replace(".", "").replace("T", "-")


def epoch_ms(value: datetime | None = None) -> int:
    return int((value or utc_now()).timestamp() * 1000)


def slugify(value: object, *, fallback: str = "task") -> str:
    """Lowercase ``[a-z0-9-]`` slug capped at 60 characters."""

    slug = _NON_SLUG_CHARS.sub("-", str(value or "").lower()).strip("-")[:_SLUG_MAX_CHARS]
    return slug or fallback


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload with a trailing newline."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def read_task(path: Path) -> Task:
    """Load and validate a queued task file."""

    try:
        raw = load_json(path)
    except (ValueError, TypeError) as error:
        raise InvalidTaskPayload(str(error), reason=FailureReason.INVALID_JSON) from error
    return parse_task(raw, fallback_id=path.name.removesuffix(TASK_FILE_SUFFIX))


def parse_task(raw: dict[str, Any], *, fallback_id: str) -> Task:  # noqa: C901
    """Validate a task document into a ``Task``."""

    raw_id = raw.get("id")
    if raw_id is None or raw_id == "":
        task_id = fallback_id
    elif isinstance(raw_id, str | int) and not isinstance(raw_id, bool):
        task_id = str(raw_id)
    else:
        raise _invalid("task.id must be a string", task_id=fallback_id)

    prompt = raw.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise InvalidTaskPayload(
            "task.prompt must be a non-empty string",
            reason=FailureReason.MISSING_PROMPT,
            task_id=task_id,
        )

    command_args = raw.get("commandArgs") or []
    if not isinstance(command_args, list):
        raise _invalid("task.commandArgs must be an array", task_id=task_id)

    env = raw.get("env") or {}
    if not isinstance(env, dict):
        raise _invalid("task.env must be an object", task_id=task_id)

    max_attempts = raw.get("maxAttempts")
    if max_attempts is not None and (not _is_int(max_attempts) or max_attempts < 1):
        raise _invalid("task.maxAttempts must be an integer >= 1", task_id=task_id)

    attempt = raw.get("attempt")
    if attempt is None:
        attempt = 0
    if not _is_int(attempt) or attempt < 0:
        raise _invalid("task.attempt must be a non-negative integer", task_id=task_id)

    for key in ("title", "agent", "tool", "cwd", "lastError", "lastTriedAt"):
        value = raw.get(key)
        if value is not None and not isinstance(value, str):
            raise _invalid(f"task.{key} must be a string when provided", task_id=task_id)

    return Task(
        id=task_id,
        prompt=prompt,
        payload=dict(raw),
        title=raw.get("title") or "",
        agent=raw.get("agent") or None,
        tool=raw.get("tool") or None,
        cwd=raw.get("cwd") or None,
        command_args=tuple(str(item) for item in command_args),
        env={str(key): str(value) for key, value in env.items()},
        max_attempts=max_attempts,
        attempt=attempt,
        last_error=raw.get("lastError"),
        last_tried_at=raw.get("lastTriedAt"),
    )


def read_agent(path: Path) -> AgentSpec:
    """Load and validate an agent definition file."""

    try:
        raw = load_json(path)
    except (OSError, ValueError, TypeError) as error:
        raise AgentLoadError(f"Failed to load agent config {path}: {error}") from error
    return parse_agent(raw, source=path)


def parse_agent(raw: dict[str, Any], *, source: Path | None = None) -> AgentSpec:
    """Validate an agent document, applying documented defaults."""

    where = f" ({source})" if source is not None else ""
    name = raw.get("name")
    command = raw.get("command")
    if not isinstance(name, str) or not name.strip():
        raise AgentLoadError(f"Agent config is missing 'name'{where}")
    if not isinstance(command, str) or not command.strip():
        raise AgentLoadError(f"Agent config is missing 'command'{where}")

    default_args = raw.get("defaultArgs")
    env = raw.get("env")
    if env is not None and not isinstance(env, dict):
        raise AgentLoadError(f"Agent 'env' must be an object{where}")

    return AgentSpec(
        name=name.strip(),
        command=command.strip(),
        enabled=raw.get("enabled") is not False,
        description=str(raw.get("description") or ""),
        prompt_mode=(
            PromptMode.STDIN if raw.get("promptMode") == PromptMode.STDIN.value
            else PromptMode.ARGUMENT
        ),
        default_args=(
            tuple(str(item) for item in default_args) if isinstance(default_args, list) else ()
        ),
        use_worktree=raw.get("useWorktree") is not False,
        env={str(key): str(value) for key, value in (env or {}).items()},
    )


def _invalid(message: str, *, task_id: str) -> InvalidTaskPayload:
    return InvalidTaskPayload(message, reason=FailureReason.INVALID_TASK, task_id=task_id)


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
