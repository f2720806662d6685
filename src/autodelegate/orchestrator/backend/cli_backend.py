"""Subprocess-based runner for CLI agents."""

from __future__ import annotations

import os
import signal
import subprocess
from collections.abc import Mapping
from pathlib import Path

from autodelegate.orchestrator.backend.base import AgentRunRequest, AgentRunResult
from autodelegate.orchestrator.models import AgentSpec, PromptMode, Task

MAX_CAPTURE_BYTES = 20 * 1024 * 1024


class AgentRunError(RuntimeError):
    """The agent process could not be started."""


class CliAgentBackend:
    """Run the agent command to completion, streaming output to the run directory.

    There is no timeout: the call blocks until the agent exits. The child gets
    its own session so a Ctrl-C aimed at the daemon does not interrupt it.
    """

    def __init__(self, *, max_capture_bytes: int = MAX_CAPTURE_BYTES) -> None:
        self.max_capture_bytes = max_capture_bytes

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        run_args = build_run_args(request.agent, request.task, request.prompt)
        env = build_env(request.base_env, request.agent, request.task)
        request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
        request.stderr_path.parent.mkdir(parents=True, exist_ok=True)

        stdin_kwargs: dict[str, object]
        if request.agent.prompt_mode is PromptMode.STDIN:
            stdin_kwargs = {"input": request.prompt.encode("utf-8")}
        else:
            stdin_kwargs = {"stdin": subprocess.DEVNULL}

        try:
            with (
                request.stdout_path.open("wb") as stdout_handle,
                request.stderr_path.open("wb") as stderr_handle,
            ):
                completed = subprocess.run(  # noqa: S603
                    run_args,
                    cwd=request.cwd,
                    env=env,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    check=False,
                    start_new_session=os.name != "nt",
                    **stdin_kwargs,
                )
        except FileNotFoundError as error:
            raise AgentRunError(
                f"Cannot start {request.agent.command!r} in {request.cwd}: {error}",
            ) from error
        except OSError as error:
            raise AgentRunError(f"Agent failed to start: {error}") from error

        exit_code, signal_name = _split_returncode(completed.returncode)
        return AgentRunResult(
            exit_code=exit_code,
            signal=signal_name,
            stdout_path=request.stdout_path,
            stderr_path=request.stderr_path,
            stdout_truncated=_cap_file(request.stdout_path, self.max_capture_bytes),
            stderr_truncated=_cap_file(request.stderr_path, self.max_capture_bytes),
        )


def build_run_args(agent: AgentSpec, task: Task, prompt: str) -> list[str]:
    """``command *defaultArgs *commandArgs [prompt]``."""

    args = [agent.command, *agent.default_args, *task.command_args]
    if agent.prompt_mode is PromptMode.ARGUMENT:
        args.append(prompt)
    return args


def build_env(base: Mapping[str, str], agent: AgentSpec, task: Task) -> dict[str, str]:
    """Host environment, then agent overrides, then task overrides."""

    return {**base, **agent.env, **task.env}


def resolve_run_cwd(repo_root: Path, worktree_path: Path | None, task_cwd: str | None) -> Path:
    base = worktree_path or repo_root
    if not task_cwd:
        return base
    candidate = Path(task_cwd).expanduser()
    if candidate.is_absolute():
        return candidate
    return (base / candidate).resolve()


def _split_returncode(returncode: int) -> tuple[int | None, str | None]:
    if returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, str(-returncode)


def _cap_file(path: Path, limit: int) -> bool:
    if path.stat().st_size <= limit:
        return False
    os.truncate(path, limit)
    return True
