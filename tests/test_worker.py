from __future__ import annotations

import json
import re
import shutil
import subprocess
from pathlib import Path

import allure
import pytest

from autodelegate.config import DaemonSettings
from autodelegate.orchestrator import worker as worker_module
from autodelegate.orchestrator.ledger import EventLog
from autodelegate.orchestrator.worker import DaemonWorker

pytestmark = [
    allure.epic("Daemon"),
    allure.feature("Task Lifecycle"),
]

STAMPED = r"\d{13,}"


def _only(directory: Path) -> Path:
    files = sorted(path for path in directory.iterdir() if path.name.endswith(".json"))
    assert len(files) == 1, files
    return files[0]


def _events(settings: DaemonSettings) -> list[dict[str, object]]:
    return EventLog(settings.event_log_path).read()


def _run_dirs(home: Path) -> list[Path]:
    return sorted(path for path in (home / "runs").iterdir() if path.is_dir())


def test_successful_task_is_completed(settings, home, write_agent, write_task) -> None:
    write_agent("echo")
    write_task("20260219-fix.json", {"id": "fix-1", "title": "Fix", "prompt": "fix the bug"})

    summary = DaemonWorker(settings=settings).run_once()

    assert summary.processed == 1
    assert summary.completed == 1
    completed = _only(home / "completed")
    assert re.fullmatch(rf"{STAMPED}-20260219-fix\.json", completed.name)
    assert list((home / "inbox").glob("*.json")) == []
    assert list((home / "processing").glob("*.json")) == []

    [run_dir] = _run_dirs(home)
    assert run_dir.name.endswith("-fix-1")
    assert (run_dir / "prompt.txt").read_text("utf-8") == "fix the bug\n"
    assert (run_dir / "stdout.log").read_text("utf-8").startswith("fix the bug")
    run_summary = json.loads((run_dir / "summary.json").read_text("utf-8"))
    assert run_summary["status"] == "completed"
    assert run_summary["exitCode"] == 0
    assert run_summary["agent"] == "echo"
    assert run_summary["worktree"] is None

    [event] = _events(settings)
    assert event["status"] == "completed"
    assert event["taskId"] == "fix-1"
    assert event["taskFile"] == str(completed)
    assert event["runDir"] == str(run_dir)
    assert "branch" not in event


def test_failed_attempt_is_retried_then_failed(settings, home, write_agent, write_task) -> None:
    write_agent("flaky", extra_args=["--exit-code", "1", "--stderr", "bad things"])
    write_task("task.json", {"id": "t-1", "prompt": "try", "custom": "kept"})
    worker = DaemonWorker(settings=settings)

    first = worker.run_once()

    assert first.retried == 1
    requeued = _only(home / "inbox")
    assert re.fullmatch(rf"retry-{STAMPED}-task\.json", requeued.name)
    payload = json.loads(requeued.read_text("utf-8"))
    assert payload["attempt"] == 1
    assert payload["lastError"] == "bad things"
    assert payload["lastTriedAt"].endswith("Z")
    assert payload["custom"] == "kept"

    second = worker.run_once()

    assert second.failed == 1
    failed = _only(home / "failed")
    assert re.fullmatch(rf"{STAMPED}-retry-{STAMPED}-task\.json", failed.name)
    assert len(_run_dirs(home)) == 2

    retrying, failure = _events(settings)
    assert retrying["status"] == "retrying"
    assert retrying["attempt"] == 1
    assert retrying["maxAttempts"] == 2
    assert failure["status"] == "failed"
    assert failure["reason"] == "exit_1"
    assert failure["attempt"] == 2


def test_last_error_falls_back_to_exit_code(settings, home, write_agent, write_task) -> None:
    write_agent("quiet-fail", extra_args=["--exit-code", "4"])
    write_task("task.json", {"prompt": "try"})

    DaemonWorker(settings=settings).run_once()

    payload = json.loads(_only(home / "inbox").read_text("utf-8"))
    assert payload["lastError"] == "exit_4"


def test_single_attempt_task_fails_immediately(settings, home, write_agent, write_task) -> None:
    write_agent("flaky", extra_args=["--exit-code", "2"])
    write_task("task.json", {"id": "t-1", "prompt": "try", "maxAttempts": 1})

    summary = DaemonWorker(settings=settings).run_once()

    assert summary.failed == 1
    assert re.fullmatch(rf"{STAMPED}-task\.json", _only(home / "failed").name)
    [event] = _events(settings)
    assert event["reason"] == "exit_2"


def test_config_default_max_attempts_applies(settings, home, write_agent, write_task) -> None:
    settings.config_path.write_text(json.dumps({"defaultMaxAttempts": 1}), "utf-8")
    write_agent("flaky", extra_args=["--exit-code", "1"])
    write_task("task.json", {"prompt": "try"})

    summary = DaemonWorker(settings=settings).run_once()

    assert summary.failed == 1


def test_unparseable_task_fails_without_running(settings, home, write_agent, write_task) -> None:
    write_agent("echo")
    write_task("broken.json", "{not json")

    summary = DaemonWorker(settings=settings).run_once()

    assert summary.failed == 1
    assert re.fullmatch(rf"{STAMPED}-broken\.json", _only(home / "failed").name)
    assert _run_dirs(home) == []
    [event] = _events(settings)
    assert event["reason"] == "invalid_json"


def test_task_without_prompt_fails(settings, home, write_agent, write_task) -> None:
    write_agent("echo")
    write_task("empty.json", {"id": "no-prompt", "prompt": "  "})

    DaemonWorker(settings=settings).run_once()

    _only(home / "failed")
    [event] = _events(settings)
    assert event["reason"] == "missing_prompt"
    assert event["taskId"] == "no-prompt"


def test_orphaned_processing_task_is_recovered_and_run(
    settings,
    home,
    write_agent,
) -> None:
    write_agent("echo")
    (home / "processing" / "orphan.json").write_text(
        json.dumps({"prompt": "resume", "attempt": 1}),
        "utf-8",
    )

    summary = DaemonWorker(settings=settings).run_loop(once=True)

    assert summary.completed == 1
    completed = _only(home / "completed")
    assert re.fullmatch(rf"{STAMPED}-recovered-orphan\.json", completed.name)
    assert json.loads(completed.read_text("utf-8"))["attempt"] == 1


def test_pending_tasks_wait_while_no_agent_is_available(
    settings,
    home,
    write_agent,
    write_task,
) -> None:
    write_agent("off", enabled=False)
    task = write_task("task.json", {"prompt": "later"})

    summary = DaemonWorker(settings=settings).run_once()

    assert summary.processed == 0
    assert summary.idle_polls == 1
    assert task.exists()
    assert _events(settings) == []


def test_unroutable_task_is_requeued_as_waiting(
    settings,
    home,
    write_agent,
    write_task,
    monkeypatch,
) -> None:
    write_agent("echo")
    write_task("task.json", {"id": "t-1", "prompt": "later"})
    monkeypatch.setattr(worker_module, "select_agent", lambda *_: None)

    summary = DaemonWorker(settings=settings).run_once()

    assert summary.waiting == 1
    waiting = _only(home / "inbox")
    assert re.fullmatch(rf"waiting-{STAMPED}-task\.json", waiting.name)
    [event] = _events(settings)
    assert event["status"] == "waiting"
    assert event["taskFile"] == str(waiting)


def test_task_routes_to_named_agent(settings, home, write_agent, write_task) -> None:
    write_agent("alpha")
    write_agent("beta", extra_args=["--print-env", "WHO"], env={"WHO": "beta"})
    write_task("task.json", {"prompt": "hi", "agent": "beta"})

    DaemonWorker(settings=settings).run_once()

    [event] = _events(settings)
    assert event["agent"] == "beta"
    [run_dir] = _run_dirs(home)
    assert "WHO=beta" in (run_dir / "stdout.log").read_text("utf-8").splitlines()


def test_worktree_failure_fails_task_with_runtime_exception(
    settings,
    home,
    write_agent,
    write_task,
) -> None:
    write_agent("isolated", use_worktree=True)
    write_task("task.json", {"id": "t-1", "prompt": "needs git"})

    summary = DaemonWorker(settings=settings).run_once()

    assert summary.failed == 1
    _only(home / "failed")
    [event] = _events(settings)
    assert event["reason"] == "runtime_exception"
    assert "git worktree add failed" in event["error"]
    [run_dir] = _run_dirs(home)
    run_summary = json.loads((run_dir / "summary.json").read_text("utf-8"))
    assert run_summary["status"] == "failed"
    assert run_summary["exitCode"] is None
    assert "git worktree add failed" in run_summary["error"]


def test_agent_start_failure_fails_task_with_runtime_exception(
    settings,
    home,
    write_agent,
    write_task,
) -> None:
    write_agent("echo")
    write_task("task.json", {"prompt": "go", "cwd": "missing-subdir", "maxAttempts": 3})

    summary = DaemonWorker(settings=settings).run_once()

    assert summary.failed == 1
    [event] = _events(settings)
    assert event["reason"] == "runtime_exception"


def test_unexpected_error_still_moves_task_to_failed(
    settings,
    home,
    write_agent,
    write_task,
    monkeypatch,
) -> None:
    write_agent("echo")
    write_task("task.json", {"id": "t-9", "prompt": "go"})
    worker = DaemonWorker(settings=settings)

    def _explode(*_: object) -> None:
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(worker.ledger, "open_run", _explode)

    summary = worker.run_once()

    assert summary.failed == 1
    _only(home / "failed")
    [event] = _events(settings)
    assert event["reason"] == "runtime_exception"
    assert event["error"] == "disk on fire"
    assert event["taskId"] == "t-9"
    assert event["agent"] == "echo"
    assert "runDir" not in event


def test_claim_skips_files_taken_by_another_daemon(
    settings,
    home,
    write_agent,
    write_task,
    monkeypatch,
) -> None:
    write_agent("echo")
    write_task("b.json", {"prompt": "mine"})
    worker = DaemonWorker(settings=settings)
    monkeypatch.setattr(worker.queue, "list_pending", lambda: ["a.json", "b.json"])

    summary = worker.run_once()

    assert summary.completed == 1
    assert re.fullmatch(rf"{STAMPED}-b\.json", _only(home / "completed").name)


def test_unclaimable_task_leaves_daemon_idle(settings, home, write_agent, write_task) -> None:
    write_agent("echo")
    task = write_task("task.json", {"prompt": "blocked"})
    (home / "processing" / "task.json").mkdir()

    summary = DaemonWorker(settings=settings).run_once()

    assert summary.processed == 0
    assert summary.idle_polls == 1
    assert task.exists()
    assert _events(settings) == []


def test_tasks_run_one_per_iteration_in_name_order(
    settings,
    home,
    write_agent,
    write_task,
) -> None:
    write_agent("echo")
    write_task("20260219-b.json", {"id": "second", "prompt": "b"})
    write_task("20260218-a.json", {"id": "first", "prompt": "a"})
    worker = DaemonWorker(settings=settings)

    worker.run_once()

    assert [event["taskId"] for event in _events(settings)] == ["first"]
    assert len(list((home / "inbox").glob("*.json"))) == 1


def test_run_loop_stops_after_requested_stop(settings, home, write_agent, write_task) -> None:
    write_agent("echo")
    write_task("a.json", {"prompt": "a"})
    write_task("b.json", {"prompt": "b"})
    worker = DaemonWorker(settings=settings)
    original = worker.run_once
    calls: list[int] = []

    def _run_once_then_stop():
        calls.append(1)
        result = original()
        if len(calls) == 2:
            worker.request_stop()
        return result

    worker.run_once = _run_once_then_stop

    summary = worker.run_loop()

    assert summary.processed == 2
    assert summary.completed == 2
    assert worker.stop_requested


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git_settings(
    tmp_path: Path,
    home: Path,
    environ: dict[str, str],
    config: dict[str, object] | None = None,
) -> DaemonSettings:
    repo = tmp_path / "git-repo"
    repo.mkdir()
    subprocess.run(["git", "init", "-q"], cwd=repo, check=True)
    subprocess.run(
        [
            "git",
            "-c",
            "user.name=T",
            "-c",
            "user.email=t@example.com",
            "commit",
            "-q",
            "--allow-empty",
            "-m",
            "init",
        ],
        cwd=repo,
        check=True,
    )
    settings = DaemonSettings.from_env(home=home, repo_root=repo, environ=environ)
    if config is not None:
        settings.config_path.write_text(json.dumps(config), "utf-8")
    return settings


def _worktrees(home: Path) -> list[Path]:
    return sorted(path for path in (home / "worktrees").iterdir() if path.is_dir())


@requires_git
def test_worktree_run_uses_isolated_checkout(
    tmp_path,
    home,
    base_environ,
    write_agent,
    write_task,
) -> None:
    settings = _git_settings(tmp_path, home, base_environ, {"cleanupWorktreeOnSuccess": True})
    write_agent("echo", use_worktree=True, extra_args=["--print-cwd"])
    write_task("task.json", {"id": "t-1", "prompt": "isolated"})

    summary = DaemonWorker(settings=settings).run_once()

    assert summary.completed == 1
    [event] = _events(settings)
    assert str(event["branch"]).startswith("autodelegate/echo-t-1-")
    [run_dir] = _run_dirs(home)
    run_summary = json.loads((run_dir / "summary.json").read_text("utf-8"))
    worktree = Path(run_summary["worktree"])
    assert worktree.parent == home / "worktrees"
    cwd_line = (run_dir / "stdout.log").read_text("utf-8").splitlines()[-1]
    assert Path(cwd_line.removeprefix("cwd=")).resolve() == worktree.resolve()
    assert not worktree.exists()


@requires_git
def test_failed_run_removes_worktree_when_configured(
    tmp_path,
    home,
    base_environ,
    write_agent,
    write_task,
) -> None:
    settings = _git_settings(tmp_path, home, base_environ, {"cleanupWorktreeOnFailure": True})
    write_agent("broken", use_worktree=True, extra_args=["--exit-code", "1"])
    write_task("task.json", {"id": "t-1", "prompt": "fail", "maxAttempts": 1})

    summary = DaemonWorker(settings=settings).run_once()

    assert summary.failed == 1
    [event] = _events(settings)
    assert event["reason"] == "exit_1"
    assert str(event["branch"]).startswith("autodelegate/broken-t-1-")
    [run_dir] = _run_dirs(home)
    worktree = Path(json.loads((run_dir / "summary.json").read_text("utf-8"))["worktree"])
    assert not worktree.exists()
    assert _worktrees(home) == []


@requires_git
def test_failed_run_keeps_worktree_by_default(
    tmp_path,
    home,
    base_environ,
    write_agent,
    write_task,
) -> None:
    settings = _git_settings(tmp_path, home, base_environ)
    write_agent("broken", use_worktree=True, extra_args=["--exit-code", "1"])
    write_task("task.json", {"id": "t-1", "prompt": "fail", "maxAttempts": 1})

    summary = DaemonWorker(settings=settings).run_once()

    assert summary.failed == 1
    [event] = _events(settings)
    assert "branch" in event
    [run_dir] = _run_dirs(home)
    worktree = Path(json.loads((run_dir / "summary.json").read_text("utf-8"))["worktree"])
    assert worktree.is_dir()
    assert _worktrees(home) == [worktree]


@requires_git
def test_unexpected_error_after_isolation_keeps_context_and_cleans_up(
    tmp_path,
    home,
    base_environ,
    write_agent,
    write_task,
    monkeypatch,
) -> None:
    settings = _git_settings(tmp_path, home, base_environ, {"cleanupWorktreeOnFailure": True})
    write_agent("echo", use_worktree=True)
    write_task("task.json", {"id": "t-1", "prompt": "go"})
    worker = DaemonWorker(settings=settings)

    def _explode(*_: object) -> None:
        raise RuntimeError("backend crashed")

    monkeypatch.setattr(worker.backend, "run", _explode)

    summary = worker.run_once()

    assert summary.failed == 1
    _only(home / "failed")
    [event] = _events(settings)
    assert event["reason"] == "runtime_exception"
    assert event["error"] == "backend crashed"
    assert event["taskId"] == "t-1"
    assert event["agent"] == "echo"
    [run_dir] = _run_dirs(home)
    assert event["runDir"] == str(run_dir)
    assert str(event["branch"]).startswith("autodelegate/echo-t-1-")
    assert _worktrees(home) == []
