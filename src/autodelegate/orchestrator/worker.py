"""Daemon control loop: recover, claim, route, isolate, execute, record."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from autodelegate.config import DaemonSettings, OrchestratorConfig, load_orchestrator_config
from autodelegate.orchestrator.backend import (
    AgentBackend,
    AgentRunError,
    AgentRunRequest,
    AgentRunResult,
    CliAgentBackend,
    resolve_run_cwd,
)
from autodelegate.orchestrator.contracts import (
    InvalidTaskPayload,
    epoch_ms,
    iso_now,
    read_task,
    to_iso,
    utc_now,
    write_json,
)
from autodelegate.orchestrator.ledger import EventLog, RunLedger, RunRecord
from autodelegate.orchestrator.models import (
    AgentSpec,
    EventStatus,
    FailureReason,
    QueueDir,
    RunSummary,
    Task,
)
from autodelegate.orchestrator.queue import ClaimedTask, QueueStore
from autodelegate.orchestrator.registry import load_agents
from autodelegate.orchestrator.routing import select_agent
from autodelegate.orchestrator.worktree import Worktree, WorktreeError, WorktreeManager

logger = logging.getLogger(__name__)

LAST_ERROR_MAX_CHARS = 5_000

AgentLoader = Callable[[Iterable[Path]], list[AgentSpec]]


@dataclass(slots=True)
class IterationSummary:
    """Counters for one or more loop iterations."""

    processed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    waiting: int = 0
    idle_polls: int = 0

    def add(self, other: IterationSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.retried += other.retried
        self.failed += other.failed
        self.waiting += other.waiting
        self.idle_polls += other.idle_polls


@dataclass(slots=True)
class StageFailure:
    """Why a stage of claimed-task handling could not continue."""

    reason: str
    error: str


@dataclass(slots=True)
class _Attempt:
    """State gathered while one claimed task is being executed."""

    claimed: ClaimedTask
    task: Task
    agent: AgentSpec
    run: RunRecord
    max_attempts: int
    worktree: Worktree | None = None


@dataclass(slots=True)
class _Progress:
    """How far handling of a claimed task got before it was interrupted."""

    claimed: ClaimedTask
    task: Task | None = None
    agent: AgentSpec | None = None
    attempt: _Attempt | None = None


class DaemonWorker:
    """Processes at most one queued task per iteration, strictly sequentially."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: DaemonSettings,
        queue: QueueStore | None = None,
        backend: AgentBackend | None = None,
        worktrees: WorktreeManager | None = None,
        ledger: RunLedger | None = None,
        events: EventLog | None = None,
        agent_loader: AgentLoader = load_agents,
        config_loader: Callable[[Path], OrchestratorConfig] = load_orchestrator_config,
    ) -> None:
        self.settings = settings
        self.queue = queue or QueueStore(settings.home)
        self.backend = backend or CliAgentBackend()
        self.worktrees = worktrees or WorktreeManager(
            repo_root=settings.repo_root,
            worktrees_dir=self.queue.worktrees_dir,
            branch_prefix=settings.branch_prefix,
        )
        self.ledger = ledger or RunLedger(self.queue.runs_dir)
        self.events = events or EventLog(settings.event_log_path)
        self.agent_loader = agent_loader
        self.config_loader = config_loader
        self.config = OrchestratorConfig()
        self._stop_requested = False

    def recover(self) -> list[Path]:
        """Requeue tasks left in ``processing`` by a crashed daemon.

        ``attempt`` is left as found, so a crash between the increment and the
        retry move can cost the task one attempt.
        """

        recovered = self.queue.recover_processing()
        if recovered:
            logger.info("Recovered %d task(s) from processing back to inbox.", len(recovered))
        return recovered

    def run_once(self) -> IterationSummary:
        """Reload config and agents, then process at most one task."""

        self.config = self.config_loader(self.settings.config_path)
        agents = self.agent_loader(self.settings.agent_sources())
        return self.process_one(config=self.config, agents=agents)

    def run_loop(self, *, once: bool = False) -> IterationSummary:
        """Run until a stop signal is observed between iterations."""

        aggregate = IterationSummary()
        self.recover()
        with self._signal_handlers():
            while not self._stop_requested:
                summary = self.run_once()
                aggregate.add(summary)
                if once:
                    break
                if summary.processed == 0:
                    self._sleep_with_stop(self.settings.effective_poll_ms(self.config) / 1000)
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def process_one(
        self,
        *,
        config: OrchestratorConfig,
        agents: Sequence[AgentSpec],
    ) -> IterationSummary:
        summary = IterationSummary()
        pending = self.queue.list_pending()
        if not pending:
            summary.idle_polls = 1
            return summary
        if not agents:
            logger.info("Tasks pending, but no available agent tools detected.")
            summary.idle_polls = 1
            return summary

        claimed = self._claim_first(pending)
        if claimed is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        logger.info("Claimed task file %s", claimed.name)
        progress = _Progress(claimed=claimed)
        try:
            status = self._handle_claimed(progress=progress, config=config, agents=agents)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error while handling %s", claimed.name)
            self._fail_unexpected(progress=progress, config=config, error=error)
            status = EventStatus.FAILED

        if status is EventStatus.COMPLETED:
            summary.completed = 1
        elif status is EventStatus.RETRYING:
            summary.retried = 1
        elif status is EventStatus.WAITING:
            summary.waiting = 1
        else:
            summary.failed = 1
        return summary

    def _claim_first(self, pending: Sequence[str]) -> ClaimedTask | None:
        for name in pending:
            claimed = self.queue.claim(name)
            if claimed is not None:
                return claimed
        return None

    def _handle_claimed(
        self,
        *,
        progress: _Progress,
        config: OrchestratorConfig,
        agents: Sequence[AgentSpec],
    ) -> EventStatus:
        claimed = progress.claimed
        try:
            task = read_task(claimed.path)
        except InvalidTaskPayload as error:
            return self._fail_invalid(claimed=claimed, error=error)
        progress.task = task

        agent = select_agent(task, agents, config)
        if agent is None:
            waiting_path = self.queue.move(claimed.path, QueueDir.INBOX, f"waiting-{epoch_ms()}")
            logger.info("No agent available for task %s; left queued.", task.id)
            self.events.append(EventStatus.WAITING, taskId=task.id, taskFile=str(waiting_path))
            return EventStatus.WAITING

        progress.agent = agent
        attempt = _Attempt(
            claimed=claimed,
            task=task,
            agent=agent,
            run=self.ledger.open_run(task, task.prompt),
            max_attempts=task.effective_max_attempts(config.default_max_attempts),
        )
        logger.info(
            "Running task %s with agent %s (attempt %d of %d)",
            task.id,
            agent.name,
            task.attempt + 1,
            attempt.max_attempts,
        )
        progress.attempt = attempt
        started_at = utc_now()

        isolation = self._isolate(attempt)
        if isinstance(isolation, StageFailure):
            return self._fail_stage(
                attempt=attempt,
                config=config,
                failure=isolation,
                started_at=started_at,
            )
        attempt.worktree = isolation

        execution = self._execute(attempt)
        if isinstance(execution, StageFailure):
            return self._fail_stage(
                attempt=attempt,
                config=config,
                failure=execution,
                started_at=started_at,
            )

        attempt.run.write_summary(
            self._summary(
                attempt=attempt,
                status=EventStatus.COMPLETED if execution.ok else EventStatus.FAILED,
                started_at=started_at,
                execution=execution,
            ),
        )
        if execution.ok:
            return self._complete(attempt=attempt, config=config)
        if attempt.task.attempt + 1 < attempt.max_attempts:
            return self._retry(attempt=attempt, config=config, execution=execution)
        return self._fail_exhausted(attempt=attempt, config=config, execution=execution)

    def _isolate(self, attempt: _Attempt) -> Worktree | StageFailure | None:
        if not attempt.agent.use_worktree:
            return None
        try:
            return self.worktrees.create(attempt.agent.name, attempt.task.id)
        except WorktreeError as error:
            return StageFailure(reason=FailureReason.RUNTIME_EXCEPTION.value, error=str(error))

    def _execute(self, attempt: _Attempt) -> AgentRunResult | StageFailure:
        cwd = resolve_run_cwd(
            self.settings.repo_root,
            attempt.worktree.path if attempt.worktree is not None else None,
            attempt.task.cwd,
        )
        try:
            return self.backend.run(
                AgentRunRequest(
                    agent=attempt.agent,
                    task=attempt.task,
                    prompt=attempt.task.prompt,
                    cwd=cwd,
                    stdout_path=attempt.run.stdout_path,
                    stderr_path=attempt.run.stderr_path,
                    base_env=self.settings.environ,
                ),
            )
        except AgentRunError as error:
            return StageFailure(reason=FailureReason.RUNTIME_EXCEPTION.value, error=str(error))

    def _complete(self, *, attempt: _Attempt, config: OrchestratorConfig) -> EventStatus:
        completed_path = self.queue.move(
            attempt.claimed.path,
            QueueDir.COMPLETED,
            str(epoch_ms()),
        )
        logger.info("Task %s completed.", attempt.task.id)
        self.events.append(
            EventStatus.COMPLETED,
            taskId=attempt.task.id,
            taskFile=str(completed_path),
            runDir=str(attempt.run.run_dir),
            agent=attempt.agent.name,
            tool=attempt.agent.command,
            branch=_branch(attempt),
        )
        if config.cleanup_worktree_on_success:
            self._cleanup_worktree(attempt)
        return EventStatus.COMPLETED

    def _retry(
        self,
        *,
        attempt: _Attempt,
        config: OrchestratorConfig,
        execution: AgentRunResult,
    ) -> EventStatus:
        task = attempt.task
        task.attempt += 1
        task.last_error = attempt.run.stderr_tail(LAST_ERROR_MAX_CHARS) or execution.failure_code
        task.last_tried_at = iso_now()
        write_json(attempt.claimed.path, task.to_payload())
        requeued_path = self.queue.move(
            attempt.claimed.path,
            QueueDir.INBOX,
            f"retry-{epoch_ms()}",
        )
        logger.info(
            "Task %s failed with %s; requeued (attempt %d of %d).",
            task.id,
            execution.failure_code,
            task.attempt,
            attempt.max_attempts,
        )
        self.events.append(
            EventStatus.RETRYING,
            taskId=task.id,
            attempt=task.attempt,
            maxAttempts=attempt.max_attempts,
            taskFile=str(requeued_path),
            runDir=str(attempt.run.run_dir),
            agent=attempt.agent.name,
            tool=attempt.agent.command,
            branch=_branch(attempt),
        )
        if config.cleanup_worktree_on_failure:
            self._cleanup_worktree(attempt)
        return EventStatus.RETRYING

    def _fail_exhausted(
        self,
        *,
        attempt: _Attempt,
        config: OrchestratorConfig,
        execution: AgentRunResult,
    ) -> EventStatus:
        failed_path = self.queue.move(attempt.claimed.path, QueueDir.FAILED, str(epoch_ms()))
        logger.warning("Task %s failed with %s.", attempt.task.id, execution.failure_code)
        self.events.append(
            EventStatus.FAILED,
            reason=execution.failure_code,
            taskId=attempt.task.id,
            attempt=attempt.task.attempt + 1,
            maxAttempts=attempt.max_attempts,
            taskFile=str(failed_path),
            runDir=str(attempt.run.run_dir),
            agent=attempt.agent.name,
            tool=attempt.agent.command,
            branch=_branch(attempt),
        )
        if config.cleanup_worktree_on_failure:
            self._cleanup_worktree(attempt)
        return EventStatus.FAILED

    def _fail_stage(
        self,
        *,
        attempt: _Attempt,
        config: OrchestratorConfig,
        failure: StageFailure,
        started_at: datetime,
    ) -> EventStatus:
        attempt.run.write_summary(
            self._summary(
                attempt=attempt,
                status=EventStatus.FAILED,
                started_at=started_at,
                execution=None,
                error=failure.error,
            ),
        )
        failed_path = self.queue.move(attempt.claimed.path, QueueDir.FAILED, str(epoch_ms()))
        logger.error("Task %s failed: %s", attempt.task.id, failure.error)
        self.events.append(
            EventStatus.FAILED,
            reason=failure.reason,
            taskId=attempt.task.id,
            taskFile=str(failed_path),
            runDir=str(attempt.run.run_dir),
            error=failure.error,
            agent=attempt.agent.name,
            tool=attempt.agent.command,
            branch=_branch(attempt),
        )
        if config.cleanup_worktree_on_failure:
            self._cleanup_worktree(attempt)
        return EventStatus.FAILED

    def _fail_invalid(self, *, claimed: ClaimedTask, error: InvalidTaskPayload) -> EventStatus:
        failed_path = self.queue.move(claimed.path, QueueDir.FAILED, str(epoch_ms()))
        logger.warning("Task file %s rejected (%s): %s", claimed.name, error.reason.value, error)
        self.events.append(
            EventStatus.FAILED,
            reason=error.reason.value,
            taskId=error.task_id,
            taskFile=str(failed_path),
            error=str(error),
        )
        return EventStatus.FAILED

    def _fail_unexpected(
        self,
        *,
        progress: _Progress,
        config: OrchestratorConfig,
        error: Exception,
    ) -> None:
        claimed = progress.claimed
        attempt = progress.attempt
        agent = progress.agent
        try:
            task_file = claimed.path
            if claimed.path.exists():
                task_file = self.queue.move(claimed.path, QueueDir.FAILED, str(epoch_ms()))
            self.events.append(
                EventStatus.FAILED,
                reason=FailureReason.RUNTIME_EXCEPTION.value,
                taskId=progress.task.id if progress.task is not None else None,
                taskFile=str(task_file),
                runDir=str(attempt.run.run_dir) if attempt is not None else None,
                error=str(error),
                agent=agent.name if agent is not None else None,
                tool=agent.command if agent is not None else None,
                branch=_branch(attempt) if attempt is not None else None,
            )
        except OSError:
            logger.exception("Could not record failure for %s", claimed.name)
        if attempt is not None and config.cleanup_worktree_on_failure:
            self._cleanup_worktree(attempt)

    def _cleanup_worktree(self, attempt: _Attempt) -> None:
        if attempt.worktree is not None:
            self.worktrees.cleanup(attempt.worktree.path)

    def _summary(  # noqa: PLR0913
        self,
        *,
        attempt: _Attempt,
        status: EventStatus,
        started_at: datetime,
        execution: AgentRunResult | None,
        error: str | None = None,
    ) -> RunSummary:
        finished_at = utc_now()
        return RunSummary(
            status=status.value,
            task_id=attempt.task.id,
            agent=attempt.agent.name,
            tool=attempt.agent.command,
            started_at=to_iso(started_at),
            finished_at=to_iso(finished_at),
            duration_ms=int((finished_at - started_at).total_seconds() * 1000),
            exit_code=execution.exit_code if execution is not None else None,
            signal=execution.signal if execution is not None else None,
            run_dir=str(attempt.run.run_dir),
            worktree=str(attempt.worktree.path) if attempt.worktree is not None else None,
            branch=_branch(attempt),
            stdout_truncated=execution.stdout_truncated if execution is not None else False,
            stderr_truncated=execution.stderr_truncated if execution is not None else False,
            error=error,
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + max(0.0, seconds)
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; stopping after the current iteration.", name)
            self.request_stop()

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _branch(attempt: _Attempt) -> str | None:
    return attempt.worktree.branch if attempt.worktree is not None else None
