"""Per-task git worktree isolation."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from autodelegate.config import DEFAULT_BRANCH_PREFIX
from autodelegate.orchestrator.contracts import epoch_ms, slugify

logger = logging.getLogger(__name__)


class WorktreeError(RuntimeError):
    """``git worktree add`` failed; the message carries git's diagnostic."""


@dataclass(frozen=True, slots=True)
class Worktree:
    """Isolated working copy created for one execution attempt."""

    branch: str
    path: Path


class WorktreeManager:
    """Create and remove task worktrees rooted at the repository HEAD."""

    def __init__(
        self,
        *,
        repo_root: Path,
        worktrees_dir: Path,
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
    ) -> None:
        self.repo_root = repo_root
        self.worktrees_dir = worktrees_dir
        self.branch_prefix = branch_prefix

    def branch_name(self, agent_name: str, task_id: str, *, stamp: int | None = None) -> str:
        stamp = epoch_ms() if stamp is None else stamp
        return f"{self.branch_prefix}{slugify(agent_name)}-{slugify(task_id)}-{stamp}"

    def create(self, agent_name: str, task_id: str) -> Worktree:
        """Add a new branch and worktree for this attempt."""

        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        branch = self.branch_name(agent_name, task_id)
        path = self.worktrees_dir / branch.replace("/", "__")
        try:
            result = self._git("worktree", "add", "-b", branch, str(path))
        except OSError as error:
            raise WorktreeError(f"git worktree add failed: {error}") from error
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise WorktreeError(f"git worktree add failed: {detail}")
        logger.info("Created worktree %s on branch %s", path, branch)
        return Worktree(branch=branch, path=path)

    def cleanup(self, path: Path) -> bool:
        """Remove a worktree; failures are logged, never raised."""

        try:
            result = self._git("worktree", "remove", "--force", str(path))
        except OSError as error:
            logger.warning("Failed to remove worktree %s: %s", path, error)
            return False
        if result.returncode != 0:
            logger.warning(
                "Failed to remove worktree %s: %s",
                path,
                (result.stderr or result.stdout or "").strip(),
            )
            return False
        logger.info("Removed worktree %s", path)
        return True

    def _git(self, *args: str) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            ["git", *args],  # noqa: S607
            cwd=self.repo_root,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            check=False,
        )
