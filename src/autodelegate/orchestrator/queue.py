"""Directory-backed task queue with rename-based claiming.

Every task is one JSON file and its directory is its lifecycle state::

    inbox/ -> processing/ -> completed/ | failed/ | inbox/ (retry)

``claim`` relies on ``os.rename`` being atomic within one filesystem: of any
number of concurrent renamers of the same inbox file exactly one succeeds and
the others see ``FileNotFoundError``. Network filesystems that do not honour
this need a lock file or compare-and-swap scheme instead.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from autodelegate.config import BootstrapError
from autodelegate.orchestrator.contracts import TASK_FILE_SUFFIX
from autodelegate.orchestrator.models import QueueDir

logger = logging.getLogger(__name__)

LAYOUT_DIRS = ("inbox", "processing", "completed", "failed", "runs", "worktrees", "agents")
RECOVERED_PREFIX = "recovered"


@dataclass(slots=True)
class ClaimedTask:
    """A task file this process owns until it is moved out of ``processing``."""

    name: str
    path: Path


class QueueStore:
    """Queue directories under one home root."""

    def __init__(self, home: Path) -> None:
        self.home = home

    def dir(self, name: QueueDir | str) -> Path:
        return self.home / (name.value if isinstance(name, QueueDir) else name)

    @property
    def runs_dir(self) -> Path:
        return self.home / "runs"

    @property
    def worktrees_dir(self) -> Path:
        return self.home / "worktrees"

    def ensure_layout(self) -> None:
        """Create every home subdirectory or raise ``BootstrapError``."""

        for name in LAYOUT_DIRS:
            try:
                self.dir(name).mkdir(parents=True, exist_ok=True)
            except OSError as error:
                raise BootstrapError(f"Cannot create {self.dir(name)}: {error}") from error

    def list_pending(self) -> list[str]:
        """Inbox task names in lexicographic (submission-time) order."""

        return _list_json(self.dir(QueueDir.INBOX))

    def claim(self, name: str) -> ClaimedTask | None:
        """Move ``inbox/<name>`` to ``processing/``; ``None`` if another worker won or it failed."""

        source = self.dir(QueueDir.INBOX) / name
        target = self.dir(QueueDir.PROCESSING) / name
        try:
            os.rename(source, target)
        except FileNotFoundError:
            logger.debug("Task %s already claimed by another worker", name)
            return None
        except OSError as error:
            logger.warning("Cannot claim task %s; will retry later: %s", name, error)
            return None
        return ClaimedTask(name=name, path=target)

    def move(self, path: Path, target: QueueDir, prefix: str) -> Path:
        """Rename ``path`` into ``target`` as ``<prefix>-<name>``."""

        target_dir = self.dir(target)
        target_dir.mkdir(parents=True, exist_ok=True)
        destination = target_dir / f"{prefix}-{path.name}"
        os.rename(path, destination)
        return destination

    def recover_processing(self) -> list[Path]:
        """Return orphaned ``processing`` files to the inbox, content untouched."""

        recovered: list[Path] = []
        for name in _list_json(self.dir(QueueDir.PROCESSING)):
            source = self.dir(QueueDir.PROCESSING) / name
            try:
                recovered.append(self.move(source, QueueDir.INBOX, RECOVERED_PREFIX))
            except FileNotFoundError:
                continue
        return recovered

    def counts(self) -> dict[QueueDir, int]:
        return {queue_dir: len(_list_json(self.dir(queue_dir))) for queue_dir in QueueDir}


def _list_json(directory: Path) -> list[str]:
    if not directory.is_dir():
        return []
    return sorted(
        entry.name
        for entry in directory.iterdir()
        if entry.name.endswith(TASK_FILE_SUFFIX) and entry.is_file()
    )
