"""Run records and the append-only event log."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from autodelegate.orchestrator.contracts import compact_timestamp, iso_now, slugify, write_json
from autodelegate.orchestrator.models import EventStatus, RunSummary, Task

TASK_SNAPSHOT_FILENAME = "task.json"
PROMPT_FILENAME = "prompt.txt"
STDOUT_FILENAME = "stdout.log"
STDERR_FILENAME = "stderr.log"
SUMMARY_FILENAME = "summary.json"


@dataclass(slots=True)
class RunRecord:
    """One execution attempt's audit directory."""

    run_dir: Path

    @property
    def stdout_path(self) -> Path:
        return self.run_dir / STDOUT_FILENAME

    @property
    def stderr_path(self) -> Path:
        return self.run_dir / STDERR_FILENAME

    @property
    def summary_path(self) -> Path:
        return self.run_dir / SUMMARY_FILENAME

    def write_summary(self, summary: RunSummary) -> None:
        write_json(self.summary_path, summary.to_payload())

    def stderr_tail(self, limit: int) -> str:
        """Last ``limit`` characters of captured stderr."""

        if not self.stderr_path.exists():
            return ""
        with self.stderr_path.open("rb") as handle:
            size = handle.seek(0, 2)
            # 4 bytes per character bounds any UTF-8 sequence.
            handle.seek(max(0, size - limit * 4))
            text = handle.read().decode("utf-8", errors="replace")
        return text[-limit:]


class RunLedger:
    """Creates uniquely named run directories under ``runs/``."""

    def __init__(self, runs_dir: Path) -> None:
        self.runs_dir = runs_dir

    def open_run(self, task: Task, prompt: str) -> RunRecord:
        """Create the run directory and write the pre-execution inputs."""

        self.runs_dir.mkdir(parents=True, exist_ok=True)
        base_name = f"{compact_timestamp()}-{slugify(task.id)}"
        run_dir = self.runs_dir / base_name
        suffix = 1
        while True:
            try:
                run_dir.mkdir()
                break
            except FileExistsError:
                suffix += 1
                run_dir = self.runs_dir / f"{base_name}-{suffix}"

        record = RunRecord(run_dir=run_dir)
        write_json(run_dir / TASK_SNAPSHOT_FILENAME, task.payload)
        (run_dir / PROMPT_FILENAME).write_text(f"{prompt}\n", "utf-8")
        return record


class EventLog:
    """Newline-delimited JSON events, one per queue decision."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def append(self, status: EventStatus, **fields: Any) -> dict[str, Any]:
        event: dict[str, Any] = {"at": iso_now(), "status": status.value}
        event.update({key: value for key, value in fields.items() if value is not None})
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(event, ensure_ascii=False, default=str) + "\n")
        return event

    def read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        return [
            json.loads(line)
            for line in self.path.read_text("utf-8").splitlines()
            if line.strip()
        ]
