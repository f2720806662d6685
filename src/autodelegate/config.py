"""Runtime configuration for the delegation daemon."""

from __future__ import annotations

import json
import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_HOME_DIRNAME = ".autodelegate"
DEFAULT_BRANCH_PREFIX = "autodelegate/"
CONFIG_FILENAME = "orchestrator.config.json"
EVENT_LOG_FILENAME = "daemon.log"
DEFAULT_POLL_INTERVAL_MS = 5_000
MIN_POLL_INTERVAL_MS = 100


class ConfigLoadError(ValueError):
    """Orchestrator config file is unreadable or violates its schema."""


class BootstrapError(RuntimeError):
    """Daemon cannot start: home layout or repository root is unusable."""


@dataclass(frozen=True, slots=True)
class OrchestratorConfig:
    """Per-iteration orchestrator settings read from ``orchestrator.config.json``."""

    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    default_max_attempts: int = 2
    routing_order: tuple[str, ...] = ()
    cleanup_worktree_on_success: bool = False
    cleanup_worktree_on_failure: bool = False

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> OrchestratorConfig:
        """Validate a parsed config object, falling back per missing key."""

        defaults = cls()
        poll_interval_ms = raw.get("pollIntervalMs", defaults.poll_interval_ms)
        default_max_attempts = raw.get("defaultMaxAttempts", defaults.default_max_attempts)
        routing_order = raw.get("routingOrder", list(defaults.routing_order))
        cleanup_on_success = raw.get(
            "cleanupWorktreeOnSuccess",
            defaults.cleanup_worktree_on_success,
        )
        cleanup_on_failure = raw.get(
            "cleanupWorktreeOnFailure",
            defaults.cleanup_worktree_on_failure,
        )

        if not _is_int(poll_interval_ms) or poll_interval_ms <= 0:
            raise ConfigLoadError("pollIntervalMs must be a positive integer")
        if not _is_int(default_max_attempts) or default_max_attempts < 1:
            raise ConfigLoadError("defaultMaxAttempts must be an integer >= 1")
        if not isinstance(routing_order, list) or not all(
            isinstance(name, str) for name in routing_order
        ):
            raise ConfigLoadError("routingOrder must be an array of agent names")
        if not isinstance(cleanup_on_success, bool):
            raise ConfigLoadError("cleanupWorktreeOnSuccess must be a boolean")
        if not isinstance(cleanup_on_failure, bool):
            raise ConfigLoadError("cleanupWorktreeOnFailure must be a boolean")

        return cls(
            poll_interval_ms=poll_interval_ms,
            default_max_attempts=default_max_attempts,
            routing_order=tuple(name.strip() for name in routing_order if name.strip()),
            cleanup_worktree_on_success=cleanup_on_success,
            cleanup_worktree_on_failure=cleanup_on_failure,
        )

    def to_payload(self) -> dict[str, object]:
        return {
            "pollIntervalMs": self.poll_interval_ms,
            "defaultMaxAttempts": self.default_max_attempts,
            "routingOrder": list(self.routing_order),
            "cleanupWorktreeOnSuccess": self.cleanup_worktree_on_success,
            "cleanupWorktreeOnFailure": self.cleanup_worktree_on_failure,
        }


def read_orchestrator_config(path: Path) -> OrchestratorConfig:
    """Read config strictly; raise ``ConfigLoadError`` on any defect."""

    if not path.exists():
        return OrchestratorConfig()
    try:
        raw = json.loads(path.read_text("utf-8"))
    except (OSError, ValueError) as error:
        raise ConfigLoadError(f"Cannot parse {path}: {error}") from error
    if not isinstance(raw, dict):
        raise ConfigLoadError(f"Expected JSON object in {path}")
    return OrchestratorConfig.from_payload(raw)


def load_orchestrator_config(path: Path) -> OrchestratorConfig:
    """Read config, degrading to defaults when the file is malformed."""

    try:
        return read_orchestrator_config(path)
    except ConfigLoadError as error:
        logger.warning("Invalid config file at %s; using defaults. %s", path, error)
        return OrchestratorConfig()


@dataclass(frozen=True, slots=True)
class DaemonSettings:
    """Process-wide settings resolved once at startup."""

    repo_root: Path
    home: Path
    global_agents_dir: Path
    disable_global_agents: bool = False
    branch_prefix: str = DEFAULT_BRANCH_PREFIX
    poll_interval_ms: int | None = None
    environ: dict[str, str] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_env(
        cls,
        *,
        home: Path | None = None,
        poll_interval_ms: int | None = None,
        repo_root: Path | None = None,
        environ: dict[str, str] | None = None,
    ) -> DaemonSettings:
        """Resolve settings from CLI overrides and environment variables."""

        env = dict(os.environ if environ is None else environ)
        root = repo_root or resolve_repo_root()
        if poll_interval_ms is not None and poll_interval_ms < MIN_POLL_INTERVAL_MS:
            raise ValueError(f"poll interval must be >= {MIN_POLL_INTERVAL_MS} ms")
        return cls(
            repo_root=root,
            home=resolve_home(root, home, env),
            global_agents_dir=resolve_global_agents_dir(env),
            disable_global_agents=_env_bool(env, "AUTO_DELEGATE_DISABLE_GLOBAL_AGENTS"),
            branch_prefix=_branch_prefix(env.get("AUTO_DELEGATE_BRANCH_PREFIX", "")),
            poll_interval_ms=poll_interval_ms,
            environ=env,
        )

    @property
    def config_path(self) -> Path:
        return self.home / CONFIG_FILENAME

    @property
    def event_log_path(self) -> Path:
        return self.home / EVENT_LOG_FILENAME

    @property
    def project_agents_dir(self) -> Path:
        return self.home / "agents"

    def agent_sources(self) -> list[Path]:
        """Agent directories in merge order: shared first, project-local last."""

        if self.disable_global_agents:
            return [self.project_agents_dir]
        return [self.global_agents_dir, self.project_agents_dir]

    def effective_poll_ms(self, config: OrchestratorConfig) -> int:
        """CLI override wins over config file, which wins over the hard default."""

        return self.poll_interval_ms or config.poll_interval_ms or DEFAULT_POLL_INTERVAL_MS


def resolve_repo_root(cwd: Path | None = None) -> Path:
    """Return the git top-level directory, or the working directory outside git."""

    try:
        base = (cwd or Path.cwd()).resolve()
    except OSError as error:
        raise BootstrapError(f"Cannot resolve working directory: {error}") from error
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],  # noqa: S607
            cwd=base,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return base
    if result.returncode != 0 or not result.stdout.strip():
        return base
    return Path(result.stdout.strip())


def resolve_home(repo_root: Path, cli_home: Path | None, env: dict[str, str]) -> Path:
    raw = str(cli_home) if cli_home else env.get("AUTO_DELEGATE_HOME") or DEFAULT_HOME_DIRNAME
    path = Path(raw).expanduser()
    if path.is_absolute():
        return path
    return (repo_root / path).resolve()


def resolve_global_agents_dir(env: dict[str, str]) -> Path:
    override = env.get("AUTO_DELEGATE_GLOBAL_AGENTS_DIR", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    codex_home = env.get("CODEX_HOME") or str(Path(env.get("HOME", "~")) / ".codex")
    return (
        Path(codex_home).expanduser() / "tools" / "autonomous-delegation" / "templates" / "agents"
    )


def _branch_prefix(raw: str) -> str:
    value = raw.strip() or DEFAULT_BRANCH_PREFIX
    return value if value.endswith("/") else f"{value}/"


def _env_bool(env: dict[str, str], name: str) -> bool:
    value = env.get(name)
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
