"""Agent execution backends."""

from autodelegate.orchestrator.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from autodelegate.orchestrator.backend.cli_backend import (
    MAX_CAPTURE_BYTES,
    AgentRunError,
    CliAgentBackend,
    resolve_run_cwd,
)

__all__ = [
    "MAX_CAPTURE_BYTES",
    "AgentBackend",
    "AgentRunError",
    "AgentRunRequest",
    "AgentRunResult",
    "CliAgentBackend",
    "resolve_run_cwd",
]
