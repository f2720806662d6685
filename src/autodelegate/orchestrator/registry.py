"""Agent registry loaded from ranked definition directories."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Iterable
from pathlib import Path

from autodelegate.orchestrator.contracts import AGENT_FILE_SUFFIX, AgentLoadError, read_agent
from autodelegate.orchestrator.models import AgentSpec

logger = logging.getLogger(__name__)


def command_exists(command: str) -> bool:
    """Whether ``command`` resolves to an executable without running it."""

    return shutil.which(command) is not None


def load_agents(
    directories: Iterable[Path | None],
    *,
    is_available: Callable[[str], bool] = command_exists,
) -> list[AgentSpec]:
    """Load routable agents; later directories override earlier ones by name.

    Disabled agents and agents whose command is not installed are dropped and
    take no part in the merge.
    A broken file is logged and skipped without affecting the others.
    """

    by_name: dict[str, AgentSpec] = {}
    for directory in directories:
        if directory is None or not directory.is_dir():
            continue
        for path in sorted(directory.glob(f"*{AGENT_FILE_SUFFIX}")):
            try:
                agent = read_agent(path)
            except AgentLoadError as error:
                logger.warning("Skipping invalid agent config: %s", error)
                continue
            if not agent.enabled:
                logger.debug("Agent %s is disabled (%s)", agent.name, path)
                continue
            if not is_available(agent.command):
                logger.debug("Agent %s command not found: %s", agent.name, agent.command)
                continue
            by_name[agent.name] = agent
    return list(by_name.values())
