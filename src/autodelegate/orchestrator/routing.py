"""Agent selection for a claimed task."""

from __future__ import annotations

from collections.abc import Sequence

from autodelegate.config import OrchestratorConfig
from autodelegate.orchestrator.models import AgentSpec, Task


def select_agent(
    task: Task,
    agents: Sequence[AgentSpec],
    config: OrchestratorConfig,
) -> AgentSpec | None:
    """Pick exactly one agent, first match wins.

    1. ``task.agent`` equals an agent name;
    2. ``task.tool`` equals an agent command;
    3. first ``config.routing_order`` name that is registered;
    4. first registered agent.

    Returns ``None`` only for an empty registry, which callers treat as
    "no worker yet" rather than a task failure.
    """

    if not agents:
        return None

    if task.agent:
        named = _find(agents, name=task.agent)
        if named is not None:
            return named

    if task.tool:
        for agent in agents:
            if agent.command == task.tool:
                return agent

    for name in config.routing_order:
        found = _find(agents, name=name)
        if found is not None:
            return found

    return agents[0]


def _find(agents: Sequence[AgentSpec], *, name: str) -> AgentSpec | None:
    for agent in agents:
        if agent.name == name:
            return agent
    return None
