"""Capability matching and first-fit agent search."""

from __future__ import annotations

from collections.abc import Collection, Iterable

from taskrelay.registry import AgentRegistry
from taskrelay.schemas import Agent, AgentStatus, Requirements, Task
from taskrelay.store import TaskStore


def matches(agent: Agent | Iterable[str], requirements: Requirements) -> bool:
    """Check whether an agent's capabilities cover a task's requirements.

    Absent or empty required capabilities match any agent.

    Args:
        agent: Agent record, or a plain iterable of capability tags
        requirements: Task requirements

    Returns:
        True if every required capability is offered
    """
    required = requirements.capabilities
    if not required:
        return True
    offered = set(agent.capabilities if isinstance(agent, Agent) else agent)
    return all(cap in offered for cap in required)


def find_assignable(
    registry: AgentRegistry,
    task: Task,
    exclude: Collection[str] = (),
) -> tuple[str, Agent] | None:
    """Return the first available agent able to run ``task``.

    First fit in registry order; no load balancing.

    Args:
        registry: Registry to scan
        task: Task to place
        exclude: Connection ids to skip

    Returns:
        (conn_id, agent) or None if nobody qualifies
    """
    for conn_id, agent in registry.iterate():
        if conn_id in exclude:
            continue
        if agent.status == AgentStatus.AVAILABLE and matches(agent, task.requirements):
            return conn_id, agent
    return None


def first_pending_match(store: TaskStore, agent: Agent, skip: Collection[str] = ()) -> Task | None:
    """Oldest pending task without a tentative holder that ``agent`` can run.

    Task ids in ``skip`` are passed over.
    """
    for task in store.pending_tasks():
        if task.id in skip:
            continue
        if task.assigned_agent is None and matches(agent, task.requirements):
            return task
    return None
