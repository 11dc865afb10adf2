"""Registry of connected agents, keyed by connection id."""

from __future__ import annotations

from taskrelay.schemas import Agent


class AgentRegistry:
    """One Agent record per live connection, kept in registration order.

    Not thread-safe on its own; the coordinator serializes access.
    """

    def __init__(self) -> None:
        self._agents: dict[str, Agent] = {}

    def put(self, conn_id: str, agent: Agent) -> None:
        """Add or replace the record for a connection.

        Replacing keeps the connection's original position in iteration order.
        """
        self._agents[conn_id] = agent

    def get(self, conn_id: str) -> Agent | None:
        return self._agents.get(conn_id)

    def remove(self, conn_id: str) -> Agent | None:
        return self._agents.pop(conn_id, None)

    def iterate(self) -> list[tuple[str, Agent]]:
        """Snapshot of (conn_id, agent) pairs in insertion order."""
        return list(self._agents.items())

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, conn_id: object) -> bool:
        return conn_id in self._agents
