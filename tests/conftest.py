"""Pytest configuration and fixtures for taskrelay tests."""

import pytest
from pydantic import BaseModel

from taskrelay.coordinator import Coordinator
from taskrelay.schemas import AgentStatus, RegisterMessage


class RecordingChannel:
    """Outbound channel that keeps every message sent, per connection."""

    def __init__(self):
        self.sent: list[tuple[str, BaseModel]] = []

    def send(self, conn_id: str, message: BaseModel) -> None:
        self.sent.append((conn_id, message))

    def to(self, conn_id: str, kind: str | None = None) -> list[BaseModel]:
        return [
            message
            for target, message in self.sent
            if target == conn_id and (kind is None or message.type == kind)
        ]

    def tasks_for(self, conn_id: str) -> list[str]:
        """Task ids offered to a connection, in order."""
        return [message.task_id for message in self.to(conn_id, "task")]


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def coordinator(channel: RecordingChannel) -> Coordinator:
    return Coordinator(channel, supervisor_id="supervisor-test")


@pytest.fixture
def register(coordinator: Coordinator):
    """Register an agent on a connection named after it."""

    def _register(agent_id: str, capabilities: list[str], status: AgentStatus = AgentStatus.AVAILABLE) -> str:
        conn_id = f"conn-{agent_id}"
        coordinator.handle_register(
            conn_id,
            RegisterMessage(agent_id=agent_id, capabilities=capabilities, status=status),
        )
        return conn_id

    return _register


def assert_busy_iff_current(coordinator: Coordinator) -> None:
    """Every agent is busy exactly when it holds a current task."""
    for agent in coordinator.get_agent_status().values():
        assert (agent.status == AgentStatus.BUSY) == (agent.current_task is not None), agent
