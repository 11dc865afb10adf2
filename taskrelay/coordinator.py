"""Coordinator state machine: registration, assignment, acknowledgment,
progress updates and disconnect-driven reassignment."""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Collection
from datetime import datetime
from typing import Any, Protocol

from pydantic import BaseModel, ValidationError

from taskrelay.matching import find_assignable, first_pending_match
from taskrelay.registry import AgentRegistry
from taskrelay.schemas import (
    INBOUND_MESSAGES,
    AckStatus,
    AcknowledgeMessage,
    Agent,
    AgentStatus,
    HealthResponse,
    RegisterMessage,
    RegistrationResponse,
    Requirements,
    Task,
    TaskMessage,
    TaskPriority,
    TaskStatus,
    UpdateMessage,
    utcnow,
)
from taskrelay.store import TaskStore

logger = logging.getLogger(__name__)


class ProtocolError(Exception):
    """Raised when an inbound frame cannot be turned into a protocol message."""

    pass


class UnknownMessageType(ProtocolError):
    """Raised for frames whose ``type`` is not an inbound message kind."""

    pass


class OutboundChannel(Protocol):
    """Fire-and-forget delivery of a message to one connection."""

    def send(self, conn_id: str, message: BaseModel) -> None: ...


def parse_message(payload: dict[str, Any]) -> BaseModel:
    """Validate a raw inbound frame into its message model.

    Raises:
        UnknownMessageType: If ``type`` is missing or not an inbound kind
        ProtocolError: If the frame fails validation
    """
    kind = payload.get("type")
    model = INBOUND_MESSAGES.get(kind) if isinstance(kind, str) else None
    if model is None:
        raise UnknownMessageType(f"Unsupported message type: {kind!r}")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise ProtocolError(f"Invalid {kind} message: {e.error_count()} error(s)") from e


class Coordinator:
    """Owns the agent registry and task store and drives every transition.

    All public methods take one lock that covers both stores, so each event
    runs to completion before the next one starts.
    """

    def __init__(
        self,
        channel: OutboundChannel,
        registry: AgentRegistry | None = None,
        store: TaskStore | None = None,
        supervisor_id: str | None = None,
    ):
        self.channel = channel
        self.registry = registry or AgentRegistry()
        self.store = store or TaskStore()
        self.supervisor_id = supervisor_id or f"supervisor-{uuid.uuid4().hex[:8]}"
        self._lock = threading.RLock()
        # task_id -> conn_id of the agent holding it (tentatively or in progress)
        self._holders: dict[str, str] = {}

    # --- Operator surface ---

    def add_task(
        self,
        description: str,
        requirements: Requirements | dict[str, Any] | None = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        deadline: datetime | None = None,
    ) -> Task:
        """Create a task and try to place it right away.

        Returns:
            Snapshot of the task after the assignment attempt
        """
        if not isinstance(requirements, Requirements):
            requirements = Requirements.model_validate(requirements or {})

        with self._lock:
            task = self.store.create(description, requirements, TaskPriority(priority), deadline)
            logger.info(f"New task added: task_id={task.id}")
            self.assign(task)
            return task.model_copy(deep=True)

    def get_agent_status(self) -> dict[str, Agent]:
        with self._lock:
            return {conn_id: agent.model_copy(deep=True) for conn_id, agent in self.registry.iterate()}

    def get_task_status(self) -> dict[str, Task]:
        with self._lock:
            return {task.id: task.model_copy(deep=True) for task in self.store.all()}

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self.store.get(task_id)
            return task.model_copy(deep=True) if task else None

    def health(self) -> HealthResponse:
        with self._lock:
            return HealthResponse(agents=len(self.registry), tasks=len(self.store))

    # --- Assignment ---

    def assign(self, task: Task, exclude: Collection[str] = ()) -> str | None:
        """Offer ``task`` to the first capable, available, unoffered agent.

        The task stays pending until the agent acknowledges it.

        Returns:
            Connection id the task was offered to, or None
        """
        with self._lock:
            skip = set(exclude) | self._offered_connections()
            found = find_assignable(self.registry, task, exclude=skip)
            if found is None:
                logger.info(f"No available agent found for task: task_id={task.id}")
                return None
            conn_id, agent = found
            self._offer(task, conn_id, agent)
            return conn_id

    def _offer(self, task: Task, conn_id: str, agent: Agent) -> None:
        self.store.update(task.id, lambda t: setattr(t, "assigned_agent", agent.id))
        self._holders[task.id] = conn_id
        self.channel.send(conn_id, TaskMessage.from_task(task))
        logger.info(f"Task assigned: task_id={task.id} agent_id={agent.id} conn={conn_id}")

    def _offered_connections(self) -> set[str]:
        """Connections holding a tentative (unacknowledged) offer."""
        offered = set()
        for task_id, conn_id in self._holders.items():
            task = self.store.get(task_id)
            if task is not None and task.status == TaskStatus.PENDING:
                offered.add(conn_id)
        return offered

    def _offer_next_pending(self, conn_id: str, agent: Agent, skip: Collection[str] = ()) -> None:
        """Hand the oldest matching pending task to a newly free agent."""
        if agent.status != AgentStatus.AVAILABLE or conn_id in self._offered_connections():
            return
        task = first_pending_match(self.store, agent, skip=skip)
        if task is not None:
            self._offer(task, conn_id, agent)

    def _release(self, task: Task) -> None:
        """Send a task back to pending with no holder."""
        self._holders.pop(task.id, None)

        def requeue(t: Task) -> None:
            t.status = TaskStatus.PENDING
            t.assigned_agent = None

        self.store.update(task.id, requeue)

    def _held_by(self, task: Task, conn_id: str, event: str) -> bool:
        holder = self._holders.get(task.id)
        if holder != conn_id:
            logger.warning(
                f"Ignoring {event} from non-holder: task_id={task.id} conn={conn_id} holder={holder}"
            )
            return False
        return True

    # --- Protocol events ---

    def dispatch(self, conn_id: str, payload: dict[str, Any]) -> None:
        """Route one raw inbound frame. Bad frames are logged and dropped."""
        try:
            message = parse_message(payload)
        except ProtocolError as e:
            logger.warning(f"Dropping frame from {conn_id}: {e}")
            return

        if isinstance(message, RegisterMessage):
            self.handle_register(conn_id, message)
        elif isinstance(message, AcknowledgeMessage):
            self.handle_acknowledge(conn_id, message)
        elif isinstance(message, UpdateMessage):
            self.handle_update(conn_id, message)

    def handle_register(self, conn_id: str, message: RegisterMessage) -> None:
        with self._lock:
            status = message.status
            if status == AgentStatus.BUSY:
                # Busy with work we did not hand out: keep it out of assignment
                logger.warning(f"Agent registered as busy, recording offline: agent_id={message.agent_id}")
                status = AgentStatus.OFFLINE

            agent = Agent(id=message.agent_id, capabilities=list(message.capabilities), status=status)
            previous = self.registry.get(conn_id)
            if previous is not None and previous.current_task is not None:
                agent.status = AgentStatus.BUSY
                agent.current_task = previous.current_task

            self.registry.put(conn_id, agent)
            logger.info(
                f"Agent registered: agent_id={agent.id} conn={conn_id} "
                f"capabilities={agent.capabilities} status={agent.status.value}"
            )

            self.channel.send(conn_id, RegistrationResponse(supervisor_id=self.supervisor_id))
            self._offer_next_pending(conn_id, agent)

    def handle_acknowledge(self, conn_id: str, message: AcknowledgeMessage) -> None:
        with self._lock:
            task = self.store.get(message.task_id)
            if task is None:
                logger.warning(f"Task not found for acknowledgment: task_id={message.task_id}")
                return
            if task.is_terminal:
                logger.warning(f"Ignoring acknowledgment for finished task: task_id={task.id}")
                return
            if not self._held_by(task, conn_id, "acknowledgment"):
                return

            agent = self.registry.get(conn_id)
            if message.status == AckStatus.ACCEPTED:
                self.store.update(task.id, lambda t: setattr(t, "status", TaskStatus.IN_PROGRESS))
                if agent is not None:
                    agent.status = AgentStatus.BUSY
                    agent.current_task = task.id
                    agent.last_update = utcnow()
            else:
                if agent is not None and agent.current_task == task.id:
                    agent.status = AgentStatus.AVAILABLE
                    agent.current_task = None
                    agent.last_update = utcnow()
                self._release(task)
                self.assign(task, exclude={conn_id})
                if agent is not None:
                    # Free again: take other queued work, but not the task it just refused
                    self._offer_next_pending(conn_id, agent, skip={task.id})

            logger.info(
                f"Task acknowledgment handled: task_id={task.id} status={message.status.value} "
                f"message={message.message!r}"
            )

    def handle_update(self, conn_id: str, message: UpdateMessage) -> None:
        with self._lock:
            task = self.store.get(message.task_id)
            if task is None:
                logger.warning(f"Task not found for update: task_id={message.task_id}")
                return
            if task.is_terminal:
                logger.warning(
                    f"Ignoring update for finished task: task_id={task.id} status={task.status.value}"
                )
                return
            if not self._held_by(task, conn_id, "update"):
                return

            def apply(t: Task) -> None:
                t.status = message.status
                t.progress = message.progress
                t.result = message.result

            self.store.update(task.id, apply)
            agent = self.registry.get(conn_id)

            if task.is_terminal:
                self._holders.pop(task.id, None)
                if agent is not None:
                    agent.status = AgentStatus.AVAILABLE
                    agent.current_task = None
                    agent.last_update = utcnow()
                    self._offer_next_pending(conn_id, agent)
            elif agent is not None and agent.current_task != task.id:
                # Progress before acknowledgment counts as acceptance
                agent.status = AgentStatus.BUSY
                agent.current_task = task.id
                agent.last_update = utcnow()

            logger.info(
                f"Task update handled: task_id={task.id} status={task.status.value} "
                f"progress={task.progress}"
            )

    def handle_disconnect(self, conn_id: str) -> None:
        with self._lock:
            agent = self.registry.remove(conn_id)
            if agent is None:
                logger.warning(f"Disconnect from unregistered connection: conn={conn_id}")
                return

            held = [task for task in self.store.all() if self._holders.get(task.id) == conn_id]
            for task in held:
                logger.info(
                    f"Requeueing task from disconnected agent: task_id={task.id} agent_id={agent.id}"
                )
                self._release(task)
                self.assign(task)

            logger.info(f"Agent disconnected: agent_id={agent.id} conn={conn_id}")
