"""Pydantic schemas for taskrelay agents, tasks and protocol messages."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _timestamp() -> str:
    return utcnow().isoformat()


class AgentStatus(str, Enum):
    """Availability of a registered agent."""

    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class TaskStatus(str, Enum):
    """Task lifecycle status."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


class TaskPriority(str, Enum):
    """Task priority. Stored and forwarded, never used for ordering."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AckStatus(str, Enum):
    """Agent answer to a task offer."""

    ACCEPTED = "accepted"
    REJECTED = "rejected"


# --- Domain Records ---


class Requirements(BaseModel):
    """What a task needs from an agent.

    ``capabilities`` is the only field the coordinator interprets. Any other
    key supplied by a client is kept verbatim in ``extra`` and handed back to
    workers next to ``capabilities`` on the wire.
    """

    capabilities: list[str] | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _fold_extra_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict) or set(data) <= {"capabilities", "extra"}:
            return data
        data = dict(data)
        extra = dict(data.pop("extra", None) or {})
        for key in [k for k in data if k != "capabilities"]:
            extra[key] = data.pop(key)
        data["extra"] = extra
        return data

    def to_wire(self) -> dict[str, Any]:
        """Flatten back into the open requirement bag workers receive."""
        wire = dict(self.extra)
        if self.capabilities is not None:
            wire["capabilities"] = list(self.capabilities)
        return wire


class Agent(BaseModel):
    """Coordinator-side record of a connected worker."""

    id: str
    capabilities: list[str] = Field(default_factory=list)
    status: AgentStatus = AgentStatus.AVAILABLE
    current_task: str | None = None
    last_update: datetime = Field(default_factory=utcnow)


class Task(BaseModel):
    """A unit of work tracked by the coordinator."""

    id: str
    description: str
    requirements: Requirements = Field(default_factory=Requirements)
    priority: TaskPriority = TaskPriority.MEDIUM
    deadline: datetime | None = None
    status: TaskStatus = TaskStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    assigned_agent: str | None = None
    result: Any = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# --- Protocol Messages ---


class RegisterMessage(BaseModel):
    """Agent -> coordinator: announce identity and capabilities."""

    type: Literal["register"] = "register"
    agent_id: str = Field(..., min_length=1)
    capabilities: list[str] = Field(default_factory=list)
    status: AgentStatus = AgentStatus.AVAILABLE
    timestamp: str = Field(default_factory=_timestamp)


class RegistrationResponse(BaseModel):
    """Coordinator -> agent: registration accepted."""

    type: Literal["registration_response"] = "registration_response"
    status: Literal["accepted"] = "accepted"
    supervisor_id: str
    timestamp: str = Field(default_factory=_timestamp)


class TaskMessage(BaseModel):
    """Coordinator -> agent: tentative task assignment."""

    type: Literal["task"] = "task"
    task_id: str
    description: str
    requirements: dict[str, Any] = Field(default_factory=dict)
    priority: TaskPriority = TaskPriority.MEDIUM
    deadline: datetime | None = None
    timestamp: str = Field(default_factory=_timestamp)

    @classmethod
    def from_task(cls, task: Task) -> TaskMessage:
        return cls(
            task_id=task.id,
            description=task.description,
            requirements=task.requirements.to_wire(),
            priority=task.priority,
            deadline=task.deadline,
        )


class AcknowledgeMessage(BaseModel):
    """Agent -> coordinator: accept or reject an offered task."""

    type: Literal["acknowledge"] = "acknowledge"
    task_id: str
    status: AckStatus
    message: str = ""
    timestamp: str = Field(default_factory=_timestamp)


class UpdateMessage(BaseModel):
    """Agent -> coordinator: progress or outcome of a task."""

    type: Literal["update"] = "update"
    task_id: str
    status: TaskStatus
    progress: int = Field(..., ge=0, le=100)
    result: Any = None
    timestamp: str = Field(default_factory=_timestamp)

    @field_validator("status")
    @classmethod
    def _not_pending(cls, value: TaskStatus) -> TaskStatus:
        if value == TaskStatus.PENDING:
            raise ValueError("agents cannot move a task back to pending")
        return value


INBOUND_MESSAGES: dict[str, type[BaseModel]] = {
    "register": RegisterMessage,
    "acknowledge": AcknowledgeMessage,
    "update": UpdateMessage,
}


# --- HTTP Schemas ---


class AddTaskRequest(BaseModel):
    """Request to create a task."""

    description: str = Field(..., min_length=1, description="What the task is about")
    requirements: Requirements = Field(
        default_factory=Requirements,
        description="Capabilities required plus any opaque extra keys",
    )
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    deadline: datetime | None = Field(
        default=None,
        description="Recorded and forwarded to agents; not enforced",
    )


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["ok"] = "ok"
    agents: int = 0
    tasks: int = 0


class ErrorResponse(BaseModel):
    """Error response for failed requests."""

    detail: str
    task_id: str | None = None
    error_code: str | None = None
