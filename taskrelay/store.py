"""In-memory task store."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Callable

from taskrelay.schemas import Requirements, Task, TaskPriority, TaskStatus, utcnow

logger = logging.getLogger(__name__)


class TaskStore:
    """Holds every task ever created, in creation order.

    Tasks are never deleted; completed and failed tasks stay queryable for
    the lifetime of the process.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}

    def create(
        self,
        description: str,
        requirements: Requirements | None = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        deadline: datetime | None = None,
    ) -> Task:
        """Create a pending task with a fresh id.

        Args:
            description: Human-readable description
            requirements: Capability requirements and opaque extras
            priority: Stored only
            deadline: Stored only

        Returns:
            The stored Task (live record)
        """
        now = utcnow()
        task = Task(
            id=str(uuid.uuid4()),
            description=description,
            requirements=requirements or Requirements(),
            priority=priority,
            deadline=deadline,
            status=TaskStatus.PENDING,
            progress=0,
            created_at=now,
            updated_at=now,
        )
        self._tasks[task.id] = task
        logger.debug(f"Stored task {task.id}")
        return task

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def update(self, task_id: str, mutator: Callable[[Task], None]) -> Task | None:
        """Apply ``mutator`` to a task and refresh its ``updated_at``.

        Returns:
            The updated Task, or None if the id is unknown
        """
        task = self._tasks.get(task_id)
        if task is None:
            return None
        mutator(task)
        task.updated_at = utcnow()
        return task

    def pending_tasks(self) -> list[Task]:
        """Pending tasks in creation order."""
        return [task for task in self._tasks.values() if task.status == TaskStatus.PENDING]

    def all(self) -> list[Task]:
        return list(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)
