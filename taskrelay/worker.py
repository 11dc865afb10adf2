"""Reference worker: connects to the coordinator, takes tasks it can run and
reports progress through a pluggable executor."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Protocol

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed

from taskrelay.matching import matches
from taskrelay.schemas import (
    AckStatus,
    AcknowledgeMessage,
    AgentStatus,
    RegisterMessage,
    Requirements,
    TaskMessage,
    TaskStatus,
    UpdateMessage,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_SERVER_WS_URL = "ws://127.0.0.1:8000/ws"

# Seconds between simulated progress reports
DEFAULT_STEP_DELAY = 1.0

ProgressReporter = Callable[[int], Awaitable[None]]


class Executor(Protocol):
    """Runs one task, calling ``report`` with intermediate progress."""

    async def execute(self, task: TaskMessage, report: ProgressReporter) -> Any: ...


class SimulatedExecutor:
    """Stand-in executor that reports progress in fixed steps."""

    def __init__(self, step_delay: float = DEFAULT_STEP_DELAY, step: int = 20):
        self.step_delay = step_delay
        self.step = step

    async def execute(self, task: TaskMessage, report: ProgressReporter) -> dict[str, Any]:
        for progress in range(0, 100, self.step):
            await report(progress)
            await asyncio.sleep(self.step_delay)
        return {
            "completed_at": utcnow().isoformat(),
            "result": "Task execution successful",
        }


class Worker:
    """A single agent connection that runs at most one task at a time."""

    def __init__(
        self,
        capabilities: list[str],
        url: str = DEFAULT_SERVER_WS_URL,
        agent_id: str | None = None,
        executor: Executor | None = None,
    ):
        self.capabilities = list(capabilities)
        self.url = url
        self.agent_id = agent_id or f"agent-{uuid.uuid4().hex[:8]}"
        self.executor = executor or SimulatedExecutor()
        self.current_task: str | None = None
        self._running: set[asyncio.Task[None]] = set()

    @property
    def status(self) -> AgentStatus:
        return AgentStatus.BUSY if self.current_task else AgentStatus.AVAILABLE

    async def run(self) -> None:
        """Connect, register and serve tasks until the connection closes."""
        logger.info(f"Connecting to {self.url} as {self.agent_id}")
        async with websockets.connect(self.url) as ws:
            await self.register(ws)
            try:
                async for raw in ws:
                    await self.handle_frame(ws, raw)
            except ConnectionClosed:
                logger.info("Disconnected from supervisor")
            finally:
                await self.cancel_running()

    async def register(self, ws: Any) -> None:
        message = RegisterMessage(
            agent_id=self.agent_id,
            capabilities=self.capabilities,
            status=self.status,
        )
        await self._send(ws, message)
        logger.info(f"Registration sent: agent_id={self.agent_id} capabilities={self.capabilities}")

    async def handle_frame(self, ws: Any, raw: str | bytes) -> None:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring non-JSON frame from supervisor")
            return

        kind = payload.get("type") if isinstance(payload, dict) else None
        if kind == "registration_response":
            logger.info(f"Registration response received: supervisor_id={payload.get('supervisor_id')}")
        elif kind == "task":
            try:
                task = TaskMessage.model_validate(payload)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed task frame: {e.error_count()} error(s)")
                return
            await self.handle_task(ws, task)
        else:
            logger.warning(f"Ignoring unexpected frame type: {kind!r}")

    async def handle_task(self, ws: Any, task: TaskMessage) -> None:
        """Accept or reject an offered task; start executing accepted ones."""
        logger.info(f"Task received: task_id={task.task_id}")

        if self.current_task is not None:
            reason = f"Busy with {self.current_task}"
            accepted = False
        elif not matches(self.capabilities, Requirements.model_validate(task.requirements)):
            reason = "Missing required capabilities"
            accepted = False
        else:
            reason = "Task accepted"
            accepted = True

        await self._send(
            ws,
            AcknowledgeMessage(
                task_id=task.task_id,
                status=AckStatus.ACCEPTED if accepted else AckStatus.REJECTED,
                message=reason,
            ),
        )
        if not accepted:
            logger.info(f"Task rejected: task_id={task.task_id} reason={reason}")
            return

        self.current_task = task.task_id
        running = asyncio.create_task(self._execute(ws, task))
        self._running.add(running)
        running.add_done_callback(self._running.discard)

    async def cancel_running(self) -> None:
        """Cancel in-flight executions and wait for them to unwind."""
        running = list(self._running)
        for execution in running:
            execution.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait for every running execution to finish."""
        if self._running:
            await asyncio.gather(*list(self._running))

    async def _execute(self, ws: Any, task: TaskMessage) -> None:
        async def report(progress: int) -> None:
            await self._send_update(ws, task.task_id, TaskStatus.IN_PROGRESS, progress)

        try:
            result = await self.executor.execute(task, report)
        except asyncio.CancelledError:
            self.current_task = None
            raise
        except Exception as e:
            logger.error(f"Task execution failed: task_id={task.task_id} error={e}", exc_info=True)
            status, progress, result = TaskStatus.FAILED, 0, {"error": str(e)}
        else:
            status, progress = TaskStatus.COMPLETED, 100

        # Free before reporting so a follow-up offer is not rejected as busy
        self.current_task = None
        await self._send_update(ws, task.task_id, status, progress, result)

    async def _send_update(
        self,
        ws: Any,
        task_id: str,
        status: TaskStatus,
        progress: int,
        result: Any = None,
    ) -> None:
        await self._send(ws, UpdateMessage(task_id=task_id, status=status, progress=progress, result=result))
        logger.info(f"Task update sent: task_id={task_id} status={status.value} progress={progress}")

    async def _send(self, ws: Any, message: Any) -> None:
        await ws.send(message.model_dump_json())
