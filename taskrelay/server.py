"""FastAPI server hosting the coordinator.

Agents connect over the ``/ws`` WebSocket; operators use the HTTP endpoints.
Every inbound frame and every disconnect goes through a single queue consumed
by one coordination loop, so events from one connection are applied in the
order they arrived.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from taskrelay.coordinator import Coordinator
from taskrelay.schemas import AddTaskRequest, Agent, ErrorResponse, HealthResponse, Task

logger = logging.getLogger(__name__)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


# --- Outbound Channel ---


class WebSocketChannel:
    """Per-connection outbound queues drained by writer tasks."""

    def __init__(self) -> None:
        self._outboxes: dict[str, asyncio.Queue[str]] = {}

    def open(self, conn_id: str) -> asyncio.Queue[str]:
        outbox: asyncio.Queue[str] = asyncio.Queue()
        self._outboxes[conn_id] = outbox
        return outbox

    def close(self, conn_id: str) -> None:
        self._outboxes.pop(conn_id, None)

    def send(self, conn_id: str, message: BaseModel) -> None:
        outbox = self._outboxes.get(conn_id)
        if outbox is None:
            logger.warning(f"Dropping {type(message).__name__} for closed connection: conn={conn_id}")
            return
        outbox.put_nowait(message.model_dump_json())


async def _drain(websocket: WebSocket, outbox: asyncio.Queue[str]) -> None:
    while True:
        text = await outbox.get()
        await websocket.send_text(text)


async def _stop_writer(conn_id: str, writer: asyncio.Task[None]) -> None:
    """Cancel a connection's writer and collect how it ended."""
    writer.cancel()
    (outcome,) = await asyncio.gather(writer, return_exceptions=True)
    if not isinstance(outcome, asyncio.CancelledError):
        logger.warning(f"Writer for {conn_id} stopped early: {outcome!r}")


# --- Coordination Loop ---


@dataclass
class InboundEvent:
    """A frame from a connection, or its disconnect when ``payload`` is None."""

    conn_id: str
    payload: dict[str, Any] | None = None


class CoordinationLoop:
    """Single consumer applying inbound events to the coordinator in order."""

    def __init__(self, coordinator: Coordinator):
        self.coordinator = coordinator
        self._queue: asyncio.Queue[InboundEvent] | None = None
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._run(self._queue))
        logger.info("Coordination loop started")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Coordination loop stopped")

    def submit(self, conn_id: str, payload: dict[str, Any]) -> None:
        self._put(InboundEvent(conn_id, payload))

    def disconnect(self, conn_id: str) -> None:
        self._put(InboundEvent(conn_id))

    def _put(self, event: InboundEvent) -> None:
        if self._queue is None:
            raise RuntimeError("Coordination loop is not running")
        self._queue.put_nowait(event)

    async def _run(self, queue: asyncio.Queue[InboundEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                if event.payload is None:
                    self.coordinator.handle_disconnect(event.conn_id)
                else:
                    self.coordinator.dispatch(event.conn_id, event.payload)
            except Exception:
                logger.exception(f"Unhandled error processing event from {event.conn_id}")
            finally:
                queue.task_done()


# --- Application ---


def create_app(coordinator: Coordinator | None = None) -> FastAPI:
    """Build the FastAPI app around a coordinator.

    Args:
        coordinator: Existing coordinator; a fresh one wired to a
            WebSocketChannel is created when omitted

    Returns:
        Configured FastAPI application
    """
    channel = WebSocketChannel()
    if coordinator is None:
        coordinator = Coordinator(channel)
    else:
        coordinator.channel = channel
    loop = CoordinationLoop(coordinator)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        loop.start()
        yield
        await loop.stop()

    app = FastAPI(
        title="taskrelay",
        description="Coordinator dispatching tasks to capability-matched agents",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.coordinator = coordinator
    app.state.channel = channel
    app.state.loop = loop

    @app.websocket("/ws")
    async def agent_socket(websocket: WebSocket) -> None:
        """Agent protocol endpoint: one connection per agent."""
        await websocket.accept()
        conn_id = f"conn-{uuid.uuid4().hex[:12]}"
        outbox = channel.open(conn_id)
        writer = asyncio.create_task(_drain(websocket, outbox))
        logger.info(f"New connection established: conn={conn_id}")

        try:
            while True:
                text = await websocket.receive_text()
                try:
                    payload = json.loads(text)
                except json.JSONDecodeError:
                    logger.warning(f"Dropping non-JSON frame from {conn_id}")
                    continue
                if not isinstance(payload, dict):
                    logger.warning(f"Dropping non-object frame from {conn_id}")
                    continue
                loop.submit(conn_id, payload)
        except WebSocketDisconnect:
            logger.info(f"Connection closed: conn={conn_id}")
        finally:
            loop.disconnect(conn_id)
            channel.close(conn_id)
            await _stop_writer(conn_id, writer)

    @app.post("/tasks", response_model=Task, status_code=201)
    async def add_task(request: AddTaskRequest) -> Task:
        """Create a task and attempt immediate assignment."""
        return coordinator.add_task(
            description=request.description,
            requirements=request.requirements,
            priority=request.priority,
            deadline=request.deadline,
        )

    @app.get("/tasks", response_model=dict[str, Task])
    async def list_tasks() -> dict[str, Task]:
        """Snapshot of all tasks keyed by id."""
        return coordinator.get_task_status()

    @app.get("/tasks/{task_id}", response_model=Task)
    async def get_task(task_id: str) -> Task:
        task = coordinator.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
        return task

    @app.get("/agents", response_model=dict[str, Agent])
    async def list_agents() -> dict[str, Agent]:
        """Snapshot of registered agents keyed by connection id."""
        return coordinator.get_agent_status()

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return coordinator.health()

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                detail=str(exc),
                error_code="INTERNAL_ERROR",
            ).model_dump(),
        )

    return app


app = create_app()
