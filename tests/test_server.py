"""Tests for the HTTP API and agent WebSocket endpoint."""

import asyncio
import logging
from unittest.mock import MagicMock, call

import pytest
from fastapi.testclient import TestClient

from taskrelay.server import CoordinationLoop, _drain, _stop_writer, create_app


@pytest.fixture
def client():
    with TestClient(create_app()) as client:
        yield client


def register(ws, agent_id, capabilities):
    ws.send_json({"type": "register", "agent_id": agent_id, "capabilities": capabilities, "status": "available"})
    response = ws.receive_json()
    assert response["type"] == "registration_response"
    return response


class TestTaskEndpoints:
    """Test the operator HTTP surface."""

    def test_add_task_returns_pending(self, client):
        """POST /tasks creates a pending task."""
        response = client.post(
            "/tasks",
            json={
                "description": "x",
                "requirements": {"capabilities": ["a"]},
                "priority": "high",
                "deadline": "2030-01-01T00:00:00Z",
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["assigned_agent"] is None
        assert data["progress"] == 0
        assert data["priority"] == "high"
        assert data["requirements"]["capabilities"] == ["a"]

    def test_add_task_validation(self, client):
        """Invalid bodies are rejected."""
        assert client.post("/tasks", json={"description": ""}).status_code == 422
        assert client.post("/tasks", json={"description": "x", "priority": "urgent"}).status_code == 422
        assert client.post("/tasks", json={}).status_code == 422

    def test_list_and_get_tasks(self, client):
        """Tasks are listed by id and fetchable individually."""
        task_id = client.post("/tasks", json={"description": "x"}).json()["id"]

        listing = client.get("/tasks").json()
        assert list(listing) == [task_id]

        response = client.get(f"/tasks/{task_id}")
        assert response.status_code == 200
        assert response.json()["description"] == "x"

    def test_get_unknown_task_404(self, client):
        assert client.get("/tasks/missing").status_code == 404

    def test_health_counts(self, client):
        """Health reports agent and task counts."""
        client.post("/tasks", json={"description": "x"})

        data = client.get("/health").json()
        assert data == {"status": "ok", "agents": 0, "tasks": 1}


class TestAgentSocket:
    """Test the agent protocol over WebSocket."""

    def test_registration_and_pending_task(self, client):
        """A registering agent receives the matching pending task."""
        task_id = client.post(
            "/tasks", json={"description": "x", "requirements": {"capabilities": ["a"], "gpu": True}}
        ).json()["id"]

        with client.websocket_connect("/ws") as ws:
            response = register(ws, "X", ["a", "b"])
            assert response["supervisor_id"].startswith("supervisor-")

            offer = ws.receive_json()
            assert offer["type"] == "task"
            assert offer["task_id"] == task_id
            assert offer["requirements"] == {"capabilities": ["a"], "gpu": True}

            agents = client.get("/agents").json()
            assert [agent["id"] for agent in agents.values()] == ["X"]

    def test_full_lifecycle(self, client):
        """Accept, progress and complete; the next task follows immediately."""
        first = client.post("/tasks", json={"description": "one"}).json()["id"]
        second = client.post("/tasks", json={"description": "two"}).json()["id"]

        with client.websocket_connect("/ws") as ws:
            register(ws, "X", [])
            assert ws.receive_json()["task_id"] == first

            ws.send_json({"type": "acknowledge", "task_id": first, "status": "accepted", "message": "ok"})
            ws.send_json({"type": "update", "task_id": first, "status": "in_progress", "progress": 50})
            ws.send_json(
                {"type": "update", "task_id": first, "status": "completed", "progress": 100, "result": {"v": 1}}
            )

            # Only sent once every earlier frame has been applied
            assert ws.receive_json()["task_id"] == second

            done = client.get(f"/tasks/{first}").json()
            assert done["status"] == "completed"
            assert done["result"] == {"v": 1}
            assert client.get(f"/tasks/{second}").json()["assigned_agent"] == "X"

    def test_disconnect_reassigns(self, client):
        """A task held by a dropped agent goes to another connected agent."""
        task_id = client.post("/tasks", json={"description": "x", "requirements": {"capabilities": ["a"]}}).json()["id"]

        with client.websocket_connect("/ws") as ws_y:
            with client.websocket_connect("/ws") as ws_x:
                register(ws_x, "X", ["a"])
                assert ws_x.receive_json()["task_id"] == task_id
                ws_x.send_json({"type": "acknowledge", "task_id": task_id, "status": "accepted"})
                register(ws_y, "Y", ["a"])

            offer = ws_y.receive_json()
            assert offer["task_id"] == task_id

            task = client.get(f"/tasks/{task_id}").json()
            assert task["status"] == "pending"
            assert task["assigned_agent"] == "Y"
            assert [agent["id"] for agent in client.get("/agents").json().values()] == ["Y"]

    def test_bad_frames_do_not_close_connection(self, client):
        """Garbage frames are dropped and the connection keeps working."""
        with client.websocket_connect("/ws") as ws:
            ws.send_text("not json")
            ws.send_json([1, 2, 3])
            ws.send_json({"type": "bogus"})
            ws.send_json({"type": "update", "task_id": "missing", "status": "completed", "progress": 100})

            register(ws, "X", [])
            assert client.get("/health").json()["agents"] == 1


class BrokenSocket:
    """WebSocket stand-in whose sends always fail."""

    async def send_text(self, text):
        raise RuntimeError("socket gone")


class TestWriterShutdown:
    """Test outbound writer teardown."""

    def test_cancelled_writer_logs_nothing(self, caplog):
        """A writer stopped normally ends quietly."""

        async def scenario():
            writer = asyncio.create_task(_drain(BrokenSocket(), asyncio.Queue()))
            await asyncio.sleep(0)
            await _stop_writer("conn-1", writer)
            return writer

        with caplog.at_level(logging.WARNING, logger="taskrelay.server"):
            writer = asyncio.run(scenario())

        assert writer.done()
        assert "stopped early" not in caplog.text

    def test_failed_writer_is_collected_and_logged(self, caplog):
        """A send failure is retrieved and reported when the connection ends."""

        async def scenario():
            outbox = asyncio.Queue()
            outbox.put_nowait('{"type": "task"}')
            writer = asyncio.create_task(_drain(BrokenSocket(), outbox))
            await asyncio.sleep(0)
            await _stop_writer("conn-1", writer)
            return writer

        with caplog.at_level(logging.WARNING, logger="taskrelay.server"):
            writer = asyncio.run(scenario())

        assert writer.done()
        assert "Writer for conn-1 stopped early" in caplog.text
        assert "socket gone" in caplog.text


class TestCoordinationLoop:
    """Test the single-consumer event loop."""

    def test_submit_before_start_raises(self):
        loop = CoordinationLoop(MagicMock())
        with pytest.raises(RuntimeError, match="not running"):
            loop.submit("c1", {"type": "register"})

    def test_events_applied_in_order(self):
        """Frames and disconnects reach the coordinator in submission order."""
        coordinator = MagicMock()
        loop = CoordinationLoop(coordinator)

        async def scenario():
            loop.start()
            loop.submit("c1", {"type": "register", "agent_id": "X"})
            loop.disconnect("c1")
            await loop._queue.join()
            await loop.stop()

        asyncio.run(scenario())

        assert coordinator.method_calls == [
            call.dispatch("c1", {"type": "register", "agent_id": "X"}),
            call.handle_disconnect("c1"),
        ]

    def test_coordinator_error_does_not_stop_loop(self):
        """An exception in one event is logged and later events still run."""
        coordinator = MagicMock()
        coordinator.dispatch.side_effect = [ValueError("boom"), None]
        loop = CoordinationLoop(coordinator)

        async def scenario():
            loop.start()
            loop.submit("c1", {"type": "a"})
            loop.submit("c1", {"type": "b"})
            await loop._queue.join()
            await loop.stop()

        asyncio.run(scenario())

        assert coordinator.dispatch.call_count == 2
