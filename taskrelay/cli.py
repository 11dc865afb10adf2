"""CLI for taskrelay - run the coordinator, run a worker, submit and inspect tasks."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

import click
import httpx

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000
DEFAULT_SERVER_URL = f"http://{DEFAULT_HOST}:{DEFAULT_PORT}"
HTTP_TIMEOUT = 10.0


@click.group()
@click.version_option(version="0.1.0", prog_name="taskrelay")
def main() -> None:
    """taskrelay - dispatch tasks to agents by capability.

    Start a coordinator with `serve`, attach workers with `worker`, then
    submit tasks and watch them move through the pool.
    """
    pass


@main.command()
@click.option("--port", default=DEFAULT_PORT, help="Port to run the coordinator on")
@click.option("--host", default=DEFAULT_HOST, help="Host to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(port: int, host: str, reload: bool) -> None:
    """Start the coordinator server."""
    import uvicorn

    click.echo(f"Starting taskrelay coordinator on {host}:{port}")
    uvicorn.run(
        "taskrelay.server:app",
        host=host,
        port=port,
        reload=reload,
    )


@main.command()
@click.option(
    "--url",
    default=f"ws://{DEFAULT_HOST}:{DEFAULT_PORT}/ws",
    help="Coordinator WebSocket URL",
)
@click.option(
    "--capability", "-c",
    "capabilities",
    multiple=True,
    help="Capability this worker offers (repeatable)",
)
@click.option("--agent-id", default=None, help="Agent id (random when omitted)")
@click.option(
    "--step-delay",
    default=1.0,
    type=float,
    help="Seconds between simulated progress reports",
)
def worker(url: str, capabilities: tuple[str, ...], agent_id: str | None, step_delay: float) -> None:
    """Run a worker that executes tasks with the simulated executor.

    \b
    Example:
        taskrelay worker -c python -c docker
    """
    from taskrelay.worker import SimulatedExecutor, Worker

    agent = Worker(
        capabilities=list(capabilities),
        url=url,
        agent_id=agent_id,
        executor=SimulatedExecutor(step_delay=step_delay),
    )
    click.echo(f"Starting worker {agent.agent_id} with capabilities: {', '.join(capabilities) or '(none)'}")
    try:
        asyncio.run(agent.run())
    except OSError as e:
        raise click.ClickException(f"Cannot connect to {url}: {e}")


@main.command()
@click.argument("description")
@click.option(
    "--capability", "-c",
    "capabilities",
    multiple=True,
    help="Required capability (repeatable)",
)
@click.option(
    "--priority", "-p",
    type=click.Choice(["low", "medium", "high"]),
    default="medium",
    help="Task priority (recorded only)",
)
@click.option(
    "--deadline-minutes",
    type=int,
    default=None,
    help="Deadline as minutes from now (recorded only)",
)
@click.option("--url", default=DEFAULT_SERVER_URL, help="Coordinator HTTP URL")
@click.option("--raw", is_flag=True, help="Output raw JSON instead of formatted text")
def submit(
    description: str,
    capabilities: tuple[str, ...],
    priority: str,
    deadline_minutes: int | None,
    url: str,
    raw: bool,
) -> None:
    """Submit a task to the coordinator.

    \b
    Example:
        taskrelay submit "build image" -c docker --priority high
    """
    body: dict = {
        "description": description,
        "requirements": {"capabilities": list(capabilities)} if capabilities else {},
        "priority": priority,
    }
    if deadline_minutes is not None:
        deadline = datetime.now(timezone.utc) + timedelta(minutes=deadline_minutes)
        body["deadline"] = deadline.isoformat()

    task = _request("POST", f"{url}/tasks", json=body)

    if raw:
        click.echo(json.dumps(task, indent=2))
        return

    click.echo(f"Task {task['id']} created ({task['status']})")
    if task.get("assigned_agent"):
        click.echo(f"Offered to agent: {task['assigned_agent']}")
    else:
        click.echo("No capable agent available yet; task is pending.")


@main.command()
@click.option("--url", default=DEFAULT_SERVER_URL, help="Coordinator HTTP URL")
@click.option("--raw", is_flag=True, help="Output raw JSON instead of formatted text")
def status(url: str, raw: bool) -> None:
    """Show registered agents and tracked tasks."""
    agents = _request("GET", f"{url}/agents")
    tasks = _request("GET", f"{url}/tasks")

    if raw:
        click.echo(json.dumps({"agents": agents, "tasks": tasks}, indent=2))
        return

    click.echo(f"\n{'=' * 60}")
    click.echo(f"Agents: {len(agents)} | Tasks: {len(tasks)}")
    click.echo(f"{'=' * 60}\n")

    if agents:
        for conn_id, agent in agents.items():
            caps = ", ".join(agent["capabilities"]) or "-"
            current = agent.get("current_task") or "-"
            click.echo(f"  {agent['id']} [{agent['status']}] caps: {caps} task: {current} ({conn_id})")
    else:
        click.echo("  No agents registered.")

    click.echo(f"\n{'─' * 60}")
    if tasks:
        for task in tasks.values():
            holder = task.get("assigned_agent") or "-"
            click.echo(
                f"  {task['id']} [{task['status']} {task['progress']}%] "
                f"agent: {holder} - {task['description']}"
            )
    else:
        click.echo("  No tasks.")
    click.echo()


@main.command()
def mcp() -> None:
    """Run the MCP server exposing the coordinator to MCP clients.

    \b
    Configure in .mcp.json:
        {
            "mcpServers": {
                "taskrelay": {
                    "command": "taskrelay",
                    "args": ["mcp"]
                }
            }
        }
    """
    from mcp_taskrelay.server import mcp as mcp_server
    mcp_server.run()


def _request(method: str, url: str, **kwargs) -> dict:
    """Call the coordinator HTTP API, turning failures into CLI errors."""
    try:
        response = httpx.request(method, url, timeout=HTTP_TIMEOUT, **kwargs)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise click.ClickException(f"{e.response.status_code} from coordinator: {e.response.text}")
    except httpx.HTTPError as e:
        raise click.ClickException(f"Cannot reach coordinator at {url}: {e}")
    return response.json()


if __name__ == "__main__":
    main()
