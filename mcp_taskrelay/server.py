"""MCP server exposing the taskrelay coordinator to MCP clients."""

from mcp.server.fastmcp import FastMCP
import httpx

mcp = FastMCP("taskrelay")
COORDINATOR = "http://localhost:8000"


@mcp.tool()
async def add_task(
    description: str,
    capabilities: list[str] | None = None,
    priority: str = "medium",
    deadline: str | None = None,
) -> dict:
    """Create a task; it is offered to the first capable available agent.

    Priority and deadline (ISO-8601) are recorded but do not affect ordering.
    """
    async with httpx.AsyncClient(timeout=30.0) as client:
        r = await client.post(f"{COORDINATOR}/tasks", json={
            "description": description,
            "requirements": {"capabilities": capabilities} if capabilities else {},
            "priority": priority,
            "deadline": deadline,
        })
        return r.json()


@mcp.tool()
async def list_tasks() -> dict:
    """All tasks keyed by id, including finished ones."""
    async with httpx.AsyncClient(timeout=30.0) as client:
        r = await client.get(f"{COORDINATOR}/tasks")
        return r.json()


@mcp.tool()
async def list_agents() -> dict:
    """Registered agents keyed by connection id."""
    async with httpx.AsyncClient(timeout=30.0) as client:
        r = await client.get(f"{COORDINATOR}/agents")
        return r.json()


@mcp.tool()
async def health() -> dict:
    """Counts of registered agents and tracked tasks."""
    async with httpx.AsyncClient(timeout=30.0) as client:
        r = await client.get(f"{COORDINATOR}/health")
        return r.json()


if __name__ == "__main__":
    mcp.run()
