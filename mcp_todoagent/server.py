"""MCP server exposing the todo tools over stdio."""

from __future__ import annotations

from typing import Any

from mcp.server.fastmcp import FastMCP

from todoagent.config import get_settings
from todoagent.gateway import ToolGateway
from todoagent.protocol import get_server

mcp = FastMCP("todoagent")

_gateway: ToolGateway | None = None


async def _get_gateway() -> ToolGateway:
    global _gateway
    if _gateway is None:
        settings = get_settings()
        server = await get_server(settings)
        _gateway = ToolGateway(
            server,
            registry_ttl_s=settings.registry_ttl_s,
            ready_timeout_s=settings.ready_timeout_s,
        )
    return _gateway


async def _call(name: str, args: dict[str, Any]) -> dict:
    gateway = await _get_gateway()
    result = await gateway.invoke(name, args)
    response: dict[str, Any] = {"text": result.text, "is_error": result.is_error}
    if result.payload is not None:
        response["data"] = result.payload
    return response


def _present(**fields: Any) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None}


@mcp.tool()
async def todo_create(
    title: str,
    description: str | None = None,
    priority: str = "medium",
    status: str = "pending",
    due_date: str | None = None,
) -> dict:
    """Create a new todo.

    Args:
        title: Short title (max 200 characters)
        description: Optional details (max 1000 characters)
        priority: low, medium or high
        status: pending, in_progress, completed or cancelled
        due_date: Optional ISO 8601 date or datetime
    """
    return await _call(
        "todo_create",
        _present(title=title, description=description, priority=priority, status=status, dueDate=due_date),
    )


@mcp.tool()
async def todo_list(
    status: str | None = None,
    priority: str | None = None,
    search: str | None = None,
    due_after: str | None = None,
    due_before: str | None = None,
) -> dict:
    """List todos, newest first. All filters are optional and combined.

    Args:
        due_after: ISO 8601 date; only todos due at or after it
        due_before: ISO 8601 date; only todos due at or before it
    """
    args = _present(
        status=status,
        priority=priority,
        search=search,
        dueAfter=due_after,
        dueBefore=due_before,
    )
    return await _call("todo_list", args)


@mcp.tool()
async def todo_get(id: str) -> dict:
    """Get one todo by ID."""
    return await _call("todo_get", {"id": id})


@mcp.tool()
async def todo_update(
    id: str,
    title: str | None = None,
    description: str | None = None,
    priority: str | None = None,
    status: str | None = None,
    due_date: str | None = None,
    clear_description: bool = False,
    clear_due_date: bool = False,
) -> dict:
    """Update fields of an existing todo. Only the given fields change.

    Args:
        id: Todo ID (from todo_list or todo_create)
        clear_description: Remove the description
        clear_due_date: Remove the due date
    """
    args = _present(
        id=id,
        title=title,
        description=description,
        priority=priority,
        status=status,
        dueDate=due_date,
    )
    if clear_description:
        args["description"] = None
    if clear_due_date:
        args["dueDate"] = None
    return await _call("todo_update", args)


@mcp.tool()
async def todo_delete(id: str) -> dict:
    """Delete a todo by ID."""
    return await _call("todo_delete", {"id": id})


if __name__ == "__main__":
    mcp.run()
