"""CLI for todoagent - chat with the todo assistant, list todos, run servers."""

from __future__ import annotations

import asyncio
import json
import sys

import click

from todoagent import __version__
from todoagent.schemas import ChatMessage, StreamEvent, TaskPriority, TaskStatus

EXIT_WORDS = {"exit", "quit", ":q"}


@click.group()
@click.version_option(version=__version__, prog_name="todoagent")
def main() -> None:
    """todoagent - A tool-calling assistant for your local todo list.

    Todos live in a local SQLite store; the assistant manages them through
    an embedded protocol server.
    """
    pass


@main.command()
@click.option("--port", default=None, type=int, help="Port to run the broker on")
@click.option("--host", default=None, help="Host to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(port: int | None, host: str | None, reload: bool) -> None:
    """Start the todoagent HTTP broker server."""
    import uvicorn

    from todoagent.config import get_settings

    settings = get_settings()
    host = host or settings.host
    port = port or settings.port

    click.echo(f"Starting todoagent broker on {host}:{port}")
    uvicorn.run(
        "todoagent.broker:app",
        host=host,
        port=port,
        reload=reload,
    )


def _progress_line(event: StreamEvent) -> str | None:
    if event.type in ("iteration", "finalizing"):
        return event.message
    if event.type == "tools":
        return f"→ running {', '.join(event.tools or [])}"
    if event.type == "tool_complete":
        return f"✓ {event.tool}"
    return None


async def _stream_turn(
    runtime,
    message: str,
    history: list[ChatMessage],
    max_iterations: int | None,
    quiet: bool,
) -> StreamEvent:
    from todoagent.streaming import RunStream

    stream = RunStream(runtime.orchestrator, message, history, max_iterations=max_iterations)
    terminal = None
    async for event in stream.events():
        if event.is_terminal:
            terminal = event
            continue
        line = _progress_line(event)
        if line and not quiet:
            click.echo(click.style(line, dim=True), err=True)
    return terminal


async def _chat_session(message: str | None, max_iterations: int | None, quiet: bool) -> bool:
    from todoagent.runtime import start_runtime, stop_runtime

    runtime = await start_runtime()
    history: list[ChatMessage] = []
    ok = True
    try:
        while True:
            text = message
            if text is None:
                text = click.prompt("you", prompt_suffix="> ", default="", show_default=False).strip()
                if not text or text.lower() in EXIT_WORDS:
                    break

            event = await _stream_turn(runtime, text, history, max_iterations, quiet)
            if event.type == "complete":
                click.echo(event.response)
                history.extend(event.history_delta or [])
            elif event.type == "error":
                click.echo(f"Error: {event.error}", err=True)
                ok = False
            else:
                click.echo("Cancelled.", err=True)
                ok = False

            if message is not None:
                break
    finally:
        await stop_runtime()
    return ok


@main.command()
@click.argument("message", required=False)
@click.option(
    "--max-iterations", "-n",
    default=None,
    type=click.IntRange(1, 5),
    help="Maximum model/tool round trips per message",
)
@click.option("--quiet", "-q", is_flag=True, help="Hide progress output")
def chat(message: str | None, max_iterations: int | None, quiet: bool) -> None:
    """Talk to the todo assistant.

    With MESSAGE, answer once and exit. Without it, start an interactive
    session that keeps the conversation history until 'exit'.

    \b
    Example:
        todoagent chat "create a todo called 'Write report', high priority"
        todoagent chat
    """
    ok = asyncio.run(_chat_session(message, max_iterations, quiet))
    if message is not None and not ok:
        sys.exit(1)


async def _list_todos(args: dict) -> tuple[str, dict]:
    from todoagent.runtime import start_runtime, stop_runtime

    runtime = await start_runtime()
    try:
        result = await runtime.gateway.invoke("todo_list", args)
    finally:
        await stop_runtime()
    return result.text, result.payload or {"todos": [], "total": 0}


@main.command()
@click.option(
    "--status", "-s",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Only todos with this status",
)
@click.option(
    "--priority", "-p",
    type=click.Choice([priority.value for priority in TaskPriority]),
    default=None,
    help="Only todos with this priority",
)
@click.option("--search", default=None, help="Substring to match in title or description")
@click.option("--raw", is_flag=True, help="Output raw JSON instead of formatted text")
def todos(status: str | None, priority: str | None, search: str | None, raw: bool) -> None:
    """List todos from the local store.

    \b
    Example:
        todoagent todos
        todoagent todos --status pending --priority high
    """
    args = {
        key: value
        for key, value in (("status", status), ("priority", priority), ("search", search))
        if value
    }
    text, payload = asyncio.run(_list_todos(args))

    if raw:
        click.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    click.echo(text)


@main.command()
def mcp() -> None:
    """Run the MCP stdio server exposing the todo tools.

    \b
    Configure in .mcp.json:
        {
            "mcpServers": {
                "todoagent": {
                    "command": "todoagent",
                    "args": ["mcp"]
                }
            }
        }
    """
    from mcp_todoagent.server import mcp as mcp_server
    mcp_server.run()


if __name__ == "__main__":
    main()
