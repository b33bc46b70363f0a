"""Todo tool registry backed by the local store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from todoagent import formatter
from todoagent.schemas import (
    DESCRIPTION_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    CreateTodoInput,
    DeleteTodoInput,
    GetTodoInput,
    ListTodosInput,
    TaskPriority,
    TaskStatus,
    ToolOutput,
    UpdateTodoInput,
)
from todoagent.store import TodoFilter, TodoStore

STATUS_VALUES = [status.value for status in TaskStatus]
PRIORITY_VALUES = [priority.value for priority in TaskPriority]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]
    input_schema: dict[str, Any]
    handler: Callable[[TodoStore, Any], Awaitable[ToolOutput]]

    def descriptor(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


# --- Handlers ---


async def create_todo(store: TodoStore, args: CreateTodoInput) -> ToolOutput:
    todo = await store.create(
        title=args.title,
        description=args.description,
        priority=args.priority,
        status=args.status,
        due_date=args.due_date,
    )
    return ToolOutput(
        payload={"todo": todo.to_payload()},
        text=formatter.format_created(todo),
    )


async def list_todos(store: TodoStore, args: ListTodosInput) -> ToolOutput:
    todos = await store.query(
        TodoFilter(
            status=args.status,
            priority=args.priority,
            search=args.search,
            due_after=args.due_after,
            due_before=args.due_before,
        )
    )
    return ToolOutput(
        payload={"todos": [todo.to_payload() for todo in todos], "total": len(todos)},
        text=formatter.format_todo_list(todos),
    )


async def get_todo(store: TodoStore, args: GetTodoInput) -> ToolOutput:
    todo = await store.get(args.id)
    return ToolOutput(
        payload={"todo": todo.to_payload()},
        text=formatter.format_todo(todo),
    )


async def update_todo(store: TodoStore, args: UpdateTodoInput) -> ToolOutput:
    before, after = await store.update(args.id, args.changes())
    return ToolOutput(
        payload={"todo": after.to_payload()},
        text=formatter.format_comparison(before, after),
    )


async def delete_todo(store: TodoStore, args: DeleteTodoInput) -> ToolOutput:
    todo = await store.delete(args.id)
    return ToolOutput(
        payload={"deleted": True, "todo": todo.to_payload()},
        text=formatter.format_deleted(todo),
    )


# --- Registry ---


def _string(description: str, **extra: Any) -> dict[str, Any]:
    return {"type": "string", "description": description, **extra}


def build_registry() -> dict[str, ToolSpec]:
    """Build the closed tool registry, keyed by tool name."""
    specs = [
        ToolSpec(
            name="todo_create",
            description="Create a new todo item",
            input_model=CreateTodoInput,
            input_schema={
                "type": "object",
                "properties": {
                    "title": _string(f"Todo title (max {TITLE_MAX_LENGTH} chars)"),
                    "description": _string(f"Optional description (max {DESCRIPTION_MAX_LENGTH} chars)"),
                    "priority": _string("Priority level", enum=PRIORITY_VALUES, default="medium"),
                    "status": _string("Initial status", enum=STATUS_VALUES, default="pending"),
                    "dueDate": _string("Due date in ISO 8601 format"),
                },
                "required": ["title"],
            },
            handler=create_todo,
        ),
        ToolSpec(
            name="todo_list",
            description="List todos, newest first, with optional filtering",
            input_model=ListTodosInput,
            input_schema={
                "type": "object",
                "properties": {
                    "status": _string("Filter by status", enum=STATUS_VALUES),
                    "priority": _string("Filter by priority", enum=PRIORITY_VALUES),
                    "search": _string("Search in title and description"),
                    "dueAfter": _string("Only todos due at or after this ISO 8601 date"),
                    "dueBefore": _string("Only todos due at or before this ISO 8601 date"),
                },
                "required": [],
            },
            handler=list_todos,
        ),
        ToolSpec(
            name="todo_get",
            description="Get a specific todo by ID",
            input_model=GetTodoInput,
            input_schema={
                "type": "object",
                "properties": {"id": _string("Todo ID to retrieve")},
                "required": ["id"],
            },
            handler=get_todo,
        ),
        ToolSpec(
            name="todo_update",
            description="Update an existing todo; only the supplied fields change",
            input_model=UpdateTodoInput,
            input_schema={
                "type": "object",
                "properties": {
                    "id": _string("Todo ID to update"),
                    "title": _string("New title"),
                    "description": _string("New description"),
                    "priority": _string("New priority", enum=PRIORITY_VALUES),
                    "status": _string("New status", enum=STATUS_VALUES),
                    "dueDate": _string("New due date in ISO 8601 format"),
                },
                "required": ["id"],
            },
            handler=update_todo,
        ),
        ToolSpec(
            name="todo_delete",
            description="Delete a todo item",
            input_model=DeleteTodoInput,
            input_schema={
                "type": "object",
                "properties": {"id": _string("Todo ID to delete")},
                "required": ["id"],
            },
            handler=delete_todo,
        ),
    ]
    return {spec.name: spec for spec in specs}


def list_tools() -> list[str]:
    return sorted(build_registry().keys())
