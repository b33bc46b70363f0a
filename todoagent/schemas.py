"""Pydantic schemas for todoagent records, tool inputs and API contracts."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 1000
MAX_ITERATIONS_CEILING = 5


class TaskStatus(str, Enum):
    """Lifecycle status of a todo."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    """Priority level of a todo."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# --- Records ---


class TodoRecord(BaseModel):
    """A stored todo item."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = Field(..., min_length=1, max_length=TITLE_MAX_LENGTH)
    description: str | None = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    due_date: datetime | None = Field(default=None, alias="dueDate")
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")

    def to_payload(self) -> dict[str, Any]:
        """Serialize with the wire (camelCase) field names."""
        return self.model_dump(mode="json", by_alias=True)


# --- Tool inputs ---


class _ToolInput(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class CreateTodoInput(_ToolInput):
    """Arguments for todo_create."""

    title: str = Field(..., min_length=1, max_length=TITLE_MAX_LENGTH)
    description: str | None = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    due_date: datetime | None = Field(default=None, alias="dueDate")


class ListTodosInput(_ToolInput):
    """Arguments for todo_list."""

    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    search: str | None = Field(default=None, max_length=TITLE_MAX_LENGTH)
    due_after: datetime | None = Field(default=None, alias="dueAfter")
    due_before: datetime | None = Field(default=None, alias="dueBefore")


class GetTodoInput(_ToolInput):
    """Arguments for todo_get."""

    id: str = Field(..., min_length=1)


class TodoChanges(_ToolInput):
    """Editable todo fields; also the body of PUT /todos/{id}."""

    title: str | None = Field(default=None, min_length=1, max_length=TITLE_MAX_LENGTH)
    description: str | None = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    due_date: datetime | None = Field(default=None, alias="dueDate")


class UpdateTodoInput(TodoChanges):
    """Arguments for todo_update.

    Only fields present in the call are applied; an explicit null clears
    description or dueDate.
    """

    id: str = Field(..., min_length=1)

    def changes(self) -> dict[str, Any]:
        """Return the supplied fields (by attribute name), excluding the id."""
        changes = {}
        for name in self.model_fields_set:
            if name == "id":
                continue
            value = getattr(self, name)
            # title, priority and status cannot be cleared
            if value is None and name in ("title", "priority", "status"):
                continue
            changes[name] = value
        return changes


class DeleteTodoInput(_ToolInput):
    """Arguments for todo_delete."""

    id: str = Field(..., min_length=1)


class ToolOutput(BaseModel):
    """Result of a tool handler: machine payload plus human-readable text."""

    payload: dict[str, Any]
    text: str


# --- Conversation content ---


class TextBlock(BaseModel):
    """Plain text content block."""

    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    """Tool request emitted by the assistant."""

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """Tool result carried back in the following user message."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Annotated[
    Union[TextBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class ChatMessage(BaseModel):
    """A top-level conversation message."""

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]


# --- Stream events ---


StreamEventType = Literal[
    "start",
    "iteration",
    "tools",
    "tool_complete",
    "finalizing",
    "complete",
    "error",
    "cancelled",
]

TERMINAL_EVENT_TYPES = frozenset({"complete", "error", "cancelled"})


class StreamEvent(BaseModel):
    """Tagged progress event emitted while a run is processed."""

    type: StreamEventType
    run_id: str | None = None
    message: str | None = None
    iteration: int | None = None
    max_iterations: int | None = None
    tools: list[str] | None = None
    tool: str | None = None
    response: str | None = None
    tools_executed: list[str] | None = None
    history_delta: list[ChatMessage] | None = None
    iterations: int | None = None
    duration_ms: float | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# --- HTTP API ---


class ChatRequest(BaseModel):
    """Chat request with prior conversation history."""

    message: str = Field(..., min_length=1)
    history: list[ChatMessage] = Field(default_factory=list)
    request_id: str | None = Field(default=None, pattern=r"^[a-zA-Z0-9_-]+$")
    run_id: str | None = Field(default=None, pattern=r"^[a-zA-Z0-9_-]+$")
    max_iterations: int = Field(default=3, ge=1, le=MAX_ITERATIONS_CEILING)


class ChatResponse(BaseModel):
    """Final outcome of a non-streamed run."""

    response: str
    run_id: str
    iterations: int
    tools_executed: list[str] = Field(default_factory=list)
    history_delta: list[ChatMessage] = Field(default_factory=list)
    duration_ms: float


class ErrorResponse(BaseModel):
    """Error response for failed requests."""

    detail: str
    error_code: str | None = None
    retry_after_s: float | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    broker: Literal["healthy", "unhealthy"] = "healthy"
    protocol_server: Literal["dormant", "activating", "active", "closed"] = "dormant"
    model: Literal["anthropic", "offline"] = "offline"
