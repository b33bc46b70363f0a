"""Human-readable renderings of todo records.

Renderings are shown to end users, so they never include record ids.
"""

from __future__ import annotations

from datetime import datetime, timezone

from todoagent.schemas import TaskPriority, TaskStatus, TodoRecord

STATUS_ICONS = {
    TaskStatus.PENDING: "⭕",
    TaskStatus.IN_PROGRESS: "🔄",
    TaskStatus.COMPLETED: "✅",
    TaskStatus.CANCELLED: "❌",
}

STATUS_LABELS = {
    TaskStatus.PENDING: "Pending",
    TaskStatus.IN_PROGRESS: "In Progress",
    TaskStatus.COMPLETED: "Completed",
    TaskStatus.CANCELLED: "Cancelled",
}


def _format_date(value: datetime | None) -> str:
    if value is None:
        return "none"
    return value.strftime("%Y-%m-%d")


def _priority_tag(priority: TaskPriority) -> str:
    return f"[{priority.value.upper()} priority]"


def _status_text(status: TaskStatus) -> str:
    return status.value.replace("_", " ")


def format_todo(todo: TodoRecord) -> str:
    """Format a single todo on one line."""
    parts = [f'{STATUS_ICONS[todo.status]} "{todo.title}"']

    if todo.priority != TaskPriority.MEDIUM:
        parts.append(_priority_tag(todo.priority))

    if todo.status != TaskStatus.PENDING:
        parts.append(f"- {_status_text(todo.status)}")

    if todo.due_date:
        overdue = todo.due_date < datetime.now(timezone.utc) and todo.status != TaskStatus.COMPLETED
        label = "⚠️ Due" if overdue else "Due"
        parts.append(f"{label}: {_format_date(todo.due_date)}")

    return " ".join(parts)


def format_created(todo: TodoRecord) -> str:
    text = f'✅ Created todo: "{todo.title}"'
    if todo.priority != TaskPriority.MEDIUM:
        text += f" {_priority_tag(todo.priority)}"
    if todo.status != TaskStatus.PENDING:
        text += f" - {_status_text(todo.status)}"
    if todo.due_date:
        text += f" (due {_format_date(todo.due_date)})"
    return text


def format_todo_list(todos: list[TodoRecord]) -> str:
    """Format todos as a status summary followed by per-status groups."""
    if not todos:
        return "No todos found."

    total = len(todos)
    grouped: dict[TaskStatus, list[TodoRecord]] = {status: [] for status in TaskStatus}
    for todo in todos:
        grouped[todo.status].append(todo)

    counts = [
        f"{len(items)} {_status_text(status)}"
        for status, items in grouped.items()
        if items
    ]
    lines = [f"Found {total} todo{'s' if total != 1 else ''} ({', '.join(counts)}):", ""]

    for status, items in grouped.items():
        if not items:
            continue
        lines.append(f"{STATUS_ICONS[status]} {STATUS_LABELS[status]}:")
        for todo in items:
            line = f'  • "{todo.title}"'
            if todo.priority != TaskPriority.MEDIUM:
                line += f" {_priority_tag(todo.priority)}"
            if todo.due_date:
                line += f" (due {_format_date(todo.due_date)})"
            lines.append(line)
            if todo.description:
                lines.append(f"    {todo.description}")
        lines.append("")

    return "\n".join(lines).strip()


def format_comparison(before: TodoRecord, after: TodoRecord) -> str:
    """Format exactly what changed between two versions of a todo."""
    lines = [f'✅ Updated todo "{after.title}":']

    if before.title != after.title:
        lines.append(f'  Title: "{before.title}" → "{after.title}"')
    if before.description != after.description:
        if after.description:
            lines.append("  Description updated")
        else:
            lines.append("  Description cleared")
    if before.status != after.status:
        lines.append(f"  Status: {before.status.value} → {after.status.value}")
    if before.priority != after.priority:
        lines.append(f"  Priority: {before.priority.value} → {after.priority.value}")
    if before.due_date != after.due_date:
        lines.append(f"  Due date: {_format_date(before.due_date)} → {_format_date(after.due_date)}")
    if after.completed_at and not before.completed_at:
        lines.append("  ✓ Marked as completed")

    if len(lines) == 1:
        lines.append("  (no changes)")
    return "\n".join(lines)


def format_deleted(todo: TodoRecord) -> str:
    return f'🗑️ Deleted todo "{todo.title}"'


def format_error(message: str) -> str:
    return f"❌ Error: {message}"
