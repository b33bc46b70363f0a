"""Durable todo storage with a SQLite backend."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
import time
import uuid
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from todoagent.schemas import TaskPriority, TaskStatus, TodoRecord

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, title, description, priority, status, due_date, "
    "created_at, updated_at, completed_at"
)


class RecordNotFoundError(Exception):
    """Raised when a todo id does not exist."""

    def __init__(self, todo_id: str):
        super().__init__(f"Todo with ID {todo_id} not found")
        self.todo_id = todo_id


@dataclass
class TodoFilter:
    """Filters for listing todos. All supplied fields must match."""

    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    search: str | None = None
    due_after: datetime | None = None
    due_before: datetime | None = None


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _now_us() -> int:
    return int(time.time() * 1000000)  # Microseconds keep same-second inserts ordered


def _to_us(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000000)


def _from_us(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000000, tz=timezone.utc)


def _row_to_record(row: sqlite3.Row) -> TodoRecord:
    return TodoRecord(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        priority=TaskPriority(row["priority"]),
        status=TaskStatus(row["status"]),
        due_date=_from_us(row["due_date"]),
        created_at=_from_us(row["created_at"]),
        updated_at=_from_us(row["updated_at"]),
        completed_at=_from_us(row["completed_at"]),
    )


class TodoStore:
    """Keyed todo storage with secondary indexes on status, priority and time.

    Every public operation is one self-contained transaction on its own
    connection. The async methods run the transaction in a worker thread, so
    cancelling the awaiting task never leaves a write half-applied.
    """

    def __init__(self, db_path: Path | str):
        """Open the store and create the schema if needed.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._lock = threading.Lock()

        # Ensure parent directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with closing(self._get_connection()) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS todos (
                    id TEXT PRIMARY KEY NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    priority TEXT NOT NULL DEFAULT 'medium',
                    status TEXT NOT NULL DEFAULT 'pending',
                    due_date INTEGER,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    completed_at INTEGER
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_status ON todos (status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_priority ON todos (priority)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_due_date ON todos (due_date)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_created_at ON todos (created_at)")
            conn.commit()
        logger.info(f"Todo store ready at {self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    # --- Synchronous transactions ---

    def create_sync(
        self,
        title: str,
        description: str | None = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        status: TaskStatus = TaskStatus.PENDING,
        due_date: datetime | None = None,
    ) -> TodoRecord:
        now = _now_us()
        todo_id = str(uuid.uuid4())
        completed_at = now if status == TaskStatus.COMPLETED else None

        with self._lock, closing(self._get_connection()) as conn:
            conn.execute(
                f"""
                INSERT INTO todos ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    todo_id,
                    title,
                    description,
                    TaskPriority(priority).value,
                    TaskStatus(status).value,
                    _to_us(due_date),
                    now,
                    now,
                    completed_at,
                ),
            )
            conn.commit()
            row = self._fetch(conn, todo_id)

        logger.debug(f"Created todo {todo_id}")
        return _row_to_record(row)

    def get_sync(self, todo_id: str) -> TodoRecord:
        with self._lock, closing(self._get_connection()) as conn:
            row = self._fetch(conn, todo_id)
        if row is None:
            raise RecordNotFoundError(todo_id)
        return _row_to_record(row)

    def query_sync(self, filters: TodoFilter | None = None) -> list[TodoRecord]:
        filters = filters or TodoFilter()
        clauses: list[str] = []
        params: list[Any] = []

        if filters.status is not None:
            clauses.append("status = ?")
            params.append(TaskStatus(filters.status).value)
        if filters.priority is not None:
            clauses.append("priority = ?")
            params.append(TaskPriority(filters.priority).value)
        if filters.search:
            clauses.append("(title LIKE ? ESCAPE '\\' OR description LIKE ? ESCAPE '\\')")
            pattern = f"%{_escape_like(filters.search)}%"
            params.extend([pattern, pattern])
        if filters.due_after is not None:
            clauses.append("due_date >= ?")
            params.append(_to_us(filters.due_after))
        if filters.due_before is not None:
            clauses.append("due_date <= ?")
            params.append(_to_us(filters.due_before))

        query = f"SELECT {_COLUMNS} FROM todos"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, rowid DESC"

        with self._lock, closing(self._get_connection()) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_record(row) for row in rows]

    def update_sync(self, todo_id: str, changes: dict[str, Any]) -> tuple[TodoRecord, TodoRecord]:
        """Apply changes to an existing todo.

        Args:
            todo_id: Id of the todo to update
            changes: Field name to new value; only these fields are written

        Returns:
            (before, after) records
        """
        with self._lock, closing(self._get_connection()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = self._fetch(conn, todo_id)
            if row is None:
                conn.rollback()
                raise RecordNotFoundError(todo_id)

            before = _row_to_record(row)
            values = {
                "title": row["title"],
                "description": row["description"],
                "priority": row["priority"],
                "status": row["status"],
                "due_date": row["due_date"],
                "completed_at": row["completed_at"],
            }
            now = max(_now_us(), row["updated_at"])

            if "title" in changes:
                values["title"] = changes["title"]
            if "description" in changes:
                values["description"] = changes["description"]
            if "priority" in changes:
                values["priority"] = TaskPriority(changes["priority"]).value
            if "due_date" in changes:
                values["due_date"] = _to_us(changes["due_date"])
            if "status" in changes:
                new_status = TaskStatus(changes["status"]).value
                if new_status == TaskStatus.COMPLETED.value and row["status"] != new_status:
                    values["completed_at"] = now
                elif new_status != TaskStatus.COMPLETED.value:
                    values["completed_at"] = None
                values["status"] = new_status

            conn.execute(
                """
                UPDATE todos SET
                    title = ?, description = ?, priority = ?, status = ?,
                    due_date = ?, completed_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    values["title"],
                    values["description"],
                    values["priority"],
                    values["status"],
                    values["due_date"],
                    values["completed_at"],
                    now,
                    todo_id,
                ),
            )
            conn.commit()
            after = _row_to_record(self._fetch(conn, todo_id))

        logger.debug(f"Updated todo {todo_id}: {sorted(changes)}")
        return before, after

    def delete_sync(self, todo_id: str) -> TodoRecord:
        with self._lock, closing(self._get_connection()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = self._fetch(conn, todo_id)
            if row is None:
                conn.rollback()
                raise RecordNotFoundError(todo_id)
            conn.execute("DELETE FROM todos WHERE id = ?", (todo_id,))
            conn.commit()

        logger.debug(f"Deleted todo {todo_id}")
        return _row_to_record(row)

    def count_sync(self) -> int:
        with self._lock, closing(self._get_connection()) as conn:
            return conn.execute("SELECT COUNT(*) FROM todos").fetchone()[0]

    def _fetch(self, conn: sqlite3.Connection, todo_id: str) -> sqlite3.Row | None:
        return conn.execute(
            f"SELECT {_COLUMNS} FROM todos WHERE id = ?",
            (todo_id,),
        ).fetchone()

    # --- Awaitable API ---

    async def create(self, **fields: Any) -> TodoRecord:
        return await asyncio.to_thread(self.create_sync, **fields)

    async def get(self, todo_id: str) -> TodoRecord:
        return await asyncio.to_thread(self.get_sync, todo_id)

    async def query(self, filters: TodoFilter | None = None) -> list[TodoRecord]:
        return await asyncio.to_thread(self.query_sync, filters)

    async def update(self, todo_id: str, changes: dict[str, Any]) -> tuple[TodoRecord, TodoRecord]:
        return await asyncio.to_thread(self.update_sync, todo_id, changes)

    async def delete(self, todo_id: str) -> TodoRecord:
        return await asyncio.to_thread(self.delete_sync, todo_id)

    async def count(self) -> int:
        return await asyncio.to_thread(self.count_sync)
