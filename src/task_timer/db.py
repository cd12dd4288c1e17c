"""SQLite database layer for tasks and their tracked time."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from .models import TaskRecord, TaskStats
from .time_codec import InvalidFormat, is_valid_duration, parse_duration

logger = logging.getLogger(__name__)

DATETIME_FMT = "%Y-%m-%d %H:%M:%S.%f"
LONG_TASK_SECONDS = 24 * 60 * 60

_TASK_COLUMNS = "id, title, estimated_time, actual_time, status, updated_at"


class TaskNotFound(ValueError):
    """Raised when a task id has no row in the active task table."""


def open_database(path: Path, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    initialize_schema(conn)
    return conn


@contextmanager
def database_connection(
    path: Path, *, check_same_thread: bool = True
) -> Iterator[sqlite3.Connection]:
    conn = open_database(path, check_same_thread=check_same_thread)
    try:
        yield conn
    finally:
        conn.close()


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS tasks (
            id INTEGER PRIMARY KEY,
            title TEXT NOT NULL,
            estimated_time TEXT NOT NULL DEFAULT '00:00:00',
            actual_time TEXT NOT NULL DEFAULT '00:00:00',
            status TEXT NOT NULL DEFAULT 'not-started',
            updated_at TEXT
        );

        CREATE TABLE IF NOT EXISTS completed_tasks (
            id INTEGER PRIMARY KEY,
            title TEXT NOT NULL,
            estimated_time TEXT NOT NULL,
            actual_time TEXT NOT NULL,
            completed_at TEXT NOT NULL,
            actual_seconds INTEGER NOT NULL,
            estimated_seconds INTEGER NOT NULL,
            variance_seconds INTEGER NOT NULL,
            efficiency REAL NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_completed_at
            ON completed_tasks(completed_at);
        """
    )


def insert_task(
    conn: sqlite3.Connection, title: str, estimated_time: str = "00:00:00"
) -> int:
    if not title.strip():
        raise ValueError("title is required")
    parse_duration(estimated_time)
    cur = conn.execute(
        "INSERT INTO tasks (title, estimated_time, updated_at) VALUES (?, ?, ?)",
        (title.strip(), estimated_time, datetime.now().strftime(DATETIME_FMT)),
    )
    return int(cur.lastrowid)


def fetch_task(conn: sqlite3.Connection, task_id: int) -> Optional[TaskRecord]:
    row = conn.execute(
        f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?", (task_id,)
    ).fetchone()
    return _row_to_task(row) if row is not None else None


def fetch_tasks(conn: sqlite3.Connection) -> list[TaskRecord]:
    rows = conn.execute(f"SELECT {_TASK_COLUMNS} FROM tasks ORDER BY id")
    return [_row_to_task(row) for row in rows]


def fetch_completed_tasks(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    return list(
        conn.execute(
            """
            SELECT
                id,
                title,
                estimated_time,
                actual_time,
                completed_at,
                actual_seconds,
                estimated_seconds,
                variance_seconds,
                efficiency
            FROM completed_tasks
            ORDER BY completed_at DESC;
            """
        )
    )


def update_actual_time(conn: sqlite3.Connection, task_id: int, actual_time: str) -> None:
    """Store a new elapsed time, warning on implausible or shrinking values."""
    if not is_valid_duration(actual_time):
        raise InvalidFormat(f"Invalid time format, expected HH:MM:SS: {actual_time!r}")
    current = fetch_task(conn, task_id)
    if current is None:
        raise TaskNotFound(f"No task found for id={task_id}")

    new_seconds = parse_duration(actual_time)
    if new_seconds > LONG_TASK_SECONDS:
        logger.warning("Task %s has very long time: %s (%ss)", task_id, actual_time, new_seconds)
    if is_valid_duration(current.actual_time) and new_seconds < parse_duration(current.actual_time):
        logger.warning(
            "Time rollback detected for task %s: %s -> %s",
            task_id,
            current.actual_time,
            actual_time,
        )

    conn.execute(
        "UPDATE tasks SET actual_time = ?, status = ?, updated_at = ? WHERE id = ?",
        (
            actual_time,
            "in-progress" if current.status == "not-started" else current.status,
            datetime.now().strftime(DATETIME_FMT),
            task_id,
        ),
    )
    logger.debug("Task %s time updated: %s -> %s", task_id, current.actual_time, actual_time)


def compute_stats(task: TaskRecord) -> TaskStats:
    actual = parse_duration(task.actual_time)
    estimated = parse_duration(task.estimated_time)
    efficiency = (estimated / actual) * 100.0 if estimated > 0 and actual > 0 else 0.0
    return TaskStats(
        task_id=task.id,
        actual_time=task.actual_time,
        estimated_time=task.estimated_time,
        actual_seconds=actual,
        estimated_seconds=estimated,
        variance_seconds=actual - estimated,
        efficiency=efficiency,
        updated_at=task.updated_at,
    )


def complete_task(conn: sqlite3.Connection, task_id: int) -> TaskStats:
    """Move a task to ``completed_tasks`` together with its final statistics."""
    task = fetch_task(conn, task_id)
    if task is None:
        raise TaskNotFound(f"No task found for id={task_id}")
    stats = compute_stats(task)
    completed_at = datetime.now().strftime(DATETIME_FMT)
    conn.execute("BEGIN")
    try:
        conn.execute(
            """
            INSERT OR REPLACE INTO completed_tasks (
                id,
                title,
                estimated_time,
                actual_time,
                completed_at,
                actual_seconds,
                estimated_seconds,
                variance_seconds,
                efficiency
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id,
                task.title,
                task.estimated_time,
                task.actual_time,
                completed_at,
                stats.actual_seconds,
                stats.estimated_seconds,
                stats.variance_seconds,
                stats.efficiency,
            ),
        )
        conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    except Exception:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")
    logger.info(
        "Task %s completed: %s (actual %s, estimated %s, efficiency %.1f%%)",
        task_id,
        task.title,
        task.actual_time,
        task.estimated_time,
        stats.efficiency,
    )
    return stats


def _row_to_task(row: sqlite3.Row) -> TaskRecord:
    updated = row["updated_at"]
    return TaskRecord(
        id=row["id"],
        title=row["title"],
        estimated_time=row["estimated_time"],
        actual_time=row["actual_time"],
        status=row["status"],
        updated_at=datetime.strptime(updated, DATETIME_FMT) if updated else None,
    )


class TaskStore:
    """Path-bound access to the task tables.

    Each call opens its own connection, so the async helpers can run the
    blocking work in a worker thread.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    def create_task(self, title: str, estimated_time: str = "00:00:00") -> TaskRecord:
        with database_connection(self.db_path) as conn:
            task_id = insert_task(conn, title, estimated_time)
            task = fetch_task(conn, task_id)
        if task is None:
            raise RuntimeError(f"Task {task_id} vanished after insert")
        logger.info("Created task %s: %s", task_id, task.title)
        return task

    def get_task(self, task_id: int) -> Optional[TaskRecord]:
        with database_connection(self.db_path) as conn:
            return fetch_task(conn, task_id)

    def active_tasks(self) -> list[TaskRecord]:
        with database_connection(self.db_path) as conn:
            return fetch_tasks(conn)

    def completed_task_ids(self) -> list[int]:
        with database_connection(self.db_path) as conn:
            return [row["id"] for row in conn.execute("SELECT id FROM completed_tasks")]

    def completed_tasks(self) -> list[sqlite3.Row]:
        with database_connection(self.db_path) as conn:
            return fetch_completed_tasks(conn)

    def update_actual_time(self, task_id: int, actual_time: str) -> None:
        with database_connection(self.db_path) as conn:
            update_actual_time(conn, task_id, actual_time)

    def complete_task(self, task_id: int) -> TaskStats:
        with database_connection(self.db_path) as conn:
            return complete_task(conn, task_id)

    def time_stats(self, task_id: int) -> Optional[TaskStats]:
        task = self.get_task(task_id)
        return compute_stats(task) if task is not None else None

    async def save_elapsed_time(self, task_id: int, actual_time: str) -> None:
        await asyncio.to_thread(self.update_actual_time, task_id, actual_time)
