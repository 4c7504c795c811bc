# src/taskpulse/storage/store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
import uuid
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

from ..errors import NotFoundError, PersistenceError
from .models import (
    ActiveTimer,
    NotificationType,
    Project,
    ProjectStatus,
    ScheduledNotification,
    Task,
    TaskPriority,
    TaskStatus,
    TimeEntry,
    UserSettings,
)

logger = logging.getLogger(__name__)

# Column declarations per table. Used both for CREATE TABLE and for the
# add-missing-column migration pass.
_TASK_COLUMNS: dict[str, str] = {
    "title": "TEXT NOT NULL DEFAULT ''",
    "description": "TEXT NOT NULL DEFAULT ''",
    "project_id": "TEXT",
    "status": "TEXT NOT NULL DEFAULT 'pending'",
    "priority": "TEXT NOT NULL DEFAULT 'medium'",
    "start_time": "REAL",
    "end_time": "REAL",
    "due_date": "REAL",
    "estimated_duration": "REAL",
    "time_spent": "REAL NOT NULL DEFAULT 0",
    "is_timer_running": "INTEGER NOT NULL DEFAULT 0",
    "timer_start_time": "REAL",
    "tags": "TEXT NOT NULL DEFAULT '[]'",
    "created_at": "REAL NOT NULL DEFAULT 0",
    "updated_at": "REAL NOT NULL DEFAULT 0",
}

_PROJECT_COLUMNS: dict[str, str] = {
    "name": "TEXT NOT NULL DEFAULT ''",
    "description": "TEXT NOT NULL DEFAULT ''",
    "color": "TEXT NOT NULL DEFAULT '#007AFF'",
    "status": "TEXT NOT NULL DEFAULT 'active'",
    "start_date": "REAL",
    "end_date": "REAL",
    "total_estimated_time": "REAL NOT NULL DEFAULT 0",
    "total_actual_time": "REAL NOT NULL DEFAULT 0",
    "progress": "INTEGER NOT NULL DEFAULT 0",
    "created_at": "REAL NOT NULL DEFAULT 0",
    "updated_at": "REAL NOT NULL DEFAULT 0",
}

_TIME_ENTRY_COLUMNS: dict[str, str] = {
    "task_id": "TEXT NOT NULL",
    "project_id": "TEXT",
    "start_time": "REAL NOT NULL",
    "end_time": "REAL NOT NULL",
    "duration": "REAL NOT NULL DEFAULT 0",
    "description": "TEXT NOT NULL DEFAULT ''",
    "created_at": "REAL NOT NULL DEFAULT 0",
}

_NOTIFICATION_COLUMNS: dict[str, str] = {
    "type": "TEXT NOT NULL DEFAULT 'task_due'",
    "title": "TEXT NOT NULL DEFAULT ''",
    "message": "TEXT NOT NULL DEFAULT ''",
    "scheduled_time": "REAL NOT NULL",
    "task_id": "TEXT",
    "project_id": "TEXT",
    "is_recurring": "INTEGER NOT NULL DEFAULT 0",
    "recurring_interval": "INTEGER",
    "is_active": "INTEGER NOT NULL DEFAULT 1",
    "data": "TEXT NOT NULL DEFAULT '{}'",
    "created_at": "REAL NOT NULL DEFAULT 0",
}

_ACTIVE_TIMER_COLUMNS: dict[str, str] = {
    "project_id": "TEXT",
    "start_time": "REAL NOT NULL",
    "elapsed_time": "REAL NOT NULL DEFAULT 0",
    "is_running": "INTEGER NOT NULL DEFAULT 1",
    "paused_at": "REAL",
    "base_time_spent": "REAL NOT NULL DEFAULT 0",
    "time_up_fired": "INTEGER NOT NULL DEFAULT 0",
}

_BOOL_FIELDS = {"is_timer_running", "is_recurring", "is_active", "is_running", "time_up_fired"}
_JSON_LIST_FIELDS = {"tags"}
_JSON_DICT_FIELDS = {"data"}


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _encode(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _BOOL_FIELDS:
        return 1 if value else 0
    if name in _JSON_LIST_FIELDS:
        return json.dumps(list(value), ensure_ascii=False)
    if name in _JSON_DICT_FIELDS:
        return json.dumps(dict(value), ensure_ascii=False)
    if isinstance(value, str):
        # StrEnum members are str; store the plain value.
        return str(value)
    return value


def _str_to_list(s: str | None) -> list[str]:
    if not s:
        return []
    try:
        val = json.loads(s)
        return [str(v) for v in val] if isinstance(val, list) else []
    except ValueError:
        return []


def _str_to_dict(s: str | None) -> dict[str, Any]:
    if not s:
        return {}
    try:
        val = json.loads(s)
        return val if isinstance(val, dict) else {}
    except ValueError:
        return {}


def _opt_float(v: Any) -> float | None:
    return float(v) if v is not None else None


class SQLiteStore:
    """
    SQLite store for tasks, projects, time entries, notifications, active timer
    snapshots and user settings.

    The schema is migration-safe:
    - create tables if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(
        self,
        db_path: str | Path = "taskpulse.sqlite3",
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._ensure_schema()
        logger.info("SQLiteStore ready db=%s tasks=%s", self._db_path, self.count_tasks())

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")

    @contextlib.contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        """Connection scope: commit on success, rollback + PersistenceError on sqlite errors."""
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot open {self._db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            with contextlib.suppress(sqlite3.Error):
                conn.rollback()
            raise PersistenceError(str(e)) from e
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        tables: dict[str, tuple[str, dict[str, str]]] = {
            "tasks": ("id TEXT PRIMARY KEY", _TASK_COLUMNS),
            "projects": ("id TEXT PRIMARY KEY", _PROJECT_COLUMNS),
            "time_entries": ("id TEXT PRIMARY KEY", _TIME_ENTRY_COLUMNS),
            "notifications": ("id TEXT PRIMARY KEY", _NOTIFICATION_COLUMNS),
            "active_timers": ("task_id TEXT PRIMARY KEY", _ACTIVE_TIMER_COLUMNS),
            "settings": ("key TEXT PRIMARY KEY", {"value": "TEXT NOT NULL DEFAULT '{}'"}),
        }
        with self._session() as conn:
            cur = conn.cursor()
            for table, (pk, columns) in tables.items():
                decls = ",\n".join([pk, *(f"{name} {decl}" for name, decl in columns.items())])
                cur.execute(f"CREATE TABLE IF NOT EXISTS {table} (\n{decls}\n)")

                # Migrations (safe): add missing columns.
                cur.execute(f"PRAGMA table_info({table})")
                existing = {row["name"] for row in cur.fetchall()}
                for name, decl in columns.items():
                    if name in existing:
                        continue
                    cur.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl}")
                    logger.info("SQLiteStore migration: added column %s.%s", table, name)

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_entries_task ON time_entries(task_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_entries_project ON time_entries(project_id)")
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_notifications_active ON notifications(is_active, scheduled_time)"
            )

    def _insert(self, table: str, values: dict[str, Any]) -> None:
        cols = list(values)
        placeholders = ", ".join("?" for _ in cols)
        params = [_encode(c, values[c]) for c in cols]
        with self._session() as conn:
            conn.execute(f"INSERT INTO {table}({', '.join(cols)}) VALUES ({placeholders})", params)

    def _update(
        self,
        table: str,
        entity_id: str,
        columns: dict[str, str],
        patch: dict[str, Any],
        *,
        kind: str,
        touch: bool = True,
    ) -> None:
        unknown = set(patch) - set(columns)
        if unknown:
            raise ValueError(f"unknown {kind} fields: {sorted(unknown)}")

        fields = [f"{name} = ?" for name in patch]
        params = [_encode(name, value) for name, value in patch.items()]
        if touch and "updated_at" not in patch:
            fields.append("updated_at = ?")
            params.append(self._clock())
        if not fields:
            return
        params.append(entity_id)

        with self._session() as conn:
            cur = conn.execute(f"UPDATE {table} SET {', '.join(fields)} WHERE id = ?", params)
            if cur.rowcount != 1:
                raise NotFoundError(kind, entity_id)

    # ---- row mapping ----

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=str(row["id"]),
            title=str(row["title"] or ""),
            description=str(row["description"] or ""),
            project_id=row["project_id"],
            status=TaskStatus.from_db(row["status"]),
            priority=TaskPriority.from_db(row["priority"]),
            start_time=_opt_float(row["start_time"]),
            end_time=_opt_float(row["end_time"]),
            due_date=_opt_float(row["due_date"]),
            estimated_duration=_opt_float(row["estimated_duration"]),
            time_spent=float(row["time_spent"] or 0.0),
            is_timer_running=bool(row["is_timer_running"]),
            timer_start_time=_opt_float(row["timer_start_time"]),
            tags=_str_to_list(row["tags"]),
            created_at=float(row["created_at"] or 0.0),
            updated_at=float(row["updated_at"] or 0.0),
        )

    @staticmethod
    def _row_to_project(row: sqlite3.Row) -> Project:
        return Project(
            id=str(row["id"]),
            name=str(row["name"] or ""),
            description=str(row["description"] or ""),
            color=str(row["color"] or "#007AFF"),
            status=ProjectStatus.from_db(row["status"]),
            start_date=_opt_float(row["start_date"]),
            end_date=_opt_float(row["end_date"]),
            total_estimated_time=float(row["total_estimated_time"] or 0.0),
            total_actual_time=float(row["total_actual_time"] or 0.0),
            progress=int(row["progress"] or 0),
            created_at=float(row["created_at"] or 0.0),
            updated_at=float(row["updated_at"] or 0.0),
        )

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> TimeEntry:
        return TimeEntry(
            id=str(row["id"]),
            task_id=str(row["task_id"]),
            project_id=row["project_id"],
            start_time=float(row["start_time"]),
            end_time=float(row["end_time"]),
            duration=float(row["duration"] or 0.0),
            description=str(row["description"] or ""),
            created_at=float(row["created_at"] or 0.0),
        )

    @staticmethod
    def _row_to_notification(row: sqlite3.Row) -> ScheduledNotification:
        interval = row["recurring_interval"]
        return ScheduledNotification(
            id=str(row["id"]),
            type=NotificationType.from_db(row["type"]),
            title=str(row["title"] or ""),
            message=str(row["message"] or ""),
            scheduled_time=float(row["scheduled_time"]),
            task_id=row["task_id"],
            project_id=row["project_id"],
            is_recurring=bool(row["is_recurring"]),
            recurring_interval=int(interval) if interval is not None else None,
            is_active=bool(row["is_active"]),
            data=_str_to_dict(row["data"]),
            created_at=float(row["created_at"] or 0.0),
        )

    @staticmethod
    def _row_to_timer(row: sqlite3.Row) -> ActiveTimer:
        return ActiveTimer(
            task_id=str(row["task_id"]),
            project_id=row["project_id"],
            start_time=float(row["start_time"]),
            elapsed_time=float(row["elapsed_time"] or 0.0),
            is_running=bool(row["is_running"]),
            paused_at=_opt_float(row["paused_at"]),
            base_time_spent=float(row["base_time_spent"] or 0.0),
            time_up_fired=bool(row["time_up_fired"]),
        )

    # ---- tasks ----

    def count_tasks(self) -> int:
        with self._session() as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM tasks").fetchone()
            return int(n)

    def get_task(self, task_id: str) -> Task | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
            return self._row_to_task(row) if row else None

    def list_tasks(
        self,
        *,
        project_id: str | None = None,
        status: TaskStatus | None = None,
    ) -> list[Task]:
        where: list[str] = []
        params: list[Any] = []
        if project_id is not None:
            where.append("project_id = ?")
            params.append(project_id)
        if status is not None:
            where.append("status = ?")
            params.append(str(status))
        sql = "SELECT * FROM tasks"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at ASC, id ASC"
        with self._session() as conn:
            return [self._row_to_task(r) for r in conn.execute(sql, params).fetchall()]

    def create_task(self, *, title: str, **fields: Any) -> Task:
        if not title or not title.strip():
            raise ValueError("title is required")
        unknown = set(fields) - set(_TASK_COLUMNS) - {"id"}
        if unknown:
            raise ValueError(f"unknown task fields: {sorted(unknown)}")

        now = self._clock()
        values: dict[str, Any] = {
            "id": fields.pop("id", None) or new_id("task"),
            "title": title.strip(),
            "created_at": now,
            "updated_at": now,
        }
        values.update(fields)
        values["time_spent"] = max(0.0, float(values.get("time_spent") or 0.0))
        self._insert("tasks", values)
        logger.debug("Task created id=%s project=%s", values["id"], values.get("project_id"))
        task = self.get_task(values["id"])
        if task is None:
            raise PersistenceError(f"task {values['id']} vanished after insert")
        return task

    def update_task(self, task_id: str, **patch: Any) -> Task:
        if "time_spent" in patch and patch["time_spent"] is not None:
            patch["time_spent"] = max(0.0, float(patch["time_spent"]))
        self._update("tasks", task_id, _TASK_COLUMNS, patch, kind="task")
        task = self.get_task(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def delete_task(self, task_id: str) -> bool:
        """Delete a task together with its time entries and timer snapshot."""
        with self._session() as conn:
            cur = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            conn.execute("DELETE FROM time_entries WHERE task_id = ?", (task_id,))
            conn.execute("DELETE FROM active_timers WHERE task_id = ?", (task_id,))
            deleted = cur.rowcount == 1
        logger.debug("Task delete id=%s deleted=%s", task_id, deleted)
        return deleted

    # ---- projects ----

    def get_project(self, project_id: str) -> Project | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
            return self._row_to_project(row) if row else None

    def list_projects(self) -> list[Project]:
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM projects ORDER BY created_at ASC, id ASC").fetchall()
            return [self._row_to_project(r) for r in rows]

    def create_project(self, *, name: str, **fields: Any) -> Project:
        if not name or not name.strip():
            raise ValueError("name is required")
        unknown = set(fields) - set(_PROJECT_COLUMNS) - {"id"}
        if unknown:
            raise ValueError(f"unknown project fields: {sorted(unknown)}")

        now = self._clock()
        values: dict[str, Any] = {
            "id": fields.pop("id", None) or new_id("project"),
            "name": name.strip(),
            "created_at": now,
            "updated_at": now,
        }
        values.update(fields)
        self._insert("projects", values)
        logger.debug("Project created id=%s", values["id"])
        project = self.get_project(values["id"])
        if project is None:
            raise PersistenceError(f"project {values['id']} vanished after insert")
        return project

    def update_project(self, project_id: str, **patch: Any) -> Project:
        self._update("projects", project_id, _PROJECT_COLUMNS, patch, kind="project")
        project = self.get_project(project_id)
        if project is None:
            raise NotFoundError("project", project_id)
        return project

    def delete_project(self, project_id: str) -> bool:
        """Delete a project and every task (with entries/snapshots) that belongs to it."""
        with self._session() as conn:
            task_ids = [
                r["id"] for r in conn.execute("SELECT id FROM tasks WHERE project_id = ?", (project_id,))
            ]
            for task_id in task_ids:
                conn.execute("DELETE FROM time_entries WHERE task_id = ?", (task_id,))
                conn.execute("DELETE FROM active_timers WHERE task_id = ?", (task_id,))
            conn.execute("DELETE FROM tasks WHERE project_id = ?", (project_id,))
            cur = conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            deleted = cur.rowcount == 1
        logger.debug("Project delete id=%s deleted=%s tasks=%d", project_id, deleted, len(task_ids))
        return deleted

    # ---- time entries ----

    def create_time_entry(
        self,
        *,
        task_id: str,
        project_id: str | None,
        start_time: float,
        end_time: float,
        duration: float,
        description: str = "",
    ) -> TimeEntry:
        entry = TimeEntry(
            id=new_id("time_entry"),
            task_id=task_id,
            project_id=project_id,
            start_time=float(start_time),
            end_time=float(end_time),
            duration=max(0.0, float(duration)),
            description=description,
            created_at=self._clock(),
        )
        self._insert("time_entries", entry.to_dict())
        logger.debug("TimeEntry created id=%s task=%s duration=%.2f", entry.id, task_id, entry.duration)
        return entry

    def list_time_entries(
        self,
        *,
        task_id: str | None = None,
        project_id: str | None = None,
    ) -> list[TimeEntry]:
        where: list[str] = []
        params: list[Any] = []
        if task_id is not None:
            where.append("task_id = ?")
            params.append(task_id)
        if project_id is not None:
            where.append("project_id = ?")
            params.append(project_id)
        sql = "SELECT * FROM time_entries"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY start_time ASC"
        with self._session() as conn:
            return [self._row_to_entry(r) for r in conn.execute(sql, params).fetchall()]

    # ---- notifications ----

    def get_notification(self, notification_id: str) -> ScheduledNotification | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
            return self._row_to_notification(row) if row else None

    def list_notifications(
        self,
        *,
        active_only: bool = False,
        task_id: str | None = None,
        project_id: str | None = None,
    ) -> list[ScheduledNotification]:
        where: list[str] = []
        params: list[Any] = []
        if active_only:
            where.append("is_active = 1")
        if task_id is not None:
            where.append("task_id = ?")
            params.append(task_id)
        if project_id is not None:
            where.append("project_id = ?")
            params.append(project_id)
        sql = "SELECT * FROM notifications"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY scheduled_time ASC"
        with self._session() as conn:
            return [self._row_to_notification(r) for r in conn.execute(sql, params).fetchall()]

    def save_notification(self, notification: ScheduledNotification) -> None:
        """Insert or replace the record with this id."""
        values = notification.to_dict()
        if not values.get("created_at"):
            values["created_at"] = self._clock()
        cols = list(values)
        with self._session() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO notifications({', '.join(cols)}) "
                f"VALUES ({', '.join('?' for _ in cols)})",
                [_encode(c, values[c]) for c in cols],
            )

    def deactivate_notification(self, notification_id: str) -> bool:
        with self._session() as conn:
            cur = conn.execute(
                "UPDATE notifications SET is_active = 0 WHERE id = ? AND is_active = 1",
                (notification_id,),
            )
            return cur.rowcount == 1

    # ---- active timers ----

    def get_active_timer(self, task_id: str) -> ActiveTimer | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM active_timers WHERE task_id = ?", (task_id,)).fetchone()
            return self._row_to_timer(row) if row else None

    def list_active_timers(self) -> list[ActiveTimer]:
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM active_timers ORDER BY start_time ASC").fetchall()
            return [self._row_to_timer(r) for r in rows]

    def set_active_timer(self, timer: ActiveTimer) -> None:
        values = timer.to_dict()
        cols = list(values)
        with self._session() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO active_timers({', '.join(cols)}) "
                f"VALUES ({', '.join('?' for _ in cols)})",
                [_encode(c, values[c]) for c in cols],
            )

    def remove_active_timer(self, task_id: str) -> None:
        with self._session() as conn:
            conn.execute("DELETE FROM active_timers WHERE task_id = ?", (task_id,))

    # ---- user settings ----

    def get_settings(self) -> UserSettings:
        with self._session() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = 'user'").fetchone()
        return UserSettings.from_dict(_str_to_dict(row["value"]) if row else None)

    def update_settings(self, settings: UserSettings) -> None:
        with self._session() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO settings(key, value) VALUES ('user', ?)",
                (json.dumps(settings.to_dict(), ensure_ascii=False),),
            )
