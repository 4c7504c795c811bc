# src/taskpulse/storage/models.py

"""
Domain records persisted by the store.

Instants are POSIX timestamps (float seconds). Durations are minutes (float).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    OVERDUE = "overdue"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.PENDING
        try:
            return cls(raw)
        except ValueError:
            return cls.PENDING


class TaskPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskPriority:
        if not raw:
            return cls.MEDIUM
        try:
            return cls(raw)
        except ValueError:
            return cls.MEDIUM


class ProjectStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ON_HOLD = "on_hold"
    CANCELLED = "cancelled"

    @classmethod
    def from_db(cls, raw: str | None) -> ProjectStatus:
        if not raw:
            return cls.ACTIVE
        try:
            return cls(raw)
        except ValueError:
            return cls.ACTIVE


class NotificationType(StrEnum):
    TASK_START = "task_start"
    TASK_DUE = "task_due"
    TIME_UP = "time_up"
    PROJECT_DEADLINE = "project_deadline"
    DAILY_REMINDER = "daily_reminder"
    PROJECT_REMINDER = "project_reminder"
    PROJECT_REPORT = "project_report"
    DEADLINE_ALERT = "deadline_alert"
    PROJECT_COMPLETED = "project_completed"

    @classmethod
    def from_db(cls, raw: str | None) -> NotificationType:
        if not raw:
            return cls.TASK_DUE
        try:
            return cls(raw)
        except ValueError:
            return cls.TASK_DUE


@dataclass(slots=True)
class Task:
    id: str
    title: str
    description: str = ""
    project_id: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM

    start_time: float | None = None
    end_time: float | None = None
    due_date: float | None = None
    estimated_duration: float | None = None  # minutes

    time_spent: float = 0.0  # minutes
    is_timer_running: bool = False
    timer_start_time: float | None = None

    tags: list[str] = field(default_factory=list)
    created_at: float = 0.0
    updated_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class Project:
    id: str
    name: str
    description: str = ""
    color: str = "#007AFF"
    status: ProjectStatus = ProjectStatus.ACTIVE

    start_date: float | None = None
    end_date: float | None = None

    # Derived aggregates (refreshed from tasks, never authoritative input).
    total_estimated_time: float = 0.0
    total_actual_time: float = 0.0
    progress: int = 0

    created_at: float = 0.0
    updated_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class TimeEntry:
    """One finished timer segment. Immutable once written."""

    id: str
    task_id: str
    project_id: str | None
    start_time: float
    end_time: float
    duration: float  # minutes
    description: str = ""
    created_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ActiveTimer:
    """
    Snapshot of a running or paused timer.

    start_time is the start of the current segment (reset on resume).
    base_time_spent is Task.time_spent when the segment began; time_spent is
    always recomputed as base + elapsed so periodic updates never double count.
    """

    task_id: str
    project_id: str | None
    start_time: float
    elapsed_time: float = 0.0
    is_running: bool = True
    paused_at: float | None = None
    base_time_spent: float = 0.0
    time_up_fired: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ScheduledNotification:
    id: str
    type: NotificationType
    title: str
    message: str
    scheduled_time: float
    task_id: str | None = None
    project_id: str | None = None
    is_recurring: bool = False
    recurring_interval: int | None = None  # minutes
    is_active: bool = True
    data: dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class NotificationPrefs:
    enabled: bool = True
    sound_enabled: bool = True
    vibration_enabled: bool = True


@dataclass(slots=True)
class UserSettings:
    """User-editable preferences kept in the store (not process configuration)."""

    notifications: NotificationPrefs = field(default_factory=NotificationPrefs)
    working_hours_start: str = "09:00"
    working_hours_end: str = "17:00"
    default_task_duration: int = 60  # minutes
    auto_start_timer: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> UserSettings:
        raw = raw or {}
        notif_raw = raw.get("notifications")
        notif = NotificationPrefs()
        if isinstance(notif_raw, dict):
            notif = NotificationPrefs(
                enabled=bool(notif_raw.get("enabled", True)),
                sound_enabled=bool(notif_raw.get("sound_enabled", True)),
                vibration_enabled=bool(notif_raw.get("vibration_enabled", True)),
            )
        return cls(
            notifications=notif,
            working_hours_start=str(raw.get("working_hours_start", "09:00")),
            working_hours_end=str(raw.get("working_hours_end", "17:00")),
            default_task_duration=int(raw.get("default_task_duration", 60)),
            auto_start_timer=bool(raw.get("auto_start_timer", False)),
        )
