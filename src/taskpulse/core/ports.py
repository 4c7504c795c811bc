# src/taskpulse/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The timer engine, the notification scheduler and the services depend on Protocols
instead of concrete implementations. This keeps storage and the platform notifier
swappable and makes testing easier.
"""

from typing import Any, Awaitable, Callable, Protocol

from ..storage.models import (
    ActiveTimer,
    Project,
    ScheduledNotification,
    Task,
    TaskStatus,
    TimeEntry,
    UserSettings,
)

Clock = Callable[[], float]
# Returns "now" as a POSIX timestamp. time.time in production, a FakeClock in tests.


class Store(Protocol):
    """
    Persistent store contract.

    update_* methods take keyword patches: every key present is written (None clears
    a nullable field). Missing ids raise NotFoundError; backend failures raise
    PersistenceError.
    """

    # Tasks
    def get_task(self, task_id: str) -> Task | None: ...
    def list_tasks(
            self,
            *,
            project_id: str | None = None,
            status: TaskStatus | None = None,
    ) -> list[Task]: ...
    def create_task(self, *, title: str, **fields: Any) -> Task: ...
    def update_task(self, task_id: str, **patch: Any) -> Task: ...
    def delete_task(self, task_id: str) -> bool: ...

    # Projects
    def get_project(self, project_id: str) -> Project | None: ...
    def list_projects(self) -> list[Project]: ...
    def create_project(self, *, name: str, **fields: Any) -> Project: ...
    def update_project(self, project_id: str, **patch: Any) -> Project: ...
    def delete_project(self, project_id: str) -> bool: ...

    # Time entries (create/list only)
    def create_time_entry(
            self,
            *,
            task_id: str,
            project_id: str | None,
            start_time: float,
            end_time: float,
            duration: float,
            description: str = "",
    ) -> TimeEntry: ...
    def list_time_entries(
            self,
            *,
            task_id: str | None = None,
            project_id: str | None = None,
    ) -> list[TimeEntry]: ...

    # Scheduled notifications
    def get_notification(self, notification_id: str) -> ScheduledNotification | None: ...
    def list_notifications(
            self,
            *,
            active_only: bool = False,
            task_id: str | None = None,
            project_id: str | None = None,
    ) -> list[ScheduledNotification]: ...
    def save_notification(self, notification: ScheduledNotification) -> None: ...
    def deactivate_notification(self, notification_id: str) -> bool: ...

    # Active timer snapshots
    def get_active_timer(self, task_id: str) -> ActiveTimer | None: ...
    def list_active_timers(self) -> list[ActiveTimer]: ...
    def set_active_timer(self, timer: ActiveTimer) -> None: ...
    def remove_active_timer(self, task_id: str) -> None: ...

    # User settings
    def get_settings(self) -> UserSettings: ...
    def update_settings(self, settings: UserSettings) -> None: ...


class PlatformNotifier(Protocol):
    """
    Outbound-only notification platform (OS notifications, push, console...).

    repeat is one of "minute" | "hour" | "day" | "week" | None.
    Implementations raise PlatformNotifierError on failure.
    """

    def schedule(
            self,
            notification_id: str,
            title: str,
            body: str,
            fire_at: float,
            repeat: str | None = None,
            payload: dict[str, Any] | None = None,
    ) -> Awaitable[None]: ...

    def cancel(self, notification_id: str) -> Awaitable[None]: ...

    def cancel_all(self) -> Awaitable[None]: ...


class OutboundMessenger(Protocol):
    """
    Connector-side port: how the local notifier delivers a fired notification.

    The connector decides formatting and transport (console print, log line, ...).
    """

    def send_text(self, *, text: str) -> Awaitable[None]: ...
