# src/taskpulse/notifications/scheduler.py

from __future__ import annotations

"""
Notification scheduler.

Maps task/project changes to ScheduledNotification records and hands them to
the platform notifier. Records are keyed by "{kind}_{entity_id}", so
rescheduling the same kind for the same entity replaces the previous record.

Notifications are advisory: platform failures are logged and never undo the
caller's task/timer mutation. Persistence failures propagate.
"""

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from ..core.events import EventBus, NotificationTapped
from ..core.ports import PlatformNotifier, Store
from ..errors import PastTimeError, PlatformNotifierError
from ..storage.models import (
    NotificationType,
    Project,
    ScheduledNotification,
    Task,
    TaskStatus,
)

logger = logging.getLogger(__name__)

MINUTE = 60.0
HOUR = 3600.0


def notification_id(kind: NotificationType | str, entity_id: str) -> str:
    return f"{kind}_{entity_id}"


def repeat_type(interval_minutes: int | None) -> str | None:
    """
    Translate a recurring interval to the platform repeat granularity.

    Rounds down: 90 minutes repeats hourly, 3 days repeats daily, 10 days weekly.
    """
    if not interval_minutes:
        return None
    hours = interval_minutes / 60
    days = hours / 24
    if days >= 7:
        return "week"
    if days >= 1:
        return "day"
    if hours >= 1:
        return "hour"
    return "minute"


def _fmt_ts(ts: float) -> str:
    return datetime.fromtimestamp(ts).astimezone().strftime("%Y-%m-%d %H:%M")


@dataclass(slots=True)
class NotificationRequest:
    id: str
    title: str
    message: str
    scheduled_time: float
    type: NotificationType = NotificationType.TASK_DUE
    task_id: str | None = None
    project_id: str | None = None
    is_recurring: bool = False
    recurring_interval: int | None = None
    data: dict[str, Any] = field(default_factory=dict)


class NotificationScheduler:
    def __init__(
        self,
        store: Store,
        notifier: PlatformNotifier,
        *,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
        task_start_lead_minutes: int = 15,
        task_due_lead_minutes: int = 60,
        project_deadline_lead_hours: int = 24,
        daily_reminder_hour: int = 9,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._bus = bus
        self._clock = clock
        self._task_start_lead = task_start_lead_minutes
        self._task_due_lead = task_due_lead_minutes
        self._deadline_lead = project_deadline_lead_hours
        self._daily_hour = daily_reminder_hour
        self._scheduled: dict[str, ScheduledNotification] = {}

    # ---- lifecycle ----

    async def load_scheduled_notifications(self) -> int:
        """
        Rebuild the in-memory view from active records and re-arm them on the
        platform. Records whose instant passed while the process was down are
        deactivated (recurring ones are moved to their next occurrence).
        """
        now = self._clock()
        loaded = 0
        for record in self._store.list_notifications(active_only=True):
            if record.scheduled_time <= now:
                if record.is_recurring and record.recurring_interval:
                    step = record.recurring_interval * MINUTE
                    while record.scheduled_time <= now:
                        record.scheduled_time += step
                    self._store.save_notification(record)
                else:
                    self._store.deactivate_notification(record.id)
                    continue
            self._scheduled[record.id] = record
            await self._platform_schedule(record)
            loaded += 1
        logger.info("Loaded %d scheduled notifications", loaded)
        return loaded

    # ---- core operations ----

    async def schedule_notification(self, request: NotificationRequest) -> ScheduledNotification:
        now = self._clock()
        if request.scheduled_time <= now:
            raise PastTimeError(request.id, request.scheduled_time, now)

        await self.cancel_notification(request.id)

        record = ScheduledNotification(
            id=request.id,
            type=request.type,
            title=request.title,
            message=request.message,
            scheduled_time=float(request.scheduled_time),
            task_id=request.task_id,
            project_id=request.project_id,
            is_recurring=request.is_recurring,
            recurring_interval=request.recurring_interval,
            is_active=True,
            data=dict(request.data),
            created_at=now,
        )
        self._store.save_notification(record)
        self._scheduled[record.id] = record
        await self._platform_schedule(record)

        logger.info(
            "Notification scheduled id=%s type=%s at %s",
            record.id,
            record.type.value,
            _fmt_ts(record.scheduled_time),
        )
        return record

    async def cancel_notification(self, notification_id_: str) -> bool:
        """Deactivate a record and cancel it on the platform. Unknown/inactive ids are fine."""
        try:
            await self._notifier.cancel(notification_id_)
        except PlatformNotifierError:
            logger.warning("platform cancel failed id=%s", notification_id_, exc_info=True)

        self._scheduled.pop(notification_id_, None)
        deactivated = self._store.deactivate_notification(notification_id_)
        if deactivated:
            logger.info("Notification cancelled id=%s", notification_id_)
        return deactivated

    async def cancel_task_notifications(self, task_id: str) -> int:
        records = self._store.list_notifications(active_only=True, task_id=task_id)
        for record in records:
            await self.cancel_notification(record.id)
        logger.info("Cancelled %d notifications for task %s", len(records), task_id)
        return len(records)

    async def cancel_project_notifications(self, project_id: str) -> int:
        records = self._store.list_notifications(active_only=True, project_id=project_id)
        for record in records:
            await self.cancel_notification(record.id)
        logger.info("Cancelled %d notifications for project %s", len(records), project_id)
        return len(records)

    async def send_immediate_notification(
        self,
        *,
        title: str,
        message: str,
        type: NotificationType = NotificationType.TASK_DUE,
        task_id: str | None = None,
        project_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> bool:
        prefs = self._store.get_settings().notifications
        if not prefs.enabled:
            logger.debug("Notifications disabled; skipping immediate %s", title)
            return False

        now = self._clock()
        payload: dict[str, Any] = {
            "type": type.value,
            "task_id": task_id,
            "project_id": project_id,
            "timestamp": now,
            "sound": prefs.sound_enabled,
            "vibrate": prefs.vibration_enabled,
        }
        payload.update(data or {})
        try:
            await self._notifier.schedule(
                f"immediate_{uuid.uuid4().hex[:12]}",
                title,
                message,
                now,
                None,
                payload,
            )
        except PlatformNotifierError:
            logger.warning("Immediate notification failed: %s", title, exc_info=True)
            return False
        logger.info("Immediate notification sent: %s", title)
        return True

    # ---- domain rules ----

    async def schedule_task_start(self, task: Task) -> ScheduledNotification | None:
        if task.start_time is None:
            return None
        lead = self._task_start_lead
        return await self.schedule_notification(
            NotificationRequest(
                id=notification_id(NotificationType.TASK_START, task.id),
                title="Task Starting Soon",
                message=f'"{task.title}" is scheduled to start in {lead} minutes',
                scheduled_time=task.start_time - lead * MINUTE,
                type=NotificationType.TASK_START,
                task_id=task.id,
                project_id=task.project_id,
                data={"task_id": task.id, "start_time": task.start_time},
            )
        )

    async def schedule_task_due(self, task: Task) -> ScheduledNotification | None:
        if task.due_date is None:
            return None
        lead = self._task_due_lead
        return await self.schedule_notification(
            NotificationRequest(
                id=notification_id(NotificationType.TASK_DUE, task.id),
                title="Task Due Soon",
                message=f'"{task.title}" is due in {lead} minutes',
                scheduled_time=task.due_date - lead * MINUTE,
                type=NotificationType.TASK_DUE,
                task_id=task.id,
                project_id=task.project_id,
                data={"task_id": task.id, "due_date": task.due_date},
            )
        )

    async def schedule_time_up(self, task: Task, started_at: float) -> ScheduledNotification | None:
        if not task.estimated_duration:
            return None
        return await self.schedule_notification(
            NotificationRequest(
                id=notification_id(NotificationType.TIME_UP, task.id),
                title="Time Up!",
                message=f'Estimated time for "{task.title}" has elapsed',
                scheduled_time=started_at + task.estimated_duration * MINUTE,
                type=NotificationType.TIME_UP,
                task_id=task.id,
                project_id=task.project_id,
            )
        )

    async def cancel_time_up(self, task_id: str) -> bool:
        return await self.cancel_notification(notification_id(NotificationType.TIME_UP, task_id))

    async def schedule_project_deadline(self, project: Project) -> ScheduledNotification | None:
        if project.end_date is None:
            return None
        lead = self._deadline_lead
        return await self.schedule_notification(
            NotificationRequest(
                id=notification_id(NotificationType.PROJECT_DEADLINE, project.id),
                title="Project Deadline Approaching",
                message=f'"{project.name}" deadline is in {lead} hours',
                scheduled_time=project.end_date - lead * HOUR,
                type=NotificationType.PROJECT_DEADLINE,
                project_id=project.id,
                data={"project_id": project.id, "deadline": project.end_date},
            )
        )

    async def schedule_daily_reminder(self) -> ScheduledNotification | None:
        """Recurring 24h reminder at the configured hour tomorrow, only when tasks are pending."""
        if not self._store.get_settings().notifications.enabled:
            return None
        pending = self._store.list_tasks(status=TaskStatus.PENDING)
        if not pending:
            return None

        tomorrow = datetime.fromtimestamp(self._clock()) + timedelta(days=1)
        fire_at = tomorrow.replace(hour=self._daily_hour, minute=0, second=0, microsecond=0)
        return await self.schedule_notification(
            NotificationRequest(
                id=NotificationType.DAILY_REMINDER.value,
                title="Daily Task Reminder",
                message=f"You have {len(pending)} pending tasks for today",
                scheduled_time=fire_at.timestamp(),
                type=NotificationType.DAILY_REMINDER,
                is_recurring=True,
                recurring_interval=24 * 60,
                data={"pending_tasks_count": len(pending)},
            )
        )

    async def check_due_tasks(self) -> int:
        """
        Catch-up pass for when scheduled notices could not fire (process was down):
        - tasks past their due date and not completed -> "Task Overdue"
        - tasks starting within the start lead window -> "Task Starting Soon"
        """
        now = self._clock()
        sent = 0
        for task in self._store.list_tasks():
            if task.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
                continue
            if task.due_date is not None and task.due_date < now:
                if await self.send_immediate_notification(
                    title="Task Overdue",
                    message=f'"{task.title}" is overdue',
                    type=NotificationType.TASK_DUE,
                    task_id=task.id,
                ):
                    sent += 1
            if task.start_time is not None and now < task.start_time <= now + self._task_start_lead * MINUTE:
                if await self.send_immediate_notification(
                    title="Task Starting Soon",
                    message=f'"{task.title}" starts in {self._task_start_lead} minutes',
                    type=NotificationType.TASK_START,
                    task_id=task.id,
                ):
                    sent += 1
        return sent

    # ---- platform callbacks ----

    def mark_fired(self, notification_id_: str) -> None:
        """One-shot records are deactivated after firing; recurring ones move to the next occurrence."""
        record = self._scheduled.get(notification_id_)
        if record is None:
            return
        if record.is_recurring and record.recurring_interval:
            now = self._clock()
            step = record.recurring_interval * MINUTE
            while record.scheduled_time <= now:
                record.scheduled_time += step
            self._store.save_notification(record)
            return
        self._scheduled.pop(notification_id_, None)
        self._store.deactivate_notification(notification_id_)
        logger.debug("Notification fired id=%s", notification_id_)

    def handle_notification_tap(self, payload: dict[str, Any]) -> NotificationTapped:
        event = NotificationTapped(
            notification_id=payload.get("id"),
            type=payload.get("type"),
            task_id=payload.get("task_id"),
            project_id=payload.get("project_id"),
            payload=dict(payload),
        )
        logger.info("Notification tapped id=%s type=%s", event.notification_id, event.type)
        if self._bus is not None:
            self._bus.publish(event)
        return event

    # ---- queries / maintenance ----

    def get_scheduled_notifications(self) -> list[ScheduledNotification]:
        return sorted(self._scheduled.values(), key=lambda r: r.scheduled_time)

    async def clear_all_notifications(self) -> int:
        try:
            await self._notifier.cancel_all()
        except PlatformNotifierError:
            logger.warning("platform cancel_all failed", exc_info=True)
        self._scheduled.clear()
        cleared = 0
        for record in self._store.list_notifications(active_only=True):
            if self._store.deactivate_notification(record.id):
                cleared += 1
        logger.info("All notifications cleared (%d)", cleared)
        return cleared

    async def _platform_schedule(self, record: ScheduledNotification) -> None:
        payload: dict[str, Any] = {
            "id": record.id,
            "type": record.type.value,
            "task_id": record.task_id,
            "project_id": record.project_id,
        }
        payload.update(record.data)
        try:
            await self._notifier.schedule(
                record.id,
                record.title,
                record.message,
                record.scheduled_time,
                repeat_type(record.recurring_interval) if record.is_recurring else None,
                payload,
            )
        except PlatformNotifierError:
            logger.warning("platform schedule failed id=%s", record.id, exc_info=True)
