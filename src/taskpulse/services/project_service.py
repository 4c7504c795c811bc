# src/taskpulse/services/project_service.py

from __future__ import annotations

"""
Project-level features built on top of TaskService:
- analytics reports
- templates (a project pre-filled with a task list)
- automation rules (standup/weekly reminders, deadline alerts, auto-complete)
- export to JSON/CSV and import back
"""

import csv
import dataclasses
import io
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from ..analytics.aggregator import ProjectAnalytics, project_analytics
from ..core.ports import Store
from ..errors import NotFoundError, PastTimeError
from ..notifications.scheduler import NotificationRequest, NotificationScheduler
from ..storage.models import (
    NotificationType,
    Project,
    ProjectStatus,
    Task,
    TaskPriority,
    TaskStatus,
)
from ..tracking.timer_engine import TimerEngine
from .task_service import TaskService

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"
WEEKLY_REPORT_WEEKDAY = 4  # Friday
WEEKLY_REPORT_HOUR = 17

# (title, estimated minutes, priority)
TEMPLATES: dict[str, tuple[str, list[tuple[str, int, TaskPriority]]]] = {
    "software_development": (
        "Software Development Project",
        [
            ("Requirements Analysis", 480, TaskPriority.HIGH),
            ("System Design", 720, TaskPriority.HIGH),
            ("Database Design", 360, TaskPriority.MEDIUM),
            ("Frontend Development", 1440, TaskPriority.HIGH),
            ("Backend Development", 1440, TaskPriority.HIGH),
            ("API Integration", 480, TaskPriority.MEDIUM),
            ("Testing", 720, TaskPriority.HIGH),
            ("Deployment", 240, TaskPriority.MEDIUM),
            ("Documentation", 360, TaskPriority.LOW),
        ],
    ),
    "marketing_campaign": (
        "Marketing Campaign",
        [
            ("Market Research", 480, TaskPriority.HIGH),
            ("Target Audience Analysis", 240, TaskPriority.HIGH),
            ("Content Strategy", 360, TaskPriority.HIGH),
            ("Creative Development", 720, TaskPriority.MEDIUM),
            ("Campaign Setup", 240, TaskPriority.MEDIUM),
            ("Launch Campaign", 120, TaskPriority.HIGH),
            ("Monitor Performance", 480, TaskPriority.MEDIUM),
            ("Optimize Campaign", 360, TaskPriority.MEDIUM),
            ("Final Report", 240, TaskPriority.LOW),
        ],
    ),
    "product_launch": (
        "Product Launch",
        [
            ("Product Planning", 720, TaskPriority.URGENT),
            ("Competitive Analysis", 360, TaskPriority.HIGH),
            ("Feature Development", 1440, TaskPriority.URGENT),
            ("Quality Assurance", 480, TaskPriority.HIGH),
            ("Marketing Materials", 480, TaskPriority.MEDIUM),
            ("Pre-launch Testing", 240, TaskPriority.HIGH),
            ("Launch Preparation", 360, TaskPriority.HIGH),
            ("Product Launch", 120, TaskPriority.URGENT),
            ("Post-launch Review", 240, TaskPriority.MEDIUM),
        ],
    ),
}

CSV_HEADERS = ["Task ID", "Title", "Status", "Priority", "Estimated Duration", "Actual Time", "Due Date"]

# Fields never carried over by import: identity, timestamps and live timer state.
_IMPORT_SKIP = {"id", "project_id", "created_at", "updated_at", "is_timer_running", "timer_start_time"}
# Derived from the tasks after import.
_PROJECT_DERIVED = {"total_estimated_time", "total_actual_time", "progress"}


@dataclass(slots=True, frozen=True)
class DeadlineAlerts:
    one_day_before: bool = True
    one_hour_before: bool = False


@dataclass(slots=True, frozen=True)
class AutomationRules:
    daily_standup_time: str | None = None  # "HH:MM"
    weekly_progress_report: bool = False
    deadline_alerts: DeadlineAlerts | None = None
    auto_status_updates: bool = False


def _parse_hhmm(value: str) -> tuple[int, int]:
    try:
        hh, mm = value.split(":", 1)
        hour, minute = int(hh), int(mm)
    except ValueError as e:
        raise ValueError(f"expected HH:MM, got {value!r}") from e
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"expected HH:MM, got {value!r}")
    return hour, minute


def _ts_to_iso(ts: float | None) -> str:
    if ts is None:
        return ""
    return datetime.fromtimestamp(ts).astimezone().isoformat(timespec="seconds")


class ProjectService:
    def __init__(
        self,
        store: Store,
        scheduler: NotificationScheduler,
        tasks: TaskService,
        engine: TimerEngine,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._tasks = tasks
        self._engine = engine
        self._clock = clock

    # ---- analytics ----

    def get_project_analytics(self, project_id: str) -> ProjectAnalytics:
        project = self._tasks.get_project(project_id)
        tasks = self._store.list_tasks(project_id=project_id)
        entries = self._store.list_time_entries(project_id=project_id)
        return project_analytics(project, tasks, entries, self._engine.get_all_active_timers(), self._clock())

    # ---- templates ----

    async def create_project_from_template(self, template_name: str, **project_fields: Any) -> tuple[Project, list[Task]]:
        template = TEMPLATES.get(template_name)
        if template is None:
            raise NotFoundError("template", template_name)
        default_name, task_specs = template

        name = project_fields.pop("name", None) or default_name
        project = await self._tasks.create_project(name=name, **project_fields)

        created: list[Task] = []
        for title, estimate, priority in task_specs:
            created.append(
                await self._tasks.create_task(
                    title=title,
                    project_id=project.id,
                    estimated_duration=float(estimate),
                    priority=priority,
                    status=TaskStatus.PENDING,
                )
            )
        logger.info("Project %s created from template %s (%d tasks)", project.id, template_name, len(created))
        return self._tasks.get_project(project.id), created

    # ---- automation ----

    async def setup_project_automation(self, project_id: str, rules: AutomationRules) -> bool:
        self._tasks.get_project(project_id)

        if rules.daily_standup_time:
            await self.schedule_daily_standup_reminder(project_id, rules.daily_standup_time)
        if rules.weekly_progress_report:
            await self.schedule_weekly_progress_report(project_id)
        if rules.deadline_alerts is not None:
            await self.setup_deadline_alerts(project_id, rules.deadline_alerts)
        if rules.auto_status_updates:
            await self.update_project_status(project_id)
        return True

    async def schedule_daily_standup_reminder(self, project_id: str, at: str = "09:30"):
        project = self._tasks.get_project(project_id)
        hour, minute = _parse_hhmm(at)
        tomorrow = datetime.fromtimestamp(self._clock()) + timedelta(days=1)
        fire_at = tomorrow.replace(hour=hour, minute=minute, second=0, microsecond=0)
        return await self._scheduler.schedule_notification(
            NotificationRequest(
                id=f"daily_standup_{project_id}",
                title="Daily Standup Reminder",
                message=f'Time for daily standup for "{project.name}"',
                scheduled_time=fire_at.timestamp(),
                type=NotificationType.PROJECT_REMINDER,
                project_id=project_id,
                is_recurring=True,
                recurring_interval=24 * 60,
            )
        )

    async def schedule_weekly_progress_report(self, project_id: str):
        project = self._tasks.get_project(project_id)
        now = datetime.fromtimestamp(self._clock())
        fire_at = now.replace(hour=WEEKLY_REPORT_HOUR, minute=0, second=0, microsecond=0)
        fire_at += timedelta(days=(WEEKLY_REPORT_WEEKDAY - now.weekday()) % 7)
        if fire_at <= now:
            fire_at += timedelta(days=7)
        return await self._scheduler.schedule_notification(
            NotificationRequest(
                id=f"weekly_report_{project_id}",
                title="Weekly Progress Report",
                message=f'Weekly progress report for "{project.name}" is ready',
                scheduled_time=fire_at.timestamp(),
                type=NotificationType.PROJECT_REPORT,
                project_id=project_id,
                is_recurring=True,
                recurring_interval=7 * 24 * 60,
            )
        )

    async def setup_deadline_alerts(self, project_id: str, alerts: DeadlineAlerts) -> int:
        """Per-task due alerts. Alerts whose instant already passed are skipped."""
        offsets: list[tuple[str, float, str, str]] = []
        if alerts.one_day_before:
            offsets.append(("deadline_1day", 86400.0, "Task Due Tomorrow", "is due tomorrow"))
        if alerts.one_hour_before:
            offsets.append(("deadline_1hour", 3600.0, "Task Due Soon", "is due in 1 hour"))

        scheduled = 0
        for task in self._store.list_tasks(project_id=project_id):
            if task.due_date is None or task.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
                continue
            for prefix, before, title, suffix in offsets:
                try:
                    await self._scheduler.schedule_notification(
                        NotificationRequest(
                            id=f"{prefix}_{task.id}",
                            title=title,
                            message=f'"{task.title}" {suffix}',
                            scheduled_time=task.due_date - before,
                            type=NotificationType.DEADLINE_ALERT,
                            task_id=task.id,
                            project_id=project_id,
                        )
                    )
                    scheduled += 1
                except PastTimeError as e:
                    logger.debug("deadline alert skipped: %s", e)
        return scheduled

    async def update_project_status(self, project_id: str) -> bool:
        """Mark the project completed once every task is completed. True when it flipped."""
        project = self._tasks.get_project(project_id)
        tasks = self._store.list_tasks(project_id=project_id)
        if not tasks or project.status == ProjectStatus.COMPLETED:
            return False
        if any(t.status != TaskStatus.COMPLETED for t in tasks):
            return False

        self._store.update_project(project_id, status=ProjectStatus.COMPLETED, progress=100)
        await self._scheduler.send_immediate_notification(
            title="Project Completed!",
            message=f'Congratulations! "{project.name}" has been completed.',
            type=NotificationType.PROJECT_COMPLETED,
            project_id=project_id,
        )
        logger.info("Project %s auto-completed", project_id)
        return True

    # ---- export / import ----

    def export_project(self, project_id: str, fmt: str = "json") -> str:
        project = self._tasks.get_project(project_id)
        tasks = self._store.list_tasks(project_id=project_id)

        if fmt == "csv":
            buf = io.StringIO()
            writer = csv.writer(buf, lineterminator="\n")
            writer.writerow(CSV_HEADERS)
            for t in tasks:
                writer.writerow([
                    t.id,
                    t.title,
                    t.status.value,
                    t.priority.value,
                    t.estimated_duration or 0,
                    t.time_spent,
                    _ts_to_iso(t.due_date),
                ])
            return buf.getvalue()

        if fmt != "json":
            raise ValueError(f"unsupported export format: {fmt}")

        payload = {
            "project": project.to_dict(),
            "tasks": [t.to_dict() for t in tasks],
            "time_entries": [e.to_dict() for e in self._store.list_time_entries(project_id=project_id)],
            "analytics": self.get_project_analytics(project_id).to_dict(),
            "exported_at": _ts_to_iso(self._clock()),
            "version": EXPORT_VERSION,
        }
        return json.dumps(payload, ensure_ascii=False, indent=2)

    async def import_project(self, data: str | dict[str, Any]) -> tuple[Project, list[Task]]:
        """
        Create a new project (fresh ids) from an export payload.

        Time entries are not imported: they only come from timer stops.
        """
        raw = json.loads(data) if isinstance(data, str) else data
        if not isinstance(raw, dict) or not isinstance(raw.get("project"), dict):
            raise ValueError("import payload must contain a 'project' object")

        project_keys = {f.name for f in dataclasses.fields(Project)} - _IMPORT_SKIP - _PROJECT_DERIVED
        project_fields = {k: v for k, v in raw["project"].items() if k in project_keys}
        name = project_fields.pop("name", "") or "Imported Project"
        project = await self._tasks.create_project(name=name, **project_fields)

        task_keys = {f.name for f in dataclasses.fields(Task)} - _IMPORT_SKIP
        imported: list[Task] = []
        for item in raw.get("tasks") or []:
            fields = {k: v for k, v in item.items() if k in task_keys}
            title = fields.pop("title", "") or "Untitled"
            imported.append(await self._tasks.create_task(title=title, project_id=project.id, **fields))

        self._tasks.refresh_project_stats(project.id)

        logger.info("Imported project %s with %d tasks", project.id, len(imported))
        return self._tasks.get_project(project.id), imported
