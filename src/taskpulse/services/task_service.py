# src/taskpulse/services/task_service.py

from __future__ import annotations

"""
Task/project CRUD with its side effects.

The store only persists rows. This layer keeps the rest of the system in step
with every change:
- start/due/deadline notifications follow the task and project fields
- deleting or completing a task settles its timer first
- project aggregates (estimated, actual, progress) are re-derived after each
  task change
"""

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from ..analytics.aggregator import round_half_up
from ..core.ports import Store
from ..errors import NotFoundError, PastTimeError
from ..notifications.scheduler import NotificationScheduler, notification_id
from ..storage.models import NotificationType, Project, Task, TaskStatus
from ..tracking.timer_engine import TimerEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskService:
    def __init__(
        self,
        store: Store,
        scheduler: NotificationScheduler,
        engine: TimerEngine,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._engine = engine
        self._clock = clock

    async def _advisory(self, what: str, op: Callable[[], Awaitable[T]]) -> T | None:
        # A reminder for an instant that already passed is skipped, not an error for the caller.
        try:
            return await op()
        except PastTimeError as e:
            logger.info("%s not scheduled: %s", what, e)
            return None

    # ---- tasks ----

    def get_task(self, task_id: str) -> Task:
        task = self._store.get_task(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    async def create_task(self, *, title: str, **fields: Any) -> Task:
        project_id = fields.get("project_id")
        if project_id is not None and self._store.get_project(project_id) is None:
            raise NotFoundError("project", project_id)
        task = self._store.create_task(title=title, **fields)
        logger.info("Task created id=%s title=%r", task.id, task.title)

        await self._advisory("task_start", lambda: self._scheduler.schedule_task_start(task))
        await self._advisory("task_due", lambda: self._scheduler.schedule_task_due(task))

        if task.project_id:
            self.refresh_project_stats(task.project_id)
        return task

    async def update_task(self, task_id: str, **patch: Any) -> Task:
        old = self.get_task(task_id)
        if patch.get("status") == TaskStatus.COMPLETED and old.status != TaskStatus.COMPLETED:
            await self._settle_timer(task_id)

        task = self._store.update_task(task_id, **patch)

        if "start_time" in patch and patch["start_time"] != old.start_time:
            await self._scheduler.cancel_notification(notification_id(NotificationType.TASK_START, task_id))
            await self._advisory("task_start", lambda: self._scheduler.schedule_task_start(task))

        if "due_date" in patch and patch["due_date"] != old.due_date:
            await self._scheduler.cancel_notification(notification_id(NotificationType.TASK_DUE, task_id))
            await self._advisory("task_due", lambda: self._scheduler.schedule_task_due(task))

        if "estimated_duration" in patch and patch["estimated_duration"] != old.estimated_duration:
            await self._engine.refresh_time_up(task_id)

        if task.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED) and task.status != old.status:
            await self._scheduler.cancel_task_notifications(task_id)

        for project_id in {old.project_id, task.project_id} - {None}:
            self.refresh_project_stats(project_id)
        return task

    async def complete_task(self, task_id: str) -> Task:
        self.get_task(task_id)
        await self._settle_timer(task_id)
        task = self._store.update_task(task_id, status=TaskStatus.COMPLETED, end_time=self._clock())
        await self._scheduler.cancel_task_notifications(task_id)
        if task.project_id:
            self.refresh_project_stats(task.project_id)
        logger.info("Task completed id=%s time_spent=%.1f", task_id, task.time_spent)
        return task

    async def delete_task(self, task_id: str) -> bool:
        task = self._store.get_task(task_id)
        if task is None:
            return False
        await self._settle_timer(task_id)
        await self._scheduler.cancel_task_notifications(task_id)
        deleted = self._store.delete_task(task_id)
        if task.project_id:
            self.refresh_project_stats(task.project_id)
        logger.info("Task deleted id=%s", task_id)
        return deleted

    async def _settle_timer(self, task_id: str) -> None:
        if self._engine.has_timer(task_id):
            await self._engine.stop_timer(task_id)

    # ---- projects ----

    def get_project(self, project_id: str) -> Project:
        project = self._store.get_project(project_id)
        if project is None:
            raise NotFoundError("project", project_id)
        return project

    async def create_project(self, *, name: str, **fields: Any) -> Project:
        project = self._store.create_project(name=name, **fields)
        logger.info("Project created id=%s name=%r", project.id, project.name)
        await self._advisory("project_deadline", lambda: self._scheduler.schedule_project_deadline(project))
        return project

    async def update_project(self, project_id: str, **patch: Any) -> Project:
        old = self.get_project(project_id)
        project = self._store.update_project(project_id, **patch)
        if "end_date" in patch and patch["end_date"] != old.end_date:
            # The old reminder goes even when the new one lands in the past.
            await self._scheduler.cancel_notification(notification_id(NotificationType.PROJECT_DEADLINE, project_id))
            await self._advisory("project_deadline", lambda: self._scheduler.schedule_project_deadline(project))
        return project

    async def delete_project(self, project_id: str) -> bool:
        if self._store.get_project(project_id) is None:
            return False
        for task in self._store.list_tasks(project_id=project_id):
            await self._settle_timer(task.id)
            await self._scheduler.cancel_task_notifications(task.id)
        await self._scheduler.cancel_project_notifications(project_id)
        deleted = self._store.delete_project(project_id)
        logger.info("Project deleted id=%s", project_id)
        return deleted

    # ---- derived aggregates ----

    def refresh_project_stats(self, project_id: str) -> Project | None:
        """
        Re-derive estimated/actual totals and progress from the project's tasks.

        time_spent already includes the live minutes of running timers (the tick
        folds them in), so no timer time is added on top.
        """
        if self._store.get_project(project_id) is None:
            return None
        tasks = self._store.list_tasks(project_id=project_id)
        completed = sum(1 for t in tasks if t.status == TaskStatus.COMPLETED)
        progress = round_half_up(completed / len(tasks) * 100) if tasks else 0
        return self._store.update_project(
            project_id,
            total_estimated_time=sum(t.estimated_duration or 0.0 for t in tasks),
            total_actual_time=sum(t.time_spent for t in tasks),
            progress=progress,
        )

    def recalculate_all_projects(self) -> list[Project]:
        updated = []
        for project in self._store.list_projects():
            refreshed = self.refresh_project_stats(project.id)
            if refreshed is not None:
                updated.append(refreshed)
        logger.debug("Recalculated %d projects", len(updated))
        return updated
