# src/taskpulse/analytics/aggregator.py

"""
Derived statistics over tasks, time entries and active timers.

Everything here is a pure function of its inputs plus "now"; nothing reads the
store or mutates state. Callers (timer engine, project service) gather the inputs.

Rounding: reported percentages and the overdue penalty use round-half-up
(7.5 -> 8), not Python's banker's rounding.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from ..storage.models import ActiveTimer, Project, Task, TaskPriority, TaskStatus, TimeEntry

DAY = 86400.0
RECENT_WINDOW_DAYS = 7
RECENT_LIMIT = 5
TIMELINE_BAND = 10.0


class TimelineStatus(StrEnum):
    ON_TRACK = "on_track"
    OVERDUE = "overdue"
    BEHIND_SCHEDULE = "behind_schedule"
    AHEAD_SCHEDULE = "ahead_schedule"


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _whole_days(seconds: float) -> int:
    # Truncates toward zero, like a calendar "days between" difference.
    return int(seconds / DAY)


# ---- timers ----

def live_elapsed_minutes(timer: ActiveTimer | None, now: float) -> float:
    """Minutes in the current running segment; 0 for paused or missing timers."""
    if timer is None or not timer.is_running:
        return 0.0
    return max(0.0, (now - timer.start_time) / 60.0)


def current_elapsed_minutes(timer: ActiveTimer | None, now: float) -> float:
    """Running: live elapsed. Paused: the persisted elapsed_time. Missing: 0."""
    if timer is None:
        return 0.0
    if timer.is_running:
        return live_elapsed_minutes(timer, now)
    return timer.elapsed_time


def tracked_minutes(task: Task, timer: ActiveTimer | None, now: float) -> float:
    """
    Task time including the live part of a running segment.

    Pauses fold time into time_spent without a TimeEntry, so totals come from
    time_spent rather than from summing entries. A running segment is measured
    from its base, which ignores whatever the last tick already folded in.
    """
    if timer is not None and timer.is_running:
        return timer.base_time_spent + live_elapsed_minutes(timer, now)
    return task.time_spent


# ---- scalar formulas ----

def is_task_overdue(task: Task, now: float) -> bool:
    if task.status == TaskStatus.OVERDUE:
        return True
    if task.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
        return False
    return task.due_date is not None and task.due_date < now


def completion_rate(tasks: Sequence[Task]) -> float:
    if not tasks:
        return 0.0
    completed = sum(1 for t in tasks if t.status == TaskStatus.COMPLETED)
    return completed / len(tasks) * 100.0


def total_actual_time(
    entries: Iterable[TimeEntry],
    timers: Iterable[ActiveTimer],
    now: float,
    *,
    task_ids: set[str] | None = None,
) -> float:
    """
    Recorded entry durations plus the live elapsed time of running timers in scope.

    A running segment has no TimeEntry yet, so adding it does not double count.
    """
    recorded = sum(e.duration for e in entries)
    live = sum(
        live_elapsed_minutes(t, now)
        for t in timers
        if task_ids is None or t.task_id in task_ids
    )
    return recorded + live


def time_efficiency(total_estimated: float, total_actual: float) -> float:
    if total_actual <= 0:
        return 100.0
    return total_estimated / total_actual * 100.0


@dataclass(slots=True, frozen=True)
class TimelineInfo:
    status: TimelineStatus
    days_remaining: int | None = None
    days_overdue: int | None = None


def timeline_status(
    start_date: float | None,
    end_date: float | None,
    progress: float,
    now: float,
) -> TimelineInfo:
    """
    Compare actual progress with linear expected progress over the project's
    calendar span. Inside +-10 points of the expectation counts as on track.
    """
    if end_date is None:
        return TimelineInfo(TimelineStatus.ON_TRACK)

    if end_date < now and progress < 100:
        return TimelineInfo(TimelineStatus.OVERDUE, days_overdue=_whole_days(now - end_date))

    if end_date <= now:
        return TimelineInfo(TimelineStatus.ON_TRACK)

    days_remaining = _whole_days(end_date - now)
    if start_date is None:
        return TimelineInfo(TimelineStatus.ON_TRACK, days_remaining=days_remaining)

    total_days = _whole_days(end_date - start_date)
    days_passed = _whole_days(now - start_date)
    expected = days_passed / total_days * 100.0 if total_days > 0 else 0.0

    status = TimelineStatus.ON_TRACK
    if progress < expected - TIMELINE_BAND:
        status = TimelineStatus.BEHIND_SCHEDULE
    elif progress > expected + TIMELINE_BAND:
        status = TimelineStatus.AHEAD_SCHEDULE
    return TimelineInfo(status, days_remaining=days_remaining)


def health_score(
    *,
    progress: float,
    efficiency: float,
    overdue_tasks: int,
    total_tasks: int,
    timeline: TimelineStatus,
) -> int:
    score = 100

    if progress < 25:
        score -= 20
    elif progress < 50:
        score -= 10

    if efficiency < 80:
        score -= 15
    elif efficiency < 90:
        score -= 5

    overdue_ratio = overdue_tasks / total_tasks if total_tasks > 0 else 0.0
    score -= round_half_up(overdue_ratio * 30)

    if timeline == TimelineStatus.OVERDUE:
        score -= 25
    elif timeline == TimelineStatus.BEHIND_SCHEDULE:
        score -= 15
    elif timeline == TimelineStatus.AHEAD_SCHEDULE:
        score += 5

    return max(0, min(100, score))


# ---- reports ----

@dataclass(slots=True)
class TaskStats:
    total: int
    completed: int
    in_progress: int
    pending: int
    overdue: int
    completion_rate: int


@dataclass(slots=True)
class TimeStats:
    total_estimated: float
    total_actual: float
    efficiency: int
    average_task_time: int
    active_time: float


@dataclass(slots=True)
class TimelineReport:
    status: TimelineStatus
    start_date: float | None
    end_date: float | None
    days_remaining: int | None
    days_overdue: int | None
    progress: int


@dataclass(slots=True)
class ProjectAnalytics:
    project_id: str
    project_name: str
    task_stats: TaskStats
    time_stats: TimeStats
    priority_distribution: dict[str, int]
    timeline: TimelineReport
    recent_activity: list[Task]
    health_score: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def project_analytics(
    project: Project,
    tasks: Sequence[Task],
    entries: Sequence[TimeEntry],
    timers: Sequence[ActiveTimer],
    now: float,
) -> ProjectAnalytics:
    total = len(tasks)
    completed = [t for t in tasks if t.status == TaskStatus.COMPLETED]
    overdue = sum(1 for t in tasks if is_task_overdue(t, now))

    task_ids = {t.id for t in tasks}
    estimated = sum(t.estimated_duration or 0.0 for t in tasks)
    active_time = sum(live_elapsed_minutes(t, now) for t in timers if t.task_id in task_ids)
    actual = total_actual_time(entries, timers, now, task_ids=task_ids)

    progress = completion_rate(tasks)
    efficiency = time_efficiency(estimated, actual) if estimated > 0 else 100.0
    timeline = timeline_status(project.start_date, project.end_date, progress, now)

    average_completed = sum(t.time_spent for t in completed) / len(completed) if completed else 0.0

    recent_cutoff = now - RECENT_WINDOW_DAYS * DAY
    recent = sorted(
        (t for t in tasks if t.updated_at > recent_cutoff),
        key=lambda t: t.updated_at,
        reverse=True,
    )[:RECENT_LIMIT]

    return ProjectAnalytics(
        project_id=project.id,
        project_name=project.name,
        task_stats=TaskStats(
            total=total,
            completed=len(completed),
            in_progress=sum(1 for t in tasks if t.status == TaskStatus.IN_PROGRESS),
            pending=sum(1 for t in tasks if t.status == TaskStatus.PENDING),
            overdue=overdue,
            completion_rate=round_half_up(progress),
        ),
        time_stats=TimeStats(
            total_estimated=estimated,
            total_actual=actual,
            efficiency=round_half_up(efficiency),
            average_task_time=round_half_up(average_completed),
            active_time=active_time,
        ),
        priority_distribution={p.value: sum(1 for t in tasks if t.priority == p) for p in TaskPriority},
        timeline=TimelineReport(
            status=timeline.status,
            start_date=project.start_date,
            end_date=project.end_date,
            days_remaining=timeline.days_remaining,
            days_overdue=timeline.days_overdue,
            progress=round_half_up(progress),
        ),
        recent_activity=recent,
        health_score=health_score(
            progress=progress,
            efficiency=efficiency,
            overdue_tasks=overdue,
            total_tasks=total,
            timeline=timeline.status,
        ),
    )


@dataclass(slots=True)
class TaskTimeStatistics:
    total_time: float
    sessions_count: int
    estimated_time: float
    remaining_time: float
    is_overtime: bool
    current_session_time: float
    time_entries: list[TimeEntry] = field(default_factory=list)


def task_time_statistics(
    task: Task | None,
    entries: Sequence[TimeEntry],
    timer: ActiveTimer | None,
    now: float,
) -> TaskTimeStatistics:
    current = current_elapsed_minutes(timer, now)
    if task is None:
        total = sum(e.duration for e in entries) + current
    else:
        total = tracked_minutes(task, timer, now)
    estimated = (task.estimated_duration or 0.0) if task else 0.0
    return TaskTimeStatistics(
        total_time=total,
        sessions_count=len(entries) + (1 if current > 0 else 0),
        estimated_time=estimated,
        remaining_time=max(0.0, estimated - total) if estimated else 0.0,
        is_overtime=bool(estimated) and total > estimated,
        current_session_time=current,
        time_entries=list(entries),
    )


@dataclass(slots=True)
class ProjectTimeStatistics:
    total_time: float
    estimated_time: float
    remaining_time: float
    is_overtime: bool
    tasks_count: int
    completed_tasks_count: int
    active_timers_count: int


def project_time_statistics(
    tasks: Sequence[Task],
    timers: Sequence[ActiveTimer],
    now: float,
) -> ProjectTimeStatistics:
    by_task = {t.task_id: t for t in timers}
    total = sum(tracked_minutes(t, by_task.get(t.id), now) for t in tasks)
    estimated = sum(t.estimated_duration or 0.0 for t in tasks)
    return ProjectTimeStatistics(
        total_time=total,
        estimated_time=estimated,
        remaining_time=max(0.0, estimated - total),
        is_overtime=total > estimated,
        tasks_count=len(tasks),
        completed_tasks_count=sum(1 for t in tasks if t.status == TaskStatus.COMPLETED),
        active_timers_count=sum(1 for t in tasks if (tm := by_task.get(t.id)) is not None and tm.is_running),
    )
