# src/taskpulse/tracking/timer_engine.py

from __future__ import annotations

"""
Timer engine.

Owns the per-task timer state machine:

    Idle -> Running -> Paused -> Running -> ... -> Stopped (back to Idle)

The in-memory table of ActiveTimer objects is the source of truth while the
process runs; every transition is mirrored to a persisted snapshot so the table
can be rebuilt by recover() after a restart.

Accounting:
- each snapshot carries base_time_spent, the task's time_spent when the current
  segment began; task.time_spent is always written as base + segment elapsed, so
  periodic ticks and recovery never add the same minutes twice
- pause folds the segment into time_spent immediately
- only stop produces a TimeEntry, covering the current segment

All mutations for one task id run under that task's asyncio.Lock; events are
published while the lock is held so per-task event order matches transition order.
"""

import asyncio
import contextlib
import dataclasses
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from ..analytics.aggregator import (
    ProjectTimeStatistics,
    TaskTimeStatistics,
    current_elapsed_minutes,
    project_time_statistics,
    task_time_statistics,
)
from ..core.events import (
    EventBus,
    TimerPaused,
    TimerResumed,
    TimersUpdated,
    TimerStarted,
    TimerStopped,
    TimerUp,
)
from ..core.ports import Store
from ..errors import InvalidStateError, NotFoundError, PastTimeError, PersistenceError, TaskPulseError
from ..notifications.scheduler import NotificationScheduler
from ..storage.models import ActiveTimer, NotificationType, Task, TaskStatus, TimeEntry
from .timer_loop import run_timer_updates

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class TimerResult:
    """
    Outcome of a timer command.

    ok=False means the command did not apply (no timer to stop, timer not
    running, ...); nothing was changed in that case.
    """

    ok: bool
    task_id: str
    reason: str | None = None
    time_entry: TimeEntry | None = None
    elapsed_minutes: float = 0.0
    timer: ActiveTimer | None = None

    def __bool__(self) -> bool:
        return self.ok

    def raise_for_state(self) -> TimerResult:
        if not self.ok:
            raise InvalidStateError(f"{self.task_id}: {self.reason}")
        return self


def _minutes_between(start: float, end: float) -> float:
    return max(0.0, (end - start) / 60.0)


class TimerEngine:
    def __init__(
        self,
        store: Store,
        scheduler: NotificationScheduler,
        *,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
        tick_interval_seconds: float = 60.0,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._bus = bus if bus is not None else EventBus()
        self._clock = clock
        self._tick_interval = tick_interval_seconds

        self._timers: dict[str, ActiveTimer] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._updates_task: asyncio.Task[None] | None = None

    @property
    def bus(self) -> EventBus:
        return self._bus

    # ---- helpers ----

    @contextlib.asynccontextmanager
    async def _lock(self, task_id: str) -> AsyncIterator[None]:
        """
        Per-task critical section. The lock is dropped once no coroutine uses it
        and the task has no timer left.
        """
        lock = self._locks.get(task_id)
        if lock is None:
            lock = self._locks[task_id] = asyncio.Lock()
        self._lock_users[task_id] = self._lock_users.get(task_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            left = self._lock_users[task_id] - 1
            if left:
                self._lock_users[task_id] = left
            else:
                del self._lock_users[task_id]
                if task_id not in self._timers:
                    self._locks.pop(task_id, None)

    def _persist(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a store call; retry once on PersistenceError, then surface it."""
        try:
            return fn(*args, **kwargs)
        except PersistenceError:
            logger.warning("store call %s failed; retrying once", getattr(fn, "__name__", fn), exc_info=True)
        try:
            return fn(*args, **kwargs)
        except PersistenceError:
            logger.error("store call %s failed twice", getattr(fn, "__name__", fn))
            raise

    def _require_task(self, task_id: str) -> Task:
        task = self._persist(self._store.get_task, task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    # ---- lifecycle ----

    async def recover(self) -> int:
        """
        Rebuild the in-memory table from persisted snapshots.

        Running timers fold (now - segment start) into time_spent, so time that
        passed while the process was down is kept. Snapshots whose task is gone or
        no longer carries a timer_start_time (a stop that could not clear its
        snapshot) are discarded.
        """
        now = self._clock()
        restored = 0
        for snap in self._persist(self._store.list_active_timers):
            async with self._lock(snap.task_id):
                task = self._persist(self._store.get_task, snap.task_id)
                if task is None or task.timer_start_time is None:
                    logger.warning("Discarding stale timer snapshot task_id=%s", snap.task_id)
                    self._persist(self._store.remove_active_timer, snap.task_id)
                    continue

                if snap.is_running:
                    elapsed = _minutes_between(snap.start_time, now)
                    snap = dataclasses.replace(snap, elapsed_time=elapsed)
                    self._persist(self._store.set_active_timer, snap)
                    self._persist(
                        self._store.update_task,
                        snap.task_id,
                        time_spent=snap.base_time_spent + elapsed,
                        is_timer_running=True,
                    )
                elif task.is_timer_running:
                    self._persist(self._store.update_task, snap.task_id, is_timer_running=False)

                self._timers[snap.task_id] = snap
                restored += 1
                logger.info(
                    "Recovered timer task_id=%s running=%s elapsed=%.1f",
                    snap.task_id,
                    snap.is_running,
                    snap.elapsed_time,
                )
        return restored

    def start_updates(self) -> None:
        if self._updates_task is not None and not self._updates_task.done():
            return
        self._updates_task = asyncio.create_task(
            run_timer_updates(self, interval_seconds=self._tick_interval),
            name="timer-updates",
        )

    async def stop_updates(self) -> None:
        task, self._updates_task = self._updates_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def shutdown(self, *, stop_timers: bool = False) -> None:
        """
        Flush and stop. By default timers stay active (snapshots are flushed by a
        final tick and picked up by recover() next run); stop_timers=True closes
        every timer with a TimeEntry instead.
        """
        await self.stop_updates()
        if stop_timers:
            for task_id in list(self._timers):
                try:
                    await self.stop_timer(task_id)
                except TaskPulseError:
                    logger.exception("stop on shutdown failed task_id=%s", task_id)
        else:
            await self.tick()
        logger.info("Timer engine stopped (active=%d)", len(self._timers))

    # ---- commands ----

    async def start_timer(self, task_id: str) -> TimerResult:
        async with self._lock(task_id):
            task = self._require_task(task_id)

            if task_id in self._timers:
                # Settle the previous session before the new one begins.
                await self._settle(task_id, record_empty=False)
                task = self._require_task(task_id)

            now = self._clock()
            timer = ActiveTimer(
                task_id=task_id,
                project_id=task.project_id,
                start_time=now,
                elapsed_time=0.0,
                is_running=True,
                base_time_spent=task.time_spent,
            )
            self._persist(self._store.set_active_timer, timer)
            try:
                task = self._persist(
                    self._store.update_task,
                    task_id,
                    status=TaskStatus.IN_PROGRESS,
                    is_timer_running=True,
                    timer_start_time=now,
                )
            except PersistenceError:
                with contextlib.suppress(PersistenceError):
                    self._store.remove_active_timer(task_id)
                raise

            self._timers[task_id] = timer

            if task.estimated_duration:
                try:
                    await self._scheduler.schedule_time_up(task, now)
                except TaskPulseError:
                    logger.warning("time_up scheduling failed task_id=%s", task_id, exc_info=True)

            logger.info("Timer started task_id=%s", task_id)
            self._bus.publish(TimerStarted(task_id=task_id, task=task, start_time=now))
            return TimerResult(ok=True, task_id=task_id, timer=dataclasses.replace(timer))

    async def stop_timer(self, task_id: str) -> TimerResult:
        async with self._lock(task_id):
            return await self._settle(task_id, record_empty=True)

    async def refresh_time_up(self, task_id: str) -> bool:
        """
        Re-arm the time_up reminder after the task's estimate changed.

        The reminder is measured from the current segment start. A cleared
        estimate only cancels it; an instant already passed is left to tick().
        Returns whether a reminder is armed afterwards.
        """
        async with self._lock(task_id):
            timer = self._timers.get(task_id)
            if timer is None:
                return False
            task = self._require_task(task_id)
            try:
                await self._scheduler.cancel_time_up(task_id)
                if not task.estimated_duration:
                    return False
                return await self._scheduler.schedule_time_up(task, timer.start_time) is not None
            except PastTimeError:
                logger.info("time_up for task_id=%s already passed; tick() will raise it", task_id)
                return False
            except TaskPulseError:
                logger.warning("time_up rescheduling failed task_id=%s", task_id, exc_info=True)
                return False

    async def pause_timer(self, task_id: str) -> TimerResult:
        async with self._lock(task_id):
            timer = self._timers.get(task_id)
            if timer is None or not timer.is_running:
                return TimerResult(ok=False, task_id=task_id, reason="timer is not running")

            self._require_task(task_id)
            now = self._clock()
            elapsed = _minutes_between(timer.start_time, now)
            paused = dataclasses.replace(timer, elapsed_time=elapsed, is_running=False, paused_at=now)

            self._persist(self._store.set_active_timer, paused)
            try:
                self._persist(
                    self._store.update_task,
                    task_id,
                    is_timer_running=False,
                    time_spent=timer.base_time_spent + elapsed,
                )
            except PersistenceError:
                with contextlib.suppress(PersistenceError):
                    self._store.set_active_timer(timer)
                raise

            self._timers[task_id] = paused
            logger.info("Timer paused task_id=%s elapsed=%.1f", task_id, elapsed)
            self._bus.publish(TimerPaused(task_id=task_id, elapsed_minutes=elapsed))
            return TimerResult(
                ok=True,
                task_id=task_id,
                elapsed_minutes=elapsed,
                timer=dataclasses.replace(paused),
            )

    async def resume_timer(self, task_id: str) -> TimerResult:
        async with self._lock(task_id):
            timer = self._timers.get(task_id)
            if timer is None or timer.is_running:
                return TimerResult(ok=False, task_id=task_id, reason="timer is not paused")

            task = self._require_task(task_id)
            now = self._clock()
            resumed = dataclasses.replace(
                timer,
                start_time=now,
                elapsed_time=0.0,
                is_running=True,
                paused_at=None,
                base_time_spent=task.time_spent,
            )

            self._persist(self._store.set_active_timer, resumed)
            try:
                self._persist(
                    self._store.update_task,
                    task_id,
                    is_timer_running=True,
                    timer_start_time=now,
                )
            except PersistenceError:
                with contextlib.suppress(PersistenceError):
                    self._store.set_active_timer(timer)
                raise

            self._timers[task_id] = resumed
            logger.info("Timer resumed task_id=%s", task_id)
            self._bus.publish(TimerResumed(task_id=task_id, start_time=now))
            return TimerResult(ok=True, task_id=task_id, timer=dataclasses.replace(resumed))

    async def _settle(self, task_id: str, *, record_empty: bool) -> TimerResult:
        """Close the active timer for task_id. Caller holds the task lock."""
        timer = self._timers.get(task_id)
        if timer is None:
            return TimerResult(ok=False, task_id=task_id, reason="no active timer")

        task = self._persist(self._store.get_task, task_id)
        if task is None:
            # Task vanished underneath the timer; nothing to account against.
            self._timers.pop(task_id, None)
            self._persist(self._store.remove_active_timer, task_id)
            return TimerResult(ok=False, task_id=task_id, reason="task no longer exists")

        now = self._clock()
        if timer.is_running:
            end_time = now
            elapsed = _minutes_between(timer.start_time, now)
            new_time_spent = timer.base_time_spent + elapsed
        else:
            # Paused: the segment ended at paused_at and was folded in by pause().
            end_time = timer.paused_at if timer.paused_at is not None else now
            elapsed = timer.elapsed_time
            new_time_spent = task.time_spent

        previous = {
            "time_spent": task.time_spent,
            "is_timer_running": task.is_timer_running,
            "timer_start_time": task.timer_start_time,
        }
        self._persist(
            self._store.update_task,
            task_id,
            time_spent=new_time_spent,
            is_timer_running=False,
            timer_start_time=None,
        )

        entry: TimeEntry | None = None
        if elapsed > 0 or record_empty:
            try:
                entry = self._persist(
                    self._store.create_time_entry,
                    task_id=task_id,
                    project_id=timer.project_id,
                    start_time=timer.start_time,
                    end_time=end_time,
                    duration=elapsed,
                    description=f"Timer session: {elapsed:.0f} minutes",
                )
            except PersistenceError:
                # Undo the task update; the timer stays active so stop can be retried.
                try:
                    self._persist(self._store.update_task, task_id, **previous)
                except PersistenceError:
                    logger.error("could not restore task %s after failed time entry", task_id)
                raise

        self._timers.pop(task_id, None)
        try:
            self._persist(self._store.remove_active_timer, task_id)
        except PersistenceError:
            # recover() discards snapshots whose task has no timer_start_time.
            logger.error("stale timer snapshot left for task_id=%s", task_id)

        try:
            await self._scheduler.cancel_time_up(task_id)
        except TaskPulseError:
            logger.warning("time_up cancel failed task_id=%s", task_id, exc_info=True)

        logger.info("Timer stopped task_id=%s minutes=%.1f entry=%s", task_id, elapsed, entry.id if entry else None)
        self._bus.publish(TimerStopped(task_id=task_id, time_entry=entry, total_minutes=elapsed))
        return TimerResult(ok=True, task_id=task_id, time_entry=entry, elapsed_minutes=elapsed)

    # ---- periodic reconciliation ----

    async def tick(self) -> int:
        """Update every running timer once. Returns how many were updated."""
        updated = 0
        for task_id in list(self._timers):
            async with self._lock(task_id):
                timer = self._timers.get(task_id)
                if timer is None or not timer.is_running:
                    continue
                now = self._clock()
                elapsed = _minutes_between(timer.start_time, now)
                timer = dataclasses.replace(timer, elapsed_time=elapsed)
                try:
                    self._persist(self._store.set_active_timer, timer)
                    self._timers[task_id] = timer
                    task = self._persist(
                        self._store.update_task,
                        task_id,
                        time_spent=timer.base_time_spent + elapsed,
                    )
                except NotFoundError:
                    logger.warning("Task %s vanished; dropping its timer", task_id)
                    self._timers.pop(task_id, None)
                    with contextlib.suppress(PersistenceError):
                        self._store.remove_active_timer(task_id)
                    continue
                except PersistenceError:
                    logger.exception("tick persist failed task_id=%s", task_id)
                    continue

                updated += 1
                if (
                    task.estimated_duration
                    and elapsed >= task.estimated_duration
                    and not timer.time_up_fired
                ):
                    await self._handle_time_up(timer, task, elapsed)

        self._bus.publish(TimersUpdated(active_timers=tuple(self.get_all_active_timers())))
        return updated

    async def _handle_time_up(self, timer: ActiveTimer, task: Task, elapsed: float) -> None:
        # Persist the flag first: a crash after this point must not re-fire.
        fired = dataclasses.replace(timer, time_up_fired=True)
        try:
            self._persist(self._store.set_active_timer, fired)
        except PersistenceError:
            logger.exception("could not persist time-up flag task_id=%s", task.id)
            return
        self._timers[task.id] = fired

        if task.status != TaskStatus.OVERDUE:
            try:
                task = self._persist(self._store.update_task, task.id, status=TaskStatus.OVERDUE)
            except PersistenceError:
                logger.exception("could not mark task %s overdue", task.id)

        try:
            await self._scheduler.send_immediate_notification(
                title="Time Up!",
                message=f'Estimated time for "{task.title}" has elapsed',
                type=NotificationType.TIME_UP,
                task_id=task.id,
                project_id=task.project_id,
            )
        except TaskPulseError:
            logger.warning("time-up notification failed task_id=%s", task.id, exc_info=True)

        logger.info("Time up task_id=%s elapsed=%.1f estimate=%s", task.id, elapsed, task.estimated_duration)
        self._bus.publish(TimerUp(task_id=task.id, task=task, elapsed_minutes=elapsed))

    # ---- queries ----

    def get_active_timer(self, task_id: str) -> ActiveTimer | None:
        timer = self._timers.get(task_id)
        return dataclasses.replace(timer) if timer is not None else None

    def get_all_active_timers(self) -> list[ActiveTimer]:
        return [dataclasses.replace(t) for t in self._timers.values()]

    def is_timer_running(self, task_id: str) -> bool:
        timer = self._timers.get(task_id)
        return bool(timer and timer.is_running)

    def has_timer(self, task_id: str) -> bool:
        return task_id in self._timers

    def get_current_elapsed_time(self, task_id: str) -> float:
        return current_elapsed_minutes(self._timers.get(task_id), self._clock())

    def get_task_time_statistics(self, task_id: str) -> TaskTimeStatistics:
        task = self._require_task(task_id)
        entries = self._persist(self._store.list_time_entries, task_id=task_id)
        return task_time_statistics(task, entries, self._timers.get(task_id), self._clock())

    def get_project_time_statistics(self, project_id: str) -> ProjectTimeStatistics:
        if self._persist(self._store.get_project, project_id) is None:
            raise NotFoundError("project", project_id)
        tasks = self._persist(self._store.list_tasks, project_id=project_id)
        return project_time_statistics(tasks, list(self._timers.values()), self._clock())
