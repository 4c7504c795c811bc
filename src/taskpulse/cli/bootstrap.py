# src/taskpulse/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires concrete implementations into AppState (store/notifier/scheduler/engine/services),
- drives the lifecycle: construct -> recover -> run -> flush-and-stop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable

from ..config import Settings, get_settings
from ..connectors.console_connector import ConsoleMessenger
from ..core.events import EventBus, TimerStopped
from ..core.ports import OutboundMessenger
from ..core.state import AppState
from ..notifications.local_notifier import LocalNotifier, PendingNotification, run_notification_dispatcher
from ..notifications.scheduler import NotificationScheduler
from ..services.project_service import ProjectService
from ..services.task_service import TaskService
from ..storage.store import SQLiteStore
from ..tracking.timer_engine import TimerEngine

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)


def create_initial_state(
    *,
    settings: Settings | None = None,
    clock: Callable[[], float] = time.time,
    messenger: OutboundMessenger | None = None,
) -> AppState:
    """
    Create AppState from the provided settings.

    Settings, clock and messenger are injectable so tests can build a full state
    without touching real time or stdout. If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    store = SQLiteStore(settings.db_path, clock=clock)
    bus = EventBus()
    notifier = LocalNotifier(clock=clock)
    scheduler = NotificationScheduler(
        store,
        notifier,
        bus=bus,
        clock=clock,
        task_start_lead_minutes=settings.task_start_lead_minutes,
        task_due_lead_minutes=settings.task_due_lead_minutes,
        project_deadline_lead_hours=settings.project_deadline_lead_hours,
        daily_reminder_hour=settings.daily_reminder_hour,
    )
    engine = TimerEngine(
        store,
        scheduler,
        bus=bus,
        clock=clock,
        tick_interval_seconds=settings.tick_interval_seconds,
    )
    tasks = TaskService(store, scheduler, engine, clock=clock)
    projects = ProjectService(store, scheduler, tasks, engine, clock=clock)

    state = AppState(
        settings=settings,
        clock=clock,
        store=store,
        bus=bus,
        notifier=notifier,
        scheduler=scheduler,
        engine=engine,
        tasks=tasks,
        projects=projects,
        messenger=messenger or ConsoleMessenger(),
    )

    def _refresh_after_stop(event: TimerStopped) -> None:
        entry = event.time_entry
        if entry is not None and entry.project_id:
            tasks.refresh_project_stats(entry.project_id)

    state.unsubscribers.append(bus.subscribe(_refresh_after_stop, TimerStopped))
    return state


async def recover_state(state: AppState) -> None:
    """Rebuild timers and notification schedules from persistence, then catch up on missed notices."""
    restored = await state.engine.recover()
    loaded = await state.scheduler.load_scheduled_notifications()
    state.tasks.recalculate_all_projects()
    await state.scheduler.check_due_tasks()
    await state.scheduler.schedule_daily_reminder()
    logger.info("Recovered %d timers, %d notifications", restored, loaded)


def start_background(state: AppState) -> None:
    def _on_fired(item: PendingNotification) -> None:
        state.scheduler.mark_fired(item.id)

    state.engine.start_updates()
    state.background.append(
        asyncio.create_task(
            run_notification_dispatcher(
                state.notifier,
                state.messenger,
                interval_seconds=state.settings.notify_poll_seconds,
                on_fired=_on_fired,
            ),
            name="notification-dispatcher",
        )
    )


async def shutdown_state(state: AppState) -> None:
    """Best-effort shutdown (no exceptions should escape)."""
    try:
        await state.engine.shutdown(stop_timers=state.settings.stop_timers_on_exit)
    except Exception:
        logger.exception("Timer engine shutdown failed.")

    for task in state.background:
        task.cancel()
    for task in state.background:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    state.background.clear()

    for unsubscribe in state.unsubscribers:
        unsubscribe()
    state.unsubscribers.clear()

    # SQLiteStore uses short-lived sqlite connections per call; close is a no-op hook.
    state.store.close()
