# tests/conftest.py

from __future__ import annotations

from pathlib import Path

import pytest

from taskpulse.cli.bootstrap import create_initial_state
from taskpulse.config import Settings
from taskpulse.core.events import EventBus
from taskpulse.core.state import AppState
from taskpulse.notifications.scheduler import NotificationScheduler
from taskpulse.services.project_service import ProjectService
from taskpulse.services.task_service import TaskService
from taskpulse.storage.store import SQLiteStore
from taskpulse.tracking.timer_engine import TimerEngine

from .fakes import FakeClock, FakeMessenger, FakeNotifier, FlakyStore


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """
    Explicit settings rather than Settings.from_env(), so the environment of
    the machine running the tests cannot leak in.
    """
    return Settings(
        app_name="taskpulse-test",
        log_level="DEBUG",
        data_dir=tmp_path,
        db_path=tmp_path / "taskpulse.sqlite3",
        tick_interval_seconds=60.0,
        notify_poll_seconds=15.0,
        task_start_lead_minutes=15,
        task_due_lead_minutes=60,
        project_deadline_lead_hours=24,
        daily_reminder_hour=9,
        stop_timers_on_exit=False,
        console_enabled=False,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(tmp_path: Path, clock: FakeClock) -> FlakyStore:
    """Real SQLite store (its correctness is part of what we test) with failure injection."""
    return FlakyStore(tmp_path / "taskpulse.sqlite3", clock=clock)


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def scheduler(store: SQLiteStore, notifier: FakeNotifier, bus: EventBus, clock: FakeClock) -> NotificationScheduler:
    return NotificationScheduler(store, notifier, bus=bus, clock=clock)


@pytest.fixture()
def engine(store: SQLiteStore, scheduler: NotificationScheduler, bus: EventBus, clock: FakeClock) -> TimerEngine:
    return TimerEngine(store, scheduler, bus=bus, clock=clock)


@pytest.fixture()
def task_service(
    store: SQLiteStore,
    scheduler: NotificationScheduler,
    engine: TimerEngine,
    clock: FakeClock,
) -> TaskService:
    return TaskService(store, scheduler, engine, clock=clock)


@pytest.fixture()
def project_service(
    store: SQLiteStore,
    scheduler: NotificationScheduler,
    task_service: TaskService,
    engine: TimerEngine,
    clock: FakeClock,
) -> ProjectService:
    return ProjectService(store, scheduler, task_service, engine, clock=clock)


@pytest.fixture()
def messenger() -> FakeMessenger:
    return FakeMessenger()


@pytest.fixture()
def state(settings: Settings, clock: FakeClock, messenger: FakeMessenger) -> AppState:
    """Fully wired AppState (local notifier, real SQLite) with a fake clock and messenger."""
    return create_initial_state(settings=settings, clock=clock, messenger=messenger)
