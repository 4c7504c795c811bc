# src/taskpulse/core/state.py

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .events import EventBus
from .ports import OutboundMessenger

if TYPE_CHECKING:
    from ..config import Settings
    from ..notifications.local_notifier import LocalNotifier
    from ..notifications.scheduler import NotificationScheduler
    from ..services.project_service import ProjectService
    from ..services.task_service import TaskService
    from ..storage.store import SQLiteStore
    from ..tracking.timer_engine import TimerEngine


@dataclass
class AppState:
    # Settings live on the state so commands and connectors can read them.
    settings: Settings
    clock: Callable[[], float]

    store: SQLiteStore
    bus: EventBus
    notifier: LocalNotifier
    scheduler: NotificationScheduler
    engine: TimerEngine
    tasks: TaskService
    projects: ProjectService
    messenger: OutboundMessenger

    background: list[asyncio.Task[None]] = field(default_factory=list)
    unsubscribers: list[Callable[[], None]] = field(default_factory=list)
