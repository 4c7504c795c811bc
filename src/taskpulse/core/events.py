# src/taskpulse/core/events.py

"""
Typed publish/subscribe for timer and notification events.

Each event kind is a frozen dataclass; subscribers filter by type instead of
matching event-name strings. Delivery is synchronous and in publish order, so an
event published after another one for the same task is always delivered after it.
A failing subscriber is logged and skipped; it never aborts the publisher.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Union

from ..storage.models import ActiveTimer, Task, TimeEntry

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class TimerStarted:
    task_id: str
    task: Task
    start_time: float


@dataclass(slots=True, frozen=True)
class TimerStopped:
    task_id: str
    time_entry: TimeEntry | None
    total_minutes: float


@dataclass(slots=True, frozen=True)
class TimerPaused:
    task_id: str
    elapsed_minutes: float


@dataclass(slots=True, frozen=True)
class TimerResumed:
    task_id: str
    start_time: float


@dataclass(slots=True, frozen=True)
class TimerUp:
    task_id: str
    task: Task
    elapsed_minutes: float


@dataclass(slots=True, frozen=True)
class TimersUpdated:
    active_timers: tuple[ActiveTimer, ...]


@dataclass(slots=True, frozen=True)
class NotificationTapped:
    notification_id: str | None
    type: str | None
    task_id: str | None = None
    project_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


Event = Union[
    TimerStarted,
    TimerStopped,
    TimerPaused,
    TimerResumed,
    TimerUp,
    TimersUpdated,
    NotificationTapped,
]

Listener = Callable[[Event], None]


class EventBus:
    def __init__(self) -> None:
        self._subs: list[tuple[Listener, tuple[type, ...]]] = []

    def subscribe(self, callback: Listener, *event_types: type) -> Callable[[], None]:
        """
        Register callback for the given event types (all events when none given).
        Returns an unsubscribe function.
        """
        entry = (callback, tuple(event_types))
        self._subs.append(entry)

        def _unsubscribe() -> None:
            try:
                self._subs.remove(entry)
            except ValueError:
                pass

        return _unsubscribe

    def publish(self, event: Event) -> None:
        for callback, types in list(self._subs):
            if types and not isinstance(event, types):
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("Listener %r failed on %s", callback, type(event).__name__)

    def clear(self) -> None:
        self._subs.clear()

    def __len__(self) -> int:
        return len(self._subs)
