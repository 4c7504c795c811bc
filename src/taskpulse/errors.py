# src/taskpulse/errors.py

"""
Error taxonomy shared by the store, the timer engine and the notification scheduler.

Expected no-op conditions (stopping a timer that is not active, etc.) are reported
through result objects, not exceptions. Exceptions are for unresolved ids,
persistence failures and rejected schedules.
"""

from __future__ import annotations


class TaskPulseError(Exception):
    """Base class for all taskpulse errors."""


class NotFoundError(TaskPulseError):
    """A task/project/notification id could not be resolved."""

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class InvalidStateError(TaskPulseError):
    """An operation does not apply to the current timer state."""


class PastTimeError(TaskPulseError):
    """A notification target instant has already elapsed."""

    def __init__(self, notification_id: str, scheduled_time: float, now: float) -> None:
        super().__init__(
            f"cannot schedule {notification_id} at {scheduled_time:.0f}: not after now ({now:.0f})"
        )
        self.notification_id = notification_id
        self.scheduled_time = scheduled_time
        self.now = now


class PersistenceError(TaskPulseError):
    """A store read/write failed."""


class PlatformNotifierError(TaskPulseError):
    """The platform notifier rejected a schedule/cancel call. Logged, never fatal."""
