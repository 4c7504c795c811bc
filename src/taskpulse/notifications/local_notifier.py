# src/taskpulse/notifications/local_notifier.py

from __future__ import annotations

"""
In-process platform notifier.

Keeps the pending schedule in memory and lets a small polling loop fire due
entries through an injected messenger port (console by default).

Transport details (formatting, where the text goes) belong to the messenger,
not to the notifier.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..core.ports import OutboundMessenger
from ..errors import PlatformNotifierError

logger = logging.getLogger(__name__)

REPEAT_SECONDS: dict[str, float] = {
    "minute": 60.0,
    "hour": 3600.0,
    "day": 86400.0,
    "week": 7 * 86400.0,
}


@dataclass(slots=True)
class PendingNotification:
    id: str
    title: str
    body: str
    fire_at: float
    repeat: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    def render(self) -> str:
        return f"[{self.title}] {self.body}"


class LocalNotifier:
    """PlatformNotifier implementation backed by a dict of pending entries."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._pending: dict[str, PendingNotification] = {}

    async def schedule(
        self,
        notification_id: str,
        title: str,
        body: str,
        fire_at: float,
        repeat: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        if repeat is not None and repeat not in REPEAT_SECONDS:
            raise PlatformNotifierError(f"unsupported repeat granularity: {repeat}")
        self._pending[notification_id] = PendingNotification(
            id=notification_id,
            title=title,
            body=body,
            fire_at=float(fire_at),
            repeat=repeat,
            payload=dict(payload or {}),
        )
        logger.debug("Local notification queued id=%s fire_at=%.0f repeat=%s", notification_id, fire_at, repeat)

    async def cancel(self, notification_id: str) -> None:
        self._pending.pop(notification_id, None)

    async def cancel_all(self) -> None:
        self._pending.clear()

    def pending(self) -> list[PendingNotification]:
        return sorted(self._pending.values(), key=lambda p: p.fire_at)

    def pop_due(self, now_ts: float | None = None) -> list[PendingNotification]:
        """
        Return entries whose fire_at <= now.

        One-shot entries are removed; repeating entries are moved forward by whole
        repeat steps until they lie in the future.
        """
        now = self._clock() if now_ts is None else now_ts
        due: list[PendingNotification] = []
        for item in list(self._pending.values()):
            if item.fire_at > now:
                continue
            due.append(
                PendingNotification(
                    id=item.id,
                    title=item.title,
                    body=item.body,
                    fire_at=item.fire_at,
                    repeat=item.repeat,
                    payload=dict(item.payload),
                )
            )
            if item.repeat is None:
                del self._pending[item.id]
                continue
            step = REPEAT_SECONDS[item.repeat]
            while item.fire_at <= now:
                item.fire_at += step
        due.sort(key=lambda p: p.fire_at)
        return due


FiredHook = Callable[[PendingNotification], None]


async def dispatch_due(
    notifier: LocalNotifier,
    messenger: OutboundMessenger,
    *,
    now_ts: float | None = None,
    on_fired: FiredHook | None = None,
) -> int:
    """Fire every due entry once. Returns how many were delivered."""
    sent = 0
    for item in notifier.pop_due(now_ts):
        try:
            await messenger.send_text(text=item.render())
            sent += 1
        except Exception:
            logger.exception("notification delivery failed id=%s", item.id)
            continue

        if on_fired is not None:
            try:
                on_fired(item)
            except Exception:
                logger.exception("on_fired hook failed id=%s", item.id)
    return sent


async def run_notification_dispatcher(
        notifier: LocalNotifier,
        messenger: OutboundMessenger,
        *,
        interval_seconds: float = 15.0,
        on_fired: FiredHook | None = None,
) -> None:
    """
    Simple polling dispatcher.

    Every interval_seconds:
    - pop due entries from the notifier
    - send each via messenger.send_text(...)
    - report it through on_fired (the scheduler deactivates or advances the record)

    To stop the dispatcher, cancel the coroutine/task.
    """
    sleep_s = max(0.01, float(interval_seconds))

    while True:
        try:
            await dispatch_due(notifier, messenger, on_fired=on_fired)
        except Exception:
            logger.exception("notification dispatch pass failed")
        await asyncio.sleep(sleep_s)
