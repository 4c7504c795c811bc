# src/taskpulse/tracking/timer_loop.py

from __future__ import annotations

"""
Periodic reconciliation loop for running timers.

Every interval the engine recomputes elapsed time for each running timer, persists
the snapshot, folds it into the task and fires time-up once per crossing.
To stop the loop, cancel the coroutine/task.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .timer_engine import TimerEngine

logger = logging.getLogger(__name__)


async def run_timer_updates(engine: TimerEngine, *, interval_seconds: float = 60.0) -> None:
    sleep_s = max(0.01, float(interval_seconds))

    while True:
        await asyncio.sleep(sleep_s)
        try:
            updated = await engine.tick()
            logger.debug("timer tick updated=%d", updated)
        except Exception:
            logger.exception("timer tick failed")
