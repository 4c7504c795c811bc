# src/taskpulse/config.py

"""
Process settings from TASKPULSE_* environment variables, with an optional .env.

Only the entry point calls get_settings(); everything else is handed a Settings
instance (tests build one directly). Malformed or out-of-range values fall back
to the default with a warning instead of aborting startup.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "TASKPULSE"
_TRUE = frozenset({"1", "true", "yes", "y", "on"})
_FALSE = frozenset({"0", "false", "no", "n", "off"})

N = TypeVar("N", int, float)

load_dotenv(override=False)


def _var(suffix: str) -> str:
    return f"{ENV_PREFIX}_{suffix}"


def _raw(suffix: str) -> str | None:
    value = os.getenv(_var(suffix))
    if value is None or not value.strip():
        return None
    return value.strip()


def _text(suffix: str, default: str) -> str:
    return _raw(suffix) or default


def _flag(suffix: str, default: bool) -> bool:
    raw = _raw(suffix)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    logger.warning("%s=%r is not a boolean; using %s", _var(suffix), raw, default)
    return default


def _number(
    suffix: str,
    default: N,
    cast: Callable[[str], N],
    *,
    low: N | None = None,
    high: N | None = None,
) -> N:
    raw = _raw(suffix)
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning("%s=%r is not a number; using %s", _var(suffix), raw, default)
        return default
    if (low is not None and value < low) or (high is not None and value > high):
        logger.warning("%s=%s is out of range; using %s", _var(suffix), value, default)
        return default
    return value


def _path(suffix: str, default: Path) -> Path:
    raw = _raw(suffix)
    return default if raw is None else Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    app_name: str
    log_level: str

    # Local, gitignored state: SQLite database and log file.
    data_dir: Path
    db_path: Path

    # Background loops (seconds).
    tick_interval_seconds: float
    notify_poll_seconds: float

    # Reminder lead times.
    task_start_lead_minutes: int
    task_due_lead_minutes: int
    project_deadline_lead_hours: int
    daily_reminder_hour: int

    stop_timers_on_exit: bool
    console_enabled: bool

    @staticmethod
    def from_env() -> "Settings":
        data_dir = _path("DATA_DIR", Path(".local/taskpulse"))
        return Settings(
            app_name=_text("APP_NAME", "taskpulse"),
            log_level=_text("LOG_LEVEL", "INFO").upper(),
            data_dir=data_dir,
            db_path=_path("DB_PATH", data_dir / "taskpulse.sqlite3"),
            tick_interval_seconds=_number("TICK_INTERVAL_SECONDS", 60.0, float, low=1.0),
            notify_poll_seconds=_number("NOTIFY_POLL_SECONDS", 15.0, float, low=0.1),
            task_start_lead_minutes=_number("TASK_START_LEAD_MINUTES", 15, int, low=0),
            task_due_lead_minutes=_number("TASK_DUE_LEAD_MINUTES", 60, int, low=0),
            project_deadline_lead_hours=_number("PROJECT_DEADLINE_LEAD_HOURS", 24, int, low=0),
            daily_reminder_hour=_number("DAILY_REMINDER_HOUR", 9, int, low=0, high=23),
            stop_timers_on_exit=_flag("STOP_TIMERS_ON_EXIT", False),
            console_enabled=_flag("CONSOLE_ENABLED", True),
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
