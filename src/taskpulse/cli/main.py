# src/taskpulse/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, recovers timers/notifications, starts the
tick loop and the notification dispatcher, then runs:
- console REPL (optional),
- or waits for SIGINT/SIGTERM when the console is disabled.
On exit the timer engine flushes a final tick and everything is stopped.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from ..cli.bootstrap import create_initial_state, recover_state, shutdown_state, start_background
from ..config import Settings, get_settings
from ..connectors.console_connector import run_console_loop
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


async def _run(settings: Settings) -> None:
    state = create_initial_state(settings=settings)

    stop_main = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(signum: int) -> None:
        logger.info("Signal %s received, shutting down...", signum)
        stop_main.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        # Some platforms (Windows) do not support loop signal handlers.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, _handle_signal, sig)

    try:
        await recover_state(state)
        start_background(state)

        if settings.console_enabled:
            console = asyncio.create_task(run_console_loop(state), name="console")
            stopper = asyncio.create_task(stop_main.wait(), name="stop-wait")
            done, pending = await asyncio.wait({console, stopper}, return_when=asyncio.FIRST_COMPLETED)
            for t in pending:
                t.cancel()
        else:
            logger.info("Console disabled. Running background loops only. Press Ctrl+C to stop.")
            await stop_main.wait()
    finally:
        await shutdown_state(state)


def main() -> None:
    settings = get_settings()

    # choose console log level from settings.log_level
    level_name = str(settings.log_level).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    log_file = setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logger.info("Starting %s (db=%s, log=%s)", settings.app_name, settings.db_path, log_file)
    try:
        asyncio.run(_run(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    logger.info("Bye.")


if __name__ == "__main__":
    main()
