# src/taskwarden/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then runs the console REPL on the event loop.
Supervised processes that are still running on exit keep running; their tasks stay
"running" in the registry and are not re-attached on the next start.
"""

from __future__ import annotations

import asyncio
import logging

from ..cli.bootstrap import create_initial_state
from ..config import get_settings
from ..connectors.console_connector import run_console_loop
from ..core.state import AppState
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


def _shutdown(state: AppState) -> None:
    """Best-effort shutdown (no exceptions should escape)."""
    try:
        state.engine.save()
    except Exception:
        logger.exception("Failed to save tasks on shutdown.")

    try:
        state.engine.end_session()
    except Exception:
        logger.debug("Ending session failed.", exc_info=True)


async def _run(settings) -> None:
    state = create_initial_state(settings=settings)
    logger.info("Loaded %d task(s) from %s.", len(state.engine.list_tasks()), settings.tasks_file)
    try:
        await run_console_loop(state)
    finally:
        _shutdown(state)


def main() -> None:
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logger.info("Starting %s...", getattr(settings, "app_name", "taskwarden"))

    try:
        asyncio.run(_run(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down...")
    finally:
        logger.info("Bye.")


if __name__ == "__main__":
    main()
