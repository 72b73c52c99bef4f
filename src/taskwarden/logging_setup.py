# src/taskwarden/logging_setup.py

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FILE_NAME = "taskwarden.log"
LOG_FILE_MAX_BYTES = 2 * 1024 * 1024
LOG_FILE_BACKUPS = 3

# Loggers whose INFO chatter (spawn, signal, exit per pid) only goes to the file.
QUIET_CONSOLE_LOGGERS = ("taskwarden.processes",)


class _ConsoleFilter(logging.Filter):
    """
    Keep the operator prompt readable.

    Task transitions from the engine and the console are shown at the handler
    level. Per-process supervisor records and anything outside the package
    reach the console only when they signal a problem.
    """

    def __init__(self, *, quiet: tuple[str, ...] = QUIET_CONSOLE_LOGGERS) -> None:
        super().__init__()
        self._quiet = quiet

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        if name.startswith(self._quiet):
            return record.levelno >= logging.WARNING
        if name == "taskwarden" or name.startswith("taskwarden."):
            return True
        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    log_dir: str | Path,
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> Path:
    """
    Route logs to stderr (filtered, short timestamps) and to a rotating
    `taskwarden.log` under `log_dir` (everything at `file_level`).

    Child process output never goes through logging; it lands in the per-task
    log files. Call once from the entry point. Returns the log file path.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s", datefmt="%H:%M:%S"))
    console.addFilter(_ConsoleFilter())
    root.addHandler(console)

    file_handler = RotatingFileHandler(
        str(log_file),
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUPS,
        encoding="utf-8",
    )
    file_handler.setLevel(file_level)
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(file_handler)

    logging.captureWarnings(True)
    return log_file
