# src/ontrack/logging_setup.py

from __future__ import annotations

import logging
import sys
from collections.abc import Iterable
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE = "ontrack.log"

# app loggers that tick every second or talk to Matrix; console shows them at WARNING+
QUIET_APP_LOGGERS = ("ontrack.tasks.alerts", "ontrack.connectors.matrix_")
# third-party loggers that are only interesting when something breaks
NOISY_LOGGERS = ("httpx", "httpcore", "nio")


class _ConsoleNoiseFilter(logging.Filter):
    """
    Console filter for an app that mostly sits in a polling loop.

    ontrack records pass, except the quiet ones below WARNING. Everything else
    (third-party libraries, captured py.warnings) reaches the console only at ERROR+.
    The file handler is not filtered.
    """

    def __init__(self, quiet: Iterable[str] = QUIET_APP_LOGGERS) -> None:
        super().__init__()
        self._quiet = tuple(quiet)

    def filter(self, record: logging.LogRecord) -> bool:
        if not record.name.startswith("ontrack."):
            return record.levelno >= logging.ERROR
        if record.name.startswith(self._quiet):
            return record.levelno >= logging.WARNING
        return True


def setup_logging(
    *,
    log_dir: str | Path = ".local/ontrack",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    max_bytes: int = 5 * 1024 * 1024,
    backups: int = 3,
) -> Path:
    """
    Install a filtered stderr handler and a rotating debug file under log_dir.

    Replaces whatever handlers the root logger had. Call once, before the first
    log line. Returns the log file path.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(fmt)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    # the clock loop runs for days; keep the debug log bounded
    file_handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backups, encoding="utf-8")
    file_handler.setLevel(file_level)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    logging.captureWarnings(True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return log_file
