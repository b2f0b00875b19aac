"""Logging for the `iiif_random` namespace.

Library modules only call `get_logger(__name__)`. Handlers are attached by
`setup_logging()`, which the command line (and the test bootstrap) call once;
until then nothing is written to disk and records propagate to the root logger.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

APP_LOGGER_NAME = "iiif_random"
LOG_FILE_NAME = "app.log"

CONSOLE_FORMAT = logging.Formatter("%(levelname)s | %(name)s | %(message)s")
FILE_FORMAT = logging.Formatter(
    "%(asctime)s [%(levelname)s] [%(name)s.%(funcName)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

app_logger = logging.getLogger(APP_LOGGER_NAME)


def _level_from(name: str | None) -> tuple[str, int]:
    level_name = str(name or "INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        return "INFO", logging.INFO
    return level_name, level


def _file_handler() -> TimedRotatingFileHandler | None:
    for handler in app_logger.handlers:
        if isinstance(handler, TimedRotatingFileHandler):
            return handler
    return None


def reset_logging() -> None:
    """Detach and close every handler on the app logger."""
    for handler in list(app_logger.handlers):
        app_logger.removeHandler(handler)
        handler.close()


def setup_logging(logs_dir: str | Path | None = None, level: str | None = None) -> Path | None:
    """Attach console output and a daily-rotating `app.log` to the app logger.

    `logs_dir` and `level` default to `paths.logs_dir` and `logging.level` from
    config.json. A second call only adjusts the level. Returns the log file, or
    None when the file handler could not be created.
    """
    # config_manager logs through this module, so it is imported lazily.
    from .config_manager import get_config_manager

    cm = get_config_manager()
    level_name, effective_level = _level_from(level or cm.get_setting("logging.level", "INFO"))

    app_logger.setLevel(effective_level)
    if app_logger.handlers:
        for handler in app_logger.handlers:
            handler.setLevel(effective_level)
        existing = _file_handler()
        return Path(existing.baseFilename) if existing else None

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(CONSOLE_FORMAT)
    console_handler.setLevel(effective_level)
    app_logger.addHandler(console_handler)

    try:
        target_dir = Path(logs_dir).expanduser() if logs_dir else cm.get_logs_dir()
        target_dir.mkdir(parents=True, exist_ok=True)
        log_file = target_dir / LOG_FILE_NAME
        file_handler = TimedRotatingFileHandler(log_file, when="midnight", interval=1, backupCount=30, encoding="utf-8")
    except OSError as e:
        app_logger.error("File logging disabled: %s", e)
        return None

    file_handler.setFormatter(FILE_FORMAT)
    file_handler.setLevel(effective_level)
    app_logger.addHandler(file_handler)
    app_logger.info("Logging initialized (Level: %s) -> %s", level_name, log_file)
    return log_file


def summarize_for_debug(data: str, max_chars: int = 200) -> str:
    """Shorten a large string (e.g. a response body) for debug logs."""
    if not data or len(data) <= max_chars:
        return data
    return f"{data[:max_chars]}... [TRUNCATED, total {len(data)} chars]"


def get_logger(name: str) -> logging.Logger:
    """Return `name` as a child of the `iiif_random` logger; no handlers are touched."""
    if name != APP_LOGGER_NAME and not name.startswith(f"{APP_LOGGER_NAME}."):
        name = f"{APP_LOGGER_NAME}.{name}"
    return logging.getLogger(name)
