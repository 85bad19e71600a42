"""Logging setup for the CLI and the background sync service.

Everything goes through the root logger: a Rich console handler at the
configured level and, optionally, a rotating file under ``<data_dir>/logs``
that always records DEBUG so a failed sync pass can be diagnosed afterwards.

Records may carry two extras that :class:`SeverityOverrideFilter` honours:

* ``force_level``: re-level this single record (``extra={"force_level": "ERROR"}``).
* ``log_category``: re-level by category using ``general.log_overrides`` from
  the configuration, e.g. ``{"http": "DEBUG"}``.
"""
from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Mapping

from rich.logging import RichHandler

from opentasks_sync.core.config import AppConfig

VALID_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")

FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Transport and storage libraries only log usefully when debugging a sync pass
LIBRARY_LOGGERS = ("httpx", "httpcore", "apscheduler", "aiosqlite")

_active_level = "INFO"


def resolve_level(value: str | int) -> int:
    """Turn a level name (any case) or number into a logging level number.

    Raises:
        ValueError: ``value`` is not one of :data:`VALID_LEVELS`.
    """
    if isinstance(value, int):
        return value
    name = str(value).strip().upper()
    if name not in VALID_LEVELS:
        raise ValueError(f"Unsupported log level: {value}")
    return logging.getLevelName(name)


def _relevel(record: logging.LogRecord, levelno: int) -> None:
    record.levelno = levelno
    record.levelname = logging.getLevelName(levelno)


class SeverityOverrideFilter(logging.Filter):
    """Re-level records by ``force_level`` or by their ``log_category`` extra."""

    def __init__(self, category_levels: Mapping[str, str]):
        super().__init__()
        self.category_levels = {name: resolve_level(level) for name, level in category_levels.items()}

    def filter(self, record: logging.LogRecord) -> bool:
        forced = getattr(record, "force_level", None)
        if forced:
            _relevel(record, resolve_level(forced))
        elif getattr(record, "log_category", None) in self.category_levels:
            _relevel(record, self.category_levels[record.log_category])
        # Never drops a record, only changes its severity
        return True


def log_file_path(config: AppConfig) -> Path:
    return config.general.data_dir / "logs" / config.general.log_file_name


def _make_console_handler(levelno: int) -> RichHandler:
    handler = RichHandler(rich_tracebacks=True, show_time=False, show_path=False)
    handler.setLevel(levelno)
    return handler


def _make_file_handler(config: AppConfig) -> logging.handlers.RotatingFileHandler:
    path = log_file_path(config)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=config.general.log_file_max_bytes,
        backupCount=config.general.log_file_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATE_FORMAT))
    return handler


def _apply_library_levels(levelno: int) -> None:
    library_level = logging.DEBUG if levelno <= logging.DEBUG else logging.WARNING
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)


def setup_logging(config: AppConfig, *, level_name: str | None = None, log_to_file: bool = True) -> Path | None:
    """Replace the root logger's handlers according to ``config``.

    Args:
        config: Application configuration; ``general`` supplies the level,
            category overrides and log file settings.
        level_name: Overrides ``general.log_level`` (the CLI ``--log-level``).
        log_to_file: Set to False to log to the console only.

    Returns:
        Path of the rotating log file, or None when ``log_to_file`` is False.
    """
    global _active_level

    levelno = resolve_level(level_name or config.general.log_level)
    _active_level = logging.getLevelName(levelno)

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    root.setLevel(levelno)

    handlers: list[logging.Handler] = [_make_console_handler(levelno)]
    if log_to_file:
        handlers.append(_make_file_handler(config))

    overrides = SeverityOverrideFilter(config.general.log_overrides)
    for handler in handlers:
        handler.addFilter(overrides)
        root.addHandler(handler)

    logging.captureWarnings(True)
    _apply_library_levels(levelno)

    return log_file_path(config) if log_to_file else None


def set_logging_level(level_name: str) -> None:
    """Switch the running process to ``level_name``.

    The file handler keeps recording DEBUG; console handlers follow.
    """
    global _active_level

    levelno = resolve_level(level_name)
    _active_level = logging.getLevelName(levelno)

    root = logging.getLogger()
    root.setLevel(levelno)
    for handler in root.handlers:
        if not isinstance(handler, logging.handlers.RotatingFileHandler):
            handler.setLevel(levelno)
    _apply_library_levels(levelno)


def get_current_log_level() -> str:
    return _active_level
