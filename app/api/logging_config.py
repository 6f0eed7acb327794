"""Logging configuration for the Volume Backup Service.

Configures the root logger with:
- A custom TRACE level (used for raw restic output lines).
- Console output.
- Size-rotated and daily-rotated log files, each with an error-only twin.

Calling `configure_logging` more than once is a no-op.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from pathlib import Path
from typing import List, Optional


TRACE_LEVEL_NUM = 5

_CONFIGURED_FLAG = "_volume_backup_logging_configured"


def _install_trace_level() -> None:
    """Install the TRACE logging level and `Logger.trace` helper."""

    if logging.getLevelName(TRACE_LEVEL_NUM) != "TRACE":
        logging.addLevelName(TRACE_LEVEL_NUM, "TRACE")

    if not hasattr(logging.Logger, "trace"):

        def trace(self: logging.Logger, message: str, *args, **kwargs) -> None:
            if self.isEnabledFor(TRACE_LEVEL_NUM):
                self._log(TRACE_LEVEL_NUM, message, args, **kwargs)

        logging.Logger.trace = trace  # type: ignore[attr-defined]


def resolve_log_level(log_level: str, *, debug: bool = False) -> int:
    """Translate a level name into a numeric logging level.

    Args:
        log_level: Level name (e.g. INFO, DEBUG, TRACE). Empty means default.
        debug: When True and log_level is empty, DEBUG is used.

    Returns:
        int: Numeric level.

    Raises:
        ValueError: When the level name is unknown.
    """

    name = str(log_level or "").strip().upper()
    if not name:
        name = "DEBUG" if debug else "INFO"

    if name == "TRACE":
        return TRACE_LEVEL_NUM

    level = getattr(logging, name, None)
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {log_level}")
    return level


def _file_handlers(
    log_dir: Path,
    log_filename: str,
    level: int,
    max_bytes: int,
    backup_count: int,
) -> List[logging.Handler]:
    stem = Path(log_filename).stem
    suffix = Path(log_filename).suffix or ".log"

    handlers: List[logging.Handler] = []
    for name, handler_level in ((log_filename, level), (f"{stem}.error{suffix}", logging.ERROR)):
        handler = RotatingFileHandler(
            filename=str(log_dir / name),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        handler.setLevel(handler_level)
        handlers.append(handler)

    for name, handler_level in ((f"{stem}.day{suffix}", level), (f"{stem}.day.error{suffix}", logging.ERROR)):
        handler = TimedRotatingFileHandler(
            filename=str(log_dir / name),
            when="midnight",
            backupCount=backup_count,
            utc=True,
            encoding="utf-8",
        )
        handler.suffix = "%Y-%m-%d"
        handler.setLevel(handler_level)
        handlers.append(handler)

    return handlers


def configure_logging(
    *,
    log_dir: str = "/app/logs",
    log_level: str = "INFO",
    debug: bool = False,
    log_filename: str = "volume-backup.log",
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """Configure application-wide logging.

    Args:
        log_dir: Directory where log files are stored.
        log_level: Root log level name (e.g. INFO, DEBUG, TRACE).
        debug: When True, defaults to DEBUG unless log_level explicitly overrides it.
        log_filename: Log file name (within log_dir).
        max_bytes: Rotate the log file after this size.
        backup_count: Number of rotated files to keep.

    Raises:
        ValueError: When the provided log_level is invalid.
    """

    _install_trace_level()

    root = logging.getLogger()
    if getattr(root, _CONFIGURED_FLAG, False):
        return

    resolved_level = resolve_log_level(log_level, debug=debug)
    root.setLevel(resolved_level)

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(resolved_level)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    try:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        for handler in _file_handlers(directory, log_filename, resolved_level, max_bytes, backup_count):
            handler.setFormatter(formatter)
            root.addHandler(handler)
    except OSError:
        logging.getLogger(__name__).warning(
            "Failed to configure file logging under %s; continuing with console-only logging",
            log_dir,
        )

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "apscheduler"):
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.propagate = True

    # APScheduler logs every job execution at INFO.
    logging.getLogger("apscheduler.executors").setLevel(max(resolved_level, logging.WARNING))

    logging.captureWarnings(True)
    setattr(root, _CONFIGURED_FLAG, True)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger instance."""

    return logging.getLogger(name or __name__)
