"""Logging configuration utilities for the Hub."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path


DEFAULT_LOG_FILENAME = "chat-hub.log"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

ANSI_RESET = "\x1b[0m"
ANSI_COLORS = {
    logging.DEBUG: "\x1b[36m",
    logging.INFO: "\x1b[32m",
    logging.WARNING: "\x1b[33m",
    logging.ERROR: "\x1b[31m",
    logging.CRITICAL: "\x1b[35m",
}

# Dependency loggers that only get INFO in debug mode
NOISY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite")


def purge_rotated_logs(log_file: Path, retention_days: int) -> int:
    """Delete rotated siblings of `log_file` older than the retention window.

    Args:
        log_file: Active log file path.
        retention_days: Maximum age in days; 0 disables purging.

    Returns:
        The number of files removed.
    """
    if retention_days <= 0:
        return 0

    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
    removed = 0
    for path in log_file.parent.glob(f"{log_file.name}.*"):
        try:
            modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            if modified < cutoff:
                path.unlink()
                removed += 1
        except OSError:
            continue
    return removed


class RetentionRotatingFileHandler(RotatingFileHandler):
    """Size-rotating file handler that purges expired rotations hourly."""

    CLEANUP_INTERVAL_SECONDS = 3600

    def __init__(self, filename: Path, max_bytes: int, retention_days: int) -> None:
        super().__init__(filename, maxBytes=max_bytes, backupCount=1000, encoding="utf-8")
        self._retention_days = retention_days
        self._last_cleanup = 0.0

    def emit(self, record: logging.LogRecord) -> None:
        now = time.time()
        if now - self._last_cleanup >= self.CLEANUP_INTERVAL_SECONDS:
            self._last_cleanup = now
            purge_rotated_logs(Path(self.baseFilename), self._retention_days)
        super().emit(record)


class ColorFormatter(logging.Formatter):
    """Formatter that colors the level name for terminals."""

    def __init__(self, fmt: str, use_color: bool = True) -> None:
        super().__init__(fmt)
        self._use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        color = ANSI_COLORS.get(record.levelno) if self._use_color else None
        if not color:
            return super().format(record)

        levelname = record.levelname
        record.levelname = f"{color}{levelname}{ANSI_RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def configure_logging(
    log_dir: Path,
    log_max_bytes: int,
    log_retention_days: int,
    debug: bool,
    uvicorn_log_level: str = "info",
) -> Path:
    """Configure Hub logging to write to a rotating file and stderr.

    Args:
        log_dir: Directory to store log files.
        log_max_bytes: Maximum size of a log file before rotation.
        log_retention_days: Days to keep rotated log files.
        debug: Whether to enable debug-level logging.
        uvicorn_log_level: Log level for uvicorn loggers (default: info).

    Returns:
        The path to the active log file.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / DEFAULT_LOG_FILENAME
    log_level = logging.DEBUG if debug else logging.INFO

    file_handler = RetentionRotatingFileHandler(log_file, log_max_bytes, log_retention_days)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    stream_handler = logging.StreamHandler()
    is_tty = getattr(stream_handler.stream, "isatty", lambda: False)()
    stream_handler.setFormatter(ColorFormatter(LOG_FORMAT, use_color=is_tty))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    for handler in (file_handler, stream_handler):
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.INFO if debug else logging.WARNING)

    uvi_level = getattr(logging, uvicorn_log_level.upper(), logging.INFO)
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvi_logger = logging.getLogger(logger_name)
        uvi_logger.handlers.clear()
        uvi_logger.propagate = True
        uvi_logger.setLevel(uvi_level)

    removed = purge_rotated_logs(log_file, log_retention_days)
    if removed:
        logging.getLogger(__name__).info("Purged %s old log files from %s", removed, log_dir)

    return log_file
