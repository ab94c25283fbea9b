"""
Process-wide logging configuration.

Besides the console and optional rotating file output, every record is
mirrored into the in-memory :class:`MessageLog` through a registered handler
so the status API can serve recent log lines.
"""

from __future__ import annotations

import datetime as dt
import logging
import logging.handlers
from pathlib import Path

from .contracts import LogLine
from .history import MessageLog

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


class MessageLogHandler(logging.Handler):
    """Append each formatted record to a :class:`MessageLog`."""

    def __init__(self, message_log: MessageLog, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self._message_log = message_log

    @property
    def message_log(self) -> MessageLog:
        return self._message_log

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
            if record.exc_info and record.exc_info[1] is not None:
                message = f"{message}: {record.exc_info[1]!r}"
            line = LogLine(
                timestamp=dt.datetime.fromtimestamp(record.created, tz=dt.UTC),
                level=record.levelname,
                logger=record.name,
                message=message,
            )
            self._message_log.append(line)
        except Exception:
            self.handleError(record)


def _ensure_rotating_file_handler(
    log_file: Path,
    *,
    max_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """Attach a rotating file handler pointed at ``log_file`` if missing."""
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create log directory %s: %s", log_file.parent, exc)
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            existing = getattr(handler, "baseFilename", None)
            if existing and Path(existing) == log_file.absolute():
                return

    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)


def _ensure_message_log_handler(message_log: MessageLog) -> None:
    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, MessageLogHandler) and handler.message_log is message_log:
            return
    root_logger.addHandler(MessageLogHandler(message_log))


def configure_logging(
    level: str,
    *,
    message_log: MessageLog | None = None,
    log_file: Path | None = None,
    max_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """Configure the root logger; safe to call more than once."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    logging.getLogger().setLevel(numeric_level)
    # Connection chatter from the HTTP client would flood the message log.
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))
    if message_log is not None:
        _ensure_message_log_handler(message_log)
    if log_file is not None:
        _ensure_rotating_file_handler(log_file, max_mb=max_mb, backup_count=backup_count)


__all__ = ["LOG_FORMAT", "MessageLogHandler", "configure_logging"]
