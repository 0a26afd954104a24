"""Structured logging utilities."""

import logging
import logging.handlers
import json
import sys
from contextvars import ContextVar
from typing import Any, Dict, Iterable, Optional
from datetime import datetime, timezone
from pathlib import Path

# Loggers that are chatty at INFO under the API server
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "multipart")

# Fields added by the innermost LogContext of the current thread
_context_fields: ContextVar[Dict[str, Any]] = ContextVar("ibackup2fs_log_fields", default={})
_factory_installed = False


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, with LogContext fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        entry.update(getattr(record, "context_fields", None) or {})
        entry.update(getattr(record, "extra_fields", None) or {})

        # Paths and enums in extra fields are stringified
        return json.dumps(entry, default=str)


class DetailedFormatter(logging.Formatter):
    """Timestamped formatter showing thread and call site."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


class SimpleFormatter(logging.Formatter):
    """Level, logger and message; the console default."""

    def __init__(self) -> None:
        super().__init__(fmt="%(levelname)-8s | %(name)s | %(message)s")


_FORMATTERS = {
    "json": StructuredFormatter,
    "detailed": DetailedFormatter,
    "simple": SimpleFormatter,
}


def setup_logging(
    level: str = "INFO",
    format: str = "simple",
    log_file: Optional[Path] = None,
    max_file_size_mb: int = 10,
    backup_count: int = 5,
    quiet_loggers: Iterable[str] = QUIET_LOGGERS,
) -> None:
    """Configure the root logger for the CLI or the API server.

    Replaces any handlers already on the root logger, so calling it twice
    does not duplicate output.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Console format (simple, detailed, json)
        log_file: Optional rotating log file, always written as JSON lines
        max_file_size_mb: Size at which the log file rotates
        backup_count: Rotated files kept
        quiet_loggers: Third-party loggers capped at WARNING
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.getLevelName(level.upper()))

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        if isinstance(handler, logging.FileHandler):
            handler.close()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(_FORMATTERS.get(format.lower(), SimpleFormatter)())
    root_logger.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(file_handler)

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)


def _install_record_factory() -> None:
    """Wrap the record factory once so records pick up context fields."""
    global _factory_installed
    if _factory_installed:
        return

    base_factory = logging.getLogRecordFactory()

    def record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = base_factory(*args, **kwargs)
        fields = _context_fields.get()
        if fields:
            # Kept apart from extra_fields, which callers pass via extra=
            record.context_fields = dict(fields)
        return record

    logging.setLogRecordFactory(record_factory)
    _factory_installed = True


class LogContext:
    """Attach structured fields to every record logged by the current thread.

    Contexts nest; inner fields win. Other threads are unaffected, so a
    run's id never leaks into API request logs. Worker threads enter their
    own LogContext.

    Example:
        with LogContext(logger, run_id=run.run_id):
            logger.info("Starting")  # carries run_id in JSON output
    """

    def __init__(self, logger: Optional[logging.Logger] = None, **fields: Any) -> None:
        self.logger = logger
        self.fields = fields
        self._token = None

    def __enter__(self) -> "LogContext":
        _install_record_factory()
        self._token = _context_fields.set({**_context_fields.get(), **self.fields})
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._token is not None:
            _context_fields.reset(self._token)
            self._token = None
