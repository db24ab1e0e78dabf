"""
Logging for backup and restore runs.

Every line logged while a build or restore is in progress carries the run's
correlation fields:

    operation    "backup" or "restore"
    run_id       id of the build or restore run
    entity_type  entity type being fetched or imported, when there is one
    state        restore state machine state, on transition lines

Contexts nest: an inner CorrelationContext adds fields to the outer one.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

PACKAGE_LOGGER = "crm_backup"
CORRELATION_FIELDS = ("operation", "run_id", "entity_type", "state")


_open_contexts: ContextVar[Tuple["CorrelationContext", ...]] = ContextVar(
    "crm_backup_correlation", default=()
)


class CorrelationContext:
    """
    Context manager that tags log records with run correlation fields.

    Open contexts are tracked per thread and per asyncio task, so concurrent
    runs never see each other's fields.

    Example:
        >>> with CorrelationContext(operation="restore", run_id="restore-1a2b"):
        ...     with CorrelationContext(entity_type="users"):
        ...         logger.info("Importing")   # tagged with all three fields
    """

    def __init__(self, operation: Optional[str] = None, run_id: Optional[str] = None, **extra: Any):
        fields = {"operation": operation, "run_id": run_id, **extra}
        self.fields = {k: v for k, v in fields.items() if v is not None}
        self._token = None

    def __enter__(self) -> "CorrelationContext":
        self._token = _open_contexts.set(_open_contexts.get() + (self,))
        return self

    def __exit__(self, *args) -> None:
        _open_contexts.reset(self._token)
        self._token = None

    @classmethod
    def get_current(cls) -> Dict[str, Any]:
        """Merged fields of every open context, innermost winning."""
        merged: Dict[str, Any] = {}
        for context in _open_contexts.get():
            merged.update(context.fields)
        return merged


class CorrelationFilter(logging.Filter):
    """Copies the open correlation fields onto each record that lacks them."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, value in CorrelationContext.get_current().items():
            if not hasattr(record, name):
                setattr(record, name, value)
        return True


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line: level, logger, message, timestamp, any
    correlation fields and the formatted exception if there is one.
    """

    def __init__(self, include_timestamp: bool = True):
        super().__init__()
        self.include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.include_timestamp:
            entry["timestamp"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()

        for name in CORRELATION_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    TIMESTAMP [LEVEL] LOGGER - MESSAGE [run_id=... entity_type=...]
    """

    def __init__(self, include_timestamp: bool = True):
        fmt = "[%(levelname)s] %(name)s - %(message)s"
        if include_timestamp:
            fmt = "%(asctime)s " + fmt
        super().__init__(fmt, datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        tags = [
            f"{name}={getattr(record, name)}"
            for name in ("run_id", "entity_type")
            if getattr(record, name, None) is not None
        ]
        return f"{base} [{' '.join(tags)}]" if tags else base


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Get a logger, optionally forcing its level.

    Args:
        name: Logger name (typically __name__ of the calling module)
        level: Optional logging level override
    """
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    return logger


def configure_logging(
    level: int = logging.INFO,
    structured: bool = False,
    include_timestamp: bool = True,
) -> logging.Logger:
    """
    Attach a stderr handler to the package logger.

    Calling this again only updates the level; no second handler is added.

    Args:
        level: Logging level (default: INFO)
        structured: JSON lines instead of human-readable lines
        include_timestamp: Whether to include timestamps

    Returns:
        The package logger
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)

    if package_logger.handlers:
        for handler in package_logger.handlers:
            handler.setLevel(level)
        return package_logger

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(CorrelationFilter())
    if structured:
        handler.setFormatter(StructuredFormatter(include_timestamp=include_timestamp))
    else:
        handler.setFormatter(HumanReadableFormatter(include_timestamp=include_timestamp))
    package_logger.addHandler(handler)
    return package_logger


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    **extra: Any,
) -> None:
    """
    Log with the open correlation fields, plus any given as keywords.

    Useful where no CorrelationFilter is installed (e.g. caller-owned handlers).
    """
    fields = CorrelationContext.get_current()
    fields.update(extra)
    logger.log(level, message, extra=fields)
