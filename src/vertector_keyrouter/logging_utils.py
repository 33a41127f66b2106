"""
Structured logging utilities for the key router.

Provides:
- Structured JSON logging
- Key/table context tracking
- Performance logging
"""

import json
import logging
import time
from contextvars import ContextVar
from typing import Any

# Context variables describing the routed operation in flight
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
operation_var: ContextVar[str] = ContextVar("operation", default="")
key_var: ContextVar[str] = ContextVar("key", default="")
table_var: ContextVar[str] = ContextVar("table", default="")

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs one JSON object per line with:
    - timestamp, level, logger, message
    - request_id / operation / key / table (if set)
    - fields passed through ``extra``
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name, var in (
            ("request_id", request_id_var),
            ("operation", operation_var),
            ("key", key_var),
            ("table", table_var),
        ):
            value = var.get()
            if value:
                log_data[name] = value

        for name, value in record.__dict__.items():
            if name not in _RESERVED_ATTRS and not name.startswith("_"):
                log_data[name] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class PerformanceLogger:
    """
    Performance logging context manager.

    Logs operation duration and outcome.

    Example:
        async with PerformanceLogger("provision_table", logger=logger, table="user"):
            await backend.create_table_if_not_exists(...)
    """

    def __init__(self, operation: str, logger: logging.Logger, **context: Any):
        self.operation = operation
        self.logger = logger
        self.context = context
        self.start_time: float | None = None
        self.duration_ms: float | None = None
        self._token = None

    async def __aenter__(self):
        self.start_time = time.perf_counter()
        self._token = operation_var.set(self.operation)

        self.logger.debug(
            f"Starting operation: {self.operation}",
            extra={"event": "operation_start", **self.context}
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000

        if exc_type:
            self.logger.error(
                f"Operation failed: {self.operation}",
                extra={
                    "event": "operation_failed",
                    "duration_ms": round(self.duration_ms, 2),
                    "error_type": exc_type.__name__,
                    "error": str(exc_val),
                    **self.context
                }
            )
        else:
            self.logger.info(
                f"Operation completed: {self.operation}",
                extra={
                    "event": "operation_completed",
                    "duration_ms": round(self.duration_ms, 2),
                    **self.context
                }
            )

        operation_var.reset(self._token)
        return False


def setup_production_logging(level: str = "INFO", format: str = "json") -> None:
    """
    Configure the root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json" or "text"
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if format.lower() == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )

    root_logger.addHandler(handler)


def log_with_context(logger: logging.Logger, level: str, message: str, **context):
    """Log a message with additional structured fields."""
    log_func = getattr(logger, level.lower())
    log_func(message, extra=context)
