"""
Exception hierarchy for the key router.

Every error raised to callers derives from KeyRouterError, which keeps the
underlying driver exception (if any) and logs itself on construction.

Validation errors (InvalidKeyFormatError, ClusterKeyOverflowError,
InvalidRecordValueError, InvalidColumnSpecError) are raised before the store
is contacted for the operation that failed.
"""

import logging
from typing import Any

logger = logging.getLogger(__name__)


class KeyRouterError(Exception):
    """
    Base exception for key router errors.

    Wraps underlying Cassandra driver exceptions with additional context
    and ensures proper logging.
    """

    log_level = logging.ERROR

    def __init__(self, message: str, original_error: Exception | None = None):
        """
        Initialize router error.

        Args:
            message: Human-readable error message
            original_error: Original exception that caused this error
        """
        super().__init__(message)
        self.original_error = original_error
        self.message = message

        if original_error:
            logger.log(
                self.log_level,
                f"{self.__class__.__name__}: {message}",
                exc_info=original_error,
                extra={
                    "error_type": type(original_error).__name__,
                    "error_message": str(original_error)
                }
            )
        else:
            logger.log(self.log_level, f"{self.__class__.__name__}: {message}")

    def __str__(self) -> str:
        if self.original_error:
            return f"{self.message} (caused by {type(self.original_error).__name__}: {self.original_error})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, original_error={self.original_error!r})"


# ============================================================================
# Validation errors (never reach the store)
# ============================================================================

class InvalidKeyFormatError(KeyRouterError):
    """
    Raised when a hierarchical key is malformed.

    Covers empty keys, disallowed characters, empty segments, illegal table
    names and segments that cannot be coerced to their column type.
    """

    log_level = logging.DEBUG

    def __init__(self, key: Any, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Key ({key!r}) has invalid format: {reason}")


class ClusterKeyOverflowError(KeyRouterError):
    """Raised when a key has more cluster segments than the table can hold."""

    log_level = logging.DEBUG

    def __init__(self, key: str, table: str, cluster_column_count: int, segment_count: int):
        self.key = key
        self.table = table
        self.cluster_column_count = cluster_column_count
        self.segment_count = segment_count
        super().__init__(
            f"Key ({key}) has {segment_count} cluster segments but table '{table}' "
            f"defines {cluster_column_count} cluster columns"
        )


class InvalidRecordValueError(KeyRouterError):
    """Raised when a record value cannot be serialized into the payload column."""

    log_level = logging.DEBUG

    def __init__(self, key: str, original_error: Exception | None = None):
        self.key = key
        super().__init__(f"Value for key ({key}) is not serializable", original_error)


class InvalidColumnSpecError(KeyRouterError):
    """Raised when a column specification for table creation is unusable."""

    def __init__(self, table: str, reason: str, original_error: Exception | None = None):
        self.table = table
        self.reason = reason
        super().__init__(f"Invalid column specification for table '{table}': {reason}", original_error)


# ============================================================================
# Schema errors
# ============================================================================

class CatalogUnavailableError(KeyRouterError):
    """
    Raised when table metadata cannot be read from the schema catalog.

    Never cached: the next resolution of the same table retries from scratch.
    """

    def __init__(self, table: str, message: str | None = None, original_error: Exception | None = None):
        self.table = table
        super().__init__(message or f"Failed to retrieve table metadata for '{table}'", original_error)


class IncompatibleSchemaError(CatalogUnavailableError):
    """Raised when an existing table cannot be used for key routing."""

    def __init__(self, table: str, reason: str):
        self.reason = reason
        super().__init__(table, f"Table '{table}' has an incompatible schema: {reason}")


class ProvisioningFailedError(KeyRouterError):
    """Raised when a table could not be created, or converged to a different schema."""

    def __init__(self, table: str, message: str | None = None, original_error: Exception | None = None):
        self.table = table
        super().__init__(message or f"Failed to create table '{table}'", original_error)


# ============================================================================
# Store operation errors
# ============================================================================

class StoreOperationError(KeyRouterError):
    """Base class for failures of a single row operation against the store."""

    operation = "operation"

    def __init__(self, key: str, table: str, original_error: Exception | None = None):
        self.key = key
        self.table = table
        super().__init__(f"Store {self.operation} failed for key ({key}) in table '{table}'", original_error)


class StoreWriteError(StoreOperationError):
    """Raised when writing a row fails."""

    operation = "write"


class StoreReadError(StoreOperationError):
    """Raised when reading a row fails or its payload cannot be decoded."""

    operation = "read"


class StoreDeleteError(StoreOperationError):
    """Raised when deleting a row fails."""

    operation = "delete"


class MultipleRecordsFoundError(KeyRouterError):
    """
    Raised when a fully bound key matches more than one row.

    Every primary key column is pinned for a lookup, so this signals a
    schema/data inconsistency rather than a normal condition.
    """

    log_level = logging.CRITICAL

    def __init__(self, key: str, table: str, row_count: int):
        self.key = key
        self.table = table
        self.row_count = row_count
        super().__init__(f"More than one record found for key: {key} ({row_count} rows in '{table}')")


# ============================================================================
# Connection lifecycle errors
# ============================================================================

class StoreConnectionError(KeyRouterError):
    """
    Raised when connecting to the cluster fails.

    Terminal for the connector instance: it does not reconnect.
    """

    def __init__(self, message: str = "Failed to connect to the cluster", original_error: Exception | None = None):
        super().__init__(message, original_error)


class ConnectorNotReadyError(KeyRouterError):
    """Raised when an operation is requested while the connector is not READY."""

    log_level = logging.WARNING

    def __init__(self, state: str):
        self.state = state
        super().__init__(f"Connector is not ready (state={state})")


class ConnectorStateError(KeyRouterError):
    """Raised on an illegal lifecycle transition."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Illegal connector state transition: {current} -> {requested}")
