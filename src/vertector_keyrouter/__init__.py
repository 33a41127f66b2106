"""
Vertector Key Router - hierarchical keys over ScyllaDB/Cassandra tables.

Keys like ``user/ryan/settings`` are routed to table ``user``, partition
``ryan`` and cluster column ``settings``. Tables are discovered from the
schema catalog, or created on first use.
"""

# Set before the submodule imports, the connector reports it
__version__ = "1.0.0"

from vertector_keyrouter.connector import KeyRouterConnector

from vertector_keyrouter.backend import StoreBackend, ScyllaBackend

from vertector_keyrouter.keys import ParsedKey, parse_key, compose_key

from vertector_keyrouter.schema import (
    ColumnType,
    ColumnSpec,
    TableSchema,
    SchemaCache,
)

from vertector_keyrouter.binder import (
    OverflowPolicy,
    BoundRow,
    bind_row,
    row_to_key,
)

from vertector_keyrouter.lifecycle import (
    ConnectorState,
    StateChange,
    ConnectionLifecycle,
)

from vertector_keyrouter.errors import (
    KeyRouterError,
    InvalidKeyFormatError,
    ClusterKeyOverflowError,
    InvalidRecordValueError,
    InvalidColumnSpecError,
    CatalogUnavailableError,
    IncompatibleSchemaError,
    ProvisioningFailedError,
    StoreOperationError,
    StoreWriteError,
    StoreReadError,
    StoreDeleteError,
    MultipleRecordsFoundError,
    StoreConnectionError,
    ConnectorNotReadyError,
    ConnectorStateError,
)

from vertector_keyrouter.config import (
    KeyRouterConfig,
    TableSpecConfig,
    AuthConfig,
    RetryConfig,
    PoolConfig,
    MetricsConfig,
    TracingConfig,
    load_config_from_env,
)

from vertector_keyrouter.observability import (
    Tracer,
    EnhancedMetrics,
    AlertManager,
    AlertSeverity,
)

__all__ = [
    # Core connector
    "KeyRouterConnector",
    "StoreBackend",
    "ScyllaBackend",
    # Keys & schemas
    "ParsedKey",
    "parse_key",
    "compose_key",
    "ColumnType",
    "ColumnSpec",
    "TableSchema",
    "SchemaCache",
    "OverflowPolicy",
    "BoundRow",
    "bind_row",
    "row_to_key",
    # Lifecycle
    "ConnectorState",
    "StateChange",
    "ConnectionLifecycle",
    # Errors
    "KeyRouterError",
    "InvalidKeyFormatError",
    "ClusterKeyOverflowError",
    "InvalidRecordValueError",
    "InvalidColumnSpecError",
    "CatalogUnavailableError",
    "IncompatibleSchemaError",
    "ProvisioningFailedError",
    "StoreOperationError",
    "StoreWriteError",
    "StoreReadError",
    "StoreDeleteError",
    "MultipleRecordsFoundError",
    "StoreConnectionError",
    "ConnectorNotReadyError",
    "ConnectorStateError",
    # Configuration
    "KeyRouterConfig",
    "TableSpecConfig",
    "AuthConfig",
    "RetryConfig",
    "PoolConfig",
    "MetricsConfig",
    "TracingConfig",
    "load_config_from_env",
    # Observability
    "Tracer",
    "EnhancedMetrics",
    "AlertManager",
    "AlertSeverity",
]
