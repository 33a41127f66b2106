"""
Configuration management for KeyRouterConnector.

This module provides:
- Pydantic-based configuration validation
- Default table column specification
- Authentication, retry, pool, metrics and tracing sections
- Loading from environment variables
"""

import os
import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict

from vertector_keyrouter.binder import OverflowPolicy
from vertector_keyrouter.keys import is_valid_table_name
from vertector_keyrouter.schema import COLUMN_NAME_PATTERN, DEFAULT_PAYLOAD_COLUMN, ColumnSpec, ColumnType

logger = logging.getLogger(__name__)


# ============================================================================
# Configuration Models
# ============================================================================

class TableSpecConfig(BaseModel):
    """
    Column spec used for tables created on first use.

    Either a uniform layout (``partition_column`` plus ``cluster_columns``
    columns named ``{cluster_column_prefix}1..N``, all of ``column_type``)
    or an explicit typed ``columns`` list whose first entry is the
    partition column.
    """

    partition_column: str = Field(
        default="pk",
        pattern=COLUMN_NAME_PATTERN,
        description="Name of the partition column"
    )

    cluster_columns: int = Field(
        default=3,
        ge=0,
        le=32,
        description="Number of cluster columns"
    )

    cluster_column_prefix: str = Field(
        default="k",
        pattern=r"^[A-Za-z_][A-Za-z0-9_]{0,40}$",
        description="Prefix of generated cluster column names"
    )

    column_type: ColumnType = Field(
        default=ColumnType.TEXT,
        description="Type of every generated key column"
    )

    columns: Optional[list[ColumnSpec]] = Field(
        default=None,
        description="Explicit column list, overrides the uniform layout"
    )

    @field_validator('columns')
    @classmethod
    def validate_columns(cls, v):
        if v is not None:
            if not v:
                raise ValueError("Explicit column list must contain a partition column")
            names = [col.name for col in v]
            if len(set(names)) != len(names):
                raise ValueError(f"Duplicate column names: {names}")
        return v

    def to_columns(self) -> list[ColumnSpec]:
        """Column list in primary key order."""
        if self.columns is not None:
            return list(self.columns)

        return [ColumnSpec(name=self.partition_column, type=self.column_type)] + [
            ColumnSpec(name=f"{self.cluster_column_prefix}{i}", type=self.column_type)
            for i in range(1, self.cluster_columns + 1)
        ]


class AuthConfig(BaseModel):
    """Authentication configuration."""

    enabled: bool = Field(
        default=False,
        description="Enable authentication"
    )

    username: Optional[str] = Field(
        default=None,
        description="Database username"
    )

    password: Optional[str] = Field(
        default=None,
        description="Database password"
    )

    @model_validator(mode='after')
    def validate_auth_config(self):
        if self.enabled and (not self.username or not self.password):
            raise ValueError("Authentication requires username and password")
        return self


class RetryConfig(BaseModel):
    """
    Retry configuration for the startup connection attempt.

    Row operations are never retried.
    """

    max_attempts: int = Field(
        default=1,
        ge=1,
        le=10,
        description="Connection attempts before giving up"
    )

    initial_delay: float = Field(
        default=0.5,
        ge=0.0,
        le=5.0,
        description="Initial retry delay in seconds"
    )

    backoff_factor: float = Field(
        default=2.0,
        ge=1.0,
        le=10.0,
        description="Exponential backoff multiplier"
    )

    max_delay: float = Field(
        default=10.0,
        ge=0.0,
        le=60.0,
        description="Maximum retry delay in seconds"
    )


class PoolConfig(BaseModel):
    """Driver connection settings."""

    executor_threads: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Number of driver executor threads"
    )

    connect_timeout: float = Field(
        default=5.0,
        gt=0.0,
        le=120.0,
        description="Initial connection timeout in seconds"
    )


class MetricsConfig(BaseModel):
    """Metrics configuration."""

    enabled: bool = Field(
        default=True,
        description="Enable metrics collection"
    )

    percentiles: list[float] = Field(
        default=[0.5, 0.95, 0.99],
        description="Latency percentiles to track (p50, p95, p99)"
    )

    @field_validator('percentiles')
    @classmethod
    def validate_percentiles(cls, v):
        for p in v:
            if not 0.0 < p <= 1.0:
                raise ValueError(f"Percentile must be in (0.0, 1.0], got {p}")
        return sorted(v)


class TracingConfig(BaseModel):
    """OpenTelemetry tracing configuration."""

    enabled: bool = Field(
        default=False,
        description="Wrap routed operations in OpenTelemetry spans"
    )

    service_name: str = Field(
        default="keyrouter",
        description="Service name reported on spans"
    )

    install_provider: bool = Field(
        default=False,
        description="Install an SDK tracer provider exporting to the console"
    )


class KeyRouterConfig(BaseModel):
    """
    Complete configuration for KeyRouterConnector.

    Example usage:
        config = KeyRouterConfig(
            contact_points=["scylla1.example.com"],
            keyspace="deepstream",
            table_spec=TableSpecConfig(cluster_columns=2),
            overflow_policy=OverflowPolicy.REJECT,
        )

        async with KeyRouterConnector.from_config(config) as connector:
            await connector.aput("user/ryan", {"name": "Ryan"})
    """

    # Connection settings
    contact_points: list[str] = Field(
        default=["127.0.0.1"],
        description="Contact points (hostnames or IPs)"
    )

    port: int = Field(
        default=9042,
        ge=1,
        le=65535,
        description="Native transport port"
    )

    keyspace: str = Field(
        description="Keyspace holding routed tables"
    )

    request_timeout: float = Field(
        default=10.0,
        gt=0.0,
        le=300.0,
        description="Driver request timeout in seconds"
    )

    # Routing
    default_table: str = Field(
        default="global",
        description="Table for keys with a single segment"
    )

    table_spec: TableSpecConfig = Field(
        default_factory=TableSpecConfig,
        description="Column spec for tables created on first use"
    )

    overflow_policy: OverflowPolicy = Field(
        default=OverflowPolicy.SPILL,
        description="Handling of keys deeper than the table's cluster columns"
    )

    payload_column: str = Field(
        default=DEFAULT_PAYLOAD_COLUMN,
        pattern=COLUMN_NAME_PATTERN,
        description="Column holding the serialized record"
    )

    verify_provisioning: bool = Field(
        default=True,
        description="Read the catalog back after creating a table"
    )

    # Security
    auth: AuthConfig = Field(
        default_factory=AuthConfig,
        description="Authentication configuration"
    )

    # Resilience
    retry: RetryConfig = Field(
        default_factory=RetryConfig,
        description="Startup connection retry configuration"
    )

    # Performance
    pool: PoolConfig = Field(
        default_factory=PoolConfig,
        description="Driver connection settings"
    )

    # Monitoring
    metrics: MetricsConfig = Field(
        default_factory=MetricsConfig,
        description="Metrics configuration"
    )

    tracing: TracingConfig = Field(
        default_factory=TracingConfig,
        description="Tracing configuration"
    )

    alerting_enabled: bool = Field(
        default=True,
        description="Record alerts for connection failures and duplicate rows"
    )

    model_config = ConfigDict(validate_assignment=True)

    @field_validator('contact_points')
    @classmethod
    def validate_contact_points(cls, v):
        if not v:
            raise ValueError("At least one contact point required")
        return v

    @field_validator('keyspace')
    @classmethod
    def validate_keyspace(cls, v):
        if not v or not v.replace('_', '').isalnum():
            raise ValueError("Keyspace must be alphanumeric with optional underscores")
        return v

    @field_validator('default_table')
    @classmethod
    def validate_default_table(cls, v):
        if not is_valid_table_name(v):
            raise ValueError(f"Default table '{v}' is not a valid table name")
        return v

    @model_validator(mode='after')
    def validate_payload_column(self):
        names = [col.name for col in self.table_spec.to_columns()]
        if self.payload_column in names:
            raise ValueError(
                f"Payload column '{self.payload_column}' collides with a key column of the table spec"
            )
        return self


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def load_config_from_env() -> KeyRouterConfig:
    """
    Load configuration from environment variables.

    Environment variables:
        KEYROUTER_CONTACT_POINTS: Comma-separated list of contact points
        KEYROUTER_PORT: Port (default: 9042)
        KEYROUTER_KEYSPACE: Keyspace name (default: deepstream)
        KEYROUTER_DEFAULT_TABLE: Table for single-segment keys (default: global)
        KEYROUTER_OVERFLOW_POLICY: spill or reject (default: spill)
        KEYROUTER_CLUSTER_COLUMNS: Cluster column count of created tables (default: 3)
        KEYROUTER_COLUMN_TYPE: Key column type of created tables (default: text)
        KEYROUTER_PAYLOAD_COLUMN: Payload column name (default: data)
        KEYROUTER_REQUEST_TIMEOUT: Driver request timeout in seconds
        KEYROUTER_CONNECT_ATTEMPTS: Startup connection attempts (default: 1)
        KEYROUTER_AUTH_ENABLED: Enable authentication (true/false)
        KEYROUTER_USERNAME: Database username
        KEYROUTER_PASSWORD: Database password
        KEYROUTER_METRICS_ENABLED: Enable metrics (default: true)
        KEYROUTER_TRACING_ENABLED: Enable tracing (default: false)

    Returns:
        Validated configuration
    """
    contact_points_str = os.getenv("KEYROUTER_CONTACT_POINTS", "127.0.0.1")
    contact_points = [cp.strip() for cp in contact_points_str.split(",") if cp.strip()]

    config = KeyRouterConfig(
        contact_points=contact_points,
        port=int(os.getenv("KEYROUTER_PORT", "9042")),
        keyspace=os.getenv("KEYROUTER_KEYSPACE", "deepstream"),
        request_timeout=float(os.getenv("KEYROUTER_REQUEST_TIMEOUT", "10.0")),
        default_table=os.getenv("KEYROUTER_DEFAULT_TABLE", "global"),
        overflow_policy=OverflowPolicy(os.getenv("KEYROUTER_OVERFLOW_POLICY", "spill").lower()),
        payload_column=os.getenv("KEYROUTER_PAYLOAD_COLUMN", DEFAULT_PAYLOAD_COLUMN),
        table_spec=TableSpecConfig(
            cluster_columns=int(os.getenv("KEYROUTER_CLUSTER_COLUMNS", "3")),
            column_type=ColumnType(os.getenv("KEYROUTER_COLUMN_TYPE", "text").lower()),
        ),
        auth=AuthConfig(
            enabled=_env_flag("KEYROUTER_AUTH_ENABLED"),
            username=os.getenv("KEYROUTER_USERNAME"),
            password=os.getenv("KEYROUTER_PASSWORD"),
        ),
        retry=RetryConfig(
            max_attempts=int(os.getenv("KEYROUTER_CONNECT_ATTEMPTS", "1")),
        ),
        metrics=MetricsConfig(
            enabled=_env_flag("KEYROUTER_METRICS_ENABLED", "true"),
        ),
        tracing=TracingConfig(
            enabled=_env_flag("KEYROUTER_TRACING_ENABLED"),
        ),
    )

    logger.info(f"Loaded configuration for keyspace '{config.keyspace}' ({len(config.contact_points)} contact points)")
    return config
