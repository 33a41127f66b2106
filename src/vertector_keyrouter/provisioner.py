"""
Automatic table creation.

Requesting a key for a table that does not exist creates the table first,
using a DDL like this by default:

    CREATE TABLE test (pk text, k1 text, k2 text, k3 text, data text,
                       PRIMARY KEY ((pk), k1, k2, k3))

Other key column types can be used by changing the default column spec or by
calling ``KeyRouterConnector.create_table(name, columns)`` directly, eg.

    [{"name": "pk", "type": "uuid"}, {"name": "attr", "type": "int"}]
"""

import logging
from typing import Any, Iterable

from pydantic import ValidationError

from vertector_keyrouter.backend import StoreBackend
from vertector_keyrouter.errors import (
    CatalogUnavailableError,
    InvalidColumnSpecError,
    ProvisioningFailedError,
)
from vertector_keyrouter.logging_utils import PerformanceLogger
from vertector_keyrouter.observability import EnhancedMetrics
from vertector_keyrouter.schema import ColumnSpec, TableSchema, schema_from_catalog

logger = logging.getLogger(__name__)


def normalize_columns(
    table: str,
    columns: Iterable[ColumnSpec | dict[str, Any]],
    payload_column: str,
) -> list[ColumnSpec]:
    """
    Validate a column list for table creation.

    Accepts ColumnSpec instances or plain ``{"name": ..., "type": ...}`` dicts.

    Raises:
        InvalidColumnSpecError: If the list is empty, has duplicate names,
            unsupported types or collides with the payload column
    """
    try:
        specs = [
            col if isinstance(col, ColumnSpec) else ColumnSpec.model_validate(col)
            for col in columns
        ]
    except ValidationError as e:
        raise InvalidColumnSpecError(table, "unsupported column name or type", original_error=e)

    if not specs:
        raise InvalidColumnSpecError(table, "at least a partition column is required")

    names = [spec.name for spec in specs]
    if len(set(names)) != len(names):
        raise InvalidColumnSpecError(table, f"duplicate column names in {names}")

    if payload_column in names:
        raise InvalidColumnSpecError(
            table, f"key column collides with payload column '{payload_column}'"
        )

    return specs


class TableProvisioner:
    """Creates routed tables with create-if-not-exists semantics."""

    def __init__(
        self,
        backend: StoreBackend,
        keyspace: str,
        *,
        payload_column: str = "data",
        verify: bool = True,
        metrics: EnhancedMetrics | None = None,
    ):
        """
        Args:
            backend: Store backend issuing the DDL
            keyspace: Keyspace holding routed tables
            payload_column: Name of the serialized payload column
            verify: Read the catalog back after creation to detect a
                concurrent creator that used a different column spec
            metrics: Optional metrics sink
        """
        self.backend = backend
        self.keyspace = keyspace
        self.payload_column = payload_column
        self.verify = verify
        self.metrics = metrics

    async def provision(
        self,
        table: str,
        columns: Iterable[ColumnSpec | dict[str, Any]],
    ) -> TableSchema:
        """
        Create a table if it does not exist and return its schema.

        Raises:
            InvalidColumnSpecError: If the column spec is unusable
            ProvisioningFailedError: If creation fails or the table exists with a different schema
        """
        specs = normalize_columns(table, columns, self.payload_column)
        requested = TableSchema.from_columns(table, specs, self.payload_column)

        try:
            async with PerformanceLogger("provision_table", logger=logger, table=table):
                await self.backend.create_table_if_not_exists(
                    self.keyspace, table, specs, self.payload_column
                )
        except Exception as e:
            raise ProvisioningFailedError(table, original_error=e)

        if self.metrics:
            self.metrics.record_provisioned_table()

        if not self.verify:
            return requested

        try:
            catalog_columns = await self.backend.get_table_schema(self.keyspace, table)
        except Exception as e:
            raise ProvisioningFailedError(
                table, f"Table '{table}' was created but its metadata could not be read", original_error=e
            )

        if catalog_columns is None:
            logger.warning(f"Table '{table}' not visible in catalog yet, using requested schema")
            return requested

        try:
            actual = schema_from_catalog(table, catalog_columns, self.payload_column)
        except CatalogUnavailableError as e:
            raise ProvisioningFailedError(table, f"Table '{table}' exists with an unusable schema: {e}")

        if not actual.matches(requested):
            raise ProvisioningFailedError(
                table,
                f"Table '{table}' exists with a different schema: "
                f"requested {requested.describe()}, found {actual.describe()}"
            )

        return actual
