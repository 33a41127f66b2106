"""
Schema resolution: cache, then catalog, then automatic provisioning.
"""

import asyncio
import logging
from typing import Any, Iterable

from vertector_keyrouter.backend import StoreBackend
from vertector_keyrouter.errors import CatalogUnavailableError, ProvisioningFailedError
from vertector_keyrouter.observability import EnhancedMetrics
from vertector_keyrouter.provisioner import TableProvisioner
from vertector_keyrouter.schema import ColumnSpec, SchemaCache, TableSchema, schema_from_catalog

logger = logging.getLogger(__name__)


class SchemaResolver:
    """
    Returns the schema of a table, creating the table if necessary.

    Concurrent first-time resolutions of the same table share one in-flight
    lookup, so a table is read from the catalog (and provisioned) once and
    every waiter observes the same schema or the same error. Failures are
    never cached; the next call retries from scratch.
    """

    def __init__(
        self,
        backend: StoreBackend,
        keyspace: str,
        cache: SchemaCache,
        provisioner: TableProvisioner,
        default_columns: Iterable[ColumnSpec],
        *,
        payload_column: str = "data",
        metrics: EnhancedMetrics | None = None,
    ):
        self.backend = backend
        self.keyspace = keyspace
        self.cache = cache
        self.provisioner = provisioner
        self.default_columns = list(default_columns)
        self.payload_column = payload_column
        self.metrics = metrics
        self._inflight: dict[str, asyncio.Task] = {}

    async def resolve(self, table: str) -> TableSchema:
        """
        Get the schema of a table.

        Raises:
            CatalogUnavailableError: If the catalog cannot be read or the table is unusable
            ProvisioningFailedError: If the table had to be created and creation failed
        """
        schema = self.cache.lookup(table)
        if schema is not None:
            if self.metrics:
                self.metrics.record_cache_hit()
            return schema

        if self.metrics:
            self.metrics.record_cache_miss()

        task = self._inflight.get(table)
        if task is None or task.done():
            task = asyncio.ensure_future(self._load(table))
            self._inflight[table] = task
            task.add_done_callback(lambda finished: self._forget(table, finished))
        else:
            logger.debug(f"Joining in-flight schema resolution for table '{table}'")

        # Shielded so a cancelled caller does not cancel the shared lookup
        return await asyncio.shield(task)

    def _forget(self, table: str, finished: asyncio.Task) -> None:
        if self._inflight.get(table) is finished:
            del self._inflight[table]
        if not finished.cancelled():
            # Mark the exception retrieved even if every waiter was cancelled
            finished.exception()

    async def _load(self, table: str) -> TableSchema:
        try:
            catalog_columns = await self.backend.get_table_schema(self.keyspace, table)
        except Exception as e:
            raise CatalogUnavailableError(table, original_error=e)

        if catalog_columns is not None:
            schema = schema_from_catalog(table, catalog_columns, self.payload_column)
            logger.info(
                f"Discovered table '{table}': partition={schema.partition_column.name}, "
                f"cluster={[col.name for col in schema.cluster_columns]}"
            )
        else:
            logger.info(f"Table '{table}' does not exist, creating it with the default column spec")
            schema = await self.provisioner.provision(table, self.default_columns)

        return self.cache.store(table, schema)

    async def create(
        self,
        table: str,
        columns: Iterable[ColumnSpec | dict[str, Any]],
    ) -> TableSchema:
        """
        Provision a table with an explicit column spec and cache its schema.

        Raises:
            ProvisioningFailedError: If a different schema is already known for the table
        """
        schema = await self.provisioner.provision(table, columns)
        cached = self.cache.store(table, schema)
        if not cached.matches(schema):
            raise ProvisioningFailedError(
                table,
                f"Table '{table}' already has a different schema: "
                f"known {cached.describe()}, requested {schema.describe()}",
            )
        return cached
