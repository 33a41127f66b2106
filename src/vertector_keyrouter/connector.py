"""
Record store facade.

KeyRouterConnector exposes put/fetch/remove over hierarchical keys. Every
operation parses the key, resolves (and if necessary creates) the table
schema, binds the key onto the table's primary key and runs a single row
statement against the backing store.

Example:
    async with KeyRouterConnector.from_contact_points(["127.0.0.1"], "deepstream") as connector:
        await connector.aput("user/ryan/settings", {"theme": "dark"})
        settings = await connector.afetch("user/ryan/settings")
        await connector.aremove("user/ryan/settings")
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Iterable, Optional

from tenacity import AsyncRetrying, before_sleep_log, stop_after_attempt, wait_exponential

from vertector_keyrouter import __version__
from vertector_keyrouter.backend import ScyllaBackend, StoreBackend
from vertector_keyrouter.binder import BoundRow, bind_row
from vertector_keyrouter.config import KeyRouterConfig, TableSpecConfig
from vertector_keyrouter.cql import CqlStatement
from vertector_keyrouter.errors import (
    ConnectorNotReadyError,
    ConnectorStateError,
    InvalidColumnSpecError,
    InvalidKeyFormatError,
    InvalidRecordValueError,
    MultipleRecordsFoundError,
    StoreConnectionError,
    StoreDeleteError,
    StoreReadError,
    StoreWriteError,
)
from vertector_keyrouter.keys import ParsedKey, is_valid_table_name, parse_key
from vertector_keyrouter.lifecycle import ConnectionLifecycle, ConnectorState, StateListener
from vertector_keyrouter.logging_utils import key_var, table_var
from vertector_keyrouter.observability import AlertManager, AlertSeverity, EnhancedMetrics, Tracer
from vertector_keyrouter.provisioner import TableProvisioner
from vertector_keyrouter.resolver import SchemaResolver
from vertector_keyrouter.schema import ColumnSpec, SchemaCache, TableSchema

logger = logging.getLogger(__name__)

Serializer = Callable[[Any], str]
Deserializer = Callable[[str], Any]


def backend_from_config(config: KeyRouterConfig) -> ScyllaBackend:
    """Build the driver backend described by a configuration."""
    return ScyllaBackend(
        config.contact_points,
        config.keyspace,
        port=config.port,
        username=config.auth.username if config.auth.enabled else None,
        password=config.auth.password if config.auth.enabled else None,
        request_timeout=config.request_timeout,
        connect_timeout=config.pool.connect_timeout,
        executor_threads=config.pool.executor_threads,
    )


class KeyRouterConnector:
    """
    Hierarchical key-value access to a wide-column store.

    Keys look like ``{table}/{partition}/{cluster_1}/.../{cluster_n}``. The
    first segment names the table, which is created with the default column
    spec the first time it is used. A key with a single segment lives in the
    default table.

    Features:
    - Per-table schema discovery with a process-local schema cache
    - Automatic table provisioning
    - Configurable handling of keys deeper than a table's cluster columns
    - Explicit lifecycle (CONNECTING, READY, CLOSING, CLOSED, FAILED)
    - Coroutine, future and callback styles for every operation
    - Metrics, tracing and alerting
    """

    name = "vertector-keyrouter"
    version = __version__

    def __init__(
        self,
        config: KeyRouterConfig,
        backend: StoreBackend | None = None,
        *,
        schema_cache: SchemaCache | None = None,
        serializer: Serializer = json.dumps,
        deserializer: Deserializer = json.loads,
    ):
        """
        Args:
            config: Connector configuration
            backend: Store backend, built from ``config`` when omitted
            schema_cache: Schema cache, a fresh one per connector when omitted
            serializer: Converts record values to the payload column text
            deserializer: Converts payload column text back to record values
        """
        self.config = config
        self.keyspace = config.keyspace
        self.backend = backend if backend is not None else backend_from_config(config)
        self.schema_cache = schema_cache if schema_cache is not None else SchemaCache()
        self.serializer = serializer
        self.deserializer = deserializer

        self.lifecycle = ConnectionLifecycle()

        self.metrics = (
            EnhancedMetrics(percentiles=config.metrics.percentiles)
            if config.metrics.enabled else None
        )
        self.tracer = Tracer(
            service_name=config.tracing.service_name,
            enabled=config.tracing.enabled,
            install_provider=config.tracing.install_provider,
        )
        self.alert_manager = AlertManager() if config.alerting_enabled else None

        self.provisioner = TableProvisioner(
            self.backend,
            self.keyspace,
            payload_column=config.payload_column,
            verify=config.verify_provisioning,
            metrics=self.metrics,
        )
        self.resolver = SchemaResolver(
            self.backend,
            self.keyspace,
            self.schema_cache,
            self.provisioner,
            config.table_spec.to_columns(),
            payload_column=config.payload_column,
            metrics=self.metrics,
        )

        # Operations started through the callback adapters
        self._background: set[asyncio.Future] = set()

    # ========================================================================
    # Constructors
    # ========================================================================

    @classmethod
    def from_config(cls, config: KeyRouterConfig, **kwargs: Any) -> "KeyRouterConnector":
        """Create an unconnected connector. Use ``async with`` or ``connect()``."""
        return cls(config, **kwargs)

    @classmethod
    @asynccontextmanager
    async def from_contact_points(
        cls,
        contact_points: list[str],
        keyspace: str,
        *,
        default_table: str = "global",
        table_spec: TableSpecConfig | None = None,
        overflow_policy: str = "spill",
        port: int = 9042,
        **kwargs: Any,
    ) -> AsyncIterator["KeyRouterConnector"]:
        """
        Create and connect a connector for the given contact points.

        Args:
            contact_points: Node addresses
            keyspace: Keyspace holding routed tables
            default_table: Table for keys with a single segment
            table_spec: Column spec for tables created on first use
            overflow_policy: "spill" or "reject"
            port: Native transport port
            **kwargs: Passed to the constructor (schema_cache, serializer, ...)

        Yields:
            A READY connector, closed on exit
        """
        config = KeyRouterConfig(
            contact_points=contact_points,
            keyspace=keyspace,
            port=port,
            default_table=default_table,
            table_spec=table_spec or TableSpecConfig(),
            overflow_policy=overflow_policy,
        )
        connector = cls(config, **kwargs)
        await connector.connect()
        try:
            yield connector
        finally:
            await connector.aclose()

    # ========================================================================
    # Lifecycle
    # ========================================================================

    @property
    def state(self) -> ConnectorState:
        return self.lifecycle.state

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """Subscribe to lifecycle transitions. Returns an unsubscribe callable."""
        return self.lifecycle.subscribe(listener)

    async def wait_ready(self, timeout: float | None = None) -> bool:
        return await self.lifecycle.wait_ready(timeout)

    async def connect(self) -> None:
        """
        Connect the backend and move to READY.

        A failed connection is terminal: the connector moves through FAILED
        to CLOSED and is never reconnected.

        Raises:
            StoreConnectionError: If every connection attempt failed
            ConnectorStateError: If the connector is not CONNECTING
        """
        if self.lifecycle.state is not ConnectorState.CONNECTING:
            raise ConnectorStateError(self.lifecycle.state.value, ConnectorState.READY.value)

        retry = self.config.retry
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(retry.max_attempts),
                wait=wait_exponential(
                    multiplier=retry.initial_delay,
                    exp_base=retry.backoff_factor,
                    max=retry.max_delay,
                ),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    await self.backend.connect()
        except Exception as e:
            await self._fail(e)

        if self.lifecycle.state is not ConnectorState.CONNECTING:
            # Closed while the connection was being established
            await self.backend.shutdown()
            raise ConnectorNotReadyError(self.lifecycle.state.value)

        self.lifecycle.transition(ConnectorState.READY)

    async def _fail(self, cause: Exception):
        error = StoreConnectionError(original_error=cause)

        if self.alert_manager:
            self.alert_manager.trigger_alert(
                AlertSeverity.CRITICAL,
                "Failed to connect to the cluster",
                {"contact_points": self.config.contact_points, "error": str(cause)},
            )

        if self.lifecycle.can_transition(ConnectorState.FAILED):
            self.lifecycle.transition(ConnectorState.FAILED, error)

        try:
            await self.backend.shutdown()
        except Exception as shutdown_error:
            logger.warning(f"Error releasing connections after failed connect: {shutdown_error}")

        if self.lifecycle.can_transition(ConnectorState.CLOSED):
            self.lifecycle.transition(ConnectorState.CLOSED)

        raise error from cause

    async def aclose(self) -> None:
        """
        Shut down the backend and move to CLOSED.

        Waits for operations started through the callback adapters. Safe to
        call more than once.
        """
        state = self.lifecycle.state
        if state in (ConnectorState.CLOSING, ConnectorState.CLOSED):
            return
        if state is ConnectorState.FAILED:
            self.lifecycle.transition(ConnectorState.CLOSED)
            return

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if not self.lifecycle.can_transition(ConnectorState.CLOSING):
            # Closed concurrently while draining
            return

        self.lifecycle.transition(ConnectorState.CLOSING)
        try:
            await self.backend.shutdown()
        finally:
            if self.lifecycle.can_transition(ConnectorState.CLOSED):
                self.lifecycle.transition(ConnectorState.CLOSED)

    async def __aenter__(self) -> "KeyRouterConnector":
        if self.lifecycle.state is ConnectorState.CONNECTING:
            await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    def _ensure_ready(self):
        if not self.lifecycle.is_ready:
            raise ConnectorNotReadyError(self.lifecycle.state.value)

    # ========================================================================
    # Instrumentation
    # ========================================================================

    @asynccontextmanager
    async def _instrumented(self, operation: str, key: Any):
        start_time = time.perf_counter()
        key_token = key_var.set(str(key))
        table_token = table_var.set("")
        error_type = None
        try:
            async with self.tracer.span(f"keyrouter.{operation}", {"keyrouter.key": key}):
                yield
        except Exception as e:
            error_type = type(e).__name__
            raise
        finally:
            key_var.reset(key_token)
            table_var.reset(table_token)
            if self.metrics:
                self.metrics.record_operation(
                    operation,
                    (time.perf_counter() - start_time) * 1000,
                    success=error_type is None,
                    error_type=error_type,
                )

    async def _bind(self, parsed: ParsedKey, payload: str | None = None) -> BoundRow:
        schema = await self.resolver.resolve(parsed.table)
        table_var.set(parsed.table)
        return bind_row(parsed, schema, self.config.overflow_policy, payload)

    def _serialize(self, key: str, value: Any) -> str:
        try:
            return self.serializer(value)
        except (TypeError, ValueError) as e:
            raise InvalidRecordValueError(key, original_error=e)

    # ========================================================================
    # Core operations
    # ========================================================================

    async def aput(self, key: str, value: Any) -> None:
        """
        Write a record, replacing any previous value.

        Raises:
            InvalidKeyFormatError: If the key is malformed
            InvalidRecordValueError: If the value cannot be serialized
            ClusterKeyOverflowError: If the key is too deep under the reject policy
            CatalogUnavailableError: If the table schema cannot be read
            ProvisioningFailedError: If the table had to be created and creation failed
            StoreWriteError: If the write fails
            ConnectorNotReadyError: If the connector is not READY
        """
        self._ensure_ready()
        async with self._instrumented("put", key):
            parsed = parse_key(key, self.config.default_table)
            payload = self._serialize(key, value)
            row = await self._bind(parsed, payload)

            try:
                await self.backend.execute(CqlStatement.insert(self.keyspace, row))
            except Exception as e:
                raise StoreWriteError(key, row.table, original_error=e)

            logger.debug(f"Stored record for key ({key}) in table '{row.table}'")

    async def afetch(self, key: str) -> Optional[Any]:
        """
        Read a record.

        Returns:
            The stored value, or None if no record exists for the key

        Raises:
            MultipleRecordsFoundError: If the key matches more than one row
            StoreReadError: If the read fails or the payload cannot be decoded
            (and the errors of ``aput`` other than InvalidRecordValueError)
        """
        self._ensure_ready()
        async with self._instrumented("fetch", key):
            parsed = parse_key(key, self.config.default_table)
            row = await self._bind(parsed)

            try:
                rows = await self.backend.execute(CqlStatement.select(self.keyspace, row))
            except Exception as e:
                raise StoreReadError(key, row.table, original_error=e)

            if not rows:
                return None

            if len(rows) > 1:
                error = MultipleRecordsFoundError(key, row.table, len(rows))
                if self.alert_manager:
                    self.alert_manager.trigger_alert(
                        AlertSeverity.CRITICAL,
                        str(error),
                        {"key": key, "table": row.table, "row_count": len(rows)},
                    )
                raise error

            payload = rows[0].get(row.payload_column)
            if payload is None:
                return None

            try:
                return self.deserializer(payload)
            except (TypeError, ValueError) as e:
                raise StoreReadError(key, row.table, original_error=e)

    async def aremove(self, key: str) -> None:
        """
        Delete a record. Deleting a key that was never written succeeds.

        Raises:
            StoreDeleteError: If the delete fails
            (and the errors of ``aput`` other than InvalidRecordValueError)
        """
        self._ensure_ready()
        async with self._instrumented("remove", key):
            parsed = parse_key(key, self.config.default_table)
            row = await self._bind(parsed)

            try:
                await self.backend.execute(CqlStatement.delete(self.keyspace, row))
            except Exception as e:
                raise StoreDeleteError(key, row.table, original_error=e)

    # ========================================================================
    # Schema operations
    # ========================================================================

    async def resolve_schema(self, table: str) -> TableSchema:
        """
        Get the schema of a table, creating it with the default column spec if needed.

        Raises:
            InvalidKeyFormatError: If the name is not a valid table name
            CatalogUnavailableError: If the catalog cannot be read
            ProvisioningFailedError: If creation fails
        """
        self._ensure_ready()
        if not is_valid_table_name(table):
            raise InvalidKeyFormatError(table, "not a valid table name")
        return await self.resolver.resolve(table)

    async def create_table(
        self,
        table: str,
        columns: Iterable[ColumnSpec | dict[str, Any]],
    ) -> TableSchema:
        """
        Create a table with an explicit column spec and cache its schema.

        The first column is the partition column, the rest are cluster
        columns in order, eg. ``[{"name": "id", "type": "uuid"}, {"name": "attr"}]``.

        Raises:
            InvalidColumnSpecError: If the table name or column spec is unusable
            ProvisioningFailedError: If creation fails or the table exists with a different schema
        """
        self._ensure_ready()
        if not is_valid_table_name(table):
            raise InvalidColumnSpecError(table, "not a valid table name")
        return await self.resolver.create(table, columns)

    # ========================================================================
    # Callback / future adapters
    # ========================================================================
    # The adapters schedule onto the running loop; calling them from
    # synchronous code outside the loop raises RuntimeError.

    def put(self, key: str, value: Any, callback: Callable[[Exception | None], None] | None = None):
        """
        Write a record.

        Returns an awaitable future when ``callback`` is None; otherwise runs
        the write in the background and calls ``callback(error)``.
        """
        return self._dispatch(self.aput(key, value), callback, with_result=False)

    def fetch(self, key: str, callback: Callable[[Exception | None, Any], None] | None = None):
        """
        Read a record.

        Returns an awaitable future when ``callback`` is None; otherwise runs
        the read in the background and calls ``callback(error, value)``.
        """
        return self._dispatch(self.afetch(key), callback, with_result=True)

    def remove(self, key: str, callback: Callable[[Exception | None], None] | None = None):
        """
        Delete a record.

        Returns an awaitable future when ``callback`` is None; otherwise runs
        the delete in the background and calls ``callback(error)``.
        """
        return self._dispatch(self.aremove(key), callback, with_result=False)

    def _dispatch(self, coro, callback: Callable | None, with_result: bool) -> asyncio.Future | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            coro.close()
            raise RuntimeError("Connector operations must be started from inside a running event loop") from e
        future = loop.create_task(coro)
        if callback is None:
            return future

        self._background.add(future)

        def on_done(finished: asyncio.Future):
            self._background.discard(finished)
            if finished.cancelled():
                error, result = asyncio.CancelledError(), None
            else:
                error = finished.exception()
                result = finished.result() if error is None else None

            try:
                if with_result:
                    callback(error, result)
                else:
                    callback(error)
            except Exception as e:
                logger.error(f"Operation callback raised: {e}", exc_info=True)

        future.add_done_callback(on_done)
        return None

    # ========================================================================
    # Health & metrics
    # ========================================================================

    async def health_check(self) -> dict[str, Any]:
        """
        Check connectivity and report connector state.

        Returns:
            Dictionary containing:
            - status: "healthy" | "unhealthy"
            - state: Lifecycle state
            - checks: Individual check results
            - latency_ms: Health check execution time

        Example:
            health = await connector.health_check()
            if health["status"] != "healthy":
                logger.error(f"Connector unhealthy: {health}")
        """
        start_time = time.perf_counter()
        checks: dict[str, Any] = {}
        overall_status = "healthy"

        if not self.lifecycle.is_ready:
            overall_status = "unhealthy"
            checks["lifecycle"] = {"status": "unhealthy", "message": f"Connector is {self.state.value}"}
        else:
            checks["lifecycle"] = {"status": "healthy", "message": "Connector is READY"}
            ping_start = time.perf_counter()
            try:
                await self.backend.ping()
                checks["connectivity"] = {
                    "status": "healthy",
                    "latency_ms": round((time.perf_counter() - ping_start) * 1000, 2),
                }
            except Exception as e:
                checks["connectivity"] = {"status": "unhealthy", "message": f"Connection failed: {e}"}
                overall_status = "unhealthy"

        checks["schema_cache"] = {"status": "healthy", **self.schema_cache.get_stats()}

        return {
            "status": overall_status,
            "state": self.state.value,
            "timestamp": time.time(),
            "checks": checks,
            "latency_ms": round((time.perf_counter() - start_time) * 1000, 2),
        }

    def get_metrics(self) -> dict[str, Any]:
        """Snapshot of operation metrics, schema cache statistics and recent alerts."""
        return {
            "state": self.state.value,
            "operations": self.metrics.get_all_stats() if self.metrics else None,
            "schema_cache": self.schema_cache.get_stats(),
            "tables": self.schema_cache.tables(),
            "recent_alerts": self.alert_manager.get_recent_alerts() if self.alert_manager else [],
        }

    def export_prometheus_metrics(self) -> str:
        """Metrics in Prometheus text format, empty when metrics are disabled."""
        return self.metrics.export_prometheus() if self.metrics else ""
