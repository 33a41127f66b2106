"""
Backing store collaborators.

StoreBackend is the narrow interface the router needs from a wide-column
store. ScyllaBackend implements it on top of the ScyllaDB/Cassandra driver.
Driver exceptions propagate unchanged; the connector wraps them into
operation-specific errors.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable

from cassandra.auth import PlainTextAuthProvider
from cassandra.cluster import Cluster, ExecutionProfile, EXEC_PROFILE_DEFAULT, ResponseFuture, Session
from cassandra.policies import DCAwareRoundRobinPolicy, TokenAwarePolicy
from cassandra.query import SimpleStatement, dict_factory

from vertector_keyrouter.cql import (
    CATALOG_COLUMNS_CQL,
    PING_CQL,
    CqlStatement,
    create_table_cql,
)
from vertector_keyrouter.schema import CatalogColumn, ColumnSpec

logger = logging.getLogger(__name__)


class StoreBackend(ABC):
    """Interface of the wide-column store used by the connector."""

    @abstractmethod
    async def connect(self) -> None:
        """Open connections. Called once at startup."""

    @abstractmethod
    async def get_table_schema(self, keyspace: str, table: str) -> list[CatalogColumn] | None:
        """Return the catalog columns of a table, or None if it does not exist."""

    @abstractmethod
    async def create_table_if_not_exists(
        self,
        keyspace: str,
        table: str,
        columns: list[ColumnSpec],
        payload_column: str,
    ) -> None:
        """Create a routed table. Must be safe to call concurrently and redundantly."""

    @abstractmethod
    async def execute(self, statement: CqlStatement) -> list[dict[str, Any]]:
        """Run a row insert, select or delete and return the rows as dicts."""

    @abstractmethod
    async def ping(self) -> None:
        """Run a trivial query against the cluster."""

    @abstractmethod
    async def shutdown(self) -> None:
        """Release all connections."""


class ScyllaBackend(StoreBackend):
    """
    StoreBackend backed by a driver Cluster/Session.

    Uses TokenAwarePolicy for shard-aware routing, dict rows, and prepares
    each distinct DML statement once.

    Example:
        backend = ScyllaBackend(["127.0.0.1"], "deepstream")
        await backend.connect()
    """

    def __init__(
        self,
        contact_points: list[str],
        keyspace: str,
        *,
        port: int = 9042,
        username: str | None = None,
        password: str | None = None,
        request_timeout: float = 10.0,
        connect_timeout: float = 5.0,
        executor_threads: int = 4,
        load_balancing_policy: Any = None,
    ):
        self.contact_points = contact_points
        self.keyspace = keyspace
        self.port = port
        self.username = username
        self.password = password
        self.request_timeout = request_timeout
        self.connect_timeout = connect_timeout
        self.executor_threads = executor_threads
        self.load_balancing_policy = load_balancing_policy

        self.cluster: Cluster | None = None
        self.session: Session | None = None
        self._prepared_statements: dict[str, Any] = {}

    def _build_cluster(self) -> Cluster:
        # Imported lazily so the driver's event loop reactor is only loaded when connecting
        from cassandra.io.asyncioreactor import AsyncioConnection

        default_profile = ExecutionProfile(
            load_balancing_policy=self.load_balancing_policy or TokenAwarePolicy(DCAwareRoundRobinPolicy()),
            request_timeout=self.request_timeout,
            row_factory=dict_factory,
        )

        auth_provider = None
        if self.username:
            auth_provider = PlainTextAuthProvider(username=self.username, password=self.password)

        return Cluster(
            contact_points=self.contact_points,
            port=self.port,
            connection_class=AsyncioConnection,
            execution_profiles={EXEC_PROFILE_DEFAULT: default_profile},
            auth_provider=auth_provider,
            connect_timeout=self.connect_timeout,
            executor_threads=self.executor_threads,
        )

    async def connect(self) -> None:
        logger.info(f"Connecting to cassandra hosts {self.contact_points} ...")
        self.cluster = self._build_cluster()
        # connect() is synchronous, so run it in an executor once at startup
        self.session = await asyncio.get_running_loop().run_in_executor(
            None, self.cluster.connect, self.keyspace
        )
        logger.info(f"Connected to cassandra, keyspace '{self.keyspace}'")

    async def _await_response(self, response_future: ResponseFuture) -> list[dict[str, Any]]:
        """Bridge the driver's ResponseFuture to an asyncio.Future."""
        loop = asyncio.get_running_loop()
        asyncio_future = loop.create_future()

        def on_success(result):
            loop.call_soon_threadsafe(asyncio_future.set_result, result)

        def on_error(error):
            loop.call_soon_threadsafe(asyncio_future.set_exception, error)

        response_future.add_callbacks(on_success, on_error)

        result = await asyncio_future
        return list(result) if result else []

    async def _prepare(self, query: str) -> Any:
        prepared = self._prepared_statements.get(query)
        if prepared is None:
            loop = asyncio.get_running_loop()
            prepared = await loop.run_in_executor(None, self.session.prepare, query)
            self._prepared_statements[query] = prepared
        return prepared

    async def _execute_prepared(self, query: str, parameters: Iterable[Any]) -> list[dict[str, Any]]:
        prepared = await self._prepare(query)
        return await self._await_response(self.session.execute_async(prepared, tuple(parameters)))

    async def get_table_schema(self, keyspace: str, table: str) -> list[CatalogColumn] | None:
        rows = await self._execute_prepared(CATALOG_COLUMNS_CQL, (keyspace, table))
        if not rows:
            return None
        return [
            CatalogColumn(
                name=row["column_name"],
                kind=row["kind"],
                position=row["position"],
                type=row["type"],
            )
            for row in rows
        ]

    async def create_table_if_not_exists(
        self,
        keyspace: str,
        table: str,
        columns: list[ColumnSpec],
        payload_column: str,
    ) -> None:
        ddl = create_table_cql(keyspace, table, columns, payload_column)
        logger.info(f"Creating table: {ddl}")
        # DDL is never prepared; the driver waits for schema agreement before completing
        await self._await_response(self.session.execute_async(SimpleStatement(ddl)))

    async def execute(self, statement: CqlStatement) -> list[dict[str, Any]]:
        return await self._execute_prepared(statement.cql, statement.parameters)

    async def ping(self) -> None:
        await self._await_response(self.session.execute_async(PING_CQL))

    async def shutdown(self) -> None:
        logger.info("Shutting down cassandra connections ...")
        self._prepared_statements.clear()
        if self.cluster is not None:
            # Still synchronous, run in executor once at cleanup
            await asyncio.get_running_loop().run_in_executor(None, self.cluster.shutdown)
        self.session = None
