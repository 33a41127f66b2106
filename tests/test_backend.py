"""
Tests for ScyllaBackend against a mocked driver session.
"""

from unittest.mock import MagicMock, patch

import pytest
from cassandra.auth import PlainTextAuthProvider
from cassandra.query import SimpleStatement

from vertector_keyrouter.backend import ScyllaBackend
from vertector_keyrouter.binder import bind_row
from vertector_keyrouter.cql import CATALOG_COLUMNS_CQL, PING_CQL, CqlStatement
from vertector_keyrouter.keys import parse_key
from vertector_keyrouter.schema import CatalogColumn, ColumnSpec, TableSchema


def response_future(rows=None, error: Exception | None = None):
    """Mock ResponseFuture completing immediately."""
    future = MagicMock()

    def add_callbacks(on_success, on_error):
        if error is not None:
            on_error(error)
        else:
            on_success(rows)

    future.add_callbacks.side_effect = add_callbacks
    return future


@pytest.fixture
def backend():
    backend = ScyllaBackend(["127.0.0.1"], "ks")
    backend.session = MagicMock()
    backend.session.prepare.side_effect = lambda query: f"prepared:{query}"
    backend.session.execute_async.return_value = response_future([])
    return backend


@pytest.fixture
def schema():
    return TableSchema.from_columns("user", [ColumnSpec(name="pk"), ColumnSpec(name="k1")])


@pytest.mark.unit
class TestExecute:
    """Test row statements and the driver future bridge."""

    @pytest.mark.asyncio
    async def test_returns_rows(self, backend, schema):
        backend.session.execute_async.return_value = response_future([{"data": '"x"'}])
        row = bind_row(parse_key("user/ryan", "global"), schema)

        rows = await backend.execute(CqlStatement.select("ks", row))

        assert rows == [{"data": '"x"'}]
        backend.session.execute_async.assert_called_once_with(
            f"prepared:{CqlStatement.select('ks', row).cql}", ("ryan", "")
        )

    @pytest.mark.asyncio
    async def test_none_result_is_empty(self, backend, schema):
        backend.session.execute_async.return_value = response_future(None)
        row = bind_row(parse_key("user/ryan", "global"), schema, payload="1")

        assert await backend.execute(CqlStatement.insert("ks", row)) == []

    @pytest.mark.asyncio
    async def test_statements_prepared_once(self, backend, schema):
        for key in ("user/a", "user/b/c", "user/d"):
            row = bind_row(parse_key(key, "global"), schema)
            await backend.execute(CqlStatement.select("ks", row))

        assert backend.session.prepare.call_count == 1
        assert backend.session.execute_async.call_count == 3

    @pytest.mark.asyncio
    async def test_driver_errors_propagate(self, backend, schema):
        backend.session.execute_async.return_value = response_future(error=RuntimeError("timeout"))
        row = bind_row(parse_key("user/ryan", "global"), schema)

        with pytest.raises(RuntimeError, match="timeout"):
            await backend.execute(CqlStatement.delete("ks", row))


@pytest.mark.unit
class TestCatalog:
    """Test table metadata lookups."""

    @pytest.mark.asyncio
    async def test_missing_table(self, backend):
        assert await backend.get_table_schema("ks", "user") is None
        backend.session.execute_async.assert_called_once_with(
            f"prepared:{CATALOG_COLUMNS_CQL}", ("ks", "user")
        )

    @pytest.mark.asyncio
    async def test_catalog_rows_mapped(self, backend):
        backend.session.execute_async.return_value = response_future([
            {"column_name": "pk", "kind": "partition_key", "position": 0, "type": "text"},
            {"column_name": "data", "kind": "regular", "position": -1, "type": "text"},
        ])

        columns = await backend.get_table_schema("ks", "user")

        assert columns == [
            CatalogColumn("pk", "partition_key", 0, "text"),
            CatalogColumn("data", "regular", -1, "text"),
        ]

    @pytest.mark.asyncio
    async def test_create_table_uses_simple_statement(self, backend):
        await backend.create_table_if_not_exists("ks", "user", [ColumnSpec(name="pk")], "data")

        statement = backend.session.execute_async.call_args[0][0]
        assert isinstance(statement, SimpleStatement)
        assert statement.query_string == (
            'CREATE TABLE IF NOT EXISTS "ks"."user" ("pk" text, "data" text, PRIMARY KEY (("pk")))'
        )
        backend.session.prepare.assert_not_called()

    @pytest.mark.asyncio
    async def test_ping(self, backend):
        await backend.ping()
        backend.session.execute_async.assert_called_once_with(PING_CQL)


@pytest.mark.unit
class TestConnection:
    """Test cluster construction and shutdown."""

    def test_cluster_without_auth(self):
        backend = ScyllaBackend(["10.0.0.1", "10.0.0.2"], "ks", port=19042)

        with patch("vertector_keyrouter.backend.Cluster") as cluster_cls:
            backend._build_cluster()

        kwargs = cluster_cls.call_args.kwargs
        assert kwargs["contact_points"] == ["10.0.0.1", "10.0.0.2"]
        assert kwargs["port"] == 19042
        assert kwargs["auth_provider"] is None

    def test_cluster_with_auth(self):
        backend = ScyllaBackend(["127.0.0.1"], "ks", username="scylla", password="secret")

        with patch("vertector_keyrouter.backend.Cluster") as cluster_cls:
            backend._build_cluster()

        auth_provider = cluster_cls.call_args.kwargs["auth_provider"]
        assert isinstance(auth_provider, PlainTextAuthProvider)
        assert auth_provider.username == "scylla"

    @pytest.mark.asyncio
    async def test_connect_uses_keyspace(self):
        backend = ScyllaBackend(["127.0.0.1"], "ks")
        cluster = MagicMock()

        with patch.object(backend, "_build_cluster", return_value=cluster):
            await backend.connect()

        cluster.connect.assert_called_once_with("ks")
        assert backend.session is cluster.connect.return_value

    @pytest.mark.asyncio
    async def test_shutdown(self, backend):
        backend.cluster = MagicMock()
        backend._prepared_statements["q"] = "p"

        await backend.shutdown()

        backend.cluster.shutdown.assert_called_once()
        assert backend.session is None
        assert backend._prepared_statements == {}
