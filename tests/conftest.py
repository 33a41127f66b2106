"""
Pytest configuration and fixtures for KeyRouterConnector tests.

Provides:
- In-memory StoreBackend with call counters and failure injection
- Connector fixtures with cleanup
- Test data generators
"""

import asyncio
from collections import defaultdict
from typing import Any

import pytest
import pytest_asyncio
from dotenv import load_dotenv

from vertector_keyrouter.backend import StoreBackend
from vertector_keyrouter.config import KeyRouterConfig
from vertector_keyrouter.connector import KeyRouterConnector
from vertector_keyrouter.cql import CqlStatement
from vertector_keyrouter.schema import CatalogColumn, ColumnSpec

# Load environment variables for integration tests
load_dotenv()


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (require ScyllaDB, KEYROUTER_INTEGRATION=1)"
    )


# ============================================================================
# In-memory backend
# ============================================================================

def catalog_for(columns: list[ColumnSpec], payload_column: str = "data") -> list[CatalogColumn]:
    """Catalog rows the cluster would report for a routed table."""
    catalog = [CatalogColumn(columns[0].name, "partition_key", 0, columns[0].type.canonical)]
    catalog.extend(
        CatalogColumn(col.name, "clustering", position, col.type.canonical)
        for position, col in enumerate(columns[1:])
    )
    catalog.append(CatalogColumn(payload_column, "regular", -1, "text"))
    return catalog


class InMemoryBackend(StoreBackend):
    """
    StoreBackend keeping tables in dictionaries.

    Every method counts its calls in ``calls``. ``fail(name, error, times)``
    makes a method raise ``error`` (``times`` times, or always).
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.catalogs: dict[str, list[CatalogColumn]] = {}
        self.rows: dict[str, dict[tuple, dict[str, Any]]] = {}
        self.statements: list[CqlStatement] = []
        self.calls: dict[str, int] = defaultdict(int)
        self.connected = False
        self.forced_rows: list[dict[str, Any]] | None = None
        self._failures: dict[str, Exception] = {}
        self._failure_counts: dict[str, int | None] = {}

    def fail(self, name: str, error: Exception, times: int | None = None):
        self._failures[name] = error
        self._failure_counts[name] = times

    def recover(self, name: str):
        self._failures.pop(name, None)
        self._failure_counts.pop(name, None)

    async def _enter(self, name: str):
        self.calls[name] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        error = self._failures.get(name)
        if error is None:
            return
        remaining = self._failure_counts.get(name)
        if remaining is not None:
            if remaining <= 0:
                return
            self._failure_counts[name] = remaining - 1
        raise error

    def add_table(self, table: str, catalog: list[CatalogColumn]):
        """Pretend a table already exists with the given catalog rows."""
        self.catalogs[table] = list(catalog)
        self.rows.setdefault(table, {})

    def key_columns(self, table: str) -> list[str]:
        catalog = self.catalogs[table]
        partition = [col.name for col in catalog if col.kind == "partition_key"]
        clustering = sorted((col for col in catalog if col.kind == "clustering"), key=lambda col: col.position)
        return partition + [col.name for col in clustering]

    async def connect(self) -> None:
        await self._enter("connect")
        self.connected = True

    async def get_table_schema(self, keyspace, table):
        await self._enter("get_table_schema")
        catalog = self.catalogs.get(table)
        return list(catalog) if catalog is not None else None

    async def create_table_if_not_exists(self, keyspace, table, columns, payload_column):
        await self._enter("create_table_if_not_exists")
        if table not in self.catalogs:
            self.add_table(table, catalog_for(list(columns), payload_column))

    async def execute(self, statement: CqlStatement):
        await self._enter("execute")
        self.statements.append(statement)
        table_rows = self.rows[statement.table]
        values = dict(zip(statement.columns, statement.parameters))

        if statement.kind == "insert":
            primary_key = tuple(values[name] for name in self.key_columns(statement.table))
            table_rows[primary_key] = values
            return []

        matches = [
            primary_key for primary_key, row in table_rows.items()
            if all(row.get(name) == value for name, value in values.items())
        ]

        if statement.kind == "select":
            if self.forced_rows is not None:
                return list(self.forced_rows)
            return [
                {name: table_rows[primary_key].get(name) for name in statement.select_columns}
                for primary_key in matches
            ]

        for primary_key in matches:
            del table_rows[primary_key]
        return []

    async def ping(self) -> None:
        await self._enter("ping")

    async def shutdown(self) -> None:
        await self._enter("shutdown")
        self.connected = False


# ============================================================================
# Connector Fixtures
# ============================================================================

@pytest.fixture
def backend():
    """Provide an empty in-memory backend."""
    return InMemoryBackend()


@pytest.fixture
def make_backend():
    """Build in-memory backends, eg. with a per-call delay."""
    return InMemoryBackend


@pytest.fixture(name="catalog_for")
def catalog_for_fixture():
    """Provide the catalog rows builder."""
    return catalog_for


@pytest.fixture
def config():
    """Provide a default configuration (3 text cluster columns, spill policy)."""
    return KeyRouterConfig(keyspace="test_keyrouter")


@pytest_asyncio.fixture
async def connector(config, backend):
    """
    Provide a READY connector over the in-memory backend.

    Closed after each test.
    """
    connector = KeyRouterConnector(config, backend)
    await connector.connect()

    yield connector

    await connector.aclose()


@pytest.fixture
def make_connector(backend):
    """Build unconnected connectors with custom configuration overrides."""
    def factory(**overrides) -> KeyRouterConnector:
        overrides.setdefault("keyspace", "test_keyrouter")
        return KeyRouterConnector(KeyRouterConfig(**overrides), backend)

    return factory


# ============================================================================
# Test Data Generators
# ============================================================================

@pytest.fixture
def sample_records():
    """Generate sample records keyed by hierarchical keys."""
    return {
        "user/alice": {
            "name": "Alice Smith",
            "email": "alice@example.com",
            "age": 30,
            "roles": ["engineer", "admin"],
        },
        "user/alice/settings": {
            "theme": "dark",
            "notifications": {"email": True, "push": False},
        },
        "user/bob/inbox/message/1": {
            "from": "alice",
            "body": "Hello Bob",
            "attachments": [],
        },
        "bob": {"default_table": True},
    }
