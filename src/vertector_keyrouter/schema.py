"""
Table schema model and the per-connector schema cache.

A routed table has exactly one partition column, zero or more ordered
cluster columns and one payload column holding the serialized record:

    CREATE TABLE user (pk text, k1 text, k2 text, k3 text, data text,
                       PRIMARY KEY ((pk), k1, k2, k3))
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, NamedTuple

from pydantic import BaseModel, ConfigDict, Field

from vertector_keyrouter.errors import IncompatibleSchemaError

logger = logging.getLogger(__name__)

COLUMN_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]{0,47}$"

DEFAULT_PAYLOAD_COLUMN = "data"


class ColumnType(str, Enum):
    """Column types supported for partition and cluster columns."""

    TEXT = "text"
    ASCII = "ascii"
    VARCHAR = "varchar"
    INT = "int"
    BIGINT = "bigint"
    UUID = "uuid"
    TIMEUUID = "timeuuid"

    @property
    def is_string(self) -> bool:
        """String-family columns accept any segment and the empty-string placeholder."""
        return self in (ColumnType.TEXT, ColumnType.ASCII, ColumnType.VARCHAR)

    @property
    def canonical(self) -> str:
        """Type name as reported by the schema catalog (varchar is an alias of text)."""
        return "text" if self is ColumnType.VARCHAR else self.value


class ColumnSpec(BaseModel):
    """A typed key column."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(pattern=COLUMN_NAME_PATTERN, description="Column name")
    type: ColumnType = Field(default=ColumnType.TEXT, description="Column type")

    def ddl(self) -> str:
        return f'"{self.name}" {self.type.value}'


class CatalogColumn(NamedTuple):
    """One row of ``system_schema.columns``."""

    name: str
    kind: str  # partition_key, clustering, regular, static
    position: int
    type: str


@dataclass(frozen=True)
class TableSchema:
    """Partition column, ordered cluster columns and payload column of a table."""

    table: str
    partition_column: ColumnSpec
    cluster_columns: tuple[ColumnSpec, ...] = ()
    payload_column: str = DEFAULT_PAYLOAD_COLUMN

    @property
    def key_columns(self) -> tuple[ColumnSpec, ...]:
        """Primary key columns in order (partition first)."""
        return (self.partition_column, *self.cluster_columns)

    @property
    def cluster_width(self) -> int:
        return len(self.cluster_columns)

    @classmethod
    def from_columns(
        cls,
        table: str,
        columns: Iterable[ColumnSpec],
        payload_column: str = DEFAULT_PAYLOAD_COLUMN,
    ) -> "TableSchema":
        """Build a schema from a column list whose first entry is the partition column."""
        columns = tuple(columns)
        return cls(
            table=table,
            partition_column=columns[0],
            cluster_columns=columns[1:],
            payload_column=payload_column,
        )

    def matches(self, other: "TableSchema") -> bool:
        """Compare key column names and canonical types."""
        if self.payload_column != other.payload_column:
            return False
        if len(self.key_columns) != len(other.key_columns):
            return False
        return all(
            mine.name == theirs.name and mine.type.canonical == theirs.type.canonical
            for mine, theirs in zip(self.key_columns, other.key_columns)
        )

    def describe(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "partition_column": {"name": self.partition_column.name, "type": self.partition_column.type.value},
            "cluster_columns": [
                {"name": col.name, "type": col.type.value} for col in self.cluster_columns
            ],
            "payload_column": self.payload_column,
        }


def schema_from_catalog(
    table: str,
    columns: Iterable[CatalogColumn],
    payload_column: str = DEFAULT_PAYLOAD_COLUMN,
) -> TableSchema:
    """
    Translate native catalog column metadata into a TableSchema.

    Raises:
        IncompatibleSchemaError: If the table cannot be used for key routing
    """
    columns = list(columns)
    partition = [col for col in columns if col.kind == "partition_key"]
    clustering = sorted(
        (col for col in columns if col.kind == "clustering"),
        key=lambda col: col.position,
    )

    if len(partition) != 1:
        raise IncompatibleSchemaError(
            table, f"expected exactly one partition column, found {len(partition)}"
        )

    if not any(col.name == payload_column and col.kind == "regular" for col in columns):
        raise IncompatibleSchemaError(table, f"payload column '{payload_column}' is missing")

    def to_spec(col: CatalogColumn) -> ColumnSpec:
        try:
            column_type = ColumnType(col.type)
        except ValueError:
            raise IncompatibleSchemaError(
                table, f"column '{col.name}' has unsupported type '{col.type}'"
            )
        return ColumnSpec(name=col.name, type=column_type)

    return TableSchema(
        table=table,
        partition_column=to_spec(partition[0]),
        cluster_columns=tuple(to_spec(col) for col in clustering),
        payload_column=payload_column,
    )


class SchemaCache:
    """
    Process-local mapping of table name to schema.

    First write wins and entries are never evicted: the set of tables known
    to a running connector only grows. Owned by a single connector; all
    access happens on its event loop.
    """

    def __init__(self):
        self._schemas: dict[str, TableSchema] = {}
        self.hits = 0
        self.misses = 0

    def lookup(self, table: str) -> TableSchema | None:
        schema = self._schemas.get(table)
        if schema is None:
            self.misses += 1
        else:
            self.hits += 1
        return schema

    def store(self, table: str, schema: TableSchema) -> TableSchema:
        """
        Cache a schema unless one is already known for the table.

        Returns:
            The cached schema (the existing one if the table was already known)
        """
        existing = self._schemas.get(table)
        if existing is None:
            self._schemas[table] = schema
            logger.debug(f"Cached schema for table '{table}'")
            return schema

        if not existing.matches(schema):
            logger.warning(
                f"Ignoring differing schema for table '{table}': "
                f"cached {existing.describe()}, offered {schema.describe()}"
            )
        return existing

    def tables(self) -> list[str]:
        return sorted(self._schemas)

    def __contains__(self, table: str) -> bool:
        return table in self._schemas

    def __len__(self) -> int:
        return len(self._schemas)

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics for monitoring."""
        total = self.hits + self.misses
        return {
            "size": len(self._schemas),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total > 0 else 0.0,
        }
