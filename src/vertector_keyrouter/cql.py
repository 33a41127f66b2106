"""
CQL rendering for routed tables.

Identifiers are always double-quoted so table and column names keep their
case and never collide with CQL keywords.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Literal

from vertector_keyrouter.binder import BoundRow
from vertector_keyrouter.schema import ColumnSpec

StatementKind = Literal["insert", "select", "delete"]

CATALOG_COLUMNS_CQL = (
    "SELECT column_name, kind, position, type FROM system_schema.columns "
    "WHERE keyspace_name = ? AND table_name = ?"
)

PING_CQL = "SELECT now() FROM system.local"


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def qualified_table(keyspace: str, table: str) -> str:
    return f"{quote_identifier(keyspace)}.{quote_identifier(table)}"


@dataclass(frozen=True)
class CqlStatement:
    """
    A parameterized row operation against one table.

    ``columns`` are the written columns for inserts and the equality
    predicate columns for selects and deletes; ``parameters`` line up with
    them one to one.
    """

    kind: StatementKind
    keyspace: str
    table: str
    columns: tuple[str, ...]
    parameters: tuple[Any, ...]
    select_columns: tuple[str, ...] = ()

    @property
    def cql(self) -> str:
        target = qualified_table(self.keyspace, self.table)
        if self.kind == "insert":
            names = ", ".join(quote_identifier(col) for col in self.columns)
            markers = ", ".join("?" for _ in self.columns)
            return f"INSERT INTO {target} ({names}) VALUES ({markers})"

        predicate = " AND ".join(f"{quote_identifier(col)} = ?" for col in self.columns)
        if self.kind == "select":
            selected = ", ".join(quote_identifier(col) for col in self.select_columns) or "*"
            return f"SELECT {selected} FROM {target} WHERE {predicate}"
        return f"DELETE FROM {target} WHERE {predicate}"

    @classmethod
    def insert(cls, keyspace: str, row: BoundRow) -> "CqlStatement":
        values = row.as_dict()
        return cls("insert", keyspace, row.table, tuple(values), tuple(values.values()))

    @classmethod
    def select(cls, keyspace: str, row: BoundRow) -> "CqlStatement":
        return cls(
            "select",
            keyspace,
            row.table,
            row.key_columns,
            row.parameters,
            select_columns=(row.payload_column,),
        )

    @classmethod
    def delete(cls, keyspace: str, row: BoundRow) -> "CqlStatement":
        return cls("delete", keyspace, row.table, row.key_columns, row.parameters)


def create_table_cql(
    keyspace: str,
    table: str,
    columns: Iterable[ColumnSpec],
    payload_column: str,
) -> str:
    """
    Render the idempotent DDL for a routed table.

    Example:
        CREATE TABLE IF NOT EXISTS "ks"."user" ("pk" text, "k1" text, "data" text,
            PRIMARY KEY (("pk"), "k1"))
    """
    columns = list(columns)
    definitions = ", ".join(col.ddl() for col in columns)
    partition = quote_identifier(columns[0].name)
    clustering = "".join(f", {quote_identifier(col.name)}" for col in columns[1:])
    return (
        f"CREATE TABLE IF NOT EXISTS {qualified_table(keyspace, table)} "
        f"({definitions}, {quote_identifier(payload_column)} text, "
        f"PRIMARY KEY (({partition}){clustering}))"
    )
