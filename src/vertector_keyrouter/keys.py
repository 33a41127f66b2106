"""
Hierarchical key parsing.

Keys follow this format:
    {table_name}/{partition_key}/{optional_1st_cluster_key}/.../{optional_nth_cluster_key}

A key with a single segment lives in the default table, so ``ryan`` is the
same record as ``global/ryan`` when the default table is ``global``.

Examples (default schema pk, k1, k2, k3):
    ryan                      -> table=global pk='ryan'
    user/ryan                 -> table=user pk='ryan'
    user/ryan/settings        -> table=user pk='ryan' clusters=('settings',)
    user/ryan/inbox/message/x -> table=user pk='ryan' clusters=('inbox', 'message', 'x')
"""

import re
from dataclasses import dataclass
from typing import Iterable

from vertector_keyrouter.errors import InvalidKeyFormatError

KEY_SEPARATOR = "/"

MAX_KEY_LENGTH = 1024

KEY_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+(/[A-Za-z0-9_\-]+)*$")

# CQL table names are restricted to word characters, even when quoted
TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{1,48}$")


@dataclass(frozen=True)
class ParsedKey:
    """A hierarchical key split into table, partition value and cluster segments."""

    key: str
    table: str
    partition_value: str
    cluster_segments: tuple[str, ...] = ()

    @property
    def depth(self) -> int:
        """Number of cluster segments carried by the key."""
        return len(self.cluster_segments)


def is_valid_table_name(name: str) -> bool:
    """Check that a name can be used as a CQL table name."""
    return isinstance(name, str) and bool(TABLE_NAME_PATTERN.fullmatch(name))


def parse_key(key: str, default_table: str) -> ParsedKey:
    """
    Validate and split a hierarchical key.

    Args:
        key: Slash-delimited key
        default_table: Table used for keys with a single segment

    Returns:
        ParsedKey

    Raises:
        InvalidKeyFormatError: If the key is malformed
    """
    if not isinstance(key, str):
        raise InvalidKeyFormatError(key, f"key must be a string, got {type(key).__name__}")

    if not key:
        raise InvalidKeyFormatError(key, "key cannot be empty")

    if len(key) > MAX_KEY_LENGTH:
        raise InvalidKeyFormatError(
            key, f"key length ({len(key)}) exceeds maximum ({MAX_KEY_LENGTH})"
        )

    if not KEY_PATTERN.fullmatch(key):
        raise InvalidKeyFormatError(
            key,
            "must be alpha-numeric + hyphens + underscores, separated by single slashes"
        )

    parts = key.split(KEY_SEPARATOR)
    if len(parts) == 1:
        # Redirect keys without a table to the default table
        parts.insert(0, default_table)

    table = parts[0]
    if not is_valid_table_name(table):
        raise InvalidKeyFormatError(
            key, f"table segment '{table}' must be 1-48 alpha-numeric or underscore characters"
        )

    return ParsedKey(
        key=key,
        table=table,
        partition_value=parts[1],
        cluster_segments=tuple(parts[2:]),
    )


def compose_key(table: str, partition_value: str, cluster_values: Iterable[str] = ()) -> str:
    """
    Build a hierarchical key from bound column values.

    Empty cluster values are the placeholder for omitted segments and are
    skipped. A spilled value that already contains slashes is kept as-is.
    """
    segments = [table, str(partition_value)]
    segments.extend(str(value) for value in cluster_values if value != "")
    return KEY_SEPARATOR.join(segments)
