"""
Binding parsed keys onto table schemas.

Any omitted cluster keys are replaced with an empty string. Giving a default
to each cluster key this way ensures only a single record is matched by a
lookup. Keys with more cluster segments than the table has cluster columns
are handled according to the overflow policy:

    SPILL:  user/ryan/some/more/really/deep -> pk='ryan' k1='some' k2='more' k3='really/deep'
    REJECT: user/ryan/some/more/really/deep -> ClusterKeyOverflowError
"""

import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from vertector_keyrouter.errors import ClusterKeyOverflowError, InvalidKeyFormatError
from vertector_keyrouter.keys import KEY_SEPARATOR, ParsedKey, compose_key
from vertector_keyrouter.schema import ColumnSpec, ColumnType, TableSchema

# Placeholder for cluster columns the key does not reach
OMITTED_SEGMENT = ""

INT_RANGE = (-2**31, 2**31 - 1)
BIGINT_RANGE = (-2**63, 2**63 - 1)

# Canonical decimal text, so each integer has exactly one key spelling
INTEGER_PATTERN = re.compile(r"0|-?[1-9][0-9]*")


class OverflowPolicy(str, Enum):
    """What to do with keys deeper than the table's cluster columns."""

    SPILL = "spill"
    REJECT = "reject"


@dataclass(frozen=True)
class BoundRow:
    """Column values for one row operation, in primary key order."""

    table: str
    key: str
    key_values: dict[str, Any]
    payload_column: str
    payload: str | None = field(default=None, repr=False)

    @property
    def key_columns(self) -> tuple[str, ...]:
        return tuple(self.key_values)

    @property
    def parameters(self) -> tuple[Any, ...]:
        return tuple(self.key_values.values())

    def as_dict(self) -> dict[str, Any]:
        """All bound columns, including the payload when present."""
        row = dict(self.key_values)
        if self.payload is not None:
            row[self.payload_column] = self.payload
        return row


def coerce_segment(key: str, column: ColumnSpec, segment: str) -> Any:
    """
    Convert a key segment to the value type of its column.

    Raises:
        InvalidKeyFormatError: If the segment is not valid for the column type
    """
    if column.type.is_string:
        return segment

    if column.type in (ColumnType.INT, ColumnType.BIGINT):
        low, high = INT_RANGE if column.type is ColumnType.INT else BIGINT_RANGE
        if not INTEGER_PATTERN.fullmatch(segment):
            raise InvalidKeyFormatError(
                key, f"segment '{segment}' is not a valid {column.type.value} for column '{column.name}'"
            )
        value = int(segment)
        if not low <= value <= high:
            raise InvalidKeyFormatError(
                key, f"segment '{segment}' is out of range for {column.type.value} column '{column.name}'"
            )
        return value

    try:
        value = uuid.UUID(segment)
    except ValueError:
        raise InvalidKeyFormatError(
            key, f"segment '{segment}' is not a valid {column.type.value} for column '{column.name}'"
        )
    if str(value) != segment:
        raise InvalidKeyFormatError(
            key, f"segment '{segment}' is not a canonical {column.type.value} for column '{column.name}'"
        )
    if column.type is ColumnType.TIMEUUID and value.version != 1:
        raise InvalidKeyFormatError(
            key, f"segment '{segment}' is not a time-based UUID for column '{column.name}'"
        )
    return value


def fit_cluster_segments(
    parsed: ParsedKey,
    schema: TableSchema,
    policy: OverflowPolicy,
) -> tuple[str, ...]:
    """
    Apply the overflow policy to the key's cluster segments.

    Returns:
        At most ``schema.cluster_width`` segments

    Raises:
        ClusterKeyOverflowError: If the key is deeper than the schema allows
    """
    segments = parsed.cluster_segments
    width = schema.cluster_width
    if len(segments) <= width:
        return segments

    overflow = ClusterKeyOverflowError(parsed.key, schema.table, width, len(segments))
    if policy is OverflowPolicy.REJECT or width == 0:
        raise overflow
    if not schema.cluster_columns[-1].type.is_string:
        # Only a string column can hold the rejoined remainder
        raise overflow

    # eg. user/ryan/one/two/three/four becomes pk='ryan' k1='one' k2='two' k3='three/four'
    last = width - 1
    return segments[:last] + (KEY_SEPARATOR.join(segments[last:]),)


def bind_row(
    parsed: ParsedKey,
    schema: TableSchema,
    policy: OverflowPolicy = OverflowPolicy.SPILL,
    payload: str | None = None,
) -> BoundRow:
    """
    Produce the column values addressing one row.

    Args:
        parsed: Parsed hierarchical key
        schema: Resolved schema of ``parsed.table``
        policy: Overflow policy for deep keys
        payload: Serialized record value (writes only)

    Raises:
        ClusterKeyOverflowError: If the key is deeper than the schema allows
        InvalidKeyFormatError: If a segment does not fit its column type
    """
    segments = fit_cluster_segments(parsed, schema, policy)

    key_values: dict[str, Any] = {
        schema.partition_column.name: coerce_segment(
            parsed.key, schema.partition_column, parsed.partition_value
        )
    }

    for position, column in enumerate(schema.cluster_columns):
        if position < len(segments):
            key_values[column.name] = coerce_segment(parsed.key, column, segments[position])
        elif column.type.is_string:
            key_values[column.name] = OMITTED_SEGMENT
        else:
            raise InvalidKeyFormatError(
                parsed.key,
                f"{column.type.value} column '{column.name}' of table '{schema.table}' "
                f"requires a segment"
            )

    return BoundRow(
        table=schema.table,
        key=parsed.key,
        key_values=key_values,
        payload_column=schema.payload_column,
        payload=payload,
    )


def row_to_key(schema: TableSchema, row: dict[str, Any]) -> str:
    """Reconstruct the hierarchical key addressing a stored row."""
    return compose_key(
        schema.table,
        row[schema.partition_column.name],
        (row[column.name] for column in schema.cluster_columns),
    )
