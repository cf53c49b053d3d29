"""Single-cell updates from the results grid.

Row identity comes from the table's primary key, or from the first
visible column when the table declares none. Values are always bound
as parameters; only identifiers are interpolated, and those are quoted.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from showel.core.exceptions import UpdateError
from showel.core.models import NULL_DISPLAY
from showel.core.postgres import find_primary_key, qualified_name, quote_ident

if TYPE_CHECKING:
    from showel.core.client import DatabaseConnection

__all__ = [
    "CellWrite",
    "build_update_sql",
    "find_primary_key",
    "resolve_row_key",
    "update_cell",
]


@dataclass(frozen=True)
class CellWrite:
    """Where the written row can be found afterwards.

    key_value is the displayed key after the UPDATE, so it is the new
    value when the key column itself was edited.
    """

    key_column: str
    key_value: str
    affected_rows: int


def is_null_literal(value: str) -> bool:
    return value.upper() == "NULL"


def resolve_row_key(
    primary_key: Sequence[str],
    row: Sequence[str],
    columns: Sequence[str],
) -> tuple[str, str]:
    """Pick the key column and its value for the edited row.

    Only the first primary key column is used. Without a primary key the
    first column of the result stands in for one.
    """
    if primary_key:
        key_column = primary_key[0]
    elif columns:
        key_column = columns[0]
        structlog.get_logger().warning(
            "no primary key, using first column as row identifier",
            column=key_column,
        )
    else:
        raise UpdateError("No columns available")

    index = columns.index(key_column) if key_column in columns else 0
    if index >= len(row):
        raise UpdateError("No primary key value")
    return key_column, row[index]


def build_update_sql(
    schema_name: str,
    table_name: str,
    column: str,
    key_column: str,
    new_value: str,
    key_value: str,
) -> tuple[str, dict[str, str]]:
    target = qualified_name(schema_name, table_name)
    if is_null_literal(new_value):
        sql = (
            f"UPDATE {target} SET {quote_ident(column)} = NULL "
            f"WHERE {quote_ident(key_column)} = %(pk)s"
        )
        return sql, {"pk": key_value}

    sql = (
        f"UPDATE {target} SET {quote_ident(column)} = %(value)s "
        f"WHERE {quote_ident(key_column)} = %(pk)s"
    )
    return sql, {"value": new_value, "pk": key_value}


async def update_cell(
    client: DatabaseConnection,
    schema_name: str,
    table_name: str,
    column: str,
    new_value: str,
    row: Sequence[str],
    columns: Sequence[str],
) -> CellWrite:
    """Write one cell and report the row key and how many rows the UPDATE touched.

    A new_value of "NULL" (any case) stores SQL NULL.
    """
    primary_key = await find_primary_key(client, schema_name, table_name)
    key_column, key_value = resolve_row_key(primary_key, row, columns)
    sql, params = build_update_sql(
        schema_name, table_name, column, key_column, new_value, key_value
    )
    affected = await client.execute(sql, params)
    structlog.get_logger().info(
        "cell updated",
        table=f"{schema_name}.{table_name}",
        column=column,
        key_column=key_column,
        affected_rows=affected,
    )
    if column == key_column:
        key_value = NULL_DISPLAY if is_null_literal(new_value) else new_value
    return CellWrite(key_column, key_value, affected)
