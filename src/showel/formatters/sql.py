"""SQL export: one INSERT statement per row."""

from __future__ import annotations

from typing import TYPE_CHECKING

from showel.core.models import NULL_DISPLAY
from showel.core.postgres import qualified_name, quote_ident
from showel.formatters.base import registry

if TYPE_CHECKING:
    from collections.abc import Iterator

    from showel.core.models import QueryResult


def sql_literal(value: str) -> str:
    if value == NULL_DISPLAY:
        return "NULL"
    return "'" + value.replace("'", "''") + "'"


class SQLInsertFormatter:
    def __init__(self, schema: str = "public", table: str = "results") -> None:
        self.schema = schema
        self.table = table

    def format(self, result: QueryResult) -> Iterator[str]:
        if not result.columns:
            return
        target = qualified_name(self.schema, self.table)
        column_list = ", ".join(quote_ident(column) for column in result.columns)
        for row in result.rows:
            values = ", ".join(sql_literal(value) for value in row)
            yield f"INSERT INTO {target} ({column_list}) VALUES ({values});"


registry.register("sql", SQLInsertFormatter)
