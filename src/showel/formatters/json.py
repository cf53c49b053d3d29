"""JSON export: a list of row objects, optionally wrapped with table metadata."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from showel.core.models import NULL_DISPLAY
from showel.formatters.base import registry

if TYPE_CHECKING:
    from collections.abc import Iterator

    from showel.core.models import QueryResult


def _json_value(value: str) -> str | None:
    return None if value == NULL_DISPLAY else value


def rows_as_dicts(result: QueryResult) -> list[dict[str, Any]]:
    return [
        {
            column: _json_value(value)
            for column, value in zip(result.columns, row, strict=True)
        }
        for row in result.rows
    ]


class JSONFormatter:
    def __init__(self, compact: bool = False) -> None:
        self.compact = compact

    def _dump(self, payload: object) -> str:
        if self.compact:
            return json.dumps(payload)
        return json.dumps(payload, indent=2)

    def format(self, result: QueryResult) -> Iterator[str]:
        yield self._dump(rows_as_dicts(result))


class JSONMetaFormatter(JSONFormatter):
    """Rows wrapped in an object naming their source table."""

    def __init__(
        self, schema: str = "public", table: str = "results", compact: bool = False
    ) -> None:
        super().__init__(compact=compact)
        self.schema = schema
        self.table = table

    def format(self, result: QueryResult) -> Iterator[str]:
        yield self._dump(
            {
                "schema": self.schema,
                "table": self.table,
                "columns": result.columns,
                "row_count": result.row_count,
                "rows": rows_as_dicts(result),
            }
        )


registry.register("json", JSONFormatter)
registry.register("json_meta", JSONMetaFormatter)
