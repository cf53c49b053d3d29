"""Result and catalog models for showel.

Pydantic models for query results and catalog snapshots returned by
DatabaseConnection and the catalog functions in core.postgres.
Every cell value is already a string by the time it lands here.
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, model_validator

NULL_DISPLAY = "NULL"

ColumnType = tuple[str, str]


def stringify(value: Any) -> str:
    """Render a driver value the way the results grid displays it."""
    if value is None:
        return NULL_DISPLAY
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, memoryview | bytes):
        return "\\x" + bytes(value).hex()
    if isinstance(value, dict | list):
        # Decoded json from a session without server-text loaders.
        return json.dumps(value, default=str)
    return str(value)


class QueryResult(BaseModel):
    """Result of a SQL statement.

    Tabular results carry columns and rows with affected_rows == 0;
    mutation acknowledgements carry only affected_rows.
    """

    columns: list[str] = []
    rows: list[list[str]] = []
    affected_rows: int = 0

    @model_validator(mode="after")
    def check_row_arity(self) -> QueryResult:
        width = len(self.columns)
        for index, row in enumerate(self.rows):
            if len(row) != width:
                msg = (
                    f"Row {index} has {len(row)} values, expected {width} "
                    f"(columns: {', '.join(self.columns)})"
                )
                raise ValueError(msg)
        return self

    @classmethod
    def empty(cls) -> QueryResult:
        return cls()

    @classmethod
    def acknowledgement(cls, affected_rows: int) -> QueryResult:
        return cls(affected_rows=affected_rows)

    @property
    def is_tabular(self) -> bool:
        return bool(self.columns)

    @property
    def row_count(self) -> int:
        return len(self.rows)


class ColumnInfo(BaseModel):
    name: str
    data_type: str
    nullable: bool
    default: str | None = None


class ForeignKeyInfo(BaseModel):
    name: str
    column: str
    foreign_schema: str
    foreign_table: str
    foreign_column: str


class IndexInfo(BaseModel):
    name: str
    definition: str


class TableInfo(BaseModel):
    """Read-only snapshot of a table's structure, fetched on demand."""

    name: str
    schema_name: str
    table_type: str
    columns: list[ColumnInfo] = []
    primary_key: list[str] = []
    foreign_keys: list[ForeignKeyInfo] = []
    indexes: list[IndexInfo] = []


class SearchResult(BaseModel):
    schema_name: str
    name: str
    object_type: Literal["table", "view", "column"]
    column_name: str | None = None
