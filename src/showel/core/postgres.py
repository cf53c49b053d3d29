"""PostgreSQL catalog introspection and table data operations.

Framework-agnostic business logic used by the command dispatcher.
Catalog queries follow information_schema where it suffices and fall
back to pg_catalog for primary keys and indexes; porting to another
engine means replacing exactly the SQL in this module.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from showel.core.exceptions import InputError, QueryError
from showel.core.models import (
    ColumnInfo,
    ColumnType,
    ForeignKeyInfo,
    IndexInfo,
    QueryResult,
    SearchResult,
    TableInfo,
)

if TYPE_CHECKING:
    from showel.core.client import DatabaseConnection


def quote_ident(name: str) -> str:
    """Quote an SQL identifier, doubling embedded double quotes."""
    return '"' + name.replace('"', '""') + '"'


def qualified_name(schema_name: str, table_name: str) -> str:
    return f"{quote_ident(schema_name)}.{quote_ident(table_name)}"


# ---------------------------------------------------------------------------
# Catalog listing
# ---------------------------------------------------------------------------


async def list_databases(client: DatabaseConnection) -> list[str]:
    """List all non-template database names."""
    sql = """
    SELECT datname FROM pg_catalog.pg_database
    WHERE datistemplate = false
    ORDER BY datname
    """
    return [row[0] for row in await client.fetch(sql)]


async def list_schemas(client: DatabaseConnection) -> list[str]:
    sql = """
    SELECT schema_name FROM information_schema.schemata
    WHERE schema_name NOT IN ('pg_catalog', 'information_schema')
    ORDER BY schema_name
    """
    return [row[0] for row in await client.fetch(sql)]


async def list_tables(client: DatabaseConnection, schema_name: str) -> list[str]:
    """List base tables in a schema."""
    sql = """
    SELECT table_name FROM information_schema.tables
    WHERE table_schema = %(schema)s AND table_type = 'BASE TABLE'
    ORDER BY table_name
    """
    return [row[0] for row in await client.fetch(sql, {"schema": schema_name})]


async def get_column_types(
    client: DatabaseConnection, schema_name: str, table_name: str
) -> list[ColumnType]:
    """Column names and declared types in ordinal order."""
    sql = """
    SELECT column_name, data_type
    FROM information_schema.columns
    WHERE table_schema = %(schema)s AND table_name = %(table)s
    ORDER BY ordinal_position
    """
    rows = await client.fetch(sql, {"schema": schema_name, "table": table_name})
    return [(str(name), str(data_type)) for name, data_type in rows]


# ---------------------------------------------------------------------------
# Table structure
# ---------------------------------------------------------------------------


async def find_primary_key(
    client: DatabaseConnection, schema_name: str, table_name: str
) -> list[str]:
    """Primary key columns in key order. Empty when none or on lookup failure."""
    sql = """
    SELECT a.attname
    FROM pg_catalog.pg_index i
    JOIN pg_catalog.pg_attribute a
      ON a.attrelid = i.indrelid AND a.attnum = ANY(i.indkey)
    WHERE i.indrelid = %(relation)s::regclass AND i.indisprimary
    ORDER BY array_position(i.indkey::int2[], a.attnum)
    """
    try:
        rows = await client.fetch(
            sql, {"relation": qualified_name(schema_name, table_name)}
        )
    except QueryError as e:
        structlog.get_logger().warning(
            "primary key lookup failed",
            table=f"{schema_name}.{table_name}",
            error=e.message,
        )
        return []
    return [str(row[0]) for row in rows]


async def _foreign_keys(
    client: DatabaseConnection, schema_name: str, table_name: str
) -> list[ForeignKeyInfo]:
    sql = """
    SELECT tc.constraint_name, kcu.column_name,
           ccu.table_schema AS foreign_table_schema,
           ccu.table_name AS foreign_table_name,
           ccu.column_name AS foreign_column_name
    FROM information_schema.table_constraints tc
    JOIN information_schema.key_column_usage kcu
      ON tc.constraint_name = kcu.constraint_name
     AND tc.table_schema = kcu.table_schema
    JOIN information_schema.constraint_column_usage ccu
      ON ccu.constraint_name = tc.constraint_name
    WHERE tc.constraint_type = 'FOREIGN KEY'
      AND tc.table_schema = %(schema)s AND tc.table_name = %(table)s
    ORDER BY tc.constraint_name, kcu.ordinal_position
    """
    rows = await client.fetch(sql, {"schema": schema_name, "table": table_name})
    return [
        ForeignKeyInfo(
            name=name,
            column=column,
            foreign_schema=foreign_schema,
            foreign_table=foreign_table,
            foreign_column=foreign_column,
        )
        for name, column, foreign_schema, foreign_table, foreign_column in rows
    ]


async def _indexes(
    client: DatabaseConnection, schema_name: str, table_name: str
) -> list[IndexInfo]:
    sql = """
    SELECT indexname, indexdef
    FROM pg_catalog.pg_indexes
    WHERE schemaname = %(schema)s AND tablename = %(table)s
    ORDER BY indexname
    """
    rows = await client.fetch(sql, {"schema": schema_name, "table": table_name})
    return [IndexInfo(name=name, definition=definition) for name, definition in rows]


async def get_table_info(
    client: DatabaseConnection, schema_name: str, table_name: str
) -> TableInfo:
    """Fetch a fresh structural snapshot of a table.

    The table itself must exist; foreign key and index lookups are best
    effort and come back empty when they fail.
    """
    log = structlog.get_logger()
    params = {"schema": schema_name, "table": table_name}

    table_rows = await client.fetch(
        """
        SELECT table_name, table_type, table_schema
        FROM information_schema.tables
        WHERE table_schema = %(schema)s AND table_name = %(table)s
        """,
        params,
    )
    if not table_rows:
        raise QueryError(f"Table not found: {schema_name}.{table_name}")
    name, table_type, table_schema = table_rows[0]

    column_rows = await client.fetch(
        """
        SELECT column_name, data_type, is_nullable, column_default
        FROM information_schema.columns
        WHERE table_schema = %(schema)s AND table_name = %(table)s
        ORDER BY ordinal_position
        """,
        params,
    )
    columns = [
        ColumnInfo(
            name=column_name,
            data_type=data_type,
            nullable=is_nullable == "YES",
            default=column_default,
        )
        for column_name, data_type, is_nullable, column_default in column_rows
    ]

    primary_key = await find_primary_key(client, schema_name, table_name)

    try:
        foreign_keys = await _foreign_keys(client, schema_name, table_name)
    except QueryError as e:
        log.warning("foreign key lookup failed", error=e.message)
        foreign_keys = []

    try:
        indexes = await _indexes(client, schema_name, table_name)
    except QueryError as e:
        log.warning("index lookup failed", error=e.message)
        indexes = []

    return TableInfo(
        name=name,
        schema_name=table_schema,
        table_type=table_type,
        columns=columns,
        primary_key=primary_key,
        foreign_keys=foreign_keys,
        indexes=indexes,
    )


# ---------------------------------------------------------------------------
# Object search
# ---------------------------------------------------------------------------


async def search_objects(client: DatabaseConnection, term: str) -> list[SearchResult]:
    """Case-insensitive substring search over tables, then columns, then views."""
    params = {"pattern": f"%{term}%"}

    table_rows = await client.fetch(
        """
        SELECT table_schema, table_name
        FROM information_schema.tables
        WHERE (table_schema ILIKE %(pattern)s OR table_name ILIKE %(pattern)s)
          AND table_type = 'BASE TABLE'
        ORDER BY table_schema, table_name
        """,
        params,
    )
    column_rows = await client.fetch(
        """
        SELECT table_schema, table_name, column_name
        FROM information_schema.columns
        WHERE (table_schema ILIKE %(pattern)s OR table_name ILIKE %(pattern)s
               OR column_name ILIKE %(pattern)s)
        ORDER BY table_schema, table_name, column_name
        """,
        params,
    )
    view_rows = await client.fetch(
        """
        SELECT table_schema, table_name
        FROM information_schema.views
        WHERE (table_schema ILIKE %(pattern)s OR table_name ILIKE %(pattern)s)
        ORDER BY table_schema, table_name
        """,
        params,
    )

    results = [
        SearchResult(schema_name=schema, name=name, object_type="table")
        for schema, name in table_rows
    ]
    results.extend(
        SearchResult(
            schema_name=schema, name=name, object_type="column", column_name=column
        )
        for schema, name, column in column_rows
    )
    results.extend(
        SearchResult(schema_name=schema, name=name, object_type="view")
        for schema, name in view_rows
    )
    return results


# ---------------------------------------------------------------------------
# Table data
# ---------------------------------------------------------------------------


def _raw_filter_clause(raw_filter: str | None) -> str:
    """WHERE clause for a user-typed filter.

    The expression is interpolated verbatim: it carries the same trust
    as text typed into the query editor. Nothing else may use this path.
    """
    if raw_filter is None or not raw_filter.strip():
        return ""
    return f" WHERE ({raw_filter})"


def build_table_data_sql(
    schema_name: str,
    table_name: str,
    limit: int,
    offset: int,
    sort_column: str | None = None,
    ascending: bool = True,
    raw_filter: str | None = None,
) -> str:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
        raise InputError(f"Invalid page size: {limit!r}")
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise InputError(f"Invalid offset: {offset!r}")

    sql = f"SELECT * FROM {qualified_name(schema_name, table_name)}"
    sql += _raw_filter_clause(raw_filter)
    if sort_column:
        direction = "ASC" if ascending else "DESC"
        sql += f" ORDER BY {quote_ident(sort_column)} {direction}"
    sql += f" LIMIT {limit} OFFSET {offset}"
    return sql


async def get_table_data(
    client: DatabaseConnection,
    schema_name: str,
    table_name: str,
    limit: int,
    offset: int,
    sort_column: str | None = None,
    ascending: bool = True,
    raw_filter: str | None = None,
) -> QueryResult:
    """Fetch one page of rows with server-side ordering and filtering."""
    sql = build_table_data_sql(
        schema_name, table_name, limit, offset, sort_column, ascending, raw_filter
    )
    return await client.fetch_result(sql)


async def get_table_row_count(
    client: DatabaseConnection,
    schema_name: str,
    table_name: str,
    raw_filter: str | None = None,
) -> int:
    sql = f"SELECT COUNT(*) FROM {qualified_name(schema_name, table_name)}"
    sql += _raw_filter_clause(raw_filter)
    rows = await client.fetch(sql)
    return int(rows[0][0]) if rows else 0


# ---------------------------------------------------------------------------
# Backend control
# ---------------------------------------------------------------------------


async def kill_backend(client: DatabaseConnection, pid: int) -> bool:
    """Ask the server to cancel the statement running in backend pid.

    Returns False when no such backend exists or it had nothing to cancel.
    """
    rows = await client.fetch("SELECT pg_cancel_backend(%(pid)s)", {"pid": pid})
    return bool(rows and rows[0][0])
