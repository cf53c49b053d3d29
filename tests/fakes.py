"""In-memory stand-ins for the psycopg async connection surface.

FakeServer hands out FakeConnections through its connect() coroutine,
which matches the connect_factory signature DatabaseConnection expects.
Statements are answered by registered rules (regex -> reply) or by
in-memory tables that understand the SQL produced by core.postgres and
core.edit.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import psycopg.errors

_SELECT_PAGE = re.compile(
    r'^SELECT \* FROM "(?P<schema>[^"]+)"\."(?P<table>[^"]+)"'
    r"(?: WHERE \((?P<filter>.*)\))?"
    r'(?: ORDER BY "(?P<sort>[^"]+)" (?P<direction>ASC|DESC))?'
    r" LIMIT (?P<limit>\d+) OFFSET (?P<offset>\d+)$",
    re.S,
)
_SELECT_COUNT = re.compile(
    r'^SELECT COUNT\(\*\) FROM "(?P<schema>[^"]+)"\."(?P<table>[^"]+)"'
    r"(?: WHERE \((?P<filter>.*)\))?$",
    re.S,
)
_UPDATE = re.compile(
    r'^UPDATE "(?P<schema>[^"]+)"\."(?P<table>[^"]+)" '
    r'SET "(?P<column>[^"]+)" = (?P<value>NULL|%\(value\)s) '
    r'WHERE "(?P<key>[^"]+)" = %\(pk\)s$',
    re.S,
)


@dataclass
class Reply:
    columns: list[str] = field(default_factory=list)
    rows: list[tuple[Any, ...]] = field(default_factory=list)
    rowcount: int = -1


@dataclass
class Blocked:
    """Reply that is held back until released or cancelled server-side."""

    reply: Reply


@dataclass
class FakeTable:
    columns: list[tuple[str, str]]
    rows: list[list[Any]]
    primary_key: list[str] = field(default_factory=list)
    filters: dict[str, Callable[[dict[str, Any]], bool]] = field(default_factory=dict)
    # Heap-like behaviour: an UPDATE writes a new tuple at the end.
    move_updated_rows: bool = False

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.columns]

    def select(self, raw_filter: str | None) -> list[list[Any]]:
        if raw_filter is None:
            return list(self.rows)
        predicate = self.filters[raw_filter]
        return [row for row in self.rows if predicate(dict(zip(self.names, row)))]


@dataclass
class _Column:
    name: str


class _Adapters:
    def __init__(self) -> None:
        self.loaders: dict[int | str, type] = {}

    def register_loader(self, oid: int | str, loader: type) -> None:
        self.loaders[oid] = loader


class _Info:
    def __init__(self, backend_pid: int) -> None:
        self.backend_pid = backend_pid


class FakeCursor:
    def __init__(self, connection: FakeConnection) -> None:
        self._connection = connection
        self.description: list[_Column] | None = None
        self.rowcount = -1
        self._rows: list[tuple[Any, ...]] = []

    async def __aenter__(self) -> FakeCursor:
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None

    async def execute(self, sql: str, params: dict[str, Any] | None = None) -> None:
        # psycopg serializes statements on one connection with conn.lock.
        async with self._connection.lock:
            reply = await self._connection.server.dispatch(self._connection, sql, params)
        self.description = [_Column(name) for name in reply.columns] or None
        self._rows = list(reply.rows)
        self.rowcount = reply.rowcount if reply.rowcount >= 0 else len(reply.rows)

    async def fetchall(self) -> list[tuple[Any, ...]]:
        return self._rows


class FakeConnection:
    def __init__(self, server: FakeServer, pid: int, kwargs: dict[str, Any]) -> None:
        self.server = server
        self.info = _Info(pid)
        self.kwargs = kwargs
        self.closed = False
        self.lock = asyncio.Lock()
        self.adapters = _Adapters()

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    async def close(self) -> None:
        self.closed = True


class FakeServer:
    def __init__(self) -> None:
        self.rules: list[tuple[re.Pattern[str], Any]] = []
        self.tables: dict[tuple[str, str], FakeTable] = {}
        self.executed: list[tuple[str, dict[str, Any] | None]] = []
        self.connections: list[FakeConnection] = []
        self.connect_error: Exception | None = None
        self.cancel_requests: list[int] = []
        self.blocked_pids: set[int] = set()
        self._released = False
        self._cancelled_pids: set[int] = set()
        self._next_pid = 4000

    # -- Setup --

    def on(self, pattern: str, reply: Any) -> None:
        """Answer statements matching pattern with a Reply, Blocked, exception or callable."""
        self.rules.append((re.compile(pattern, re.I | re.S), reply))

    def add_table(
        self,
        schema: str,
        table: str,
        columns: list[tuple[str, str]],
        rows: list[list[Any]],
        **kwargs: Any,
    ) -> FakeTable:
        fake = FakeTable(columns, [list(row) for row in rows], **kwargs)
        self.tables[(schema, table)] = fake
        return fake

    def release(self) -> None:
        self._released = True

    # -- Introspection --

    @property
    def open_connections(self) -> list[FakeConnection]:
        return [conn for conn in self.connections if not conn.closed]

    def statements(self) -> list[str]:
        return [sql for sql, _ in self.executed]

    # -- Driver surface --

    async def connect(self, **kwargs: Any) -> FakeConnection:
        if self.connect_error is not None:
            raise self.connect_error
        self._next_pid += 1
        connection = FakeConnection(self, self._next_pid, kwargs)
        self.connections.append(connection)
        return connection

    async def dispatch(
        self, connection: FakeConnection, sql: str, params: dict[str, Any] | None
    ) -> Reply:
        self.executed.append((sql, params))
        statement = " ".join(sql.split())

        if "pg_cancel_backend" in statement:
            assert params is not None
            pid = params["pid"]
            self.cancel_requests.append(pid)
            hit = pid in self.blocked_pids
            if hit:
                self._cancelled_pids.add(pid)
            return Reply(["pg_cancel_backend"], [(hit,)])

        for pattern, reply in self.rules:
            if pattern.search(statement):
                return await self._resolve(connection, reply, statement, params)

        reply = self._table_reply(statement, params)
        if reply is not None:
            return reply
        raise AssertionError(f"Unexpected SQL: {statement}")

    async def _resolve(
        self,
        connection: FakeConnection,
        reply: Any,
        statement: str,
        params: dict[str, Any] | None,
    ) -> Reply:
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, Blocked):
            pid = connection.info.backend_pid
            self.blocked_pids.add(pid)
            try:
                while not self._released:
                    if pid in self._cancelled_pids:
                        raise psycopg.errors.QueryCanceled(
                            "canceling statement due to user request"
                        )
                    await asyncio.sleep(0.005)
            finally:
                self.blocked_pids.discard(pid)
                self._cancelled_pids.discard(pid)
            return reply.reply
        if callable(reply):
            return reply(statement, params)
        return reply

    def _table_reply(self, statement: str, params: dict[str, Any] | None) -> Reply | None:
        if m := _SELECT_PAGE.match(statement):
            table = self.tables[(m["schema"], m["table"])]
            rows = table.select(m["filter"])
            if m["sort"]:
                index = table.names.index(m["sort"])
                rows.sort(
                    key=lambda row: (row[index] is None, row[index]),
                    reverse=m["direction"] == "DESC",
                )
            offset, limit = int(m["offset"]), int(m["limit"])
            page = rows[offset : offset + limit]
            return Reply(table.names, [tuple(row) for row in page])

        if m := _SELECT_COUNT.match(statement):
            table = self.tables[(m["schema"], m["table"])]
            return Reply(["count"], [(len(table.select(m["filter"])),)])

        if m := _UPDATE.match(statement):
            assert params is not None
            table = self.tables[(m["schema"], m["table"])]
            key_index = table.names.index(m["key"])
            column_index = table.names.index(m["column"])
            value = None if m["value"] == "NULL" else params["value"]
            updated = []
            for row in table.rows:
                if str(row[key_index]) == params["pk"]:
                    row[column_index] = value
                    updated.append(row)
            if table.move_updated_rows:
                kept = [row for row in table.rows if all(row is not u for u in updated)]
                table.rows = kept + updated
            return Reply(rowcount=len(updated))

        if "pg_index" in statement and params and "relation" in params:
            for (schema, name), table in self.tables.items():
                if params["relation"] == f'"{schema}"."{name}"':
                    return Reply(["attname"], [(col,) for col in table.primary_key])
            return Reply(["attname"], [])

        if "information_schema.columns" in statement and params and "table" in params:
            table = self.tables.get((params["schema"], params["table"]))
            if table is not None and "is_nullable" not in statement:
                return Reply(["column_name", "data_type"], list(table.columns))
        return None
