"""PostgreSQL connection handle for showel.

Wraps a single psycopg v3 async connection with query execution,
cooperative cancellation, and exception mapping to the ShowelError
hierarchy.

Cancellation uses two independent signals: a client-side flag checked
before a statement is issued and after its results arrive, and a
best-effort pg_cancel_backend() request sent over a short-lived
auxiliary session. A SELECT that has already finished on the server
is discarded rather than aborted.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from typing import Any

import psycopg
import psycopg.errors
import sentry_sdk
import structlog
from psycopg.postgres import types as builtin_types
from psycopg.types.multirange import MultirangeInfo
from psycopg.types.range import RangeInfo
from psycopg.types.string import TextLoader

from showel.core.config import ConnectionConfig
from showel.core.exceptions import (
    ConnectErrorKind,
    DatabaseConnectionError,
    NotConnectedError,
    QueryCancelledError,
    QueryError,
)
from showel.core.models import QueryResult, stringify
from showel.core.postgres import kill_backend

ConnectFactory = Callable[..., Awaitable[Any]]

_READ_PREFIXES = ("SELECT", "WITH", "SHOW")

# Loaded as text so cells match psql output.
_TEXT_TYPES = ("json", "jsonb", "record", "interval")

# SQLSTATE codes reported by the server during startup.
_SQLSTATE_KINDS: dict[str, ConnectErrorKind] = {
    "28P01": ConnectErrorKind.AUTH_FAILED,  # invalid_password
    "28000": ConnectErrorKind.AUTH_FAILED,  # invalid_authorization_specification
    "3D000": ConnectErrorKind.UNKNOWN_DATABASE,  # invalid_catalog_name
    "57P03": ConnectErrorKind.REFUSED,  # cannot_connect_now
}

# libpq reports network-level failures without a SQLSTATE.
_MESSAGE_KINDS: tuple[tuple[str, ConnectErrorKind], ...] = (
    ("timeout", ConnectErrorKind.TIMEOUT),
    ("password authentication failed", ConnectErrorKind.AUTH_FAILED),
    ("does not exist", ConnectErrorKind.UNKNOWN_DATABASE),
    ("connection refused", ConnectErrorKind.REFUSED),
)


def classify_connect_error(exc: BaseException) -> ConnectErrorKind:
    """Map a driver connection failure to an actionable category."""
    sqlstate = getattr(exc, "sqlstate", None)
    if sqlstate in _SQLSTATE_KINDS:
        return _SQLSTATE_KINDS[sqlstate]

    text = str(exc).lower()
    for needle, kind in _MESSAGE_KINDS:
        if needle in text:
            return kind
    return ConnectErrorKind.OTHER


def load_as_server_text(connection: Any) -> None:
    """Return json, record, interval, range and array cells as server text.

    psycopg would otherwise build dicts, lists, tuples or timedeltas whose
    str() is Python syntax rather than what psql shows.
    """
    adapters = connection.adapters
    for name in _TEXT_TYPES:
        adapters.register_loader(name, TextLoader)
    for info in builtin_types:
        if isinstance(info, RangeInfo | MultirangeInfo):
            adapters.register_loader(info.oid, TextLoader)
        if info.array_oid:
            adapters.register_loader(info.array_oid, TextLoader)


def is_read_statement(sql: str) -> bool:
    """True for statements executed for their rows rather than a row count."""
    return sql.strip().upper().startswith(_READ_PREFIXES)


class DatabaseConnection:
    """Owner of the one live database session.

    Not thread-safe: a single event loop (the command dispatcher) owns
    the instance. The query task and the cancel path share it within
    that loop, which is why the cancellation flag and backend PID are
    plain attributes.
    """

    def __init__(
        self,
        *,
        connect_timeout: int = 10,
        application_name: str = "showel",
        connect_factory: ConnectFactory | None = None,
    ) -> None:
        self.connect_timeout = connect_timeout
        self.application_name = application_name
        self._connect_factory = connect_factory or psycopg.AsyncConnection.connect
        self._connection: Any | None = None
        self._config = ConnectionConfig()
        self.cancelled = False
        self._backend_pid: int | None = None

    async def __aenter__(self) -> DatabaseConnection:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.disconnect()

    # -- Session lifecycle --

    async def _open(self, config: ConnectionConfig) -> Any:
        try:
            connection = await self._connect_factory(
                host=config.host,
                port=config.port,
                dbname=config.database,
                user=config.user,
                password=config.password,
                connect_timeout=self.connect_timeout,
                application_name=self.application_name,
                autocommit=True,
            )
        except psycopg.Error as e:
            kind = classify_connect_error(e)
            msg = (
                f"Failed to connect to database at {config.host}:{config.port}"
                f"/{config.database} as {config.user}: {e}"
            )
            raise DatabaseConnectionError(msg, kind) from e
        load_as_server_text(connection)
        return connection

    async def connect(self, config: ConnectionConfig) -> None:
        """Open a session for config, replacing any current one.

        On failure the previous session (if any) stays in place.
        """
        log = structlog.get_logger()
        try:
            new_connection = await self._open(config)
        except DatabaseConnectionError as e:
            log.warning("connection failed", target=config.display_name, kind=e.kind)
            raise

        previous = self._connection
        self._connection = new_connection
        self._config = config
        if previous is not None and not previous.closed:
            await previous.close()
        log.info("connected", target=config.display_name)

    async def disconnect(self) -> None:
        """Close the session. Safe to call when not connected."""
        connection, self._connection = self._connection, None
        if connection is not None:
            if not connection.closed:
                await connection.close()
            structlog.get_logger().info("disconnected", target=self._config.display_name)

    def is_connected(self) -> bool:
        return self._connection is not None

    def get_config(self) -> ConnectionConfig:
        return self._config

    @property
    def backend_pid(self) -> int | None:
        return self._backend_pid

    def _require_connection(self) -> Any:
        if self._connection is None:
            raise NotConnectedError()
        return self._connection

    # -- Cancellation --

    async def cancel(self) -> None:
        """Flag the running query as cancelled and ask the server to stop it.

        Failures on the auxiliary session are logged only; the flag is
        what the query path relies on.
        """
        log = structlog.get_logger()
        self.cancelled = True
        pid = self._backend_pid
        if pid is None:
            return

        control = DatabaseConnection(
            connect_timeout=self.connect_timeout,
            application_name=f"{self.application_name}-cancel",
            connect_factory=self._connect_factory,
        )
        try:
            await control.connect(self._config)
            if not await kill_backend(control, pid):
                log.warning("pg_cancel_backend returned false", pid=pid)
        except (DatabaseConnectionError, QueryError) as e:
            log.warning("server-side cancel failed", pid=pid, error=e.message)
        finally:
            await control.disconnect()

    def reset_cancel(self) -> None:
        self.cancelled = False
        self._backend_pid = None

    def _capture_backend_pid(self, connection: Any) -> None:
        try:
            self._backend_pid = connection.info.backend_pid
        except psycopg.Error as e:
            structlog.get_logger().debug("backend pid unavailable", error=str(e))
            self._backend_pid = None

    def _check_cancelled(self) -> None:
        if self.cancelled:
            structlog.get_logger().info("query cancelled")
            raise QueryCancelledError()

    # -- Statement execution --

    async def _run(
        self, sql: str, params: dict[str, Any] | None = None
    ) -> tuple[list[str], list[tuple[Any, ...]], int]:
        """Execute one statement; return (columns, raw rows, rowcount)."""
        log = structlog.get_logger()
        connection = self._require_connection()

        sql_normalized = " ".join(sql.split())
        log.debug("executing query", sql=sql_normalized)
        with sentry_sdk.start_span(
            op="db.query", name=sql_normalized[:100]
        ) as span:
            start_time = time.monotonic()
            try:
                async with connection.cursor() as cur:
                    await cur.execute(sql, params)
                    columns: list[str] = []
                    rows: list[tuple[Any, ...]] = []
                    if cur.description:
                        columns = [desc.name for desc in cur.description]
                        rows = await cur.fetchall()
                    rowcount = cur.rowcount
            except psycopg.errors.QueryCanceled as e:
                span.set_status("cancelled")
                if self.cancelled:
                    log.info("query cancelled by server", sql=sql_normalized)
                    raise QueryCancelledError() from e
                raise QueryError(str(e)) from e
            except psycopg.Error as e:
                span.set_status("internal_error")
                log.error("query failed", sql=sql_normalized, error=str(e))
                raise QueryError(str(e)) from e

            duration_ms = (time.monotonic() - start_time) * 1000
            span.set_data("row_count", len(rows))
            span.set_data("duration_ms", duration_ms)
            log.debug(
                "query complete",
                duration_ms=f"{duration_ms:.1f}",
                row_count=len(rows),
            )
        return columns, rows, rowcount

    async def fetch(
        self, sql: str, params: dict[str, Any] | None = None
    ) -> list[tuple[Any, ...]]:
        """Run a catalog query and return driver-typed rows."""
        _, rows, _ = await self._run(sql, params)
        return rows

    async def fetch_result(
        self, sql: str, params: dict[str, Any] | None = None
    ) -> QueryResult:
        """Run a query and return stringified columns and rows."""
        columns, rows, _ = await self._run(sql, params)
        return QueryResult(
            columns=columns,
            rows=[[stringify(value) for value in row] for row in rows],
        )

    async def execute(self, sql: str, params: dict[str, Any] | None = None) -> int:
        """Run a statement for its side effect and return the affected rows."""
        _, _, rowcount = await self._run(sql, params)
        return max(rowcount, 0)

    async def execute_query(self, sql: str) -> QueryResult:
        """Run user-supplied SQL from the query editor.

        SELECT/WITH/SHOW statements return rows; anything else returns
        the affected row count. The cancellation flag is checked before
        the statement is issued and, for reads, again once the rows are
        in. Either check discards the result.
        """
        self._check_cancelled()
        connection = self._require_connection()
        statement = sql.strip()
        self._capture_backend_pid(connection)
        try:
            if is_read_statement(statement):
                self._check_cancelled()
                result = await self.fetch_result(statement)
                self._check_cancelled()
                return result

            self._check_cancelled()
            return QueryResult.acknowledgement(await self.execute(statement))
        finally:
            self._backend_pid = None

    # -- Transactions --

    async def begin_transaction(self) -> None:
        await self.execute("BEGIN")

    async def commit_transaction(self) -> None:
        await self.execute("COMMIT")

    async def rollback_transaction(self) -> None:
        await self.execute("ROLLBACK")
