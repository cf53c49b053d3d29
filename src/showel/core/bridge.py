"""Command/response channel between the client and the database.

The client submits commands; a single asyncio loop running in a
background thread owns the DatabaseConnection and answers with
responses. Everything except ExecuteQuery is handled one command at a
time in submission order. ExecuteQuery runs as its own task so that a
CancelQuery submitted after it is handled while the query is still in
flight.

Responses are delivered through a thread-safe queue which the client
drains without blocking; a drain may return zero, one, or many
responses, and query results arrive out of band from submission order.
"""

from __future__ import annotations

import asyncio
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum

import structlog

from showel.core import postgres
from showel.core.client import DatabaseConnection
from showel.core.config import ConnectionConfig
from showel.core.edit import update_cell
from showel.core.exceptions import (
    ConnectErrorKind,
    DatabaseConnectionError,
    NotConnectedError,
    QueryCancelledError,
    QueryError,
    ShowelError,
    UpdateError,
)
from showel.core.logging import command_context
from showel.core.models import ColumnType, QueryResult, SearchResult, TableInfo

# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Connect:
    config: ConnectionConfig


@dataclass(frozen=True)
class Disconnect:
    pass


@dataclass(frozen=True)
class ListDatabases:
    pass


@dataclass(frozen=True)
class ListSchemas:
    pass


@dataclass(frozen=True)
class ListTables:
    schema: str


@dataclass(frozen=True)
class ListColumnTypes:
    schema: str
    table: str


@dataclass(frozen=True)
class GetTableInfo:
    schema: str
    table: str


@dataclass(frozen=True)
class SearchObjects:
    term: str


@dataclass(frozen=True)
class ExecuteQuery:
    sql: str


@dataclass(frozen=True)
class CancelQuery:
    pass


@dataclass(frozen=True)
class ResetCancel:
    pass


@dataclass(frozen=True)
class LoadTableData:
    """One page request. raw_filter is interpolated verbatim as a WHERE clause."""

    schema: str
    table: str
    limit: int
    offset: int
    sort_column: str | None = None
    ascending: bool = True
    raw_filter: str | None = None


@dataclass(frozen=True)
class CheckConnectionStatus:
    pass


@dataclass(frozen=True)
class UpdateCell:
    schema: str
    table: str
    column: str
    value: str
    row: tuple[str, ...]
    columns: tuple[str, ...]


@dataclass(frozen=True)
class BeginTransaction:
    pass


@dataclass(frozen=True)
class CommitTransaction:
    pass


@dataclass(frozen=True)
class RollbackTransaction:
    pass


Command = (
    Connect
    | Disconnect
    | ListDatabases
    | ListSchemas
    | ListTables
    | ListColumnTypes
    | GetTableInfo
    | SearchObjects
    | ExecuteQuery
    | CancelQuery
    | ResetCancel
    | LoadTableData
    | CheckConnectionStatus
    | UpdateCell
    | BeginTransaction
    | CommitTransaction
    | RollbackTransaction
)

# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class ErrorKind(StrEnum):
    CONNECTION = "connection"
    NOT_CONNECTED = "not_connected"
    QUERY = "query"
    CANCELLED = "cancelled"
    UPDATE = "update"
    INTERNAL = "internal"


@dataclass(frozen=True)
class Connected:
    config: ConnectionConfig


@dataclass(frozen=True)
class Disconnected:
    pass


@dataclass(frozen=True)
class ConnectionFailed:
    kind: ConnectErrorKind
    message: str
    hint: str | None = None

    def to_exception(self) -> DatabaseConnectionError:
        return DatabaseConnectionError(self.message, self.kind)


@dataclass(frozen=True)
class Databases:
    names: list[str]


@dataclass(frozen=True)
class Schemas:
    names: list[str]


@dataclass(frozen=True)
class Tables:
    schema: str
    names: list[str]


@dataclass(frozen=True)
class ColumnTypes:
    schema: str
    table: str
    columns: list[ColumnType]


@dataclass(frozen=True)
class TableInfoLoaded:
    info: TableInfo


@dataclass(frozen=True)
class SearchResults:
    term: str
    results: list[SearchResult]


@dataclass(frozen=True)
class QueryCompleted:
    command: ExecuteQuery
    result: QueryResult
    duration_ms: float = 0.0

    @property
    def sql(self) -> str:
        return self.command.sql


@dataclass(frozen=True)
class TableData:
    request: LoadTableData
    result: QueryResult
    total_count: int


@dataclass(frozen=True)
class ErrorResponse:
    """Typed failure. command is the request that failed, when known."""

    kind: ErrorKind
    message: str
    hint: str | None = None
    command: Command | None = None

    def to_exception(self) -> ShowelError:
        """Rebuild the exception this response was converted from."""
        exc_type = _ERROR_TYPES.get(self.kind, ShowelError)
        return exc_type(self.message)


@dataclass(frozen=True)
class ConnectionStatus:
    connected: bool
    config: ConnectionConfig


@dataclass(frozen=True)
class CellUpdated:
    schema: str
    table: str
    column: str
    affected_rows: int = 0
    key_column: str = ""
    key_value: str | None = None


@dataclass(frozen=True)
class TransactionStarted:
    pass


@dataclass(frozen=True)
class TransactionCommitted:
    pass


@dataclass(frozen=True)
class TransactionRolledBack:
    pass


Response = (
    Connected
    | Disconnected
    | ConnectionFailed
    | Databases
    | Schemas
    | Tables
    | ColumnTypes
    | TableInfoLoaded
    | SearchResults
    | QueryCompleted
    | TableData
    | ErrorResponse
    | ConnectionStatus
    | CellUpdated
    | TransactionStarted
    | TransactionCommitted
    | TransactionRolledBack
)

Emit = Callable[[Response], None]

_ERROR_TYPES: dict[ErrorKind, type[ShowelError]] = {
    ErrorKind.CONNECTION: DatabaseConnectionError,
    ErrorKind.NOT_CONNECTED: NotConnectedError,
    ErrorKind.QUERY: QueryError,
    ErrorKind.CANCELLED: QueryCancelledError,
    ErrorKind.UPDATE: UpdateError,
}


def error_response(
    exc: BaseException, command: Command | None = None
) -> ErrorResponse:
    """Convert an exception into the typed error that crosses the channel."""
    hint = None
    if isinstance(exc, DatabaseConnectionError):
        kind = ErrorKind.CONNECTION
        hint = exc.hint
    elif isinstance(exc, NotConnectedError):
        kind = ErrorKind.NOT_CONNECTED
    elif isinstance(exc, QueryCancelledError):
        kind = ErrorKind.CANCELLED
    elif isinstance(exc, QueryError):
        kind = ErrorKind.QUERY
    elif isinstance(exc, UpdateError):
        kind = ErrorKind.UPDATE
    else:
        kind = ErrorKind.INTERNAL

    if isinstance(exc, ShowelError):
        message = exc.message
    else:
        message = str(exc) or type(exc).__name__
    return ErrorResponse(kind, message, hint, command)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class CommandDispatcher:
    """Sole owner of the DatabaseConnection; turns commands into responses."""

    def __init__(self, client: DatabaseConnection | None = None) -> None:
        self.client = client or DatabaseConnection()
        self._query_tasks: set[asyncio.Task[None]] = set()
        self._handlers: dict[type, Callable[..., object]] = {
            Connect: self._connect,
            Disconnect: self._disconnect,
            ListDatabases: self._list_databases,
            ListSchemas: self._list_schemas,
            ListTables: self._list_tables,
            ListColumnTypes: self._list_column_types,
            GetTableInfo: self._get_table_info,
            SearchObjects: self._search_objects,
            CancelQuery: self._cancel_query,
            ResetCancel: self._reset_cancel,
            LoadTableData: self._load_table_data,
            CheckConnectionStatus: self._check_connection_status,
            UpdateCell: self._update_cell,
            BeginTransaction: self._begin_transaction,
            CommitTransaction: self._commit_transaction,
            RollbackTransaction: self._rollback_transaction,
        }

    async def run(
        self, commands: asyncio.Queue[Command | None], emit: Emit
    ) -> None:
        """Consume commands until a None sentinel arrives, then shut down."""
        try:
            while True:
                command = await commands.get()
                if command is None:
                    break
                if isinstance(command, ExecuteQuery):
                    self.spawn_query(command, emit)
                    continue
                response = await self.handle(command)
                if response is not None:
                    emit(response)
        finally:
            await self.shutdown()

    def spawn_query(self, command: ExecuteQuery, emit: Emit) -> asyncio.Task[None]:
        task = asyncio.create_task(self._execute_query(command, emit))
        self._query_tasks.add(task)
        task.add_done_callback(self._query_tasks.discard)
        return task

    async def shutdown(self) -> None:
        for task in list(self._query_tasks):
            task.cancel()
        if self._query_tasks:
            await asyncio.gather(*self._query_tasks, return_exceptions=True)
        await self.client.disconnect()

    async def handle(self, command: Command) -> Response | None:
        """Run one non-query command. Never raises."""
        log = structlog.get_logger()
        handler = self._handlers.get(type(command))
        if handler is None:
            log.error("unsupported command", command=type(command).__name__)
            return ErrorResponse(
                ErrorKind.INTERNAL,
                f"Unsupported command: {type(command).__name__}",
                command=command,
            )

        with command_context(command):
            log.debug("handling command")
            try:
                return await handler(command)  # type: ignore[misc]
            except ShowelError as e:
                return error_response(e, command)
            except Exception as e:
                log.exception("command failed")
                return error_response(e, command)

    async def _execute_query(self, command: ExecuteQuery, emit: Emit) -> None:
        log = structlog.get_logger()
        start_time = time.monotonic()
        try:
            with command_context(command):
                result = await self.client.execute_query(command.sql)
        except ShowelError as e:
            emit(error_response(e, command))
            return
        except Exception as e:
            log.exception("query task failed")
            emit(error_response(e, command))
            return

        duration_ms = (time.monotonic() - start_time) * 1000
        emit(QueryCompleted(command, result, duration_ms))

    # -- Handlers --

    async def _connect(self, command: Connect) -> Response:
        try:
            await self.client.connect(command.config)
        except DatabaseConnectionError as e:
            return ConnectionFailed(e.kind, e.message, e.hint)
        return Connected(command.config)

    async def _disconnect(self, command: Disconnect) -> Response:
        await self.client.disconnect()
        return Disconnected()

    async def _list_databases(self, command: ListDatabases) -> Response:
        return Databases(await postgres.list_databases(self.client))

    async def _list_schemas(self, command: ListSchemas) -> Response:
        return Schemas(await postgres.list_schemas(self.client))

    async def _list_tables(self, command: ListTables) -> Response:
        names = await postgres.list_tables(self.client, command.schema)
        return Tables(command.schema, names)

    async def _list_column_types(self, command: ListColumnTypes) -> Response:
        columns = await postgres.get_column_types(
            self.client, command.schema, command.table
        )
        return ColumnTypes(command.schema, command.table, columns)

    async def _get_table_info(self, command: GetTableInfo) -> Response:
        info = await postgres.get_table_info(self.client, command.schema, command.table)
        return TableInfoLoaded(info)

    async def _search_objects(self, command: SearchObjects) -> Response:
        results = await postgres.search_objects(self.client, command.term)
        return SearchResults(command.term, results)

    async def _cancel_query(self, command: CancelQuery) -> Response:
        await self.client.cancel()
        return error_response(QueryCancelledError(), command)

    async def _reset_cancel(self, command: ResetCancel) -> None:
        self.client.reset_cancel()

    async def _load_table_data(self, command: LoadTableData) -> Response:
        result = await postgres.get_table_data(
            self.client,
            command.schema,
            command.table,
            command.limit,
            command.offset,
            command.sort_column,
            command.ascending,
            command.raw_filter,
        )
        total_count = await postgres.get_table_row_count(
            self.client, command.schema, command.table, command.raw_filter
        )
        return TableData(command, result, total_count)

    async def _check_connection_status(self, command: CheckConnectionStatus) -> Response:
        return ConnectionStatus(self.client.is_connected(), self.client.get_config())

    async def _update_cell(self, command: UpdateCell) -> Response:
        write = await update_cell(
            self.client,
            command.schema,
            command.table,
            command.column,
            command.value,
            command.row,
            command.columns,
        )
        return CellUpdated(
            command.schema,
            command.table,
            command.column,
            write.affected_rows,
            write.key_column,
            write.key_value,
        )

    async def _begin_transaction(self, command: BeginTransaction) -> Response:
        await self.client.begin_transaction()
        return TransactionStarted()

    async def _commit_transaction(self, command: CommitTransaction) -> Response:
        await self.client.commit_transaction()
        return TransactionCommitted()

    async def _rollback_transaction(self, command: RollbackTransaction) -> Response:
        await self.client.rollback_transaction()
        return TransactionRolledBack()


# ---------------------------------------------------------------------------
# Worker thread
# ---------------------------------------------------------------------------


@dataclass
class DatabaseWorker:
    """Background thread hosting the dispatcher's event loop.

    submit() and drain() are safe to call from any thread and never
    block on database I/O.
    """

    dispatcher: CommandDispatcher = field(default_factory=CommandDispatcher)
    _responses: queue.SimpleQueue[Response] = field(
        default_factory=queue.SimpleQueue, init=False, repr=False
    )
    _loop: asyncio.AbstractEventLoop | None = field(default=None, init=False)
    _commands: asyncio.Queue[Command | None] | None = field(default=None, init=False)
    _thread: threading.Thread | None = field(default=None, init=False)
    _ready: threading.Event = field(default_factory=threading.Event, init=False)

    def __enter__(self) -> DatabaseWorker:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._ready.clear()
        self._thread = threading.Thread(
            target=self._thread_main, name="showel-db-worker", daemon=True
        )
        self._thread.start()
        self._ready.wait()

    def _thread_main(self) -> None:
        asyncio.run(self._serve())

    async def _serve(self) -> None:
        log = structlog.get_logger()
        self._loop = asyncio.get_running_loop()
        self._commands = asyncio.Queue()
        self._ready.set()
        log.debug("database worker started")
        try:
            await self.dispatcher.run(self._commands, self._responses.put)
        finally:
            self._loop = None
            log.debug("database worker stopped")

    def submit(self, command: Command) -> None:
        """Enqueue a command for the worker. Returns immediately."""
        loop, commands = self._loop, self._commands
        if loop is None or commands is None:
            raise RuntimeError("Database worker is not running")
        loop.call_soon_threadsafe(commands.put_nowait, command)

    def drain(self) -> list[Response]:
        """Return every response that has arrived so far, possibly none."""
        responses: list[Response] = []
        while True:
            try:
                responses.append(self._responses.get_nowait())
            except queue.Empty:
                return responses

    def next_response(self, timeout: float | None = None) -> Response | None:
        """Block until a response arrives or timeout elapses."""
        try:
            return self._responses.get(timeout=timeout)
        except queue.Empty:
            return None

    def stop(self, timeout: float = 5.0) -> None:
        """Disconnect, stop the loop and join the thread."""
        thread = self._thread
        if thread is None:
            return
        loop, commands = self._loop, self._commands
        if loop is not None and commands is not None:
            try:
                loop.call_soon_threadsafe(commands.put_nowait, None)
            except RuntimeError:
                # Loop already closed.
                pass
        thread.join(timeout)
        self._thread = None
