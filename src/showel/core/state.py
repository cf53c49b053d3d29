"""Headless client state: what a front end shows, rebuilt from responses.

ClientState turns user actions into commands and folds the worker's
responses back into view state on every tick. It never touches the
database itself; everything goes through a worker exposing submit()
and drain().
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

import structlog

from showel.core.bridge import (
    BeginTransaction,
    CancelQuery,
    CellUpdated,
    CheckConnectionStatus,
    ColumnTypes,
    Command,
    CommitTransaction,
    Connect,
    Connected,
    ConnectionFailed,
    ConnectionStatus,
    Databases,
    Disconnect,
    Disconnected,
    ErrorKind,
    ErrorResponse,
    ExecuteQuery,
    GetTableInfo,
    ListDatabases,
    ListSchemas,
    ListTables,
    QueryCompleted,
    ResetCancel,
    Response,
    RollbackTransaction,
    Schemas,
    SearchObjects,
    SearchResults,
    TableInfoLoaded,
    Tables,
    TransactionCommitted,
    TransactionRolledBack,
    TransactionStarted,
    UpdateCell,
)
from showel.core.config import DEFAULT_PAGE_SIZE, ConnectionConfig
from showel.core.models import QueryResult, SearchResult, TableInfo
from showel.core.paging import PaginationMode, TablePager

DEFAULT_HISTORY_LIMIT = 50

# Commands of finished runs whose responses may still be in flight.
_RETIRED_RUNS = 8


class Worker(Protocol):
    def submit(self, command: Command) -> None: ...

    def drain(self) -> list[Response]: ...


# ---------------------------------------------------------------------------
# Query lifecycle
# ---------------------------------------------------------------------------


class QueryState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


class QueryTracker:
    """Lifecycle of the query editor's statement.

    Idle -> Running -> Completed | Cancelled | Errored -> Idle.

    Cancelling produces two candidate terminal responses: the explicit
    "Query cancelled" from CancelQuery and whatever the query task
    reports. The first one to arrive ends the run; the other is
    swallowed. Responses belonging to an earlier run are swallowed too.
    """

    def __init__(self) -> None:
        self.state = QueryState.IDLE
        self.result: QueryResult | None = None
        self.error: str | None = None
        self.duration_ms: float | None = None
        self._request: ExecuteQuery | None = None
        self._cancel_request: CancelQuery | None = None
        self._retired: deque[Command] = deque(maxlen=2 * _RETIRED_RUNS)

    @property
    def is_running(self) -> bool:
        return self.state is QueryState.RUNNING

    @property
    def sql(self) -> str | None:
        return self._request.sql if self._request else None

    def start(self, sql: str) -> list[Command]:
        """Commands to submit, in order, to run sql."""
        if self.is_running:
            msg = "A query is already running"
            raise RuntimeError(msg)
        self._retire()
        self._request = ExecuteQuery(sql)
        self._cancel_request = None
        self.state = QueryState.RUNNING
        self.result = None
        self.error = None
        self.duration_ms = None
        return [ResetCancel(), self._request]

    def cancel(self) -> list[Command]:
        if not self.is_running or self._cancel_request is not None:
            return []
        self._cancel_request = CancelQuery()
        return [self._cancel_request]

    def acknowledge(self) -> None:
        """Return to Idle once the outcome has been shown."""
        if not self.is_running:
            self.state = QueryState.IDLE

    def _retire(self) -> None:
        for command in (self._request, self._cancel_request):
            if command is not None:
                self._retired.append(command)

    def _owns(self, command: Command | None) -> bool:
        return command is not None and (
            command is self._request or command is self._cancel_request
        )

    def apply(self, response: Response) -> bool:
        """Consume responses that belong to a query run, current or past."""
        if isinstance(response, QueryCompleted):
            command: Command | None = response.command
        elif isinstance(response, ErrorResponse) and isinstance(
            response.command, ExecuteQuery | CancelQuery
        ):
            command = response.command
        else:
            return False

        if not self._owns(command) or not self.is_running:
            structlog.get_logger().debug(
                "ignoring late query response", response=type(response).__name__
            )
            return self._owns(command) or any(command is c for c in self._retired)

        if isinstance(response, QueryCompleted):
            self.state = QueryState.COMPLETED
            self.result = response.result
            self.duration_ms = response.duration_ms
        elif response.kind is ErrorKind.CANCELLED:
            self.state = QueryState.CANCELLED
            self.error = response.message
        else:
            self.state = QueryState.ERRORED
            self.error = response.message
        return True


# ---------------------------------------------------------------------------
# Client state
# ---------------------------------------------------------------------------


@dataclass
class Favorite:
    name: str
    sql: str


class ClientState:
    def __init__(
        self,
        worker: Worker,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        pagination_mode: PaginationMode = PaginationMode.SCROLL,
    ) -> None:
        self._worker = worker
        self.history_limit = history_limit

        self.connected = False
        self.config: ConnectionConfig | None = None
        self.connection_status = "Not connected"
        self.status_message = ""
        self.error: str | None = None
        self.in_transaction = False

        self.databases: list[str] = []
        self.schemas: list[str] = []
        self.tables: dict[str, list[str]] = {}
        self.table_info: TableInfo | None = None
        self.search_results: list[SearchResult] = []

        self.query = QueryTracker()
        self.pager = TablePager(self.submit, page_size, pagination_mode)

        self.history: list[str] = []
        self.favorites: list[Favorite] = []

    def submit(self, command: Command) -> None:
        self._worker.submit(command)

    # -- Actions --

    def connect(self, config: ConnectionConfig) -> None:
        self.status_message = f"Connecting to {config.display_name}"
        self.submit(Connect(config))

    def disconnect(self) -> None:
        self.submit(Disconnect())

    def check_connection(self) -> None:
        self.submit(CheckConnectionStatus())

    def load_tables(self, schema: str) -> None:
        self.submit(ListTables(schema))

    def describe_table(self, schema: str, table: str) -> None:
        self.submit(GetTableInfo(schema, table))

    def search(self, term: str) -> None:
        if term.strip():
            self.submit(SearchObjects(term.strip()))

    def run_query(self, sql: str) -> None:
        statement = sql.strip()
        if not statement:
            return
        commands = self.query.start(statement)
        self.add_to_history(statement)
        for command in commands:
            self.submit(command)
        self.status_message = "Running query..."

    def cancel_query(self) -> None:
        for command in self.query.cancel():
            self.submit(command)

    def open_table(
        self, schema: str, table: str, mode: PaginationMode | None = None
    ) -> None:
        self.pager.load_table(schema, table, mode)
        self.status_message = f"Loading {schema}.{table}"

    def update_cell(self, row_index: int, column: str, value: str) -> None:
        """Write value into a cell of the currently loaded table."""
        pager = self.pager
        if pager.schema is None or pager.table is None:
            msg = "No table selected"
            raise ValueError(msg)
        self.submit(
            UpdateCell(
                schema=pager.schema,
                table=pager.table,
                column=column,
                value=value,
                row=tuple(pager.rows[row_index]),
                columns=tuple(pager.columns),
            )
        )

    def begin_transaction(self) -> None:
        self.submit(BeginTransaction())

    def commit_transaction(self) -> None:
        self.submit(CommitTransaction())

    def rollback_transaction(self) -> None:
        self.submit(RollbackTransaction())

    def dismiss_error(self) -> None:
        self.error = None

    # -- History and favorites --

    def add_to_history(self, sql: str) -> None:
        statement = sql.strip()
        if not statement or (self.history and self.history[-1] == statement):
            return
        self.history.append(statement)
        if len(self.history) > self.history_limit:
            del self.history[: len(self.history) - self.history_limit]

    def add_favorite(self, name: str, sql: str) -> bool:
        if not name.strip() or any(fav.sql == sql for fav in self.favorites):
            return False
        self.favorites.append(Favorite(name.strip(), sql))
        return True

    def remove_favorite(self, index: int) -> None:
        if 0 <= index < len(self.favorites):
            del self.favorites[index]

    # -- Responses --

    def process_responses(self) -> list[Response]:
        """Drain the worker and apply everything that arrived. Call once per tick."""
        responses = self._worker.drain()
        for response in responses:
            self.apply(response)
        return responses

    def _fail(self, message: str, status: str = "Operation failed") -> None:
        self.error = message
        self.status_message = status

    def apply(self, response: Response) -> None:
        was_running = self.query.is_running
        if self.query.apply(response):
            if was_running and not self.query.is_running:
                self._apply_query_outcome()
            return

        if self.pager.apply(response):
            if self.pager.error:
                self._fail(self.pager.error)
            elif isinstance(response, ColumnTypes):
                pass
            elif self.pager.schema and self.pager.table:
                total = self.pager.total_rows
                self.status_message = (
                    f"Loaded {self.pager.schema}.{self.pager.table} "
                    f"({self.pager.loaded_rows} / {total} rows)"
                )
            return

        if isinstance(response, Connected):
            self.connected = True
            self.config = response.config
            self.connection_status = f"Connected to {response.config.display_name}"
            self.status_message = "Connected successfully"
            self.submit(ListDatabases())
            self.submit(ListSchemas())
        elif isinstance(response, Disconnected):
            self.connected = False
            self.in_transaction = False
            self.connection_status = "Not connected"
            self.status_message = "Disconnected"
        elif isinstance(response, ConnectionFailed):
            message = f"Connection failed: {response.message}"
            if response.hint:
                message = f"{message} - {response.hint}"
            self._fail(message, "Connection failed")
        elif isinstance(response, ConnectionStatus):
            self.connected = response.connected
            if response.connected:
                self.config = response.config
                self.connection_status = f"Connected to {response.config.display_name}"
            else:
                self.connection_status = "Not connected"
        elif isinstance(response, Databases):
            self.databases = list(response.names)
            self.status_message = "Databases loaded"
        elif isinstance(response, Schemas):
            self.schemas = list(response.names)
        elif isinstance(response, Tables):
            self.tables[response.schema] = list(response.names)
        elif isinstance(response, TableInfoLoaded):
            self.table_info = response.info
        elif isinstance(response, SearchResults):
            self.search_results = list(response.results)
        elif isinstance(response, CellUpdated):
            self.status_message = "Cell updated successfully"
            self.pager.reload()
        elif isinstance(response, TransactionStarted):
            self.in_transaction = True
            self.status_message = "Transaction started"
        elif isinstance(response, TransactionCommitted):
            self.in_transaction = False
            self.status_message = "Transaction committed"
        elif isinstance(response, TransactionRolledBack):
            self.in_transaction = False
            self.status_message = "Transaction rolled back"
        elif isinstance(response, ErrorResponse):
            message = response.message
            if response.hint:
                message = f"{message} - {response.hint}"
            self._fail(message)

    def _apply_query_outcome(self) -> None:
        tracker = self.query
        if tracker.state is QueryState.COMPLETED and tracker.result is not None:
            result = tracker.result
            if result.is_tabular:
                self.status_message = f"Query executed. {result.row_count} rows returned"
            else:
                self.status_message = (
                    f"Query executed. {result.affected_rows} rows affected"
                )
        elif tracker.state is QueryState.CANCELLED:
            self.status_message = "Query cancelled"
        elif tracker.state is QueryState.ERRORED and tracker.error:
            self._fail(tracker.error)
