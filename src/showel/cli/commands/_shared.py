"""Shared CLI plumbing for command modules.

Configuration resolution, the worker-backed session used by every
database command, and output helpers.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog

from showel.cli.output import get_formatter, write_output
from showel.core.bridge import (
    CommandDispatcher,
    ConnectionFailed,
    DatabaseWorker,
    ErrorResponse,
    Response,
)
from showel.core.client import DatabaseConnection
from showel.core.config import ResolvedConfig, load_config, resolve_config
from showel.core.exceptions import InputError, OperationTimeoutError
from showel.core.state import ClientState

if TYPE_CHECKING:
    import typer

    from showel.cli.output import OutputFormat
    from showel.core.bridge import Command
    from showel.core.models import QueryResult

_POLL_INTERVAL = 0.1
DEFAULT_TIMEOUT = 30.0


def get_resolved_config(ctx: typer.Context) -> ResolvedConfig:
    obj = ctx.ensure_object(dict)
    config = load_config(obj.get("config_file"))

    cli_overrides: dict[str, Any] = {}
    for key in ("host", "port", "database", "user", "password"):
        val = obj.get(key)
        if val is not None:
            cli_overrides[key] = val

    return resolve_config(
        config,
        profile_name=obj.get("profile"),
        dsn=obj.get("dsn"),
        **cli_overrides,
    )


class Session:
    """Blocking front end over a DatabaseWorker and its ClientState.

    The CLI plays the role of the UI thread: it submits commands through
    ClientState and applies every response it drains, waiting until a
    condition on the state or the latest response holds.
    """

    def __init__(self, worker: DatabaseWorker, state: ClientState) -> None:
        self.worker = worker
        self.state = state

    def wait_for(
        self,
        predicate: Callable[[Response | None], bool],
        timeout: float | None = DEFAULT_TIMEOUT,
    ) -> Response | None:
        """Apply responses until predicate(response) is true.

        predicate is also checked once up front with None, so conditions
        on the state alone return immediately when already satisfied.
        """
        if predicate(None):
            return None
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if deadline is not None and time.monotonic() >= deadline:
                msg = f"No response from database within {timeout:g}s"
                raise OperationTimeoutError(msg)
            response = self.worker.next_response(timeout=_POLL_INTERVAL)
            if response is None:
                continue
            self.state.apply(response)
            if predicate(response):
                return response

    def call(
        self,
        command: Command,
        expect: type[Response] | tuple[type[Response], ...],
        timeout: float | None = DEFAULT_TIMEOUT,
    ) -> Any:
        """Submit command and return the first response of the expected type.

        An ErrorResponse or ConnectionFailed arriving first is raised as
        the matching ShowelError.
        """
        expected = expect if isinstance(expect, tuple) else (expect,)
        accepted = (*expected, ErrorResponse, ConnectionFailed)
        self.state.submit(command)
        response = self.wait_for(lambda r: isinstance(r, accepted), timeout)
        raise_for_response(response)
        return response

    def connect(self, resolved: ResolvedConfig) -> None:
        self.state.connect(resolved.connection)
        response = self.wait_for(
            lambda r: self.state.connected or isinstance(r, ConnectionFailed),
            timeout=resolved.connect_timeout + DEFAULT_TIMEOUT,
        )
        raise_for_response(response)


def raise_for_response(response: Response | None) -> None:
    if isinstance(response, ErrorResponse | ConnectionFailed):
        raise response.to_exception()


@contextmanager
def open_session(ctx: typer.Context) -> Iterator[Session]:
    """Start a worker, connect with the resolved configuration, yield a Session."""
    log = structlog.get_logger()
    resolved = get_resolved_config(ctx)
    client = DatabaseConnection(
        connect_timeout=resolved.connect_timeout,
        application_name=resolved.application_name,
    )
    worker = DatabaseWorker(CommandDispatcher(client))
    with worker:
        state = ClientState(
            worker,
            page_size=resolved.page_size,
            history_limit=resolved.history_limit,
        )
        session = Session(worker, state)
        log.debug(
            "opening session",
            target=resolved.connection.display_name,
            profile=resolved.active_profile,
        )
        session.connect(resolved)
        yield session


def format_options(ctx: typer.Context) -> dict[str, Any]:
    obj = ctx.ensure_object(dict)
    return {
        "format_flag": obj.get("format"),
        "compact": obj.get("compact", False),
        "width": obj.get("width", 40),
        "no_header": obj.get("no_header", False),
    }


def output_result(
    ctx: typer.Context,
    result: QueryResult,
    *,
    schema: str = "public",
    table: str = "results",
) -> None:
    opts = format_options(ctx)
    formatter = get_formatter(**opts, schema=schema, table=table)
    write_output(formatter, result)


def apply_local_format_options(
    ctx: typer.Context,
    *,
    format: OutputFormat | None = None,
    compact: bool = False,
    no_header: bool = False,
) -> None:
    obj = ctx.ensure_object(dict)
    if format is not None:
        obj["format"] = format.value
    if compact:
        obj["compact"] = compact
    if no_header:
        obj["no_header"] = no_header


def parse_table_arg(table_arg: str) -> tuple[str, str]:
    if not table_arg.strip():
        raise InputError("Table name is empty")
    if "." in table_arg:
        schema, table = table_arg.split(".", 1)
        return schema, table
    return "public", table_arg
