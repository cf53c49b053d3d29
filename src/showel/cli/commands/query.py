from __future__ import annotations

import sys
from typing import Annotated

import structlog
import typer

from showel.cli.commands._shared import open_session, output_result
from showel.core.exceptions import (
    InputError,
    OperationTimeoutError,
    QueryCancelledError,
    QueryError,
)
from showel.core.exit_codes import ExitCode
from showel.core.query_source import resolve_query_source
from showel.core.state import QueryState

# How long to wait for the terminal response once a cancel has been sent.
_CANCEL_GRACE = 10.0


def query_command(
    ctx: typer.Context,
    file: Annotated[
        str | None,
        typer.Argument(help="SQL file to execute"),
    ] = None,
    execute: Annotated[
        str | None,
        typer.Option("--execute", "-e", help="Execute inline SQL query"),
    ] = None,
    timeout: Annotated[
        float | None,
        typer.Option(
            "--timeout", "-t", help="Cancel the query after N seconds (default: wait)"
        ),
    ] = None,
) -> None:
    """Execute a SQL query from file, inline (-e), or stdin.

    Ctrl-C cancels the running query: the client stops waiting at once
    and a best-effort cancel request is sent to the server.
    """
    log = structlog.get_logger()
    try:
        is_tty = sys.stdin.isatty()
    except (ValueError, AttributeError):
        is_tty = False
    if execute is None and file is None and is_tty:
        typer.echo(ctx.get_help())
        raise typer.Exit()

    try:
        sql = resolve_query_source(inline=execute, file_path=file)
    except InputError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(ExitCode.INPUT_ERROR) from exc

    with open_session(ctx) as session:
        state = session.state
        state.run_query(sql)

        def finished(_: object) -> bool:
            return not state.query.is_running

        timed_out = False
        try:
            session.wait_for(finished, timeout=timeout)
        except KeyboardInterrupt:
            log.info("cancelling query")
            state.cancel_query()
            session.wait_for(finished, timeout=_CANCEL_GRACE)
        except OperationTimeoutError:
            timed_out = True
            state.cancel_query()
            session.wait_for(finished, timeout=_CANCEL_GRACE)

        tracker = state.query
        if timed_out and tracker.state is not QueryState.COMPLETED:
            msg = f"Query cancelled after {timeout:g}s timeout"
            raise OperationTimeoutError(msg)
        if tracker.state is QueryState.CANCELLED:
            raise QueryCancelledError()
        if tracker.state is QueryState.ERRORED:
            raise QueryError(tracker.error or "Query failed")

        result = tracker.result
        tracker.acknowledge()

    if result is None:
        return
    if result.is_tabular:
        output_result(ctx, result)
    else:
        typer.echo(f"{result.affected_rows} rows affected", err=True)
