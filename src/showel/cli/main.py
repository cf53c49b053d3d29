"""showel main entry point and command registration."""

from __future__ import annotations

import atexit
from pathlib import Path  # noqa: TC003
from typing import Annotated

import sentry_sdk
import typer

from showel.__about__ import __version__
from showel.cli.commands._shared import (
    apply_local_format_options,
    get_resolved_config,
    open_session,
    output_result,
    parse_table_arg,
)
from showel.cli.commands.browse import browse_command, edit_command
from showel.cli.commands.query import query_command
from showel.cli.output import OutputFormat  # noqa: TC001
from showel.core.bridge import (
    CheckConnectionStatus,
    ConnectionStatus,
    Databases,
    GetTableInfo,
    ListDatabases,
    ListSchemas,
    ListTables,
    Schemas,
    SearchObjects,
    SearchResults,
    TableInfoLoaded,
    Tables,
)
from showel.core.exceptions import DatabaseConnectionError, ShowelError
from showel.core.logging import setup_logging
from showel.core.models import NULL_DISPLAY, QueryResult
from showel.core.monitoring import setup_sentry

app = typer.Typer(
    help="showel - PostgreSQL browser and editor",
    no_args_is_help=True,
)

app.command("query")(query_command)
app.command("browse")(browse_command)
app.command("edit")(edit_command)


def version_callback(value: bool) -> None:
    if value:
        typer.echo(f"showel {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Enable verbose logging"),
    ] = False,
    profile: Annotated[
        str | None,
        typer.Option("--profile", "-P", help="Named connection profile"),
    ] = None,
    host: Annotated[
        str | None,
        typer.Option("--host", "-H", help="PostgreSQL host"),
    ] = None,
    port: Annotated[
        int | None,
        typer.Option("--port", "-p", help="PostgreSQL port"),
    ] = None,
    database: Annotated[
        str | None,
        typer.Option("--database", "-d", help="Database name"),
    ] = None,
    user: Annotated[
        str | None,
        typer.Option("--user", "-U", help="User name"),
    ] = None,
    password: Annotated[
        str | None,
        typer.Option("--password", "-W", help="Password"),
    ] = None,
    dsn: Annotated[
        str | None,
        typer.Option("--dsn", help="Connection DSN"),
    ] = None,
    config_file: Annotated[
        Path | None,
        typer.Option("--config", help="Path to config file"),
    ] = None,
    format: Annotated[
        OutputFormat | None,
        typer.Option("--format", "-f", help="Output format"),
    ] = None,
    compact: Annotated[
        bool,
        typer.Option("--compact", help="Compact JSON output (no indentation)"),
    ] = False,
    width: Annotated[
        int,
        typer.Option("--width", help="Column width for table format"),
    ] = 40,
    no_header: Annotated[
        bool,
        typer.Option("--no-header", help="Suppress header row in CSV output"),
    ] = False,
) -> None:
    """showel - PostgreSQL browser and editor."""
    setup_logging(verbose)
    setup_sentry()

    transaction = sentry_sdk.start_transaction(
        op="cli", name=ctx.invoked_subcommand or "showel"
    )
    transaction.__enter__()

    def cleanup() -> None:
        transaction.__exit__(None, None, None)
        sentry_sdk.flush(timeout=2)

    atexit.register(cleanup)

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["profile"] = profile
    ctx.obj["host"] = host
    ctx.obj["port"] = port
    ctx.obj["database"] = database
    ctx.obj["user"] = user
    ctx.obj["password"] = password
    ctx.obj["dsn"] = dsn
    ctx.obj["config_file"] = config_file

    ctx.obj["format"] = format.value if format else None
    ctx.obj["compact"] = compact
    ctx.obj["width"] = width
    ctx.obj["no_header"] = no_header


def run() -> None:
    """Entry point with global error handling."""
    try:
        app()
    except ShowelError as e:
        sentry_sdk.capture_exception(e)
        typer.echo(f"Error: {e.message}", err=True)
        if isinstance(e, DatabaseConnectionError) and e.hint:
            typer.echo(f"Hint: {e.hint}", err=True)
        raise SystemExit(e.exit_code) from None
    except SystemExit:
        raise
    except KeyboardInterrupt:
        raise SystemExit(130) from None
    except Exception as e:
        sentry_sdk.capture_exception(e)
        typer.echo(f"Error: {e}", err=True)
        raise SystemExit(1) from None


# ---------------------------------------------------------------------------
# Commands: databases, schemas, tables, describe, search, status
# ---------------------------------------------------------------------------


def _names_result(column: str, names: list[str]) -> QueryResult:
    return QueryResult(columns=[column], rows=[[name] for name in names])


@app.command("databases")
def databases_command(
    ctx: typer.Context,
    format: Annotated[
        OutputFormat | None,
        typer.Option("--format", "-f", help="Output format"),
    ] = None,
) -> None:
    """List databases on the server (templates excluded)."""
    apply_local_format_options(ctx, format=format)
    with open_session(ctx) as session:
        response: Databases = session.call(ListDatabases(), Databases)
    output_result(ctx, _names_result("name", response.names))


@app.command("schemas")
def schemas_command(
    ctx: typer.Context,
    format: Annotated[
        OutputFormat | None,
        typer.Option("--format", "-f", help="Output format"),
    ] = None,
) -> None:
    """List schemas, excluding pg_catalog and information_schema."""
    apply_local_format_options(ctx, format=format)
    with open_session(ctx) as session:
        response: Schemas = session.call(ListSchemas(), Schemas)
    output_result(ctx, _names_result("schema", response.names))


@app.command("tables")
def tables_command(
    ctx: typer.Context,
    schema: Annotated[
        str,
        typer.Argument(help="Schema to list"),
    ] = "public",
    format: Annotated[
        OutputFormat | None,
        typer.Option("--format", "-f", help="Output format"),
    ] = None,
) -> None:
    """List base tables in a schema."""
    apply_local_format_options(ctx, format=format)
    with open_session(ctx) as session:
        response: Tables = session.call(ListTables(schema), Tables)
    output_result(ctx, _names_result("table", response.names))


@app.command("describe")
def describe_command(
    ctx: typer.Context,
    table_arg: Annotated[
        str,
        typer.Argument(help="Table name (schema.table or table)"),
    ],
    format: Annotated[
        OutputFormat | None,
        typer.Option("--format", "-f", help="Output format"),
    ] = None,
) -> None:
    """Show columns, primary key, foreign keys and indexes of a table."""
    apply_local_format_options(ctx, format=format)
    schema_name, table_name = parse_table_arg(table_arg)
    with open_session(ctx) as session:
        response: TableInfoLoaded = session.call(
            GetTableInfo(schema_name, table_name), TableInfoLoaded
        )

    info = response.info
    typer.echo(f"{info.table_type}: {info.schema_name}.{info.name}", err=True)
    output_result(
        ctx,
        QueryResult(
            columns=["column", "type", "nullable", "default", "pk"],
            rows=[
                [
                    col.name,
                    col.data_type,
                    "YES" if col.nullable else "NO",
                    col.default if col.default is not None else NULL_DISPLAY,
                    "*" if col.name in info.primary_key else "",
                ]
                for col in info.columns
            ],
        ),
    )
    if info.foreign_keys:
        typer.echo("\nForeign keys:", err=True)
        output_result(
            ctx,
            QueryResult(
                columns=["name", "column", "references"],
                rows=[
                    [
                        fk.name,
                        fk.column,
                        f"{fk.foreign_schema}.{fk.foreign_table}({fk.foreign_column})",
                    ]
                    for fk in info.foreign_keys
                ],
            ),
        )
    if info.indexes:
        typer.echo("\nIndexes:", err=True)
        output_result(
            ctx,
            QueryResult(
                columns=["name", "definition"],
                rows=[[idx.name, idx.definition] for idx in info.indexes],
            ),
        )


@app.command("search")
def search_command(
    ctx: typer.Context,
    term: Annotated[
        str,
        typer.Argument(help="Case-insensitive substring to look for"),
    ],
    format: Annotated[
        OutputFormat | None,
        typer.Option("--format", "-f", help="Output format"),
    ] = None,
) -> None:
    """Search tables, columns and views by name."""
    apply_local_format_options(ctx, format=format)
    with open_session(ctx) as session:
        response: SearchResults = session.call(SearchObjects(term), SearchResults)

    output_result(
        ctx,
        QueryResult(
            columns=["type", "schema", "name", "column"],
            rows=[
                [r.object_type, r.schema_name, r.name, r.column_name or ""]
                for r in response.results
            ],
        ),
    )


@app.command("status")
def status_command(
    ctx: typer.Context,
    format: Annotated[
        OutputFormat | None,
        typer.Option("--format", "-f", help="Output format"),
    ] = None,
) -> None:
    """Connect and report the effective connection settings."""
    apply_local_format_options(ctx, format=format)
    resolved = get_resolved_config(ctx)
    with open_session(ctx) as session:
        response: ConnectionStatus = session.call(
            CheckConnectionStatus(), ConnectionStatus
        )

    config = response.config
    rows = [
        ["connected", "yes" if response.connected else "no", ""],
        ["host", config.host, resolved.sources.get("host", "")],
        ["port", str(config.port), resolved.sources.get("port", "")],
        ["database", config.database, resolved.sources.get("database", "")],
        ["user", config.user, resolved.sources.get("user", "")],
        ["profile", resolved.active_profile or "", ""],
        ["page_size", str(resolved.page_size), ""],
    ]
    output_result(ctx, QueryResult(columns=["setting", "value", "source"], rows=rows))
