from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

import typer

from showel.cli.commands._shared import (
    Session,
    apply_local_format_options,
    open_session,
    output_result,
    parse_table_arg,
)
from showel.cli.output import OutputFormat  # noqa: TC001
from showel.core.bridge import (
    BeginTransaction,
    CellUpdated,
    CommitTransaction,
    RollbackTransaction,
    TransactionCommitted,
    TransactionRolledBack,
    TransactionStarted,
)
from showel.core.exceptions import InputError, QueryError
from showel.core.models import QueryResult
from showel.core.paging import PaginationMode

if TYPE_CHECKING:
    from showel.core.paging import TablePager


def _wait_for_page(session: Session) -> TablePager:
    pager = session.state.pager
    session.wait_for(lambda _: not pager.is_loading)
    if pager.error:
        raise QueryError(pager.error)
    return pager


def _open_table(
    session: Session,
    schema_name: str,
    table_name: str,
    *,
    mode: PaginationMode,
    page_size: int | None,
    sort: str | None,
    desc: bool,
    where: str | None,
) -> TablePager:
    pager = session.state.pager
    if page_size is not None:
        pager.set_page_size(page_size)
    if sort is not None:
        pager.set_sort(sort, ascending=not desc)
    pager.set_filter(where)
    session.state.open_table(schema_name, table_name, mode=mode)
    return _wait_for_page(session)


def _find_row(
    session: Session, key_column: str, key_value: str | None
) -> list[str] | None:
    """Locate a row of the reloaded view by key, scrolling further if needed.

    Row positions are not stable across an UPDATE without an ORDER BY.
    """
    pager = session.state.pager
    if key_column not in pager.columns:
        return None
    index = pager.columns.index(key_column)
    while True:
        for values in pager.rows:
            if values[index] == key_value:
                return values
        if not pager.load_more():
            return None
        pager = _wait_for_page(session)


def _page_result(pager: TablePager) -> QueryResult:
    return QueryResult(columns=pager.columns, rows=pager.rows)


def browse_command(
    ctx: typer.Context,
    table_arg: Annotated[
        str,
        typer.Argument(help="Table name (schema.table or table)"),
    ],
    page_size: Annotated[
        int | None,
        typer.Option("--page-size", "-n", min=1, help="Rows per page (50/100/200)"),
    ] = None,
    sort: Annotated[
        str | None,
        typer.Option("--sort", help="Column to order by"),
    ] = None,
    desc: Annotated[
        bool,
        typer.Option("--desc", help="Sort descending"),
    ] = False,
    where: Annotated[
        str | None,
        typer.Option(
            "--where",
            help="Raw SQL filter expression, sent verbatim as a WHERE clause",
        ),
    ] = None,
    page: Annotated[
        int | None,
        typer.Option("--page", min=1, help="Show one page by number (paged mode)"),
    ] = None,
    load_all: Annotated[
        bool,
        typer.Option("--all", help="Keep loading pages until the table is exhausted"),
    ] = False,
    format: Annotated[
        OutputFormat | None,
        typer.Option("--format", "-f", help="Output format"),
    ] = None,
) -> None:
    """Page through a table with server-side sort and filter.

    By default shows the first page. --all scrolls until every row is
    loaded; --page N switches to page-indexed navigation.
    """
    if page is not None and load_all:
        msg = "--page and --all cannot be combined"
        raise InputError(msg)
    apply_local_format_options(ctx, format=format)
    schema_name, table_name = parse_table_arg(table_arg)
    mode = PaginationMode.PAGED if page is not None else PaginationMode.SCROLL

    with open_session(ctx) as session:
        pager = _open_table(
            session,
            schema_name,
            table_name,
            mode=mode,
            page_size=page_size,
            sort=sort,
            desc=desc,
            where=where,
        )
        if page is not None and page > 1:
            if not pager.go_to_page(page - 1):
                msg = f"Page {page} out of range (1-{pager.total_pages})"
                raise InputError(msg)
            pager = _wait_for_page(session)
        elif load_all:
            while pager.load_more():
                pager = _wait_for_page(session)

        result = _page_result(pager)
        if mode is PaginationMode.PAGED:
            footer = f"Page {pager.current_page + 1} / {pager.total_pages}"
        else:
            footer = f"{pager.loaded_rows} / {pager.total_rows} rows"

    output_result(ctx, result, schema=schema_name, table=table_name)
    typer.echo(f"{schema_name}.{table_name}: {footer}", err=True)


def edit_command(
    ctx: typer.Context,
    table_arg: Annotated[
        str,
        typer.Argument(help="Table name (schema.table or table)"),
    ],
    row: Annotated[
        int,
        typer.Argument(min=0, help="Row index within the first page (0-based)"),
    ],
    column: Annotated[
        str,
        typer.Argument(help="Column to update"),
    ],
    value: Annotated[
        str,
        typer.Argument(help="New value; NULL (any case) stores SQL NULL"),
    ],
    sort: Annotated[
        str | None,
        typer.Option("--sort", help="Column to order by when locating the row"),
    ] = None,
    desc: Annotated[
        bool,
        typer.Option("--desc", help="Sort descending"),
    ] = False,
    where: Annotated[
        str | None,
        typer.Option("--where", help="Raw SQL filter used to locate the row"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Roll back instead of committing"),
    ] = False,
    format: Annotated[
        OutputFormat | None,
        typer.Option("--format", "-f", help="Output format"),
    ] = None,
) -> None:
    """Update one cell of a table row inside a transaction.

    The row is identified by the table's primary key, or by its first
    column when the table has none. After the reload the row is found
    again by that key and printed, then the transaction is committed (or
    rolled back with --dry-run).
    """
    apply_local_format_options(ctx, format=format)
    schema_name, table_name = parse_table_arg(table_arg)

    with open_session(ctx) as session:
        state = session.state
        pager = _open_table(
            session,
            schema_name,
            table_name,
            mode=PaginationMode.SCROLL,
            page_size=None,
            sort=sort,
            desc=desc,
            where=where,
        )
        if row >= len(pager.rows):
            msg = f"Row {row} not loaded ({len(pager.rows)} rows on the first page)"
            raise InputError(msg)
        if column not in pager.columns:
            msg = f"Unknown column: {column}"
            raise InputError(msg)

        session.call(BeginTransaction(), TransactionStarted)
        try:
            state.update_cell(row, column, value)
            written = session.wait_for(
                lambda r: isinstance(r, CellUpdated) or state.error is not None
            )
            if state.error is not None or not isinstance(written, CellUpdated):
                raise QueryError(state.error or "Cell update failed")
            # CellUpdated makes the state reload the table view.
            pager = _wait_for_page(session)
            found = _find_row(session, written.key_column, written.key_value)
            updated = QueryResult(columns=pager.columns, rows=[found] if found else [])
            if found is None:
                typer.echo(
                    f"No row with {written.key_column} = {written.key_value} after update",
                    err=True,
                )
        except BaseException:
            session.call(RollbackTransaction(), TransactionRolledBack)
            raise

        if dry_run:
            session.call(RollbackTransaction(), TransactionRolledBack)
            typer.echo("Dry run: changes rolled back", err=True)
        else:
            session.call(CommitTransaction(), TransactionCommitted)

    output_result(ctx, updated, schema=schema_name, table=table_name)
