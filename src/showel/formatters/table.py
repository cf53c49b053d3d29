"""Rich table rendering of a result grid."""

from __future__ import annotations

import shutil
from io import StringIO
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from showel.core.models import NULL_DISPLAY
from showel.formatters.base import registry

if TYPE_CHECKING:
    from collections.abc import Iterator

    from showel.core.models import QueryResult

_NO_RESULTS = "No results"


def _truncate(value: str, width: int) -> str:
    if len(value) <= width:
        return value
    return value[: width - 1] + "…"


class TableFormatter:
    def __init__(self, width: int = 40, title: str | None = None) -> None:
        self.width = width
        self.title = title

    def format(self, result: QueryResult) -> Iterator[str]:
        if not result.is_tabular:
            yield f"{result.affected_rows} rows affected"
            return
        if not result.rows:
            yield _NO_RESULTS
            return

        table = Table(title=self.title, show_edge=True, pad_edge=True)
        for column in result.columns:
            table.add_column(escape(column), no_wrap=True)

        for row in result.rows:
            table.add_row(
                *(
                    f"[dim]{NULL_DISPLAY}[/dim]"
                    if value == NULL_DISPLAY
                    else escape(_truncate(value, self.width))
                    for value in row
                )
            )

        buf = StringIO()
        term_width = shutil.get_terminal_size((120, 24)).columns
        console = Console(file=buf, force_terminal=True, width=term_width)
        console.print(table)
        yield buf.getvalue().rstrip("\n")


registry.register("table", TableFormatter)
