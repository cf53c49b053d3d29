"""Choosing an export format and writing formatted results to stdout."""

from __future__ import annotations

import sys
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from showel.core.models import QueryResult
    from showel.formatters.base import Formatter


class OutputFormat(StrEnum):
    TABLE = "table"
    JSON = "json"
    JSON_META = "json_meta"
    CSV = "csv"
    SQL = "sql"


def detect_tty() -> bool:
    return sys.stdout.isatty()


def resolve_format(format_flag: str | None) -> str:
    """Explicit --format wins; otherwise table on a terminal, csv in a pipe."""
    if format_flag is not None:
        return format_flag
    return "table" if detect_tty() else "csv"


def get_formatter(
    format_flag: str | None = None,
    *,
    compact: bool = False,
    width: int = 40,
    no_header: bool = False,
    schema: str = "public",
    table: str = "results",
) -> Formatter:
    """Formatter for the resolved format, built from the applicable options."""
    # Formatter modules register themselves on import.
    import showel.formatters.csv  # noqa: F401
    import showel.formatters.json  # noqa: F401
    import showel.formatters.sql  # noqa: F401
    import showel.formatters.table  # noqa: F401
    from showel.formatters.base import registry

    return registry.get(
        resolve_format(format_flag),
        compact=compact,
        width=width,
        no_header=no_header,
        schema=schema,
        table=table,
    )


def write_output(formatter: Formatter, result: QueryResult) -> None:
    """Write formatted output to stdout."""
    for line in formatter.format(result):
        sys.stdout.write(line + "\n")
