"""Resolve the SQL text for the query command.

Precedence: inline (-e) > file path > stdin.
"""

from __future__ import annotations

import sys
from pathlib import Path

from showel.core.exceptions import InputError


def resolve_query_source(inline: str | None, file_path: str | None) -> str:
    """Return the SQL to run. Raises InputError when no source is available."""
    if inline is not None:
        sql = inline
    elif file_path is not None:
        p = Path(file_path)
        if not p.is_file():
            msg = (
                f"Query file not found: {file_path}\n"
                "Use -e for inline queries or pipe query via stdin."
            )
            raise InputError(msg)
        sql = p.read_text()
    elif not sys.stdin.isatty():
        sql = sys.stdin.read()
    else:
        msg = "No query provided. Use -e, file path, or pipe to stdin."
        raise InputError(msg)

    if not sql.strip():
        raise InputError("Query is empty")
    return sql
