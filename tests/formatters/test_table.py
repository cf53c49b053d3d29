"""Tests for TableFormatter."""

import pytest

from showel.core.models import QueryResult
from showel.formatters.base import Formatter
from showel.formatters.table import TableFormatter


def _render(result, **kwargs):
    return "\n".join(TableFormatter(**kwargs).format(result))


@pytest.mark.unit
def test_table_formatter_implements_protocol():
    assert isinstance(TableFormatter(), Formatter)


@pytest.mark.unit
def test_table_contains_headers_and_values():
    output = _render(QueryResult(columns=["id", "name"], rows=[["1", "alice"]]))
    assert "id" in output
    assert "name" in output
    assert "alice" in output


@pytest.mark.unit
def test_table_null_rendered():
    output = _render(QueryResult(columns=["v"], rows=[["NULL"]]))
    assert "NULL" in output


@pytest.mark.unit
def test_table_markup_escaped():
    output = _render(QueryResult(columns=["v"], rows=[["[bold]x[/bold]"]]))
    assert "[bold]x[/bold]" in output


@pytest.mark.unit
def test_table_truncates_long_values():
    output = _render(QueryResult(columns=["v"], rows=[["x" * 100]]), width=10)
    assert "x" * 9 + "…" in output
    assert "x" * 11 not in output


@pytest.mark.unit
def test_table_no_results():
    assert _render(QueryResult(columns=["v"], rows=[])) == "No results"


@pytest.mark.unit
def test_table_acknowledgement():
    assert _render(QueryResult.acknowledgement(7)) == "7 rows affected"
