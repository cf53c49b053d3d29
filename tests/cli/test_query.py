"""Tests for the query command."""

import json

import psycopg.errors
import pytest

from showel.core.exceptions import (
    DatabaseConnectionError,
    OperationTimeoutError,
    QueryError,
)
from tests.fakes import Blocked, Reply


@pytest.mark.unit
def test_select_as_json(cli_runner, fake_db):
    fake_db.on(r"^SELECT id", Reply(["id", "name"], [(1, "ann"), (2, None)]))
    result = cli_runner("--format", "json", "query", "-e", "SELECT id, name FROM people")
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == [
        {"id": "1", "name": "ann"},
        {"id": "2", "name": None},
    ]


@pytest.mark.unit
def test_select_from_file(cli_runner, fake_db, temp_dir):
    sql_file = temp_dir / "q.sql"
    sql_file.write_text("SELECT 42 AS answer\n")
    fake_db.on(r"^SELECT 42", Reply(["answer"], [(42,)]))
    result = cli_runner("--format", "csv", "query", str(sql_file))
    assert result.exit_code == 0, result.output
    assert result.stdout.splitlines() == ["answer", "42"]


@pytest.mark.unit
def test_local_format_option(cli_runner, fake_db):
    fake_db.on(r"^SELECT 1", Reply(["n"], [(1,)]))
    result = cli_runner("query", "-e", "SELECT 1", "--timeout", "10")
    assert result.exit_code == 0, result.output
    # Not a TTY under the runner: CSV by default.
    assert result.stdout.splitlines() == ["n", "1"]


@pytest.mark.unit
def test_mutation_reports_affected_rows(cli_runner, fake_db):
    fake_db.on(r"^DELETE", Reply(rowcount=2))
    result = cli_runner("query", "-e", "DELETE FROM people WHERE age < 20")
    assert result.exit_code == 0, result.output
    assert result.stdout == ""
    assert "2 rows affected" in result.stderr


@pytest.mark.unit
def test_engine_error(cli_runner, fake_db):
    fake_db.on(r"nope", psycopg.errors.UndefinedTable('relation "nope" does not exist'))
    result = cli_runner("query", "-e", "SELECT * FROM nope")
    assert result.exit_code != 0
    assert isinstance(result.exception, QueryError)
    assert result.exception.message == 'relation "nope" does not exist'


@pytest.mark.unit
def test_timeout_cancels_query(cli_runner, fake_db):
    fake_db.on(r"pg_sleep", Blocked(Reply(["pg_sleep"], [("",)])))
    result = cli_runner("query", "-e", "SELECT pg_sleep(60)", "--timeout", "0.3")
    assert isinstance(result.exception, OperationTimeoutError)
    assert "timeout" in result.exception.message
    assert len(fake_db.cancel_requests) == 1


@pytest.mark.unit
def test_empty_query_rejected(cli_runner, fake_db):
    result = cli_runner("query", "-e", "   ")
    assert result.exit_code == 3
    assert fake_db.connections == []


@pytest.mark.unit
def test_connection_failure(cli_runner, fake_db):
    fake_db.connect_error = psycopg.OperationalError("connection refused")
    result = cli_runner("query", "-e", "SELECT 1")
    assert isinstance(result.exception, DatabaseConnectionError)
    assert result.exception.hint == "Verify host and port, check firewall settings"


@pytest.mark.unit
def test_connection_settings_from_flags(cli_runner, fake_db):
    fake_db.on(r"^SELECT 1", Reply(["n"], [(1,)]))
    result = cli_runner(
        "--host", "db.example", "--port", "6543", "-d", "app", "-U", "me",
        "query", "-e", "SELECT 1",
    )
    assert result.exit_code == 0, result.output
    kwargs = fake_db.connections[0].kwargs
    assert (kwargs["host"], kwargs["port"], kwargs["dbname"], kwargs["user"]) == (
        "db.example",
        6543,
        "app",
        "me",
    )
