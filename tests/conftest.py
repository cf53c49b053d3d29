"""Shared test fixtures for showel."""

from pathlib import Path
from tempfile import TemporaryDirectory

import pytest
from typer.testing import CliRunner

from showel.cli.main import app
from showel.core.client import DatabaseConnection
from tests.fakes import FakeServer, Reply


@pytest.fixture
def runner():
    """Typer CLI test runner."""
    return CliRunner()


@pytest.fixture
def cli_runner(runner):
    """Invoke the CLI app with the given arguments."""

    def invoke(*args: str, **kwargs):
        return runner.invoke(app, list(args), **kwargs)

    return invoke


@pytest.fixture
def temp_dir():
    """Temporary directory for test files."""
    with TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def server():
    """In-memory database server."""
    return FakeServer()


@pytest.fixture
def db(server):
    """Unconnected DatabaseConnection wired to the in-memory server."""
    return DatabaseConnection(connect_factory=server.connect)


@pytest.fixture
def fake_db(monkeypatch, server):
    """Route every session the CLI opens to the in-memory server.

    Connecting triggers database and schema listing, so those are
    always answered.
    """

    def connection(**kwargs):
        return DatabaseConnection(connect_factory=server.connect, **kwargs)

    monkeypatch.setattr("showel.cli.commands._shared.DatabaseConnection", connection)
    server.on(r"pg_database", Reply(["datname"], [("app",), ("postgres",)]))
    server.on(r"information_schema.schemata", Reply(["schema_name"], [("public",)]))
    server.on(r"^(BEGIN|COMMIT|ROLLBACK)$", Reply())
    return server


@pytest.fixture
def people(fake_db):
    """Five-row table with an id primary key and one named filter."""
    return fake_db.add_table(
        "public",
        "people",
        [("id", "integer"), ("name", "text"), ("age", "integer")],
        [[1, "ann", 40], [2, "bob", None], [3, "cy", 25], [4, "dee", 31], [5, "eve", 19]],
        primary_key=["id"],
        filters={"age > 30": lambda r: r["age"] is not None and r["age"] > 30},
    )


@pytest.fixture(autouse=True)
def _clean_pg_env(monkeypatch):
    """Keep the developer's PG* and SHOWEL_* variables out of unit tests."""
    for var in (
        "PGHOST",
        "PGPORT",
        "PGDATABASE",
        "PGUSER",
        "PGPASSWORD",
        "SHOWEL_PROFILE",
        "SHOWEL_SENTRY_DSN",
    ):
        monkeypatch.delenv(var, raising=False)
