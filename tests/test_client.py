"""Tests for DatabaseConnection against the in-memory server."""

import asyncio
from types import SimpleNamespace

import psycopg
import psycopg.errors
import pytest
from psycopg.adapt import AdaptersMap
from psycopg.pq import Format
from psycopg.types.string import TextLoader

from showel.core.client import (
    DatabaseConnection,
    classify_connect_error,
    is_read_statement,
    load_as_server_text,
)
from showel.core.config import ConnectionConfig
from showel.core.exceptions import (
    ConnectErrorKind,
    DatabaseConnectionError,
    NotConnectedError,
    QueryCancelledError,
    QueryError,
)
from showel.core.models import QueryResult
from tests.fakes import Blocked, Reply

CONFIG = ConnectionConfig(host="dbhost", port=5433, database="app", user="me")


def run(coro):
    return asyncio.run(coro)


async def _connected(db, config=CONFIG):
    await db.connect(config)
    return db


# -- Classification --


@pytest.mark.unit
class TestClassifyConnectError:
    @pytest.mark.parametrize(
        ("message", "kind"),
        [
            ("connection timeout expired", ConnectErrorKind.TIMEOUT),
            (
                'password authentication failed for user "me"',
                ConnectErrorKind.AUTH_FAILED,
            ),
            ('database "nope" does not exist', ConnectErrorKind.UNKNOWN_DATABASE),
            ("connection refused", ConnectErrorKind.REFUSED),
            ("something odd", ConnectErrorKind.OTHER),
        ],
    )
    def test_by_message(self, message, kind):
        assert classify_connect_error(psycopg.OperationalError(message)) is kind

    def test_sqlstate_wins(self):
        exc = psycopg.errors.InvalidCatalogName("whatever")
        assert classify_connect_error(exc) is ConnectErrorKind.UNKNOWN_DATABASE


@pytest.mark.unit
@pytest.mark.parametrize(
    ("sql", "expected"),
    [
        ("SELECT 1", True),
        ("  select * from t", True),
        ("WITH x AS (SELECT 1) SELECT * FROM x", True),
        ("show search_path", True),
        ("UPDATE t SET a = 1", False),
        ("CREATE TABLE t (id int)", False),
        ("", False),
    ],
)
def test_is_read_statement(sql, expected):
    assert is_read_statement(sql) is expected


# -- Session lifecycle --


@pytest.mark.unit
class TestConnect:
    def test_connect_passes_settings(self, server, db):
        run(_connected(db))
        assert db.is_connected()
        assert db.get_config() == CONFIG
        kwargs = server.connections[0].kwargs
        assert kwargs["host"] == "dbhost"
        assert kwargs["port"] == 5433
        assert kwargs["dbname"] == "app"
        assert kwargs["user"] == "me"
        assert kwargs["autocommit"] is True
        assert kwargs["application_name"] == "showel"

    def test_session_loads_structured_types_as_text(self, server, db):
        run(_connected(db))
        loaders = server.connections[0].adapters.loaders
        for key in ("json", "jsonb", "record", "interval", 1009, 199, 3904):
            assert loaders[key] is TextLoader

    def test_text_loaders_on_real_adapters_map(self):
        session = SimpleNamespace(adapters=AdaptersMap(psycopg.adapters))
        load_as_server_text(session)
        for oid in (114, 3802, 1009, 1007, 3904):
            # psycopg[binary] substitutes its C TextLoader of the same name.
            assert session.adapters.get_loader(oid, Format.TEXT).__name__ == "TextLoader"
        assert session.adapters.get_loader(23, Format.TEXT).__name__ != "TextLoader"

    def test_not_connected_initially(self, db):
        assert not db.is_connected()
        assert db.get_config() == ConnectionConfig()

    def test_failure_is_classified(self, server, db):
        server.connect_error = psycopg.OperationalError("connection refused")
        with pytest.raises(DatabaseConnectionError) as exc_info:
            run(db.connect(CONFIG))
        assert exc_info.value.kind is ConnectErrorKind.REFUSED
        assert "dbhost:5433/app" in exc_info.value.message
        assert not db.is_connected()

    def test_reconnect_replaces_session(self, server, db):
        async def scenario():
            await db.connect(CONFIG)
            await db.connect(ConnectionConfig(database="other"))

        run(scenario())
        assert len(server.connections) == 2
        assert len(server.open_connections) == 1
        assert server.connections[0].closed
        assert db.get_config().database == "other"

    def test_failed_reconnect_keeps_previous(self, server, db):
        async def scenario():
            await db.connect(CONFIG)
            server.connect_error = psycopg.OperationalError("connection timeout expired")
            with pytest.raises(DatabaseConnectionError):
                await db.connect(ConnectionConfig(database="other"))

        run(scenario())
        assert db.is_connected()
        assert db.get_config() == CONFIG
        assert server.open_connections == server.connections[:1]

    def test_disconnect_is_idempotent(self, server, db):
        async def scenario():
            await db.connect(CONFIG)
            await db.disconnect()
            await db.disconnect()

        run(scenario())
        assert not db.is_connected()
        assert server.open_connections == []

    def test_async_context_manager_disconnects(self, server):
        async def scenario():
            async with DatabaseConnection(connect_factory=server.connect) as db:
                await db.connect(CONFIG)

        run(scenario())
        assert server.open_connections == []


# -- Statement execution --


@pytest.mark.unit
class TestExecuteQuery:
    def test_requires_connection(self, db):
        with pytest.raises(NotConnectedError):
            run(db.execute_query("SELECT 1"))

    def test_read_returns_stringified_rows(self, server, db):
        server.on(r"^SELECT id", Reply(["id", "name", "ok"], [(1, None, True)]))

        async def scenario():
            await db.connect(CONFIG)
            return await db.execute_query("  SELECT id, name, ok FROM t  ")

        result = run(scenario())
        assert result == QueryResult(columns=["id", "name", "ok"], rows=[["1", "NULL", "true"]])
        assert server.statements()[-1] == "SELECT id, name, ok FROM t"

    def test_write_returns_affected_rows(self, server, db):
        server.on(r"^UPDATE", Reply(rowcount=3))

        async def scenario():
            await db.connect(CONFIG)
            return await db.execute_query("UPDATE t SET a = 1")

        result = run(scenario())
        assert not result.is_tabular
        assert result.affected_rows == 3

    def test_ddl_reports_zero(self, server, db):
        server.on(r"^CREATE", Reply(rowcount=-1))

        async def scenario():
            await db.connect(CONFIG)
            return await db.execute_query("CREATE TABLE t (id int)")

        assert run(scenario()).affected_rows == 0

    def test_engine_error_text_passes_through(self, server, db):
        server.on(r"nope", psycopg.errors.UndefinedTable('relation "nope" does not exist'))

        async def scenario():
            await db.connect(CONFIG)
            await db.execute_query("SELECT * FROM nope")

        with pytest.raises(QueryError, match='relation "nope" does not exist'):
            run(scenario())

    def test_backend_pid_cleared_afterwards(self, server, db):
        server.on(r"^SELECT 1", Reply(["n"], [(1,)]))

        async def scenario():
            await db.connect(CONFIG)
            await db.execute_query("SELECT 1")

        run(scenario())
        assert db.backend_pid is None


# -- Cancellation --


@pytest.mark.unit
class TestCancellation:
    def test_flag_set_before_execution(self, server, db):
        async def scenario():
            await db.connect(CONFIG)
            db.cancelled = True
            await db.execute_query("SELECT 1")

        with pytest.raises(QueryCancelledError):
            run(scenario())
        assert server.statements() == []

    def test_reset_cancel_clears_flag(self, server, db):
        server.on(r"^SELECT 1", Reply(["n"], [(1,)]))

        async def scenario():
            await db.connect(CONFIG)
            db.cancelled = True
            db.reset_cancel()
            return await db.execute_query("SELECT 1")

        assert run(scenario()).rows == [["1"]]

    def test_completed_select_discarded_when_cancelled_meanwhile(self, server, db):
        def finish_then_cancel(sql, params):
            db.cancelled = True
            return Reply(["n"], [(1,)])

        server.on(r"^SELECT 1", finish_then_cancel)

        async def scenario():
            await db.connect(CONFIG)
            await db.execute_query("SELECT 1")

        with pytest.raises(QueryCancelledError):
            run(scenario())

    def test_cancel_stops_running_query(self, server, db):
        server.on(r"pg_sleep", Blocked(Reply(["pg_sleep"], [("",)])))

        async def scenario():
            await db.connect(CONFIG)
            task = asyncio.create_task(db.execute_query("SELECT pg_sleep(60)"))
            while not server.blocked_pids:
                await asyncio.sleep(0.001)
            pid = next(iter(server.blocked_pids))
            await db.cancel()
            with pytest.raises(QueryCancelledError):
                await task
            return pid

        pid = run(scenario())
        assert server.cancel_requests == [pid]
        control = server.connections[1]
        assert control.kwargs["application_name"] == "showel-cancel"
        assert control.closed
        assert len(server.open_connections) == 1

    def test_cancel_without_running_query_only_sets_flag(self, server, db):
        async def scenario():
            await db.connect(CONFIG)
            await db.cancel()

        run(scenario())
        assert db.cancelled
        assert len(server.connections) == 1
        assert server.cancel_requests == []

    def test_cancel_survives_control_connection_failure(self, server, db):
        server.on(r"pg_sleep", Blocked(Reply(["pg_sleep"], [("",)])))

        async def scenario():
            await db.connect(CONFIG)
            task = asyncio.create_task(db.execute_query("SELECT pg_sleep(60)"))
            while not server.blocked_pids:
                await asyncio.sleep(0.001)
            server.connect_error = psycopg.OperationalError("connection refused")
            await db.cancel()
            assert db.cancelled
            server.release()
            with pytest.raises(QueryCancelledError):
                await task

        run(scenario())
        assert server.cancel_requests == []

    def test_server_cancel_without_flag_is_query_error(self, server, db):
        server.on(
            r"^SELECT",
            psycopg.errors.QueryCanceled("canceling statement due to statement timeout"),
        )

        async def scenario():
            await db.connect(CONFIG)
            await db.execute_query("SELECT 1")

        with pytest.raises(QueryError) as exc_info:
            run(scenario())
        assert not isinstance(exc_info.value, QueryCancelledError)


# -- Transactions --


@pytest.mark.unit
def test_transaction_statements(server, db):
    server.on(r"^(BEGIN|COMMIT|ROLLBACK)$", Reply())

    async def scenario():
        await db.connect(CONFIG)
        await db.begin_transaction()
        await db.commit_transaction()
        await db.begin_transaction()
        await db.rollback_transaction()

    run(scenario())
    assert server.statements() == ["BEGIN", "COMMIT", "BEGIN", "ROLLBACK"]
