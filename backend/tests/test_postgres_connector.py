"""
Tests for the PostgreSQL connector.

Error mapping runs everywhere; the remaining tests need a reachable server
and are skipped unless TEST_DATABASE_URL is set.
"""
import pytest

from lumen_pg.connections.broker import ConnectionBroker
from lumen_pg.connections.connection_string import parse_connection_string
from lumen_pg.connections.connectors.postgres_connector import PostgreSQLConnector, classify_connect_error
from lumen_pg.core.exceptions import (
    DatabaseAccessDenied,
    DatabaseConnectionError,
    InvalidCredentials,
    QueryFailed,
)

from conftest import TEST_DATABASE_URL


class DriverError(Exception):

    def __init__(self, message, pgcode=None):
        super().__init__(message)
        self.pgcode = pgcode


class WrappedError(Exception):

    def __init__(self, orig):
        super().__init__(str(orig))
        self.orig = orig


class TestClassifyConnectError:

    @pytest.mark.parametrize("message,pgcode,expected", [
        ('FATAL:  password authentication failed for user "alice"', None, InvalidCredentials),
        ("FATAL:  role \"ghost\" does not exist", None, InvalidCredentials),
        ('FATAL:  role "nologin" is not permitted to log in', None, InvalidCredentials),
        ("authentication failed", "28P01", InvalidCredentials),
        ('FATAL:  permission denied for database "appdb"', None, DatabaseAccessDenied),
        ('FATAL:  database "gone" does not exist', None, DatabaseAccessDenied),
        ("FATAL:  no pg_hba.conf entry for host", None, DatabaseAccessDenied),
        ("connection refused", None, DatabaseConnectionError),
        ("timeout expired", None, DatabaseConnectionError),
    ])
    def test_mapping(self, message, pgcode, expected):
        error = classify_connect_error(WrappedError(DriverError(message, pgcode)))
        assert type(error) is expected

    def test_cause_is_kept(self):
        wrapped = WrappedError(DriverError("connection refused"))
        assert classify_connect_error(wrapped).cause is wrapped


def test_unconnected_connector_refuses_statements():
    connector = PostgreSQLConnector(parse_connection_string("postgresql://alice@localhost/appdb"))
    with pytest.raises(DatabaseConnectionError):
        connector.execute("SELECT 1")
    connector.disconnect()


class RecordingResult:
    returns_rows = False
    rowcount = 1

    def close(self):
        pass


class RecordingConnection:
    """Stands in for a SQLAlchemy connection and keeps the execution options of each call."""

    def __init__(self):
        self.calls = []

    def execute(self, statement, parameters=None, execution_options=None):
        self.calls.append((str(statement), dict(execution_options or {})))
        return RecordingResult()

    def close(self):
        pass


def test_only_streamed_calls_use_server_side_cursors():
    connector = PostgreSQLConnector(parse_connection_string("postgresql://alice@localhost/appdb"))
    connection = connector._connection = RecordingConnection()

    connector.execute_capped("SELECT 1")
    connector.execute_capped("INSERT INTO t (a) VALUES (1)", stream=False)
    connector.execute("UPDATE t SET a = 2")
    connector.disconnect()

    assert connection.calls == [
        ("SELECT 1", {"stream_results": True}),
        ("INSERT INTO t (a) VALUES (1)", {}),
        ("UPDATE t SET a = 2", {}),
    ]


requires_server = pytest.mark.skipif(not TEST_DATABASE_URL, reason="TEST_DATABASE_URL not set")


@requires_server
class TestAgainstServer:

    @pytest.fixture
    def spec(self):
        return parse_connection_string(TEST_DATABASE_URL)

    @pytest.fixture
    def broker(self, spec):
        return ConnectionBroker(host=spec.host, port=spec.port, sslmode=spec.sslmode)

    def test_health(self, broker):
        assert broker.test_connection(TEST_DATABASE_URL).is_healthy

    def test_role_is_verified(self, broker, spec):
        with broker.open_spec(spec) as connector:
            assert connector.current_role() == spec.user

    def test_capped_select_counts_every_row(self, broker, spec):
        with broker.open_spec(spec) as connector:
            result = connector.execute_capped("SELECT generate_series(1, 1500) AS n", max_rows=1000)
        assert len(result.rows) == 1000
        assert result.total_rows == 1500
        assert result.truncated

    def test_bound_parameters(self, broker, spec):
        with broker.open_spec(spec) as connector:
            result = connector.execute("SELECT CAST(:value AS integer) + 1 AS n", {"value": 41})
        assert result.rows == [{"n": 42}]

    def test_server_error(self, broker, spec):
        with pytest.raises(QueryFailed):
            with broker.open_spec(spec) as connector:
                connector.execute("SELECT * FROM table_that_does_not_exist")

    def test_write_through_capped_execution(self, broker, spec):
        with broker.open_spec(spec) as connector:
            connector.execute_capped("CREATE TEMPORARY TABLE scratch (a integer)", stream=False)
            inserted = connector.execute_capped(
                "INSERT INTO scratch (a) SELECT generate_series(1, 3)", stream=False
            )
            returned = connector.execute_capped(
                "INSERT INTO scratch (a) VALUES (4) RETURNING a", max_rows=10, stream=False
            )
            result = connector.execute_capped("SELECT count(*) AS n FROM scratch")
        assert inserted.rowcount == 3
        assert returned.rows == [{"a": 4}]
        assert result.rows == [{"n": 4}]

