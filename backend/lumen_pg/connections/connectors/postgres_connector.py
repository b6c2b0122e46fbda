"""
PostgreSQL Database Connector
"""
from typing import Any, Dict, Optional
import time
from datetime import datetime, timezone
from sqlalchemy import create_engine, text, inspect
from sqlalchemy.engine import Inspector
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.pool import NullPool
import structlog

from lumen_pg.connections.connectors.base_connector import (
    BaseConnector,
    ExecutionResult,
    HealthCheckResult,
)
from lumen_pg.core.cancellation import CancellationToken
from lumen_pg.core.exceptions import (
    DatabaseAccessDenied,
    DatabaseConnectionError,
    InvalidCredentials,
    LumenError,
    OperationCancelled,
    QueryFailed,
)

logger = structlog.get_logger()

FETCH_CHUNK_SIZE = 500

# Server messages that mean the credentials themselves are wrong.
_CREDENTIAL_FAILURES = (
    "password authentication failed",
    "is not permitted to log in",
)
_CREDENTIAL_SQLSTATES = ("28P01",)

# Server messages that mean this role may not use this particular database.
_ACCESS_FAILURES = (
    "permission denied for database",
    "does not have connect privilege",
    "no pg_hba.conf entry",
)
_ACCESS_SQLSTATES = ("42501", "3D000", "28000")


def classify_connect_error(error: BaseException) -> LumenError:
    """Map a driver connect failure onto the error taxonomy."""
    orig = getattr(error, "orig", error)
    message = str(orig).lower()
    pgcode = getattr(orig, "pgcode", None)

    if pgcode in _CREDENTIAL_SQLSTATES or any(m in message for m in _CREDENTIAL_FAILURES):
        return InvalidCredentials(cause=error)
    if "role" in message and "does not exist" in message:
        return InvalidCredentials(cause=error)
    if pgcode in _ACCESS_SQLSTATES or any(m in message for m in _ACCESS_FAILURES):
        return DatabaseAccessDenied(cause=error)
    if "database" in message and "does not exist" in message:
        return DatabaseAccessDenied(cause=error)
    return DatabaseConnectionError(cause=error)


class PostgreSQLConnector(BaseConnector):
    """PostgreSQL connector implementation backed by an unpooled SQLAlchemy engine."""

    def __init__(self, spec, timeout: int = 10, statement_timeout_ms: int = 0, echo: bool = False):
        super().__init__(spec, timeout=timeout, statement_timeout_ms=statement_timeout_ms)
        self.echo = echo
        self._engine = None

    def connect(self) -> None:
        """Establish connection to PostgreSQL database."""
        connect_args = {
            'connect_timeout': self.timeout,
            'application_name': 'lumen-pg',
        }
        if self.statement_timeout_ms:
            connect_args['options'] = f'-c statement_timeout={int(self.statement_timeout_ms)}'

        try:
            self._engine = create_engine(
                self.spec.to_url(),
                poolclass=NullPool,
                echo=self.echo,
                connect_args=connect_args
            )
            self._connection = self._engine.connect()
        except SQLAlchemyError as e:
            self._dispose_engine()
            error = classify_connect_error(e)
            logger.info("connect_failed", role=self.role, database=self.database, code=error.code)
            raise error

    def disconnect(self) -> None:
        """Close PostgreSQL connection."""
        if self._connection is not None:
            try:
                self._connection.close()
            finally:
                self._connection = None
        self._dispose_engine()

    def _dispose_engine(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def test_connection(self) -> HealthCheckResult:
        """Test PostgreSQL connection health."""
        start_time = time.time()
        try:
            if not self._connection:
                self.connect()

            result = self._connection.execute(text("SELECT 1"))
            result.close()

            response_time_ms = int((time.time() - start_time) * 1000)
            return HealthCheckResult(
                is_healthy=True,
                response_time_ms=response_time_ms,
                timestamp=datetime.now(timezone.utc)
            )
        except (SQLAlchemyError, LumenError) as e:
            response_time_ms = int((time.time() - start_time) * 1000)
            return HealthCheckResult(
                is_healthy=False,
                response_time_ms=response_time_ms,
                error_message=str(e),
                timestamp=datetime.now(timezone.utc)
            )

    def current_role(self) -> str:
        return self._require_connection().execute(text("SELECT current_user")).scalar()

    def inspector(self) -> Inspector:
        return inspect(self._require_connection())

    def execute(
        self,
        sql: str,
        params: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        """Execute SQL statement on PostgreSQL."""
        return self._run(sql, params, None, cancel_token, stream=False)

    def execute_capped(
        self,
        sql: str,
        params: Optional[Dict[str, Any]] = None,
        max_rows: int = 1000,
        cancel_token: Optional[CancellationToken] = None,
        stream: bool = True,
    ) -> ExecutionResult:
        return self._run(sql, params, max_rows, cancel_token, stream=stream)

    def _run(self, sql, params, max_rows, cancel_token, stream=False) -> ExecutionResult:
        connection = self._require_connection()
        unregister = None
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
            unregister = cancel_token.on_cancel(self._cancel_backend)

        start_time = time.time()
        try:
            options = {"stream_results": True} if stream else {}
            result = connection.execute(text(sql), params or {}, execution_options=options)

            returns_rows = result.returns_rows
            rowcount = result.rowcount if result.rowcount and result.rowcount > 0 else 0
            columns = []
            rows = []
            total_rows = 0
            if returns_rows:
                columns = list(result.keys())
                if max_rows is None:
                    rows = [dict(row._mapping) for row in result]
                    total_rows = len(rows)
                else:
                    rows = [dict(row._mapping) for row in result.fetchmany(max_rows)]
                    total_rows = len(rows)
                    # Keep counting past the cap without holding the rows.
                    while True:
                        chunk = result.fetchmany(FETCH_CHUNK_SIZE)
                        if not chunk:
                            break
                        total_rows += len(chunk)
                result.close()

            return ExecutionResult(
                columns=columns,
                rows=rows,
                returns_rows=returns_rows,
                rowcount=rowcount,
                total_rows=total_rows,
                execution_time_ms=int((time.time() - start_time) * 1000)
            )
        except DBAPIError as e:
            if cancel_token is not None and cancel_token.cancelled:
                raise OperationCancelled(cause=e)
            if e.connection_invalidated:
                raise DatabaseConnectionError(cause=e)
            logger.info("statement_failed", role=self.role, query=sql[:200], error=str(e.orig))
            raise QueryFailed(cause=e)
        except SQLAlchemyError as e:
            raise QueryFailed(cause=e)
        finally:
            if unregister is not None:
                unregister()

    def _cancel_backend(self) -> None:
        """Ask the server to cancel whatever this connection is running."""
        if self._connection is None:
            return
        dbapi_connection = self._connection.connection.dbapi_connection
        if dbapi_connection is not None:
            dbapi_connection.cancel()
            logger.info("statement_cancel_requested", role=self.role, database=self.database)

    def begin(self) -> None:
        """Begin a new transaction."""
        connection = self._require_connection()
        if connection.in_transaction():
            connection.rollback()
        connection.begin()

    def commit(self) -> None:
        """Commit current transaction."""
        try:
            self._require_connection().commit()
        except DBAPIError as e:
            raise QueryFailed(cause=e)

    def rollback(self) -> None:
        """Rollback current transaction."""
        if self._connection is not None:
            self._connection.rollback()

    def _require_connection(self):
        if self._connection is None:
            raise DatabaseConnectionError("connector is not connected")
        return self._connection
