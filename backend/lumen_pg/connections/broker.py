"""
Connection Broker - hands out connections authenticated as the requesting role
"""
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Sequence, Union

import structlog

from lumen_pg.connections.connection_string import (
    ConnectionSpec,
    DEFAULT_PORT,
    DEFAULT_SSLMODE,
    parse_connection_string,
)
from lumen_pg.connections.connectors.base_connector import BaseConnector, HealthCheckResult
from lumen_pg.connections.connectors.postgres_connector import PostgreSQLConnector
from lumen_pg.core.cancellation import CancellationToken
from lumen_pg.core.exceptions import (
    DatabaseAccessDenied,
    DatabaseConnectionError,
    InternalError,
    InvalidCredentials,
    NoAccessibleDB,
)

logger = structlog.get_logger()

ConnectorFactory = Callable[..., BaseConnector]


class ConnectionBroker:
    """
    Opens, verifies and closes role-authenticated handles.

    The broker keeps no connections between calls. Every ``open`` creates a
    fresh connector for exactly one (database, role) pair and closes it when
    the caller's block exits, so a handle can never be reused by another role.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = DEFAULT_PORT,
        sslmode: str = DEFAULT_SSLMODE,
        connect_timeout: int = 10,
        statement_timeout_ms: int = 0,
        connector_factory: Optional[ConnectorFactory] = None,
        echo: bool = False,
    ):
        self.host = host
        self.port = port
        self.sslmode = sslmode
        self.connect_timeout = connect_timeout
        self.statement_timeout_ms = statement_timeout_ms
        self.echo = echo
        self._connector_factory = connector_factory or PostgreSQLConnector

    @classmethod
    def from_settings(cls, settings, connector_factory: Optional[ConnectorFactory] = None) -> "ConnectionBroker":
        return cls(
            host=settings.DEFAULT_HOST,
            port=settings.DEFAULT_PORT,
            sslmode=settings.DEFAULT_SSLMODE,
            connect_timeout=settings.CONNECT_TIMEOUT_SECONDS,
            statement_timeout_ms=settings.STATEMENT_TIMEOUT_MS,
            connector_factory=connector_factory,
            echo=settings.DEBUG,
        )

    # ------------------------------------------------------------------
    # Connection strings
    # ------------------------------------------------------------------

    def validate_connection_string(self, conn_str: str) -> ConnectionSpec:
        """Parse a connection string or raise ``InvalidConnectionString``."""
        return parse_connection_string(conn_str)

    def spec_for(self, database: str, user: str, secret: Optional[str]) -> ConnectionSpec:
        """Connection parameters for ``user`` on ``database`` using the broker defaults."""
        return ConnectionSpec(
            user=user,
            password=secret,
            host=self.host,
            port=self.port,
            database=database,
            sslmode=self.sslmode,
        )

    def _connector(self, spec: ConnectionSpec) -> BaseConnector:
        return self._connector_factory(
            spec,
            timeout=self.connect_timeout,
            statement_timeout_ms=self.statement_timeout_ms,
            echo=self.echo,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def test_connection(self, target: Union[str, ConnectionSpec]) -> HealthCheckResult:
        """
        Open, ping and close a connection.

        Raises:
            InvalidConnectionString: If ``target`` is a malformed string
            DatabaseConnectionError: If the server cannot be reached or refuses the role
        """
        spec = self.validate_connection_string(target) if isinstance(target, str) else target
        connector = self._connector(spec)
        try:
            health = connector.test_connection()
        finally:
            connector.disconnect()

        if not health.is_healthy:
            logger.info("connection_test_failed", host=spec.host, database=spec.database, role=spec.user)
            raise DatabaseConnectionError(health.error_message)
        logger.info(
            "connection_test_succeeded",
            host=spec.host,
            database=spec.database,
            response_time_ms=health.response_time_ms,
        )
        return health

    def probe(
        self,
        user: str,
        secret: str,
        accessible_dbs: Sequence[str],
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """
        Return the first database in ``accessible_dbs`` the role can connect to.

        Raises:
            InvalidCredentials: The server rejected the password; no further
                databases are tried
            NoAccessibleDB: The list is empty or every database refused the role
            DatabaseConnectionError: Any other connection failure
        """
        for database in accessible_dbs:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            try:
                with self.open(database, user, secret):
                    logger.info("login_probe_succeeded", role=user, database=database)
                    return database
            except InvalidCredentials:
                logger.info("login_probe_rejected", role=user, database=database)
                raise
            except DatabaseAccessDenied:
                logger.info("login_probe_denied", role=user, database=database)
                continue

        logger.info("login_probe_no_database", role=user, candidates=len(accessible_dbs))
        raise NoAccessibleDB()

    @contextmanager
    def open(
        self,
        database: str,
        user: str,
        secret: Optional[str],
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[BaseConnector]:
        """Yield a connected handle authenticated as ``user`` on ``database``."""
        with self.open_spec(self.spec_for(database, user, secret), cancel_token=cancel_token) as connector:
            yield connector

    @contextmanager
    def open_spec(
        self,
        spec: ConnectionSpec,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[BaseConnector]:
        """Yield a connected handle for ``spec`` after checking its server-side role."""
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        connector = self._connector(spec)
        connector.connect()
        try:
            server_role = connector.current_role()
            if server_role != spec.user:
                logger.error(
                    "role_mismatch",
                    requested_role=spec.user,
                    server_role=server_role,
                    database=spec.database,
                )
                raise InternalError(f"connection authenticated as '{server_role}', expected '{spec.user}'")

            yield connector
        except Exception:
            if connector.is_connected():
                connector.rollback()
            raise
        finally:
            connector.disconnect()
