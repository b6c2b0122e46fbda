"""
Base Connector Interface for role-authenticated handles
All database connectors must implement this interface
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone

from lumen_pg.connections.connection_string import ConnectionSpec
from lumen_pg.core.cancellation import CancellationToken


@dataclass
class ExecutionResult:
    """Statement execution result."""
    columns: List[str] = field(default_factory=list)
    rows: List[Dict[str, Any]] = field(default_factory=list)
    returns_rows: bool = False
    rowcount: int = 0
    total_rows: int = 0
    execution_time_ms: int = 0

    @property
    def truncated(self) -> bool:
        return self.total_rows > len(self.rows)


@dataclass
class HealthCheckResult:
    """Health check result."""
    is_healthy: bool
    response_time_ms: int
    error_message: Optional[str] = None
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)


class BaseConnector(ABC):
    """
    Abstract base class for a single connection authenticated as one role.

    A connector is scoped to one operation: it is opened, used and closed by
    the broker and never handed to a request made by another role.
    """

    def __init__(self, spec: ConnectionSpec, timeout: int = 10, statement_timeout_ms: int = 0):
        """
        Initialize connector.

        Args:
            spec: Connection parameters, including the role credentials
            timeout: Connection timeout in seconds
            statement_timeout_ms: Server-side statement timeout, 0 disables it
        """
        self.spec = spec
        self.timeout = timeout
        self.statement_timeout_ms = statement_timeout_ms
        self._connection = None

    @property
    def role(self) -> str:
        return self.spec.user

    @property
    def database(self) -> str:
        return self.spec.database

    @abstractmethod
    def connect(self) -> None:
        """
        Establish connection to database.

        Raises:
            InvalidCredentials: If the server rejects the password
            DatabaseAccessDenied: If the role may not connect to this database
            DatabaseConnectionError: For any other failure
        """
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """Close connection and cleanup resources."""
        pass

    @abstractmethod
    def test_connection(self) -> HealthCheckResult:
        """Ping the server."""
        pass

    @abstractmethod
    def current_role(self) -> str:
        """Return the server-side ``current_user`` of this connection."""
        pass

    @abstractmethod
    def execute(
        self,
        sql: str,
        params: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        """
        Execute one statement with bound parameters and fetch every row.

        Raises:
            QueryFailed: If the server reports an error
            OperationCancelled: If ``cancel_token`` fired while running
        """
        pass

    @abstractmethod
    def execute_capped(
        self,
        sql: str,
        params: Optional[Dict[str, Any]] = None,
        max_rows: int = 1000,
        cancel_token: Optional[CancellationToken] = None,
        stream: bool = True,
    ) -> ExecutionResult:
        """
        Execute one statement, keep at most ``max_rows`` rows and count the rest.

        ``total_rows`` of the result is the true row count. ``stream`` reads
        through a server-side cursor, which PostgreSQL only accepts for
        SELECT and VALUES.
        """
        pass

    @abstractmethod
    def begin(self) -> None:
        """Begin a new transaction."""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit current transaction."""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Rollback current transaction."""
        pass

    def is_connected(self) -> bool:
        """Check if currently connected."""
        return self._connection is not None

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        if exc_type is not None and self.is_connected():
            self.rollback()
        self.disconnect()
