"""
Connectors Package - Role-authenticated PostgreSQL connector implementations
"""
from lumen_pg.connections.connectors.base_connector import (
    BaseConnector,
    ExecutionResult,
    HealthCheckResult,
)
from lumen_pg.connections.connectors.postgres_connector import (
    PostgreSQLConnector,
    classify_connect_error,
)

__all__ = [
    "BaseConnector",
    "ExecutionResult",
    "HealthCheckResult",
    "PostgreSQLConnector",
    "classify_connect_error",
]
