"""
Connections Package - Role-authenticated connection handling
"""
from lumen_pg.connections.broker import ConnectionBroker
from lumen_pg.connections.connection_string import (
    ConnectionSpec,
    build_connection_string,
    parse_connection_string,
)

__all__ = [
    "ConnectionBroker",
    "ConnectionSpec",
    "build_connection_string",
    "parse_connection_string",
]
