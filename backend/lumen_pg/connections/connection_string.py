"""
PostgreSQL connection string parsing and building
"""
from dataclasses import dataclass, replace
from typing import Optional

from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

from lumen_pg.core.exceptions import InvalidConnectionString

DEFAULT_PORT = 5432
DEFAULT_SSLMODE = "disable"
SUPPORTED_SCHEMES = ("postgres", "postgresql")
SSL_MODES = ("disable", "allow", "prefer", "require", "verify-ca", "verify-full")
DRIVERNAME = "postgresql+psycopg2"


@dataclass(frozen=True)
class ConnectionSpec:
    """Everything needed to open one role-authenticated connection."""
    user: str
    host: str
    database: str
    password: Optional[str] = None
    port: int = DEFAULT_PORT
    sslmode: str = DEFAULT_SSLMODE

    def __repr__(self) -> str:
        return (
            f"<ConnectionSpec(user={self.user!r}, host={self.host!r}, port={self.port}, "
            f"database={self.database!r}, sslmode={self.sslmode!r})>"
        )

    def to_url(self) -> URL:
        return URL.create(
            DRIVERNAME,
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
            query={"sslmode": self.sslmode},
        )

    def with_database(self, database: str) -> "ConnectionSpec":
        return replace(self, database=database)

    def with_credentials(self, user: str, password: Optional[str]) -> "ConnectionSpec":
        return replace(self, user=user, password=password)


def parse_connection_string(conn_str: str) -> ConnectionSpec:
    """
    Parse ``postgres[ql]://user[:secret]@host[:port]/db[?sslmode=...]``.

    Raises:
        InvalidConnectionString: missing scheme, host or user, bad port or sslmode
    """
    if not conn_str or "://" not in conn_str:
        raise InvalidConnectionString("connection string must start with postgres:// or postgresql://")

    scheme = conn_str.split("://", 1)[0].lower()
    if scheme.split("+", 1)[0] not in SUPPORTED_SCHEMES:
        raise InvalidConnectionString(f"unsupported scheme '{scheme}'")

    try:
        url = make_url(conn_str)
        port = url.port
    except (ArgumentError, ValueError) as e:
        raise InvalidConnectionString(cause=e)

    if not url.host:
        raise InvalidConnectionString("connection string is missing a host")
    if not url.username:
        raise InvalidConnectionString("connection string is missing a user")

    sslmode = url.query.get("sslmode", DEFAULT_SSLMODE)
    if isinstance(sslmode, tuple):
        sslmode = sslmode[-1]
    if sslmode not in SSL_MODES:
        raise InvalidConnectionString(f"unsupported sslmode '{sslmode}'")

    return ConnectionSpec(
        user=url.username,
        password=url.password,
        host=url.host,
        port=port or DEFAULT_PORT,
        # libpq falls back to a database named after the user
        database=url.database or url.username,
        sslmode=sslmode,
    )


def build_connection_string(
    user: str,
    secret: Optional[str],
    host: str,
    database: str,
    port: int = DEFAULT_PORT,
    sslmode: str = DEFAULT_SSLMODE,
) -> str:
    """Render the tuple form as a connection string with the secret escaped."""
    spec = ConnectionSpec(user=user, password=secret, host=host, port=port,
                          database=database, sslmode=sslmode)
    return spec.to_url().set(drivername="postgresql").render_as_string(hide_password=False)
