"""
Lumen-PG - core wiring and CLI bootstrap
"""
from dataclasses import dataclass
from typing import List, Optional
import argparse
import logging
import sys

import structlog

from lumen_pg.config import Settings, get_settings
from lumen_pg.connections.broker import ConnectionBroker
from lumen_pg.core.clock import Clock, system_clock
from lumen_pg.core.crypto import Crypto
from lumen_pg.core.exceptions import LumenError
from lumen_pg.services.auth_service import AuthService
from lumen_pg.services.catalog_reader import CatalogReader
from lumen_pg.services.data_service import DataService
from lumen_pg.services.metadata_cache import MetadataCache
from lumen_pg.services.pager import CursorCodec, CursorPager, OffsetPager
from lumen_pg.services.session_store import SessionStore
from lumen_pg.services.transaction_engine import TransactionEngine
from lumen_pg.services.transaction_sweeper import TransactionSweeper


def configure_logging(level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structured logging."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level.upper())
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


logger = structlog.get_logger()


@dataclass
class LumenCore:
    """The four stores and the services composed over them."""
    settings: Settings
    crypto: Crypto
    clock: Clock
    broker: ConnectionBroker
    catalog_reader: CatalogReader
    metadata_cache: MetadataCache
    session_store: SessionStore
    transaction_engine: TransactionEngine
    data_service: DataService
    auth_service: AuthService
    sweeper: TransactionSweeper

    def startup(self, start_sweeper: bool = True) -> None:
        logger.info("application_startup", version=self.settings.APP_VERSION)
        self.metadata_cache.load_all()
        if start_sweeper:
            self.sweeper.start()

    def shutdown(self) -> None:
        self.sweeper.stop(timeout=self.settings.SWEEP_INTERVAL_SECONDS)
        logger.info("application_shutdown")


def build_core(
    settings: Optional[Settings] = None,
    connector_factory=None,
    clock: Clock = system_clock,
) -> LumenCore:
    """Wire every component from ``settings``."""
    settings = settings or get_settings()

    crypto = Crypto.from_encoded_key(settings.ENCRYPTION_KEY)
    broker = ConnectionBroker.from_settings(settings, connector_factory=connector_factory)
    superadmin = broker.validate_connection_string(settings.SUPERADMIN_DATABASE_URL)

    catalog_reader = CatalogReader(broker, superadmin)
    metadata_cache = MetadataCache(catalog_reader, clock=clock)
    session_store = SessionStore(
        crypto,
        clock=clock,
        ttl_seconds=settings.SESSION_TTL_SECONDS,
        broker=broker,
        metadata_cache=metadata_cache,
    )
    transaction_engine = TransactionEngine(
        broker,
        metadata_cache,
        clock=clock,
        ttl_seconds=settings.TRANSACTION_TTL_SECONDS,
    )
    data_service = DataService(
        broker,
        metadata_cache,
        cursor_pager=CursorPager(CursorCodec(crypto), page_size=settings.PAGE_SIZE, hard_limit=settings.HARD_LIMIT),
        offset_pager=OffsetPager(hard_limit=settings.HARD_LIMIT),
        hard_limit=settings.HARD_LIMIT,
    )
    auth_service = AuthService(
        broker,
        metadata_cache,
        session_store,
        transaction_engine=transaction_engine,
        crypto=crypto,
        clock=clock,
        password_token_ttl_seconds=settings.PASSWORD_TOKEN_TTL_SECONDS,
    )

    return LumenCore(
        settings=settings,
        crypto=crypto,
        clock=clock,
        broker=broker,
        catalog_reader=catalog_reader,
        metadata_cache=metadata_cache,
        session_store=session_store,
        transaction_engine=transaction_engine,
        data_service=data_service,
        auth_service=auth_service,
        sweeper=TransactionSweeper(transaction_engine, interval=settings.SWEEP_INTERVAL_SECONDS),
    )


# ============================================================================
# CLI
# ============================================================================

def _cmd_check(core: LumenCore, args) -> int:
    spec = core.catalog_reader.superadmin
    health = core.broker.test_connection(spec)
    print(f"OK  {spec.user}@{spec.host}:{spec.port}/{spec.database} ({health.response_time_ms} ms)")
    return 0


def _cmd_metadata(core: LumenCore, args) -> int:
    result = core.metadata_cache.load_all()
    cluster = core.metadata_cache.get_cluster()

    print(f"{result.database_count} databases, {result.schema_count} schemas, "
          f"{result.table_count} tables, {result.role_count} roles ({result.refresh_time_ms} ms)")
    for db in cluster.databases:
        tables = sum(len(s.tables) for s in db.schemas.values())
        print(f"  database {db.name}: {len(db.schemas)} schemas, {tables} tables")

    roles = [args.role] if args.role else core.metadata_cache.roles()
    for role in roles:
        view = core.metadata_cache.get_role_view(role)
        tables = sum(len(t) for t in view.tables.values())
        print(f"  role {role}: {len(view.databases)} databases, {tables} tables")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lumen-pg", description="Lumen-PG data access core")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("check", help="Validate and test the superadmin connection")

    metadata = subparsers.add_parser("metadata", help="Load the cluster metadata and print a summary")
    metadata.add_argument("--role", help="Only summarize this role")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    commands = {
        "check": _cmd_check,
        "metadata": _cmd_metadata,
    }
    try:
        core = build_core(settings)
        return commands[args.command](core, args)
    except LumenError as e:
        logger.error("command_failed", command=args.command, error_code=e.code, error=e.message)
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
