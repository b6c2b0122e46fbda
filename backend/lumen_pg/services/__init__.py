"""
Services Package
"""
from lumen_pg.services.auth_service import AuthService
from lumen_pg.services.catalog_reader import CatalogReader, RolePrivileges
from lumen_pg.services.data_service import DataService
from lumen_pg.services.metadata_cache import MetadataCache
from lumen_pg.services.pager import CursorCodec, CursorPager, OffsetPager, quote_identifier
from lumen_pg.services.session_store import SessionStore
from lumen_pg.services.statement import classify, guard_where, split
from lumen_pg.services.transaction_engine import TransactionEngine, coalesce
from lumen_pg.services.transaction_sweeper import TransactionSweeper

__all__ = [
    "AuthService",
    "CatalogReader", "RolePrivileges",
    "DataService",
    "MetadataCache",
    "CursorCodec", "CursorPager", "OffsetPager", "quote_identifier",
    "SessionStore",
    "classify", "guard_where", "split",
    "TransactionEngine", "coalesce",
    "TransactionSweeper",
]
