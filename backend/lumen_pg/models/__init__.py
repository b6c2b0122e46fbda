"""
Models Package - Domain records shared by the services
"""
from lumen_pg.models.cursor import Cursor, DEFAULT_PAGE_SIZE, HARD_LIMIT_ROWS, MAX_PAGE_SIZE
from lumen_pg.models.metadata import (
    ClusterMetadata,
    ColumnMetadata,
    DatabaseMetadata,
    ForeignKey,
    Permission,
    RoleView,
    SchemaMetadata,
    TableMetadata,
    TableRef,
    TABLE_PRIVILEGES,
    WRITE_PRIVILEGES,
)
from lumen_pg.models.session import Credential, Session
from lumen_pg.models.transaction import (
    BufferedOp,
    OperationType,
    PENDING_ROW_KEY,
    Transaction,
    TransactionState,
    pending_row_key,
)

__all__ = [
    # Paging
    "Cursor",
    "DEFAULT_PAGE_SIZE",
    "HARD_LIMIT_ROWS",
    "MAX_PAGE_SIZE",

    # Metadata
    "ClusterMetadata",
    "ColumnMetadata",
    "DatabaseMetadata",
    "ForeignKey",
    "Permission",
    "RoleView",
    "SchemaMetadata",
    "TableMetadata",
    "TableRef",
    "TABLE_PRIVILEGES",
    "WRITE_PRIVILEGES",

    # Sessions
    "Credential",
    "Session",

    # Transactions
    "BufferedOp",
    "OperationType",
    "PENDING_ROW_KEY",
    "Transaction",
    "TransactionState",
    "pending_row_key",
]
