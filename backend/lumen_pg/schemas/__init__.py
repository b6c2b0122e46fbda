"""
Schemas Package
"""
from lumen_pg.schemas.results import (
    StatementKind,
    LoginResult, QueryResult, TablePage, ChildTableCount,
    ERDColumn, ERDTable, ERDEdge, ERDData,
    TransactionStatus, CommitResult, MetadataRefreshResult
)

__all__ = [
    "StatementKind",
    "LoginResult", "QueryResult", "TablePage", "ChildTableCount",
    "ERDColumn", "ERDTable", "ERDEdge", "ERDData",
    "TransactionStatus", "CommitResult", "MetadataRefreshResult"
]
