"""
Boundary contracts returned to the HTTP collaborator
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Any, Dict
from enum import Enum


class StatementKind(str, Enum):
    SELECT = "select"
    DML_WRITE = "dml_write"
    DDL = "ddl"
    OTHER = "other"


class LoginResult(BaseModel):
    """Outcome of a successful login."""
    success: bool = True
    session_id: str
    username: str
    initial_db: Optional[str] = None
    initial_schema: Optional[str] = None
    initial_table: Optional[str] = None
    expires_at: float


class QueryResult(BaseModel):
    """Result of one statement or one table read."""
    columns: List[str] = []
    rows: List[Dict[str, Any]] = []
    total_size: int = 0
    is_select: bool = True
    affected_rows: int = 0
    statement: Optional[str] = None
    kind: StatementKind = StatementKind.SELECT
    truncated: bool = False


class TablePage(BaseModel):
    """One page of table rows."""
    columns: List[str] = []
    rows: List[Dict[str, Any]] = []
    next_cursor: Optional[str] = None
    has_more: bool = False
    total_size: int = 0
    total_loaded: int = 0
    offset: Optional[int] = None
    limit: Optional[int] = None


class ChildTableCount(BaseModel):
    """Rows in one child table that reference a given primary-key value."""
    database: str
    schema_name: str
    table: str
    fk_column: str
    row_count: int


class ERDColumn(BaseModel):
    name: str
    type: str
    is_pk: bool = False
    is_fk: bool = False


class ERDTable(BaseModel):
    name: str
    columns: List[ERDColumn] = []


class ERDEdge(BaseModel):
    from_table: str
    from_col: str
    to_table: str
    to_col: str


class ERDData(BaseModel):
    tables: List[ERDTable] = []
    edges: List[ERDEdge] = []


class TransactionStatus(BaseModel):
    active: bool
    state: str
    remaining_seconds: int = 0
    edit_count: int = 0
    delete_count: int = 0
    insert_count: int = 0
    database: Optional[str] = None
    schema_name: Optional[str] = None
    table: Optional[str] = None


class CommitResult(BaseModel):
    affected_rows: int = 0
    statements_executed: int = 0
    operations_buffered: int = 0


class MetadataRefreshResult(BaseModel):
    success: bool = True
    database_count: int = 0
    schema_count: int = 0
    table_count: int = 0
    role_count: int = 0
    refresh_time_ms: int = Field(default=0, ge=0)
