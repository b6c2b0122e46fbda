"""
Buffered transaction records
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
import enum

from lumen_pg.models.metadata import TableRef

# Row keys that point at a row buffered by insert_row rather than an existing row.
PENDING_ROW_KEY = "__pending_insert__"


class OperationType(str, enum.Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class TransactionState(str, enum.Enum):
    NONE = "none"
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    EXPIRED = "expired"


def pending_row_key(sequence: int) -> Dict[str, Any]:
    """Row key identifying the row buffered by the insert with ``sequence``."""
    return {PENDING_ROW_KEY: sequence}


def pending_sequence(row_key: Optional[Mapping[str, Any]]) -> Optional[int]:
    if not row_key or PENDING_ROW_KEY not in row_key:
        return None
    return row_key[PENDING_ROW_KEY]


@dataclass(frozen=True)
class BufferedOp:
    """
    One pending row change.

    ``row_values`` holds the new column values for INSERT and UPDATE,
    ``where_values`` identifies the target row for UPDATE and DELETE.
    """
    op_type: OperationType
    database: str
    schema: str
    table: str
    sequence: int
    row_values: Dict[str, Any] = field(default_factory=dict)
    where_values: Dict[str, Any] = field(default_factory=dict)

    @property
    def table_ref(self) -> TableRef:
        return TableRef(self.database, self.schema, self.table)

    @property
    def pending_insert(self) -> Optional[int]:
        """Sequence of the buffered insert this op targets, if any."""
        return pending_sequence(self.where_values)


@dataclass
class Transaction:
    username: str
    database: str
    schema: str
    table: str
    started_at: float
    expires_at: float
    operations: List[BufferedOp] = field(default_factory=list)
    state: TransactionState = TransactionState.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.state in (
            TransactionState.COMMITTED,
            TransactionState.ROLLED_BACK,
            TransactionState.EXPIRED,
        )

    def next_sequence(self) -> int:
        return len(self.operations) + 1

    def count(self, op_type: OperationType) -> int:
        return sum(1 for op in self.operations if op.op_type == op_type)
