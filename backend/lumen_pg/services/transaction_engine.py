"""
Transaction Engine
Per-user buffered row edits, inserts and deletes applied atomically on commit.
"""
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import json
import math
import threading

import structlog

from lumen_pg.core.cancellation import CancellationToken
from lumen_pg.core.clock import Clock, system_clock
from lumen_pg.core.exceptions import (
    ActiveTransactionExists,
    ColumnNotFound,
    CommitFailed,
    InsufficientPermissions,
    LumenError,
    NoActiveTransaction,
    OperationCancelled,
    TransactionExpired,
    ValidationError,
)
from lumen_pg.models.metadata import Permission, TableRef
from lumen_pg.models.session import Credential
from lumen_pg.models.transaction import (
    BufferedOp,
    OperationType,
    Transaction,
    TransactionState,
    pending_row_key,
    pending_sequence,
)
from lumen_pg.schemas.results import CommitResult, TransactionStatus
from lumen_pg.services.pager import qualified_table, quote_identifier

logger = structlog.get_logger()

TRANSACTION_TTL_SECONDS = 60


def _row_identity(op: BufferedOp) -> Tuple[TableRef, str]:
    return op.table_ref, json.dumps(op.where_values, sort_keys=True, default=str)


def coalesce(operations: Sequence[BufferedOp]) -> List[BufferedOp]:
    """
    Collapse a buffered operation log into the statements to run.

    - Repeated edits of one (row, column) keep the latest value at the
      position of the first edit.
    - Edits of a row buffered by ``insert_row`` are folded into that INSERT.
    - Deleting a buffered insert drops the insert and its edits.
    - Deleting a row drops the edits made to it earlier.

    Every emitted UPDATE sets exactly one column.
    """
    result: List[Optional[BufferedOp]] = []
    inserts: Dict[int, int] = {}
    updates: Dict[Tuple[TableRef, str, str], int] = {}

    for op in operations:
        if op.op_type == OperationType.INSERT:
            inserts[op.sequence] = len(result)
            result.append(op)

        elif op.op_type == OperationType.UPDATE:
            pending = op.pending_insert
            if pending is not None:
                index = inserts.get(pending)
                if index is not None:
                    insert = result[index]
                    result[index] = replace(insert, row_values={**insert.row_values, **op.row_values})
                continue

            table_ref, row = _row_identity(op)
            for column, value in op.row_values.items():
                key = (table_ref, row, column)
                index = updates.get(key)
                if index is not None:
                    result[index] = replace(result[index], row_values={column: value})
                else:
                    updates[key] = len(result)
                    result.append(replace(op, row_values={column: value}))

        elif op.op_type == OperationType.DELETE:
            pending = op.pending_insert
            if pending is not None:
                index = inserts.pop(pending, None)
                if index is not None:
                    result[index] = None
                continue

            identity = _row_identity(op)
            for key in [k for k in updates if k[:2] == identity]:
                result[updates.pop(key)] = None
            result.append(op)

    return [op for op in result if op is not None]


def _where_sql(values: Mapping[str, Any], params: Dict[str, Any]) -> str:
    clauses = []
    for index, (column, value) in enumerate(values.items()):
        if value is None:
            clauses.append(f"{quote_identifier(column)} IS NULL")
        else:
            name = f"w_{index}"
            clauses.append(f"{quote_identifier(column)} = :{name}")
            params[name] = value
    return " AND ".join(clauses)


def build_statement(op: BufferedOp) -> Tuple[str, Dict[str, Any]]:
    """Parameterized SQL for one coalesced operation."""
    table = qualified_table(op.schema, op.table)
    params: Dict[str, Any] = {}

    if op.op_type == OperationType.INSERT:
        if not op.row_values:
            return f"INSERT INTO {table} DEFAULT VALUES", params
        columns = []
        placeholders = []
        for index, (column, value) in enumerate(op.row_values.items()):
            name = f"v_{index}"
            columns.append(quote_identifier(column))
            placeholders.append(f":{name}")
            params[name] = value
        return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join(placeholders)})", params

    if op.op_type == OperationType.UPDATE:
        assignments = []
        for index, (column, value) in enumerate(op.row_values.items()):
            name = f"set_{index}"
            assignments.append(f"{quote_identifier(column)} = :{name}")
            params[name] = value
        return f"UPDATE {table} SET {', '.join(assignments)} WHERE {_where_sql(op.where_values, params)}", params

    return f"DELETE FROM {table} WHERE {_where_sql(op.where_values, params)}", params


class TransactionEngine:
    """
    One transaction slot per username.

    All changes to a slot happen under that user's lock, so two calls by the
    same user never interleave while different users never contend. The lock
    is also held across commit so two commits by one user cannot overlap.
    """

    def __init__(
        self,
        broker,
        metadata_cache,
        clock: Clock = system_clock,
        ttl_seconds: int = TRANSACTION_TTL_SECONDS,
    ):
        self.broker = broker
        self.metadata_cache = metadata_cache
        self.clock = clock
        self.ttl_seconds = ttl_seconds
        self._slots: Dict[str, Transaction] = {}
        self._user_locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, username: str) -> threading.Lock:
        with self._guard:
            lock = self._user_locks.get(username)
            if lock is None:
                lock = self._user_locks[username] = threading.Lock()
            return lock

    def _is_expired(self, txn: Transaction) -> bool:
        return txn.state == TransactionState.EXPIRED or self.clock.is_expired(txn.expires_at)

    def _active(self, username: str) -> Transaction:
        """The user's active transaction. Caller holds the user's lock."""
        txn = self._slots.get(username)
        if txn is None:
            raise NoActiveTransaction()
        if self._is_expired(txn):
            txn.state = TransactionState.EXPIRED
            del self._slots[username]
            logger.info("transaction_expired", username=username, operations=len(txn.operations))
            raise TransactionExpired()
        return txn

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, username: str, database: str, schema: str, table: str) -> TransactionStatus:
        """Open a transaction on one table. The role must hold UPDATE on it."""
        if not self.metadata_cache.has_permission(username, database, schema, table, Permission.UPDATE):
            raise InsufficientPermissions(f"UPDATE on '{schema}.{table}' is required to start a transaction")

        with self._lock_for(username):
            existing = self._slots.get(username)
            if existing is not None:
                if not self._is_expired(existing):
                    raise ActiveTransactionExists()
                del self._slots[username]

            now = self.clock.now_unix()
            txn = Transaction(
                username=username,
                database=database,
                schema=schema,
                table=table,
                started_at=now,
                expires_at=self.clock.add_seconds(self.ttl_seconds, base=now),
            )
            self._slots[username] = txn
            status = self._status_of(txn)

        logger.info("transaction_started", username=username, database=database, schema=schema, table=table)
        return status

    def _check_target(self, txn: Transaction, database: str, schema: str, table: str,
                      permission: Permission, columns: Sequence[str] = ()) -> None:
        if database != txn.database:
            raise ValidationError(
                f"transaction is bound to database '{txn.database}', cannot buffer changes for '{database}'"
            )
        if not self.metadata_cache.has_permission(txn.username, database, schema, table, permission):
            raise InsufficientPermissions(f"{permission.name} on '{schema}.{table}' is not granted")
        meta = self.metadata_cache.get_table(database, schema, table)
        for column in columns:
            if not meta.has_column(column):
                raise ColumnNotFound(f"column '{column}' not found in '{schema}.{table}'")

    @staticmethod
    def _check_pending(txn: Transaction, row_key: Mapping[str, Any], table_ref: TableRef) -> None:
        sequence = pending_sequence(row_key)
        if sequence is None:
            return
        for op in txn.operations:
            if op.op_type == OperationType.INSERT and op.sequence == sequence and op.table_ref == table_ref:
                return
        raise ValidationError(f"no buffered insert with sequence {sequence}")

    def edit_cell(
        self,
        username: str,
        database: str,
        schema: str,
        table: str,
        row_key: Mapping[str, Any],
        column: str,
        new_value: Any,
    ) -> BufferedOp:
        if not row_key:
            raise ValidationError("row key is required")

        with self._lock_for(username):
            txn = self._active(username)
            table_ref = TableRef(database, schema, table)
            if pending_sequence(row_key) is not None:
                self._check_target(txn, database, schema, table, Permission.INSERT, [column])
                self._check_pending(txn, row_key, table_ref)
            else:
                self._check_target(txn, database, schema, table, Permission.UPDATE, [column, *row_key])

            op = BufferedOp(
                op_type=OperationType.UPDATE,
                database=database,
                schema=schema,
                table=table,
                sequence=txn.next_sequence(),
                row_values={column: new_value},
                where_values=dict(row_key),
            )
            txn.operations.append(op)
        return op

    def delete_row(
        self,
        username: str,
        database: str,
        schema: str,
        table: str,
        row_key: Mapping[str, Any],
    ) -> BufferedOp:
        if not row_key:
            raise ValidationError("row key is required")

        with self._lock_for(username):
            txn = self._active(username)
            table_ref = TableRef(database, schema, table)
            if pending_sequence(row_key) is not None:
                self._check_target(txn, database, schema, table, Permission.INSERT)
                self._check_pending(txn, row_key, table_ref)
            else:
                self._check_target(txn, database, schema, table, Permission.DELETE, list(row_key))

            op = BufferedOp(
                op_type=OperationType.DELETE,
                database=database,
                schema=schema,
                table=table,
                sequence=txn.next_sequence(),
                where_values=dict(row_key),
            )
            txn.operations.append(op)
        return op

    def insert_row(
        self,
        username: str,
        database: str,
        schema: str,
        table: str,
        values: Mapping[str, Any],
    ) -> Dict[str, Any]:
        """Buffer an INSERT; returns the row key later edits and deletes can target."""
        with self._lock_for(username):
            txn = self._active(username)
            self._check_target(txn, database, schema, table, Permission.INSERT, list(values))

            sequence = txn.next_sequence()
            txn.operations.append(BufferedOp(
                op_type=OperationType.INSERT,
                database=database,
                schema=schema,
                table=table,
                sequence=sequence,
                row_values=dict(values),
            ))
        return pending_row_key(sequence)

    def commit(self, credential: Credential, cancel_token: Optional[CancellationToken] = None) -> CommitResult:
        """
        Apply the buffered operations as the user's own role in one PostgreSQL
        transaction. On any error the transaction is rolled back, the buffer is
        kept and ``CommitFailed`` carries the cause.
        """
        username = credential.username
        with self._lock_for(username):
            txn = self._active(username)
            operations = coalesce(txn.operations)
            statements = [build_statement(op) for op in operations]

            affected_rows = 0
            if statements:
                try:
                    with self.broker.open(txn.database, username, credential.secret, cancel_token) as connector:
                        connector.begin()
                        try:
                            for sql, params in statements:
                                result = connector.execute(sql, params, cancel_token=cancel_token)
                                affected_rows += result.rowcount
                            connector.commit()
                        except LumenError:
                            connector.rollback()
                            raise
                except OperationCancelled:
                    logger.info("transaction_commit_cancelled", username=username)
                    raise
                except LumenError as e:
                    logger.warning("transaction_commit_failed", username=username, error_code=e.code)
                    raise CommitFailed(cause=e)

            txn.state = TransactionState.COMMITTED
            del self._slots[username]

        logger.info(
            "transaction_committed",
            username=username,
            operations_buffered=len(txn.operations),
            statements_executed=len(statements),
            affected_rows=affected_rows,
        )
        return CommitResult(
            affected_rows=affected_rows,
            statements_executed=len(statements),
            operations_buffered=len(txn.operations),
        )

    def rollback(self, username: str) -> None:
        """Discard the buffer. An expired slot is cleared without error."""
        with self._lock_for(username):
            txn = self._slots.pop(username, None)
            if txn is None:
                raise NoActiveTransaction()
            expired = self._is_expired(txn)
            txn.state = TransactionState.EXPIRED if expired else TransactionState.ROLLED_BACK

        logger.info("transaction_rolled_back", username=username, operations=len(txn.operations), expired=expired)

    def discard(self, username: str) -> bool:
        """Roll back if a slot exists; returns whether one did."""
        try:
            self.rollback(username)
            return True
        except NoActiveTransaction:
            return False

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _status_of(self, txn: Transaction) -> TransactionStatus:
        return TransactionStatus(
            active=True,
            state=TransactionState.ACTIVE.value,
            remaining_seconds=int(math.ceil(self.clock.time_until(txn.expires_at))),
            edit_count=txn.count(OperationType.UPDATE),
            delete_count=txn.count(OperationType.DELETE),
            insert_count=txn.count(OperationType.INSERT),
            database=txn.database,
            schema_name=txn.schema,
            table=txn.table,
        )

    def status(self, username: str) -> TransactionStatus:
        with self._lock_for(username):
            txn = self._slots.get(username)
            if txn is None:
                return TransactionStatus(active=False, state=TransactionState.NONE.value)
            if self._is_expired(txn):
                del self._slots[username]
                return TransactionStatus(
                    active=False,
                    state=TransactionState.EXPIRED.value,
                    database=txn.database,
                    schema_name=txn.schema,
                    table=txn.table,
                )
            return self._status_of(txn)

    def has_active(self, username: str) -> bool:
        return self.status(username).active

    def sweep(self) -> List[str]:
        """Mark every slot past its deadline as expired; returns the affected usernames."""
        usernames = list(self._slots.keys())

        expired = []
        for username in usernames:
            with self._lock_for(username):
                txn = self._slots.get(username)
                if txn is None or txn.state == TransactionState.EXPIRED:
                    continue
                if self.clock.is_expired(txn.expires_at):
                    txn.state = TransactionState.EXPIRED
                    expired.append(username)

        if expired:
            logger.info("transactions_swept", count=len(expired))
        return expired
