"""
Pager - cursor (keyset) and offset pagination with a hard row cap
"""
from typing import Any, Dict, Mapping, Optional, Tuple
import base64
import binascii
import json

import structlog

from lumen_pg.connections.connectors.base_connector import BaseConnector
from lumen_pg.core.cancellation import CancellationToken
from lumen_pg.core.crypto import Crypto
from lumen_pg.core.exceptions import ColumnNotFound, CryptoError, ValidationError
from lumen_pg.models.cursor import Cursor, DEFAULT_PAGE_SIZE, HARD_LIMIT_ROWS, MAX_PAGE_SIZE
from lumen_pg.models.metadata import TableMetadata
from lumen_pg.schemas.results import TablePage
from lumen_pg.services.statement import escape_bind_markers, guard_where

logger = structlog.get_logger()

DIRECTIONS = ("asc", "desc")


def quote_identifier(name: str) -> str:
    """Quote one identifier for PostgreSQL."""
    return '"' + name.replace('"', '""') + '"'


def qualified_table(schema: str, table: str) -> str:
    return f"{quote_identifier(schema)}.{quote_identifier(table)}"


def normalize_direction(direction: Optional[str]) -> str:
    value = (direction or "asc").lower()
    if value not in DIRECTIONS:
        raise ValidationError(f"sort direction must be ASC or DESC, got '{direction}'")
    return value


def check_page_size(page_size: int) -> None:
    if not 1 <= page_size <= MAX_PAGE_SIZE:
        raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {page_size}")


def build_where(
    where: Optional[str] = None,
    filters: Optional[Mapping[str, Any]] = None,
    extra: Optional[str] = None,
) -> Tuple[str, Dict[str, Any]]:
    """
    Combine a guarded WHERE fragment, column equality filters and an extra
    predicate into one clause. Filter values are bound as ``:f_<n>``.
    """
    guard_where(where)

    clauses = []
    params: Dict[str, Any] = {}
    if where and where.strip():
        clauses.append(f"({escape_bind_markers(where.strip())})")
    for index, (column, value) in enumerate((filters or {}).items()):
        name = f"f_{index}"
        clauses.append(f"{quote_identifier(column)} = :{name}")
        params[name] = value
    if extra:
        clauses.append(extra)

    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


def count_rows(
    connector: BaseConnector,
    table: TableMetadata,
    where: Optional[str] = None,
    filters: Optional[Mapping[str, Any]] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> int:
    clause, params = build_where(where, filters)
    sql = f"SELECT COUNT(*) AS total FROM {qualified_table(table.schema, table.name)}{clause}"
    result = connector.execute(sql, params, cancel_token=cancel_token)
    return int(result.rows[0]["total"]) if result.rows else 0


class CursorCodec:
    """
    Opaque, signed cursor tokens.

    A token is ``base64(payload).base64(hmac)``; the payload carries the
    cursor and the sort it was produced under. A token whose signature does
    not verify raises ``CryptoError``.
    """

    def __init__(self, crypto: Crypto):
        self.crypto = crypto

    @staticmethod
    def _b64encode(raw: bytes) -> str:
        return base64.urlsafe_b64encode(raw).decode().rstrip("=")

    @staticmethod
    def _b64decode(text: str) -> bytes:
        return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))

    def encode(self, cursor: Cursor, sort_column: str, direction: str) -> str:
        payload = json.dumps(
            {
                "v": cursor.last_value,
                "i": cursor.last_id,
                "p": cursor.page_size,
                "n": cursor.total_loaded,
                "h": cursor.hard_limit,
                "s": sort_column,
                "d": direction,
            },
            default=str,
            separators=(",", ":"),
            sort_keys=True,
        ).encode()
        return f"{self._b64encode(payload)}.{self._b64encode(self.crypto.sign(payload))}"

    def decode(self, token: str, sort_column: Optional[str] = None, direction: Optional[str] = None) -> Cursor:
        try:
            payload_part, signature_part = token.split(".", 1)
            payload = self._b64decode(payload_part)
            signature = self._b64decode(signature_part)
        except (ValueError, binascii.Error) as e:
            raise CryptoError("malformed cursor token", cause=e)

        if not self.crypto.verify(payload, signature):
            logger.warning("crypto_tamper_detected", detail="cursor token signature mismatch")
            raise CryptoError("cursor token signature mismatch")

        data = json.loads(payload)
        if sort_column is not None and data.get("s") != sort_column:
            raise ValidationError("cursor was produced for a different sort column")
        if direction is not None and data.get("d") != direction:
            raise ValidationError("cursor was produced for a different sort direction")

        return Cursor(
            last_value=data.get("v"),
            last_id=data.get("i"),
            page_size=data.get("p", DEFAULT_PAGE_SIZE),
            total_loaded=data.get("n", 0),
            hard_limit=data.get("h", HARD_LIMIT_ROWS),
        )


class CursorPager:
    """
    Keyset pagination.

    Rows are ordered by ``(sort_column, first primary key column)`` and each
    page starts strictly after the previous page's last row. Paging stops
    once ``hard_limit`` rows have been emitted.
    """

    def __init__(self, codec: CursorCodec, page_size: int = DEFAULT_PAGE_SIZE, hard_limit: int = HARD_LIMIT_ROWS):
        self.codec = codec
        self.page_size = page_size
        self.hard_limit = hard_limit

    @staticmethod
    def resolve_sort(table: TableMetadata, sort_column: Optional[str]) -> Tuple[str, Optional[str]]:
        """Return ``(sort_column, tiebreak_column)`` for ``table``."""
        primary_keys = table.primary_keys
        if sort_column is None:
            if primary_keys:
                sort_column = primary_keys[0]
            elif table.columns:
                sort_column = table.columns[0].name
            else:
                raise ValidationError(f"table '{table.name}' has no columns to sort on")
        elif not table.has_column(sort_column):
            raise ColumnNotFound(f"column '{sort_column}' not found in '{table.schema}.{table.name}'")

        tiebreak = primary_keys[0] if primary_keys and primary_keys[0] != sort_column else None
        return sort_column, tiebreak

    def start_cursor(self, page_size: Optional[int] = None) -> Cursor:
        if page_size is None:
            page_size = self.page_size
        check_page_size(page_size)
        return Cursor(page_size=page_size, hard_limit=self.hard_limit)

    def build_query(
        self,
        table: TableMetadata,
        cursor: Cursor,
        sort_column: str,
        tiebreak: Optional[str],
        direction: str,
        where: Optional[str] = None,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[str, Dict[str, Any]]:
        """SQL and bound parameters for the page after ``cursor``."""
        op = ">" if direction == "asc" else "<"
        sort_sql = quote_identifier(sort_column)

        # NULL sort values come last in both directions, ordered by the tiebreak.
        keyset = None
        keyset_params: Dict[str, Any] = {}
        if not cursor.is_start:
            if cursor.last_value is None:
                if tiebreak is not None:
                    keyset = f"({sort_sql} IS NULL AND {quote_identifier(tiebreak)} {op} :last_id)"
                    keyset_params = {"last_id": cursor.last_id}
                else:
                    keyset = "FALSE"
            elif tiebreak is not None:
                keyset = (
                    f"(({sort_sql}, {quote_identifier(tiebreak)}) {op} (:last_value, :last_id) "
                    f"OR {sort_sql} IS NULL)"
                )
                keyset_params = {"last_value": cursor.last_value, "last_id": cursor.last_id}
            else:
                keyset = f"({sort_sql} {op} :last_value OR {sort_sql} IS NULL)"
                keyset_params = {"last_value": cursor.last_value}

        clause, params = build_where(where, filters, extra=keyset)
        params.update(keyset_params)

        order = f"{sort_sql} {direction.upper()} NULLS LAST"
        if tiebreak is not None:
            order += f", {quote_identifier(tiebreak)} {direction.upper()}"

        # One extra row tells whether another page exists.
        params["page_limit"] = cursor.next_page_limit() + 1
        sql = (
            f"SELECT * FROM {qualified_table(table.schema, table.name)}{clause} "
            f"ORDER BY {order} LIMIT :page_limit"
        )
        return sql, params

    def fetch_page(
        self,
        connector: BaseConnector,
        table: TableMetadata,
        sort_column: Optional[str] = None,
        direction: str = "asc",
        cursor_token: Optional[str] = None,
        where: Optional[str] = None,
        filters: Optional[Mapping[str, Any]] = None,
        page_size: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TablePage:
        direction = normalize_direction(direction)
        sort_column, tiebreak = self.resolve_sort(table, sort_column)

        if cursor_token:
            cursor = self.codec.decode(cursor_token, sort_column=sort_column, direction=direction)
        else:
            cursor = self.start_cursor(page_size)

        total_size = count_rows(connector, table, where, filters, cancel_token=cancel_token)
        columns = [c.name for c in table.columns]

        if cursor.has_reached_limit():
            return TablePage(
                columns=columns,
                rows=[],
                next_cursor=None,
                has_more=False,
                total_size=total_size,
                total_loaded=cursor.total_loaded,
            )

        sql, params = self.build_query(table, cursor, sort_column, tiebreak, direction, where, filters)
        result = connector.execute(sql, params, cancel_token=cancel_token)

        limit = cursor.next_page_limit()
        rows = result.rows[:limit]
        if result.columns:
            columns = result.columns

        next_cursor = cursor
        if rows:
            last = rows[-1]
            next_cursor = cursor.advance(
                last_value=last.get(sort_column),
                last_id=last.get(tiebreak) if tiebreak else None,
                loaded=len(rows),
            )

        has_more = len(result.rows) > limit and next_cursor.can_load_more()
        if tiebreak is None and rows and next_cursor.last_value is None:
            # Without a tiebreak there is no position inside a run of NULLs.
            has_more = False
        return TablePage(
            columns=columns,
            rows=rows,
            next_cursor=self.codec.encode(next_cursor, sort_column, direction) if has_more else None,
            has_more=has_more,
            total_size=total_size,
            total_loaded=next_cursor.total_loaded,
        )


class OffsetPager:
    """LIMIT/OFFSET pagination; rows past ``hard_limit`` are never returned."""

    def __init__(self, hard_limit: int = HARD_LIMIT_ROWS):
        self.hard_limit = hard_limit

    def clamp(self, offset: Optional[int], limit: Optional[int]) -> Tuple[int, int]:
        """Return ``(offset, effective_limit)``."""
        offset = max(0, offset or 0)
        limit = min(max(1, limit or 1), self.hard_limit)
        return offset, min(limit, max(0, self.hard_limit - offset))

    def fetch_page(
        self,
        connector: BaseConnector,
        table: TableMetadata,
        offset: Optional[int] = 0,
        limit: Optional[int] = DEFAULT_PAGE_SIZE,
        where: Optional[str] = None,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        direction: str = "asc",
        cancel_token: Optional[CancellationToken] = None,
    ) -> TablePage:
        direction = normalize_direction(direction)
        offset, effective_limit = self.clamp(offset, limit)

        if order_by is None:
            order_by = table.primary_keys[0] if table.primary_keys else None
        elif not table.has_column(order_by):
            raise ColumnNotFound(f"column '{order_by}' not found in '{table.schema}.{table.name}'")

        total_size = count_rows(connector, table, where, filters, cancel_token=cancel_token)
        columns = [c.name for c in table.columns]
        rows = []

        if effective_limit > 0:
            clause, params = build_where(where, filters)
            order = f" ORDER BY {quote_identifier(order_by)} {direction.upper()}" if order_by else ""
            params.update({"page_limit": effective_limit, "page_offset": offset})
            sql = (
                f"SELECT * FROM {qualified_table(table.schema, table.name)}{clause}{order} "
                f"LIMIT :page_limit OFFSET :page_offset"
            )
            result = connector.execute(sql, params, cancel_token=cancel_token)
            rows = result.rows
            if result.columns:
                columns = result.columns

        reachable = min(total_size, self.hard_limit)
        return TablePage(
            columns=columns,
            rows=rows,
            has_more=offset + len(rows) < reachable,
            total_size=total_size,
            total_loaded=offset + len(rows),
            offset=offset,
            limit=effective_limit,
        )
