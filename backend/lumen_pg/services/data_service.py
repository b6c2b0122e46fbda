"""
Data Service
Table reads, filtering, sorting, FK/PK navigation and ad-hoc SQL, all run
as the requesting user's own role.
"""
from typing import Any, List, Optional

import structlog

from lumen_pg.core.cancellation import CancellationToken
from lumen_pg.core.exceptions import (
    DatabaseAccessDenied,
    InsufficientPermissions,
    LumenError,
    TableAccessDenied,
    UnsupportedStatement,
    ValidationError,
)
from lumen_pg.models.cursor import DEFAULT_PAGE_SIZE, HARD_LIMIT_ROWS
from lumen_pg.models.metadata import Permission, TableMetadata, TableRef
from lumen_pg.models.session import Credential
from lumen_pg.schemas.results import (
    ChildTableCount,
    ERDData,
    QueryResult,
    StatementKind,
    TablePage,
)
from lumen_pg.services.pager import (
    CursorPager,
    OffsetPager,
    check_page_size,
    count_rows,
    qualified_table,
    quote_identifier,
)
from lumen_pg.services.statement import (
    classify,
    escape_bind_markers,
    extract_read_targets,
    extract_write_target,
    guard_where,
    is_streamable,
    split,
)

logger = structlog.get_logger()

DEFAULT_SCHEMA = "public"

_WRITE_PERMISSION = {
    "insert": Permission.INSERT,
    "update": Permission.UPDATE,
    "delete": Permission.DELETE,
}


class DataService:
    """Composes the broker, metadata cache, statement surface and pagers."""

    def __init__(
        self,
        broker,
        metadata_cache,
        cursor_pager: CursorPager,
        offset_pager: Optional[OffsetPager] = None,
        hard_limit: int = HARD_LIMIT_ROWS,
    ):
        self.broker = broker
        self.metadata_cache = metadata_cache
        self.cursor_pager = cursor_pager
        self.offset_pager = offset_pager or OffsetPager(hard_limit=hard_limit)
        self.hard_limit = hard_limit

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _readable_table(self, username: str, database: str, schema: str, table: str) -> TableMetadata:
        if not self.metadata_cache.has_permission(username, database, schema, table, Permission.SELECT):
            logger.info("table_access_denied", username=username, table=f"{database}.{schema}.{table}")
            raise TableAccessDenied(f"access denied to table '{schema}.{table}'")
        return self.metadata_cache.get_table(database, schema, table)

    # ------------------------------------------------------------------
    # Table reads
    # ------------------------------------------------------------------

    def read_table(
        self,
        credential: Credential,
        database: str,
        schema: str,
        table: str,
        sort_column: Optional[str] = None,
        direction: str = "asc",
        cursor: Optional[str] = None,
        where: Optional[str] = None,
        page_size: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TablePage:
        """One cursor page of ``table``; pass the previous page's ``next_cursor`` to continue."""
        meta = self._readable_table(credential.username, database, schema, table)
        guard_where(where)
        if page_size is not None:
            check_page_size(page_size)

        with self.broker.open(database, credential.username, credential.secret, cancel_token) as connector:
            return self.cursor_pager.fetch_page(
                connector,
                meta,
                sort_column=sort_column,
                direction=direction,
                cursor_token=cursor,
                where=where,
                page_size=page_size,
                cancel_token=cancel_token,
            )

    def filter_table(
        self,
        credential: Credential,
        database: str,
        schema: str,
        table: str,
        where: str,
        sort_column: Optional[str] = None,
        direction: str = "asc",
        cursor: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TablePage:
        return self.read_table(
            credential, database, schema, table,
            sort_column=sort_column, direction=direction, cursor=cursor,
            where=where, cancel_token=cancel_token,
        )

    def sort_table(
        self,
        credential: Credential,
        database: str,
        schema: str,
        table: str,
        sort_column: str,
        direction: str = "asc",
        where: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TablePage:
        """First page under a new sort; any earlier cursor is discarded."""
        return self.read_table(
            credential, database, schema, table,
            sort_column=sort_column, direction=direction, where=where,
            cancel_token=cancel_token,
        )

    def read_table_page(
        self,
        credential: Credential,
        database: str,
        schema: str,
        table: str,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
        where: Optional[str] = None,
        order_by: Optional[str] = None,
        direction: str = "asc",
        cancel_token: Optional[CancellationToken] = None,
    ) -> TablePage:
        """One LIMIT/OFFSET page of ``table``."""
        meta = self._readable_table(credential.username, database, schema, table)
        guard_where(where)

        with self.broker.open(database, credential.username, credential.secret, cancel_token) as connector:
            return self.offset_pager.fetch_page(
                connector,
                meta,
                offset=offset,
                limit=limit,
                where=where,
                order_by=order_by,
                direction=direction,
                cancel_token=cancel_token,
            )

    def table_row_count(
        self,
        credential: Credential,
        database: str,
        schema: str,
        table: str,
        where: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> int:
        meta = self._readable_table(credential.username, database, schema, table)
        guard_where(where)

        with self.broker.open(database, credential.username, credential.secret, cancel_token) as connector:
            return count_rows(connector, meta, where, cancel_token=cancel_token)

    def get_erd(self, credential: Credential, database: str, schema: str) -> ERDData:
        return self.metadata_cache.get_erd(credential.username, database, schema)

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def navigate_to_parent(
        self,
        credential: Credential,
        database: str,
        schema: str,
        table: str,
        fk_column: str,
        value: Any,
        cancel_token: Optional[CancellationToken] = None,
    ) -> QueryResult:
        """Rows of the referenced table whose target column equals ``value``."""
        username = credential.username
        self._readable_table(username, database, schema, table)

        cluster = self.metadata_cache.get_cluster()
        source = TableRef(database, schema, table)
        edge = next((fk for fk in cluster.foreign_keys_from(source) if fk.source_column == fk_column), None)
        if edge is None:
            raise ValidationError(f"column '{fk_column}' of '{schema}.{table}' is not a foreign key")
        if edge.is_cross_database:
            raise ValidationError("cross-database references cannot be navigated")

        parent = self._readable_table(username, edge.target.database, edge.target.schema, edge.target.name)

        sql = (
            f"SELECT * FROM {qualified_table(parent.schema, parent.name)} "
            f"WHERE {quote_identifier(edge.target_column)} = :value"
        )
        with self.broker.open(parent.database, username, credential.secret, cancel_token) as connector:
            result = connector.execute_capped(sql, {"value": value}, max_rows=self.hard_limit, cancel_token=cancel_token)

        return QueryResult(
            columns=result.columns,
            rows=result.rows,
            total_size=result.total_rows,
            is_select=True,
            truncated=result.truncated,
        )

    def navigate_to_children(
        self,
        credential: Credential,
        database: str,
        schema: str,
        table: str,
        pk_column: str,
        value: Any,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[ChildTableCount]:
        """For every readable table whose FK targets this column, count the rows referencing ``value``."""
        username = credential.username
        self._readable_table(username, database, schema, table)

        cluster = self.metadata_cache.get_cluster()
        edges = [
            fk for fk in cluster.foreign_keys_to(TableRef(database, schema, table))
            if fk.target_column == pk_column
            and not fk.is_cross_database
            and self.metadata_cache.has_permission(
                username, fk.source.database, fk.source.schema, fk.source.name, Permission.SELECT
            )
        ]
        if not edges:
            return []

        counts = []
        with self.broker.open(database, username, credential.secret, cancel_token) as connector:
            for fk in edges:
                child = cluster.table_by_ref(fk.source)
                total = count_rows(connector, child, filters={fk.source_column: value}, cancel_token=cancel_token)
                counts.append(ChildTableCount(
                    database=fk.source.database,
                    schema_name=fk.source.schema,
                    table=fk.source.name,
                    fk_column=fk.source_column,
                    row_count=total,
                ))
        return counts

    def child_rows(
        self,
        credential: Credential,
        database: str,
        schema: str,
        table: str,
        fk_column: str,
        value: Any,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TablePage:
        """Rows of child ``table`` whose ``fk_column`` equals ``value``, offset-paged."""
        meta = self._readable_table(credential.username, database, schema, table)
        if not self.metadata_cache.get_cluster().is_foreign_key_column(meta.ref, fk_column):
            raise ValidationError(f"column '{fk_column}' of '{schema}.{table}' is not a foreign key")

        with self.broker.open(database, credential.username, credential.secret, cancel_token) as connector:
            return self.offset_pager.fetch_page(
                connector,
                meta,
                offset=offset,
                limit=limit,
                filters={fk_column: value},
                cancel_token=cancel_token,
            )

    # ------------------------------------------------------------------
    # Manual queries
    # ------------------------------------------------------------------

    def _check_statement(self, username: str, database: str, statement: str, kind: StatementKind) -> None:
        if kind == StatementKind.OTHER:
            raise UnsupportedStatement(f"statement type is not allowed: {statement[:50]}")

        if not self.metadata_cache.get_role_view(username).has_database(database):
            raise DatabaseAccessDenied(f"no access to database '{database}'")

        if kind == StatementKind.SELECT:
            for schema, table in extract_read_targets(statement):
                schema = schema or DEFAULT_SCHEMA
                if self.metadata_cache.get_cluster().table(database, schema, table) is None:
                    continue
                if not self.metadata_cache.has_permission(username, database, schema, table, Permission.SELECT):
                    raise TableAccessDenied(f"access denied to table '{schema}.{table}'")
            return

        if kind != StatementKind.DML_WRITE:
            return

        target = extract_write_target(statement)
        if target is None:
            return
        schema, table = target
        schema = schema or DEFAULT_SCHEMA
        if self.metadata_cache.get_cluster().table(database, schema, table) is None:
            return

        verb = statement.lstrip().split(None, 1)[0].lower()
        permission = _WRITE_PERMISSION.get(verb)
        if permission is not None and not self.metadata_cache.has_permission(
            username, database, schema, table, permission
        ):
            raise InsufficientPermissions(f"{permission.name} on '{schema}.{table}' is not granted")

    def execute_query(
        self,
        credential: Credential,
        database: str,
        sql: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[QueryResult]:
        """
        Run every statement of ``sql`` in order on one handle.

        All statements are classified and checked before any runs. SELECT
        results keep the first ``hard_limit`` rows and report the true total.
        Each statement is committed once it succeeds.
        """
        statements = split(sql)
        if not statements:
            raise ValidationError("query is empty")

        username = credential.username
        kinds = [classify(statement) for statement in statements]
        for statement, kind in zip(statements, kinds):
            self._check_statement(username, database, statement, kind)

        results = []
        with self.broker.open(database, username, credential.secret, cancel_token) as connector:
            for statement, kind in zip(statements, kinds):
                is_select = kind == StatementKind.SELECT
                try:
                    result = connector.execute_capped(
                        escape_bind_markers(statement),
                        max_rows=self.hard_limit,
                        cancel_token=cancel_token,
                        stream=is_streamable(statement),
                    )
                    connector.commit()
                except LumenError as e:
                    logger.info("query_failed", username=username, database=database,
                                query=statement[:200], error_code=e.code)
                    raise

                results.append(QueryResult(
                    columns=result.columns,
                    rows=result.rows,
                    total_size=result.total_rows if result.returns_rows else result.rowcount,
                    is_select=is_select,
                    affected_rows=0 if is_select else result.rowcount,
                    statement=statement,
                    kind=kind,
                    truncated=result.truncated,
                ))

        logger.info("query_executed", username=username, database=database, statements=len(results))
        return results
