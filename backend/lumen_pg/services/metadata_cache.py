"""
Metadata Cache Service
Process-wide snapshot of cluster schema plus one RoleView per role.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import threading
import time

import structlog

from lumen_pg.core.clock import Clock, system_clock
from lumen_pg.core.exceptions import (
    DatabaseNotFound,
    InternalError,
    SchemaNotFound,
    TableNotFound,
)
from lumen_pg.models.metadata import (
    ClusterMetadata,
    Permission,
    RoleView,
    TableMetadata,
    TableRef,
    WRITE_PRIVILEGES,
)
from lumen_pg.schemas.results import (
    ERDColumn,
    ERDData,
    ERDEdge,
    ERDTable,
    MetadataRefreshResult,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class MetadataSnapshot:
    """One complete, never-mutated generation of the cache."""
    cluster: ClusterMetadata = field(default_factory=ClusterMetadata)
    roles: Dict[str, RoleView] = field(default_factory=dict)
    loaded_at: Optional[float] = None


class MetadataCache:
    """
    RBAC-aware metadata cache.

    Readers take the current snapshot reference and answer from it; they
    never block. Refreshes read the catalogs first, build a whole new
    snapshot, then swap the reference. Refreshes are serialized by
    ``_refresh_lock``.
    """

    def __init__(self, reader=None, clock: Clock = system_clock):
        """
        Args:
            reader: Catalog source with ``read_cluster``, ``list_roles`` and
                ``read_privileges`` (normally a ``CatalogReader``)
            clock: Clock used to stamp snapshots
        """
        self.reader = reader
        self.clock = clock
        self._snapshot = MetadataSnapshot()
        self._refresh_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        return self._snapshot.loaded_at is not None

    def load_all(self, reader=None) -> MetadataRefreshResult:
        """Enumerate the whole cluster and every login role, then replace the snapshot."""
        if reader is not None:
            self.reader = reader
        if self.reader is None:
            raise InternalError("metadata cache has no catalog reader")

        start_time = time.time()
        with self._refresh_lock:
            cluster = self.reader.read_cluster()

            dangling = cluster.dangling_foreign_keys()
            if dangling:
                for fk in dangling:
                    logger.warning(
                        "metadata_dangling_foreign_key",
                        source=fk.source.qualified_name,
                        source_column=fk.source_column,
                        target=fk.target.qualified_name,
                        target_column=fk.target_column,
                    )
                cluster = ClusterMetadata(
                    databases=cluster.databases,
                    foreign_keys=[fk for fk in cluster.foreign_keys if fk not in dangling],
                )

            roles = self.reader.list_roles()
            views = self._build_views(cluster, roles)

            self._snapshot = MetadataSnapshot(cluster=cluster, roles=views, loaded_at=self.clock.now_unix())

        database_count, schema_count, table_count = cluster.counts()
        result = MetadataRefreshResult(
            database_count=database_count,
            schema_count=schema_count,
            table_count=table_count,
            role_count=len(views),
            refresh_time_ms=int((time.time() - start_time) * 1000),
        )
        logger.info("metadata_loaded", **result.model_dump())
        return result

    def refresh_all(self) -> MetadataRefreshResult:
        return self.load_all()

    def refresh_role(self, role: str) -> RoleView:
        """Recompute one role's view against the current cluster snapshot."""
        if self.reader is None:
            raise InternalError("metadata cache has no catalog reader")

        with self._refresh_lock:
            current = self._snapshot
            view = self._build_views(current.cluster, [role])[role]
            roles = dict(current.roles)
            roles[role] = view
            self._snapshot = MetadataSnapshot(cluster=current.cluster, roles=roles, loaded_at=current.loaded_at)

        logger.info("metadata_role_refreshed", role=role, databases=len(view.databases))
        return view

    def _build_views(self, cluster: ClusterMetadata, roles: List[str]) -> Dict[str, RoleView]:
        database_names = [db.name for db in cluster.databases]
        privileges = self.reader.read_privileges(roles, database_names)
        views = {}
        for role in roles:
            raw = privileges.get(role)
            if raw is None:
                views[role] = RoleView(role=role)
                continue
            views[role] = RoleView.from_privileges(
                role,
                cluster,
                connectable=raw.connectable,
                usable_schemas=raw.usable_schemas,
                table_privileges=raw.table_privileges,
            )
        return views

    # ------------------------------------------------------------------
    # Cluster lookups
    # ------------------------------------------------------------------

    def get_cluster(self) -> ClusterMetadata:
        return self._snapshot.cluster

    def get_table(self, database: str, schema: str, table: str) -> TableMetadata:
        """
        Raises:
            DatabaseNotFound, SchemaNotFound, TableNotFound
        """
        cluster = self._snapshot.cluster
        if cluster.database(database) is None:
            raise DatabaseNotFound(f"database '{database}' not found")
        if cluster.schema(database, schema) is None:
            raise SchemaNotFound(f"schema '{database}.{schema}' not found")
        meta = cluster.table(database, schema, table)
        if meta is None:
            raise TableNotFound(f"table '{database}.{schema}.{table}' not found")
        return meta

    # ------------------------------------------------------------------
    # Role lookups
    # ------------------------------------------------------------------

    def roles(self) -> List[str]:
        return sorted(self._snapshot.roles)

    def has_role(self, role: str) -> bool:
        return role in self._snapshot.roles

    def get_role_view(self, role: str) -> RoleView:
        """The cached view of ``role``; an unknown role sees nothing."""
        return self._snapshot.roles.get(role) or RoleView(role=role)

    def can_access_table(self, role: str, database: str, schema: str, table: str) -> bool:
        return self.get_role_view(role).can_access_table(database, schema, table)

    def has_permission(self, role: str, database: str, schema: str, table: str, perm: Permission) -> bool:
        granted = self.get_role_view(role).permission_for(database, schema, table)
        return bool(perm) and (granted & perm) == perm

    def accessible_databases(self, role: str) -> List[str]:
        return list(self.get_role_view(role).databases)

    def accessible_schemas(self, role: str, database: str) -> List[str]:
        return list(self.get_role_view(role).schemas.get(database, []))

    def accessible_tables(self, role: str, database: str, schema: str) -> List[Tuple[str, Permission]]:
        view = self.get_role_view(role)
        return [
            (name, view.permission_for(database, schema, name))
            for name in view.tables.get((database, schema), [])
        ]

    def first_accessible_database(self, role: str) -> Optional[str]:
        databases = self.accessible_databases(role)
        return databases[0] if databases else None

    def first_accessible_schema(self, role: str, database: str) -> Optional[str]:
        """First schema of ``database`` that holds a reachable table, else the first usable schema."""
        view = self.get_role_view(role)
        schemas = view.schemas.get(database, [])
        for schema in schemas:
            if view.tables.get((database, schema)):
                return schema
        return schemas[0] if schemas else None

    def first_accessible_table(self, role: str, database: str, schema: str) -> Optional[str]:
        tables = self.get_role_view(role).tables.get((database, schema), [])
        return tables[0] if tables else None

    def is_table_read_only(self, role: str, database: str, schema: str, table: str) -> bool:
        """True when the role may read the table but holds none of INSERT, UPDATE or DELETE."""
        granted = self.get_role_view(role).permission_for(database, schema, table)
        return Permission.SELECT in granted and not (granted & WRITE_PRIVILEGES)

    # ------------------------------------------------------------------
    # ERD
    # ------------------------------------------------------------------

    def get_erd(self, role: str, database: str, schema: str) -> ERDData:
        """Tables of one schema reachable by ``role`` and the FK edges between them."""
        snapshot = self._snapshot
        view = snapshot.roles.get(role) or RoleView(role=role)
        cluster = snapshot.cluster

        names = view.tables.get((database, schema), [])
        listed = {TableRef(database, schema, name) for name in names}

        tables = []
        edges = []
        for name in names:
            meta = cluster.table(database, schema, name)
            if meta is None:
                continue
            tables.append(ERDTable(
                name=name,
                columns=[
                    ERDColumn(
                        name=col.name,
                        type=col.data_type,
                        is_pk=col.is_primary_key,
                        is_fk=cluster.is_foreign_key_column(meta.ref, col.name),
                    )
                    for col in meta.columns
                ],
            ))
            for fk in cluster.foreign_keys_from(meta.ref):
                if fk.target in listed:
                    edges.append(ERDEdge(
                        from_table=fk.source.name,
                        from_col=fk.source_column,
                        to_table=fk.target.name,
                        to_col=fk.target_column,
                    ))

        return ERDData(tables=tables, edges=edges)
