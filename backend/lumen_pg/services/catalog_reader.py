"""
Catalog Reader Service
Reads cluster schema and role privileges through the superadmin connection.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Set, Tuple

import structlog

from lumen_pg.connections.broker import ConnectionBroker
from lumen_pg.connections.connection_string import ConnectionSpec
from lumen_pg.core.exceptions import DatabaseAccessDenied
from lumen_pg.models.metadata import (
    ClusterMetadata,
    ColumnMetadata,
    DatabaseMetadata,
    ForeignKey,
    Permission,
    SchemaMetadata,
    TableMetadata,
    TableRef,
)

logger = structlog.get_logger()

SYSTEM_SCHEMAS = ('information_schema', 'pg_catalog', 'pg_toast')

DATABASES_SQL = """
SELECT datname
FROM pg_database
WHERE datistemplate = false AND datallowconn
ORDER BY datname
"""

LOGIN_ROLES_SQL = """
SELECT rolname
FROM pg_roles
WHERE rolcanlogin AND rolname NOT LIKE 'pg\\_%'
ORDER BY rolname
"""

DATABASE_PRIVILEGES_SQL = """
SELECT r.rolname AS role_name, d.datname AS database_name
FROM pg_database d
CROSS JOIN pg_roles r
WHERE r.rolname = ANY(:roles)
  AND d.datistemplate = false
  AND d.datallowconn
  AND has_database_privilege(r.oid, d.oid, 'CONNECT')
ORDER BY r.rolname, d.datname
"""

SCHEMA_PRIVILEGES_SQL = """
SELECT r.rolname AS role_name, n.nspname AS schema_name
FROM pg_namespace n
CROSS JOIN pg_roles r
WHERE r.rolname = ANY(:roles)
  AND has_schema_privilege(r.oid, n.oid, 'USAGE')
"""

TABLE_PRIVILEGES_SQL = """
SELECT r.rolname AS role_name,
       n.nspname AS schema_name,
       c.relname AS table_name,
       has_table_privilege(r.oid, c.oid, 'SELECT') AS can_select,
       has_table_privilege(r.oid, c.oid, 'INSERT') AS can_insert,
       has_table_privilege(r.oid, c.oid, 'UPDATE') AS can_update,
       has_table_privilege(r.oid, c.oid, 'DELETE') AS can_delete
FROM pg_class c
JOIN pg_namespace n ON n.oid = c.relnamespace
CROSS JOIN pg_roles r
WHERE r.rolname = ANY(:roles)
  AND c.relkind IN ('r', 'p', 'v', 'm', 'f')
  AND n.nspname NOT IN ('information_schema', 'pg_catalog')
  AND n.nspname NOT LIKE 'pg\\_toast%'
  AND n.nspname NOT LIKE 'pg\\_temp%'
"""

_PRIVILEGE_COLUMNS = (
    ('can_select', Permission.SELECT),
    ('can_insert', Permission.INSERT),
    ('can_update', Permission.UPDATE),
    ('can_delete', Permission.DELETE),
)


def is_system_schema(name: str) -> bool:
    return name in SYSTEM_SCHEMAS or name.startswith('pg_temp') or name.startswith('pg_toast')


@dataclass
class RolePrivileges:
    """Raw catalog answers for one role, before they are folded into a RoleView."""
    role: str
    connectable: Set[str] = field(default_factory=set)
    usable_schemas: Set[Tuple[str, str]] = field(default_factory=set)
    table_privileges: Dict[TableRef, Permission] = field(default_factory=dict)


class CatalogReader:
    """
    Reads PostgreSQL's catalogs as the superadmin.

    Each database is inspected on its own connection, since schemas, tables
    and their privileges are only visible from inside the database.
    """

    def __init__(self, broker: ConnectionBroker, superadmin: ConnectionSpec):
        self.broker = broker
        self.superadmin = superadmin

    def list_databases(self) -> List[str]:
        with self.broker.open_spec(self.superadmin) as connector:
            result = connector.execute(DATABASES_SQL)
        return [row['datname'] for row in result.rows]

    def list_roles(self) -> List[str]:
        with self.broker.open_spec(self.superadmin) as connector:
            result = connector.execute(LOGIN_ROLES_SQL)
        return [row['rolname'] for row in result.rows]

    def read_database(self, database: str) -> Tuple[DatabaseMetadata, List[ForeignKey]]:
        """Inspect every user schema of ``database``; returns the schema tree and its FK edges."""
        db_meta = DatabaseMetadata(name=database)
        foreign_keys: List[ForeignKey] = []

        with self.broker.open_spec(self.superadmin.with_database(database)) as connector:
            inspector = connector.inspector()

            for schema in sorted(inspector.get_schema_names()):
                if is_system_schema(schema):
                    continue
                schema_meta = SchemaMetadata(name=schema)

                tables = [(name, "table") for name in inspector.get_table_names(schema=schema)]
                tables += [(name, "view") for name in inspector.get_view_names(schema=schema)]
                tables += [(name, "materialized_view") for name in inspector.get_materialized_view_names(schema=schema)]

                for table_name, table_type in sorted(tables):
                    pk_constraint = inspector.get_pk_constraint(table_name, schema=schema) if table_type == "table" else None
                    pk_columns = (pk_constraint or {}).get('constrained_columns') or []

                    columns = []
                    for col in inspector.get_columns(table_name, schema=schema):
                        columns.append(ColumnMetadata(
                            name=col['name'],
                            data_type=str(col['type']),
                            nullable=col.get('nullable', True),
                            default=str(col['default']) if col.get('default') is not None else None,
                            is_primary_key=col['name'] in pk_columns,
                        ))

                    schema_meta.tables[table_name] = TableMetadata(
                        database=database,
                        schema=schema,
                        name=table_name,
                        columns=columns,
                        table_type=table_type,
                    )

                    if table_type == "table":
                        foreign_keys.extend(self._foreign_keys(inspector, database, schema, table_name))

                db_meta.schemas[schema] = schema_meta

        return db_meta, foreign_keys

    @staticmethod
    def _foreign_keys(inspector, database: str, schema: str, table: str) -> List[ForeignKey]:
        edges = []
        source = TableRef(database, schema, table)
        for fk in inspector.get_foreign_keys(table, schema=schema):
            target = TableRef(database, fk.get('referred_schema') or schema, fk['referred_table'])
            # Composite keys become one edge per column pair.
            for source_column, target_column in zip(fk['constrained_columns'], fk['referred_columns']):
                edges.append(ForeignKey(
                    source=source,
                    source_column=source_column,
                    target=target,
                    target_column=target_column,
                    constraint_name=fk.get('name'),
                ))
        return edges

    def read_cluster(self) -> ClusterMetadata:
        """Enumerate databases, then schemas, tables, columns and foreign keys of each."""
        databases = []
        foreign_keys: List[ForeignKey] = []
        for name in self.list_databases():
            try:
                db_meta, edges = self.read_database(name)
            except DatabaseAccessDenied:
                # Dropped or locked between listing and inspection.
                logger.warning("metadata_database_skipped", database=name)
                continue
            databases.append(db_meta)
            foreign_keys.extend(edges)
        return ClusterMetadata(databases=databases, foreign_keys=foreign_keys)

    def read_privileges(self, roles: Sequence[str], databases: Sequence[str]) -> Dict[str, RolePrivileges]:
        """Collect CONNECT, USAGE and table privileges of ``roles`` across ``databases``."""
        roles = list(roles)
        privileges = {role: RolePrivileges(role=role) for role in roles}
        if not roles:
            return privileges

        with self.broker.open_spec(self.superadmin) as connector:
            result = connector.execute(DATABASE_PRIVILEGES_SQL, {"roles": roles})
        for row in result.rows:
            privileges[row['role_name']].connectable.add(row['database_name'])

        for database in databases:
            try:
                with self.broker.open_spec(self.superadmin.with_database(database)) as connector:
                    schema_rows = connector.execute(SCHEMA_PRIVILEGES_SQL, {"roles": roles}).rows
                    table_rows = connector.execute(TABLE_PRIVILEGES_SQL, {"roles": roles}).rows
            except DatabaseAccessDenied:
                logger.warning("metadata_privileges_skipped", database=database)
                continue

            for row in schema_rows:
                privileges[row['role_name']].usable_schemas.add((database, row['schema_name']))

            for row in table_rows:
                bits = Permission.NONE
                for column, permission in _PRIVILEGE_COLUMNS:
                    if row[column]:
                        bits |= permission
                if bits:
                    ref = TableRef(database, row['schema_name'], row['table_name'])
                    privileges[row['role_name']].table_privileges[ref] = bits

        return privileges
