"""
Cluster schema metadata and per-role accessibility views.

Tables and foreign-key edges live in ``ClusterMetadata`` and are referenced
everywhere else by ``TableRef`` tuples.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, NamedTuple, Optional, Set, Tuple
import enum


class Permission(enum.Flag):
    """Privilege bitset for one table as seen by one role."""
    NONE = 0
    CONNECT = enum.auto()
    USAGE = enum.auto()
    SELECT = enum.auto()
    INSERT = enum.auto()
    UPDATE = enum.auto()
    DELETE = enum.auto()

    @classmethod
    def from_name(cls, name: str) -> "Permission":
        try:
            return cls[name.upper()]
        except KeyError:
            raise ValueError(f"Unknown permission: {name}")

    def names(self) -> List[str]:
        return [p.name for p in TABLE_PERMISSION_ORDER if p in self]


TABLE_PERMISSION_ORDER = (
    Permission.CONNECT,
    Permission.USAGE,
    Permission.SELECT,
    Permission.INSERT,
    Permission.UPDATE,
    Permission.DELETE,
)
TABLE_PRIVILEGES = Permission.SELECT | Permission.INSERT | Permission.UPDATE | Permission.DELETE
WRITE_PRIVILEGES = Permission.INSERT | Permission.UPDATE | Permission.DELETE


class TableRef(NamedTuple):
    database: str
    schema: str
    name: str

    @property
    def qualified_name(self) -> str:
        return f"{self.database}.{self.schema}.{self.name}"


@dataclass(frozen=True)
class ColumnMetadata:
    name: str
    data_type: str
    nullable: bool = True
    default: Optional[str] = None
    is_primary_key: bool = False


@dataclass(frozen=True)
class ForeignKey:
    """One column-to-column foreign-key edge. Composite keys become several edges."""
    source: TableRef
    source_column: str
    target: TableRef
    target_column: str
    constraint_name: Optional[str] = None

    @property
    def is_cross_database(self) -> bool:
        return self.source.database != self.target.database


@dataclass
class TableMetadata:
    database: str
    schema: str
    name: str
    columns: List[ColumnMetadata] = field(default_factory=list)
    table_type: str = "table"

    @property
    def ref(self) -> TableRef:
        return TableRef(self.database, self.schema, self.name)

    @property
    def primary_keys(self) -> List[str]:
        return [c.name for c in self.columns if c.is_primary_key]

    def column(self, name: str) -> Optional[ColumnMetadata]:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def has_column(self, name: str) -> bool:
        return self.column(name) is not None


@dataclass
class SchemaMetadata:
    name: str
    tables: Dict[str, TableMetadata] = field(default_factory=dict)


@dataclass
class DatabaseMetadata:
    name: str
    schemas: Dict[str, SchemaMetadata] = field(default_factory=dict)


@dataclass
class ClusterMetadata:
    """Ordered snapshot of every database, schema, table, column and FK edge."""
    databases: List[DatabaseMetadata] = field(default_factory=list)
    foreign_keys: List[ForeignKey] = field(default_factory=list)

    def __post_init__(self):
        self._databases = {db.name: db for db in self.databases}
        self._fks_from: Dict[TableRef, List[ForeignKey]] = {}
        self._fks_to: Dict[TableRef, List[ForeignKey]] = {}
        for fk in self.foreign_keys:
            self._fks_from.setdefault(fk.source, []).append(fk)
            self._fks_to.setdefault(fk.target, []).append(fk)

    def database(self, name: str) -> Optional[DatabaseMetadata]:
        return self._databases.get(name)

    def schema(self, database: str, schema: str) -> Optional[SchemaMetadata]:
        db = self.database(database)
        if db is None:
            return None
        return db.schemas.get(schema)

    def table(self, database: str, schema: str, name: str) -> Optional[TableMetadata]:
        sch = self.schema(database, schema)
        if sch is None:
            return None
        return sch.tables.get(name)

    def table_by_ref(self, ref: TableRef) -> Optional[TableMetadata]:
        return self.table(ref.database, ref.schema, ref.name)

    def iter_tables(self) -> Iterator[TableMetadata]:
        for db in self.databases:
            for sch in db.schemas.values():
                yield from sch.tables.values()

    def foreign_keys_from(self, ref: TableRef) -> List[ForeignKey]:
        return list(self._fks_from.get(ref, []))

    def foreign_keys_to(self, ref: TableRef) -> List[ForeignKey]:
        return list(self._fks_to.get(ref, []))

    def is_foreign_key_column(self, ref: TableRef, column: str) -> bool:
        return any(fk.source_column == column for fk in self._fks_from.get(ref, []))

    def dangling_foreign_keys(self) -> List[ForeignKey]:
        """Edges whose source or target column does not resolve to a known column."""
        dangling = []
        for fk in self.foreign_keys:
            source = self.table_by_ref(fk.source)
            target = self.table_by_ref(fk.target)
            if source is None or target is None:
                dangling.append(fk)
            elif not source.has_column(fk.source_column) or not target.has_column(fk.target_column):
                dangling.append(fk)
        return dangling

    def counts(self) -> Tuple[int, int, int]:
        """Return (databases, schemas, tables)."""
        schemas = sum(len(db.schemas) for db in self.databases)
        tables = sum(1 for _ in self.iter_tables())
        return len(self.databases), schemas, tables


@dataclass
class RoleView:
    """
    What one role can reach.

    A table appears only if its schema has USAGE and its database has
    CONNECT; the permission bitset of every listed table therefore always
    contains CONNECT and USAGE.
    """
    role: str
    databases: List[str] = field(default_factory=list)
    schemas: Dict[str, List[str]] = field(default_factory=dict)
    tables: Dict[Tuple[str, str], List[str]] = field(default_factory=dict)
    permissions: Dict[TableRef, Permission] = field(default_factory=dict)

    @classmethod
    def from_privileges(
        cls,
        role: str,
        cluster: ClusterMetadata,
        connectable: Iterable[str],
        usable_schemas: Iterable[Tuple[str, str]],
        table_privileges: Dict[TableRef, Permission],
    ) -> "RoleView":
        """Build a view in cluster order from raw catalog answers."""
        connect: Set[str] = set(connectable)
        usage: Set[Tuple[str, str]] = set(usable_schemas)
        view = cls(role=role)

        for db in cluster.databases:
            if db.name not in connect:
                continue
            view.databases.append(db.name)
            view.schemas[db.name] = []
            for sch in db.schemas.values():
                if (db.name, sch.name) not in usage:
                    continue
                view.schemas[db.name].append(sch.name)
                reachable = []
                for table in sch.tables.values():
                    privileges = table_privileges.get(table.ref, Permission.NONE) & TABLE_PRIVILEGES
                    if not privileges:
                        continue
                    reachable.append(table.name)
                    view.permissions[table.ref] = Permission.CONNECT | Permission.USAGE | privileges
                view.tables[(db.name, sch.name)] = reachable
        return view

    def permission_for(self, database: str, schema: str, table: str) -> Permission:
        return self.permissions.get(TableRef(database, schema, table), Permission.NONE)

    def can_access_table(self, database: str, schema: str, table: str) -> bool:
        return bool(self.permission_for(database, schema, table) & TABLE_PRIVILEGES)

    def has_database(self, database: str) -> bool:
        return database in self.databases

    def has_schema(self, database: str, schema: str) -> bool:
        return schema in self.schemas.get(database, [])
