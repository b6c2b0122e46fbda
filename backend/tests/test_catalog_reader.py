"""
Unit tests for the catalog reader
"""
import pytest

from lumen_pg.connections.connection_string import ConnectionSpec
from lumen_pg.models.metadata import Permission, TableRef
from lumen_pg.services.catalog_reader import CatalogReader, is_system_schema

from fakes import rows_result


class FakeInspector:
    """Answers the SQLAlchemy inspector calls made by ``read_database``."""

    def __init__(self):
        self.schemas = {
            "public": {
                "tables": {
                    "customers": {
                        "columns": [("id", "INTEGER", False), ("name", "VARCHAR(100)", True)],
                        "pk": ["id"],
                        "fks": [],
                    },
                    "order_items": {
                        "columns": [("order_id", "INTEGER", False), ("line", "INTEGER", False)],
                        "pk": ["order_id", "line"],
                        "fks": [],
                    },
                    "shipments": {
                        "columns": [("id", "INTEGER", False), ("order_id", "INTEGER", True),
                                    ("line", "INTEGER", True)],
                        "pk": ["id"],
                        "fks": [{
                            "name": "shipments_item_fkey",
                            "constrained_columns": ["order_id", "line"],
                            "referred_schema": None,
                            "referred_table": "order_items",
                            "referred_columns": ["order_id", "line"],
                        }],
                    },
                },
                "views": {"customer_names": [("name", "VARCHAR(100)", True)]},
            },
            "pg_toast": {"tables": {"pg_toast_1": {"columns": [], "pk": [], "fks": []}}, "views": {}},
            "information_schema": {"tables": {}, "views": {}},
        }

    def get_schema_names(self):
        return list(self.schemas)

    def get_table_names(self, schema=None):
        return list(self.schemas[schema]["tables"])

    def get_view_names(self, schema=None):
        return list(self.schemas[schema]["views"])

    def get_materialized_view_names(self, schema=None):
        return []

    def get_pk_constraint(self, table, schema=None):
        return {"constrained_columns": self.schemas[schema]["tables"][table]["pk"]}

    def get_columns(self, table, schema=None):
        sch = self.schemas[schema]
        raw = sch["tables"][table]["columns"] if table in sch["tables"] else sch["views"][table]
        return [{"name": n, "type": t, "nullable": nullable, "default": None} for n, t, nullable in raw]

    def get_foreign_keys(self, table, schema=None):
        return self.schemas[schema]["tables"][table]["fks"]


@pytest.fixture
def superadmin():
    return ConnectionSpec(user="postgres", password="admin-pw", host="db.internal", database="postgres")


@pytest.fixture
def reader(server, broker, superadmin):
    server.add_role("postgres", "admin-pw", {"postgres", "appdb"})
    server.inspectors["appdb"] = FakeInspector()
    return CatalogReader(broker, superadmin)


def test_system_schemas():
    assert is_system_schema("pg_catalog")
    assert is_system_schema("pg_temp_3")
    assert not is_system_schema("public")


class TestReadCluster:

    def test_lists_databases_and_roles(self, reader, server):
        server.on("SELECT datname", rows_result([{"datname": "appdb"}, {"datname": "postgres"}]))
        server.on("SELECT rolname", rows_result([{"rolname": "alice"}, {"rolname": "bob"}]))
        assert reader.list_databases() == ["appdb", "postgres"]
        assert reader.list_roles() == ["alice", "bob"]
        assert {role for role, _, _, _ in server.executed} == {"postgres"}

    def test_read_database(self, reader):
        db_meta, edges = reader.read_database("appdb")
        assert list(db_meta.schemas) == ["public"]
        public = db_meta.schemas["public"]
        assert sorted(public.tables) == ["customer_names", "customers", "order_items", "shipments"]
        assert public.tables["customer_names"].table_type == "view"
        assert public.tables["order_items"].primary_keys == ["order_id", "line"]
        assert public.tables["customers"].column("name").nullable

    def test_composite_foreign_key_becomes_one_edge_per_column(self, reader):
        _, edges = reader.read_database("appdb")
        pairs = [(e.source_column, e.target.name, e.target_column) for e in edges]
        assert pairs == [("order_id", "order_items", "order_id"), ("line", "order_items", "line")]
        assert all(e.target.schema == "public" for e in edges)

    def test_skips_databases_it_cannot_open(self, reader, server):
        server.on("SELECT datname", rows_result([{"datname": "appdb"}, {"datname": "locked"}]))
        cluster = reader.read_cluster()
        assert [db.name for db in cluster.databases] == ["appdb"]
        assert len(cluster.foreign_keys) == 2


class TestReadPrivileges:
    """Privilege catalog reads"""

    def test_folds_catalog_rows(self, reader, server):
        server.on("has_database_privilege", rows_result([
            {"role_name": "alice", "database_name": "appdb"},
        ]))
        server.on("has_schema_privilege", rows_result([
            {"role_name": "alice", "schema_name": "public"},
            {"role_name": "bob", "schema_name": "public"},
        ]))
        server.on("has_table_privilege", rows_result([
            {"role_name": "alice", "schema_name": "public", "table_name": "customers",
             "can_select": True, "can_insert": False, "can_update": True, "can_delete": False},
            {"role_name": "bob", "schema_name": "public", "table_name": "customers",
             "can_select": False, "can_insert": False, "can_update": False, "can_delete": False},
        ]))

        privileges = reader.read_privileges(["alice", "bob"], ["appdb", "locked"])

        alice = privileges["alice"]
        assert alice.connectable == {"appdb"}
        assert alice.usable_schemas == {("appdb", "public")}
        assert alice.table_privileges == {
            TableRef("appdb", "public", "customers"): Permission.SELECT | Permission.UPDATE,
        }
        assert privileges["bob"].connectable == set()
        assert privileges["bob"].table_privileges == {}

        params = [p for _, _, sql, p in server.executed if "has_table_privilege" in sql]
        assert params == [{"roles": ["alice", "bob"]}]

    def test_no_roles_reads_nothing(self, reader, server):
        assert reader.read_privileges([], ["appdb"]) == {}
        assert server.connections_opened == 0
