"""
Unit tests for cursor and offset pagination
"""
import pytest

from lumen_pg.core.crypto import Crypto
from lumen_pg.core.exceptions import ColumnNotFound, CryptoError, SqlInjectionDetected, ValidationError
from lumen_pg.models.cursor import Cursor
from lumen_pg.services.pager import CursorCodec, OffsetPager, build_where, quote_identifier

from fakes import rows_result

ORDER_ROWS = [
    {"id": i, "customer_id": i % 7, "total": i * 10, "created_at": None}
    for i in range(1, 1501)
]


def orders_handler(sql, params):
    """Answer COUNT and keyset SELECTs over ORDER_ROWS sorted by id."""
    if sql.startswith("SELECT COUNT(*)"):
        return rows_result([{"total": len(ORDER_ROWS)}])
    rows = ORDER_ROWS
    if "last_value" in params:
        rows = [r for r in rows if r["id"] > params["last_value"]]
    offset = params.get("page_offset", 0)
    return rows_result(rows[offset:offset + params["page_limit"]])


# Every fourth total is NULL; the rest repeat so the tiebreak matters.
NULLABLE_ROWS = [
    {"id": i, "customer_id": 1, "total": None if i % 4 == 0 else (i % 10) * 5, "created_at": None}
    for i in range(1, 121)
]


def nullable_totals_handler(sql, params):
    """Answer keyset SELECTs over NULLABLE_ROWS sorted by (total, id) with NULLs last."""
    if sql.startswith("SELECT COUNT(*)"):
        return rows_result([{"total": len(NULLABLE_ROWS)}])
    desc = '"total" DESC' in sql

    def key(row):
        return row["total"], row["id"]

    present = sorted((r for r in NULLABLE_ROWS if r["total"] is not None), key=key, reverse=desc)
    nulls = sorted((r for r in NULLABLE_ROWS if r["total"] is None), key=lambda r: r["id"], reverse=desc)
    if '"total" IS NULL AND' in sql:
        present = []
        last_id = params["last_id"]
        nulls = [r for r in nulls if (r["id"] < last_id if desc else r["id"] > last_id)]
    elif "last_value" in params:
        bound = (params["last_value"], params["last_id"])
        present = [r for r in present if (key(r) < bound if desc else key(r) > bound)]
    return rows_result((present + nulls)[:params["page_limit"]])


@pytest.fixture
def orders(metadata_cache):
    return metadata_cache.get_table("appdb", "public", "orders")


@pytest.fixture
def connector(server, broker):
    server.on('"public"."orders"', orders_handler)
    with broker.open("appdb", "alice", "alice-pw") as connector:
        yield connector


class TestCursorPager:
    """Keyset pagination"""

    def test_pages_stop_at_hard_limit(self, cursor_pager, connector, orders, server):
        token = None
        seen = []
        for _ in range(20):
            page = cursor_pager.fetch_page(connector, orders, cursor_token=token)
            assert len(page.rows) == 50
            assert page.total_size == 1500
            assert page.total_loaded == len(seen) + len(page.rows)
            seen.extend(row["id"] for row in page.rows)
            token = page.next_cursor

        assert seen == list(range(1, 1001))
        assert page.total_loaded == 1000
        assert page.has_more is False
        assert page.next_cursor is None

    def test_pages_do_not_overlap(self, cursor_pager, connector, orders):
        first = cursor_pager.fetch_page(connector, orders)
        second = cursor_pager.fetch_page(connector, orders, cursor_token=first.next_cursor)
        assert first.rows[-1]["id"] == 50
        assert second.rows[0]["id"] == 51
        assert second.total_loaded == 100

    def test_capped_token_runs_no_select(self, cursor_pager, connector, orders, server):
        token = cursor_pager.codec.encode(Cursor(last_value=1000, total_loaded=1000), "id", "asc")
        page = cursor_pager.fetch_page(connector, orders, cursor_token=token)
        assert page.rows == []
        assert page.has_more is False
        assert server.statements("SELECT * FROM") == []

    def test_short_table_has_no_next_page(self, cursor_pager, server, broker, orders):
        server.on('"public"."orders"', lambda sql, params: (
            rows_result([{"total": 3}]) if "COUNT" in sql else rows_result(ORDER_ROWS[:3])
        ))
        with broker.open("appdb", "alice", "alice-pw") as connector:
            page = cursor_pager.fetch_page(connector, orders)
        assert len(page.rows) == 3
        assert page.has_more is False
        assert page.next_cursor is None

    def test_query_fetches_one_extra_row(self, cursor_pager, orders):
        sql, params = cursor_pager.build_query(orders, cursor_pager.start_cursor(), "id", None, "asc")
        assert params["page_limit"] == 51
        assert sql == 'SELECT * FROM "public"."orders" ORDER BY "id" ASC NULLS LAST LIMIT :page_limit'

    def test_keyset_with_tiebreak(self, cursor_pager, orders):
        cursor = Cursor(last_value=300, last_id=30, total_loaded=50)
        sql, params = cursor_pager.build_query(orders, cursor, "total", "id", "desc")
        assert '(("total", "id") < (:last_value, :last_id) OR "total" IS NULL)' in sql
        assert sql.endswith('ORDER BY "total" DESC NULLS LAST, "id" DESC LIMIT :page_limit')
        assert params["last_value"] == 300
        assert params["last_id"] == 30

    def test_keyset_after_null_sort_value(self, cursor_pager, orders):
        cursor = Cursor(last_value=None, last_id=7, total_loaded=50)
        sql, params = cursor_pager.build_query(orders, cursor, "total", "id", "desc")
        assert '("total" IS NULL AND "id" < :last_id)' in sql
        assert "last_value" not in params
        assert params["last_id"] == 7

        sql, _ = cursor_pager.build_query(orders, cursor, "total", "id", "asc")
        assert '("total" IS NULL AND "id" > :last_id)' in sql
        assert 'ORDER BY "total" ASC NULLS LAST, "id" ASC' in sql

    @pytest.mark.parametrize("direction", ["asc", "desc"])
    def test_walk_reaches_every_row_of_nullable_column(self, cursor_pager, server, broker, orders, direction):
        server.on('"public"."orders"', nullable_totals_handler)
        token = None
        seen = []
        with broker.open("appdb", "alice", "alice-pw") as connector:
            while True:
                page = cursor_pager.fetch_page(
                    connector, orders, sort_column="total", direction=direction, cursor_token=token
                )
                seen.extend(row["id"] for row in page.rows)
                token = page.next_cursor
                if not page.has_more:
                    break

        assert sorted(seen) == [r["id"] for r in NULLABLE_ROWS]
        assert len(seen) == len(set(seen))
        assert all(r["total"] is None for r in NULLABLE_ROWS if r["id"] in seen[-30:])

    def test_null_run_without_tiebreak_ends_paging(self, cursor_pager, server, broker, metadata_cache):
        audit_log = metadata_cache.get_table("appdb", "public", "audit_log")
        server.on('"public"."audit_log"', lambda sql, params: (
            rows_result([{"total": 80}]) if "COUNT" in sql
            else rows_result([{"ts": None, "message": str(i)} for i in range(params["page_limit"])])
        ))
        with broker.open("appdb", "alice", "alice-pw") as connector:
            page = cursor_pager.fetch_page(connector, audit_log)
        assert len(page.rows) == 50
        assert page.has_more is False
        assert page.next_cursor is None

    def test_page_size_out_of_range(self, cursor_pager, connector, orders):
        with pytest.raises(ValidationError):
            cursor_pager.fetch_page(connector, orders, page_size=100)
        with pytest.raises(ValidationError):
            cursor_pager.start_cursor(0)

    def test_last_page_limited_by_hard_limit(self, cursor_pager, orders):
        cursor = Cursor(last_value=980, total_loaded=980)
        _, params = cursor_pager.build_query(orders, cursor, "id", None, "asc")
        assert params["page_limit"] == 21

    def test_resolve_sort(self, cursor_pager, orders, metadata_cache):
        assert cursor_pager.resolve_sort(orders, None) == ("id", None)
        assert cursor_pager.resolve_sort(orders, "total") == ("total", "id")
        audit_log = metadata_cache.get_table("appdb", "public", "audit_log")
        assert cursor_pager.resolve_sort(audit_log, None) == ("ts", None)
        with pytest.raises(ColumnNotFound):
            cursor_pager.resolve_sort(orders, "nope")

    def test_bad_direction(self, cursor_pager, connector, orders):
        with pytest.raises(ValidationError):
            cursor_pager.fetch_page(connector, orders, direction="sideways")


class TestCursor:
    """Cursor state"""

    @pytest.mark.parametrize("page_size", [0, 51, 100])
    def test_page_size_bounds(self, page_size):
        with pytest.raises(ValidationError):
            Cursor(page_size=page_size)

    def test_total_loaded_bounds(self):
        with pytest.raises(ValidationError):
            Cursor(total_loaded=-1)
        with pytest.raises(ValidationError):
            Cursor(total_loaded=1001)

    def test_advance_stops_at_hard_limit(self):
        cursor = Cursor(total_loaded=990)
        assert cursor.next_page_limit() == 10
        advanced = cursor.advance(last_value=1, last_id=1, loaded=50)
        assert advanced.total_loaded == 1000
        assert advanced.has_reached_limit()
        assert not advanced.can_load_more()
        assert advanced.next_page_limit() == 0

    def test_total_loaded_never_decreases(self):
        cursor = Cursor(page_size=37)
        totals = []
        for value in range(40):
            cursor = cursor.advance(last_value=value, last_id=value, loaded=cursor.next_page_limit())
            totals.append(cursor.total_loaded)
        assert totals == sorted(totals)
        assert totals[-1] == 1000

    def test_negative_page_rejected(self):
        with pytest.raises(ValidationError):
            Cursor().advance(last_value=1, last_id=1, loaded=-1)


class TestCursorCodec:

    def test_decode_inverts_encode(self, crypto):
        codec = CursorCodec(crypto)
        cursor = Cursor(last_value="2024-01-01", last_id=7, page_size=25, total_loaded=75)
        assert codec.decode(codec.encode(cursor, "created_at", "asc")) == cursor

    def test_other_key_rejected(self, crypto):
        token = CursorCodec(crypto).encode(Cursor(last_value=1, total_loaded=50), "id", "asc")
        with pytest.raises(CryptoError):
            CursorCodec(Crypto(b"y" * 32)).decode(token)

    def test_forged_payload_rejected(self, crypto):
        codec = CursorCodec(crypto)
        token = codec.encode(Cursor(last_value=1, total_loaded=50), "id", "asc")
        _, signature = token.split(".", 1)
        forged = codec._b64encode(b'{"n":0,"s":"id","d":"asc","v":null}')
        with pytest.raises(CryptoError):
            codec.decode(f"{forged}.{signature}")

    @pytest.mark.parametrize("token", ["garbage", "a.b.c", "!!!.???"])
    def test_malformed_rejected(self, crypto, token):
        with pytest.raises(CryptoError):
            CursorCodec(crypto).decode(token)

    def test_bound_to_sort(self, crypto):
        codec = CursorCodec(crypto)
        token = codec.encode(Cursor(last_value=1, total_loaded=50), "id", "asc")
        with pytest.raises(ValidationError):
            codec.decode(token, sort_column="total")
        with pytest.raises(ValidationError):
            codec.decode(token, sort_column="id", direction="desc")


class TestOffsetPager:
    """LIMIT/OFFSET pagination"""

    @pytest.mark.parametrize("offset,limit,expected", [
        (0, 50, (0, 50)),
        (990, 50, (990, 10)),
        (1000, 50, (1000, 0)),
        (1200, 50, (1200, 0)),
        (-5, 0, (0, 1)),
        (0, 5000, (0, 1000)),
        (None, None, (0, 1)),
    ])
    def test_clamp(self, offset, limit, expected):
        assert OffsetPager(hard_limit=1000).clamp(offset, limit) == expected

    def test_page(self, offset_pager, connector, orders, server):
        page = offset_pager.fetch_page(connector, orders, offset=100, limit=25)
        assert [r["id"] for r in page.rows] == list(range(101, 126))
        assert page.has_more
        assert page.total_loaded == 125
        sql = server.statements("SELECT * FROM")[-1]
        assert sql.endswith('ORDER BY "id" ASC LIMIT :page_limit OFFSET :page_offset')

    def test_past_hard_limit_runs_no_select(self, offset_pager, connector, orders, server):
        page = offset_pager.fetch_page(connector, orders, offset=1000, limit=50)
        assert page.rows == []
        assert page.has_more is False
        assert page.total_size == 1500
        assert server.statements("SELECT * FROM") == []

    def test_last_reachable_page(self, offset_pager, connector, orders):
        page = offset_pager.fetch_page(connector, orders, offset=980, limit=50)
        assert len(page.rows) == 20
        assert page.limit == 20
        assert page.has_more is False

    def test_unknown_order_column(self, offset_pager, connector, orders):
        with pytest.raises(ColumnNotFound):
            offset_pager.fetch_page(connector, orders, order_by="nope")


class TestBuildWhere:

    def test_empty(self):
        assert build_where() == ("", {})

    def test_combines_fragment_filters_and_extra(self):
        clause, params = build_where("total > 10", {"customer_id": 3}, extra='"id" > :last_value')
        assert clause == ' WHERE (total > 10) AND "customer_id" = :f_0 AND "id" > :last_value'
        assert params == {"f_0": 3}

    def test_fragment_colons_escaped(self):
        clause, _ = build_where("created_at::date = '2024-01-01'")
        assert clause == " WHERE (created_at\\:\\:date = '2024-01-01')"

    def test_guarded(self):
        with pytest.raises(SqlInjectionDetected):
            build_where("1=1; DROP TABLE orders")


def test_quote_identifier():
    assert quote_identifier('we"ird') == '"we""ird"'
