import pytest
import pytz

from database import get_db_connection, init_db
from services.audit import compare_orders, compare_stores, order_day, orders_between
from services.identifiers import to_canonical_id
from services.source import MemorySource
from services.target import SqliteTargetStore

SEOUL = pytz.timezone("Asia/Seoul")


def order(order_id, total, *, status="completed", order_date="2026-02-01T03:00:00Z", **extra):
    record = {"id": order_id, "status": status, "order_date": order_date, "summary": {"total": total}}
    record.update(extra)
    return record


def test_identical_sets_are_consistent():
    orders = [order("a", 1000), order("b", 2000)]
    report = compare_orders(orders, [dict(o) for o in orders], SEOUL, "2026-02-01", "2026-02-01")
    assert report.consistent
    assert report.count_delta == 0
    assert report.source.revenue == 3000


def test_missing_records_are_listed_both_ways():
    source = [order("a", 1000), order("b", 2000)]
    target = [order("b", 2000), order("c", 500)]
    report = compare_orders(source, target, SEOUL, "2026-02-01", "2026-02-28")
    assert report.only_in_source == ["a"]
    assert report.only_in_target == ["c"]
    assert report.count_delta == 0
    assert report.revenue_delta == -500
    assert not report.consistent


def test_status_mismatch_ignores_case_and_whitespace():
    source = [order("a", 1000, status="Completed "), order("b", 1000, status="pending")]
    target = [order("a", 1000, status="completed"), order("b", 1000, status="completed")]
    report = compare_orders(source, target, SEOUL, "2026-02-01", "2026-02-01")
    assert report.mismatch_count == 1
    assert report.status_mismatches[0]["id"] == "b"
    assert report.status_mismatches[0]["source_status"] == "pending"


def test_canceled_orders_count_but_add_no_revenue():
    orders = [order("a", 1000), order("b", 9000, status="취소"), order("c", 500, status="pending")]
    report = compare_orders(orders, orders, SEOUL, "2026-02-01", "2026-02-01")
    assert report.source.order_count == 3
    assert report.source.canceled == 1
    assert report.source.pending == 1
    assert report.source.revenue == 1500


def test_unpaid_orders_are_counted_unless_canceled():
    orders = [
        order("a", 1000, payment={"status": "paid"}),
        order("b", 1000, payment={"status": "입금대기"}),
        order("c", 1000, status="취소", payment={"status": "pending"}),
        order("d", 1000),
    ]
    report = compare_orders(orders, orders, SEOUL, "2026-02-01", "2026-02-01")
    assert report.source.unpaid == 2
    assert report.to_dict()["target"]["unpaid"] == 2


def test_range_uses_business_day():
    late_utc = order("late", 1000, order_date="2026-01-31T16:30:00Z")
    early = order("early", 1000, order_date="2026-01-31T10:00:00Z")
    report = compare_orders([late_utc, early], [], SEOUL, "2026-02-01", "2026-02-01")
    assert report.source.order_count == 1
    assert report.only_in_source == ["late"]


def test_created_at_is_used_when_order_date_missing():
    record = order("a", 1000, order_date=None, created_at="2026-02-01T01:00:00Z")
    assert order_day(record, SEOUL) == "2026-02-01"
    assert order_day(order("b", 1, order_date=None), SEOUL) is None


def test_undated_orders_are_counted_separately():
    report = compare_orders([order("a", 1, order_date=None)], [], SEOUL, "2026-02-01", "2026-02-01")
    assert report.source.undated == 1
    assert report.source.order_count == 0


def test_duplicate_order_numbers_are_reported():
    orders = [order("a", 1, order_number="N-1"), order("b", 1, order_number="N-1"), order("c", 1, order_number="N-2")]
    report = compare_orders(orders, [], SEOUL, "2026-02-01", "2026-02-01")
    assert report.source.duplicate_order_numbers == ["N-1"]


def test_source_keys_match_canonical_target_ids():
    source = [order("legacyDocKey1", 1000)]
    target = [order(to_canonical_id("legacyDocKey1"), 1000)]
    report = compare_orders(source, target, SEOUL, "2026-02-01", "2026-02-01")
    assert report.only_in_source == []
    assert report.only_in_target == []


def test_orders_between():
    orders = [order("a", 1, order_date="2026-01-15T00:00:00Z"), order("b", 1), order("c", 1, order_date=None)]
    assert [o["id"] for o in orders_between(orders, SEOUL)] == ["a", "b", "c"]
    assert [o["id"] for o in orders_between(orders, SEOUL, "2026-02-01", "2026-02-28")] == ["b"]


@pytest.fixture()
def target():
    conn = get_db_connection(":memory:")
    init_db(conn)
    yield SqliteTargetStore(conn)
    conn.close()


def test_compare_stores_reads_both_sides(target):
    source = MemorySource(
        {
            "orders": {
                "docA": {"status": "completed", "orderDate": {"_seconds": 1769907600, "_nanoseconds": 0}, "summary": {"total": 30000}},
                "docB": {"status": "pending", "orderDate": {"_seconds": 1769907600, "_nanoseconds": 0}, "summary": {"total": 1000}},
            }
        }
    )
    target.upsert(
        "orders",
        [
            {"id": to_canonical_id("docA"), "status": "completed", "order_date": "2026-02-01T01:00:00.000Z", "summary": {"total": 30000}},
        ],
    )
    report = compare_stores(source, target, SEOUL, "2026-02-01", "2026-02-01")
    assert report.source.order_count == 2
    assert report.target.order_count == 1
    assert report.only_in_source == ["docB"]
    assert report.to_dict()["count_delta"] == -1
