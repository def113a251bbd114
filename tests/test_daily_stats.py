import json
import random
from datetime import datetime, timezone

import pytest
import pytz

from database import get_db_connection, init_db
from services.daily_stats import (
    apply_order_change,
    attribution_timestamp,
    branch_key,
    compute_daily_stats,
    order_contribution,
    rebuild_daily_stats,
    verify_daily_stats,
)
from services.target import SqliteTargetStore

SEOUL = pytz.timezone("Asia/Seoul")
FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _clock():
    return FIXED_NOW


def make_order(order_id, total, *, status="completed", payment_status="paid", branch="Gangnam",
               order_date="2026-02-01T03:00:00Z", completed_at=None, **extra):
    payment = {"method": "card", "status": payment_status}
    if completed_at:
        payment["completedAt"] = completed_at
    order = {
        "id": order_id,
        "status": status,
        "branch_name": branch,
        "order_date": order_date,
        "summary": {"total": total},
        "payment": payment,
    }
    order.update(extra)
    return order


@pytest.fixture()
def store():
    conn = get_db_connection(":memory:")
    init_db(conn)
    yield SqliteTargetStore(conn)
    conn.close()


def test_canceled_orders_are_excluded_from_every_bucket():
    orders = [
        make_order("o1", 10000),
        make_order("o2", 7000, status="취소"),
        make_order("o3", 3000, status="cancelled"),
    ]
    result = compute_daily_stats(orders, SEOUL)
    assert len(result.rows) == 1
    row = result.rows[0]
    assert row["total_revenue"] == 10000
    assert row["total_order_count"] == 1
    assert row["total_settled_amount"] == 10000
    assert row["branches"] == {"Gangnam": {"revenue": 10000, "orderCount": 1, "settledAmount": 10000}}
    assert result.canceled == 2


def test_unsettled_orders_are_excluded():
    orders = [
        make_order("o1", 10000, payment_status="pending"),
        make_order("o2", 5000, payment_status="미결제"),
        make_order("o3", 2000, payment_status="결제완료"),
        make_order("o4", 1000, payment_status=" PAID "),
    ]
    result = compute_daily_stats(orders, SEOUL)
    assert result.unsettled == 2
    assert result.rows[0]["total_revenue"] == 3000


def test_top_level_payment_status_counts_as_settled():
    order = make_order("o1", 4000, payment_status=None)
    order["payment_status"] = "paid"
    assert order_contribution(order, SEOUL).revenue == 4000


def test_payment_completion_is_bucketed_in_business_timezone():
    order = make_order("o1", 10000, order_date="2026-01-30T01:00:00Z", completed_at="2026-01-31T16:00:00Z")
    contribution = order_contribution(order, SEOUL)
    assert contribution.date == "2026-02-01"


def test_attribution_priority_and_fallbacks():
    order = {
        "payment": {"completedAt": "2026-02-03T00:00:00Z"},
        "completed_at": "2026-02-02T00:00:00Z",
        "order_date": "2026-02-01T00:00:00Z",
        "created_at": "2026-01-31T00:00:00Z",
    }
    assert attribution_timestamp(order).day == 3
    order["payment"] = {}
    assert attribution_timestamp(order).day == 2
    del order["completed_at"]
    assert attribution_timestamp(order).day == 1
    order["order_date"] = None
    assert attribution_timestamp(order).day == 31
    order["order_date"] = "garbage"
    assert attribution_timestamp(order).day == 31


def test_source_shaped_orders_are_understood():
    order = {
        "id": "doc1",
        "status": "completed",
        "branchName": "Hongdae",
        "orderDate": {"_seconds": 1769875200, "_nanoseconds": 0},
        "summary": {"total": 2500.5},
        "payment": {"status": "completed"},
    }
    contribution = order_contribution(order, SEOUL)
    assert contribution.date == "2026-02-01"
    assert contribution.branch == "Hongdae"
    assert contribution.revenue == 2501


def test_undated_settled_orders_are_counted_not_dropped_silently():
    order = make_order("o1", 1000, order_date=None)
    result = compute_daily_stats([order], SEOUL)
    assert result.rows == []
    assert result.undated == 1
    assert result.undated_ids == ["o1"]


@pytest.mark.parametrize(
    "name, expected",
    [
        ("Gangnam", "Gangnam"),
        ("Gangnam St. Main", "Gangnam_St__Main"),
        ("릴리맥 광화문점", "릴리맥_광화문점"),
        ("", "unknown"),
        (None, "unknown"),
        ("   ", "unknown"),
    ],
)
def test_branch_key(name, expected):
    assert branch_key(name) == expected


def test_branch_revenue_always_sums_to_total():
    rng = random.Random(42)
    branches = ["Gangnam", "Hongdae St.", "Jamsil", None]
    orders = [
        make_order(
            f"o{i}",
            rng.randint(0, 200000) + rng.choice([0, 0.5, 0.49]),
            branch=rng.choice(branches),
            order_date=f"2026-02-{rng.randint(1, 28):02d}T{rng.randint(0, 23):02d}:00:00Z",
            status=rng.choice(["completed", "pending", "취소"]),
            payment_status=rng.choice(["paid", "pending", "입금완료"]),
        )
        for i in range(500)
    ]
    result = compute_daily_stats(orders, SEOUL)
    assert result.rows
    for row in result.rows:
        assert sum(b["revenue"] for b in row["branches"].values()) == row["total_revenue"]
        assert sum(b["orderCount"] for b in row["branches"].values()) == row["total_order_count"]
        assert row["total_settled_amount"] == row["total_revenue"]


def test_rebuild_twice_produces_identical_rows(store):
    store.upsert(
        "orders",
        [make_order("o1", 10000), make_order("o2", 5000, branch="Hongdae"), make_order("o3", 800, status="취소")],
    )
    rebuild_daily_stats(store, SEOUL, clock=_clock)
    first = json.dumps(list(store.iter_rows("daily_stats", order_by="date")), sort_keys=True)
    rebuild_daily_stats(store, SEOUL, clock=_clock)
    second = json.dumps(list(store.iter_rows("daily_stats", order_by="date")), sort_keys=True)
    assert first == second


def test_rebuild_replaces_stale_rows_in_range_only(store):
    store.upsert(
        "daily_stats",
        [
            {"date": "2025-12-31", "total_revenue": 999, "total_order_count": 9, "total_settled_amount": 999, "branches": {}},
            {"date": "2026-02-05", "total_revenue": 123, "total_order_count": 1, "total_settled_amount": 123, "branches": {}},
        ],
        conflict_key="date",
    )
    store.upsert("orders", [make_order("o1", 10000), make_order("o2", 4000, order_date="2025-12-31T03:00:00Z")])

    summary = rebuild_daily_stats(store, SEOUL, start="2026-02-01", end="2026-02-28", clock=_clock)

    rows = {row["date"]: row for row in store.iter_rows("daily_stats", order_by="date")}
    assert set(rows) == {"2025-12-31", "2026-02-01"}
    assert rows["2025-12-31"]["total_revenue"] == 999
    assert rows["2026-02-01"]["total_revenue"] == 10000
    assert rows["2026-02-01"]["last_updated"] == "2026-03-01T12:00:00.000Z"
    assert summary.deleted == 1
    assert summary.dates == 1
    assert summary.ok


def test_live_increments_reconcile_with_rebuild(store):
    history = [
        (None, make_order("o1", 10000)),
        (None, make_order("o2", 5000, branch="Hongdae", payment_status="pending")),
        (make_order("o2", 5000, branch="Hongdae", payment_status="pending"),
         make_order("o2", 5000, branch="Hongdae", completed_at="2026-01-31T16:30:00Z")),
        (None, make_order("o3", 7000)),
        (make_order("o3", 7000), make_order("o3", 7000, status="주문취소")),
        (None, make_order("o4", 2500, branch="Gangnam St.")),
    ]
    final_orders = {}
    for before, after in history:
        apply_order_change(store, SEOUL, before, after)
        final_orders[after["id"]] = after

    incremental = {
        row["date"]: {key: row[key] for key in ("total_revenue", "total_order_count", "total_settled_amount", "branches")}
        for row in store.iter_rows("daily_stats", order_by="date")
    }
    rebuilt = {row["date"]: row for row in compute_daily_stats(final_orders.values(), SEOUL).rows}
    # an emptied day stays behind as zeros on the live path
    incremental = {day: row for day, row in incremental.items() if row["total_order_count"]}
    for row in incremental.values():
        row["branches"] = {k: v for k, v in row["branches"].items() if v["orderCount"]}
    assert incremental == {
        day: {key: row[key] for key in ("total_revenue", "total_order_count", "total_settled_amount", "branches")}
        for day, row in rebuilt.items()
    }


def test_verify_reports_drift(store):
    store.upsert("orders", [make_order("o1", 10000)])
    rebuild_daily_stats(store, SEOUL, clock=_clock)
    assert verify_daily_stats(store, SEOUL) == []

    store.upsert(
        "daily_stats",
        [{"date": "2026-02-01", "total_revenue": 9000, "branches": {"Gangnam": {"revenue": 9000, "orderCount": 1, "settledAmount": 10000}}}],
        conflict_key="date",
    )
    drift = verify_daily_stats(store, SEOUL)
    fields = {entry["field"] for entry in drift}
    assert "total_revenue" in fields
    assert "branches.Gangnam.revenue" in fields
    assert "branches.Gangnam.settledAmount" not in fields
