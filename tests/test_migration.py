from datetime import datetime, timezone

import pytest

from database import get_db_connection, init_db
from services.identifiers import is_canonical_id, to_canonical_id
from services.migration import (
    COLLECTION_MAPPINGS,
    UnknownCollectionError,
    get_mapping,
    migrate_all,
    migrate_collection,
    prepare_record,
)
from services.source import MemorySource, SourceDocument
from services.target import SqliteTargetStore
from services.writer import TargetWriter

PAID_AT = datetime(2026, 1, 31, 16, 0, tzinfo=timezone.utc)


def source_order(number, **extra):
    document = {
        "orderNumber": f"GN-{number:04d}",
        "status": "completed",
        "branchId": "branchGangnam",
        "branchName": "Gangnam",
        "orderDate": {"_seconds": 1769904000, "_nanoseconds": 0},
        "orderer": {"name": "Kim", "contact": "010-1234-5678"},
        "summary": {"subtotal": 45000, "total": 45000.5},
        "payment": {"method": "card", "status": "paid", "completedAt": PAID_AT},
        "items": [{"name": "Rose bouquet", "quantity": 1, "price": 45000}],
        "messageContent": "Happy birthday",
    }
    document.update(extra)
    return document


@pytest.fixture()
def store():
    conn = get_db_connection(":memory:")
    init_db(conn)
    yield SqliteTargetStore(conn)
    conn.close()


def test_prepare_record_shapes_an_order():
    record = prepare_record(get_mapping("orders"), SourceDocument("legacyOrder1", source_order(1)))
    assert record["id"] == to_canonical_id("legacyOrder1")
    assert record["order_number"] == "GN-0001"
    assert record["branch_id"] == to_canonical_id("branchGangnam")
    assert record["order_date"] == "2026-02-01T00:00:00.000Z"
    assert record["payment"]["completedAt"] == "2026-01-31T16:00:00.000Z"
    assert record["summary"] == {"subtotal": 45000, "total": 45000.5}
    assert record["extra_data"] == {"message_content": "Happy birthday"}


def test_prepare_record_applies_field_renames_and_money_rounding():
    mapping = get_mapping("simpleExpenses")
    record = prepare_record(
        mapping,
        SourceDocument("exp1", {"date": "2026-02-01", "amount": 12500.5, "unitPrice": 99.5, "relatedRequestId": "req1"}),
    )
    assert record["expense_date"] == "2026-02-01"
    assert record["amount"] == 12501
    assert record["unit_price"] == 100
    assert record["related_request_id"] == to_canonical_id("req1")


def test_daily_stats_keep_their_date_key():
    record = prepare_record(
        get_mapping("dailyStats"),
        SourceDocument("2026-02-01", {"totalRevenue": 1000, "totalOrderCount": 1, "branches": {"Gangnam": {"revenue": 1000}}}),
    )
    assert record["date"] == "2026-02-01"
    assert "id" not in record
    assert record["branches"] == {"Gangnam": {"revenue": 1000}}


def test_source_id_field_is_replaced_by_document_key():
    record = prepare_record(get_mapping("customers"), SourceDocument("cust1", {"id": "stale", "name": "Lee"}))
    assert record["id"] == to_canonical_id("cust1")


def test_unknown_collection():
    with pytest.raises(UnknownCollectionError):
        get_mapping("secrets")
    with pytest.raises(UnknownCollectionError):
        migrate_all(MemorySource(), None, ["orders", "secrets"])


def test_mappings_list_referenced_tables_first():
    order = list(COLLECTION_MAPPINGS)
    assert order.index("branches") < order.index("orders") < order.index("order_transfers")


def test_migrating_twice_leaves_identical_rows(store):
    source = MemorySource({"orders": {f"doc{i:03d}": source_order(i) for i in range(25)}})
    source.add("orders", "_initialized", {"placeholder": True})
    writer = TargetWriter(store, batch_size=10)

    first = migrate_collection(source, writer, get_mapping("orders"), batch_size=7)
    rows_first = list(store.iter_rows("orders"))
    second = migrate_collection(source, writer, get_mapping("orders"), batch_size=7)
    rows_second = list(store.iter_rows("orders"))

    assert first.read == 26
    assert first.skipped == 1
    assert first.written == second.written == 25
    assert first.ok
    assert rows_first == rows_second
    assert len(rows_second) == 25
    assert all(is_canonical_id(row["id"]) for row in rows_second)


def test_resume_from_cursor(store):
    source = MemorySource({"customers": {f"c{i:02d}": {"name": f"Customer {i}"} for i in range(10)}})
    writer = TargetWriter(store)
    mapping = get_mapping("customers")

    partial = migrate_collection(source, writer, mapping, batch_size=4)
    assert partial.cursor == "c09"

    store.connection.execute("DELETE FROM customers")
    store.connection.commit()
    resumed = migrate_collection(source, writer, mapping, batch_size=4, start_after="c05")
    assert resumed.read == 4
    assert {row["name"] for row in store.iter_rows("customers")} == {f"Customer {i}" for i in range(6, 10)}


def test_migrate_all_runs_requested_collections(store):
    source = MemorySource(
        {
            "branches": {"branchGangnam": {"name": "Gangnam", "type": "store"}},
            "orders": {"o1": source_order(1)},
        }
    )
    summaries = migrate_all(source, TargetWriter(store), ["branches", "orders"])
    assert [(s.table, s.written) for s in summaries] == [("branches", 1), ("orders", 1)]
    order_row = next(store.iter_rows("orders"))
    branch_row = next(store.iter_rows("branches"))
    assert order_row["branch_id"] == branch_row["id"]


def test_mappings_follow_the_collections_the_app_writes():
    for collection, table in [
        ("order_transfers", "order_transfers"),
        ("expenseRequests", "expense_requests"),
        ("hr_documents", "hr_documents"),
        ("albums", "albums"),
        ("auditLogs", "audit_logs"),
        ("notifications", "notifications"),
    ]:
        assert get_mapping(collection).table == table
    assert "orderTransfers" not in COLLECTION_MAPPINGS


def test_order_transfers_and_hr_documents_land_in_the_mirror(store):
    source = MemorySource(
        {
            "order_transfers": {
                "t1": {"originalOrderId": "o1", "orderBranchId": "b1", "processBranchId": "b2", "status": "pending"}
            },
            "hr_documents": {
                "h1": {"userId": "user7", "docType": "contract", "submittedAt": "2026-02-01T00:00:00Z", "status": "submitted"}
            },
        }
    )
    summaries = migrate_all(source, TargetWriter(store), ["order_transfers", "hr_documents"])
    assert [(s.table, s.written) for s in summaries] == [("order_transfers", 1), ("hr_documents", 1)]

    transfer = next(store.iter_rows("order_transfers"))
    assert transfer["original_order_id"] == to_canonical_id("o1")
    assert transfer["process_branch_id"] == to_canonical_id("b2")

    document = next(store.iter_rows("hr_documents"))
    assert document["user_id"] == to_canonical_id("user7")
    assert document["document_type"] == "contract"
    assert document["submission_date"] == "2026-02-01T00:00:00Z"
