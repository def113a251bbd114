import pytest

from services.projection import (
    DECLARED_COLUMNS,
    OVERFLOW_COLUMN,
    project_record,
    rename_fields,
    round_money_columns,
    to_money,
    to_snake_case,
)


def test_declared_only_record_has_no_overflow_key():
    record = {"id": "o1", "order_number": "A-1", "status": "completed", "summary": {"total": 1000}}
    projected = project_record("orders", record)
    assert projected == record
    assert OVERFLOW_COLUMN not in projected


def test_projection_reconstructs_the_record():
    record = {
        "id": "o1",
        "status": "completed",
        "branch_name": "Gangnam",
        "message_content": "Happy birthday",
        "outsource_info": {"partner": "Bloom"},
        "is_anonymous": False,
    }
    projected = project_record("orders", record)
    overflow = projected.pop(OVERFLOW_COLUMN)
    assert overflow == {
        "message_content": "Happy birthday",
        "outsource_info": {"partner": "Bloom"},
        "is_anonymous": False,
    }
    assert set(projected) <= set(DECLARED_COLUMNS["orders"])
    assert {**projected, **overflow} == record


def test_identifier_never_overflows():
    projected = project_record("custom", {"id": "x1", "name": "A", "note": "n"}, columns=["name"])
    assert projected == {"id": "x1", "name": "A", OVERFLOW_COLUMN: {"note": "n"}}


def test_alternative_identifier_field():
    projected = project_record(
        "daily_stats", {"date": "2026-02-01", "total_revenue": 5, "note": "x"}, id_field="date"
    )
    assert projected["date"] == "2026-02-01"
    assert projected[OVERFLOW_COLUMN] == {"note": "x"}


def test_unknown_collection_passes_through_as_copy():
    record = {"id": "1", "anything": {"nested": True}}
    projected = project_record("not_a_table", record)
    assert projected == record
    assert projected is not record


def test_existing_overflow_is_merged():
    record = {"id": "o1", "status": "paid", "extra_data": {"legacy": 1, "note": "old"}, "note": "new"}
    projected = project_record("orders", record)
    assert projected[OVERFLOW_COLUMN] == {"legacy": 1, "note": "new"}


def test_empty_existing_overflow_is_dropped():
    projected = project_record("orders", {"id": "o1", "extra_data": {}})
    assert projected == {"id": "o1"}


@pytest.mark.parametrize(
    "key, expected",
    [
        ("branchName", "branch_name"),
        ("orderDate", "order_date"),
        ("status", "status"),
        ("already_snake", "already_snake"),
    ],
)
def test_to_snake_case(key, expected):
    assert to_snake_case(key) == expected


def test_rename_fields_applies_table_renames():
    renamed = rename_fields(
        "simple_expenses", {"date": "2026-02-01", "subCategory": "flowers", "unitPrice": 10}
    )
    assert renamed == {"expense_date": "2026-02-01", "sub_category": "flowers", "unit_price": 10}


def test_rename_fields_keeps_nested_keys():
    renamed = rename_fields("orders", {"payment": {"completedAt": "x"}, "branchName": "A"})
    assert renamed == {"payment": {"completedAt": "x"}, "branch_name": "A"}


def test_rename_collision_prefers_camel_case_field():
    renamed = rename_fields("orders", {"branch_name": "stale", "branchName": "fresh"})
    assert renamed == {"branch_name": "fresh"}


def test_money_columns_are_rounded_half_up():
    record = round_money_columns(
        {
            "amount": 1500.5,
            "total_amount": 99.4,
            "unit_price": 10.5,
            "quantity": 2.0,
            "stock": 1.5,
            "price": "1,200",
        }
    )
    assert record["amount"] == 1501
    assert record["total_amount"] == 99
    assert record["unit_price"] == 11
    assert record["quantity"] == 2
    assert record["stock"] == 1.5
    assert record["price"] == "1,200"


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, 0),
        ("", 0),
        (10000, 10000),
        (2.5, 3),
        (-2.5, -2),
        ("1,200", 1200),
        ("abc", 0),
        (float("nan"), 0),
        (True, 0),
    ],
)
def test_to_money(value, expected):
    assert to_money(value) == expected
