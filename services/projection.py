"""Map flattened documents onto the relational target schema.

Each target table has a declared, ordered list of columns.  Fields without a
column are preserved in the ``extra_data`` overflow column instead of being
dropped, so a migrated row always carries everything the document held.
"""
from __future__ import annotations

import logging
import math
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

LOGGER = logging.getLogger(__name__)

OVERFLOW_COLUMN = "extra_data"

DECLARED_COLUMNS: Dict[str, List[str]] = {
    "orders": [
        "id", "order_number", "status", "receipt_type", "branch_id", "branch_name",
        "order_date", "orderer", "delivery_info", "pickup_info", "summary", "payment",
        "items", "memo", "transfer_info", "actual_delivery_cost",
        "actual_delivery_cost_cash", "delivery_cost_status", "delivery_cost_updated_at",
        "delivery_cost_updated_by", "delivery_cost_reason", "delivery_profit",
        "extra_data", "created_at", "updated_at", "completed_at", "completed_by",
    ],
    "customers": [
        "id", "name", "contact", "company_name", "address", "email", "grade", "memo",
        "points", "type", "birthday", "wedding_anniversary", "founding_anniversary",
        "first_visit_date", "other_anniversary_name", "other_anniversary",
        "anniversary", "special_notes", "monthly_payment_day", "total_spent",
        "order_count", "primary_branch", "branch", "branches", "is_deleted",
        "extra_data", "created_at", "updated_at", "last_order_date",
    ],
    "products": [
        "id", "doc_id", "name", "main_category", "mid_category", "price", "supplier",
        "stock", "size", "color", "branch", "code", "category", "status",
        "extra_data", "created_at", "updated_at",
    ],
    "materials": [
        "id", "name", "main_category", "mid_category", "unit", "spec", "price",
        "stock", "size", "color", "memo", "branch", "supplier", "extra_data",
        "created_at", "updated_at",
    ],
    "branches": [
        "id", "name", "type", "address", "phone", "manager", "business_number",
        "employee_count", "delivery_fees", "surcharges", "account", "seeded",
        "extra_data", "created_at",
    ],
    "simple_expenses": [
        "id", "expense_date", "amount", "category", "sub_category", "description",
        "supplier", "quantity", "unit_price", "branch_id", "branch_name",
        "receipt_url", "receipt_file_name", "related_request_id",
        "is_auto_generated", "inventory_updates", "extra_data", "created_at",
        "updated_at",
    ],
    "order_transfers": [
        "id", "original_order_id", "order_branch_id", "order_branch_name",
        "process_branch_id", "process_branch_name", "transfer_date",
        "transfer_reason", "transfer_by", "transfer_by_user", "status",
        "amount_split", "original_order_amount", "notes", "accepted_at",
        "accepted_by", "rejected_at", "rejected_by", "completed_at", "completed_by",
        "cancelled_at", "cancelled_by", "extra_data", "created_at", "updated_at",
    ],
    "material_requests": [
        "id", "request_number", "branch_id", "branch_name", "requester_id",
        "requester_name", "status", "total_amount", "items", "actual_purchase",
        "delivery", "extra_data", "created_at", "updated_at",
    ],
    "user_roles": [
        "id", "user_id", "email", "role", "permissions", "branch_id", "branch_name",
        "is_active", "extra_data", "created_at", "updated_at",
    ],
    "daily_stats": [
        "date", "total_order_count", "total_revenue", "total_settled_amount",
        "branches", "extra_data", "last_updated",
    ],
    "hr_documents": [
        "id", "user_id", "user_name", "document_type", "document_name",
        "file_url", "original_file_name", "submission_method", "submission_date",
        "status", "contents", "extracted_from_file", "extra_data", "created_at",
        "updated_at",
    ],
    "expense_requests": [
        "id", "request_number", "status", "branch_id", "branch_name",
        "total_amount", "total_tax_amount", "items", "approval_records",
        "required_approval_level", "current_approval_level", "fiscal_year",
        "fiscal_month", "payment_method", "payment_date", "payment_reference",
        "extra_data", "created_at", "updated_at", "submitted_at", "approved_at",
        "paid_at",
    ],
    "albums": [
        "id", "title", "description", "category", "photo_count", "is_public",
        "thumbnail_url", "branch_id", "created_by", "extra_data", "created_at",
        "updated_at",
    ],
    "audit_logs": [
        "id", "action", "entity_type", "entity_id", "entity_name", "branch_id",
        "branch_name", "operator_id", "operator_name", "details", "user_agent",
        "extra_data", "created_at",
    ],
    "notifications": [
        "id", "type", "sub_type", "title", "message", "severity", "user_id",
        "user_role", "branch_id", "department_id", "related_id", "related_type",
        "action_url", "is_read", "read_at", "is_archived", "auto_expire",
        "expires_at", "extra_data", "created_at", "updated_at",
    ],
}

# Applied after snake-casing, per target table.
FIELD_RENAMES: Dict[str, Dict[str, str]] = {
    "simple_expenses": {"date": "expense_date"},
    "stock_history": {"date": "occurred_at"},
    "checklists": {"date": "record_date"},
    "hr_documents": {"submitted_at": "submission_date", "doc_type": "document_type"},
}

MONEY_COLUMNS = frozenset(
    {
        "amount", "unit_price", "original_order_amount", "partner_price", "profit",
        "total", "subtotal", "price", "points", "total_spent", "total_revenue",
        "total_settled_amount", "quantity",
    }
)

_CAMEL_BOUNDARY = re.compile(r"[A-Z]")


def to_snake_case(key: str) -> str:
    """``branchName`` -> ``branch_name``; already snake-cased keys are unchanged."""
    return _CAMEL_BOUNDARY.sub(lambda match: "_" + match.group(0).lower(), key)


def rename_fields(collection: str, record: Mapping[str, Any]) -> Dict[str, Any]:
    """Snake-case the top-level keys of ``record`` and apply table renames.

    Nested sub-records keep their own keys.  When two source keys collapse onto
    the same column the camelCase spelling wins, matching how the document
    store's own clients write fields.
    """

    renames = FIELD_RENAMES.get(collection, {})
    renamed: Dict[str, Any] = {}
    snake_first = sorted(record.items(), key=lambda item: item[0] != to_snake_case(item[0]))
    for key, value in snake_first:
        column = to_snake_case(key)
        column = renames.get(column, column)
        renamed[column] = value
    return renamed


def to_money(value: Any) -> int:
    """Round a monetary amount to a whole number of the smallest unit.

    Halves round upwards; anything non-numeric counts as zero.
    """

    if value is None or value == "" or isinstance(value, bool):
        return 0
    if isinstance(value, str):
        try:
            value = float(value.replace(",", ""))
        except ValueError:
            return 0
    if not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return 0
    return int(math.floor(value + 0.5))


def _is_money_column(column: str) -> bool:
    return column in MONEY_COLUMNS or column.endswith("_amount") or column.endswith("_price")


def round_money_columns(record: Mapping[str, Any]) -> Dict[str, Any]:
    rounded = dict(record)
    for column, value in record.items():
        if not _is_money_column(column):
            continue
        if isinstance(value, float) and not (math.isnan(value) or math.isinf(value)):
            rounded[column] = to_money(value)
    return rounded


def project_record(
    collection: str,
    record: Mapping[str, Any],
    columns: Optional[Sequence[str]] = None,
    *,
    id_field: str = "id",
) -> Dict[str, Any]:
    """Split ``record`` into declared columns and an ``extra_data`` overflow.

    ``columns`` defaults to :data:`DECLARED_COLUMNS` for ``collection``.  When
    no column list is known the record is returned unprojected.  A mapping
    already stored under ``extra_data`` is treated as earlier overflow and
    merged, with the record's own fields taking precedence.
    """

    if columns is None:
        columns = DECLARED_COLUMNS.get(collection)
    if columns is None:
        LOGGER.debug("No declared columns for %s; passing record through", collection)
        return dict(record)

    declared = set(columns)
    declared.discard(OVERFLOW_COLUMN)

    projected: Dict[str, Any] = {}
    overflow: Dict[str, Any] = {}
    existing = record.get(OVERFLOW_COLUMN)
    if isinstance(existing, Mapping):
        overflow.update(existing)
    elif existing is not None:
        overflow[OVERFLOW_COLUMN] = existing

    for key, value in record.items():
        if key == OVERFLOW_COLUMN:
            continue
        if key == id_field or key in declared:
            projected[key] = value
        else:
            overflow[key] = value

    if overflow:
        projected[OVERFLOW_COLUMN] = overflow
    return projected
