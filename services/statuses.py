"""Accepted spellings for order and payment states.

Orders were entered through several generations of the ERP, so the same
logical state appears under English, Korean and legacy spellings.  These sets
are shared by the rollup rebuild and the store audit; a new upstream spelling
has to be added here.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional

CANCELED_STATUSES = frozenset({"cancelled", "canceled", "취소", "주문취소"})

SETTLED_PAYMENT_STATUSES = frozenset(
    {
        "paid",
        "completed",
        "결제완료",
        "입금완료",
        "완료",
        "처리완료",
        "카드결제",
        "현금결제",
    }
)

PENDING_PAYMENT_STATUSES = frozenset({"pending", "대기", "미결제", "입금대기", ""})

PENDING_ORDER_STATUSES = frozenset({"pending", "processing", "대기", "처리중"})


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def order_status(order: Mapping[str, Any]) -> str:
    return _clean(order.get("status"))


def payment_status(order: Mapping[str, Any]) -> str:
    """Return the cleaned payment status, preferring the payment sub-record."""
    payment = order.get("payment")
    status: Optional[Any] = None
    if isinstance(payment, Mapping):
        status = payment.get("status")
    if status in (None, ""):
        status = order.get("payment_status", order.get("paymentStatus"))
    return _clean(status)


def is_canceled(order: Mapping[str, Any]) -> bool:
    return order_status(order) in CANCELED_STATUSES


def is_settled(order: Mapping[str, Any]) -> bool:
    return payment_status(order) in SETTLED_PAYMENT_STATUSES


def is_pending_payment(order: Mapping[str, Any]) -> bool:
    return payment_status(order) in PENDING_PAYMENT_STATUSES


def is_pending_order(order: Mapping[str, Any]) -> bool:
    return order_status(order) in PENDING_ORDER_STATUSES
