"""Read-only comparison of orders held by the source and target stores."""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import tzinfo
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from services.daily_stats import business_date, order_total
from services.identifiers import to_canonical_id
from services.normalizer import parse_timestamp
from services.source import SourceStore
from services.statuses import is_canceled, is_pending_order, is_pending_payment, order_status
from services.target import TargetStore

LOGGER = logging.getLogger(__name__)


@dataclass
class StoreTotals:
    order_count: int = 0
    revenue: int = 0
    canceled: int = 0
    pending: int = 0
    unpaid: int = 0
    undated: int = 0
    duplicate_order_numbers: List[str] = field(default_factory=list)


@dataclass
class AuditReport:
    start: str
    end: str
    source: StoreTotals
    target: StoreTotals
    only_in_source: List[str] = field(default_factory=list)
    only_in_target: List[str] = field(default_factory=list)
    status_mismatches: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def count_delta(self) -> int:
        return self.target.order_count - self.source.order_count

    @property
    def revenue_delta(self) -> int:
        return self.target.revenue - self.source.revenue

    @property
    def mismatch_count(self) -> int:
        return len(self.status_mismatches)

    @property
    def consistent(self) -> bool:
        return not (
            self.count_delta
            or self.revenue_delta
            or self.only_in_source
            or self.only_in_target
            or self.status_mismatches
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload.update(
            count_delta=self.count_delta,
            revenue_delta=self.revenue_delta,
            mismatch_count=self.mismatch_count,
            consistent=self.consistent,
        )
        return payload


def order_day(order: Mapping[str, Any], tz: tzinfo) -> Optional[str]:
    for key in ("order_date", "orderDate", "created_at", "createdAt"):
        value = order.get(key)
        if value in (None, ""):
            continue
        moment = parse_timestamp(value)
        if moment is not None:
            return business_date(moment, tz)
    return None


def orders_between(
    orders: Iterable[Mapping[str, Any]],
    tz: tzinfo,
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> Iterable[Mapping[str, Any]]:
    """Yield the orders whose business day falls in the inclusive range."""
    for order in orders:
        if start is None and end is None:
            yield order
            continue
        day = order_day(order, tz)
        if day is None:
            continue
        if (start and day < start) or (end and day > end):
            continue
        yield order


def _collect(
    orders: Iterable[Mapping[str, Any]], tz: tzinfo, start: str, end: str
) -> Tuple[StoreTotals, Dict[str, Tuple[str, Mapping[str, Any]]]]:
    totals = StoreTotals()
    by_id: Dict[str, Tuple[str, Mapping[str, Any]]] = {}
    numbers: Counter = Counter()

    for order in orders:
        day = order_day(order, tz)
        if day is None:
            totals.undated += 1
            continue
        if day < start or day > end:
            continue
        raw_id = str(order.get("id") or "")
        by_id[to_canonical_id(raw_id)] = (raw_id, order)
        totals.order_count += 1
        if is_canceled(order):
            totals.canceled += 1
        else:
            totals.revenue += order_total(order)
            if is_pending_payment(order):
                totals.unpaid += 1
        if is_pending_order(order):
            totals.pending += 1
        number = order.get("order_number", order.get("orderNumber"))
        if number not in (None, ""):
            numbers[str(number)] += 1

    totals.duplicate_order_numbers = sorted(number for number, seen in numbers.items() if seen > 1)
    return totals, by_id


def compare_orders(
    source_orders: Iterable[Mapping[str, Any]],
    target_orders: Iterable[Mapping[str, Any]],
    tz: tzinfo,
    start: str,
    end: str,
) -> AuditReport:
    """Compare two order sets over the inclusive business-day range.

    Identifiers are matched in canonical form, so source document keys line up
    with the UUID keys they were migrated to; the report lists the identifiers
    as each store holds them.
    """

    source_totals, source_ids = _collect(source_orders, tz, start, end)
    target_totals, target_ids = _collect(target_orders, tz, start, end)

    report = AuditReport(start=start, end=end, source=source_totals, target=target_totals)
    report.only_in_source = sorted(
        source_ids[key][0] for key in set(source_ids) - set(target_ids)
    )
    report.only_in_target = sorted(
        target_ids[key][0] for key in set(target_ids) - set(source_ids)
    )

    for key in sorted(set(source_ids) & set(target_ids)):
        source_id, source_order = source_ids[key]
        target_id, target_order = target_ids[key]
        if order_status(source_order) != order_status(target_order):
            report.status_mismatches.append(
                {
                    "id": target_id,
                    "source_id": source_id,
                    "source_status": source_order.get("status"),
                    "target_status": target_order.get("status"),
                }
            )

    LOGGER.info(
        "Audit %s..%s: source=%s target=%s only_in_source=%s only_in_target=%s mismatches=%s",
        start,
        end,
        source_totals.order_count,
        target_totals.order_count,
        len(report.only_in_source),
        len(report.only_in_target),
        report.mismatch_count,
    )
    return report


def compare_stores(
    source: SourceStore,
    target: TargetStore,
    tz: tzinfo,
    start: str,
    end: str,
    *,
    collection: str = "orders",
    table: str = "orders",
    page_size: int = 1000,
) -> AuditReport:
    source_orders = (
        dict(document.data, id=document.key)
        for document in source.iter_documents(collection, batch_size=page_size)
    )
    target_orders = target.iter_rows(table, order_by="id", page_size=page_size)
    return compare_orders(source_orders, target_orders, tz, start, end)
