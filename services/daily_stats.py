"""Daily revenue rollups derived from the order set.

A rollup row holds, for one business day, the revenue, order count and
settled amount of every settled, non-canceled order attributed to that day,
overall and per branch.  Rows are always recomputable from the orders: the
batch rebuild deletes the affected range and writes fresh rows, and the live
increment path applies exactly the per-order contributions the rebuild sums.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from services.normalizer import parse_timestamp
from services.projection import to_money
from services.statuses import is_canceled, is_settled
from services.target import TargetStore
from services.writer import TargetWriter, WriteSummary

LOGGER = logging.getLogger(__name__)

ROLLUP_TABLE = "daily_stats"
ORDERS_TABLE = "orders"
INCREMENT_PROCEDURE = "increment_daily_stats"
UNKNOWN_BRANCH = "unknown"
MIN_DATE = "1900-01-01"
MAX_DATE = "9999-12-31"


def _first(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value not in (None, ""):
            return value
    return None


def branch_key(name: Any) -> str:
    """Sanitise a branch name for use as a key of the ``branches`` mapping."""
    text = str(name).strip() if name is not None else ""
    if not text:
        return UNKNOWN_BRANCH
    return text.replace(" ", "_").replace(".", "_")


def order_total(order: Mapping[str, Any]) -> int:
    summary = order.get("summary")
    if isinstance(summary, Mapping):
        return to_money(summary.get("total"))
    return to_money(order.get("total"))


def attribution_timestamp(order: Mapping[str, Any]) -> Optional[datetime]:
    """Return the moment revenue for ``order`` is recognised, in UTC.

    Candidates in priority order: payment completion, order completion, order
    date, record creation.  An unparseable candidate falls through to the next.
    """

    candidates = []
    payment = order.get("payment")
    if isinstance(payment, Mapping):
        candidates.append(_first(payment, "completedAt", "completed_at"))
    candidates.append(_first(order, "completed_at", "completedAt"))
    candidates.append(_first(order, "order_date", "orderDate"))
    candidates.append(_first(order, "created_at", "createdAt"))

    for candidate in candidates:
        if candidate is None:
            continue
        moment = parse_timestamp(candidate)
        if moment is not None:
            return moment
    return None


def business_date(moment: datetime, tz: tzinfo) -> str:
    return moment.astimezone(tz).date().isoformat()


# ---------------------------------------------------------------------------
# Per-order contributions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Contribution:
    date: str
    branch: str
    revenue: int
    order_count: int = 1

    @property
    def settled_amount(self) -> int:
        return self.revenue

    def as_rpc_params(self, sign: int = 1) -> Dict[str, Any]:
        return {
            "p_date": self.date,
            "p_branch_key": self.branch,
            "p_revenue_delta": sign * self.revenue,
            "p_order_count_delta": sign * self.order_count,
            "p_settled_amount_delta": sign * self.settled_amount,
        }


def order_contribution(order: Mapping[str, Any], tz: tzinfo) -> Optional[Contribution]:
    """The rollup delta one order produces, or ``None`` if it counts for nothing."""

    if is_canceled(order) or not is_settled(order):
        return None
    moment = attribution_timestamp(order)
    if moment is None:
        return None
    return Contribution(
        date=business_date(moment, tz),
        branch=branch_key(_first(order, "branch_name", "branchName")),
        revenue=order_total(order),
    )


# ---------------------------------------------------------------------------
# Rebuild
# ---------------------------------------------------------------------------


@dataclass
class RollupComputation:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    considered: int = 0
    included: int = 0
    canceled: int = 0
    unsettled: int = 0
    undated: int = 0
    out_of_range: int = 0
    undated_ids: List[str] = field(default_factory=list)


@dataclass
class RollupSummary:
    dates: int
    deleted: int
    considered: int
    included: int
    canceled: int
    unsettled: int
    undated: int
    write: WriteSummary

    @property
    def ok(self) -> bool:
        return self.write.ok

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_daily_stats(
    orders: Iterable[Mapping[str, Any]],
    tz: tzinfo,
    *,
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> RollupComputation:
    """Sum order contributions into one row per business day.

    ``start``/``end`` are inclusive ``YYYY-MM-DD`` bounds on the attributed
    day.  Rows carry no ``last_updated``; the caller stamps them.
    """

    result = RollupComputation()
    days: Dict[str, Dict[str, Any]] = {}
    branches: Dict[str, Dict[str, Dict[str, int]]] = defaultdict(dict)

    for order in orders:
        result.considered += 1
        if is_canceled(order):
            result.canceled += 1
            continue
        if not is_settled(order):
            result.unsettled += 1
            continue
        contribution = order_contribution(order, tz)
        if contribution is None:
            result.undated += 1
            order_id = str(_first(order, "id") or "?")
            result.undated_ids.append(order_id)
            LOGGER.warning("Settled order %s has no usable date; left out of rollup", order_id)
            continue
        if (start and contribution.date < start) or (end and contribution.date > end):
            result.out_of_range += 1
            continue

        result.included += 1
        day = days.setdefault(
            contribution.date,
            {
                "date": contribution.date,
                "total_revenue": 0,
                "total_order_count": 0,
                "total_settled_amount": 0,
            },
        )
        day["total_revenue"] += contribution.revenue
        day["total_order_count"] += contribution.order_count
        day["total_settled_amount"] += contribution.settled_amount

        bucket = branches[contribution.date].setdefault(
            contribution.branch, {"revenue": 0, "orderCount": 0, "settledAmount": 0}
        )
        bucket["revenue"] += contribution.revenue
        bucket["orderCount"] += contribution.order_count
        bucket["settledAmount"] += contribution.settled_amount

    for date_key in sorted(days):
        row = days[date_key]
        row["branches"] = {
            name: branches[date_key][name] for name in sorted(branches[date_key])
        }
        result.rows.append(row)
    return result


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def rebuild_daily_stats(
    store: TargetStore,
    tz: tzinfo,
    *,
    orders: Optional[Iterable[Mapping[str, Any]]] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    writer: Optional[TargetWriter] = None,
    clock: Callable[[], datetime] = _utc_now,
    page_size: int = 1000,
) -> RollupSummary:
    """Replace the rollup rows for ``start``..``end`` (all dates by default).

    Orders are read from ``store`` unless given explicitly.  Every row of one
    run shares the same ``last_updated`` stamp taken from ``clock``.
    """

    if orders is None:
        orders = store.iter_rows(ORDERS_TABLE, order_by="id", page_size=page_size)
    computation = compute_daily_stats(orders, tz, start=start, end=end)

    stamp = clock().astimezone(timezone.utc).isoformat(timespec="milliseconds")
    stamp = stamp.replace("+00:00", "Z")
    rows = [dict(row, last_updated=stamp) for row in computation.rows]

    lower, upper = start or MIN_DATE, end or MAX_DATE
    deleted = store.delete_between(ROLLUP_TABLE, "date", lower, upper)
    LOGGER.info("Deleted %s rollup rows between %s and %s", deleted, lower, upper)

    writer = writer or TargetWriter(store)
    write = writer.write(ROLLUP_TABLE, rows, conflict_key="date")
    LOGGER.info(
        "Rebuilt %s rollup days from %s orders (%s canceled, %s unsettled, %s undated)",
        len(rows),
        computation.considered,
        computation.canceled,
        computation.unsettled,
        computation.undated,
    )
    return RollupSummary(
        dates=len(rows),
        deleted=deleted,
        considered=computation.considered,
        included=computation.included,
        canceled=computation.canceled,
        unsettled=computation.unsettled,
        undated=computation.undated,
        write=write,
    )


# ---------------------------------------------------------------------------
# Live increments
# ---------------------------------------------------------------------------


def apply_increment(store: TargetStore, contribution: Contribution, sign: int = 1) -> None:
    store.call_rpc(INCREMENT_PROCEDURE, contribution.as_rpc_params(sign))


def apply_order_change(
    store: TargetStore,
    tz: tzinfo,
    before: Optional[Mapping[str, Any]],
    after: Optional[Mapping[str, Any]],
) -> None:
    """Move an order's contribution from its old state to its new one.

    ``before`` is ``None`` for a new order.  Applying every change in order
    yields the rows a full rebuild would produce.
    """

    old = order_contribution(before, tz) if before is not None else None
    new = order_contribution(after, tz) if after is not None else None
    if old == new:
        return
    if old is not None:
        apply_increment(store, old, sign=-1)
    if new is not None:
        apply_increment(store, new, sign=1)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def verify_daily_stats(
    store: TargetStore,
    tz: tzinfo,
    *,
    orders: Optional[Iterable[Mapping[str, Any]]] = None,
    page_size: int = 1000,
) -> List[Dict[str, Any]]:
    """Compare stored rollup rows with a fresh computation without writing.

    Returns one entry per differing value: ``{"date", "field", "stored",
    "expected"}``.  Branch fields are reported as ``branches.<key>.<field>``.
    """

    if orders is None:
        orders = store.iter_rows(ORDERS_TABLE, order_by="id", page_size=page_size)
    expected = {row["date"]: row for row in compute_daily_stats(orders, tz).rows}
    stored = {
        row["date"]: row
        for row in store.iter_rows(ROLLUP_TABLE, order_by="date", page_size=page_size)
    }

    drift: List[Dict[str, Any]] = []
    for day in sorted(set(expected) | set(stored)):
        want = expected.get(day, {})
        have = stored.get(day, {})
        for name in ("total_revenue", "total_order_count", "total_settled_amount"):
            if (have.get(name) or 0) != (want.get(name) or 0):
                drift.append(
                    {"date": day, "field": name, "stored": have.get(name), "expected": want.get(name)}
                )
        want_branches = want.get("branches") or {}
        have_branches = have.get("branches") or {}
        for branch in sorted(set(want_branches) | set(have_branches)):
            for name in ("revenue", "orderCount", "settledAmount"):
                stored_value = (have_branches.get(branch) or {}).get(name)
                expected_value = (want_branches.get(branch) or {}).get(name)
                if (stored_value or 0) != (expected_value or 0):
                    drift.append(
                        {
                            "date": day,
                            "field": f"branches.{branch}.{name}",
                            "stored": stored_value,
                            "expected": expected_value,
                        }
                    )
    if drift:
        LOGGER.warning("Rollup drift on %s values", len(drift))
    return drift
