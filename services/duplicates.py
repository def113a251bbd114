"""Advisory detection of accidentally double-entered orders.

Nothing here modifies orders; the candidates are a report for an operator.
Three independent signals are used:

* ``High Probability``: identical branch, orderer, total and items entered
  within two minutes of each other.
* ``Possible``: the same orderer and total within ten minutes, whatever the
  items.
* ``Duplicate Order Number``: one order number on more than one order.
"""
from __future__ import annotations

import csv
import json
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from services.daily_stats import order_total
from services.normalizer import parse_timestamp
from services.statuses import is_canceled

LOGGER = logging.getLogger(__name__)

STRICT_WINDOW = timedelta(minutes=2)
LOOSE_WINDOW = timedelta(minutes=10)

HIGH_PROBABILITY = "High Probability"
POSSIBLE = "Possible"
DUPLICATE_ORDER_NUMBER = "Duplicate Order Number"


@dataclass(frozen=True)
class DuplicateCandidate:
    confidence: str
    reason: str
    fingerprint: str
    order_ids: Tuple[str, ...]
    timestamps: Tuple[Optional[str], ...]
    delta_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["order_ids"] = list(self.order_ids)
        payload["timestamps"] = list(self.timestamps)
        return payload


def _first(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value not in (None, ""):
            return value
    return None


def _order_id(order: Mapping[str, Any]) -> str:
    return str(order.get("id") or "")


def orderer_name(order: Mapping[str, Any]) -> str:
    orderer = order.get("orderer")
    name = orderer.get("name") if isinstance(orderer, Mapping) else None
    if name in (None, ""):
        name = _first(order, "orderer_name", "ordererName")
    return str(name or "").strip()


def branch_reference(order: Mapping[str, Any]) -> str:
    return str(_first(order, "branch_id", "branchId", "branch_name", "branchName") or "")


def item_signature(order: Mapping[str, Any]) -> str:
    items = order.get("items")
    if not isinstance(items, list):
        return ""
    parts = []
    for item in items:
        if not isinstance(item, Mapping):
            continue
        name = _first(item, "name", "productName", "product_name") or ""
        quantity = item.get("quantity")
        parts.append(f"{name}x{quantity if quantity is not None else 1}")
    return ",".join(sorted(parts))


def fingerprint(order: Mapping[str, Any]) -> str:
    return "|".join(
        (branch_reference(order), orderer_name(order), str(order_total(order)), item_signature(order))
    )


def order_timestamp(order: Mapping[str, Any]) -> Optional[datetime]:
    return parse_timestamp(_first(order, "order_date", "orderDate", "created_at", "createdAt"))


def _close_pairs(
    group: Sequence[Tuple[datetime, Mapping[str, Any]]], window: timedelta
) -> Iterable[Tuple[Tuple[datetime, Mapping[str, Any]], Tuple[datetime, Mapping[str, Any]], float]]:
    ordered = sorted(group, key=lambda entry: (entry[0], _order_id(entry[1])))
    for earlier, later in zip(ordered, ordered[1:]):
        delta = (later[0] - earlier[0]).total_seconds()
        if delta <= window.total_seconds():
            yield earlier, later, delta


def _pair_candidate(confidence, reason, key, earlier, later, delta) -> DuplicateCandidate:
    return DuplicateCandidate(
        confidence=confidence,
        reason=reason,
        fingerprint=key,
        order_ids=(_order_id(earlier[1]), _order_id(later[1])),
        timestamps=(earlier[0].isoformat(), later[0].isoformat()),
        delta_seconds=delta,
    )


def find_duplicates(
    orders: Iterable[Mapping[str, Any]],
    *,
    strict_window: timedelta = STRICT_WINDOW,
    loose_window: timedelta = LOOSE_WINDOW,
    include_canceled: bool = False,
) -> List[DuplicateCandidate]:
    orders = list(orders)
    timed: List[Tuple[datetime, Mapping[str, Any]]] = []
    for order in orders:
        if not include_canceled and is_canceled(order):
            continue
        moment = order_timestamp(order)
        if moment is None:
            LOGGER.debug("Order %s has no timestamp; skipped for timing checks", _order_id(order))
            continue
        timed.append((moment, order))

    candidates: List[DuplicateCandidate] = []

    strict_groups: Dict[str, List[Tuple[datetime, Mapping[str, Any]]]] = defaultdict(list)
    for entry in timed:
        strict_groups[fingerprint(entry[1])].append(entry)

    flagged: Set[frozenset] = set()
    for key in sorted(strict_groups):
        group = strict_groups[key]
        if len(group) < 2:
            continue
        for earlier, later, delta in _close_pairs(group, strict_window):
            flagged.add(frozenset((_order_id(earlier[1]), _order_id(later[1]))))
            candidates.append(
                _pair_candidate(
                    HIGH_PROBABILITY,
                    "Same branch, orderer, total and items",
                    key,
                    earlier,
                    later,
                    delta,
                )
            )

    loose_groups: Dict[str, List[Tuple[datetime, Mapping[str, Any]]]] = defaultdict(list)
    for entry in timed:
        name = orderer_name(entry[1])
        if not name:
            continue
        loose_groups[f"{name}|{order_total(entry[1])}"].append(entry)

    for key in sorted(loose_groups):
        group = loose_groups[key]
        if len(group) < 2:
            continue
        for earlier, later, delta in _close_pairs(group, loose_window):
            if frozenset((_order_id(earlier[1]), _order_id(later[1]))) in flagged:
                continue
            candidates.append(
                _pair_candidate(
                    POSSIBLE,
                    f"Same orderer and total within {int(loose_window.total_seconds() // 60)} minutes",
                    key,
                    earlier,
                    later,
                    delta,
                )
            )

    by_number: Dict[str, List[Mapping[str, Any]]] = defaultdict(list)
    for order in orders:
        number = _first(order, "order_number", "orderNumber")
        if number is not None:
            by_number[str(number).strip()].append(order)
    for number in sorted(by_number):
        group = by_number[number]
        if len(group) < 2:
            continue
        stamps = [order_timestamp(order) for order in group]
        candidates.append(
            DuplicateCandidate(
                confidence=DUPLICATE_ORDER_NUMBER,
                reason=f"Order number {number} used {len(group)} times",
                fingerprint=number,
                order_ids=tuple(_order_id(order) for order in group),
                timestamps=tuple(stamp.isoformat() if stamp else None for stamp in stamps),
            )
        )

    LOGGER.info("Found %s duplicate candidates among %s orders", len(candidates), len(orders))
    return candidates


def write_report(candidates: Sequence[DuplicateCandidate], path: Path) -> Path:
    """Write ``candidates`` as JSON (``.json``) or CSV (anything else)."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() == ".json":
        path.write_text(
            json.dumps([candidate.to_dict() for candidate in candidates], ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
        return path

    with path.open("w", newline="", encoding="utf-8-sig") as handle:
        writer = csv.writer(handle)
        writer.writerow(["confidence", "reason", "fingerprint", "order_ids", "timestamps", "delta_seconds"])
        for candidate in candidates:
            writer.writerow(
                [
                    candidate.confidence,
                    candidate.reason,
                    candidate.fingerprint,
                    " ".join(candidate.order_ids),
                    " ".join(stamp or "" for stamp in candidate.timestamps),
                    "" if candidate.delta_seconds is None else f"{candidate.delta_seconds:.0f}",
                ]
            )
    return path
