"""
Inventory ledger deduction -- pure computation over a ledger snapshot.

Responsibility:
    Given the ledger's ``data`` payload and a requisition's reservation
    items, compute the deducted payload, the ``requisition-issue``
    transactions to append, and any shortfalls.  The caller persists the
    result with a compare-and-swap on the ledger version.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Works on a deep copy;
    the input payload is never mutated.

Invariants enforced:
    - No inventory quantity ever goes below zero.
    - Each line deducts ``min(requested, available)``; the remainder is a
      shortfall, never an error, and never blocks other lines.
    - Exactly one transaction per line with a positive deduction, with a
      negative quantity.

Failure modes:
    - ``inventory_section`` returns None for a payload without a
      recognisable structure; the service turns that into
      InventoryUnavailableError before calling ``deduct``.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from requisition_kernel.domain.reservation import ReservationItem
from requisition_kernel.utils.serialization import parse_quantity

LEDGER_CATEGORIES: tuple[str, ...] = (
    "rawMaterials",
    "packingMaterials",
    "labels",
    "finishedGoods",
)

ISSUE_TRANSACTION_TYPE = "requisition-issue"


@dataclass(frozen=True)
class DeductionShortfall:
    """A line the ledger could not fully cover."""

    item_id: Any
    item_name: str
    category: str
    requested: float
    deducted: float

    @property
    def shortfall(self) -> float:
        return self.requested - self.deducted


@dataclass
class DeductionResult:
    data: dict[str, Any]
    transactions: list[dict[str, Any]] = field(default_factory=list)
    shortfalls: list[DeductionShortfall] = field(default_factory=list)

    @property
    def total_deducted(self) -> float:
        return -sum(tx["quantity"] for tx in self.transactions)


def inventory_section(data: Any) -> dict[str, Any] | None:
    """
    The dict holding the category arrays, or None if there is none.

    Ledgers exported by the inventory app nest the categories under
    ``inventory``; older ones keep them at the top level of ``data``.
    """
    if not isinstance(data, dict):
        return None
    section = data.get("inventory") if isinstance(data.get("inventory"), dict) else data
    if not any(isinstance(section.get(name), list) for name in LEDGER_CATEGORIES):
        return None
    return section


def _id_matches(entry: dict[str, Any], item_id: str) -> bool:
    return bool(item_id) and item_id in (str(entry.get("id") or ""), str(entry.get("itemId") or ""))


def _name_matches(entry: dict[str, Any], item_name: str) -> bool:
    return bool(item_name) and item_name in (str(entry.get("name") or ""), str(entry.get("itemName") or ""))


def _take(entries: Any, item: ReservationItem) -> float:
    """Deduct from matching entries in place; return the amount taken.

    Entries carrying the line's id are used when any exist; the name is
    only a fallback when none do.
    """
    if not isinstance(entries, list):
        return 0.0
    item_id = str(item.item_id).strip() if item.item_id is not None else ""
    item_name = item.item_name.strip()
    records = [entry for entry in entries if isinstance(entry, dict)]
    matched = [entry for entry in records if _id_matches(entry, item_id)]
    if not matched:
        matched = [entry for entry in records if _name_matches(entry, item_name)]

    remaining = item.quantity
    for entry in matched:
        if remaining <= 0:
            break
        current = parse_quantity(entry.get("quantity") or entry.get("qty") or 0)
        taken = min(remaining, current)
        entry["quantity"] = entry["qty"] = max(0.0, current - taken)
        remaining -= taken
    return item.quantity - remaining


def issue_date(moment: datetime) -> str:
    """Transactions are dated at midnight UTC of the issue day."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d") + "T00:00:00.000Z"


def deduct(
    data: dict[str, Any],
    items: Sequence[ReservationItem],
    request_id: str,
    moment: datetime,
    id_factory: Callable[[], str] = lambda: uuid4().hex,
) -> DeductionResult:
    """
    Deduct ``items`` from a copy of the ledger payload.

    Preconditions:
        ``inventory_section(data)`` is not None.

    Args:
        data: The ledger's ``data`` payload.
        items: Output of ``build_items`` for the requisition.
        request_id: Recorded on every appended transaction.
        moment: Issue time; only the date is kept.
        id_factory: Transaction id generator.
    """
    result = DeductionResult(data=copy.deepcopy(data))
    section = inventory_section(result.data)
    if section is None:
        raise ValueError("ledger payload has no inventory categories")
    if not isinstance(result.data.get("transactions"), list):
        result.data["transactions"] = []

    date_str = issue_date(moment)
    for item in items:
        if item.quantity <= 0:
            continue
        taken = _take(section.get(item.category), item)
        if taken < item.quantity:
            result.shortfalls.append(
                DeductionShortfall(
                    item_id=item.item_id,
                    item_name=item.item_name or str(item.item_id or ""),
                    category=item.category,
                    requested=item.quantity,
                    deducted=taken,
                )
            )
        if taken > 0:
            tx = {
                "id": id_factory(),
                "itemId": item.item_id if item.item_id not in (None, "") else item.item_name,
                "itemName": item.item_name or str(item.item_id or ""),
                "category": item.category,
                "type": ISSUE_TRANSACTION_TYPE,
                "quantity": -taken,
                "date": date_str,
                "requestId": request_id,
            }
            result.data["transactions"].append(tx)
            result.transactions.append(tx)
    return result
