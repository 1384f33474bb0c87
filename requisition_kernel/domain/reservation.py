"""
Reservation items -- the flat (item, category, quantity) view of a requisition.

Pure functions shared by the reservation service (what to hold) and the
ledger deduction (what to take).  Using one flattening for both is what makes
the manager-first and store-first issue paths deduct the same amounts.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from requisition_kernel.utils.serialization import parse_quantity


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    CONSUMED = "consumed"
    RELEASED = "released"


# Requisition line list -> inventory ledger category.
CATEGORY_BY_LINE: dict[str, str] = {
    "ingredients": "rawMaterials",
    "packing": "packingMaterials",
    "labels": "labels",
}

CATEGORIES: tuple[str, ...] = tuple(CATEGORY_BY_LINE.values())


@dataclass(frozen=True)
class ReservationItem:
    """One reserved line: a quantity of one inventory item in one category."""

    item_id: Any
    item_name: str
    quantity: float
    category: str

    @property
    def aggregate_key(self) -> str:
        """``category:itemId``, or ``category:itemName`` when there is no id."""
        ident = str(self.item_id) if self.item_id is not None else self.item_name
        return f"{self.category}:{ident}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "itemId": self.item_id,
            "itemName": self.item_name,
            "quantity": self.quantity,
            "category": self.category,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReservationItem:
        return cls(
            item_id=data.get("itemId"),
            item_name=str(data.get("itemName") or "").strip(),
            quantity=parse_quantity(data.get("quantity")),
            category=str(data.get("category") or "rawMaterials"),
        )


def _entry(line: dict[str, Any], category: str) -> ReservationItem:
    item_id = line.get("id") if line.get("id") is not None else line.get("itemId")
    quantity = line.get("quantity")
    if quantity in (None, "", 0):
        quantity = line.get("qty")
    return ReservationItem(
        item_id=item_id,
        item_name=str(line.get("name") or line.get("itemName") or "").strip(),
        quantity=parse_quantity(quantity),
        category=category,
    )


def build_items(line_items: dict[str, list[dict[str, Any]]]) -> list[ReservationItem]:
    """
    Flatten requisition line items in a fixed order: ingredients, then
    packing, then labels.

    Args:
        line_items: ``{"ingredients": [...], "packing": [...], "labels": [...]}``;
            missing or non-list entries count as empty.
    """
    items: list[ReservationItem] = []
    for line_name, category in CATEGORY_BY_LINE.items():
        lines = line_items.get(line_name) or []
        if not isinstance(lines, list):
            continue
        items.extend(_entry(line, category) for line in lines if isinstance(line, dict))
    return items


def aggregate_reserved(records: Iterable[dict[str, Any]]) -> dict[str, list[dict[str, Any]]]:
    """
    Sum the quantities of every ``reserved`` record by (category, item).

    Returns:
        ``{"rawMaterials": [...], "packingMaterials": [...], "labels": [...]}``
        where each entry is ``{"itemId", "itemName", "quantity"}`` and both
        identifiers carry the aggregation key's item part.  Categories other
        than the first two are reported under ``labels``.
    """
    totals: dict[str, float] = {}
    for record in records:
        if str(record.get("status") or "").lower() != ReservationStatus.RESERVED.value:
            continue
        for raw in record.get("items") or []:
            if not isinstance(raw, dict):
                continue
            item = ReservationItem.from_dict(raw)
            key = item.aggregate_key
            if key == f"{item.category}:":
                continue
            totals[key] = totals.get(key, 0.0) + item.quantity

    result: dict[str, list[dict[str, Any]]] = {name: [] for name in CATEGORIES}
    for key, quantity in totals.items():
        category, _, ident = key.partition(":")
        bucket = category if category in ("rawMaterials", "packingMaterials") else "labels"
        result[bucket].append({"itemId": ident, "itemName": ident, "quantity": quantity})
    return result
