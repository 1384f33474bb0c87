"""
Unit tests for reservation flattening, aggregation and ledger deduction.

Verifies:
- build_items() maps line lists to ledger categories in a fixed order
- aggregate_reserved() sums only reserved records, by category and item
- deduct() takes from matching entries, never below zero, and records
  one negative requisition-issue transaction per deducted line
"""

from datetime import datetime, timezone

import pytest

from requisition_kernel.domain.ledger import (
    ISSUE_TRANSACTION_TYPE,
    deduct,
    inventory_section,
    issue_date,
)
from requisition_kernel.domain.reservation import (
    ReservationItem,
    aggregate_reserved,
    build_items,
)

ISSUE_TIME = datetime(2024, 3, 4, 15, 30, tzinfo=timezone.utc)


def _ledger(**quantities) -> dict:
    return {
        "inventory": {
            "rawMaterials": [
                {"id": "RM-1", "name": "Resin", "quantity": quantities.get("resin", 100)},
                {"id": "RM-2", "name": "Hardener", "quantity": quantities.get("hardener", 40)},
            ],
            "packingMaterials": [{"id": "PK-1", "name": "Bottle", "quantity": 50}],
            "labels": [{"id": "LB-1", "name": "Front Label", "quantity": 200}],
        },
        "transactions": [],
    }


def _ids():
    counter = iter(range(1, 1000))
    return lambda: f"tx-{next(counter)}"


class TestBuildItems:

    def test_categories_and_order(self):
        items = build_items({
            "labels": [{"id": "LB-1", "name": "Front Label", "quantity": 3}],
            "ingredients": [{"id": "RM-1", "name": "Resin", "quantity": 10}],
            "packing": [{"itemId": "PK-1", "itemName": "Bottle", "qty": 4}],
        })
        assert [(i.category, i.item_id, i.quantity) for i in items] == [
            ("rawMaterials", "RM-1", 10.0),
            ("packingMaterials", "PK-1", 4.0),
            ("labels", "LB-1", 3.0),
        ]
        assert items[1].item_name == "Bottle"

    def test_qty_used_when_quantity_zero(self):
        [item] = build_items({"ingredients": [{"name": "Resin", "quantity": 0, "qty": "6"}]})
        assert item.quantity == 6.0
        assert item.item_id is None

    def test_missing_and_malformed_lists(self):
        assert build_items({"ingredients": None, "packing": "oops", "labels": ["x", 3]}) == []


class TestAggregateReserved:

    def test_sums_reserved_only(self):
        def record(status, qty):
            return {
                "status": status,
                "items": [ReservationItem("RM-1", "Resin", qty, "rawMaterials").to_dict()],
            }

        totals = aggregate_reserved([
            record("reserved", 10),
            record("reserved", 5),
            record("consumed", 100),
            record("released", 100),
        ])
        assert totals["rawMaterials"] == [{"itemId": "RM-1", "itemName": "RM-1", "quantity": 15.0}]
        assert totals["packingMaterials"] == []
        assert totals["labels"] == []

    def test_name_used_when_no_id(self):
        totals = aggregate_reserved([{
            "status": "RESERVED",
            "items": [{"itemName": "Bottle", "quantity": 2, "category": "packingMaterials"}],
        }])
        assert totals["packingMaterials"] == [{"itemId": "Bottle", "itemName": "Bottle", "quantity": 2.0}]

    def test_other_categories_reported_under_labels(self):
        totals = aggregate_reserved([{
            "status": "reserved",
            "items": [{"itemId": "X", "quantity": 1, "category": "finishedGoods"}],
        }])
        assert totals["labels"] == [{"itemId": "X", "itemName": "X", "quantity": 1.0}]

    def test_unidentifiable_items_skipped(self):
        totals = aggregate_reserved([{"status": "reserved", "items": [{"quantity": 5}]}])
        assert totals == {"rawMaterials": [], "packingMaterials": [], "labels": []}


class TestInventorySection:

    def test_nested(self):
        data = _ledger()
        assert inventory_section(data) is data["inventory"]

    def test_flat_legacy_layout(self):
        data = {"rawMaterials": [], "transactions": []}
        assert inventory_section(data) is data

    @pytest.mark.parametrize("data", [None, [], {}, {"inventory": {}}, {"transactions": []}])
    def test_unrecognised(self, data):
        assert inventory_section(data) is None


class TestDeduct:

    def test_deducts_and_records_transactions(self):
        items = build_items({
            "ingredients": [{"id": "RM-1", "name": "Resin", "quantity": 10}],
            "labels": [{"name": "Front Label", "quantity": 2}],
        })
        result = deduct(_ledger(), items, "REQ-000001", ISSUE_TIME, id_factory=_ids())

        section = result.data["inventory"]
        assert section["rawMaterials"][0]["quantity"] == 90
        assert section["labels"][0]["quantity"] == 198
        assert result.shortfalls == []
        assert result.total_deducted == 12
        assert result.data["transactions"] == result.transactions
        first = result.transactions[0]
        assert first == {
            "id": "tx-1",
            "itemId": "RM-1",
            "itemName": "Resin",
            "category": "rawMaterials",
            "type": ISSUE_TRANSACTION_TYPE,
            "quantity": -10.0,
            "date": "2024-03-04T00:00:00.000Z",
            "requestId": "REQ-000001",
        }
        # Without an id the item name stands in.
        assert result.transactions[1]["itemId"] == "Front Label"

    def test_input_not_mutated(self):
        data = _ledger()
        deduct(data, build_items({"ingredients": [{"id": "RM-1", "quantity": 10}]}), "R", ISSUE_TIME)
        assert data["inventory"]["rawMaterials"][0]["quantity"] == 100
        assert data["transactions"] == []

    def test_shortfall_clamps_at_zero(self):
        items = build_items({"ingredients": [{"id": "RM-2", "name": "Hardener", "quantity": 55}]})
        result = deduct(_ledger(), items, "REQ-000002", ISSUE_TIME)

        assert result.data["inventory"]["rawMaterials"][1]["quantity"] == 0
        [shortfall] = result.shortfalls
        assert shortfall.item_name == "Hardener"
        assert shortfall.deducted == 40
        assert shortfall.shortfall == 15
        assert result.transactions[0]["quantity"] == -40

    def test_unknown_item_is_full_shortfall_without_transaction(self):
        items = build_items({"ingredients": [{"id": "RM-9", "name": "Pigment", "quantity": 3}]})
        result = deduct(_ledger(), items, "REQ-000003", ISSUE_TIME)
        assert result.transactions == []
        assert result.shortfalls[0].shortfall == 3

    def test_id_match_preferred_over_same_named_entry(self):
        data = {
            "inventory": {
                "rawMaterials": [
                    {"id": "X", "name": "Resin", "quantity": 100},
                    {"id": "R1", "name": "Resin Grade B", "quantity": 100},
                ],
            },
        }
        items = build_items({"ingredients": [{"id": "R1", "name": "Resin", "quantity": 10}]})
        result = deduct(data, items, "REQ-000005", ISSUE_TIME)

        first, second = result.data["inventory"]["rawMaterials"]
        assert first["quantity"] == 100
        assert second["quantity"] == 90
        assert result.shortfalls == []

    def test_id_match_shortfall_not_covered_by_name(self):
        data = {
            "inventory": {
                "rawMaterials": [
                    {"id": "X", "name": "Resin", "quantity": 100},
                    {"id": "R1", "name": "Resin Grade B", "quantity": 4},
                ],
            },
        }
        items = build_items({"ingredients": [{"id": "R1", "name": "Resin", "quantity": 10}]})
        result = deduct(data, items, "REQ-000006", ISSUE_TIME)

        assert result.data["inventory"]["rawMaterials"][0]["quantity"] == 100
        assert result.shortfalls[0].shortfall == 6

    def test_name_used_when_no_entry_has_the_id(self):
        items = build_items({"ingredients": [{"id": "OLD-7", "name": "Hardener", "quantity": 5}]})
        result = deduct(_ledger(), items, "REQ-000007", ISSUE_TIME)
        assert result.data["inventory"]["rawMaterials"][1]["quantity"] == 35
        assert result.shortfalls == []

    def test_zero_quantity_lines_ignored(self):
        items = build_items({"ingredients": [{"id": "RM-1", "quantity": 0}]})
        result = deduct(_ledger(), items, "REQ-000004", ISSUE_TIME)
        assert result.transactions == []
        assert result.shortfalls == []

    def test_missing_transactions_list_created(self):
        data = _ledger()
        del data["transactions"]
        result = deduct(data, build_items({"ingredients": [{"id": "RM-1", "quantity": 1}]}), "R", ISSUE_TIME)
        assert len(result.data["transactions"]) == 1

    def test_no_inventory_structure_raises(self):
        with pytest.raises(ValueError):
            deduct({"transactions": []}, [], "R", ISSUE_TIME)

    def test_issue_date_is_utc_midnight(self):
        late = datetime(2024, 3, 4, 23, 59, tzinfo=timezone.utc)
        assert issue_date(late) == "2024-03-04T00:00:00.000Z"
