"""
IntakeService -- formula requests, stock adjustment requests, consumed slips.

Side channels around the requisition lifecycle.  None of them touches a
requisition's status or the inventory ledger.
"""

from typing import Any

from requisition_kernel.db.collections import CONSUMED_SLIPS, FORMULA_REQUESTS, STOCK_ADJUSTMENTS
from requisition_kernel.exceptions import (
    FormulaRequestNotFoundError,
    StockAdjustmentNotFoundError,
    ValidationError,
)
from requisition_kernel.logging_config import get_logger
from requisition_kernel.services.base import BaseService
from requisition_kernel.services.notification_service import NotificationService
from requisition_kernel.services.sequence_service import SequenceService
from requisition_kernel.utils.hashing import normalize_email
from requisition_kernel.utils.serialization import parse_quantity, safe_json

logger = get_logger("services.intake")


class IntakeService(BaseService):

    def submit_formula_request(
        self,
        email: str | None,
        name: str = "",
        formula_basis: str = "",
        formula_details: str = "",
    ) -> str:
        requester = normalize_email(email)
        if not requester:
            raise ValidationError("Email required", field="email")
        formula_id = SequenceService(self.session, self.clock).next_id(
            SequenceService.FORMULA_REQUEST
        )
        self.store.set(
            FORMULA_REQUESTS,
            formula_id,
            {
                "id": formula_id,
                "email": requester,
                "name": name or "",
                "formulaBasis": formula_basis or "",
                "formulaDetails": formula_details or "",
                "status": "Pending",
                "createdAt": self.clock.now_iso(),
            },
            expected_version=0,
        )
        NotificationService(self.session, self.clock).enqueue(
            "formula_request_submitted",
            {
                "formulaRequestId": formula_id,
                "requestedBy": requester,
                "requestedByName": name or "",
                "formulaBasis": formula_basis or "",
            },
        )
        logger.info("formula_request_submitted", extra={"formula_request_id": formula_id})
        return formula_id

    def update_formula_request_status(
        self,
        formula_id: str | None,
        status: str | None = None,
        user: str | None = None,
        notes: str = "",
    ) -> None:
        if not formula_id:
            raise ValidationError("No id", field="id")
        doc = self.store.get(FORMULA_REQUESTS, formula_id)
        if doc is None:
            raise FormulaRequestNotFoundError(str(formula_id))
        new_status = status or "Added"
        self.store.update(
            FORMULA_REQUESTS,
            formula_id,
            {
                "status": new_status,
                "resolvedBy": user or "",
                "notes": notes or "",
                "resolvedAt": self.clock.now_iso(),
            },
        )
        NotificationService(self.session, self.clock).enqueue(
            "formula_request_resolved",
            {
                "formulaRequestId": str(formula_id),
                "status": new_status,
                "resolvedBy": user or "",
                "requestedBy": doc.get("email") or "",
            },
        )
        logger.info(
            "formula_request_resolved",
            extra={"formula_request_id": str(formula_id), "status": new_status},
        )

    def submit_stock_adjustment(
        self,
        item_name: str = "",
        quantity: Any = 0,
        unit: str = "",
        item_id: str = "",
        requisition_id: str = "",
        user: str | None = None,
    ) -> str:
        adjustment_id = SequenceService(self.session, self.clock).next_id(
            SequenceService.STOCK_ADJUSTMENT
        )
        self.store.set(
            STOCK_ADJUSTMENTS,
            adjustment_id,
            {
                "requestId": adjustment_id,
                "requisitionId": requisition_id or "",
                "itemName": item_name or "",
                "itemId": item_id or "",
                "quantity": parse_quantity(quantity),
                "unit": unit or "",
                "requestedBy": user or "",
                "requestedAt": self.clock.now_iso(),
                "status": "Pending",
            },
            expected_version=0,
        )
        logger.info("stock_adjustment_submitted", extra={"adjustment_id": adjustment_id})
        return adjustment_id

    def mark_stock_adjustment_done(self, adjustment_id: str | None, done_by: str = "") -> None:
        if not adjustment_id:
            raise ValidationError("No requestId", field="requestId")
        if self.store.get(STOCK_ADJUSTMENTS, adjustment_id) is None:
            raise StockAdjustmentNotFoundError(str(adjustment_id))
        self.store.update(
            STOCK_ADJUSTMENTS,
            adjustment_id,
            {"status": "Done", "doneBy": done_by or "", "doneAt": self.clock.now_iso()},
        )

    def mark_used(self, slip_id: str | None, items: Any = None, context: str = "") -> bool:
        """Record a consumed slip.  Without an id there is nothing to record."""
        if not slip_id:
            return False
        parsed = safe_json(items, [])
        self.store.set(
            CONSUMED_SLIPS,
            slip_id,
            {
                "id": str(slip_id),
                "items": parsed if isinstance(parsed, list) else [],
                "consumedAt": self.clock.now_iso(),
                "context": context or "",
            },
        )
        return True
