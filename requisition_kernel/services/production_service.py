"""
ProductionService -- WIP batches and dispatch requests.

Responsibility:
    Links work-in-progress batches to requisitions and mirrors batch status
    onto the linked requisition through the state machine; creates dispatch
    requests for produced requisitions and records their approval.

Architecture position:
    Kernel > Services.  Never writes a requisition's status itself; every
    status change goes through ``RequisitionService.apply_action``.

Invariants enforced:
    - A dispatch can only be created for a requisition in PRODUCED.
    - A dispatch is approved at most once, by a manager or admin.
    - Saving a batch for an ISSUED requisition moves it to MANUFACTURING.
"""

from typing import Any

from sqlalchemy.orm import Session

from requisition_kernel.db.collections import DISPATCHES, REQUISITIONS, WIP_BATCHES
from requisition_kernel.db.document_store import Document
from requisition_kernel.domain.clock import Clock
from requisition_kernel.domain.requisition import Requisition, RequisitionState
from requisition_kernel.exceptions import (
    BatchNotFoundError,
    DispatchAlreadyApprovedError,
    DispatchNotFoundError,
    InvalidTransitionError,
    ValidationError,
)
from requisition_kernel.logging_config import get_logger
from requisition_kernel.services.base import BaseService
from requisition_kernel.services.requisition_service import RequisitionService
from requisition_kernel.services.sequence_service import SequenceService
from requisition_kernel.utils.serialization import parse_quantity

logger = get_logger("services.production")

PENDING_APPROVAL = "PENDING_APPROVAL"
APPROVED = "APPROVED"

# Batch status -> requisition action, keyed by the state the action starts from.
_SYNC_ACTIONS: dict[str, dict[RequisitionState, str]] = {
    "completed": {
        RequisitionState.ISSUED: "produce",
        RequisitionState.MANUFACTURING: "produce",
        RequisitionState.PAUSED: "produce",
    },
    "paused": {
        RequisitionState.ISSUED: "pause",
        RequisitionState.MANUFACTURING: "pause",
    },
    "started": {
        RequisitionState.ISSUED: "record",
        RequisitionState.PAUSED: "resume",
    },
    "cancelled": {
        RequisitionState.ISSUED: "cancel",
        RequisitionState.MANUFACTURING: "cancel",
        RequisitionState.PAUSED: "cancel",
        RequisitionState.PRODUCED: "cancel",
    },
}


def _batch_link(body: dict[str, Any]) -> str:
    return str(body.get("linkedReqId") or body.get("requestId") or body.get("reqId") or "")


class ProductionService(BaseService):

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        requisitions: RequisitionService | None = None,
    ):
        super().__init__(session, clock)
        self.requisitions = requisitions or RequisitionService(session, self.clock)
        self.notifications = self.requisitions.notifications
        self.sequences = SequenceService(session, self.clock)
        self.users = self.requisitions.users

    # ------------------------------------------------------------------
    # WIP batches
    # ------------------------------------------------------------------

    def save_wip_batch(
        self,
        batch_id: str | None,
        linked_req_id: str | None = None,
        status: str = "started",
        product_name: str = "",
        item_name: str = "",
        target_qty: Any = 0,
        unit: str = "",
        formula_id: Any = None,
        production_slip_id: Any = None,
        user: str | None = None,
    ) -> str:
        batch = str(batch_id or "").strip()
        if not batch:
            raise ValidationError("batchId or batchNo required", field="batchId")
        linked = str(linked_req_id or "").strip()

        payload: dict[str, Any] = {
            "id": batch,
            "batchId": batch,
            "batchNo": batch,
            "status": str(status or "started").lower(),
            "productName": product_name or item_name or "",
            "itemName": item_name or product_name or "",
            "targetQty": parse_quantity(target_qty),
            "unit": unit or "",
            "updatedAt": self.clock.now_iso(),
        }
        if linked:
            payload["linkedReqId"] = linked
        if formula_id is not None:
            payload["formulaId"] = formula_id
        if production_slip_id is not None:
            payload["productionSlipId"] = production_slip_id
        self.store.set(WIP_BATCHES, batch, payload, merge=True)

        if linked and self.store.get(REQUISITIONS, linked) is not None:
            requisition, version = self.requisitions.load(linked)
            requisition.batch_id = batch
            if requisition.status is RequisitionState.ISSUED:
                self.requisitions.apply_action(
                    requisition, version, "record", user, {"batchId": batch}
                )
            else:
                self.requisitions.save(requisition, version)
        logger.info("wip_batch_saved", extra={"batch_id": batch, "linked_request": linked})
        return batch

    def _find_batch(self, batch_id: str) -> Document | None:
        doc = self.store.get(WIP_BATCHES, batch_id)
        if doc is not None:
            return doc
        for candidate in self.store.scan_all(WIP_BATCHES):
            body = candidate.body
            if batch_id in (str(body.get("id")), str(body.get("batchId")), str(body.get("batchNo"))):
                return candidate
        return None

    def sync_wip_to_req(
        self,
        batch_id: str | None,
        status: str | None,
        reason: str = "",
        user: str | None = None,
    ) -> RequisitionState | None:
        """
        Record a batch status and mirror it onto the linked requisition.

        Returns:
            The linked requisition's state afterwards, or None if unlinked.
        """
        batch = str(batch_id or "").strip()
        if not batch:
            raise ValidationError("batchId required", field="batchId")
        doc = self._find_batch(batch)
        if doc is None:
            raise BatchNotFoundError(batch)
        new_status = str(status or "paused").lower()
        fields: dict[str, Any] = {"status": new_status, "updatedAt": self.clock.now_iso()}
        if reason:
            fields["reason"] = reason
        self.store.update(WIP_BATCHES, doc.key, fields)

        linked = _batch_link(doc.body)
        if not linked or self.store.get(REQUISITIONS, linked) is None:
            return None
        requisition, version = self.requisitions.load(linked)
        action = _SYNC_ACTIONS.get(new_status, {}).get(requisition.status)
        if action is None:
            logger.info(
                "wip_sync_no_transition",
                extra={
                    "batch_id": batch,
                    "request_id": requisition.request_id,
                    "batch_status": new_status,
                    "current_state": requisition.status.value,
                },
            )
            return requisition.status

        self.requisitions.apply_action(requisition, version, action, user, {"batchId": batch})
        actor = (user or "").strip() or "WIP sync"
        payload = requisition.notification_payload()
        if action == "produce":
            self.notifications.enqueue("production_completed", {**payload, "completedBy": actor})
        elif action == "pause":
            self.notifications.enqueue(
                "production_paused", {**payload, "pausedBy": actor, "reason": reason or ""}
            )
        elif action == "cancel":
            self.notifications.enqueue(
                "production_cancelled", {**payload, "cancelledBy": actor, "reason": reason or ""}
            )
        return requisition.status

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def request_dispatch(
        self,
        request_id: str | None,
        product_name: str | None,
        quantity: Any,
        unit: str = "",
        user: str | None = None,
        remarks: str = "",
    ) -> str:
        qty = parse_quantity(quantity)
        if not request_id or not product_name or qty <= 0:
            raise ValidationError("Request ID, product name and quantity required")
        requisition, _ = self.requisitions.load(request_id)
        if requisition.status is not RequisitionState.PRODUCED:
            raise InvalidTransitionError(
                requisition.request_id, requisition.status.value, "dispatch"
            )

        dispatch_id = self.sequences.next_id(SequenceService.DISPATCH)
        requested_by = user or "Store"
        self.store.set(
            DISPATCHES,
            dispatch_id,
            {
                "dispatchId": dispatch_id,
                "requestId": requisition.request_id,
                "batchId": requisition.batch_id,
                "productName": product_name,
                "quantity": qty,
                "unit": unit or requisition.unit,
                "status": PENDING_APPROVAL,
                "requestedBy": requested_by,
                "requestedAt": self.clock.now_iso(),
                "approvedBy": "",
                "approvedAt": None,
                "mainInvSynced": "N",
                "remarks": remarks or "",
            },
            expected_version=0,
        )
        self.notifications.enqueue(
            "dispatch_approval_required",
            {
                "dispatchId": dispatch_id,
                "requestId": requisition.request_id,
                "productName": product_name,
                "quantity": qty,
                "unit": unit or requisition.unit,
                "requestedBy": requested_by,
            },
        )
        logger.info(
            "dispatch_requested",
            extra={"dispatch_id": dispatch_id, "request_id": requisition.request_id, "quantity": qty},
        )
        return dispatch_id

    def approve_dispatch(self, dispatch_id: str | None, user: str | None) -> None:
        if not dispatch_id:
            raise ValidationError("Dispatch ID required", field="dispatchId")
        self.users.require_role(user, "Only Manager or Admin can approve dispatch")
        doc = self.store.get_for_update(DISPATCHES, dispatch_id)
        if doc is None:
            raise DispatchNotFoundError(str(dispatch_id))
        if str(doc.get("status") or doc.get("Status") or "").upper() == APPROVED:
            raise DispatchAlreadyApprovedError(str(dispatch_id))

        self.store.update(
            DISPATCHES,
            dispatch_id,
            {
                "status": APPROVED,
                "approvedBy": user,
                "approvedAt": self.clock.now_iso(),
                "mainInvSynced": "Y",
            },
            expected_version=doc.version,
        )
        request_id = str(doc.get("requestId") or doc.get("RequestID") or "")
        requester_email = ""
        if request_id:
            req_doc = self.store.get(REQUISITIONS, request_id)
            if req_doc is not None:
                requester_email = Requisition.from_document(req_doc.body, req_doc.key).requester_email
        self.requisitions.audit.record(
            "dispatch_approve", user, {"dispatchId": str(dispatch_id), "requestId": request_id}
        )
        self.notifications.enqueue(
            "dispatch_approved",
            {
                "requestId": request_id,
                "requesterEmail": requester_email,
                "productName": doc.get("productName") or doc.get("ProductName") or "",
                "quantity": doc.get("quantity", doc.get("Quantity")),
                "unit": doc.get("unit") or doc.get("Unit") or "",
                "approvedBy": user,
            },
        )
        logger.info("dispatch_approved", extra={"dispatch_id": str(dispatch_id)})
