"""
RequisitionService -- the requisition lifecycle state machine.

Responsibility:
    Owns every write to a requisition's ``status`` (and so its derived
    ``currentStage``).  Each action loads the requisition under a row lock,
    looks up the transition in ``REQUISITION_WORKFLOW``, applies the
    transition's declared effects (inventory deduction, reservation
    upsert/release), writes the requisition back with a compare-and-swap on
    the version it read, audits, and queues notifications.

Architecture position:
    Kernel > Services.  The largest service; composes the audit, user,
    ledger, reservation, sequence and notification services over the same
    session.  Invoked once per action by the dispatcher.

Invariants enforced:
    - ``status`` changes only through ``apply_action`` (plus the audited
      ``admin_override``); there is no other writer.
    - Protocol A (manager approves, store issues) and Protocol B (store
      issues, manager approves) share one reservation upsert and one
      deduction routine: both are transition effects, applied generically.
    - A deduction failure (missing ledger, conflict) raises before the
      requisition is written; the dispatcher's rollback discards the rest.
    - Terminal requisitions (REJECTED, CANCELLED, COMPLETED) accept no
      further action.

Failure modes:
    - ValidationError, RequisitionNotFoundError, PermissionDeniedError.
    - InvalidTransitionError when the action is not defined from the
      current state; RequisitionFinalizedError on a terminal requisition.
    - InventoryUnavailableError / ConflictError from the ledger.
    - ConflictError when another writer moved the requisition version.
"""

from datetime import timedelta
from typing import Any, Sequence

from sqlalchemy.orm import Session

from requisition_kernel.db.collections import REQUEST_THREADS, REQUISITIONS, WIP_BATCHES
from requisition_kernel.domain.clock import Clock
from requisition_kernel.domain.requisition import (
    EDITABLE_STATES,
    STAGE_LABELS,
    Requisition,
    RequisitionState,
)
from requisition_kernel.domain.requisition_workflow import (
    CONSUMED,
    RELEASED,
    REQUISITION_WORKFLOW,
    RESERVED,
)
from requisition_kernel.domain.reservation import ReservationStatus
from requisition_kernel.domain.workflow import Transition, Workflow
from requisition_kernel.exceptions import (
    InvalidTransitionError,
    ItemsLockedError,
    PermissionDeniedError,
    RequisitionFinalizedError,
    RequisitionNotFoundError,
    ValidationError,
)
from requisition_kernel.logging_config import get_logger
from requisition_kernel.services.audit_service import AuditService
from requisition_kernel.services.base import BaseService
from requisition_kernel.services.inventory_ledger_service import InventoryLedgerService
from requisition_kernel.services.notification_service import NotificationService
from requisition_kernel.services.reservation_service import ReservationService
from requisition_kernel.services.sequence_service import SequenceService
from requisition_kernel.services.user_service import APPROVER_ROLES, UserService
from requisition_kernel.utils.hashing import normalize_email
from requisition_kernel.utils.serialization import parse_quantity, safe_json

logger = get_logger("services.requisition")

DEFAULT_RESERVATION_TIMEOUT_HOURS = 48.0

STAGE_ACTIONS = ("ISSUE", "RECORD", "PARTIAL_ISSUE")
WIP_ACTIONS: dict[str, str] = {
    "PAUSE": "pause",
    "RESUME": "resume",
    "COMPLETE": "complete",
    "CANCEL": "cancel",
}
# Batch status mirrored when a WIP action is taken on the requisition.
WIP_BATCH_STATUS: dict[str, str] = {
    "pause": "paused",
    "resume": "started",
    "complete": "completed",
    "cancel": "cancelled",
}
FORCE_ACTIONS: dict[str, str] = {
    "FORCE_WIP": "force_wip",
    "FORCE_COMPLETE": "force_complete",
}
ITEM_LISTS = ("ingredients", "packing", "labels", "additional_items")


def _items(value: Any) -> list[dict[str, Any]]:
    parsed = safe_json(value, [])
    if not isinstance(parsed, list):
        return []
    return [item for item in parsed if isinstance(item, dict)]


def _item_named(item: dict[str, Any], name: str) -> bool:
    return item.get("name") == name or item.get("itemName") == name


class RequisitionService(BaseService):
    """
    Requisition lifecycle operations.

    Contract:
        Every public mutator takes the acting user's identifier and runs
        inside the caller's transaction.  The dispatcher holds the
        per-requisition lock for the duration of the call.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        workflow: Workflow = REQUISITION_WORKFLOW,
        reservation_timeout_hours: float = DEFAULT_RESERVATION_TIMEOUT_HOURS,
        approver_roles: Sequence[str] = APPROVER_ROLES,
    ):
        super().__init__(session, clock)
        self.workflow = workflow
        self.reservation_timeout_hours = reservation_timeout_hours
        self.audit = AuditService(session, self.clock)
        self.users = UserService(session, self.clock, approver_roles)
        self.ledger = InventoryLedgerService(session, self.clock, audit=self.audit)
        self.reservations = ReservationService(session, self.clock)
        self.notifications = NotificationService(session, self.clock)
        self.sequences = SequenceService(session, self.clock)

    # ------------------------------------------------------------------
    # Loading and saving
    # ------------------------------------------------------------------

    def load(self, request_id: Any) -> tuple[Requisition, int]:
        """
        Load a requisition under a row lock.

        Returns:
            The requisition and the version it was read at.
        """
        if request_id is None or str(request_id).strip() == "":
            raise ValidationError("No id", field="id")
        doc = self.store.get_for_update(REQUISITIONS, request_id)
        if doc is None:
            raise RequisitionNotFoundError(str(request_id))
        return Requisition.from_document(doc.body, doc.key), doc.version

    def save(self, requisition: Requisition, version: int) -> None:
        """Write back, failing with ConflictError if the version moved."""
        requisition.updated_at = self.clock.now_iso()
        self.store.set(
            REQUISITIONS,
            requisition.request_id,
            requisition.to_document(),
            merge=True,
            expected_version=version,
        )

    # ------------------------------------------------------------------
    # The transition engine
    # ------------------------------------------------------------------

    def apply_action(
        self,
        requisition: Requisition,
        version: int,
        action: str,
        actor: str | None,
        details: dict[str, Any] | None = None,
    ) -> Transition:
        """
        Fire ``action`` on ``requisition`` and persist the result.

        Effects run in a fixed order: deduction, reservation, status write.
        Any failure raises before the status write.
        """
        if requisition.is_terminal:
            raise RequisitionFinalizedError(requisition.request_id, requisition.status.value)
        transition = self.workflow.find(requisition.status.value, action)
        if transition is None:
            logger.info(
                "requisition_transition_rejected",
                extra={
                    "request_id": requisition.request_id,
                    "from_state": requisition.status.value,
                    "workflow_action": action,
                },
            )
            raise InvalidTransitionError(requisition.request_id, requisition.status.value, action)

        if transition.deducts_inventory:
            self.ledger.deduct_for_requisition(requisition)
        if transition.reservation in (RESERVED, CONSUMED):
            self.reservations.upsert(
                requisition.request_id, requisition.line_items, transition.reservation
            )
        elif transition.reservation == RELEASED:
            self.reservations.mark(requisition.request_id, ReservationStatus.RELEASED)

        previous = requisition.status
        requisition.status = RequisitionState(transition.to_state)
        now = self.clock.now_iso()
        if transition.deducts_inventory:
            requisition.issued_at = now
        if requisition.status is RequisitionState.PRODUCED:
            requisition.produced_at = now
        self.save(requisition, version)

        self.audit.record(
            f"requisition_{action}",
            actor,
            {
                "requestId": requisition.request_id,
                "from": previous.value,
                "to": requisition.status.value,
                **(details or {}),
            },
        )
        logger.info(
            "requisition_transitioned",
            extra={
                "request_id": requisition.request_id,
                "workflow_action": action,
                "from_state": previous.value,
                "to_state": requisition.status.value,
                "deducted": transition.deducts_inventory,
                "reservation_effect": transition.reservation,
            },
        )
        return transition

    def _notify(self, event_type: str, requisition: Requisition, **extra: Any) -> None:
        self.notifications.enqueue(event_type, {**requisition.notification_payload(), **extra})

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        *,
        requester_email: str | None,
        requester_name: str = "",
        request_type: str = "Production",
        product_name: str = "",
        requested_qty: Any = 0,
        unit: str = "",
        ingredients: Any = None,
        packing: Any = None,
        labels: Any = None,
        additional_items: Any = None,
        manager_email: str = "",
        notes: str = "",
        purpose: str = "",
    ) -> Requisition:
        email = normalize_email(requester_email)
        if not email:
            raise ValidationError("Requester email required", field="requesterEmail")
        qty = parse_quantity(requested_qty)
        text = str(notes or "")
        if str(purpose or "").strip():
            text = str(purpose).strip() + ("\n" + text if text else "")

        now = self.clock.now_iso()
        requisition = Requisition(
            request_id=self.sequences.next_id(SequenceService.REQUISITION),
            status=RequisitionState.SUBMITTED,
            type=str(request_type or "Production").strip() or "Production",
            requester_email=email,
            requester_name=str(requester_name or "").strip(),
            product_name=str(product_name or ""),
            requested_qty=qty if qty >= 0 else 0.0,
            unit=str(unit or ""),
            ingredients=_items(ingredients),
            packing=_items(packing),
            labels=_items(labels),
            additional_items=_items(additional_items),
            notes=text,
            manager_email=normalize_email(manager_email),
            created_at=now,
            updated_at=now,
        )
        self.store.set(REQUISITIONS, requisition.request_id, requisition.to_document(), expected_version=0)
        self.audit.record("requisition_submit", email, {"requestId": requisition.request_id})
        self.notifications.enqueue(
            "approval_needed",
            {
                "requestId": requisition.request_id,
                "managerEmail": requisition.manager_email,
                "productName": requisition.product_name,
                "requesterName": requisition.requester_name,
                "requesterEmail": requisition.requester_email,
                "requestedQty": requisition.requested_qty,
                "unit": requisition.unit,
                "requestedAt": now,
            },
        )
        logger.info(
            "requisition_submitted",
            extra={
                "request_id": requisition.request_id,
                "requisition_type": requisition.type,
                "line_count": sum(len(v) for v in requisition.line_items.values()),
            },
        )
        return requisition

    # ------------------------------------------------------------------
    # Manager decisions
    # ------------------------------------------------------------------

    def approve(self, request_id: str, user: str | None) -> Requisition:
        """Protocol A reserves; Protocol B (store already issued) deducts."""
        self.users.require_role(user, "Only Manager or Admin can approve requests")
        requisition, version = self.load(request_id)
        self.apply_action(requisition, version, "approve", user)
        if requisition.status is RequisitionState.ISSUED:
            self._notify("materials_issued", requisition, issuedBy=user or "Manager")
        else:
            self._notify("request_approved", requisition, approvedBy=user or "Manager")
        return requisition

    def reject(self, request_id: str, user: str | None, reason: str = "") -> Requisition:
        self.users.require_role(user, "Only Manager or Admin can reject requests")
        requisition, version = self.load(request_id)
        self.apply_action(requisition, version, "reject", user, {"reason": reason or ""})
        self._notify(
            "request_rejected", requisition,
            rejectedBy=user or "Manager", reason=(reason or "").strip() or "—",
        )
        return requisition

    def hold(self, request_id: str, user: str | None, reason: str = "") -> Requisition:
        self.users.require_role(user, "Only Manager or Admin can hold requests")
        requisition, version = self.load(request_id)
        self.apply_action(requisition, version, "hold", user, {"reason": reason or ""})
        self._notify(
            "request_on_hold", requisition,
            heldBy=user or "Manager", reason=(reason or "").strip() or "—",
        )
        return requisition

    def request_correction(
        self,
        request_id: str,
        user: str | None,
        corrections: Any = None,
        summary: str = "",
    ) -> Requisition:
        self.users.require_role(user, "Only Manager or Admin can request corrections")
        requisition, version = self.load(request_id)
        parsed = safe_json(corrections, None)
        if parsed is None and corrections not in (None, ""):
            parsed = [str(corrections)]
        requisition.corrections = parsed if isinstance(parsed, list) else ([parsed] if parsed else [])
        self.apply_action(requisition, version, "request_correction", user)
        self.notifications.enqueue(
            "correction_requested",
            {
                "requestId": requisition.request_id,
                "productName": requisition.product_name,
                "requestedBy": requisition.requester_name or str(user or ""),
                "requestedByEmail": requisition.requester_email,
                "summary": summary if isinstance(summary, str) and summary else "Ingredient correction requested",
            },
        )
        return requisition

    def resubmit(self, request_id: str, email: str | None) -> Requisition:
        """The requester sends a corrected request back for re-approval."""
        requisition, version = self.load(request_id)
        if requisition.requester_email != normalize_email(email):
            raise PermissionDeniedError(email, (), "Only the requester can resubmit")
        self.apply_action(requisition, version, "resubmit", email)
        self.notifications.enqueue(
            "approval_needed",
            {
                "requestId": requisition.request_id,
                "managerEmail": requisition.manager_email,
                "productName": requisition.product_name,
                "requesterName": requisition.requester_name,
                "requesterEmail": requisition.requester_email,
                "requestedQty": requisition.requested_qty,
                "unit": requisition.unit,
                "requestedAt": requisition.created_at,
            },
        )
        return requisition

    # ------------------------------------------------------------------
    # Store and production stages
    # ------------------------------------------------------------------

    def update_stage(
        self,
        request_id: str,
        stage_action: str | None,
        user: str | None = None,
        partial_qty: Any = None,
    ) -> Requisition:
        """
        ``ISSUE``: Protocol B before manager approval, Protocol A after.
        ``PARTIAL_ISSUE``: records the quantity issued so far.
        ``RECORD``: production recorded, moves to manufacturing.
        """
        verb = str(stage_action or "").strip().upper()
        if verb not in STAGE_ACTIONS:
            raise ValidationError(
                "Invalid stageAction: use ISSUE, RECORD or PARTIAL_ISSUE", field="stageAction"
            )
        if verb == "PARTIAL_ISSUE" and (partial_qty is None or str(partial_qty).strip() == ""):
            raise ValidationError("partialQty required for PARTIAL_ISSUE", field="partialQty")

        requisition, version = self.load(request_id)
        actor = user or "Store"
        if verb == "ISSUE":
            self.apply_action(requisition, version, "issue", actor)
            if requisition.status is RequisitionState.ISSUED:
                self._notify("materials_issued", requisition, issuedBy=actor)
        elif verb == "PARTIAL_ISSUE":
            requisition.partial_issued_qty = parse_quantity(partial_qty)
            self.apply_action(
                requisition, version, "partial_issue", actor,
                {"partialQty": requisition.partial_issued_qty},
            )
            self._notify(
                "partial_issued", requisition,
                partialQty=requisition.partial_issued_qty,
                requestedQty=requisition.requested_qty,
                issuedBy=actor,
            )
        else:
            self.apply_action(requisition, version, "record", actor)
        return requisition

    def wip_action(
        self,
        request_id: str,
        wip_action: str | None,
        email: str | None = None,
        reason: str = "",
    ) -> Requisition:
        action = WIP_ACTIONS.get(str(wip_action or "").strip().upper())
        if action is None:
            raise ValidationError(
                "Invalid wipAction: use PAUSE, RESUME, COMPLETE, or CANCEL", field="wipAction"
            )
        requisition, version = self.load(request_id)
        actor = normalize_email(email)
        self.apply_action(requisition, version, action, actor or None, {"reason": reason or ""})

        if requisition.batch_id and self.store.get(WIP_BATCHES, requisition.batch_id) is not None:
            self.store.update(
                WIP_BATCHES,
                requisition.batch_id,
                {"status": WIP_BATCH_STATUS[action], "updatedAt": self.clock.now_iso()},
            )
        if action == "pause":
            self._notify("production_paused", requisition, pausedBy=actor, reason=reason or "")
        elif action == "complete":
            self._notify("production_completed", requisition, completedBy=actor)
        elif action == "cancel":
            self._notify("production_cancelled", requisition, cancelledBy=actor, reason=reason or "")
        return requisition

    # ------------------------------------------------------------------
    # Line items
    # ------------------------------------------------------------------

    def _editable(self, request_id: str, email: str | None, verb: str) -> tuple[Requisition, int]:
        requisition, version = self.load(request_id)
        if requisition.requester_email != normalize_email(email):
            raise PermissionDeniedError(email, (), f"Only the requester can {verb} items")
        if requisition.status not in EDITABLE_STATES:
            raise ItemsLockedError(
                requisition.request_id,
                requisition.status.value,
                "edited" if verb == "edit" else "deleted",
            )
        return requisition, version

    def edit_item(
        self, request_id: str, item_name: str | None, quantity: Any, email: str | None
    ) -> Requisition:
        if quantity is None or str(quantity).strip() == "":
            new_qty = None
        else:
            try:
                new_qty = float(quantity)
            except (TypeError, ValueError):
                new_qty = None
        if not request_id or not item_name or new_qty is None:
            raise ValidationError("id, itemName and quantity required")
        requisition, version = self._editable(request_id, email, "edit")
        changed = 0
        for name in ITEM_LISTS:
            for item in getattr(requisition, name):
                if _item_named(item, item_name):
                    item["quantity"] = item["qty"] = new_qty
                    changed += 1
        self.save(requisition, version)
        self.audit.record(
            "requisition_item_edit", email,
            {"requestId": requisition.request_id, "itemName": item_name, "quantity": new_qty},
        )
        logger.info(
            "requisition_item_edited",
            extra={"request_id": requisition.request_id, "item_name": item_name, "matched": changed},
        )
        return requisition

    def delete_item(self, request_id: str, item_name: str | None, email: str | None) -> Requisition:
        if not request_id or not item_name:
            raise ValidationError("id and itemName required")
        requisition, version = self._editable(request_id, email, "delete")
        for name in ITEM_LISTS:
            kept = [item for item in getattr(requisition, name) if not _item_named(item, item_name)]
            setattr(requisition, name, kept)
        self.save(requisition, version)
        self.audit.record(
            "requisition_item_delete", email,
            {"requestId": requisition.request_id, "itemName": item_name},
        )
        return requisition

    def add_material_request(
        self,
        request_id: str,
        item_name: str | None,
        quantity: Any,
        category: str = "",
        user: str | None = None,
    ) -> Requisition:
        requisition, version = self.load(request_id)
        if requisition.is_terminal:
            raise RequisitionFinalizedError(requisition.request_id, requisition.status.value)
        requisition.additional_items.append(
            {"category": category or "", "itemName": item_name or "", "quantity": parse_quantity(quantity)}
        )
        self.save(requisition, version)
        self.audit.record(
            "requisition_material_added", user,
            {"requestId": requisition.request_id, "itemName": item_name or ""},
        )
        return requisition

    def update_packing_labels(
        self,
        request_id: str,
        packing: Any = None,
        labels: Any = None,
        user: str | None = None,
    ) -> Requisition:
        """Replace packing and/or label lines; a live reservation follows them."""
        requisition, version = self.load(request_id)
        if requisition.is_terminal:
            raise RequisitionFinalizedError(requisition.request_id, requisition.status.value)
        if packing is not None:
            requisition.packing = _items(packing)
        if labels is not None:
            requisition.labels = _items(labels)
        self.save(requisition, version)
        reservation = self.reservations.get(requisition.request_id)
        if reservation is not None and reservation.status is ReservationStatus.RESERVED:
            self.reservations.upsert(requisition.request_id, requisition.line_items, RESERVED)
        self.audit.record("requisition_packing_labels", user, {"requestId": requisition.request_id})
        return requisition

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def add_thread_note(
        self, request_id: str, note: str, user: str | None = None, role: str | None = None
    ) -> None:
        if request_id is None or str(request_id).strip() == "":
            raise ValidationError("No id", field="id")
        if self.store.get(REQUISITIONS, request_id) is None:
            raise RequisitionNotFoundError(str(request_id))
        self.store.add(
            REQUEST_THREADS,
            {
                "requestId": str(request_id),
                "timestamp": self.clock.now_iso(),
                "actor": role or "User",
                "action": "NOTE",
                "user": user or "",
                "remarks": note or "",
            },
        )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def admin_override(
        self,
        request_id: str,
        user: str | None,
        status: str | None = None,
        stage: str | None = None,
    ) -> Requisition:
        """
        Set the state directly, skipping transition effects.

        ``status`` names a state; ``stage`` may instead name a stage label.
        """
        self.users.require_role(user, "Admin privileges required")
        target: RequisitionState | None = None
        if status:
            try:
                target = RequisitionState(str(status).strip().upper())
            except ValueError:
                raise ValidationError(f"Unknown status: {status}", field="status") from None
        elif stage:
            wanted = str(stage).strip().upper()
            target = next(
                (state for state, label in STAGE_LABELS.items() if label.upper() == wanted), None
            )
            if target is None:
                raise ValidationError(f"Unknown stage: {stage}", field="stage")

        requisition, version = self.load(request_id)
        if target is None or target is requisition.status:
            return requisition
        previous = requisition.status
        requisition.status = target
        self.save(requisition, version)
        self.audit.record(
            "requisition_admin_override", user,
            {"requestId": requisition.request_id, "from": previous.value, "to": target.value},
        )
        logger.warning(
            "requisition_admin_override",
            extra={
                "request_id": requisition.request_id,
                "from_state": previous.value,
                "to_state": target.value,
            },
        )
        return requisition

    def admin_force_action(self, request_id: str, user: str | None, force_type: str | None) -> Requisition:
        self.users.require_role(user, "Admin privileges required")
        action = FORCE_ACTIONS.get(str(force_type or "").strip().upper())
        if action is None:
            raise ValidationError("Invalid type: use FORCE_WIP or FORCE_COMPLETE", field="type")
        requisition, version = self.load(request_id)
        self.apply_action(requisition, version, action, user)
        return requisition

    # ------------------------------------------------------------------
    # Reservation timeout sweep
    # ------------------------------------------------------------------

    def release_expired(self, hours: Any = None, actor: str = "system") -> list[str]:
        """
        Release ``reserved`` reservations older than ``hours``.

        A requisition still awaiting issue returns to APPROVED (reservation
        expired, store must re-issue); in any other state only the
        reservation is released.

        Returns:
            The request ids whose reservations were released.
        """
        limit = parse_quantity(hours) or self.reservation_timeout_hours
        cutoff = self.clock.now() - timedelta(hours=limit)
        released: list[str] = []
        for reservation in self.reservations.expired(cutoff):
            request_id = reservation.request_id
            doc = self.store.get_for_update(REQUISITIONS, request_id)
            requisition = Requisition.from_document(doc.body, doc.key) if doc is not None else None
            if requisition is not None and self.workflow.find(
                requisition.status.value, "expire_reservation"
            ):
                self.apply_action(
                    requisition, doc.version, "expire_reservation", actor, {"hours": limit}
                )
            else:
                self.reservations.mark(request_id, ReservationStatus.RELEASED)

            self.audit.record(
                "reservation_timeout_released", actor, {"requestId": request_id, "hours": limit}
            )
            self.notifications.enqueue(
                "reservation_released",
                {
                    "requestId": request_id,
                    "hours": limit,
                    "productName": requisition.product_name if requisition is not None else "",
                },
            )
            released.append(request_id)

        logger.info(
            "reservations_released",
            extra={"count": len(released), "hours": limit, "cutoff": cutoff.isoformat()},
        )
        return released
