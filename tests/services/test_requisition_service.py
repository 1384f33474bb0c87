"""
Tests for RequisitionService, the requisition state machine.

Verifies:
- Protocol A (approve, then issue) and Protocol B (issue, then approve)
  reserve on the first step and deduct exactly once on the second
- Reject and hold release the reservation without touching the ledger
- Invalid and terminal transitions raise and write nothing
- Line items are editable only before approval, by the requester
- Admin override and forced actions
- The reservation timeout sweep
"""

import pytest

from requisition_kernel.db.collections import INVENTORY_LEDGER, LEDGER_KEY
from requisition_kernel.domain.requisition import RequisitionState
from requisition_kernel.domain.reservation import ReservationStatus
from requisition_kernel.exceptions import (
    InvalidTransitionError,
    InventoryUnavailableError,
    ItemsLockedError,
    PermissionDeniedError,
    RequisitionFinalizedError,
    RequisitionNotFoundError,
    ValidationError,
)
from requisition_kernel.services.requisition_service import RequisitionService
from tests.conftest import EMPLOYEE_EMAIL, MANAGER_EMAIL, STORE_EMAIL

S = RequisitionState


@pytest.fixture
def service(seeded, clock):
    with seeded.session_scope() as session:
        yield RequisitionService(session, clock)


def _submit(service: RequisitionService, qty: float = 10, **extra) -> str:
    fields = {
        "requester_email": EMPLOYEE_EMAIL,
        "requester_name": "Jane",
        "product_name": "Epoxy Kit",
        "requested_qty": 1,
        "unit": "kits",
        "ingredients": [{"id": "RM-1", "name": "Resin", "quantity": qty}],
        "packing": [{"id": "PK-1", "name": "Bottle", "quantity": 2}],
        "manager_email": MANAGER_EMAIL,
    }
    fields.update(extra)
    return service.submit(**fields).request_id


def _resin(service: RequisitionService) -> float:
    return service.ledger.snapshot().inventory["rawMaterials"][0]["quantity"]


def _status(service: RequisitionService, request_id: str) -> RequisitionState:
    return service.load(request_id)[0].status


def _queued(service: RequisitionService) -> list[str]:
    return [entry.get("type") for entry in service.notifications.pending()]


class TestSubmit:

    def test_creates_submitted_requisition(self, service):
        request_id = _submit(service)
        requisition, version = service.load(request_id)
        assert request_id == "REQ-000001"
        assert version == 1
        assert requisition.status is S.SUBMITTED
        assert requisition.requester_email == EMPLOYEE_EMAIL
        assert requisition.ingredients == [{"id": "RM-1", "name": "Resin", "quantity": 10}]
        assert _queued(service) == ["approval_needed"]
        assert [e.user for e in service.audit.entries("requisition_submit")] == [EMPLOYEE_EMAIL]

    def test_ids_increase(self, service):
        assert [_submit(service), _submit(service)] == ["REQ-000001", "REQ-000002"]

    def test_requester_email_required(self, service):
        with pytest.raises(ValidationError):
            _submit(service, requester_email="  ")

    def test_items_as_json_text(self, service):
        request_id = _submit(service, labels='[{"id": "LB-1", "name": "Front Label", "quantity": 3}]')
        assert service.load(request_id)[0].labels[0]["name"] == "Front Label"

    def test_purpose_prefixes_notes(self, service):
        request_id = _submit(service, purpose="Trial batch", notes="rush")
        assert service.load(request_id)[0].notes == "Trial batch\nrush"


class TestProtocolA:
    """Manager approves first; the store issue deducts."""

    def test_approve_reserves_without_deducting(self, service):
        request_id = _submit(service)
        service.approve(request_id, MANAGER_EMAIL)
        assert _status(service, request_id) is S.AWAITING_MATERIAL_ISSUE
        reservation = service.reservations.get(request_id)
        assert reservation.status is ReservationStatus.RESERVED
        assert {(i.item_name, i.quantity) for i in reservation.items} == {("Resin", 10), ("Bottle", 2)}
        assert _resin(service) == 100
        assert "request_approved" in _queued(service)

    def test_issue_deducts_and_consumes(self, service):
        request_id = _submit(service)
        service.approve(request_id, MANAGER_EMAIL)
        service.update_stage(request_id, "ISSUE", STORE_EMAIL)
        requisition = service.load(request_id)[0]
        assert requisition.status is S.ISSUED
        assert requisition.issued_at == "2024-03-04T09:00:00.000Z"
        assert _resin(service) == 90
        assert service.reservations.get(request_id).status is ReservationStatus.CONSUMED
        txs = [tx for tx in service.ledger.snapshot().transactions if tx["itemId"] == "RM-1"]
        assert len(txs) == 1
        assert txs[0]["quantity"] == -10
        assert txs[0]["type"] == "requisition-issue"
        assert txs[0]["requestId"] == request_id
        assert "materials_issued" in _queued(service)

    def test_approve_requires_manager(self, service):
        request_id = _submit(service)
        with pytest.raises(PermissionDeniedError):
            service.approve(request_id, EMPLOYEE_EMAIL)
        assert _status(service, request_id) is S.SUBMITTED

    def test_partial_issue_then_issue(self, service):
        request_id = _submit(service)
        service.approve(request_id, MANAGER_EMAIL)
        service.update_stage(request_id, "PARTIAL_ISSUE", STORE_EMAIL, partial_qty=4)
        requisition = service.load(request_id)[0]
        assert requisition.status is S.PARTIALLY_ISSUED
        assert requisition.partial_issued_qty == 4
        assert _resin(service) == 100
        service.update_stage(request_id, "ISSUE", STORE_EMAIL)
        assert _status(service, request_id) is S.ISSUED
        assert _resin(service) == 90

    def test_partial_issue_needs_quantity(self, service):
        request_id = _submit(service)
        service.approve(request_id, MANAGER_EMAIL)
        with pytest.raises(ValidationError, match="partialQty"):
            service.update_stage(request_id, "PARTIAL_ISSUE", STORE_EMAIL)


class TestProtocolB:
    """Store issues first; manager approval deducts."""

    def test_issue_first_reserves(self, service):
        request_id = _submit(service, qty=30)
        service.update_stage(request_id, "ISSUE", STORE_EMAIL)
        assert _status(service, request_id) is S.ISSUED_PENDING_APPROVAL
        assert service.reservations.get(request_id).status is ReservationStatus.RESERVED
        assert _resin(service) == 100

    def test_approve_after_issue_deducts(self, service):
        request_id = _submit(service, qty=30)
        service.update_stage(request_id, "ISSUE", STORE_EMAIL)
        service.approve(request_id, MANAGER_EMAIL)
        assert _status(service, request_id) is S.ISSUED
        assert _resin(service) == 70
        assert service.reservations.get(request_id).status is ReservationStatus.CONSUMED
        assert "materials_issued" in _queued(service)

    def test_reject_after_issue_releases(self, service):
        request_id = _submit(service, qty=30)
        service.update_stage(request_id, "ISSUE", STORE_EMAIL)
        service.reject(request_id, MANAGER_EMAIL, "wrong resin")
        assert _status(service, request_id) is S.REJECTED
        assert service.reservations.get(request_id).status is ReservationStatus.RELEASED
        assert _resin(service) == 100
        assert service.ledger.snapshot().transactions == []


class TestDeduction:

    def test_shortfall_deducts_what_exists(self, service):
        request_id = _submit(service, qty=150)
        service.approve(request_id, MANAGER_EMAIL)
        service.update_stage(request_id, "ISSUE", STORE_EMAIL)
        assert _resin(service) == 0
        [entry] = [
            e for e in service.audit.entries("requisition_issue_deduction_shortfall")
            if e.details["itemName"] == "Resin"
        ]
        assert entry.details["shortfall"] == 50

    def test_missing_ledger_aborts_issue(self, service):
        request_id = _submit(service)
        service.approve(request_id, MANAGER_EMAIL)
        service.store.delete(INVENTORY_LEDGER, LEDGER_KEY)
        with pytest.raises(InventoryUnavailableError) as exc_info:
            service.update_stage(request_id, "ISSUE", STORE_EMAIL)
        assert exc_info.value.code == "NO_INVENTORY"
        assert _status(service, request_id) is S.AWAITING_MATERIAL_ISSUE
        assert service.reservations.get(request_id).status is ReservationStatus.RESERVED


class TestManagerDecisions:

    def test_hold_releases_reservation(self, service):
        request_id = _submit(service)
        service.approve(request_id, MANAGER_EMAIL)
        service.hold(request_id, MANAGER_EMAIL, "waiting on supplier")
        assert _status(service, request_id) is S.ON_HOLD
        assert service.reservations.get(request_id).status is ReservationStatus.RELEASED

    def test_approve_from_hold(self, service):
        request_id = _submit(service)
        service.hold(request_id, MANAGER_EMAIL)
        service.approve(request_id, MANAGER_EMAIL)
        assert _status(service, request_id) is S.AWAITING_MATERIAL_ISSUE

    def test_correction_and_resubmit(self, service):
        request_id = _submit(service)
        service.request_correction(request_id, MANAGER_EMAIL, ["use grade B resin"], "Swap resin")
        requisition = service.load(request_id)[0]
        assert requisition.status is S.CORRECTION_REQUIRED
        assert requisition.corrections == ["use grade B resin"]
        assert "correction_requested" in _queued(service)

        with pytest.raises(PermissionDeniedError):
            service.resubmit(request_id, STORE_EMAIL)
        service.resubmit(request_id, EMPLOYEE_EMAIL)
        assert _status(service, request_id) is S.PENDING_MANAGER_APPROVAL

    def test_plain_text_correction(self, service):
        request_id = _submit(service)
        service.request_correction(request_id, MANAGER_EMAIL, "more hardener")
        assert service.load(request_id)[0].corrections == ["more hardener"]

    def test_reject_is_final(self, service):
        request_id = _submit(service)
        service.reject(request_id, MANAGER_EMAIL, "duplicate")
        with pytest.raises(RequisitionFinalizedError, match="already finalized"):
            service.approve(request_id, MANAGER_EMAIL)

    def test_invalid_transition(self, service):
        request_id = _submit(service)
        with pytest.raises(InvalidTransitionError) as exc_info:
            service.update_stage(request_id, "RECORD", STORE_EMAIL)
        assert exc_info.value.current_state == "SUBMITTED"
        assert exc_info.value.action == "record"
        assert _status(service, request_id) is S.SUBMITTED

    def test_unknown_request(self, service):
        with pytest.raises(RequisitionNotFoundError):
            service.approve("REQ-999999", MANAGER_EMAIL)

    def test_unknown_stage_action(self, service):
        request_id = _submit(service)
        with pytest.raises(ValidationError, match="stageAction"):
            service.update_stage(request_id, "SHIP", STORE_EMAIL)


class TestProduction:

    def _issued(self, service) -> str:
        request_id = _submit(service)
        service.approve(request_id, MANAGER_EMAIL)
        service.update_stage(request_id, "ISSUE", STORE_EMAIL)
        return request_id

    def test_record_pause_resume_complete(self, service):
        request_id = self._issued(service)
        service.update_stage(request_id, "RECORD", STORE_EMAIL)
        assert _status(service, request_id) is S.MANUFACTURING
        service.wip_action(request_id, "PAUSE", STORE_EMAIL, "mixer down")
        assert _status(service, request_id) is S.PAUSED
        service.wip_action(request_id, "resume", STORE_EMAIL)
        assert _status(service, request_id) is S.MANUFACTURING
        service.wip_action(request_id, "COMPLETE", STORE_EMAIL)
        assert _status(service, request_id) is S.COMPLETED
        assert {"production_paused", "production_completed"} <= set(_queued(service))

    def test_cancel_is_final(self, service):
        request_id = self._issued(service)
        service.wip_action(request_id, "CANCEL", STORE_EMAIL, "spoiled")
        with pytest.raises(RequisitionFinalizedError):
            service.wip_action(request_id, "RESUME", STORE_EMAIL)

    def test_unknown_wip_action(self, service):
        request_id = self._issued(service)
        with pytest.raises(ValidationError, match="wipAction"):
            service.wip_action(request_id, "STOP", STORE_EMAIL)


class TestLineItems:

    def test_edit_before_approval(self, service):
        request_id = _submit(service)
        service.edit_item(request_id, "Resin", "12.5", EMPLOYEE_EMAIL)
        [resin] = service.load(request_id)[0].ingredients
        assert resin["quantity"] == 12.5

    def test_edit_after_approval_locked(self, service):
        request_id = _submit(service)
        service.approve(request_id, MANAGER_EMAIL)
        with pytest.raises(ItemsLockedError, match="Items cannot be edited after approval") as exc_info:
            service.edit_item(request_id, "Resin", 5, EMPLOYEE_EMAIL)
        assert exc_info.value.code == "ITEMS_LOCKED"

    def test_delete_after_approval_locked(self, service):
        request_id = _submit(service)
        service.approve(request_id, MANAGER_EMAIL)
        with pytest.raises(ItemsLockedError, match="deleted"):
            service.delete_item(request_id, "Bottle", EMPLOYEE_EMAIL)

    def test_only_requester_edits(self, service):
        request_id = _submit(service)
        with pytest.raises(PermissionDeniedError):
            service.edit_item(request_id, "Resin", 5, MANAGER_EMAIL)

    def test_edit_needs_quantity(self, service):
        request_id = _submit(service)
        with pytest.raises(ValidationError):
            service.edit_item(request_id, "Resin", "lots", EMPLOYEE_EMAIL)

    def test_delete_item(self, service):
        request_id = _submit(service)
        service.delete_item(request_id, "Bottle", EMPLOYEE_EMAIL)
        assert service.load(request_id)[0].packing == []

    def test_add_material_request(self, service):
        request_id = _submit(service)
        service.add_material_request(request_id, "Gloves", "4", "consumables", STORE_EMAIL)
        assert service.load(request_id)[0].additional_items == [
            {"category": "consumables", "itemName": "Gloves", "quantity": 4.0}
        ]

    def test_packing_labels_follow_live_reservation(self, service):
        request_id = _submit(service)
        service.approve(request_id, MANAGER_EMAIL)
        service.update_packing_labels(
            request_id, labels=[{"id": "LB-1", "name": "Front Label", "quantity": 7}], user=STORE_EMAIL
        )
        reserved = {i.item_name: i.quantity for i in service.reservations.get(request_id).items}
        assert reserved["Front Label"] == 7
        assert reserved["Bottle"] == 2

    def test_thread_note_requires_requisition(self, service):
        with pytest.raises(RequisitionNotFoundError):
            service.add_thread_note("REQ-404", "hello", STORE_EMAIL)


class TestAdministration:

    def test_override_by_status(self, service):
        request_id = _submit(service)
        service.admin_override(request_id, MANAGER_EMAIL, status="on_hold")
        assert _status(service, request_id) is S.ON_HOLD
        [entry] = service.audit.entries("requisition_admin_override")
        assert entry.details["from"] == "SUBMITTED"

    def test_override_by_stage_label(self, service):
        request_id = _submit(service)
        service.admin_override(request_id, MANAGER_EMAIL, stage="Awaiting Dispatch")
        assert _status(service, request_id) is S.PRODUCED

    def test_override_unknown_status(self, service):
        request_id = _submit(service)
        with pytest.raises(ValidationError, match="Unknown status"):
            service.admin_override(request_id, MANAGER_EMAIL, status="SHIPPED")

    def test_override_requires_manager(self, service):
        request_id = _submit(service)
        with pytest.raises(PermissionDeniedError):
            service.admin_override(request_id, STORE_EMAIL, status="COMPLETED")

    def test_force_wip_skips_deduction(self, service):
        request_id = _submit(service)
        service.admin_force_action(request_id, MANAGER_EMAIL, "FORCE_WIP")
        assert _status(service, request_id) is S.ISSUED
        assert _resin(service) == 100

    def test_force_complete(self, service):
        request_id = _submit(service)
        service.admin_force_action(request_id, MANAGER_EMAIL, "force_complete")
        assert _status(service, request_id) is S.PRODUCED

    def test_unknown_force_type(self, service):
        request_id = _submit(service)
        with pytest.raises(ValidationError, match="FORCE_WIP"):
            service.admin_force_action(request_id, MANAGER_EMAIL, "FORCE_REFUND")


class TestReleaseExpired:

    def test_expired_reservation_returns_to_approved(self, service, clock):
        request_id = _submit(service)
        service.approve(request_id, MANAGER_EMAIL)
        clock.advance(hours=49)
        assert service.release_expired() == [request_id]
        assert _status(service, request_id) is S.APPROVED
        assert service.reservations.get(request_id).status is ReservationStatus.RELEASED
        assert "reservation_released" in _queued(service)
        assert len(service.audit.entries("reservation_timeout_released")) == 1

    def test_fresh_reservation_untouched(self, service, clock):
        request_id = _submit(service)
        service.approve(request_id, MANAGER_EMAIL)
        clock.advance(hours=47)
        assert service.release_expired() == []
        assert _status(service, request_id) is S.AWAITING_MATERIAL_ISSUE

    def test_explicit_hours(self, service, clock):
        request_id = _submit(service)
        service.approve(request_id, MANAGER_EMAIL)
        clock.advance(hours=3)
        assert service.release_expired(hours=2) == [request_id]

    def test_state_without_expiry_only_releases(self, service, clock):
        request_id = _submit(service)
        service.update_stage(request_id, "ISSUE", STORE_EMAIL)
        clock.advance(hours=49)
        assert service.release_expired() == [request_id]
        assert _status(service, request_id) is S.ISSUED_PENDING_APPROVAL
        assert service.reservations.get(request_id).status is ReservationStatus.RELEASED

    def test_reissue_after_expiry(self, service, clock):
        request_id = _submit(service)
        service.approve(request_id, MANAGER_EMAIL)
        clock.advance(hours=49)
        service.release_expired()
        service.update_stage(request_id, "ISSUE", STORE_EMAIL)
        assert _status(service, request_id) is S.ISSUED
        assert _resin(service) == 90
