"""
Unit tests for the Requisition document model.

Legacy documents carried a loose status plus a free-text stage; every
stored pair must resolve to exactly one canonical state.
"""

import pytest

from requisition_kernel.domain.requisition import (
    STAGE_LABELS,
    Requisition,
    RequisitionState,
    canonicalize_legacy,
)

S = RequisitionState


class TestCanonicalizeLegacy:

    @pytest.mark.parametrize(
        "status,stage,expected",
        [
            ("ISSUED", "Paused", S.PAUSED),
            ("ISSUED", "Manufacturing / WIP", S.MANUFACTURING),
            ("ISSUED", "Awaiting Dispatch", S.PRODUCED),
            ("ISSUED", "Material Issued / WIP", S.ISSUED),
            ("Approved", "Awaiting Material Issue (reservation expired)", S.APPROVED),
            ("APPROVE_PARTIAL", "", S.AWAITING_MATERIAL_ISSUE),
            ("Pending", "Awaiting Manager Re-approval", S.PENDING_MANAGER_APPROVAL),
            ("Submitted", "", S.SUBMITTED),
            ("rejected", "", S.REJECTED),
            ("ISSUED_PENDING_APPROVAL", None, S.ISSUED_PENDING_APPROVAL),
        ],
    )
    def test_legacy_pairs(self, status, stage, expected):
        assert canonicalize_legacy(status, stage) is expected

    def test_stage_label_used_without_status(self):
        assert canonicalize_legacy(None, "Production Completed") is S.COMPLETED

    def test_correction_stage_label(self):
        assert STAGE_LABELS[S.CORRECTION_REQUIRED] == "Awaiting Manager Re-approval"
        assert canonicalize_legacy("CORRECTION_REQUIRED", "Awaiting Manager Re-approval") is S.CORRECTION_REQUIRED
        assert canonicalize_legacy(None, "Awaiting Manager Re-approval") is S.CORRECTION_REQUIRED

    def test_stage_labels_are_distinct(self):
        assert len(set(STAGE_LABELS.values())) == len(STAGE_LABELS)

    def test_unrecognised_pair_defaults_to_submitted(self):
        assert canonicalize_legacy("WEIRD", "nothing known") is S.SUBMITTED

    @pytest.mark.parametrize("state", list(S))
    def test_canonical_states_round_trip(self, state):
        assert canonicalize_legacy(state.value, STAGE_LABELS[state]) is state


class TestRequisitionDocument:

    def test_legacy_field_names(self):
        body = {
            "RequestID": "REQ-17",
            "Status": "ISSUED",
            "CurrentStage": "Paused",
            "EmployeeEm": " Jane@Plant.Example ",
            "ProductName": "Epoxy Kit",
            "RequestedQty": "3",
            "Formulaltems": '[{"name": "Resin", "quantity": 2}]',
            "Additionalltems": [{"name": "Bottle", "quantity": 1}],
            "Corrections": '"swap resin"',
        }
        req = Requisition.from_document(body, "REQ-17")
        assert req.request_id == "REQ-17"
        assert req.status is S.PAUSED
        assert req.requester_email == "jane@plant.example"
        assert req.requested_qty == 3.0
        assert req.ingredients == [{"name": "Resin", "quantity": 2}]
        assert req.packing == [{"name": "Bottle", "quantity": 1}]
        assert req.corrections == ["swap resin"]

    def test_document_round_trip(self):
        req = Requisition(
            request_id="REQ-000001",
            status=S.AWAITING_MATERIAL_ISSUE,
            requester_email="jane@plant.example",
            ingredients=[{"id": "RM-1", "name": "Resin", "quantity": 10}],
        )
        doc = req.to_document()
        assert doc["status"] == "AWAITING_MATERIAL_ISSUE"
        assert doc["currentStage"] == "Awaiting Material Issue"
        assert Requisition.from_document(doc) == req

    def test_line_items_exclude_additional(self):
        req = Requisition(request_id="R", additional_items=[{"itemName": "Gloves"}])
        assert set(req.line_items) == {"ingredients", "packing", "labels"}

    def test_light_row_omits_items_except_research(self):
        req = Requisition(request_id="R", ingredients=[{"name": "Resin"}])
        assert "ingredients" not in req.to_row(light=True)
        assert req.to_row()["ingredients"] == [{"name": "Resin"}]
        research = Requisition(request_id="R", type="Research", additional_items=[{"itemName": "x"}])
        assert research.to_row(light=True)["additionalItems"] == [{"itemName": "x"}]

    @pytest.mark.parametrize("state", [S.REJECTED, S.CANCELLED, S.COMPLETED])
    def test_terminal(self, state):
        assert Requisition(request_id="R", status=state).is_terminal
