"""
Requisition -- the document the lifecycle state machine owns.

Responsibility:
    Defines the closed set of requisition states, the human-readable stage
    label derived from each, the requisition value object and its mapping
    to and from stored documents.  Older documents that carry a free-text
    stage and a loosely-used status are canonicalised once, on load.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - ``status`` is always a ``RequisitionState`` member.
    - ``currentStage`` is derived from ``status`` and is written only by
      ``to_document()``; no control decision ever reads it.

Failure modes:
    - ``canonicalize_legacy`` never raises: unknown combinations map to
      SUBMITTED and are logged as ``requisition_legacy_state_unrecognised``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from requisition_kernel.logging_config import get_logger
from requisition_kernel.utils.serialization import parse_quantity, safe_json

logger = get_logger("domain.requisition")


class RequisitionState(str, Enum):
    """Canonical requisition lifecycle states."""

    SUBMITTED = "SUBMITTED"
    PENDING_MANAGER_APPROVAL = "PENDING_MANAGER_APPROVAL"
    CORRECTION_REQUIRED = "CORRECTION_REQUIRED"
    ON_HOLD = "ON_HOLD"
    REJECTED = "REJECTED"
    AWAITING_MATERIAL_ISSUE = "AWAITING_MATERIAL_ISSUE"
    APPROVED = "APPROVED"  # approved, reservation expired; store must re-issue
    ISSUED_PENDING_APPROVAL = "ISSUED_PENDING_APPROVAL"
    PARTIALLY_ISSUED = "PARTIALLY_ISSUED"
    ISSUED = "ISSUED"
    MANUFACTURING = "MANUFACTURING"
    PAUSED = "PAUSED"
    PRODUCED = "PRODUCED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


STAGE_LABELS: dict[RequisitionState, str] = {
    RequisitionState.SUBMITTED: "Pending Manager Approval",
    RequisitionState.PENDING_MANAGER_APPROVAL: "Pending Manager Re-approval",
    RequisitionState.CORRECTION_REQUIRED: "Awaiting Manager Re-approval",
    RequisitionState.ON_HOLD: "On Hold",
    RequisitionState.REJECTED: "Rejected",
    RequisitionState.AWAITING_MATERIAL_ISSUE: "Awaiting Material Issue",
    RequisitionState.APPROVED: "Awaiting Material Issue (reservation expired – re-issue required)",
    RequisitionState.ISSUED_PENDING_APPROVAL: "Awaiting Manager Approval (Store Issued)",
    RequisitionState.PARTIALLY_ISSUED: "Partially Issued – remaining to issue",
    RequisitionState.ISSUED: "Material Issued / WIP",
    RequisitionState.MANUFACTURING: "Manufacturing / WIP",
    RequisitionState.PAUSED: "Paused",
    RequisitionState.PRODUCED: "Awaiting Dispatch",
    RequisitionState.COMPLETED: "Production Completed",
    RequisitionState.CANCELLED: "Cancelled",
}

TERMINAL_STATES: frozenset[RequisitionState] = frozenset({
    RequisitionState.REJECTED,
    RequisitionState.CANCELLED,
    RequisitionState.COMPLETED,
})

# Line items may be edited or deleted by the requester only in these states.
EDITABLE_STATES: frozenset[RequisitionState] = frozenset({
    RequisitionState.SUBMITTED,
    RequisitionState.CORRECTION_REQUIRED,
})

PENDING_APPROVAL_STATES: frozenset[RequisitionState] = frozenset({
    RequisitionState.SUBMITTED,
    RequisitionState.PENDING_MANAGER_APPROVAL,
    RequisitionState.ISSUED_PENDING_APPROVAL,
})

PENDING_ISSUE_STATES: frozenset[RequisitionState] = frozenset({
    RequisitionState.SUBMITTED,
    RequisitionState.PENDING_MANAGER_APPROVAL,
    RequisitionState.AWAITING_MATERIAL_ISSUE,
    RequisitionState.APPROVED,
    RequisitionState.PARTIALLY_ISSUED,
})

# Named list filters used by the request queries and the stage counters.
STAGE_FILTERS: dict[str, frozenset[RequisitionState]] = {
    "PENDING_APPROVALS": PENDING_APPROVAL_STATES,
    "PENDING_ISSUE": PENDING_ISSUE_STATES,
    "WIP": frozenset({
        RequisitionState.ISSUED,
        RequisitionState.MANUFACTURING,
        RequisitionState.PAUSED,
    }),
    "DISPATCH": frozenset({RequisitionState.PRODUCED}),
    "PENDING_RECORD": frozenset({RequisitionState.ISSUED}),
    "PARTIAL_ISSUE": frozenset({RequisitionState.PARTIALLY_ISSUED}),
}


def stage_label(state: RequisitionState) -> str:
    return STAGE_LABELS[state]


def canonicalize_legacy(status: Any, stage: Any = None) -> RequisitionState:
    """
    Map a stored (status, stage) pair to exactly one canonical state.

    Documents written by the current code carry a canonical status and are
    returned unchanged.  Older documents used a handful of loose statuses
    whose meaning depended on the free-text stage; those are resolved here
    and nowhere else.
    """
    status_text = str(status or "").strip().upper()
    stage_text = str(stage or "").strip().upper()

    if status_text == "ISSUED":
        if stage_text == "PAUSED":
            return RequisitionState.PAUSED
        if "MANUFACTURING" in stage_text:
            return RequisitionState.MANUFACTURING
        if "AWAITING DISPATCH" in stage_text:
            return RequisitionState.PRODUCED
        return RequisitionState.ISSUED

    if status_text in ("APPROVED", "APPROVE_REQUEST", "APPROVE_PARTIAL"):
        if "EXPIRED" in stage_text:
            return RequisitionState.APPROVED
        return RequisitionState.AWAITING_MATERIAL_ISSUE

    if status_text in ("SUBMITTED", "PENDING"):
        if "RE-APPROVAL" in stage_text:
            return RequisitionState.PENDING_MANAGER_APPROVAL
        return RequisitionState.SUBMITTED

    try:
        return RequisitionState(status_text)
    except ValueError:
        pass

    # No usable status: fall back to the stage text.
    for state, label in STAGE_LABELS.items():
        if stage_text and stage_text == label.upper():
            return state

    logger.warning(
        "requisition_legacy_state_unrecognised",
        extra={"legacy_status": status_text, "legacy_stage": stage_text},
    )
    return RequisitionState.SUBMITTED


def _first(body: dict[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        value = body.get(name)
        if value is not None and value != "":
            return value
    return default


def _item_list(value: Any) -> list[dict[str, Any]]:
    items = safe_json(value, [])
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


@dataclass
class Requisition:
    """
    A material or production request.

    Line item lists hold plain dicts of the form
    ``{"id"|"itemId", "name"|"itemName", "quantity", "unit"?}``.
    """

    request_id: str
    status: RequisitionState = RequisitionState.SUBMITTED
    type: str = "Production"
    requester_email: str = ""
    requester_name: str = ""
    product_name: str = ""
    requested_qty: float = 0.0
    unit: str = ""
    ingredients: list[dict[str, Any]] = field(default_factory=list)
    packing: list[dict[str, Any]] = field(default_factory=list)
    labels: list[dict[str, Any]] = field(default_factory=list)
    additional_items: list[dict[str, Any]] = field(default_factory=list)
    corrections: list[Any] = field(default_factory=list)
    notes: str = ""
    manager_email: str = ""
    created_at: str = ""
    updated_at: str = ""
    issued_at: str = ""
    produced_at: str = ""
    batch_id: str = ""
    partial_issued_qty: float = 0.0

    @property
    def current_stage(self) -> str:
        return stage_label(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def line_items(self) -> dict[str, list[dict[str, Any]]]:
        """The lines that reserve and consume stock."""
        return {
            "ingredients": self.ingredients,
            "packing": self.packing,
            "labels": self.labels,
        }

    @classmethod
    def from_document(cls, body: dict[str, Any], key: str | None = None) -> Requisition:
        """Build from a stored body, accepting both current and older field names."""
        status = canonicalize_legacy(
            _first(body, "status", "Status"),
            _first(body, "currentStage", "CurrentStage", "stage"),
        )
        corrections = safe_json(_first(body, "corrections", "Corrections"), [])
        return cls(
            request_id=str(_first(body, "requestId", "RequestID", "id", default=key or "")),
            status=status,
            type=str(_first(body, "type", "Type", default="Production")),
            requester_email=str(_first(body, "requesterEmail", "EmployeeEm", default="")).lower().strip(),
            requester_name=str(_first(body, "requesterName", "EmployeeName", default="")).strip(),
            product_name=str(_first(body, "productName", "ProductName", default="")),
            requested_qty=parse_quantity(_first(body, "requestedQty", "RequestedQty", "quantity")),
            unit=str(_first(body, "unit", "Unit", default="")),
            ingredients=_item_list(_first(body, "ingredients", "Formulaltems")),
            packing=_item_list(_first(body, "packing", "Additionalltems")),
            labels=_item_list(_first(body, "labels", "Labels")),
            additional_items=_item_list(_first(body, "additionalItems", "AdditionalItems")),
            corrections=corrections if isinstance(corrections, list) else [corrections],
            notes=str(_first(body, "notes", "Notes", "remarks", default="")),
            manager_email=str(_first(body, "managerEmail", "ManagerEmail", default="")).lower().strip(),
            created_at=str(_first(body, "createdAt", "CreatedDate", "date", default="")),
            updated_at=str(_first(body, "updatedAt", "UpdatedDate", default="")),
            issued_at=str(_first(body, "issuedAt", "IssuedAt", default="")),
            produced_at=str(_first(body, "producedAt", "ProducedAt", default="")),
            batch_id=str(_first(body, "batchId", "BatchID", default="")),
            partial_issued_qty=parse_quantity(_first(body, "partialIssuedQty", "PartialIssuedQty")),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "type": self.type,
            "status": self.status.value,
            "currentStage": self.current_stage,
            "requesterEmail": self.requester_email,
            "requesterName": self.requester_name,
            "productName": self.product_name,
            "requestedQty": self.requested_qty,
            "unit": self.unit,
            "ingredients": self.ingredients,
            "packing": self.packing,
            "labels": self.labels,
            "additionalItems": self.additional_items,
            "corrections": self.corrections,
            "notes": self.notes,
            "managerEmail": self.manager_email,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "issuedAt": self.issued_at,
            "producedAt": self.produced_at,
            "batchId": self.batch_id,
            "partialIssuedQty": self.partial_issued_qty,
        }

    def to_row(self, light: bool = False) -> dict[str, Any]:
        """List-view row; ``light`` omits line items except for research requests."""
        row: dict[str, Any] = {
            "id": self.request_id,
            "type": self.type,
            "status": self.status.value,
            "requesterName": self.requester_name,
            "requesterEmail": self.requester_email,
            "productName": self.product_name,
            "quantity": self.requested_qty,
            "unit": self.unit,
            "remarks": self.notes,
            "date": self.created_at,
            "stage": self.current_stage,
            "currentStage": self.current_stage,
        }
        if self.partial_issued_qty:
            row["partialIssuedQty"] = self.partial_issued_qty
        if not light:
            row["ingredients"] = self.ingredients
            row["packing"] = self.packing
            row["labels"] = self.labels
            row["additionalItems"] = self.additional_items
            row["corrections"] = self.corrections
        elif self.type.upper() == "RESEARCH":
            row["additionalItems"] = self.additional_items
        return row

    def to_detail(self, thread: list[dict[str, Any]]) -> dict[str, Any]:
        detail = self.to_row(light=False)
        detail.update({
            "notes": self.notes,
            "managerEmail": self.manager_email,
            "batchId": self.batch_id,
            "partialIssuedQty": self.partial_issued_qty,
            "issuedAt": self.issued_at,
            "thread": thread,
        })
        return detail

    def notification_payload(self) -> dict[str, Any]:
        """Fields every requisition notification carries."""
        return {
            "requestId": self.request_id,
            "requesterEmail": self.requester_email,
            "requesterName": self.requester_name,
            "productName": self.product_name,
            "quantity": self.requested_qty,
            "unit": self.unit,
        }
