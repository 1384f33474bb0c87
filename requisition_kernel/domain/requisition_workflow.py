"""
Module: requisition_kernel.domain.requisition_workflow
Responsibility:
    Declarative state machine for the requisition lifecycle: states,
    transitions, guards, and which transitions reserve, consume or release
    stock.

Architecture:
    Kernel domain layer -- purely declarative frozen dataclasses.  No I/O.
    ``RequisitionService`` consults ``REQUISITION_WORKFLOW`` for every
    status change and applies the declared effects.

    Two issue protocols run through the same effects:
      * manager first: ``approve`` reserves, store ``issue`` deducts and
        consumes;
      * store first: ``issue`` reserves without deducting, manager
        ``approve`` deducts and consumes, ``reject`` releases.

Invariants:
    - State names are ``RequisitionState`` values.
    - Only transitions with ``deducts_inventory=True`` touch the ledger, and
      every one of them leaves the reservation ``consumed``.
    - REJECTED, CANCELLED and COMPLETED have no outgoing transitions.
"""

from requisition_kernel.domain.requisition import RequisitionState as S
from requisition_kernel.domain.requisition import TERMINAL_STATES
from requisition_kernel.domain.workflow import Guard, Transition, Workflow
from requisition_kernel.logging_config import get_logger

logger = get_logger("domain.requisition_workflow")

RESERVED = "reserved"
CONSUMED = "consumed"
RELEASED = "released"

# Guards
MANAGER_DECISION = Guard("manager_decision", "Caller's role contains manager or admin")
REQUESTER_ONLY = Guard("requester_only", "Caller is the original requester")
LEDGER_PRESENT = Guard("ledger_present", "Inventory ledger exists and has a recognisable structure")
RESERVATION_EXPIRED = Guard("reservation_expired", "Reservation older than the timeout threshold")
ADMIN_OVERRIDE = Guard("admin_override", "Caller's role contains manager or admin")

_PRE_APPROVAL = (S.SUBMITTED, S.PENDING_MANAGER_APPROVAL, S.CORRECTION_REQUIRED, S.ON_HOLD)
_AWAITING_ISSUE = (S.AWAITING_MATERIAL_ISSUE, S.APPROVED, S.PARTIALLY_ISSUED)
_IN_PRODUCTION = (S.MANUFACTURING, S.ISSUED, S.PAUSED)


def _fan_in(sources, to_state, action, **kwargs) -> tuple[Transition, ...]:
    return tuple(Transition(src.value, to_state.value, action=action, **kwargs) for src in sources)


def _force(to_state: S, action: str) -> tuple[Transition, ...]:
    sources = [s for s in S if s not in TERMINAL_STATES and s != to_state]
    return _fan_in(sources, to_state, action, guard=ADMIN_OVERRIDE)


REQUISITION_WORKFLOW = Workflow(
    name="requisition",
    description="Material requisition from submission through issue, production and dispatch",
    initial_state=S.SUBMITTED.value,
    states=tuple(s.value for s in S),
    terminal_states=tuple(s.value for s in S if s in TERMINAL_STATES),
    transitions=(
        # Manager decisions
        *_fan_in(_PRE_APPROVAL, S.AWAITING_MATERIAL_ISSUE, "approve",
                 guard=MANAGER_DECISION, reservation=RESERVED),
        Transition(S.ISSUED_PENDING_APPROVAL.value, S.ISSUED.value, action="approve",
                   guard=LEDGER_PRESENT, deducts_inventory=True, reservation=CONSUMED),
        *_fan_in(
            (*_PRE_APPROVAL, S.AWAITING_MATERIAL_ISSUE, S.APPROVED, S.ISSUED_PENDING_APPROVAL),
            S.REJECTED, "reject", guard=MANAGER_DECISION, reservation=RELEASED,
        ),
        *_fan_in(
            (S.SUBMITTED, S.PENDING_MANAGER_APPROVAL, S.CORRECTION_REQUIRED,
             S.AWAITING_MATERIAL_ISSUE, S.APPROVED),
            S.ON_HOLD, "hold", guard=MANAGER_DECISION, reservation=RELEASED,
        ),
        *_fan_in((S.SUBMITTED, S.PENDING_MANAGER_APPROVAL, S.ON_HOLD),
                 S.CORRECTION_REQUIRED, "request_correction", guard=MANAGER_DECISION),
        Transition(S.CORRECTION_REQUIRED.value, S.PENDING_MANAGER_APPROVAL.value,
                   action="resubmit", guard=REQUESTER_ONLY),
        # Store issue
        *_fan_in((S.SUBMITTED, S.PENDING_MANAGER_APPROVAL), S.ISSUED_PENDING_APPROVAL,
                 "issue", reservation=RESERVED),
        *_fan_in(_AWAITING_ISSUE, S.ISSUED, "issue",
                 guard=LEDGER_PRESENT, deducts_inventory=True, reservation=CONSUMED),
        *_fan_in(_AWAITING_ISSUE, S.PARTIALLY_ISSUED, "partial_issue"),
        *_fan_in((S.AWAITING_MATERIAL_ISSUE, S.PARTIALLY_ISSUED), S.APPROVED,
                 "expire_reservation", guard=RESERVATION_EXPIRED, reservation=RELEASED),
        # Production
        Transition(S.ISSUED.value, S.MANUFACTURING.value, action="record"),
        Transition(S.PAUSED.value, S.MANUFACTURING.value, action="resume"),
        *_fan_in((S.MANUFACTURING, S.ISSUED), S.PAUSED, "pause"),
        *_fan_in(_IN_PRODUCTION, S.PRODUCED, "produce"),
        *_fan_in((*_IN_PRODUCTION, S.PRODUCED), S.COMPLETED, "complete"),
        *_fan_in((*_IN_PRODUCTION, S.PRODUCED), S.CANCELLED, "cancel"),
        # Administrative
        *_force(S.ISSUED, "force_wip"),
        *_force(S.PRODUCED, "force_complete"),
    ),
)

logger.info(
    "requisition_workflow_registered",
    extra={
        "workflow_name": REQUISITION_WORKFLOW.name,
        "state_count": len(REQUISITION_WORKFLOW.states),
        "transition_count": len(REQUISITION_WORKFLOW.transitions),
    },
)
