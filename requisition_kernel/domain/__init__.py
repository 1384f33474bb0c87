"""
Pure domain layer: states, workflow, reservation and deduction arithmetic,
notification templates, and the injectable clock.  No I/O.
"""

from requisition_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from requisition_kernel.domain.ledger import DeductionResult, DeductionShortfall, deduct
from requisition_kernel.domain.requisition import (
    Requisition,
    RequisitionState,
    canonicalize_legacy,
    stage_label,
)
from requisition_kernel.domain.requisition_workflow import REQUISITION_WORKFLOW
from requisition_kernel.domain.reservation import (
    ReservationItem,
    ReservationStatus,
    aggregate_reserved,
    build_items,
)
from requisition_kernel.domain.workflow import Guard, Transition, Workflow

__all__ = [
    "Clock",
    "DeductionResult",
    "DeductionShortfall",
    "DeterministicClock",
    "Guard",
    "REQUISITION_WORKFLOW",
    "Requisition",
    "RequisitionState",
    "ReservationItem",
    "ReservationStatus",
    "SystemClock",
    "Transition",
    "Workflow",
    "aggregate_reserved",
    "build_items",
    "canonicalize_legacy",
    "deduct",
    "stage_label",
]
