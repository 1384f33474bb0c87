"""Services for the requisition kernel (write side)."""

from requisition_kernel.services.audit_service import AuditEntry, AuditService
from requisition_kernel.services.intake_service import IntakeService
from requisition_kernel.services.inventory_ledger_service import (
    InventoryLedgerService,
    LedgerSnapshot,
)
from requisition_kernel.services.notification_service import NotificationService
from requisition_kernel.services.production_service import ProductionService
from requisition_kernel.services.requisition_service import RequisitionService
from requisition_kernel.services.reservation_service import Reservation, ReservationService
from requisition_kernel.services.sequence_service import SequenceService
from requisition_kernel.services.user_service import UserProfile, UserService

__all__ = [
    "AuditEntry",
    "AuditService",
    "IntakeService",
    "InventoryLedgerService",
    "LedgerSnapshot",
    "NotificationService",
    "ProductionService",
    "RequisitionService",
    "Reservation",
    "ReservationService",
    "SequenceService",
    "UserProfile",
    "UserService",
]
