"""
requisition_services -- Package init and public API.

Responsibility:
    The outer layer: the backend container with its explicit lifecycle,
    the ``invoke(action, params)`` dispatcher, the per-action service
    container, notification transports and the outbox delivery worker.

Architecture position:
    Services -- outermost layer.

    Dependency direction (enforced by tests/architecture/test_layer_boundary.py):
        requisition_services/ -> requisition_config/  (allowed)
        requisition_services/ -> requisition_kernel/  (allowed)
        requisition_kernel/   -> requisition_services/ (FORBIDDEN)
        requisition_kernel/   -> requisition_config/   (FORBIDDEN)
"""

from requisition_services.action_dispatcher import ACTIONS, ActionDispatcher, ActionSpec
from requisition_services.backend import RequisitionBackend
from requisition_services.notification_worker import (
    DeliveryOutcome,
    DrainResult,
    NotificationWorker,
)
from requisition_services.orchestrator import RequisitionOrchestrator
from requisition_services.transports import (
    NotificationTransport,
    OutboundMessage,
    RecordingTransport,
    SmtpTransport,
)

__all__ = [
    "ACTIONS",
    "ActionDispatcher",
    "ActionSpec",
    "DeliveryOutcome",
    "DrainResult",
    "NotificationTransport",
    "NotificationWorker",
    "OutboundMessage",
    "RecordingTransport",
    "RequisitionBackend",
    "RequisitionOrchestrator",
    "SmtpTransport",
]
