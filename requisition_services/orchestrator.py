"""
requisition_services.orchestrator -- per-action DI container for kernel services.

Responsibility:
    Creates every kernel service and selector for one action exactly once,
    over one session and one clock, and wires them together.  Handlers
    reach services only through this object.

Architecture position:
    Services -- outer layer.  The only place where kernel services are
    constructed and composed.

Invariants enforced:
    - Single-instance lifecycle: the production service reuses the
      requisition service (and so its audit, user, ledger, reservation,
      sequence and notification services); nothing is built twice.
    - All services share the same Session and Clock instances.

Non-goals:
    - Does NOT manage transaction boundaries (the dispatcher does).

Usage:
    with database.session_scope() as session:
        services = RequisitionOrchestrator(session, clock=clock)
        services.requisitions.approve("REQ-000001", "boss@plant.example")
"""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy.orm import Session

from requisition_kernel.domain.clock import Clock, SystemClock
from requisition_kernel.selectors.production_selector import ProductionSelector
from requisition_kernel.selectors.request_selector import DEFAULT_OVERDUE_DAYS, RequestSelector
from requisition_kernel.services.intake_service import IntakeService
from requisition_kernel.services.production_service import ProductionService
from requisition_kernel.services.requisition_service import (
    DEFAULT_RESERVATION_TIMEOUT_HOURS,
    RequisitionService,
)
from requisition_kernel.services.user_service import APPROVER_ROLES


class RequisitionOrchestrator:
    """Central factory for the services one action needs.

    Contract:
        Receives a SQLAlchemy Session and optional Clock plus the plain
        configuration values the kernel consumes.  Exposes services and
        selectors as public attributes.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        reservation_timeout_hours: float = DEFAULT_RESERVATION_TIMEOUT_HOURS,
        approver_roles: Sequence[str] = APPROVER_ROLES,
        overdue_days: float = DEFAULT_OVERDUE_DAYS,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self.overdue_days = overdue_days

        self.requisitions = RequisitionService(
            session,
            self._clock,
            reservation_timeout_hours=reservation_timeout_hours,
            approver_roles=approver_roles,
        )
        self.users = self.requisitions.users
        self.ledger = self.requisitions.ledger
        self.audit = self.requisitions.audit
        self.production = ProductionService(session, self._clock, requisitions=self.requisitions)
        self.intake = IntakeService(session, self._clock)

        self.request_selector = RequestSelector(session, self._clock)
        self.production_selector = ProductionSelector(session, self._clock)

    @property
    def session(self) -> Session:
        return self._session

    @property
    def clock(self) -> Clock:
        return self._clock
