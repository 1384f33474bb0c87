"""
requisition_services.backend -- the backend container.

Responsibility:
    Owns everything with a lifecycle: the ``Database``, the in-process
    keyed lock, the notification transport and worker, and the action
    dispatcher.  ``RequisitionBackend`` replaces a module-level store handle:
    it is constructed explicitly, initialised with ``init()``, passed by
    reference, and released with ``close()``.

Architecture position:
    Services -- outermost layer.  Reads ``BackendConfig`` and hands plain
    values to the kernel through ``RequisitionOrchestrator``.

Failure modes:
    - RuntimeError from ``invoke`` before ``init()`` or after ``close()``.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from requisition_config.schema import BackendConfig
from requisition_kernel.db.engine import Database
from requisition_kernel.domain.clock import Clock, SystemClock
from requisition_kernel.domain.notifications import Branding
from requisition_kernel.logging_config import get_logger
from requisition_kernel.services.user_service import UserService
from requisition_kernel.utils.keyed_lock import KeyedLock
from requisition_services.action_dispatcher import ActionDispatcher
from requisition_services.notification_worker import DrainResult, NotificationWorker
from requisition_services.orchestrator import RequisitionOrchestrator
from requisition_services.transports import (
    NotificationTransport,
    RecordingTransport,
    SmtpTransport,
)

logger = get_logger("services.backend")


def build_transport(config: BackendConfig) -> NotificationTransport:
    settings = config.notifications
    if settings.transport == "smtp":
        return SmtpTransport(settings.smtp)
    return RecordingTransport()


def build_branding(config: BackendConfig) -> Branding:
    """Built-in branding with the configured name and link applied."""
    default = Branding()
    name = config.brand_name.strip()
    return Branding(
        subject_tag=name.upper() if name else default.subject_tag,
        header=f"{name} Digital Requisition" if name else default.header,
        footer=f"{name} Digital Inventory Sync" if name else default.footer,
        app_url=config.app_url.strip() or default.app_url,
    )


class RequisitionBackend:
    """
    Explicit-lifecycle container behind ``invoke(action, params)``.

    Usage:
        with RequisitionBackend(config).init() as backend:
            backend.invoke("login", {"email": ..., "password": ...})
    """

    def __init__(
        self,
        config: BackendConfig | None = None,
        database: Database | None = None,
        clock: Clock | None = None,
        transport: NotificationTransport | None = None,
    ):
        self.config = config or BackendConfig()
        self.clock = clock or SystemClock()
        self._database = database
        self.transport = transport or build_transport(self.config)
        self.branding = build_branding(self.config)
        self.lock = KeyedLock()
        self.worker: NotificationWorker | None = None
        self._dispatcher: ActionDispatcher | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self, create_tables: bool = True) -> RequisitionBackend:
        if self._database is None or self._database.is_closed:
            self._database = Database(self.config.database_url, echo=self.config.database_echo)
        if create_tables:
            self._database.create_tables()

        settings = self.config.notifications
        self.worker = NotificationWorker(
            self._database,
            self.transport,
            clock=self.clock,
            max_attempts=settings.max_attempts,
            batch_size=settings.batch_size,
            branding=self.branding,
        )
        self._dispatcher = ActionDispatcher(
            self._database,
            self.services,
            lock=self.lock,
            after_commit=self.worker.drain if settings.deliver_inline else None,
        )
        logger.info(
            "backend_initialized",
            extra={
                "dialect": self._database.dialect_name,
                "transport": self.transport.name,
                "deliver_inline": settings.deliver_inline,
            },
        )
        return self

    def close(self) -> None:
        if self._database is not None:
            self._database.close()
        self._dispatcher = None
        self.worker = None
        logger.info("backend_closed")

    def __enter__(self) -> RequisitionBackend:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @property
    def database(self) -> Database:
        if self._database is None or self._database.is_closed:
            raise RuntimeError("Backend not initialized. Call init() first.")
        return self._database

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def services(self, session: Session) -> RequisitionOrchestrator:
        """The per-action service container for ``session``."""
        return RequisitionOrchestrator(
            session,
            clock=self.clock,
            reservation_timeout_hours=self.config.reservation_timeout_hours,
            approver_roles=self.config.approval_roles,
            overdue_days=self.config.overdue_days,
        )

    def invoke(self, action: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run one named action; never raises for action failures."""
        if self._dispatcher is None:
            raise RuntimeError("Backend not initialized. Call init() first.")
        return self._dispatcher.invoke(action, params)

    def deliver_notifications(self) -> DrainResult:
        if self.worker is None:
            raise RuntimeError("Backend not initialized. Call init() first.")
        return self.worker.drain()

    def seed_users(self, users: list[dict[str, Any]]) -> int:
        """Bootstrap accounts without a role check (CLI and tests)."""
        with self.database.session_scope() as session:
            return UserService(session, self.clock).seed(users)
