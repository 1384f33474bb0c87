"""
requisition_services.notification_worker -- drains the notification outbox.

Responsibility:
    Reads ``pending`` entries from ``NotificationQueue`` after the actions
    that wrote them have committed, builds each message, hands it to the
    transport, and records the outcome: ``sent``, ``dropped`` (no recipient)
    or a failed attempt (``failed`` once ``max_attempts`` is reached).

Architecture position:
    Services -- outer layer.  Runs in its own transaction per entry so one
    bad entry never blocks the rest of the batch.

Invariants enforced:
    - At-least-once: an entry stays ``pending`` until a send succeeds or
      attempts run out.  A crash between send and commit resends.
    - Transport failures never propagate to the caller of ``drain()``.

Failure modes:
    - Database errors while recording an outcome propagate; the entry is
      left as it was and retried on the next drain.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from requisition_kernel.db.collections import NOTIFICATION_QUEUE
from requisition_kernel.db.document_store import Document
from requisition_kernel.db.engine import Database
from requisition_kernel.domain.clock import Clock
from requisition_kernel.domain.notifications import Branding
from requisition_kernel.exceptions import TransportFailure
from requisition_kernel.logging_config import LogContext, get_logger
from requisition_kernel.services.notification_service import (
    DROPPED,
    FAILED,
    PENDING,
    SENT,
    NotificationService,
)
from requisition_services.transports import NotificationTransport, OutboundMessage

logger = get_logger("services.notification_worker")


@dataclass(frozen=True)
class DeliveryOutcome:
    """What happened to one queue entry during a drain."""

    queue_key: str
    event_type: str
    status: str
    error: str = ""


DeliveryCallback = Callable[[DeliveryOutcome], None]


@dataclass
class DrainResult:
    outcomes: list[DeliveryOutcome] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def sent(self) -> int:
        return self.count(SENT)


class NotificationWorker:
    """
    Delivers queued notifications through one transport.

    Callbacks registered with ``on_outcome`` are called once per processed
    entry, after its outcome is committed.
    """

    def __init__(
        self,
        database: Database,
        transport: NotificationTransport,
        clock: Clock | None = None,
        max_attempts: int = 3,
        batch_size: int = 50,
        branding: Branding | None = None,
    ):
        self.database = database
        self.transport = transport
        self.clock = clock
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.branding = branding
        self._callbacks: list[DeliveryCallback] = []

    def on_outcome(self, callback: DeliveryCallback) -> None:
        self._callbacks.append(callback)

    def _pending_keys(self) -> list[str]:
        with self.database.session_scope() as session:
            pending = NotificationService(session, self.clock).pending(self.batch_size)
            return [entry.key for entry in pending]

    def _deliver(self, key: str) -> DeliveryOutcome | None:
        with self.database.session_scope() as session:
            service = NotificationService(session, self.clock)
            entry = service.store.get_for_update(NOTIFICATION_QUEUE, key)
            if entry is None or entry.get("status") != PENDING:
                return None
            data = entry.get("data") or {}
            request_id = data.get("requestId") if isinstance(data, dict) else None
            with LogContext.for_action("deliver_notification", request_id=request_id):
                return self._send(service, key, entry)

    def _send(self, service: NotificationService, key: str, entry: Document) -> DeliveryOutcome:
        event_type = str(entry.get("type") or "")
        content = service.build(entry, self.branding)
        if content is None:
            service.mark_dropped(key, "no recipient")
            logger.info("notification_dropped", extra={"queue_key": key, "event_type": event_type})
            return DeliveryOutcome(key, event_type, DROPPED, "no recipient")
        try:
            self.transport.send(OutboundMessage.from_content(content))
        except TransportFailure as exc:
            status = service.mark_failed(key, exc.reason, self.max_attempts)
            logger.warning(
                "notification_send_failed",
                exc_info=exc,
                extra={"queue_key": key, "event_type": event_type, "status": status},
            )
            return DeliveryOutcome(key, event_type, status, exc.reason)
        service.mark_sent(key)
        logger.debug("notification_sent", extra={"queue_key": key, "event_type": event_type})
        return DeliveryOutcome(key, event_type, SENT)

    def drain(self) -> DrainResult:
        """Process up to ``batch_size`` pending entries, oldest first."""
        result = DrainResult()
        for key in self._pending_keys():
            outcome = self._deliver(key)
            if outcome is None:
                continue
            result.outcomes.append(outcome)
            for callback in self._callbacks:
                callback(outcome)
        if result.outcomes:
            logger.info(
                "notifications_drained",
                extra={
                    "processed": len(result.outcomes),
                    "sent": result.sent,
                    "dropped": result.count(DROPPED),
                    "failed": result.count(FAILED),
                    "transport": self.transport.name,
                },
            )
        return result
