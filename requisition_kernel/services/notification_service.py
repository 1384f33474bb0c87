"""
NotificationService -- transactional outbox for notification events.

Responsibility:
    Writes one ``NotificationQueue`` document per event inside the
    caller's transaction, and gives the delivery worker the operations it
    needs afterwards: list pending entries, build their content, record the
    outcome of each delivery attempt.

Architecture position:
    Kernel > Services.  ``enqueue`` is called by the state machine and the
    production/intake services; the remaining methods are called by
    ``requisition_services.notification_worker`` after commit.

Invariants enforced:
    - An event exists in the queue only if the action that raised it
      committed (outbox written in the same transaction).
    - Queue entries move ``pending -> sent``, ``pending -> dropped`` (no
      recipient) or ``pending -> failed`` after ``max_attempts`` failures.
      Entries are never deleted.
"""

from typing import Any

from requisition_kernel.db.collections import NOTIFICATION_QUEUE
from requisition_kernel.db.document_store import Document
from requisition_kernel.domain.notifications import Branding, build_content
from requisition_kernel.logging_config import get_logger
from requisition_kernel.services.base import BaseService
from requisition_kernel.services.user_service import UserService

logger = get_logger("services.notification")

PENDING = "pending"
SENT = "sent"
FAILED = "failed"
DROPPED = "dropped"


class NotificationService(BaseService):

    def enqueue(self, event_type: str, payload: dict[str, Any]) -> Document:
        doc = self.store.add(
            NOTIFICATION_QUEUE,
            {
                "type": event_type,
                "createdAt": self.clock.now_iso(),
                "sent": False,
                "status": PENDING,
                "attempts": 0,
                "lastError": "",
                "data": payload,
            },
        )
        logger.info(
            "notification_enqueued",
            extra={"event_type": event_type, "queue_key": doc.key},
        )
        return doc

    def pending(self, limit: int | None = None) -> list[Document]:
        """Pending entries, oldest first."""
        docs = sorted(
            self.store.query_equal(NOTIFICATION_QUEUE, "status", PENDING),
            key=lambda d: (str(d.get("createdAt") or ""), d.key),
        )
        return docs[:limit] if limit is not None else docs

    def build(self, entry: Document, branding: Branding | None = None) -> dict[str, str] | None:
        """``{to, subject, html, cc}`` for a queue entry, or None if unaddressable."""
        managers = UserService(self.session, self.clock).manager_emails()
        return build_content(
            str(entry.get("type") or ""),
            entry.get("data") or {},
            managers,
            self.clock.now(),
            branding,
        )

    def mark_sent(self, key: str) -> None:
        entry = self.store.get(NOTIFICATION_QUEUE, key)
        attempts = int(entry.get("attempts") or 0) + 1 if entry is not None else 1
        self.store.update(
            NOTIFICATION_QUEUE,
            key,
            {"sent": True, "status": SENT, "attempts": attempts, "sentAt": self.clock.now_iso()},
        )
        logger.info("notification_sent", extra={"queue_key": key, "attempts": attempts})

    def mark_dropped(self, key: str, reason: str) -> None:
        self.store.update(NOTIFICATION_QUEUE, key, {"status": DROPPED, "lastError": reason})
        logger.warning("notification_dropped", extra={"queue_key": key, "reason": reason})

    def mark_failed(self, key: str, error: str, max_attempts: int) -> str:
        """
        Record a failed attempt.

        Returns:
            ``pending`` while attempts remain, else ``failed``.
        """
        entry = self.store.get(NOTIFICATION_QUEUE, key)
        attempts = int(entry.get("attempts") or 0) + 1 if entry is not None else 1
        status = FAILED if attempts >= max_attempts else PENDING
        self.store.update(
            NOTIFICATION_QUEUE,
            key,
            {"status": status, "attempts": attempts, "lastError": error},
        )
        logger.warning(
            "notification_delivery_failed",
            extra={"queue_key": key, "attempts": attempts, "status": status, "error": error},
        )
        return status
