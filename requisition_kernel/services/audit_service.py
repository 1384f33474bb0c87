"""
AuditService -- append-only action trail.

Responsibility:
    Appends one ``AuditLog`` document per significant state change: stage
    changes, approvals, deductions and shortfalls, reservation releases,
    inventory saves and user administration.

Architecture position:
    Kernel > Services.  Called by every mutating service.

Invariants enforced:
    - Append-only: entries are added under generated keys and never updated.
    - Entries are written in the action's transaction, so an aborted action
      leaves no audit entry behind.
"""

from dataclasses import dataclass
from typing import Any

from requisition_kernel.db.collections import AUDIT_LOG
from requisition_kernel.logging_config import get_logger
from requisition_kernel.services.base import BaseService

logger = get_logger("services.audit")


@dataclass(frozen=True)
class AuditEntry:
    action: str
    user: str
    timestamp: str
    details: dict[str, Any]


class AuditService(BaseService):
    """Writes and reads ``AuditLog`` entries."""

    def record(self, action: str, user: str | None, details: Any = None) -> AuditEntry:
        entry = AuditEntry(
            action=str(action),
            user=str(user or "system"),
            timestamp=self.clock.now_iso(),
            details=details if isinstance(details, dict) else {"note": str(details or "")},
        )
        self.store.add(
            AUDIT_LOG,
            {
                "action": entry.action,
                "user": entry.user,
                "timestamp": entry.timestamp,
                "details": entry.details,
            },
        )
        logger.info(
            "audit_recorded",
            extra={"audit_action": entry.action, "audit_user": entry.user},
        )
        return entry

    def entries(self, action: str | None = None) -> list[AuditEntry]:
        """All entries, oldest first, optionally filtered by action."""
        docs = (
            self.store.query_equal(AUDIT_LOG, "action", action)
            if action is not None
            else self.store.scan_all(AUDIT_LOG)
        )
        entries = [
            AuditEntry(
                action=doc.get("action", ""),
                user=doc.get("user", ""),
                timestamp=doc.get("timestamp", ""),
                details=doc.get("details") or {},
            )
            for doc in docs
        ]
        return sorted(entries, key=lambda e: e.timestamp)
