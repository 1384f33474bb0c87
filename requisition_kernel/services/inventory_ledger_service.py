"""
InventoryLedgerService -- the single versioned inventory document.

Responsibility:
    Reads the ledger (``InventoryLedger/latest``), saves it with optimistic
    concurrency, and performs the requisition issue deduction: fetch under
    a row lock, compute with the pure ``deduct`` routine, record shortfalls,
    write back with a compare-and-swap on the version read.

Architecture position:
    Kernel > Services.  Called by the requisition state machine for every
    transition that deducts inventory, and by the dispatcher for
    ``get_db`` / ``save_inventory``.

Invariants enforced:
    - The version token (``latestId``) is the stored document version, a
      strictly increasing integer rendered as a string.
    - A save presenting a base version is applied only if it equals the
      stored version; otherwise ConflictError carrying the server version,
      and the stored data is untouched.
    - A save without a base version is unconditional (full import).
    - Deduction never leaves the stored ledger partially deducted: the
      computation runs on a copy and is written in one CAS.

Failure modes:
    - InventoryUnavailableError (NO_INVENTORY) when the ledger is missing or
      has no recognisable category structure; the caller's whole action
      aborts.
    - ConflictError on a stale base version or a lost CAS race.
"""

from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from requisition_kernel.db.collections import INVENTORY_LEDGER, LEDGER_KEY
from requisition_kernel.db.document_store import Document
from requisition_kernel.domain.clock import Clock
from requisition_kernel.domain.ledger import DeductionResult, deduct, inventory_section
from requisition_kernel.domain.requisition import Requisition
from requisition_kernel.domain.reservation import build_items
from requisition_kernel.exceptions import ConflictError, InventoryUnavailableError, ValidationError
from requisition_kernel.logging_config import get_logger
from requisition_kernel.services.audit_service import AuditService
from requisition_kernel.services.base import BaseService
from requisition_kernel.utils.serialization import safe_json

logger = get_logger("services.inventory_ledger")


@dataclass(frozen=True)
class LedgerSnapshot:
    """The ledger payload and its version token."""

    data: dict[str, Any] | None
    version: str | None

    @property
    def inventory(self) -> dict[str, Any] | None:
        return inventory_section(self.data)

    @property
    def transactions(self) -> list[dict[str, Any]]:
        if not isinstance(self.data, dict):
            return []
        txs = self.data.get("transactions")
        return [tx for tx in txs if isinstance(tx, dict)] if isinstance(txs, list) else []


def _payload(doc: Document) -> Any:
    return doc.body["data"] if "data" in doc.body else doc.body


def _parse_version(token: Any) -> int | None:
    """None for "no base version"; -1 for a token that can never match."""
    if token is None or str(token).strip() == "":
        return None
    try:
        return int(str(token).strip())
    except ValueError:
        return -1


class InventoryLedgerService(BaseService):
    """Read, save and deduct the inventory ledger."""

    def __init__(
        self, session: Session, clock: Clock | None = None, audit: AuditService | None = None
    ):
        super().__init__(session, clock)
        self.audit = audit or AuditService(session, self.clock)

    def snapshot(self) -> LedgerSnapshot:
        doc = self.store.get(INVENTORY_LEDGER, LEDGER_KEY)
        if doc is None:
            return LedgerSnapshot(data=None, version=None)
        payload = _payload(doc)
        return LedgerSnapshot(
            data=payload if isinstance(payload, dict) else None,
            version=doc.version_token,
        )

    def save(
        self,
        payload: Any,
        base_version: Any = None,
        user: str | None = None,
    ) -> str:
        """
        Replace the ledger payload.

        Args:
            payload: The new ``data`` (dict or JSON text).  A wrapper of the
                form ``{"data": {"inventory": ...}}`` is unwrapped.
            base_version: The ``latestId`` the caller read, or None for an
                unconditional write.
            user: Recorded on the ``inventory_sync`` audit entry.

        Returns:
            The new version token.

        Raises:
            ValidationError: The payload is not a JSON object.
            ConflictError: ``base_version`` is stale.
        """
        data = safe_json(payload, None)
        if not isinstance(data, dict):
            raise ValidationError("Inventory data must be a JSON object", field="data")
        inner = data.get("data")
        if isinstance(inner, dict) and "inventory" in inner:
            data = inner

        expected = _parse_version(base_version)
        current = self.store.get_for_update(INVENTORY_LEDGER, LEDGER_KEY)
        if expected is not None and current is not None and current.version != expected:
            logger.warning(
                "ledger_conflict",
                extra={"base_version": str(base_version), "server_version": current.version_token},
            )
            raise ConflictError(INVENTORY_LEDGER, LEDGER_KEY, server_version=current.version_token)

        written = self.store.set(
            INVENTORY_LEDGER,
            LEDGER_KEY,
            {"data": data, "exportedAt": self.clock.now_iso()},
            # 0 guards the first write against a concurrent creator.
            expected_version=current.version if current is not None else 0,
        )
        self.audit.record("inventory_sync", user or "inventory_app", {"version": written.version_token})
        logger.info("ledger_saved", extra={"version": written.version_token})
        return written.version_token

    def deduct_for_requisition(self, requisition: Requisition) -> DeductionResult:
        """
        Deduct a requisition's formula, packing and label lines.

        Shortfalls are audited as ``requisition_issue_deduction_shortfall``
        and do not stop the remaining lines.

        Raises:
            InventoryUnavailableError: No ledger or no recognisable structure.
            ConflictError: Another writer moved the ledger version.
        """
        doc = self.store.get_for_update(INVENTORY_LEDGER, LEDGER_KEY)
        if doc is None:
            raise InventoryUnavailableError()
        payload = _payload(doc)
        if inventory_section(payload) is None:
            raise InventoryUnavailableError("Inventory structure not found.")

        result = deduct(
            payload,
            build_items(requisition.line_items),
            requisition.request_id,
            self.clock.now(),
        )
        for shortfall in result.shortfalls:
            logger.warning(
                "requisition_issue_deduction_shortfall",
                extra={
                    "request_id": requisition.request_id,
                    "item_name": shortfall.item_name,
                    "shortfall": shortfall.shortfall,
                },
            )
            self.audit.record(
                "requisition_issue_deduction_shortfall",
                "system",
                {
                    "requestId": requisition.request_id,
                    "itemName": shortfall.item_name,
                    "category": shortfall.category,
                    "shortfall": shortfall.shortfall,
                },
            )

        try:
            written = self.store.set(
                INVENTORY_LEDGER,
                LEDGER_KEY,
                {"data": result.data, "exportedAt": self.clock.now_iso()},
                expected_version=doc.version,
            )
        except ConflictError as exc:
            raise ConflictError(
                INVENTORY_LEDGER,
                LEDGER_KEY,
                server_version=exc.server_version,
                message="Inventory was changed by someone else. Ask them to sync, then try Issue again.",
            ) from exc

        self.audit.record(
            "requisition_issue_deduction",
            "system",
            {
                "requestId": requisition.request_id,
                "note": "Inventory deducted for issue",
                "transactions": len(result.transactions),
            },
        )
        logger.info(
            "requisition_inventory_deducted",
            extra={
                "request_id": requisition.request_id,
                "total_deducted": result.total_deducted,
                "shortfall_count": len(result.shortfalls),
                "version": written.version_token,
            },
        )
        return result
