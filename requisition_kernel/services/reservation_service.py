"""
ReservationService -- per-requisition soft holds on inventory.

Responsibility:
    Maintains one ``RequisitionReservations`` document per requisition with
    status ``reserved | consumed | released`` and a flat item list, sums all
    ``reserved`` records into category totals, and finds reservations that
    have outlived the timeout threshold.

Architecture position:
    Kernel > Services.  Written only through the requisition state machine
    (transition effects) and the timeout sweep.

Invariants enforced:
    - Keyed 1:1 by requisition id; ``upsert`` replaces, never appends.
    - The original requisition id is kept in the body (``requestId``)
      because the document key is path-substituted.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from requisition_kernel.db.collections import RESERVATIONS
from requisition_kernel.domain.clock import parse_iso
from requisition_kernel.domain.reservation import (
    ReservationItem,
    ReservationStatus,
    aggregate_reserved,
    build_items,
)
from requisition_kernel.logging_config import get_logger
from requisition_kernel.services.base import BaseService

logger = get_logger("services.reservation")


@dataclass(frozen=True)
class Reservation:
    request_id: str
    status: ReservationStatus
    items: tuple[ReservationItem, ...]
    updated_at: str

    @classmethod
    def from_body(cls, body: dict[str, Any], key: str) -> "Reservation":
        raw_status = str(body.get("status") or "").lower()
        try:
            status = ReservationStatus(raw_status)
        except ValueError:
            status = ReservationStatus.RELEASED
        return cls(
            request_id=str(body.get("requestId") or key),
            status=status,
            items=tuple(
                ReservationItem.from_dict(i) for i in body.get("items") or [] if isinstance(i, dict)
            ),
            updated_at=str(body.get("updatedAt") or ""),
        )


class ReservationService(BaseService):

    def upsert(
        self,
        request_id: str,
        line_items: dict[str, list[dict[str, Any]]],
        status: ReservationStatus | str,
    ) -> Reservation:
        """Replace the reservation for ``request_id``."""
        status = ReservationStatus(str(getattr(status, "value", status)).lower())
        items = build_items(line_items)
        body = {
            "requestId": request_id,
            "status": status.value,
            "items": [item.to_dict() for item in items],
            "updatedAt": self.clock.now_iso(),
        }
        self.store.set(RESERVATIONS, request_id, body)
        logger.info(
            "reservation_upserted",
            extra={"request_id": request_id, "status": status.value, "item_count": len(items)},
        )
        return Reservation.from_body(body, request_id)

    def mark(self, request_id: str, status: ReservationStatus | str) -> bool:
        """Set the status of an existing reservation.  False if there is none."""
        status = ReservationStatus(str(getattr(status, "value", status)).lower())
        if self.store.get(RESERVATIONS, request_id) is None:
            return False
        self.store.update(
            RESERVATIONS,
            request_id,
            {"status": status.value, "updatedAt": self.clock.now_iso()},
        )
        logger.info(
            "reservation_marked",
            extra={"request_id": request_id, "status": status.value},
        )
        return True

    def get(self, request_id: str) -> Reservation | None:
        doc = self.store.get(RESERVATIONS, request_id)
        return Reservation.from_body(doc.body, doc.key) if doc is not None else None

    def reserved_totals(self) -> dict[str, list[dict[str, Any]]]:
        return aggregate_reserved(doc.body for doc in self.store.scan_all(RESERVATIONS))

    def expired(self, cutoff: datetime) -> list[Reservation]:
        """
        ``reserved`` records last updated strictly before ``cutoff``.  A
        record without a readable ``updatedAt`` counts as expired.
        """
        stale: list[Reservation] = []
        for doc in self.store.scan_all(RESERVATIONS):
            reservation = Reservation.from_body(doc.body, doc.key)
            if reservation.status is not ReservationStatus.RESERVED:
                continue
            updated = parse_iso(reservation.updated_at)
            if updated is None or updated < cutoff:
                stale.append(reservation)
        return stale
