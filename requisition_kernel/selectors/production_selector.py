"""
Module: requisition_kernel.selectors.production_selector
Responsibility: Read-only queries over WIP batches, dispatches, formula
    requests and stock adjustment requests.
Architecture position: Kernel > Selectors.

Dispatch and adjustment documents written before the field names were
settled use capitalised keys (``Status``, ``RequestID``); filters accept both.
"""

from typing import Any

from requisition_kernel.db.collections import (
    DISPATCHES,
    FORMULA_REQUESTS,
    STOCK_ADJUSTMENTS,
    WIP_BATCHES,
)
from requisition_kernel.selectors.base import BaseSelector
from requisition_kernel.selectors.request_selector import PENDING_DISPATCH_STATUSES


def _status(body: dict[str, Any]) -> str:
    return str(body.get("status") or body.get("Status") or "").lower()


class ProductionSelector(BaseSelector):

    def wip_batches(self) -> list[dict[str, Any]]:
        return [doc.body for doc in self.store.scan_all(WIP_BATCHES)]

    def pending_production(self) -> list[dict[str, Any]]:
        """Batches not yet completed."""
        return [body for body in self.wip_batches() if _status(body) != "completed"]

    def pending_dispatch_approvals(self) -> list[dict[str, Any]]:
        return [
            doc.body for doc in self.store.scan_all(DISPATCHES)
            if _status(doc.body) in PENDING_DISPATCH_STATUSES
        ]

    def dispatches_for_request(self, request_id: Any) -> list[dict[str, Any]]:
        wanted = str(request_id or "")
        return [
            doc.body for doc in self.store.scan_all(DISPATCHES)
            if str(doc.get("requestId") or doc.get("RequestID") or "") == wanted
        ]

    def formula_requests(self, status: str | None = None) -> list[dict[str, Any]]:
        wanted = str(status or "").lower()
        rows = [{"id": doc.key, **doc.body} for doc in self.store.scan_all(FORMULA_REQUESTS)]
        return [r for r in rows if _status(r) == wanted] if wanted else rows

    def stock_adjustment_requests(self, status: str | None = None) -> list[dict[str, Any]]:
        wanted = str(status or "").lower()
        rows = [doc.body for doc in self.store.scan_all(STOCK_ADJUSTMENTS)]
        return [r for r in rows if _status(r) == wanted] if wanted else rows
