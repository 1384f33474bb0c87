"""
Module: requisition_kernel.selectors.request_selector
Responsibility: Read-only queries over requisitions and the inventory ledger:
    stage-filtered lists with paging, a requester's own list, the detail view
    with its note thread, dashboard stage counts, reserved totals, the raw
    ledger, the submission form lists and the transaction report.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Stage filters and counts are computed from ``status`` only, via
      ``STAGE_FILTERS``; the ``currentStage`` label is never inspected.
    - Rows are built by ``Requisition.to_row`` so legacy documents render
      with the same field names as current ones.

Failure modes:
    - ValidationError / RequisitionNotFoundError from ``request_details``.
    - ValidationError from ``generate_report`` on missing or invalid dates.
"""

from datetime import datetime, time, timedelta, timezone
from typing import Any

from requisition_kernel.db.collections import (
    DISPATCHES,
    FORMULA_REQUESTS,
    INVENTORY_LEDGER,
    LEDGER_KEY,
    REQUEST_THREADS,
    REQUISITIONS,
    RESERVATIONS,
    USERS,
)
from requisition_kernel.domain.clock import parse_iso
from requisition_kernel.domain.ledger import inventory_section
from requisition_kernel.domain.requisition import (
    PENDING_APPROVAL_STATES,
    PENDING_ISSUE_STATES,
    STAGE_FILTERS,
    Requisition,
    RequisitionState,
)
from requisition_kernel.domain.reservation import aggregate_reserved
from requisition_kernel.exceptions import RequisitionNotFoundError, ValidationError
from requisition_kernel.selectors.base import BaseSelector
from requisition_kernel.utils.hashing import normalize_email
from requisition_kernel.utils.serialization import parse_quantity

DEFAULT_PAGE_SIZE = 20
DEFAULT_OVERDUE_DAYS = 3.0
PENDING_DISPATCH_STATUSES = ("pending", "pending_approval")

COUNT_KEYS = (
    "PENDING_ISSUE",
    "WIP",
    "DISPATCH",
    "PENDING_RECORD",
    "PENDING_APPROVALS",
    "PARTIAL_ISSUE",
    "PENDING_DISPATCH_APPROVALS",
    "FORMULA_REQUESTS",
    "OVERDUE",
    "TODAY_ISSUED",
)


def _positive_int(value: Any, default: int) -> int:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def _form_item(entry: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": entry.get("id") or entry.get("name"),
        "name": entry.get("name") or entry.get("itemName") or str(entry.get("id") or ""),
        "unit": entry.get("unit") or "Units",
    }


def _form_list(section: dict[str, Any] | None, *names: str) -> list[dict[str, Any]]:
    if section is None:
        return []
    for name in names:
        entries = section.get(name)
        if isinstance(entries, list) and entries:
            return [_form_item(e) for e in entries if isinstance(e, dict)]
    return []


class RequestSelector(BaseSelector):
    """Requisition lists, details, counts and ledger reads."""

    def _requisitions(self) -> list[Requisition]:
        """Every requisition, newest first."""
        reqs = [
            Requisition.from_document(doc.body, doc.key)
            for doc in self.store.scan_all(REQUISITIONS)
        ]
        return sorted(reqs, key=lambda r: (r.created_at, r.request_id), reverse=True)

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    def requests_by_stage(
        self,
        stage: str | None,
        limit: Any = None,
        page: Any = None,
        light: bool = False,
    ) -> dict[str, Any]:
        """
        One page of requisitions matching a named stage filter.

        ``ALL`` matches everything; an unknown filter name matches nothing.
        """
        name = str(stage or "").strip().upper()
        size = _positive_int(limit, DEFAULT_PAGE_SIZE)
        number = _positive_int(page, 1)
        reqs = self._requisitions()
        if name != "ALL":
            states = STAGE_FILTERS.get(name, frozenset())
            reqs = [r for r in reqs if r.status in states]
        skip = (number - 1) * size
        return {
            "requests": [r.to_row(light) for r in reqs[skip:skip + size]],
            "totalMatches": len(reqs),
            "page": number,
        }

    def all_requests(self, limit: Any = None, light: bool = False) -> dict[str, Any]:
        return self.requests_by_stage("ALL", limit or 500, 1, light)

    def pending_approvals(self) -> dict[str, Any]:
        return self.requests_by_stage("PENDING_APPROVALS", 100, 1, light=True)

    def my_requests(self, email: str | None, light: bool = False) -> list[dict[str, Any]]:
        wanted = normalize_email(email)
        return [r.to_row(light) for r in self._requisitions() if r.requester_email == wanted]

    # ------------------------------------------------------------------
    # Details
    # ------------------------------------------------------------------

    def thread(self, request_id: str) -> list[dict[str, Any]]:
        """Notes for a requisition, oldest first.  Older notes use ``RequestID``."""
        notes = self.store.query_equal(REQUEST_THREADS, "requestId", request_id)
        notes += self.store.query_equal(REQUEST_THREADS, "RequestID", request_id)

        def stamp(body: dict[str, Any]) -> datetime:
            parsed = parse_iso(body.get("timestamp") or body.get("Timestamp"))
            return parsed or datetime.min.replace(tzinfo=timezone.utc)

        return [doc.body for doc in sorted(notes, key=lambda d: (stamp(d.body), d.key))]

    def request_details(self, request_id: Any) -> dict[str, Any]:
        if request_id is None or str(request_id).strip() == "":
            raise ValidationError("No id", field="id")
        doc = self.store.get(REQUISITIONS, request_id)
        if doc is None:
            raise RequisitionNotFoundError(str(request_id))
        requisition = Requisition.from_document(doc.body, doc.key)
        return requisition.to_detail(self.thread(requisition.request_id))

    # ------------------------------------------------------------------
    # Dashboard counts
    # ------------------------------------------------------------------

    def stage_counts(self, overdue_days: float = DEFAULT_OVERDUE_DAYS) -> dict[str, int]:
        """
        Counts per dashboard tile.

        ``OVERDUE``: awaiting approval or issue and created more than
        ``overdue_days`` ago.  ``TODAY_ISSUED``: issued since midnight UTC.
        """
        counts = dict.fromkeys(COUNT_KEYS, 0)
        now = self.clock.now()
        overdue_before = now - timedelta(days=overdue_days)
        today_start = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)

        for req in self._requisitions():
            for name, states in STAGE_FILTERS.items():
                if req.status in states:
                    counts[name] += 1
            waiting = req.status in PENDING_APPROVAL_STATES or req.status in PENDING_ISSUE_STATES
            created = parse_iso(req.created_at)
            if waiting and created is not None and created < overdue_before:
                counts["OVERDUE"] += 1
            if req.status is RequisitionState.ISSUED:
                issued = parse_iso(req.issued_at or req.updated_at)
                if issued is not None and issued >= today_start:
                    counts["TODAY_ISSUED"] += 1

        for doc in self.store.scan_all(DISPATCHES):
            status = str(doc.get("status") or doc.get("Status") or "").lower()
            if status in PENDING_DISPATCH_STATUSES:
                counts["PENDING_DISPATCH_APPROVALS"] += 1
        for doc in self.store.scan_all(FORMULA_REQUESTS):
            if str(doc.get("status") or doc.get("Status") or "").lower() == "pending":
                counts["FORMULA_REQUESTS"] += 1
        return counts

    def reserved_totals(self) -> dict[str, list[dict[str, Any]]]:
        return aggregate_reserved(doc.body for doc in self.store.scan_all(RESERVATIONS))

    # ------------------------------------------------------------------
    # Ledger reads
    # ------------------------------------------------------------------

    def _ledger_payload(self) -> tuple[dict[str, Any] | None, str | None]:
        doc = self.store.get(INVENTORY_LEDGER, LEDGER_KEY)
        if doc is None:
            return None, None
        payload = doc.body["data"] if "data" in doc.body else doc.body
        return (payload if isinstance(payload, dict) else None), doc.version_token

    def get_db(self) -> dict[str, Any]:
        """The ledger payload and the version token to send back on save."""
        data, version = self._ledger_payload()
        return {"data": data, "version": version, "latestId": version}

    def form_data(self) -> dict[str, Any]:
        """Products and materials from the ledger, plus the approver list."""
        data, _ = self._ledger_payload()
        section = inventory_section(data)
        raw = _form_list(section, "rawMaterials")
        packing = _form_list(section, "packingMaterials")
        labels = _form_list(section, "labels")
        materials = (
            [{**item, "category": "raw"} for item in raw]
            + [{**item, "category": "packing"} for item in packing]
            + [{**item, "category": "labels"} for item in labels]
        )
        managers = []
        for doc in self.store.scan_all(USERS):
            role = str(doc.get("role") or doc.get("Role") or "").lower()
            if "manager" in role or "admin" in role:
                managers.append({
                    "name": doc.get("name") or doc.get("Name") or "",
                    "email": doc.get("email") or doc.get("Email") or doc.key,
                })
        return {
            "products": _form_list(section, "finishedGoods", "products"),
            "materials": materials,
            "rawMaterials": raw,
            "packingMaterials": packing,
            "labels": labels,
            "managers": managers,
            "employees": [],
            "departments": [],
            "approvers": [m["name"] for m in managers],
        }

    def generate_report(self, start_date: Any, end_date: Any) -> dict[str, Any]:
        """
        Sum ledger transaction quantities by type and by item.

        A transaction is included when the date part of its ``date`` lies in
        ``[start_date, end_date]`` (inclusive, compared as ``YYYY-MM-DD``).
        """
        start = str(start_date or "").strip()
        end = str(end_date or "").strip()
        if not start or not end:
            raise ValidationError("startDate and endDate required")
        if parse_iso(start) is None or parse_iso(end) is None:
            raise ValidationError("Invalid dates")
        start_day = start.split("T")[0]
        end_day = end.split("T")[0]

        data, _ = self._ledger_payload()
        transactions = data.get("transactions") if isinstance(data, dict) else None
        by_type: dict[str, float] = {}
        by_item: dict[str, float] = {}
        total = 0.0
        rows = 0
        for tx in transactions if isinstance(transactions, list) else []:
            if not isinstance(tx, dict):
                continue
            day = str(tx.get("date") or tx.get("Date") or "").split("T")[0]
            if not day or day < start_day or day > end_day:
                continue
            rows += 1
            qty = parse_quantity(tx.get("quantity"))
            tx_type = str(tx.get("type") or tx.get("Type") or "unknown")
            item = str(tx.get("itemName") or tx.get("ItemName") or tx.get("category") or tx_type)
            by_type[tx_type] = by_type.get(tx_type, 0.0) + qty
            by_item[item] = by_item.get(item, 0.0) + qty
            total += qty
        return {
            "byType": by_type,
            "byItem": by_item,
            "dateRange": {"start": start, "end": end},
            "rowCount": rows,
            "totalQty": total,
        }
