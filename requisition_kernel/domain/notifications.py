"""
Notification templates -- one table from event type to email content.

Responsibility:
    Maps an event type and its payload to ``{to, subject, html, cc}``:
    recipient rule, subject line, title, colour and the ordered detail rows
    of the HTML card.  This is the single source of truth for notification
    wording; the worker renders queued events through ``build_content`` and
    nothing else.

Architecture position:
    Kernel > Domain -- pure.  Manager addresses are passed in by the caller.

Invariants enforced:
    - ``build_content`` returns None when no recipient resolves; such events
      are dropped, not retried.
    - Every label and value in the detail table is escaped for ``<`` and
      ``"``; the request id, title and event title are escaped for ``<``.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from requisition_kernel.domain.clock import parse_iso

STATUS_COLORS: dict[str, str] = {
    "INFO": "#3b82f6",
    "SUCCESS": "#10b981",
    "ALERT": "#ef4444",
    "ERROR": "#ef4444",
    "WARNING": "#f59e0b",
}

# Recipient rules
MANAGERS = "managers"
REQUESTER_OR_MANAGERS = "requester_or_managers"
EXPLICIT_OR_MANAGERS = "explicit_or_managers"
REQUESTER_ONLY = "requester_only"
FORMULA_REQUESTER = "formula_requester"


@dataclass(frozen=True)
class Branding:
    subject_tag: str = "MIKLENS"
    header: str = "Miklens Digital Requisition"
    footer: str = "Miklens Digital Inventory Sync"
    app_url: str = "https://miklens.github.io/Inventory-management"


Row = tuple[str, Callable[[dict[str, Any]], Any]]


@dataclass(frozen=True)
class NotificationTemplate:
    event_title: str
    title: Callable[[dict[str, Any]], str]
    color: str
    rows: tuple[Row, ...]
    subject: Callable[[dict[str, Any], str], str]
    recipients: str


def _num(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _s(payload: dict[str, Any], key: str, default: str = "") -> str:
    value = payload.get(key)
    return default if value is None or value == "" else str(_num(value))


def _qty(key: str = "quantity") -> Callable[[dict[str, Any]], str]:
    return lambda p: f"{_s(p, key)} {_s(p, 'unit')}"


def _person(name_key: str, email_key: str) -> Callable[[dict[str, Any]], str]:
    def render(p: dict[str, Any]) -> str:
        email = _s(p, email_key)
        return _s(p, name_key) + (f" ({email})" if email else "")
    return render


def _field(key: str, default: str = "") -> Callable[[dict[str, Any]], str]:
    return lambda p: _s(p, key, default)


def _const(text: str) -> Callable[[dict[str, Any]], str]:
    return lambda p: text


def _request_date(p: dict[str, Any]) -> str:
    moment = parse_iso(p.get("requestedAt"))
    return moment.strftime("%Y-%m-%d %H:%M UTC") if moment else ""


def _req_subject(suffix: Callable[[dict[str, Any]], str]) -> Callable[[dict[str, Any], str], str]:
    return lambda p, tag: f"[{tag} REQ-{_s(p, 'requestId')}] {suffix(p)}"


_REQUESTED_BY = ("Requested by", _person("requesterName", "requesterEmail"))

TEMPLATES: dict[str, NotificationTemplate] = {
    "approval_needed": NotificationTemplate(
        event_title="New Requisition Submitted",
        title=_const("New Requisition – Approval Required"),
        color=STATUS_COLORS["INFO"],
        rows=(
            ("Request ID", _field("requestId")),
            _REQUESTED_BY,
            ("Product", _field("productName")),
            ("Quantity", _qty("requestedQty")),
            ("Request date", _request_date),
            ("Action", _const("Please approve or reject in the app.")),
        ),
        subject=_req_subject(
            lambda p: f"New Requisition – {_s(p, 'requesterName', 'Employee')} – "
                      f"{_s(p, 'productName')} – Approval Required"
        ),
        recipients=EXPLICIT_OR_MANAGERS,
    ),
    "reservation_released": NotificationTemplate(
        event_title="Reservation Released",
        title=_const("Reservation Expired"),
        color=STATUS_COLORS["WARNING"],
        rows=(
            ("Request ID", _field("requestId")),
            ("Product", _field("productName")),
            ("Reason", lambda p: f"Reservation timed out after {_s(p, 'hours', '48')} hours."),
            ("Action", _const("Re-issue materials from Pending Issue if still needed.")),
        ),
        subject=_req_subject(_const("Reservation Released – Re-issue if needed")),
        recipients=MANAGERS,
    ),
    "dispatch_approval_required": NotificationTemplate(
        event_title="Dispatch Approval Required",
        title=_const("Dispatch Request"),
        color=STATUS_COLORS["INFO"],
        rows=(
            ("Request ID", _field("requestId")),
            ("Dispatch ID", _field("dispatchId")),
            ("Product", _field("productName")),
            ("Quantity", _qty()),
            ("Requested by", _field("requestedBy")),
            ("Action", _const("Approve or reject in the app.")),
        ),
        subject=lambda p, tag: f"[{tag}] Dispatch Approval Required – {_s(p, 'productName')}",
        recipients=MANAGERS,
    ),
    "dispatch_approved": NotificationTemplate(
        event_title="Dispatch Approved",
        title=_const("Dispatch Approved"),
        color=STATUS_COLORS["SUCCESS"],
        rows=(
            ("Request ID", _field("requestId")),
            ("Product", _field("productName")),
            ("Quantity", _qty()),
            ("Approved by", _field("approvedBy")),
            ("Action", _const("You can collect the dispatched items.")),
        ),
        subject=_req_subject(_const("Dispatch Approved")),
        recipients=REQUESTER_ONLY,
    ),
    "formula_request_submitted": NotificationTemplate(
        event_title="New Formula Request",
        title=_const("Formula Request"),
        color=STATUS_COLORS["INFO"],
        rows=(
            ("Request ID", _field("formulaRequestId")),
            ("Requested by", lambda p: f"{_s(p, 'requestedByName')} ({_s(p, 'requestedBy')})"),
            ("Basis", _field("formulaBasis")),
        ),
        subject=lambda p, tag: f"[{tag}] New Formula Request – {_s(p, 'formulaRequestId')}",
        recipients=MANAGERS,
    ),
    "formula_request_resolved": NotificationTemplate(
        event_title="Formula Request Updated",
        title=lambda p: f"Formula Request {_s(p, 'status', 'Resolved')}",
        color=STATUS_COLORS["SUCCESS"],
        rows=(
            ("Request ID", _field("formulaRequestId")),
            ("Status", _field("status")),
            ("Resolved by", _field("resolvedBy")),
            ("Action", _const("Check the app for details.")),
        ),
        subject=lambda p, tag: (
            f"[{tag}] Formula Request {_s(p, 'status')} – {_s(p, 'formulaRequestId')}"
        ),
        recipients=FORMULA_REQUESTER,
    ),
    "production_completed": NotificationTemplate(
        event_title="Production Completed",
        title=_const("WIP / Production Completed"),
        color=STATUS_COLORS["SUCCESS"],
        rows=(
            ("Request ID", _field("requestId")),
            ("Product", _field("productName")),
            ("Quantity", _qty()),
            ("Completed by", _field("completedBy")),
            _REQUESTED_BY,
            ("Action", _const("Ready for dispatch or next step.")),
        ),
        subject=_req_subject(lambda p: f"Production Completed – {_s(p, 'productName')}"),
        recipients=REQUESTER_OR_MANAGERS,
    ),
    "production_paused": NotificationTemplate(
        event_title="Production Paused",
        title=_const("WIP Paused"),
        color=STATUS_COLORS["WARNING"],
        rows=(
            ("Request ID", _field("requestId")),
            ("Product", _field("productName")),
            ("Quantity", _qty()),
            ("Paused by", _field("pausedBy")),
            ("Reason", _field("reason", "—")),
            _REQUESTED_BY,
            ("Action", _const("Resume from WIP when ready.")),
        ),
        subject=_req_subject(lambda p: f"Production Paused – {_s(p, 'productName')}"),
        recipients=REQUESTER_OR_MANAGERS,
    ),
    "production_cancelled": NotificationTemplate(
        event_title="Production Cancelled",
        title=_const("WIP Cancelled"),
        color=STATUS_COLORS["ERROR"],
        rows=(
            ("Request ID", _field("requestId")),
            ("Product", _field("productName")),
            ("Quantity", _qty()),
            ("Cancelled by", _field("cancelledBy")),
            ("Reason", _field("reason", "—")),
            _REQUESTED_BY,
            ("Action", _const("Request is closed. Create a new request if needed.")),
        ),
        subject=_req_subject(lambda p: f"Production Cancelled – {_s(p, 'productName')}"),
        recipients=REQUESTER_OR_MANAGERS,
    ),
    "materials_issued": NotificationTemplate(
        event_title="Materials Issued",
        title=_const("Materials Issued to Floor"),
        color=STATUS_COLORS["SUCCESS"],
        rows=(
            ("Request ID", _field("requestId")),
            ("Product", _field("productName")),
            ("Quantity", _qty()),
            ("Issued by", _field("issuedBy", "Store")),
            ("Action", _const("Items issued to production floor. Inventory deducted.")),
        ),
        subject=_req_subject(_const("Materials Issued – Production Started")),
        recipients=REQUESTER_OR_MANAGERS,
    ),
    "correction_requested": NotificationTemplate(
        event_title="Correction Requested",
        title=_const("Adjustment Needed"),
        color=STATUS_COLORS["WARNING"],
        rows=(
            ("Request ID", _field("requestId")),
            ("Product", _field("productName")),
            ("Requested by", _person("requestedBy", "requestedByEmail")),
            ("Reason", _field("summary", "Ingredient correction requested")),
            ("Action", _const('Check "Pending Manager Approval" and re-approve or reject.')),
        ),
        subject=_req_subject(_const("Correction Requested")),
        recipients=MANAGERS,
    ),
    "request_approved": NotificationTemplate(
        event_title="Request Approved",
        title=_const("Requisition Approved"),
        color=STATUS_COLORS["SUCCESS"],
        rows=(
            ("Request ID", _field("requestId")),
            ("Product", _field("productName")),
            ("Quantity", _qty()),
            ("Approved by", _field("approvedBy")),
            ("Action", _const(
                "Awaiting material issue from Store. You will be notified when materials are issued."
            )),
        ),
        subject=_req_subject(lambda p: f"Request Approved – {_s(p, 'productName')}"),
        recipients=REQUESTER_OR_MANAGERS,
    ),
    "request_rejected": NotificationTemplate(
        event_title="Request Rejected",
        title=_const("Requisition Rejected"),
        color=STATUS_COLORS["ERROR"],
        rows=(
            ("Request ID", _field("requestId")),
            ("Product", _field("productName")),
            ("Quantity", _qty()),
            ("Rejected by", _field("rejectedBy")),
            ("Reason", _field("reason", "—")),
            ("Action", _const("You may submit a new request if needed.")),
        ),
        subject=_req_subject(lambda p: f"Request Rejected – {_s(p, 'productName')}"),
        recipients=REQUESTER_OR_MANAGERS,
    ),
    "request_on_hold": NotificationTemplate(
        event_title="Request On Hold",
        title=_const("Requisition On Hold"),
        color=STATUS_COLORS["WARNING"],
        rows=(
            ("Request ID", _field("requestId")),
            ("Product", _field("productName")),
            ("Quantity", _qty()),
            ("Put on hold by", _field("heldBy")),
            ("Reason", _field("reason", "—")),
            ("Action", _const(
                "Manager will resume or update this request. Check the app for status."
            )),
        ),
        subject=_req_subject(lambda p: f"Request On Hold – {_s(p, 'productName')}"),
        recipients=REQUESTER_OR_MANAGERS,
    ),
    "partial_issued": NotificationTemplate(
        event_title="Partially Issued",
        title=_const("Materials Partially Issued"),
        color=STATUS_COLORS["WARNING"],
        rows=(
            ("Request ID", _field("requestId")),
            ("Product", _field("productName")),
            ("Issued", _qty("partialQty")),
            ("Requested", _qty("requestedQty")),
            ("Issued by", _field("issuedBy", "Store")),
            ("Action", _const("Remaining quantity to be issued later. Check the app for status.")),
        ),
        subject=_req_subject(lambda p: f"Partially Issued – {_s(p, 'productName')}"),
        recipients=REQUESTER_OR_MANAGERS,
    ),
}


def _generic_template(event_type: str) -> NotificationTemplate:
    event_title = event_type.replace("_", " ")
    return NotificationTemplate(
        event_title=event_title,
        title=_const("System Update"),
        color=STATUS_COLORS["INFO"],
        rows=(
            ("Type", _const(event_type)),
            ("Data", lambda p: json.dumps(p, sort_keys=True, default=str)),
        ),
        subject=lambda p, tag: f"[{tag}] {event_title}",
        recipients=MANAGERS,
    )


def _escape(text: Any, quote: bool = True) -> str:
    out = str(text if text is not None else "").replace("<", "&lt;")
    return out.replace('"', "&quot;") if quote else out


def render_html(
    reference: str,
    event_title: str,
    title: str,
    details: Sequence[tuple[str, Any]],
    color: str,
    branding: Branding,
    year: int,
) -> str:
    """Render the notification card."""
    wrap = "word-wrap: break-word; word-break: break-word; overflow-wrap: break-word; white-space: normal;"
    table = ""
    if details:
        rows = "".join(
            '<tr><td style="padding: 10px; border-bottom: 1px solid #f3f4f6; color: #374151; '
            f'font-weight: bold; width: 28%; {wrap}">{_escape(label)}</td>'
            f'<td style="padding: 10px; border-bottom: 1px solid #f3f4f6; color: #4b5563; {wrap}">'
            f"{_escape(value)}</td></tr>"
            for label, value in details
        )
        table = (
            '<div style="margin: 20px 0; border: 1px solid #e5e7eb; border-radius: 8px; overflow-x: auto;">'
            '<table style="width: 100%; border-collapse: collapse; font-family: sans-serif; '
            'font-size: 13px; table-layout: fixed;">'
            '<thead style="background-color: #f9fafb;"><tr>'
            '<th style="padding: 10px; border-bottom: 1px solid #e5e7eb; text-align: left; color: #6b7280; '
            f'text-transform: uppercase; font-size: 10px; width: 28%; {wrap}">Detail</th>'
            '<th style="padding: 10px; border-bottom: 1px solid #e5e7eb; text-align: left; color: #6b7280; '
            f'text-transform: uppercase; font-size: 10px; {wrap}">Information</th></tr></thead>'
            f"<tbody>{rows}</tbody></table></div>"
        )
    return (
        '<div style="background-color: #f3f4f6; padding: 20px; font-family: \'Segoe UI\', Arial, sans-serif;">'
        '<div style="max-width: 600px; width: 100%; box-sizing: border-box; margin: 0 auto; '
        'background-color: #ffffff; border-radius: 12px; overflow: hidden;">'
        f'<div style="background-color: {color}; padding: 30px; text-align: center;">'
        '<div style="color: #ffffff; font-size: 10px; font-weight: bold; text-transform: uppercase; '
        f'letter-spacing: 2px; margin-bottom: 10px;">{_escape(branding.header, quote=False)}</div>'
        '<h1 style="color: #ffffff; margin: 0; font-size: 24px; font-weight: 900;">'
        f"{_escape(event_title, quote=False)}</h1>"
        '<div style="color: rgba(255,255,255,0.8); font-size: 14px; margin-top: 5px; font-weight: bold;">'
        f"{_escape(title or 'System Update', quote=False)}</div></div>"
        '<div style="padding: 30px;">'
        '<p style="color: #4b5563; font-size: 15px; line-height: 1.6; margin-top: 0;">'
        f"This is an automated notification regarding <b>#{_escape(reference, quote=False)}</b>.</p>"
        f"{table}"
        '<div style="text-align: center; margin-top: 30px;">'
        f'<a href="{_escape(branding.app_url)}" style="background-color: {color}; color: #ffffff; '
        "padding: 12px 30px; text-decoration: none; border-radius: 8px; font-weight: bold; "
        'font-size: 14px; display: inline-block;">Open Application</a></div>'
        '<div style="margin-top: 30px; padding-top: 20px; border-top: 1px solid #f3f4f6; color: #9ca3af; '
        f'font-size: 11px; text-align: center;">© {year} {_escape(branding.footer, quote=False)} '
        "• Automated Alert</div></div></div></div>"
    )


def _resolve_recipients(
    rule: str, payload: dict[str, Any], managers: Sequence[str]
) -> str:
    manager_list = ",".join(managers)
    if rule == EXPLICIT_OR_MANAGERS:
        return _s(payload, "managerEmail").strip() or manager_list
    if rule == REQUESTER_OR_MANAGERS:
        return _s(payload, "requesterEmail").strip() or manager_list
    if rule == REQUESTER_ONLY:
        return _s(payload, "requesterEmail").strip()
    if rule == FORMULA_REQUESTER:
        return _s(payload, "requestedBy").strip()
    return manager_list


def build_content(
    event_type: str,
    payload: dict[str, Any] | None,
    managers: Sequence[str],
    now: datetime,
    branding: Branding | None = None,
) -> dict[str, str] | None:
    """
    Build ``{to, subject, html, cc}`` for one event, or None if no recipient.

    Args:
        event_type: Template key; unknown types use a generic template.
        payload: Event data as queued.
        managers: Addresses of every manager/admin user, in a stable order.
        branding: Subject tag, header/footer text and application link.
        now: From the injected clock; used for the footer year only.
    """
    payload = payload if isinstance(payload, dict) else {}
    branding = branding or Branding()
    template = TEMPLATES.get(event_type) or _generic_template(event_type)

    to = _resolve_recipients(template.recipients, payload, managers)
    if not to:
        return None

    cc = ""
    if event_type == "approval_needed":
        cc = ",".join(m for m in managers if m not in to)

    reference = (
        _s(payload, "requestId")
        or _s(payload, "formulaRequestId")
        or _s(payload, "dispatchId")
    )
    details = [(label, render(payload)) for label, render in template.rows]
    html = render_html(
        reference,
        template.event_title,
        template.title(payload),
        details,
        template.color,
        branding,
        now.year,
    )
    return {
        "to": to,
        "subject": template.subject(payload, branding.subject_tag),
        "html": html,
        "cc": cc,
    }
