"""
requisition_services.action_dispatcher -- the single ``invoke(action, params)`` surface.

Responsibility:
    Maps an action name to a registered handler, runs it inside one
    database transaction under a per-entity lock, and converts the outcome
    to the public result shape: ``{"result": "success", ...}`` or
    ``{"result": "error", "error": <message>, "code": <code>}``.

Architecture position:
    Services -- outer layer.  Handlers are thin adapters from the
    parameter bag to kernel service and selector calls; they hold no
    business rules of their own.

Invariants enforced:
    - One action, one transaction: kernel services only flush; the
      dispatcher commits on success and rolls back on any error, so an
      aborted action leaves no partial writes (including queued
      notifications).
    - Mutating actions on the same entity id are serialized by a keyed
      lock held across load, write and commit.
    - No exception escapes ``invoke``.  Typed kernel errors keep their
      message and code; anything else becomes a generic error result and
      is logged with its traceback.

Failure modes:
    - ``CONFLICT`` results carry ``serverVersion`` so the caller can
      re-read and retry.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Any

from requisition_kernel.db.engine import Database
from requisition_kernel.exceptions import ConflictError, RequisitionKernelError
from requisition_kernel.logging_config import LogContext, get_logger
from requisition_kernel.utils.keyed_lock import KeyedLock
from requisition_services.orchestrator import RequisitionOrchestrator

logger = get_logger("services.dispatcher")

GENERIC_ERROR = "Internal error while processing the request"

Params = Mapping[str, Any]
Handler = Callable[[RequisitionOrchestrator, Params], dict[str, Any]]
ServicesFactory = Callable[[Any], RequisitionOrchestrator]


@dataclass(frozen=True)
class ActionSpec:
    """A registered action.

    Mutating actions hold a keyed lock for their commit.  The key is the
    first non-empty parameter named in ``lock_params`` (the entity id),
    prefixed with ``lock_scope``; with no ``lock_params`` the whole scope
    is one key.
    """

    name: str
    handler: Handler
    mutating: bool = False
    lock_params: tuple[str, ...] = ()
    lock_scope: str = "requisition"

    def lock_key(self, params: Params) -> str | None:
        if not self.mutating:
            return None
        for name in self.lock_params:
            value = params.get(name)
            if value is not None and str(value).strip():
                return f"{self.lock_scope}:{str(value).strip()}"
        return self.lock_scope


def ok(**data: Any) -> dict[str, Any]:
    return {"result": "success", **data}


def error_result(exc: Exception) -> dict[str, Any]:
    """The public error shape for a failed action."""
    if isinstance(exc, RequisitionKernelError):
        result: dict[str, Any] = {"result": "error", "error": str(exc), "code": exc.code}
        if isinstance(exc, ConflictError) and exc.server_version is not None:
            result["serverVersion"] = exc.server_version
        return result
    return {"result": "error", "error": GENERIC_ERROR, "code": "INTERNAL_ERROR"}


# ---------------------------------------------------------------------------
# Parameter helpers
# ---------------------------------------------------------------------------


def _p(params: Params, *names: str, default: Any = None) -> Any:
    """First present, non-empty value among ``names``."""
    for name in names:
        value = params.get(name)
        if value is not None and value != "":
            return value
    return default


def _text(params: Params, *names: str) -> str:
    return str(_p(params, *names, default="")).strip()


def _flag(params: Params, name: str) -> bool:
    return params.get(name) in (True, "1", "true", "True")


def _caller(params: Params) -> str | None:
    """Who is acting: an admin identifier, else the ``user``/``email`` param."""
    value = _p(params, "adminUid", "uid", "adminEmail", "user", "email")
    return str(value).strip() if value is not None else None


def _actor(params: Params) -> str | None:
    value = _p(params, "user", "email", "userEmail")
    return str(value).strip() if value is not None else None


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def _test_connection(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(status="Online")


def _login(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    profile = services.users.login(p.get("email"), p.get("password"))
    user = profile.to_dict()
    user.pop("uid")
    return ok(user=user)


def _change_password(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    services.users.change_password(
        p.get("email"),
        _p(p, "currentPassword", "current_password"),
        _p(p, "newPassword", "new_password"),
    )
    return ok(message="Password updated")


def _add_user(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    services.users.add_user(
        _p(p, "adminUid", "uid", "adminEmail", "email"),
        _p(p, "newUserEmail", "userEmail"),
        _p(p, "defaultPassword", "password"),
        name=_text(p, "name", "newUserName"),
        role=_text(p, "role") or "Employee",
        department=_text(p, "department"),
    )
    return ok(
        message="User added. They can log in with this email and the default password, then change it."
    )


def _list_users(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    users = services.users.list_users(_caller(p))
    return ok(users=[u.to_dict() for u in users])


def _delete_user(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    services.users.delete_user(
        _p(p, "adminUid", "uid", "adminEmail", "email"),
        _p(p, "userEmail", "targetEmail", "targetUid"),
    )
    return ok(message="User removed. They can no longer log in.")


def _admin_set_password(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    services.users.admin_set_password(
        _p(p, "adminUid", "uid", "adminEmail", "email"),
        _p(p, "targetEmail", "userEmail"),
        _p(p, "newPassword", "password"),
    )
    return ok(message="Password updated. User can log in with the new password.")


# ---------------------------------------------------------------------------
# Ledger and form data
# ---------------------------------------------------------------------------


def _get_db(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(status="success", **services.request_selector.get_db())


def _save_inventory(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    payload = p.get("data")
    base_version = p.get("baseVersion")
    if base_version in (None, "") and isinstance(payload, Mapping):
        base_version = payload.get("baseVersion")
    version = services.ledger.save(payload, base_version, user=_p(p, "user", "userEmail"))
    return ok(status="success", version=version)


def _get_form_data(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(**services.request_selector.form_data())


def _get_form_products(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(products=services.request_selector.form_data()["products"])


def _get_lists(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    form = services.request_selector.form_data()
    keys = (
        "products", "materials", "rawMaterials", "packingMaterials",
        "labels", "employees", "departments", "approvers",
    )
    return ok(data={k: form[k] for k in keys})


def _generate_report(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(**services.request_selector.generate_report(p.get("startDate"), p.get("endDate")))


# ---------------------------------------------------------------------------
# Request queries
# ---------------------------------------------------------------------------


def _get_requests_by_stage(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(
        **services.request_selector.requests_by_stage(
            _text(p, "stage"), p.get("limit"), p.get("page"), _flag(p, "light")
        )
    )


def _get_all_requests(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(**services.request_selector.all_requests(p.get("limit"), _flag(p, "light")))


def _get_pending_approvals(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(**services.request_selector.pending_approvals())


def _get_my_requests(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(requests=services.request_selector.my_requests(p.get("email"), _flag(p, "light")))


def _get_request_details(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(request=services.request_selector.request_details(p.get("id")))


def _get_stage_counts(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(counts=services.request_selector.stage_counts(services.overdue_days))


def _get_reserved_totals(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(**services.request_selector.reserved_totals())


def _release_expired(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    released = services.requisitions.release_expired(
        _p(p, "hours", "hoursLimit"), actor=_actor(p) or "system"
    )
    return ok(released=released, count=len(released))


# ---------------------------------------------------------------------------
# Requisition lifecycle
# ---------------------------------------------------------------------------


def _submit_request(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    requisition = services.requisitions.submit(
        requester_email=_p(p, "requesterEmail", "employeeEmail"),
        requester_name=_text(p, "requesterName", "employeeName"),
        request_type=_text(p, "type") or "Production",
        product_name=_text(p, "productName"),
        requested_qty=_p(p, "requestedQty", "quantity", default=0),
        unit=_text(p, "unit"),
        ingredients=_p(p, "ingredients", "formulaItems"),
        packing=_p(p, "packing", "packingItems"),
        labels=p.get("labels"),
        additional_items=_p(p, "additionalItems", "items"),
        manager_email=_text(p, "managerEmail"),
        notes=str(_p(p, "notes", "remarks", default="")),
        purpose=str(p.get("purpose") or ""),
    )
    return ok(requestId=requisition.request_id)


def _update_request_stage(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    requisition = services.requisitions.update_stage(
        p.get("id"), p.get("stageAction"), _actor(p), p.get("partialQty")
    )
    return ok(newStatus=requisition.status.value, currentStage=requisition.current_stage)


def _approve_request(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    requisition = services.requisitions.approve(p.get("id"), _caller(p))
    return ok(newStatus=requisition.status.value)


def _reject_request(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    requisition = services.requisitions.reject(p.get("id"), _caller(p), _text(p, "reason"))
    return ok(newStatus=requisition.status.value)


def _hold_request(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    requisition = services.requisitions.hold(p.get("id"), _caller(p), _text(p, "reason"))
    return ok(newStatus=requisition.status.value)


def _request_correction(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    services.requisitions.request_correction(
        p.get("id"),
        _caller(p),
        _p(p, "corrections", "summary", default="[]"),
        p.get("summary") or "",
    )
    return ok()


def _resubmit_request(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    requisition = services.requisitions.resubmit(p.get("id"), p.get("email"))
    return ok(newStatus=requisition.status.value)


def _wip_action_req(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    requisition = services.requisitions.wip_action(
        p.get("id"), p.get("wipAction"), p.get("email"), _text(p, "reason")
    )
    return ok(newStatus=requisition.status.value)


def _edit_request_item(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    services.requisitions.edit_item(p.get("id"), p.get("itemName"), p.get("quantity"), p.get("email"))
    return ok(message="Item updated")


def _delete_request_item(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    services.requisitions.delete_item(p.get("id"), p.get("itemName"), p.get("email"))
    return ok(message="Item removed")


def _add_material_request(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    services.requisitions.add_material_request(
        p.get("id"), p.get("itemName"), p.get("quantity"), _text(p, "category"), _actor(p)
    )
    return ok()


def _update_packing_labels(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    services.requisitions.update_packing_labels(
        _p(p, "id", "requestId"), p.get("packing"), p.get("labels"), _actor(p)
    )
    return ok()


def _add_thread_note(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    services.requisitions.add_thread_note(p.get("id"), p.get("note") or "", p.get("user"), p.get("role"))
    return ok()


def _admin_override(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    requisition = services.requisitions.admin_override(
        p.get("id"), _caller(p), p.get("status"), p.get("stage")
    )
    return ok(newStatus=requisition.status.value)


def _admin_force_action(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    requisition = services.requisitions.admin_force_action(p.get("id"), _caller(p), p.get("type"))
    return ok(newStatus=requisition.status.value)


# ---------------------------------------------------------------------------
# Production and dispatch
# ---------------------------------------------------------------------------


def _get_wip_batches(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(batches=services.production_selector.wip_batches())


def _get_pending_production(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(pending=services.production_selector.pending_production())


def _save_wip_batch(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    batch_id = services.production.save_wip_batch(
        _p(p, "batchId", "batchNo", "id"),
        linked_req_id=_p(p, "linkedReqId", "requestId", "reqId"),
        status=_text(p, "status") or "started",
        product_name=_text(p, "productName"),
        item_name=_text(p, "itemName"),
        target_qty=p.get("targetQty"),
        unit=_text(p, "unit"),
        formula_id=p.get("formulaId"),
        production_slip_id=p.get("productionSlipId"),
        user=_actor(p),
    )
    return ok(message="WIP batch saved", batchId=batch_id)


def _sync_wip_to_req(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    services.production.sync_wip_to_req(
        _p(p, "batchId", "batchNo"), _text(p, "status"), _text(p, "reason"),
        _p(p, "userEmail", "email"),
    )
    return ok(message="Synced")


def _request_dispatch(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    dispatch_id = services.production.request_dispatch(
        _p(p, "requestId", "id"),
        _text(p, "productName"),
        _p(p, "quantity", "qty"),
        _text(p, "unit"),
        p.get("user"),
        _text(p, "remarks"),
    )
    return ok(dispatchId=dispatch_id, message="Dispatch request submitted for manager approval")


def _approve_dispatch(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    services.production.approve_dispatch(_p(p, "dispatchId", "id"), _caller(p))
    return ok(message="Dispatch approved")


def _get_pending_dispatch_approvals(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(data=services.production_selector.pending_dispatch_approvals())


def _get_dispatches_for_request(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(dispatches=services.production_selector.dispatches_for_request(p.get("requestId")))


# ---------------------------------------------------------------------------
# Formula requests, stock adjustments, slips
# ---------------------------------------------------------------------------


def _submit_formula_request(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    formula_id = services.intake.submit_formula_request(
        p.get("email"), _text(p, "name"), _text(p, "formulaBasis"), _text(p, "formulaDetails")
    )
    return ok(id=formula_id)


def _get_formula_requests(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(requests=services.production_selector.formula_requests(_text(p, "status") or None))


def _update_formula_request_status(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    services.intake.update_formula_request_status(
        p.get("id"), p.get("status"), p.get("user"), _text(p, "notes")
    )
    return ok()


def _submit_stock_adjustment(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    adjustment_id = services.intake.submit_stock_adjustment(
        _text(p, "itemName"),
        p.get("quantity"),
        _text(p, "unit"),
        _text(p, "itemId"),
        _text(p, "requisitionId"),
        p.get("user") or "",
    )
    return ok(message="Request submitted", requestId=adjustment_id)


def _get_stock_adjustment_requests(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    return ok(
        requests=services.production_selector.stock_adjustment_requests(_text(p, "status") or None)
    )


def _mark_stock_adjustment_done(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    services.intake.mark_stock_adjustment_done(p.get("requestId"), _text(p, "doneBy"))
    return ok()


def _mark_used(services: RequisitionOrchestrator, p: Params) -> dict[str, Any]:
    services.intake.mark_used(_p(p, "id", "slipId"), p.get("items"), _text(p, "context"))
    return ok()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_REQ = ("id", "requestId")


def _read(name: str, handler: Handler) -> ActionSpec:
    return ActionSpec(name, handler)


def _write(name: str, handler: Handler, *lock_params: str, scope: str = "requisition") -> ActionSpec:
    return ActionSpec(name, handler, mutating=True, lock_params=lock_params, lock_scope=scope)


_SPECS: tuple[ActionSpec, ...] = (
    _read("test_connection", _test_connection),
    _write("login", _login, "email", scope="user"),
    _write("change_password", _change_password, "email", scope="user"),
    _write("add_user", _add_user, "newUserEmail", "userEmail", scope="user"),
    _read("list_users", _list_users),
    _write("delete_user", _delete_user, "userEmail", "targetEmail", "targetUid", scope="user"),
    _write("admin_set_password", _admin_set_password, "targetEmail", "userEmail", scope="user"),
    _read("get_db", _get_db),
    _write("save_inventory", _save_inventory, scope="ledger"),
    _read("get_form_data", _get_form_data),
    _read("get_form_products", _get_form_products),
    _read("get_lists", _get_lists),
    _read("generate_report", _generate_report),
    _read("get_requests_by_stage", _get_requests_by_stage),
    _read("get_all_requests", _get_all_requests),
    _read("get_request_details", _get_request_details),
    _read("get_stage_counts", _get_stage_counts),
    _read("get_my_requests", _get_my_requests),
    _read("get_pending_approvals", _get_pending_approvals),
    _read("get_requisition_reserved_totals", _get_reserved_totals),
    _write("release_expired_reservations", _release_expired, scope="reservation-sweep"),
    _write("submit_request", _submit_request, scope="requisition-sequence"),
    _write("update_request_stage", _update_request_stage, *_REQ),
    _write("add_thread_note", _add_thread_note, *_REQ),
    _write("add_material_request", _add_material_request, *_REQ),
    _write("approve_request", _approve_request, *_REQ),
    _write("hold_request", _hold_request, *_REQ),
    _write("reject_request", _reject_request, *_REQ),
    _write("request_correction", _request_correction, *_REQ),
    _write("resubmit_request", _resubmit_request, *_REQ),
    _write("update_request_packing_labels", _update_packing_labels, *_REQ),
    _write("wip_action_req", _wip_action_req, *_REQ),
    _write("edit_request_item", _edit_request_item, *_REQ),
    _write("delete_request_item", _delete_request_item, *_REQ),
    _write("admin_override", _admin_override, *_REQ),
    _write("admin_force_action", _admin_force_action, *_REQ),
    _read("get_wip_batches", _get_wip_batches),
    _read("get_pending_production", _get_pending_production),
    _write("save_wip_batch", _save_wip_batch, "linkedReqId", "requestId", "reqId", "batchId", "batchNo"),
    _write("sync_wip_to_req", _sync_wip_to_req, "batchId", "batchNo", scope="batch"),
    _write("request_dispatch", _request_dispatch, *_REQ),
    _write("approve_dispatch", _approve_dispatch, "dispatchId", "id", scope="dispatch"),
    _read("get_pending_dispatch_approvals", _get_pending_dispatch_approvals),
    _read("get_dispatches_for_request", _get_dispatches_for_request),
    _write("submit_formula_request", _submit_formula_request, scope="formula-sequence"),
    _read("get_formula_requests", _get_formula_requests),
    _write("update_formula_request_status", _update_formula_request_status, "id", scope="formula"),
    _write("submit_stock_adjustment_request", _submit_stock_adjustment, scope="adjustment-sequence"),
    _read("get_stock_adjustment_requests", _get_stock_adjustment_requests),
    _write("mark_stock_adjustment_done", _mark_stock_adjustment_done, "requestId", scope="adjustment"),
    _write("mark_used", _mark_used, "id", "slipId", scope="slip"),
)

# Older client names for the same actions.
ALIASES: dict[str, str] = {
    "test": "test_connection",
    "create_request": "submit_request",
    "update_req_stage": "update_request_stage",
    "approve_partial_request": "approve_request",
    "hold_plan_request": "hold_request",
}

ACTIONS: dict[str, ActionSpec] = {spec.name: spec for spec in _SPECS}
ACTIONS.update({alias: ACTIONS[target] for alias, target in ALIASES.items()})


class ActionDispatcher:
    """
    Runs registered actions.

    Contract:
        ``services_factory(session)`` builds the per-action orchestrator.
        ``after_commit`` (optional) is called after every committed
        mutating action; the backend uses it to drain notifications.
    """

    def __init__(
        self,
        database: Database,
        services_factory: ServicesFactory,
        lock: KeyedLock | None = None,
        after_commit: Callable[[], None] | None = None,
        actions: Mapping[str, ActionSpec] | None = None,
    ):
        self.database = database
        self.services_factory = services_factory
        self.lock = lock or KeyedLock()
        self.after_commit = after_commit
        self.actions = dict(actions if actions is not None else ACTIONS)

    def invoke(self, action: str, params: Params | None = None) -> dict[str, Any]:
        params = dict(params or {})
        spec = self.actions.get(action)
        if spec is None:
            logger.info("unknown_action", extra={"action_name": str(action)})
            return {"result": "error", "error": f"Invalid action: {action}"}

        request_id = _p(params, "id", "requestId", "dispatchId", "batchId")
        with LogContext.for_action(spec.name, actor_id=_caller(params), request_id=request_id):
            try:
                result = self._run(spec, params)
            except RequisitionKernelError as exc:
                logger.info("action_failed", exc_info=exc)
                return error_result(exc)
            except Exception as exc:
                logger.exception("action_crashed")
                return error_result(exc)

            if spec.mutating and self.after_commit is not None:
                self._after_commit()
            return result

    def _run(self, spec: ActionSpec, params: Params) -> dict[str, Any]:
        with ExitStack() as stack:
            key = spec.lock_key(params)
            if key is not None:
                stack.enter_context(self.lock.hold(key))
            with self.database.session_scope() as session:
                services = self.services_factory(session)
                result = spec.handler(services, params)
        logger.debug("action_committed", extra={"mutating": spec.mutating})
        return result

    def _after_commit(self) -> None:
        try:
            self.after_commit()
        except Exception:
            # The action is already committed; undelivered entries stay pending.
            logger.exception("after_commit_failed")
