"""
Tests for structured logging (requisition_kernel/logging_config.py).

Verifies:
- Every line of one invoked action shares a correlation id, the action
  name, the caller and the target requisition
- Separate invocations get separate correlation ids
- Kernel errors contribute their code and structured attributes
- Domain enums and dataclasses are rendered as JSON values
- Notification delivery logs under its own context per queue entry
- configure_logging attaches exactly one handler until reset
"""

import json
import logging
from io import StringIO

import pytest

from requisition_kernel.domain.ledger import DeductionShortfall
from requisition_kernel.domain.requisition import RequisitionState
from requisition_kernel.exceptions import ConflictError, TransportFailure
from requisition_kernel.logging_config import (
    RESERVED_RECORD_KEYS,
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)
from requisition_kernel.services.notification_service import NotificationService
from requisition_services.notification_worker import NotificationWorker
from requisition_services.transports import RecordingTransport
from tests.conftest import MANAGER_EMAIL, ledger_payload


@pytest.fixture
def clean_logging():
    """Unconfigured logging for the test; the suite's setup is restored after."""
    reset_logging()
    yield
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _format(record_extra=None, exc=None, level=logging.INFO) -> dict:
    logger = get_logger("test.format")
    record = logger.makeRecord(
        logger.name, level, __file__, 1, "event", (), (type(exc), exc, None) if exc else None,
        extra=record_extra,
    )
    return json.loads(StructuredFormatter().format(record))


def _messages(records, message) -> list[dict]:
    return [r for r in records if r["message"] == message]


class TestActionContext:

    def test_invoke_binds_action_actor_and_request(self, backend, submit, captured_logs):
        request_id = submit(10)
        backend.invoke("reject_request", {"id": request_id, "user": MANAGER_EMAIL, "reason": "wrong batch"})

        lines = [r for r in captured_logs() if r.get("action") == "reject_request"]
        assert lines
        assert {r["actor_id"] for r in lines} == {MANAGER_EMAIL}
        assert {r["request_id"] for r in lines} == {request_id}
        assert len({r["correlation_id"] for r in lines}) == 1

    def test_each_invoke_gets_its_own_correlation_id(self, backend, captured_logs):
        backend.invoke("get_db", {})
        backend.invoke("get_db", {})
        backend.invoke("save_inventory", {"data": ledger_payload(), "user": MANAGER_EMAIL})

        by_action = {}
        for record in captured_logs():
            if "action" in record:
                by_action.setdefault(record["correlation_id"], set()).add(record["action"])
        assert len(by_action) == 3
        assert all(len(actions) == 1 for actions in by_action.values())

    def test_context_does_not_leak_past_invoke(self, backend, submit):
        submit(5)
        assert LogContext.get_all() == {}

    def test_unknown_action_logged_without_context(self, backend, captured_logs):
        backend.invoke("no_such_action", {"user": MANAGER_EMAIL})
        [record] = _messages(captured_logs(), "unknown_action")
        assert record["action_name"] == "no_such_action"
        assert "correlation_id" not in record

    def test_call_site_request_id_overrides_bound_one(self, captured_logs):
        logger = get_logger("test.context")
        with LogContext.for_action("issue_request", actor_id="store@plant.example", request_id="REQ-000001"):
            logger.info("from_context")
            logger.info("explicit", extra={"request_id": "REQ-000002"})
        first, second = captured_logs()
        assert first["request_id"] == "REQ-000001"
        assert second["request_id"] == "REQ-000002"
        assert first["correlation_id"] == second["correlation_id"]

    def test_nested_bind_restores_outer(self):
        with LogContext.for_action("approve_request", actor_id=MANAGER_EMAIL):
            outer = LogContext.get_all()
            with LogContext.bind(request_id="REQ-000009"):
                assert LogContext.get_all() == {**outer, "request_id": "REQ-000009"}
            assert LogContext.get_all() == outer
        assert LogContext.get_all() == {}

    def test_blank_identity_not_bound(self):
        with LogContext.for_action("get_db", actor_id="", request_id=None):
            assert set(LogContext.get_all()) == {"correlation_id", "action"}

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError, match="batch"):
            with LogContext.bind(batch="B-1"):
                pass


class TestKernelErrorFields:

    def test_failed_action_logs_error_attributes(self, backend, submit, captured_logs):
        request_id = submit(10)
        backend.invoke("reject_request", {"id": request_id, "user": MANAGER_EMAIL, "reason": "no"})
        result = backend.invoke("approve_request", {"id": request_id, "user": MANAGER_EMAIL})
        assert result["result"] == "error"

        [record] = _messages(captured_logs(), "action_failed")
        assert record["action"] == "approve_request"
        assert record["exc_code"] == result["code"]
        assert record["exc_message"] == result["error"]
        assert record["exc_request_id"] == request_id

    def test_stale_ledger_save_logs_server_version(self, backend, captured_logs):
        current = backend.invoke("get_db", {})["latestId"]
        backend.invoke("save_inventory", {"data": ledger_payload(), "user": MANAGER_EMAIL})
        result = backend.invoke(
            "save_inventory", {"data": ledger_payload(resin=1), "baseVersion": current, "user": MANAGER_EMAIL}
        )
        assert result["code"] == "CONFLICT"

        [record] = _messages(captured_logs(), "action_failed")
        assert record["exc_type"] == "ConflictError"
        assert record["exc_server_version"] == result["serverVersion"]
        assert record["exc_collection"] == "InventoryLedger"

    def test_unset_attributes_omitted(self):
        record = _format(exc=ConflictError("InventoryLedger", "latest", server_version=None))
        assert record["exc_code"] == "CONFLICT"
        assert "exc_server_version" not in record
        assert "traceback" in record

    def test_non_kernel_exception_has_no_code(self):
        record = _format(exc=ValueError("boom"), level=logging.ERROR)
        assert record["exc_type"] == "ValueError"
        assert "exc_code" not in record


class TestEncoding:

    def test_state_enum_rendered_as_label_value(self):
        record = _format({"to_state": RequisitionState.APPROVED})
        assert record["to_state"] == RequisitionState.APPROVED.value

    def test_shortfall_dataclass_rendered_as_object(self):
        shortfall = DeductionShortfall("RM-1", "Resin", "rawMaterials", requested=10.0, deducted=4.0)
        record = _format({"shortfall": shortfall})
        assert record["shortfall"] == {
            "item_id": "RM-1",
            "item_name": "Resin",
            "category": "rawMaterials",
            "requested": 10.0,
            "deducted": 4.0,
        }

    def test_envelope_not_overridable_by_context(self):
        with LogContext.for_action("get_db"):
            record = _format({"role": "Employee"})
        assert record["message"] == "event"
        assert record["level"] == "INFO"
        assert record["logger"] == "requisition_kernel.test.format"
        assert record["role"] == "Employee"

    def test_reserved_keys_cover_record_attributes(self):
        assert {"created", "module", "message", "args", "name"} <= RESERVED_RECORD_KEYS


class TestDeliveryContext:

    def test_failed_delivery_logged_per_entry(self, seeded, clock, captured_logs):
        with seeded.session_scope() as session:
            NotificationService(session, clock).enqueue(
                "approval_needed",
                {"requestId": "REQ-000007", "managerEmail": MANAGER_EMAIL, "productName": "Epoxy Kit"},
            )
        NotificationWorker(seeded, RecordingTransport(fail_for=(MANAGER_EMAIL,)), clock).drain()

        [record] = _messages(captured_logs(), "notification_send_failed")
        assert record["action"] == "deliver_notification"
        assert record["request_id"] == "REQ-000007"
        assert record["exc_code"] == TransportFailure.code
        assert record["exc_recipient"] == MANAGER_EMAIL
        assert record["exc_reason"] == "recipient rejected"
        assert record["status"] == "pending"

    def test_drain_summary_outside_entry_context(self, seeded, clock, captured_logs):
        with seeded.session_scope() as session:
            NotificationService(session, clock).enqueue(
                "approval_needed",
                {"requestId": "REQ-000008", "managerEmail": MANAGER_EMAIL, "productName": "Epoxy Kit"},
            )
        NotificationWorker(seeded, RecordingTransport(), clock).drain()

        records = captured_logs()
        [sent] = _messages(records, "notification_sent")
        [summary] = _messages(records, "notifications_drained")
        assert sent["request_id"] == "REQ-000008"
        assert "correlation_id" not in summary


class TestConfigureLogging:

    def test_idempotent(self, clean_logging):
        root = logging.getLogger("requisition_kernel")
        first = logging.StreamHandler(StringIO())
        second = logging.StreamHandler(StringIO())
        configure_logging(handler=first)
        configure_logging(handler=second)
        assert root.handlers.count(first) == 1
        assert second not in root.handlers

    def test_level_by_name(self, clean_logging):
        configure_logging(level="warning", handler=logging.StreamHandler(StringIO()))
        assert logging.getLogger("requisition_kernel").level == logging.WARNING

    def test_writes_json_lines_and_stops_propagation(self, clean_logging):
        stream = StringIO()
        configure_logging(stream=stream)
        get_logger("services.dispatcher").info("action_committed", extra={"mutating": True})
        record = json.loads(stream.getvalue().strip())
        assert record["mutating"] is True
        assert logging.getLogger("requisition_kernel").propagate is False

    def test_reset_restores_defaults(self, clean_logging):
        configure_logging(handler=logging.StreamHandler(StringIO()))
        reset_logging()
        root = logging.getLogger("requisition_kernel")
        assert root.handlers == []
        assert root.propagate is True
