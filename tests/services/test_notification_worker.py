"""
Tests for the notification outbox worker and the SMTP transport.

Verifies:
- Pending entries are delivered once and marked sent
- Entries with no resolvable recipient are dropped, not retried
- Transport failures are retried until max_attempts, then marked failed
- One failing entry does not block the rest of the batch
"""

import smtplib

import pytest

from requisition_config.schema import SmtpSettings
from requisition_kernel.db.collections import NOTIFICATION_QUEUE
from requisition_kernel.db.document_store import DocumentStore
from requisition_kernel.exceptions import TransportFailure
from requisition_kernel.services.notification_service import NotificationService
from requisition_services.notification_worker import NotificationWorker
from requisition_services.transports import OutboundMessage, RecordingTransport, SmtpTransport
from tests.conftest import EMPLOYEE_EMAIL, MANAGER_EMAIL


def _enqueue(database, clock, event_type, payload) -> str:
    with database.session_scope() as session:
        return NotificationService(session, clock).enqueue(event_type, payload).key


def _entry(database, key) -> dict:
    with database.session_scope() as session:
        return DocumentStore(session).get(NOTIFICATION_QUEUE, key).body


def _approval(request_id="REQ-000001") -> dict:
    return {"requestId": request_id, "managerEmail": MANAGER_EMAIL, "productName": "Epoxy Kit"}


class TestDrain:

    def test_delivers_and_marks_sent(self, seeded, clock):
        key = _enqueue(seeded, clock, "approval_needed", _approval())
        transport = RecordingTransport()
        result = NotificationWorker(seeded, transport, clock).drain()

        assert result.sent == 1
        [message] = transport.sent
        assert message.to == MANAGER_EMAIL
        assert "REQ-000001" in message.subject
        body = _entry(seeded, key)
        assert body["status"] == "sent"
        assert body["sent"] is True
        assert body["attempts"] == 1

    def test_sent_entries_not_resent(self, seeded, clock):
        _enqueue(seeded, clock, "approval_needed", _approval())
        transport = RecordingTransport()
        worker = NotificationWorker(seeded, transport, clock)
        worker.drain()
        assert worker.drain().outcomes == []
        assert len(transport.sent) == 1

    def test_unaddressable_entry_dropped(self, seeded, clock):
        key = _enqueue(seeded, clock, "dispatch_approved", {"requestId": "REQ-000001", "requesterEmail": ""})
        result = NotificationWorker(seeded, RecordingTransport(), clock).drain()
        assert result.count("dropped") == 1
        assert _entry(seeded, key)["status"] == "dropped"

    def test_failures_retry_then_fail(self, seeded, clock):
        key = _enqueue(seeded, clock, "approval_needed", _approval())
        worker = NotificationWorker(seeded, RecordingTransport(fail_for=(MANAGER_EMAIL,)), clock, max_attempts=2)

        first = worker.drain()
        assert [o.status for o in first.outcomes] == ["pending"]
        assert _entry(seeded, key)["attempts"] == 1

        second = worker.drain()
        assert [o.status for o in second.outcomes] == ["failed"]
        body = _entry(seeded, key)
        assert body["status"] == "failed"
        assert body["lastError"] == "recipient rejected"

        assert worker.drain().outcomes == []

    def test_failure_does_not_block_batch(self, seeded, clock):
        _enqueue(seeded, clock, "approval_needed", _approval())
        clock.advance(1)
        _enqueue(seeded, clock, "request_approved", {"requestId": "REQ-000002", "requesterEmail": EMPLOYEE_EMAIL})
        transport = RecordingTransport(fail_for=(MANAGER_EMAIL,))
        result = NotificationWorker(seeded, transport, clock).drain()
        assert [o.event_type for o in result.outcomes] == ["approval_needed", "request_approved"]
        assert [m.to for m in transport.sent] == [EMPLOYEE_EMAIL]

    def test_batch_size(self, seeded, clock):
        for n in range(3):
            _enqueue(seeded, clock, "approval_needed", _approval(f"REQ-00000{n}"))
            clock.advance(1)
        worker = NotificationWorker(seeded, RecordingTransport(), clock, batch_size=2)
        assert worker.drain().sent == 2
        assert worker.drain().sent == 1

    def test_callbacks(self, seeded, clock):
        _enqueue(seeded, clock, "approval_needed", _approval())
        seen = []
        worker = NotificationWorker(seeded, RecordingTransport(), clock)
        worker.on_outcome(seen.append)
        worker.drain()
        assert [(o.event_type, o.status) for o in seen] == [("approval_needed", "sent")]


class _FakeSmtp:
    instances: list["_FakeSmtp"] = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.calls = []
        _FakeSmtp.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.calls.append("starttls")

    def login(self, username, password):
        self.calls.append(("login", username))

    def send_message(self, mail, to_addrs=None):
        self.calls.append(("send", mail["Subject"], tuple(to_addrs)))


class TestSmtpTransport:

    @pytest.fixture(autouse=True)
    def _fake_smtp(self, monkeypatch):
        _FakeSmtp.instances = []
        monkeypatch.setattr(smtplib, "SMTP", _FakeSmtp)

    def test_send(self):
        settings = SmtpSettings(host="mail.plant.example", port=587, username="bot", password="pw", use_tls=True)
        message = OutboundMessage(to=MANAGER_EMAIL, subject="Hello", html="<p>x</p>", cc=EMPLOYEE_EMAIL)
        SmtpTransport(settings).send(message)
        [client] = _FakeSmtp.instances
        assert client.host == "mail.plant.example"
        assert client.calls == [
            "starttls",
            ("login", "bot"),
            ("send", "Hello", (MANAGER_EMAIL, EMPLOYEE_EMAIL)),
        ]

    def test_connection_error_becomes_transport_failure(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(smtplib, "SMTP", refuse)
        with pytest.raises(TransportFailure):
            SmtpTransport(SmtpSettings()).send(OutboundMessage(to=MANAGER_EMAIL, subject="s", html=""))
