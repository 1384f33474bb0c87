"""
requisition_services.transports -- notification delivery transports.

Responsibility:
    Deliver one built notification (``{to, subject, html, cc}``).  A transport
    either returns normally or raises ``TransportFailure``; retry policy and
    bookkeeping belong to the worker.

Architecture position:
    Services -- outer layer.  Constructed by the backend container from
    ``NotificationSettings.transport``.
"""

from __future__ import annotations

import smtplib
import threading
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol

from requisition_config.schema import SmtpSettings
from requisition_kernel.exceptions import TransportFailure
from requisition_kernel.logging_config import get_logger

logger = get_logger("services.transport")


@dataclass(frozen=True)
class OutboundMessage:
    to: str
    subject: str
    html: str
    cc: str = ""

    @classmethod
    def from_content(cls, content: dict[str, str]) -> OutboundMessage:
        return cls(
            to=content["to"],
            subject=content.get("subject", ""),
            html=content.get("html", ""),
            cc=content.get("cc", "") or "",
        )

    @property
    def recipients(self) -> list[str]:
        addresses = [*self.to.split(","), *self.cc.split(",")]
        return [a.strip() for a in addresses if a.strip()]


class NotificationTransport(Protocol):
    name: str

    def send(self, message: OutboundMessage) -> None:
        ...


class RecordingTransport:
    """Keeps delivered messages in memory.  Optionally fails for given recipients."""

    name = "recording"

    def __init__(self, fail_for: tuple[str, ...] = ()):
        self.sent: list[OutboundMessage] = []
        self.fail_for = {a.lower() for a in fail_for}
        self._lock = threading.Lock()

    def send(self, message: OutboundMessage) -> None:
        failing = [r for r in message.recipients if r.lower() in self.fail_for]
        if failing:
            raise TransportFailure(failing[0], "recipient rejected")
        with self._lock:
            self.sent.append(message)

    def subjects(self) -> list[str]:
        with self._lock:
            return [m.subject for m in self.sent]


class SmtpTransport:
    """Sends HTML mail through an SMTP server, one connection per message."""

    name = "smtp"

    def __init__(self, settings: SmtpSettings):
        self.settings = settings

    def _build(self, message: OutboundMessage) -> EmailMessage:
        mail = EmailMessage()
        mail["From"] = self.settings.sender
        mail["To"] = message.to
        if message.cc:
            mail["Cc"] = message.cc
        mail["Subject"] = message.subject
        mail.set_content("This message requires an HTML-capable mail client.")
        mail.add_alternative(message.html, subtype="html")
        return mail

    def send(self, message: OutboundMessage) -> None:
        s = self.settings
        try:
            with smtplib.SMTP(s.host, s.port, timeout=s.timeout_seconds) as client:
                if s.use_tls:
                    client.starttls()
                if s.username:
                    client.login(s.username, s.password)
                client.send_message(self._build(message), to_addrs=message.recipients)
        except (smtplib.SMTPException, OSError) as exc:
            raise TransportFailure(message.to, str(exc)) from exc
        logger.debug("smtp_message_sent", extra={"recipient": message.to})
