"""
BackendConfig schema.

The typed runtime configuration of the requisition backend.  YAML files are
parsed into these frozen dataclasses by the loader; every value is validated
in ``__post_init__`` so an invalid file fails at load time, not mid-action.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from requisition_kernel.utils.hashing import canonicalize_json, sha256_hex

DEFAULT_DATABASE_URL = "sqlite:///requisitions.db"


@dataclass(frozen=True)
class SmtpSettings:
    """Outbound mail server used by the SMTP notification transport."""

    host: str = "localhost"
    port: int = 25
    username: str = ""
    password: str = ""
    sender: str = "requisitions@localhost"
    use_tls: bool = False
    timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("smtp.host must not be empty")
        if not 0 < self.port < 65536:
            raise ValueError(f"smtp.port out of range: {self.port}")
        if "@" not in self.sender:
            raise ValueError(f"smtp.sender must be an email address: {self.sender!r}")
        if self.timeout_seconds <= 0:
            raise ValueError("smtp.timeout_seconds must be positive")


@dataclass(frozen=True)
class NotificationSettings:
    """
    Outbox delivery.

    ``transport`` is ``smtp`` or ``recording`` (keeps messages in memory).
    With ``deliver_inline`` the dispatcher drains the queue after each
    committed action instead of leaving it to a separate worker run.
    """

    transport: str = "recording"
    deliver_inline: bool = True
    max_attempts: int = 3
    batch_size: int = 50
    smtp: SmtpSettings = field(default_factory=SmtpSettings)

    def __post_init__(self) -> None:
        if self.transport not in ("smtp", "recording"):
            raise ValueError(f"notifications.transport must be smtp or recording, got {self.transport!r}")
        if self.max_attempts < 1:
            raise ValueError("notifications.max_attempts must be at least 1")
        if self.batch_size < 1:
            raise ValueError("notifications.batch_size must be at least 1")


@dataclass(frozen=True)
class BackendConfig:
    """Everything the backend container needs to start."""

    database_url: str = DEFAULT_DATABASE_URL
    database_echo: bool = False
    app_url: str = ""
    brand_name: str = ""
    reservation_timeout_hours: float = 48.0
    overdue_days: float = 3.0
    approval_roles: tuple[str, ...] = ("manager", "admin")
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    def __post_init__(self) -> None:
        if not self.database_url:
            raise ValueError("database_url must not be empty")
        if self.reservation_timeout_hours <= 0:
            raise ValueError("reservation_timeout_hours must be positive")
        if self.overdue_days <= 0:
            raise ValueError("overdue_days must be positive")
        if not self.approval_roles or any(not str(r).strip() for r in self.approval_roles):
            raise ValueError("approval_roles must list at least one non-empty role")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackendConfig:
        """Build from a parsed YAML mapping.  Unknown keys are rejected."""
        data = dict(data or {})
        _reject_unknown(data, cls.__dataclass_fields__, "backend")
        notifications = dict(data.pop("notifications", None) or {})
        _reject_unknown(notifications, NotificationSettings.__dataclass_fields__, "notifications")
        smtp = dict(notifications.pop("smtp", None) or {})
        _reject_unknown(smtp, SmtpSettings.__dataclass_fields__, "notifications.smtp")
        if "approval_roles" in data:
            data["approval_roles"] = tuple(str(r).lower() for r in data["approval_roles"] or ())
        return cls(
            **data,
            notifications=NotificationSettings(**notifications, smtp=SmtpSettings(**smtp)),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def checksum(self) -> str:
        """SHA-256 of the canonical JSON form, without the SMTP password."""
        data = self.to_dict()
        data["notifications"]["smtp"]["password"] = ""
        return sha256_hex(canonicalize_json(data))


def _reject_unknown(data: dict[str, Any], known: dict[str, Any], section: str) -> None:
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ValueError(f"Unknown {section} configuration keys: {', '.join(unknown)}")
