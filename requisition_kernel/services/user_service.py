"""
UserService -- role lookup, login and user administration.

Responsibility:
    Resolves a caller identifier to a role string, tests role membership by
    case-insensitive substring ("Inventory Manager" satisfies ``manager``),
    verifies passwords, and administers the ``Users`` collection.

Architecture position:
    Kernel > Services.  Every approval and administrative action calls
    ``require_role`` before touching any other document.

Invariants enforced:
    - User documents are keyed by normalized email.
    - Stored credentials are SHA-256 of ``password + lower(email)``.  Legacy
      plaintext credentials are accepted once and re-hashed on login.
    - Administrative operations require the caller's role to contain
      ``manager`` or ``admin``; a caller cannot delete their own account.

Failure modes:
    - ValidationError for missing parameters or short passwords.
    - AuthenticationError for unknown users and wrong passwords.
    - PermissionDeniedError when the caller's role is insufficient.
    - UserNotFoundError / DuplicateUserError on administration targets.
"""

from dataclasses import dataclass
from typing import Any, Sequence

from sqlalchemy.orm import Session

from requisition_kernel.db.collections import USERS
from requisition_kernel.db.document_store import Document
from requisition_kernel.domain.clock import Clock
from requisition_kernel.exceptions import (
    AuthenticationError,
    DuplicateUserError,
    PermissionDeniedError,
    UserNotFoundError,
    ValidationError,
)
from requisition_kernel.logging_config import get_logger
from requisition_kernel.services.base import BaseService
from requisition_kernel.utils.hashing import (
    hash_password,
    is_password_hash,
    normalize_email,
    verify_password,
)

logger = get_logger("services.user")

APPROVER_ROLES: tuple[str, ...] = ("manager", "admin")
MIN_PASSWORD_LENGTH = 4


@dataclass(frozen=True)
class UserProfile:
    """Public view of a user document (never carries the credential)."""

    uid: str
    email: str
    name: str
    role: str
    department: str

    def to_dict(self) -> dict[str, str]:
        return {
            "uid": self.uid,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "department": self.department,
        }


def _profile(doc: Document) -> UserProfile:
    body = doc.body
    return UserProfile(
        uid=doc.key,
        email=str(body.get("email") or body.get("Email") or doc.key),
        name=str(body.get("name") or body.get("Name") or ""),
        role=str(body.get("role") or body.get("Role") or "").strip(),
        department=str(body.get("department") or body.get("Department") or ""),
    )


def _credential(doc: Document) -> str:
    return str(doc.get("passwordHash") or doc.get("PasswordHash") or "").strip()


class UserService(BaseService):
    """Users, roles and credentials."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        approver_roles: Sequence[str] = APPROVER_ROLES,
    ):
        super().__init__(session, clock)
        self.approver_roles = tuple(approver_roles)

    # ------------------------------------------------------------------
    # Role checks
    # ------------------------------------------------------------------

    def _find(self, identifier: str | None) -> Document | None:
        """Exact key first, then the normalized email when it looks like one."""
        if not identifier:
            return None
        text = str(identifier).strip()
        doc = self.store.get(USERS, text)
        if doc is None and "@" in text:
            doc = self.store.get(USERS, normalize_email(text))
        return doc

    def role_of(self, identifier: str | None) -> str | None:
        doc = self._find(identifier)
        return _profile(doc).role if doc is not None else None

    def has_role(self, identifier: str | None, allowed: Sequence[str] | None = None) -> bool:
        role = (self.role_of(identifier) or "").lower()
        return any(str(a).lower() in role for a in (allowed or self.approver_roles))

    def require_role(
        self,
        identifier: str | None,
        message: str,
        allowed: Sequence[str] | None = None,
    ) -> None:
        """
        Raise unless ``identifier`` resolves to a role containing one of
        ``allowed`` (default: the configured approver roles).

        Raises:
            ValidationError: No identifier supplied.
            PermissionDeniedError: Role missing or insufficient.
        """
        allowed = tuple(allowed or self.approver_roles)
        if not identifier:
            raise ValidationError("Admin email or UID required", field="user")
        if not self.has_role(identifier, allowed):
            logger.warning(
                "permission_denied",
                extra={"identifier": str(identifier), "allowed_roles": list(allowed)},
            )
            raise PermissionDeniedError(str(identifier), tuple(allowed), message)

    def manager_profiles(self) -> list[UserProfile]:
        """Every user whose role contains manager or admin, ordered by key."""
        profiles = [_profile(doc) for doc in self.store.scan_all(USERS)]
        return [
            p for p in profiles
            if any(r in p.role.lower() for r in APPROVER_ROLES)
        ]

    def manager_emails(self) -> list[str]:
        emails: list[str] = []
        for profile in self.manager_profiles():
            email = normalize_email(profile.email)
            if email and email not in emails:
                emails.append(email)
        return emails

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def login(self, email: str | None, password: str | None) -> UserProfile:
        if not email or not password:
            raise ValidationError("Email and password required")
        email_norm = normalize_email(email)
        doc = self.store.get(USERS, email_norm)
        if doc is None:
            raise AuthenticationError(
                "Invalid login or not in user list. Ask admin to add you."
            )
        stored = _credential(doc)
        if not stored:
            raise AuthenticationError("Invalid login")
        if not verify_password(stored, password, email_norm):
            logger.info("login_failed", extra={"user_email": email_norm})
            raise AuthenticationError()

        if not is_password_hash(stored):
            self.store.update(
                USERS, doc.key, {"passwordHash": hash_password(password, email_norm)}
            )
            logger.info("legacy_password_rehashed", extra={"user_email": email_norm})
        logger.info("login_succeeded", extra={"user_email": email_norm})
        profile = _profile(doc)
        return UserProfile(
            uid=profile.uid,
            email=profile.email or email_norm,
            name=profile.name,
            role=profile.role,
            department=profile.department,
        )

    def change_password(self, email: str | None, current: str | None, new: str | None) -> None:
        if not email or not current or not new:
            raise ValidationError("Email, current password and new password required")
        if len(new) < MIN_PASSWORD_LENGTH:
            raise ValidationError("New password must be at least 4 characters", field="newPassword")
        email_norm = normalize_email(email)
        doc = self.store.get(USERS, email_norm)
        if doc is None:
            raise UserNotFoundError(email_norm)
        stored = _credential(doc)
        if not stored:
            raise AuthenticationError("Cannot change password")
        if not verify_password(stored, current, email_norm):
            raise AuthenticationError("Current password is incorrect")
        self.store.update(USERS, doc.key, {"passwordHash": hash_password(new, email_norm)})
        logger.info("password_changed", extra={"user_email": email_norm})

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def add_user(
        self,
        admin_id: str | None,
        email: str | None,
        password: str | None,
        name: str = "",
        role: str = "Employee",
        department: str = "",
    ) -> UserProfile:
        self.require_role(admin_id, "Only Manager or Admin can add users")
        email_norm = normalize_email(email)
        if not email_norm:
            raise ValidationError("User email required", field="newUserEmail")
        if not password:
            raise ValidationError("Default password required", field="defaultPassword")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                "Default password must be at least 4 characters", field="defaultPassword"
            )
        if self.store.get(USERS, email_norm) is not None:
            raise DuplicateUserError(email_norm)

        body = {
            "email": email_norm,
            "name": (name or "").strip() or email_norm,
            "role": (role or "").strip() or "Employee",
            "passwordHash": hash_password(password, email_norm),
            "department": department or "",
            "createdBy": str(admin_id),
            "createdAt": self.clock.now_iso(),
        }
        doc = self.store.set(USERS, email_norm, body)
        logger.info(
            "user_added",
            extra={"user_email": email_norm, "role": body["role"], "admin_id": str(admin_id)},
        )
        return _profile(doc)

    def list_users(self, admin_id: str | None) -> list[UserProfile]:
        self.require_role(admin_id, "Only Manager or Admin can list users")
        return [_profile(doc) for doc in self.store.scan_all(USERS)]

    def delete_user(self, admin_id: str | None, target: str | None) -> None:
        self.require_role(admin_id, "Only Manager or Admin can delete users")
        target_id = str(target or "").strip()
        if not target_id:
            raise ValidationError("User email or UID to delete is required", field="userEmail")
        if normalize_email(target_id) == normalize_email(admin_id):
            raise ValidationError("You cannot delete your own account", field="userEmail")
        key = normalize_email(target_id) if "@" in target_id else target_id
        if not self.store.delete(USERS, key):
            raise UserNotFoundError(key)
        logger.info("user_deleted", extra={"user_email": key, "admin_id": str(admin_id)})

    def admin_set_password(
        self, admin_id: str | None, target_email: str | None, password: str | None
    ) -> None:
        self.require_role(admin_id, "Only Manager or Admin can reset passwords")
        email_norm = normalize_email(target_email)
        if not email_norm:
            raise ValidationError("Target user email required", field="targetEmail")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError("New password must be at least 4 characters", field="newPassword")
        if self.store.get(USERS, email_norm) is None:
            raise UserNotFoundError(email_norm)
        self.store.update(USERS, email_norm, {"passwordHash": hash_password(password, email_norm)})
        logger.info("password_reset", extra={"user_email": email_norm, "admin_id": str(admin_id)})

    def seed(self, users: Sequence[dict[str, Any]]) -> int:
        """
        Insert users that do not yet exist (bootstrap; no role check).

        Each entry needs ``email`` and ``password``; ``name``, ``role`` and
        ``department`` are optional.
        """
        created = 0
        for entry in users:
            email_norm = normalize_email(entry.get("email"))
            if not email_norm or self.store.get(USERS, email_norm) is not None:
                continue
            self.store.set(
                USERS,
                email_norm,
                {
                    "email": email_norm,
                    "name": entry.get("name") or email_norm,
                    "role": entry.get("role") or "Employee",
                    "passwordHash": hash_password(str(entry.get("password") or ""), email_norm),
                    "department": entry.get("department") or "",
                    "createdBy": "seed",
                    "createdAt": self.clock.now_iso(),
                },
            )
            created += 1
        logger.info("users_seeded", extra={"created_count": created})
        return created
