"""
Deterministic hashing utilities.

Password hashes follow the existing user records: SHA-256 over the plaintext
concatenated with the lower-cased email, hex encoded.
"""

import hashlib
import hmac
import json
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

_HEX_DIGEST = re.compile(r"^[a-f0-9]{64}$", re.IGNORECASE)


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        return str(obj.normalize())
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    Keys are sorted alphabetically and no whitespace is emitted.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def sha256_hex(text: str) -> str:
    """Hex-encoded SHA-256 of a UTF-8 string."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize_email(email: str | None) -> str:
    """Lower-case and strip an email address."""
    return str(email or "").lower().strip()


def hash_password(password: str, email: str) -> str:
    """
    Salted password hash: SHA-256 of ``password + lower(email)``.

    Args:
        password: Plaintext password.
        email: The account email; normalized before use as the salt.

    Returns:
        Hex-encoded SHA-256 hash (64 characters).
    """
    return sha256_hex(str(password) + normalize_email(email))


def is_password_hash(stored: str) -> bool:
    """True if ``stored`` looks like a hex SHA-256 digest."""
    return bool(_HEX_DIGEST.match(stored or ""))


def _same(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def verify_password(stored: str, password: str, email: str) -> bool:
    """
    Check a plaintext password against a stored credential.

    Accounts imported from the spreadsheet era may still hold a plaintext
    password; those match on exact text.  Callers re-hash on success.
    Both comparisons are constant-time.
    """
    stored = (stored or "").strip()
    if not stored:
        return False
    if _same(stored, hash_password(password, email)):
        return True
    return not is_password_hash(stored) and _same(stored, str(password).strip())
