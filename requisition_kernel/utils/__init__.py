"""Utility modules for the requisition kernel."""

from requisition_kernel.utils.hashing import (
    canonicalize_json,
    hash_password,
    normalize_email,
    verify_password,
)
from requisition_kernel.utils.keyed_lock import KeyedLock
from requisition_kernel.utils.serialization import parse_quantity, safe_json, sanitize

__all__ = [
    "canonicalize_json",
    "hash_password",
    "normalize_email",
    "verify_password",
    "KeyedLock",
    "parse_quantity",
    "safe_json",
    "sanitize",
]
