"""
Safe serialization for the document store.

The store accepts only a JSON-like subset: ``None``, booleans, finite
numbers, strings, lists and string-keyed maps whose keys contain no ``.``.
Everything written through ``DocumentStore`` passes through ``sanitize``.
"""

import json
import math
from typing import Any


def sanitize(value: Any) -> Any:
    """
    Coerce an arbitrary value into the store's accepted subset.

    Rules:
        - ``None`` -> ``None``
        - ``NaN`` / ``+Infinity`` / ``-Infinity`` -> ``0``
        - strings, booleans and finite numbers are unchanged
        - lists and tuples are mapped element-wise (tuples become lists)
        - maps are recursed; any ``.`` in a key becomes ``_``
        - any other type -> ``None``

    Postconditions:
        ``sanitize(sanitize(x)) == sanitize(x)`` for every ``x``.
    """
    if value is None:
        return None
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return 0
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return [sanitize(item) for item in value]
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for key, item in value.items():
            safe_key = str(key)
            if "." in safe_key:
                safe_key = safe_key.replace(".", "_")
            out[safe_key] = sanitize(item)
        return out
    return None


def safe_json(value: Any, default: Any) -> Any:
    """
    Decode a value that may be stored either as a JSON string or as a
    structure already.

    Line items on older requisitions were persisted as JSON text; newer ones
    are stored as lists.  Undecodable or empty input yields ``default``.
    """
    if value is None or value == "":
        return default
    if isinstance(value, (list, dict)):
        return value
    try:
        return json.loads(str(value))
    except (TypeError, ValueError):
        return default


def parse_quantity(value: Any) -> float:
    """Parse a quantity as float; unparseable or non-finite input is 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number
