"""JSON helpers for audit log payloads.

Audit details and before/after snapshots are stored as opaque JSON text. Only flat
mappings of string keys to primitives (and lists/dicts of primitives) are written;
money, dates, UUIDs and enums are converted to strings so the stored shape stays
stable regardless of the domain types that produced it.
"""

import json
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _to_primitive(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, bool | int | float | str):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _to_primitive(item) for key, item in value.items()}
    if isinstance(value, list | tuple | set | frozenset):
        return [_to_primitive(item) for item in value]
    raise TypeError(f"Unsupported audit value type: {type(value).__name__}")


def serialize_audit_payload(payload: Mapping[str, Any] | None) -> str | None:
    """Serialize a mapping to JSON text, or None for an empty payload."""
    if payload is None:
        return None
    return json.dumps(_to_primitive(payload), sort_keys=True)


def deserialize_audit_payload(raw: str | None) -> dict[str, Any] | None:
    """Deserialize JSON text written by serialize_audit_payload.

    Returns None instead of raising when the stored text is empty, not valid JSON,
    or not a JSON object.
    """
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    return data
