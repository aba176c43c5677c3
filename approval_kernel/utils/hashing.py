"""
Deterministic hashing utilities.

Duplicate-request fingerprints, configuration checksums and engine trace
fingerprints must be reproducible across processes and restarts, so they
all hash the same canonical JSON form.  Dataclasses (settings, approver
slots, decision records) serialise field by field.
"""

import dataclasses
import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}
    if isinstance(obj, Decimal):
        return str(obj.normalize())
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: Any) -> str:
    """
    Convert data to canonical JSON string.

    - Keys are sorted alphabetically
    - No whitespace
    - Consistent handling of special types (Decimal, datetime, UUID, Enum)
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: Any) -> str:
    """Hex-encoded SHA-256 of the canonical JSON form of ``payload``."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def compute_fingerprint(
    requester_id: str,
    action_type: str,
    context: Mapping[str, Any] | None,
    fields: Iterable[str],
) -> str:
    """
    Compute the duplicate-detection fingerprint of an approval request.

    Only the declared ``fields`` of ``context`` participate; absent fields
    hash as null so that adding unrelated context never changes the result.

    Args:
        requester_id: Who is asking.
        action_type: The gated action's type value.
        context: Request context payload (may be None).
        fields: The documented subset of context keys to hash.

    Returns:
        Hex-encoded SHA-256 hash.
    """
    context = context or {}
    subset = {name: context.get(name) for name in sorted(set(fields))}
    return hash_payload(
        {
            "requester_id": str(requester_id),
            "action_type": str(action_type),
            "context": subset,
        }
    )
