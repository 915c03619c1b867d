# src/fundtrace/core/canonical.py
"""
Canonical JSON serialization for deterministic hashing.

Two-phase approach:
1. Normalize: Convert dates, decimals and bytes to JSON-safe primitives (our code)
2. Serialize: Produce deterministic JSON per RFC 8785/JCS (rfc8785 package)

IMPORTANT: NaN and Infinity are strictly REJECTED, not silently converted.
Identity keys and content hashes must be reproducible across re-ingests.

NOTE: For external data that cannot be canonicalized (malformed evidence at
the trust boundary), use repr_hash() as a fallback. This is NOT deterministic
across Python versions but is appropriate for quarantined data where the
content is already flagged as problematic.
"""

from __future__ import annotations

import base64
import hashlib
import math
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

import rfc8785


def _normalize_value(obj: Any) -> Any:
    """Convert a single value to JSON-safe primitive.

    NaN Policy: STRICT REJECTION
    - NaN and Infinity are invalid input states for float AND Decimal
    - Use None for intentional missing values

    Raises:
        ValueError: If value contains NaN or Infinity
    """
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            raise ValueError(f"Cannot canonicalize non-finite float: {obj}. Use None for missing values, not NaN.")
        return obj

    if obj is None or isinstance(obj, str | int | bool):
        return obj

    # datetime before date: datetime is a date subclass
    if isinstance(obj, datetime):
        if obj.tzinfo is None:
            obj = obj.replace(tzinfo=UTC)
        return obj.astimezone(UTC).isoformat()

    if isinstance(obj, date):
        return obj.isoformat()

    if isinstance(obj, bytes):
        return {"__bytes__": base64.b64encode(obj).decode("ascii")}

    if isinstance(obj, Decimal):
        if not obj.is_finite():
            raise ValueError(f"Cannot canonicalize non-finite Decimal: {obj}. Use None for missing values, not NaN/Infinity.")
        return str(obj)

    return obj


def _normalize_for_canonical(data: Any) -> Any:
    """Recursively normalize a data structure for canonical JSON."""
    if isinstance(data, dict):
        return {k: _normalize_for_canonical(v) for k, v in data.items()}
    if isinstance(data, list | tuple):
        return [_normalize_for_canonical(v) for v in data]
    return _normalize_value(data)


def canonical_json(obj: Any) -> str:
    """Produce canonical JSON for hashing.

    Args:
        obj: Data structure to serialize

    Returns:
        Canonical JSON string (no whitespace, sorted keys)

    Raises:
        ValueError: If data contains NaN, Infinity, or other non-finite values
        TypeError: If data contains types that cannot be serialized
    """
    normalized = _normalize_for_canonical(obj)
    result: bytes = rfc8785.dumps(normalized)
    return result.decode("utf-8")


def stable_hash(obj: Any) -> str:
    """Compute stable hash of object.

    Returns:
        SHA-256 hex digest of canonical JSON
    """
    canonical = canonical_json(obj)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def repr_hash(obj: Any) -> str:
    """Generate SHA-256 hash of repr() for non-canonical data.

    Used as fallback when canonical_json fails (NaN, Infinity, or other
    non-serializable types) on external evidence that is being quarantined.
    """
    return hashlib.sha256(repr(obj).encode("utf-8")).hexdigest()


def source_hash(data: Any) -> str:
    """Hash raw candidate data, falling back to repr_hash for non-canonical input."""
    try:
        return stable_hash(data)
    except (ValueError, TypeError):
        return repr_hash(data)


def content_digest(content: bytes) -> str:
    """SHA-256 hex digest of raw bytes (the content-addressable key)."""
    return hashlib.sha256(content).hexdigest()


def object_identity(source_label: str) -> str:
    """Logical object id for a source label, stable across re-uploads."""
    return stable_hash({"source_label": source_label})


def tabular_identity_key(kind: str, object_id: str, row_number: int) -> str:
    """Identity key for a row of a tabular source."""
    return stable_hash({"kind": kind, "object_id": object_id, "row_number": row_number})


def natural_identity_key(kind: str, natural_key: str) -> str:
    """Identity key for a non-tabular record, from its business key."""
    return stable_hash({"kind": kind, "natural_key": natural_key})
