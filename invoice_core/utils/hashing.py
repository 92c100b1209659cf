"""Deterministic content hashing for artifact identities."""

import hashlib
import json
from enum import Enum
from typing import Any


def _canonical(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if isinstance(value, float):
        # Fixed precision so platform float repr never changes an id.
        return round(value, 6)
    if hasattr(value, "to_dict"):
        return _canonical(value.to_dict())
    return value


def canonical_json(payload: Any) -> str:
    """Serialize a payload to stable JSON (sorted keys, no whitespace)."""
    return json.dumps(
        _canonical(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def content_id(kind: str, payload: Any) -> str:
    """Compute a content-addressed identity.

    Args:
        kind: Artifact kind, mixed in so different kinds never collide.
        payload: JSON-serializable description of inputs and parameters.

    Returns:
        Hex SHA-256 digest.
    """
    h = hashlib.sha256()
    h.update(kind.encode("utf-8"))
    h.update(b"\x00")
    h.update(canonical_json(payload).encode("utf-8"))
    return h.hexdigest()


def bytes_digest(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()
