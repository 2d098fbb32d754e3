"""
Deterministic hashing utilities.

All hashing in the escrow kernel must be deterministic and reproducible:
the audit chain and certificate proofs are recomputed during verification.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """JSON serializer for Decimal, datetime, date, UUID and Enum."""
    if isinstance(obj, Decimal):
        # Trailing zeros removed so 100 and 100.00 hash alike
        return str(obj.normalize())
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    Keys are sorted, no whitespace, special types serialized consistently.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def _plain_serializer(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return format(obj, "f")
    return _json_serializer(obj)


def json_safe(data: dict) -> dict:
    """Convert ``data`` to plain JSON types for storage in a JSON column.

    Decimals keep their written scale ("100000.00"), unlike the hashing
    form, so stored payloads read naturally.
    """
    return json.loads(json.dumps(data, default=_plain_serializer))


def hash_payload(payload: dict) -> str:
    """Hex-encoded SHA-256 of the canonical JSON form of ``payload``."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_audit_event(
    entity_type: str,
    entity_id: str,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Compute hash for an audit event.

    The hash covers the key fields plus the previous event's hash, creating
    a tamper-evident chain.  The first event chains from "GENESIS".
    """
    components = [
        entity_type,
        str(entity_id),
        action,
        payload_hash,
        prev_hash or "GENESIS",
    ]
    data = "|".join(components)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def hash_certificate_proof(payload_hash: str, audit_hash: str) -> str:
    """Bind a certificate payload to the audit event that recorded it."""
    data = f"{payload_hash}|{audit_hash}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
