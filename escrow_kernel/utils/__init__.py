"""Utility modules for the escrow kernel."""

from escrow_kernel.utils.hashing import (
    canonicalize_json,
    hash_audit_event,
    hash_certificate_proof,
    hash_payload,
)

__all__ = [
    "hash_payload",
    "hash_audit_event",
    "hash_certificate_proof",
    "canonicalize_json",
]
