"""Kernel services (write side)."""

from escrow_kernel.services.auditor_service import AuditorService, AuditTrace
from escrow_kernel.services.sequence_service import SequenceService

__all__ = [
    "AuditorService",
    "AuditTrace",
    "SequenceService",
]
