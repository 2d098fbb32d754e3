"""
escrow_services -- Package init and public API.

Responsibility:
    Stateful orchestration services that compose the pure engines
    (escrow_engines/) with database sessions, the audit chain and the
    external ports.  This is the only layer that reads the wall clock
    through a Clock or talks to external collaborators.

Architecture position:
    Services -- stateful orchestration over engines + kernel + config.

    Dependency direction (enforced by tests/architecture/test_layer_boundaries.py):
        escrow_services/ -> escrow_config/, escrow_engines/, escrow_kernel/  (allowed)
        escrow_engines/  -> escrow_services/ (FORBIDDEN)
        escrow_kernel/   -> escrow_services/ (FORBIDDEN)

Invariants enforced:
    - DI transparency: all wiring is centralised in EscrowOrchestrator.
    - No service commits; callers own the transaction boundary.
"""

from escrow_services.certificate_service import CertificateService
from escrow_services.disbursement_service import DisbursementScheduler
from escrow_services.escrow_service import EscrowService
from escrow_services.orchestrator import EscrowOrchestrator
from escrow_services.quorum_service import QuorumService

__all__ = [
    "CertificateService",
    "DisbursementScheduler",
    "EscrowOrchestrator",
    "EscrowService",
    "QuorumService",
]
