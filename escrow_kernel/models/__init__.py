"""ORM models for the escrow kernel."""

from escrow_kernel.models.approval import MilestoneApprovalModel
from escrow_kernel.models.audit_event import AuditAction, AuditEvent
from escrow_kernel.models.certificate import (
    CERTIFICATE_MUTABLE_FIELDS,
    PaymentCertificateModel,
)
from escrow_kernel.models.escrow import (
    EscrowAccountModel,
    MilestoneApproverModel,
    MilestoneModel,
    SubcontractorModel,
)
from escrow_kernel.models.ledger import EscrowTransactionModel
from escrow_kernel.models.payment import PaymentRequestModel


def import_all_models() -> None:
    """Make sure every mapped table is registered on ``Base.metadata``.

    The sequence counter lives with its service, so importing this package
    alone is not enough.
    """
    import escrow_kernel.services.sequence_service  # noqa: F401


__all__ = [
    "AuditAction",
    "AuditEvent",
    "CERTIFICATE_MUTABLE_FIELDS",
    "EscrowAccountModel",
    "EscrowTransactionModel",
    "MilestoneApprovalModel",
    "MilestoneApproverModel",
    "MilestoneModel",
    "PaymentCertificateModel",
    "PaymentRequestModel",
    "SubcontractorModel",
    "import_all_models",
]
