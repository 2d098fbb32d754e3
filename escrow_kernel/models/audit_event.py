"""
Module: escrow_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident audit hash chain.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit records are append-only; no UPDATE or DELETE (ORM listeners).
    - Hash chain integrity: hash = H(entity_type | entity_id | action |
      payload_hash | prev_hash).  Validated by AuditorService.
    - seq is monotonically increasing, allocated by SequenceService.

Audit relevance:
    AuditEvent IS the audit trail.  Every escrow, approval, payment and
    certificate state transition produces exactly one AuditEvent.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import Base, UTCDateTime, UUIDString


class AuditAction(str, Enum):
    """Types of auditable actions.

    Every member names one state transition that MUST be recorded in the
    audit chain.
    """

    # Escrow lifecycle
    ESCROW_CREATED = "escrow.created"
    ESCROW_FUNDED = "escrow.funded"
    ESCROW_EXPIRED = "escrow.expired"
    ESCROW_RELEASING = "escrow.releasing"
    ESCROW_COMPLETED = "escrow.completed"
    ESCROW_DISPUTED = "escrow.disputed"

    # Milestone approvals
    APPROVAL_RECORDED = "milestone.approval_recorded"
    MILESTONE_APPROVED = "milestone.approved"

    # Payment lifecycle
    PAYMENT_RELEASED = "payment.released"
    PAYMENT_REQUESTED = "payment.requested"
    PAYMENT_VERIFIED = "payment.verified"
    PAYMENT_REVIEW_REQUIRED = "payment.review_required"
    PAYMENT_REVIEW_ESCALATED = "payment.review_escalated"
    PAYMENT_APPROVED = "payment.approved"
    PAYMENT_DISBURSING = "payment.disbursing"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_DISPUTED = "payment.disputed"
    PAYMENT_CANCELLED = "payment.cancelled"
    PAYMENT_RESUBMITTED = "payment.resubmitted"

    # Certificates
    CERTIFICATE_ISSUED = "certificate.issued"
    CERTIFICATE_EXPIRED = "certificate.expired"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Contract:
        Append-only, never updated or deleted.  Each row's hash includes
        the previous row's hash.

    Guarantees:
        - seq is globally unique and monotonically increasing.
        - prev_hash is None only for the genesis event.

    Non-goals:
        - Does NOT enforce hash correctness at INSERT time; that is the
          responsibility of AuditorService.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_occurred", "occurred_at"),
    )

    seq: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        unique=True,
    )

    # "EscrowAccount", "Milestone", "PaymentRequest", "PaymentCertificate"
    entity_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    entity_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    action: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    # External identity (approver id, reviewer id) or "system"
    actor_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    occurred_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )

    payload: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
    )

    payload_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    prev_hash: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )

    hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action} on {self.entity_type}:{self.entity_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None
