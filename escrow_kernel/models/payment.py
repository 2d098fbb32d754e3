"""
Module: escrow_kernel.models.payment
Responsibility: ORM persistence for QuickPay payment requests.

Architecture position: Kernel > Models.

Invariants enforced:
    - Invoice uniqueness: a partial UNIQUE index allows at most one request
      per invoice number in approved / disbursing / completed.  A second
      request racing to approval fails at flush with IntegrityError.
    - Lifecycle: CHECK constraint limits status values; the scheduler
      enforces PAYMENT_TRANSITIONS.
    - Idempotency: ``idempotency_key`` is unique; it is what the fund
      transfer provider sees.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Index,
    Numeric,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import Base, UTCDateTime, UUIDString
from escrow_kernel.domain.money import round_money
from escrow_kernel.domain.payment import (
    INVOICE_LOCKING_STATUSES,
    FailureStage,
    PaymentRequestDTO,
    PaymentSource,
    PaymentStatus,
)

_PAYMENT_STATUSES = ", ".join(f"'{s.value}'" for s in PaymentStatus)
_LOCKING_PREDICATE = "status IN ({})".format(
    ", ".join(f"'{s.value}'" for s in sorted(INVOICE_LOCKING_STATUSES, key=lambda s: s.value))
)


class PaymentRequestModel(Base):
    """
    A request to expedite disbursement against a contract invoice.

    Contract:
        Owned end-to-end by the DisbursementScheduler.  Every status change
        stamps its own timestamp column.
    """

    __tablename__ = "payment_requests"

    __table_args__ = (
        CheckConstraint(
            f"status IN ({_PAYMENT_STATUSES})",
            name="ck_payment_requests_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_payment_requests_amount_positive"),
        CheckConstraint("net_amount >= 0", name="ck_payment_requests_net_non_negative"),
        Index(
            "ux_payment_requests_invoice_locked",
            "invoice_number",
            unique=True,
            postgresql_where=text(_LOCKING_PREDICATE),
            sqlite_where=text(_LOCKING_PREDICATE),
        ),
        Index("ix_payment_requests_invoice", "invoice_number"),
        Index("ix_payment_requests_business_submitted", "business_id", "submitted_at"),
        Index("ix_payment_requests_status", "status", "submitted_at"),
    )

    business_id: Mapped[str] = mapped_column(String(100), nullable=False)
    contract_reference: Mapped[str] = mapped_column(String(100), nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    fee_rate: Mapped[Decimal] = mapped_column(Numeric(20, 9), nullable=False)
    processing_fee: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=PaymentStatus.PENDING_VERIFICATION.value,
    )
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    payout_account: Mapped[str] = mapped_column(String(200), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)

    requires_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verification_score: Mapped[Decimal | None] = mapped_column(Numeric(20, 9))
    failed_checks: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    risk_score: Mapped[Decimal | None] = mapped_column(Numeric(20, 9))
    risk_factors: Mapped[dict | None] = mapped_column(JSON)

    failure_stage: Mapped[str | None] = mapped_column(String(20))
    failure_reason: Mapped[str | None] = mapped_column(String(2000))
    provider_error: Mapped[str | None] = mapped_column(String(4000))
    transaction_id: Mapped[str | None] = mapped_column(String(200))
    review_decided_by: Mapped[str | None] = mapped_column(String(100))
    review_notes: Mapped[str | None] = mapped_column(String(2000))

    escrow_account_id: Mapped[UUID | None] = mapped_column(UUIDString(), index=True)
    milestone_id: Mapped[UUID | None] = mapped_column(UUIDString())

    submitted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    review_requested_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    review_deadline: Mapped[datetime | None] = mapped_column(UTCDateTime())
    escalated_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    disbursing_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    disputed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    estimated_arrival: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    actual_arrival: Mapped[datetime | None] = mapped_column(UTCDateTime())

    def __repr__(self) -> str:
        return (
            f"<PaymentRequest {self.id} invoice={self.invoice_number} "
            f"status={self.status}>"
        )

    @property
    def payment_status(self) -> PaymentStatus:
        return PaymentStatus(self.status)

    def to_dto(self) -> PaymentRequestDTO:
        """Convert ORM model to frozen domain DTO."""
        return PaymentRequestDTO(
            id=self.id,
            business_id=self.business_id,
            contract_reference=self.contract_reference,
            invoice_number=self.invoice_number,
            amount=round_money(self.amount),
            fee_rate=self.fee_rate,
            processing_fee=round_money(self.processing_fee),
            net_amount=round_money(self.net_amount),
            status=self.payment_status,
            source=PaymentSource(self.source),
            payout_account=self.payout_account,
            idempotency_key=self.idempotency_key,
            requires_review=self.requires_review,
            verification_score=self.verification_score,
            failed_checks=tuple(self.failed_checks or ()),
            risk_score=self.risk_score,
            risk_factors=dict(self.risk_factors) if self.risk_factors is not None else None,
            failure_stage=FailureStage(self.failure_stage) if self.failure_stage else None,
            failure_reason=self.failure_reason,
            provider_error=self.provider_error,
            transaction_id=self.transaction_id,
            escrow_account_id=self.escrow_account_id,
            milestone_id=self.milestone_id,
            submitted_at=self.submitted_at,
            verified_at=self.verified_at,
            review_requested_at=self.review_requested_at,
            review_deadline=self.review_deadline,
            escalated_at=self.escalated_at,
            approved_at=self.approved_at,
            disbursing_at=self.disbursing_at,
            completed_at=self.completed_at,
            failed_at=self.failed_at,
            disputed_at=self.disputed_at,
            cancelled_at=self.cancelled_at,
            estimated_arrival=self.estimated_arrival,
            actual_arrival=self.actual_arrival,
        )
