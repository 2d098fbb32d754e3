"""
Module: escrow_kernel.models.certificate
Responsibility: ORM persistence for payment certificates.

Architecture position: Kernel > Models.

Invariants enforced:
    - One certificate per escrow account (UNIQUE account_id).
    - Immutable after issuance; the only permitted change is
      status active -> expired with ``expired_at`` (ORM listeners).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import Base, UTCDateTime, UUIDString
from escrow_kernel.domain.certificate import (
    CertificateStatus,
    PaymentCertificateDTO,
    RiskRating,
)
from escrow_kernel.domain.money import round_money

# Fields that may change after issuance
CERTIFICATE_MUTABLE_FIELDS = frozenset({"status", "expired_at"})


class PaymentCertificateModel(Base):
    """Government-backed guarantee usable as loan collateral."""

    __tablename__ = "payment_certificates"

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'expired')",
            name="ck_payment_certificates_valid_status",
        ),
        CheckConstraint(
            "risk_rating IN ('A', 'BBB', 'BB')",
            name="ck_payment_certificates_valid_rating",
        ),
    )

    certificate_number: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    account_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("escrow_accounts.id"), nullable=False, unique=True,
    )
    status: Mapped[str] = mapped_column(
        String(10), nullable=False, default=CertificateStatus.ACTIVE.value,
    )
    guarantor: Mapped[str] = mapped_column(String(200), nullable=False)
    guarantee_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    conditions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    risk_score: Mapped[Decimal] = mapped_column(Numeric(20, 9), nullable=False)
    risk_rating: Mapped[str] = mapped_column(String(5), nullable=False)
    loan_to_value: Mapped[Decimal] = mapped_column(Numeric(20, 9), nullable=False)
    suggested_rate: Mapped[Decimal] = mapped_column(Numeric(20, 9), nullable=False)
    lendable_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    leverage_multiplier: Mapped[Decimal] = mapped_column(Numeric(20, 9), nullable=False)
    leverage_potential: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    proof_reference: Mapped[str] = mapped_column(String(64), nullable=False)
    expired_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    def __repr__(self) -> str:
        return f"<PaymentCertificate {self.certificate_number} status={self.status}>"

    def to_dto(self) -> PaymentCertificateDTO:
        return PaymentCertificateDTO(
            id=self.id,
            certificate_number=self.certificate_number,
            account_id=self.account_id,
            status=CertificateStatus(self.status),
            guarantor=self.guarantor,
            guarantee_amount=round_money(self.guarantee_amount),
            currency=self.currency,
            issued_at=self.issued_at,
            expires_at=self.expires_at,
            conditions=tuple(self.conditions or ()),
            risk_score=self.risk_score,
            risk_rating=RiskRating(self.risk_rating),
            loan_to_value=self.loan_to_value,
            suggested_rate=self.suggested_rate,
            lendable_amount=round_money(self.lendable_amount),
            leverage_multiplier=self.leverage_multiplier,
            leverage_potential=round_money(self.leverage_potential),
            payload_hash=self.payload_hash,
            proof_reference=self.proof_reference,
            expired_at=self.expired_at,
        )
