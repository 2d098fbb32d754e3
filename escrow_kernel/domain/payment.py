"""
QuickPay payment request domain types (``escrow_kernel.domain.payment``).

Responsibility
--------------
Status machine and value objects for expedited payment requests: the
request DTO, contract and business facts supplied by external
collaborators, and aggregate metrics.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.

Invariants enforced
-------------------
* ``PAYMENT_TRANSITIONS`` lists the only legal status changes.
  ``FAILED -> DISBURSING`` is legal only for a request that failed at the
  disbursement stage.  ``FAILED`` or ``DISPUTED`` back to
  ``PENDING_VERIFICATION`` is legal only for an escrow release that
  stopped before disbursement.  The scheduler checks both.
* Cancellation is only possible before disbursement
  (``CANCELLABLE_PAYMENT_STATUSES``).
* An invoice number may be held by at most one request in
  ``INVOICE_LOCKING_STATUSES``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from escrow_kernel.domain.escrow import FundingPartyType


class PaymentStatus(str, Enum):
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"
    PROCESSING = "processing"
    APPROVED = "approved"
    DISBURSING = "disbursing"
    COMPLETED = "completed"
    FAILED = "failed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING_VERIFICATION: frozenset({
        PaymentStatus.VERIFIED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.VERIFIED: frozenset({
        PaymentStatus.APPROVED,
        PaymentStatus.PROCESSING,
        PaymentStatus.DISPUTED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.APPROVED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.APPROVED: frozenset({
        PaymentStatus.DISBURSING,
    }),
    PaymentStatus.DISBURSING: frozenset({
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
    }),
    PaymentStatus.FAILED: frozenset({
        PaymentStatus.DISBURSING,
        PaymentStatus.PENDING_VERIFICATION,
    }),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.DISPUTED: frozenset({
        PaymentStatus.PENDING_VERIFICATION,
    }),
    PaymentStatus.CANCELLED: frozenset(),
}

CANCELLABLE_PAYMENT_STATUSES: frozenset[PaymentStatus] = frozenset({
    PaymentStatus.PENDING_VERIFICATION,
    PaymentStatus.VERIFIED,
    PaymentStatus.PROCESSING,
})

INVOICE_LOCKING_STATUSES: frozenset[PaymentStatus] = frozenset({
    PaymentStatus.APPROVED,
    PaymentStatus.DISBURSING,
    PaymentStatus.COMPLETED,
})

ACTIVE_PAYMENT_STATUSES: frozenset[PaymentStatus] = frozenset({
    PaymentStatus.PENDING_VERIFICATION,
    PaymentStatus.VERIFIED,
    PaymentStatus.PROCESSING,
    PaymentStatus.APPROVED,
    PaymentStatus.DISBURSING,
})


class PaymentSource(str, Enum):
    QUICKPAY = "quickpay"
    ESCROW_RELEASE = "escrow_release"


class FailureStage(str, Enum):
    ELIGIBILITY = "eligibility"
    VERIFICATION = "verification"
    REVIEW = "review"
    DISBURSEMENT = "disbursement"


@dataclass(frozen=True)
class ContractFacts:
    """What the contract registry knows about a contract."""

    contract_reference: str
    business_id: str
    is_active: bool
    issuer_type: FundingPartyType
    contract_value: Decimal
    jurisdiction: str

    @property
    def issuer_is_government(self) -> bool:
        return self.issuer_type.is_government


@dataclass(frozen=True)
class BusinessProfile:
    """What the business directory knows about a requester."""

    business_id: str
    registered_at: datetime
    jurisdiction: str
    has_open_disputes: bool = False
    trusted_connections: int = 0


@dataclass(frozen=True)
class PaymentRequestDTO:
    id: UUID
    business_id: str
    contract_reference: str
    invoice_number: str
    amount: Decimal
    fee_rate: Decimal
    processing_fee: Decimal
    net_amount: Decimal
    status: PaymentStatus
    source: PaymentSource
    payout_account: str
    idempotency_key: str
    requires_review: bool
    verification_score: Decimal | None
    failed_checks: tuple[str, ...]
    risk_score: Decimal | None
    risk_factors: dict[str, str] | None
    failure_stage: FailureStage | None
    failure_reason: str | None
    provider_error: str | None
    transaction_id: str | None
    escrow_account_id: UUID | None
    milestone_id: UUID | None
    submitted_at: datetime
    verified_at: datetime | None
    review_requested_at: datetime | None
    review_deadline: datetime | None
    escalated_at: datetime | None
    approved_at: datetime | None
    disbursing_at: datetime | None
    completed_at: datetime | None
    failed_at: datetime | None
    disputed_at: datetime | None
    cancelled_at: datetime | None
    estimated_arrival: datetime
    actual_arrival: datetime | None


@dataclass(frozen=True)
class PaymentMetrics:
    total_requests: int
    completed_count: int
    failed_count: int
    active_count: int
    total_disbursed: Decimal
    average_settlement_hours: Decimal | None
    success_rate: Decimal | None
    interest_saved: Decimal
