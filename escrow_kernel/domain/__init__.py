"""
Pure domain layer.

This package contains immutable value objects, status machines and port
protocols with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O (SystemClock aside)
"""

from escrow_kernel.domain.certificate import (
    CertificateStatus,
    PaymentCertificateDTO,
    RiskRating,
)
from escrow_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from escrow_kernel.domain.escrow import (
    ACCOUNT_TRANSITIONS,
    MILESTONE_TRANSITIONS,
    SYSTEM_ACTOR,
    AccountStatus,
    ApprovalDTO,
    ApprovalSubmission,
    ApproverRequirement,
    ApproverType,
    ContractorType,
    EscrowAccountDTO,
    EscrowParties,
    FeeSchedule,
    FundingParty,
    FundingPartyType,
    FundingTerms,
    LedgerTransactionDTO,
    LedgerTransactionType,
    MilestoneDTO,
    MilestoneSpec,
    MilestoneStatus,
    ProjectLocation,
    RecipientParty,
    ReleaseResult,
    Subcontractor,
    TaxSummary,
)
from escrow_kernel.domain.money import round_money
from escrow_kernel.domain.payment import (
    PAYMENT_TRANSITIONS,
    BusinessProfile,
    ContractFacts,
    FailureStage,
    PaymentMetrics,
    PaymentRequestDTO,
    PaymentSource,
    PaymentStatus,
)
from escrow_kernel.domain.ports import (
    ApproverDirectory,
    BusinessDirectory,
    ContractRegistry,
    FundTransferService,
    MarketAppetiteSignal,
    TransferReceipt,
    VerificationService,
)

__all__ = [
    "ACCOUNT_TRANSITIONS",
    "MILESTONE_TRANSITIONS",
    "PAYMENT_TRANSITIONS",
    "SYSTEM_ACTOR",
    "AccountStatus",
    "ApprovalDTO",
    "ApprovalSubmission",
    "ApproverDirectory",
    "ApproverRequirement",
    "ApproverType",
    "BusinessDirectory",
    "BusinessProfile",
    "CertificateStatus",
    "Clock",
    "ContractFacts",
    "ContractRegistry",
    "ContractorType",
    "DeterministicClock",
    "EscrowAccountDTO",
    "EscrowParties",
    "FailureStage",
    "FeeSchedule",
    "FundTransferService",
    "FundingParty",
    "FundingPartyType",
    "FundingTerms",
    "LedgerTransactionDTO",
    "LedgerTransactionType",
    "MarketAppetiteSignal",
    "MilestoneDTO",
    "MilestoneSpec",
    "MilestoneStatus",
    "PaymentCertificateDTO",
    "PaymentMetrics",
    "PaymentRequestDTO",
    "PaymentSource",
    "PaymentStatus",
    "ProjectLocation",
    "RecipientParty",
    "ReleaseResult",
    "RiskRating",
    "Subcontractor",
    "SystemClock",
    "TaxSummary",
    "TransferReceipt",
    "VerificationService",
    "round_money",
]
