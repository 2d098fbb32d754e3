"""
Escrow domain types (``escrow_kernel.domain.escrow``).

Responsibility
--------------
Pure value objects for escrow accounts, milestones, approvals and ledger
movements.  Defines the account and milestone state machines, the
creation inputs (parties, milestone specs, funding terms) and the read
DTOs returned by the services.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  No imports from ``db/``,
``models/``, ``services/`` or outer layers.

Invariants enforced
-------------------
* Account lifecycle -- ``ACCOUNT_TRANSITIONS`` lists the only legal status
  changes.  ``COMPLETED``, ``DISPUTED`` and ``EXPIRED`` are terminal.
* Milestone lifecycle -- ``MILESTONE_TRANSITIONS``; ``RELEASED`` and
  ``DISPUTED`` are terminal.
* Ledger balance -- ``EscrowAccountDTO.balance_invariant_holds`` checks
  ``held + released + fees == deposited`` and ``held >= 0``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

if TYPE_CHECKING:
    from escrow_kernel.domain.payment import PaymentRequestDTO

SYSTEM_ACTOR = "system"


# =========================================================================
# Enumerations
# =========================================================================


class AccountStatus(str, Enum):
    """Escrow account lifecycle states."""

    PENDING_FUNDING = "pending_funding"
    ACTIVE = "active"
    RELEASING = "releasing"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    EXPIRED = "expired"


ACCOUNT_TRANSITIONS: dict[AccountStatus, frozenset[AccountStatus]] = {
    AccountStatus.PENDING_FUNDING: frozenset({
        AccountStatus.ACTIVE,
        AccountStatus.EXPIRED,
    }),
    AccountStatus.ACTIVE: frozenset({
        AccountStatus.RELEASING,
        AccountStatus.DISPUTED,
    }),
    AccountStatus.RELEASING: frozenset({
        AccountStatus.ACTIVE,
        AccountStatus.COMPLETED,
        AccountStatus.DISPUTED,
    }),
    AccountStatus.COMPLETED: frozenset(),
    AccountStatus.DISPUTED: frozenset(),
    AccountStatus.EXPIRED: frozenset(),
}

TERMINAL_ACCOUNT_STATUSES: frozenset[AccountStatus] = frozenset(
    status for status, targets in ACCOUNT_TRANSITIONS.items() if not targets
)


class MilestoneStatus(str, Enum):
    """Milestone lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    RELEASED = "released"
    DISPUTED = "disputed"


MILESTONE_TRANSITIONS: dict[MilestoneStatus, frozenset[MilestoneStatus]] = {
    MilestoneStatus.PENDING: frozenset({
        MilestoneStatus.APPROVED,
        MilestoneStatus.DISPUTED,
    }),
    MilestoneStatus.APPROVED: frozenset({
        MilestoneStatus.RELEASED,
        MilestoneStatus.DISPUTED,
    }),
    MilestoneStatus.RELEASED: frozenset(),
    MilestoneStatus.DISPUTED: frozenset(),
}


class FundingPartyType(str, Enum):
    """Who puts money into the trust."""

    FEDERAL = "federal"
    PROVINCIAL = "provincial"
    MUNICIPAL = "municipal"
    PRIVATE = "private"

    @property
    def is_government(self) -> bool:
        return self is not FundingPartyType.PRIVATE


class ContractorType(str, Enum):
    INDIGENOUS = "indigenous"
    GENERAL = "general"
    INTERNATIONAL = "international"


class ApproverType(str, Enum):
    """Kinds of signatory a milestone can require."""

    COMMUNITY = "community"
    GOVERNMENT = "government"
    ENGINEER = "engineer"
    AUTOMATED_VERIFICATION = "automated_verification"


class LedgerTransactionType(str, Enum):
    """Balance movements recorded against an escrow account."""

    DEPOSIT = "deposit"
    RELEASE = "release"
    FEE = "fee"
    FREEZE = "freeze"


# =========================================================================
# Creation inputs
# =========================================================================


@dataclass(frozen=True)
class FundingParty:
    name: str
    party_type: FundingPartyType
    commitment_reference: str | None = None

    @property
    def is_government(self) -> bool:
        return self.party_type.is_government


@dataclass(frozen=True)
class RecipientParty:
    """Primary contractor receiving milestone payments."""

    name: str
    business_id: str
    business_number: str
    payout_account: str
    contractor_type: ContractorType = ContractorType.GENERAL
    indigenous_owned: bool = False
    tax_registration_number: str | None = None


@dataclass(frozen=True)
class Subcontractor:
    """Subcontractor party.  ``indigenous_owned`` is reporting data only."""

    name: str
    role: str
    indigenous_owned: bool = False
    business_id: str | None = None


@dataclass(frozen=True)
class ProjectLocation:
    """Where the work is delivered.  ``on_reserve`` feeds tax and leverage."""

    jurisdiction: str | None = None
    on_reserve: bool = False
    community: str | None = None


@dataclass(frozen=True)
class EscrowParties:
    funding_party: FundingParty
    recipient: RecipientParty
    subcontractors: tuple[Subcontractor, ...] = ()


@dataclass(frozen=True)
class ApproverRequirement:
    """One signatory slot on a milestone."""

    approver_type: ApproverType
    approver_id: str
    required: bool = True


@dataclass(frozen=True)
class MilestoneSpec:
    """
    Caller description of a milestone.

    Exactly one of ``percentage`` (percent of the committed total,
    0 < p <= 100) or ``fixed_amount`` must be given.
    """

    key: str
    description: str
    approvers: tuple[ApproverRequirement, ...]
    percentage: Decimal | None = None
    fixed_amount: Decimal | None = None
    due_date: date | None = None
    deliverables: tuple[str, ...] = ()


@dataclass(frozen=True)
class FeeSchedule:
    """
    Escrow fee terms accrued into the account's fee balance at release.

    Rates are fractions.  Releases on accounts whose committed total is at
    or above ``volume_discount_threshold`` get the transaction rate reduced
    by ``volume_discount_rate``.
    """

    transaction_rate: Decimal = Decimal("0")
    quick_pay_premium: Decimal = Decimal("0")
    volume_discount_threshold: Decimal | None = None
    volume_discount_rate: Decimal = Decimal("0")

    @classmethod
    def zero(cls) -> FeeSchedule:
        return cls()

    @property
    def is_zero(self) -> bool:
        return self.transaction_rate == 0 and self.quick_pay_premium == 0


@dataclass(frozen=True)
class FundingTerms:
    contract_reference: str
    total_amount: Decimal
    currency: str = "CAD"
    location: ProjectLocation = field(default_factory=ProjectLocation)
    funding_deadline: datetime | None = None
    fee_schedule: FeeSchedule | None = None
    project_risk_score: Decimal | None = None
    exemption_certificate_number: str | None = None
    exemption_certificate_approved: bool = False


@dataclass(frozen=True)
class ApprovalSubmission:
    """A signature presented by an external identity."""

    approver_type: ApproverType
    approver_id: str
    evidence_refs: tuple[str, ...] = ()


# =========================================================================
# Read DTOs
# =========================================================================


@dataclass(frozen=True)
class TaxSummary:
    """Tax recorded on the committed total at account creation."""

    jurisdiction: str | None
    is_exempt: bool
    exemption_reason: str | None
    gst: Decimal
    pst: Decimal
    hst: Decimal
    total_tax: Decimal


@dataclass(frozen=True)
class EscrowAccountDTO:
    id: UUID
    contract_reference: str
    status: AccountStatus
    funding_party: FundingParty
    recipient: RecipientParty
    subcontractors: tuple[Subcontractor, ...]
    location: ProjectLocation
    currency: str
    committed_amount: Decimal
    deposited_amount: Decimal
    held_amount: Decimal
    released_amount: Decimal
    fee_amount: Decimal
    frozen_amount: Decimal
    fee_schedule: FeeSchedule
    project_risk_score: Decimal | None
    tax: TaxSummary | None
    funding_deadline: datetime
    funding_reference: str | None
    dispute_reason: str | None
    created_at: datetime
    activated_at: datetime | None
    completed_at: datetime | None
    disputed_at: datetime | None
    version: int

    @property
    def balance_invariant_holds(self) -> bool:
        total = self.held_amount + self.released_amount + self.fee_amount
        return total == self.deposited_amount and self.held_amount >= 0


@dataclass(frozen=True)
class MilestoneDTO:
    id: UUID
    account_id: UUID
    key: str
    position: int
    description: str
    deliverables: tuple[str, ...]
    percentage: Decimal | None
    fixed_amount: Decimal | None
    amount: Decimal
    due_date: date | None
    status: MilestoneStatus
    approvers: tuple[ApproverRequirement, ...]
    approved_at: datetime | None
    released_at: datetime | None
    released_amount: Decimal | None


@dataclass(frozen=True)
class ApprovalDTO:
    id: UUID
    milestone_id: UUID
    approver_type: ApproverType
    approver_id: str
    approved_at: datetime
    evidence_refs: tuple[str, ...]


@dataclass(frozen=True)
class LedgerTransactionDTO:
    id: UUID
    account_id: UUID
    entry_no: int
    transaction_type: LedgerTransactionType
    amount: Decimal
    held_after: Decimal
    reference: str
    occurred_at: datetime
    milestone_id: UUID | None = None
    payment_request_id: UUID | None = None


@dataclass(frozen=True)
class ReleaseResult:
    """Outcome of a successful milestone release."""

    account: EscrowAccountDTO
    milestone: MilestoneDTO
    payment: PaymentRequestDTO
    gross_amount: Decimal
    fee_amount: Decimal
    net_amount: Decimal
