"""
Module: escrow_kernel.models.escrow
Responsibility: ORM persistence for escrow accounts, their subcontractors,
    milestones and milestone approver slots.

Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - Ledger balance: CHECK held + released + fees == deposited (within
      storage tolerance) and CHECK held >= 0.
    - Lifecycle: CHECK constraints limit status values; the service layer
      enforces ACCOUNT_TRANSITIONS / MILESTONE_TRANSITIONS.
    - Per-account serialization: ``version`` is the SQLAlchemy
      version_id_col, so a write based on a stale read fails with
      StaleDataError instead of silently overwriting a balance.
    - Milestone keys are unique per account; approver slots are unique
      per (milestone, type, id).

Failure modes:
    - IntegrityError on a balance CHECK violation (service bug).
    - StaleDataError on a concurrent account write.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from escrow_kernel.db.base import Base, UTCDateTime, UUIDString
from escrow_kernel.domain.escrow import (
    AccountStatus,
    ApproverRequirement,
    ApproverType,
    ContractorType,
    EscrowAccountDTO,
    FeeSchedule,
    FundingParty,
    FundingPartyType,
    MilestoneDTO,
    MilestoneStatus,
    ProjectLocation,
    RecipientParty,
    Subcontractor,
    TaxSummary,
)
from escrow_kernel.domain.money import round_money

_ACCOUNT_STATUSES = ", ".join(f"'{s.value}'" for s in AccountStatus)
_MILESTONE_STATUSES = ", ".join(f"'{s.value}'" for s in MilestoneStatus)


class EscrowAccountModel(Base):
    """
    One funded trust relationship for one contract.

    Contract:
        Balances are mutated only by EscrowService while holding the row
        lock.  ``deposited_amount`` is written once, at funding.

    Guarantees:
        - held + released + fees == deposited at every committed state.
        - held >= 0.
    """

    __tablename__ = "escrow_accounts"

    __table_args__ = (
        CheckConstraint(
            f"status IN ({_ACCOUNT_STATUSES})",
            name="ck_escrow_accounts_valid_status",
        ),
        CheckConstraint(
            "held_amount >= 0",
            name="ck_escrow_accounts_held_non_negative",
        ),
        CheckConstraint(
            "committed_amount > 0",
            name="ck_escrow_accounts_committed_positive",
        ),
        CheckConstraint(
            "abs(held_amount + released_amount + fee_amount - deposited_amount) < 0.000001",
            name="ck_escrow_accounts_balance",
        ),
        Index("ix_escrow_accounts_contract", "contract_reference"),
        Index("ix_escrow_accounts_status_deadline", "status", "funding_deadline"),
    )

    contract_reference: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=AccountStatus.PENDING_FUNDING.value,
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Funding party
    funding_party_name: Mapped[str] = mapped_column(String(200), nullable=False)
    funding_party_type: Mapped[str] = mapped_column(String(20), nullable=False)
    funding_commitment_reference: Mapped[str | None] = mapped_column(String(100))

    # Recipient (primary contractor)
    recipient_name: Mapped[str] = mapped_column(String(200), nullable=False)
    recipient_business_id: Mapped[str] = mapped_column(String(100), nullable=False)
    recipient_business_number: Mapped[str] = mapped_column(String(50), nullable=False)
    recipient_payout_account: Mapped[str] = mapped_column(String(200), nullable=False)
    recipient_contractor_type: Mapped[str] = mapped_column(String(20), nullable=False)
    recipient_indigenous_owned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recipient_tax_registration_number: Mapped[str | None] = mapped_column(String(50))

    # Location
    jurisdiction: Mapped[str | None] = mapped_column(String(10))
    on_reserve: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    community: Mapped[str | None] = mapped_column(String(200))

    # Balances
    committed_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    deposited_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))
    held_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))
    released_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))
    fee_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))
    frozen_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))

    # Fee schedule snapshot
    fee_transaction_rate: Mapped[Decimal] = mapped_column(Numeric(20, 9), nullable=False, default=Decimal("0"))
    fee_quick_pay_premium: Mapped[Decimal] = mapped_column(Numeric(20, 9), nullable=False, default=Decimal("0"))
    fee_volume_threshold: Mapped[Decimal | None] = mapped_column(Numeric(38, 9))
    fee_volume_discount_rate: Mapped[Decimal] = mapped_column(Numeric(20, 9), nullable=False, default=Decimal("0"))

    project_risk_score: Mapped[Decimal | None] = mapped_column(Numeric(20, 9))

    # Tax recorded at creation
    exemption_certificate_number: Mapped[str | None] = mapped_column(String(50))
    exemption_certificate_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tax_jurisdiction: Mapped[str | None] = mapped_column(String(10))
    tax_is_exempt: Mapped[bool | None] = mapped_column(Boolean)
    tax_exemption_reason: Mapped[str | None] = mapped_column(String(50))
    tax_gst: Mapped[Decimal | None] = mapped_column(Numeric(38, 9))
    tax_pst: Mapped[Decimal | None] = mapped_column(Numeric(38, 9))
    tax_hst: Mapped[Decimal | None] = mapped_column(Numeric(38, 9))
    tax_total: Mapped[Decimal | None] = mapped_column(Numeric(38, 9))

    funding_deadline: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    funding_reference: Mapped[str | None] = mapped_column(String(200))
    dispute_reason: Mapped[str | None] = mapped_column(String(2000))
    dispute_evidence: Mapped[list | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    activated_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    disputed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    expired_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    subcontractors: Mapped[list[SubcontractorModel]] = relationship(
        back_populates="account",
        order_by="SubcontractorModel.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    milestones: Mapped[list[MilestoneModel]] = relationship(
        back_populates="account",
        order_by="MilestoneModel.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<EscrowAccount {self.id} {self.contract_reference} "
            f"status={self.status} held={self.held_amount}>"
        )

    @property
    def account_status(self) -> AccountStatus:
        return AccountStatus(self.status)

    @property
    def fee_schedule(self) -> FeeSchedule:
        return FeeSchedule(
            transaction_rate=self.fee_transaction_rate,
            quick_pay_premium=self.fee_quick_pay_premium,
            volume_discount_threshold=self.fee_volume_threshold,
            volume_discount_rate=self.fee_volume_discount_rate,
        )

    @property
    def location(self) -> ProjectLocation:
        return ProjectLocation(
            jurisdiction=self.jurisdiction,
            on_reserve=self.on_reserve,
            community=self.community,
        )

    @property
    def funding_party(self) -> FundingParty:
        return FundingParty(
            name=self.funding_party_name,
            party_type=FundingPartyType(self.funding_party_type),
            commitment_reference=self.funding_commitment_reference,
        )

    @property
    def recipient(self) -> RecipientParty:
        return RecipientParty(
            name=self.recipient_name,
            business_id=self.recipient_business_id,
            business_number=self.recipient_business_number,
            payout_account=self.recipient_payout_account,
            contractor_type=ContractorType(self.recipient_contractor_type),
            indigenous_owned=self.recipient_indigenous_owned,
            tax_registration_number=self.recipient_tax_registration_number,
        )

    def to_dto(self) -> EscrowAccountDTO:
        """Convert ORM model to frozen domain DTO."""
        tax = None
        if self.tax_is_exempt is not None:
            tax = TaxSummary(
                jurisdiction=self.tax_jurisdiction,
                is_exempt=bool(self.tax_is_exempt),
                exemption_reason=self.tax_exemption_reason,
                gst=round_money(self.tax_gst or Decimal("0")),
                pst=round_money(self.tax_pst or Decimal("0")),
                hst=round_money(self.tax_hst or Decimal("0")),
                total_tax=round_money(self.tax_total or Decimal("0")),
            )
        return EscrowAccountDTO(
            id=self.id,
            contract_reference=self.contract_reference,
            status=self.account_status,
            funding_party=self.funding_party,
            recipient=self.recipient,
            subcontractors=tuple(s.to_domain() for s in self.subcontractors),
            location=self.location,
            currency=self.currency,
            committed_amount=round_money(self.committed_amount),
            deposited_amount=round_money(self.deposited_amount),
            held_amount=round_money(self.held_amount),
            released_amount=round_money(self.released_amount),
            fee_amount=round_money(self.fee_amount),
            frozen_amount=round_money(self.frozen_amount),
            fee_schedule=self.fee_schedule,
            project_risk_score=self.project_risk_score,
            tax=tax,
            funding_deadline=self.funding_deadline,
            funding_reference=self.funding_reference,
            dispute_reason=self.dispute_reason,
            created_at=self.created_at,
            activated_at=self.activated_at,
            completed_at=self.completed_at,
            disputed_at=self.disputed_at,
            version=self.version,
        )


class SubcontractorModel(Base):
    """Subcontractor party on an escrow account (reporting data only)."""

    __tablename__ = "escrow_subcontractors"

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("escrow_accounts.id"), nullable=False, index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[str] = mapped_column(String(100), nullable=False)
    indigenous_owned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    business_id: Mapped[str | None] = mapped_column(String(100))

    account: Mapped[EscrowAccountModel] = relationship(back_populates="subcontractors")

    def to_domain(self) -> Subcontractor:
        return Subcontractor(
            name=self.name,
            role=self.role,
            indigenous_owned=self.indigenous_owned,
            business_id=self.business_id,
        )


class MilestoneModel(Base):
    """
    A deliverable that unlocks part of the escrowed funds.

    Contract:
        ``amount`` is resolved once, at account creation.  Status moves
        pending -> approved -> released (or -> disputed).
    """

    __tablename__ = "escrow_milestones"

    __table_args__ = (
        UniqueConstraint("account_id", "key", name="uq_escrow_milestones_account_key"),
        CheckConstraint(
            f"status IN ({_MILESTONE_STATUSES})",
            name="ck_escrow_milestones_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_escrow_milestones_amount_positive"),
    )

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("escrow_accounts.id"), nullable=False, index=True,
    )
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(2000), nullable=False)
    deliverables: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    percentage: Mapped[Decimal | None] = mapped_column(Numeric(20, 9))
    fixed_amount: Mapped[Decimal | None] = mapped_column(Numeric(38, 9))
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MilestoneStatus.PENDING.value,
    )
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    released_amount: Mapped[Decimal | None] = mapped_column(Numeric(38, 9))

    account: Mapped[EscrowAccountModel] = relationship(back_populates="milestones")
    approvers: Mapped[list[MilestoneApproverModel]] = relationship(
        back_populates="milestone",
        order_by="MilestoneApproverModel.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Milestone {self.key} status={self.status} amount={self.amount}>"

    @property
    def milestone_status(self) -> MilestoneStatus:
        return MilestoneStatus(self.status)

    @property
    def requirements(self) -> tuple[ApproverRequirement, ...]:
        return tuple(a.to_domain() for a in self.approvers)

    def to_dto(self) -> MilestoneDTO:
        """Convert ORM model to frozen domain DTO."""
        return MilestoneDTO(
            id=self.id,
            account_id=self.account_id,
            key=self.key,
            position=self.position,
            description=self.description,
            deliverables=tuple(self.deliverables or ()),
            percentage=self.percentage,
            fixed_amount=round_money(self.fixed_amount) if self.fixed_amount is not None else None,
            amount=round_money(self.amount),
            due_date=self.due_date,
            status=self.milestone_status,
            approvers=self.requirements,
            approved_at=self.approved_at,
            released_at=self.released_at,
            released_amount=(
                round_money(self.released_amount)
                if self.released_amount is not None else None
            ),
        )


class MilestoneApproverModel(Base):
    """One signatory slot (required or optional) on a milestone."""

    __tablename__ = "escrow_milestone_approvers"

    __table_args__ = (
        UniqueConstraint(
            "milestone_id", "approver_type", "approver_id",
            name="uq_escrow_milestone_approvers_slot",
        ),
    )

    milestone_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("escrow_milestones.id"), nullable=False, index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_type: Mapped[str] = mapped_column(String(30), nullable=False)
    approver_id: Mapped[str] = mapped_column(String(100), nullable=False)
    required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    milestone: Mapped[MilestoneModel] = relationship(back_populates="approvers")

    def to_domain(self) -> ApproverRequirement:
        return ApproverRequirement(
            approver_type=ApproverType(self.approver_type),
            approver_id=self.approver_id,
            required=self.required,
        )
