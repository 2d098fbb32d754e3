"""
Module: escrow_kernel.models.ledger
Responsibility: Append-only log of balance movements on escrow accounts.

Architecture position: Kernel > Models.

Invariants enforced:
    - Append-only (ORM listeners).
    - ``held_after`` is the account's held balance immediately after the
      movement, so the log can be replayed against the account row.
    - ``entry_no`` numbers the rows of one account 1, 2, 3 ... (unique).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import Base, UTCDateTime, UUIDString
from escrow_kernel.domain.escrow import LedgerTransactionDTO, LedgerTransactionType
from escrow_kernel.domain.money import round_money

_TRANSACTION_TYPES = ", ".join(f"'{t.value}'" for t in LedgerTransactionType)


class EscrowTransactionModel(Base):
    """One deposit, release, fee accrual or dispute freeze."""

    __tablename__ = "escrow_transactions"

    __table_args__ = (
        CheckConstraint(
            f"transaction_type IN ({_TRANSACTION_TYPES})",
            name="ck_escrow_transactions_valid_type",
        ),
        CheckConstraint("amount >= 0", name="ck_escrow_transactions_amount_non_negative"),
        UniqueConstraint("account_id", "entry_no", name="uq_escrow_transactions_entry"),
    )

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("escrow_accounts.id"), nullable=False,
    )
    entry_no: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    held_after: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    reference: Mapped[str] = mapped_column(String(200), nullable=False)
    milestone_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("escrow_milestones.id"),
    )
    payment_request_id: Mapped[UUID | None] = mapped_column(UUIDString())
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return f"<EscrowTransaction {self.transaction_type} {self.amount}>"

    def to_dto(self) -> LedgerTransactionDTO:
        return LedgerTransactionDTO(
            id=self.id,
            account_id=self.account_id,
            entry_no=self.entry_no,
            transaction_type=LedgerTransactionType(self.transaction_type),
            amount=round_money(self.amount),
            held_after=round_money(self.held_after),
            reference=self.reference,
            occurred_at=self.occurred_at,
            milestone_id=self.milestone_id,
            payment_request_id=self.payment_request_id,
        )
