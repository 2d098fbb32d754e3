"""
Module: escrow_kernel.models.approval
Responsibility: ORM persistence for milestone approvals (signatures).

Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - Append-only: approvals cannot be updated or deleted (ORM listeners in
      db/immutability.py).
    - Uniqueness: UNIQUE(milestone_id, approver_type, approver_id) makes the
      append an atomic compare-and-append; a concurrent duplicate fails
      with IntegrityError and is treated as an idempotent no-op.

Audit relevance:
    Each row is one external identity's signature on one milestone.  Quorum
    is always recomputed from these rows, never from a cached counter.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import Base, UTCDateTime, UUIDString
from escrow_kernel.domain.escrow import ApprovalDTO, ApproverType


class MilestoneApprovalModel(Base):
    """Immutable approval record."""

    __tablename__ = "escrow_milestone_approvals"

    __table_args__ = (
        UniqueConstraint(
            "milestone_id", "approver_type", "approver_id",
            name="uq_escrow_milestone_approvals_approver",
        ),
    )

    milestone_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("escrow_milestones.id"), nullable=False, index=True,
    )
    approver_type: Mapped[str] = mapped_column(String(30), nullable=False)
    approver_id: Mapped[str] = mapped_column(String(100), nullable=False)
    approved_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    evidence_refs: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    def __repr__(self) -> str:
        return (
            f"<MilestoneApproval {self.approver_type}:{self.approver_id} "
            f"on {self.milestone_id}>"
        )

    def to_dto(self) -> ApprovalDTO:
        return ApprovalDTO(
            id=self.id,
            milestone_id=self.milestone_id,
            approver_type=ApproverType(self.approver_type),
            approver_id=self.approver_id,
            approved_at=self.approved_at,
            evidence_refs=tuple(self.evidence_refs or ()),
        )
