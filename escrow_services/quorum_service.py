"""
QuorumService -- append-only milestone approvals and quorum transitions.

Responsibility:
    Validates and appends approver signatures on milestones, then moves
    a milestone to ``approved`` the moment every required slot is filled.

Architecture position:
    Services -- stateful orchestration over the pure rule in
    ``escrow_engines.quorum``.

Invariants enforced:
    - Approvals are append-only; the unique constraint on
      (milestone, approver type, approver id) makes the append atomic.
    - Submitting an approval that already exists is an idempotent no-op,
      detected before any state check.
    - Only ``pending`` milestones accept new approvals.
    - Flush-only: never commits or rolls back the caller's session.

Failure modes:
    - MilestoneNotFoundError: unknown milestone.
    - DisputeRaised: the milestone's account is disputed.
    - StateConflictError: the milestone is no longer pending.

Audit relevance:
    ``milestone.approval_recorded`` per appended signature and
    ``milestone.approved`` on the quorum transition.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from escrow_engines.quorum import QuorumEvaluation, evaluate_quorum, find_requirement
from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.escrow import (
    SYSTEM_ACTOR,
    AccountStatus,
    ApprovalDTO,
    ApprovalSubmission,
    ApproverType,
    MilestoneStatus,
)
from escrow_kernel.exceptions import (
    DisputeRaised,
    MilestoneNotFoundError,
    StateConflictError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.approval import MilestoneApprovalModel
from escrow_kernel.models.audit_event import AuditAction
from escrow_kernel.models.escrow import MilestoneModel
from escrow_kernel.services.auditor_service import AuditorService

logger = get_logger("services.quorum")


class QuorumService:
    """
    Approval-quorum engine.

    Contract:
        Trusts that the caller has already authenticated the approver
        against the contract's authorized-approver list.

    Non-goals:
        - Does NOT verify identity authenticity.
        - Does NOT release funds; EscrowService does.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        clock: Clock | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._clock = clock or SystemClock()

    def _lock_milestone(self, milestone_id: UUID) -> MilestoneModel:
        milestone = self._session.execute(
            select(MilestoneModel)
            .where(MilestoneModel.id == milestone_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if milestone is None:
            raise MilestoneNotFoundError(str(milestone_id))
        return milestone

    def _find_approval(
        self,
        milestone_id: UUID,
        approver_type: ApproverType,
        approver_id: str,
    ) -> MilestoneApprovalModel | None:
        return self._session.execute(
            select(MilestoneApprovalModel).where(
                MilestoneApprovalModel.milestone_id == milestone_id,
                MilestoneApprovalModel.approver_type == ApproverType(approver_type).value,
                MilestoneApprovalModel.approver_id == approver_id,
            )
        ).scalar_one_or_none()

    def _approvals(self, milestone_id: UUID) -> list[MilestoneApprovalModel]:
        return list(self._session.execute(
            select(MilestoneApprovalModel)
            .where(MilestoneApprovalModel.milestone_id == milestone_id)
            .order_by(
                MilestoneApprovalModel.approved_at,
                MilestoneApprovalModel.approver_type,
                MilestoneApprovalModel.approver_id,
            )
        ).scalars())

    def submit(
        self,
        milestone_id: UUID,
        approval: ApprovalSubmission,
        actor_id: str | None = None,
    ) -> MilestoneStatus:
        """
        Append one approval and re-evaluate quorum.

        Returns:
            The milestone status after the submission.
        """
        milestone = self._lock_milestone(milestone_id)
        approver_type = ApproverType(approval.approver_type)

        with LogContext.bind(
            account_id=milestone.account_id,
            actor_id=actor_id or approval.approver_id,
        ):
            if self._find_approval(milestone.id, approver_type, approval.approver_id):
                logger.info(
                    "approval_duplicate_ignored",
                    extra={
                        "milestone_id": str(milestone.id),
                        "approver_type": approver_type.value,
                        "approver_id": approval.approver_id,
                    },
                )
                return milestone.milestone_status

            account = milestone.account
            if account.account_status is AccountStatus.DISPUTED:
                raise DisputeRaised(
                    str(account.id), account.dispute_reason or "", account.frozen_amount,
                )
            if milestone.milestone_status is not MilestoneStatus.PENDING:
                raise StateConflictError(
                    "Milestone", str(milestone.id), milestone.status, "approve",
                )

            record = MilestoneApprovalModel(
                milestone_id=milestone.id,
                approver_type=approver_type.value,
                approver_id=approval.approver_id,
                approved_at=self._clock.now(),
                evidence_refs=list(approval.evidence_refs),
            )
            try:
                with self._session.begin_nested():
                    self._session.add(record)
            except IntegrityError:
                # A concurrent identical submission won the insert
                logger.warning(
                    "approval_concurrent_duplicate",
                    extra={
                        "milestone_id": str(milestone.id),
                        "approver_type": approver_type.value,
                        "approver_id": approval.approver_id,
                    },
                )
                return self._lock_milestone(milestone.id).milestone_status

            requirement = find_requirement(
                milestone.requirements, approver_type, approval.approver_id,
            )
            self._auditor.record(
                entity_type="Milestone",
                entity_id=milestone.id,
                action=AuditAction.APPROVAL_RECORDED,
                actor_id=actor_id or approval.approver_id,
                payload={
                    "account_id": milestone.account_id,
                    "approver_type": approver_type.value,
                    "approver_id": approval.approver_id,
                    "required": requirement.required if requirement else False,
                    "evidence_refs": list(approval.evidence_refs),
                },
            )
            logger.info(
                "approval_recorded",
                extra={
                    "milestone_id": str(milestone.id),
                    "approver_type": approver_type.value,
                    "approver_id": approval.approver_id,
                },
            )

            evaluation = self._evaluate(milestone)
            if evaluation.satisfied:
                milestone.status = MilestoneStatus.APPROVED.value
                milestone.approved_at = self._clock.now()
                self._session.flush()
                self._auditor.record(
                    entity_type="Milestone",
                    entity_id=milestone.id,
                    action=AuditAction.MILESTONE_APPROVED,
                    actor_id=actor_id or SYSTEM_ACTOR,
                    payload={
                        "account_id": milestone.account_id,
                        "key": milestone.key,
                        "approvals": evaluation.matched_count,
                    },
                )
                logger.info(
                    "milestone_approved",
                    extra={"milestone_id": str(milestone.id), "key": milestone.key},
                )

            return milestone.milestone_status

    def _evaluate(self, milestone: MilestoneModel) -> QuorumEvaluation:
        signatures = [a.to_dto() for a in self._approvals(milestone.id)]
        return evaluate_quorum(milestone.requirements, signatures)

    def evaluate(self, milestone_id: UUID) -> QuorumEvaluation:
        """Current quorum state of a milestone, without mutating anything."""
        milestone = self._session.get(MilestoneModel, milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(str(milestone_id))
        return self._evaluate(milestone)

    def get_approvals(self, milestone_id: UUID) -> list[ApprovalDTO]:
        if self._session.get(MilestoneModel, milestone_id) is None:
            raise MilestoneNotFoundError(str(milestone_id))
        return [a.to_dto() for a in self._approvals(milestone_id)]
