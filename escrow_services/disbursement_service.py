"""
DisbursementScheduler -- the QuickPay pipeline for payment requests.

Responsibility:
    Owns PaymentRequest end-to-end: submission, the four pipeline stages
    (eligibility, verification, risk, disbursement), manual review,
    review escalation, cancellation, explicit re-disbursement and the
    escrow-release entry point used by EscrowService.

Architecture position:
    Services -- imperative shell around the pure engines in
    ``escrow_engines.risk`` and ``escrow_engines.fees``.  External
    collaborators are reached only through the ports in
    ``escrow_kernel.domain.ports``.

Invariants enforced:
    - Every status change follows ``PAYMENT_TRANSITIONS``, stamps its own
      timestamp and writes one audit event.
    - At most one request per invoice number is approved, disbursing or
      completed (eligibility check plus the partial unique index).
    - Risk above the dispute threshold is never auto-disbursed, whatever
      the verification score.
    - Transfer failures are stored verbatim and never retried
      automatically; ``redisburse`` is the only way back.
    - The disbursement idempotency key defaults to the request id.
    - Flush-only: never commits or rolls back the caller's session.

Failure modes:
    - PaymentRequestNotFoundError: unknown request id.
    - InvalidAmountError / ValidationError: bad submission input.
    - StateConflictError: operation illegal for the request's status.

Audit relevance:
    ``payment.*`` events for every transition, each carrying from/to
    status plus stage-specific detail (scores, provider error, reviewer).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from escrow_config.schema import QuickPaySection
from escrow_engines.fees import compute_processing_fee
from escrow_engines.risk import (
    PaymentHistory,
    RiskBucket,
    RiskInputs,
    RiskModel,
    VerificationFacts,
    VerificationParams,
    WeightedRiskModel,
    verify,
)
from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.escrow import SYSTEM_ACTOR, AccountStatus
from escrow_kernel.domain.money import ZERO, require_money, round_money
from escrow_kernel.domain.payment import (
    ACTIVE_PAYMENT_STATUSES,
    CANCELLABLE_PAYMENT_STATUSES,
    INVOICE_LOCKING_STATUSES,
    PAYMENT_TRANSITIONS,
    ContractFacts,
    FailureStage,
    PaymentMetrics,
    PaymentRequestDTO,
    PaymentSource,
    PaymentStatus,
)
from escrow_kernel.domain.ports import (
    BusinessDirectory,
    ContractRegistry,
    FundTransferService,
    VerificationService,
)
from escrow_kernel.exceptions import (
    EscrowEngineError,
    PaymentRequestNotFoundError,
    StateConflictError,
    TransferFailure,
    ValidationError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.audit_event import AuditAction
from escrow_kernel.models.escrow import EscrowAccountModel
from escrow_kernel.models.payment import PaymentRequestModel
from escrow_kernel.services.auditor_service import AuditorService

logger = get_logger("services.disbursement")

_HOUR = Decimal("3600")
_DAYS_PER_YEAR = Decimal("365")

# Status -> timestamp column stamped on entry
_STATUS_TIMESTAMPS: dict[PaymentStatus, str] = {
    PaymentStatus.VERIFIED: "verified_at",
    PaymentStatus.PROCESSING: "review_requested_at",
    PaymentStatus.APPROVED: "approved_at",
    PaymentStatus.DISBURSING: "disbursing_at",
    PaymentStatus.COMPLETED: "completed_at",
    PaymentStatus.FAILED: "failed_at",
    PaymentStatus.DISPUTED: "disputed_at",
    PaymentStatus.CANCELLED: "cancelled_at",
}

_TRANSITION_ACTIONS: dict[PaymentStatus, AuditAction] = {
    PaymentStatus.VERIFIED: AuditAction.PAYMENT_VERIFIED,
    PaymentStatus.PROCESSING: AuditAction.PAYMENT_REVIEW_REQUIRED,
    PaymentStatus.APPROVED: AuditAction.PAYMENT_APPROVED,
    PaymentStatus.DISBURSING: AuditAction.PAYMENT_DISBURSING,
    PaymentStatus.COMPLETED: AuditAction.PAYMENT_COMPLETED,
    PaymentStatus.FAILED: AuditAction.PAYMENT_FAILED,
    PaymentStatus.DISPUTED: AuditAction.PAYMENT_DISPUTED,
    PaymentStatus.CANCELLED: AuditAction.PAYMENT_CANCELLED,
    PaymentStatus.PENDING_VERIFICATION: AuditAction.PAYMENT_RESUBMITTED,
}


def _hours_between(start: datetime, end: datetime) -> Decimal:
    return Decimal(str((end - start).total_seconds())) / _HOUR


@dataclass(frozen=True)
class _EligibilityOutcome:
    contract: ContractFacts | None
    failure: str | None = None


class DisbursementScheduler:
    """
    QuickPay disbursement scheduler.

    Contract:
        Receives its Session, AuditorService, Clock, ports and parameters
        via constructor injection.  ``risk_model`` accepts any object with
        an ``assess(RiskInputs)`` method.

    Non-goals:
        - Does NOT commit; the caller owns the transaction boundary.
        - Does NOT retry failed transfers on its own.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        transfer: FundTransferService,
        verification: VerificationService,
        contracts: ContractRegistry,
        businesses: BusinessDirectory,
        clock: Clock | None = None,
        risk_model: RiskModel | None = None,
        verification_params: VerificationParams | None = None,
        settings: QuickPaySection | None = None,
        history_window: int = 10,
        velocity_window_days: int = 7,
    ):
        self._session = session
        self._auditor = auditor
        self._transfer = transfer
        self._verification = verification
        self._contracts = contracts
        self._businesses = businesses
        self._clock = clock or SystemClock()
        self._risk_model = risk_model or WeightedRiskModel()
        self._verification_params = verification_params or VerificationParams()
        self._settings = settings or QuickPaySection()
        self._history_window = history_window
        self._velocity_window = timedelta(days=velocity_window_days)

    # =========================================================================
    # Loading and transitions
    # =========================================================================

    def _lock_request(self, request_id: UUID) -> PaymentRequestModel:
        request = self._session.execute(
            select(PaymentRequestModel)
            .where(PaymentRequestModel.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if request is None:
            raise PaymentRequestNotFoundError(str(request_id))
        return request

    def _transition(
        self,
        request: PaymentRequestModel,
        target: PaymentStatus,
        actor_id: str | None = None,
        detail: dict | None = None,
    ) -> None:
        current = request.payment_status
        if target not in PAYMENT_TRANSITIONS[current]:
            raise StateConflictError(
                "PaymentRequest", str(request.id), current.value, f"move to {target.value}",
            )
        request.status = target.value
        stamp = _STATUS_TIMESTAMPS.get(target)
        if stamp:
            setattr(request, stamp, self._clock.now())
        self._session.flush()
        self._auditor.record_payment_transition(
            request_id=request.id,
            action=_TRANSITION_ACTIONS[target],
            from_status=current.value,
            to_status=target.value,
            actor_id=actor_id or SYSTEM_ACTOR,
            detail=detail,
        )

    def _fail(
        self,
        request: PaymentRequestModel,
        stage: FailureStage,
        reason: str,
        actor_id: str | None = None,
        detail: dict | None = None,
    ) -> None:
        request.failure_stage = stage.value
        request.failure_reason = reason
        self._transition(
            request,
            PaymentStatus.FAILED,
            actor_id,
            {"stage": stage.value, "reason": reason, **(detail or {})},
        )
        logger.warning(
            "payment_failed",
            extra={"request_id": str(request.id), "stage": stage.value, "reason": reason},
        )

    def _approve(self, request: PaymentRequestModel, actor_id: str | None, detail: dict) -> bool:
        """Move to APPROVED.  False if the invoice was locked concurrently."""
        current = request.payment_status
        if PaymentStatus.APPROVED not in PAYMENT_TRANSITIONS[current]:
            raise StateConflictError(
                "PaymentRequest", str(request.id), current.value, "approve",
            )
        try:
            with self._session.begin_nested():
                request.status = PaymentStatus.APPROVED.value
                request.approved_at = self._clock.now()
        except IntegrityError:
            self._session.refresh(request)
            self._fail(
                request,
                FailureStage.ELIGIBILITY,
                "invoice already paid or in payment",
                actor_id,
            )
            return False
        self._auditor.record_payment_transition(
            request_id=request.id,
            action=AuditAction.PAYMENT_APPROVED,
            from_status=current.value,
            to_status=PaymentStatus.APPROVED.value,
            actor_id=actor_id or SYSTEM_ACTOR,
            detail=detail,
        )
        return True

    # =========================================================================
    # Submission
    # =========================================================================

    def _create_request(
        self,
        *,
        business_id: str,
        contract_reference: str,
        invoice_number: str,
        amount: Decimal,
        fee_rate: Decimal,
        payout_account: str,
        source: PaymentSource,
        actor_id: str | None,
        escrow_account_id: UUID | None = None,
        milestone_id: UUID | None = None,
    ) -> PaymentRequestModel:
        for name, value in (
            ("business_id", business_id),
            ("contract_reference", contract_reference),
            ("invoice_number", invoice_number),
            ("payout_account", payout_account),
        ):
            if not value or not value.strip():
                raise ValidationError(f"{name} is required", field=name)

        fee = compute_processing_fee(amount, fee_rate)
        now = self._clock.now()
        request_id = uuid4()
        request = PaymentRequestModel(
            id=request_id,
            business_id=business_id,
            contract_reference=contract_reference,
            invoice_number=invoice_number,
            amount=amount,
            fee_rate=fee_rate,
            processing_fee=fee.fee,
            net_amount=fee.net,
            status=PaymentStatus.PENDING_VERIFICATION.value,
            source=source.value,
            payout_account=payout_account,
            idempotency_key=str(request_id),
            requires_review=False,
            failed_checks=[],
            escrow_account_id=escrow_account_id,
            milestone_id=milestone_id,
            submitted_at=now,
            estimated_arrival=now + timedelta(hours=self._settings.target_processing_hours),
        )
        self._session.add(request)
        self._session.flush()

        self._auditor.record_payment_transition(
            request_id=request.id,
            action=AuditAction.PAYMENT_REQUESTED,
            from_status=None,
            to_status=PaymentStatus.PENDING_VERIFICATION.value,
            actor_id=actor_id or business_id,
            detail={
                "invoice_number": invoice_number,
                "amount": amount,
                "source": source.value,
            },
        )
        logger.info(
            "payment_requested",
            extra={
                "request_id": str(request.id),
                "business_id": business_id,
                "invoice_number": invoice_number,
                "amount": str(amount),
                "source": source.value,
            },
        )
        return request

    def submit_request(
        self,
        business_id: str,
        contract_reference: str,
        invoice_number: str,
        amount: Decimal,
        payout_account: str,
        actor_id: str | None = None,
    ) -> PaymentRequestDTO:
        """Create a QuickPay request in ``pending_verification``."""
        amount = require_money(amount, "amount", maximum=self._settings.max_amount)
        request = self._create_request(
            business_id=business_id,
            contract_reference=contract_reference,
            invoice_number=invoice_number,
            amount=amount,
            fee_rate=self._settings.fee_rate,
            payout_account=payout_account,
            source=PaymentSource.QUICKPAY,
            actor_id=actor_id,
        )
        return request.to_dto()

    def schedule_release(
        self,
        account_id: UUID,
        milestone_id: UUID,
        milestone_key: str,
        business_id: str,
        contract_reference: str,
        amount: Decimal,
        payout_account: str,
        actor_id: str | None = None,
    ) -> PaymentRequestDTO:
        """
        Hand an authorized escrow release to the pipeline.

        Escrow fees are already accrued on the account, so the request
        carries a zero processing fee and pays out ``amount`` in full.
        """
        amount = require_money(amount, "amount")
        request = self._create_request(
            business_id=business_id,
            contract_reference=contract_reference,
            invoice_number=f"ESCROW-{account_id}-{milestone_key}",
            amount=amount,
            fee_rate=ZERO,
            payout_account=payout_account,
            source=PaymentSource.ESCROW_RELEASE,
            actor_id=actor_id,
            escrow_account_id=account_id,
            milestone_id=milestone_id,
        )
        return self.process(request.id, actor_id=actor_id)

    # =========================================================================
    # Pipeline
    # =========================================================================

    def _invoice_locked(self, request: PaymentRequestModel) -> bool:
        return self._session.execute(
            select(func.count()).select_from(PaymentRequestModel).where(
                PaymentRequestModel.invoice_number == request.invoice_number,
                PaymentRequestModel.id != request.id,
                PaymentRequestModel.status.in_([s.value for s in INVOICE_LOCKING_STATUSES]),
            )
        ).scalar_one() > 0

    def _invoice_unique(self, request: PaymentRequestModel) -> bool:
        live = [
            s.value for s in PaymentStatus
            if s not in (PaymentStatus.FAILED, PaymentStatus.CANCELLED)
        ]
        return self._session.execute(
            select(func.count()).select_from(PaymentRequestModel).where(
                PaymentRequestModel.invoice_number == request.invoice_number,
                PaymentRequestModel.id != request.id,
                PaymentRequestModel.status.in_(live),
            )
        ).scalar_one() == 0

    def _escrow_contract(self, request: PaymentRequestModel) -> ContractFacts | None:
        account = self._session.get(EscrowAccountModel, request.escrow_account_id)
        if account is None:
            return None
        return ContractFacts(
            contract_reference=account.contract_reference,
            business_id=account.recipient_business_id,
            is_active=account.account_status in (
                AccountStatus.ACTIVE, AccountStatus.RELEASING, AccountStatus.COMPLETED,
            ),
            issuer_type=account.funding_party.party_type,
            contract_value=account.committed_amount,
            jurisdiction=account.jurisdiction or "",
        )

    def _check_eligibility(self, request: PaymentRequestModel) -> _EligibilityOutcome:
        """Stage 1: contract, business and invoice preconditions."""
        escrow_release = request.source == PaymentSource.ESCROW_RELEASE.value
        if escrow_release:
            contract = self._escrow_contract(request)
        else:
            contract = self._contracts.get_contract(request.contract_reference)

        if contract is None:
            return _EligibilityOutcome(None, "contract not found")
        if contract.business_id != request.business_id:
            return _EligibilityOutcome(contract, "contract does not belong to the requesting business")
        if not self._verification.is_business_verified(request.business_id):
            return _EligibilityOutcome(contract, "business is not verified")
        if not contract.is_active:
            return _EligibilityOutcome(contract, "contract is not active")
        # The escrow itself stands in for the government issuer
        if not escrow_release and not contract.issuer_is_government:
            return _EligibilityOutcome(contract, "contract issuer is not a government entity")
        if self._invoice_locked(request):
            return _EligibilityOutcome(contract, "invoice already paid or in payment")
        return _EligibilityOutcome(contract)

    def _payment_history(self, request: PaymentRequestModel) -> PaymentHistory:
        rows = list(self._session.execute(
            select(PaymentRequestModel)
            .where(
                PaymentRequestModel.business_id == request.business_id,
                PaymentRequestModel.id != request.id,
                PaymentRequestModel.status.in_([
                    PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value,
                ]),
            )
            .order_by(PaymentRequestModel.submitted_at.desc())
            .limit(self._history_window)
        ).scalars())
        completed = [
            r for r in rows
            if r.status == PaymentStatus.COMPLETED.value and r.completed_at is not None
        ]
        average = None
        if completed:
            total_hours = sum(
                (_hours_between(r.submitted_at, r.completed_at) for r in completed), ZERO,
            )
            average = round_money(total_hours / Decimal(len(completed)))
        return PaymentHistory(
            total=len(rows),
            failed=sum(1 for r in rows if r.status == PaymentStatus.FAILED.value),
            average_completion_hours=average,
        )

    def _recent_request_count(self, request: PaymentRequestModel) -> int:
        since = self._clock.now() - self._velocity_window
        return self._session.execute(
            select(func.count()).select_from(PaymentRequestModel).where(
                PaymentRequestModel.business_id == request.business_id,
                PaymentRequestModel.submitted_at >= since,
            )
        ).scalar_one()

    def _risk_inputs(self, request: PaymentRequestModel, contract: ContractFacts) -> RiskInputs:
        profile = self._businesses.get_profile(request.business_id)
        age_days = 0
        if profile is not None:
            age_days = max((self._clock.now() - profile.registered_at).days, 0)
        return RiskInputs(
            history=self._payment_history(request),
            business_age_days=age_days,
            amount=request.amount,
            recent_request_count=self._recent_request_count(request),
            trusted_connections=profile.trusted_connections if profile else 0,
            business_jurisdiction=profile.jurisdiction if profile else None,
            contract_jurisdiction=contract.jurisdiction or None,
        )

    def process(self, request_id: UUID, actor_id: str | None = None) -> PaymentRequestDTO:
        """
        Run stages 1-3 and, for an auto-approved request, stage 4.

        Returns the request as it stands when the pipeline stops.
        """
        request = self._lock_request(request_id)
        if request.payment_status is not PaymentStatus.PENDING_VERIFICATION:
            raise StateConflictError(
                "PaymentRequest", str(request.id), request.status, "process",
            )

        with LogContext.bind(request_id=request.id):
            # Stage 1: eligibility
            eligibility = self._check_eligibility(request)
            if eligibility.failure:
                self._fail(request, FailureStage.ELIGIBILITY, eligibility.failure, actor_id)
                return request.to_dto()
            contract = eligibility.contract

            # Stage 2: verification
            profile = self._businesses.get_profile(request.business_id)
            result = verify(
                VerificationFacts(
                    business_verified=True,
                    contract_active=contract.is_active,
                    invoice_unique=self._invoice_unique(request),
                    amount=request.amount,
                    contract_value=contract.contract_value,
                    has_open_disputes=profile.has_open_disputes if profile else False,
                    performance_score=self._verification.performance_score(request.business_id),
                ),
                self._verification_params,
            )
            request.verification_score = result.score
            request.failed_checks = [c.value for c in result.failed_checks]
            if not result.passed:
                self._fail(
                    request,
                    FailureStage.VERIFICATION,
                    f"verification score {result.score} below "
                    f"{self._verification_params.pass_threshold}",
                    actor_id,
                    {"failed_checks": request.failed_checks},
                )
                return request.to_dto()
            self._transition(
                request, PaymentStatus.VERIFIED, actor_id,
                {"verification_score": result.score, "failed_checks": request.failed_checks},
            )

            # Stage 3: risk
            assessment = self._risk_model.assess(self._risk_inputs(request, contract))
            request.risk_score = assessment.score
            request.risk_factors = {k: str(v) for k, v in assessment.factors.items()}
            logger.info(
                "payment_risk_scored",
                extra={
                    "request_id": str(request.id),
                    "risk_score": str(assessment.score),
                    "bucket": assessment.bucket.value,
                },
            )

            if assessment.bucket is RiskBucket.FRAUD_REVIEW:
                request.failure_reason = f"risk score {assessment.score} requires fraud review"
                self._transition(
                    request, PaymentStatus.DISPUTED, actor_id,
                    {"risk_score": assessment.score},
                )
                logger.warning(
                    "payment_held_for_fraud_review",
                    extra={"request_id": str(request.id), "risk_score": str(assessment.score)},
                )
                return request.to_dto()

            if assessment.bucket is RiskBucket.MANUAL_REVIEW:
                request.requires_review = True
                request.review_deadline = self._clock.now() + timedelta(
                    hours=self._settings.review_sla_hours,
                )
                self._transition(
                    request, PaymentStatus.PROCESSING, actor_id,
                    {"risk_score": assessment.score, "review_deadline": request.review_deadline},
                )
                logger.info(
                    "payment_review_required",
                    extra={
                        "request_id": str(request.id),
                        "review_deadline": request.review_deadline.isoformat(),
                    },
                )
                return request.to_dto()

            if self._approve(request, actor_id, {"decision": "auto", "risk_score": assessment.score}):
                self._disburse(request, actor_id)
            return request.to_dto()

    def process_pending(self, limit: int | None = None) -> list[PaymentRequestDTO]:
        """
        Claim and process queued requests.

        Each request runs in its own SAVEPOINT; a request that raises is
        rolled back alone and left queued.
        """
        ids = list(self._session.execute(
            select(PaymentRequestModel.id)
            .where(PaymentRequestModel.status == PaymentStatus.PENDING_VERIFICATION.value)
            .order_by(PaymentRequestModel.submitted_at)
            .limit(limit or self._settings.batch_size)
            .with_for_update(skip_locked=True)
        ).scalars())

        processed: list[PaymentRequestDTO] = []
        for request_id in ids:
            try:
                with self._session.begin_nested():
                    processed.append(self.process(request_id))
            except (EscrowEngineError, IntegrityError) as exc:
                logger.error(
                    "payment_processing_aborted",
                    extra={
                        "request_id": str(request_id),
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
        logger.info(
            "payment_batch_processed",
            extra={"claimed": len(ids), "processed": len(processed)},
        )
        return processed

    # =========================================================================
    # Stage 4: disbursement
    # =========================================================================

    def _disburse(self, request: PaymentRequestModel, actor_id: str | None) -> None:
        self._transition(request, PaymentStatus.DISBURSING, actor_id)
        self._settle(request, actor_id)

    def _settle(self, request: PaymentRequestModel, actor_id: str | None) -> None:
        try:
            receipt = self._transfer.disburse(
                request.idempotency_key,
                round_money(request.net_amount),
                request.payout_account,
            )
        except TransferFailure as exc:
            request.provider_error = exc.raw_error
            request.failure_stage = FailureStage.DISBURSEMENT.value
            request.failure_reason = str(exc)
            self._transition(
                request, PaymentStatus.FAILED, actor_id,
                {
                    "stage": FailureStage.DISBURSEMENT.value,
                    "provider": exc.provider,
                    "provider_error": exc.raw_error,
                    "idempotency_key": request.idempotency_key,
                },
            )
            logger.error(
                "payment_disbursement_failed",
                extra={
                    "request_id": str(request.id),
                    "provider": exc.provider,
                    "provider_error": exc.raw_error,
                },
            )
            return

        now = self._clock.now()
        request.transaction_id = receipt.transaction_id
        request.actual_arrival = now
        self._transition(
            request, PaymentStatus.COMPLETED, actor_id,
            {"transaction_id": receipt.transaction_id, "provider": receipt.provider},
        )
        logger.info(
            "payment_completed",
            extra={
                "request_id": str(request.id),
                "net_amount": str(round_money(request.net_amount)),
                "transaction_id": receipt.transaction_id,
                "settlement_hours": str(round_money(_hours_between(request.submitted_at, now))),
            },
        )

    # =========================================================================
    # Manual review and escalation
    # =========================================================================

    def record_review_decision(
        self,
        request_id: UUID,
        approve: bool,
        reviewer_id: str,
        notes: str | None = None,
    ) -> PaymentRequestDTO:
        """Approve (and disburse) or reject a request paused for review."""
        request = self._lock_request(request_id)
        if request.payment_status is not PaymentStatus.PROCESSING or not request.requires_review:
            raise StateConflictError(
                "PaymentRequest", str(request.id), request.status, "record review decision",
            )

        with LogContext.bind(request_id=request.id, actor_id=reviewer_id):
            request.review_decided_by = reviewer_id
            request.review_notes = notes
            logger.info(
                "payment_review_decided",
                extra={"request_id": str(request.id), "approved": approve},
            )
            if not approve:
                self._fail(
                    request,
                    FailureStage.REVIEW,
                    notes or "rejected by reviewer",
                    reviewer_id,
                    {"reviewer_id": reviewer_id},
                )
                return request.to_dto()

            if self._approve(request, reviewer_id, {"decision": "manual", "reviewer_id": reviewer_id}):
                self._disburse(request, reviewer_id)
            return request.to_dto()

    def escalate_overdue_reviews(self, as_of: datetime | None = None) -> list[UUID]:
        """
        Flag review requests past their deadline.

        Escalation only surfaces the request; it never approves, rejects
        or times it out.  Already escalated requests are skipped.
        """
        as_of = as_of or self._clock.now()
        overdue = list(self._session.execute(
            select(PaymentRequestModel)
            .where(
                PaymentRequestModel.status == PaymentStatus.PROCESSING.value,
                PaymentRequestModel.requires_review.is_(True),
                PaymentRequestModel.escalated_at.is_(None),
                PaymentRequestModel.review_deadline < as_of,
            )
            .order_by(PaymentRequestModel.review_deadline)
            .with_for_update(skip_locked=True)
        ).scalars())

        for request in overdue:
            request.escalated_at = as_of
            self._session.flush()
            self._auditor.record_payment_transition(
                request_id=request.id,
                action=AuditAction.PAYMENT_REVIEW_ESCALATED,
                from_status=request.status,
                to_status=request.status,
                detail={"review_deadline": request.review_deadline},
            )
            logger.warning(
                "payment_review_escalated",
                extra={
                    "request_id": str(request.id),
                    "review_deadline": request.review_deadline.isoformat(),
                    "overdue_hours": str(round_money(
                        _hours_between(request.review_deadline, as_of)
                    )),
                },
            )
        return [r.id for r in overdue]

    # =========================================================================
    # Cancellation and re-disbursement
    # =========================================================================

    def cancel(
        self,
        request_id: UUID,
        reason: str,
        actor_id: str | None = None,
    ) -> PaymentRequestDTO:
        request = self._lock_request(request_id)
        if request.source == PaymentSource.ESCROW_RELEASE.value:
            raise StateConflictError(
                "PaymentRequest", str(request.id), request.status, "cancel",
                detail="escrow release funds have already left the trust",
            )
        if request.payment_status not in CANCELLABLE_PAYMENT_STATUSES:
            raise StateConflictError(
                "PaymentRequest", str(request.id), request.status, "cancel",
            )
        request.failure_reason = reason
        self._transition(request, PaymentStatus.CANCELLED, actor_id, {"reason": reason})
        logger.info("payment_cancelled", extra={"request_id": str(request.id), "reason": reason})
        return request.to_dto()

    def redisburse(
        self,
        request_id: UUID,
        idempotency_key: str | None = None,
        actor_id: str | None = None,
    ) -> PaymentRequestDTO:
        """
        Explicitly re-request a transfer.

        Legal from ``failed`` at the disbursement stage (optionally under a
        new idempotency key) or from ``disbursing`` when the earlier call
        never resolved, in which case only the original key may be used.
        """
        request = self._lock_request(request_id)
        status = request.payment_status

        with LogContext.bind(request_id=request.id, actor_id=actor_id):
            if status is PaymentStatus.DISBURSING:
                if idempotency_key and idempotency_key != request.idempotency_key:
                    raise StateConflictError(
                        "PaymentRequest", str(request.id), request.status, "redisburse",
                        detail="an in-flight disbursement must reuse its idempotency key",
                    )
                logger.info("payment_redisbursing", extra={"request_id": str(request.id)})
                self._settle(request, actor_id)
                return request.to_dto()

            if (
                status is not PaymentStatus.FAILED
                or request.failure_stage != FailureStage.DISBURSEMENT.value
            ):
                raise StateConflictError(
                    "PaymentRequest", str(request.id), request.status, "redisburse",
                    detail="only disbursement failures can be re-disbursed",
                )

            if idempotency_key and idempotency_key != request.idempotency_key:
                taken = self._session.execute(
                    select(func.count()).select_from(PaymentRequestModel).where(
                        PaymentRequestModel.idempotency_key == idempotency_key,
                    )
                ).scalar_one()
                if taken:
                    raise ValidationError(
                        f"idempotency key {idempotency_key!r} is already in use",
                        field="idempotency_key",
                    )
                request.idempotency_key = idempotency_key

            request.failure_stage = None
            request.failure_reason = None
            logger.info(
                "payment_redisbursing",
                extra={"request_id": str(request.id), "idempotency_key": request.idempotency_key},
            )
            self._disburse(request, actor_id)
            return request.to_dto()

    def resubmit_release(self, request_id: UUID, actor_id: str | None = None) -> PaymentRequestDTO:
        """
        Re-run the pipeline for an escrow release that stopped before payout.

        The escrow ledger books a release as soon as quorum is met, so a
        release that failed eligibility, verification or review, or was held
        for fraud review, still owes the recipient.  Once the blocking
        condition is cleared this puts the same request back to
        ``pending_verification`` and processes it again under its original
        idempotency key.  Disbursement failures go through ``redisburse``.
        """
        request = self._lock_request(request_id)
        status = request.payment_status
        if request.source != PaymentSource.ESCROW_RELEASE.value:
            raise StateConflictError(
                "PaymentRequest", str(request.id), request.status, "resubmit",
                detail="only escrow releases can be resubmitted",
            )
        stopped_before_payout = status is PaymentStatus.DISPUTED or (
            status is PaymentStatus.FAILED
            and request.failure_stage != FailureStage.DISBURSEMENT.value
        )
        if not stopped_before_payout:
            raise StateConflictError(
                "PaymentRequest", str(request.id), request.status, "resubmit",
                detail="only releases stopped before disbursement can be resubmitted",
            )

        with LogContext.bind(request_id=request.id, actor_id=actor_id):
            previous = {
                "failure_stage": request.failure_stage,
                "failure_reason": request.failure_reason,
                "risk_score": request.risk_score,
            }
            request.failure_stage = None
            request.failure_reason = None
            request.verification_score = None
            request.failed_checks = []
            request.risk_score = None
            request.risk_factors = None
            request.requires_review = False
            request.review_deadline = None
            request.escalated_at = None
            request.review_decided_by = None
            request.review_notes = None
            self._transition(request, PaymentStatus.PENDING_VERIFICATION, actor_id, previous)
            logger.info(
                "payment_release_resubmitted",
                extra={"request_id": str(request.id), "previous_status": status.value},
            )
        return self.process(request.id, actor_id=actor_id)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_request(self, request_id: UUID) -> PaymentRequestDTO:
        request = self._session.get(PaymentRequestModel, request_id)
        if request is None:
            raise PaymentRequestNotFoundError(str(request_id))
        return request.to_dto()

    def list_requests(
        self,
        status: PaymentStatus | None = None,
        business_id: str | None = None,
    ) -> list[PaymentRequestDTO]:
        stmt = select(PaymentRequestModel).order_by(PaymentRequestModel.submitted_at)
        if status is not None:
            stmt = stmt.where(PaymentRequestModel.status == PaymentStatus(status).value)
        if business_id is not None:
            stmt = stmt.where(PaymentRequestModel.business_id == business_id)
        return [r.to_dto() for r in self._session.execute(stmt).scalars()]

    def get_metrics(self) -> PaymentMetrics:
        """
        Aggregate pipeline metrics.

        ``success_rate`` is the percentage of terminal (completed or failed)
        requests that completed.  ``interest_saved`` is what recipients
        would have lost waiting for standard terms instead of QuickPay terms
        at the configured annual rate.
        """
        requests = list(self._session.execute(select(PaymentRequestModel)).scalars())
        completed = [r for r in requests if r.status == PaymentStatus.COMPLETED.value]
        failed = [r for r in requests if r.status == PaymentStatus.FAILED.value]
        active = [r for r in requests if r.payment_status in ACTIVE_PAYMENT_STATUSES]

        total_disbursed = round_money(sum((r.net_amount for r in completed), ZERO))

        average_hours = None
        settled = [r for r in completed if r.completed_at is not None]
        if settled:
            hours = sum((_hours_between(r.submitted_at, r.completed_at) for r in settled), ZERO)
            average_hours = round_money(hours / Decimal(len(settled)))

        success_rate = None
        terminal = len(completed) + len(failed)
        if terminal:
            success_rate = round_money(Decimal(len(completed)) * Decimal("100") / Decimal(terminal))

        s = self._settings
        days_saved = Decimal(s.standard_terms_days - s.quickpay_terms_days)
        interest_saved = round_money(
            total_disbursed * s.interest_rate_annual * days_saved / _DAYS_PER_YEAR
        )

        return PaymentMetrics(
            total_requests=len(requests),
            completed_count=len(completed),
            failed_count=len(failed),
            active_count=len(active),
            total_disbursed=total_disbursed,
            average_settlement_hours=average_hours,
            success_rate=success_rate,
            interest_saved=interest_saved,
        )
