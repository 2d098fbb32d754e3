"""
EscrowService -- lifecycle and ledger of escrow accounts.

Responsibility:
    Creates escrow accounts from parties, milestones and funding terms;
    funds them; releases milestones once their quorum is met; freezes
    them on dispute; expires accounts never funded.  Every balance change
    appends an escrow ledger row.

Architecture position:
    Services -- stateful orchestration.  Delegates quorum to
    QuorumService, payouts to DisbursementScheduler, certificates to
    CertificateService and tax to ``escrow_engines.tax``.

Invariants enforced:
    - held + released + fees == deposited, held >= 0 (also a DB CHECK).
    - Account transitions follow ``ACCOUNT_TRANSITIONS``; DISPUTED,
      COMPLETED and EXPIRED are terminal.
    - Every mutation of one account runs under its row lock; the
      version column turns a lost race into OptimisticLockError.
    - All input validation happens before the first write.
    - Flush-only: never commits or rolls back the caller's session.

Failure modes:
    - ValidationError family: malformed or inconsistent input.
    - AccountNotFoundError / MilestoneNotFoundError.
    - StateConflictError: operation illegal in the current status.
    - QuorumNotMetError: required approvals missing (submitted ones stay).
    - DisputeRaised: the account is disputed.
    - OptimisticLockError: a concurrent writer changed the account.

Audit relevance:
    ``escrow.created``, ``escrow.funded``, ``escrow.releasing``,
    ``payment.released``, ``escrow.completed``, ``escrow.disputed`` and
    ``escrow.expired``.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from escrow_config.schema import EscrowSection
from escrow_engines.fees import compute_release_fees, validate_fee_schedule
from escrow_engines.quorum import find_requirement
from escrow_engines.tax import (
    ExemptionFacts,
    ExemptionReason,
    TaxBreakdown,
    TaxEngine,
    TaxNumberKind,
    validate_tax_number,
)
from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.escrow import (
    ACCOUNT_TRANSITIONS,
    SYSTEM_ACTOR,
    AccountStatus,
    ApprovalSubmission,
    ApproverType,
    ContractorType,
    EscrowAccountDTO,
    EscrowParties,
    FeeSchedule,
    FundingTerms,
    LedgerTransactionDTO,
    LedgerTransactionType,
    MilestoneDTO,
    MilestoneSpec,
    MilestoneStatus,
    ReleaseResult,
)
from escrow_kernel.domain.money import (
    ZERO,
    require_money,
    round_money,
    to_decimal,
    validate_currency,
)
from escrow_kernel.domain.ports import ApproverDirectory
from escrow_kernel.exceptions import (
    AccountNotFoundError,
    DisputeRaised,
    InvalidAmountError,
    MilestoneNotFoundError,
    OptimisticLockError,
    QuorumNotMetError,
    StateConflictError,
    UnauthorizedApproverError,
    ValidationError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.audit_event import AuditAction
from escrow_kernel.models.escrow import (
    EscrowAccountModel,
    MilestoneApproverModel,
    MilestoneModel,
    SubcontractorModel,
)
from escrow_kernel.models.ledger import EscrowTransactionModel
from escrow_kernel.services.auditor_service import AuditorService
from escrow_services.certificate_service import CertificateService
from escrow_services.disbursement_service import DisbursementScheduler
from escrow_services.quorum_service import QuorumService

logger = get_logger("services.escrow")

_HUNDRED = Decimal("100")
_ONE = Decimal("1")


class EscrowService:
    """
    Escrow account manager.

    Contract:
        Receives its Session, AuditorService, collaborating services and
        ports via constructor injection.  ``certificates`` may be None, in
        which case government funding issues no certificate.

    Non-goals:
        - Does NOT resolve disputes; DISPUTED is terminal here.
        - Does NOT commit; the caller owns the transaction boundary.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        quorum: QuorumService,
        scheduler: DisbursementScheduler,
        approver_directory: ApproverDirectory,
        clock: Clock | None = None,
        tax_engine: TaxEngine | None = None,
        certificates: CertificateService | None = None,
        settings: EscrowSection | None = None,
        default_fee_schedule: FeeSchedule | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._quorum = quorum
        self._scheduler = scheduler
        self._approvers = approver_directory
        self._clock = clock or SystemClock()
        self._tax_engine = tax_engine or TaxEngine()
        self._certificates = certificates
        self._settings = settings or EscrowSection()
        self._default_fee_schedule = default_fee_schedule or FeeSchedule.zero()

    # =========================================================================
    # Internals
    # =========================================================================

    def _lock_account(self, account_id: UUID) -> EscrowAccountModel:
        account = self._session.execute(
            select(EscrowAccountModel)
            .where(EscrowAccountModel.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(str(account_id))
        return account

    def _get_account(self, account_id: UUID) -> EscrowAccountModel:
        account = self._session.get(EscrowAccountModel, account_id)
        if account is None:
            raise AccountNotFoundError(str(account_id))
        return account

    def _flush(self, account: EscrowAccountModel) -> None:
        try:
            self._session.flush()
        except StaleDataError as exc:
            logger.warning(
                "escrow_concurrent_update",
                extra={"account_id": str(account.id)},
            )
            raise OptimisticLockError("EscrowAccount", str(account.id)) from exc

    def _guard_disputed(self, account: EscrowAccountModel) -> None:
        if account.account_status is AccountStatus.DISPUTED:
            raise DisputeRaised(
                str(account.id), account.dispute_reason or "", round_money(account.frozen_amount),
            )

    def _set_status(
        self,
        account: EscrowAccountModel,
        target: AccountStatus,
        operation: str,
    ) -> None:
        current = account.account_status
        if target not in ACCOUNT_TRANSITIONS[current]:
            raise StateConflictError("EscrowAccount", str(account.id), current.value, operation)
        account.status = target.value

    def _append_ledger(
        self,
        account: EscrowAccountModel,
        transaction_type: LedgerTransactionType,
        amount: Decimal,
        reference: str,
        milestone_id: UUID | None = None,
        payment_request_id: UUID | None = None,
    ) -> EscrowTransactionModel:
        # Serialized by the account row lock
        last = self._session.execute(
            select(func.max(EscrowTransactionModel.entry_no))
            .where(EscrowTransactionModel.account_id == account.id)
        ).scalar_one()
        entry = EscrowTransactionModel(
            account_id=account.id,
            entry_no=(last or 0) + 1,
            transaction_type=transaction_type.value,
            amount=amount,
            held_after=account.held_amount,
            reference=reference,
            milestone_id=milestone_id,
            payment_request_id=payment_request_id,
            occurred_at=self._clock.now(),
        )
        self._session.add(entry)
        self._session.flush()
        return entry

    # =========================================================================
    # Creation
    # =========================================================================

    def _check_approvers(self, contract_reference: str, spec: MilestoneSpec) -> None:
        if not any(a.required for a in spec.approvers):
            raise ValidationError(
                f"milestone {spec.key!r} needs at least one required approver",
                field="approvers",
            )
        seen: set[tuple[str, str]] = set()
        for approver in spec.approvers:
            key = (ApproverType(approver.approver_type).value, approver.approver_id)
            if key in seen:
                raise ValidationError(
                    f"milestone {spec.key!r} lists approver {key[0]}:{key[1]} twice",
                    field="approvers",
                )
            seen.add(key)
            if not self._approvers.is_authorized(
                contract_reference, approver.approver_type, approver.approver_id,
            ):
                raise UnauthorizedApproverError(key[0], key[1], contract_reference)

    def _resolve_amount(self, spec: MilestoneSpec, total: Decimal) -> Decimal:
        if (spec.percentage is None) == (spec.fixed_amount is None):
            raise ValidationError(
                f"milestone {spec.key!r} must give exactly one of percentage or fixed_amount",
                field="milestones",
            )
        if spec.fixed_amount is not None:
            return require_money(spec.fixed_amount, f"milestones[{spec.key}].fixed_amount")

        pct = to_decimal(spec.percentage, f"milestones[{spec.key}].percentage")
        if pct <= ZERO or pct > _HUNDRED:
            raise InvalidAmountError(
                f"milestones[{spec.key}].percentage", pct, "must be in (0, 100]",
            )
        amount = round_money(total * pct / _HUNDRED)
        if amount <= ZERO:
            raise InvalidAmountError(
                f"milestones[{spec.key}].amount", amount, "rounds to zero",
            )
        return amount

    def _compute_tax(
        self,
        parties: EscrowParties,
        terms: FundingTerms,
        total: Decimal,
    ) -> TaxBreakdown | None:
        location = terms.location
        if not location.jurisdiction:
            return None
        recipient = parties.recipient
        return self._tax_engine.compute(
            total,
            location.jurisdiction,
            ExemptionFacts(
                certificate_number=terms.exemption_certificate_number,
                certificate_approved=terms.exemption_certificate_approved,
                on_reserve=location.on_reserve,
                indigenous_owned=(
                    recipient.indigenous_owned
                    or recipient.contractor_type is ContractorType.INDIGENOUS
                ),
                registration_number=recipient.tax_registration_number,
            ),
        )

    def create(
        self,
        parties: EscrowParties,
        milestones: Sequence[MilestoneSpec],
        terms: FundingTerms,
        actor_id: str | None = None,
    ) -> EscrowAccountDTO:
        """
        Create an escrow account in ``pending_funding``.

        Raises:
            ValidationError: any inconsistency in parties, milestones or
                terms.  Nothing is written in that case.
        """
        actor = actor_id or SYSTEM_ACTOR
        currency = validate_currency(terms.currency)
        total = require_money(
            terms.total_amount,
            "total_amount",
            minimum=self._settings.min_total,
            maximum=self._settings.max_total,
        )
        contract_reference = (terms.contract_reference or "").strip()
        if not contract_reference:
            raise ValidationError("contract_reference is required", field="contract_reference")
        if not parties.funding_party.name.strip():
            raise ValidationError("funding party name is required", field="funding_party")
        if not parties.recipient.payout_account.strip():
            raise ValidationError("recipient payout account is required", field="recipient")

        if not milestones:
            raise ValidationError("at least one milestone is required", field="milestones")
        keys = [m.key for m in milestones]
        duplicates = sorted({k for k in keys if keys.count(k) > 1})
        if duplicates:
            raise ValidationError(f"duplicate milestone keys {duplicates}", field="milestones")

        amounts: list[Decimal] = []
        for spec in milestones:
            if not spec.key or not spec.key.strip():
                raise ValidationError("milestone key is required", field="milestones")
            amounts.append(self._resolve_amount(spec, total))
            self._check_approvers(contract_reference, spec)
        if sum(amounts, ZERO) != total:
            raise ValidationError(
                f"milestone amounts sum to {sum(amounts, ZERO)}, expected {total}",
                field="milestones",
            )

        schedule = validate_fee_schedule(terms.fee_schedule or self._default_fee_schedule)

        risk_score = terms.project_risk_score
        if risk_score is not None:
            risk_score = to_decimal(risk_score, "project_risk_score")
            if not ZERO <= risk_score <= _ONE:
                raise ValidationError(
                    f"project_risk_score must be in [0, 1], got {risk_score}",
                    field="project_risk_score",
                )

        if terms.exemption_certificate_number is not None and not validate_tax_number(
            TaxNumberKind.EXEMPTION, terms.exemption_certificate_number,
        ):
            raise ValidationError(
                f"invalid exemption certificate number {terms.exemption_certificate_number!r}",
                field="exemption_certificate_number",
            )

        now = self._clock.now()
        deadline = terms.funding_deadline or now + timedelta(
            days=self._settings.funding_window_days,
        )
        if deadline <= now:
            raise ValidationError("funding deadline must be in the future", field="funding_deadline")

        tax = self._compute_tax(parties, terms, total)

        funding, recipient, location = parties.funding_party, parties.recipient, terms.location
        account = EscrowAccountModel(
            contract_reference=contract_reference,
            status=AccountStatus.PENDING_FUNDING.value,
            currency=currency,
            funding_party_name=funding.name,
            funding_party_type=funding.party_type.value,
            funding_commitment_reference=funding.commitment_reference,
            recipient_name=recipient.name,
            recipient_business_id=recipient.business_id,
            recipient_business_number=recipient.business_number,
            recipient_payout_account=recipient.payout_account,
            recipient_contractor_type=recipient.contractor_type.value,
            recipient_indigenous_owned=recipient.indigenous_owned,
            recipient_tax_registration_number=recipient.tax_registration_number,
            jurisdiction=location.jurisdiction.strip().upper() if location.jurisdiction else None,
            on_reserve=location.on_reserve,
            community=location.community,
            committed_amount=total,
            deposited_amount=ZERO,
            held_amount=ZERO,
            released_amount=ZERO,
            fee_amount=ZERO,
            frozen_amount=ZERO,
            fee_transaction_rate=schedule.transaction_rate,
            fee_quick_pay_premium=schedule.quick_pay_premium,
            fee_volume_threshold=schedule.volume_discount_threshold,
            fee_volume_discount_rate=schedule.volume_discount_rate,
            project_risk_score=risk_score,
            exemption_certificate_number=terms.exemption_certificate_number,
            exemption_certificate_approved=terms.exemption_certificate_approved,
            funding_deadline=deadline,
            created_at=now,
        )
        if tax is not None:
            account.tax_jurisdiction = tax.jurisdiction
            account.tax_is_exempt = tax.is_exempt
            account.tax_exemption_reason = tax.exemption_reason.value if tax.exemption_reason else None
            account.tax_gst = tax.gst
            account.tax_pst = tax.pst
            account.tax_hst = tax.hst
            account.tax_total = tax.total_tax
        elif location.on_reserve:
            account.tax_is_exempt = True
            account.tax_exemption_reason = ExemptionReason.ON_RESERVE.value
            account.tax_gst = account.tax_pst = account.tax_hst = account.tax_total = ZERO

        account.subcontractors = [
            SubcontractorModel(
                position=i,
                name=s.name,
                role=s.role,
                indigenous_owned=s.indigenous_owned,
                business_id=s.business_id,
            )
            for i, s in enumerate(parties.subcontractors)
        ]
        account.milestones = [
            MilestoneModel(
                key=spec.key,
                position=i,
                description=spec.description,
                deliverables=list(spec.deliverables),
                percentage=spec.percentage,
                fixed_amount=spec.fixed_amount,
                amount=amount,
                due_date=spec.due_date,
                status=MilestoneStatus.PENDING.value,
                approvers=[
                    MilestoneApproverModel(
                        position=j,
                        approver_type=ApproverType(a.approver_type).value,
                        approver_id=a.approver_id,
                        required=a.required,
                    )
                    for j, a in enumerate(spec.approvers)
                ],
            )
            for i, (spec, amount) in enumerate(zip(milestones, amounts))
        ]
        self._session.add(account)
        self._session.flush()

        self._auditor.record_escrow_created(
            account_id=account.id,
            contract_reference=contract_reference,
            committed_amount=total,
            milestone_count=len(milestones),
            actor_id=actor,
        )
        logger.info(
            "escrow_created",
            extra={
                "account_id": str(account.id),
                "contract_reference": contract_reference,
                "committed_amount": str(total),
                "milestones": len(milestones),
                "tax_exempt": account.tax_is_exempt,
            },
        )
        return account.to_dto()

    # =========================================================================
    # Funding
    # =========================================================================

    def fund(
        self,
        account_id: UUID,
        amount: Decimal,
        reference: str,
        actor_id: str | None = None,
    ) -> EscrowAccountDTO:
        """
        Deposit the full committed total.

        Partial funding is rejected, never partially applied.  A
        government funder triggers certificate issuance.
        """
        amount = require_money(amount, "amount")
        actor = actor_id or SYSTEM_ACTOR
        account = self._lock_account(account_id)

        with LogContext.bind(account_id=account.id, actor_id=actor):
            self._guard_disputed(account)
            if account.account_status is not AccountStatus.PENDING_FUNDING:
                raise StateConflictError(
                    "EscrowAccount", str(account.id), account.status, "fund",
                )
            now = self._clock.now()
            if now > account.funding_deadline:
                raise StateConflictError(
                    "EscrowAccount", str(account.id), account.status, "fund",
                    detail=f"funding deadline {account.funding_deadline.isoformat()} has passed",
                )
            committed = round_money(account.committed_amount)
            if amount != committed:
                raise InvalidAmountError(
                    "amount", amount, f"must equal the committed total {committed}",
                )

            self._set_status(account, AccountStatus.ACTIVE, "fund")
            account.deposited_amount = amount
            account.held_amount = amount
            account.funding_reference = reference
            account.activated_at = now
            self._flush(account)

            self._append_ledger(account, LedgerTransactionType.DEPOSIT, amount, reference)
            self._auditor.record_escrow_funded(
                account_id=account.id, amount=amount, reference=reference, actor_id=actor,
            )
            logger.info(
                "escrow_funded",
                extra={"account_id": str(account.id), "amount": str(amount)},
            )

            if account.funding_party.is_government and self._certificates is not None:
                self._certificates.issue(account.id, actor_id=actor)

            return account.to_dto()

    # =========================================================================
    # Release
    # =========================================================================

    def _find_milestone(self, account: EscrowAccountModel, milestone_id: UUID) -> MilestoneModel:
        for milestone in account.milestones:
            if milestone.id == milestone_id:
                return milestone
        raise MilestoneNotFoundError(str(milestone_id), account_id=str(account.id))

    def _authenticate(
        self,
        account: EscrowAccountModel,
        milestone: MilestoneModel,
        approvals: Sequence[ApprovalSubmission],
    ) -> None:
        requirements = milestone.requirements
        for approval in approvals:
            approver_type = ApproverType(approval.approver_type)
            authorized = self._approvers.is_authorized(
                account.contract_reference, approver_type, approval.approver_id,
            )
            if not authorized or find_requirement(
                requirements, approver_type, approval.approver_id,
            ) is None:
                raise UnauthorizedApproverError(
                    approver_type.value, approval.approver_id, account.contract_reference,
                )

    def request_release(
        self,
        account_id: UUID,
        milestone_id: UUID,
        approvals: Sequence[ApprovalSubmission] = (),
        actor_id: str | None = None,
    ) -> ReleaseResult:
        """
        Submit approvals and, once quorum holds, release the milestone.

        Approvals are recorded even when quorum is still not met; the
        caller decides whether to commit them before handling
        QuorumNotMetError.
        """
        actor = actor_id or SYSTEM_ACTOR
        account = self._lock_account(account_id)

        with LogContext.bind(account_id=account.id, actor_id=actor):
            self._guard_disputed(account)
            if account.account_status is not AccountStatus.ACTIVE:
                raise StateConflictError(
                    "EscrowAccount", str(account.id), account.status, "release",
                )
            milestone = self._find_milestone(account, milestone_id)
            if milestone.milestone_status is MilestoneStatus.RELEASED:
                raise StateConflictError(
                    "Milestone", str(milestone.id), milestone.status, "release",
                )
            self._authenticate(account, milestone, approvals)

            for approval in approvals:
                # Once approved, further signatures are not needed
                if milestone.milestone_status is not MilestoneStatus.PENDING:
                    break
                self._quorum.submit(milestone.id, approval, actor_id=actor)

            if milestone.milestone_status is not MilestoneStatus.APPROVED:
                evaluation = self._quorum.evaluate(milestone.id)
                logger.info(
                    "release_quorum_not_met",
                    extra={
                        "milestone_id": str(milestone.id),
                        "missing": evaluation.missing_approver_types,
                    },
                )
                raise QuorumNotMetError(str(milestone.id), evaluation.missing_approver_types)

            gross = round_money(milestone.amount)
            held = round_money(account.held_amount)
            if gross > held:
                raise StateConflictError(
                    "EscrowAccount", str(account.id), account.status, "release",
                    detail=f"release {gross} exceeds held balance {held}",
                )
            fees = compute_release_fees(gross, account.fee_schedule, account.committed_amount)
            fee, net = fees.fee, fees.net

            self._set_status(account, AccountStatus.RELEASING, "release")
            self._flush(account)
            self._auditor.record(
                entity_type="EscrowAccount",
                entity_id=account.id,
                action=AuditAction.ESCROW_RELEASING,
                actor_id=actor,
                payload={"milestone_id": milestone.id, "gross_amount": gross},
            )

            now = self._clock.now()
            account.held_amount = held - gross
            account.fee_amount = round_money(account.fee_amount) + fee
            account.released_amount = round_money(account.released_amount) + net
            milestone.status = MilestoneStatus.RELEASED.value
            milestone.released_at = now
            milestone.released_amount = gross
            self._flush(account)

            payment = self._scheduler.schedule_release(
                account_id=account.id,
                milestone_id=milestone.id,
                milestone_key=milestone.key,
                business_id=account.recipient_business_id,
                contract_reference=account.contract_reference,
                amount=net,
                payout_account=account.recipient_payout_account,
                actor_id=actor,
            )

            reference = f"milestone:{milestone.key}"
            self._append_ledger(
                account, LedgerTransactionType.RELEASE, net, reference,
                milestone_id=milestone.id, payment_request_id=payment.id,
            )
            if fee > ZERO:
                self._append_ledger(
                    account, LedgerTransactionType.FEE, fee, reference,
                    milestone_id=milestone.id, payment_request_id=payment.id,
                )

            if all(m.milestone_status is MilestoneStatus.RELEASED for m in account.milestones):
                self._set_status(account, AccountStatus.COMPLETED, "complete")
                account.completed_at = now
                self._flush(account)
                self._auditor.record(
                    entity_type="EscrowAccount",
                    entity_id=account.id,
                    action=AuditAction.ESCROW_COMPLETED,
                    actor_id=actor,
                    payload={
                        "released_amount": round_money(account.released_amount),
                        "fee_amount": round_money(account.fee_amount),
                    },
                )
                logger.info("escrow_completed", extra={"account_id": str(account.id)})
            else:
                self._set_status(account, AccountStatus.ACTIVE, "release")
                self._flush(account)

            self._auditor.record_payment_released(
                account_id=account.id,
                milestone_id=milestone.id,
                payment_request_id=payment.id,
                gross_amount=gross,
                fee_amount=fee,
                net_amount=net,
                held_after=round_money(account.held_amount),
                actor_id=actor,
            )
            logger.info(
                "payment_released",
                extra={
                    "account_id": str(account.id),
                    "milestone_key": milestone.key,
                    "gross_amount": str(gross),
                    "fee_amount": str(fee),
                    "net_amount": str(net),
                    "payment_status": payment.status.value,
                },
            )
            return ReleaseResult(
                account=account.to_dto(),
                milestone=milestone.to_dto(),
                payment=payment,
                gross_amount=gross,
                fee_amount=fee,
                net_amount=net,
            )

    # =========================================================================
    # Dispute and expiry
    # =========================================================================

    def dispute(
        self,
        account_id: UUID,
        reason: str,
        evidence: Sequence[str] = (),
        actor_id: str | None = None,
    ) -> EscrowAccountDTO:
        """Freeze the remaining held funds.  Released amounts are untouched."""
        if not reason or not reason.strip():
            raise ValidationError("dispute reason is required", field="reason")
        actor = actor_id or SYSTEM_ACTOR
        account = self._lock_account(account_id)

        with LogContext.bind(account_id=account.id, actor_id=actor):
            self._guard_disputed(account)
            self._set_status(account, AccountStatus.DISPUTED, "dispute")

            frozen = round_money(account.held_amount)
            account.frozen_amount = frozen
            account.dispute_reason = reason
            account.dispute_evidence = list(evidence)
            account.disputed_at = self._clock.now()
            for milestone in account.milestones:
                if milestone.milestone_status is not MilestoneStatus.RELEASED:
                    milestone.status = MilestoneStatus.DISPUTED.value
            self._flush(account)

            self._append_ledger(account, LedgerTransactionType.FREEZE, frozen, "dispute")
            self._auditor.record_escrow_disputed(
                account_id=account.id,
                reason=reason,
                frozen_amount=frozen,
                evidence=tuple(evidence),
                actor_id=actor,
            )
            logger.warning(
                "escrow_disputed",
                extra={"account_id": str(account.id), "frozen_amount": str(frozen), "reason": reason},
            )
            return account.to_dto()

    def expire_unfunded(self, as_of: datetime | None = None) -> list[UUID]:
        """Expire pending accounts whose funding deadline is before ``as_of``."""
        as_of = as_of or self._clock.now()
        due = list(self._session.execute(
            select(EscrowAccountModel)
            .where(
                EscrowAccountModel.status == AccountStatus.PENDING_FUNDING.value,
                EscrowAccountModel.funding_deadline < as_of,
            )
            .order_by(EscrowAccountModel.funding_deadline)
            .with_for_update(skip_locked=True)
        ).scalars())

        for account in due:
            self._set_status(account, AccountStatus.EXPIRED, "expire")
            account.expired_at = as_of
            self._flush(account)
            self._auditor.record(
                entity_type="EscrowAccount",
                entity_id=account.id,
                action=AuditAction.ESCROW_EXPIRED,
                payload={"funding_deadline": account.funding_deadline},
            )
            logger.info("escrow_expired", extra={"account_id": str(account.id)})
        return [a.id for a in due]

    # =========================================================================
    # Reads
    # =========================================================================

    def get_account(self, account_id: UUID) -> EscrowAccountDTO:
        return self._get_account(account_id).to_dto()

    def get_milestones(self, account_id: UUID) -> list[MilestoneDTO]:
        return [m.to_dto() for m in self._get_account(account_id).milestones]

    def get_transactions(self, account_id: UUID) -> list[LedgerTransactionDTO]:
        self._get_account(account_id)
        rows = self._session.execute(
            select(EscrowTransactionModel)
            .where(EscrowTransactionModel.account_id == account_id)
            .order_by(EscrowTransactionModel.entry_no)
        ).scalars()
        return [r.to_dto() for r in rows]
