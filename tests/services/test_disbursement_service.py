"""
Tests for DisbursementScheduler -- the QuickPay payment pipeline.

Covers:
- submit_request(): amount and field validation, processing fee
- process(): eligibility failures, verification failure, the three risk
  buckets, fraud hold regardless of verification score, status guard
- invoice uniqueness: sequential duplicates and the concurrent approval
  caught by the partial unique index
- transfer failures: verbatim provider error, no automatic retry,
  explicit redisburse with the original or a fresh idempotency key
- manual review: approve, reject, overdue escalation
- resubmit_release(): escrow releases stopped before payout run again
- cancel(), process_pending(), list_requests(), get_metrics()
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from escrow_engines.risk import RiskAssessment, RiskBucket
from escrow_kernel.domain.escrow import FundingPartyType
from escrow_kernel.domain.payment import (
    BusinessProfile,
    ContractFacts,
    FailureStage,
    PaymentSource,
    PaymentStatus,
)
from escrow_kernel.exceptions import (
    InvalidAmountError,
    PaymentRequestNotFoundError,
    StateConflictError,
    ValidationError,
)
from escrow_services.adapters.memory import InMemoryBusinessDirectory
from escrow_services.orchestrator import EscrowOrchestrator
from tests.conftest import BUSINESS_ID, CONTRACT_REF, PAYOUT_ACCOUNT, quorum_approvals


PROVIDER_ERROR = "ERR_ACCOUNT_CLOSED: beneficiary account 7788 closed"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FixedRiskModel:
    """Risk model that always returns the same score."""

    def __init__(self, score, bucket):
        self.score = Decimal(score)
        self.bucket = bucket
        self.calls = 0

    def assess(self, inputs):
        self.calls += 1
        return RiskAssessment(score=self.score, factors={"fixed": self.score}, bucket=self.bucket)


def submit(scheduler, amount="5000.00", invoice="INV-100", contract=CONTRACT_REF, business=BUSINESS_ID):
    return scheduler.submit_request(
        business_id=business,
        contract_reference=contract,
        invoice_number=invoice,
        amount=Decimal(amount),
        payout_account=PAYOUT_ACCOUNT,
    )


def submit_and_process(scheduler, **kwargs):
    request = submit(scheduler, **kwargs)
    return scheduler.process(request.id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def orchestrator_with(
    session,
    escrow_config,
    approver_directory,
    verification,
    transfer,
    contracts,
    businesses,
    deterministic_clock,
):
    """Build an orchestrator with selected collaborators replaced."""

    def _build(**overrides):
        wiring = dict(
            session=session,
            approver_directory=approver_directory,
            verification=verification,
            transfer=transfer,
            contracts=contracts,
            businesses=businesses,
            config=escrow_config,
            clock=deterministic_clock,
        )
        wiring.update(overrides)
        return EscrowOrchestrator(**wiring)

    return _build


@pytest.fixture
def review_request(scheduler):
    """A 150,000 request paused in the manual review band."""
    return submit_and_process(scheduler, amount="150000.00", invoice="INV-REVIEW")


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


class TestSubmit:

    def test_submission_is_pending_with_fee(self, scheduler, deterministic_clock):
        request = submit(scheduler)

        assert request.status == PaymentStatus.PENDING_VERIFICATION
        assert request.source == PaymentSource.QUICKPAY
        assert request.fee_rate == Decimal("0.025")
        assert request.processing_fee == Decimal("125.00")
        assert request.net_amount == Decimal("4875.00")
        assert request.idempotency_key == str(request.id)
        assert request.estimated_arrival == deterministic_clock.now() + timedelta(hours=24)

    def test_amount_above_maximum_rejected(self, scheduler):
        with pytest.raises(InvalidAmountError):
            submit(scheduler, amount="5000000.01")

    def test_zero_amount_rejected(self, scheduler):
        with pytest.raises(InvalidAmountError):
            submit(scheduler, amount="0")

    def test_invoice_number_required(self, scheduler):
        with pytest.raises(ValidationError):
            submit(scheduler, invoice=" ")

    def test_audit_event(self, scheduler, auditor_service):
        request = submit(scheduler)

        assert auditor_service.get_trace("PaymentRequest", request.id).actions == ("payment.requested",)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TestAutoApproval:

    def test_low_risk_request_is_disbursed(self, scheduler, transfer):
        request = submit_and_process(scheduler)

        assert request.status == PaymentStatus.COMPLETED
        assert request.verification_score == Decimal("100.00")
        assert request.failed_checks == ()
        assert request.risk_score == Decimal("20.75")
        assert request.risk_factors["amount"] == "10"
        assert request.transaction_id is not None
        assert request.actual_arrival is not None

        [recorded] = transfer.transfers
        assert recorded.amount == Decimal("4875.00")
        assert recorded.idempotency_key == str(request.id)
        assert recorded.recipient_account == PAYOUT_ACCOUNT

    def test_audit_trail_covers_every_transition(self, scheduler, auditor_service):
        request = submit_and_process(scheduler)

        assert auditor_service.get_trace("PaymentRequest", request.id).actions == (
            "payment.requested",
            "payment.verified",
            "payment.approved",
            "payment.disbursing",
            "payment.completed",
        )

    def test_completion_logged(self, scheduler, captured_logs):
        request = submit_and_process(scheduler)

        messages = [r["message"] for r in captured_logs() if r.get("request_id") == str(request.id)]
        assert "payment_risk_scored" in messages
        assert "payment_completed" in messages

    def test_process_twice_rejected(self, scheduler):
        request = submit_and_process(scheduler)

        with pytest.raises(StateConflictError):
            scheduler.process(request.id)

    def test_unknown_request(self, scheduler):
        with pytest.raises(PaymentRequestNotFoundError):
            scheduler.process(uuid4())


class TestEligibility:

    def test_unknown_contract(self, scheduler):
        request = submit_and_process(scheduler, contract="CNT-MISSING")

        assert request.status == PaymentStatus.FAILED
        assert request.failure_stage == FailureStage.ELIGIBILITY
        assert request.failure_reason == "contract not found"

    def test_contract_of_another_business(self, scheduler, contracts):
        contracts.register(ContractFacts(
            contract_reference="CNT-OTHER",
            business_id="biz-someone-else",
            is_active=True,
            issuer_type=FundingPartyType.FEDERAL,
            contract_value=Decimal("500000.00"),
            jurisdiction="ON",
        ))

        request = submit_and_process(scheduler, contract="CNT-OTHER")

        assert request.failure_reason == "contract does not belong to the requesting business"

    def test_unverified_business(self, scheduler, verification):
        verification.unverify_business(BUSINESS_ID)

        request = submit_and_process(scheduler)

        assert request.failure_reason == "business is not verified"

    def test_inactive_contract(self, scheduler, contracts):
        contracts.register(ContractFacts(
            contract_reference="CNT-CLOSED",
            business_id=BUSINESS_ID,
            is_active=False,
            issuer_type=FundingPartyType.FEDERAL,
            contract_value=Decimal("500000.00"),
            jurisdiction="ON",
        ))

        request = submit_and_process(scheduler, contract="CNT-CLOSED")

        assert request.failure_reason == "contract is not active"

    def test_private_issuer(self, scheduler, contracts):
        contracts.register(ContractFacts(
            contract_reference="CNT-PRIVATE",
            business_id=BUSINESS_ID,
            is_active=True,
            issuer_type=FundingPartyType.PRIVATE,
            contract_value=Decimal("500000.00"),
            jurisdiction="ON",
        ))

        request = submit_and_process(scheduler, contract="CNT-PRIVATE")

        assert request.failure_reason == "contract issuer is not a government entity"

    def test_paid_invoice_rejected(self, scheduler, transfer):
        first = submit_and_process(scheduler, invoice="INV-200")
        second = submit_and_process(scheduler, invoice="INV-200")

        assert first.status == PaymentStatus.COMPLETED
        assert second.status == PaymentStatus.FAILED
        assert second.failure_stage == FailureStage.ELIGIBILITY
        assert second.failure_reason == "invoice already paid or in payment"
        assert second.risk_score is None
        assert len(transfer.transfers) == 1

    def test_failed_invoice_can_be_resubmitted(self, scheduler, contracts):
        first = submit_and_process(scheduler, invoice="INV-201", contract="CNT-MISSING")
        second = submit_and_process(scheduler, invoice="INV-201")

        assert first.status == PaymentStatus.FAILED
        assert second.status == PaymentStatus.COMPLETED


class TestVerification:

    def test_two_failed_checks_fail_verification(self, scheduler, verification):
        verification.set_performance(BUSINESS_ID, Decimal("70"))

        request = submit_and_process(scheduler, amount="600000.00")

        assert request.status == PaymentStatus.FAILED
        assert request.failure_stage == FailureStage.VERIFICATION
        assert request.verification_score == Decimal("66.67")
        assert set(request.failed_checks) == {"amount_within_contract", "performance_threshold"}

    def test_performance_at_threshold_fails_check(self, scheduler, verification):
        verification.set_performance(BUSINESS_ID, Decimal("80"))

        request = submit_and_process(scheduler)

        # One failed check still passes verification
        assert request.verification_score == Decimal("83.33")
        assert request.failed_checks == ("performance_threshold",)
        assert request.status == PaymentStatus.COMPLETED


class TestRiskBuckets:

    def test_fraud_band_held_despite_perfect_verification(self, orchestrator_with, transfer):
        model = FixedRiskModel("85", RiskBucket.FRAUD_REVIEW)
        scheduler = orchestrator_with(risk_model=model).scheduler

        request = submit_and_process(scheduler)

        assert request.verification_score == Decimal("100.00")
        assert request.status == PaymentStatus.DISPUTED
        assert request.risk_score == Decimal("85")
        assert "fraud review" in request.failure_reason
        assert transfer.transfers == []
        assert model.calls == 1

    def test_manual_band_pauses_for_review(self, review_request, deterministic_clock, transfer):
        assert review_request.status == PaymentStatus.PROCESSING
        assert review_request.requires_review is True
        assert review_request.risk_score == Decimal("30.75")
        assert review_request.review_deadline == deterministic_clock.now() + timedelta(hours=48)
        assert transfer.transfers == []

    def test_unknown_business_profile_is_riskiest(self, orchestrator_with):
        scheduler = orchestrator_with(businesses=InMemoryBusinessDirectory()).scheduler

        request = submit_and_process(scheduler)

        assert request.risk_factors["business_age"] == "90"
        assert request.risk_factors["network"] == "90"
        assert request.status == PaymentStatus.PROCESSING

    def test_young_business_with_disputes(self, orchestrator_with, deterministic_clock):
        directory = InMemoryBusinessDirectory()
        directory.register(BusinessProfile(
            business_id=BUSINESS_ID,
            registered_at=deterministic_clock.now() - timedelta(days=30),
            jurisdiction="QC",
            has_open_disputes=True,
            trusted_connections=1,
        ))
        scheduler = orchestrator_with(businesses=directory).scheduler

        request = submit_and_process(scheduler)

        assert request.failed_checks == ("no_open_disputes",)
        assert request.risk_factors["jurisdiction"] == "15"
        assert request.status == PaymentStatus.PROCESSING


class TestConcurrentInvoice:

    def test_second_approval_of_same_invoice_fails(self, scheduler):
        first = submit_and_process(scheduler, amount="150000.00", invoice="INV-300")
        second = submit_and_process(scheduler, amount="150000.00", invoice="INV-300")

        # Both pass eligibility while neither is approved
        assert first.status == PaymentStatus.PROCESSING
        assert second.status == PaymentStatus.PROCESSING
        assert second.failed_checks == ("invoice_unique",)

        approved = scheduler.record_review_decision(first.id, approve=True, reviewer_id="analyst-1")
        rejected = scheduler.record_review_decision(second.id, approve=True, reviewer_id="analyst-1")

        assert approved.status == PaymentStatus.COMPLETED
        assert rejected.status == PaymentStatus.FAILED
        assert rejected.failure_stage == FailureStage.ELIGIBILITY
        assert rejected.failure_reason == "invoice already paid or in payment"


# ---------------------------------------------------------------------------
# Disbursement failures
# ---------------------------------------------------------------------------


class TestTransferFailure:

    def test_provider_error_stored_verbatim(self, scheduler, transfer):
        transfer.fail_with(PROVIDER_ERROR)

        request = submit_and_process(scheduler)

        assert request.status == PaymentStatus.FAILED
        assert request.failure_stage == FailureStage.DISBURSEMENT
        assert request.provider_error == PROVIDER_ERROR
        assert transfer.calls == [request.idempotency_key]

    def test_redisburse_with_original_key(self, scheduler, transfer):
        transfer.fail_with(PROVIDER_ERROR)
        failed = submit_and_process(scheduler)
        transfer.succeed()

        request = scheduler.redisburse(failed.id, actor_id="ops")

        assert request.status == PaymentStatus.COMPLETED
        assert request.failure_stage is None
        assert request.provider_error == PROVIDER_ERROR
        assert transfer.calls == [failed.idempotency_key, failed.idempotency_key]

    def test_redisburse_with_fresh_key(self, scheduler, transfer):
        transfer.fail_next(PROVIDER_ERROR)
        failed = submit_and_process(scheduler)

        request = scheduler.redisburse(failed.id, idempotency_key="retry-2")

        assert request.status == PaymentStatus.COMPLETED
        assert request.idempotency_key == "retry-2"
        assert transfer.transfers[0].idempotency_key == "retry-2"

    def test_redisburse_rejects_key_in_use(self, scheduler, transfer):
        other = submit(scheduler, invoice="INV-OTHER")
        transfer.fail_next(PROVIDER_ERROR)
        failed = submit_and_process(scheduler)

        with pytest.raises(ValidationError):
            scheduler.redisburse(failed.id, idempotency_key=other.idempotency_key)

    def test_redisburse_completed_rejected(self, scheduler):
        request = submit_and_process(scheduler)

        with pytest.raises(StateConflictError):
            scheduler.redisburse(request.id)

    def test_redisburse_eligibility_failure_rejected(self, scheduler):
        request = submit_and_process(scheduler, contract="CNT-MISSING")

        with pytest.raises(StateConflictError):
            scheduler.redisburse(request.id)


# ---------------------------------------------------------------------------
# Manual review
# ---------------------------------------------------------------------------


class TestReview:

    def test_approval_disburses(self, scheduler, review_request, transfer):
        request = scheduler.record_review_decision(
            review_request.id, approve=True, reviewer_id="analyst-1", notes="docs checked",
        )

        assert request.status == PaymentStatus.COMPLETED
        assert transfer.transfers[0].amount == Decimal("146250.00")

    def test_rejection_fails_at_review_stage(self, scheduler, review_request, transfer):
        request = scheduler.record_review_decision(
            review_request.id, approve=False, reviewer_id="analyst-1", notes="invoice mismatch",
        )

        assert request.status == PaymentStatus.FAILED
        assert request.failure_stage == FailureStage.REVIEW
        assert request.failure_reason == "invoice mismatch"
        assert transfer.transfers == []

    def test_decision_on_auto_approved_request_rejected(self, scheduler):
        request = submit_and_process(scheduler)

        with pytest.raises(StateConflictError):
            scheduler.record_review_decision(request.id, approve=True, reviewer_id="analyst-1")

    def test_overdue_review_escalated_once(self, scheduler, review_request, deterministic_clock, auditor_service):
        assert scheduler.escalate_overdue_reviews() == []

        deterministic_clock.advance_hours(49)
        assert scheduler.escalate_overdue_reviews() == [review_request.id]
        assert scheduler.escalate_overdue_reviews() == []

        request = scheduler.get_request(review_request.id)
        assert request.status == PaymentStatus.PROCESSING
        assert request.escalated_at == deterministic_clock.now()
        assert auditor_service.get_trace("PaymentRequest", request.id).last_action == (
            "payment.review_escalated"
        )


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancel:

    def test_cancel_pending(self, scheduler):
        request = submit(scheduler)

        cancelled = scheduler.cancel(request.id, "duplicate submission", actor_id="biz-admin")

        assert cancelled.status == PaymentStatus.CANCELLED
        assert cancelled.failure_reason == "duplicate submission"
        assert cancelled.cancelled_at is not None

    def test_cancel_under_review(self, scheduler, review_request):
        assert scheduler.cancel(review_request.id, "withdrawn").status == PaymentStatus.CANCELLED

    def test_cancel_completed_rejected(self, scheduler):
        request = submit_and_process(scheduler)

        with pytest.raises(StateConflictError):
            scheduler.cancel(request.id, "too late")

    def test_escrow_release_not_cancellable(self, funded_account, escrow, scheduler):
        account = funded_account()
        milestone = escrow.get_milestones(account.id)[0]
        payment = escrow.request_release(account.id, milestone.id, quorum_approvals()).payment

        with pytest.raises(StateConflictError):
            scheduler.cancel(payment.id, "changed mind")


class TestResubmitRelease:

    def test_unverified_recipient_release_resubmitted(
        self, funded_account, escrow, scheduler, verification, transfer,
    ):
        account = funded_account(total="20000.00")
        verification.unverify_business(BUSINESS_ID)
        result = escrow.request_release(
            account.id, escrow.get_milestones(account.id)[0].id, quorum_approvals(),
        )

        assert result.payment.status == PaymentStatus.FAILED
        assert result.payment.failure_reason == "business is not verified"
        assert result.account.released_amount == Decimal("20000.00")
        assert transfer.transfers == []
        with pytest.raises(StateConflictError):
            scheduler.redisburse(result.payment.id)

        verification.verify_business(BUSINESS_ID)
        retried = scheduler.resubmit_release(result.payment.id, actor_id="treasury")

        assert retried.id == result.payment.id
        assert retried.status == PaymentStatus.COMPLETED
        assert retried.failure_stage is None
        assert retried.failure_reason is None
        [paid] = transfer.transfers
        assert paid.amount == Decimal("20000.00")
        assert paid.idempotency_key == result.payment.idempotency_key

    def test_still_blocked_release_fails_again(self, funded_account, escrow, scheduler, verification):
        account = funded_account(total="20000.00")
        verification.unverify_business(BUSINESS_ID)
        payment = escrow.request_release(
            account.id, escrow.get_milestones(account.id)[0].id, quorum_approvals(),
        ).payment

        retried = scheduler.resubmit_release(payment.id)

        assert retried.status == PaymentStatus.FAILED
        assert retried.failure_stage == FailureStage.ELIGIBILITY

    def test_rejected_release_returns_to_review(self, funded_account, escrow, scheduler, transfer):
        account = funded_account()
        payment = escrow.request_release(
            account.id, escrow.get_milestones(account.id)[0].id, quorum_approvals(),
        ).payment
        rejected = scheduler.record_review_decision(
            payment.id, approve=False, reviewer_id="analyst-1", notes="missing lien waiver",
        )
        assert rejected.failure_stage == FailureStage.REVIEW

        retried = scheduler.resubmit_release(payment.id, actor_id="pm")

        assert retried.status == PaymentStatus.PROCESSING
        assert retried.requires_review is True
        assert retried.review_deadline is not None
        approved = scheduler.record_review_decision(payment.id, approve=True, reviewer_id="analyst-2")
        assert approved.status == PaymentStatus.COMPLETED
        assert transfer.total_disbursed == Decimal("100000.00")

    def test_fraud_held_release_resubmitted(self, funded_account, orchestrator_with, transfer):
        model = FixedRiskModel("85", RiskBucket.FRAUD_REVIEW)
        orchestrator = orchestrator_with(risk_model=model)
        account = funded_account(total="20000.00")
        payment = orchestrator.escrow.request_release(
            account.id, orchestrator.escrow.get_milestones(account.id)[0].id, quorum_approvals(),
        ).payment
        assert payment.status == PaymentStatus.DISPUTED

        model.score, model.bucket = Decimal("12"), RiskBucket.AUTO_APPROVE
        retried = orchestrator.scheduler.resubmit_release(payment.id)

        assert retried.status == PaymentStatus.COMPLETED
        assert len(transfer.transfers) == 1

    def test_resubmit_recorded_in_audit_trail(
        self, funded_account, escrow, scheduler, verification, auditor_service,
    ):
        account = funded_account(total="20000.00")
        verification.unverify_business(BUSINESS_ID)
        payment = escrow.request_release(
            account.id, escrow.get_milestones(account.id)[0].id, quorum_approvals(),
        ).payment
        verification.verify_business(BUSINESS_ID)

        scheduler.resubmit_release(payment.id)

        actions = auditor_service.get_trace("PaymentRequest", payment.id).actions
        assert actions.count("payment.failed") == 1
        assert "payment.resubmitted" in actions
        assert actions[-1] == "payment.completed"

    def test_quickpay_request_cannot_be_resubmitted(self, scheduler, verification):
        verification.unverify_business(BUSINESS_ID)
        request = submit_and_process(scheduler)
        assert request.status == PaymentStatus.FAILED

        with pytest.raises(StateConflictError, match="resubmit"):
            scheduler.resubmit_release(request.id)

    def test_disbursement_failure_uses_redisburse(self, funded_account, escrow, scheduler, transfer):
        account = funded_account(total="20000.00")
        transfer.fail_next(PROVIDER_ERROR)
        payment = escrow.request_release(
            account.id, escrow.get_milestones(account.id)[0].id, quorum_approvals(),
        ).payment
        assert payment.failure_stage == FailureStage.DISBURSEMENT

        with pytest.raises(StateConflictError):
            scheduler.resubmit_release(payment.id)
        assert scheduler.redisburse(payment.id).status == PaymentStatus.COMPLETED


# ---------------------------------------------------------------------------
# Batch processing, queries and metrics
# ---------------------------------------------------------------------------


class TestProcessPending:

    def test_processes_queue_in_submission_order(self, scheduler, deterministic_clock):
        ids = []
        for n in range(3):
            ids.append(submit(scheduler, invoice=f"INV-Q{n}").id)
            deterministic_clock.advance(60)

        processed = scheduler.process_pending()

        assert [p.id for p in processed] == ids
        assert all(p.status == PaymentStatus.COMPLETED for p in processed)

    def test_limit(self, scheduler, deterministic_clock):
        for n in range(3):
            submit(scheduler, invoice=f"INV-L{n}")
            deterministic_clock.advance(60)

        assert len(scheduler.process_pending(limit=2)) == 2
        assert len(scheduler.list_requests(status=PaymentStatus.PENDING_VERIFICATION)) == 1

    def test_batch_logged(self, scheduler, captured_logs):
        submit(scheduler)
        scheduler.process_pending()

        batch = [r for r in captured_logs() if r["message"] == "payment_batch_processed"]
        assert batch[-1]["claimed"] == 1
        assert batch[-1]["processed"] == 1


class TestQueries:

    def test_list_requests_filters(self, scheduler):
        submit_and_process(scheduler, invoice="INV-A")
        submit(scheduler, invoice="INV-B")

        assert len(scheduler.list_requests()) == 2
        assert len(scheduler.list_requests(status=PaymentStatus.COMPLETED)) == 1
        assert scheduler.list_requests(business_id="biz-unknown") == []

    def test_get_request_unknown(self, scheduler):
        with pytest.raises(PaymentRequestNotFoundError):
            scheduler.get_request(uuid4())


class TestMetrics:

    def test_empty(self, scheduler):
        metrics = scheduler.get_metrics()

        assert metrics.total_requests == 0
        assert metrics.success_rate is None
        assert metrics.average_settlement_hours is None
        assert metrics.interest_saved == Decimal("0")

    def test_aggregates(self, scheduler, transfer, deterministic_clock):
        for n, fail in enumerate((False, True, False)):
            request = submit(scheduler, invoice=f"INV-M{n}")
            deterministic_clock.advance_hours(2)
            if fail:
                transfer.fail_next(PROVIDER_ERROR)
            scheduler.process(request.id)
        submit(scheduler, invoice="INV-M-OPEN")

        metrics = scheduler.get_metrics()

        assert metrics.total_requests == 4
        assert metrics.completed_count == 2
        assert metrics.failed_count == 1
        assert metrics.active_count == 1
        assert metrics.total_disbursed == Decimal("9750.00")
        assert metrics.average_settlement_hours == Decimal("2.00")
        assert metrics.success_rate == Decimal("66.67")
        # 9,750 x 5% x 89 days / 365
        assert metrics.interest_saved == Decimal("118.87")
