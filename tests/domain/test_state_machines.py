"""
Lifecycle tables for accounts, milestones and payment requests.

Verifies:
- Terminal states have no outgoing transitions
- Disputes are reachable only once money is held
- The payment status groups agree with the transition table
"""

import pytest

from escrow_kernel.domain.escrow import (
    ACCOUNT_TRANSITIONS,
    MILESTONE_TRANSITIONS,
    TERMINAL_ACCOUNT_STATUSES,
    AccountStatus,
    MilestoneStatus,
)
from escrow_kernel.domain.payment import (
    ACTIVE_PAYMENT_STATUSES,
    CANCELLABLE_PAYMENT_STATUSES,
    INVOICE_LOCKING_STATUSES,
    PAYMENT_TRANSITIONS,
    PaymentStatus,
)


class TestAccountLifecycle:

    def test_every_status_has_an_entry(self):
        assert set(ACCOUNT_TRANSITIONS) == set(AccountStatus)

    def test_terminal_statuses(self):
        assert TERMINAL_ACCOUNT_STATUSES == {
            AccountStatus.COMPLETED,
            AccountStatus.DISPUTED,
            AccountStatus.EXPIRED,
        }

    def test_pending_account_cannot_be_disputed(self):
        assert AccountStatus.DISPUTED not in ACCOUNT_TRANSITIONS[AccountStatus.PENDING_FUNDING]

    @pytest.mark.parametrize("status", [AccountStatus.ACTIVE, AccountStatus.RELEASING])
    def test_funded_account_can_be_disputed(self, status):
        assert AccountStatus.DISPUTED in ACCOUNT_TRANSITIONS[status]

    def test_completion_only_through_release(self):
        sources = {s for s, targets in ACCOUNT_TRANSITIONS.items() if AccountStatus.COMPLETED in targets}

        assert sources == {AccountStatus.RELEASING}


class TestMilestoneLifecycle:

    def test_released_is_final(self):
        assert MILESTONE_TRANSITIONS[MilestoneStatus.RELEASED] == frozenset()

    def test_release_requires_approval(self):
        assert MilestoneStatus.RELEASED not in MILESTONE_TRANSITIONS[MilestoneStatus.PENDING]


class TestPaymentLifecycle:

    def test_every_status_has_an_entry(self):
        assert set(PAYMENT_TRANSITIONS) == set(PaymentStatus)

    def test_cancellable_statuses_can_cancel(self):
        for status in CANCELLABLE_PAYMENT_STATUSES:
            assert PaymentStatus.CANCELLED in PAYMENT_TRANSITIONS[status]

    def test_nothing_else_can_cancel(self):
        others = set(PaymentStatus) - CANCELLABLE_PAYMENT_STATUSES
        assert all(PaymentStatus.CANCELLED not in PAYMENT_TRANSITIONS[s] for s in others)

    def test_active_statuses_are_not_terminal(self):
        for status in ACTIVE_PAYMENT_STATUSES:
            assert PAYMENT_TRANSITIONS[status]

    def test_failed_request_can_be_redisbursed_or_resubmitted(self):
        assert PAYMENT_TRANSITIONS[PaymentStatus.FAILED] == {
            PaymentStatus.DISBURSING,
            PaymentStatus.PENDING_VERIFICATION,
        }

    def test_disputed_request_can_only_be_resubmitted(self):
        assert PAYMENT_TRANSITIONS[PaymentStatus.DISPUTED] == {PaymentStatus.PENDING_VERIFICATION}

    def test_invoice_locks_from_approval_on(self):
        assert INVOICE_LOCKING_STATUSES == {
            PaymentStatus.APPROVED,
            PaymentStatus.DISBURSING,
            PaymentStatus.COMPLETED,
        }
