"""
Hash-chain tests for the escrow audit trail.

Verifies:
- A full lifecycle (create, fund, certificate, approvals, release,
  payment pipeline) leaves a valid chain
- Each event links to its predecessor and seq is gapless
- Raw SQL tampering with a payload, a hash or a link is detected
- Traces filter by entity and keep chain order
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select, text

from escrow_kernel.exceptions import AuditChainBrokenError
from escrow_kernel.models.audit_event import AuditAction, AuditEvent
from tests.conftest import quorum_approvals


@pytest.fixture
def lifecycle(funded_account, escrow):
    """Two-milestone account with the first milestone released."""
    account = funded_account(splits=("40", "60"))
    first = escrow.get_milestones(account.id)[0]
    escrow.request_release(account.id, first.id, quorum_approvals(), actor_id="pm")
    return account


def _events(session):
    return session.execute(select(AuditEvent).order_by(AuditEvent.seq)).scalars().all()


class TestChainIntegrity:

    def test_lifecycle_chain_is_valid(self, lifecycle, auditor_service):
        assert auditor_service.validate_chain() is True

    def test_links_and_sequence(self, lifecycle, session):
        events = _events(session)

        assert events[0].is_genesis
        assert not any(e.is_genesis for e in events[1:])
        assert [e.seq for e in events] == list(range(1, len(events) + 1))
        for previous, current in zip(events, events[1:]):
            assert current.prev_hash == previous.hash

    def test_every_entity_type_present(self, lifecycle, session):
        entity_types = {e.entity_type for e in _events(session)}

        assert entity_types == {"EscrowAccount", "Milestone", "PaymentRequest", "PaymentCertificate"}

    def test_empty_chain_is_valid(self, auditor_service):
        assert auditor_service.validate_chain() is True

    def test_record_returns_hashed_event(self, auditor_service, lifecycle):
        event = auditor_service.record(
            entity_type="EscrowAccount",
            entity_id=lifecycle.id,
            action=AuditAction.ESCROW_DISPUTED,
            actor_id="ops",
            payload={"frozen_amount": Decimal("60000.00")},
        )

        assert len(event.hash) == 64
        assert event.payload == {"frozen_amount": "60000.00"}
        assert auditor_service.get_recent_events(limit=1)[0].id == event.id


class TestTamperDetection:

    def test_payload_edit_detected(self, lifecycle, session, auditor_service):
        session.execute(
            text("UPDATE audit_events SET payload = :payload WHERE seq = 2"),
            {"payload": '{"amount": "1.00"}'},
        )
        session.expire_all()

        with pytest.raises(AuditChainBrokenError):
            auditor_service.validate_chain()

    def test_hash_edit_detected(self, lifecycle, session, auditor_service):
        session.execute(text("UPDATE audit_events SET hash = :h WHERE seq = 1"), {"h": "0" * 64})
        session.expire_all()

        with pytest.raises(AuditChainBrokenError):
            auditor_service.validate_chain()

    def test_broken_link_detected(self, lifecycle, session, auditor_service):
        session.execute(text("UPDATE audit_events SET prev_hash = :h WHERE seq = 3"), {"h": "f" * 64})
        session.expire_all()

        with pytest.raises(AuditChainBrokenError):
            auditor_service.validate_chain()


class TestTrace:

    def test_trace_in_chain_order(self, lifecycle, auditor_service):
        trace = auditor_service.get_trace("EscrowAccount", lifecycle.id)

        seqs = [e.seq for e in trace.entries]
        assert seqs == sorted(seqs)
        assert trace.actions[:2] == ("escrow.created", "escrow.funded")
        assert trace.last_action == "payment.released"

    def test_release_payload(self, lifecycle, auditor_service):
        trace = auditor_service.get_trace("EscrowAccount", lifecycle.id)

        released = trace.entries[-1].payload
        assert released["gross_amount"] == "40000.00"
        assert released["held_after"] == "60000.00"

    def test_unknown_entity_has_empty_trace(self, auditor_service, lifecycle):
        trace = auditor_service.get_trace("EscrowAccount", uuid4())

        assert trace.is_empty
