"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit events for every state transition
    in the escrow engine.  Provides chain validation for tamper detection
    and trace queries for compliance review.

Architecture position:
    Kernel > Services -- imperative shell, called by the escrow, quorum,
    disbursement and certificate services.

Invariants enforced:
    - Sequence monotonicity via SequenceService (never max+1).
    - Chain integrity: ``hash = H(entity_type | entity_id | action |
      payload_hash | prev_hash)``.
    - Append-only: audit events are never modified or deleted (ORM
      listeners on the AuditEvent model).

Failure modes:
    - AuditChainBrokenError: a recomputed hash does not match the stored
      hash, or prev_hash does not match the predecessor's hash.

Audit relevance:
    This IS the audit sink.  The engine writes to it but never reads it
    back to make decisions.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.escrow import SYSTEM_ACTOR
from escrow_kernel.exceptions import AuditChainBrokenError
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.audit_event import AuditAction, AuditEvent
from escrow_kernel.services.sequence_service import SequenceService
from escrow_kernel.utils.hashing import hash_audit_event, hash_payload, json_safe

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: str
    occurred_at: datetime
    actor_id: str
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events for one entity, in chain order."""

    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[str, ...]:
        return tuple(e.action for e in self.entries)

    @property
    def last_action(self) -> str | None:
        return self.entries[-1].action if self.entries else None


class AuditorService:
    """
    Service for creating and validating tamper-evident audit events.

    Contract:
        Accepts domain-specific recording requests and creates append-only
        ``AuditEvent`` rows with hash chain linkage.

    Guarantees:
        - Every event's ``hash`` is a deterministic function of
          ``(entity_type, entity_id, action, payload_hash, prev_hash)``.
        - ``payload_hash`` is computed over the payload exactly as stored.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        last_event = self._session.execute(
            select(AuditEvent)
            .order_by(AuditEvent.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

        return last_event.hash if last_event else None

    def record(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: str = SYSTEM_ACTOR,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Append one audit event to the chain.

        Postconditions:
            - A new AuditEvent is flushed with the next ``seq`` and a
              valid link to its predecessor.
        """
        # The sequence row lock also serializes prev_hash lookups
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)

        prev_hash = self._get_last_hash()

        payload_data = json_safe(payload or {})
        computed_payload_hash = hash_payload(payload_data)

        event_hash = hash_audit_event(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action.value,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            payload=payload_data,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )

        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action.value,
                "seq": seq,
            },
        )

        return audit_event

    # Domain-specific recording methods

    def record_escrow_created(
        self,
        account_id: UUID,
        contract_reference: str,
        committed_amount: Decimal,
        milestone_count: int,
        actor_id: str = SYSTEM_ACTOR,
    ) -> AuditEvent:
        return self.record(
            entity_type="EscrowAccount",
            entity_id=account_id,
            action=AuditAction.ESCROW_CREATED,
            actor_id=actor_id,
            payload={
                "contract_reference": contract_reference,
                "committed_amount": committed_amount,
                "milestone_count": milestone_count,
            },
        )

    def record_escrow_funded(
        self,
        account_id: UUID,
        amount: Decimal,
        reference: str,
        actor_id: str = SYSTEM_ACTOR,
    ) -> AuditEvent:
        return self.record(
            entity_type="EscrowAccount",
            entity_id=account_id,
            action=AuditAction.ESCROW_FUNDED,
            actor_id=actor_id,
            payload={"amount": amount, "reference": reference},
        )

    def record_payment_released(
        self,
        account_id: UUID,
        milestone_id: UUID,
        payment_request_id: UUID,
        gross_amount: Decimal,
        fee_amount: Decimal,
        net_amount: Decimal,
        held_after: Decimal,
        actor_id: str = SYSTEM_ACTOR,
    ) -> AuditEvent:
        return self.record(
            entity_type="EscrowAccount",
            entity_id=account_id,
            action=AuditAction.PAYMENT_RELEASED,
            actor_id=actor_id,
            payload={
                "milestone_id": milestone_id,
                "payment_request_id": payment_request_id,
                "gross_amount": gross_amount,
                "fee_amount": fee_amount,
                "net_amount": net_amount,
                "held_after": held_after,
            },
        )

    def record_escrow_disputed(
        self,
        account_id: UUID,
        reason: str,
        frozen_amount: Decimal,
        evidence: tuple[str, ...],
        actor_id: str = SYSTEM_ACTOR,
    ) -> AuditEvent:
        return self.record(
            entity_type="EscrowAccount",
            entity_id=account_id,
            action=AuditAction.ESCROW_DISPUTED,
            actor_id=actor_id,
            payload={
                "reason": reason,
                "frozen_amount": frozen_amount,
                "evidence": list(evidence),
            },
        )

    def record_payment_transition(
        self,
        request_id: UUID,
        action: AuditAction,
        from_status: str | None,
        to_status: str,
        actor_id: str = SYSTEM_ACTOR,
        detail: dict[str, Any] | None = None,
    ) -> AuditEvent:
        payload: dict[str, Any] = {"from_status": from_status, "to_status": to_status}
        if detail:
            payload.update(detail)
        return self.record(
            entity_type="PaymentRequest",
            entity_id=request_id,
            action=action,
            actor_id=actor_id,
            payload=payload,
        )

    # Chain validation

    def validate_chain(self) -> bool:
        """
        Walk the whole chain in ``seq`` order and recompute every link.

        Each event must hash its stored payload to ``payload_hash``, its own
        fields to ``hash``, and point ``prev_hash`` at its predecessor (the
        first event points at nothing).

        Raises:
            AuditChainBrokenError: at the first event that fails a check.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        expected_prev: str | None = None
        for event in events:
            if event.prev_hash != expected_prev:
                self._broken(event, expected_prev or "None", event.prev_hash or "None")

            payload_hash = hash_payload(event.payload or {})
            if payload_hash != event.payload_hash:
                self._broken(event, payload_hash, event.payload_hash)

            expected_hash = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=str(event.entity_id),
                action=event.action,
                payload_hash=event.payload_hash,
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash:
                self._broken(event, expected_hash, event.hash)

            expected_prev = event.hash

        logger.info("audit_chain_valid", extra={"event_count": len(events)})
        return True

    @staticmethod
    def _broken(event: AuditEvent, expected: str, actual: str) -> None:
        logger.critical("audit_chain_broken", extra={"seq": event.seq})
        raise AuditChainBrokenError(str(event.id), expected, actual)

    # Trace and query methods

    def get_trace(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> AuditTrace:
        """Get the complete audit trace for an entity."""
        events = self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.seq)
        ).scalars().all()

        entries = tuple(
            AuditTraceEntry(
                seq=event.seq,
                action=event.action,
                occurred_at=event.occurred_at,
                actor_id=event.actor_id,
                payload=event.payload or {},
                hash=event.hash,
            )
            for event in events
        )

        return AuditTrace(
            entity_type=entity_type,
            entity_id=entity_id,
            entries=entries,
        )

    def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """Most recent audit events, newest first."""
        result = self._session.execute(
            select(AuditEvent)
            .order_by(AuditEvent.seq.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
