"""
CertificateService -- payment certificates for government-funded escrows.

Responsibility:
    Issues one immutable PaymentCertificate per government-funded escrow
    account, expires certificates past their validity and exposes the
    leverage estimate without issuing.

Architecture position:
    Services -- persistence and audit around the pure calculations in
    ``escrow_engines.leverage``.

Invariants enforced:
    - At most one certificate per account; issuance is idempotent.
    - ``proof_reference`` binds the certificate payload to the hash of
      its ``certificate.issued`` audit event and is set at insert.
    - After issuance only ``status`` and ``expired_at`` ever change
      (ORM immutability listeners).

Failure modes:
    - AccountNotFoundError: unknown account.
    - ValidationError: the account is not funded by a government party.
    - StateConflictError: the account has not been funded yet.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrow_engines.leverage import (
    CertificateTermsParams,
    LeverageEstimate,
    LeverageParams,
    certificate_terms,
    estimate_leverage,
    format_certificate_number,
)
from escrow_kernel.domain.certificate import CertificateStatus, PaymentCertificateDTO
from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.escrow import SYSTEM_ACTOR, AccountStatus, ContractorType
from escrow_kernel.domain.money import round_money
from escrow_kernel.domain.ports import MarketAppetiteSignal
from escrow_kernel.exceptions import (
    AccountNotFoundError,
    StateConflictError,
    ValidationError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.audit_event import AuditAction
from escrow_kernel.models.certificate import PaymentCertificateModel
from escrow_kernel.models.escrow import EscrowAccountModel
from escrow_kernel.services.auditor_service import AuditorService
from escrow_kernel.utils.hashing import hash_certificate_proof, hash_payload, json_safe

logger = get_logger("services.certificate")


class CertificateService:
    """
    Issues and expires payment certificates.

    The market signal port is optional; without it no market bonus is
    ever applied.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        clock: Clock | None = None,
        params: CertificateTermsParams | None = None,
        leverage_params: LeverageParams | None = None,
        market_signal: MarketAppetiteSignal | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._clock = clock or SystemClock()
        self._params = params or CertificateTermsParams()
        self._leverage_params = leverage_params or LeverageParams()
        self._market_signal = market_signal

    def _get_account(self, account_id: UUID) -> EscrowAccountModel:
        account = self._session.get(EscrowAccountModel, account_id)
        if account is None:
            raise AccountNotFoundError(str(account_id))
        return account

    def _find(self, account_id: UUID) -> PaymentCertificateModel | None:
        return self._session.execute(
            select(PaymentCertificateModel)
            .where(PaymentCertificateModel.account_id == account_id)
        ).scalar_one_or_none()

    def _leverage(self, account: EscrowAccountModel) -> LeverageEstimate:
        amount = round_money(account.committed_amount)
        confidence = None
        if self._market_signal is not None:
            confidence = self._market_signal.confidence(
                account.jurisdiction, amount, account.on_reserve,
            )
        recipient = account.recipient
        return estimate_leverage(
            amount,
            on_reserve=account.on_reserve,
            indigenous_owned=(
                recipient.indigenous_owned
                or recipient.contractor_type is ContractorType.INDIGENOUS
            ),
            market_confidence=confidence,
            params=self._leverage_params,
        )

    def issue(self, account_id: UUID, actor_id: str | None = None) -> PaymentCertificateDTO:
        """
        Issue the account's certificate, or return the existing one.

        Called by EscrowService on government funding; safe to call again.
        """
        existing = self._find(account_id)
        if existing is not None:
            return existing.to_dto()

        account = self._get_account(account_id)
        if not account.funding_party.is_government:
            raise ValidationError(
                "payment certificates require a government funding party",
                field="funding_party",
            )
        if account.account_status is AccountStatus.PENDING_FUNDING:
            raise StateConflictError(
                "EscrowAccount", str(account.id), account.status, "issue certificate",
            )

        with LogContext.bind(account_id=account.id, actor_id=actor_id or SYSTEM_ACTOR):
            now = self._clock.now()
            guarantee = round_money(account.committed_amount)
            terms = certificate_terms(guarantee, account.project_risk_score, self._params)
            leverage = self._leverage(account)

            certificate_id = uuid4()
            number = format_certificate_number(now.year, uuid4().hex[:8])
            expires_at = now + timedelta(days=self._params.validity_days)

            payload = {
                "certificate_number": number,
                "account_id": account.id,
                "guarantor": account.funding_party_name,
                "guarantee_amount": guarantee,
                "currency": account.currency,
                "issued_at": now,
                "expires_at": expires_at,
                "conditions": list(self._params.conditions),
                "risk_score": terms.risk_score,
                "risk_rating": terms.risk_rating.value,
                "loan_to_value": terms.loan_to_value,
                "suggested_rate": terms.suggested_rate,
                "lendable_amount": terms.lendable_amount,
                "leverage_multiplier": leverage.multiplier,
                "leverage_potential": leverage.potential,
            }
            payload_hash = hash_payload(json_safe(payload))

            event = self._auditor.record(
                entity_type="PaymentCertificate",
                entity_id=certificate_id,
                action=AuditAction.CERTIFICATE_ISSUED,
                actor_id=actor_id or SYSTEM_ACTOR,
                payload={**payload, "payload_hash": payload_hash},
            )

            certificate = PaymentCertificateModel(
                id=certificate_id,
                certificate_number=number,
                account_id=account.id,
                status=CertificateStatus.ACTIVE.value,
                guarantor=account.funding_party_name,
                guarantee_amount=guarantee,
                currency=account.currency,
                issued_at=now,
                expires_at=expires_at,
                conditions=list(self._params.conditions),
                risk_score=terms.risk_score,
                risk_rating=terms.risk_rating.value,
                loan_to_value=terms.loan_to_value,
                suggested_rate=terms.suggested_rate,
                lendable_amount=terms.lendable_amount,
                leverage_multiplier=leverage.multiplier,
                leverage_potential=leverage.potential,
                payload_hash=payload_hash,
                proof_reference=hash_certificate_proof(payload_hash, event.hash),
            )
            self._session.add(certificate)
            self._session.flush()

            logger.info(
                "certificate_issued",
                extra={
                    "certificate_number": number,
                    "guarantee_amount": str(guarantee),
                    "risk_rating": terms.risk_rating.value,
                    "leverage_potential": str(leverage.potential),
                },
            )
            return certificate.to_dto()

    def get_certificate(self, account_id: UUID) -> PaymentCertificateDTO | None:
        certificate = self._find(account_id)
        return certificate.to_dto() if certificate is not None else None

    def expire_certificates(self, as_of: datetime | None = None) -> list[UUID]:
        """Move active certificates whose expiry is before ``as_of`` to expired."""
        as_of = as_of or self._clock.now()
        due = list(self._session.execute(
            select(PaymentCertificateModel)
            .where(
                PaymentCertificateModel.status == CertificateStatus.ACTIVE.value,
                PaymentCertificateModel.expires_at < as_of,
            )
            .order_by(PaymentCertificateModel.expires_at)
            .with_for_update(skip_locked=True)
        ).scalars())

        for certificate in due:
            certificate.status = CertificateStatus.EXPIRED.value
            certificate.expired_at = as_of
            self._session.flush()
            self._auditor.record(
                entity_type="PaymentCertificate",
                entity_id=certificate.id,
                action=AuditAction.CERTIFICATE_EXPIRED,
                payload={
                    "certificate_number": certificate.certificate_number,
                    "account_id": certificate.account_id,
                    "expires_at": certificate.expires_at,
                },
            )
            logger.info(
                "certificate_expired",
                extra={"certificate_number": certificate.certificate_number},
            )
        return [c.id for c in due]

    def estimate_leverage(self, account_id: UUID) -> LeverageEstimate:
        """Leverage the account's guarantee would support, without issuing."""
        return self._leverage(self._get_account(account_id))
