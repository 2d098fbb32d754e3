"""
In-memory adapters for the external collaborator ports.

Responsibility:
    Dict-backed implementations of every protocol in
    ``escrow_kernel.domain.ports`` for tests, demos and local runs.

Architecture position:
    Services > Adapters.  Depends only on kernel domain types and
    exceptions; nothing in the kernel or the engines imports this module.

Invariants enforced:
    - ``InMemoryFundTransfer.disburse`` is idempotent per key: a repeated
      key returns the original receipt without recording a second transfer.
    - A scripted failure raises ``TransferFailure`` carrying the raw
      provider error exactly as configured.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from uuid import uuid4

from escrow_kernel.domain.escrow import ApproverType
from escrow_kernel.domain.payment import BusinessProfile, ContractFacts
from escrow_kernel.domain.ports import TransferReceipt
from escrow_kernel.exceptions import TransferFailure
from escrow_kernel.logging_config import get_logger

logger = get_logger("adapters.memory")


class InMemoryApproverDirectory:
    """Authorized approvers keyed by contract reference."""

    def __init__(self) -> None:
        self._authorized: dict[str, set[tuple[str, str]]] = {}

    def authorize(
        self,
        contract_reference: str,
        approver_type: ApproverType,
        approver_id: str,
    ) -> None:
        self._authorized.setdefault(contract_reference, set()).add(
            (ApproverType(approver_type).value, approver_id)
        )

    def authorize_all(
        self,
        contract_reference: str,
        approvers: Iterable[tuple[ApproverType, str]],
    ) -> None:
        for approver_type, approver_id in approvers:
            self.authorize(contract_reference, approver_type, approver_id)

    def revoke(
        self,
        contract_reference: str,
        approver_type: ApproverType,
        approver_id: str,
    ) -> None:
        self._authorized.get(contract_reference, set()).discard(
            (ApproverType(approver_type).value, approver_id)
        )

    def is_authorized(
        self,
        contract_reference: str,
        approver_type: ApproverType,
        approver_id: str,
    ) -> bool:
        return (ApproverType(approver_type).value, approver_id) in self._authorized.get(
            contract_reference, set()
        )


class InMemoryVerificationService:
    """Verified businesses and their performance scores."""

    def __init__(self, default_performance: Decimal = Decimal("90")) -> None:
        self._verified: set[str] = set()
        self._performance: dict[str, Decimal] = {}
        self._default_performance = default_performance

    def verify_business(self, business_id: str, performance: Decimal | None = None) -> None:
        self._verified.add(business_id)
        if performance is not None:
            self._performance[business_id] = performance

    def unverify_business(self, business_id: str) -> None:
        self._verified.discard(business_id)

    def set_performance(self, business_id: str, performance: Decimal) -> None:
        self._performance[business_id] = performance

    def is_business_verified(self, business_id: str) -> bool:
        return business_id in self._verified

    def performance_score(self, business_id: str) -> Decimal:
        return self._performance.get(business_id, self._default_performance)


class InMemoryContractRegistry:
    def __init__(self) -> None:
        self._contracts: dict[str, ContractFacts] = {}

    def register(self, facts: ContractFacts) -> None:
        self._contracts[facts.contract_reference] = facts

    def get_contract(self, contract_reference: str) -> ContractFacts | None:
        return self._contracts.get(contract_reference)


class InMemoryBusinessDirectory:
    def __init__(self) -> None:
        self._profiles: dict[str, BusinessProfile] = {}

    def register(self, profile: BusinessProfile) -> None:
        self._profiles[profile.business_id] = profile

    def get_profile(self, business_id: str) -> BusinessProfile | None:
        return self._profiles.get(business_id)


@dataclass(frozen=True)
class RecordedTransfer:
    idempotency_key: str
    amount: Decimal
    recipient_account: str
    transaction_id: str


class InMemoryFundTransfer:
    """
    Records transfers instead of moving money.

    ``fail_with(raw_error)`` makes every following call raise
    ``TransferFailure`` with that raw error until ``succeed()`` is called;
    ``fail_next(raw_error)`` fails exactly one call.
    """

    provider = "memory"

    def __init__(self) -> None:
        self._receipts: dict[str, TransferReceipt] = {}
        self.transfers: list[RecordedTransfer] = []
        self.calls: list[str] = []
        self._raw_error: str | None = None
        self._fail_once = False

    def fail_with(self, raw_error: str) -> None:
        self._raw_error = raw_error
        self._fail_once = False

    def fail_next(self, raw_error: str) -> None:
        self._raw_error = raw_error
        self._fail_once = True

    def succeed(self) -> None:
        self._raw_error = None
        self._fail_once = False

    @property
    def total_disbursed(self) -> Decimal:
        return sum((t.amount for t in self.transfers), Decimal("0"))

    def disburse(
        self,
        idempotency_key: str,
        amount: Decimal,
        recipient_account: str,
    ) -> TransferReceipt:
        self.calls.append(idempotency_key)
        existing = self._receipts.get(idempotency_key)
        if existing is not None:
            return existing

        if self._raw_error is not None:
            raw_error = self._raw_error
            if self._fail_once:
                self.succeed()
            logger.info("memory_transfer_failed", extra={"idempotency_key": idempotency_key})
            raise TransferFailure(self.provider, raw_error, idempotency_key=idempotency_key)

        receipt = TransferReceipt(transaction_id=f"txn-{uuid4().hex[:12]}", provider=self.provider)
        self._receipts[idempotency_key] = receipt
        self.transfers.append(RecordedTransfer(
            idempotency_key=idempotency_key,
            amount=amount,
            recipient_account=recipient_account,
            transaction_id=receipt.transaction_id,
        ))
        return receipt


class FixedMarketSignal:
    """Market appetite signal that always reports the same confidence."""

    def __init__(self, confidence: Decimal) -> None:
        self._confidence = confidence

    def confidence(
        self,
        jurisdiction: str | None,
        guarantee_amount: Decimal,
        on_reserve: bool,
    ) -> Decimal:
        return self._confidence
