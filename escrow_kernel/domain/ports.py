"""
External collaborator interfaces (``escrow_kernel.domain.ports``).

Responsibility
--------------
Narrow ``Protocol`` definitions for everything the engine consumes but does
not implement: identity/verification, fund transfer, approver directory,
contract registry, business directory and the market-appetite signal.
Adapters per provider implement these; core logic never branches on a
provider's name.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  Implementations live outside the
kernel (``escrow_services.adapters``).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol, runtime_checkable

from escrow_kernel.domain.escrow import ApproverType
from escrow_kernel.domain.payment import BusinessProfile, ContractFacts


@dataclass(frozen=True)
class TransferReceipt:
    transaction_id: str
    provider: str


@runtime_checkable
class VerificationService(Protocol):
    """Identity/verification capability."""

    def is_business_verified(self, business_id: str) -> bool:
        ...

    def performance_score(self, business_id: str) -> Decimal:
        ...


@runtime_checkable
class FundTransferService(Protocol):
    """
    Disburse funds to a recipient account.

    Contract:
        ``disburse`` is idempotent per ``idempotency_key``: a repeated call
        with the same key returns the original receipt and never moves money
        twice.  Failures raise ``escrow_kernel.exceptions.TransferFailure``
        carrying the provider's raw error.
    """

    def disburse(
        self,
        idempotency_key: str,
        amount: Decimal,
        recipient_account: str,
    ) -> TransferReceipt:
        ...


@runtime_checkable
class ApproverDirectory(Protocol):
    """Authorized-approver list per contract."""

    def is_authorized(
        self,
        contract_reference: str,
        approver_type: ApproverType,
        approver_id: str,
    ) -> bool:
        ...


@runtime_checkable
class ContractRegistry(Protocol):
    def get_contract(self, contract_reference: str) -> ContractFacts | None:
        ...


@runtime_checkable
class BusinessDirectory(Protocol):
    def get_profile(self, business_id: str) -> BusinessProfile | None:
        ...


@runtime_checkable
class MarketAppetiteSignal(Protocol):
    """Lender appetite for a guarantee, as a confidence in [0, 1]."""

    def confidence(
        self,
        jurisdiction: str | None,
        guarantee_amount: Decimal,
        on_reserve: bool,
    ) -> Decimal:
        ...
