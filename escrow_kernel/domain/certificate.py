"""
Payment certificate domain types.

A certificate is derived once, at the first government deposit into an
escrow account, and is never changed afterwards except for expiry.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class CertificateStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class RiskRating(str, Enum):
    A = "A"
    BBB = "BBB"
    BB = "BB"


@dataclass(frozen=True)
class PaymentCertificateDTO:
    id: UUID
    certificate_number: str
    account_id: UUID
    status: CertificateStatus
    guarantor: str
    guarantee_amount: Decimal
    currency: str
    issued_at: datetime
    expires_at: datetime
    conditions: tuple[str, ...]
    risk_score: Decimal
    risk_rating: RiskRating
    loan_to_value: Decimal
    suggested_rate: Decimal
    lendable_amount: Decimal
    leverage_multiplier: Decimal
    leverage_potential: Decimal
    payload_hash: str
    proof_reference: str
    expired_at: datetime | None = None
