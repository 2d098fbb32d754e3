"""
EscrowEngineConfig schema.

Defines the human-authored, reviewable configuration artifact.  YAML sets
are parsed into these types by the loader, checked by the validator and
turned into engine parameter objects by the bridges.

Every section has defaults equal to the production values, so an empty
section in YAML means "use the standard terms".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

# ---------------------------------------------------------------------------
# Escrow accounts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EscrowSection:
    funding_window_days: int = 30
    min_total: Decimal = Decimal("1000.00")
    max_total: Decimal = Decimal("1000000000.00")
    default_currency: str = "CAD"


# ---------------------------------------------------------------------------
# Fees
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FeeScheduleDef:
    """A named escrow fee schedule."""

    name: str
    transaction_rate: Decimal = Decimal("0")
    quick_pay_premium: Decimal = Decimal("0")
    volume_discount_threshold: Decimal | None = None
    volume_discount_rate: Decimal = Decimal("0")


@dataclass(frozen=True)
class FeesSection:
    default_schedule: str = "zero"
    schedules: tuple[FeeScheduleDef, ...] = (FeeScheduleDef(name="zero"),)

    def schedule(self, name: str) -> FeeScheduleDef | None:
        for schedule in self.schedules:
            if schedule.name == name:
                return schedule
        return None


# ---------------------------------------------------------------------------
# QuickPay
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QuickPaySection:
    fee_rate: Decimal = Decimal("0.025")
    max_amount: Decimal = Decimal("5000000.00")
    target_processing_hours: int = 24
    review_sla_hours: int = 48
    batch_size: int = 50
    interest_rate_annual: Decimal = Decimal("0.05")
    standard_terms_days: int = 90
    quickpay_terms_days: int = 1


# ---------------------------------------------------------------------------
# Risk and verification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TierTableDef:
    """``direction`` is "below" (value < limit) or "above" (value > limit)."""

    direction: str
    tiers: tuple[tuple[Decimal, Decimal], ...]
    fallback: Decimal


@dataclass(frozen=True)
class JurisdictionPairDef:
    first: str
    second: str
    score: Decimal


@dataclass(frozen=True)
class RiskSection:
    verification_pass_threshold: Decimal = Decimal("80")
    performance_threshold: Decimal = Decimal("80")
    weights: dict[str, Decimal] = field(default_factory=lambda: {
        "payment_history": Decimal("0.30"),
        "business_age": Decimal("0.10"),
        "amount": Decimal("0.20"),
        "velocity": Decimal("0.20"),
        "network": Decimal("0.15"),
        "jurisdiction": Decimal("0.05"),
    })
    history_window: int = 10
    no_history_score: Decimal = Decimal("50")
    failure_weight: Decimal = Decimal("100")
    slow_completion_hours: Decimal = Decimal("48")
    slow_completion_penalty: Decimal = Decimal("30")
    tables: dict[str, TierTableDef] = field(default_factory=dict)
    same_jurisdiction_score: Decimal = Decimal("0")
    default_pair_score: Decimal = Decimal("15")
    jurisdiction_pairs: tuple[JurisdictionPairDef, ...] = ()
    auto_approve_below: Decimal = Decimal("30")
    dispute_above: Decimal = Decimal("80")
    velocity_window_days: int = 7


# ---------------------------------------------------------------------------
# Tax
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JurisdictionDef:
    code: str
    regime: str  # "hst" or "gst_pst"
    hst_rate: Decimal = Decimal("0")
    gst_rate: Decimal = Decimal("0")
    pst_rate: Decimal = Decimal("0")
    pst_on_gst: bool = False
    pos_exemption: bool = True


@dataclass(frozen=True)
class TaxSection:
    # Empty means the built-in Canadian table
    jurisdictions: tuple[JurisdictionDef, ...] = ()


# ---------------------------------------------------------------------------
# Certificates and leverage
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CertificateSection:
    validity_days: int = 365
    default_risk_score: Decimal = Decimal("0.15")
    ltv_risk_cutoff: Decimal = Decimal("0.2")
    ltv_low_risk: Decimal = Decimal("0.8")
    ltv_high_risk: Decimal = Decimal("0.6")
    rating_a_below: Decimal = Decimal("0.2")
    rating_bbb_below: Decimal = Decimal("0.4")
    base_rate: Decimal = Decimal("4.5")
    rate_per_risk: Decimal = Decimal("10")
    conditions: tuple[str, ...] = ()


@dataclass(frozen=True)
class LeverageSection:
    base_multiplier: Decimal = Decimal("3.0")
    on_reserve_bonus: Decimal = Decimal("1.0")
    indigenous_owned_bonus: Decimal = Decimal("0.5")
    market_signal_bonus: Decimal = Decimal("1.0")
    market_confidence_threshold: Decimal = Decimal("0.8")


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EscrowEngineConfig:
    """The complete configuration set.  ``checksum`` identifies the source."""

    config_id: str
    version: int
    checksum: str
    escrow: EscrowSection = field(default_factory=EscrowSection)
    fees: FeesSection = field(default_factory=FeesSection)
    quickpay: QuickPaySection = field(default_factory=QuickPaySection)
    risk: RiskSection = field(default_factory=RiskSection)
    tax: TaxSection = field(default_factory=TaxSection)
    certificate: CertificateSection = field(default_factory=CertificateSection)
    leverage: LeverageSection = field(default_factory=LeverageSection)
