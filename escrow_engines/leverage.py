"""
escrow_engines.leverage -- Payment certificate banking terms and leverage.

Responsibility:
    Derive the lender-facing terms of a government-backed payment
    certificate (rating, loan-to-value, suggested rate, lendable amount)
    and estimate how much private capital the guarantee can unlock.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Risk score is a fraction in [0, 1].
    - Leverage multiplier = base + on-reserve bonus + Indigenous-owned
      contractor bonus + market-signal bonus (each applied at most once).
    - Market bonus applies only when a confidence is supplied and it
      exceeds the threshold.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from escrow_engines.tracer import traced_engine
from escrow_kernel.domain.certificate import RiskRating
from escrow_kernel.domain.money import round_money
from escrow_kernel.exceptions import ValidationError

DEFAULT_CONDITIONS: tuple[str, ...] = (
    "Valid government appropriation",
    "Project milestones tracked via platform",
    "Multi-party approval for releases",
)


@dataclass(frozen=True)
class CertificateTermsParams:
    validity_days: int = 365
    default_risk_score: Decimal = Decimal("0.15")
    ltv_risk_cutoff: Decimal = Decimal("0.2")
    ltv_low_risk: Decimal = Decimal("0.8")
    ltv_high_risk: Decimal = Decimal("0.6")
    rating_a_below: Decimal = Decimal("0.2")
    rating_bbb_below: Decimal = Decimal("0.4")
    base_rate: Decimal = Decimal("4.5")
    rate_per_risk: Decimal = Decimal("10")
    conditions: tuple[str, ...] = field(default=DEFAULT_CONDITIONS)


@dataclass(frozen=True)
class LeverageParams:
    base_multiplier: Decimal = Decimal("3.0")
    on_reserve_bonus: Decimal = Decimal("1.0")
    indigenous_owned_bonus: Decimal = Decimal("0.5")
    market_signal_bonus: Decimal = Decimal("1.0")
    market_confidence_threshold: Decimal = Decimal("0.8")


@dataclass(frozen=True)
class CertificateTerms:
    guarantee_amount: Decimal
    risk_score: Decimal
    risk_rating: RiskRating
    loan_to_value: Decimal
    suggested_rate: Decimal
    lendable_amount: Decimal


@dataclass(frozen=True)
class LeverageEstimate:
    government_amount: Decimal
    multiplier: Decimal
    potential: Decimal
    bonuses: dict[str, Decimal]


def _require_fraction(value: Decimal, field_name: str) -> Decimal:
    if not Decimal("0") <= value <= Decimal("1"):
        raise ValidationError(f"{field_name} must be in [0, 1], got {value}", field=field_name)
    return value


def risk_rating(risk_score: Decimal, params: CertificateTermsParams | None = None) -> RiskRating:
    params = params or CertificateTermsParams()
    if risk_score < params.rating_a_below:
        return RiskRating.A
    if risk_score < params.rating_bbb_below:
        return RiskRating.BBB
    return RiskRating.BB


@traced_engine("certificate_terms", "1.0", fingerprint_fields=("guarantee_amount", "risk_score"))
def certificate_terms(
    guarantee_amount: Decimal,
    risk_score: Decimal | None = None,
    params: CertificateTermsParams | None = None,
) -> CertificateTerms:
    """Banking parameters for a guarantee of ``guarantee_amount``."""
    params = params or CertificateTermsParams()
    risk = _require_fraction(
        params.default_risk_score if risk_score is None else risk_score,
        "risk_score",
    )
    ltv = params.ltv_low_risk if risk < params.ltv_risk_cutoff else params.ltv_high_risk
    return CertificateTerms(
        guarantee_amount=guarantee_amount,
        risk_score=risk,
        risk_rating=risk_rating(risk, params),
        loan_to_value=ltv,
        suggested_rate=params.base_rate + risk * params.rate_per_risk,
        lendable_amount=round_money(guarantee_amount * ltv),
    )


@traced_engine("leverage", "1.0", fingerprint_fields=("government_amount", "on_reserve"))
def estimate_leverage(
    government_amount: Decimal,
    on_reserve: bool = False,
    indigenous_owned: bool = False,
    market_confidence: Decimal | None = None,
    params: LeverageParams | None = None,
) -> LeverageEstimate:
    """Private capital a lender may extend against the guarantee."""
    params = params or LeverageParams()
    bonuses: dict[str, Decimal] = {}
    if on_reserve:
        bonuses["on_reserve"] = params.on_reserve_bonus
    if indigenous_owned:
        bonuses["indigenous_owned"] = params.indigenous_owned_bonus
    if market_confidence is not None:
        _require_fraction(market_confidence, "market_confidence")
        if market_confidence > params.market_confidence_threshold:
            bonuses["market_signal"] = params.market_signal_bonus

    multiplier = params.base_multiplier + sum(bonuses.values(), Decimal("0"))
    return LeverageEstimate(
        government_amount=government_amount,
        multiplier=multiplier,
        potential=round_money(government_amount * multiplier),
        bonuses=bonuses,
    )


def format_certificate_number(year: int, suffix: str) -> str:
    """``PC-<year>-<8 upper-case hex>``."""
    token = suffix.upper()
    if len(token) != 8 or any(c not in "0123456789ABCDEF" for c in token):
        raise ValidationError(f"certificate suffix must be 8 hex digits, got {suffix!r}")
    return f"PC-{year}-{token}"
