"""
Verification and risk scoring for expedited (QuickPay) payment requests.

Two pure stages:

    verify()   six pass/fail checks; score = passed x 100 / 6, passing at
               or above the configured threshold (default 80)
    assess()   weighted composite of six 0-100 sub-scores, higher = riskier,
               bucketed into auto-approve / manual review / fraud review

Sub-score tables are ``TierTable`` parameter objects so configuration can
replace them; the defaults reproduce the platform's production tables.

Usage:
    from escrow_engines.risk import RiskInputs, WeightedRiskModel, PaymentHistory

    model = WeightedRiskModel()
    assessment = model.assess(RiskInputs(
        history=PaymentHistory(total=0, failed=0),
        business_age_days=400,
        amount=Decimal("25000.00"),
        recent_request_count=1,
        trusted_connections=12,
        business_jurisdiction="ON",
        contract_jurisdiction="ON",
    ))
    assessment.bucket  # RiskBucket.AUTO_APPROVE
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Protocol

from escrow_engines.tracer import traced_engine
from escrow_kernel.domain.money import round_money
from escrow_kernel.exceptions import ValidationError
from escrow_kernel.logging_config import get_logger

logger = get_logger("engines.risk")

_HUNDRED = Decimal("100")


# =============================================================================
# Verification
# =============================================================================


class VerificationCheck(str, Enum):
    BUSINESS_VERIFIED = "business_verified"
    CONTRACT_ACTIVE = "contract_active"
    INVOICE_UNIQUE = "invoice_unique"
    AMOUNT_WITHIN_CONTRACT = "amount_within_contract"
    NO_OPEN_DISPUTES = "no_open_disputes"
    PERFORMANCE_THRESHOLD = "performance_threshold"


@dataclass(frozen=True)
class VerificationParams:
    pass_threshold: Decimal = Decimal("80")
    performance_threshold: Decimal = Decimal("80")


@dataclass(frozen=True)
class VerificationFacts:
    business_verified: bool
    contract_active: bool
    invoice_unique: bool
    amount: Decimal
    contract_value: Decimal
    has_open_disputes: bool
    performance_score: Decimal


@dataclass(frozen=True)
class VerificationResult:
    score: Decimal
    passed: bool
    failed_checks: tuple[VerificationCheck, ...]


@traced_engine("verification", "1.0")
def verify(
    facts: VerificationFacts,
    params: VerificationParams | None = None,
) -> VerificationResult:
    """Run the six verification checks.  Every check counts equally."""
    params = params or VerificationParams()
    outcomes = {
        VerificationCheck.BUSINESS_VERIFIED: facts.business_verified,
        VerificationCheck.CONTRACT_ACTIVE: facts.contract_active,
        VerificationCheck.INVOICE_UNIQUE: facts.invoice_unique,
        VerificationCheck.AMOUNT_WITHIN_CONTRACT: facts.amount <= facts.contract_value,
        VerificationCheck.NO_OPEN_DISPUTES: not facts.has_open_disputes,
        VerificationCheck.PERFORMANCE_THRESHOLD: (
            facts.performance_score > params.performance_threshold
        ),
    }
    failed = tuple(check for check, ok in outcomes.items() if not ok)
    passed_count = len(outcomes) - len(failed)
    score = round_money(Decimal(passed_count) * _HUNDRED / Decimal(len(outcomes)))
    return VerificationResult(
        score=score,
        passed=score >= params.pass_threshold,
        failed_checks=failed,
    )


# =============================================================================
# Risk sub-scores
# =============================================================================


class TierDirection(str, Enum):
    BELOW = "below"  # first tier with value < limit wins
    ABOVE = "above"  # first tier with value > limit wins


@dataclass(frozen=True)
class Tier:
    limit: Decimal
    score: Decimal


@dataclass(frozen=True)
class TierTable:
    """
    Bucketed lookup from a measured value to a 0-100 risk score.

    BELOW tables list ascending limits; ABOVE tables descending limits.
    ``fallback`` applies when no tier matches.
    """

    direction: TierDirection
    tiers: tuple[Tier, ...]
    fallback: Decimal

    def __post_init__(self) -> None:
        limits = [t.limit for t in self.tiers]
        expected = sorted(limits, reverse=self.direction is TierDirection.ABOVE)
        if limits != expected or len(set(limits)) != len(limits):
            raise ValidationError(
                f"tier limits must be strictly {'ascending' if self.direction is TierDirection.BELOW else 'descending'}",
                field="tiers",
            )
        for score in [t.score for t in self.tiers] + [self.fallback]:
            if not Decimal("0") <= score <= _HUNDRED:
                raise ValidationError(f"tier score {score} outside 0-100", field="tiers")

    def score(self, value: Decimal | int) -> Decimal:
        value = Decimal(value)
        for tier in self.tiers:
            if self.direction is TierDirection.BELOW and value < tier.limit:
                return tier.score
            if self.direction is TierDirection.ABOVE and value > tier.limit:
                return tier.score
        return self.fallback

    @property
    def is_monotonic(self) -> bool:
        """
        True when scores never drop from the first tier to the fallback.

        For BELOW tables a larger value then never lowers the score; for
        ABOVE tables a larger value never raises it.
        """
        scores = [t.score for t in self.tiers] + [self.fallback]
        return all(a <= b for a, b in zip(scores, scores[1:]))


def _table(direction: TierDirection, pairs: tuple[tuple[str, str], ...], fallback: str) -> TierTable:
    return TierTable(
        direction=direction,
        tiers=tuple(Tier(Decimal(limit), Decimal(score)) for limit, score in pairs),
        fallback=Decimal(fallback),
    )


DEFAULT_AGE_TABLE = _table(
    TierDirection.ABOVE, (("365", "10"), ("180", "30"), ("90", "50")), "90",
)
DEFAULT_AMOUNT_TABLE = _table(
    TierDirection.BELOW,
    (("10000", "10"), ("50000", "20"), ("100000", "40"), ("500000", "60")),
    "100",
)
DEFAULT_VELOCITY_TABLE = _table(
    TierDirection.BELOW, (("3", "10"), ("5", "30"), ("10", "60")), "90",
)
DEFAULT_NETWORK_TABLE = _table(
    TierDirection.ABOVE, (("10", "5"), ("5", "15"), ("2", "30")), "90",
)


@dataclass(frozen=True)
class HistoryParams:
    window: int = 10
    no_history_score: Decimal = Decimal("50")
    failure_weight: Decimal = Decimal("100")
    slow_completion_hours: Decimal = Decimal("48")
    slow_completion_penalty: Decimal = Decimal("30")


@dataclass(frozen=True)
class JurisdictionPairParams:
    same_score: Decimal = Decimal("0")
    default_score: Decimal = Decimal("15")
    pair_scores: Mapping[frozenset[str], Decimal] = field(
        default_factory=lambda: {
            frozenset({"QC", "AB"}): Decimal("30"),
            frozenset({"BC", "NL"}): Decimal("25"),
        }
    )

    def score(self, first: str | None, second: str | None) -> Decimal:
        a = (first or "").upper()
        b = (second or "").upper()
        if a == b:
            return self.same_score
        return self.pair_scores.get(frozenset({a, b}), self.default_score)


@dataclass(frozen=True)
class RiskWeights:
    payment_history: Decimal = Decimal("0.30")
    business_age: Decimal = Decimal("0.10")
    amount: Decimal = Decimal("0.20")
    velocity: Decimal = Decimal("0.20")
    network: Decimal = Decimal("0.15")
    jurisdiction: Decimal = Decimal("0.05")

    def __post_init__(self) -> None:
        total = sum(self.as_dict().values(), Decimal("0"))
        if total != Decimal("1"):
            raise ValidationError(f"risk weights must sum to 1.0, got {total}", field="weights")

    def as_dict(self) -> dict[str, Decimal]:
        return {
            "payment_history": self.payment_history,
            "business_age": self.business_age,
            "amount": self.amount,
            "velocity": self.velocity,
            "network": self.network,
            "jurisdiction": self.jurisdiction,
        }


class RiskBucket(str, Enum):
    AUTO_APPROVE = "auto_approve"
    MANUAL_REVIEW = "manual_review"
    FRAUD_REVIEW = "fraud_review"


@dataclass(frozen=True)
class RiskParams:
    weights: RiskWeights = field(default_factory=RiskWeights)
    history: HistoryParams = field(default_factory=HistoryParams)
    age_table: TierTable = DEFAULT_AGE_TABLE
    amount_table: TierTable = DEFAULT_AMOUNT_TABLE
    velocity_table: TierTable = DEFAULT_VELOCITY_TABLE
    network_table: TierTable = DEFAULT_NETWORK_TABLE
    jurisdiction_pairs: JurisdictionPairParams = field(default_factory=JurisdictionPairParams)
    auto_approve_below: Decimal = Decimal("30")
    dispute_above: Decimal = Decimal("80")
    velocity_window_days: int = 7


@dataclass(frozen=True)
class PaymentHistory:
    """Outcome counts over the business's most recent terminal requests."""

    total: int
    failed: int
    average_completion_hours: Decimal | None = None


@dataclass(frozen=True)
class RiskInputs:
    history: PaymentHistory
    business_age_days: int
    amount: Decimal
    recent_request_count: int
    trusted_connections: int
    business_jurisdiction: str | None
    contract_jurisdiction: str | None


@dataclass(frozen=True)
class RiskAssessment:
    score: Decimal
    factors: dict[str, Decimal]
    bucket: RiskBucket


def history_score(history: PaymentHistory, params: HistoryParams) -> Decimal:
    if history.total <= 0:
        return params.no_history_score
    failure_rate = Decimal(history.failed) / Decimal(history.total)
    score = failure_rate * params.failure_weight
    hours = history.average_completion_hours
    if hours is not None and hours >= params.slow_completion_hours:
        score += params.slow_completion_penalty
    return min(round_money(score), _HUNDRED)


def bucket_risk(
    score: Decimal,
    auto_approve_below: Decimal = Decimal("30"),
    dispute_above: Decimal = Decimal("80"),
) -> RiskBucket:
    """> dispute_above: fraud review; < auto_approve_below: auto; else manual."""
    if score > dispute_above:
        return RiskBucket.FRAUD_REVIEW
    if score < auto_approve_below:
        return RiskBucket.AUTO_APPROVE
    return RiskBucket.MANUAL_REVIEW


class RiskModel(Protocol):
    """Anything that turns request facts into a bucketed risk assessment."""

    def assess(self, inputs: RiskInputs) -> RiskAssessment:
        ...


class WeightedRiskModel:
    """
    Weighted composite of the six sub-scores.

    Guarantees:
        - Each factor is in [0, 100] and the composite is their weighted sum
          rounded to cents.
        - With a monotonic velocity table, more recent requests never lower
          the composite.
    """

    def __init__(self, params: RiskParams | None = None):
        self._params = params or RiskParams()

    @property
    def params(self) -> RiskParams:
        return self._params

    def factors(self, inputs: RiskInputs) -> dict[str, Decimal]:
        p = self._params
        return {
            "payment_history": history_score(inputs.history, p.history),
            "business_age": p.age_table.score(inputs.business_age_days),
            "amount": p.amount_table.score(inputs.amount),
            "velocity": p.velocity_table.score(inputs.recent_request_count),
            "network": p.network_table.score(inputs.trusted_connections),
            "jurisdiction": p.jurisdiction_pairs.score(
                inputs.business_jurisdiction, inputs.contract_jurisdiction,
            ),
        }

    @traced_engine("risk", "1.0")
    def assess(self, inputs: RiskInputs) -> RiskAssessment:
        factors = self.factors(inputs)
        weights = self._params.weights.as_dict()
        score = round_money(
            sum((factors[name] * weights[name] for name in weights), Decimal("0"))
        )
        bucket = bucket_risk(
            score,
            auto_approve_below=self._params.auto_approve_below,
            dispute_above=self._params.dispute_above,
        )
        logger.debug("risk_assessed", extra={
            "score": str(score),
            "bucket": bucket.value,
            "factors": {k: str(v) for k, v in factors.items()},
        })
        return RiskAssessment(score=score, factors=factors, bucket=bucket)
