"""
Config -> Engine Bridges.

Functions that convert ``EscrowEngineConfig`` sections into engine
parameter objects.  These live in escrow_config (the producer) because
the engines and the kernel must NEVER import escrow_config.

Usage:
    from escrow_config import get_active_config
    from escrow_config.bridges import build_risk_model, build_tax_engine

    config = get_active_config()
    tax_engine = build_tax_engine(config)
    risk_model = build_risk_model(config)
"""

from __future__ import annotations

from escrow_config.schema import EscrowEngineConfig, TierTableDef
from escrow_engines.fees import validate_fee_schedule
from escrow_engines.leverage import (
    DEFAULT_CONDITIONS,
    CertificateTermsParams,
    LeverageParams,
)
from escrow_engines.risk import (
    DEFAULT_AGE_TABLE,
    DEFAULT_AMOUNT_TABLE,
    DEFAULT_NETWORK_TABLE,
    DEFAULT_VELOCITY_TABLE,
    HistoryParams,
    JurisdictionPairParams,
    RiskParams,
    RiskWeights,
    Tier,
    TierDirection,
    TierTable,
    VerificationParams,
    WeightedRiskModel,
)
from escrow_engines.tax import JurisdictionRate, TaxEngine, TaxRegime
from escrow_kernel.domain.escrow import FeeSchedule
from escrow_kernel.exceptions import ConfigurationError, ValidationError

RISK_TABLE_NAMES = ("business_age", "amount", "velocity", "network")


def build_fee_schedule(config: EscrowEngineConfig, name: str | None = None) -> FeeSchedule:
    """The named fee schedule (default: the configured default schedule)."""
    wanted = name or config.fees.default_schedule
    definition = config.fees.schedule(wanted)
    if definition is None:
        raise ConfigurationError(f"fee schedule {wanted!r} is not defined", section="fees")
    return validate_fee_schedule(FeeSchedule(
        transaction_rate=definition.transaction_rate,
        quick_pay_premium=definition.quick_pay_premium,
        volume_discount_threshold=definition.volume_discount_threshold,
        volume_discount_rate=definition.volume_discount_rate,
    ))


def build_tax_engine(config: EscrowEngineConfig) -> TaxEngine:
    if not config.tax.jurisdictions:
        return TaxEngine()
    rates = {
        j.code: JurisdictionRate(
            code=j.code,
            regime=TaxRegime(j.regime),
            hst_rate=j.hst_rate,
            gst_rate=j.gst_rate,
            pst_rate=j.pst_rate,
            pst_on_gst=j.pst_on_gst,
            pos_exemption=j.pos_exemption,
        )
        for j in config.tax.jurisdictions
    }
    return TaxEngine(rates)


def build_verification_params(config: EscrowEngineConfig) -> VerificationParams:
    return VerificationParams(
        pass_threshold=config.risk.verification_pass_threshold,
        performance_threshold=config.risk.performance_threshold,
    )


def _tier_table(definition: TierTableDef | None, default: TierTable) -> TierTable:
    if definition is None:
        return default
    return TierTable(
        direction=TierDirection(definition.direction),
        tiers=tuple(Tier(limit=limit, score=score) for limit, score in definition.tiers),
        fallback=definition.fallback,
    )


def build_risk_params(config: EscrowEngineConfig) -> RiskParams:
    risk = config.risk
    unknown = set(risk.tables) - set(RISK_TABLE_NAMES)
    if unknown:
        raise ConfigurationError(f"unknown risk tables: {sorted(unknown)}", section="risk")

    pairs = JurisdictionPairParams(
        same_score=risk.same_jurisdiction_score,
        default_score=risk.default_pair_score,
        pair_scores={
            frozenset({p.first, p.second}): p.score for p in risk.jurisdiction_pairs
        } or JurisdictionPairParams().pair_scores,
    )
    return RiskParams(
        weights=RiskWeights(**risk.weights),
        history=HistoryParams(
            window=risk.history_window,
            no_history_score=risk.no_history_score,
            failure_weight=risk.failure_weight,
            slow_completion_hours=risk.slow_completion_hours,
            slow_completion_penalty=risk.slow_completion_penalty,
        ),
        age_table=_tier_table(risk.tables.get("business_age"), DEFAULT_AGE_TABLE),
        amount_table=_tier_table(risk.tables.get("amount"), DEFAULT_AMOUNT_TABLE),
        velocity_table=_tier_table(risk.tables.get("velocity"), DEFAULT_VELOCITY_TABLE),
        network_table=_tier_table(risk.tables.get("network"), DEFAULT_NETWORK_TABLE),
        jurisdiction_pairs=pairs,
        auto_approve_below=risk.auto_approve_below,
        dispute_above=risk.dispute_above,
        velocity_window_days=risk.velocity_window_days,
    )


def build_risk_model(config: EscrowEngineConfig) -> WeightedRiskModel:
    return WeightedRiskModel(build_risk_params(config))


def build_certificate_params(config: EscrowEngineConfig) -> CertificateTermsParams:
    c = config.certificate
    return CertificateTermsParams(
        validity_days=c.validity_days,
        default_risk_score=c.default_risk_score,
        ltv_risk_cutoff=c.ltv_risk_cutoff,
        ltv_low_risk=c.ltv_low_risk,
        ltv_high_risk=c.ltv_high_risk,
        rating_a_below=c.rating_a_below,
        rating_bbb_below=c.rating_bbb_below,
        base_rate=c.base_rate,
        rate_per_risk=c.rate_per_risk,
        conditions=c.conditions or DEFAULT_CONDITIONS,
    )


def build_leverage_params(config: EscrowEngineConfig) -> LeverageParams:
    lv = config.leverage
    return LeverageParams(
        base_multiplier=lv.base_multiplier,
        on_reserve_bonus=lv.on_reserve_bonus,
        indigenous_owned_bonus=lv.indigenous_owned_bonus,
        market_signal_bonus=lv.market_signal_bonus,
        market_confidence_threshold=lv.market_confidence_threshold,
    )


def check_buildable(config: EscrowEngineConfig) -> list[str]:
    """Build every engine parameter object and collect the failures."""
    errors: list[str] = []
    builders = (
        ("fees", lambda: [build_fee_schedule(config, s.name) for s in config.fees.schedules]),
        ("fees", lambda: build_fee_schedule(config)),
        ("tax", lambda: build_tax_engine(config)),
        ("risk", lambda: build_risk_params(config)),
    )
    for section, build in builders:
        try:
            build()
        except (ValidationError, ConfigurationError, ValueError, TypeError) as exc:
            errors.append(f"{section}: {exc}")
    return errors

