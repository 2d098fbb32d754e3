"""
Configuration Validator (``escrow_config.validator``).

Responsibility
--------------
Validates an ``EscrowEngineConfig`` before it is handed to the engines,
ensuring every section is structurally sound.

Architecture position
---------------------
**Config layer** -- load-time validation.  Called by
``escrow_config.get_active_config`` after parsing.

Invariants enforced
-------------------
* Risk weights cover exactly the six factors and sum to 1.
* Risk tables use a known direction, keep scores in 0-100 and never let a
  riskier measurement lower the score.
* Fee rates, QuickPay limits and escrow bounds are in range.
* ``auto_approve_below <= dispute_above``.
* Every section can actually be turned into engine parameters.

Failure modes
-------------
* Validation errors (``ConfigValidationResult.errors``)  -> configuration
  MUST NOT be used.
* Validation warnings (``ConfigValidationResult.warnings``)  ->
  configuration may be used but should be reviewed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from escrow_config.bridges import RISK_TABLE_NAMES, check_buildable
from escrow_config.schema import EscrowEngineConfig

_ZERO = Decimal("0")
_ONE = Decimal("1")
_HUNDRED = Decimal("100")
_WEIGHT_KEYS = frozenset({
    "payment_history", "business_age", "amount", "velocity", "network", "jurisdiction",
})


@dataclass
class ConfigValidationResult:
    """
    Result of configuration validation.

    ``is_valid`` returns ``True`` only when ``errors`` is empty.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_configuration(config: EscrowEngineConfig) -> ConfigValidationResult:
    """
    Validate a configuration set.

    Returns a result carrying every problem found; never raises for
    configuration content.
    """
    result = ConfigValidationResult()

    _validate_escrow(config, result)
    _validate_fees(config, result)
    _validate_quickpay(config, result)
    _validate_risk(config, result)
    _validate_tax(config, result)
    _validate_certificate(config, result)

    for msg in check_buildable(config):
        if msg not in result.errors:
            result.add_error(msg)

    return result


def _validate_escrow(config: EscrowEngineConfig, result: ConfigValidationResult) -> None:
    e = config.escrow
    if e.min_total <= _ZERO:
        result.add_error(f"escrow: min_total must be positive, got {e.min_total}")
    if e.max_total <= e.min_total:
        result.add_error(
            f"escrow: max_total ({e.max_total}) must exceed min_total ({e.min_total})"
        )
    if e.funding_window_days <= 0:
        result.add_error("escrow: funding_window_days must be positive")
    if len(e.default_currency) != 3 or not e.default_currency.isalpha():
        result.add_error(f"escrow: invalid currency code {e.default_currency!r}")


def _validate_fees(config: EscrowEngineConfig, result: ConfigValidationResult) -> None:
    names = [s.name for s in config.fees.schedules]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        result.add_error(f"fees: duplicate schedule names {duplicates}")
    if config.fees.default_schedule not in names:
        result.add_error(
            f"fees: default schedule {config.fees.default_schedule!r} is not defined"
        )
    for s in config.fees.schedules:
        for name in ("transaction_rate", "quick_pay_premium", "volume_discount_rate"):
            value = getattr(s, name)
            if not _ZERO <= value < _ONE:
                result.add_error(f"fees.{s.name}: {name} must be in [0, 1), got {value}")
        if s.volume_discount_rate > _ZERO and s.volume_discount_threshold is None:
            result.add_warning(
                f"fees.{s.name}: volume_discount_rate set without a threshold; never applied"
            )


def _validate_quickpay(config: EscrowEngineConfig, result: ConfigValidationResult) -> None:
    q = config.quickpay
    if not _ZERO <= q.fee_rate < _ONE:
        result.add_error(f"quickpay: fee_rate must be in [0, 1), got {q.fee_rate}")
    if q.max_amount <= _ZERO:
        result.add_error(f"quickpay: max_amount must be positive, got {q.max_amount}")
    for name in ("target_processing_hours", "review_sla_hours", "batch_size"):
        if getattr(q, name) <= 0:
            result.add_error(f"quickpay: {name} must be positive")
    if q.quickpay_terms_days > q.standard_terms_days:
        result.add_warning("quickpay: quickpay_terms_days exceeds standard_terms_days")


def _validate_risk(config: EscrowEngineConfig, result: ConfigValidationResult) -> None:
    r = config.risk

    keys = set(r.weights)
    if keys != _WEIGHT_KEYS:
        missing = sorted(_WEIGHT_KEYS - keys)
        extra = sorted(keys - _WEIGHT_KEYS)
        result.add_error(f"risk: weights keys mismatch (missing={missing}, unknown={extra})")
    total = sum(r.weights.values(), _ZERO)
    if total != _ONE:
        result.add_error(f"risk: weights must sum to 1, got {total}")

    for name, table in r.tables.items():
        if name not in RISK_TABLE_NAMES:
            result.add_error(f"risk: unknown table {name!r}")
            continue
        if table.direction not in ("below", "above"):
            result.add_error(f"risk.{name}: direction must be 'below' or 'above'")
            continue
        scores = [score for _, score in table.tiers] + [table.fallback]
        if any(not _ZERO <= s <= _HUNDRED for s in scores):
            result.add_error(f"risk.{name}: scores must be within 0-100")
        if any(a > b for a, b in zip(scores, scores[1:])):
            result.add_error(f"risk.{name}: scores must not decrease toward the fallback")

    for name in ("verification_pass_threshold", "performance_threshold"):
        value = getattr(r, name)
        if not _ZERO <= value <= _HUNDRED:
            result.add_error(f"risk: {name} must be within 0-100, got {value}")
    if r.auto_approve_below > r.dispute_above:
        result.add_error(
            f"risk: auto_approve_below ({r.auto_approve_below}) exceeds "
            f"dispute_above ({r.dispute_above})"
        )
    if r.velocity_window_days <= 0:
        result.add_error("risk: velocity_window_days must be positive")


def _validate_tax(config: EscrowEngineConfig, result: ConfigValidationResult) -> None:
    codes = [j.code for j in config.tax.jurisdictions]
    duplicates = sorted({c for c in codes if codes.count(c) > 1})
    if duplicates:
        result.add_error(f"tax: duplicate jurisdictions {duplicates}")
    for j in config.tax.jurisdictions:
        if j.regime not in ("hst", "gst_pst"):
            result.add_error(f"tax.{j.code}: unknown regime {j.regime!r}")


def _validate_certificate(config: EscrowEngineConfig, result: ConfigValidationResult) -> None:
    c = config.certificate
    if not _ZERO <= c.default_risk_score <= _ONE:
        result.add_error(
            f"certificate: default_risk_score must be in [0, 1], got {c.default_risk_score}"
        )
    if c.validity_days <= 0:
        result.add_error("certificate: validity_days must be positive")
    for name in ("ltv_low_risk", "ltv_high_risk"):
        value = getattr(c, name)
        if not _ZERO < value <= _ONE:
            result.add_error(f"certificate: {name} must be in (0, 1], got {value}")
    if c.rating_a_below > c.rating_bbb_below:
        result.add_error("certificate: rating_a_below exceeds rating_bbb_below")

    lv = config.leverage
    if not _ZERO <= lv.market_confidence_threshold <= _ONE:
        result.add_error(
            "leverage: market_confidence_threshold must be in [0, 1], "
            f"got {lv.market_confidence_threshold}"
        )
    if lv.base_multiplier <= _ZERO:
        result.add_error("leverage: base_multiplier must be positive")
