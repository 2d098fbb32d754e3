"""
Tax Engine - Canadian sales tax on escrowed contract amounts.

Each jurisdiction uses exactly one regime:

    HST      single harmonized rate applied to the amount
    GST_PST  federal GST plus provincial PST, each on the amount; Quebec
             computes its PST on (amount + GST)

Exemption precedence, first match wins:

    1. approved exemption certificate on file
    2. delivery location on reserve
    3. Indigenous-owned business holding a registration number, where the
       jurisdiction allows point-of-sale exemption

Pure functions with no I/O - the jurisdiction table is a parameter.

Usage:
    from decimal import Decimal
    from escrow_engines.tax import TaxEngine

    engine = TaxEngine()
    result = engine.compute(amount=Decimal("1000.00"), jurisdiction="QC")
    print(result.gst, result.pst, result.total)  # 50.00 104.74 1154.74
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from escrow_engines.tracer import traced_engine
from escrow_kernel.domain.money import CENT, ZERO, round_money, to_decimal
from escrow_kernel.exceptions import (
    InvalidAmountError,
    UnknownJurisdictionError,
    ValidationError,
)
from escrow_kernel.logging_config import get_logger

logger = get_logger("engines.tax")


class TaxRegime(str, Enum):
    HST = "hst"
    GST_PST = "gst_pst"


class ExemptionReason(str, Enum):
    """Why a computation produced zero tax.  Recorded for audit."""

    CERTIFICATE = "exemption_certificate"
    ON_RESERVE = "on_reserve"
    POINT_OF_SALE_REGISTRATION = "point_of_sale_registration"


class TaxNumberKind(str, Enum):
    GST = "gst"
    HST = "hst"
    PST = "pst"
    EXEMPTION = "exemption"


@dataclass(frozen=True)
class JurisdictionRate:
    """
    Tax parameters for one province or territory.

    Rates are fractions.  ``pst_on_gst`` makes the PST base
    ``amount + GST`` (Quebec).  ``pos_exemption`` enables the
    registration-number exemption at point of sale.
    """

    code: str
    regime: TaxRegime
    hst_rate: Decimal = ZERO
    gst_rate: Decimal = ZERO
    pst_rate: Decimal = ZERO
    pst_on_gst: bool = False
    pos_exemption: bool = True

    def __post_init__(self) -> None:
        for name in ("hst_rate", "gst_rate", "pst_rate"):
            rate = getattr(self, name)
            if rate < ZERO or rate >= Decimal("1"):
                raise ValidationError(
                    f"{self.code} {name} must be in [0, 1), got {rate}",
                    field=name,
                )
        if self.regime is TaxRegime.HST and (self.gst_rate or self.pst_rate):
            raise ValidationError(
                f"{self.code} is an HST jurisdiction and cannot carry GST/PST rates",
                field="regime",
            )
        if self.regime is TaxRegime.GST_PST and self.hst_rate:
            raise ValidationError(
                f"{self.code} is a GST/PST jurisdiction and cannot carry an HST rate",
                field="regime",
            )

    @property
    def multiplier(self) -> Decimal:
        """Factor mapping a subtotal to its tax-inclusive total (unrounded)."""
        if self.regime is TaxRegime.HST:
            return Decimal("1") + self.hst_rate
        if self.pst_on_gst:
            return (Decimal("1") + self.gst_rate) * (Decimal("1") + self.pst_rate)
        return Decimal("1") + self.gst_rate + self.pst_rate


def _hst(code: str, rate: str) -> JurisdictionRate:
    return JurisdictionRate(code=code, regime=TaxRegime.HST, hst_rate=Decimal(rate))


def _gst_pst(code: str, gst: str, pst: str, pst_on_gst: bool = False) -> JurisdictionRate:
    return JurisdictionRate(
        code=code,
        regime=TaxRegime.GST_PST,
        gst_rate=Decimal(gst),
        pst_rate=Decimal(pst),
        pst_on_gst=pst_on_gst,
    )


DEFAULT_JURISDICTIONS: dict[str, JurisdictionRate] = {
    rate.code: rate
    for rate in (
        _hst("ON", "0.13"),
        _hst("NB", "0.15"),
        _hst("NS", "0.15"),
        _hst("NL", "0.15"),
        _hst("PE", "0.15"),
        _gst_pst("BC", "0.05", "0.07"),
        _gst_pst("SK", "0.05", "0.06"),
        _gst_pst("MB", "0.05", "0.07"),
        _gst_pst("QC", "0.05", "0.09975", pst_on_gst=True),
        _gst_pst("AB", "0.05", "0"),
        _gst_pst("NT", "0.05", "0"),
        _gst_pst("NU", "0.05", "0"),
        _gst_pst("YT", "0.05", "0"),
    )
}


@dataclass(frozen=True)
class ExemptionFacts:
    """Facts the exemption rules look at.  All default to "not exempt"."""

    certificate_number: str | None = None
    certificate_approved: bool = False
    on_reserve: bool = False
    indigenous_owned: bool = False
    registration_number: str | None = None


@dataclass(frozen=True)
class TaxBreakdown:
    """Result of a forward or reverse tax computation."""

    jurisdiction: str
    subtotal: Decimal
    gst: Decimal
    pst: Decimal
    hst: Decimal
    total: Decimal
    is_exempt: bool
    exemption_reason: ExemptionReason | None = None

    @property
    def total_tax(self) -> Decimal:
        return self.gst + self.pst + self.hst


_GST_NUMBER = re.compile(r"^\d{9}RT\d{4}$")


def validate_tax_number(kind: TaxNumberKind | str, number: str | None) -> bool:
    """
    Check the format of a tax registration or exemption number.

    GST/HST numbers are the 9-digit business number plus ``RT`` and a
    4-digit account (``123456789RT0001``).  PST numbers vary by province
    and are only length-checked (7-15); exemption certificates 5-20.
    """
    kind = TaxNumberKind(kind)
    if not number:
        return False
    value = number.strip()
    if kind in (TaxNumberKind.GST, TaxNumberKind.HST):
        return bool(_GST_NUMBER.match(value))
    if kind is TaxNumberKind.PST:
        return 7 <= len(value) <= 15
    return 5 <= len(value) <= 20


class TaxEngine:
    """
    Compute and reverse Canadian sales tax.

    Contract:
        ``extract_tax_from_total`` inverts ``compute`` exactly for any total
        ``compute`` can produce in the same jurisdiction.

    Guarantees:
        - Every component is rounded half-up to cents.
        - Exempt results carry zero components and the exemption reason.
    """

    def __init__(self, jurisdictions: Mapping[str, JurisdictionRate] | None = None):
        self._jurisdictions = dict(jurisdictions or DEFAULT_JURISDICTIONS)

    @property
    def jurisdictions(self) -> tuple[str, ...]:
        return tuple(sorted(self._jurisdictions))

    def rate_for(self, jurisdiction: str) -> JurisdictionRate:
        code = (jurisdiction or "").strip().upper()
        rate = self._jurisdictions.get(code)
        if rate is None:
            logger.warning("tax_jurisdiction_unknown", extra={"jurisdiction": jurisdiction})
            raise UnknownJurisdictionError(jurisdiction)
        return rate

    def exemption_reason(
        self,
        rate: JurisdictionRate,
        exemption: ExemptionFacts | None,
    ) -> ExemptionReason | None:
        if exemption is None:
            return None
        if exemption.certificate_approved and exemption.certificate_number:
            return ExemptionReason.CERTIFICATE
        if exemption.on_reserve:
            return ExemptionReason.ON_RESERVE
        if (
            rate.pos_exemption
            and exemption.indigenous_owned
            and exemption.registration_number
        ):
            return ExemptionReason.POINT_OF_SALE_REGISTRATION
        return None

    def _forward(self, subtotal: Decimal, rate: JurisdictionRate) -> tuple[Decimal, Decimal, Decimal]:
        if rate.regime is TaxRegime.HST:
            return ZERO, ZERO, round_money(subtotal * rate.hst_rate)
        gst = round_money(subtotal * rate.gst_rate)
        pst_base = subtotal + gst if rate.pst_on_gst else subtotal
        pst = round_money(pst_base * rate.pst_rate)
        return gst, pst, ZERO

    def _breakdown(
        self,
        subtotal: Decimal,
        rate: JurisdictionRate,
        reason: ExemptionReason | None,
    ) -> TaxBreakdown:
        if reason is not None:
            return TaxBreakdown(
                jurisdiction=rate.code,
                subtotal=subtotal,
                gst=ZERO,
                pst=ZERO,
                hst=ZERO,
                total=subtotal,
                is_exempt=True,
                exemption_reason=reason,
            )
        gst, pst, hst = self._forward(subtotal, rate)
        return TaxBreakdown(
            jurisdiction=rate.code,
            subtotal=subtotal,
            gst=gst,
            pst=pst,
            hst=hst,
            total=subtotal + gst + pst + hst,
            is_exempt=False,
        )

    @staticmethod
    def _require_non_negative(value: Decimal | int | str, field: str) -> Decimal:
        amount = to_decimal(value, field)
        if amount < ZERO:
            raise InvalidAmountError(field, amount, "must not be negative")
        return round_money(amount)

    @traced_engine("tax", "1.0", fingerprint_fields=("amount", "jurisdiction"))
    def compute(
        self,
        amount: Decimal,
        jurisdiction: str,
        exemption: ExemptionFacts | None = None,
    ) -> TaxBreakdown:
        """
        Forward computation: subtotal -> tax components and total.

        Raises:
            UnknownJurisdictionError: jurisdiction not in the table.
            InvalidAmountError: negative amount.
        """
        subtotal = self._require_non_negative(amount, "amount")
        rate = self.rate_for(jurisdiction)
        reason = self.exemption_reason(rate, exemption)
        result = self._breakdown(subtotal, rate, reason)

        logger.debug("tax_computed", extra={
            "jurisdiction": rate.code,
            "subtotal": str(result.subtotal),
            "total_tax": str(result.total_tax),
            "is_exempt": result.is_exempt,
            "exemption_reason": reason.value if reason else None,
        })
        return result

    @traced_engine("tax_reverse", "1.0", fingerprint_fields=("total", "jurisdiction"))
    def extract_tax_from_total(
        self,
        total: Decimal,
        jurisdiction: str,
        exemption: ExemptionFacts | None = None,
    ) -> TaxBreakdown:
        """
        Reverse computation: tax-inclusive total -> subtotal and components.

        Searches the rounded quotient ``total / multiplier`` and its
        one-cent neighbours for a subtotal whose forward computation
        reproduces ``total``.  When no neighbour matches (a total that
        ``compute`` can never produce), the quotient's forward breakdown
        is returned.
        """
        gross = self._require_non_negative(total, "total")
        rate = self.rate_for(jurisdiction)
        reason = self.exemption_reason(rate, exemption)
        if reason is not None:
            return self._breakdown(gross, rate, reason)

        candidate = round_money(gross / rate.multiplier)
        for subtotal in (candidate, candidate - CENT, candidate + CENT):
            if subtotal < ZERO:
                continue
            result = self._breakdown(subtotal, rate, None)
            if result.total == gross:
                return result

        logger.info("tax_reverse_inexact", extra={
            "jurisdiction": rate.code,
            "total": str(gross),
            "candidate": str(candidate),
        })
        return self._breakdown(candidate, rate, None)
