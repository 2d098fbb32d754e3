"""
Tests for the Canadian sales tax engine.

Covers:
- Forward computation for HST and GST/PST jurisdictions, including
  Quebec's PST-on-GST compounding
- Exemption precedence: approved certificate, on-reserve delivery,
  point-of-sale registration
- Reverse extraction from a tax-inclusive total
- Tax number format validation
"""

from decimal import Decimal

import pytest

from escrow_engines.tax import (
    ExemptionFacts,
    ExemptionReason,
    JurisdictionRate,
    TaxEngine,
    TaxNumberKind,
    TaxRegime,
    validate_tax_number,
)
from escrow_kernel.exceptions import InvalidAmountError, UnknownJurisdictionError, ValidationError


@pytest.fixture
def engine():
    return TaxEngine()


class TestForward:

    def test_quebec_compounds_pst_on_gst(self, engine):
        result = engine.compute(Decimal("1000.00"), "QC")

        assert result.gst == Decimal("50.00")
        assert result.pst == Decimal("104.74")
        assert result.hst == Decimal("0")
        assert result.total == Decimal("1154.74")
        assert result.total_tax == Decimal("154.74")

    def test_british_columbia_adds_separately(self, engine):
        result = engine.compute(Decimal("1000.00"), "BC")

        assert result.gst == Decimal("50.00")
        assert result.pst == Decimal("70.00")
        assert result.total == Decimal("1120.00")

    def test_ontario_hst(self, engine):
        result = engine.compute(Decimal("1000.00"), "ON")

        assert result.hst == Decimal("130.00")
        assert result.gst == Decimal("0")
        assert result.total == Decimal("1130.00")

    def test_alberta_gst_only(self, engine):
        result = engine.compute(Decimal("999.99"), "AB")

        assert result.gst == Decimal("50.00")
        assert result.pst == Decimal("0.00")

    def test_half_cent_rounds_up(self, engine):
        # 0.10 x 5% = 0.005
        assert engine.compute(Decimal("0.10"), "AB").gst == Decimal("0.01")

    def test_jurisdiction_is_case_insensitive(self, engine):
        assert engine.compute(Decimal("100"), " on ").jurisdiction == "ON"

    def test_unknown_jurisdiction(self, engine):
        with pytest.raises(UnknownJurisdictionError):
            engine.compute(Decimal("100"), "ZZ")

    def test_negative_amount(self, engine):
        with pytest.raises(InvalidAmountError):
            engine.compute(Decimal("-1"), "ON")

    def test_float_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.compute(100.0, "ON")


class TestExemptions:

    def test_approved_certificate(self, engine):
        result = engine.compute(
            Decimal("1000"), "ON",
            ExemptionFacts(certificate_number="EX-12345", certificate_approved=True, on_reserve=True),
        )

        assert result.is_exempt
        assert result.exemption_reason is ExemptionReason.CERTIFICATE
        assert result.total_tax == Decimal("0")
        assert result.total == Decimal("1000.00")

    def test_unapproved_certificate_is_ignored(self, engine):
        result = engine.compute(
            Decimal("1000"), "ON", ExemptionFacts(certificate_number="EX-12345"),
        )

        assert not result.is_exempt

    def test_on_reserve(self, engine):
        result = engine.compute(Decimal("1000"), "QC", ExemptionFacts(on_reserve=True))

        assert result.exemption_reason is ExemptionReason.ON_RESERVE

    def test_point_of_sale_needs_registration(self, engine):
        registered = engine.compute(
            Decimal("1000"), "MB",
            ExemptionFacts(indigenous_owned=True, registration_number="REG-881"),
        )
        unregistered = engine.compute(Decimal("1000"), "MB", ExemptionFacts(indigenous_owned=True))

        assert registered.exemption_reason is ExemptionReason.POINT_OF_SALE_REGISTRATION
        assert not unregistered.is_exempt

    def test_point_of_sale_respects_jurisdiction_flag(self):
        engine = TaxEngine({
            "SK": JurisdictionRate(
                code="SK",
                regime=TaxRegime.GST_PST,
                gst_rate=Decimal("0.05"),
                pst_rate=Decimal("0.06"),
                pos_exemption=False,
            ),
        })

        result = engine.compute(
            Decimal("1000"), "SK",
            ExemptionFacts(indigenous_owned=True, registration_number="REG-881"),
        )

        assert not result.is_exempt


class TestReverse:

    @pytest.mark.parametrize("jurisdiction", ["QC", "ON", "BC", "NS", "AB"])
    def test_recovers_subtotal(self, engine, jurisdiction):
        forward = engine.compute(Decimal("1234.56"), jurisdiction)

        reverse = engine.extract_tax_from_total(forward.total, jurisdiction)

        assert reverse == forward

    def test_quebec_total(self, engine):
        result = engine.extract_tax_from_total(Decimal("1154.74"), "QC")

        assert result.subtotal == Decimal("1000.00")
        assert result.gst == Decimal("50.00")
        assert result.pst == Decimal("104.74")

    def test_exempt_total_is_subtotal(self, engine):
        result = engine.extract_tax_from_total(
            Decimal("500.00"), "ON", ExemptionFacts(on_reserve=True),
        )

        assert result.subtotal == Decimal("500.00")
        assert result.is_exempt


class TestJurisdictionRate:

    def test_hst_with_gst_rejected(self):
        with pytest.raises(ValidationError):
            JurisdictionRate(code="XX", regime=TaxRegime.HST, hst_rate=Decimal("0.13"), gst_rate=Decimal("0.05"))

    def test_rate_of_one_rejected(self):
        with pytest.raises(ValidationError):
            JurisdictionRate(code="XX", regime=TaxRegime.GST_PST, gst_rate=Decimal("1"))


class TestTaxNumbers:

    @pytest.mark.parametrize("number,valid", [
        ("123456789RT0001", True),
        (" 123456789RT0001 ", True),
        ("123456789RT001", False),
        ("123456789RP0001", False),
        ("", False),
        (None, False),
    ])
    def test_gst_numbers(self, number, valid):
        assert validate_tax_number(TaxNumberKind.GST, number) is valid

    def test_hst_uses_gst_format(self):
        assert validate_tax_number("hst", "987654321RT0002")

    @pytest.mark.parametrize("number,valid", [("1234567", True), ("123456", False), ("1" * 16, False)])
    def test_pst_length(self, number, valid):
        assert validate_tax_number(TaxNumberKind.PST, number) is valid

    @pytest.mark.parametrize("number,valid", [("EX-12", True), ("EX1", False), ("E" * 21, False)])
    def test_exemption_length(self, number, valid):
        assert validate_tax_number(TaxNumberKind.EXEMPTION, number) is valid
