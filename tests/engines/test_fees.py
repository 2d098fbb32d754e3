"""Tests for escrow release fees and QuickPay processing fees."""

from decimal import Decimal

import pytest

from escrow_engines.fees import (
    bonding_alternatives,
    compute_processing_fee,
    compute_release_fees,
    effective_transaction_rate,
    validate_fee_schedule,
)
from escrow_kernel.domain.escrow import FeeSchedule
from escrow_kernel.exceptions import ValidationError

STANDARD = FeeSchedule(
    transaction_rate=Decimal("0.01"),
    quick_pay_premium=Decimal("0.005"),
    volume_discount_threshold=Decimal("10000000"),
    volume_discount_rate=Decimal("0.25"),
)


class TestReleaseFees:

    def test_standard_schedule(self):
        fees = compute_release_fees(Decimal("50000.00"), STANDARD, Decimal("100000.00"))

        assert fees.transaction_fee == Decimal("500.00")
        assert fees.quick_pay_fee == Decimal("250.00")
        assert fees.fee == Decimal("750.00")
        assert fees.net == Decimal("49250.00")

    def test_zero_schedule(self):
        fees = compute_release_fees(Decimal("1234.56"), FeeSchedule.zero(), Decimal("5000"))

        assert fees.fee == Decimal("0.00")
        assert fees.net == Decimal("1234.56")

    def test_volume_discount_at_threshold(self):
        assert effective_transaction_rate(STANDARD, Decimal("9999999.99")) == Decimal("0.01")
        assert effective_transaction_rate(STANDARD, Decimal("10000000")) == Decimal("0.0075")

    def test_discounted_release(self):
        fees = compute_release_fees(Decimal("1000000.00"), STANDARD, Decimal("12000000"))

        assert fees.transaction_fee == Decimal("7500.00")
        assert fees.quick_pay_fee == Decimal("5000.00")

    def test_components_round_separately(self):
        # 333.33 x 1% = 3.3333, x 0.5% = 1.66665
        fees = compute_release_fees(Decimal("333.33"), STANDARD, Decimal("1000"))

        assert fees.transaction_fee == Decimal("3.33")
        assert fees.quick_pay_fee == Decimal("1.67")


class TestScheduleValidation:

    def test_standard_is_valid(self):
        assert validate_fee_schedule(STANDARD) is STANDARD

    @pytest.mark.parametrize("kwargs", [
        {"transaction_rate": Decimal("-0.01")},
        {"quick_pay_premium": Decimal("1")},
        {"volume_discount_rate": Decimal("1.5")},
        {"transaction_rate": Decimal("0.6"), "quick_pay_premium": Decimal("0.5")},
        {"volume_discount_threshold": Decimal("0")},
    ])
    def test_invalid_schedules(self, kwargs):
        with pytest.raises(ValidationError):
            validate_fee_schedule(FeeSchedule(**kwargs))


class TestProcessingFee:

    def test_quickpay_fee(self):
        fee = compute_processing_fee(Decimal("150000.00"), Decimal("0.025"))

        assert fee.fee == Decimal("3750.00")
        assert fee.net == Decimal("146250.00")

    def test_rate_out_of_range(self):
        with pytest.raises(ValidationError):
            compute_processing_fee(Decimal("100"), Decimal("1"))


class TestBondingAlternatives:

    def test_escrow_costs_less_than_bond(self):
        option = bonding_alternatives(Decimal("1000000.00"), STANDARD)

        assert option.bond_amount == Decimal("100000.00")
        assert option.bond_cost == Decimal("3000.00")
        assert option.escrow_amount == Decimal("50000.00")
        # 1% transaction + 0.5% quick-pay premium on the escrowed amount
        assert option.escrow_cost == Decimal("750.00")
        assert option.savings == Decimal("2250.00")

    def test_large_escrow_gets_volume_discount(self):
        option = bonding_alternatives(Decimal("200000000.00"), STANDARD)

        assert option.escrow_amount == Decimal("10000000.00")
        assert option.escrow_cost == Decimal("125000.00")
        assert option.bond_cost == Decimal("600000.00")

    def test_zero_schedule_escrow_is_free(self):
        option = bonding_alternatives(Decimal("80000"), FeeSchedule.zero())

        assert option.escrow_cost == Decimal("0.00")
        assert option.savings == option.bond_cost == Decimal("240.00")

    @pytest.mark.parametrize("value", [Decimal("0"), Decimal("-5000")])
    def test_contract_value_must_be_positive(self, value):
        with pytest.raises(ValidationError, match="contract_value"):
            bonding_alternatives(value, STANDARD)

    def test_ratio_out_of_range(self):
        with pytest.raises(ValidationError, match="escrow_ratio"):
            bonding_alternatives(Decimal("1000"), STANDARD, escrow_ratio=Decimal("1.5"))
