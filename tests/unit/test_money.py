"""Tests for monetary rounding, validation and hashing helpers."""

from decimal import Decimal
from uuid import UUID

import pytest

from escrow_kernel.domain.money import (
    require_money,
    round_money,
    to_decimal,
    validate_currency,
)
from escrow_kernel.exceptions import InvalidAmountError, ValidationError
from escrow_kernel.utils.hashing import (
    hash_audit_event,
    hash_payload,
    json_safe,
)


class TestRoundMoney:

    @pytest.mark.parametrize("value,expected", [
        ("0.005", "0.01"),
        ("0.004", "0.00"),
        ("104.7375", "104.74"),
        ("-0.005", "-0.01"),
    ])
    def test_half_up(self, value, expected):
        assert round_money(Decimal(value)) == Decimal(expected)


class TestRequireMoney:

    def test_quantizes(self):
        assert str(require_money("100", "amount")) == "100.00"

    @pytest.mark.parametrize("value", ["0", "-5", "1.001"])
    def test_rejects(self, value):
        with pytest.raises(InvalidAmountError):
            require_money(value, "amount")

    def test_bounds(self):
        with pytest.raises(InvalidAmountError, match="below minimum"):
            require_money("999.99", "total", minimum=Decimal("1000"))

    def test_float_rejected(self):
        with pytest.raises(ValidationError, match="float"):
            to_decimal(1.5, "amount")

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity"])
    def test_garbage_rejected(self, value):
        with pytest.raises(ValidationError):
            to_decimal(value, "amount")


class TestCurrency:

    def test_normalizes(self):
        assert validate_currency(" cad ") == "CAD"

    @pytest.mark.parametrize("code", ["XX", "ZZZ", "", None])
    def test_rejects(self, code):
        with pytest.raises(ValidationError):
            validate_currency(code)


class TestHashing:

    def test_scale_does_not_change_hash(self):
        assert hash_payload({"amount": Decimal("100")}) == hash_payload({"amount": Decimal("100.00")})

    def test_key_order_does_not_change_hash(self):
        assert hash_payload({"a": 1, "b": 2}) == hash_payload({"b": 2, "a": 1})

    def test_json_safe_keeps_scale(self):
        entity = UUID(int=7)

        assert json_safe({"amount": Decimal("60000.00"), "id": entity}) == {
            "amount": "60000.00",
            "id": str(entity),
        }

    def test_chain_hash_depends_on_predecessor(self):
        genesis = hash_audit_event("EscrowAccount", "a", "escrow.created", "p", None)
        linked = hash_audit_event("EscrowAccount", "a", "escrow.created", "p", genesis)

        assert genesis != linked
        assert len(genesis) == 64
