"""
Monetary rounding and validation helpers.

Every currency amount the engine produces goes through ``round_money``
(2 decimal places, ROUND_HALF_UP).  Inputs are validated with
``require_money`` before any ledger mutation.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from escrow_kernel.exceptions import InvalidAmountError, ValidationError

MONEY_DECIMAL_PLACES = 2
CENT = Decimal("0.01")
ZERO = Decimal("0")
DEFAULT_ROUNDING = ROUND_HALF_UP

ISO_4217_CURRENCIES: frozenset[str] = frozenset({
    "AUD", "BRL", "CAD", "CHF", "CNY", "DKK", "EUR", "GBP", "HKD", "INR",
    "JPY", "KRW", "MXN", "NOK", "NZD", "SEK", "SGD", "USD", "ZAR",
})


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to ``decimal_places`` (half-up by default).

    This is the only sanctioned rounding function for financial values.
    """
    quantum = Decimal(1).scaleb(-decimal_places)
    return value.quantize(quantum, rounding=rounding)


def to_decimal(value: Decimal | int | str, field: str) -> Decimal:
    """Coerce ``value`` to Decimal, rejecting floats and garbage."""
    if isinstance(value, float):
        raise ValidationError(f"{field} must not be a float", field=field)
    try:
        result = value if isinstance(value, Decimal) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"{field} is not a decimal: {value!r}", field=field) from exc
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite", field=field)
    return result


def require_money(
    value: Decimal | int | str,
    field: str,
    *,
    minimum: Decimal | None = None,
    maximum: Decimal | None = None,
) -> Decimal:
    """
    Validate a positive currency amount with at most two decimal places.

    Returns the amount quantized to cents.

    Raises:
        InvalidAmountError: zero, negative, sub-cent or out of bounds.
    """
    amount = to_decimal(value, field)
    if amount <= ZERO:
        raise InvalidAmountError(field, amount, "must be positive")
    if amount != round_money(amount):
        raise InvalidAmountError(field, amount, "more than 2 decimal places")
    if minimum is not None and amount < minimum:
        raise InvalidAmountError(field, amount, f"below minimum {minimum}")
    if maximum is not None and amount > maximum:
        raise InvalidAmountError(field, amount, f"above maximum {maximum}")
    return round_money(amount)


def validate_currency(code: str) -> str:
    """Return the upper-cased ISO 4217 code or raise ValidationError."""
    normalized = (code or "").strip().upper()
    if normalized not in ISO_4217_CURRENCIES:
        raise ValidationError(f"Invalid currency code: {code!r}", field="currency")
    return normalized
