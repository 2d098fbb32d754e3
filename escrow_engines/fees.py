"""
Fee calculations for escrow releases and expedited disbursements.

Two independent fee paths, plus a bond-versus-escrow cost comparison:

    Escrow fee      accrued into the account's fee balance at release:
                    round(gross x effective transaction rate)
                    + round(gross x quick-pay premium)
    Processing fee  charged by the disbursement scheduler on a QuickPay
                    request: round(amount x fee rate)

The effective transaction rate is the schedule's rate reduced by the
volume discount (a fraction of the rate) once the account's committed
total reaches the discount threshold.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from escrow_kernel.domain.escrow import FeeSchedule
from escrow_kernel.domain.money import ZERO, round_money
from escrow_kernel.exceptions import ValidationError

_ONE = Decimal("1")


@dataclass(frozen=True)
class ReleaseFees:
    """Escrow fee split of one milestone release."""

    gross: Decimal
    effective_rate: Decimal
    transaction_fee: Decimal
    quick_pay_fee: Decimal

    @property
    def fee(self) -> Decimal:
        return self.transaction_fee + self.quick_pay_fee

    @property
    def net(self) -> Decimal:
        return self.gross - self.fee


@dataclass(frozen=True)
class ProcessingFee:
    amount: Decimal
    fee_rate: Decimal
    fee: Decimal

    @property
    def net(self) -> Decimal:
        return self.amount - self.fee


def validate_fee_schedule(schedule: FeeSchedule) -> FeeSchedule:
    """Reject rates outside [0, 1) and a non-positive discount threshold."""
    for name in ("transaction_rate", "quick_pay_premium", "volume_discount_rate"):
        rate = getattr(schedule, name)
        if rate < ZERO or rate >= _ONE:
            raise ValidationError(f"{name} must be in [0, 1), got {rate}", field=name)
    if schedule.transaction_rate + schedule.quick_pay_premium >= _ONE:
        raise ValidationError(
            "combined escrow fee rate must be below 1",
            field="fee_schedule",
        )
    threshold = schedule.volume_discount_threshold
    if threshold is not None and threshold <= ZERO:
        raise ValidationError(
            f"volume_discount_threshold must be positive, got {threshold}",
            field="volume_discount_threshold",
        )
    return schedule


def effective_transaction_rate(schedule: FeeSchedule, committed_amount: Decimal) -> Decimal:
    threshold = schedule.volume_discount_threshold
    if threshold is not None and committed_amount >= threshold:
        return schedule.transaction_rate * (_ONE - schedule.volume_discount_rate)
    return schedule.transaction_rate


def compute_release_fees(
    gross: Decimal,
    schedule: FeeSchedule,
    committed_amount: Decimal,
) -> ReleaseFees:
    """Split a release into accrued escrow fee and the amount paid out."""
    rate = effective_transaction_rate(schedule, committed_amount)
    return ReleaseFees(
        gross=gross,
        effective_rate=rate,
        transaction_fee=round_money(gross * rate),
        quick_pay_fee=round_money(gross * schedule.quick_pay_premium),
    )


def compute_processing_fee(amount: Decimal, fee_rate: Decimal) -> ProcessingFee:
    if fee_rate < ZERO or fee_rate >= _ONE:
        raise ValidationError(f"fee_rate must be in [0, 1), got {fee_rate}", field="fee_rate")
    return ProcessingFee(
        amount=amount,
        fee_rate=fee_rate,
        fee=round_money(amount * fee_rate),
    )


@dataclass(frozen=True)
class BondingAlternatives:
    """
    Cost of securing a contract with a surety bond versus a performance escrow.

    The bond covers ``bond_ratio`` of the contract value and costs a premium
    on that amount. The escrow holds ``escrow_ratio`` of the contract value
    and costs the escrow fee a release of that amount would accrue.
    """

    contract_value: Decimal
    bond_amount: Decimal
    bond_cost: Decimal
    escrow_amount: Decimal
    escrow_cost: Decimal

    @property
    def savings(self) -> Decimal:
        return self.bond_cost - self.escrow_cost


def bonding_alternatives(
    contract_value: Decimal,
    schedule: FeeSchedule,
    bond_ratio: Decimal = Decimal("0.10"),
    bond_premium: Decimal = Decimal("0.03"),
    escrow_ratio: Decimal = Decimal("0.05"),
) -> BondingAlternatives:
    if contract_value <= ZERO:
        raise ValidationError(
            f"contract_value must be positive, got {contract_value}",
            field="contract_value",
        )
    for name, rate in (
        ("bond_ratio", bond_ratio),
        ("bond_premium", bond_premium),
        ("escrow_ratio", escrow_ratio),
    ):
        if rate < ZERO or rate > _ONE:
            raise ValidationError(f"{name} must be in [0, 1], got {rate}", field=name)

    bond_amount = round_money(contract_value * bond_ratio)
    escrow_amount = round_money(contract_value * escrow_ratio)
    return BondingAlternatives(
        contract_value=contract_value,
        bond_amount=bond_amount,
        bond_cost=round_money(bond_amount * bond_premium),
        escrow_amount=escrow_amount,
        escrow_cost=compute_release_fees(escrow_amount, schedule, escrow_amount).fee,
    )
