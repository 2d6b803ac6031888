"""
Money and commission calculation for one vendor's share of a cart.

Everything here is pure: callers pass the vendor's current commission rate and
the policies to apply, and get back an immutable OrderTotals snapshot.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable, Optional, Protocol, Union

from models import DeliveryType
from utils.exceptions import ValidationError

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
ZERO = Decimal("0")

Number = Union[Decimal, int, float, str]


def to_money(value: Number) -> Decimal:
    """Convert to Decimal rounded half-up to cents."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def line_total(unit_price: Number, quantity: int) -> Decimal:
    if quantity <= 0:
        raise ValidationError("Quantity must be greater than zero", quantity=quantity)
    price = to_money(unit_price)
    if price < ZERO:
        raise ValidationError("Unit price cannot be negative", unit_price=price)
    return to_money(price * quantity)


class PricedLine(Protocol):
    unit_price: Decimal
    quantity: int


class DeliveryFeePolicy(Protocol):
    def fee_for(self, delivery_type: DeliveryType, subtotal: Decimal) -> Decimal: ...


class TaxPolicy(Protocol):
    def tax_for(self, subtotal: Decimal) -> Decimal: ...


@dataclass(frozen=True)
class FlatDeliveryFee:
    """Same fee for every vendor group; pickup is always free."""
    amount: Decimal

    def fee_for(self, delivery_type: DeliveryType, subtotal: Decimal) -> Decimal:
        if DeliveryType(delivery_type) == DeliveryType.PICKUP:
            return ZERO
        return to_money(self.amount)


@dataclass(frozen=True)
class TieredDeliveryFee:
    standard: Decimal
    express: Decimal

    def fee_for(self, delivery_type: DeliveryType, subtotal: Decimal) -> Decimal:
        delivery_type = DeliveryType(delivery_type)
        if delivery_type == DeliveryType.PICKUP:
            return ZERO
        if delivery_type == DeliveryType.EXPRESS:
            return to_money(self.express)
        return to_money(self.standard)


@dataclass(frozen=True)
class NoTax:
    def tax_for(self, subtotal: Decimal) -> Decimal:
        return ZERO


@dataclass(frozen=True)
class PercentageTax:
    rate_percent: Decimal

    def tax_for(self, subtotal: Decimal) -> Decimal:
        return to_money(subtotal * Decimal(str(self.rate_percent)) / HUNDRED)


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    delivery_fee: Decimal
    tax: Decimal
    total: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    vendor_earnings: Decimal
    platform_revenue: Decimal


def validate_commission_rate(rate: Number) -> Decimal:
    try:
        value = Decimal(str(rate))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid commission rate: {rate!r}")
    if not value.is_finite() or value < ZERO or value > HUNDRED:
        raise ValidationError("Commission rate must be between 0 and 100", commission_rate=rate)
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_order_totals(
    items: Iterable[PricedLine],
    commission_rate_percent: Number,
    delivery_fee_policy: DeliveryFeePolicy,
    delivery_type: DeliveryType = DeliveryType.STANDARD,
    tax_policy: Optional[TaxPolicy] = None,
) -> OrderTotals:
    lines = list(items)
    if not lines:
        raise ValidationError("Cannot compute totals for an empty item list")

    rate = validate_commission_rate(commission_rate_percent)
    subtotal = to_money(sum((line_total(line.unit_price, line.quantity) for line in lines), ZERO))

    delivery_fee = to_money(delivery_fee_policy.fee_for(delivery_type, subtotal))
    tax = to_money((tax_policy or NoTax()).tax_for(subtotal))

    # Commission applies to the subtotal only; delivery fee and tax stay outside the split
    commission_amount = to_money(subtotal * rate / HUNDRED)
    vendor_earnings = subtotal - commission_amount

    return OrderTotals(
        subtotal=subtotal,
        delivery_fee=delivery_fee,
        tax=tax,
        total=subtotal + delivery_fee + tax,
        commission_rate=rate,
        commission_amount=commission_amount,
        vendor_earnings=vendor_earnings,
        platform_revenue=commission_amount,
    )
