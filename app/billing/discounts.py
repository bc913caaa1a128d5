"""
app/billing/discounts.py
------------------------
Discount and deduction rules.

Order of application is fixed:

    1. Item discounts   — baked into each line subtotal by the cart
    2. Tax              — on the post-item-discount taxable value
    3. Bill step        — bill discount, additional charges and loyalty
                          redemption applied together to
                          (taxable + tax + charges), no rounding in between

Step 3 lives in totals.compute_totals(); this module resolves the inputs.
"""
from __future__ import annotations
from decimal import Decimal, InvalidOperation

from app.billing.errors import InvalidAmount, LoyaltyOverRedemption


ZERO    = Decimal('0')
HUNDRED = Decimal('100')

DEFAULT_CONVERSION_RATE = Decimal('1.0')   # ₹ per loyalty point


def as_amount(value, field: str = 'amount') -> Decimal:
    """Parse a money/percent input, refusing garbage and negatives."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f'{field} must be a number (got {value!r}).')
    if not amount.is_finite():
        raise InvalidAmount(f'{field} must be a number (got {value!r}).')
    if amount < ZERO:
        raise InvalidAmount(f'{field} cannot be negative (got {value}).')
    return amount


def clamp_discount(value: Decimal, ceiling: Decimal) -> Decimal:
    """Clamp a discount into [0, ceiling]."""
    ceiling = max(ZERO, ceiling)
    return min(max(ZERO, value), ceiling)


def cart_subtotal(cart) -> Decimal:
    """Σ line subtotal (post item discount, pre tax) across the cart."""
    total = ZERO
    for item in cart:
        total += item.line_total
    return total


def resolve_bill_discount(cart, value, is_percent: bool) -> Decimal:
    """
    Turn a bill discount entry into a flat amount.

    A percent is resolved ONCE, here, against the current cart subtotal.
    It is not re-derived when the cart later changes; the cashier has to
    re-apply it.  Changing that would change what customers are charged.
    """
    amount = as_amount(value, 'Bill discount')
    if is_percent:
        return cart_subtotal(cart) * amount / HUNDRED
    return amount


def check_redemption(points, available_points) -> int:
    """Validate a redemption request against the customer's balance."""
    try:
        points = int(points)
    except (TypeError, ValueError):
        raise InvalidAmount(f'Points must be a whole number (got {points!r}).')
    if points < 0:
        raise InvalidAmount('Points to redeem cannot be negative.')
    available = int(available_points or 0)
    if points > available:
        raise LoyaltyOverRedemption(
            f'Only {available} points available, {points} requested.'
        )
    return points


def loyalty_value(points: int, conversion_rate=DEFAULT_CONVERSION_RATE) -> Decimal:
    """Currency value of redeemed points."""
    return Decimal(points) * Decimal(str(conversion_rate))
