"""
app/billing/totals.py
---------------------
Whole-bill totals, computed from scratch on every call.

compute_totals() is a pure function of its arguments with no caching or
hidden state, so the same inputs always produce an equal Totals.
"""
from __future__ import annotations
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP

from app.billing.pricing import TaxMode, price_line


ZERO = Decimal('0')
Q    = Decimal('0.01')   # quantize target for display / payloads


@dataclass(frozen=True)
class Totals:
    """Derived, immutable snapshot of one bill's figures."""
    gross_total:          Decimal = ZERO
    item_discount_total:  Decimal = ZERO
    taxable_subtotal:     Decimal = ZERO
    tax_total:            Decimal = ZERO
    bill_level_deduction: Decimal = ZERO
    additional_charges:   Decimal = ZERO
    round_off:            Decimal = ZERO
    grand_total:          Decimal = ZERO

    @classmethod
    def zero(cls) -> 'Totals':
        return cls()

    def quantized(self) -> 'Totals':
        """Copy rounded to paise (ROUND_HALF_UP), for output only."""
        return Totals(**{
            name: value.quantize(Q, rounding=ROUND_HALF_UP)
            for name, value in asdict(self).items()
        })

    def to_dict(self) -> dict:
        return {name: str(value) for name, value in asdict(self).items()}


def compute_totals(cart, bill_discount_amount=ZERO, additional_charges=ZERO,
                   loyalty_discount=ZERO, tax_mode=TaxMode.EXCLUSIVE) -> Totals:
    """
    Compute the Totals for a cart plus bill-level inputs.

        gross_total          = Σ unit_price × quantity
        item_discount_total  = Σ discount_amount
        taxable_subtotal     = Σ taxable_value      (see pricing.price_line)
        tax_total            = Σ tax_amount
        bill_level_deduction = bill discount + loyalty
        grand_total          = max(0, taxable + tax + charges − deduction)

    round_off is reserved and always 0.  An empty cart returns all zeros,
    whatever the bill-level inputs are.
    """
    if not cart:
        return Totals.zero()

    tax_mode = TaxMode.parse(tax_mode)

    gross     = ZERO
    item_disc = ZERO
    taxable   = ZERO
    tax       = ZERO

    for item in cart:
        gross     += item.unit_price * item.quantity
        item_disc += item.discount_amount

        priced   = price_line(item, tax_mode)
        taxable += priced.taxable_value
        tax     += priced.tax_amount

    bill_discount = Decimal(bill_discount_amount)
    charges       = Decimal(additional_charges)
    deduction     = bill_discount + Decimal(loyalty_discount)

    grand_total = max(ZERO, taxable + tax + charges - deduction)

    return Totals(
        gross_total=gross,
        item_discount_total=item_disc,
        taxable_subtotal=taxable,
        tax_total=tax,
        bill_level_deduction=deduction,
        additional_charges=charges,
        round_off=ZERO,
        grand_total=grand_total,
    )
