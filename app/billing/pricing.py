"""
app/billing/pricing.py
----------------------
Per-line taxable value and tax under the two pricing regimes.

    Exclusive  — the entered price is the taxable value; tax goes on top.
    Inclusive  — the entered price already contains tax; split it out.

No rounding happens here.  Quantizing to paise is the job of whoever
renders or transmits the figures.
"""
from __future__ import annotations
import enum
from dataclasses import dataclass
from decimal import Decimal


ZERO    = Decimal('0')
ONE     = Decimal('1')
HUNDRED = Decimal('100')


class TaxMode(enum.Enum):
    EXCLUSIVE = 'Exclusive'
    INCLUSIVE = 'Inclusive'

    @classmethod
    def parse(cls, value) -> 'TaxMode':
        """Accept a TaxMode or a config string like 'inclusive'."""
        if isinstance(value, cls):
            return value
        text = str(value or '').strip().lower()
        for mode in cls:
            if mode.value.lower() == text:
                return mode
        raise ValueError(f'Unknown tax mode: {value!r}')


@dataclass(frozen=True)
class LinePrice:
    taxable_value: Decimal
    tax_amount:    Decimal


def line_subtotal(item) -> Decimal:
    """Post-discount, pre-tax nominal amount of one line."""
    return max(ZERO, item.unit_price * item.quantity - item.discount_amount)


def price_line(item, tax_mode: TaxMode) -> LinePrice:
    subtotal = line_subtotal(item)
    rate     = item.tax_rate_percent / HUNDRED

    if rate == ZERO:
        return LinePrice(taxable_value=subtotal, tax_amount=ZERO)

    if tax_mode is TaxMode.INCLUSIVE:
        # divisor is always ≥ 1
        taxable = subtotal / (ONE + rate)
        return LinePrice(taxable_value=taxable, tax_amount=subtotal - taxable)

    return LinePrice(taxable_value=subtotal, tax_amount=subtotal * rate)
