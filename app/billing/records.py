"""
app/billing/records.py
----------------------
Read-only catalog records consumed by the checkout engine.

The engine never queries the database itself; products and customers are
resolved by the caller (route, CLI, test) and handed over as these frozen
snapshots.  Money stays Decimal.  Only CustomerRef is serialised, since it
travels with a stored bill; line items copy what they need from products.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Tuple


@dataclass(frozen=True)
class VariantRecord:
    """One sellable variant of a product (size, colour, pack …)."""
    key:              str
    name:             str
    price:            Decimal
    sku:              str = ''
    barcode:          str = ''
    stock:            Optional[int] = None
    tax_rate_percent: Optional[Decimal] = None   # None → inherit product rate


@dataclass(frozen=True)
class ProductRecord:
    id:               str
    name:             str
    price:            Decimal
    tax_rate_percent: Decimal = Decimal('0')
    sku:              str = ''
    unit:             str = 'pcs'
    barcode:          str = ''
    variants:         Tuple[VariantRecord, ...] = field(default_factory=tuple)

    @property
    def has_variants(self) -> bool:
        return len(self.variants) > 0

    def variant(self, key: str) -> Optional[VariantRecord]:
        for v in self.variants:
            if v.key == key:
                return v
        return None


@dataclass(frozen=True)
class CustomerRef:
    """Just enough of a customer to bill against."""
    id:             str
    name:           str
    phone:          str = ''
    loyalty_points: int = 0

    def to_dict(self) -> dict:
        return {
            'id':             self.id,
            'name':           self.name,
            'phone':          self.phone,
            'loyalty_points': self.loyalty_points,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CustomerRef':
        return cls(
            id=str(data['id']),
            name=data.get('name') or '',
            phone=data.get('phone') or '',
            loyalty_points=int(data.get('loyalty_points') or 0),
        )
