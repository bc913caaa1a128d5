"""
app/billing/cart.py
--------------------
Line items and the rules for adding, merging and editing them.

A cart is a plain ordered list of LineItem.  Every row is identified by
its key (product_id, variant_key):

    ("42", None)   ← the base product, no variant
    ("42", "0")    ← the first variant of product 42, a different row

variant_key is compared with `is None`, never by truthiness, so a variant
keyed "0" can never be merged into a base-product row.

All money values are Decimal.  to_dict() writes them as strings so a cart
survives JSON serialisation (session cookie, file, HTTP body) without
float contamination.
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Tuple

from app.billing.errors import (
    InvalidQuantity, ItemNotFound, RequiresVariantSelection,
)
from app.billing.records import ProductRecord, VariantRecord
from app.billing.discounts import as_amount, clamp_discount


ZERO    = Decimal('0')
HUNDRED = Decimal('100')

ItemKey = Tuple[str, Optional[str]]


@dataclass
class LineItem:
    """One cart row."""
    product_id:       str
    variant_key:      Optional[str]
    name:             str
    unit_price:       Decimal
    quantity:         Decimal = Decimal('1')
    tax_rate_percent: Decimal = ZERO
    discount_amount:  Decimal = ZERO
    discount_percent: Decimal = ZERO
    sku:              str = ''
    unit:             str = 'pcs'
    variant_name:     str = ''
    stock:            Optional[int] = None

    @property
    def key(self) -> ItemKey:
        return (self.product_id, self.variant_key)

    @property
    def gross(self) -> Decimal:
        """unit_price × quantity, before any discount."""
        return self.unit_price * self.quantity

    @property
    def line_total(self) -> Decimal:
        return max(ZERO, self.gross - self.discount_amount)

    def reprice_discount(self) -> None:
        """Re-derive discount_amount from the percent, if one is active."""
        if self.discount_percent > ZERO:
            self.discount_amount = clamp_discount(
                self.gross * self.discount_percent / HUNDRED, self.gross
            )

    # ── Serialisation ─────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            'product_id':       self.product_id,
            'variant_key':      self.variant_key,
            'name':             self.name,
            'sku':              self.sku,
            'unit':             self.unit,
            'variant_name':     self.variant_name,
            'unit_price':       str(self.unit_price),
            'quantity':         str(self.quantity),
            'tax_rate_percent': str(self.tax_rate_percent),
            'discount_amount':  str(self.discount_amount),
            'discount_percent': str(self.discount_percent),
            'line_total':       str(self.line_total),
            'stock':            self.stock,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'LineItem':
        variant_key = data.get('variant_key')
        return cls(
            product_id=str(data['product_id']),
            variant_key=None if variant_key is None else str(variant_key),
            name=data.get('name') or '',
            unit_price=Decimal(str(data['unit_price'])),
            quantity=Decimal(str(data['quantity'])),
            tax_rate_percent=Decimal(str(data.get('tax_rate_percent', '0'))),
            discount_amount=Decimal(str(data.get('discount_amount', '0'))),
            discount_percent=Decimal(str(data.get('discount_percent', '0'))),
            sku=data.get('sku') or '',
            unit=data.get('unit') or 'pcs',
            variant_name=data.get('variant_name') or '',
            stock=data.get('stock'),
        )


def _as_quantity(value) -> Decimal:
    try:
        qty = Decimal(str(value))
    except ArithmeticError:
        raise InvalidQuantity(f'Quantity {value!r} is not a number.')
    if not qty.is_finite() or qty < 1:
        raise InvalidQuantity(f'Quantity must be at least 1 (got {value}).')
    return qty


# ── Read ──────────────────────────────────────────────────────────

def find_item(cart: List[LineItem], key: ItemKey) -> Optional[LineItem]:
    """Return the row with this identity key, or None."""
    product_id, variant_key = key
    for item in cart:
        if item.product_id != str(product_id):
            continue
        if variant_key is None:
            if item.variant_key is None:
                return item
        elif item.variant_key == str(variant_key):
            return item
    return None


def _require_item(cart: List[LineItem], key: ItemKey) -> LineItem:
    item = find_item(cart, key)
    if item is None:
        raise ItemNotFound(f'No cart line for {key!r}.')
    return item


# ── Write ─────────────────────────────────────────────────────────

def add_product(cart: List[LineItem], product: ProductRecord) -> LineItem:
    """
    Add one unit of a plain (variant-less) product.
    If already present, increments quantity by 1.

    Products with variants are refused; the caller must pick one and use
    add_variant() instead.
    """
    if product.has_variants:
        raise RequiresVariantSelection(product.id)

    item = find_item(cart, (product.id, None))
    if item is not None:
        item.quantity += 1
        item.reprice_discount()
        return item

    item = LineItem(
        product_id=product.id,
        variant_key=None,
        name=product.name,
        unit_price=product.price,
        quantity=Decimal('1'),
        tax_rate_percent=product.tax_rate_percent,
        sku=product.sku,
        unit=product.unit,
    )
    cart.append(item)
    return item


def add_variant(cart: List[LineItem], product: ProductRecord,
                variant: VariantRecord, variant_key: str,
                quantity=1) -> LineItem:
    """
    Add `quantity` units of one variant, merging into an existing row for
    the same (product, variant_key).  A new row copies the variant's price,
    stock and tax rate; a variant without its own rate inherits the
    product's.
    """
    qty = _as_quantity(quantity)
    variant_key = str(variant_key)

    item = find_item(cart, (product.id, variant_key))
    if item is not None:
        item.quantity += qty
        item.reprice_discount()
        return item

    if variant.tax_rate_percent is not None:
        tax_rate = variant.tax_rate_percent
    else:
        tax_rate = product.tax_rate_percent

    item = LineItem(
        product_id=product.id,
        variant_key=variant_key,
        name=product.name,
        variant_name=variant.name,
        unit_price=variant.price,
        quantity=qty,
        tax_rate_percent=tax_rate,
        sku=variant.sku or product.sku,
        unit=product.unit,
        stock=variant.stock,
    )
    cart.append(item)
    return item


def set_quantity(cart: List[LineItem], key: ItemKey, new_quantity) -> LineItem:
    """
    Change a row's quantity.  Percent discounts float with quantity;
    flat discounts stay as entered.
    """
    qty  = _as_quantity(new_quantity)
    item = _require_item(cart, key)
    item.quantity = qty
    item.reprice_discount()
    return item


def remove_item(cart: List[LineItem], key: ItemKey) -> None:
    """Remove a row entirely; a missing row is not an error."""
    item = find_item(cart, key)
    if item is not None:
        cart.remove(item)


def apply_item_discount(cart: List[LineItem], key: ItemKey,
                        value, is_percent: bool) -> LineItem:
    """
    Set a row's discount.

    Percent:  discount_percent = value, discount_amount = gross × value / 100
    Flat:     discount_amount  = value, discount_percent = 0

    The amount is always clamped to [0, gross].
    """
    item  = _require_item(cart, key)
    value = as_amount(value, 'Item discount')

    if is_percent:
        percent = clamp_discount(value, HUNDRED)
        item.discount_percent = percent
        item.discount_amount  = clamp_discount(item.gross * percent / HUNDRED, item.gross)
    else:
        item.discount_percent = ZERO
        item.discount_amount  = clamp_discount(value, item.gross)
    return item
