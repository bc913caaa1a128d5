"""
app/billing/session.py
----------------------
BillSession — one draft bill (one "tab" on the billing screen).

Every mutating method recomputes `totals` before returning, so a caller
can always render straight from the session it just changed.

Lifecycle:

    Draft ──(mutations)──▶ Draft
    Draft ──begin_submit──▶ Submitting ──abort_submit──▶ Draft
                                       └─mark_closed───▶ Closed (terminal)

A Submitting session carries a submission id and start time, and both
are persisted.  Another process restoring the blob sees the bill as
Submitting until SUBMIT_TIMEOUT has passed, after which it is treated
as abandoned and restored as Draft.
"""
from __future__ import annotations
import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from app.billing import cart as cart_ops
from app.billing.cart import ItemKey, LineItem
from app.billing.discounts import (
    DEFAULT_CONVERSION_RATE, as_amount, check_redemption,
    loyalty_value, resolve_bill_discount,
)
from app.billing.errors import InvalidAmount, SubmissionInProgress
from app.billing.pricing import TaxMode
from app.billing.records import CustomerRef, ProductRecord, VariantRecord
from app.billing.totals import Totals, compute_totals


ZERO = Decimal('0')

# seconds; longer than any invoicing call is allowed to take
SUBMIT_TIMEOUT = 120


class PaymentMode(enum.Enum):
    CASH          = 'Cash'
    UPI           = 'UPI'
    CARD          = 'Card'
    BANK_TRANSFER = 'BankTransfer'
    CHEQUE        = 'Cheque'


class PaymentStatus(enum.Enum):
    PAID           = 'Paid'
    UNPAID         = 'Unpaid'
    PARTIALLY_PAID = 'Partially Paid'


class BillState(enum.Enum):
    DRAFT      = 'Draft'
    SUBMITTING = 'Submitting'
    CLOSED     = 'Closed'


def _parse_enum(enum_cls, value):
    """Match an enum by value or by name, case-insensitively."""
    if isinstance(value, enum_cls):
        return value
    text = str(value or '').replace(' ', '').replace('_', '').lower()
    for member in enum_cls:
        if text in (member.value.replace(' ', '').lower(),
                    member.name.replace('_', '').lower()):
            return member
    raise InvalidAmount(f'Unknown {enum_cls.__name__}: {value!r}')


@dataclass
class BillSession:
    id:                        int
    customer:                  Optional[CustomerRef] = None
    cart:                      List[LineItem] = field(default_factory=list)
    bill_discount_amount:      Decimal = ZERO
    additional_charges:        Decimal = ZERO
    loyalty_redemption_amount: Decimal = ZERO
    loyalty_points_redeemed:   int = 0
    payment_mode:              PaymentMode = PaymentMode.CASH
    payment_status:            PaymentStatus = PaymentStatus.PAID
    amount_received:           Decimal = ZERO
    remarks:                   str = ''
    state:                     BillState = BillState.DRAFT
    tax_mode:                  TaxMode = TaxMode.EXCLUSIVE
    totals:                    Totals = field(default_factory=Totals.zero)
    submission_id:             Optional[str] = None
    submit_started_at:         Optional[datetime] = None

    # ── Derived ───────────────────────────────────────────────────

    def recompute(self) -> Totals:
        self.totals = compute_totals(
            self.cart,
            self.bill_discount_amount,
            self.additional_charges,
            self.loyalty_redemption_amount,
            self.tax_mode,
        )
        return self.totals

    @property
    def is_empty(self) -> bool:
        return not self.cart

    @property
    def balance_due(self) -> Decimal:
        return max(ZERO, self.totals.grand_total - self.amount_received)

    @property
    def change_due(self) -> Decimal:
        return max(ZERO, self.amount_received - self.totals.grand_total)

    # ── Cart commands ─────────────────────────────────────────────

    def add_product(self, product: ProductRecord) -> LineItem:
        item = cart_ops.add_product(self.cart, product)
        self.recompute()
        return item

    def add_variant(self, product: ProductRecord, variant: VariantRecord,
                    variant_key: str, quantity=1) -> LineItem:
        item = cart_ops.add_variant(self.cart, product, variant, variant_key, quantity)
        self.recompute()
        return item

    def set_quantity(self, key: ItemKey, quantity) -> LineItem:
        item = cart_ops.set_quantity(self.cart, key, quantity)
        self.recompute()
        return item

    def remove_item(self, key: ItemKey) -> None:
        cart_ops.remove_item(self.cart, key)
        self.recompute()

    def apply_item_discount(self, key: ItemKey, value, is_percent: bool) -> LineItem:
        item = cart_ops.apply_item_discount(self.cart, key, value, is_percent)
        self.recompute()
        return item

    # ── Bill-level commands ───────────────────────────────────────

    def apply_bill_discount(self, value, is_percent: bool = False) -> Totals:
        self.bill_discount_amount = resolve_bill_discount(self.cart, value, is_percent)
        return self.recompute()

    def apply_additional_charges(self, value) -> Totals:
        self.additional_charges = as_amount(value, 'Additional charges')
        return self.recompute()

    def apply_loyalty_redemption(self, points, available_points=None,
                                 conversion_rate=DEFAULT_CONVERSION_RATE) -> Totals:
        """
        Redeem loyalty points as a bill deduction.

        `available_points` defaults to the attached customer's balance
        (zero when no customer is attached).  Over-redemption is rejected
        before anything changes.
        """
        if available_points is None:
            available_points = self.customer.loyalty_points if self.customer else 0
        points = check_redemption(points, available_points)

        self.loyalty_points_redeemed   = points
        self.loyalty_redemption_amount = loyalty_value(points, conversion_rate)
        return self.recompute()

    def set_remarks(self, text: str) -> None:
        self.remarks = (text or '').strip()

    def set_customer(self, customer: Optional[CustomerRef]) -> None:
        previous      = self.customer
        self.customer = customer
        if previous is not None and (customer is None or customer.id != previous.id):
            self._drop_redemption()
        self.recompute()

    def clear_customer(self) -> None:
        self.set_customer(None)

    def _drop_redemption(self) -> None:
        if self.loyalty_points_redeemed:
            # points belonged to the detached customer
            self.loyalty_points_redeemed   = 0
            self.loyalty_redemption_amount = ZERO

    def set_payment(self, mode=None, status=None, amount_received=None) -> None:
        """
        Update payment fields.

        Status 'Unpaid' forces amount_received to 0.  Status 'Paid' fills
        in the full grand total unless an amount is given explicitly.
        """
        if mode is not None:
            self.payment_mode = _parse_enum(PaymentMode, mode)

        if amount_received is not None:
            self.amount_received = as_amount(amount_received, 'Amount received')

        if status is not None:
            self.payment_status = _parse_enum(PaymentStatus, status)
            if self.payment_status is PaymentStatus.UNPAID:
                self.amount_received = ZERO
            elif self.payment_status is PaymentStatus.PAID and amount_received is None:
                self.amount_received = self.totals.grand_total

    # ── State machine ─────────────────────────────────────────────

    def begin_submit(self) -> None:
        if self.state is BillState.SUBMITTING:
            raise SubmissionInProgress(f'Bill #{self.id} is already being submitted.')
        self.state             = BillState.SUBMITTING
        self.submission_id     = uuid.uuid4().hex
        self.submit_started_at = datetime.utcnow()

    def abort_submit(self) -> None:
        self.state             = BillState.DRAFT
        self.submission_id     = None
        self.submit_started_at = None

    def mark_closed(self) -> None:
        self.state = BillState.CLOSED

    def submission_is_live(self, timeout=SUBMIT_TIMEOUT, now=None) -> bool:
        """True while a started submission is younger than `timeout` seconds."""
        if self.state is not BillState.SUBMITTING or self.submit_started_at is None:
            return False
        age = (now or datetime.utcnow()) - self.submit_started_at
        return age < timedelta(seconds=timeout)

    # ── Serialisation ─────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            'id':                        self.id,
            'customer':                  self.customer.to_dict() if self.customer else None,
            'cart':                      [item.to_dict() for item in self.cart],
            'bill_discount_amount':      str(self.bill_discount_amount),
            'additional_charges':        str(self.additional_charges),
            'loyalty_redemption_amount': str(self.loyalty_redemption_amount),
            'loyalty_points_redeemed':   self.loyalty_points_redeemed,
            'payment_mode':              self.payment_mode.value,
            'payment_status':            self.payment_status.value,
            'amount_received':           str(self.amount_received),
            'remarks':                   self.remarks,
            'state':                     self.state.value,
            'tax_mode':                  self.tax_mode.value,
            'totals':                    self.totals.to_dict(),
            'submission_id':             self.submission_id,
            'submit_started_at':         (self.submit_started_at.isoformat()
                                          if self.submit_started_at else None),
        }

    @classmethod
    def from_dict(cls, data: dict, tax_mode: Optional[TaxMode] = None,
                  timeout=SUBMIT_TIMEOUT, now=None) -> 'BillSession':
        """
        Rebuild a session from to_dict() output.

        Totals are recomputed rather than trusted.  A session persisted
        mid-submit stays Submitting while that submission is live, and
        comes back as Draft once it is older than `timeout` seconds.  The
        submission id is kept either way so the request that started it
        can still recognise its bill when the invoicing call returns.
        """
        customer = data.get('customer')
        started  = data.get('submit_started_at')
        session = cls(
            id=int(data['id']),
            customer=CustomerRef.from_dict(customer) if customer else None,
            cart=[LineItem.from_dict(row) for row in data.get('cart') or []],
            bill_discount_amount=Decimal(str(data.get('bill_discount_amount', '0'))),
            additional_charges=Decimal(str(data.get('additional_charges', '0'))),
            loyalty_redemption_amount=Decimal(str(data.get('loyalty_redemption_amount', '0'))),
            loyalty_points_redeemed=int(data.get('loyalty_points_redeemed') or 0),
            payment_mode=_parse_enum(PaymentMode, data.get('payment_mode', 'Cash')),
            payment_status=_parse_enum(PaymentStatus, data.get('payment_status', 'Paid')),
            amount_received=Decimal(str(data.get('amount_received', '0'))),
            remarks=data.get('remarks') or '',
            state=_parse_enum(BillState, data.get('state') or 'Draft'),
            tax_mode=tax_mode or TaxMode.parse(data.get('tax_mode', 'Exclusive')),
            submission_id=data.get('submission_id'),
            submit_started_at=datetime.fromisoformat(started) if started else None,
        )
        if not session.submission_is_live(timeout, now):
            session.state = BillState.DRAFT
        session.recompute()
        return session
