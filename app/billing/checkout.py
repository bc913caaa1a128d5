"""
app/billing/checkout.py
-----------------------
CheckoutCoordinator — turns a finished draft bill into an invoice.

    1. Check preconditions (first failure wins, nothing changes):
         customer attached → cart non-empty → not already submitting
    2. Mark the session Submitting and persist
    3. Build the payload and hand it to the invoicing client
    4a. Client failed  → session back to Draft, untouched; the client's
                         message is passed through verbatim
    4b. Client acked   → close the tab (store keeps ≥ 1 session), persist,
                         then fire the refresh hooks

The invoicing call can be slow and other requests may change the stored
bills meanwhile, so steps 4a and 4b reload the store first and act on the
stored copy of the bill.  If that copy is gone, or belongs to a different
submission, the outcome is discarded and storage is left as it is.

Refresh hooks (stock, customer stats …) are fire-and-forget: an
exception in a hook is logged and does not undo the checkout.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, List, Optional

from app.billing.errors import (
    BillingError, CheckoutDiscarded, CheckoutTransportFailed,
    CommandResult, CustomerRequired, EmptyCart,
)
from app.billing.session import BillSession


logger = logging.getLogger(__name__)

Q = Decimal('0.01')


def _money(value) -> Decimal:
    return Decimal(value).quantize(Q, rounding=ROUND_HALF_UP)


@dataclass
class Receipt:
    """What the caller gets back from a successful checkout."""
    session_id:     int
    invoice_number: str
    invoice_id:     Optional[str]
    customer_id:    str
    grand_total:    Decimal
    payload:        dict = field(default_factory=dict)
    response:       dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'session_id':     self.session_id,
            'invoice_number': self.invoice_number,
            'invoice_id':     self.invoice_id,
            'customer_id':    self.customer_id,
            'grand_total':    str(self.grand_total),
        }


def build_payload(session: BillSession, now: Optional[datetime] = None) -> dict:
    """
    Normalised invoice payload for the invoicing backend.

    Money is rounded to paise here, and only here.  Rows without a
    product id or with a non-positive quantity are dropped.
    """
    totals   = session.totals.quantized()
    customer = session.customer
    now      = now or datetime.now()

    items = [
        {
            'productId':  item.product_id,
            'variantKey': item.variant_key,
            'name':       item.name,
            'quantity':   str(item.quantity),
            'price':      str(_money(item.unit_price)),
            'total':      str(_money(item.line_total)),
        }
        for item in session.cart
        if item.product_id and item.quantity > 0
    ]

    return {
        'customerId':            customer.id if customer else None,
        'customerName':          customer.name if customer else '',
        'date':                  now.isoformat(timespec='seconds'),
        'items':                 items,
        'grossTotal':            str(totals.gross_total),
        'itemDiscount':          str(totals.item_discount_total),
        'subtotal':              str(totals.taxable_subtotal),
        'tax':                   str(totals.tax_total),
        'discount':              str(totals.bill_level_deduction),
        'additionalCharges':     str(totals.additional_charges),
        'roundOff':              str(totals.round_off),
        'total':                 str(totals.grand_total),
        'paymentMethod':         session.payment_mode.value,
        'status':                session.payment_status.value,
        'internalNotes':         session.remarks,
        'amountReceived':        str(_money(session.amount_received)),
        'loyaltyPointsRedeemed': session.loyalty_points_redeemed,
    }


class CheckoutCoordinator:

    def __init__(self, store, client, hooks: Optional[List[Callable]] = None):
        self.store  = store
        self.client = client
        self.hooks  = list(hooks or [])

    def add_hook(self, hook: Callable) -> None:
        """Register a post-checkout refresh, called as hook(receipt)."""
        self.hooks.append(hook)

    def submit(self, session_id=None) -> CommandResult:
        """Submit a bill (the active one by default)."""
        try:
            return CommandResult.success(self._submit(session_id))
        except BillingError as exc:
            return CommandResult.failure(exc)

    # ── Internals ─────────────────────────────────────────────────

    def _submit(self, session_id) -> Receipt:
        if session_id is None:
            session_id = self.store.active_id
        session = self.store.require(session_id)

        if session.customer is None:
            raise CustomerRequired('Please select a customer before saving the bill.')
        if session.is_empty:
            raise EmptyCart('Cart is empty!')

        session.begin_submit()
        self.store.save()

        payload = build_payload(session)
        logger.info(f'Submitting bill #{session.id} | Total: {payload["total"]}')

        try:
            ack = self.client.create_invoice(payload)
        except CheckoutTransportFailed as exc:
            self._rollback(session, exc)
            raise
        except Exception as exc:
            error = CheckoutTransportFailed(str(exc))
            self._rollback(session, error)
            raise error

        if self._pending_copy(session) is None:
            logger.warning(
                f'Bill #{session.id} was closed during checkout; '
                f'discarding invoice {ack.get("invoiceNumber")}'
            )
            raise CheckoutDiscarded(
                f'Bill #{session.id} was closed before the invoice was confirmed.'
            )

        receipt = Receipt(
            session_id=session.id,
            invoice_number=str(ack.get('invoiceNumber') or ''),
            invoice_id=None if ack.get('id') is None else str(ack['id']),
            customer_id=session.customer.id,
            grand_total=_money(session.totals.grand_total),
            payload=payload,
            response=ack,
        )

        self.store.close_tab(session.id)
        self.store.save()
        logger.info(f'Bill #{session.id} saved as invoice {receipt.invoice_number}')

        self._run_hooks(receipt)
        return receipt

    def _pending_copy(self, session: BillSession) -> Optional[BillSession]:
        """
        The store's current copy of `session`, after reloading from
        storage, if it is still waiting on this same submission.
        """
        self.store.reload()
        current = self.store.get(session.id)
        if current is None or current.submission_id != session.submission_id:
            return None
        return current

    def _rollback(self, session: BillSession, error: CheckoutTransportFailed) -> None:
        logger.warning(f'Checkout failed for bill #{session.id}: {error.message}')
        current = self._pending_copy(session)
        if current is not None:
            current.abort_submit()
            self.store.save()

    def _run_hooks(self, receipt: Receipt) -> None:
        for hook in self.hooks:
            try:
                hook(receipt)
            except Exception:
                logger.exception(f'Refresh hook {getattr(hook, "__name__", hook)!r} failed')
