"""
app/billing/invoicing.py
------------------------
Invoicing backends the CheckoutCoordinator can hand a payload to.

Both expose one call:

    create_invoice(payload: dict) -> dict     # acknowledgement
        {'id': ..., 'invoiceNumber': '2026-0042', 'total': '995.00', ...}

and report every failure as CheckoutTransportFailed, carrying the
backend's own message so the cashier sees exactly what went wrong.

LocalInvoiceClient   — writes the invoice into this app's database
HttpInvoiceClient    — POSTs the payload to a remote invoicing API
"""
import json
import logging
import urllib.error
import urllib.request
from decimal import Decimal, ROUND_CEILING

from sqlalchemy.exc import SQLAlchemyError

from app.billing.errors import CheckoutTransportFailed


logger = logging.getLogger(__name__)


def _as_int(value, what):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f'{what} {value!r} is not a valid id.')


def _units(quantity: Decimal) -> int:
    """Stock units consumed by a (possibly fractional) quantity."""
    return int(quantity.to_integral_value(rounding=ROUND_CEILING))


class LocalInvoiceClient:
    """
    Persist the invoice in the local database, all-or-nothing:

      1. Lock every touched product / variant row (sorted ids → no deadlocks)
      2. Verify stock for every line, then deduct it (with an audit log)
      3. Deduct redeemed loyalty points from the customer
      4. Reserve the next invoice number
      5. Write Invoice + InvoiceItems and commit

    Any failure rolls the whole transaction back.
    """

    def __init__(self, db_session):
        self.db_session = db_session

    def create_invoice(self, payload: dict) -> dict:
        try:
            invoice = self._write(payload)
            self.db_session.commit()
        except ValueError as exc:
            self.db_session.rollback()
            raise CheckoutTransportFailed(str(exc))
        except SQLAlchemyError as exc:
            self.db_session.rollback()
            logger.error(f'Invoice rollback (database): {exc}')
            raise CheckoutTransportFailed('A database error occurred. Please try again.')

        return invoice.to_ack()

    # ── Internals ─────────────────────────────────────────────────

    def _write(self, payload: dict):
        from app.billing.invoice import generate_invoice_number
        from app.billing.models import Invoice, InvoiceItem
        from app.catalog.models import Customer, InventoryLog, Product, ProductVariant

        lines = []
        for row in payload['items']:
            variant_key = row.get('variantKey')
            lines.append((
                _as_int(row['productId'], 'Product'),
                None if variant_key is None else _as_int(variant_key, 'Variant'),
                Decimal(str(row['quantity'])),
                row,
            ))

        # ── Lock rows in a deterministic order ────────────────────
        products = {}
        for pid in sorted({pid for pid, _, _, _ in lines}):
            product = (
                self.db_session.query(Product)
                .filter(Product.id == pid)
                .with_for_update()
                .first()
            )
            if product is None:
                raise ValueError(f'Product ID {pid} no longer exists.')
            products[pid] = product

        variants = {}
        for vid in sorted({vid for _, vid, _, _ in lines if vid is not None}):
            variant = (
                self.db_session.query(ProductVariant)
                .filter(ProductVariant.id == vid)
                .with_for_update()
                .first()
            )
            if variant is None:
                raise ValueError(f'Variant ID {vid} no longer exists.')
            variants[vid] = variant

        # ── Stock check + deduction ───────────────────────────────
        invoice_items = []
        for pid, vid, qty, row in lines:
            holder = variants[vid] if vid is not None else products[pid]
            needed = _units(qty)
            if holder.stock < needed:
                raise ValueError(
                    f'Insufficient stock for "{row["name"]}". '
                    f'Available: {holder.stock}, requested: {qty}.'
                )
            old_stock     = holder.stock
            holder.stock -= needed
            self.db_session.add(InventoryLog(
                product_id=pid,
                variant_id=vid,
                old_stock=old_stock,
                new_stock=holder.stock,
                reason='Sale Deduction',
            ))
            invoice_items.append(InvoiceItem(
                product_id=pid,
                variant_id=vid,
                name=row['name'],
                quantity=qty,
                price=Decimal(str(row['price'])),
                total=Decimal(str(row['total'])),
            ))

        # ── Customer / loyalty ────────────────────────────────────
        customer_id = None
        redeemed    = int(payload.get('loyaltyPointsRedeemed') or 0)
        if payload.get('customerId') is not None:
            customer_id = _as_int(payload['customerId'], 'Customer')
            customer = (
                self.db_session.query(Customer)
                .filter(Customer.id == customer_id)
                .with_for_update()
                .first()
            )
            if customer is None:
                raise ValueError(f'Customer ID {customer_id} no longer exists.')
            if redeemed > customer.points:
                raise ValueError(
                    f'Customer has only {customer.points} points, {redeemed} redeemed.'
                )
            customer.points -= redeemed
        elif redeemed:
            raise ValueError('Loyalty points redeemed without a customer.')

        invoice = Invoice(
            invoice_number=generate_invoice_number(self.db_session),
            customer_id=customer_id,
            customer_name=payload.get('customerName') or 'Walk-in',
            gross_total=Decimal(payload['grossTotal']),
            item_discount=Decimal(payload['itemDiscount']),
            subtotal=Decimal(payload['subtotal']),
            tax=Decimal(payload['tax']),
            discount=Decimal(payload['discount']),
            additional_charges=Decimal(payload['additionalCharges']),
            round_off=Decimal(payload['roundOff']),
            total=Decimal(payload['total']),
            payment_method=payload.get('paymentMethod') or 'Cash',
            status=payload.get('status') or 'Paid',
            amount_received=Decimal(payload.get('amountReceived') or '0'),
            loyalty_redeemed=redeemed,
            internal_notes=payload.get('internalNotes') or '',
        )
        invoice.items = invoice_items
        self.db_session.add(invoice)
        self.db_session.flush()   # assigns invoice.id without committing
        return invoice


def _http_error_message(exc: urllib.error.HTTPError) -> str:
    """Prefer the backend's JSON `message`, fall back to the HTTP reason."""
    try:
        body = json.loads(exc.read().decode('utf-8') or '{}')
    except (ValueError, OSError):
        body = {}
    if isinstance(body, dict) and body.get('message'):
        return str(body['message'])
    return f'HTTP {exc.code}: {exc.reason}'


class HttpInvoiceClient:
    """POST the payload as JSON to a remote invoicing endpoint."""

    def __init__(self, url: str, timeout: float = 15, token: str = None):
        self.url     = url
        self.timeout = timeout
        self.token   = token

    def create_invoice(self, payload: dict) -> dict:
        headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'

        request = urllib.request.Request(
            self.url,
            data=json.dumps(payload).encode('utf-8'),
            headers=headers,
            method='POST',
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as resp:
                raw = resp.read().decode('utf-8')
        except urllib.error.HTTPError as exc:
            raise CheckoutTransportFailed(_http_error_message(exc))
        except urllib.error.URLError as exc:
            raise CheckoutTransportFailed(f'Invoicing service unreachable: {exc.reason}')
        except (TimeoutError, OSError) as exc:
            raise CheckoutTransportFailed(f'Invoicing service timed out: {exc}')

        try:
            ack = json.loads(raw or '{}')
        except ValueError:
            raise CheckoutTransportFailed('Invoicing service returned invalid JSON.')
        if not isinstance(ack, dict):
            raise CheckoutTransportFailed('Invoicing service returned an unexpected response.')

        ack.setdefault('id', ack.get('_id'))
        return ack
