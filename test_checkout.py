"""
test_checkout.py — CheckoutCoordinator, payload building and the invoicing clients.
Run: pytest test_checkout.py -v
"""
import os
os.environ['FLASK_RUN_FROM_CLI'] = '1'

import io
import json
import urllib.error
import pytest
from datetime import datetime
from decimal import Decimal
from unittest import mock

from app import create_app, db
from app.billing.checkout import CheckoutCoordinator, build_payload
from app.billing.commands import BillingCommands
from app.billing.errors import CheckoutTransportFailed
from app.billing.invoice import format_invoice_number, generate_invoice_number
from app.billing.invoicing import HttpInvoiceClient, LocalInvoiceClient
from app.billing.models import Invoice, InvoiceSequence
from app.billing.pricing import TaxMode
from app.billing.records import CustomerRef, ProductRecord
from app.billing.session import BillSession, BillState
from app.billing.storage import MemoryStorage
from app.billing.store import SessionStore
from app.catalog.models import Customer, InventoryLog, Product, ProductVariant
from app.catalog.refresh import points_earned, refresh_customers, refresh_products


SOAP  = ProductRecord(id='1', name='Soap', price=Decimal('40.00'),
                      tax_rate_percent=Decimal('18'))
PRIYA = CustomerRef(id='7', name='Priya', loyalty_points=100)


class FakeClient:
    """Records payloads and answers with a canned acknowledgement."""

    def __init__(self, ack=None, error=None, during=None):
        self.ack      = ack or {'id': 11, 'invoiceNumber': '2026-0011'}
        self.error    = error
        self.during   = during
        self.payloads = []

    def create_invoice(self, payload):
        self.payloads.append(payload)
        if self.during:
            self.during()
        if self.error:
            raise self.error
        return dict(self.ack)


def ready_store(storage=None):
    store = SessionStore(storage)
    store.active.set_customer(PRIYA)
    store.active.add_product(SOAP)
    return store


# ── Fixtures ──────────────────────────────────────────────────────

@pytest.fixture(scope='function')
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


def make_product(name='Rice', price='100.00', tax=5, stock=10, barcode=None):
    p = Product(name=name, barcode=barcode or f'BC{name[:4].upper()}',
                price=Decimal(price), stock=stock, tax_rate=Decimal(tax))
    db.session.add(p)
    db.session.commit()
    return p


def make_customer(name='Priya', phone='9876543210', points=0):
    c = Customer(name=name, phone=phone, points=points)
    db.session.add(c)
    db.session.commit()
    return c


# ── 1. build_payload ──────────────────────────────────────────────

def test_payload_money_is_rounded_to_paise():
    s = BillSession(id=1, customer=PRIYA)
    s.add_product(ProductRecord(id='1', name='Oil', price=Decimal('100'),
                                tax_rate_percent=Decimal('18')))
    s.tax_mode = TaxMode.INCLUSIVE
    s.recompute()

    payload = build_payload(s, now=datetime(2026, 3, 1, 10, 30))
    assert payload['subtotal'] == '84.75'
    assert payload['tax'] == '15.25'
    assert payload['total'] == '100.00'
    assert payload['date'] == '2026-03-01T10:30:00'
    assert payload['customerId'] == '7'
    assert payload['roundOff'] == '0.00'


def test_payload_items_and_payment_fields():
    s = BillSession(id=1, customer=PRIYA)
    s.add_product(SOAP)
    s.set_quantity(('1', None), 3)
    s.set_remarks('regular')
    s.set_payment(mode='Card', status='Paid')

    payload = build_payload(s)
    assert payload['items'] == [{
        'productId': '1', 'variantKey': None, 'name': 'Soap',
        'quantity': '3', 'price': '40.00', 'total': '120.00',
    }]
    assert payload['paymentMethod'] == 'Card'
    assert payload['status'] == 'Paid'
    assert payload['internalNotes'] == 'regular'
    assert payload['amountReceived'] == '141.60'


def test_payload_drops_rows_without_product_id():
    s = BillSession(id=1, customer=PRIYA)
    s.add_product(SOAP)
    s.add_product(ProductRecord(id='', name='Ghost', price=Decimal('1')))
    assert [row['name'] for row in build_payload(s)['items']] == ['Soap']


# ── 2. Preconditions ──────────────────────────────────────────────

def test_customer_checked_before_cart():
    store  = SessionStore()
    client = FakeClient()
    result = CheckoutCoordinator(store, client).submit()
    assert result.error_kind == 'CustomerRequired'
    assert client.payloads == []


def test_empty_cart_refused():
    store = SessionStore()
    store.active.set_customer(PRIYA)
    result = CheckoutCoordinator(store, FakeClient()).submit()
    assert result.error_kind == 'EmptyCart'
    assert store.active.state is BillState.DRAFT


def test_second_submit_while_in_flight_is_refused():
    store = ready_store()
    inner = {}

    def submit_again():
        inner['result'] = coordinator.submit()

    coordinator = CheckoutCoordinator(store, FakeClient(during=submit_again))
    result = coordinator.submit()

    assert result.ok
    assert inner['result'].error_kind == 'SubmissionInProgress'


# ── 3. Outcomes ───────────────────────────────────────────────────

def test_success_closes_tab_and_returns_receipt():
    storage = MemoryStorage()
    store   = ready_store(storage)
    store.new_tab()
    store.switch_tab(1)

    result = CheckoutCoordinator(store, FakeClient()).submit()

    assert result.ok
    receipt = result.value
    assert receipt.invoice_number == '2026-0011'
    assert receipt.invoice_id == '11'
    assert receipt.customer_id == '7'
    assert receipt.grand_total == Decimal('47.20')
    assert store.ids == [2]
    assert storage.blob['activeId'] == 2


def test_success_on_last_tab_leaves_fresh_bill():
    store  = ready_store()
    result = CheckoutCoordinator(store, FakeClient()).submit()
    assert result.ok
    assert store.ids == [1]
    assert store.active.is_empty
    assert store.active.customer is None


def test_transport_failure_keeps_draft_and_message():
    storage = MemoryStorage()
    store   = ready_store(storage)
    client  = FakeClient(error=CheckoutTransportFailed('Insufficient stock for "Soap".'))

    result = CheckoutCoordinator(store, client).submit()

    assert result.error_kind == 'CheckoutTransportFailed'
    assert result.message == 'Insufficient stock for "Soap".'
    assert store.active.state is BillState.DRAFT
    assert len(store.active.cart) == 1
    assert storage.blob['sessions'][0]['state'] == 'Draft'


def test_unexpected_client_error_is_wrapped():
    store  = ready_store()
    result = CheckoutCoordinator(store, FakeClient(error=RuntimeError('boom'))).submit()
    assert result.error_kind == 'CheckoutTransportFailed'
    assert result.message == 'boom'
    assert store.active.state is BillState.DRAFT


def test_failed_bill_can_be_resubmitted():
    store  = ready_store()
    client = FakeClient(error=CheckoutTransportFailed('offline'))
    coordinator = CheckoutCoordinator(store, client)
    assert not coordinator.submit().ok

    client.error = None
    assert coordinator.submit().ok


def test_ack_after_tab_closed_is_discarded():
    store = ready_store()
    store.new_tab()
    store.switch_tab(1)
    coordinator = CheckoutCoordinator(store, FakeClient(during=lambda: store.close_tab(1)))

    result = coordinator.submit()

    assert result.error_kind == 'CheckoutDiscarded'
    assert store.ids == [2]
    assert store.active_id == 2


def test_failure_after_tab_closed_does_not_resurrect_it():
    store = ready_store()
    store.new_tab()
    client = FakeClient(error=CheckoutTransportFailed('offline'),
                        during=lambda: store.close_tab(1))

    result = CheckoutCoordinator(store, client).submit(1)

    assert result.error_kind == 'CheckoutTransportFailed'
    assert store.ids == [2]


# Two stores restored from one storage stand in for two requests
# (a double-clicked Submit, or two terminals on one bills file).

def test_bill_in_flight_is_submitting_for_other_requests():
    storage = MemoryStorage()
    store   = ready_store(storage)
    other   = {}

    def second_request():
        restored = SessionStore.restore(storage)
        other['state']  = restored.active.state
        other['result'] = CheckoutCoordinator(restored, client).submit()

    client = FakeClient(during=second_request)
    result = CheckoutCoordinator(store, client).submit()

    assert result.ok
    assert other['state'] is BillState.SUBMITTING
    assert other['result'].error_kind == 'SubmissionInProgress'
    assert len(client.payloads) == 1


def test_abandoned_submission_can_be_retried():
    storage = MemoryStorage()
    store   = ready_store(storage)
    store.active.begin_submit()
    store.save()

    restored = SessionStore.restore(storage, submit_timeout=0)
    assert restored.active.state is BillState.DRAFT
    assert CheckoutCoordinator(restored, FakeClient()).submit().ok


def test_tab_closed_by_other_request_discards_ack_and_keeps_its_state():
    storage = MemoryStorage()
    store   = ready_store(storage)
    store.new_tab()
    store.switch_tab(1)

    def close_elsewhere():
        restored = SessionStore.restore(storage)
        restored.close_tab(1)
        restored.active.add_product(SOAP)
        restored.save()

    result = CheckoutCoordinator(store, FakeClient(during=close_elsewhere)).submit()

    assert result.error_kind == 'CheckoutDiscarded'
    assert [s['id'] for s in storage.blob['sessions']] == [2]
    assert storage.blob['activeId'] == 2
    assert storage.blob['sessions'][0]['cart'][0]['name'] == 'Soap'


def test_last_tab_reset_elsewhere_is_not_mistaken_for_the_bill():
    storage = MemoryStorage()
    store   = ready_store(storage)

    def close_elsewhere():
        restored = SessionStore.restore(storage)
        restored.close_tab(1)
        restored.active.set_remarks('new walk-in')
        restored.save()

    result = CheckoutCoordinator(store, FakeClient(during=close_elsewhere)).submit()

    assert result.error_kind == 'CheckoutDiscarded'
    assert storage.blob['sessions'][0]['remarks'] == 'new walk-in'
    assert storage.blob['sessions'][0]['cart'] == []


def test_success_keeps_tabs_opened_by_other_request():
    storage = MemoryStorage()
    store   = ready_store(storage)

    def open_elsewhere():
        restored = SessionStore.restore(storage)
        restored.new_tab().add_product(SOAP)
        restored.save()

    result = CheckoutCoordinator(store, FakeClient(during=open_elsewhere)).submit()

    assert result.ok
    assert store.ids == [2]
    assert storage.blob['activeId'] == 2
    assert storage.blob['sessions'][0]['cart'][0]['name'] == 'Soap'


def test_failure_keeps_edits_made_by_other_request():
    storage = MemoryStorage()
    store   = ready_store(storage)

    def edit_elsewhere():
        restored = SessionStore.restore(storage)
        restored.active.set_remarks('deliver by 6')
        restored.save()

    client = FakeClient(error=CheckoutTransportFailed('offline'), during=edit_elsewhere)
    result = CheckoutCoordinator(store, client).submit()

    assert result.error_kind == 'CheckoutTransportFailed'
    saved = storage.blob['sessions'][0]
    assert saved['state'] == 'Draft'
    assert saved['remarks'] == 'deliver by 6'
    assert store.active.remarks == 'deliver by 6'


def test_hooks_run_with_receipt_and_failures_are_ignored():
    seen = []

    def broken(receipt):
        raise RuntimeError('stats service down')

    coordinator = CheckoutCoordinator(ready_store(), FakeClient(), hooks=[broken])
    coordinator.add_hook(lambda receipt: seen.append(receipt.invoice_number))

    result = coordinator.submit()
    assert result.ok
    assert seen == ['2026-0011']


def test_commands_submit_uses_active_bill():
    store    = ready_store()
    commands = BillingCommands(store, CheckoutCoordinator(store, FakeClient()))
    commands.new_tab()
    result = commands.submit()
    assert result.error_kind == 'CustomerRequired'


# ── 4. HttpInvoiceClient ──────────────────────────────────────────

class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def test_http_client_posts_json_and_returns_ack():
    client = HttpInvoiceClient('http://invoices.local/api', token='t0k')
    body   = json.dumps({'_id': 'abc', 'invoiceNumber': 'INV-9'}).encode()

    with mock.patch('urllib.request.urlopen', return_value=FakeResponse(body)) as urlopen:
        ack = client.create_invoice({'total': '10.00'})

    request = urlopen.call_args[0][0]
    assert request.get_method() == 'POST'
    assert request.get_header('Authorization') == 'Bearer t0k'
    assert json.loads(request.data) == {'total': '10.00'}
    assert ack['id'] == 'abc'
    assert ack['invoiceNumber'] == 'INV-9'


def test_http_client_passes_backend_message_through():
    error = urllib.error.HTTPError(
        'http://invoices.local/api', 422, 'Unprocessable', {},
        io.BytesIO(b'{"message": "Customer is blocked"}'),
    )
    client = HttpInvoiceClient('http://invoices.local/api')
    with mock.patch('urllib.request.urlopen', side_effect=error):
        with pytest.raises(CheckoutTransportFailed) as exc:
            client.create_invoice({})
    assert exc.value.message == 'Customer is blocked'


def test_http_client_unreachable():
    client = HttpInvoiceClient('http://invoices.local/api')
    with mock.patch('urllib.request.urlopen',
                    side_effect=urllib.error.URLError('connection refused')):
        with pytest.raises(CheckoutTransportFailed) as exc:
            client.create_invoice({})
    assert 'unreachable' in exc.value.message


def test_http_client_rejects_non_json():
    client = HttpInvoiceClient('http://invoices.local/api')
    with mock.patch('urllib.request.urlopen', return_value=FakeResponse(b'<html>')):
        with pytest.raises(CheckoutTransportFailed):
            client.create_invoice({})


# ── 5. LocalInvoiceClient (database) ──────────────────────────────

def db_store(product, customer, quantity=2):
    store = SessionStore()
    store.active.set_customer(customer.to_ref())
    store.active.add_product(product.to_record())
    store.active.set_quantity((str(product.id), None), quantity)
    return store


def test_local_invoice_deducts_stock_and_numbers_invoice(app):
    product  = make_product(price='100.00', tax=5, stock=10)
    customer = make_customer(points=50)
    store    = db_store(product, customer)
    store.active.apply_loyalty_redemption(20)

    result = CheckoutCoordinator(store, LocalInvoiceClient(db.session)).submit()
    assert result.ok, result.message

    year    = datetime.now().year
    invoice = Invoice.query.one()
    assert result.value.invoice_number == f'{year}-0001'
    assert invoice.invoice_number == f'{year}-0001'
    assert invoice.total == Decimal('190.00')
    assert invoice.loyalty_redeemed == 20
    assert invoice.balance == Decimal('190.00')
    assert len(invoice.items) == 1

    assert db.session.get(Product, product.id).stock == 8
    assert db.session.get(Customer, customer.id).points == 30
    log = InventoryLog.query.one()
    assert (log.old_stock, log.new_stock) == (10, 8)


def test_local_invoice_numbers_are_sequential(app):
    product  = make_product(stock=10)
    customer = make_customer()
    client   = LocalInvoiceClient(db.session)

    first  = CheckoutCoordinator(db_store(product, customer, 1), client).submit()
    second = CheckoutCoordinator(db_store(product, customer, 1), client).submit()

    assert first.value.invoice_number.endswith('-0001')
    assert second.value.invoice_number.endswith('-0002')
    assert db.session.get(InvoiceSequence, datetime.now().year).last_seq == 2


def test_local_invoice_insufficient_stock_rolls_back(app):
    product  = make_product(name='Mouse', stock=1)
    customer = make_customer()
    store    = db_store(product, customer, quantity=3)

    result = CheckoutCoordinator(store, LocalInvoiceClient(db.session)).submit()

    assert result.error_kind == 'CheckoutTransportFailed'
    assert 'Insufficient stock' in result.message
    assert store.active.state is BillState.DRAFT
    assert Invoice.query.count() == 0
    assert db.session.get(Product, product.id).stock == 1
    assert InvoiceSequence.query.count() == 0


def test_failed_checkout_does_not_leave_a_gap_in_the_series(app):
    product  = make_product(name='Mouse', stock=2)
    customer = make_customer()
    client   = LocalInvoiceClient(db.session)

    CheckoutCoordinator(db_store(product, customer, 1), client).submit()
    failed = CheckoutCoordinator(db_store(product, customer, 5), client).submit()
    after  = CheckoutCoordinator(db_store(product, customer, 1), client).submit()

    assert failed.error_kind == 'CheckoutTransportFailed'
    assert after.value.invoice_number == format_invoice_number(datetime.now().year, 2)
    assert [i.invoice_number[-4:] for i in Invoice.query.order_by(Invoice.id)] == ['0001', '0002']


def test_rolled_back_reservation_is_handed_out_again(app):
    assert generate_invoice_number(db.session, year=2026) == '2026-0001'
    db.session.rollback()
    assert generate_invoice_number(db.session, year=2026) == '2026-0001'
    db.session.commit()
    assert generate_invoice_number(db.session, year=2026) == '2026-0002'


def test_invoice_number_grows_past_four_digits():
    assert format_invoice_number(2026, 7) == '2026-0007'
    assert format_invoice_number(2026, 10000) == '2026-10000'


def test_local_invoice_deducts_variant_stock(app):
    product = make_product(name='Tee', stock=0)
    variant = ProductVariant(product_id=product.id, name='M', price=Decimal('499.00'), stock=5)
    db.session.add(variant)
    db.session.commit()
    customer = make_customer()

    store = SessionStore()
    store.active.set_customer(customer.to_ref())
    store.active.add_variant(product.to_record(), variant.to_record(), str(variant.id), 2)

    result = CheckoutCoordinator(store, LocalInvoiceClient(db.session)).submit()
    assert result.ok, result.message
    assert db.session.get(ProductVariant, variant.id).stock == 3
    assert db.session.get(Product, product.id).stock == 0
    assert Invoice.query.one().items[0].variant_id == variant.id


def test_local_invoice_weighed_quantity_uses_whole_units(app):
    product  = make_product(name='Dal', stock=5)
    customer = make_customer()
    store    = db_store(product, customer, quantity='1.5')

    assert CheckoutCoordinator(store, LocalInvoiceClient(db.session)).submit().ok
    assert db.session.get(Product, product.id).stock == 3


# ── 6. Refresh hooks ──────────────────────────────────────────────

def test_points_earned_rounds_down():
    assert points_earned(Decimal('995'), Decimal('100')) == 9
    assert points_earned(Decimal('99.99'), Decimal('100')) == 0
    assert points_earned(Decimal('500'), Decimal('0')) == 0


def test_refresh_hooks_update_customer_and_flag_low_stock(app):
    product  = make_product(price='500.00', tax=0, stock=6)
    customer = make_customer(points=0)
    store    = db_store(product, customer, quantity=2)

    coordinator = CheckoutCoordinator(
        store, LocalInvoiceClient(db.session),
        hooks=[refresh_products, refresh_customers],
    )
    receipt = coordinator.submit().value

    refreshed = db.session.get(Customer, customer.id)
    assert refreshed.points == 10          # ₹1000 / ₹100 per point
    assert refreshed.visits == 1
    assert refreshed.total_spent == Decimal('1000.00')
    assert refreshed.last_visit is not None

    low = refresh_products(receipt)
    assert [p.id for p in low] == [product.id]
