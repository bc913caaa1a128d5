"""
app/billing/routes.py
---------------------
JSON endpoints for the billing screen — one per command.

Every endpoint acts on the active bill of the caller's store and answers
with the fresh snapshot:

    {"activeId": 2, "tabs": [1, 2], "bill": {...}, "balance_due": "0", ...}

or, when the command was refused:

    {"error": "InvalidQuantity", "message": "..."}   (4xx / 502)
"""
from decimal import Decimal
from flask import current_app, g, jsonify, request

from app import db
from app.billing import billing
from app.billing.checkout import CheckoutCoordinator
from app.billing.commands import BillingCommands
from app.billing.invoicing import HttpInvoiceClient, LocalInvoiceClient
from app.billing.storage import FlaskSessionStorage, JsonFileStorage
from app.billing.store import SessionStore
from app.catalog.models import Customer, Product, ProductVariant
from app.catalog.refresh import refresh_customers, refresh_products


STATUS_BY_KIND = {
    'ItemNotFound':            404,
    'SessionNotFound':         404,
    'SubmissionInProgress':    409,
    'CheckoutDiscarded':       409,
    'CheckoutTransportFailed': 502,
}


# ── Wiring ────────────────────────────────────────────────────────

def _storage():
    if current_app.config['BILL_STORAGE'] == 'file':
        return JsonFileStorage(current_app.config['BILL_STORAGE_PATH'])
    return FlaskSessionStorage()


def _invoice_client():
    url = current_app.config.get('INVOICE_API_URL')
    if url:
        return HttpInvoiceClient(
            url,
            timeout=current_app.config['INVOICE_API_TIMEOUT'],
            token=current_app.config.get('INVOICE_API_TOKEN'),
        )
    return LocalInvoiceClient(db.session)


def get_commands() -> BillingCommands:
    """One store + command set per request, restored from storage."""
    if 'billing_commands' not in g:
        store = SessionStore.restore(
            _storage(),
            tax_mode=current_app.config['TAX_MODE'],
            submit_timeout=current_app.config['SUBMIT_TIMEOUT'],
        )
        coordinator = CheckoutCoordinator(
            store,
            _invoice_client(),
            hooks=[refresh_products, refresh_customers],
        )
        g.billing_commands = BillingCommands(
            store,
            coordinator,
            conversion_rate=current_app.config['LOYALTY_CONVERSION_RATE'],
        )
    return g.billing_commands


# ── Helpers ───────────────────────────────────────────────────────

def _body() -> dict:
    return request.get_json(silent=True) or request.form.to_dict() or {}


def _int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _customer(customer_id):
    customer_id = _int(customer_id)
    return db.session.get(Customer, customer_id) if customer_id else None


def _flag(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on', 'percent')


def _item_key(data: dict):
    variant_key = data.get('variant_key')
    return (str(data.get('product_id', '')),
            None if variant_key in (None, '') else str(variant_key))


def _error(kind, message, status=400, **extra):
    payload = {'error': kind, 'message': message}
    payload.update(extra)
    return jsonify(payload), status


def _respond(result, status=200):
    if not result.ok:
        return _error(result.error_kind, result.message,
                      STATUS_BY_KIND.get(result.error_kind, 400))

    snapshot = get_commands().snapshot().value
    if not result.persisted:
        snapshot['warning'] = 'PersistenceWriteFailed'
    return jsonify(snapshot), status


# ── Snapshot ──────────────────────────────────────────────────────

@billing.route('/')
def index():
    """Active bill + tab strip."""
    return _respond(get_commands().snapshot())


# ── Cart ──────────────────────────────────────────────────────────

@billing.route('/items', methods=['POST'])
def add_item():
    """
    Add to the active bill by barcode or by id.

    A product barcode adds one unit of the base product; a variant barcode
    adds that exact variant.  A product with variants and no variant
    chosen answers RequiresVariantSelection with the variants to pick from.
    """
    data     = _body()
    barcode  = str(data.get('barcode', '')).strip()
    quantity = data.get('quantity', 1)
    commands = get_commands()

    variant = None
    if barcode:
        product = Product.query.filter_by(barcode=barcode, is_active=True).first()
        if product is None:
            variant = ProductVariant.query.filter_by(barcode=barcode, is_active=True).first()
            product = variant.product if variant else None
        if product is None:
            return _error('ProductNotFound', f'No product found for barcode "{barcode}".', 404)
    else:
        product_id = _int(data.get('product_id'))
        product    = db.session.get(Product, product_id) if product_id else None
        if product is None or not product.is_active:
            return _error('ProductNotFound', 'Product not found.', 404)
        if data.get('variant_id') not in (None, ''):
            variant_id = _int(data['variant_id'])
            variant    = db.session.get(ProductVariant, variant_id) if variant_id else None
            if variant is None or variant.product_id != product.id:
                return _error('ItemNotFound', 'Variant not found for this product.', 404)

    record = product.to_record()
    if variant is not None:
        result = commands.add_variant(record, variant.to_record(), str(variant.id), quantity)
    else:
        result = commands.add_product(record)

    if not result.ok and result.error_kind == 'RequiresVariantSelection':
        return _error(result.error_kind, result.message, 400, variants=[
            {'variant_id': v.id, 'name': v.name, 'price': str(v.price), 'stock': v.stock}
            for v in product.variants if v.is_active
        ])
    return _respond(result)


@billing.route('/items/quantity', methods=['POST', 'PATCH'])
def change_quantity():
    data = _body()
    return _respond(get_commands().change_quantity(_item_key(data), data.get('quantity')))


@billing.route('/items/discount', methods=['POST'])
def item_discount():
    data = _body()
    return _respond(get_commands().apply_item_discount(
        _item_key(data), data.get('value', 0), _flag(data.get('is_percent', False))
    ))


@billing.route('/items/remove', methods=['POST'])
def remove_item():
    return _respond(get_commands().remove_item(_item_key(_body())))


# ── Bill level ────────────────────────────────────────────────────

@billing.route('/charges', methods=['POST'])
def additional_charges():
    return _respond(get_commands().apply_additional_charges(_body().get('value', 0)))


@billing.route('/discount', methods=['POST'])
def bill_discount():
    data = _body()
    return _respond(get_commands().apply_bill_discount(
        data.get('value', 0), _flag(data.get('is_percent', False))
    ))


@billing.route('/loyalty', methods=['POST'])
def loyalty():
    """Redeem points against the attached customer's live balance."""
    commands = get_commands()
    customer = commands.active.customer
    available = 0
    if customer is not None:
        row = _customer(customer.id)
        available = row.points if row else 0
    return _respond(commands.apply_loyalty_redemption(_body().get('points', 0), available))


@billing.route('/remarks', methods=['POST'])
def remarks():
    return _respond(get_commands().set_remarks(_body().get('remarks', '')))


@billing.route('/payment', methods=['POST'])
def payment():
    data = _body()
    return _respond(get_commands().set_payment(
        mode=data.get('mode'),
        status=data.get('status'),
        amount_received=data.get('amount_received'),
    ))


# ── Customer ──────────────────────────────────────────────────────

@billing.route('/customer', methods=['GET'])
def current_customer():
    result = get_commands().open_customer_search()
    customer = result.value
    return jsonify({'customer': customer.to_dict() if customer else None})


@billing.route('/customer', methods=['POST'])
def attach_customer():
    customer = _customer(_body().get('customer_id'))
    if customer is None:
        return _error('CustomerNotFound', 'Customer not found.', 404)
    return _respond(get_commands().select_customer(customer.to_ref()))


@billing.route('/customer', methods=['DELETE'])
def detach_customer():
    return _respond(get_commands().clear_customer())


# ── Tabs ──────────────────────────────────────────────────────────

@billing.route('/tabs', methods=['POST'])
def new_tab():
    return _respond(get_commands().new_tab(), 201)


@billing.route('/tabs/<int:session_id>/close', methods=['POST'])
def close_tab(session_id):
    return _respond(get_commands().close_tab(session_id))


@billing.route('/tabs/<int:session_id>/activate', methods=['POST'])
def switch_tab(session_id):
    return _respond(get_commands().switch_tab(session_id))


# ── Checkout ──────────────────────────────────────────────────────

@billing.route('/submit', methods=['POST'])
def submit():
    """Checkout the active bill; on success the tab is closed."""
    result = get_commands().submit()
    if not result.ok:
        return _respond(result)

    receipt = result.value
    current_app.logger.info(
        f'Invoice {receipt.invoice_number} | Customer {receipt.customer_id} '
        f'| Total: ₹{receipt.grand_total.quantize(Decimal("0.01"))}'
    )
    snapshot = get_commands().snapshot().value
    return jsonify({'receipt': receipt.to_dict(), **snapshot}), 201
