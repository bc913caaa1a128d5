from datetime import datetime
from decimal import Decimal
from app import db


class InvoiceSequence(db.Model):
    """
    One row per calendar year — holds the last-used invoice sequence number.

    Why a dedicated table instead of COUNT(invoices)?
    ─────────────────────────────────────────────────
    COUNT inside a transaction is NOT safe under concurrent writes:

        Tx A: COUNT = 15  →  next = 16   ┐
        Tx B: COUNT = 15  →  next = 16   ┘  ← both generate 2026-0016

    With this table + SELECT FOR UPDATE the second transaction blocks until
    the first commits, then reads the incremented value.
    """
    __tablename__ = 'invoice_sequences'

    year     = db.Column(db.Integer, primary_key=True)   # e.g. 2026
    last_seq = db.Column(db.Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<InvoiceSequence year={self.year} last_seq={self.last_seq}>"


class Invoice(db.Model):
    """
    One submitted bill.  Every figure is a snapshot of the checkout
    payload; later product or customer edits never alter it.
    """
    __tablename__ = 'invoices'

    id                 = db.Column(db.Integer, primary_key=True)
    invoice_number     = db.Column(db.String(20), unique=True, nullable=False, index=True)
    customer_id        = db.Column(db.Integer, db.ForeignKey('customers.id'), nullable=True)
    customer_name      = db.Column(db.String(100), nullable=False)
    billed_at          = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    gross_total        = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    item_discount      = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    subtotal           = db.Column(db.Numeric(12, 2), nullable=False)   # taxable value
    tax                = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount           = db.Column(db.Numeric(12, 2), nullable=False, default=0)   # bill + loyalty
    additional_charges = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    round_off          = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total              = db.Column(db.Numeric(12, 2), nullable=False)

    payment_method     = db.Column(db.String(20), nullable=False, default='Cash')
    status             = db.Column(db.String(20), nullable=False, default='Paid')
    amount_received    = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    loyalty_redeemed   = db.Column(db.Integer, nullable=False, default=0)
    internal_notes     = db.Column(db.Text, nullable=False, default='')

    # ── Relationships ─────────────────────────────────────────────
    customer = db.relationship('Customer', backref='invoices', lazy='select')
    items    = db.relationship('InvoiceItem', backref='invoice', lazy='select',
                               cascade='all, delete-orphan')

    # ── Computed helpers ──────────────────────────────────────────
    @property
    def balance(self) -> Decimal:
        """What the customer still owes on this invoice."""
        return max(Decimal('0'), Decimal(str(self.total)) - Decimal(str(self.amount_received)))

    def to_ack(self) -> dict:
        return {
            'id':            self.id,
            'invoiceNumber': self.invoice_number,
            'total':         str(self.total),
            'status':        self.status,
        }

    def __repr__(self):
        return f"<Invoice {self.invoice_number!r} ₹{self.total}>"


class InvoiceItem(db.Model):
    """One line of an Invoice, frozen at billing time."""
    __tablename__ = 'invoice_items'

    id          = db.Column(db.Integer, primary_key=True)
    invoice_id  = db.Column(db.Integer, db.ForeignKey('invoices.id'), nullable=False)
    product_id  = db.Column(db.Integer, db.ForeignKey('products.id'), nullable=False)
    variant_id  = db.Column(db.Integer, db.ForeignKey('product_variants.id'), nullable=True)
    name        = db.Column(db.String(200), nullable=False)
    quantity    = db.Column(db.Numeric(10, 3), nullable=False)
    price       = db.Column(db.Numeric(10, 2), nullable=False)   # unit price snapshot
    total       = db.Column(db.Numeric(12, 2), nullable=False)   # after item discount

    product = db.relationship('Product', lazy='select')

    def __repr__(self):
        return f"<InvoiceItem invoice={self.invoice_id} product={self.product_id} qty={self.quantity}>"
