from decimal import Decimal
from datetime import datetime
from app import db
from app.billing.records import CustomerRef, ProductRecord, VariantRecord

# ── Central threshold, applies everywhere ────────────────────────
LOW_STOCK_THRESHOLD = 5


class Product(db.Model):
    """A sellable catalog entry.  May carry variants."""
    __tablename__ = 'products'

    id        = db.Column(db.Integer, primary_key=True)
    name      = db.Column(db.String(200), nullable=False, index=True)
    sku       = db.Column(db.String(60), nullable=True)
    barcode   = db.Column(db.String(100), unique=True, nullable=True, index=True)
    unit      = db.Column(db.String(20), nullable=False, default='pcs')
    price     = db.Column(db.Numeric(10, 2), nullable=False)
    stock     = db.Column(db.Integer, nullable=False, default=0)
    tax_rate  = db.Column(db.Numeric(5, 2), nullable=False, default=0)   # percent
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow
    )

    variants = db.relationship('ProductVariant', backref='product', lazy='select',
                               order_by='ProductVariant.id',
                               cascade='all, delete-orphan')

    __table_args__ = (
        db.CheckConstraint('stock >= 0', name='check_stock_non_negative'),
        db.CheckConstraint('price >= 0', name='check_price_non_negative'),
        db.CheckConstraint('tax_rate >= 0', name='check_tax_rate_non_negative'),
    )

    @property
    def is_low_stock(self) -> bool:
        """True when stock is at or below LOW_STOCK_THRESHOLD."""
        return self.stock <= LOW_STOCK_THRESHOLD

    def to_record(self) -> ProductRecord:
        """Read-only snapshot for the checkout engine."""
        return ProductRecord(
            id=str(self.id),
            name=self.name,
            price=Decimal(str(self.price)),
            tax_rate_percent=Decimal(str(self.tax_rate or 0)),
            sku=self.sku or '',
            unit=self.unit or 'pcs',
            barcode=self.barcode or '',
            variants=tuple(v.to_record() for v in self.variants if v.is_active),
        )

    def __repr__(self):
        return f"<Product {self.barcode!r} {self.name!r}>"


class ProductVariant(db.Model):
    """Size / colour / pack variant with its own price and stock."""
    __tablename__ = 'product_variants'

    id         = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey('products.id', ondelete='CASCADE'),
                           nullable=False, index=True)
    name       = db.Column(db.String(120), nullable=False)
    sku        = db.Column(db.String(60), nullable=True)
    barcode    = db.Column(db.String(100), unique=True, nullable=True, index=True)
    price      = db.Column(db.Numeric(10, 2), nullable=False)
    stock      = db.Column(db.Integer, nullable=False, default=0)
    tax_rate   = db.Column(db.Numeric(5, 2), nullable=True)   # NULL → product rate
    is_active  = db.Column(db.Boolean, nullable=False, default=True)

    __table_args__ = (
        db.CheckConstraint('stock >= 0', name='check_variant_stock_non_negative'),
    )

    def to_record(self) -> VariantRecord:
        return VariantRecord(
            key=str(self.id),
            name=self.name,
            price=Decimal(str(self.price)),
            sku=self.sku or '',
            barcode=self.barcode or '',
            stock=self.stock,
            tax_rate_percent=None if self.tax_rate is None else Decimal(str(self.tax_rate)),
        )

    def __repr__(self):
        return f"<ProductVariant {self.id} of P:{self.product_id} {self.name!r}>"


class Customer(db.Model):
    __tablename__ = 'customers'

    id          = db.Column(db.Integer, primary_key=True)
    name        = db.Column(db.String(100), nullable=False)
    phone       = db.Column(db.String(20), unique=True, nullable=False, index=True)
    email       = db.Column(db.String(120), nullable=True)
    points      = db.Column(db.Integer, default=0, nullable=False)
    total_spent = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    visits      = db.Column(db.Integer, default=0, nullable=False)
    last_visit  = db.Column(db.DateTime, nullable=True)
    created_at  = db.Column(db.DateTime, default=datetime.utcnow)

    def to_ref(self) -> CustomerRef:
        return CustomerRef(
            id=str(self.id),
            name=self.name,
            phone=self.phone,
            loyalty_points=self.points or 0,
        )

    def __repr__(self):
        return f"<Customer {self.name} ({self.phone}) Pts:{self.points}>"


class InventoryLog(db.Model):
    """
    Audit trail for stock changes.
    Tracks old vs new stock and why.
    """
    __tablename__ = 'inventory_logs'

    id         = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey('products.id'), nullable=False)
    variant_id = db.Column(db.Integer, db.ForeignKey('product_variants.id'), nullable=True)
    old_stock  = db.Column(db.Integer, nullable=False)
    new_stock  = db.Column(db.Integer, nullable=False)
    reason     = db.Column(db.String(255), nullable=False)
    timestamp  = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    product = db.relationship('Product', backref=db.backref('logs', lazy='select'))

    def __repr__(self):
        return f"<Log Product:{self.product_id} {self.old_stock}->{self.new_stock} ({self.reason})>"
