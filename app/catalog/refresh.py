"""
app/catalog/refresh.py
----------------------
Post-checkout refreshes, registered as CheckoutCoordinator hooks.

They run after the invoice is confirmed and never undo it: the
coordinator logs a failing hook and moves on.
"""
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR

from flask import current_app

from app import db
from app.catalog.models import Customer, Product


def refresh_products(receipt) -> list:
    """Warn about products the sale pushed to (or below) the low-stock line."""
    ids = {int(row['productId']) for row in receipt.payload.get('items', [])}
    if not ids:
        return []

    low = Product.query.filter(Product.id.in_(ids)).all()
    low = [p for p in low if p.is_low_stock]
    for p in low:
        current_app.logger.warning(f'Low stock after sale: {p.name!r} ({p.stock} left)')
    return low


def points_earned(total, earn_per) -> int:
    """1 point for every `earn_per` of grand total, rounded down."""
    earn_per = Decimal(str(earn_per))
    if earn_per <= 0:
        return 0
    return int((Decimal(str(total)) / earn_per).to_integral_value(rounding=ROUND_FLOOR))


def refresh_customers(receipt):
    """Accrue loyalty points and bump visit / spend statistics."""
    customer = db.session.get(Customer, int(receipt.customer_id))
    if customer is None:
        return None

    earned = points_earned(receipt.grand_total, current_app.config['LOYALTY_EARN_PER'])
    customer.points      += earned
    customer.total_spent  = Decimal(str(customer.total_spent or 0)) + receipt.grand_total
    customer.visits       = (customer.visits or 0) + 1
    customer.last_visit   = datetime.utcnow()
    db.session.commit()

    current_app.logger.info(
        f'Customer {customer.id} earned {earned} pts on {receipt.invoice_number}'
    )
    return customer
