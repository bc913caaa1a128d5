"""
app/billing/commands.py
-----------------------
The command surface the billing screen drives, one method per action
(keyboard shortcut, button, scan).  Every command works on the active
bill, persists the store afterwards, and returns a CommandResult:

    result = commands.change_quantity(('42', None), 3)
    if result.ok:
        render(result.value)               # the updated BillSession
    else:
        flash(result.error_kind, result.message)

BillingError never escapes a command.
"""
from functools import wraps

from app.billing.discounts import DEFAULT_CONVERSION_RATE
from app.billing.errors import BillingError, CommandResult, ItemNotFound


def command(f):
    """
    Run a command against the store: BillingError → failure result;
    success → persist, then wrap the return value.
    """
    @wraps(f)
    def decorated(self, *args, **kwargs):
        try:
            value = f(self, *args, **kwargs)
        except BillingError as exc:
            return CommandResult.failure(exc)
        result = CommandResult.success(value)
        result.persisted = self.store.save()
        return result
    return decorated


def query(f):
    """Read-only command: no persistence, same error handling."""
    @wraps(f)
    def decorated(self, *args, **kwargs):
        try:
            return CommandResult.success(f(self, *args, **kwargs))
        except BillingError as exc:
            return CommandResult.failure(exc)
    return decorated


class BillingCommands:

    def __init__(self, store, coordinator=None,
                 conversion_rate=DEFAULT_CONVERSION_RATE):
        self.store           = store
        self.coordinator     = coordinator
        self.conversion_rate = conversion_rate

    @property
    def active(self):
        return self.store.active

    # ── Read ──────────────────────────────────────────────────────

    @query
    def snapshot(self) -> dict:
        """Active bill plus the tab strip."""
        bill = self.active
        return {
            'activeId':    self.store.active_id,
            'tabs':        self.store.ids,
            'bill':        bill.to_dict(),
            'balance_due': str(bill.balance_due),
            'change_due':  str(bill.change_due),
        }

    @query
    def open_customer_search(self):
        """Hand back the current customer to prefill the search."""
        return self.active.customer

    # ── Cart ──────────────────────────────────────────────────────

    @command
    def add_product(self, product):
        self.active.add_product(product)
        return self.active

    @command
    def add_variant(self, product, variant=None, variant_key=None, quantity=1):
        if variant is None:
            variant = product.variant(str(variant_key))
            if variant is None:
                raise ItemNotFound(f'Product {product.id} has no variant {variant_key!r}.')
        if variant_key is None:
            variant_key = variant.key
        self.active.add_variant(product, variant, variant_key, quantity)
        return self.active

    @command
    def change_quantity(self, key, quantity):
        self.active.set_quantity(key, quantity)
        return self.active

    @command
    def apply_item_discount(self, key, value, is_percent=False):
        self.active.apply_item_discount(key, value, is_percent)
        return self.active

    @command
    def remove_item(self, key):
        self.active.remove_item(key)
        return self.active

    # ── Bill level ────────────────────────────────────────────────

    @command
    def apply_additional_charges(self, value):
        self.active.apply_additional_charges(value)
        return self.active

    @command
    def apply_bill_discount(self, value, is_percent=False):
        self.active.apply_bill_discount(value, is_percent)
        return self.active

    @command
    def apply_loyalty_redemption(self, points, available_points=None):
        self.active.apply_loyalty_redemption(points, available_points, self.conversion_rate)
        return self.active

    @command
    def set_remarks(self, text):
        self.active.set_remarks(text)
        return self.active

    @command
    def set_payment(self, mode=None, status=None, amount_received=None):
        self.active.set_payment(mode=mode, status=status, amount_received=amount_received)
        return self.active

    @command
    def select_customer(self, customer):
        self.active.set_customer(customer)
        return self.active

    @command
    def clear_customer(self):
        self.active.clear_customer()
        return self.active

    # ── Tabs ──────────────────────────────────────────────────────

    @command
    def new_tab(self):
        return self.store.new_tab()

    @command
    def close_tab(self, session_id=None):
        return self.store.close_tab(session_id)

    @command
    def switch_tab(self, session_id):
        return self.store.switch_tab(session_id)

    # ── Checkout ──────────────────────────────────────────────────

    def submit(self) -> CommandResult:
        """Checkout the active bill.  The coordinator persists on its own."""
        return self.coordinator.submit(self.store.active_id)
