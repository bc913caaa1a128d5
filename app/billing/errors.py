"""
app/billing/errors.py
---------------------
Typed billing errors and the result object returned at the command boundary.

Engine code raises BillingError subclasses; BillingCommands catches them
and hands the caller a CommandResult instead, so nothing escapes a command
as an uncaught exception.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Optional


class BillingError(Exception):
    """Every subclass carries a stable `kind` string."""
    kind = 'BillingError'

    def __init__(self, message: str = ''):
        super().__init__(message or self.kind)
        self.message = message or self.kind


class InvalidQuantity(BillingError):
    kind = 'InvalidQuantity'


class InvalidAmount(BillingError):
    kind = 'InvalidAmount'


class RequiresVariantSelection(BillingError):
    kind = 'RequiresVariantSelection'

    def __init__(self, product_id: str, message: str = ''):
        super().__init__(message or f'Product {product_id} has variants; pick one first.')
        self.product_id = product_id


class ItemNotFound(BillingError):
    kind = 'ItemNotFound'


class SessionNotFound(BillingError):
    kind = 'SessionNotFound'


class CustomerRequired(BillingError):
    kind = 'CustomerRequired'


class EmptyCart(BillingError):
    kind = 'EmptyCart'


class LoyaltyOverRedemption(BillingError):
    kind = 'LoyaltyOverRedemption'


class SubmissionInProgress(BillingError):
    kind = 'SubmissionInProgress'


class PersistenceWriteFailed(BillingError):
    kind = 'PersistenceWriteFailed'


class CheckoutTransportFailed(BillingError):
    kind = 'CheckoutTransportFailed'


class CheckoutDiscarded(BillingError):
    kind = 'CheckoutDiscarded'


@dataclass
class CommandResult:
    ok:        bool
    value:     Any = None
    error:     Optional[BillingError] = None
    persisted: bool = True   # False → state changed in memory, storage write failed

    @classmethod
    def success(cls, value=None) -> 'CommandResult':
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: BillingError) -> 'CommandResult':
        return cls(ok=False, error=error)

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error else None

    @property
    def message(self) -> str:
        return self.error.message if self.error else ''
