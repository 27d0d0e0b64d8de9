"""Core payment reconciliation logic."""
from .authorization import ActorContext, Role, is_admin, is_owner, is_owner_or_admin
from .currency import CurrencyConversion, convert_to_usd_with_fee
from .errors import (
    PaymentAuthorizationError,
    PaymentConflictError,
    PaymentError,
    PaymentNotFoundError,
    PaymentValidationError,
)

__all__ = [
    "ActorContext",
    "Role",
    "is_admin",
    "is_owner",
    "is_owner_or_admin",
    "CurrencyConversion",
    "convert_to_usd_with_fee",
    "PaymentError",
    "PaymentValidationError",
    "PaymentAuthorizationError",
    "PaymentNotFoundError",
    "PaymentConflictError",
]
