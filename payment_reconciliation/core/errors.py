"""
Error taxonomy for payment reconciliation.

Every error raised by this package is a PaymentError. The subclasses are
caller-fixable and carry the HTTP status class a request layer should map
them to; a bare PaymentError is an integration or infrastructure failure.
"""
from typing import Optional


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    status_code = 500

    def __init__(self, message: str, operation: Optional[str] = None):
        if operation:
            message = f"{operation}: {message}"
        super().__init__(message)
        self.operation = operation


class PaymentValidationError(PaymentError):
    """Bad or missing input, invalid signature, non-completed capture, amount bounds."""

    status_code = 400


class PaymentAuthorizationError(PaymentError):
    """Actor is neither the owner nor an admin where one is required."""

    status_code = 403


class PaymentNotFoundError(PaymentError):
    """Referenced payment or order does not exist."""

    status_code = 404


class PaymentConflictError(PaymentError):
    """Duplicate completed payment, or a write against a frozen payment."""

    status_code = 409
