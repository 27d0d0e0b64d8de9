"""
Refund engine.

Admin-only refunds, full or partial, dispatched to the gateway that took the
money. Cash-on-delivery refunds are settled by hand and get a synthetic id.
The cumulative bound is enforced again by the store, atomically; the check
here only avoids calling a gateway for a refund that can never be recorded.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from payment_reconciliation.config import Settings, get_settings
from payment_reconciliation.core.authorization import ActorContext, is_admin
from payment_reconciliation.core.errors import (
    PaymentAuthorizationError,
    PaymentConflictError,
    PaymentError,
    PaymentNotFoundError,
    PaymentValidationError,
)
from payment_reconciliation.database.models import (
    REFUNDABLE_STATUSES,
    Payment,
    PaymentMethod,
    PaymentStatus,
)
from payment_reconciliation.database.store import PaymentRecordStore
from payment_reconciliation.integrations.base import GatewayError
from payment_reconciliation.integrations.paypal_client import PayPalClient
from payment_reconciliation.integrations.razorpay_client import RazorpayClient
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class RefundEngine:
    """Issues refunds through the owning gateway and records them."""

    def __init__(
        self,
        store: PaymentRecordStore,
        razorpay_client: Optional[RazorpayClient] = None,
        paypal_client: Optional[PayPalClient] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.razorpay_client = razorpay_client or RazorpayClient(self.settings)
        self.paypal_client = paypal_client or PayPalClient(self.settings)

    @staticmethod
    def _refund_amount(payment: Payment, amount: Any) -> Decimal:
        remaining = payment.remaining_balance
        if amount is None:
            return remaining
        try:
            value = Decimal(str(amount))
        except (ArithmeticError, ValueError) as e:
            raise PaymentValidationError("refund amount must be a decimal amount") from e
        if not value.is_finite() or value <= 0:
            raise PaymentValidationError("Refund amount must be positive")
        if value > remaining:
            raise PaymentValidationError(
                f"Refund of {value} exceeds remaining balance {remaining} {payment.currency}"
            )
        return value

    async def _issue_gateway_refund(
        self, payment: Payment, amount: Decimal, reason: Optional[str]
    ) -> str:
        """Refund at the gateway and return the refund id to record."""
        if payment.method == PaymentMethod.RAZORPAY.value:
            razorpay_payment_id = payment.razorpay_payment_id or payment.gateway_payment_id
            if not razorpay_payment_id:
                raise PaymentValidationError("payment has no Razorpay payment id")
            refund = await self.razorpay_client.refund(
                razorpay_payment_id,
                amount=amount,
                notes={"payment_id": payment.id, "reason": reason or ""},
            )
            return refund.id

        if payment.method == PaymentMethod.PAYPAL.value:
            capture_id = payment.paypal_capture_id or payment.gateway_payment_id
            if not capture_id:
                raise PaymentValidationError("payment has no PayPal capture id")
            refund = await self.paypal_client.refund(
                capture_id,
                amount=amount,
                currency=payment.currency,
                note=reason,
                # Same payment state, same key: PayPal drops the retried duplicate
                request_id=f"refund-{payment.id}-{payment.version}",
            )
            return refund.id

        if payment.method == PaymentMethod.COD.value:
            return f"manual_refund_{uuid.uuid4().hex}"

        raise PaymentValidationError(f"Cannot refund {payment.method} payments")

    async def refund(
        self,
        payment_id: str,
        ctx: ActorContext,
        amount: Any = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Refund a completed or partially refunded payment.

        Args:
            payment_id: Payment to refund
            ctx: Caller; must be an admin
            amount: Amount to refund now, defaults to the remaining balance
            reason: Free-text reason stored on the payment

        Returns:
            Dict[str, Any]: refund id, amounts and the resulting status

        Raises:
            PaymentAuthorizationError: caller is not an admin
            PaymentNotFoundError: payment does not exist
            PaymentValidationError: not refundable, amount out of bounds, no gateway id
            PaymentConflictError: a concurrent refund changed the payment first
            PaymentError: the gateway refund failed
        """
        operation = "refund_payment"
        correlation_id = str(uuid.uuid4())
        log = logger.bind(correlation_id=correlation_id, payment_id=payment_id)

        if not is_admin(ctx):
            log.warning("refund_denied", user_id=ctx.user_id)
            raise PaymentAuthorizationError("refunds require the admin role", operation)

        payment = await self.store.find_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found", operation)

        if payment.status not in REFUNDABLE_STATUSES:
            raise PaymentValidationError(
                f"Cannot refund payment with status: {payment.status}", operation
            )

        try:
            refund_amount = self._refund_amount(payment, amount)
            log.info(
                "refund_started",
                method=payment.method,
                amount=str(refund_amount),
                admin_id=ctx.user_id,
            )
            refund_id = await self._issue_gateway_refund(payment, refund_amount, reason)
        except PaymentValidationError as e:
            raise PaymentValidationError(str(e), operation) from e
        except GatewayError as e:
            metrics.record_refund(payment.method, "failed", refund_amount, payment.currency)
            log.error("gateway_refund_failed", error=str(e), error_type=e.error_type.value)
            raise PaymentError(str(e), operation) from e

        try:
            updated = await self.store.refund(
                payment.id,
                amount=refund_amount,
                reason=reason,
                refund_id=refund_id,
                correlation_id=correlation_id,
            )
        except PaymentConflictError:
            log.critical(
                "refund_issued_but_not_recorded",
                refund_id=refund_id,
                amount=str(refund_amount),
            )
            raise

        if updated.status == PaymentStatus.REFUNDED.value:
            await self.store.mark_order_refunded(updated.order_id)

        metrics.record_refund(payment.method, updated.status, refund_amount, payment.currency)
        log.info(
            "refund_completed",
            refund_id=refund_id,
            amount=str(refund_amount),
            status=updated.status,
        )
        return {
            "payment_id": updated.id,
            "order_id": updated.order_id,
            "refund_id": refund_id,
            "refund_amount": refund_amount,
            "total_refunded": updated.refunded_so_far,
            "remaining_balance": updated.remaining_balance,
            "status": updated.status,
            "currency": updated.currency,
        }
