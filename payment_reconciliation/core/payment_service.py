"""
Payment state machine.

Orchestrates the two gateway flows and the cash-on-delivery flow:

Razorpay (INR):
1. create_razorpay_order opens a gateway order for the checkout widget
2. verify_razorpay_payment checks the callback signature, fetches the
   authoritative payment, completes the record and marks the order paid

PayPal (USD):
1. create_paypal_order converts INR to USD plus fee and opens the order
2. capture_paypal_order captures it, completes the record and marks the
   order paid

Completion races are closed by the store; this layer only turns a lost race
into an idempotent answer when the winner carries the same gateway ids.
"""
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from payment_reconciliation.config import Settings, get_settings
from payment_reconciliation.core.authorization import (
    ActorContext,
    is_admin,
    is_owner,
    is_owner_or_admin,
)
from payment_reconciliation.core.errors import (
    PaymentAuthorizationError,
    PaymentConflictError,
    PaymentError,
    PaymentNotFoundError,
    PaymentValidationError,
)
from payment_reconciliation.database.models import (
    REFUND_STATUSES,
    Order,
    OrderPaymentStatus,
    Payment,
    PaymentEvent,
    PaymentMethod,
    PaymentStatus,
)
from payment_reconciliation.database.store import PaymentRecordStore
from payment_reconciliation.integrations.base import GatewayError
from payment_reconciliation.integrations.paypal_client import PayPalClient
from payment_reconciliation.integrations.razorpay_client import RazorpayClient
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

RECEIPT_USER_PREFIX_LENGTH = 8


def serialize_payment(payment: Payment) -> Dict[str, Any]:
    """Plain-dict view of a payment record for callers above the core."""
    return {
        "id": payment.id,
        "order_id": payment.order_id,
        "user_id": payment.user_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "method": payment.method,
        "status": payment.status,
        "razorpay_order_id": payment.razorpay_order_id,
        "razorpay_payment_id": payment.razorpay_payment_id,
        "paypal_order_id": payment.paypal_order_id,
        "paypal_capture_id": payment.paypal_capture_id,
        "gateway_payment_id": payment.gateway_payment_id,
        "transaction_id": payment.transaction_id,
        "refund_amount": payment.refund_amount,
        "refund_reason": payment.refund_reason,
        "refund_id": payment.refund_id,
        "refunded_at": payment.refunded_at,
        "paid_at": payment.paid_at,
        "failure_reason": payment.failure_reason,
        "metadata": payment.payment_metadata or {},
        "created_at": payment.created_at,
        "updated_at": payment.updated_at,
    }


def serialize_event(event: PaymentEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "payment_id": event.payment_id,
        "event_type": event.event_type,
        "event_data": event.event_data,
        "correlation_id": event.correlation_id,
        "created_at": event.created_at,
    }


def _positive_amount(value: Any, field: str = "amount") -> Decimal:
    try:
        amount = Decimal(str(value))
    except (ArithmeticError, ValueError) as e:
        raise PaymentValidationError(f"{field} must be a decimal amount") from e
    if not amount.is_finite() or amount <= 0:
        raise PaymentValidationError(f"{field} must be positive")
    return amount


class PaymentService:
    """
    Payment lifecycle orchestrator.

    Every operation takes the caller's ActorContext and enforces ownership
    before it writes anything.
    """

    def __init__(
        self,
        store: PaymentRecordStore,
        razorpay_client: Optional[RazorpayClient] = None,
        paypal_client: Optional[PayPalClient] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize payment service.

        Args:
            store: Payment record store
            razorpay_client: Optional Razorpay client
            paypal_client: Optional PayPal client
            settings: Optional settings, defaults to the process settings
        """
        self.settings = settings or get_settings()
        self.store = store
        self.razorpay_client = razorpay_client or RazorpayClient(self.settings)
        self.paypal_client = paypal_client or PayPalClient(self.settings)

        logger.info("payment_service_initialized")

    @staticmethod
    def generate_receipt(user_id: str) -> str:
        """Human-traceable receipt reference; unique in practice, not guaranteed."""
        return f"rcpt_{int(time.time() * 1000)}_{user_id[:RECEIPT_USER_PREFIX_LENGTH]}"

    @staticmethod
    def _require_self_or_admin(ctx: ActorContext, target_user_id: str, operation: str) -> None:
        if not is_owner_or_admin(ctx, target_user_id):
            raise PaymentAuthorizationError(
                "not allowed to access another user's payments", operation
            )

    @staticmethod
    def _require_admin(ctx: ActorContext, operation: str) -> None:
        if not is_admin(ctx):
            raise PaymentAuthorizationError("admin role required", operation)

    # ------------------------------------------------------------------ #
    # Razorpay
    # ------------------------------------------------------------------ #
    async def create_razorpay_order(
        self, amount: Any, currency: str, ctx: ActorContext
    ) -> Dict[str, Any]:
        """
        Open a Razorpay order for the checkout widget.

        Returns:
            Dict[str, Any]: order_id, amount, currency, receipt

        Raises:
            PaymentValidationError: amount <= 0 or currency other than INR
            PaymentError: Razorpay rejected or failed the call
        """
        operation = "create_razorpay_order"
        amount = _positive_amount(amount)
        expected = self.settings.razorpay_currency
        if not currency or currency.upper() != expected:
            raise PaymentValidationError(f"Currency must be {expected}", operation)

        receipt = self.generate_receipt(ctx.user_id)
        try:
            order = await self.razorpay_client.create_order(
                amount, expected, receipt, notes={"user_id": ctx.user_id}
            )
        except GatewayError as e:
            raise PaymentError(str(e), operation) from e

        metrics.record_gateway_order("razorpay", expected)
        logger.info(
            "razorpay_order_opened",
            user_id=ctx.user_id,
            razorpay_order_id=order.id,
            receipt=receipt,
        )
        return {
            "order_id": order.id,
            "amount": order.amount_major,
            "currency": order.currency,
            "receipt": order.receipt or receipt,
        }

    async def verify_razorpay_payment(
        self,
        razorpay_order_id: str,
        razorpay_payment_id: str,
        razorpay_signature: str,
        ctx: ActorContext,
        order_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Verify a Razorpay checkout callback and record the payment.

        Flow:
        1. Check the HMAC signature (no writes on mismatch)
        2. Fetch the payment from Razorpay for the authoritative amount/status
        3. Find or create the payment record for the order
        4. Complete it and mark the order paid

        Without an order_id, an existing record opened against the Razorpay
        order is completed; if there is none, only the verification result is
        returned.

        Raises:
            PaymentValidationError: missing token, bad signature, failed payment,
                amount below the order total
            PaymentAuthorizationError: the order or payment belongs to someone else
            PaymentNotFoundError: order_id does not exist
            PaymentConflictError: the order was paid with a different payment
            PaymentError: Razorpay call failed
        """
        operation = "verify_razorpay_payment"
        correlation_id = str(uuid.uuid4())
        log = logger.bind(
            correlation_id=correlation_id,
            razorpay_order_id=razorpay_order_id,
            razorpay_payment_id=razorpay_payment_id,
        )

        if not razorpay_order_id or not razorpay_payment_id or not razorpay_signature:
            raise PaymentValidationError(
                "razorpay_order_id, razorpay_payment_id and razorpay_signature are required",
                operation,
            )

        if not self.razorpay_client.verify_signature(
            razorpay_order_id, razorpay_payment_id, razorpay_signature
        ):
            metrics.record_confirmation(PaymentMethod.RAZORPAY.value, "invalid_signature")
            log.warning("razorpay_signature_rejected", user_id=ctx.user_id)
            raise PaymentValidationError("invalid signature", operation)

        try:
            gateway_payment = await self.razorpay_client.fetch_payment(razorpay_payment_id)
        except GatewayError as e:
            raise PaymentError(str(e), operation) from e

        if gateway_payment.order_id and gateway_payment.order_id != razorpay_order_id:
            raise PaymentValidationError(
                "payment does not belong to the given Razorpay order", operation
            )

        if not gateway_payment.is_successful:
            reason = f"Razorpay payment status: {gateway_payment.status}"
            if gateway_payment.is_failed:
                await self._fail_pending(
                    await self.store.find_by_gateway_order_id(razorpay_order_id),
                    ctx,
                    reason,
                    correlation_id,
                )
            metrics.record_confirmation(PaymentMethod.RAZORPAY.value, "failed")
            log.warning("razorpay_payment_not_successful", status=gateway_payment.status)
            raise PaymentValidationError(reason, operation)

        existing = None
        if order_id is None:
            existing = await self.store.find_by_gateway_order_id(razorpay_order_id)
            if existing is None:
                log.info("razorpay_payment_verified_without_record")
                return {
                    "verified": True,
                    "payment_id": None,
                    "order_id": None,
                    "status": PaymentStatus.COMPLETED.value,
                    "amount": gateway_payment.amount_major,
                }
            order_id = existing.order_id

        payment = await self._complete_payment(
            operation=operation,
            method=PaymentMethod.RAZORPAY,
            order_id=order_id,
            ctx=ctx,
            amount=gateway_payment.amount_major,
            currency=gateway_payment.currency.upper(),
            gateway_payment_id=razorpay_payment_id,
            updates={
                "razorpay_order_id": razorpay_order_id,
                "razorpay_payment_id": razorpay_payment_id,
                "metadata": {"razorpay_method": gateway_payment.method},
            },
            correlation_id=correlation_id,
            existing=existing,
        )

        return {
            "verified": True,
            "payment_id": payment.id,
            "order_id": payment.order_id,
            "status": payment.status,
            "amount": payment.amount,
        }

    # ------------------------------------------------------------------ #
    # PayPal
    # ------------------------------------------------------------------ #
    async def create_paypal_order(self, amount_inr: Any, ctx: ActorContext) -> Dict[str, Any]:
        """
        Convert an INR total to USD plus fee and open a PayPal order for it.

        Every conversion figure is returned alongside the PayPal order.

        Raises:
            PaymentValidationError: amount_inr <= 0
            PaymentError: PayPal rejected or failed the call
        """
        operation = "create_paypal_order"
        amount_inr = _positive_amount(amount_inr, "amount_inr")
        conversion = self.paypal_client.convert_to_usd_with_fee(amount_inr)

        try:
            order = await self.paypal_client.create_order(
                conversion.total,
                currency=self.settings.paypal_currency,
                reference_id=self.generate_receipt(ctx.user_id),
            )
        except GatewayError as e:
            raise PaymentError(str(e), operation) from e

        metrics.record_gateway_order("paypal", self.settings.paypal_currency)
        logger.info(
            "paypal_order_opened",
            user_id=ctx.user_id,
            paypal_order_id=order.id,
            amount_inr=str(conversion.amount_inr),
            total_usd=str(conversion.total),
        )
        return {
            "order_id": order.id,
            "status": order.status,
            "amount_inr": conversion.amount_inr,
            "amount_usd": conversion.usd_amount,
            "fee": conversion.fee,
            "total": conversion.total,
            "exchange_rate": conversion.exchange_rate,
        }

    async def capture_paypal_order(
        self,
        paypal_order_id: str,
        ctx: ActorContext,
        order_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Capture an approved PayPal order and record the payment.

        The capture call carries a request id derived from the PayPal order,
        so a retried capture is deduplicated by PayPal.

        Raises:
            PaymentValidationError: missing id, capture not COMPLETED, or amount
                below the converted order total
            PaymentAuthorizationError: the order or payment belongs to someone else
            PaymentNotFoundError: order_id does not exist
            PaymentConflictError: the order was paid with a different capture
            PaymentError: PayPal call failed or returned no capture id
        """
        operation = "capture_paypal_order"
        correlation_id = str(uuid.uuid4())
        log = logger.bind(correlation_id=correlation_id, paypal_order_id=paypal_order_id)

        if not paypal_order_id:
            raise PaymentValidationError("paypal_order_id is required", operation)

        try:
            capture = await self.paypal_client.capture_order(
                paypal_order_id, request_id=f"capture-{paypal_order_id}"
            )
        except GatewayError as e:
            raise PaymentError(str(e), operation) from e

        if not capture.is_completed:
            reason = f"PayPal capture status: {capture.status}"
            await self._fail_pending(
                await self.store.find_by_gateway_order_id(paypal_order_id),
                ctx,
                reason,
                correlation_id,
            )
            metrics.record_confirmation(PaymentMethod.PAYPAL.value, "failed")
            log.warning("paypal_capture_not_completed", status=capture.status)
            raise PaymentValidationError(f"Payment capture failed: {capture.status}", operation)

        if not capture.capture_id:
            log.error("paypal_capture_missing_id")
            raise PaymentError("capture response has no capture id", operation)
        if capture.amount is None or capture.amount <= 0:
            log.error("paypal_capture_missing_amount", capture_id=capture.capture_id)
            raise PaymentError("capture response has no amount", operation)

        existing = None
        if order_id is None:
            existing = await self.store.find_by_gateway_order_id(paypal_order_id)
            if existing is None:
                log.info("paypal_capture_without_record", capture_id=capture.capture_id)
                return {
                    "captured": True,
                    "paypal_order_id": paypal_order_id,
                    "order_id": None,
                    "status": PaymentStatus.COMPLETED.value,
                    "capture_id": capture.capture_id,
                }
            order_id = existing.order_id

        payment = await self._complete_payment(
            operation=operation,
            method=PaymentMethod.PAYPAL,
            order_id=order_id,
            ctx=ctx,
            amount=capture.amount,
            currency=(capture.currency or self.settings.paypal_currency).upper(),
            gateway_payment_id=capture.capture_id,
            updates={
                "paypal_order_id": paypal_order_id,
                "paypal_capture_id": capture.capture_id,
            },
            correlation_id=correlation_id,
            existing=existing,
        )

        return {
            "captured": True,
            "paypal_order_id": paypal_order_id,
            "order_id": payment.order_id,
            "status": payment.status,
            "capture_id": capture.capture_id,
        }

    # ------------------------------------------------------------------ #
    # Completion
    # ------------------------------------------------------------------ #
    async def _fail_pending(
        self,
        payment: Optional[Payment],
        ctx: ActorContext,
        reason: str,
        correlation_id: str,
    ) -> None:
        """Move the caller's pending attempt to failed after a gateway-side failure."""
        if (
            payment is None
            or payment.status != PaymentStatus.PENDING.value
            or not is_owner(ctx, payment.user_id)
        ):
            return
        await self.store.update(
            payment.id,
            {"status": PaymentStatus.FAILED.value, "failure_reason": reason},
            correlation_id,
        )

    async def _ensure_order_paid(self, order_id: str, log: Any) -> None:
        """Repair an order left unpaid behind an already completed payment."""
        order = await self.store.get_order(order_id)
        if order is not None and order.payment_status != OrderPaymentStatus.PAID.value:
            log.warning(
                "order_payment_status_repaired",
                order_id=order_id,
                payment_status=order.payment_status,
            )
            await self.store.mark_order_paid(order_id, self.settings.order_paid_status)

    def _amount_due(self, method: PaymentMethod, order: Order, operation: str) -> Decimal:
        """The order total expressed in the gateway's settlement currency."""
        if order.currency.upper() != self.settings.razorpay_currency:
            raise PaymentValidationError(
                f"orders in {order.currency} cannot be paid online", operation
            )
        if method == PaymentMethod.PAYPAL:
            return self.paypal_client.convert_to_usd_with_fee(order.total).total
        return order.total

    async def _complete_payment(
        self,
        *,
        operation: str,
        method: PaymentMethod,
        order_id: str,
        ctx: ActorContext,
        amount: Decimal,
        currency: str,
        gateway_payment_id: str,
        updates: Dict[str, Any],
        correlation_id: str,
        existing: Optional[Payment] = None,
    ) -> Payment:
        log = logger.bind(
            correlation_id=correlation_id, order_id=order_id, method=method.value
        )

        order = await self.store.get_order(order_id)
        if order is None:
            raise PaymentNotFoundError(f"Order {order_id} not found", operation)
        if not is_owner(ctx, order.user_id):
            log.warning("payment_order_owner_mismatch", user_id=ctx.user_id)
            raise PaymentAuthorizationError("order belongs to another user", operation)

        amount_due = self._amount_due(method, order, operation)
        if amount < amount_due:
            metrics.record_confirmation(method.value, "underpaid")
            log.error(
                "payment_below_order_total",
                gateway=str(amount),
                due=str(amount_due),
                currency=currency,
            )
            raise PaymentValidationError(
                f"gateway amount {amount} {currency} is below the order total "
                f"{amount_due} {currency}",
                operation,
            )

        if existing is None:
            payment, _ = await self.store.find_or_create(
                order_id,
                {
                    "user_id": ctx.user_id,
                    "method": method,
                    "amount": amount,
                    "currency": currency,
                    "gateway_order_id": updates.get("razorpay_order_id")
                    or updates.get("paypal_order_id"),
                },
                correlation_id,
            )
        else:
            payment = existing

        if not is_owner(ctx, payment.user_id):
            log.warning("payment_owner_mismatch", payment_id=payment.id, user_id=ctx.user_id)
            raise PaymentAuthorizationError("payment belongs to another user", operation)

        if payment.status != PaymentStatus.PENDING.value:
            if (
                payment.status == PaymentStatus.COMPLETED.value
                and payment.gateway_payment_id == gateway_payment_id
            ):
                await self._ensure_order_paid(order_id, log)
                metrics.record_confirmation(method.value, "duplicate")
                log.info("payment_already_completed", payment_id=payment.id)
                return payment
            raise PaymentConflictError(
                f"Order {order_id} already has a {payment.status} payment", operation
            )

        if payment.method != method.value:
            # A stale attempt with another method; close it and start over
            await self.store.update(
                payment.id,
                {
                    "status": PaymentStatus.FAILED.value,
                    "failure_reason": f"superseded by {method.value} payment",
                },
                correlation_id,
            )
            payment, _ = await self.store.find_or_create(
                order_id,
                {
                    "user_id": ctx.user_id,
                    "method": method,
                    "amount": amount,
                    "currency": currency,
                },
                correlation_id,
            )

        if payment.amount != amount:
            log.error(
                "payment_amount_mismatch",
                payment_id=payment.id,
                recorded=str(payment.amount),
                gateway=str(amount),
            )
            raise PaymentValidationError(
                f"gateway amount {amount} does not match recorded amount {payment.amount}",
                operation,
            )

        try:
            payment = await self.store.update(
                payment.id,
                {"status": PaymentStatus.COMPLETED.value, **updates},
                correlation_id,
                order_status=self.settings.order_paid_status,
            )
        except PaymentConflictError:
            winner = await self.store.find_by_order_id(order_id)
            if (
                winner is not None
                and winner.status == PaymentStatus.COMPLETED.value
                and winner.gateway_payment_id == gateway_payment_id
            ):
                await self._ensure_order_paid(order_id, log)
                metrics.record_confirmation(method.value, "duplicate")
                log.info("payment_completed_concurrently", payment_id=winner.id)
                return winner
            metrics.record_confirmation(method.value, "conflict")
            raise

        metrics.record_confirmation(method.value, "completed")
        log.info("payment_completed", payment_id=payment.id, amount=str(payment.amount))
        return payment

    # ------------------------------------------------------------------ #
    # Cash on delivery
    # ------------------------------------------------------------------ #
    async def record_cash_on_delivery(self, order_id: str, ctx: ActorContext) -> Dict[str, Any]:
        """Open a pending COD payment for the caller's order, for the order total."""
        operation = "record_cash_on_delivery"
        order = await self.store.get_order(order_id)
        if order is None:
            raise PaymentNotFoundError(f"Order {order_id} not found", operation)
        if not is_owner(ctx, order.user_id):
            raise PaymentAuthorizationError("order belongs to another user", operation)
        if order.currency.upper() != self.settings.cod_currency:
            raise PaymentValidationError(
                f"cash on delivery is only available for {self.settings.cod_currency} orders, "
                f"got {order.currency}",
                operation,
            )

        payment, _ = await self.store.find_or_create(
            order_id,
            {
                "user_id": order.user_id,
                "method": PaymentMethod.COD,
                "amount": order.total,
                "currency": self.settings.cod_currency,
            },
        )
        if payment.method != PaymentMethod.COD.value or payment.status != PaymentStatus.PENDING.value:
            raise PaymentConflictError(
                f"Order {order_id} already has a {payment.status} {payment.method} payment",
                operation,
            )
        return serialize_payment(payment)

    async def confirm_cash_on_delivery(
        self, payment_id: str, ctx: ActorContext
    ) -> Dict[str, Any]:
        """Admin marks a COD payment collected; the order becomes paid."""
        operation = "confirm_cash_on_delivery"
        self._require_admin(ctx, operation)

        payment = await self.store.find_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found", operation)
        if payment.method != PaymentMethod.COD.value:
            raise PaymentValidationError("only cash-on-delivery payments can be confirmed", operation)

        payment = await self.store.update(
            payment.id,
            {
                "status": PaymentStatus.COMPLETED.value,
                "metadata": {"collected_by": ctx.user_id},
            },
            order_status=self.settings.order_paid_status,
        )
        metrics.record_confirmation(PaymentMethod.COD.value, "completed")
        return serialize_payment(payment)

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    async def get_payment(self, payment_id: str, ctx: ActorContext) -> Dict[str, Any]:
        operation = "get_payment"
        payment = await self.store.find_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found", operation)
        if not is_owner_or_admin(ctx, payment.user_id):
            raise PaymentAuthorizationError("not allowed to view this payment", operation)
        return serialize_payment(payment)

    async def get_user_payments(
        self, target_user_id: str, ctx: ActorContext, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        self._require_self_or_admin(ctx, target_user_id, "get_user_payments")
        payments = await self.store.find_by_user_id(
            target_user_id, limit or self.settings.payment_history_default_limit
        )
        return [serialize_payment(p) for p in payments]

    async def get_payment_by_order(
        self, order_id: str, ctx: ActorContext
    ) -> Optional[Dict[str, Any]]:
        """The order's payment, or None when it has none yet."""
        payment = await self.store.find_by_order_id(order_id)
        if payment is None:
            return None
        if not is_owner_or_admin(ctx, payment.user_id):
            raise PaymentAuthorizationError(
                "not allowed to view this payment", "get_payment_by_order"
            )
        return serialize_payment(payment)

    async def get_user_stats(self, target_user_id: str, ctx: ActorContext) -> Dict[str, Any]:
        """
        Aggregate a user's payments.

        total_paid sums completed payments only; total_refunded sums the
        cumulative refund of partially and fully refunded payments.
        """
        self._require_self_or_admin(ctx, target_user_id, "get_user_stats")
        payments = await self.store.list_payments(user_id=target_user_id, limit=None)

        total_paid = Decimal("0")
        total_refunded = Decimal("0")
        successful = failed = 0
        for payment in payments:
            if payment.status == PaymentStatus.COMPLETED.value:
                total_paid += payment.amount
                successful += 1
            elif payment.status == PaymentStatus.FAILED.value:
                failed += 1
            if payment.status in REFUND_STATUSES:
                total_refunded += payment.refunded_so_far

        return {
            "user_id": target_user_id,
            "total_paid": total_paid,
            "total_refunded": total_refunded,
            "total_transactions": len(payments),
            "successful_transactions": successful,
            "failed_transactions": failed,
        }

    async def list_payments(
        self,
        ctx: ActorContext,
        status: Optional[str] = None,
        method: Optional[str] = None,
        order_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Back-office listing; admin only."""
        self._require_admin(ctx, "list_payments")
        payments = await self.store.list_payments(
            status=status,
            method=method,
            order_id=order_id,
            limit=limit or self.settings.payment_history_default_limit,
            offset=offset,
        )
        return [serialize_payment(p) for p in payments]

    async def get_payment_events(
        self, payment_id: str, ctx: ActorContext
    ) -> List[Dict[str, Any]]:
        operation = "get_payment_events"
        payment = await self.store.find_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found", operation)
        if not is_owner_or_admin(ctx, payment.user_id):
            raise PaymentAuthorizationError("not allowed to view this payment", operation)
        return [serialize_event(e) for e in await self.store.list_events(payment_id)]
