"""
Payment record store.

CRUD and query operations over the payments table, plus the narrow set of
order writes this service owns. Concurrency guarantees live here, not in the
services above:

- At most one completed payment per order: a partial unique index on
  ``payments(order_id) WHERE status = 'completed'``. Two requests racing to
  complete the same order both flush, and the loser gets an IntegrityError.
- At most one pending payment per order: a second partial unique index, so
  concurrent find_or_create calls converge on a single row.
- No over-refund: every payment write is a compare-and-set on ``version``
  (SQLAlchemy ``version_id_col``). Two refunds computed from the same balance
  cannot both commit; the second one fails with StaleDataError.

Both failures surface as PaymentConflictError.
"""
import uuid
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Tuple

import structlog
from sqlalchemy import case, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from payment_reconciliation.config import Settings, get_settings
from payment_reconciliation.core.errors import (
    PaymentConflictError,
    PaymentError,
    PaymentNotFoundError,
    PaymentValidationError,
)
from payment_reconciliation.database.models import (
    REFUNDABLE_STATUSES,
    Order,
    OrderPaymentStatus,
    Payment,
    PaymentEvent,
    PaymentMethod,
    PaymentStatus,
    utcnow,
)

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING.value: {
        PaymentStatus.PENDING.value,
        PaymentStatus.COMPLETED.value,
        PaymentStatus.FAILED.value,
    },
    PaymentStatus.COMPLETED.value: {
        PaymentStatus.PARTIALLY_REFUNDED.value,
        PaymentStatus.REFUNDED.value,
    },
    PaymentStatus.PARTIALLY_REFUNDED.value: {
        PaymentStatus.PARTIALLY_REFUNDED.value,
        PaymentStatus.REFUNDED.value,
    },
    PaymentStatus.FAILED.value: set(),
    PaymentStatus.REFUNDED.value: set(),
}

IMMUTABLE_FIELDS = ("id", "order_id", "user_id", "amount", "currency", "method")

UPDATABLE_FIELDS = (
    "status",
    "razorpay_order_id",
    "razorpay_payment_id",
    "paypal_order_id",
    "paypal_capture_id",
    "gateway_payment_id",
    "transaction_id",
    "failure_reason",
    "refund_amount",
    "refund_reason",
    "refund_id",
    "refunded_at",
    "metadata",
)

# Gateway-specific payment ids that also populate the generic correlation fields
PAYMENT_ID_ALIASES = ("razorpay_payment_id", "paypal_capture_id")


def _status_value(status: Any) -> str:
    return status.value if isinstance(status, PaymentStatus) else str(status)


def _method_value(method: Any) -> str:
    return method.value if isinstance(method, PaymentMethod) else str(method)


def _to_decimal(value: Any, field: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (ArithmeticError, ValueError) as e:
        raise PaymentValidationError(f"{field} must be a decimal amount") from e


class PaymentRecordStore:
    """
    Persistence for Payment records.

    Every public method runs in its own transaction and returns detached ORM
    objects (the session factory must use ``expire_on_commit=False``).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.currency_by_method = {
            PaymentMethod.RAZORPAY.value: self.settings.razorpay_currency.upper(),
            PaymentMethod.PAYPAL.value: self.settings.paypal_currency.upper(),
            PaymentMethod.COD.value: self.settings.cod_currency.upper(),
        }

    @contextmanager
    def _write_guard(self, operation: str, **context: Any) -> Iterator[None]:
        """Translate persistence failures into the payment error taxonomy."""
        try:
            yield
        except PaymentError:
            raise
        except IntegrityError as e:
            logger.warning("payment_write_conflict", operation=operation, error=str(e.orig), **context)
            raise PaymentConflictError(
                "the order already has a pending or completed payment, or the write "
                "violates a payment invariant",
                operation,
            ) from e
        except StaleDataError as e:
            logger.warning("payment_concurrent_modification", operation=operation, **context)
            raise PaymentConflictError(
                "payment was modified concurrently, re-read and retry", operation
            ) from e
        except SQLAlchemyError as e:
            logger.error("payment_store_error", operation=operation, error=str(e), **context)
            raise PaymentError(str(e), operation) from e

    @staticmethod
    def _record_event(
        session: AsyncSession,
        payment_id: str,
        event_type: str,
        event_data: Dict[str, Any],
        correlation_id: Optional[str],
    ) -> None:
        session.add(
            PaymentEvent(
                payment_id=payment_id,
                event_type=event_type,
                event_data=event_data,
                correlation_id=correlation_id or str(uuid.uuid4()),
                created_at=utcnow(),
            )
        )

    @staticmethod
    def _apply_order_paid(order: Order, order_status: str) -> None:
        order.payment_status = OrderPaymentStatus.PAID.value
        order.status = order_status
        if order.paid_at is None:
            order.paid_at = utcnow()

    @staticmethod
    async def _completed_for_order(session: AsyncSession, order_id: str) -> Optional[Payment]:
        stmt = select(Payment).where(
            Payment.order_id == order_id,
            Payment.status == PaymentStatus.COMPLETED.value,
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #
    async def create(
        self, data: Dict[str, Any], correlation_id: Optional[str] = None
    ) -> Payment:
        """
        Persist a new pending payment.

        Raises:
            PaymentValidationError: missing order_id/user_id/method/amount, or amount <= 0
            PaymentNotFoundError: the referenced order does not exist
            PaymentConflictError: the order already has a completed or pending payment
        """
        missing = [f for f in ("order_id", "user_id", "method", "amount") if not data.get(f)]
        if missing:
            raise PaymentValidationError(f"Missing required fields: {', '.join(missing)}")

        amount = _to_decimal(data["amount"], "amount")
        if amount <= 0:
            raise PaymentValidationError("Amount must be positive")

        method = _method_value(data["method"])
        if method not in self.currency_by_method:
            raise PaymentValidationError(f"Unsupported payment method: {method}")

        currency = (data.get("currency") or self.currency_by_method[method]).upper()
        if currency != self.currency_by_method[method]:
            raise PaymentValidationError(
                f"{method} payments must be in {self.currency_by_method[method]}, got {currency}"
            )

        gateway_order_id = data.get("gateway_order_id")
        order_id = data["order_id"]

        with self._write_guard("create_payment", order_id=order_id):
            async with self.session_factory() as session, session.begin():
                order = await session.get(Order, order_id)
                if order is None:
                    raise PaymentNotFoundError(f"Order {order_id} not found")

                if await self._completed_for_order(session, order_id) is not None:
                    raise PaymentConflictError(
                        f"Order {order_id} already has a completed payment"
                    )

                payment = Payment(
                    order_id=order_id,
                    user_id=data["user_id"],
                    amount=amount,
                    currency=currency,
                    method=method,
                    status=PaymentStatus.PENDING.value,
                    payment_metadata=data.get("metadata"),
                )
                if method == PaymentMethod.RAZORPAY.value:
                    payment.razorpay_order_id = data.get("razorpay_order_id") or gateway_order_id
                elif method == PaymentMethod.PAYPAL.value:
                    payment.paypal_order_id = data.get("paypal_order_id") or gateway_order_id

                session.add(payment)
                await session.flush()

                self._record_event(
                    session,
                    payment.id,
                    "payment.created",
                    {"amount": str(amount), "currency": currency, "method": method},
                    correlation_id,
                )

        logger.info(
            "payment_record_created",
            payment_id=payment.id,
            order_id=order_id,
            method=method,
            correlation_id=correlation_id,
        )
        return payment

    async def find_or_create(
        self,
        order_id: str,
        defaults: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> Tuple[Payment, bool]:
        """
        Return the live payment for an order, creating one from defaults if none.

        Failed attempts are not reused; a retry gets a fresh pending record.
        Creation goes through create(), so its checks always apply. When a
        concurrent caller wins the insert, its row is returned instead.
        """
        existing = await self.find_by_order_id(order_id)
        if existing is not None and existing.status != PaymentStatus.FAILED.value:
            return existing, False

        try:
            payment = await self.create({**defaults, "order_id": order_id}, correlation_id)
        except PaymentConflictError:
            existing = await self.find_by_order_id(order_id)
            if existing is None or existing.status == PaymentStatus.FAILED.value:
                raise
            logger.info(
                "payment_record_created_concurrently",
                payment_id=existing.id,
                order_id=order_id,
                correlation_id=correlation_id,
            )
            return existing, False
        return payment, True

    async def update(
        self,
        payment_id: str,
        updates: Dict[str, Any],
        correlation_id: Optional[str] = None,
        *,
        order_status: Optional[str] = None,
    ) -> Payment:
        """
        Apply a state transition and/or field updates to a payment.

        Completed payments only accept a move to a refund status. Gateway
        payment ids are aliased into gateway_payment_id / transaction_id, and
        paid_at is stamped the first time the payment completes.

        With order_status, a move to completed also marks the order paid in
        the same transaction.
        """
        unknown = set(updates) - set(UPDATABLE_FIELDS) - set(IMMUTABLE_FIELDS)
        if unknown:
            raise PaymentValidationError(f"Unknown payment fields: {', '.join(sorted(unknown))}")

        with self._write_guard("update_payment", payment_id=payment_id):
            async with self.session_factory() as session, session.begin():
                payment = await session.get(Payment, payment_id)
                if payment is None:
                    raise PaymentNotFoundError(f"Payment {payment_id} not found")

                for field in IMMUTABLE_FIELDS:
                    if field in updates and str(updates[field]) != str(getattr(payment, field)):
                        raise PaymentValidationError(f"{field} cannot be changed after creation")

                current = payment.status
                target = _status_value(updates["status"]) if "status" in updates else None

                if current == PaymentStatus.COMPLETED.value and target not in (
                    PaymentStatus.PARTIALLY_REFUNDED.value,
                    PaymentStatus.REFUNDED.value,
                ):
                    raise PaymentConflictError(
                        f"Payment {payment_id} is completed and can only move to a refund status"
                    )
                if target is not None and target not in ALLOWED_TRANSITIONS[current]:
                    raise PaymentConflictError(
                        f"Payment {payment_id} cannot transition from {current} to {target}"
                    )
                if target is None and not ALLOWED_TRANSITIONS[current]:
                    raise PaymentConflictError(f"Payment {payment_id} is {current} and frozen")

                values = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS}
                for alias in PAYMENT_ID_ALIASES:
                    if values.get(alias):
                        values.setdefault("gateway_payment_id", values[alias])
                        values.setdefault("transaction_id", values[alias])

                metadata = values.pop("metadata", None)
                if metadata:
                    payment.payment_metadata = {**(payment.payment_metadata or {}), **metadata}
                if target is not None:
                    values["status"] = target
                for field, value in values.items():
                    setattr(payment, field, value)

                if target == PaymentStatus.COMPLETED.value:
                    if payment.paid_at is None:
                        payment.paid_at = utcnow()
                    if payment.method != PaymentMethod.COD.value and not (
                        payment.gateway_payment_id or payment.transaction_id
                    ):
                        raise PaymentValidationError(
                            "A completed gateway payment needs a gateway payment id"
                        )
                    if order_status is not None:
                        order = await session.get(Order, payment.order_id)
                        if order is None:
                            raise PaymentNotFoundError(f"Order {payment.order_id} not found")
                        self._apply_order_paid(order, order_status)

                await session.flush()

                event_type = {
                    PaymentStatus.COMPLETED.value: "payment.completed",
                    PaymentStatus.FAILED.value: "payment.failed",
                }.get(target or "", "payment.updated")
                self._record_event(
                    session,
                    payment.id,
                    event_type,
                    {
                        "from_status": current,
                        "to_status": payment.status,
                        "fields": sorted(updates),
                    },
                    correlation_id,
                )

        logger.info(
            "payment_record_updated",
            payment_id=payment_id,
            from_status=current,
            to_status=payment.status,
            order_status=order_status if target == PaymentStatus.COMPLETED.value else None,
            correlation_id=correlation_id,
        )
        return payment

    async def refund(
        self,
        payment_id: str,
        *,
        reason: Optional[str],
        refund_id: str,
        amount: Optional[Decimal] = None,
        correlation_id: Optional[str] = None,
    ) -> Payment:
        """
        Atomically add a refund to a payment's cumulative refund amount.

        Without an amount the remaining balance is refunded. The status becomes
        partially_refunded while a balance remains, refunded once exhausted.
        """
        with self._write_guard("refund_payment", payment_id=payment_id):
            async with self.session_factory() as session, session.begin():
                payment = await session.get(Payment, payment_id)
                if payment is None:
                    raise PaymentNotFoundError(f"Payment {payment_id} not found")

                if payment.status not in REFUNDABLE_STATUSES:
                    raise PaymentValidationError(
                        f"Cannot refund payment with status: {payment.status}"
                    )

                refund_now = (
                    payment.remaining_balance
                    if amount is None
                    else _to_decimal(amount, "refund amount")
                )
                cumulative = payment.refunded_so_far + refund_now
                if refund_now <= 0 or cumulative <= 0:
                    raise PaymentValidationError("Refund amount must be positive")
                if cumulative > payment.amount:
                    raise PaymentValidationError(
                        f"Refund of {refund_now} exceeds remaining balance "
                        f"{payment.remaining_balance} {payment.currency}"
                    )

                previous_status = payment.status
                payment.refund_amount = cumulative
                payment.status = (
                    PaymentStatus.REFUNDED.value
                    if cumulative == payment.amount
                    else PaymentStatus.PARTIALLY_REFUNDED.value
                )
                payment.refund_reason = reason
                payment.refund_id = refund_id
                payment.refunded_at = utcnow()
                await session.flush()

                self._record_event(
                    session,
                    payment.id,
                    "payment.refunded",
                    {
                        "from_status": previous_status,
                        "to_status": payment.status,
                        "refund_id": refund_id,
                        "amount": str(refund_now),
                        "cumulative": str(cumulative),
                        "reason": reason,
                    },
                    correlation_id,
                )

        logger.info(
            "payment_record_refunded",
            payment_id=payment_id,
            refund_id=refund_id,
            amount=str(refund_now),
            cumulative=str(cumulative),
            status=payment.status,
            correlation_id=correlation_id,
        )
        return payment

    # ------------------------------------------------------------------ #
    # Order propagation
    # ------------------------------------------------------------------ #
    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self.session_factory() as session:
            return await session.get(Order, order_id)

    async def mark_order_paid(self, order_id: str, order_status: str) -> Order:
        """Set the order's payment status to paid and advance its workflow status."""
        with self._write_guard("mark_order_paid", order_id=order_id):
            async with self.session_factory() as session, session.begin():
                order = await session.get(Order, order_id)
                if order is None:
                    raise PaymentNotFoundError(f"Order {order_id} not found")
                self._apply_order_paid(order, order_status)

        logger.info("order_marked_paid", order_id=order_id, status=order_status)
        return order

    async def mark_order_refunded(self, order_id: str) -> Order:
        with self._write_guard("mark_order_refunded", order_id=order_id):
            async with self.session_factory() as session, session.begin():
                order = await session.get(Order, order_id)
                if order is None:
                    raise PaymentNotFoundError(f"Order {order_id} not found")
                order.payment_status = OrderPaymentStatus.REFUNDED.value
                order.status = "refunded"
                order.refunded_at = utcnow()

        logger.info("order_marked_refunded", order_id=order_id)
        return order

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    async def find_by_id(self, payment_id: str) -> Optional[Payment]:
        async with self.session_factory() as session:
            return await session.get(Payment, payment_id)

    async def find_by_order_id(self, order_id: str) -> Optional[Payment]:
        """The completed payment for an order if any, else its most recent attempt."""
        stmt = (
            select(Payment)
            .where(Payment.order_id == order_id)
            .order_by(
                case((Payment.status == PaymentStatus.COMPLETED.value, 0), else_=1),
                Payment.created_at.desc(),
            )
            .limit(1)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalars().first()

    async def find_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Payment]:
        """Look a payment up by a Razorpay or PayPal order id."""
        stmt = (
            select(Payment)
            .where(
                or_(
                    Payment.razorpay_order_id == gateway_order_id,
                    Payment.paypal_order_id == gateway_order_id,
                )
            )
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalars().first()

    async def find_by_user_id(self, user_id: str, limit: int = 50) -> List[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_payments(
        self,
        *,
        status: Optional[str] = None,
        method: Optional[str] = None,
        order_id: Optional[str] = None,
        user_id: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        limit: Optional[int] = 50,
        offset: int = 0,
    ) -> List[Payment]:
        """Filtered, newest-first listing. A limit of None returns every match."""
        stmt = select(Payment)
        if status:
            stmt = stmt.where(Payment.status == _status_value(status))
        if method:
            stmt = stmt.where(Payment.method == _method_value(method))
        if order_id:
            stmt = stmt.where(Payment.order_id == order_id)
        if user_id:
            stmt = stmt.where(Payment.user_id == user_id)
        if created_from:
            stmt = stmt.where(Payment.created_at >= created_from)
        if created_to:
            stmt = stmt.where(Payment.created_at <= created_to)
        stmt = stmt.order_by(Payment.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_events(self, payment_id: str) -> List[PaymentEvent]:
        stmt = (
            select(PaymentEvent)
            .where(PaymentEvent.payment_id == payment_id)
            .order_by(PaymentEvent.id)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
