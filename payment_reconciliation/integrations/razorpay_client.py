"""
Razorpay API client (INR).

Razorpay works in paise on the wire; this client speaks major units (rupees)
to its callers and converts at the boundary.
"""
import hashlib
import hmac
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel

from payment_reconciliation.config import Settings, get_settings
from payment_reconciliation.core.currency import from_minor_units, to_minor_units
from payment_reconciliation.integrations.base import BaseGatewayClient

logger = structlog.get_logger(__name__)

# Gateway payment states that mean the money was taken
SUCCESSFUL_PAYMENT_STATUSES = frozenset({"captured", "authorized"})
FAILED_PAYMENT_STATUSES = frozenset({"failed"})


class RazorpayOrder(BaseModel):
    """Order as returned by POST /v1/orders."""

    id: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    status: Optional[str] = None

    @property
    def amount_major(self) -> Decimal:
        return from_minor_units(self.amount)


class RazorpayPayment(BaseModel):
    """Payment as returned by GET /v1/payments/{id}."""

    id: str
    amount: int
    currency: str
    status: str
    order_id: Optional[str] = None
    method: Optional[str] = None

    @property
    def amount_major(self) -> Decimal:
        return from_minor_units(self.amount)

    @property
    def is_successful(self) -> bool:
        return self.status in SUCCESSFUL_PAYMENT_STATUSES

    @property
    def is_failed(self) -> bool:
        return self.status in FAILED_PAYMENT_STATUSES


class RazorpayRefund(BaseModel):
    """Refund as returned by POST /v1/payments/{id}/refund."""

    id: str
    payment_id: Optional[str] = None
    amount: Optional[int] = None
    status: Optional[str] = None


class RazorpayClient(BaseGatewayClient):
    """
    Razorpay REST client.

    Operations:
    - create_order: open an order the checkout widget pays against
    - verify_signature: offline HMAC check of the checkout callback
    - fetch_payment: authoritative amount/status for a payment id
    - refund: full or partial refund of a payment
    """

    gateway_name = "razorpay"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        settings = settings or get_settings()
        super().__init__(settings.razorpay_base_url, settings, http_client)
        self._auth = httpx.BasicAuth(settings.razorpay_key_id, settings.razorpay_key_secret)

        logger.info(
            "razorpay_client_initialized",
            test_mode=settings.is_test_mode,
        )

    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, Any]] = None,
    ) -> RazorpayOrder:
        """
        Create a Razorpay order.

        Args:
            amount: Amount in rupees
            currency: Currency code (INR)
            receipt: Merchant receipt reference (max 40 chars)
            notes: Optional key/value notes stored on the order

        Raises:
            GatewayError: If order creation fails
        """
        payload: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency.upper(),
            "receipt": receipt,
        }
        if notes:
            payload["notes"] = notes

        body = await self._request(
            "create_order", "POST", "/v1/orders", json=payload, auth=self._auth
        )
        order = self._parse(RazorpayOrder, body, "create_order")

        logger.info(
            "razorpay_order_created",
            razorpay_order_id=order.id,
            amount=str(order.amount_major),
            receipt=receipt,
        )
        return order

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """
        Check a checkout callback signature.

        The signature is HMAC-SHA256 over ``order_id|payment_id`` keyed with
        the API secret. No network call; mismatches return False.
        """
        if not order_id or not payment_id or not signature:
            return False

        expected = hmac.new(
            self.settings.razorpay_key_secret.encode(),
            f"{order_id}|{payment_id}".encode(),
            hashlib.sha256,
        ).hexdigest()
        valid = hmac.compare_digest(expected, signature)
        if not valid:
            logger.warning(
                "razorpay_signature_mismatch",
                razorpay_order_id=order_id,
                razorpay_payment_id=payment_id,
            )
        return valid

    async def fetch_payment(self, payment_id: str) -> RazorpayPayment:
        """
        Fetch the gateway's view of a payment.

        Raises:
            GatewayError: If retrieval fails
        """
        body = await self._request(
            "fetch_payment", "GET", f"/v1/payments/{payment_id}", auth=self._auth
        )
        return self._parse(RazorpayPayment, body, "fetch_payment")

    async def refund(
        self,
        payment_id: str,
        amount: Optional[Decimal] = None,
        notes: Optional[Dict[str, Any]] = None,
    ) -> RazorpayRefund:
        """
        Refund a payment; the whole payment when no amount is given.

        Args:
            payment_id: Razorpay payment id (pay_...)
            amount: Optional partial refund in rupees
            notes: Optional key/value notes

        Raises:
            GatewayError: If refund creation fails
        """
        payload: Dict[str, Any] = {}
        if amount is not None:
            payload["amount"] = to_minor_units(amount)
        if notes:
            payload["notes"] = notes

        logger.info(
            "creating_refund",
            gateway=self.gateway_name,
            razorpay_payment_id=payment_id,
            amount=str(amount) if amount is not None else None,
        )
        body = await self._request(
            "refund",
            "POST",
            f"/v1/payments/{payment_id}/refund",
            json=payload,
            auth=self._auth,
        )
        refund = self._parse(RazorpayRefund, body, "refund")

        logger.info("refund_created", gateway=self.gateway_name, refund_id=refund.id)
        return refund
