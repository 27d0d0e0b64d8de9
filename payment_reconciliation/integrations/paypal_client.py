"""
PayPal Orders v2 client (USD).

Order totals arrive in INR and are converted with a fixed surcharge before the
PayPal order is opened. Capture responses nest the settlement id several
levels deep; it is unwrapped defensively and left as None when absent so the
caller can treat a missing id as an integration defect.
"""
import asyncio
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel

from payment_reconciliation.config import Settings, get_settings
from payment_reconciliation.core.currency import (
    CurrencyConversion,
    convert_to_usd_with_fee,
    quantize_money,
)
from payment_reconciliation.integrations.base import BaseGatewayClient

logger = structlog.get_logger(__name__)

# Refresh the OAuth token this many seconds before PayPal expires it
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class PayPalToken(BaseModel):
    access_token: str
    expires_in: int = 3600


class PayPalOrder(BaseModel):
    """Order as returned by POST /v2/checkout/orders."""

    id: str
    status: str


class PayPalCapture(BaseModel):
    """Flattened capture result of POST /v2/checkout/orders/{id}/capture."""

    order_id: str
    status: str
    capture_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.status.upper() == "COMPLETED"


class PayPalRefund(BaseModel):
    """Refund as returned by POST /v2/payments/captures/{id}/refund."""

    id: str
    status: Optional[str] = None


def _first_capture(body: Dict[str, Any]) -> Dict[str, Any]:
    """Dig purchase_units[0].payments.captures[0] out of a capture response."""
    units = body.get("purchase_units") or []
    if not isinstance(units, list) or not units or not isinstance(units[0], dict):
        return {}
    payments = units[0].get("payments") or {}
    if not isinstance(payments, dict):
        return {}
    captures = payments.get("captures") or []
    if not isinstance(captures, list) or not captures or not isinstance(captures[0], dict):
        return {}
    return captures[0]


class PayPalClient(BaseGatewayClient):
    """
    PayPal REST client.

    Operations:
    - convert_to_usd_with_fee: INR to the USD total charged on PayPal
    - create_order: open a CAPTURE-intent order
    - capture_order: finalize an approved order
    - refund: full or partial refund of a capture
    """

    gateway_name = "paypal"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        settings = settings or get_settings()
        super().__init__(settings.paypal_base_url, settings, http_client)
        self._credentials = httpx.BasicAuth(
            settings.paypal_client_id, settings.paypal_client_secret
        )
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

        logger.info("paypal_client_initialized", base_url=settings.paypal_base_url)

    def convert_to_usd_with_fee(self, amount_inr: Decimal) -> CurrencyConversion:
        """Convert an INR amount at the configured rate and add the PayPal fee."""
        return convert_to_usd_with_fee(
            amount_inr,
            exchange_rate=self.settings.inr_to_usd_rate,
            fee_percentage=self.settings.paypal_fee_percentage,
        )

    async def _get_access_token(self) -> str:
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            body = await self._request(
                "oauth_token",
                "POST",
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=self._credentials,
            )
            token = self._parse(PayPalToken, body, "oauth_token")
            self._access_token = token.access_token
            self._token_expires_at = (
                time.monotonic() + token.expires_in - TOKEN_EXPIRY_MARGIN_SECONDS
            )
            return self._access_token

    async def _headers(self, request_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {await self._get_access_token()}",
            "Content-Type": "application/json",
        }
        if request_id:
            # PayPal deduplicates retried POSTs carrying the same request id
            headers["PayPal-Request-Id"] = request_id
        return headers

    async def create_order(
        self,
        amount: Decimal,
        currency: Optional[str] = None,
        reference_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> PayPalOrder:
        """
        Create a PayPal order.

        Args:
            amount: Total to charge, in USD
            currency: Currency code, defaults to the configured PayPal currency
            reference_id: Optional merchant reference stored on the purchase unit
            request_id: Optional idempotency key

        Raises:
            GatewayError: If order creation fails
        """
        currency = (currency or self.settings.paypal_currency).upper()
        purchase_unit: Dict[str, Any] = {
            "amount": {"currency_code": currency, "value": str(quantize_money(amount))}
        }
        if reference_id:
            purchase_unit["reference_id"] = reference_id

        body = await self._request(
            "create_order",
            "POST",
            "/v2/checkout/orders",
            json={"intent": "CAPTURE", "purchase_units": [purchase_unit]},
            headers=await self._headers(request_id),
        )
        order = self._parse(PayPalOrder, body, "create_order")

        logger.info(
            "paypal_order_created",
            paypal_order_id=order.id,
            status=order.status,
            amount=str(amount),
        )
        return order

    async def capture_order(
        self, order_id: str, request_id: Optional[str] = None
    ) -> PayPalCapture:
        """
        Capture an approved PayPal order.

        Raises:
            GatewayError: If the capture call fails
        """
        body = await self._request(
            "capture_order",
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            headers=await self._headers(request_id),
        )
        capture = _first_capture(body)
        amount = capture.get("amount") if isinstance(capture.get("amount"), dict) else {}

        result = self._parse(
            PayPalCapture,
            {
                "order_id": body.get("id") or order_id,
                "status": body.get("status") or capture.get("status") or "UNKNOWN",
                "capture_id": capture.get("id"),
                "amount": amount.get("value"),
                "currency": amount.get("currency_code"),
            },
            "capture_order",
        )

        logger.info(
            "paypal_order_captured",
            paypal_order_id=order_id,
            status=result.status,
            capture_id=result.capture_id,
        )
        return result

    async def refund(
        self,
        capture_id: str,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        note: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> PayPalRefund:
        """
        Refund a capture; the whole capture when no amount is given.

        Raises:
            GatewayError: If refund creation fails
        """
        payload: Dict[str, Any] = {}
        if amount is not None:
            payload["amount"] = {
                "value": str(quantize_money(amount)),
                "currency_code": (currency or self.settings.paypal_currency).upper(),
            }
        if note:
            payload["note_to_payer"] = note[:255]

        logger.info(
            "creating_refund",
            gateway=self.gateway_name,
            capture_id=capture_id,
            amount=str(amount) if amount is not None else None,
        )
        body = await self._request(
            "refund",
            "POST",
            f"/v2/payments/captures/{capture_id}/refund",
            json=payload,
            headers=await self._headers(request_id),
        )
        refund = self._parse(PayPalRefund, body, "refund")

        logger.info("refund_created", gateway=self.gateway_name, refund_id=refund.id)
        return refund
