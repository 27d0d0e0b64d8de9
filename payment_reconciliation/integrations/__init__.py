"""Payment gateway integrations."""
from .base import GatewayError, GatewayErrorType
from .paypal_client import PayPalClient
from .razorpay_client import RazorpayClient

__all__ = ["GatewayError", "GatewayErrorType", "PayPalClient", "RazorpayClient"]
