"""
Payment reconciliation service.

Owns the lifecycle of a payment against an order across Razorpay (INR) and
PayPal (USD with conversion), guarantees at most one completed payment per
order, and accounts for partial and full refunds.
"""

__version__ = "0.1.0"
