"""Database package for payment reconciliation."""
from .connection import (
    build_session_factory,
    close_db,
    create_engine_from_settings,
    get_session_factory,
    init_db,
)
from .models import (
    Base,
    Order,
    OrderPaymentStatus,
    Payment,
    PaymentEvent,
    PaymentMethod,
    PaymentStatus,
)
from .store import PaymentRecordStore

__all__ = [
    "Base",
    "Order",
    "OrderPaymentStatus",
    "Payment",
    "PaymentEvent",
    "PaymentMethod",
    "PaymentStatus",
    "PaymentRecordStore",
    "build_session_factory",
    "close_db",
    "create_engine_from_settings",
    "get_session_factory",
    "init_db",
]
