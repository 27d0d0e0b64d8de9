"""
Pytest configuration and fixtures.
"""
import hashlib
import hmac
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from payment_reconciliation.config import Settings
from payment_reconciliation.core.authorization import ActorContext
from payment_reconciliation.core.currency import convert_to_usd_with_fee
from payment_reconciliation.core.payment_service import PaymentService
from payment_reconciliation.core.refund_engine import RefundEngine
from payment_reconciliation.database.connection import (
    build_session_factory,
    create_engine_from_settings,
    init_db,
)
from payment_reconciliation.database.models import Order, new_id
from payment_reconciliation.database.store import PaymentRecordStore
from payment_reconciliation.integrations.paypal_client import (
    PayPalCapture,
    PayPalClient,
    PayPalOrder,
    PayPalRefund,
)
from payment_reconciliation.integrations.razorpay_client import (
    RazorpayClient,
    RazorpayOrder,
    RazorpayPayment,
    RazorpayRefund,
)

RAZORPAY_SECRET = "rzp_secret_for_tests"


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        razorpay_key_id="rzp_test_fake_key_for_testing",
        razorpay_key_secret=RAZORPAY_SECRET,
        paypal_client_id="paypal_test_client",
        paypal_client_secret="paypal_test_secret",
        database_url="sqlite+aiosqlite:///:memory:",
        app_name="payment-reconciliation-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest.fixture
def sign() -> Callable[[str, str], str]:
    """Razorpay checkout signature for an order/payment pair."""

    def _sign(order_id: str, payment_id: str) -> str:
        return hmac.new(
            RAZORPAY_SECRET.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256
        ).hexdigest()

    return _sign


@pytest_asyncio.fixture
async def db_engine(tmp_path: Any, test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite database with the schema created, one per test."""
    settings = test_settings.model_copy(
        update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}"}
    )
    engine = create_engine_from_settings(settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


@pytest.fixture
def store(
    session_factory: async_sessionmaker[AsyncSession], test_settings: Settings
) -> PaymentRecordStore:
    return PaymentRecordStore(session_factory, test_settings)


@pytest.fixture
def seed_order(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Order]]:
    """Insert an order row owned by the given user."""

    async def _seed(
        user_id: str = "user-1",
        total: Any = "1000.00",
        order_id: str | None = None,
        currency: str = "INR",
    ) -> Order:
        order = Order(
            id=order_id or new_id(),
            user_id=user_id,
            total=Decimal(str(total)),
            currency=currency,
        )
        async with session_factory() as session, session.begin():
            session.add(order)
        return order

    return _seed


@pytest.fixture
def user_ctx() -> ActorContext:
    return ActorContext(user_id="user-1")


@pytest.fixture
def other_ctx() -> ActorContext:
    return ActorContext(user_id="user-2")


@pytest.fixture
def admin_ctx() -> ActorContext:
    return ActorContext.admin("admin-1")


@pytest.fixture
def mock_razorpay(test_settings: Settings) -> MagicMock:
    """
    Razorpay client double.

    Signature checks use the real HMAC so tests sign callbacks with the sign fixture;
    network calls are AsyncMocks returning a captured 1000 INR payment.
    """
    client = MagicMock(spec=RazorpayClient)
    real = RazorpayClient(test_settings, http_client=MagicMock())
    client.verify_signature.side_effect = real.verify_signature
    client.create_order = AsyncMock(
        return_value=RazorpayOrder(
            id="order_rzp_1", amount=100000, currency="INR", receipt="rcpt", status="created"
        )
    )
    client.fetch_payment = AsyncMock(
        return_value=RazorpayPayment(
            id="pay_1",
            amount=100000,
            currency="INR",
            status="captured",
            order_id="order_rzp_1",
            method="upi",
        )
    )
    client.refund = AsyncMock(return_value=RazorpayRefund(id="rfnd_1", status="processed"))
    return client


@pytest.fixture
def mock_paypal(test_settings: Settings) -> MagicMock:
    """PayPal client double returning a COMPLETED 12.84 USD capture."""
    client = MagicMock(spec=PayPalClient)
    client.convert_to_usd_with_fee.side_effect = lambda amount: convert_to_usd_with_fee(
        amount,
        exchange_rate=test_settings.inr_to_usd_rate,
        fee_percentage=test_settings.paypal_fee_percentage,
    )
    client.create_order = AsyncMock(
        return_value=PayPalOrder(id="PAYPAL-ORDER-1", status="CREATED")
    )
    client.capture_order = AsyncMock(
        return_value=PayPalCapture(
            order_id="PAYPAL-ORDER-1",
            status="COMPLETED",
            capture_id="CAPTURE-1",
            amount=Decimal("12.84"),
            currency="USD",
        )
    )
    client.refund = AsyncMock(return_value=PayPalRefund(id="PAYPAL-REFUND-1", status="COMPLETED"))
    return client


@pytest.fixture
def payment_service(
    store: PaymentRecordStore,
    mock_razorpay: MagicMock,
    mock_paypal: MagicMock,
    test_settings: Settings,
) -> PaymentService:
    return PaymentService(store, mock_razorpay, mock_paypal, settings=test_settings)


@pytest.fixture
def refund_engine(
    store: PaymentRecordStore,
    mock_razorpay: MagicMock,
    mock_paypal: MagicMock,
    test_settings: Settings,
) -> RefundEngine:
    return RefundEngine(store, mock_razorpay, mock_paypal, settings=test_settings)
