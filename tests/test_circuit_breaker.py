"""
Unit tests for the gateway circuit breaker.
"""
from unittest.mock import AsyncMock

import pytest

from payment_reconciliation.integrations.base import (
    CircuitBreaker,
    GatewayError,
    GatewayErrorType,
)


def gateway_error(error_type: GatewayErrorType) -> GatewayError:
    return GatewayError("boom", error_type, gateway="razorpay")


class TestCircuitBreaker:
    """Test suite for CircuitBreaker."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_opens_after_threshold(self) -> None:
        """Consecutive transient failures open the circuit."""
        breaker = CircuitBreaker("razorpay", failure_threshold=3, timeout=60)
        failing = AsyncMock(side_effect=gateway_error(GatewayErrorType.TRANSIENT))

        for _ in range(3):
            with pytest.raises(GatewayError):
                await breaker.call(failing)

        assert breaker.state == "open"

        # Open circuit rejects without calling through
        with pytest.raises(GatewayError, match="Circuit breaker is open"):
            await breaker.call(failing)
        assert failing.await_count == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_errors_do_not_count(self) -> None:
        """A gateway that answers 'no' is healthy."""
        breaker = CircuitBreaker("paypal", failure_threshold=2, timeout=60)
        rejecting = AsyncMock(side_effect=gateway_error(GatewayErrorType.PERMANENT))

        for _ in range(5):
            with pytest.raises(GatewayError):
                await breaker.call(rejecting)

        assert breaker.state == "closed"
        assert breaker.failure_count == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self) -> None:
        breaker = CircuitBreaker("razorpay", failure_threshold=3, timeout=60)
        failing = AsyncMock(side_effect=gateway_error(GatewayErrorType.RATE_LIMIT))

        for _ in range(2):
            with pytest.raises(GatewayError):
                await breaker.call(failing)
        await breaker.call(AsyncMock(return_value={"ok": True}))

        assert breaker.failure_count == 0
        assert breaker.state == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_half_open_after_timeout_then_closes(self) -> None:
        """After the timeout the circuit probes and closes on enough successes."""
        breaker = CircuitBreaker("razorpay", failure_threshold=1, timeout=0, success_threshold=2)

        with pytest.raises(GatewayError):
            await breaker.call(AsyncMock(side_effect=gateway_error(GatewayErrorType.TRANSIENT)))
        assert breaker.state == "open"
        breaker.last_failure_time -= 1

        succeeding = AsyncMock(return_value={"ok": True})
        assert await breaker.call(succeeding) == {"ok": True}
        assert breaker.state == "half_open"

        await breaker.call(succeeding)
        assert breaker.state == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self) -> None:
        breaker = CircuitBreaker("paypal", failure_threshold=1, timeout=0)
        failing = AsyncMock(side_effect=gateway_error(GatewayErrorType.TRANSIENT))

        with pytest.raises(GatewayError):
            await breaker.call(failing)
        breaker.last_failure_time -= 1

        with pytest.raises(GatewayError, match="boom"):
            await breaker.call(failing)
        assert breaker.state == "open"
