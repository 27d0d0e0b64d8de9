"""
Shared plumbing for payment gateway clients.

Implements:
- Error classification (transient / permanent / rate limit)
- Circuit breaker pattern
- Request timing, metrics and structured logging

Nothing here retries. A failed gateway call surfaces as GatewayError and
the caller decides what to do with it.
"""
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Type, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from payment_reconciliation.config import Settings, get_settings
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class GatewayErrorType(Enum):
    """Classification of gateway errors."""

    TRANSIENT = "transient"  # network, timeouts, 5xx
    PERMANENT = "permanent"  # rejected request or malformed response
    RATE_LIMIT = "rate_limit"


class GatewayError(Exception):
    """Base exception for gateway-related errors."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        gateway: str,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            gateway: Gateway that produced the error
            status_code: HTTP status returned by the gateway, if any
            original_error: Original low-level exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.gateway = gateway
        self.status_code = status_code
        self.original_error = original_error


class CircuitBreaker:
    """
    Circuit breaker for gateway API calls.

    Prevents cascading failures by temporarily stopping requests
    when a gateway keeps failing.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Gateway name, used for logs and metrics
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.name, state)

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Execute a coroutine function with circuit breaker protection.

        Permanent gateway errors (the gateway answered and said no) do not
        count towards opening the circuit.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open", gateway=self.name)
            else:
                raise GatewayError(
                    "Circuit breaker is open",
                    GatewayErrorType.TRANSIENT,
                    gateway=self.name,
                )

        try:
            result = await func(*args, **kwargs)
        except GatewayError as e:
            if e.error_type != GatewayErrorType.PERMANENT:
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", gateway=self.name)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                gateway=self.name,
                failure_count=self.failure_count,
            )


class BaseGatewayClient:
    """
    Common request path for gateway clients.

    Subclasses set ``gateway_name`` and ``base_url`` and build requests through
    ``_request``; responses are parsed into pydantic models with ``_parse``.
    """

    gateway_name = "gateway"

    def __init__(
        self,
        base_url: str,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.http_client = http_client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(self.settings.gateway_timeout_seconds),
        )
        self.circuit_breaker = CircuitBreaker(
            self.gateway_name,
            failure_threshold=self.settings.circuit_breaker_failure_threshold,
            timeout=self.settings.circuit_breaker_timeout,
        )

    async def aclose(self) -> None:
        await self.http_client.aclose()

    @staticmethod
    def _classify_status(status_code: int) -> GatewayErrorType:
        """
        Classify an HTTP error status.

        Returns:
            GatewayErrorType: Error classification
        """
        if status_code == 429:
            return GatewayErrorType.RATE_LIMIT
        if status_code >= 500:
            return GatewayErrorType.TRANSIENT
        return GatewayErrorType.PERMANENT

    def _error(
        self,
        operation: str,
        message: str,
        error_type: GatewayErrorType,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ) -> GatewayError:
        logger.error(
            "gateway_api_error",
            gateway=self.gateway_name,
            operation=operation,
            error_type=error_type.value,
            status_code=status_code,
            error_message=message,
        )
        metrics.record_gateway_error(self.gateway_name, error_type.value)
        return GatewayError(
            f"{self.gateway_name} {operation} failed: {message}",
            error_type,
            gateway=self.gateway_name,
            status_code=status_code,
            original_error=original_error,
        )

    async def _send(
        self, operation: str, method: str, path: str, **kwargs: Any
    ) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            response = await self.http_client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            metrics.record_gateway_call(
                self.gateway_name, operation, "error", time.perf_counter() - start
            )
            raise self._error(
                operation,
                e.response.text[:500] or str(e),
                self._classify_status(e.response.status_code),
                status_code=e.response.status_code,
                original_error=e,
            ) from e
        except httpx.TransportError as e:
            metrics.record_gateway_call(
                self.gateway_name, operation, "error", time.perf_counter() - start
            )
            raise self._error(
                operation, str(e) or type(e).__name__, GatewayErrorType.TRANSIENT, original_error=e
            ) from e

        metrics.record_gateway_call(
            self.gateway_name, operation, "success", time.perf_counter() - start
        )
        try:
            body = response.json()
        except ValueError as e:
            raise self._error(
                operation, "response is not JSON", GatewayErrorType.PERMANENT, original_error=e
            ) from e
        if not isinstance(body, dict):
            raise self._error(operation, "response is not a JSON object", GatewayErrorType.PERMANENT)
        return body

    async def _request(
        self, operation: str, method: str, path: str, **kwargs: Any
    ) -> Dict[str, Any]:
        """Send a request through the circuit breaker and return the JSON body."""
        logger.info(
            "gateway_request",
            gateway=self.gateway_name,
            operation=operation,
            method=method,
            path=path,
        )
        return await self.circuit_breaker.call(self._send, operation, method, path, **kwargs)

    def _parse(self, model: Type[ModelT], body: Dict[str, Any], operation: str) -> ModelT:
        """Validate a gateway response body; a mismatch is a permanent error."""
        try:
            return model.model_validate(body)
        except ValidationError as e:
            raise self._error(
                operation,
                f"malformed response: {e.error_count()} validation error(s)",
                GatewayErrorType.PERMANENT,
                original_error=e,
            ) from e
