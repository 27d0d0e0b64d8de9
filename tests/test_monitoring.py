"""
Tests for logging setup and metrics recording.
"""
import json
import logging
from decimal import Decimal
from typing import Any, Iterator

import pytest
import structlog
from prometheus_client import REGISTRY

from payment_reconciliation.config import Settings
from payment_reconciliation.monitoring import get_logger, metrics, setup_logging


@pytest.fixture
def restore_logging() -> Iterator[None]:
    """Undo the global logging configuration after the test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    structlog.reset_defaults()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestLogging:
    """Test suite for structured logging setup."""

    @pytest.mark.unit
    def test_events_are_json_with_app_context(
        self, test_settings: Settings, restore_logging: None, capsys: Any
    ) -> None:
        setup_logging(test_settings)
        get_logger("payment_reconciliation.tests").info("refund_completed", refund_id="rfnd_1")

        lines = [line for line in capsys.readouterr().out.splitlines() if "refund_completed" in line]
        assert lines
        record = json.loads(json.loads(lines[-1])["message"])
        assert record["event"] == "refund_completed"
        assert record["refund_id"] == "rfnd_1"
        assert record["app_name"] == "payment-reconciliation-test"
        assert record["app_env"] == "test"
        assert record["level"] == "info"


class TestMetrics:
    """Test suite for MetricsCollector."""

    @pytest.mark.unit
    def test_record_refund(self) -> None:
        labels = {"method": "cod", "status": "refunded"}
        before = REGISTRY.get_sample_value("refunds_total", labels) or 0.0

        metrics.record_refund("cod", "refunded", Decimal("10.50"), "INR")

        assert REGISTRY.get_sample_value("refunds_total", labels) == before + 1

    @pytest.mark.unit
    def test_circuit_breaker_state(self) -> None:
        metrics.set_circuit_breaker_state("paypal", "open")
        assert REGISTRY.get_sample_value(
            "gateway_circuit_breaker_state", {"gateway": "paypal"}
        ) == 1.0

        metrics.set_circuit_breaker_state("paypal", "closed")
        assert REGISTRY.get_sample_value(
            "gateway_circuit_breaker_state", {"gateway": "paypal"}
        ) == 0.0
