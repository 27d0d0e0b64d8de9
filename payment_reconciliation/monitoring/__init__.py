"""Monitoring and observability package."""
from .logging import get_logger, setup_logging
from .metrics import metrics

__all__ = ["metrics", "setup_logging", "get_logger"]
