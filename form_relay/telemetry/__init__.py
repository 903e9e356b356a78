# form_relay/telemetry/__init__.py
"""
Telemetry and observability for form-relay service.

Contains logging, metrics, and queue event logging.
"""

from .logger import setup_logging, JSONFormatter, MetricsLogger, QueueEventLogger

__all__ = [
    "setup_logging",
    "JSONFormatter",
    "MetricsLogger",
    "QueueEventLogger"
]
