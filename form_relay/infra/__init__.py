# form_relay/infra/__init__.py
"""
Infrastructure layer for form-relay service.

Contains implementations of domain interfaces using external systems
like Redis and the Google Sheets API.
"""

from .redis_client import RedisClient
from .redis_broker import RedisStreamBroker
from .rate_limiter import SlidingWindowRateLimiter
from .sheets_writer import GoogleSheetsWriter

__all__ = [
    "RedisClient",
    "RedisStreamBroker",
    "SlidingWindowRateLimiter",
    "GoogleSheetsWriter"
]
