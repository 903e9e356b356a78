# form_relay/__init__.py
"""
Form Relay Service

HTTP API that validates form submissions and relays them to Google Sheets
through a durable Redis-backed job queue with retries.
"""

__version__ = "1.0.0"
__description__ = "Form submission relay from HTTP to Google Sheets"
