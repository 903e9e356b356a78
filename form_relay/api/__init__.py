# form_relay/api/__init__.py
"""
API layer for form-relay service.

Contains HTTP endpoints and the admission gate.
Adapts external requests to internal domain models.
"""

from .http_server import FormRelayAPI
from .admission import AdmissionDependency, client_address

__all__ = [
    "FormRelayAPI",
    "AdmissionDependency",
    "client_address"
]
