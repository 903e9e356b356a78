# form_relay/domain/__init__.py
"""
Domain layer for form-relay service.

Contains data models, validation rules and interfaces.
"""

from .schema import (
    SubmissionRequest,
    SanitizedSubmission,
    Job,
    JobPayload,
    JobOptions,
    JobHandle,
    JobEvent,
    JobEventType,
    AppendRecord,
    HealthStatus,
)
from .ports import QueueBroker, SheetWriter, RateLimiter, SubmissionProcessor
from .validation import validate_submission

__all__ = [
    "SubmissionRequest",
    "SanitizedSubmission",
    "Job",
    "JobPayload",
    "JobOptions",
    "JobHandle",
    "JobEvent",
    "JobEventType",
    "AppendRecord",
    "HealthStatus",
    "QueueBroker",
    "SheetWriter",
    "RateLimiter",
    "SubmissionProcessor",
    "validate_submission",
]
