"""
Services layer for form-relay.

Contains the job queue and the use cases that run on top of it:
accepting submissions and writing them to the spreadsheet.
"""

from .job_queue import JobQueue
from .submission_service import SubmissionService, format_submission_timestamp
from .submission_worker import SubmissionWorker

__all__ = [
    "JobQueue",
    "SubmissionService",
    "format_submission_timestamp",
    "SubmissionWorker"
]
