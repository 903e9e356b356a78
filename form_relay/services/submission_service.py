"""
Submission intake: validates a form body and hands it to the job queue.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from ..domain.ports import SubmissionProcessor
from ..domain.schema import JobHandle, JobPayload, SubmissionRequest
from ..domain.validation import validate_submission
from ..telemetry.logger import MetricsLogger
from .job_queue import JobQueue


logger = logging.getLogger(__name__)


def format_submission_timestamp(moment: datetime, tz: ZoneInfo) -> str:
    """
    Render a moment the way es-EC renders a date-time: d/M/yyyy, H:mm:ss.

    >>> format_submission_timestamp(datetime(2026, 3, 5, 14, 7, 3, tzinfo=timezone.utc), ZoneInfo("America/Guayaquil"))
    '5/3/2026, 9:07:03'
    """
    local = moment.astimezone(tz)
    return f"{local.day}/{local.month}/{local.year}, {local.hour}:{local.minute:02d}:{local.second:02d}"


class SubmissionService(SubmissionProcessor):
    """
    Accepts submissions on behalf of the HTTP layer.

    The timestamp is taken once here, at enqueue time, so a job that is
    retried minutes later still records when the form was sent.
    """

    def __init__(
        self,
        job_queue: JobQueue,
        timezone_name: str = "America/Guayaquil",
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize submission service.

        Args:
            job_queue: Queue new jobs are enqueued on
            timezone_name: IANA zone used for the row timestamp
            clock: Source of the current time, injectable for tests
        """
        self.job_queue = job_queue
        self.tz = ZoneInfo(timezone_name)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.metrics = MetricsLogger("form_relay.metrics")

    async def accept(self, request: SubmissionRequest) -> JobHandle:
        start_time = time.time()

        submission = validate_submission(request)
        payload = JobPayload(
            name=submission.name,
            phone=submission.phone,
            timestamp=format_submission_timestamp(self._clock(), self.tz)
        )

        handle = await self.job_queue.enqueue(payload)

        self.metrics.log_submission_accepted(
            job_id=handle.job_id,
            entry_id=handle.entry_id,
            processing_time_ms=(time.time() - start_time) * 1000
        )
        return handle
