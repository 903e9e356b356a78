"""
Queue handler that writes one submission to the spreadsheet.
"""

import logging
import time

from ..domain.ports import SheetWriter, WriteError
from ..domain.schema import AppendRecord, Job
from ..telemetry.logger import MetricsLogger


logger = logging.getLogger(__name__)


class SubmissionWorker:
    """
    Job handler for the submissions queue.

    Returns on a successful append and re-raises on failure so the queue can
    schedule the retry. Only the submitter name is logged, never the phone.
    """

    def __init__(self, sheet_writer: SheetWriter, product_tag: str = "Lipoxin"):
        self.sheet_writer = sheet_writer
        self.product_tag = product_tag
        self.metrics = MetricsLogger("form_relay.metrics")

    async def __call__(self, job: Job) -> None:
        record = AppendRecord.from_payload(job.payload, self.product_tag)
        log_extra = {
            "component": "submission_worker",
            "job_id": job.id,
            "submitter_name": job.payload.name,
            "attempt": job.attempt,
            "max_attempts": job.max_attempts
        }

        logger.info(f"Processing job {job.id} for {job.payload.name}", extra=log_extra)
        start_time = time.time()

        try:
            result = await self.sheet_writer.append(record)
        except Exception as e:
            error_kind = e.kind.value if isinstance(e, WriteError) else "unexpected"
            self.metrics.log_sheet_append(
                job_id=job.id,
                duration_ms=(time.time() - start_time) * 1000,
                success=False,
                error_kind=error_kind
            )
            logger.error(
                f"Error processing job {job.id}: {e}",
                extra={**log_extra, "error_kind": error_kind}
            )
            raise

        self.metrics.log_sheet_append(
            job_id=job.id,
            duration_ms=(time.time() - start_time) * 1000,
            success=True
        )
        logger.info(
            f"Job {job.id} written to {result.updated_range}",
            extra={**log_extra, "updated_rows": result.updated_rows}
        )
