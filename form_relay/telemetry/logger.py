"""
Logging configuration for form-relay service.
Provides structured JSON logging with correlation IDs and metrics.
"""

import logging
import sys
import json
import time
from datetime import datetime, timezone
from typing import Any, Optional

from ..domain.schema import JobEvent, JobEventType


class JSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging.
    Formats log records as JSON with consistent fields.
    """

    # Attributes every LogRecord has; anything else came in through extra=
    STANDARD_FIELDS = {
        'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
        'filename', 'module', 'exc_info', 'exc_text', 'stack_info',
        'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
        'thread', 'threadName', 'processName', 'process', 'getMessage',
        'taskName', 'message', 'asctime'
    }

    def __init__(
        self,
        service_name: str = "form-relay",
        include_extra: bool = True
    ):
        """
        Initialize JSON formatter.

        Args:
            service_name: Name of the service for log identification
            include_extra: Whether to include extra fields from log record
        """
        super().__init__()
        self.service_name = service_name
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            for key, value in record.__dict__.items():
                if key not in self.STANDARD_FIELDS and not key.startswith('_'):
                    log_entry[key] = value

        return json.dumps(log_entry, default=self._json_default, ensure_ascii=False)

    @staticmethod
    def _json_default(obj: Any) -> str:
        """
        JSON serializer for objects not serializable by default.

        Args:
            obj: Object to serialize

        Returns:
            String representation of object
        """
        if isinstance(obj, datetime):
            return obj.isoformat()
        return str(obj)


class CorrelationFilter(logging.Filter):
    """
    Logging filter that adds correlation ID to log records.
    Useful for tracing a submission from request to spreadsheet row.
    """

    def __init__(self, correlation_id: Optional[str] = None):
        """
        Initialize correlation filter.

        Args:
            correlation_id: Static correlation ID, or None for dynamic
        """
        super().__init__()
        self.correlation_id = correlation_id

    def filter(self, record: logging.LogRecord) -> bool:
        """
        Add correlation ID to log record.

        Job-scoped records reuse their job_id so one submission can be followed
        across enqueue, attempts and completion.
        """
        if not hasattr(record, 'correlation_id'):
            job_id = getattr(record, 'job_id', None)
            record.correlation_id = (
                self.correlation_id
                or (f"job-{job_id}" if job_id else self._generate_correlation_id())
            )

        return True

    @staticmethod
    def _generate_correlation_id() -> str:
        return f"fr-{int(time.time() * 1000)}"


def setup_logging(
    level: str = "INFO",
    service_name: str = "form-relay",
    enable_json: bool = True,
    enable_correlation: bool = True
) -> None:
    """
    Setup logging configuration for the service.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        service_name: Service name for log identification
        enable_json: Whether to use JSON formatting
        enable_correlation: Whether to add correlation IDs
    """
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level}")

    if enable_json:
        formatter = JSONFormatter(service_name=service_name)
    else:
        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    if enable_correlation:
        handler.addFilter(CorrelationFilter())

    logging.root.setLevel(numeric_level)
    logging.root.handlers.clear()
    logging.root.addHandler(handler)

    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("fastapi").setLevel(logging.INFO)
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)
    logging.getLogger("google.auth").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(
        "Logging configured",
        extra={
            "component": "logger",
            "level": level,
            "json_enabled": enable_json,
            "correlation_enabled": enable_correlation
        }
    )


class MetricsLogger:
    """
    Helper class for logging metrics and performance data.
    """

    def __init__(self, logger_name: str = "metrics"):
        """
        Initialize metrics logger.

        Args:
            logger_name: Name of the logger to use
        """
        self.logger = logging.getLogger(logger_name)

    def log_submission_accepted(
        self,
        job_id: str,
        entry_id: str,
        processing_time_ms: float
    ) -> None:
        """
        Log a submission that made it into the queue.

        Args:
            job_id: Queue job ID
            entry_id: Broker entry ID
            processing_time_ms: Time from request to enqueue in milliseconds
        """
        self.logger.info(
            "Submission accepted",
            extra={
                "metric_type": "submission_accepted",
                "job_id": job_id,
                "entry_id": entry_id,
                "processing_time_ms": round(processing_time_ms, 2)
            }
        )

    def log_sheet_append(
        self,
        job_id: str,
        duration_ms: float,
        success: bool,
        error_kind: Optional[str] = None
    ) -> None:
        """
        Log spreadsheet append metrics.

        Args:
            job_id: Queue job ID
            duration_ms: Append duration in milliseconds
            success: Whether the append succeeded
            error_kind: WriteError kind if failed
        """
        self.logger.info(
            "Sheet append",
            extra={
                "metric_type": "sheet_append",
                "job_id": job_id,
                "duration_ms": round(duration_ms, 2),
                "success": success,
                "error_kind": error_kind
            }
        )

    def log_http_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
        client_ip: Optional[str] = None
    ) -> None:
        """
        Log HTTP request metrics.

        Args:
            method: HTTP method
            path: Request path
            status_code: Response status code
            duration_ms: Request duration in milliseconds
            client_ip: Client IP address
        """
        self.logger.info(
            f"HTTP request: {method} {path}",
            extra={
                "metric_type": "http_request",
                "method": method,
                "path": path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip
            }
        )


class QueueEventLogger:
    """
    Queue subscriber that turns job lifecycle events into log records.

    A terminal failure is logged at ERROR: the job has left the queue and
    needs an operator to look at the dead-letter stream.
    """

    def __init__(self, logger_name: str = "form_relay.queue.events"):
        self.logger = logging.getLogger(logger_name)

    def __call__(self, event: JobEvent) -> None:
        extra = {
            "component": "job_queue",
            "event": event.type.value,
            "queue": event.queue,
            "job_id": event.job_id,
            "attempts_made": event.attempts_made,
            "max_attempts": event.max_attempts,
            "submitter_name": event.submitter_name
        }

        if event.type == JobEventType.COMPLETED:
            self.logger.info(f"Job {event.job_id} in queue {event.queue} completed", extra=extra)

        elif event.type == JobEventType.RETRY_SCHEDULED:
            extra.update({"delay_ms": event.delay_ms, "error": event.error})
            self.logger.warning(
                f"Job {event.job_id} in queue {event.queue} failed attempt "
                f"{event.attempts_made}/{event.max_attempts}, retrying in {event.delay_ms}ms",
                extra=extra
            )

        elif event.type == JobEventType.STALLED:
            self.logger.warning(f"Job {event.job_id} in queue {event.queue} stalled", extra=extra)

        elif event.type == JobEventType.FAILED:
            extra.update({"error": event.error, "dead_lettered": True})
            self.logger.error(
                f"Job {event.job_id} in queue {event.queue} failed permanently: {event.error}",
                extra=extra
            )

        else:
            extra.update({"error": event.error})
            self.logger.error(f"Queue {event.queue} error: {event.error}", extra=extra)
