"""
Ports (interfaces) for form-relay service.
Following Dependency Inversion Principle - high-level modules depend on abstractions.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from .schema import (
    AppendRecord,
    AppendResult,
    Delivery,
    HealthStatus,
    Job,
    JobHandle,
    SubmissionRequest,
)


class QueueBroker(ABC):
    """
    Persistent storage and lease protocol behind the job queue.
    Implemented with Redis Streams; tests use an in-memory broker.
    """

    @abstractmethod
    async def push(self, job: Job) -> str:
        """
        Make a job ready for claiming.

        Returns:
            Broker entry ID

        Raises:
            QueueBrokerError: If the broker is unreachable
        """
        pass

    @abstractmethod
    async def claim(self, consumer: str, count: int, block_ms: int) -> List[Delivery]:
        """
        Lease up to `count` ready jobs to `consumer`, waiting at most `block_ms`.
        """
        pass

    @abstractmethod
    async def extend_lease(self, consumer: str, delivery: Delivery) -> bool:
        """Reset the idle time of a leased entry. False if the lease was lost."""
        pass

    @abstractmethod
    async def reclaim_stalled(
        self,
        consumer: str,
        min_idle_ms: int,
        count: int
    ) -> List[Delivery]:
        """
        Take over entries whose lease expired.

        Each returned job carries its incremented stalled_count.
        """
        pass

    @abstractmethod
    async def complete(self, delivery: Delivery) -> None:
        """Acknowledge a successfully processed entry."""
        pass

    @abstractmethod
    async def retry_later(self, delivery: Delivery, ready_at_ms: int) -> None:
        """Acknowledge the entry and schedule delivery.job for a later attempt."""
        pass

    @abstractmethod
    async def dead_letter(self, delivery: Delivery) -> None:
        """Acknowledge the entry and move delivery.job to the dead-letter store."""
        pass

    @abstractmethod
    async def promote_due(self, now_ms: int, limit: int) -> int:
        """Move delayed jobs whose time has come back to ready. Returns count."""
        pass

    @abstractmethod
    async def check_health(self) -> HealthStatus:
        """
        Check if the broker is reachable and report queue depth.

        Returns:
            HealthStatus with current state
        """
        pass


class SheetWriter(ABC):
    """
    Interface for appending rows to the external spreadsheet.
    """

    @abstractmethod
    async def append(self, record: AppendRecord) -> AppendResult:
        """
        Append exactly one row.

        Raises:
            WriteError: On auth, network, quota or API rejection failures
        """
        pass


class RateLimiter(ABC):
    """Per-key admission gate."""

    @abstractmethod
    def allow(self, key: str) -> bool:
        """Record a hit for `key`. False if the key is over its limit."""
        pass

    @abstractmethod
    def retry_after(self, key: str) -> int:
        """Seconds until `key` may be admitted again (0 if now)."""
        pass


class SubmissionProcessor(ABC):
    """
    Interface for accepting incoming submissions.
    Coordinates validation and queueing.
    """

    @abstractmethod
    async def accept(self, request: SubmissionRequest) -> JobHandle:
        """
        Validate and enqueue a submission.

        Raises:
            ValidationError: If the input is rejected
            EnqueueError: If the job could not be queued
        """
        pass


class ValidationErrorKind(str, Enum):
    MISSING_FIELD = "missing_field"
    INVALID_NAME = "invalid_name"
    INVALID_PHONE = "invalid_phone"


class WriteErrorKind(str, Enum):
    AUTH = "auth"
    TRANSIENT = "transient"
    QUOTA = "quota"
    REJECTED = "rejected"


# Custom exceptions
class ValidationError(Exception):
    """Raised when a submission fails input validation."""

    def __init__(self, kind: ValidationErrorKind, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.field = field


class RateLimitExceeded(Exception):
    """Raised when a client key is over its admission limit."""

    def __init__(self, message: str, retry_after: int = 0):
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after


class QueueBrokerError(Exception):
    """Raised when a broker operation fails."""
    pass


class EnqueueError(Exception):
    """Raised when a submission cannot be queued."""
    pass


class WriteError(Exception):
    """Raised when the spreadsheet append fails."""

    def __init__(self, kind: WriteErrorKind, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status = status


class ConfigError(Exception):
    """Raised when required configuration is missing."""

    def __init__(self, missing: List[str]):
        super().__init__(f"Missing required configuration: {', '.join(missing)}")
        self.missing = missing
