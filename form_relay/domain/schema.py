"""
Domain schemas for form-relay service.
Defines submissions, queue jobs and the rows written to the spreadsheet.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, ConfigDict


class SubmissionRequest(BaseModel):
    """
    Raw form body as received on POST /submit.

    Fields are optional on the wire so that a missing value is reported
    by the validator instead of the framework.
    """
    model_config = ConfigDict(extra='ignore')

    name: Optional[Any] = Field(None, description="Submitter full name")
    phone: Optional[Any] = Field(None, description="Submitter phone, +593XXXXXXXXX")


class SanitizedSubmission(BaseModel):
    """Trimmed and validated submission."""
    model_config = ConfigDict(extra='forbid', frozen=True)

    name: str = Field(..., min_length=2, max_length=50)
    phone: str = Field(..., pattern=r"^\+593\d{9}$")


class BackoffPolicy(BaseModel):
    """Delay policy between job attempts."""
    model_config = ConfigDict(extra='forbid')

    type: Literal["exponential", "fixed"] = Field(default="exponential")
    delay_ms: int = Field(default=2000, ge=0, description="Base delay in milliseconds")

    def delay_for(self, attempts_made: int) -> int:
        """
        Delay before the next attempt, given how many attempts already failed.

        Exponential: 2000, 4000, 8000... Fixed: always delay_ms.
        """
        if self.type == "fixed":
            return self.delay_ms
        return self.delay_ms * 2 ** max(attempts_made - 1, 0)


class JobOptions(BaseModel):
    """Per-job queue options."""
    model_config = ConfigDict(extra='forbid')

    attempts: int = Field(default=3, ge=1, le=25)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    remove_on_complete: bool = Field(default=True)


class JobPayload(BaseModel):
    """Data frozen into a job at enqueue time."""
    model_config = ConfigDict(extra='forbid', frozen=True)

    name: str
    phone: str
    timestamp: str = Field(..., description="Submission time, formatted in the form's timezone")


class Job(BaseModel):
    """
    Unit of deferred work: one submission awaiting its spreadsheet write.
    Serialized as JSON into the broker.
    """
    model_config = ConfigDict(extra='forbid')

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    payload: JobPayload
    attempts_made: int = Field(default=0, ge=0, description="Attempts that already failed")
    max_attempts: int = Field(default=3, ge=1)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    remove_on_complete: bool = Field(default=True)
    stalled_count: int = Field(default=0, ge=0)
    failed_reason: Optional[str] = Field(default=None)
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def attempt(self) -> int:
        """Number of the attempt currently being made (1-based)."""
        return self.attempts_made + 1

    @property
    def exhausted(self) -> bool:
        return self.attempts_made >= self.max_attempts


class JobHandle(BaseModel):
    """Reference returned to the caller after a successful enqueue."""
    model_config = ConfigDict(extra='forbid')

    job_id: str
    entry_id: str = Field(..., description="Broker entry ID")


class Delivery(BaseModel):
    """A job as claimed by one consumer, bound to its broker entry."""
    model_config = ConfigDict(extra='forbid')

    entry_id: str
    job: Job


class JobEventType(str, Enum):
    """Queue lifecycle events published to subscribers."""
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    STALLED = "stalled"
    ERROR = "error"


class JobEvent(BaseModel):
    """Lifecycle notification for one job (or the queue itself, for ERROR)."""
    model_config = ConfigDict(extra='forbid')

    type: JobEventType
    queue: str
    job_id: Optional[str] = None
    attempts_made: int = 0
    max_attempts: int = 0
    delay_ms: Optional[int] = None
    error: Optional[str] = None
    submitter_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AppendRecord(BaseModel):
    """One spreadsheet row: name, phone, product tag, timestamp."""
    model_config = ConfigDict(extra='forbid', frozen=True)

    name: str
    phone: str
    product_tag: str
    timestamp: str

    @classmethod
    def from_payload(cls, payload: JobPayload, product_tag: str) -> "AppendRecord":
        return cls(
            name=payload.name,
            phone=payload.phone,
            product_tag=product_tag,
            timestamp=payload.timestamp
        )

    def as_row(self) -> List[str]:
        return [self.name, self.phone, self.product_tag, self.timestamp]


class AppendResult(BaseModel):
    """Result of a spreadsheet append."""
    model_config = ConfigDict(extra='forbid')

    updated_range: Optional[str] = None
    updated_rows: int = 0


class SubmitAccepted(BaseModel):
    """Response body for an accepted submission."""
    model_config = ConfigDict(extra='forbid')

    message: str


class HealthStatus(BaseModel):
    """Health check response."""
    model_config = ConfigDict(extra='forbid')

    status: str = Field(..., description="overall status: healthy, unhealthy")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    checks: dict[str, str] = Field(default_factory=dict, description="Individual check results")
