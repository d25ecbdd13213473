"""Notification job, batch and queue payload models.

Jobs and batches are stored in Redis as JSON documents, so these are pydantic
models rather than ORM tables.
"""

import enum
import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


class NotificationKind(str, enum.Enum):
    PREP_48H = "prep-48h"
    PREP_24H = "prep-24h"
    MENTOR_PREP = "mentor-prep"
    FEEDBACK_IMMEDIATE = "feedback-immediate"


class ParticipantRole(str, enum.Enum):
    STUDENT = "student"
    MENTOR = "mentor"


class JobStatus(str, enum.Enum):
    PENDING = "pending"  # created, not yet handed to the queue
    SCHEDULED = "scheduled"  # queued, waiting for its send time
    PROCESSING = "processing"  # worker is calling the mail provider
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    @property
    def is_cancellable(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.SCHEDULED)

    def can_transition_to(self, target: "JobStatus") -> bool:
        """Re-writing the current status is always allowed (idempotent callbacks)."""
        return target == self or target in _TRANSITIONS[self]


# pending -> completed is deliberately absent: every sent email has a queue handle.
_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.SCHEDULED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.SCHEDULED: frozenset(
        {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class BatchStatus(str, enum.Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"

    @property
    def is_final(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.PARTIAL_FAILURE, BatchStatus.FAILED)


class TemplateMetadata(BaseModel):
    """Rendering inputs shared by every recipient of a group. Opaque to the scheduler."""

    event_type: str = "Session"
    event_date: str = ""
    event_time: str = ""
    team_name: str = ""
    mentor_names: list[str] = Field(default_factory=list)
    prep_form_url: str | None = None
    feedback_form_url: str | None = None


class EmailJob(BaseModel):
    id: str = Field(default_factory=new_id)
    batch_id: str
    event_id: str
    kind: NotificationKind
    recipient_email: str
    recipient_name: str = ""
    recipient_role: ParticipantRole = ParticipantRole.STUDENT
    scheduled_for: datetime
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    queue_message_id: str | None = None
    provider_message_id: str | None = None
    metadata: TemplateMetadata = Field(default_factory=TemplateMetadata)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class JobSpec(BaseModel):
    """A job before it is persisted (no id, batch or status yet)."""

    event_id: str
    kind: NotificationKind
    recipient_email: str
    recipient_name: str = ""
    recipient_role: ParticipantRole = ParticipantRole.STUDENT
    scheduled_for: datetime
    metadata: TemplateMetadata = Field(default_factory=TemplateMetadata)


class JobBatch(BaseModel):
    id: str = Field(default_factory=new_id)
    event_id: str
    event_label: str = ""
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0
    status: BatchStatus = BatchStatus.PENDING
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class JobUpdate(BaseModel):
    """One entry of a batched status update."""

    job_id: str
    status: JobStatus
    queue_message_id: str | None = None
    provider_message_id: str | None = None
    last_error: str | None = None
    increment_attempts: bool = False


class JobProgress(BaseModel):
    batch_id: str
    event_id: str
    event_label: str
    total: int
    completed: int
    failed: int
    cancelled: int
    status: BatchStatus
    jobs: list[EmailJob] | None = None


class DeadLetterEntry(BaseModel):
    job: EmailJob
    reason: str
    attempts: int = 0
    added_at: datetime = Field(default_factory=utcnow)
    reviewed: bool = False


# ── Inbound anchor entity (read-only, from the record store) ──────────


class Participant(BaseModel):
    id: str = ""
    email: str = ""
    name: str = ""
    role: ParticipantRole = ParticipantRole.STUDENT


class Event(BaseModel):
    id: str
    label: str = ""
    event_type: str = "Session"
    scheduled_start: datetime | None = None
    duration_minutes: int | None = None
    team_name: str = ""
    participants: list[Participant] = Field(default_factory=list)


# ── Queue wire payloads ───────────────────────────────────────────────


class BatchRecipient(BaseModel):
    job_id: str
    to: str
    recipient_name: str = ""
    role: ParticipantRole = ParticipantRole.STUDENT


class QueueBatchPayload(BaseModel):
    """Body published to the queue: one message per (kind, scheduled_for) group."""

    batch_id: str
    event_id: str
    kind: NotificationKind
    scheduled_for: datetime
    recipients: list[BatchRecipient]
    metadata: TemplateMetadata = Field(default_factory=TemplateMetadata)

    @property
    def job_ids(self) -> list[str]:
        return [r.job_id for r in self.recipients]


class WorkerResult(BaseModel):
    job_id: str
    provider_message_id: str | None = None
    error: str | None = None
    retryable: bool = False
    skipped: bool = False


class WorkerResponse(BaseModel):
    success: bool = True
    results: list[WorkerResult] = Field(default_factory=list)
