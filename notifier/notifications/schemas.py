"""Notification request/response schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from .models import BatchStatus, EmailJob, Event, JobBatch, Participant


class ScheduleRequest(BaseModel):
    label: str = Field("", max_length=255)
    event_type: str = Field("Session", max_length=100)
    scheduled_start: datetime | None = None
    duration_minutes: int | None = Field(None, ge=1, le=24 * 60)
    team_name: str = Field("", max_length=255)
    participants: list[Participant] = Field(default_factory=list)
    created_by: str | None = Field(None, max_length=255)

    def to_event(self, event_id: str) -> Event:
        return Event(
            id=event_id,
            label=self.label,
            event_type=self.event_type,
            scheduled_start=self.scheduled_start,
            duration_minutes=self.duration_minutes,
            team_name=self.team_name,
            participants=self.participants,
        )


class ScheduleResponse(BaseModel):
    ok: bool = True
    scheduled: bool
    batch_id: str | None = None
    job_count: int = 0
    group_count: int = 0
    failed_groups: int = 0


class RescheduleResponse(ScheduleResponse):
    cancelled: int = 0
    delete_failed: int = 0


class EventJobsResponse(BaseModel):
    event_id: str
    total: int
    summary: dict[str, int]
    jobs: list[EmailJob]


class BatchSummary(BaseModel):
    id: str
    event_id: str
    event_label: str
    total: int
    completed: int
    failed: int
    cancelled: int
    status: BatchStatus
    created_by: str | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_batch(cls, batch: JobBatch) -> "BatchSummary":
        return cls(
            id=batch.id,
            event_id=batch.event_id,
            event_label=batch.event_label,
            total=batch.total_jobs,
            completed=batch.completed_jobs,
            failed=batch.failed_jobs,
            cancelled=batch.cancelled_jobs,
            status=batch.status,
            created_by=batch.created_by,
            created_at=batch.created_at,
            updated_at=batch.updated_at,
        )
