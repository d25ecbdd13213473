"""Turn an event into persisted jobs and one queue message per send slot."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from ..config import Settings
from ..integrations.qstash import FlowControl, MessageQueue, QueueError
from .grouping import JobGroup, group_jobs
from .models import (
    BatchRecipient,
    EmailJob,
    Event,
    JobSpec,
    JobStatus,
    JobUpdate,
    Participant,
    ParticipantRole,
    QueueBatchPayload,
    TemplateMetadata,
    utcnow,
)
from .schedule import (
    applicable_kinds,
    calculate_send_times,
    compute_delay_seconds,
    format_event_date,
    format_event_time,
)
from .store import RedisJobStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduleResult:
    batch_id: str
    job_count: int
    group_count: int
    failed_groups: int = 0


@dataclass(frozen=True)
class PublishOutcome:
    group: JobGroup
    message_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.message_id is not None


def eligible_recipients(participants: list[Participant]) -> list[Participant]:
    """Participants with an email address, first occurrence per address wins."""
    seen: set[str] = set()
    recipients = []
    for participant in participants:
        email = participant.email.strip().lower()
        if not email or email in seen:
            continue
        seen.add(email)
        recipients.append(participant)
    return recipients


def build_metadata(event: Event) -> TemplateMetadata:
    start = event.scheduled_start
    return TemplateMetadata(
        event_type=event.event_type or "Session",
        event_date=format_event_date(start) if start else "",
        event_time=format_event_time(start) if start else "",
        team_name=event.team_name,
        mentor_names=[p.name for p in event.participants if p.role == ParticipantRole.MENTOR and p.name],
    )


class NotificationScheduler:
    def __init__(
        self,
        store: RedisJobStore,
        queue: MessageQueue,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._queue = queue
        self._settings = settings
        self._clock = clock

    @property
    def flow_control(self) -> FlowControl:
        return FlowControl(
            key=self._settings.flow_control_key,
            rate=self._settings.flow_control_rate,
            parallelism=self._settings.flow_control_parallelism,
            period=self._settings.flow_control_period,
        )

    def build_job_specs(self, event: Event, now: datetime) -> list[JobSpec]:
        """Recipient x applicable-kind cross product over the still-valid send times."""
        if event.scheduled_start is None:
            return []
        duration = event.duration_minutes or self._settings.default_duration_minutes
        send_times = calculate_send_times(
            event.scheduled_start,
            duration,
            now=now,
            grace=timedelta(minutes=self._settings.schedule_grace_minutes),
        )
        metadata = build_metadata(event)
        specs = []
        for participant in eligible_recipients(event.participants):
            for kind in applicable_kinds(participant.role):
                if kind not in send_times:
                    continue
                specs.append(JobSpec(
                    event_id=event.id,
                    kind=kind,
                    recipient_email=participant.email.strip(),
                    recipient_name=participant.name,
                    recipient_role=participant.role,
                    scheduled_for=send_times[kind],
                    metadata=metadata,
                ))
        return specs

    def schedule_event_notifications(self, event: Event, created_by: str | None = None) -> ScheduleResult | None:
        """Persist and publish every notification for an event.

        Returns None when there is nothing to send. Group publish failures are
        recorded on the jobs; only store errors propagate.
        """
        if event.scheduled_start is None:
            logger.info("Event %s has no start time; nothing to schedule", event.id)
            return None
        if not eligible_recipients(event.participants):
            logger.info("Event %s has no recipients with an email address", event.id)
            return None

        specs = self.build_job_specs(event, self._clock())
        if not specs:
            logger.info("Event %s has no send times left in the future", event.id)
            return None

        batch, jobs = self._store.create_batch(event.id, event.label, specs, created_by=created_by)
        outcomes = self.publish_groups(group_jobs(jobs))
        failed = sum(1 for o in outcomes if not o.ok)

        logger.info(
            "Scheduled batch %s for event %s: %d jobs in %d groups (%d failed)",
            batch.id, event.id, len(jobs), len(outcomes), failed,
        )
        return ScheduleResult(batch_id=batch.id, job_count=len(jobs), group_count=len(outcomes), failed_groups=failed)

    def build_payload(self, group: JobGroup) -> QueueBatchPayload:
        first = group.jobs[0]
        return QueueBatchPayload(
            batch_id=first.batch_id,
            event_id=first.event_id,
            kind=group.kind,
            scheduled_for=group.scheduled_for,
            recipients=[
                BatchRecipient(
                    job_id=job.id,
                    to=job.recipient_email,
                    recipient_name=job.recipient_name,
                    role=job.recipient_role,
                )
                for job in group.jobs
            ],
            metadata=first.metadata,
        )

    def publish_group(self, group: JobGroup) -> str:
        """Publish one group with its delay; raises QueueError."""
        payload = self.build_payload(group)
        return self._queue.publish(
            self._settings.worker_url,
            payload.model_dump(mode="json"),
            delay_seconds=compute_delay_seconds(group.scheduled_for, self._clock()),
            retries=self._settings.queue_retries,
            callback=self._settings.callback_url,
            failure_callback=self._settings.failure_url,
            flow_control=self.flow_control,
        )

    def publish_groups(self, groups: list[JobGroup]) -> list[PublishOutcome]:
        """Publish each group independently and record the outcome on its jobs."""
        outcomes = []
        for group in groups:
            try:
                message_id = self.publish_group(group)
            except QueueError as exc:
                logger.error(
                    "Failed to publish %s group (%d jobs) for batch %s: %s",
                    group.kind.value, len(group.jobs), group.jobs[0].batch_id, exc,
                )
                self._store.update_job_statuses([
                    JobUpdate(job_id=job_id, status=JobStatus.FAILED, last_error=str(exc))
                    for job_id in group.job_ids
                ])
                outcomes.append(PublishOutcome(group=group, error=str(exc)))
                continue

            self._store.update_job_statuses([
                JobUpdate(job_id=job_id, status=JobStatus.SCHEDULED, queue_message_id=message_id)
                for job_id in group.job_ids
            ])
            outcomes.append(PublishOutcome(group=group, message_id=message_id))
        return outcomes

    def schedule_single_job(self, job: EmailJob) -> str:
        """Publish a one-recipient message for `job`; raises QueueError."""
        return self.publish_group(JobGroup(kind=job.kind, scheduled_for=job.scheduled_for, jobs=[job]))
