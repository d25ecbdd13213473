"""Operator actions: cancel, reschedule, retry, resend and delete notification jobs."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from ..integrations.qstash import MessageQueue, QueueError
from .grouping import group_jobs
from .models import EmailJob, Event, JobStatus, JobUpdate, utcnow
from .scheduler import NotificationScheduler, ScheduleResult
from .store import InvalidTransitionError, JobNotFoundError, RedisJobStore

logger = logging.getLogger(__name__)

# Jobs that a queue message may still deliver to
_LIVE_STATUSES = (JobStatus.PENDING, JobStatus.SCHEDULED, JobStatus.PROCESSING)


@dataclass(frozen=True)
class CancelResult:
    cancelled: int = 0
    delete_failed: int = 0
    skipped: int = 0


@dataclass(frozen=True)
class RetryResult:
    retried: int = 0
    failed: int = 0
    total: int = 0


@dataclass(frozen=True)
class RescheduleResult:
    cancelled: CancelResult
    scheduled: ScheduleResult | None


class NotificationOperations:
    def __init__(
        self,
        store: RedisJobStore,
        queue: MessageQueue,
        scheduler: NotificationScheduler,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._queue = queue
        self._scheduler = scheduler
        self._clock = clock

    # ── Cancellation ──────────────────────────────────────────────────

    def _cancel(self, event_id: str, jobs: list[EmailJob]) -> CancelResult:
        """Delete the queue messages no other live job needs, then mark jobs cancelled.

        The status write happens whether or not the deletes succeed; the worker
        skips cancelled jobs on delivery.
        """
        targets = [job for job in jobs if job.status.is_cancellable]
        skipped = len(jobs) - len(targets)
        if not targets:
            return CancelResult(skipped=skipped)

        target_ids = {job.id for job in targets}
        still_needed = {
            job.queue_message_id
            for job in self._store.get_event_jobs(event_id)
            if job.id not in target_ids and job.status in _LIVE_STATUSES and job.queue_message_id
        }
        handles = dict.fromkeys(job.queue_message_id for job in targets if job.queue_message_id)

        delete_failed = 0
        for handle in handles:
            if handle in still_needed:
                logger.info("Keeping queue message %s: other recipients still depend on it", handle)
                continue
            try:
                self._queue.delete(handle)
            except QueueError as exc:
                delete_failed += 1
                logger.warning("Could not delete queue message %s: %s", handle, exc)

        cancelled = self._store.update_job_statuses([
            JobUpdate(job_id=job.id, status=JobStatus.CANCELLED) for job in targets
        ])
        logger.info("Cancelled %d job(s) for event %s (%d delete failures)", len(cancelled), event_id, delete_failed)
        return CancelResult(
            cancelled=len(cancelled),
            delete_failed=delete_failed,
            skipped=skipped + len(targets) - len(cancelled),
        )

    def cancel_batch(self, batch_id: str) -> CancelResult:
        batch = self._store.get_batch(batch_id)
        if batch is None:
            raise JobNotFoundError(f"Batch {batch_id} not found")
        return self._cancel(batch.event_id, self._store.get_batch_jobs(batch_id))

    def cancel_event(self, event_id: str) -> CancelResult:
        return self._cancel(event_id, self._store.get_event_jobs(event_id))

    def cancel_recipient(self, event_id: str, email: str) -> CancelResult:
        """Cancel one recipient's jobs; shared group messages survive for everyone else."""
        return self._cancel(event_id, self._store.find_event_jobs(event_id, recipient=email))

    def cancel_job(self, event_id: str, job_id: str) -> CancelResult:
        job = self._store.get_job(job_id)
        if job is None or job.event_id != event_id:
            raise JobNotFoundError(f"Job {job_id} not found for event {event_id}")
        if not job.status.is_cancellable:
            raise InvalidTransitionError(job.id, job.status, JobStatus.CANCELLED)
        return self._cancel(event_id, [job])

    def reschedule_event(self, event: Event, created_by: str | None = None) -> RescheduleResult:
        """Cancel everything still queued for the event, then schedule it afresh.

        Used when the start time or the participants change. The new jobs land
        in a new batch; the old batch keeps its cancelled jobs for history.
        """
        cancelled = self.cancel_event(event.id)
        scheduled = self._scheduler.schedule_event_notifications(event, created_by=created_by)
        logger.info(
            "Rescheduled event %s: %d cancelled, new batch %s",
            event.id, cancelled.cancelled, scheduled.batch_id if scheduled else None,
        )
        return RescheduleResult(cancelled=cancelled, scheduled=scheduled)

    # ── Retry / resend ────────────────────────────────────────────────

    def retry_failed_for_event(self, event_id: str) -> RetryResult:
        """Reset every failed job and republish, one message per (kind, scheduled_for) group."""
        failed_ids = [job.id for job in self._store.get_event_jobs(event_id) if job.status == JobStatus.FAILED]
        if not failed_ids:
            return RetryResult()

        reset = self._store.reset_failed_jobs(failed_ids)
        outcomes = self._scheduler.publish_groups(group_jobs(reset))
        retried = sum(len(o.group.jobs) for o in outcomes if o.ok)
        result = RetryResult(retried=retried, failed=len(reset) - retried, total=len(reset))
        logger.info("Retried event %s: %d republished, %d failed", event_id, result.retried, result.failed)
        return result

    def _publish_one(self, job: EmailJob) -> EmailJob:
        try:
            message_id = self._scheduler.schedule_single_job(job)
        except QueueError as exc:
            self._store.update_job_status(job.id, JobStatus.FAILED, last_error=str(exc))
            raise
        return self._store.update_job_status(job.id, JobStatus.SCHEDULED, queue_message_id=message_id) or job

    def retry_job(self, job_id: str) -> EmailJob:
        """failed -> pending -> scheduled for one job; keeps its original send time."""
        job = self._store.reset_failed_job(job_id)
        logger.info("Retrying job %s (attempts so far: %d)", job.id, job.attempts)
        return self._publish_one(job)

    def resend_job(self, job_id: str) -> EmailJob:
        """Send a completed job again as a fresh job in the same batch, due now."""
        original = self._store.get_job(job_id)
        if original is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if original.status != JobStatus.COMPLETED:
            raise InvalidTransitionError(job_id, original.status, JobStatus.PENDING)

        now = self._clock()
        fresh = EmailJob(
            batch_id=original.batch_id,
            event_id=original.event_id,
            kind=original.kind,
            recipient_email=original.recipient_email,
            recipient_name=original.recipient_name,
            recipient_role=original.recipient_role,
            scheduled_for=now,
            metadata=original.metadata,
            created_at=now,
            updated_at=now,
        )
        self._store.add_job(fresh)
        logger.info("Resending job %s as %s", job_id, fresh.id)
        return self._publish_one(fresh)

    def delete_batch(self, batch_id: str) -> CancelResult:
        """Cancel what is still queued, then remove the batch and its jobs."""
        result = self.cancel_batch(batch_id)
        self._store.delete_batch(batch_id)
        return result

