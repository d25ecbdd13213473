"""Queue-side handlers: the delivery worker and the success/failure callbacks."""

import logging

from ..config import Settings
from ..integrations.mailer import MailProvider
from .emails import render_email
from .models import (
    EmailJob,
    JobStatus,
    JobUpdate,
    QueueBatchPayload,
    WorkerResult,
)
from .store import RedisJobStore

logger = logging.getLogger(__name__)


class DeliveryNotReadyError(Exception):
    """A job in the message has no recorded queue handle yet; the queue should retry."""


class DeliveryRetryError(Exception):
    """Every send in the message failed with a transient error; the queue should retry."""


_SKIP_STATUSES = (JobStatus.CANCELLED, JobStatus.COMPLETED, JobStatus.FAILED)


class NotificationWorker:
    def __init__(self, store: RedisJobStore, mailer: MailProvider, settings: Settings) -> None:
        self._store = store
        self._mailer = mailer
        self._settings = settings

    def _skip_reason(self, job: EmailJob | None, message_id: str | None) -> str | None:
        if job is None:
            return "job not found"
        if job.status in _SKIP_STATUSES:
            return f"job is {job.status.value}"
        if message_id and job.queue_message_id and job.queue_message_id != message_id:
            return "superseded by a newer queue message"
        return None

    def deliver(self, payload: QueueBatchPayload, message_id: str | None = None) -> list[WorkerResult]:
        """Send every still-live recipient of a queue message.

        The job status read here is the cancellation guard: anything cancelled
        or already finished is reported as skipped and never sent.
        """
        jobs = {job.id: job for job in self._store.get_jobs(payload.job_ids)}

        results: dict[str, WorkerResult] = {}
        deliverable = []
        for recipient in payload.recipients:
            job = jobs.get(recipient.job_id)
            reason = self._skip_reason(job, message_id)
            if reason:
                logger.info("Skipping job %s: %s", recipient.job_id, reason)
                results[recipient.job_id] = WorkerResult(job_id=recipient.job_id, skipped=True, error=reason)
            elif job.status == JobStatus.PENDING:
                raise DeliveryNotReadyError(f"Job {job.id} has not been marked scheduled yet")
            else:
                deliverable.append(recipient)

        if deliverable:
            self._store.update_job_statuses([
                JobUpdate(job_id=r.job_id, status=JobStatus.PROCESSING, increment_attempts=True)
                for r in deliverable
            ])

        for recipient in deliverable:
            email = render_email(
                payload.kind,
                recipient,
                payload.event_id,
                payload.metadata,
                self._settings.public_app_url,
                subject_prefix=self._settings.email_subject_prefix,
                test_mode=self._settings.email_test_mode,
            )
            sent = self._mailer.send(recipient.to, email.subject, email.text, email.html)
            if sent.ok:
                logger.info("Sent %s email for job %s", payload.kind.value, recipient.job_id)
            else:
                logger.warning("Send failed for job %s: %s", recipient.job_id, sent.error)
            results[recipient.job_id] = WorkerResult(
                job_id=recipient.job_id,
                provider_message_id=sent.message_id,
                error=sent.error,
                retryable=sent.retryable,
            )

        ordered = [results[r.job_id] for r in payload.recipients]
        attempted = [r for r in ordered if not r.skipped]
        # Re-delivering is safe only when nobody in the message received it
        if attempted and all(r.error and r.retryable for r in attempted):
            raise DeliveryRetryError(
                f"All {len(attempted)} send(s) failed transiently: {attempted[0].error}"
            )

        logger.info(
            "Delivered batch %s %s: %d sent, %d failed, %d skipped",
            payload.batch_id, payload.kind.value,
            sum(1 for r in attempted if not r.error),
            sum(1 for r in attempted if r.error),
            len(ordered) - len(attempted),
        )
        return ordered

    def apply_results(self, payload: QueueBatchPayload, results: list[WorkerResult]) -> list[EmailJob]:
        """Success callback: record each recipient's receipt or error. Idempotent."""
        wanted = set(payload.job_ids)
        updates = []
        for result in results:
            if result.skipped or result.job_id not in wanted:
                continue
            if result.error:
                updates.append(JobUpdate(job_id=result.job_id, status=JobStatus.FAILED, last_error=result.error))
            else:
                updates.append(JobUpdate(
                    job_id=result.job_id,
                    status=JobStatus.COMPLETED,
                    provider_message_id=result.provider_message_id,
                ))
        if not updates:
            return []
        updated = self._store.update_job_statuses(updates)
        logger.info("Applied %d delivery result(s) for batch %s", len(updated), payload.batch_id)
        return updated

    def handle_exhausted(self, payload: QueueBatchPayload, error: str, attempts: int) -> list[EmailJob]:
        """Failure callback: the queue gave up; fail the jobs and dead-letter them."""
        reason = f"Delivery exhausted after {attempts} attempts: {error}"
        # Re-running with the same reason is a no-op, so a repeated callback dead-letters once
        failed = self._store.fail_to_dead_letter(payload.job_ids, reason, attempts)
        logger.error("Batch %s %s exhausted retries: %d job(s) dead-lettered", payload.batch_id, payload.kind.value, len(failed))
        return failed
