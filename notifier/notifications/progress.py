"""Batch progress projection.

A batch's counters and status are derived from its jobs, never mutated on
their own. Recomputing costs O(batch size); `project_batch` is the only
place that would change if incremental counters were ever introduced.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from .models import BatchStatus, EmailJob, JobBatch, JobStatus, utcnow


@dataclass(frozen=True)
class StatusCounts:
    pending: int = 0
    scheduled: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def terminal(self) -> int:
        return self.completed + self.failed + self.cancelled

    @property
    def total(self) -> int:
        return self.terminal + self.pending + self.scheduled + self.processing

    def as_dict(self) -> dict[str, int]:
        return {status.value: getattr(self, status.value) for status in JobStatus}


def count_statuses(statuses: Iterable[JobStatus]) -> StatusCounts:
    counts = dict.fromkeys((s.value for s in JobStatus), 0)
    for status in statuses:
        counts[status.value] += 1
    return StatusCounts(**counts)


def derive_batch_status(counts: StatusCounts, total: int) -> BatchStatus:
    """Pure function of the job status multiset."""
    if total > 0 and counts.terminal >= total:
        if counts.failed >= total:
            return BatchStatus.FAILED
        if counts.failed > 0:
            return BatchStatus.PARTIAL_FAILURE
        return BatchStatus.COMPLETED
    if counts.processing > 0:
        return BatchStatus.IN_PROGRESS
    # Waiting in the queue for the send time is not "in progress"
    if counts.scheduled > 0 or counts.completed > 0:
        return BatchStatus.SCHEDULED
    return BatchStatus.PENDING


def project_batch(batch: JobBatch, jobs: Iterable[EmailJob], now: datetime | None = None) -> JobBatch:
    """Return a copy of `batch` with counters and status recomputed from `jobs`."""
    counts = count_statuses(job.status for job in jobs)
    return batch.model_copy(
        update={
            "completed_jobs": counts.completed,
            "failed_jobs": counts.failed,
            "cancelled_jobs": counts.cancelled,
            "status": derive_batch_status(counts, batch.total_jobs),
            "updated_at": now or utcnow(),
        }
    )
