"""Tests for batch status derivation."""

import itertools
import random
from datetime import UTC, datetime

import pytest

from notifier.notifications.models import BatchStatus, EmailJob, JobBatch, JobStatus, NotificationKind
from notifier.notifications.progress import count_statuses, derive_batch_status, project_batch

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


def _status(*statuses: JobStatus) -> BatchStatus:
    return derive_batch_status(count_statuses(statuses), len(statuses))


class TestDeriveBatchStatus:
    def test_all_pending(self):
        assert _status(JobStatus.PENDING, JobStatus.PENDING) == BatchStatus.PENDING

    def test_scheduled_is_not_in_progress(self):
        assert _status(JobStatus.SCHEDULED, JobStatus.PENDING) == BatchStatus.SCHEDULED

    def test_processing_wins_over_scheduled(self):
        assert _status(JobStatus.PROCESSING, JobStatus.SCHEDULED, JobStatus.COMPLETED) == BatchStatus.IN_PROGRESS

    def test_some_completed_rest_waiting(self):
        assert _status(JobStatus.COMPLETED, JobStatus.SCHEDULED) == BatchStatus.SCHEDULED

    def test_all_completed(self):
        assert _status(JobStatus.COMPLETED, JobStatus.COMPLETED) == BatchStatus.COMPLETED

    def test_all_failed(self):
        assert _status(JobStatus.FAILED, JobStatus.FAILED) == BatchStatus.FAILED

    def test_mixed_terminal_with_failure(self):
        assert _status(JobStatus.FAILED, JobStatus.COMPLETED, JobStatus.CANCELLED) == BatchStatus.PARTIAL_FAILURE

    def test_all_cancelled_counts_as_completed(self):
        assert _status(JobStatus.CANCELLED, JobStatus.CANCELLED) == BatchStatus.COMPLETED

    def test_failed_with_outstanding_jobs_not_final(self):
        assert _status(JobStatus.FAILED, JobStatus.SCHEDULED) == BatchStatus.SCHEDULED

    def test_empty_batch_is_pending(self):
        assert derive_batch_status(count_statuses([]), 0) == BatchStatus.PENDING


class TestPurity:
    @pytest.mark.parametrize("seed", range(5))
    def test_order_independent(self, seed):
        rng = random.Random(seed)
        statuses = [rng.choice(list(JobStatus)) for _ in range(12)]
        expected = _status(*statuses)
        for _ in range(10):
            rng.shuffle(statuses)
            assert _status(*statuses) == expected

    def test_every_small_multiset_is_stable(self):
        for combo in itertools.combinations_with_replacement(list(JobStatus), 3):
            assert _status(*combo) == _status(*reversed(combo))


class TestProjectBatch:
    def _jobs(self, *statuses):
        return [
            EmailJob(
                batch_id="b", event_id="e", kind=NotificationKind.PREP_24H,
                recipient_email=f"r{i}@example.com", scheduled_for=NOW, status=status,
            )
            for i, status in enumerate(statuses)
        ]

    def test_counters_and_status(self):
        batch = JobBatch(id="b", event_id="e", total_jobs=3)
        projected = project_batch(batch, self._jobs(JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED), NOW)
        assert (projected.completed_jobs, projected.failed_jobs, projected.cancelled_jobs) == (1, 1, 1)
        assert projected.status == BatchStatus.PARTIAL_FAILURE
        assert projected.updated_at == NOW

    def test_does_not_mutate_input(self):
        batch = JobBatch(id="b", event_id="e", total_jobs=1)
        project_batch(batch, self._jobs(JobStatus.COMPLETED), NOW)
        assert batch.status == BatchStatus.PENDING
        assert batch.completed_jobs == 0

    def test_recompute_is_idempotent(self):
        batch = JobBatch(id="b", event_id="e", total_jobs=2)
        jobs = self._jobs(JobStatus.COMPLETED, JobStatus.PROCESSING)
        once = project_batch(batch, jobs, NOW)
        twice = project_batch(once, jobs, NOW)
        assert once == twice


class TestStatusCounts:
    def test_as_dict_covers_every_status(self):
        counts = count_statuses([JobStatus.PENDING, JobStatus.FAILED, JobStatus.FAILED])
        assert counts.as_dict() == {
            "pending": 1, "scheduled": 0, "processing": 0,
            "completed": 0, "failed": 2, "cancelled": 0,
        }
        assert counts.total == 3
        assert counts.terminal == 2
