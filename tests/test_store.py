"""Tests for the Redis job store (fakeredis)."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
import redis

from notifier.notifications.models import (
    BatchStatus,
    DeadLetterEntry,
    EmailJob,
    JobSpec,
    JobStatus,
    JobUpdate,
    NotificationKind,
)
from notifier.notifications.store import (
    InvalidTransitionError,
    JobNotFoundError,
    JobStoreError,
    RedisJobStore,
)


def _specs(clock, n=3, kind=NotificationKind.PREP_24H, event_id="event-1"):
    return [
        JobSpec(
            event_id=event_id,
            kind=kind,
            recipient_email=f"person{i}@example.com",
            recipient_name=f"Person {i}",
            scheduled_for=clock.now + timedelta(hours=24),
        )
        for i in range(n)
    ]


@pytest.fixture
def batch_and_jobs(store, clock):
    return store.create_batch("event-1", "Check-in", _specs(clock), created_by="ops@example.com")


class TestCreateBatch:
    def test_persists_batch_and_jobs(self, store, batch_and_jobs):
        batch, jobs = batch_and_jobs
        assert store.get_batch(batch.id).total_jobs == 3
        assert store.get_batch(batch.id).status == BatchStatus.PENDING
        assert store.get_batch_job_ids(batch.id) == [job.id for job in jobs]
        assert all(job.status == JobStatus.PENDING for job in store.get_batch_jobs(batch.id))

    def test_indexes_event_and_actor(self, store, batch_and_jobs):
        batch, _ = batch_and_jobs
        assert store.get_event_batch_ids("event-1") == [batch.id]
        assert [b.id for b in store.get_actor_active_batches("ops@example.com")] == [batch.id]

    def test_sets_ttls(self, store, redis_client, batch_and_jobs):
        batch, jobs = batch_and_jobs
        assert 0 < redis_client.ttl(f"email:job:{jobs[0].id}") <= 90 * 86400
        assert 0 < redis_client.ttl(f"email:batch:{batch.id}") <= 90 * 86400
        assert 0 < redis_client.ttl("email:actor:ops@example.com:active") <= 24 * 3600

    def test_rejects_empty(self, store):
        with pytest.raises(ValueError):
            store.create_batch("event-1", "", [])

    def test_redis_failure_wrapped(self, clock):
        client = MagicMock()
        client.pipeline.return_value.execute.side_effect = redis.ConnectionError("down")
        broken = RedisJobStore(client, clock=clock)
        with pytest.raises(JobStoreError):
            broken.create_batch("event-1", "", _specs(clock, 1))


class TestUpdateJobStatuses:
    def test_batched_update_recomputes_once(self, store, batch_and_jobs):
        batch, jobs = batch_and_jobs
        updated = store.update_job_statuses([
            JobUpdate(job_id=job.id, status=JobStatus.SCHEDULED, queue_message_id="msg-1") for job in jobs
        ])
        assert len(updated) == 3
        assert all(job.queue_message_id == "msg-1" for job in store.get_batch_jobs(batch.id))
        assert store.get_batch(batch.id).status == BatchStatus.SCHEDULED

    def test_illegal_transition_skipped(self, store, batch_and_jobs):
        _, jobs = batch_and_jobs
        updated = store.update_job_statuses([
            JobUpdate(job_id=jobs[0].id, status=JobStatus.COMPLETED),
            JobUpdate(job_id=jobs[1].id, status=JobStatus.SCHEDULED),
        ])
        assert [job.id for job in updated] == [jobs[1].id]
        assert store.get_job(jobs[0].id).status == JobStatus.PENDING

    def test_missing_job_skipped(self, store, batch_and_jobs):
        _, jobs = batch_and_jobs
        updated = store.update_job_statuses([
            JobUpdate(job_id="nope", status=JobStatus.SCHEDULED),
            JobUpdate(job_id=jobs[0].id, status=JobStatus.SCHEDULED),
        ])
        assert [job.id for job in updated] == [jobs[0].id]

    def test_increment_attempts(self, store, batch_and_jobs):
        _, jobs = batch_and_jobs
        store.update_job_statuses([JobUpdate(job_id=jobs[0].id, status=JobStatus.SCHEDULED)])
        store.update_job_statuses([JobUpdate(job_id=jobs[0].id, status=JobStatus.PROCESSING, increment_attempts=True)])
        assert store.get_job(jobs[0].id).attempts == 1

    def test_order_of_independent_updates_does_not_matter(self, store, clock):
        results = []
        for order in (1, -1):
            batch, jobs = store.create_batch("event-1", "", _specs(clock, 4))
            store.update_job_statuses([JobUpdate(job_id=j.id, status=JobStatus.SCHEDULED) for j in jobs])
            updates = [
                JobUpdate(job_id=jobs[0].id, status=JobStatus.COMPLETED),
                JobUpdate(job_id=jobs[1].id, status=JobStatus.FAILED, last_error="boom"),
                JobUpdate(job_id=jobs[2].id, status=JobStatus.COMPLETED),
                JobUpdate(job_id=jobs[3].id, status=JobStatus.CANCELLED),
            ][::order]
            store.update_job_statuses(updates)
            results.append(store.get_batch(batch.id))
        assert results[0].status == results[1].status == BatchStatus.PARTIAL_FAILURE
        assert (results[0].completed_jobs, results[0].failed_jobs) == (results[1].completed_jobs, results[1].failed_jobs)

    def test_final_batch_leaves_active_set(self, store, batch_and_jobs):
        batch, jobs = batch_and_jobs
        store.update_job_statuses([JobUpdate(job_id=j.id, status=JobStatus.CANCELLED) for j in jobs])
        assert store.get_batch(batch.id).status == BatchStatus.COMPLETED
        assert store.get_actor_active_batches("ops@example.com") == []

    def test_single_update_missing_job_raises(self, store):
        with pytest.raises(JobNotFoundError):
            store.update_job_status("missing", JobStatus.SCHEDULED)


class TestResetFailedJob:
    def test_keeps_schedule_and_attempts(self, store, batch_and_jobs):
        _, jobs = batch_and_jobs
        job_id = jobs[0].id
        store.update_job_status(job_id, JobStatus.SCHEDULED, queue_message_id="msg-1")
        store.update_job_status(job_id, JobStatus.PROCESSING, increment_attempts=True)
        store.update_job_status(job_id, JobStatus.FAILED, last_error="smtp down")

        reset = store.reset_failed_job(job_id)
        assert reset.status == JobStatus.PENDING
        assert reset.last_error is None
        assert reset.queue_message_id is None
        assert reset.attempts == 1
        assert reset.scheduled_for == jobs[0].scheduled_for

    def test_rejects_non_failed(self, store, batch_and_jobs):
        _, jobs = batch_and_jobs
        with pytest.raises(InvalidTransitionError):
            store.reset_failed_job(jobs[0].id)

    def test_missing(self, store):
        with pytest.raises(JobNotFoundError):
            store.reset_failed_job("missing")


class TestAddJob:
    def test_appends_and_bumps_total(self, store, batch_and_jobs, clock):
        batch, jobs = batch_and_jobs
        extra = EmailJob(
            batch_id=batch.id, event_id="event-1", kind=NotificationKind.PREP_24H,
            recipient_email="late@example.com", scheduled_for=clock.now,
        )
        store.add_job(extra)
        assert store.get_batch(batch.id).total_jobs == 4
        assert store.get_batch_job_ids(batch.id)[-1] == extra.id

    def test_unknown_batch(self, store, clock):
        orphan = EmailJob(
            batch_id="missing", event_id="event-1", kind=NotificationKind.PREP_24H,
            recipient_email="x@example.com", scheduled_for=clock.now,
        )
        with pytest.raises(JobNotFoundError):
            store.add_job(orphan)

    def test_reopened_batch_returns_to_active_set(self, store, batch_and_jobs, clock):
        batch, jobs = batch_and_jobs
        store.update_job_statuses([JobUpdate(job_id=j.id, status=JobStatus.CANCELLED) for j in jobs])
        assert store.get_actor_active_batches("ops@example.com") == []

        resend = EmailJob(
            batch_id=batch.id, event_id="event-1", kind=NotificationKind.PREP_24H,
            recipient_email="person1@example.com", scheduled_for=clock.now,
        )
        store.add_job(resend)

        assert [b.id for b in store.get_actor_active_batches("ops@example.com")] == [batch.id]
        assert batch.id in set(store.iter_active_batch_ids())


class TestQueries:
    def test_find_event_jobs_by_recipient_case_insensitive(self, store, batch_and_jobs):
        found = store.find_event_jobs("event-1", recipient="PERSON1@example.com")
        assert [job.recipient_email for job in found] == ["person1@example.com"]

    def test_find_event_jobs_by_kind(self, store, batch_and_jobs):
        assert store.find_event_jobs("event-1", kind=NotificationKind.PREP_48H) == []
        assert len(store.find_event_jobs("event-1", kind=NotificationKind.PREP_24H)) == 3

    def test_job_progress(self, store, batch_and_jobs):
        batch, _ = batch_and_jobs
        progress = store.get_job_progress(batch.id, details=True)
        assert progress.total == 3
        assert len(progress.jobs) == 3
        assert store.get_job_progress(batch.id).jobs is None
        assert store.get_job_progress("missing") is None

    def test_iter_active_batch_ids(self, store, batch_and_jobs):
        batch, _ = batch_and_jobs
        assert list(store.iter_active_batch_ids()) == [batch.id]

    def test_recompute_batch_fixes_drift(self, store, redis_client, batch_and_jobs):
        batch, jobs = batch_and_jobs
        store.update_job_statuses([JobUpdate(job_id=j.id, status=JobStatus.SCHEDULED) for j in jobs])
        drifted = store.get_batch(batch.id).model_copy(update={"status": BatchStatus.PENDING})
        redis_client.set(f"email:batch:{batch.id}", drifted.model_dump_json())

        assert store.recompute_batch(batch.id).status == BatchStatus.SCHEDULED
        assert store.recompute_batch("missing") is None


class TestDeadLetters:
    def test_add_and_page(self, store, redis_client, batch_and_jobs):
        _, jobs = batch_and_jobs
        store.add_dead_letters([DeadLetterEntry(job=job, reason="exhausted", attempts=6) for job in jobs])

        entries, total = store.get_dead_letters(offset=1, limit=1)
        assert total == 3
        assert [e.job.id for e in entries] == [jobs[1].id]
        assert 90 * 86400 < redis_client.ttl("email:dlq") <= 180 * 86400

    def test_mark_reviewed(self, store, batch_and_jobs):
        _, jobs = batch_and_jobs
        store.add_dead_letters([DeadLetterEntry(job=jobs[0], reason="exhausted")])
        assert store.mark_dead_letter_reviewed(0).reviewed is True
        entries, _ = store.get_dead_letters()
        assert entries[0].reviewed is True

    def test_mark_reviewed_out_of_range(self, store):
        with pytest.raises(JobNotFoundError):
            store.mark_dead_letter_reviewed(5)

    def test_fail_to_dead_letter_writes_both(self, store, batch_and_jobs):
        batch, jobs = batch_and_jobs
        store.update_job_statuses([JobUpdate(job_id=j.id, status=JobStatus.SCHEDULED) for j in jobs])
        store.update_job_status(jobs[0].id, JobStatus.COMPLETED)

        failed = store.fail_to_dead_letter([j.id for j in jobs], "exhausted", attempts=6)

        assert {job.id for job in failed} == {jobs[1].id, jobs[2].id}
        entries, total = store.get_dead_letters()
        assert total == 2
        assert all(e.reason == "exhausted" and e.attempts == 6 for e in entries)
        assert store.get_batch(batch.id).status == BatchStatus.PARTIAL_FAILURE
        assert store.fail_to_dead_letter([j.id for j in jobs], "exhausted", attempts=6) == []
        assert store.count_dead_letters() == 2

    def test_fail_to_dead_letter_is_all_or_nothing(self, store, batch_and_jobs):
        _, jobs = batch_and_jobs
        with patch.object(store, "_queue_dead_letters", side_effect=redis.ConnectionError("reset")):
            with pytest.raises(JobStoreError):
                store.fail_to_dead_letter([j.id for j in jobs], "exhausted")
        assert {job.status for job in store.get_jobs([j.id for j in jobs])} == {JobStatus.PENDING}
        assert store.count_dead_letters() == 0


class TestDeleteBatch:
    def test_removes_everything(self, store, redis_client, batch_and_jobs):
        batch, jobs = batch_and_jobs
        assert store.delete_batch(batch.id) is True
        assert store.get_batch(batch.id) is None
        assert store.get_job(jobs[0].id) is None
        assert store.get_event_batch_ids("event-1") == []
        assert store.get_actor_active_batches("ops@example.com") == []

    def test_missing_batch(self, store):
        assert store.delete_batch("missing") is False


class TestPing:
    def test_ping(self, store):
        assert store.ping() is True

    def test_ping_down(self, clock):
        client = MagicMock()
        client.ping.side_effect = redis.ConnectionError("down")
        assert RedisJobStore(client, clock=clock).ping() is False
