"""Redis-backed job store.

Jobs, batches and dead letters are JSON documents with TTLs. Every multi-key
write goes through a MULTI/EXEC pipeline; status writes additionally WATCH
the keys they read so a concurrent callback cannot be lost.

Key layout:
    email:job:{id}              EmailJob JSON
    email:batch:{id}            JobBatch JSON
    email:batch:{id}:jobs       list of job ids
    email:event:{id}:batches    list of batch ids
    email:actor:{id}:active     set of non-final batch ids
    email:dlq                   list of DeadLetterEntry JSON
"""

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime

import redis

from ..config import settings
from .models import (
    DeadLetterEntry,
    EmailJob,
    JobBatch,
    JobProgress,
    JobSpec,
    JobStatus,
    JobUpdate,
    utcnow,
)
from .progress import project_batch

logger = logging.getLogger(__name__)

DEAD_LETTER_KEY = "email:dlq"


class JobStoreError(Exception):
    """The store is unreachable or a write could not be applied."""


class JobNotFoundError(JobStoreError):
    pass


class InvalidTransitionError(Exception):
    def __init__(self, job_id: str, current: JobStatus, target: JobStatus) -> None:
        super().__init__(f"Job {job_id} cannot move from {current.value} to {target.value}")
        self.job_id = job_id
        self.current = current
        self.target = target


def _job_key(job_id: str) -> str:
    return f"email:job:{job_id}"


def _batch_key(batch_id: str) -> str:
    return f"email:batch:{batch_id}"


def _batch_jobs_key(batch_id: str) -> str:
    return f"email:batch:{batch_id}:jobs"


def _event_batches_key(event_id: str) -> str:
    return f"email:event:{event_id}:batches"


def _actor_active_key(actor: str) -> str:
    return f"email:actor:{actor}:active"


@contextmanager
def _redis_errors(action: str) -> Iterator[None]:
    try:
        yield
    except redis.RedisError as exc:
        logger.error("Job store %s failed: %s", action, exc)
        raise JobStoreError(f"Job store {action} failed: {exc}") from exc


class RedisJobStore:
    """Persistence for jobs, batches, indexes and the dead-letter queue."""

    def __init__(
        self,
        client: redis.Redis,
        job_ttl: int = 90 * 86400,
        active_ttl: int = 24 * 3600,
        dead_letter_ttl: int = 180 * 86400,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = client
        self._job_ttl = job_ttl
        self._active_ttl = active_ttl
        self._dead_letter_ttl = dead_letter_ttl
        self._clock = clock

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False

    # ── Creation ──────────────────────────────────────────────────────

    def create_batch(
        self,
        event_id: str,
        event_label: str,
        specs: list[JobSpec],
        created_by: str | None = None,
    ) -> tuple[JobBatch, list[EmailJob]]:
        """Persist a batch and all of its jobs atomically."""
        if not specs:
            raise ValueError("Cannot create a batch without jobs")

        now = self._clock()
        batch = JobBatch(
            event_id=event_id,
            event_label=event_label,
            total_jobs=len(specs),
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        jobs = [
            EmailJob(batch_id=batch.id, created_at=now, updated_at=now, **spec.model_dump())
            for spec in specs
        ]

        with _redis_errors("create_batch"):
            pipe = self._client.pipeline(transaction=True)
            for job in jobs:
                pipe.set(_job_key(job.id), job.model_dump_json(), ex=self._job_ttl)
            pipe.set(_batch_key(batch.id), batch.model_dump_json(), ex=self._job_ttl)
            pipe.rpush(_batch_jobs_key(batch.id), *[job.id for job in jobs])
            pipe.expire(_batch_jobs_key(batch.id), self._job_ttl)
            pipe.rpush(_event_batches_key(event_id), batch.id)
            pipe.expire(_event_batches_key(event_id), self._job_ttl)
            if created_by:
                pipe.sadd(_actor_active_key(created_by), batch.id)
                pipe.expire(_actor_active_key(created_by), self._active_ttl)
            pipe.execute()

        logger.info("Created batch %s for event %s with %d jobs", batch.id, event_id, len(jobs))
        return batch, jobs

    def add_job(self, job: EmailJob) -> EmailJob:
        """Append a job to an existing batch and recompute the batch."""
        batch_key = _batch_key(job.batch_id)

        def txn(pipe) -> EmailJob:
            raw = pipe.get(batch_key)
            if raw is None:
                raise JobNotFoundError(f"Batch {job.batch_id} not found")
            batch = JobBatch.model_validate_json(raw)
            siblings = self._load_jobs(pipe, pipe.lrange(_batch_jobs_key(batch.id), 0, -1))
            batch = batch.model_copy(update={"total_jobs": batch.total_jobs + 1})
            batch = project_batch(batch, [*siblings, job], self._clock())

            pipe.multi()
            pipe.set(_job_key(job.id), job.model_dump_json(), ex=self._job_ttl)
            pipe.rpush(_batch_jobs_key(batch.id), job.id)
            pipe.expire(_batch_jobs_key(batch.id), self._job_ttl)
            self._queue_batch_write(pipe, batch, reactivate=True)
            return job

        with _redis_errors("add_job"):
            return self._client.transaction(txn, batch_key, value_from_callable=True)

    # ── Reads ─────────────────────────────────────────────────────────

    def get_job(self, job_id: str) -> EmailJob | None:
        with _redis_errors("get_job"):
            raw = self._client.get(_job_key(job_id))
        return EmailJob.model_validate_json(raw) if raw else None

    def get_jobs(self, job_ids: list[str]) -> list[EmailJob]:
        """Jobs that still exist, in the order requested."""
        if not job_ids:
            return []
        with _redis_errors("get_jobs"):
            return self._load_jobs(self._client, job_ids)

    def get_batch(self, batch_id: str) -> JobBatch | None:
        with _redis_errors("get_batch"):
            raw = self._client.get(_batch_key(batch_id))
        return JobBatch.model_validate_json(raw) if raw else None

    def get_batch_job_ids(self, batch_id: str) -> list[str]:
        with _redis_errors("get_batch_job_ids"):
            return list(self._client.lrange(_batch_jobs_key(batch_id), 0, -1))

    def get_batch_jobs(self, batch_id: str) -> list[EmailJob]:
        return self.get_jobs(self.get_batch_job_ids(batch_id))

    def get_event_batch_ids(self, event_id: str) -> list[str]:
        with _redis_errors("get_event_batch_ids"):
            return list(self._client.lrange(_event_batches_key(event_id), 0, -1))

    def get_event_batches(self, event_id: str) -> list[JobBatch]:
        batches = [self.get_batch(batch_id) for batch_id in self.get_event_batch_ids(event_id)]
        return [b for b in batches if b is not None]

    def get_event_jobs(self, event_id: str) -> list[EmailJob]:
        jobs: list[EmailJob] = []
        for batch_id in self.get_event_batch_ids(event_id):
            jobs.extend(self.get_batch_jobs(batch_id))
        return jobs

    def find_event_jobs(
        self,
        event_id: str,
        kind: str | None = None,
        recipient: str | None = None,
    ) -> list[EmailJob]:
        """Event jobs filtered by kind and/or recipient email (case-insensitive)."""
        wanted = recipient.strip().lower() if recipient else None
        return [
            job
            for job in self.get_event_jobs(event_id)
            if (kind is None or job.kind == kind)
            and (wanted is None or job.recipient_email.lower() == wanted)
        ]

    def get_job_progress(self, batch_id: str, details: bool = False) -> JobProgress | None:
        batch = self.get_batch(batch_id)
        if batch is None:
            return None
        return JobProgress(
            batch_id=batch.id,
            event_id=batch.event_id,
            event_label=batch.event_label,
            total=batch.total_jobs,
            completed=batch.completed_jobs,
            failed=batch.failed_jobs,
            cancelled=batch.cancelled_jobs,
            status=batch.status,
            jobs=self.get_batch_jobs(batch_id) if details else None,
        )

    def get_actor_active_batches(self, actor: str) -> list[JobBatch]:
        with _redis_errors("get_actor_active_batches"):
            batch_ids = sorted(self._client.smembers(_actor_active_key(actor)))
        batches = [self.get_batch(batch_id) for batch_id in batch_ids]
        return [b for b in batches if b is not None]

    def iter_active_batch_ids(self) -> Iterator[str]:
        """Batch ids in every actor's active set."""
        with _redis_errors("iter_active_batch_ids"):
            seen: set[str] = set()
            for key in self._client.scan_iter(match=_actor_active_key("*")):
                for batch_id in self._client.smembers(key):
                    if batch_id not in seen:
                        seen.add(batch_id)
                        yield batch_id

    # ── Status writes ─────────────────────────────────────────────────

    def update_job_statuses(self, updates: list[JobUpdate]) -> list[EmailJob]:
        """Apply many status updates in one transaction.

        Each affected batch is recomputed once from its post-update jobs.
        Illegal transitions and missing jobs are logged and skipped.
        """
        by_id = {update.job_id: update for update in updates}
        now = self._clock()

        def apply(job: EmailJob) -> EmailJob | None:
            update = by_id[job.id]
            if not job.status.can_transition_to(update.status):
                logger.warning(
                    "Skipping illegal transition for job %s: %s -> %s",
                    job.id, job.status.value, update.status.value,
                )
                return None
            changes: dict = {"status": update.status, "updated_at": now}
            if update.queue_message_id is not None:
                changes["queue_message_id"] = update.queue_message_id
            if update.provider_message_id is not None:
                changes["provider_message_id"] = update.provider_message_id
            if update.last_error is not None:
                changes["last_error"] = update.last_error
            if update.increment_attempts:
                changes["attempts"] = job.attempts + 1
            return job.model_copy(update=changes)

        return self._mutate_jobs(list(by_id), apply)

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        queue_message_id: str | None = None,
        provider_message_id: str | None = None,
        last_error: str | None = None,
        increment_attempts: bool = False,
    ) -> EmailJob | None:
        """Single-job shorthand; returns None when the transition was refused."""
        if self.get_job(job_id) is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        updated = self.update_job_statuses([
            JobUpdate(
                job_id=job_id,
                status=status,
                queue_message_id=queue_message_id,
                provider_message_id=provider_message_id,
                last_error=last_error,
                increment_attempts=increment_attempts,
            )
        ])
        return updated[0] if updated else None

    def reset_failed_jobs(self, job_ids: list[str]) -> list[EmailJob]:
        """failed -> pending, clearing the error and the stale queue handle.

        attempts and scheduled_for are kept. Jobs that are not failed are skipped.
        """
        now = self._clock()

        def reset(job: EmailJob) -> EmailJob | None:
            if job.status != JobStatus.FAILED:
                return None
            return job.model_copy(update={
                "status": JobStatus.PENDING,
                "last_error": None,
                "queue_message_id": None,
                "updated_at": now,
            })

        return self._mutate_jobs(job_ids, reset)

    def reset_failed_job(self, job_id: str) -> EmailJob:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if job.status != JobStatus.FAILED:
            raise InvalidTransitionError(job_id, job.status, JobStatus.PENDING)
        reset = self.reset_failed_jobs([job_id])
        if not reset:
            # Changed underneath us between the read and the transaction
            current = self.get_job(job_id)
            raise InvalidTransitionError(job_id, current.status if current else job.status, JobStatus.PENDING)
        return reset[0]

    def recompute_batch(self, batch_id: str) -> JobBatch | None:
        """Re-derive a batch's counters and status from its jobs."""
        batch_key = _batch_key(batch_id)

        def txn(pipe) -> JobBatch | None:
            raw = pipe.get(batch_key)
            if raw is None:
                return None
            batch = JobBatch.model_validate_json(raw)
            jobs = self._load_jobs(pipe, pipe.lrange(_batch_jobs_key(batch_id), 0, -1))
            batch = project_batch(batch, jobs, self._clock())
            pipe.multi()
            self._queue_batch_write(pipe, batch)
            return batch

        with _redis_errors("recompute_batch"):
            return self._client.transaction(txn, batch_key, value_from_callable=True)

    # ── Dead letters ──────────────────────────────────────────────────

    def add_dead_letters(self, entries: list[DeadLetterEntry]) -> None:
        if not entries:
            return
        with _redis_errors("add_dead_letters"):
            pipe = self._client.pipeline(transaction=True)
            self._queue_dead_letters(pipe, entries)
            pipe.execute()
        logger.warning("Added %d job(s) to the dead-letter queue", len(entries))

    def fail_to_dead_letter(self, job_ids: list[str], reason: str, attempts: int = 0) -> list[EmailJob]:
        """Mark jobs failed and dead-letter them in the same MULTI/EXEC.

        Jobs already failed with this exact reason were dead-lettered by an
        earlier call and are skipped, as are jobs that can no longer fail.
        """
        now = self._clock()

        def fail(job: EmailJob) -> EmailJob | None:
            if job.status == JobStatus.FAILED and job.last_error == reason:
                return None
            if not job.status.can_transition_to(JobStatus.FAILED):
                logger.warning("Not dead-lettering job %s: it is %s", job.id, job.status.value)
                return None
            return job.model_copy(update={"status": JobStatus.FAILED, "last_error": reason, "updated_at": now})

        def dead_letter(pipe, failed: list[EmailJob]) -> None:
            if failed:
                self._queue_dead_letters(pipe, [
                    DeadLetterEntry(job=job, reason=reason, attempts=attempts, added_at=now) for job in failed
                ])

        failed = self._mutate_jobs(job_ids, fail, after=dead_letter)
        if failed:
            logger.warning("Added %d job(s) to the dead-letter queue", len(failed))
        return failed

    def get_dead_letters(self, offset: int = 0, limit: int = 50) -> tuple[list[DeadLetterEntry], int]:
        with _redis_errors("get_dead_letters"):
            total = self._client.llen(DEAD_LETTER_KEY)
            raws = self._client.lrange(DEAD_LETTER_KEY, offset, offset + limit - 1) if limit > 0 else []
        return [DeadLetterEntry.model_validate_json(raw) for raw in raws], total

    def count_dead_letters(self) -> int:
        with _redis_errors("count_dead_letters"):
            return self._client.llen(DEAD_LETTER_KEY)

    def mark_dead_letter_reviewed(self, index: int) -> DeadLetterEntry:
        with _redis_errors("mark_dead_letter_reviewed"):
            raw = self._client.lindex(DEAD_LETTER_KEY, index) if index >= 0 else None
            if raw is None:
                raise JobNotFoundError(f"Dead-letter entry {index} not found")
            entry = DeadLetterEntry.model_validate_json(raw).model_copy(update={"reviewed": True})
            self._client.lset(DEAD_LETTER_KEY, index, entry.model_dump_json())
        return entry

    # ── Deletion ──────────────────────────────────────────────────────

    def delete_batch(self, batch_id: str) -> bool:
        """Remove a batch, its jobs and its index entries. False if it did not exist."""
        batch = self.get_batch(batch_id)
        if batch is None:
            return False
        job_ids = self.get_batch_job_ids(batch_id)
        with _redis_errors("delete_batch"):
            pipe = self._client.pipeline(transaction=True)
            for job_id in job_ids:
                pipe.delete(_job_key(job_id))
            pipe.delete(_batch_jobs_key(batch_id), _batch_key(batch_id))
            pipe.lrem(_event_batches_key(batch.event_id), 0, batch_id)
            if batch.created_by:
                pipe.srem(_actor_active_key(batch.created_by), batch_id)
            pipe.execute()
        logger.info("Deleted batch %s (%d jobs)", batch_id, len(job_ids))
        return True

    # ── Internals ─────────────────────────────────────────────────────

    @staticmethod
    def _load_jobs(conn, job_ids: list[str]) -> list[EmailJob]:
        if not job_ids:
            return []
        raws = conn.mget([_job_key(job_id) for job_id in job_ids])
        return [EmailJob.model_validate_json(raw) for raw in raws if raw is not None]

    def _queue_batch_write(self, pipe, batch: JobBatch, reactivate: bool = False) -> None:
        pipe.set(_batch_key(batch.id), batch.model_dump_json(), ex=self._job_ttl)
        if not batch.created_by:
            return
        if batch.status.is_final:
            pipe.srem(_actor_active_key(batch.created_by), batch.id)
        elif reactivate:
            pipe.sadd(_actor_active_key(batch.created_by), batch.id)
            pipe.expire(_actor_active_key(batch.created_by), self._active_ttl)

    def _queue_dead_letters(self, pipe, entries: list[DeadLetterEntry]) -> None:
        pipe.rpush(DEAD_LETTER_KEY, *[entry.model_dump_json() for entry in entries])
        pipe.expire(DEAD_LETTER_KEY, self._dead_letter_ttl)

    def _mutate_jobs(
        self,
        job_ids: list[str],
        mutate: Callable[[EmailJob], EmailJob | None],
        after: Callable[[object, list[EmailJob]], None] | None = None,
    ) -> list[EmailJob]:
        """Read, mutate and write jobs plus their batches in one WATCHed transaction.

        `mutate` returns the new job, or None to leave it untouched. It may run
        more than once if a watched key changes before EXEC. `after` receives
        the pipeline and the changed jobs and may queue further writes into the
        same MULTI.
        """
        job_ids = list(dict.fromkeys(job_ids))
        if not job_ids:
            return []
        job_keys = [_job_key(job_id) for job_id in job_ids]

        def txn(pipe) -> list[EmailJob]:
            changed: dict[str, EmailJob] = {}
            for job_id, raw in zip(job_ids, pipe.mget(job_keys)):
                if raw is None:
                    logger.warning("Skipping update for missing job %s", job_id)
                    continue
                updated = mutate(EmailJob.model_validate_json(raw))
                if updated is not None:
                    changed[updated.id] = updated

            batch_ids = list(dict.fromkeys(job.batch_id for job in changed.values()))
            batches: list[JobBatch] = []
            if batch_ids:
                pipe.watch(*[_batch_key(batch_id) for batch_id in batch_ids])
                now = self._clock()
                for batch_id in batch_ids:
                    raw = pipe.get(_batch_key(batch_id))
                    if raw is None:
                        logger.warning("Batch %s missing while updating its jobs", batch_id)
                        continue
                    members = self._load_jobs(pipe, pipe.lrange(_batch_jobs_key(batch_id), 0, -1))
                    members = [changed.get(job.id, job) for job in members]
                    batches.append(project_batch(JobBatch.model_validate_json(raw), members, now))

            pipe.multi()
            for job in changed.values():
                pipe.set(_job_key(job.id), job.model_dump_json(), ex=self._job_ttl)
            for batch in batches:
                self._queue_batch_write(pipe, batch)
            if after is not None:
                after(pipe, list(changed.values()))
            return list(changed.values())

        with _redis_errors("update_job_statuses"):
            return self._client.transaction(txn, *job_keys, value_from_callable=True)


def create_job_store() -> RedisJobStore:
    """Factory: build the store from settings. Connectivity is reported, not fatal."""
    client = redis.from_url(settings.redis_url, decode_responses=True)
    store = RedisJobStore(
        client,
        job_ttl=settings.job_ttl_seconds,
        active_ttl=settings.active_batch_ttl_seconds,
        dead_letter_ttl=settings.dead_letter_ttl_seconds,
    )
    if not store.ping():
        logger.warning("Redis at %s is not reachable; job store calls will fail until it is", settings.redis_url)
    return store
