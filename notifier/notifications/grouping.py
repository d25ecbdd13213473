"""Group per-recipient jobs into queue messages.

Recipients sharing (kind, scheduled_for) travel in one queue message, so an
event costs one message per distinct send slot instead of one per recipient.
"""

from dataclasses import dataclass, field
from datetime import datetime

from .models import EmailJob, NotificationKind


@dataclass
class JobGroup:
    kind: NotificationKind
    scheduled_for: datetime
    jobs: list[EmailJob] = field(default_factory=list)

    @property
    def key(self) -> tuple[NotificationKind, datetime]:
        return (self.kind, self.scheduled_for)

    @property
    def job_ids(self) -> list[str]:
        return [job.id for job in self.jobs]


def group_jobs(jobs: list[EmailJob]) -> list[JobGroup]:
    """Partition jobs by (kind, scheduled_for).

    Groups appear in order of first occurrence and keep input order inside.
    """
    groups: dict[tuple[NotificationKind, datetime], JobGroup] = {}
    for job in jobs:
        key = (job.kind, job.scheduled_for)
        if key not in groups:
            groups[key] = JobGroup(kind=job.kind, scheduled_for=job.scheduled_for)
        groups[key].jobs.append(job)
    return list(groups.values())
