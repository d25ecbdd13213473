"""Shared test fixtures."""

from datetime import UTC, datetime, timedelta

import fakeredis
import pytest
from sqlalchemy.orm import sessionmaker

from notifier.audit.models import AuditLog
from notifier.config import Settings
from notifier.database.base import Base, build_engine
from notifier.integrations.mailer import SendResult
from notifier.integrations.qstash import QueueError
from notifier.notifications.models import Event, Participant, ParticipantRole
from notifier.notifications.operations import NotificationOperations
from notifier.notifications.scheduler import NotificationScheduler
from notifier.notifications.store import RedisJobStore
from notifier.notifications.worker import NotificationWorker

# Models must be imported so Base.metadata.create_all() sees all tables.
_ALL_MODELS = [AuditLog]

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingQueue:
    """In-memory queue that records publishes and deletes.

    `fail_publish` is a predicate on the published body; matching publishes
    raise QueueError.
    """

    def __init__(self) -> None:
        self.published: list[dict] = []
        self.deleted: list[str] = []
        self.fail_publish = lambda body: False
        self.fail_delete = False
        self._counter = 0

    @property
    def configured(self) -> bool:
        return True

    def publish(self, destination, body, delay_seconds=0, retries=None, callback=None,
                failure_callback=None, flow_control=None) -> str:
        if self.fail_publish(body):
            raise QueueError("Queue publish failed with status 500", status_code=500)
        self._counter += 1
        message_id = f"msg-{self._counter}"
        self.published.append({
            "message_id": message_id,
            "destination": destination,
            "body": body,
            "delay_seconds": delay_seconds,
            "retries": retries,
            "callback": callback,
            "failure_callback": failure_callback,
            "flow_control": flow_control,
        })
        return message_id

    def delete(self, message_id: str) -> None:
        if self.fail_delete:
            raise QueueError(f"Queue delete of {message_id} failed with status 500", status_code=500)
        self.deleted.append(message_id)

    def close(self) -> None:
        pass


class RecordingMailer:
    """Mail provider that records sends; `failures` maps address -> SendResult."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.failures: dict[str, SendResult] = {}

    @property
    def configured(self) -> bool:
        return True

    def send(self, to, subject, text, html) -> SendResult:
        if to in self.failures:
            return self.failures[to]
        self.sent.append({"to": to, "subject": subject, "text": text, "html": html})
        return SendResult(message_id=f"<sent-{len(self.sent)}@test>")


@pytest.fixture
def db_session():
    """Create an in-memory SQLite database for testing."""
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    TestSession = sessionmaker(bind=engine)
    session = TestSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        environment="test",
        app_base_url="https://notifier.test",
        public_app_url="https://app.test",
        qstash_token="test-token",
        qstash_current_signing_key="",
        qstash_next_signing_key="",
        email_test_mode=False,
        email_subject_prefix="",
    )


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def store(redis_client, clock):
    return RedisJobStore(redis_client, clock=clock)


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def scheduler(store, queue, test_settings, clock):
    return NotificationScheduler(store, queue, test_settings, clock=clock)


@pytest.fixture
def worker(store, mailer, test_settings):
    return NotificationWorker(store, mailer, test_settings)


@pytest.fixture
def operations(store, queue, scheduler, clock):
    return NotificationOperations(store, queue, scheduler, clock=clock)


@pytest.fixture
def make_event(clock):
    """Factory for events starting `hours_ahead` after the fake clock."""

    def _make(hours_ahead: float = 72, students: int = 2, mentors: int = 1, **overrides) -> Event:
        participants = [
            Participant(id=f"s{i}", email=f"student{i}@example.com", name=f"Student {i}", role=ParticipantRole.STUDENT)
            for i in range(1, students + 1)
        ] + [
            Participant(id=f"m{i}", email=f"mentor{i}@example.com", name=f"Mentor {i}", role=ParticipantRole.MENTOR)
            for i in range(1, mentors + 1)
        ]
        fields = {
            "id": "event-1",
            "label": "Weekly check-in",
            "event_type": "Mentor Session",
            "scheduled_start": clock.now + timedelta(hours=hours_ahead),
            "duration_minutes": 60,
            "team_name": "Team Rocket",
            "participants": participants,
        }
        fields.update(overrides)
        return Event(**fields)

    return _make
