"""Shared FastAPI dependencies.

Clients are built once in the lifespan and kept on app.state, so tests can
swap any of them through dependency_overrides.
"""

from fastapi import Request

from .integrations.mailer import MailProvider
from .integrations.qstash import MessageQueue, QueueSignatureVerifier
from .notifications.operations import NotificationOperations
from .notifications.scheduler import NotificationScheduler
from .notifications.store import RedisJobStore
from .notifications.worker import NotificationWorker


def get_store(request: Request) -> RedisJobStore:
    return request.app.state.store


def get_queue(request: Request) -> MessageQueue:
    return request.app.state.queue


def get_mailer(request: Request) -> MailProvider:
    return request.app.state.mailer


def get_verifier(request: Request) -> QueueSignatureVerifier:
    return request.app.state.verifier


def get_scheduler(request: Request) -> NotificationScheduler:
    return request.app.state.scheduler


def get_worker(request: Request) -> NotificationWorker:
    return request.app.state.worker


def get_operations(request: Request) -> NotificationOperations:
    return request.app.state.operations
