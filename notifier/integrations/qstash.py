"""Message queue client (Upstash QStash REST API) with Protocol pattern.

Provides QStashClient (real queue), NullQueue (unconfigured fallback) and the
inbound signature verifier for queue-originated requests.
"""

import base64
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Protocol

import httpx
import jwt

from ..config import settings

logger = logging.getLogger(__name__)


class QueueError(Exception):
    """Publishing to or deleting from the queue failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SignatureError(Exception):
    pass


@dataclass(frozen=True)
class FlowControl:
    """Shared rate cap across every message published with the same key."""

    key: str
    rate: int = 2
    parallelism: int = 1
    period: str = "1s"

    @property
    def value(self) -> str:
        return f"rate={self.rate},parallelism={self.parallelism},period={self.period}"


class MessageQueue(Protocol):
    """Message queue interface."""

    def publish(
        self,
        destination: str,
        body: dict,
        delay_seconds: int = 0,
        retries: int | None = None,
        callback: str | None = None,
        failure_callback: str | None = None,
        flow_control: FlowControl | None = None,
    ) -> str: ...
    def delete(self, message_id: str) -> None: ...
    @property
    def configured(self) -> bool: ...


class QStashClient:
    """QStash-backed queue over its REST API."""

    def __init__(self, token: str, base_url: str = "https://qstash.upstash.io", client: httpx.Client | None = None) -> None:
        self._client = client or httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=15.0,
        )

    @property
    def configured(self) -> bool:
        return True

    def publish(
        self,
        destination: str,
        body: dict,
        delay_seconds: int = 0,
        retries: int | None = None,
        callback: str | None = None,
        failure_callback: str | None = None,
        flow_control: FlowControl | None = None,
    ) -> str:
        headers = {
            "Content-Type": "application/json",
            "Upstash-Delay": f"{max(0, int(delay_seconds))}s",
        }
        if retries is not None:
            headers["Upstash-Retries"] = str(retries)
        if callback:
            headers["Upstash-Callback"] = callback
        if failure_callback:
            headers["Upstash-Failure-Callback"] = failure_callback
        if flow_control:
            headers["Upstash-Flow-Control-Key"] = flow_control.key
            headers["Upstash-Flow-Control-Value"] = flow_control.value

        try:
            response = self._client.post(
                f"/v2/publish/{destination}",
                content=json.dumps(body),
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.error("Queue publish rejected (%d): %s", status, exc.response.text[:200])
            raise QueueError(f"Queue publish failed with status {status}", status_code=status) from exc
        except httpx.HTTPError as exc:
            logger.error("Queue publish transport error: %s", exc)
            raise QueueError(f"Queue publish failed: {exc}") from exc

        try:
            message_id = response.json()["messageId"]
        except (ValueError, KeyError, TypeError) as exc:
            raise QueueError("Queue publish returned no messageId") from exc
        logger.debug("Published message %s with delay %ss", message_id, delay_seconds)
        return message_id

    def delete(self, message_id: str) -> None:
        try:
            response = self._client.delete(f"/v2/messages/{message_id}")
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise QueueError(f"Queue delete of {message_id} failed with status {status}", status_code=status) from exc
        except httpx.HTTPError as exc:
            raise QueueError(f"Queue delete of {message_id} failed: {exc}") from exc

    def close(self) -> None:
        self._client.close()


class NullQueue:
    """Queue used when no token is configured: every publish fails visibly."""

    @property
    def configured(self) -> bool:
        return False

    def publish(self, destination: str, body: dict, delay_seconds: int = 0, **kwargs) -> str:
        raise QueueError("Message queue not configured")

    def delete(self, message_id: str) -> None:
        raise QueueError("Message queue not configured")

    def close(self) -> None:
        pass


def create_message_queue() -> MessageQueue:
    """Factory: create the appropriate queue client based on configuration."""
    if not settings.qstash_token:
        logger.warning("QSTASH_TOKEN not set; notifications will fail to schedule")
        return NullQueue()
    return QStashClient(settings.qstash_token, settings.qstash_url)


# ── Inbound signature verification ────────────────────────────────────


def body_digest(body: bytes) -> str:
    """base64url(sha256(body)) without padding, as carried in the `body` claim."""
    return base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode().rstrip("=")


class QueueSignatureVerifier:
    """Verify the `Upstash-Signature` JWT against the current, then the next, signing key."""

    def __init__(self, current_key: str, next_key: str = "", clock_tolerance: int = 0) -> None:
        self._keys = [k for k in (current_key, next_key) if k]
        self._leeway = clock_tolerance

    @property
    def configured(self) -> bool:
        return bool(self._keys)

    def verify(self, signature: str | None, body: bytes, url: str | None = None) -> dict:
        if not self._keys:
            raise SignatureError("No signing keys configured")
        if not signature:
            raise SignatureError("Missing signature")

        last_error: Exception | None = None
        for key in self._keys:
            try:
                claims = jwt.decode(
                    signature,
                    key,
                    algorithms=["HS256"],
                    issuer="Upstash",
                    leeway=self._leeway,
                    options={"require": ["iss", "body"], "verify_aud": False},
                )
            except jwt.PyJWTError as exc:
                last_error = exc
                continue
            if url is not None and claims.get("sub") != url:
                raise SignatureError("Signature subject does not match request URL")
            if claims.get("body", "").rstrip("=") != body_digest(body):
                raise SignatureError("Signature body hash mismatch")
            return claims

        raise SignatureError(f"Invalid signature: {last_error}")


def create_signature_verifier() -> QueueSignatureVerifier:
    return QueueSignatureVerifier(settings.qstash_current_signing_key, settings.qstash_next_signing_key)
