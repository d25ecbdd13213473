"""Mail delivery provider with Protocol pattern.

SmtpMailProvider sends through SMTP with STARTTLS; NullMailProvider is a
dry run used when SMTP is not configured. The SMTP password may be stored
encrypted using Fernet (AES-128-CBC) derived from SECRET_KEY.
"""

import base64
import hashlib
import logging
import smtplib
import socket
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from typing import Protocol

from cryptography.fernet import Fernet

from ..config import settings

logger = logging.getLogger(__name__)


# ── Credential encryption ─────────────────────────────────────────────


def _derive_fernet_key(secret: str) -> bytes:
    """Derive a Fernet key from the app SECRET_KEY using SHA-256."""
    digest = hashlib.sha256(secret.encode()).digest()
    return base64.urlsafe_b64encode(digest)


def encrypt_value(plaintext: str, secret: str | None = None) -> str:
    f = Fernet(_derive_fernet_key(secret or settings.secret_key))
    return f.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str, secret: str | None = None) -> str:
    f = Fernet(_derive_fernet_key(secret or settings.secret_key))
    return f.decrypt(ciphertext.encode()).decode()


# ── Provider ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SendResult:
    message_id: str | None = None
    error: str | None = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class MailProvider(Protocol):
    """Mail provider interface. Never raises for a single failed send."""

    def send(self, to: str, subject: str, text: str, html: str) -> SendResult: ...
    @property
    def configured(self) -> bool: ...


def classify_smtp_error(exc: Exception) -> bool:
    """True when the failure is worth retrying later."""
    if isinstance(exc, (smtplib.SMTPRecipientsRefused, smtplib.SMTPAuthenticationError, smtplib.SMTPSenderRefused)):
        return False
    if isinstance(exc, (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError)):
        return True
    if isinstance(exc, smtplib.SMTPResponseException):
        return 400 <= exc.smtp_code < 500
    # SMTPException subclasses OSError; anything else from smtplib is permanent.
    if isinstance(exc, smtplib.SMTPException):
        return False
    if isinstance(exc, (socket.timeout, OSError)):
        return True
    return False


class SmtpMailProvider:
    """SMTP implementation with TLS."""

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        sender: str,
        sender_name: str = "",
        test_recipient: str | None = None,
        timeout: int = 15,
    ) -> None:
        self._host = host
        self._port = port
        self._user = user
        # Decrypt password if it looks encrypted (Fernet tokens start with 'gAAAAA')
        self._password = decrypt_value(password) if password.startswith("gAAAAA") else password
        self._sender = sender
        self._sender_name = sender_name
        self._test_recipient = test_recipient
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return True

    def build_message(self, to: str, subject: str, text: str, html: str) -> MIMEMultipart:
        """multipart/alternative with the headers spam filters look for."""
        msg = MIMEMultipart("alternative")
        msg["From"] = formataddr((self._sender_name, self._sender))
        msg["To"] = to
        msg["Reply-To"] = self._sender
        msg["Date"] = formatdate(localtime=True)
        msg["Message-ID"] = make_msgid(domain=self._sender.split("@")[-1] if "@" in self._sender else "local")
        msg["X-Mailer"] = "SessionNotifier/1.0"
        msg["Subject"] = subject
        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
        return msg

    def send(self, to: str, subject: str, text: str, html: str) -> SendResult:
        recipient = self._test_recipient or to
        msg = self.build_message(recipient, subject, text, html)
        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
                server.ehlo()
                server.starttls()
                server.ehlo()
                if self._user:
                    server.login(self._user, self._password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            retryable = classify_smtp_error(exc)
            logger.warning("SMTP send failed (retryable=%s): %s", retryable, exc)
            return SendResult(error=str(exc) or exc.__class__.__name__, retryable=retryable)
        return SendResult(message_id=msg["Message-ID"])


class NullMailProvider:
    """Dry run: logs the send and returns a synthetic receipt."""

    @property
    def configured(self) -> bool:
        return False

    def send(self, to: str, subject: str, text: str, html: str) -> SendResult:
        logger.info("Mail dry run (SMTP not configured): subject=%r", subject)
        return SendResult(message_id=make_msgid(domain="dry-run.local"))


def create_mail_provider() -> MailProvider:
    """Factory: create the appropriate mail provider based on configuration."""
    if not settings.smtp_host or not settings.sender_address:
        logger.warning("SMTP not configured; emails will be logged, not sent")
        return NullMailProvider()
    test_recipient = None
    if settings.email_test_mode:
        if not settings.email_test_recipient:
            logger.warning("EMAIL_TEST_MODE enabled without EMAIL_TEST_RECIPIENT; emails go to real recipients")
        else:
            test_recipient = settings.email_test_recipient
    return SmtpMailProvider(
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_password,
        sender=settings.sender_address,
        sender_name=settings.mail_from_name,
        test_recipient=test_recipient,
    )
