import logging
import logging.handlers
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    environment: str = "development"
    secret_key: str = "change-me"

    # Public base URL the message queue calls back into (worker + callbacks)
    app_base_url: str = "http://localhost:8000"
    # Base URL used for links inside emails
    public_app_url: str = "http://localhost:3000"
    cors_origins: str = "*"

    # Job store
    redis_url: str = "redis://redis:6379/0"
    retention_days: int = 90
    active_batch_ttl_hours: int = 24
    dead_letter_retention_days: int = 180

    # Operator audit trail; empty falls back to a local SQLite file
    database_url: str = "postgresql://notifier:notifier@db:5432/notifier"
    audit_db_fallback_url: str = "sqlite:///./audit.db"
    audit_db_pool_size: int = 5
    audit_db_max_overflow: int = 10

    # Message queue (QStash)
    qstash_url: str = "https://qstash.upstash.io"
    qstash_token: str = ""
    qstash_current_signing_key: str = ""
    qstash_next_signing_key: str = ""
    queue_retries: int = 5
    flow_control_key: str = "notification-emails"
    flow_control_rate: int = 2
    flow_control_parallelism: int = 1
    flow_control_period: str = "1s"

    # Scheduling
    schedule_grace_minutes: int = 5
    default_duration_minutes: int = 60

    # Mail delivery
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    mail_from: str = ""
    mail_from_name: str = "Session Notifier"
    email_test_mode: bool = False
    email_test_recipient: str = ""
    email_subject_prefix: str = ""

    # Rate limiting
    rate_limit_ops: str = "30/minute"

    # Logging
    log_level: str = "INFO"
    log_to_file: bool = True
    log_dir: str = "logs"
    log_max_bytes: int = 10_485_760  # 10 MB
    log_backup_count: int = 5

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def effective_database_url(self) -> str:
        if not self.database_url:
            return self.audit_db_fallback_url
        # Heroku-style URLs are rejected by SQLAlchemy 2.x
        if self.database_url.startswith("postgres://"):
            return self.database_url.replace("postgres://", "postgresql://", 1)
        return self.database_url

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def worker_url(self) -> str:
        return f"{self.app_base_url.rstrip('/')}/api/v1/queue/worker"

    @property
    def callback_url(self) -> str:
        return f"{self.app_base_url.rstrip('/')}/api/v1/queue/callback"

    @property
    def failure_url(self) -> str:
        return f"{self.app_base_url.rstrip('/')}/api/v1/queue/failure"

    @property
    def flow_control_value(self) -> str:
        return (
            f"rate={self.flow_control_rate},parallelism={self.flow_control_parallelism},"
            f"period={self.flow_control_period}"
        )

    @property
    def job_ttl_seconds(self) -> int:
        return self.retention_days * 86400

    @property
    def active_batch_ttl_seconds(self) -> int:
        return self.active_batch_ttl_hours * 3600

    @property
    def dead_letter_ttl_seconds(self) -> int:
        return self.dead_letter_retention_days * 86400

    @property
    def sender_address(self) -> str:
        return self.mail_from or self.smtp_user


settings = Settings()


_DETAIL_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"

# Held at WARNING
_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "alembic.runtime.migration", "httpcore", "httpx")


def _rotating_handler(path: Path, level: int, config: Settings) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=config.log_max_bytes,
        backupCount=config.log_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_DETAIL_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging(config: Settings | None = None) -> None:
    """Configure the root logger.

    Console always; with `log_to_file`, rotating files under `log_dir`:
    - app.log: everything at DEBUG+
    - delivery.log: the notifications package only (scheduling, sends, callbacks)
    - error.log: ERROR+ only
    """
    config = config or settings
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    ))
    root.addHandler(console)

    if config.log_to_file:
        log_dir = Path(config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        root.addHandler(_rotating_handler(log_dir / "app.log", logging.DEBUG, config))
        root.addHandler(_rotating_handler(log_dir / "error.log", logging.ERROR, config))

        delivery = _rotating_handler(log_dir / "delivery.log", logging.INFO, config)
        delivery.addFilter(logging.Filter("notifier.notifications"))
        root.addHandler(delivery)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured: level=%s, files=%s",
        config.log_level, config.log_dir if config.log_to_file else "off",
    )
