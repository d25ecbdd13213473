"""Audit-trail database: engine, session factory and declarative base.

Jobs and batches live in Redis; this database only holds the operator audit
log. With no DATABASE_URL configured the service writes it to a local SQLite
file instead.
"""

from collections.abc import Generator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from ..config import settings

_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def build_engine(url: str, pool_size: int = 5, max_overflow: int = 10) -> Engine:
    """Engine for the audit database; pooling only applies to server databases."""
    if url.startswith("sqlite"):
        # Sync routes run on FastAPI's threadpool
        connect_args = {"check_same_thread": False}
        if url in _MEMORY_URLS:
            return create_engine(url, connect_args=connect_args, poolclass=StaticPool)
        return create_engine(url, connect_args=connect_args)
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
    )


engine = build_engine(
    settings.effective_database_url,
    pool_size=settings.audit_db_pool_size,
    max_overflow=settings.audit_db_max_overflow,
)

SessionLocal = sessionmaker(bind=engine)


class Base(DeclarativeBase):
    pass


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
