"""Audit log service."""

from fastapi import Request
from sqlalchemy.orm import Session

from .models import AuditLog


def _get_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


def get_actor(request: Request) -> str | None:
    """Operator identity as forwarded by the calling UI."""
    actor = request.headers.get("X-Actor", "").strip()
    return actor or None


def audit(db: Session, request: Request, action: str, detail: str = "", actor: str | None = None) -> None:
    """Write an audit log entry."""
    db.add(
        AuditLog(
            actor=actor or get_actor(request),
            action=action,
            detail=detail,
            ip_address=_get_ip(request),
        )
    )
