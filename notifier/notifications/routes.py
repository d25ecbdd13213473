"""Operator and query routes for scheduled notifications."""

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse
from sqlalchemy.orm import Session

from ..audit.service import audit, get_actor
from ..config import settings
from ..database.base import get_db
from ..dependencies import get_operations, get_scheduler, get_store
from ..rate_limit import get_operator_key, limiter
from .emails import render_email
from .models import BatchRecipient, NotificationKind, ParticipantRole, TemplateMetadata
from .operations import NotificationOperations
from .progress import count_statuses
from .scheduler import NotificationScheduler
from .schemas import BatchSummary, EventJobsResponse, RescheduleResponse, ScheduleRequest, ScheduleResponse
from .store import JobNotFoundError, RedisJobStore

router = APIRouter(tags=["notifications"])


# ── Events ────────────────────────────────────────────────────────────


@router.post("/events/{event_id}/notifications")
@limiter.limit(settings.rate_limit_ops, key_func=get_operator_key)
def schedule_notifications(
    request: Request,
    event_id: str,
    body: ScheduleRequest,
    scheduler: NotificationScheduler = Depends(get_scheduler),
    db: Session = Depends(get_db),
):
    created_by = body.created_by or get_actor(request)
    result = scheduler.schedule_event_notifications(body.to_event(event_id), created_by=created_by)
    if result is None:
        return JSONResponse(ScheduleResponse(scheduled=False).model_dump())

    audit(
        db, request, "notifications_schedule",
        f"event={event_id}, batch={result.batch_id}, jobs={result.job_count}, failed_groups={result.failed_groups}",
        actor=created_by,
    )
    db.commit()
    return JSONResponse(ScheduleResponse(scheduled=True, **asdict(result)).model_dump())


@router.get("/events/{event_id}/notifications")
def list_event_notifications(event_id: str, store: RedisJobStore = Depends(get_store)):
    jobs = sorted(store.get_event_jobs(event_id), key=lambda job: job.scheduled_for)
    response = EventJobsResponse(
        event_id=event_id,
        total=len(jobs),
        summary=count_statuses(job.status for job in jobs).as_dict(),
        jobs=jobs,
    )
    return JSONResponse(response.model_dump(mode="json"))


@router.get("/events/{event_id}/batches")
def list_event_batches(event_id: str, store: RedisJobStore = Depends(get_store)):
    batches = [BatchSummary.from_batch(b).model_dump(mode="json") for b in store.get_event_batches(event_id)]
    return JSONResponse({"event_id": event_id, "batches": batches})


@router.post("/events/{event_id}/notifications/retry")
@limiter.limit(settings.rate_limit_ops, key_func=get_operator_key)
def retry_event_notifications(
    request: Request,
    event_id: str,
    operations: NotificationOperations = Depends(get_operations),
    db: Session = Depends(get_db),
):
    result = operations.retry_failed_for_event(event_id)
    audit(db, request, "notifications_retry", f"event={event_id}, retried={result.retried}, failed={result.failed}")
    db.commit()
    return JSONResponse({"ok": True, **asdict(result)})


@router.post("/events/{event_id}/notifications/cancel")
@limiter.limit(settings.rate_limit_ops, key_func=get_operator_key)
def cancel_event_notifications(
    request: Request,
    event_id: str,
    operations: NotificationOperations = Depends(get_operations),
    db: Session = Depends(get_db),
):
    result = operations.cancel_event(event_id)
    audit(db, request, "notifications_cancel", f"event={event_id}, cancelled={result.cancelled}")
    db.commit()
    return JSONResponse({"ok": True, **asdict(result)})


@router.post("/events/{event_id}/notifications/reschedule")
@limiter.limit(settings.rate_limit_ops, key_func=get_operator_key)
def reschedule_notifications(
    request: Request,
    event_id: str,
    body: ScheduleRequest,
    operations: NotificationOperations = Depends(get_operations),
    db: Session = Depends(get_db),
):
    created_by = body.created_by or get_actor(request)
    result = operations.reschedule_event(body.to_event(event_id), created_by=created_by)
    scheduled = result.scheduled
    response = RescheduleResponse(
        scheduled=scheduled is not None,
        cancelled=result.cancelled.cancelled,
        delete_failed=result.cancelled.delete_failed,
        **(asdict(scheduled) if scheduled else {}),
    )
    audit(
        db, request, "notifications_reschedule",
        f"event={event_id}, cancelled={response.cancelled}, batch={response.batch_id}, jobs={response.job_count}",
        actor=created_by,
    )
    db.commit()
    return JSONResponse(response.model_dump())


@router.delete("/events/{event_id}/notifications/{job_id}")
@limiter.limit(settings.rate_limit_ops, key_func=get_operator_key)
def cancel_event_job(
    request: Request,
    event_id: str,
    job_id: str,
    operations: NotificationOperations = Depends(get_operations),
    db: Session = Depends(get_db),
):
    result = operations.cancel_job(event_id, job_id)
    audit(db, request, "notification_cancel", f"event={event_id}, job={job_id}")
    db.commit()
    return JSONResponse({"ok": True, **asdict(result)})


@router.delete("/events/{event_id}/recipients/{email}")
@limiter.limit(settings.rate_limit_ops, key_func=get_operator_key)
def cancel_recipient_notifications(
    request: Request,
    event_id: str,
    email: str,
    operations: NotificationOperations = Depends(get_operations),
    db: Session = Depends(get_db),
):
    result = operations.cancel_recipient(event_id, email)
    audit(db, request, "recipient_cancel", f"event={event_id}, cancelled={result.cancelled}")
    db.commit()
    return JSONResponse({"ok": True, **asdict(result)})


# ── Batches ───────────────────────────────────────────────────────────


@router.get("/batches/{batch_id}")
def batch_progress(batch_id: str, details: bool = False, store: RedisJobStore = Depends(get_store)):
    progress = store.get_job_progress(batch_id, details=details)
    if progress is None:
        raise JobNotFoundError(f"Batch {batch_id} not found")
    return JSONResponse(progress.model_dump(mode="json", exclude_none=not details))


@router.post("/batches/{batch_id}/cancel")
@limiter.limit(settings.rate_limit_ops, key_func=get_operator_key)
def cancel_batch(
    request: Request,
    batch_id: str,
    operations: NotificationOperations = Depends(get_operations),
    db: Session = Depends(get_db),
):
    result = operations.cancel_batch(batch_id)
    audit(db, request, "batch_cancel", f"batch={batch_id}, cancelled={result.cancelled}")
    db.commit()
    return JSONResponse({"ok": True, **asdict(result)})


@router.delete("/batches/{batch_id}")
@limiter.limit(settings.rate_limit_ops, key_func=get_operator_key)
def delete_batch(
    request: Request,
    batch_id: str,
    operations: NotificationOperations = Depends(get_operations),
    db: Session = Depends(get_db),
):
    result = operations.delete_batch(batch_id)
    audit(db, request, "batch_delete", f"batch={batch_id}")
    db.commit()
    return JSONResponse({"ok": True, **asdict(result)})


@router.get("/actors/{actor}/batches")
def actor_active_batches(actor: str, store: RedisJobStore = Depends(get_store)):
    batches = [BatchSummary.from_batch(b).model_dump(mode="json") for b in store.get_actor_active_batches(actor)]
    return JSONResponse({"actor": actor, "batches": batches})


# ── Jobs ──────────────────────────────────────────────────────────────


@router.post("/jobs/{job_id}/retry")
@limiter.limit(settings.rate_limit_ops, key_func=get_operator_key)
def retry_job(
    request: Request,
    job_id: str,
    operations: NotificationOperations = Depends(get_operations),
    db: Session = Depends(get_db),
):
    job = operations.retry_job(job_id)
    audit(db, request, "notification_retry", f"job={job_id}, attempts={job.attempts}")
    db.commit()
    return JSONResponse({"ok": True, "job": job.model_dump(mode="json")})


@router.post("/jobs/{job_id}/resend")
@limiter.limit(settings.rate_limit_ops, key_func=get_operator_key)
def resend_job(
    request: Request,
    job_id: str,
    operations: NotificationOperations = Depends(get_operations),
    db: Session = Depends(get_db),
):
    job = operations.resend_job(job_id)
    audit(db, request, "notification_resend", f"job={job_id}, new_job={job.id}")
    db.commit()
    return JSONResponse({"ok": True, "job": job.model_dump(mode="json")})


# ── Dead letters ──────────────────────────────────────────────────────


@router.get("/dead-letters")
def list_dead_letters(
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    store: RedisJobStore = Depends(get_store),
):
    entries, total = store.get_dead_letters(offset, limit)
    return JSONResponse({
        "total": total,
        "offset": offset,
        "limit": limit,
        "entries": [entry.model_dump(mode="json") for entry in entries],
    })


@router.post("/dead-letters/{index}/review")
@limiter.limit(settings.rate_limit_ops, key_func=get_operator_key)
def review_dead_letter(
    request: Request,
    index: int,
    store: RedisJobStore = Depends(get_store),
    db: Session = Depends(get_db),
):
    entry = store.mark_dead_letter_reviewed(index)
    audit(db, request, "dead_letter_review", f"index={index}, job={entry.job.id}")
    db.commit()
    return JSONResponse({"ok": True, "entry": entry.model_dump(mode="json")})


# ── Email preview ─────────────────────────────────────────────────────

_PREVIEW_EVENT_ID = "sample-event-id"
_PREVIEW_METADATA = TemplateMetadata(
    event_type="Weekly Check-in",
    event_date="Monday, January 15, 2025",
    event_time="2:00 PM ET",
    team_name="Team Alpha",
    mentor_names=["John Smith"],
)


@router.get("/emails/preview")
def preview_email(
    kind: NotificationKind,
    role: ParticipantRole = ParticipantRole.STUDENT,
    format: str = Query("json", pattern="^(json|html)$"),
):
    """Render one notification kind with sample data; nothing is sent."""
    recipient = BatchRecipient(job_id="preview", to="jane.doe@example.com", recipient_name="Jane Doe", role=role)
    email = render_email(
        kind, recipient, _PREVIEW_EVENT_ID, _PREVIEW_METADATA, settings.public_app_url,
        subject_prefix=settings.email_subject_prefix,
    )
    if format == "html":
        return HTMLResponse(email.html)
    return JSONResponse({
        "kind": kind.value,
        "role": role.value,
        "sample": _PREVIEW_METADATA.model_dump(),
        "subject": email.subject,
        "text": email.text,
        "html": email.html,
    })
