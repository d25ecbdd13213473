"""Send-time calculation for event notifications.

All times are timezone-aware UTC. Display strings for templates are
rendered in the application timezone.
"""

import math
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from .models import NotificationKind, ParticipantRole

APP_TIMEZONE = ZoneInfo("America/New_York")
TIMEZONE_ABBR = "ET"

DEFAULT_GRACE = timedelta(minutes=5)

_OFFSETS_BEFORE_START: dict[NotificationKind, timedelta] = {
    NotificationKind.PREP_48H: timedelta(hours=48),
    NotificationKind.PREP_24H: timedelta(hours=24),
    NotificationKind.MENTOR_PREP: timedelta(hours=24),
}

_KINDS_BY_ROLE: dict[ParticipantRole, tuple[NotificationKind, ...]] = {
    ParticipantRole.STUDENT: (
        NotificationKind.PREP_48H,
        NotificationKind.PREP_24H,
        NotificationKind.FEEDBACK_IMMEDIATE,
    ),
    ParticipantRole.MENTOR: (
        NotificationKind.MENTOR_PREP,
        NotificationKind.FEEDBACK_IMMEDIATE,
    ),
}


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def calculate_schedule_times(anchor: datetime, duration_minutes: int) -> dict[NotificationKind, datetime]:
    """Raw send time for every notification kind, valid or not."""
    start = ensure_utc(anchor)
    times = {kind: start - offset for kind, offset in _OFFSETS_BEFORE_START.items()}
    times[NotificationKind.FEEDBACK_IMMEDIATE] = start + timedelta(minutes=duration_minutes)
    return times


def is_valid_schedule_time(send_at: datetime, now: datetime, grace: timedelta = DEFAULT_GRACE) -> bool:
    """A send time is usable unless it lies more than `grace` in the past."""
    return ensure_utc(send_at) >= ensure_utc(now) - grace


def calculate_send_times(
    anchor: datetime,
    duration_minutes: int,
    now: datetime | None = None,
    grace: timedelta = DEFAULT_GRACE,
) -> dict[NotificationKind, datetime]:
    """Send times that are still worth scheduling.

    Kinds whose time has passed are dropped, not reported as errors, so a
    same-day event still gets its feedback email.
    """
    now = now or datetime.now(UTC)
    return {
        kind: send_at
        for kind, send_at in calculate_schedule_times(anchor, duration_minutes).items()
        if is_valid_schedule_time(send_at, now, grace)
    }


def applicable_kinds(role: ParticipantRole) -> tuple[NotificationKind, ...]:
    return _KINDS_BY_ROLE[role]


def compute_delay_seconds(target: datetime, now: datetime | None = None) -> int:
    """Seconds from now until target, never negative (past-due sends go out immediately)."""
    now = now or datetime.now(UTC)
    delta = (ensure_utc(target) - ensure_utc(now)).total_seconds()
    return max(0, math.floor(delta))


def format_event_date(value: datetime) -> str:
    """e.g. 'Monday, December 8, 2025'"""
    local = ensure_utc(value).astimezone(APP_TIMEZONE)
    return f"{local:%A}, {local:%B} {local.day}, {local.year}"


def format_event_time(value: datetime) -> str:
    """e.g. '1:00 PM ET'"""
    local = ensure_utc(value).astimezone(APP_TIMEZONE)
    hour = local.hour % 12 or 12
    return f"{hour}:{local:%M} {local:%p} {TIMEZONE_ABBR}"
