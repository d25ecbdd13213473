"""Tests for send-time calculation."""

from datetime import UTC, datetime, timedelta

from notifier.notifications.models import NotificationKind, ParticipantRole
from notifier.notifications.schedule import (
    applicable_kinds,
    calculate_schedule_times,
    calculate_send_times,
    compute_delay_seconds,
    ensure_utc,
    format_event_date,
    format_event_time,
    is_valid_schedule_time,
)

T = datetime(2025, 12, 8, 18, 0, tzinfo=UTC)


class TestCalculateScheduleTimes:
    def test_offsets_per_kind(self):
        times = calculate_schedule_times(T, 60)
        assert times[NotificationKind.PREP_48H] == T - timedelta(hours=48)
        assert times[NotificationKind.PREP_24H] == T - timedelta(hours=24)
        assert times[NotificationKind.MENTOR_PREP] == T - timedelta(hours=24)
        assert times[NotificationKind.FEEDBACK_IMMEDIATE] == T + timedelta(minutes=60)

    def test_feedback_follows_duration(self):
        times = calculate_schedule_times(T, 90)
        assert times[NotificationKind.FEEDBACK_IMMEDIATE] == T + timedelta(minutes=90)

    def test_naive_anchor_treated_as_utc(self):
        naive = T.replace(tzinfo=None)
        assert calculate_schedule_times(naive, 60) == calculate_schedule_times(T, 60)


class TestIsValidScheduleTime:
    def test_future_is_valid(self):
        assert is_valid_schedule_time(T + timedelta(minutes=1), T)

    def test_within_grace_is_valid(self):
        assert is_valid_schedule_time(T - timedelta(minutes=4), T)

    def test_grace_boundary_is_valid(self):
        assert is_valid_schedule_time(T - timedelta(minutes=5), T)

    def test_past_grace_is_invalid(self):
        assert not is_valid_schedule_time(T - timedelta(minutes=6), T)

    def test_custom_grace(self):
        assert not is_valid_schedule_time(T - timedelta(minutes=2), T, grace=timedelta(minutes=1))


class TestCalculateSendTimes:
    def test_all_kinds_when_far_ahead(self):
        times = calculate_send_times(T, 60, now=T - timedelta(days=5))
        assert set(times) == set(NotificationKind)

    def test_drops_past_kinds_without_error(self):
        times = calculate_send_times(T, 60, now=T - timedelta(hours=30))
        assert NotificationKind.PREP_48H not in times
        assert NotificationKind.PREP_24H in times
        assert NotificationKind.FEEDBACK_IMMEDIATE in times

    def test_only_feedback_left_on_event_day(self):
        times = calculate_send_times(T, 60, now=T - timedelta(hours=10))
        assert list(times) == [NotificationKind.FEEDBACK_IMMEDIATE]

    def test_nothing_left_after_event(self):
        assert calculate_send_times(T, 60, now=T + timedelta(hours=3)) == {}


class TestApplicableKinds:
    def test_student_kinds(self):
        assert applicable_kinds(ParticipantRole.STUDENT) == (
            NotificationKind.PREP_48H,
            NotificationKind.PREP_24H,
            NotificationKind.FEEDBACK_IMMEDIATE,
        )

    def test_mentor_kinds(self):
        assert applicable_kinds(ParticipantRole.MENTOR) == (
            NotificationKind.MENTOR_PREP,
            NotificationKind.FEEDBACK_IMMEDIATE,
        )


class TestComputeDelaySeconds:
    def test_future_delay(self):
        assert compute_delay_seconds(T + timedelta(hours=1), T) == 3600

    def test_fractional_seconds_floor(self):
        assert compute_delay_seconds(T + timedelta(seconds=10, milliseconds=900), T) == 10

    def test_past_clamps_to_zero(self):
        assert compute_delay_seconds(T - timedelta(minutes=3), T) == 0


class TestFormatting:
    def test_format_event_date_in_app_timezone(self):
        # 18:00 UTC on Dec 8 is 1 PM Eastern
        assert format_event_date(T) == "Monday, December 8, 2025"

    def test_format_event_time(self):
        assert format_event_time(T) == "1:00 PM ET"

    def test_date_rolls_back_across_midnight(self):
        early = datetime(2025, 12, 9, 2, 30, tzinfo=UTC)
        assert format_event_date(early) == "Monday, December 8, 2025"
        assert format_event_time(early) == "9:30 PM ET"

    def test_ensure_utc_converts_offsets(self):
        from datetime import timezone

        plus_two = datetime(2025, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert ensure_utc(plus_two) == datetime(2025, 1, 1, 12, 0, tzinfo=UTC)
