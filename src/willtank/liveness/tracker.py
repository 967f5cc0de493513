"""Check-in deadline math. Pure functions over a schedule and ``now``."""

from __future__ import annotations

from datetime import datetime, timedelta

from willtank.db.models import CheckInSchedule


def next_check_in_after(moment: datetime, frequency_days: int) -> datetime:
    """The next check-in deadline when the user checks in at ``moment``."""
    return moment + timedelta(days=frequency_days)


def grace_deadline(schedule: CheckInSchedule) -> datetime:
    """Instant after which a missed check-in escalates."""
    return schedule.next_check_in + timedelta(days=schedule.grace_period_days)


def is_overdue(schedule: CheckInSchedule, now: datetime) -> bool:
    """True once the check-in deadline plus its grace period has passed.

    Exactly at the deadline is still inside the grace period.
    """
    return schedule.enabled and now > grace_deadline(schedule)


def is_reminder_due(schedule: CheckInSchedule, now: datetime) -> bool:
    """True while inside the grace period and no reminder was sent for this deadline."""
    if not schedule.enabled:
        return False
    if not (schedule.next_check_in < now <= grace_deadline(schedule)):
        return False
    return schedule.reminder_sent_for != schedule.next_check_in


def days_overdue(schedule: CheckInSchedule, now: datetime) -> int:
    if now <= schedule.next_check_in:
        return 0
    return (now - schedule.next_check_in).days
