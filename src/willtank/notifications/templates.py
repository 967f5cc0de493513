"""Notification kinds and their user-facing copy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class NotificationKind(StrEnum):
    # Content retention tiers, in escalation order
    REMINDER = "reminder"
    WARNING = "warning"
    URGENT = "urgent"
    CRITICAL = "critical"
    FINAL_WARNING = "final_warning"
    DELETED = "deleted"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"

    # Liveness / verification
    CHECKIN_OVERDUE = "checkin_overdue"
    VERIFICATION_TRIGGERED = "verification_triggered"
    CONTACT_VERIFICATION = "contact_verification"
    UNLOCK_CODE = "unlock_code"
    EXECUTOR_ALERT = "executor_alert"
    VERIFICATION_CANCELED = "verification_canceled"
    QUORUM_REACHED = "quorum_reached"
    DEATH_CONFIRMED = "death_confirmed"


TEMPLATES: dict[str, tuple[str, str]] = {
    NotificationKind.REMINDER: (
        "Will Protection Reminder",
        'Your {item_kind} "{item_title}" expires in {hours} hours. Upgrade to keep it safe.',
    ),
    NotificationKind.WARNING: (
        "Content Expiring Soon",
        'Your {item_kind} "{item_title}" expires in {hours} hours.',
    ),
    NotificationKind.URGENT: (
        "URGENT: Content Expires Soon",
        'Only {hours} hours left. Your {item_kind} "{item_title}" will be permanently deleted.',
    ),
    NotificationKind.CRITICAL: (
        "CRITICAL: Content Expires Within the Hour",
        'Your {item_kind} "{item_title}" will be permanently deleted in less than 1 hour.',
    ),
    NotificationKind.FINAL_WARNING: (
        "FINAL WARNING: Content Being Deleted",
        'Your {item_kind} "{item_title}" is being permanently deleted because free access expired.',
    ),
    NotificationKind.DELETED: (
        "Content Permanently Deleted",
        'Your {item_kind} "{item_title}" has been permanently deleted because free access expired.',
    ),
    NotificationKind.SUBSCRIPTION_ACTIVATED: (
        "Your Content Is Safe",
        "Your subscription is active. {count} item(s) are no longer scheduled for deletion.",
    ),
    NotificationKind.CHECKIN_OVERDUE: (
        "Check-in Overdue",
        "Your check-in was due on {due}. Check in before {deadline} to avoid notifying your contacts.",
    ),
    NotificationKind.VERIFICATION_TRIGGERED: (
        "Death Verification Started",
        "You missed your check-in deadline. Your trusted contacts will be contacted if you do not respond.",
    ),
    NotificationKind.CONTACT_VERIFICATION: (
        "Status Check Requested",
        "Hi {contact_name}, someone who listed you as a trusted contact has missed their check-in. "
        "Please tell us whether they are alive.",
    ),
    NotificationKind.UNLOCK_CODE: (
        "Your Unlock Code",
        "You hold one of {pins_required} codes needed to unlock a will package. Your code: {code}",
    ),
    NotificationKind.EXECUTOR_ALERT: (
        "URGENT: Death Reported",
        "A trusted contact reported a death. You may be asked to submit your unlock code.",
    ),
    NotificationKind.VERIFICATION_CANCELED: (
        "Verification Canceled",
        "You were confirmed alive. The open verification was canceled and your check-in schedule reset.",
    ),
    NotificationKind.QUORUM_REACHED: (
        "Will Package Unlocked",
        "All required unlock codes were submitted. The will package is ready for download.",
    ),
    NotificationKind.DEATH_CONFIRMED: (
        "Death Confirmed",
        "The death has been confirmed. The will package is ready for download.",
    ),
}


class _Defaults(dict):
    def __missing__(self, key: str) -> str:
        return "?"


def render(kind: str, payload: dict[str, Any] | None = None) -> tuple[str, str]:
    """Return ``(title, message)`` for a notification kind.

    Unknown kinds get a generic title. Missing placeholders render as ``?``
    rather than failing a send.
    """
    title, template = TEMPLATES.get(kind, ("WillTank Notification", "You have a new notification."))
    values = _Defaults({"item_kind": "item", "item_title": "Untitled"})
    values.update({k: v for k, v in (payload or {}).items() if v is not None})
    return title, template.format_map(values)
