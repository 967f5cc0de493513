"""Dead-man's-switch state machine.

State progression: active -> verification_triggered -> trusted_contacts_notified -> verified
A check-in or "alive" response returns any non-terminal state to active.
``verified`` is terminal.

The state is never stored directly. It is derived from the latest
VerificationRequest (a request that reached ``verified`` or ``completed``
wins) and otherwise from the latest CheckInRecord.
"""

from __future__ import annotations

import uuid
from enum import StrEnum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from willtank.db.models import (
    UNLOCKED_REQUEST_STATUSES,
    CheckInRecord,
    CheckInStatus,
    RequestStatus,
    VerificationRequest,
)
from willtank.errors import InvalidStateError


class LifecycleState(StrEnum):
    ACTIVE = "active"
    VERIFICATION_TRIGGERED = "verification_triggered"
    TRUSTED_CONTACTS_NOTIFIED = "trusted_contacts_notified"
    VERIFIED = "verified"


VALID_TRANSITIONS: dict[str, list[str]] = {
    # A contact reporting a death skips straight to contact notification
    LifecycleState.ACTIVE: [LifecycleState.VERIFICATION_TRIGGERED, LifecycleState.TRUSTED_CONTACTS_NOTIFIED],
    LifecycleState.VERIFICATION_TRIGGERED: [LifecycleState.TRUSTED_CONTACTS_NOTIFIED, LifecycleState.ACTIVE],
    LifecycleState.TRUSTED_CONTACTS_NOTIFIED: [LifecycleState.VERIFIED, LifecycleState.ACTIVE],
    LifecycleState.VERIFIED: [],
}

REQUEST_TRANSITIONS: dict[str, list[str]] = {
    RequestStatus.PENDING: [RequestStatus.INITIATED, RequestStatus.EXPIRED, RequestStatus.CANCELED],
    RequestStatus.INITIATED: [
        RequestStatus.COMPLETED,
        RequestStatus.VERIFIED,
        RequestStatus.EXPIRED,
        RequestStatus.CANCELED,
    ],
    RequestStatus.COMPLETED: [],
    RequestStatus.VERIFIED: [],
    RequestStatus.EXPIRED: [],
    RequestStatus.CANCELED: [],
}

_RECORD_STATES = {
    CheckInStatus.PENDING: LifecycleState.ACTIVE,
    CheckInStatus.VERIFICATION_TRIGGERED: LifecycleState.VERIFICATION_TRIGGERED,
    CheckInStatus.TRUSTED_CONTACTS_NOTIFIED: LifecycleState.TRUSTED_CONTACTS_NOTIFIED,
}


def validate_transition(current: str, target: str) -> None:
    """Validate a lifecycle transition. Raises InvalidStateError if invalid."""
    valid = VALID_TRANSITIONS.get(current, [])
    if target not in valid:
        raise InvalidStateError(f"Invalid transition: {current} -> {target}. Valid transitions: {valid}")


def validate_request_transition(current: str, target: str) -> None:
    valid = REQUEST_TRANSITIONS.get(current, [])
    if target not in valid:
        raise InvalidStateError(f"Invalid request transition: {current} -> {target}")


def request_sources(target: str) -> list[str]:
    """Request statuses allowed to move to ``target``, for the guard of a conditional update."""
    sources = [status for status, targets in REQUEST_TRANSITIONS.items() if target in targets]
    if not sources:
        raise InvalidStateError(f"No request status may move to {target}")
    return sources


def derive_state(latest_request_status: str | None, latest_record_status: str | None) -> LifecycleState:
    """Fold the two histories into the current lifecycle state."""
    if latest_request_status in UNLOCKED_REQUEST_STATUSES:
        return LifecycleState.VERIFIED
    if latest_record_status is None:
        return LifecycleState.ACTIVE
    return _RECORD_STATES.get(latest_record_status, LifecycleState.ACTIVE)


async def load_state(db: AsyncSession, user_id: uuid.UUID) -> LifecycleState:
    """Current lifecycle state for a user, read from the datastore."""
    request_status = (
        await db.execute(
            select(VerificationRequest.status)
            .where(VerificationRequest.user_id == user_id)
            .order_by(VerificationRequest.initiated_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    record_status = (
        await db.execute(
            select(CheckInRecord.status)
            .where(CheckInRecord.user_id == user_id)
            .order_by(CheckInRecord.created_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    return derive_state(request_status, record_status)
