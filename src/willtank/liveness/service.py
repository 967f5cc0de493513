"""Check-in schedules and the reset-to-active path."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from willtank.config import get_settings
from willtank.db.models import (
    CheckInRecord,
    CheckInSchedule,
    CheckInStatus,
    RequestStatus,
    VerificationRequest,
)
from willtank.errors import InvalidStateError
from willtank.liveness.tracker import next_check_in_after
from willtank.verification.audit import log_action
from willtank.verification.state_machine import LifecycleState, load_state, request_sources

logger = structlog.get_logger()


async def get_schedule(db: AsyncSession, user_id: uuid.UUID) -> CheckInSchedule | None:
    result = await db.execute(select(CheckInSchedule).where(CheckInSchedule.user_id == user_id))
    return result.scalar_one_or_none()


async def get_or_create_schedule(
    db: AsyncSession,
    user_id: uuid.UUID,
    now: datetime,
    frequency_days: int | None = None,
    grace_period_days: int | None = None,
) -> CheckInSchedule:
    """Get the user's schedule, creating one from the configured defaults."""
    schedule = await get_schedule(db, user_id)
    if schedule is not None:
        return schedule

    settings = get_settings()
    frequency = frequency_days or settings.default_checkin_frequency_days
    schedule = CheckInSchedule(
        user_id=user_id,
        frequency_days=frequency,
        grace_period_days=grace_period_days if grace_period_days is not None else settings.default_checkin_grace_days,
        next_check_in=next_check_in_after(now, frequency),
        enabled=True,
        updated_at=now,
    )
    db.add(schedule)
    await db.flush()
    return schedule


async def latest_record(db: AsyncSession, user_id: uuid.UUID) -> CheckInRecord | None:
    result = await db.execute(
        select(CheckInRecord)
        .where(CheckInRecord.user_id == user_id)
        .order_by(CheckInRecord.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def append_record(
    db: AsyncSession,
    schedule: CheckInSchedule,
    status: str,
    now: datetime,
    verification_request_id: uuid.UUID | None = None,
) -> CheckInRecord:
    """Append an escalation step to the check-in history.

    Escalation rows carry the last real check-in time forward so the history
    still answers "when did we last hear from them".
    """
    previous = await latest_record(db, schedule.user_id)
    record = CheckInRecord(
        user_id=schedule.user_id,
        checked_in_at=previous.checked_in_at if previous else now,
        next_check_in=schedule.next_check_in,
        status=status,
        verification_request_id=verification_request_id,
        created_at=now,
    )
    db.add(record)
    return record


async def reset_to_active(
    db: AsyncSession,
    schedule: CheckInSchedule,
    now: datetime,
) -> tuple[CheckInRecord, list[uuid.UUID]]:
    """Return the user to ACTIVE: cancel open requests and advance the deadline.

    Does not commit. Returns the new record and the ids of canceled requests.
    """
    result = await db.execute(
        update(VerificationRequest)
        .where(
            VerificationRequest.user_id == schedule.user_id,
            VerificationRequest.status.in_(request_sources(RequestStatus.CANCELED)),
        )
        .values(status=RequestStatus.CANCELED)
        .returning(VerificationRequest.id)
    )
    canceled = list(result.scalars().all())

    schedule.next_check_in = next_check_in_after(now, schedule.frequency_days)
    schedule.reminder_sent_for = None
    schedule.updated_at = now

    record = CheckInRecord(
        user_id=schedule.user_id,
        checked_in_at=now,
        next_check_in=schedule.next_check_in,
        status=CheckInStatus.PENDING,
        created_at=now,
    )
    db.add(record)
    for request_id in canceled:
        log_action(db, schedule.user_id, "verification_canceled", now, request_id=request_id)
    return record, canceled


async def record_check_in(
    db: AsyncSession,
    user_id: uuid.UUID,
    now: datetime | None = None,
) -> CheckInRecord:
    """Authenticated check-in. Resets any non-terminal escalation."""
    if now is None:
        now = datetime.now(timezone.utc)

    state = await load_state(db, user_id)
    if state == LifecycleState.VERIFIED:
        raise InvalidStateError("Check-in is closed: death has already been verified")

    schedule = await get_or_create_schedule(db, user_id, now)
    record, canceled = await reset_to_active(db, schedule, now)
    await db.commit()

    logger.info(
        "check_in_recorded",
        user_id=str(user_id),
        previous_state=state.value,
        next_check_in=schedule.next_check_in.isoformat(),
        canceled_requests=len(canceled),
    )
    return record
