"""Dead-man's-switch workflow: scanning, liveness responses, expiry.

Escalation path per user:
1. scan() finds a schedule past ``next_check_in + grace`` and opens a pending
   VerificationRequest (verification_triggered)
2. After the escalation delay, the next scan issues unlock codes and asks every
   confirmed contact for a status check (trusted_contacts_notified)
3. PIN quorum or an explicit death confirmation closes the request (verified)

The partial unique index on open requests is the concurrency guard: a scan
that loses the insert race rolls back and counts a no-op.
"""

from __future__ import annotations

import secrets
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from willtank.config import get_settings
from willtank.db.models import (
    OPEN_REQUEST_STATUSES,
    UNLOCKED_REQUEST_STATUSES,
    CheckInSchedule,
    CheckInStatus,
    ContactRole,
    ExecutorVerification,
    ExecutorVerificationStatus,
    LivenessPrompt,
    LivenessResponse,
    RequestSource,
    RequestStatus,
    TrustedContact,
    VerificationRequest,
)
from willtank.errors import (
    AlreadyRespondedError,
    InvalidStateError,
    InvalidTokenError,
    NotFoundError,
    TransientStoreError,
)
from willtank.liveness.service import append_record, get_or_create_schedule, get_schedule, reset_to_active
from willtank.liveness.tracker import days_overdue, grace_deadline, is_overdue, is_reminder_due
from willtank.notifications.notifier import NotificationEvent, Notifier, dispatch
from willtank.notifications.templates import NotificationKind
from willtank.subscriptions.gate import SubscriptionGate
from willtank.unlock.service import IssuedCodes, confirmed_contacts, notify_codes, stage_codes
from willtank.verification.audit import log_action
from willtank.verification.state_machine import (
    LifecycleState,
    load_state,
    request_sources,
    validate_request_transition,
    validate_transition,
)

logger = structlog.get_logger()


@dataclass
class ScanReport:
    escalated: int = 0
    triggered: int = 0
    reminders_sent: int = 0
    skipped_subscribed: int = 0
    races_lost: int = 0
    failures: int = 0


@dataclass
class ExpiryReport:
    requests_expired: int = 0
    verifications_expired: int = 0


@dataclass(frozen=True)
class LivenessOutcome:
    user_id: uuid.UUID
    response: str
    state: LifecycleState
    verification_request_id: uuid.UUID | None = None


@dataclass
class Escalation:
    issued: IssuedCodes | None = None
    prompts: list[tuple[TrustedContact, LivenessPrompt]] = field(default_factory=list)
    executors: list[TrustedContact] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _new_prompt(
    db: AsyncSession,
    user_id: uuid.UUID,
    now: datetime,
    contact_id: uuid.UUID | None = None,
    request_id: uuid.UUID | None = None,
) -> LivenessPrompt:
    prompt = LivenessPrompt(
        token=secrets.token_urlsafe(32),
        user_id=user_id,
        contact_id=contact_id,
        verification_request_id=request_id,
        created_at=now,
        expires_at=now + timedelta(hours=get_settings().liveness_prompt_ttl_hours),
    )
    db.add(prompt)
    return prompt


async def get_open_request(db: AsyncSession, user_id: uuid.UUID) -> VerificationRequest | None:
    result = await db.execute(
        select(VerificationRequest).where(
            VerificationRequest.user_id == user_id,
            VerificationRequest.status.in_(OPEN_REQUEST_STATUSES),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _open_request(
    db: AsyncSession,
    user_id: uuid.UUID,
    source: str,
    now: datetime,
    initiated_by: uuid.UUID | None = None,
) -> VerificationRequest | None:
    """Insert a pending request. Returns None if another writer got there first.

    On a lost race the whole transaction is rolled back.
    """
    request = VerificationRequest(
        user_id=user_id,
        status=RequestStatus.PENDING,
        source=source,
        initiated_by=initiated_by,
        initiated_at=now,
        expires_at=now + timedelta(hours=get_settings().verification_window_hours),
        downloaded=False,
    )
    db.add(request)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        logger.info("verification_request_race_lost", user_id=str(user_id), source=source)
        return None
    return request


async def _stage_escalation(
    db: AsyncSession,
    schedule: CheckInSchedule,
    request: VerificationRequest,
    state: LifecycleState,
    now: datetime,
    exclude_contact: uuid.UUID | None = None,
) -> Escalation:
    """Issue codes and stage contact status checks. Does not commit."""
    escalation = Escalation()
    if request.status == RequestStatus.PENDING:
        escalation.issued = await stage_codes(db, request, now)

    for contact in await confirmed_contacts(db, request.user_id):
        if contact.id == exclude_contact:
            continue
        prompt = _new_prompt(db, request.user_id, now, contact_id=contact.id, request_id=request.id)
        escalation.prompts.append((contact, prompt))

    if state != LifecycleState.TRUSTED_CONTACTS_NOTIFIED:
        validate_transition(state, LifecycleState.TRUSTED_CONTACTS_NOTIFIED)
        await append_record(db, schedule, CheckInStatus.TRUSTED_CONTACTS_NOTIFIED, now, request.id)

    log_action(
        db,
        request.user_id,
        "contacts_notified",
        now,
        request_id=request.id,
        contacts=len(escalation.prompts),
    )
    return escalation


async def _notify_escalation(notifier: Notifier, user_id: uuid.UUID, escalation: Escalation) -> None:
    for contact, prompt in escalation.prompts:
        await dispatch(
            notifier,
            NotificationEvent(
                tier=NotificationKind.CONTACT_VERIFICATION,
                user_id=user_id,
                contact_id=contact.id,
                payload={"token": prompt.token, "contact_name": contact.name, "expires_at": prompt.expires_at},
            ),
        )
    if escalation.issued is not None:
        await notify_codes(notifier, escalation.issued)
    for executor in escalation.executors:
        await dispatch(
            notifier,
            NotificationEvent(
                tier=NotificationKind.EXECUTOR_ALERT,
                user_id=user_id,
                contact_id=executor.id,
                priority="high",
                payload={"contact_name": executor.name},
            ),
        )


# ---------------------------------------------------------------------------
# Scan
# ---------------------------------------------------------------------------


async def escalate_request(
    db: AsyncSession,
    notifier: Notifier,
    request_id: uuid.UUID,
    now: datetime,
) -> bool:
    """Move a pending request to contact notification. False if nothing changed."""
    request = await db.get(VerificationRequest, request_id, populate_existing=True)
    if request is None or request.status != RequestStatus.PENDING:
        return False

    schedule = await get_or_create_schedule(db, request.user_id, now)
    state = await load_state(db, request.user_id)
    contacts = await confirmed_contacts(db, request.user_id)
    if not contacts:
        logger.warning("verification_escalation_waiting_for_contacts", user_id=str(request.user_id))
        return False

    escalation = await _stage_escalation(db, schedule, request, state, now)
    if escalation.issued is None:
        # Codes were claimed by a concurrent scan
        await db.rollback()
        return False
    await db.commit()

    logger.info(
        "verification_escalated",
        user_id=str(request.user_id),
        request_id=str(request.id),
        contacts=len(escalation.prompts),
        pins_required=escalation.issued.verification.pins_required,
    )
    await _notify_escalation(notifier, request.user_id, escalation)
    return True


async def _advance_pending(
    db: AsyncSession,
    gate: SubscriptionGate,
    notifier: Notifier,
    now: datetime,
    report: ScanReport,
) -> None:
    cutoff = now - timedelta(hours=get_settings().verification_escalation_delay_hours)
    result = await db.execute(
        select(VerificationRequest.id, VerificationRequest.user_id, VerificationRequest.source).where(
            VerificationRequest.status == RequestStatus.PENDING,
            VerificationRequest.initiated_at <= cutoff,
            VerificationRequest.expires_at > now,
        )
    )
    for request_id, user_id, source in result.all():
        try:
            if source == RequestSource.MISSED_CHECKIN and await gate.is_active(user_id):
                report.skipped_subscribed += 1
                continue
            if await escalate_request(db, notifier, request_id, now):
                report.escalated += 1
        except Exception as exc:
            await db.rollback()
            report.failures += 1
            logger.exception("verification_escalation_failed", request_id=str(request_id), error=str(exc))


async def _check_schedule(
    db: AsyncSession,
    gate: SubscriptionGate,
    notifier: Notifier,
    user_id: uuid.UUID,
    now: datetime,
    report: ScanReport,
) -> None:
    schedule = await get_schedule(db, user_id)
    if schedule is None:
        return
    reminder_due = is_reminder_due(schedule, now)
    overdue = is_overdue(schedule, now)
    if not (reminder_due or overdue):
        return

    if await gate.is_active(user_id):
        report.skipped_subscribed += 1
        return
    if await load_state(db, user_id) != LifecycleState.ACTIVE:
        return

    if reminder_due:
        due = schedule.next_check_in
        claimed = await db.execute(
            update(CheckInSchedule)
            .where(
                CheckInSchedule.user_id == user_id,
                CheckInSchedule.next_check_in == due,
                or_(CheckInSchedule.reminder_sent_for.is_(None), CheckInSchedule.reminder_sent_for != due),
            )
            .values(reminder_sent_for=due)
        )
        await db.commit()
        if claimed.rowcount == 1:
            report.reminders_sent += 1
            await dispatch(
                notifier,
                NotificationEvent(
                    tier=NotificationKind.CHECKIN_OVERDUE,
                    user_id=user_id,
                    payload={"due": due.isoformat(), "deadline": grace_deadline(schedule).isoformat()},
                ),
            )
        return

    if await get_open_request(db, user_id) is not None:
        return

    request = await _open_request(db, user_id, RequestSource.MISSED_CHECKIN, now)
    if request is None:
        report.races_lost += 1
        return

    validate_transition(LifecycleState.ACTIVE, LifecycleState.VERIFICATION_TRIGGERED)
    await append_record(db, schedule, CheckInStatus.VERIFICATION_TRIGGERED, now, request.id)
    prompt = _new_prompt(db, user_id, now, request_id=request.id)
    log_action(
        db,
        user_id,
        "verification_triggered",
        now,
        request_id=request.id,
        next_check_in=schedule.next_check_in,
        grace_period_days=schedule.grace_period_days,
    )
    await db.commit()
    report.triggered += 1

    logger.info(
        "verification_triggered",
        user_id=str(user_id),
        request_id=str(request.id),
        overdue_since=grace_deadline(schedule).isoformat(),
        days_overdue=days_overdue(schedule, now),
    )
    await dispatch(
        notifier,
        NotificationEvent(
            tier=NotificationKind.VERIFICATION_TRIGGERED,
            user_id=user_id,
            priority="high",
            payload={"token": prompt.token, "request_id": request.id},
        ),
    )


async def scan(
    db: AsyncSession,
    gate: SubscriptionGate,
    notifier: Notifier,
    now: datetime | None = None,
) -> ScanReport:
    """One pass of the dead-man's switch. Safe to run concurrently with itself."""
    if now is None:
        now = datetime.now(timezone.utc)
    report = ScanReport()

    await _advance_pending(db, gate, notifier, now, report)

    user_ids = (
        await db.execute(select(CheckInSchedule.user_id).where(CheckInSchedule.enabled.is_(True)))
    ).scalars().all()
    for user_id in user_ids:
        try:
            await _check_schedule(db, gate, notifier, user_id, now, report)
        except Exception as exc:
            await db.rollback()
            report.failures += 1
            logger.exception("verification_scan_user_failed", user_id=str(user_id), error=str(exc))

    logger.info("verification_scan_complete", **asdict(report))
    return report


# ---------------------------------------------------------------------------
# Liveness responses
# ---------------------------------------------------------------------------


async def record_liveness_response(
    db: AsyncSession,
    notifier: Notifier,
    token: str,
    status: str,
    now: datetime | None = None,
) -> LivenessOutcome:
    """Resolve a liveness prompt with ``alive`` or ``deceased``."""
    if now is None:
        now = datetime.now(timezone.utc)
    if status not in (LivenessResponse.ALIVE, LivenessResponse.DECEASED):
        raise InvalidStateError(f"Unknown liveness status: {status}")

    result = await db.execute(select(LivenessPrompt).where(LivenessPrompt.token == token))
    prompt = result.scalar_one_or_none()
    if prompt is None or prompt.expires_at <= now:
        raise InvalidTokenError()
    if prompt.responded_at is not None:
        raise AlreadyRespondedError()

    user_id = prompt.user_id
    state = await load_state(db, user_id)
    if state == LifecycleState.VERIFIED:
        raise InvalidStateError("Death has already been verified for this account")

    claimed = await db.execute(
        update(LivenessPrompt)
        .where(LivenessPrompt.id == prompt.id, LivenessPrompt.responded_at.is_(None))
        .values(responded_at=now, response=status)
    )
    if claimed.rowcount == 0:
        await db.rollback()
        raise AlreadyRespondedError()

    schedule = await get_or_create_schedule(db, user_id, now)

    if status == LivenessResponse.ALIVE:
        _, canceled = await reset_to_active(db, schedule, now)
        await db.commit()
        logger.info(
            "liveness_confirmed",
            user_id=str(user_id),
            responder=str(prompt.contact_id) if prompt.contact_id else "user",
            canceled_requests=len(canceled),
        )
        if canceled:
            await dispatch(
                notifier,
                NotificationEvent(tier=NotificationKind.VERIFICATION_CANCELED, user_id=user_id),
            )
        return LivenessOutcome(user_id=user_id, response=status, state=LifecycleState.ACTIVE)

    request = await get_open_request(db, user_id)
    if request is None:
        request = await _open_request(db, user_id, RequestSource.CONTACT_REPORT, now, initiated_by=prompt.contact_id)
        if request is None:
            raise TransientStoreError("Concurrent verification update, please retry")

    escalation = await _stage_escalation(db, schedule, request, state, now, exclude_contact=prompt.contact_id)
    escalation.executors = await confirmed_contacts(db, user_id, ContactRole.EXECUTOR)
    log_action(db, user_id, "deceased_reported", now, request_id=request.id, reported_by=prompt.contact_id)
    await db.commit()

    logger.warning(
        "deceased_reported",
        user_id=str(user_id),
        request_id=str(request.id),
        reported_by=str(prompt.contact_id) if prompt.contact_id else None,
        executors_alerted=len(escalation.executors),
    )
    await _notify_escalation(notifier, user_id, escalation)
    return LivenessOutcome(
        user_id=user_id,
        response=status,
        state=LifecycleState.TRUSTED_CONTACTS_NOTIFIED,
        verification_request_id=request.id,
    )


# ---------------------------------------------------------------------------
# Manual actions
# ---------------------------------------------------------------------------


async def initiate_verification(
    db: AsyncSession,
    notifier: Notifier,
    user_id: uuid.UUID,
    source: str = RequestSource.MANUAL,
    initiated_by: uuid.UUID | None = None,
    now: datetime | None = None,
) -> VerificationRequest:
    """Open a verification request by hand, e.g. after an earlier one expired."""
    if now is None:
        now = datetime.now(timezone.utc)

    state = await load_state(db, user_id)
    if state == LifecycleState.VERIFIED:
        raise InvalidStateError("Death has already been verified for this account")

    existing = await get_open_request(db, user_id)
    if existing is not None:
        return existing

    schedule = await get_or_create_schedule(db, user_id, now)
    request = await _open_request(db, user_id, source, now, initiated_by=initiated_by)
    if request is None:
        existing = await get_open_request(db, user_id)
        if existing is None:
            raise TransientStoreError("Concurrent verification update, please retry")
        return existing

    if state == LifecycleState.ACTIVE:
        await append_record(db, schedule, CheckInStatus.VERIFICATION_TRIGGERED, now, request.id)
    prompt = _new_prompt(db, user_id, now, request_id=request.id)
    log_action(db, user_id, "verification_triggered", now, request_id=request.id, source=source)
    await db.commit()

    logger.info("verification_initiated", user_id=str(user_id), request_id=str(request.id), source=source)
    await dispatch(
        notifier,
        NotificationEvent(
            tier=NotificationKind.VERIFICATION_TRIGGERED,
            user_id=user_id,
            priority="high",
            payload={"token": prompt.token, "request_id": request.id},
        ),
    )
    return request


async def confirm_death(
    db: AsyncSession,
    notifier: Notifier,
    request_id: uuid.UUID,
    confirmed_by: str | None = None,
    now: datetime | None = None,
) -> VerificationRequest:
    """Explicit deceased confirmation: ``initiated -> completed``."""
    if now is None:
        now = datetime.now(timezone.utc)

    request = await db.get(VerificationRequest, request_id, populate_existing=True)
    if request is None:
        raise NotFoundError(f"Verification request {request_id} not found")

    result = await db.execute(
        update(VerificationRequest)
        .where(
            VerificationRequest.id == request_id,
            VerificationRequest.status.in_(request_sources(RequestStatus.COMPLETED)),
        )
        .values(status=RequestStatus.COMPLETED, unlocked_at=now)
    )
    if result.rowcount == 0:
        await db.rollback()
        await db.refresh(request)
        if request.status in UNLOCKED_REQUEST_STATUSES:
            return request
        validate_request_transition(request.status, RequestStatus.COMPLETED)
        raise TransientStoreError("Concurrent verification update, please retry")

    log_action(db, request.user_id, "death_confirmed", now, request_id=request_id, confirmed_by=confirmed_by)
    await db.commit()
    await db.refresh(request)

    logger.info("death_confirmed", user_id=str(request.user_id), request_id=str(request_id))
    for executor in await confirmed_contacts(db, request.user_id, ContactRole.EXECUTOR):
        await dispatch(
            notifier,
            NotificationEvent(
                tier=NotificationKind.DEATH_CONFIRMED,
                user_id=request.user_id,
                contact_id=executor.id,
                priority="high",
                payload={"request_id": request_id},
            ),
        )
    return request


# ---------------------------------------------------------------------------
# Expiry & status
# ---------------------------------------------------------------------------


async def check_expiry(db: AsyncSession, now: datetime | None = None) -> ExpiryReport:
    """Close open requests and pending PIN sessions past ``expires_at``.

    Expired work is never retried automatically.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    report = ExpiryReport()

    expired_requests = await db.execute(
        update(VerificationRequest)
        .where(
            VerificationRequest.status.in_(request_sources(RequestStatus.EXPIRED)),
            VerificationRequest.expires_at < now,
        )
        .values(status=RequestStatus.EXPIRED)
        .returning(VerificationRequest.id, VerificationRequest.user_id)
    )
    for request_id, user_id in expired_requests.all():
        report.requests_expired += 1
        log_action(db, user_id, "expired", now, request_id=request_id)

    expired_sessions = await db.execute(
        update(ExecutorVerification)
        .where(
            ExecutorVerification.status == ExecutorVerificationStatus.PENDING,
            ExecutorVerification.expires_at < now,
        )
        .values(status=ExecutorVerificationStatus.EXPIRED)
    )
    report.verifications_expired = expired_sessions.rowcount
    await db.commit()

    if report.requests_expired or report.verifications_expired:
        logger.info("verification_sessions_expired", **asdict(report))
    return report


async def get_status(db: AsyncSession, user_id: uuid.UUID) -> dict[str, Any]:
    """Read model for the status endpoint."""
    schedule = await get_schedule(db, user_id)
    state = await load_state(db, user_id)

    latest = (
        await db.execute(
            select(VerificationRequest)
            .where(VerificationRequest.user_id == user_id)
            .order_by(VerificationRequest.initiated_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    verification = None
    if latest is not None:
        verification = (
            await db.execute(
                select(ExecutorVerification).where(ExecutorVerification.verification_request_id == latest.id)
            )
        ).scalar_one_or_none()

    return {
        "user_id": user_id,
        "state": state,
        "next_check_in": schedule.next_check_in if schedule else None,
        "grace_deadline": grace_deadline(schedule) if schedule else None,
        "request": latest,
        "executor_verification": verification,
    }


async def reset_for_subscription(
    db: AsyncSession,
    user_id: uuid.UUID,
    now: datetime | None = None,
) -> bool:
    """Subscription upgrade: drop an escalation that has not reached contacts yet.

    Once contacts were notified, only a check-in or an "alive" response resets.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    if await load_state(db, user_id) != LifecycleState.VERIFICATION_TRIGGERED:
        return False
    schedule = await get_schedule(db, user_id)
    if schedule is None:
        return False

    _, canceled = await reset_to_active(db, schedule, now)
    await db.commit()
    logger.info("verification_reset_for_subscription", user_id=str(user_id), canceled_requests=len(canceled))
    return True
