"""Quorum unlock: PIN issuance and redemption.

A will package is released only after ``pins_required`` distinct single-use
PINs have been redeemed. Every state change is a conditional UPDATE keyed on
the expected prior state, so concurrent redemptions of one code have exactly
one winner and ``pins_received`` only moves forward.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from willtank.config import get_settings
from willtank.db.models import (
    ContactRole,
    ExecutorVerification,
    ExecutorVerificationStatus,
    RequestStatus,
    TrustedContact,
    UnlockCode,
    VerificationRequest,
)
from willtank.errors import CodeAlreadyUsedError, InvalidOrExpiredCodeError, NotFoundError
from willtank.notifications.notifier import NotificationEvent, Notifier, dispatch
from willtank.notifications.templates import NotificationKind
from willtank.unlock.codes import generate_unique_code, normalize_code
from willtank.verification.audit import log_action
from willtank.verification.state_machine import request_sources

logger = structlog.get_logger()


@dataclass
class IssuedCodes:
    verification: ExecutorVerification
    codes: list[tuple[TrustedContact, UnlockCode]] = field(default_factory=list)


@dataclass(frozen=True)
class RedemptionResult:
    verification_request_id: uuid.UUID
    executor_verification_id: uuid.UUID
    pins_received: int
    pins_required: int
    completed: bool


def required_pins(contact_count: int, quorum: int | None) -> int:
    """N of M: the configured quorum, capped at the number of confirmed contacts."""
    if quorum is None or quorum <= 0:
        return contact_count
    return min(quorum, contact_count)


async def confirmed_contacts(
    db: AsyncSession,
    user_id: uuid.UUID,
    role: str | None = None,
) -> list[TrustedContact]:
    query = select(TrustedContact).where(
        TrustedContact.user_id == user_id,
        TrustedContact.confirmed.is_(True),
    )
    if role is not None:
        query = query.where(TrustedContact.role == role)
    result = await db.execute(query.order_by(TrustedContact.name))
    return list(result.scalars().all())


async def stage_codes(
    db: AsyncSession,
    request: VerificationRequest,
    now: datetime,
) -> IssuedCodes | None:
    """Claim ``pending -> initiated`` and stage one PIN per confirmed contact.

    Does not commit. Returns None when the request was already claimed or the
    user has no confirmed contacts (the request then stays pending).
    """
    contacts = await confirmed_contacts(db, request.user_id)
    if not contacts:
        logger.warning("unlock_codes_no_contacts", user_id=str(request.user_id), request_id=str(request.id))
        return None

    result = await db.execute(
        update(VerificationRequest)
        .where(
            VerificationRequest.id == request.id,
            VerificationRequest.status.in_(request_sources(RequestStatus.INITIATED)),
        )
        .values(status=RequestStatus.INITIATED)
    )
    if result.rowcount == 0:
        logger.info("unlock_codes_already_issued", request_id=str(request.id))
        return None

    settings = get_settings()
    verification = ExecutorVerification(
        user_id=request.user_id,
        verification_request_id=request.id,
        pins_required=required_pins(len(contacts), settings.unlock_quorum),
        pins_received=0,
        status=ExecutorVerificationStatus.PENDING,
        created_at=now,
        expires_at=now + timedelta(hours=settings.executor_verification_ttl_hours),
    )
    db.add(verification)
    await db.flush()

    issued = IssuedCodes(verification=verification)
    reserved: set[str] = set()
    for contact in contacts:
        code = await generate_unique_code(db, settings.unlock_code_length, reserved)
        reserved.add(code)
        unlock_code = UnlockCode(
            code=code,
            user_id=request.user_id,
            verification_request_id=request.id,
            executor_verification_id=verification.id,
            assigned_contact_id=contact.id,
            used=False,
            created_at=now,
            expires_at=now + timedelta(days=settings.unlock_code_ttl_days),
        )
        db.add(unlock_code)
        issued.codes.append((contact, unlock_code))

    log_action(
        db,
        request.user_id,
        "codes_issued",
        now,
        request_id=request.id,
        codes=len(issued.codes),
        pins_required=verification.pins_required,
    )
    return issued


async def notify_codes(notifier: Notifier, issued: IssuedCodes) -> None:
    """Deliver each PIN to its assigned contact. Best effort."""
    for contact, unlock_code in issued.codes:
        await dispatch(
            notifier,
            NotificationEvent(
                tier=NotificationKind.UNLOCK_CODE,
                user_id=unlock_code.user_id,
                contact_id=contact.id,
                priority="high",
                payload={
                    "code": unlock_code.code,
                    "contact_name": contact.name,
                    "pins_required": issued.verification.pins_required,
                    "expires_at": unlock_code.expires_at,
                },
            ),
        )


async def issue_codes(
    db: AsyncSession,
    notifier: Notifier,
    request_id: uuid.UUID,
    now: datetime | None = None,
) -> ExecutorVerification | None:
    """Issue PINs for a pending request exactly once."""
    if now is None:
        now = datetime.now(timezone.utc)

    request = await db.get(VerificationRequest, request_id, populate_existing=True)
    if request is None:
        raise NotFoundError(f"Verification request {request_id} not found")

    issued = await stage_codes(db, request, now)
    if issued is None:
        await db.rollback()
        return None
    await db.commit()

    logger.info(
        "unlock_codes_issued",
        user_id=str(request.user_id),
        request_id=str(request_id),
        codes=len(issued.codes),
        pins_required=issued.verification.pins_required,
    )
    await notify_codes(notifier, issued)
    return issued.verification


async def redeem(
    db: AsyncSession,
    notifier: Notifier,
    code: str,
    executor_details: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> RedemptionResult:
    """Redeem one PIN toward its verification's quorum.

    Unknown, expired and closed-session codes all raise the same
    InvalidOrExpiredCodeError. A code that was already used, including one
    lost to a concurrent redemption, raises CodeAlreadyUsedError.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    executor_details = executor_details or {}

    result = await db.execute(select(UnlockCode).where(UnlockCode.code == normalize_code(code)))
    unlock_code = result.scalar_one_or_none()
    if unlock_code is None or unlock_code.expires_at <= now:
        raise InvalidOrExpiredCodeError()
    if unlock_code.used:
        raise CodeAlreadyUsedError()

    verification = await db.get(ExecutorVerification, unlock_code.executor_verification_id, populate_existing=True)
    request = await db.get(VerificationRequest, unlock_code.verification_request_id, populate_existing=True)
    if (
        verification is None
        or request is None
        or verification.status != ExecutorVerificationStatus.PENDING
        or verification.expires_at <= now
        or request.status != RequestStatus.INITIATED
    ):
        raise InvalidOrExpiredCodeError()

    claimed = await db.execute(
        update(UnlockCode)
        .where(UnlockCode.id == unlock_code.id, UnlockCode.used.is_(False))
        .values(used=True, used_at=now, redeemed_by=executor_details.get("name"))
    )
    if claimed.rowcount == 0:
        await db.rollback()
        logger.info("unlock_code_race_lost", code_id=str(unlock_code.id))
        raise CodeAlreadyUsedError()

    counted = await db.execute(
        update(ExecutorVerification)
        .where(
            ExecutorVerification.id == verification.id,
            ExecutorVerification.status == ExecutorVerificationStatus.PENDING,
        )
        .values(pins_received=ExecutorVerification.pins_received + 1)
        .returning(ExecutorVerification.pins_received, ExecutorVerification.pins_required)
        .execution_options(synchronize_session=False)
    )
    row = counted.one_or_none()
    if row is None:
        # Session closed between the read and the claim
        await db.rollback()
        raise InvalidOrExpiredCodeError()
    pins_received, pins_required = row

    completed = False
    if pins_received >= pins_required:
        closed = await db.execute(
            update(ExecutorVerification)
            .where(
                ExecutorVerification.id == verification.id,
                ExecutorVerification.status == ExecutorVerificationStatus.PENDING,
                ExecutorVerification.pins_received >= ExecutorVerification.pins_required,
            )
            .values(status=ExecutorVerificationStatus.COMPLETED, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        if closed.rowcount == 1:
            unlocked = await db.execute(
                update(VerificationRequest)
                .where(
                    VerificationRequest.id == request.id,
                    VerificationRequest.status.in_(request_sources(RequestStatus.VERIFIED)),
                )
                .values(status=RequestStatus.VERIFIED, unlocked_at=now)
                .execution_options(synchronize_session=False)
            )
            if unlocked.rowcount == 0:
                # Request closed between the read and the claim
                await db.rollback()
                raise InvalidOrExpiredCodeError()
            completed = True

    log_action(
        db,
        unlock_code.user_id,
        "code_redeemed",
        now,
        request_id=request.id,
        code_id=unlock_code.id,
        redeemed_by=executor_details.get("name"),
        pins_received=pins_received,
    )
    if completed:
        log_action(db, unlock_code.user_id, "quorum_reached", now, request_id=request.id)
    await db.commit()

    logger.info(
        "unlock_code_redeemed",
        request_id=str(request.id),
        pins_received=pins_received,
        pins_required=pins_required,
        completed=completed,
    )

    if completed:
        for executor in await confirmed_contacts(db, unlock_code.user_id, ContactRole.EXECUTOR):
            await dispatch(
                notifier,
                NotificationEvent(
                    tier=NotificationKind.QUORUM_REACHED,
                    user_id=unlock_code.user_id,
                    contact_id=executor.id,
                    priority="high",
                    payload={"request_id": request.id},
                ),
            )

    return RedemptionResult(
        verification_request_id=request.id,
        executor_verification_id=verification.id,
        pins_received=pins_received,
        pins_required=pins_required,
        completed=completed,
    )
