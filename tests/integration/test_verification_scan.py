"""Integration tests for the dead-man's-switch scan: trigger, escalate, expire."""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from conftest import NOW, FakeGate, FakeNotifier
from willtank.db.models import (
    CheckInSchedule,
    ContactRole,
    ExecutorVerification,
    LivenessPrompt,
    RequestSource,
    RequestStatus,
    UnlockCode,
    VerificationLog,
    VerificationRequest,
)
from willtank.notifications.templates import NotificationKind
from willtank.unlock import service as unlock_service
from willtank.verification import service
from willtank.verification.state_machine import LifecycleState, load_state

OVERDUE = NOW - timedelta(days=40)
ESCALATION = NOW + timedelta(hours=25)


async def _requests(db, user_id):
    result = await db.execute(
        select(VerificationRequest)
        .where(VerificationRequest.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


@pytest_asyncio.fixture
async def overdue_user(make):
    """A user 40 days past their last check-in with two confirmed contacts."""
    user_id = uuid.uuid4()
    await make.schedule(user_id, last_check_in=OVERDUE)
    await make.contact(user_id, "Carol Contact")
    await make.contact(user_id, "Dan Executor", role=ContactRole.EXECUTOR)
    return user_id


class TestTrigger:
    """Missed check-in opens exactly one verification request."""

    async def test_overdue_user_is_triggered(self, db, gate, notifier, overdue_user):
        report = await service.scan(db, gate, notifier, now=NOW)

        assert report.triggered == 1
        requests = await _requests(db, overdue_user)
        assert len(requests) == 1
        assert requests[0].status == RequestStatus.PENDING
        assert requests[0].source == RequestSource.MISSED_CHECKIN
        assert requests[0].expires_at == NOW + timedelta(hours=720)
        assert await load_state(db, overdue_user) == LifecycleState.VERIFICATION_TRIGGERED

        assert notifier.kinds() == [NotificationKind.VERIFICATION_TRIGGERED]
        token = notifier.events[0].payload["token"]
        prompt = (await db.execute(select(LivenessPrompt).where(LivenessPrompt.token == token))).scalar_one()
        assert prompt.contact_id is None
        assert prompt.verification_request_id == requests[0].id

    async def test_repeated_scans_do_not_duplicate(self, db, gate, notifier, overdue_user):
        await service.scan(db, gate, notifier, now=NOW)
        second = await service.scan(db, gate, notifier, now=NOW + timedelta(minutes=5))
        third = await service.scan(db, gate, notifier, now=NOW + timedelta(minutes=10))

        assert second.triggered == 0
        assert third.triggered == 0
        assert len(await _requests(db, overdue_user)) == 1
        assert notifier.kinds() == [NotificationKind.VERIFICATION_TRIGGERED]

    async def test_on_time_user_untouched(self, db, gate, notifier, make):
        user_id = uuid.uuid4()
        await make.schedule(user_id, last_check_in=NOW - timedelta(days=10))

        report = await service.scan(db, gate, notifier, now=NOW)

        assert report.triggered == 0
        assert report.reminders_sent == 0
        assert await _requests(db, user_id) == []
        assert notifier.events == []

    async def test_grace_deadline_is_exclusive(self, db, gate, notifier, make):
        user_id = uuid.uuid4()
        await make.schedule(user_id, last_check_in=NOW - timedelta(days=37))

        report = await service.scan(db, gate, notifier, now=NOW)

        assert report.triggered == 0
        assert await _requests(db, user_id) == []

    async def test_subscribed_user_is_skipped(self, db, notifier, overdue_user):
        gate = FakeGate(active=[overdue_user])

        report = await service.scan(db, gate, notifier, now=NOW)

        assert report.skipped_subscribed == 1
        assert report.triggered == 0
        assert await _requests(db, overdue_user) == []

    async def test_disabled_schedule_is_ignored(self, db, gate, notifier, overdue_user):
        schedule = await db.get(CheckInSchedule, overdue_user)
        schedule.enabled = False
        await db.commit()

        report = await service.scan(db, gate, notifier, now=NOW)

        assert report.triggered == 0
        assert await _requests(db, overdue_user) == []

    async def test_failing_notifier_does_not_block_trigger(self, db, gate, overdue_user):
        notifier = FakeNotifier(fail=True)

        report = await service.scan(db, gate, notifier, now=NOW)

        assert report.triggered == 1
        assert report.failures == 0
        assert len(await _requests(db, overdue_user)) == 1

    async def test_billing_outage_for_one_user_does_not_stop_scan(self, db, notifier, make, overdue_user):
        other = uuid.uuid4()
        await make.schedule(other, last_check_in=OVERDUE)

        report = await service.scan(db, FakeGate(down=[overdue_user]), notifier, now=NOW)

        assert report.failures == 1
        assert report.triggered == 1
        assert await _requests(db, overdue_user) == []
        assert len(await _requests(db, other)) == 1


class TestReminder:
    async def test_reminder_sent_once_per_deadline(self, db, gate, notifier, make):
        user_id = uuid.uuid4()
        await make.schedule(user_id, last_check_in=NOW - timedelta(days=32))

        first = await service.scan(db, gate, notifier, now=NOW)
        second = await service.scan(db, gate, notifier, now=NOW + timedelta(hours=6))

        assert first.reminders_sent == 1
        assert second.reminders_sent == 0
        assert notifier.kinds() == [NotificationKind.CHECKIN_OVERDUE]
        assert await _requests(db, user_id) == []


class TestEscalation:
    """Pending requests move to contact notification after the delay."""

    async def test_not_escalated_before_delay(self, db, gate, notifier, overdue_user):
        await service.scan(db, gate, notifier, now=NOW)
        report = await service.scan(db, gate, notifier, now=NOW + timedelta(hours=23))

        assert report.escalated == 0
        assert (await _requests(db, overdue_user))[0].status == RequestStatus.PENDING

    async def test_escalation_issues_codes_and_prompts(self, db, gate, notifier, overdue_user):
        await service.scan(db, gate, notifier, now=NOW)
        report = await service.scan(db, gate, notifier, now=ESCALATION)

        assert report.escalated == 1
        request = (await _requests(db, overdue_user))[0]
        assert request.status == RequestStatus.INITIATED
        assert await load_state(db, overdue_user) == LifecycleState.TRUSTED_CONTACTS_NOTIFIED

        verification = (
            await db.execute(
                select(ExecutorVerification).where(ExecutorVerification.verification_request_id == request.id)
            )
        ).scalar_one()
        assert verification.pins_required == 2
        assert verification.pins_received == 0

        codes = (await db.execute(select(UnlockCode).where(UnlockCode.verification_request_id == request.id))).scalars().all()
        assert len(codes) == 2
        assert len({c.code for c in codes}) == 2
        assert len({c.assigned_contact_id for c in codes}) == 2

        assert len(notifier.of_kind(NotificationKind.CONTACT_VERIFICATION)) == 2
        assert len(notifier.of_kind(NotificationKind.UNLOCK_CODE)) == 2

    async def test_escalation_happens_once(self, db, gate, notifier, overdue_user):
        await service.scan(db, gate, notifier, now=NOW)
        await service.scan(db, gate, notifier, now=ESCALATION)
        again = await service.scan(db, gate, notifier, now=ESCALATION + timedelta(hours=1))

        assert again.escalated == 0
        count = await db.scalar(select(func.count()).select_from(UnlockCode).where(UnlockCode.user_id == overdue_user))
        assert count == 2

    async def test_billing_outage_during_escalation_is_isolated(self, db, gate, notifier, make, overdue_user):
        other = uuid.uuid4()
        await make.schedule(other, last_check_in=OVERDUE)
        await make.contact(other, "Fay Contact")
        await service.scan(db, gate, notifier, now=NOW)

        report = await service.scan(db, FakeGate(down=[overdue_user]), notifier, now=ESCALATION)

        assert report.escalated == 1
        assert report.failures == 2
        assert [r.status for r in await _requests(db, overdue_user)] == [RequestStatus.PENDING]
        assert [r.status for r in await _requests(db, other)] == [RequestStatus.INITIATED]

    async def test_code_generation_failure_is_retried_next_scan(
        self, db, gate, notifier, make, overdue_user, monkeypatch
    ):
        other = uuid.uuid4()
        await make.schedule(other, last_check_in=OVERDUE)
        await make.contact(other, "Fay Contact")
        await service.scan(db, gate, notifier, now=NOW)

        real = unlock_service.generate_unique_code
        calls = []

        async def exhausted_once(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("Failed to generate unique unlock code after 10 attempts")
            return await real(*args, **kwargs)

        monkeypatch.setattr(unlock_service, "generate_unique_code", exhausted_once)
        report = await service.scan(db, gate, notifier, now=ESCALATION)

        assert report.escalated == 1
        assert report.failures == 1

        retry = await service.scan(db, gate, notifier, now=ESCALATION + timedelta(minutes=5))

        assert retry.escalated == 1
        for user_id in (overdue_user, other):
            assert [r.status for r in await _requests(db, user_id)] == [RequestStatus.INITIATED]

    async def test_subscribed_user_not_escalated(self, db, notifier, overdue_user):
        gate = FakeGate()
        await service.scan(db, gate, notifier, now=NOW)
        gate.active.add(overdue_user)

        report = await service.scan(db, gate, notifier, now=ESCALATION)

        assert report.escalated == 0
        assert report.skipped_subscribed >= 1
        assert (await _requests(db, overdue_user))[0].status == RequestStatus.PENDING

    async def test_waits_for_confirmed_contacts(self, db, gate, notifier, make):
        user_id = uuid.uuid4()
        await make.schedule(user_id, last_check_in=OVERDUE)
        await make.contact(user_id, "Unconfirmed Ursula", confirmed=False)

        await service.scan(db, gate, notifier, now=NOW)
        report = await service.scan(db, gate, notifier, now=ESCALATION)

        assert report.escalated == 0
        assert (await _requests(db, user_id))[0].status == RequestStatus.PENDING

    async def test_escalate_request_is_noop_when_already_initiated(self, db, gate, notifier, overdue_user):
        await service.scan(db, gate, notifier, now=NOW)
        await service.scan(db, gate, notifier, now=ESCALATION)
        request = (await _requests(db, overdue_user))[0]

        assert await service.escalate_request(db, notifier, request.id, ESCALATION) is False


class TestExpiry:
    async def test_expired_request_is_not_retriggered(self, db, gate, notifier, overdue_user):
        await service.scan(db, gate, notifier, now=NOW)
        later = NOW + timedelta(hours=721)

        expiry = await service.check_expiry(db, now=later)
        report = await service.scan(db, gate, notifier, now=later)

        assert expiry.requests_expired == 1
        assert report.triggered == 0
        requests = await _requests(db, overdue_user)
        assert [r.status for r in requests] == [RequestStatus.EXPIRED]
        actions = (
            await db.execute(select(VerificationLog.action).where(VerificationLog.user_id == overdue_user))
        ).scalars().all()
        assert "expired" in actions

    async def test_manual_initiation_after_expiry(self, db, gate, notifier, overdue_user):
        await service.scan(db, gate, notifier, now=NOW)
        later = NOW + timedelta(hours=721)
        await service.check_expiry(db, now=later)

        request = await service.initiate_verification(db, notifier, overdue_user, now=later)

        assert request.status == RequestStatus.PENDING
        assert request.source == RequestSource.MANUAL
        statuses = sorted(r.status for r in await _requests(db, overdue_user))
        assert statuses == [RequestStatus.EXPIRED, RequestStatus.PENDING]

    async def test_initiate_returns_existing_open_request(self, db, gate, notifier, overdue_user):
        await service.scan(db, gate, notifier, now=NOW)
        existing = (await _requests(db, overdue_user))[0]

        request = await service.initiate_verification(db, notifier, overdue_user, now=NOW + timedelta(hours=1))

        assert request.id == existing.id

    async def test_expired_pin_session(self, db, gate, notifier, overdue_user):
        await service.scan(db, gate, notifier, now=NOW)
        await service.scan(db, gate, notifier, now=ESCALATION)

        report = await service.check_expiry(db, now=ESCALATION + timedelta(hours=73))

        assert report.verifications_expired == 1
        assert report.requests_expired == 0


class TestOpenRequestUniqueness:
    """At most one open request per user, enforced by the datastore."""

    async def test_second_open_request_rejected(self, db):
        user_id = uuid.uuid4()
        for _ in range(2):
            db.add(
                VerificationRequest(
                    user_id=user_id,
                    status=RequestStatus.PENDING,
                    source=RequestSource.MISSED_CHECKIN,
                    initiated_at=NOW,
                    expires_at=NOW + timedelta(days=30),
                    downloaded=False,
                )
            )
        with pytest.raises(IntegrityError):
            await db.commit()

    async def test_closed_requests_do_not_count(self, db):
        user_id = uuid.uuid4()
        for status in (RequestStatus.EXPIRED, RequestStatus.CANCELED, RequestStatus.PENDING):
            db.add(
                VerificationRequest(
                    user_id=user_id,
                    status=status,
                    source=RequestSource.MISSED_CHECKIN,
                    initiated_at=NOW,
                    expires_at=NOW + timedelta(days=30),
                    downloaded=False,
                )
            )
        await db.commit()

    async def test_concurrent_scanner_loses_race(self, session_factory, gate, notifier, overdue_user):
        """A second worker that read before the first committed rolls back as a no-op."""
        async with session_factory() as first, session_factory() as second:
            await service.scan(first, gate, notifier, now=NOW)

            lost = await service._open_request(second, overdue_user, RequestSource.MISSED_CHECKIN, NOW)
            assert lost is None

            # The losing session is still usable
            requests = await _requests(second, overdue_user)
            assert len(requests) == 1
