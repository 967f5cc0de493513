"""Integration tests for PIN quorum unlock and one-time package release."""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select

from conftest import NOW
from willtank.config import get_settings
from willtank.db.models import (
    ContactRole,
    ContentKind,
    ContentStatus,
    ExecutorVerification,
    ExecutorVerificationStatus,
    RequestStatus,
    UnlockCode,
    VerificationRequest,
)
from willtank.errors import (
    AlreadyDownloadedError,
    CodeAlreadyUsedError,
    InvalidOrExpiredCodeError,
    InvalidStateError,
    NotFoundError,
)
from willtank.liveness.service import record_check_in
from willtank.notifications.templates import NotificationKind
from willtank.unlock import service as unlock
from willtank.unlock.package import generate_package
from willtank.verification import service as verification
from willtank.verification.state_machine import LifecycleState, load_state

ESCALATION = NOW + timedelta(hours=25)
REDEEM_AT = ESCALATION + timedelta(hours=1)
EXECUTOR = {"name": "Dan Executor", "email": "dan@example.com", "relationship": "brother"}


async def _fresh(db, model, pk):
    return await db.get(model, pk, populate_existing=True)


@pytest_asyncio.fixture
async def unlock_ready(db, make, gate, notifier):
    """Escalated user with three contacts holding one PIN each.

    Returns (user_id, request_id, [codes in contact name order]).
    """
    user_id = uuid.uuid4()
    await make.schedule(user_id, last_check_in=NOW - timedelta(days=40))
    await make.contact(user_id, "Carol Contact")
    await make.contact(user_id, "Dan Executor", role=ContactRole.EXECUTOR)
    await make.contact(user_id, "Eve Contact")
    will = await make.item(user_id, created_at=NOW - timedelta(days=60), status=ContentStatus.ACTIVE)
    await make.will_parties(will)
    await make.item(
        user_id,
        created_at=NOW - timedelta(days=50),
        title="Note to family",
        kind=ContentKind.TANK_MESSAGE,
        status=ContentStatus.ACTIVE,
    )

    await verification.scan(db, gate, notifier, now=NOW)
    await verification.scan(db, gate, notifier, now=ESCALATION)

    request = (await db.execute(select(VerificationRequest).where(VerificationRequest.user_id == user_id))).scalar_one()
    codes = [e.payload["code"] for e in notifier.of_kind(NotificationKind.UNLOCK_CODE)]
    notifier.events.clear()
    return user_id, request.id, codes


class TestQuorum:
    """Three of three PINs unlock the package."""

    async def test_quorum_reached_on_last_pin(self, db, notifier, unlock_ready):
        user_id, request_id, codes = unlock_ready
        assert len(codes) == 3

        first = await unlock.redeem(db, notifier, codes[0], EXECUTOR, now=REDEEM_AT)
        second = await unlock.redeem(db, notifier, codes[1], EXECUTOR, now=REDEEM_AT)
        third = await unlock.redeem(db, notifier, codes[2], EXECUTOR, now=REDEEM_AT)

        assert (first.pins_received, first.completed) == (1, False)
        assert (second.pins_received, second.completed) == (2, False)
        assert (third.pins_received, third.completed) == (3, True)
        assert third.pins_required == 3

        session = await _fresh(db, ExecutorVerification, third.executor_verification_id)
        assert session.status == ExecutorVerificationStatus.COMPLETED
        assert session.completed_at == REDEEM_AT
        request = await _fresh(db, VerificationRequest, request_id)
        assert request.status == RequestStatus.VERIFIED
        assert request.unlocked_at == REDEEM_AT
        assert await load_state(db, user_id) == LifecycleState.VERIFIED

        reached = notifier.of_kind(NotificationKind.QUORUM_REACHED)
        assert len(reached) == 1
        assert reached[0].priority == "high"

    async def test_request_closed_before_last_pin_does_not_unlock(self, db, notifier, unlock_ready, monkeypatch):
        """The last PIN is read against an ``initiated`` request that closes before the claim."""
        _, request_id, codes = unlock_ready
        await unlock.redeem(db, notifier, codes[0], EXECUTOR, now=REDEEM_AT)
        await unlock.redeem(db, notifier, codes[1], EXECUTOR, now=REDEEM_AT)
        # The guarded ``initiated -> verified`` update now matches no row
        monkeypatch.setattr(unlock, "request_sources", lambda target: [])

        with pytest.raises(InvalidOrExpiredCodeError):
            await unlock.redeem(db, notifier, codes[2], EXECUTOR, now=REDEEM_AT)

        assert notifier.of_kind(NotificationKind.QUORUM_REACHED) == []
        request = await _fresh(db, VerificationRequest, request_id)
        assert request.status == RequestStatus.INITIATED
        last = (
            await db.execute(
                select(UnlockCode).where(UnlockCode.code == codes[2]).execution_options(populate_existing=True)
            )
        ).scalar_one()
        assert last.used is False

    async def test_used_code_rejected_after_quorum(self, db, notifier, unlock_ready):
        _, _, codes = unlock_ready
        for code in codes:
            await unlock.redeem(db, notifier, code, EXECUTOR, now=REDEEM_AT)

        with pytest.raises(CodeAlreadyUsedError):
            await unlock.redeem(db, notifier, codes[0], EXECUTOR, now=REDEEM_AT)

    async def test_used_code_rejected_before_quorum(self, db, notifier, unlock_ready):
        _, _, codes = unlock_ready
        await unlock.redeem(db, notifier, codes[0], EXECUTOR, now=REDEEM_AT)

        with pytest.raises(CodeAlreadyUsedError):
            await unlock.redeem(db, notifier, codes[0], EXECUTOR, now=REDEEM_AT)
        session = (await db.execute(select(ExecutorVerification).execution_options(populate_existing=True))).scalar_one()
        assert session.pins_received == 1

    async def test_code_accepts_separators(self, db, notifier, unlock_ready):
        _, _, codes = unlock_ready
        spaced = f"{codes[0][:4]}-{codes[0][4:]}"

        result = await unlock.redeem(db, notifier, spaced, EXECUTOR, now=REDEEM_AT)

        assert result.pins_received == 1

    async def test_redeemer_recorded(self, db, notifier, unlock_ready):
        _, _, codes = unlock_ready
        await unlock.redeem(db, notifier, codes[0], EXECUTOR, now=REDEEM_AT)

        code = (
            await db.execute(select(UnlockCode).where(UnlockCode.code == codes[0]).execution_options(populate_existing=True))
        ).scalar_one()
        assert code.used is True
        assert code.used_at == REDEEM_AT
        assert code.redeemed_by == "Dan Executor"

    async def test_partial_quorum(self, db, make, gate, notifier, monkeypatch):
        """With a configured quorum of two, the second PIN unlocks."""
        monkeypatch.setenv("WILLTANK_UNLOCK_QUORUM", "2")
        get_settings.cache_clear()
        user_id = uuid.uuid4()
        await make.schedule(user_id, last_check_in=NOW - timedelta(days=40))
        for name in ("Ann", "Bob", "Cid"):
            await make.contact(user_id, name)
        await verification.scan(db, gate, notifier, now=NOW)
        await verification.scan(db, gate, notifier, now=ESCALATION)
        codes = [e.payload["code"] for e in notifier.of_kind(NotificationKind.UNLOCK_CODE)]

        await unlock.redeem(db, notifier, codes[0], now=REDEEM_AT)
        result = await unlock.redeem(db, notifier, codes[2], now=REDEEM_AT)

        assert result.pins_required == 2
        assert result.completed is True
        with pytest.raises(InvalidOrExpiredCodeError):
            await unlock.redeem(db, notifier, codes[1], now=REDEEM_AT)


class TestInvalidCodes:
    """Every invalid case gets the same error."""

    async def test_unknown_code(self, db, notifier, unlock_ready):
        with pytest.raises(InvalidOrExpiredCodeError) as exc_info:
            await unlock.redeem(db, notifier, "00000000", EXECUTOR, now=REDEEM_AT)
        assert exc_info.value.message == "Invalid or expired code"

    async def test_expired_code(self, db, notifier, unlock_ready):
        _, _, codes = unlock_ready
        with pytest.raises(InvalidOrExpiredCodeError):
            await unlock.redeem(db, notifier, codes[0], EXECUTOR, now=ESCALATION + timedelta(days=31))

    async def test_expired_session(self, db, notifier, unlock_ready):
        _, _, codes = unlock_ready
        with pytest.raises(InvalidOrExpiredCodeError):
            await unlock.redeem(db, notifier, codes[0], EXECUTOR, now=ESCALATION + timedelta(hours=73))

    async def test_canceled_request(self, db, notifier, unlock_ready):
        user_id, _, codes = unlock_ready
        await record_check_in(db, user_id, now=REDEEM_AT)

        with pytest.raises(InvalidOrExpiredCodeError):
            await unlock.redeem(db, notifier, codes[0], EXECUTOR, now=REDEEM_AT + timedelta(minutes=1))


class TestConcurrentRedemption:
    async def test_same_code_has_one_winner(self, session_factory, notifier, unlock_ready):
        """A redeemer holding a stale read loses the conditional update."""
        _, _, codes = unlock_ready
        async with session_factory() as winner, session_factory() as loser:
            stale = (await loser.execute(select(UnlockCode).where(UnlockCode.code == codes[0]))).scalar_one()
            assert stale.used is False
            await loser.commit()

            await unlock.redeem(winner, notifier, codes[0], EXECUTOR, now=REDEEM_AT)

            with pytest.raises(CodeAlreadyUsedError):
                await unlock.redeem(loser, notifier, codes[0], EXECUTOR, now=REDEEM_AT)

            session = (
                await loser.execute(select(ExecutorVerification).execution_options(populate_existing=True))
            ).scalar_one()
            assert session.pins_received == 1


class TestIssueCodes:
    async def test_issue_codes_once(self, db, make, notifier):
        user_id = uuid.uuid4()
        await make.contact(user_id, "Carol Contact")
        request = await verification.initiate_verification(db, notifier, user_id, now=NOW)

        issued = await unlock.issue_codes(db, notifier, request.id, now=NOW)
        assert issued is not None
        assert issued.pins_required == 1

        again = await unlock.issue_codes(db, notifier, request.id, now=NOW)
        assert again is None

    async def test_issue_codes_unknown_request(self, db, notifier):
        with pytest.raises(NotFoundError):
            await unlock.issue_codes(db, notifier, uuid.uuid4(), now=NOW)


class TestConfirmDeath:
    async def test_confirm_death_unlocks(self, db, notifier, unlock_ready):
        user_id, request_id, _ = unlock_ready

        request = await verification.confirm_death(db, notifier, request_id, confirmed_by="registrar", now=REDEEM_AT)

        assert request.status == RequestStatus.COMPLETED
        assert request.unlocked_at == REDEEM_AT
        assert await load_state(db, user_id) == LifecycleState.VERIFIED
        confirmed = notifier.of_kind(NotificationKind.DEATH_CONFIRMED)
        assert len(confirmed) == 1

    async def test_confirm_death_is_idempotent(self, db, notifier, unlock_ready):
        _, request_id, _ = unlock_ready
        await verification.confirm_death(db, notifier, request_id, now=REDEEM_AT)
        notifier.events.clear()

        request = await verification.confirm_death(db, notifier, request_id, now=REDEEM_AT + timedelta(hours=1))

        assert request.status == RequestStatus.COMPLETED
        assert notifier.events == []

    async def test_confirm_pending_request_rejected(self, db, notifier):
        user_id = uuid.uuid4()
        request = await verification.initiate_verification(db, notifier, user_id, now=NOW)

        with pytest.raises(InvalidStateError):
            await verification.confirm_death(db, notifier, request.id, now=NOW)

    async def test_confirm_unknown_request(self, db, notifier):
        with pytest.raises(NotFoundError):
            await verification.confirm_death(db, notifier, uuid.uuid4(), now=NOW)


class TestVerifiedIsTerminal:
    async def test_check_in_rejected_after_unlock(self, db, notifier, unlock_ready):
        user_id, request_id, _ = unlock_ready
        await verification.confirm_death(db, notifier, request_id, now=REDEEM_AT)

        with pytest.raises(InvalidStateError):
            await record_check_in(db, user_id, now=REDEEM_AT + timedelta(hours=1))

    async def test_manual_initiation_rejected_after_unlock(self, db, notifier, unlock_ready):
        user_id, request_id, _ = unlock_ready
        await verification.confirm_death(db, notifier, request_id, now=REDEEM_AT)

        with pytest.raises(InvalidStateError):
            await verification.initiate_verification(db, notifier, user_id, now=REDEEM_AT)


class TestPackage:
    """Will package release after unlock."""

    async def test_package_contents(self, db, notifier, unlock_ready):
        user_id, request_id, codes = unlock_ready
        for code in codes:
            await unlock.redeem(db, notifier, code, EXECUTOR, now=REDEEM_AT)

        package = await generate_package(db, request_id, EXECUTOR, now=REDEEM_AT + timedelta(hours=1))

        assert len(package["wills"]) == 1
        will = package["wills"][0]
        assert will["title"] == "Last Will"
        assert will["executors"] == [{"name": "Ada Executor", "email": "ada@example.com", "is_primary": True}]
        assert will["beneficiaries"][0]["relationship"] == "daughter"
        assert set(package["contacts"]) == {ContactRole.TRUSTED_CONTACT, ContactRole.EXECUTOR}
        assert package["executor"]["name"] == "Dan Executor"
        assert package["metadata"]["verification_status"] == RequestStatus.VERIFIED
        assert package["metadata"]["user_id"] == str(user_id)
        assert "Wills included: 1" in package["summary"]

    async def test_second_download_rejected(self, db, notifier, unlock_ready):
        _, request_id, codes = unlock_ready
        for code in codes:
            await unlock.redeem(db, notifier, code, EXECUTOR, now=REDEEM_AT)

        await generate_package(db, request_id, EXECUTOR, now=REDEEM_AT)
        with pytest.raises(AlreadyDownloadedError):
            await generate_package(db, request_id, EXECUTOR, now=REDEEM_AT)

        request = await _fresh(db, VerificationRequest, request_id)
        assert request.downloaded is True
        assert request.downloaded_at == REDEEM_AT

    async def test_locked_package_not_found(self, db, unlock_ready):
        _, request_id, _ = unlock_ready
        with pytest.raises(NotFoundError):
            await generate_package(db, request_id, EXECUTOR, now=REDEEM_AT)

    async def test_package_after_confirmed_death(self, db, notifier, unlock_ready):
        _, request_id, _ = unlock_ready
        await verification.confirm_death(db, notifier, request_id, now=REDEEM_AT)

        package = await generate_package(db, request_id, EXECUTOR, now=REDEEM_AT)

        assert package["metadata"]["verification_status"] == RequestStatus.COMPLETED
