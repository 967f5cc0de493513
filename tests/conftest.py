"""Shared test fixtures.

Every test gets a fresh file-backed SQLite database so that separate
sessions really are separate connections, the way two scanner workers or
two API requests would be.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Iterable
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from willtank.config import get_settings
from willtank.db.base import Base
from willtank.db.models import (
    CheckInRecord,
    CheckInSchedule,
    CheckInStatus,
    ContactRole,
    ContentItem,
    ContentKind,
    ContentStatus,
    MonitoringRecord,
    TrustedContact,
    WillBeneficiary,
    WillDocument,
    WillExecutor,
)
from willtank.errors import TransientStoreError
from willtank.notifications.notifier import NotificationEvent

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeNotifier:
    """Records every event. ``fail=True`` makes every send raise."""

    def __init__(self, fail: bool = False) -> None:
        self.events: list[NotificationEvent] = []
        self.fail = fail

    async def send(self, event: NotificationEvent) -> bool:
        if self.fail:
            raise ConnectionError("mail relay unreachable")
        self.events.append(event)
        return True

    def kinds(self) -> list[str]:
        return [e.tier for e in self.events]

    def of_kind(self, kind: str) -> list[NotificationEvent]:
        return [e for e in self.events if e.tier == kind]


class FakeGate:
    """Subscription lookups; users in ``down`` make the billing lookup raise."""

    def __init__(self, active: Iterable[uuid.UUID] = (), down: Iterable[uuid.UUID] = ()) -> None:
        self.active = set(active)
        self.down = set(down)

    async def is_active(self, user_id: uuid.UUID) -> bool:
        if user_id in self.down:
            raise ConnectionError("billing API down")
        return user_id in self.active


class FakeStorage:
    """Records deleted paths; paths in ``failing`` raise a transient error."""

    def __init__(self) -> None:
        self.deleted: list[str] = []
        self.failing: set[str] = set()

    async def delete(self, paths: Iterable[str]) -> None:
        paths = list(paths)
        for path in paths:
            if path in self.failing:
                raise TransientStoreError(f"storage unavailable for {path}")
        self.deleted.extend(paths)


class Factory:
    """Row builders for the lifecycle tables. Each call commits."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def schedule(
        self,
        user_id: uuid.UUID | None = None,
        last_check_in: datetime = NOW,
        frequency_days: int = 30,
        grace_period_days: int = 7,
    ) -> CheckInSchedule:
        """A schedule whose last check-in happened at ``last_check_in``."""
        user_id = user_id or uuid.uuid4()
        schedule = CheckInSchedule(
            user_id=user_id,
            frequency_days=frequency_days,
            grace_period_days=grace_period_days,
            next_check_in=last_check_in + timedelta(days=frequency_days),
            enabled=True,
            updated_at=last_check_in,
        )
        self.db.add(schedule)
        self.db.add(
            CheckInRecord(
                user_id=user_id,
                checked_in_at=last_check_in,
                next_check_in=schedule.next_check_in,
                status=CheckInStatus.PENDING,
                created_at=last_check_in,
            )
        )
        await self.db.commit()
        return schedule

    async def contact(
        self,
        user_id: uuid.UUID,
        name: str,
        role: str = ContactRole.TRUSTED_CONTACT,
        confirmed: bool = True,
    ) -> TrustedContact:
        contact = TrustedContact(
            user_id=user_id,
            name=name,
            email=f"{name.lower().replace(' ', '.')}@example.com",
            role=role,
            confirmed=confirmed,
        )
        self.db.add(contact)
        await self.db.commit()
        return contact

    async def item(
        self,
        user_id: uuid.UUID,
        created_at: datetime,
        title: str = "Last Will",
        kind: str = ContentKind.WILL,
        status: str = ContentStatus.GRACE_PERIOD,
        grace_hours: int = 24,
        documents: Iterable[str] = (),
    ) -> ContentItem:
        """A content item already under monitoring, with optional stored documents."""
        item = ContentItem(
            user_id=user_id,
            kind=kind,
            title=title,
            body="I leave everything to the cat.",
            created_at=created_at,
            status=status,
            grace_period_end=created_at + timedelta(hours=grace_hours) if status != ContentStatus.ACTIVE else None,
        )
        self.db.add(item)
        await self.db.flush()
        for path in documents:
            self.db.add(WillDocument(item_id=item.id, file_name=path.rsplit("/", 1)[-1], file_path=path))
        if status != ContentStatus.ACTIVE:
            self.db.add(
                MonitoringRecord(
                    item_id=item.id,
                    user_id=user_id,
                    item_kind=kind,
                    item_title=title,
                    monitoring_status=status,
                    notifications_sent=0,
                    created_at=created_at,
                )
            )
        await self.db.commit()
        return item

    async def will_parties(self, item: ContentItem) -> None:
        self.db.add(WillExecutor(item_id=item.id, name="Ada Executor", email="ada@example.com", is_primary=True))
        self.db.add(
            WillBeneficiary(
                item_id=item.id,
                name="Bea Beneficiary",
                email="bea@example.com",
                relationship_to_testator="daughter",
            )
        )
        await self.db.commit()


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterable[None]:
    """Settings are cached; tests that patch env vars must not leak them."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'lifecycle.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def make(db: AsyncSession) -> Factory:
    return Factory(db)


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def gate() -> FakeGate:
    return FakeGate()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()
