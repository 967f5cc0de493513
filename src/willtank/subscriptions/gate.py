"""Subscription gate: is this user paying (or trialing)?"""

from __future__ import annotations

import uuid
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from willtank.db.models import Subscription, SubscriptionStatus

ACTIVE_STATUSES = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}


class SubscriptionGate(Protocol):
    async def is_active(self, user_id: uuid.UUID) -> bool: ...


class DatabaseSubscriptionGate:
    """Reads the ``subscriptions`` table mirrored by the billing integration.

    Uses a short-lived session per lookup so the answer reflects the latest
    committed billing state, not a snapshot from the caller's transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def is_active(self, user_id: uuid.UUID) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Subscription.status).where(Subscription.user_id == user_id)
            )
            status = result.scalar_one_or_none()
        return status in ACTIVE_STATUSES
