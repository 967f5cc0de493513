"""Subscription upgrade hook, called by the billing integration."""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from willtank.dependencies import get_db, get_notifier
from willtank.notifications.notifier import Notifier
from willtank.retention.service import reset_user_content
from willtank.verification.service import reset_for_subscription

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/subscriptions", tags=["Subscriptions"])


class SubscriptionActivatedResponse(BaseModel):
    user_id: uuid.UUID
    content_items_reset: int
    verification_reset: bool


@router.post("/{user_id}/activated", response_model=SubscriptionActivatedResponse)
async def subscription_activated(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),  # noqa: B008
    notifier: Notifier = Depends(get_notifier),  # noqa: B008
) -> SubscriptionActivatedResponse:
    """Lift enforcement from both engines after an upgrade."""
    items = await reset_user_content(db, notifier, user_id)
    verification = await reset_for_subscription(db, user_id)
    logger.info("subscription_activated", user_id=str(user_id), items_reset=items, verification_reset=verification)
    return SubscriptionActivatedResponse(
        user_id=user_id,
        content_items_reset=items,
        verification_reset=verification,
    )
