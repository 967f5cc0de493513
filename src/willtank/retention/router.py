"""Content retention API."""

from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from willtank.dependencies import get_db
from willtank.retention.service import get_monitoring_status

router = APIRouter(prefix="/api/v1/content", tags=["Content retention"])


class MonitoringStatusResponse(BaseModel):
    item_id: uuid.UUID
    status: str
    grace_period_end: datetime | None = None
    hours_remaining: float | None = None
    current_tier: str | None = None
    monitoring_status: str | None = None
    scheduled_deletion: datetime | None = None
    notifications_sent: int = 0
    last_tier: str | None = None


@router.get("/{item_id}/monitoring", response_model=MonitoringStatusResponse)
async def monitoring_status(
    item_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> MonitoringStatusResponse:
    """Grace-period countdown and warning history for one item."""
    return MonitoringStatusResponse(**await get_monitoring_status(db, item_id))
