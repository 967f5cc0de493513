"""Check-in API."""

from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from willtank.dependencies import get_db
from willtank.liveness.service import record_check_in

router = APIRouter(prefix="/api/v1", tags=["Check-ins"])


class CheckInResponse(BaseModel):
    user_id: uuid.UUID
    checked_in_at: datetime
    next_check_in: datetime
    status: str

    model_config = {"from_attributes": True}


@router.post("/checkins", response_model=CheckInResponse, status_code=201)
async def check_in(
    x_user_id: uuid.UUID = Header(...),
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> CheckInResponse:
    """Record a check-in for the already-authenticated user in ``X-User-Id``."""
    record = await record_check_in(db, x_user_id)
    return CheckInResponse.model_validate(record)
