"""Unlock API: PIN redemption and one-time package download."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from willtank.dependencies import get_db, get_notifier
from willtank.notifications.notifier import Notifier
from willtank.unlock.package import generate_package
from willtank.unlock.schemas import PackageRequest, RedeemRequest, RedeemResponse, WillPackageResponse
from willtank.unlock.service import redeem

router = APIRouter(prefix="/api/v1/unlock", tags=["Unlock"])


@router.post("/redeem", response_model=RedeemResponse)
async def redeem_code(
    body: RedeemRequest,
    db: AsyncSession = Depends(get_db),  # noqa: B008
    notifier: Notifier = Depends(get_notifier),  # noqa: B008
) -> RedeemResponse:
    """Submit one PIN. Any invalid, expired or closed code gets the same 400."""
    result = await redeem(db, notifier, body.code, body.executor.model_dump())
    return RedeemResponse(
        verification_request_id=result.verification_request_id,
        pins_received=result.pins_received,
        pins_required=result.pins_required,
        completed=result.completed,
    )


@router.post("/{request_id}/package", response_model=WillPackageResponse)
async def download_package(
    request_id: uuid.UUID,
    body: PackageRequest,
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> WillPackageResponse:
    """Release the will package. Only the first call succeeds."""
    package = await generate_package(db, request_id, body.executor.model_dump())
    return WillPackageResponse(**package)
