"""Verification API: liveness responses, manual escalation, status."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from willtank.dependencies import get_db, get_notifier
from willtank.notifications.notifier import Notifier
from willtank.verification import service
from willtank.verification.schemas import (
    ConfirmDeathRequest,
    InitiateVerificationRequest,
    LivenessOutcomeResponse,
    LivenessResponseRequest,
    VerificationRequestResponse,
    VerificationStatusResponse,
)

router = APIRouter(prefix="/api/v1/verification", tags=["Verification"])


@router.post("/respond", response_model=LivenessOutcomeResponse)
async def respond(
    body: LivenessResponseRequest,
    db: AsyncSession = Depends(get_db),  # noqa: B008
    notifier: Notifier = Depends(get_notifier),  # noqa: B008
) -> LivenessOutcomeResponse:
    """Resolve a liveness prompt sent to the user or one of their contacts."""
    outcome = await service.record_liveness_response(db, notifier, body.token, body.status)
    return LivenessOutcomeResponse(
        user_id=outcome.user_id,
        response=outcome.response,
        state=outcome.state,
        verification_request_id=outcome.verification_request_id,
    )


@router.post("/initiate", response_model=VerificationRequestResponse, status_code=201)
async def initiate(
    body: InitiateVerificationRequest,
    db: AsyncSession = Depends(get_db),  # noqa: B008
    notifier: Notifier = Depends(get_notifier),  # noqa: B008
) -> VerificationRequestResponse:
    request = await service.initiate_verification(db, notifier, body.user_id, initiated_by=body.initiated_by)
    return VerificationRequestResponse.model_validate(request)


@router.post("/{request_id}/confirm-death", response_model=VerificationRequestResponse)
async def confirm_death(
    request_id: uuid.UUID,
    body: ConfirmDeathRequest,
    db: AsyncSession = Depends(get_db),  # noqa: B008
    notifier: Notifier = Depends(get_notifier),  # noqa: B008
) -> VerificationRequestResponse:
    request = await service.confirm_death(db, notifier, request_id, confirmed_by=body.confirmed_by)
    return VerificationRequestResponse.model_validate(request)


@router.get("/status/{user_id}", response_model=VerificationStatusResponse)
async def status(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> VerificationStatusResponse:
    data = await service.get_status(db, user_id)
    return VerificationStatusResponse.model_validate(data, from_attributes=True)
