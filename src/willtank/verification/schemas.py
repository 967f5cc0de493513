"""Pydantic schemas for the verification API."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class LivenessResponseRequest(BaseModel):
    token: str = Field(..., min_length=8, max_length=128)
    status: Literal["alive", "deceased"]


class LivenessOutcomeResponse(BaseModel):
    user_id: uuid.UUID
    response: str
    state: str
    verification_request_id: uuid.UUID | None = None


class InitiateVerificationRequest(BaseModel):
    user_id: uuid.UUID
    initiated_by: uuid.UUID | None = None


class ConfirmDeathRequest(BaseModel):
    confirmed_by: str | None = Field(None, max_length=200)


class VerificationRequestResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    status: str
    source: str
    initiated_by: uuid.UUID | None = None
    initiated_at: datetime
    expires_at: datetime
    unlocked_at: datetime | None = None
    downloaded: bool

    model_config = {"from_attributes": True}


class ExecutorVerificationResponse(BaseModel):
    id: uuid.UUID
    pins_required: int
    pins_received: int
    status: str
    expires_at: datetime

    model_config = {"from_attributes": True}


class VerificationStatusResponse(BaseModel):
    user_id: uuid.UUID
    state: str
    next_check_in: datetime | None = None
    grace_deadline: datetime | None = None
    request: VerificationRequestResponse | None = None
    executor_verification: ExecutorVerificationResponse | None = None
