"""Pydantic schemas for the unlock API."""

from __future__ import annotations

import uuid
from typing import Any

from pydantic import BaseModel, Field


class ExecutorDetails(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str | None = Field(None, max_length=320)
    phone: str | None = Field(None, max_length=40)
    relationship: str | None = Field(None, max_length=100)


class RedeemRequest(BaseModel):
    code: str = Field(..., min_length=4, max_length=32)
    executor: ExecutorDetails


class RedeemResponse(BaseModel):
    verification_request_id: uuid.UUID
    pins_received: int
    pins_required: int
    completed: bool


class PackageRequest(BaseModel):
    executor: ExecutorDetails


class WillPackageResponse(BaseModel):
    wills: list[dict[str, Any]]
    contacts: dict[str, list[dict[str, Any]]]
    executor: dict[str, Any]
    summary: str
    metadata: dict[str, Any]
