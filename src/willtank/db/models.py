"""ORM models for the lifecycle engine.

User accounts, profiles and billing live in the surrounding application;
``user_id`` columns are opaque UUIDs referencing them.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from willtank.db.base import Base
from willtank.db.types import UTCDateTime

JSONType = JSON().with_variant(JSONB(), "postgresql")


class CheckInStatus(StrEnum):
    PENDING = "pending"
    VERIFICATION_TRIGGERED = "verification_triggered"
    TRUSTED_CONTACTS_NOTIFIED = "trusted_contacts_notified"


class RequestStatus(StrEnum):
    PENDING = "pending"
    INITIATED = "initiated"
    COMPLETED = "completed"
    VERIFIED = "verified"
    EXPIRED = "expired"
    CANCELED = "canceled"


OPEN_REQUEST_STATUSES = (RequestStatus.PENDING, RequestStatus.INITIATED)
UNLOCKED_REQUEST_STATUSES = (RequestStatus.COMPLETED, RequestStatus.VERIFIED)


class RequestSource(StrEnum):
    MISSED_CHECKIN = "missed_checkin"
    CONTACT_REPORT = "contact_report"
    MANUAL = "manual"


class ContactRole(StrEnum):
    TRUSTED_CONTACT = "trusted_contact"
    EXECUTOR = "executor"
    BENEFICIARY = "beneficiary"


class ExecutorVerificationStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class LivenessResponse(StrEnum):
    ALIVE = "alive"
    DECEASED = "deceased"


class ContentKind(StrEnum):
    WILL = "will"
    TANK_MESSAGE = "tank_message"


class ContentStatus(StrEnum):
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    DELETION_PENDING = "deletion_pending"
    DELETED = "deleted"


class SubscriptionStatus(StrEnum):
    ACTIVE = "active"
    TRIALING = "trialing"
    NONE = "none"


# ---------------------------------------------------------------------------
# Liveness
# ---------------------------------------------------------------------------


class CheckInSchedule(Base):
    """Per-user check-in cadence. ``next_check_in`` advances on every check-in."""

    __tablename__ = "checkin_schedules"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    frequency_days: Mapped[int] = mapped_column(Integer, nullable=False)
    grace_period_days: Mapped[int] = mapped_column(Integer, nullable=False)
    next_check_in: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    reminder_sent_for: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class CheckInRecord(Base):
    """Append-only check-in history. The latest row drives the state machine."""

    __tablename__ = "checkin_records"
    __table_args__ = (Index("ix_checkin_records_user_created", "user_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    checked_in_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    next_check_in: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=CheckInStatus.PENDING)
    verification_request_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class TrustedContact(Base):
    __tablename__ = "trusted_contacts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=ContactRole.TRUSTED_CONTACT)
    confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class LivenessPrompt(Base):
    """A pending "are they still alive?" notification, resolved by its token."""

    __tablename__ = "liveness_prompts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    contact_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    verification_request_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    responded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    response: Mapped[str | None] = mapped_column(String(16), nullable=True)


# ---------------------------------------------------------------------------
# Verification & quorum unlock
# ---------------------------------------------------------------------------


class VerificationRequest(Base):
    """One dead-man's-switch escalation. At most one open request per user."""

    __tablename__ = "verification_requests"
    __table_args__ = (
        Index(
            "uq_verification_requests_open_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'initiated')"),
            sqlite_where=text("status IN ('pending', 'initiated')"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=RequestStatus.PENDING)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default=RequestSource.MISSED_CHECKIN)
    initiated_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    initiated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    unlocked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    downloaded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    downloaded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class ExecutorVerification(Base):
    """PIN quorum session. ``pins_received`` only grows; ``completed`` never reverts."""

    __tablename__ = "executor_verifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    verification_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("verification_requests.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    pins_required: Mapped[int] = mapped_column(Integer, nullable=False)
    pins_received: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ExecutorVerificationStatus.PENDING)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class UnlockCode(Base):
    """Single-use PIN issued to one confirmed contact."""

    __tablename__ = "unlock_codes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    verification_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("verification_requests.id", ondelete="CASCADE"), nullable=False,
    )
    executor_verification_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("executor_verifications.id", ondelete="CASCADE"), nullable=False,
    )
    assigned_contact_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    redeemed_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class VerificationLog(Base):
    """Append-only audit trail for verification actions."""

    __tablename__ = "verification_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


# ---------------------------------------------------------------------------
# Content retention
# ---------------------------------------------------------------------------


class ContentItem(Base):
    """A will or tank message subject to retention enforcement."""

    __tablename__ = "content_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default=ContentKind.WILL)
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="Untitled Will")
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ContentStatus.ACTIVE)
    grace_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    documents: Mapped[list[WillDocument]] = relationship("WillDocument", lazy="raise")
    executors: Mapped[list[WillExecutor]] = relationship("WillExecutor", lazy="raise")
    beneficiaries: Mapped[list[WillBeneficiary]] = relationship("WillBeneficiary", lazy="raise")


class WillDocument(Base):
    __tablename__ = "will_documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    item_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("content_items.id"), nullable=False, index=True)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)


class WillExecutor(Base):
    __tablename__ = "will_executors"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    item_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("content_items.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class WillBeneficiary(Base):
    __tablename__ = "will_beneficiaries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    item_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("content_items.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    relationship_to_testator: Mapped[str | None] = mapped_column(String(100), nullable=True)


class MonitoringRecord(Base):
    """Retention bookkeeping. Survives deletion of its content item."""

    __tablename__ = "monitoring_records"
    __table_args__ = (Index("ix_monitoring_records_status_deletion", "monitoring_status", "scheduled_deletion"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    item_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    item_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    item_title: Mapped[str] = mapped_column(String(200), nullable=False)
    monitoring_status: Mapped[str] = mapped_column(String(20), nullable=False, default=ContentStatus.GRACE_PERIOD)
    scheduled_deletion: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    notifications_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_tier: Mapped[str | None] = mapped_column(String(16), nullable=True)
    last_notification_sent: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


# ---------------------------------------------------------------------------
# Collaborator-owned tables
# ---------------------------------------------------------------------------


class Subscription(Base):
    """Billing state mirrored by the payment integration. Read-only here."""

    __tablename__ = "subscriptions"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SubscriptionStatus.NONE)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class Notification(Base):
    """In-app notification written by the in-app notifier."""

    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    contact_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    item_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
