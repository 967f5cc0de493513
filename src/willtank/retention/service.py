"""Time-boxed retention of unpaid content.

Content created by a user without an active subscription enters a grace
period. Each scan computes the warning tier from the hours left, sends each
tier at most once and in order, and hands the item to the deletion executor
once the grace period runs out. An active subscription resets the item.

Item status only moves forward:
active -> grace_period -> deletion_pending -> deleted
except for the subscription reset back to active.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from willtank.config import get_settings
from willtank.db.models import ContentItem, ContentKind, ContentStatus, MonitoringRecord
from willtank.errors import NotFoundError
from willtank.notifications.notifier import NotificationEvent, Notifier, dispatch
from willtank.notifications.templates import NotificationKind
from willtank.retention.tiers import RetentionTier, compute_tier, hours_remaining, tier_rank, tiers_below
from willtank.subscriptions.gate import SubscriptionGate

logger = structlog.get_logger()

ENFORCED_STATUSES = (ContentStatus.GRACE_PERIOD, ContentStatus.DELETION_PENDING)

KIND_LABELS = {ContentKind.WILL: "will", ContentKind.TANK_MESSAGE: "message"}


@dataclass(frozen=True)
class EvaluationResult:
    item_id: uuid.UUID
    action: str  # unchanged | reset | notified | deletion_pending
    tier: str | None = None
    hours_remaining: float | None = None
    notified: bool = False


@dataclass
class ContentScanReport:
    evaluated: int = 0
    notified: int = 0
    reset: int = 0
    deletion_pending: int = 0
    failures: int = 0


def _item_payload(kind: str, title: str, hours: float | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"item_kind": KIND_LABELS.get(kind, "item"), "item_title": title}
    if hours is not None:
        payload["hours"] = max(0, math.ceil(hours))
    return payload


async def register_content(
    db: AsyncSession,
    gate: SubscriptionGate,
    item: ContentItem,
    now: datetime | None = None,
) -> ContentItem:
    """Persist a new content item and start monitoring it if the owner is unpaid."""
    if now is None:
        now = datetime.now(timezone.utc)
    if item.created_at is None:
        item.created_at = now

    if await gate.is_active(item.user_id):
        item.status = ContentStatus.ACTIVE
        item.grace_period_end = None
        db.add(item)
    else:
        item.status = ContentStatus.GRACE_PERIOD
        item.grace_period_end = item.created_at + timedelta(hours=get_settings().content_grace_period_hours)
        db.add(item)
        await db.flush()
        db.add(
            MonitoringRecord(
                item_id=item.id,
                user_id=item.user_id,
                item_kind=item.kind,
                item_title=item.title,
                monitoring_status=ContentStatus.GRACE_PERIOD,
                notifications_sent=0,
                created_at=now,
            )
        )
    await db.commit()

    logger.info(
        "content_registered",
        item_id=str(item.id),
        user_id=str(item.user_id),
        status=item.status,
        grace_period_end=item.grace_period_end.isoformat() if item.grace_period_end else None,
    )
    return item


async def reset_item(db: AsyncSession, item_id: uuid.UUID, now: datetime) -> bool:
    """Return an enforced item to its non-enforced baseline. Does not commit."""
    result = await db.execute(
        update(ContentItem)
        .where(ContentItem.id == item_id, ContentItem.status.in_(ENFORCED_STATUSES))
        .values(status=ContentStatus.ACTIVE, grace_period_end=None, updated_at=now)
    )
    await db.execute(
        update(MonitoringRecord)
        .where(MonitoringRecord.item_id == item_id, MonitoringRecord.monitoring_status.in_(ENFORCED_STATUSES))
        .values(
            monitoring_status=ContentStatus.ACTIVE,
            scheduled_deletion=None,
            last_tier=None,
            updated_at=now,
        )
    )
    return result.rowcount > 0


async def _ensure_record(db: AsyncSession, item: ContentItem, now: datetime) -> None:
    existing = await db.execute(select(MonitoringRecord.id).where(MonitoringRecord.item_id == item.id))
    if existing.scalar_one_or_none() is None:
        db.add(
            MonitoringRecord(
                item_id=item.id,
                user_id=item.user_id,
                item_kind=item.kind,
                item_title=item.title,
                monitoring_status=item.status,
                notifications_sent=0,
                created_at=now,
            )
        )
        await db.flush()


async def evaluate(
    db: AsyncSession,
    gate: SubscriptionGate,
    notifier: Notifier,
    item_id: uuid.UUID,
    now: datetime | None = None,
) -> EvaluationResult:
    """Evaluate one item: reset, warn, or hand off to deletion."""
    if now is None:
        now = datetime.now(timezone.utc)

    item = (
        await db.execute(
            select(ContentItem).where(ContentItem.id == item_id).execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if item is None:
        raise NotFoundError(f"Content item {item_id} not found")
    if item.status not in ENFORCED_STATUSES:
        return EvaluationResult(item_id=item_id, action="unchanged")

    if await gate.is_active(item.user_id):
        await reset_item(db, item_id, now)
        await db.commit()
        logger.info("content_retention_reset", item_id=str(item_id), user_id=str(item.user_id))
        return EvaluationResult(item_id=item_id, action="reset")

    if item.status == ContentStatus.DELETION_PENDING:
        return EvaluationResult(item_id=item_id, action="unchanged", tier=RetentionTier.FINAL_WARNING)

    grace_end = item.grace_period_end or item.created_at + timedelta(hours=get_settings().content_grace_period_hours)
    hours = hours_remaining(grace_end, now)
    tier = compute_tier(hours)
    await _ensure_record(db, item, now)

    # Claim the tier: only succeeds if nothing at or above it was sent
    unsent = MonitoringRecord.last_tier.is_(None)
    lower = tiers_below(tier)
    if lower:
        unsent = or_(unsent, MonitoringRecord.last_tier.in_(lower))
    claimed = await db.execute(
        update(MonitoringRecord)
        .where(MonitoringRecord.item_id == item_id, unsent)
        .values(
            last_tier=tier,
            notifications_sent=MonitoringRecord.notifications_sent + 1,
            last_notification_sent=now,
            updated_at=now,
        )
    )
    notify = claimed.rowcount == 1

    action = "notified" if notify else "unchanged"
    if hours <= 0:
        moved = await db.execute(
            update(ContentItem)
            .where(ContentItem.id == item_id, ContentItem.status == ContentStatus.GRACE_PERIOD)
            .values(status=ContentStatus.DELETION_PENDING, updated_at=now)
        )
        if moved.rowcount == 1:
            await db.execute(
                update(MonitoringRecord)
                .where(MonitoringRecord.item_id == item_id)
                .values(
                    monitoring_status=ContentStatus.DELETION_PENDING,
                    scheduled_deletion=now + timedelta(minutes=get_settings().deletion_delay_minutes),
                    updated_at=now,
                )
            )
            action = "deletion_pending"
    await db.commit()

    if notify:
        logger.info("content_retention_notice", item_id=str(item_id), tier=tier.value, hours_remaining=round(hours, 2))
        await dispatch(
            notifier,
            NotificationEvent(
                tier=tier,
                user_id=item.user_id,
                item_id=item_id,
                priority="high" if tier_rank(tier) >= tier_rank(RetentionTier.URGENT) else "normal",
                payload=_item_payload(item.kind, item.title, hours),
            ),
        )
    if action == "deletion_pending":
        logger.info("content_deletion_scheduled", item_id=str(item_id), user_id=str(item.user_id))

    return EvaluationResult(item_id=item_id, action=action, tier=tier, hours_remaining=hours, notified=notify)


async def scan_content(
    db: AsyncSession,
    gate: SubscriptionGate,
    notifier: Notifier,
    now: datetime | None = None,
) -> ContentScanReport:
    """Evaluate every enforced item. One item's failure never stops the batch."""
    if now is None:
        now = datetime.now(timezone.utc)
    report = ContentScanReport()

    item_ids = (
        await db.execute(select(ContentItem.id).where(ContentItem.status.in_(ENFORCED_STATUSES)))
    ).scalars().all()
    for item_id in item_ids:
        try:
            result = await evaluate(db, gate, notifier, item_id, now)
        except Exception as exc:
            await db.rollback()
            report.failures += 1
            logger.exception("content_evaluation_failed", item_id=str(item_id), error=str(exc))
            continue
        report.evaluated += 1
        if result.action == "reset":
            report.reset += 1
        elif result.action == "notified":
            report.notified += 1
        elif result.action == "deletion_pending":
            report.deletion_pending += 1
            if result.notified:
                report.notified += 1

    logger.info("content_scan_complete", **asdict(report))
    return report


async def reset_user_content(
    db: AsyncSession,
    notifier: Notifier,
    user_id: uuid.UUID,
    now: datetime | None = None,
) -> int:
    """Subscription upgrade: lift enforcement from every item the user owns."""
    if now is None:
        now = datetime.now(timezone.utc)

    item_ids = (
        await db.execute(
            select(ContentItem.id).where(ContentItem.user_id == user_id, ContentItem.status.in_(ENFORCED_STATUSES))
        )
    ).scalars().all()
    count = 0
    for item_id in item_ids:
        if await reset_item(db, item_id, now):
            count += 1
    await db.commit()

    logger.info("content_reset_for_subscription", user_id=str(user_id), items=count)
    if count:
        await dispatch(
            notifier,
            NotificationEvent(
                tier=NotificationKind.SUBSCRIPTION_ACTIVATED,
                user_id=user_id,
                payload={"count": count},
            ),
        )
    return count


async def get_monitoring_status(
    db: AsyncSession,
    item_id: uuid.UUID,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Read model for one item. Works after deletion from the monitoring record."""
    if now is None:
        now = datetime.now(timezone.utc)

    record = (
        await db.execute(
            select(MonitoringRecord)
            .where(MonitoringRecord.item_id == item_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    item = await db.get(ContentItem, item_id, populate_existing=True)
    if record is None and item is None:
        raise NotFoundError(f"Content item {item_id} not found")

    hours = None
    tier = None
    if item is not None and item.status == ContentStatus.GRACE_PERIOD and item.grace_period_end is not None:
        hours = hours_remaining(item.grace_period_end, now)
        tier = compute_tier(hours)

    return {
        "item_id": item_id,
        "status": item.status if item is not None else ContentStatus.DELETED,
        "grace_period_end": item.grace_period_end if item is not None else None,
        "hours_remaining": round(hours, 2) if hours is not None else None,
        "current_tier": tier,
        "monitoring_status": record.monitoring_status if record else None,
        "scheduled_deletion": record.scheduled_deletion if record else None,
        "notifications_sent": record.notifications_sent if record else 0,
        "last_tier": record.last_tier if record else None,
    }
