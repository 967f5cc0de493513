"""Irreversible deletion of content whose grace period ran out.

For each monitoring record in ``deletion_pending`` whose ``scheduled_deletion``
has passed:
1. Re-check the subscription gate (an upgrade at the last minute resets)
2. Claim ``deletion_pending -> deleted`` on the monitoring record
3. Remove stored files, then document/executor/beneficiary rows and the item
4. Commit, then send the terminal "deleted" notification

A storage failure rolls the item back to ``deletion_pending`` for the next
run. Failures are isolated per item.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from willtank.db.models import (
    ContentItem,
    ContentStatus,
    MonitoringRecord,
    WillBeneficiary,
    WillDocument,
    WillExecutor,
)
from willtank.notifications.notifier import NotificationEvent, Notifier, dispatch
from willtank.notifications.templates import NotificationKind
from willtank.retention.service import KIND_LABELS, reset_item
from willtank.storage import Storage
from willtank.subscriptions.gate import SubscriptionGate

logger = structlog.get_logger()


@dataclass
class DeletionReport:
    deleted: int = 0
    reset: int = 0
    skipped: int = 0
    failures: int = 0
    failed_items: list[uuid.UUID] = field(default_factory=list)


async def delete_item(
    db: AsyncSession,
    gate: SubscriptionGate,
    storage: Storage,
    notifier: Notifier,
    record: MonitoringRecord,
    now: datetime,
) -> str:
    """Delete one item. Returns ``deleted``, ``reset`` or ``skipped``."""
    item_id = record.item_id

    if await gate.is_active(record.user_id):
        await reset_item(db, item_id, now)
        await db.commit()
        logger.info("content_deletion_canceled_subscribed", item_id=str(item_id), user_id=str(record.user_id))
        return "reset"

    claimed = await db.execute(
        update(MonitoringRecord)
        .where(
            MonitoringRecord.item_id == item_id,
            MonitoringRecord.monitoring_status == ContentStatus.DELETION_PENDING,
        )
        .values(monitoring_status=ContentStatus.DELETED, updated_at=now)
    )
    if claimed.rowcount == 0:
        await db.rollback()
        return "skipped"

    paths = (await db.execute(select(WillDocument.file_path).where(WillDocument.item_id == item_id))).scalars().all()
    if paths:
        await storage.delete(list(paths))

    await db.execute(delete(WillDocument).where(WillDocument.item_id == item_id))
    await db.execute(delete(WillExecutor).where(WillExecutor.item_id == item_id))
    await db.execute(delete(WillBeneficiary).where(WillBeneficiary.item_id == item_id))
    await db.execute(delete(ContentItem).where(ContentItem.id == item_id))
    await db.commit()

    logger.info(
        "content_deleted",
        item_id=str(item_id),
        user_id=str(record.user_id),
        files=len(paths),
    )
    await dispatch(
        notifier,
        NotificationEvent(
            tier=NotificationKind.DELETED,
            user_id=record.user_id,
            item_id=item_id,
            priority="high",
            payload={"item_kind": KIND_LABELS.get(record.item_kind, "item"), "item_title": record.item_title},
        ),
    )
    return "deleted"


async def execute(
    db: AsyncSession,
    gate: SubscriptionGate,
    storage: Storage,
    notifier: Notifier,
    now: datetime | None = None,
) -> DeletionReport:
    """Delete every item due for deletion."""
    if now is None:
        now = datetime.now(timezone.utc)
    report = DeletionReport()

    due = (
        await db.execute(
            select(MonitoringRecord.item_id).where(
                MonitoringRecord.monitoring_status == ContentStatus.DELETION_PENDING,
                MonitoringRecord.scheduled_deletion <= now,
            )
        )
    ).scalars().all()

    for item_id in due:
        try:
            record = (
                await db.execute(
                    select(MonitoringRecord)
                    .where(MonitoringRecord.item_id == item_id)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()
            outcome = await delete_item(db, gate, storage, notifier, record, now)
        except Exception as exc:
            await db.rollback()
            report.failures += 1
            report.failed_items.append(item_id)
            logger.exception("content_deletion_failed", item_id=str(item_id), error=str(exc))
            continue
        if outcome == "deleted":
            report.deleted += 1
        elif outcome == "reset":
            report.reset += 1
        else:
            report.skipped += 1

    logger.info(
        "content_deletion_run_complete",
        deleted=report.deleted,
        reset=report.reset,
        skipped=report.skipped,
        failures=report.failures,
    )
    return report
