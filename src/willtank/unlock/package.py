"""Will package assembly and at-most-once release."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from willtank.db.models import (
    UNLOCKED_REQUEST_STATUSES,
    ContentItem,
    ContentKind,
    ContentStatus,
    TrustedContact,
    VerificationRequest,
)
from willtank.errors import AlreadyDownloadedError, NotFoundError
from willtank.verification.audit import log_action

logger = structlog.get_logger()

PACKAGE_FORMAT_VERSION = "1.0"


def _will_entry(item: ContentItem) -> dict[str, Any]:
    return {
        "id": str(item.id),
        "title": item.title,
        "content": item.body,
        "created_at": item.created_at.isoformat(),
        "executors": [
            {"name": e.name, "email": e.email, "is_primary": e.is_primary}
            for e in item.executors
        ],
        "beneficiaries": [
            {"name": b.name, "email": b.email, "relationship": b.relationship_to_testator}
            for b in item.beneficiaries
        ],
        "documents": [{"file_name": d.file_name, "file_path": d.file_path} for d in item.documents],
    }


def build_summary(wills: list[dict[str, Any]], contacts: dict[str, list[dict[str, Any]]], executor: dict[str, Any]) -> str:
    """Plain-text cover sheet for the package."""
    lines = [
        "WILL PACKAGE",
        "",
        f"Released to: {executor.get('name', 'unknown')}",
        f"Wills included: {len(wills)}",
    ]
    for will in wills:
        lines.append(f"  - {will['title']} ({len(will['documents'])} document(s), "
                     f"{len(will['beneficiaries'])} beneficiary(ies))")
    lines.append("")
    for role, members in contacts.items():
        lines.append(f"{role.replace('_', ' ').title()}s: {len(members)}")
    return "\n".join(lines)


async def assemble_package(
    db: AsyncSession,
    request: VerificationRequest,
    executor_details: dict[str, Any],
    now: datetime,
) -> dict[str, Any]:
    items = await db.execute(
        select(ContentItem)
        .where(
            ContentItem.user_id == request.user_id,
            ContentItem.kind == ContentKind.WILL,
            ContentItem.status != ContentStatus.DELETED,
        )
        .options(
            selectinload(ContentItem.executors),
            selectinload(ContentItem.beneficiaries),
            selectinload(ContentItem.documents),
        )
        .order_by(ContentItem.created_at)
    )
    wills = [_will_entry(item) for item in items.scalars().all()]

    contact_rows = await db.execute(
        select(TrustedContact).where(TrustedContact.user_id == request.user_id).order_by(TrustedContact.name)
    )
    contacts: dict[str, list[dict[str, Any]]] = {}
    for contact in contact_rows.scalars().all():
        contacts.setdefault(contact.role, []).append(
            {"name": contact.name, "email": contact.email, "confirmed": contact.confirmed}
        )

    return {
        "wills": wills,
        "contacts": contacts,
        "executor": dict(executor_details),
        "summary": build_summary(wills, contacts, executor_details),
        "metadata": {
            "format_version": PACKAGE_FORMAT_VERSION,
            "user_id": str(request.user_id),
            "verification_request_id": str(request.id),
            "verification_status": request.status,
            "unlocked_at": request.unlocked_at.isoformat() if request.unlocked_at else None,
            "generated_at": now.isoformat(),
        },
    }


async def generate_package(
    db: AsyncSession,
    request_id: uuid.UUID,
    executor_details: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Release the will package for an unlocked request, at most once."""
    if now is None:
        now = datetime.now(timezone.utc)
    executor_details = executor_details or {}

    request = await db.get(VerificationRequest, request_id, populate_existing=True)
    if request is None or request.status not in UNLOCKED_REQUEST_STATUSES:
        raise NotFoundError("No unlocked will package for this request")
    if request.downloaded:
        raise AlreadyDownloadedError()

    package = await assemble_package(db, request, executor_details, now)

    result = await db.execute(
        update(VerificationRequest)
        .where(
            VerificationRequest.id == request_id,
            VerificationRequest.downloaded.is_(False),
        )
        .values(downloaded=True, downloaded_at=now)
    )
    if result.rowcount == 0:
        await db.rollback()
        raise AlreadyDownloadedError()

    log_action(
        db,
        request.user_id,
        "package_downloaded",
        now,
        request_id=request_id,
        executor=executor_details.get("name"),
        wills=len(package["wills"]),
    )
    await db.commit()

    logger.info(
        "will_package_generated",
        user_id=str(request.user_id),
        request_id=str(request_id),
        wills=len(package["wills"]),
    )
    return package
