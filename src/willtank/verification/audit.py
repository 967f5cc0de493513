"""Append-only audit trail for verification actions."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from willtank.db.models import VerificationLog


def log_action(
    db: AsyncSession,
    user_id: uuid.UUID,
    action: str,
    now: datetime,
    **details: Any,
) -> VerificationLog:
    """Stage an audit row in the caller's transaction."""
    entry = VerificationLog(
        user_id=user_id,
        action=action,
        details={k: str(v) if isinstance(v, (uuid.UUID, datetime)) else v for k, v in details.items()},
        created_at=now,
    )
    db.add(entry)
    return entry
