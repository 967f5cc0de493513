"""Notification delivery.

The engines only talk to the :class:`Notifier` protocol. Delivery is best
effort: :func:`dispatch` logs failures and never lets them abort a state
transition.

The in-app notifier:
1. Persists a Notification row in its own session
2. Pushes the payload over Redis pub/sub (``ws:user:{id}`` or
   ``notify:contact:{id}``) for the WebSocket bridge and contact mailers
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from willtank.db.models import Notification
from willtank.notifications.templates import render

logger = structlog.get_logger()


@dataclass(frozen=True)
class NotificationEvent:
    """What happened, to whom. ``contact_id`` set means the recipient is a contact."""

    tier: str
    user_id: uuid.UUID
    item_id: uuid.UUID | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    contact_id: uuid.UUID | None = None
    priority: str = "normal"


class Notifier(Protocol):
    async def send(self, event: NotificationEvent) -> bool: ...


async def dispatch(notifier: Notifier, event: NotificationEvent) -> bool:
    """Send an event, logging and swallowing any delivery failure."""
    try:
        delivered = await notifier.send(event)
    except Exception as exc:
        logger.warning(
            "notification_failed",
            tier=event.tier,
            user_id=str(event.user_id),
            contact_id=str(event.contact_id) if event.contact_id else None,
            error=str(exc),
        )
        return False
    if not delivered:
        logger.info("notification_not_delivered", tier=event.tier, user_id=str(event.user_id))
    return delivered


def channel_for(event: NotificationEvent) -> str:
    if event.contact_id is not None:
        return f"notify:contact:{event.contact_id}"
    return f"ws:user:{event.user_id}"


class InAppNotifier:
    """Persist notifications and push them via Redis pub/sub."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], redis: Any | None = None) -> None:
        self._session_factory = session_factory
        self._redis = redis

    async def send(self, event: NotificationEvent) -> bool:
        title, message = render(event.tier, event.payload)
        notification = Notification(
            user_id=event.user_id,
            contact_id=event.contact_id,
            kind=event.tier,
            priority=event.priority,
            title=title,
            message=message,
            item_id=event.item_id,
            payload={k: _jsonable(v) for k, v in event.payload.items()},
            created_at=datetime.now(timezone.utc),
        )
        # Own session so a notification never rides on the caller's transaction
        async with self._session_factory() as session:
            session.add(notification)
            await session.commit()

        if self._redis is not None:
            ws_payload = {
                "event": "notification",
                "data": {
                    "id": str(notification.id),
                    "kind": notification.kind,
                    "priority": notification.priority,
                    "title": notification.title,
                    "message": notification.message,
                    "itemId": str(notification.item_id) if notification.item_id else None,
                    "timestamp": notification.created_at.isoformat(),
                    "read": False,
                },
            }
            try:
                await self._redis.publish(channel_for(event), json.dumps(ws_payload))
            except Exception:
                logger.warning("notification_push_failed", channel=channel_for(event), exc_info=True)

        return True


def _jsonable(value: Any) -> Any:  # noqa: ANN401
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value
