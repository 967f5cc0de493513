"""Shared FastAPI dependencies."""

from willtank.config import get_settings
from willtank.database import get_session as _get_session
from willtank.database import get_session_factory
from willtank.notifications.notifier import InAppNotifier, Notifier
from willtank.redis_client import get_redis_or_none
from willtank.storage import LocalFileStorage, Storage
from willtank.subscriptions.gate import DatabaseSubscriptionGate, SubscriptionGate

get_db = _get_session


def get_notifier() -> Notifier:
    """In-app notifier; pushes over Redis when the pool is up."""
    return InAppNotifier(get_session_factory(), get_redis_or_none())


def get_gate() -> SubscriptionGate:
    return DatabaseSubscriptionGate(get_session_factory())


def get_storage() -> Storage:
    return LocalFileStorage(get_settings().storage_root)
