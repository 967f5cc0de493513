"""Lifecycle scanner: arq worker running the periodic scans.

Every job opens its own session, runs one pure scan pass and returns the
report. Jobs can overlap with each other, with a second worker, or with the
one-shot runner; the scans are safe under concurrent invocation.

Run with: arq willtank.workers.settings.WorkerSettings
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from willtank.config import get_settings
from willtank.database import close_db, get_session_factory, init_db
from willtank.middleware.logging import setup_logging
from willtank.notifications.notifier import InAppNotifier
from willtank.retention import deletion
from willtank.retention import service as retention
from willtank.storage import LocalFileStorage
from willtank.subscriptions.gate import DatabaseSubscriptionGate
from willtank.verification import service as verification

logger = logging.getLogger(__name__)


def build_context(ctx: dict[str, Any], redis: Any | None = None) -> dict[str, Any]:  # noqa: ANN401
    """Wire the collaborators every job needs into ``ctx``."""
    settings = get_settings()
    session_factory = get_session_factory()
    ctx["session_factory"] = session_factory
    ctx["notifier"] = InAppNotifier(session_factory, redis)
    ctx["gate"] = DatabaseSubscriptionGate(session_factory)
    ctx["storage"] = LocalFileStorage(settings.storage_root)
    return ctx


async def startup(ctx: dict[str, Any]) -> None:
    """Initialize the DB engine and collaborators on worker startup."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    build_context(ctx, ctx.get("redis"))
    logger.info("Lifecycle scanner started (interval=%d min)", settings.scan_interval_minutes)


async def shutdown(ctx: dict[str, Any]) -> None:
    await close_db()
    logger.info("Lifecycle scanner shut down")


async def scan_checkins(ctx: dict[str, Any]) -> dict[str, int]:
    """Escalate missed check-ins and advance pending verifications."""
    async with ctx["session_factory"]() as db:
        report = await verification.scan(db, ctx["gate"], ctx["notifier"])
    return asdict(report)


async def expire_sessions(ctx: dict[str, Any]) -> dict[str, int]:
    """Close verification requests and PIN sessions past their deadline."""
    async with ctx["session_factory"]() as db:
        report = await verification.check_expiry(db)
    return asdict(report)


async def evaluate_content(ctx: dict[str, Any]) -> dict[str, int]:
    """Send retention warnings and schedule expired content for deletion."""
    async with ctx["session_factory"]() as db:
        report = await retention.scan_content(db, ctx["gate"], ctx["notifier"])
    return asdict(report)


async def execute_deletions(ctx: dict[str, Any]) -> dict[str, Any]:
    """Delete content whose deletion is due."""
    async with ctx["session_factory"]() as db:
        report = await deletion.execute(db, ctx["gate"], ctx["storage"], ctx["notifier"])
    result = asdict(report)
    result["failed_items"] = [str(i) for i in report.failed_items]
    return result


JOBS = {
    "scan_checkins": scan_checkins,
    "expire_sessions": expire_sessions,
    "evaluate_content": evaluate_content,
    "execute_deletions": execute_deletions,
}


def _minutes(interval: int) -> set[int]:
    return set(range(0, 60, max(1, min(interval, 60))))


def _cron_jobs() -> list[Any]:
    settings = get_settings()
    minutes = _minutes(settings.scan_interval_minutes)
    timeout = settings.worker_job_timeout_seconds
    return [
        cron(expire_sessions, minute=minutes, timeout=timeout, unique=True),
        cron(scan_checkins, minute=minutes, timeout=timeout, unique=True),
        cron(evaluate_content, minute=minutes, timeout=timeout, unique=True),
        cron(execute_deletions, minute=minutes, timeout=timeout, unique=True),
    ]


class WorkerSettings:
    """arq worker settings for the lifecycle scanner."""

    functions = list(JOBS.values())
    cron_jobs = _cron_jobs()
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    max_jobs = 4
    job_timeout = get_settings().worker_job_timeout_seconds
