"""One-shot runner for the lifecycle scans, for system cron or Kubernetes CronJobs.

Usage: python -m willtank.workers.scan_runner [job ...]
Jobs: scan_checkins, expire_sessions, evaluate_content, execute_deletions, all
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import redis.asyncio as aioredis

from willtank.config import get_settings
from willtank.database import close_db, init_db
from willtank.middleware.logging import setup_logging
from willtank.workers.scanner import JOBS, build_context

logger = logging.getLogger(__name__)

ORDER = ["expire_sessions", "scan_checkins", "evaluate_content", "execute_deletions"]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run lifecycle scans once and exit.")
    parser.add_argument("jobs", nargs="*", metavar="job", help=f"one of: {', '.join([*ORDER, 'all'])}")
    args = parser.parse_args(argv)
    unknown = set(args.jobs) - {*ORDER, "all"}
    if unknown:
        parser.error(f"unknown job(s): {', '.join(sorted(unknown))}")
    args.jobs = args.jobs or ["all"]
    return args


def resolve_jobs(names: list[str]) -> list[str]:
    """Expand ``all`` and run jobs in dependency order, each at most once."""
    wanted = set(ORDER) if "all" in names else set(names)
    return [name for name in ORDER if name in wanted]


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    redis_client = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)

    ctx = build_context({}, redis_client)
    failed = 0
    try:
        for name in resolve_jobs(args.jobs):
            try:
                result = await JOBS[name](ctx)
            except Exception:
                failed += 1
                logger.exception("Scan job %s failed", name)
                continue
            logger.info("Scan job %s finished: %s", name, result)
    finally:
        await redis_client.aclose()
        await close_db()
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
