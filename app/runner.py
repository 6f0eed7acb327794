#!/usr/bin/env python3
"""Headless scheduler service.

Runs the periodic jobs (backup dispatch, volume and repository health checks,
dangling mount cleanup) without the HTTP API.

Usage:
    python runner.py [--once] [--job JOB_ID] [--no-bootstrap]
"""

import argparse
import asyncio
import os
import signal
import sys

from api.logging_config import configure_logging, get_logger
from api.settings import settings
from backend.core.context import AppContext, build_app_context
from backend.core.startup import shutdown, startup
from backend.jobs import JOB_TABLE


configure_logging(
    log_dir=settings.LOG_DIR,
    log_level=settings.LOG_LEVEL,
    debug=settings.DEBUG,
    log_filename=os.environ.get("LOG_FILENAME", "volume-backup-runner.log"),
)
logger = get_logger(__name__)

JOB_IDS = [job_id for job_id, _, _ in JOB_TABLE]


async def run_once(ctx: AppContext, job_id: str) -> int:
    """Start up, run one job, wait for backups it dispatched, shut down.

    Returns:
        int: Process exit code.
    """

    await startup(ctx, start_scheduler=False)
    try:
        result = await ctx.scheduler.run_job(job_id)
        logger.info("Job %s finished: %s", job_id, result)
        await ctx.engine.wait_for_tasks()
    finally:
        await shutdown(ctx)
    return 0 if result is not None else 1


async def run_forever(ctx: AppContext) -> None:
    """Start up with the scheduler and block until SIGINT/SIGTERM."""

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            logger.debug("Signal handlers are not supported on this platform")

    if not ctx.settings.SCHEDULER_ENABLED:
        logger.warning("SCHEDULER_ENABLED is false; no periodic job will run")
    await startup(ctx)
    logger.info("Runner started with jobs: %s", ", ".join(JOB_IDS))
    try:
        await stop.wait()
    finally:
        logger.info("Runner stopping...")
        await shutdown(ctx)


def main():
    """Entry point."""

    parser = argparse.ArgumentParser(description="Volume backup scheduler")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single job (default: backup-execution) and exit",
    )
    parser.add_argument(
        "--job",
        choices=JOB_IDS,
        default=os.environ.get("RUNNER_JOB", "backup-execution"),
        help="Job to run with --once",
    )
    parser.add_argument(
        "--no-bootstrap",
        action="store_true",
        help="Ignore VOLUMES_CONFIG and REPOSITORIES_CONFIG",
    )

    args = parser.parse_args()

    if args.no_bootstrap:
        settings.VOLUMES_CONFIG = None
        settings.REPOSITORIES_CONFIG = None

    ctx = build_app_context(settings)

    if args.once:
        sys.exit(asyncio.run(run_once(ctx, args.job)))

    asyncio.run(run_forever(ctx))


if __name__ == "__main__":
    main()
