"""
Entry point: run the schedule dispatch loop.

Usage::

    # Run forever, one tick per configured interval:
    python run_scheduler.py

    # Run a single tick and exit (cron-driven deployments, debugging):
    python run_scheduler.py --once
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Optional

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("run_scheduler")


def build_dispatch_loop(db: Any, settings: Any, clock: Optional[Any] = None) -> Any:
    """Wire the scheduler components around a database client."""
    from src.scheduling import (
        CompletionWaiter,
        DispatchLoop,
        ExecutorRegistry,
        ImageGenerationExecutor,
        PromptResolver,
        PublishPipeline,
        PublishPostExecutor,
        SchedulingSystem,
        SupabaseScheduleStore,
        SystemClock,
        TriggerResolver,
        VideoGenerationExecutor,
    )
    from src.scheduling.models import ActionType
    from src.tools import GenerationClient, LateClient

    clock = clock or SystemClock()
    store = SupabaseScheduleStore(db)
    resolver = TriggerResolver(calendar_lookup=db, timezone=settings.timezone)
    system = SchedulingSystem(store, resolver, clock)

    waiter = CompletionWaiter(
        db,
        clock,
        max_wait_seconds=settings.dispatch.job_max_wait_seconds,
        poll_interval_seconds=settings.dispatch.job_poll_interval_seconds,
    )
    generator = GenerationClient(settings.generation)
    publisher = PublishPipeline(
        LateClient(db, settings.publish),
        materializer=db,
        records=db,
        blocked_platforms=settings.publish.adult_content_blocked_platforms,
    )
    prompts = PromptResolver(characters=db, prompts=db)

    registry = ExecutorRegistry(
        {
            ActionType.GENERATE_IMAGE: ImageGenerationExecutor(
                prompts, generator, waiter, db, publisher
            ),
            ActionType.GENERATE_VIDEO: VideoGenerationExecutor(
                prompts, generator, waiter, db, publisher
            ),
            ActionType.PUBLISH_POST: PublishPostExecutor(db, publisher),
        },
        points_ledger=db,
        test_run_cost=settings.generation.test_run_cost,
        test_run_max_wait_seconds=settings.dispatch.test_run_max_wait_seconds,
        test_run_poll_interval_seconds=settings.dispatch.test_run_poll_interval_seconds,
    )

    return DispatchLoop(
        system,
        store,
        registry,
        clock=clock,
        tick_interval_seconds=settings.dispatch.tick_interval_seconds,
    )


async def main() -> None:
    parser = argparse.ArgumentParser(
        description="Execute due content-generation schedules"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single dispatch tick and exit",
    )
    args = parser.parse_args()

    from src.config import get_settings, validate_env
    from src.database import get_db
    from src.logging import LogComponent, get_logger, init_logger

    validate_env()
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    db = await get_db()
    init_logger(log_dir=settings.log_dir, db=db)
    await get_logger().info(
        LogComponent.STARTUP,
        "Scheduler starting",
        data={"once": args.once, "tick_seconds": settings.dispatch.tick_interval_seconds},
    )

    loop = build_dispatch_loop(db, settings)
    try:
        if args.once:
            report = await loop.tick()
            logger.info(
                "Tick done: %d executed, errors=%s", report.executed, report.errors or "none"
            )
        else:
            await loop.start()
    finally:
        await get_logger().flush()


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(0)


if __name__ == "__main__":
    cli()
