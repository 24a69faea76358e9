"""CLI entrypoint for the schedule trigger."""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from bulk_exports.config import ExportsConfig
from bulk_exports.scheduler import run_scheduler_loop
from bulk_exports.worker_main import create_db_pool, setup_logging


async def run_scheduler(
    config: Optional[ExportsConfig] = None,
    db_pool=None,
    logger: Optional[logging.Logger] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    loop_interval_seconds: float = 60,
    maintenance_interval_seconds: float = 60,
):
    """
    Run the schedule trigger programmatically.

    Besides firing due schedules, the loop reverts expired leases and prunes
    finished job records.
    """
    if config is None:
        config = ExportsConfig.from_env()

    if logger is None:
        logger = logging.getLogger(__name__)

    db_pool_provided = db_pool is not None
    if db_pool is None:
        logger.info("Creating database connection pool...")
        db_pool = await create_db_pool(config)

    try:
        await run_scheduler_loop(
            config=config,
            db_pool=db_pool,
            logger=logger,
            loop_interval_seconds=loop_interval_seconds,
            maintenance_interval_seconds=maintenance_interval_seconds,
            shutdown_event=shutdown_event,
        )
    finally:
        if not db_pool_provided and db_pool:
            logger.info("Closing database connection pool...")
            await db_pool.close()


def main():
    """Main entrypoint for scheduler."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Bulk Exports Schedule Trigger")
    parser.add_argument(
        "--interval-seconds",
        type=float,
        default=60,
        help="Seconds between schedule evaluations (default: 60)",
    )
    parser.add_argument(
        "--maintenance-interval-seconds",
        type=float,
        default=60,
        help="Seconds between lease reaper / pruning runs (default: 60)",
    )

    args = parser.parse_args()

    try:
        config = ExportsConfig.from_env()
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    # Setup shutdown event
    shutdown_event = asyncio.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    async def run():
        """Async main function."""
        try:
            logger.info("Starting scheduler loop...")
            await run_scheduler(
                config=config,
                logger=logger,
                shutdown_event=shutdown_event,
                loop_interval_seconds=args.interval_seconds,
                maintenance_interval_seconds=args.maintenance_interval_seconds,
            )
        except Exception as e:
            logger.error(f"Fatal error in scheduler: {e}", exc_info=True)
            sys.exit(1)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
