"""CLI entrypoint and programmatic interface for the export worker."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from contextlib import AsyncExitStack
from typing import Any, Dict, Optional

import aioboto3
import asyncpg

from bulk_exports.config import ExportsConfig
from bulk_exports.storage import s3_client_kwargs
from bulk_exports.worker import run_worker_loop


def setup_logging():
    """Setup logging configuration."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def create_db_pool(config: ExportsConfig):
    """Create database connection pool."""
    return await asyncpg.create_pool(
        config.db_dsn, min_size=2, max_size=max(10, config.worker_concurrency * 2)
    )


def sqs_client_kwargs(config: ExportsConfig) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {}
    endpoint_url = os.getenv("AWS_ENDPOINT_URL")
    if endpoint_url:
        kwargs["endpoint_url"] = endpoint_url
    if config.s3_region:
        kwargs["region_name"] = config.s3_region
    return kwargs


async def run_worker(
    config: Optional[ExportsConfig] = None,
    db_pool=None,
    s3_client=None,
    sqs_client=None,
    logger: Optional[logging.Logger] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    poll_interval_seconds: float = 1.0,
):
    """
    Run the export worker programmatically.

    Args:
        config: ExportsConfig instance. If None, will load from environment.
        db_pool: Database connection pool. If None, will create from config.
        s3_client: Async S3 client. If None, an aioboto3 client is opened.
        sqs_client: Async SQS client for lifecycle events. If None and a
            notifications queue is configured, an aioboto3 client is opened.
        logger: Logger instance. If None, will create default logger.
        shutdown_event: Optional asyncio.Event for graceful shutdown.
        poll_interval_seconds: Sleep between claims when idle.

    Example:
        ```python
        from bulk_exports import ExportsConfig, run_worker
        import asyncio

        asyncio.run(run_worker(config=ExportsConfig.from_env()))
        ```
    """
    if config is None:
        config = ExportsConfig.from_env()

    if logger is None:
        logger = logging.getLogger(__name__)

    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    db_pool_provided = db_pool is not None
    if db_pool is None:
        db_pool = await create_db_pool(config)

    try:
        async with AsyncExitStack() as stack:
            session = aioboto3.Session()
            if s3_client is None:
                s3_client = await stack.enter_async_context(
                    session.client("s3", **s3_client_kwargs(config))
                )
            if sqs_client is None and config.notifications_queue_url:
                sqs_client = await stack.enter_async_context(
                    session.client("sqs", **sqs_client_kwargs(config))
                )

            await run_worker_loop(
                config=config,
                db_pool=db_pool,
                s3_client=s3_client,
                logger=logger,
                sqs_client=sqs_client,
                poll_interval_seconds=poll_interval_seconds,
                shutdown_event=shutdown_event,
            )
    finally:
        if not db_pool_provided and db_pool:
            await db_pool.close()


def main():
    """Main entrypoint for worker."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Bulk Exports Worker")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Max export jobs to run at once (default: EXPORTS_WORKER_CONCURRENCY)",
    )
    parser.add_argument(
        "--poll-interval-seconds",
        type=float,
        default=1.0,
        help="Sleep between claims when no job is due (default: 1.0)",
    )

    args = parser.parse_args()

    try:
        config = ExportsConfig.from_env()
        if args.concurrency is not None:
            if args.concurrency < 1:
                raise ValueError("--concurrency must be at least 1")
            config.worker_concurrency = args.concurrency
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
            logger.info("Starting export worker...")
            await run_worker(
                config=config,
                logger=logger,
                shutdown_event=shutdown_event,
                poll_interval_seconds=args.poll_interval_seconds,
            )
        except Exception as e:
            logger.error(f"Fatal error in worker: {e}", exc_info=True)
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
