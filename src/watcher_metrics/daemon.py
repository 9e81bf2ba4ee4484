"""
Rollup daemon entry point (``watcher-metrics-rollupd``).

Loads configuration, sets up logging, takes the single-instance lock and
either runs one rollup pass (``--once``) or drives the scheduler until
SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from pydantic import ValidationError

from watcher_metrics.config import AppConfig, cli_requests_single_pass, load_config
from watcher_metrics.errors import MetricsError
from watcher_metrics.fileio import DaemonLock, OwnershipCache
from watcher_metrics.logging import get_logger, setup_logging
from watcher_metrics.metrics.scheduler import RollupScheduler
from watcher_metrics.metrics.stream import MetricStream

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_ALREADY_RUNNING = 3


def build_streams(config: AppConfig) -> list[MetricStream]:
    """Create a MetricStream for every configured stream."""
    ownership = OwnershipCache(config.storage.owner_user, config.storage.owner_group)
    streams = []
    for name, stream_config in config.streams.items():
        stream = MetricStream.from_config(name, stream_config, config, ownership=ownership)
        migrated = stream.migrate_compressed_tiers()
        if migrated:
            logger.info(
                "Compressed tier migration complete",
                extra={"stream": name, "tiers": migrated},
            )
        streams.append(stream)
    return streams


async def serve(scheduler: RollupScheduler) -> None:
    """Run the scheduler until a shutdown signal arrives."""
    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        shutdown.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    await scheduler.start()
    try:
        await shutdown.wait()
    finally:
        await scheduler.stop()


def main(argv: list[str] | None = None) -> int:
    """
    Run the rollup daemon.

    Args:
        argv: Command-line arguments (defaults to ``sys.argv[1:]``).

    Returns:
        Process exit code.
    """
    try:
        config = load_config(cli_args=argv)
    except (FileNotFoundError, ValidationError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    setup_logging(config.logging)

    try:
        streams = build_streams(config)
    except MetricsError as e:
        logger.error(
            "Invalid stream configuration",
            extra=e.log_fields(),
        )
        return EXIT_CONFIG_ERROR

    lock = DaemonLock(config.scheduler.daemon_name, config.storage.lock_dir)
    try:
        lock.acquire()
    except MetricsError as e:
        logger.error(
            "Unable to acquire daemon lock",
            extra=e.log_fields(),
        )
        return EXIT_ALREADY_RUNNING

    scheduler = RollupScheduler(streams, config.scheduler)
    try:
        if cli_requests_single_pass(argv):
            results = scheduler.run_once(rotate_raw=True)
            logger.info(
                "Rollup pass complete",
                extra={
                    "streams": {
                        name: [result.to_dict() for result in stream_results]
                        for name, stream_results in results.items()
                    }
                },
            )
        else:
            logger.info(
                "Rollup daemon started",
                extra={"streams": [stream.name for stream in streams]},
            )
            asyncio.run(serve(scheduler))
    finally:
        lock.release()

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
