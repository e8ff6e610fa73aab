"""
Standalone entrypoint for running the fleet controller.

Runs the sync engine and a periodic health-check loop against the mirror,
so API servers embedding the fleet service only need to read it.

Usage:
    python -m fleet_controller [OPTIONS]
    fleet-controller [OPTIONS]  (after pip install)

Environment Variables:
    FLEET_DB_PATH: Database path (default: fleet.db)
    FLEET_REDIS_URL: Redis URL for the shared cache (default: in-process cache)
    FLEET_SYNC_INTERVAL: Seconds between sync passes (default: 30)
    FLEET_BUILD_LIMIT: Builds fetched per job on a routine pass (default: 5)
    FLEET_GAP_BUILD_LIMIT: Builds fetched per job after a sync gap (default: 50)
    FLEET_HEALTH_INTERVAL: Seconds between health-check passes, 0 disables (default: 60)
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Any

from fleet_controller.load_balancer import LoadBalancer
from fleet_controller.service import create_fleet_service
from fleet_persistence import create_cache
from fleet_persistence.sqlite_repository import SQLiteFleetRepository

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="Fleet Controller - mirrors CI masters and keeps their health current",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  FLEET_DB_PATH           Database path (default: fleet.db)
  FLEET_REDIS_URL         Redis URL for the shared cache (default: in-process)
  FLEET_SYNC_INTERVAL     Seconds between sync passes (default: 30)
  FLEET_BUILD_LIMIT       Builds fetched per job on a routine pass (default: 5)
  FLEET_GAP_BUILD_LIMIT   Builds fetched per job after a sync gap (default: 50)
  FLEET_HEALTH_INTERVAL   Seconds between health checks, 0 disables (default: 60)

Note: Command-line arguments override environment variables.

Examples:
  # Run with default settings
  fleet-controller

  # Share load-balancer state with API servers through Redis
  fleet-controller --redis-url redis://localhost:6379/0

  # Sync every 10 seconds with debug logging
  fleet-controller --interval 10 --log-level DEBUG
        """,
    )

    parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="Path to SQLite database file (default: FLEET_DB_PATH env or fleet.db)",
    )

    parser.add_argument(
        "--redis-url",
        type=str,
        default=None,
        help="Redis URL for the shared cache (default: FLEET_REDIS_URL env or in-process)",
    )

    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between sync passes (default: FLEET_SYNC_INTERVAL env or 30)",
    )

    parser.add_argument(
        "--build-limit",
        type=int,
        default=None,
        help="Builds fetched per job (default: FLEET_BUILD_LIMIT env or 5)",
    )

    parser.add_argument(
        "--gap-build-limit",
        type=int,
        default=None,
        help="Builds fetched per job after a sync gap (default: FLEET_GAP_BUILD_LIMIT env or 50)",
    )

    parser.add_argument(
        "--health-interval",
        type=float,
        default=None,
        help="Seconds between health checks, 0 disables (default: FLEET_HEALTH_INTERVAL env or 60)",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def get_database_path(args: argparse.Namespace) -> str:
    """
    Get the database path from CLI args or environment or use default.

    Args:
        args: Parsed command-line arguments

    Returns:
        Path to the SQLite database file
    """
    if args.db_path:
        return args.db_path
    return os.environ.get("FLEET_DB_PATH", "fleet.db")


def get_redis_url(args: argparse.Namespace) -> str | None:
    if args.redis_url:
        return args.redis_url
    return os.environ.get("FLEET_REDIS_URL") or None


def _get_number(
    cli_value: float | None,
    env_name: str,
    default: float,
    cast: type = float,
    allow_zero: bool = False,
) -> Any:
    """
    Resolve a positive number from a CLI value, then an env var, then a default.

    Invalid values are logged and replaced by the default.
    """
    raw: Any = cli_value if cli_value is not None else os.environ.get(env_name)
    if raw is None:
        return cast(default)

    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"Invalid {env_name}={raw!r}, using default {default}")
        return cast(default)

    if value < 0 or (value == 0 and not allow_zero):
        logger.warning(f"Invalid {env_name}={value}, using default {default}")
        return cast(default)
    return value


def get_sync_interval(args: argparse.Namespace) -> float:
    return _get_number(args.interval, "FLEET_SYNC_INTERVAL", 30.0)


def get_build_limit(args: argparse.Namespace) -> int:
    return _get_number(args.build_limit, "FLEET_BUILD_LIMIT", 5, cast=int)


def get_gap_build_limit(args: argparse.Namespace) -> int:
    return _get_number(args.gap_build_limit, "FLEET_GAP_BUILD_LIMIT", 50, cast=int)


def get_health_interval(args: argparse.Namespace) -> float:
    return _get_number(
        args.health_interval, "FLEET_HEALTH_INTERVAL", 60.0, allow_zero=True
    )


async def run_health_loop(
    load_balancer: LoadBalancer, interval: float, stop_event: asyncio.Event
) -> None:
    """Probe every active instance once per interval until stopped."""
    while not stop_event.is_set():
        try:
            statuses = await load_balancer.perform_health_checks()
            logger.debug(f"Health checks completed for {len(statuses)} instance(s)")
        except Exception as e:
            logger.error(f"Error in health-check loop: {e}", exc_info=True)

        try:
            await asyncio.wait_for(stop_event.wait(), interval)
        except TimeoutError:
            pass


async def run_controller(args: argparse.Namespace) -> None:
    """
    Initialize and run the sync engine and health loop.

    Args:
        args: Parsed command-line arguments

    Runs until interrupted by SIGINT or SIGTERM.
    """
    # Get configuration
    db_path = get_database_path(args)
    redis_url = get_redis_url(args)
    sync_interval = get_sync_interval(args)
    build_limit = get_build_limit(args)
    gap_build_limit = get_gap_build_limit(args)
    health_interval = get_health_interval(args)

    logger.info("Starting Fleet Controller")
    logger.info(f"  Database: {db_path}")
    logger.info(f"  Cache: {'redis' if redis_url else 'in-process'}")
    logger.info(f"  Sync interval: {sync_interval}s")
    logger.info(f"  Build limit: {build_limit} (after gap: {gap_build_limit})")
    logger.info(f"  Health interval: {health_interval or 'disabled'}")

    # Initialize repository
    repository = SQLiteFleetRepository(db_path)
    await repository.initialize()
    logger.info("Database initialized")

    cache = create_cache(redis_url)
    service = create_fleet_service(
        repository,
        cache,
        sync_interval=sync_interval,
        build_limit=build_limit,
        gap_build_limit=gap_build_limit,
    )

    # Set up signal handlers for graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler(sig: Any, _frame: Any) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {sig}, initiating graceful shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    health_task: asyncio.Task | None = None
    try:
        if health_interval > 0:
            health_task = asyncio.create_task(
                run_health_loop(service.load_balancer, health_interval, shutdown_event)
            )
        await service.sync_engine.start()
        logger.info("Controller started successfully")

        # Wait for shutdown signal
        await shutdown_event.wait()

    except Exception as e:
        logger.error(f"Controller error: {e}", exc_info=True)
        raise
    finally:
        # Graceful shutdown: in-flight passes finish before we close
        logger.info("Stopping controller...")
        shutdown_event.set()
        await service.sync_engine.stop()
        if health_task is not None:
            await health_task
        service.client_factory.clear_all()
        logger.info("Closing cache and database connections...")
        await cache.close()
        await repository.close()
        logger.info("Controller stopped cleanly")


def main() -> int:
    """
    Main entrypoint for the controller.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    # Parse command-line arguments
    args = parse_args()

    # Configure logging based on args
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run_controller(args))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
