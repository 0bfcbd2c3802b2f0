"""CLI entry point: python main.py [--once]"""

import argparse
import asyncio
import json
import signal

from src.db.engine import create_tables
from src.logging_config import LoggingConfig, configure_logging, get_logger
from src.notifications import NotificationService
from src.settings import get_settings

logger = get_logger(__name__)


async def run_forever(service: NotificationService) -> None:
    """Run the engine loops until SIGINT/SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # Windows
            pass

    async with service:
        await stop_event.wait()
        logger.info("Shutdown requested, waiting for in-flight ticks")


async def run_once(service: NotificationService) -> dict:
    try:
        return await service.run_once()
    finally:
        await service.aclose()


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Notification delivery & scheduling engine"
    )
    parser.add_argument(
        "--once", action="store_true",
        help="Run a single scheduler and queue tick, print the report and exit"
    )
    parser.add_argument(
        "--log-level", default=None,
        help="Override NOTIFY_LOG_LEVEL (DEBUG, INFO, WARNING, ...)"
    )
    parser.add_argument(
        "--log-format", choices=["json", "console"], default=None,
        help="Override NOTIFY_LOG_FORMAT"
    )
    parser.add_argument(
        "--database-url", default=None,
        help="Persist to this SQLAlchemy URL instead of the in-memory store"
    )
    parser.add_argument(
        "--create-tables", action="store_true",
        help="Create the notification_documents table if missing (database store only)"
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    updates = {}
    if args.log_level:
        updates["log_level"] = args.log_level
    if args.log_format:
        updates["log_format"] = args.log_format
    if args.database_url:
        updates["database_url"] = args.database_url
        updates["use_database"] = True
    if updates:
        settings = settings.model_copy(update=updates)
    configure_logging(LoggingConfig.from_settings(settings))

    if args.create_tables and settings.use_database:
        create_tables(settings.database_url)

    print("=" * 60)
    print("NOTIFICATION ENGINE")
    print(f"Store: {'database' if settings.use_database else 'in-memory'}"
          f" | Worker {settings.worker_index + 1}/{settings.worker_count}")
    print("=" * 60)

    service = NotificationService.from_settings(settings)

    if args.once:
        report = asyncio.run(run_once(service))
        print(json.dumps(report, indent=2))
        return report

    asyncio.run(run_forever(service))


if __name__ == "__main__":
    main()
