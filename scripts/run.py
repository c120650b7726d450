#!/usr/bin/env python3
"""Alerting engine entrypoint — loads the catalog and runs the escalation scheduler.

Usage::

    # Run with default config
    python scripts/run.py

    # Custom config and catalog files
    python scripts/run.py --config config/settings.yaml --catalog config/catalog.yaml

    # One escalation cycle, then exit
    python scripts/run.py --once

    # Override log level
    python scripts/run.py --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

import structlog

from pgalert.alerting.factory import create_alerting_stack
from pgalert.core.config import load_settings
from pgalert.core.logging import setup_logging
from pgalert.storage.catalog import load_catalog, seed_store

logger = structlog.get_logger(__name__)


async def run(args: argparse.Namespace) -> int:
    """Start the scheduler and run until interrupted."""
    settings = load_settings(args.config)
    setup_logging(level=args.log_level)

    catalog_path = args.catalog or settings.catalog_path
    if not catalog_path:
        logger.error("no_catalog_configured")
        print(
            "No catalog configured. Pass --catalog or set catalog_path in "
            "config/settings.yaml.",
            file=sys.stderr,
        )
        return 1

    catalog = load_catalog(catalog_path)
    stack = create_alerting_stack(settings)
    await seed_store(stack.store, catalog)

    invalid = 0
    for channel in catalog.channels:
        errors = stack.dispatcher.validate_channel_config(channel)
        if errors:
            invalid += 1
            logger.warning("channel_config_invalid", channel=channel.name, errors=errors)

    logger.info(
        "engine_starting",
        channels=len(catalog.channels),
        invalid_channels=invalid,
        policies=len(catalog.policies),
        interval_secs=settings.escalation.interval_secs,
    )

    if args.once:
        try:
            report = await stack.scheduler.run_once()
        finally:
            await stack.close()
        logger.info("single_cycle_complete", due=report.due, delivered=report.delivered)
        return 0

    await stack.scheduler.start()

    # ── Wait for shutdown signal ─────────────────────────────────
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("shutdown_signal_received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows: signal handlers not supported on ProactorEventLoop
            pass

    try:
        await stop_event.wait()
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")

    # ── Graceful shutdown ────────────────────────────────────────
    logger.info("engine_shutting_down")
    stats = await stack.dispatcher.get_stats()
    await stack.close()

    logger.info(
        "engine_stopped",
        notifications=stats.total,
        success_rate=round(stats.success_rate, 1),
        rate_limited=stats.rate_limited_count,
    )
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run the alert escalation and notification engine.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to settings YAML (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--catalog",
        default=None,
        help="Path to the channel/policy catalog YAML (default: settings.catalog_path)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single escalation cycle and exit",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level override: DEBUG, INFO, WARNING, ERROR",
    )
    args = parser.parse_args()

    code = asyncio.run(run(args))
    sys.exit(code)


if __name__ == "__main__":
    main()
