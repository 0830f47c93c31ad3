"""
Sync core entry point.

Loads configuration, configures logging, and runs the core.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog

from .config import load_config
from .core import SyncCore


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(level)
        ),
    )


def run() -> None:
    """CLI entry point for the sync core."""
    parser = argparse.ArgumentParser(description="Haddaf session, notification and workflow sync core")
    parser.add_argument(
        "-c", "--config",
        default="haddaf-sync.yaml",
        help="Path to configuration file (default: haddaf-sync.yaml)",
    )
    parser.add_argument("--user", help="Sign this user id in at startup")
    parser.add_argument("--admin", help="Admin user id to check for the monthly reminder")
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.format)
    log = structlog.get_logger()
    log.info("core.config_loaded", config_path=args.config, db_path=config.store.db_path)

    core = SyncCore(config)
    try:
        asyncio.run(core.run_forever(user_id=args.user, admin_id=args.admin))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
