"""CLI entry point for Contract Alarms.

Usage:
    python -m contract_alarms [options]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import logging.config
import sys
from pathlib import Path
from typing import NoReturn

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from contract_alarms import __version__
from contract_alarms.chain.events import ChainError
from contract_alarms.config import Settings, clear_settings_cache, get_settings
from contract_alarms.errors import AlarmValidationError, StoreError
from contract_alarms.pipeline import Pipeline
from contract_alarms.shutdown import GracefulShutdown

APP_NAME = "Contract Alarms"
APP_VERSION = __version__

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="contract-alarms",
        description="Notify by email or webhook when watched contract events become final.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m contract_alarms                   Poll and notify until stopped
  python -m contract_alarms --init-db         Create database tables and exit
  python -m contract_alarms --create-alarm alarm.json
                                              Register the alarm described in a JSON file
  python -m contract_alarms --once --dry-run  One pass, report without notifying
  python -m contract_alarms --config-check    Validate config and exit
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {APP_VERSION}",
    )
    parser.add_argument(
        "--config-check",
        action="store_true",
        help="Validate configuration and exit",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create database tables and exit",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single reconciliation pass and exit",
    )
    parser.add_argument(
        "--create-alarm",
        metavar="PATH",
        type=Path,
        default=None,
        help="Create the alarm described by a JSON file and exit",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override logging level (default: from settings)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Reconcile but don't send notifications",
    )

    return parser


def configure_logging(level: str) -> None:
    """Configure logging for the application.

    Args:
        level: Logging level string (DEBUG, INFO, etc.)
    """
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "detailed": {
                "format": (
                    "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
                ),
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "detailed" if level == "DEBUG" else "standard",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {
            "level": level,
            "handlers": ["console"],
        },
        "loggers": {
            "httpx": {"level": "WARNING"},
            "httpcore": {"level": "WARNING"},
            "web3": {"level": "WARNING"},
            "aiosqlite": {"level": "WARNING"},
            "sqlalchemy.engine": {"level": "WARNING"},
        },
    }
    logging.config.dictConfig(config)


def print_config_summary(settings: Settings, dry_run: bool) -> None:
    """Print a summary of the configuration."""
    summary = settings.redacted_summary()
    print(f"{APP_NAME} v{APP_VERSION}")
    print("Configuration:")
    print(f"  Database: {summary['database_url']}")
    print(f"  RPC: {summary['rpc_url']}")
    print(f"  Reorg safety: {summary['reorg_safety']} blocks")
    print(f"  Start block: {summary['start_block']}")
    print(f"  Email: {'enabled' if summary['email_enabled'] == 'True' else 'disabled'}")
    print(f"  Poll interval: {summary['poll_interval']}s")
    print(f"  Log Level: {summary['log_level']}")
    print(f"  Dry Run: {dry_run}")
    print()


def validate_config() -> Settings | None:
    """Validate and load configuration.

    Returns:
        Settings instance if valid, None if invalid.
    """
    try:
        clear_settings_cache()
        return get_settings()
    except ValidationError as e:
        print("Configuration validation failed:", file=sys.stderr)
        for error in e.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            print(f"  {field}: {error['msg']}", file=sys.stderr)
        return None


async def run_init_db(settings: Settings) -> int:
    """Create the database schema."""
    pipeline = Pipeline(settings)
    try:
        await pipeline.init_db()
    except (SQLAlchemyError, OSError) as e:
        logging.getLogger(__name__).error("Schema creation failed: %s", e)
        return EXIT_ERROR
    finally:
        await pipeline.stop()
    return EXIT_SUCCESS


async def run_create_alarm(settings: Settings, path: Path) -> int:
    """Create the alarm described by a JSON file.

    The ABI may be omitted, in which case it is fetched for the contract
    address from the configured Etherscan-compatible API.
    """
    logger = logging.getLogger(__name__)
    try:
        description = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Cannot read alarm description %s: %s", path, e)
        return EXIT_ERROR
    if not isinstance(description, dict):
        logger.error("Alarm description %s must be a JSON object", path)
        return EXIT_ERROR

    pipeline = Pipeline(settings)
    try:
        await pipeline.init_db()
        alarm = await pipeline.service.create_alarm(description)
    except AlarmValidationError as e:
        for message in e.errors:
            logger.error("Invalid alarm: %s", message)
        return EXIT_ERROR
    except (StoreError, SQLAlchemyError, OSError) as e:
        logger.error("Alarm creation failed: %s", e)
        return EXIT_ERROR
    finally:
        await pipeline.stop()

    print(f"Created alarm {alarm.id} on {alarm.address}")
    return EXIT_SUCCESS


async def run_single_pass(settings: Settings, dry_run: bool) -> int:
    """Run one reconciliation pass and report the outcome."""
    logger = logging.getLogger(__name__)
    pipeline = Pipeline(settings, dry_run=dry_run)
    try:
        report = await pipeline.run_once()
    except (ChainError, StoreError) as e:
        logger.error("Reconciliation pass failed: %s", e)
        return EXIT_ERROR
    finally:
        await pipeline.stop()

    logger.info(
        "Pass at head %d: %d units, %d dispatched, %d deferred, %d failed",
        report.chain_head,
        len(report.outcomes),
        len(report.dispatched),
        len(report.deferred),
        len(report.failed),
    )
    return EXIT_SUCCESS if not report.failed else EXIT_ERROR


async def run_pipeline(
    settings: Settings,
    dry_run: bool,
    shutdown_timeout: float = 30.0,
) -> int:
    """Run the watcher until a shutdown signal arrives."""
    logger = logging.getLogger(__name__)
    shutdown = GracefulShutdown(timeout=shutdown_timeout)

    try:
        async with shutdown:
            pipeline = Pipeline(settings, dry_run=dry_run)
            shutdown.register_cleanup(pipeline.stop)

            await pipeline.start()
            logger.info("Watching for alarms. Press Ctrl+C to stop.")

            await shutdown.wait()
            logger.info("Shutdown signal received, stopping pipeline...")

        return EXIT_SUCCESS
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.exception("Pipeline failed: %s", e)
        return EXIT_ERROR


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:]).
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    settings = validate_config()
    if settings is None:
        sys.exit(EXIT_CONFIG_ERROR)

    configure_logging(args.log_level or settings.log_level)
    dry_run = args.dry_run or settings.dry_run

    if args.config_check:
        print("Configuration is valid!")
        print_config_summary(settings, dry_run)
        sys.exit(EXIT_SUCCESS)

    print_config_summary(settings, dry_run)

    if args.init_db:
        sys.exit(asyncio.run(run_init_db(settings)))

    if args.create_alarm is not None:
        sys.exit(asyncio.run(run_create_alarm(settings, args.create_alarm)))

    if args.once:
        sys.exit(asyncio.run(run_single_pass(settings, dry_run)))

    sys.exit(asyncio.run(run_pipeline(settings, dry_run)))


if __name__ == "__main__":
    main()
