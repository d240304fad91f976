"""
SnapKeeper entry points.

This module wires configuration, logging and the EC2 client to the two
passes:
- run_backup() / run_cleanup(): one pass each, for any async caller
- backup_handler() / cleanup_handler(): scheduled-function handlers
- main(): the ``snapkeeper`` command line

Usage:
    snapkeeper backup
    snapkeeper cleanup --dry-run

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Each pass opens its own EC2 client and closes it on exit
    - A failed pass propagates its exception to the scheduler

How to change safely:
    - Keep run_backup() and run_cleanup() callable without arguments
    - Schedule the two passes so that runs of the same pass never overlap
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from typing import Any

import json_log_formatter

from .backup import BackupReport, BackupService
from .cleanup import CleanupReport, CleanupService
from .config import ConfigurationError, SnapKeeperConfig
from .ec2 import Ec2ResourceApi, SnapKeeperError

logger = logging.getLogger(__name__)


def setup_logging(config: SnapKeeperConfig, verbose: bool = False) -> None:
    """Configure logging based on configuration.

    Args:
        config: SnapKeeper configuration
        verbose: Force DEBUG level regardless of LOG_LEVEL
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)
    if verbose:
        level = logging.DEBUG

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def run_backup(config: SnapKeeperConfig | None = None) -> BackupReport:
    """Run one backup pass against EC2.

    Args:
        config: Optional configuration (loaded from env if not provided)
    """
    config = config or SnapKeeperConfig.from_env()
    async with Ec2ResourceApi(config.ec2, rate_limit_code=config.backup.rate_limit_code) as api:
        return await BackupService(api, config.backup).run()


async def run_cleanup(config: SnapKeeperConfig | None = None) -> CleanupReport:
    """Run one cleanup pass against EC2.

    Args:
        config: Optional configuration (loaded from env if not provided)
    """
    config = config or SnapKeeperConfig.from_env()
    async with Ec2ResourceApi(config.ec2) as api:
        return await CleanupService(api, config.cleanup).run()


def _handler_config() -> SnapKeeperConfig:
    config = SnapKeeperConfig.from_env()
    setup_logging(config)
    config.log_config()
    return config


def backup_handler(event: Any = None, context: Any = None) -> dict[str, Any]:
    """Scheduled-function handler for the backup pass."""
    report = asyncio.run(run_backup(_handler_config()))
    return report.to_dict()


def cleanup_handler(event: Any = None, context: Any = None) -> dict[str, Any]:
    """Scheduled-function handler for the cleanup pass."""
    report = asyncio.run(run_cleanup(_handler_config()))
    return report.to_dict()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="snapkeeper",
        description="Tag-driven EBS snapshot backup and retention",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("backup", help="Snapshot volumes that are due")

    cleanup_parser = subparsers.add_parser("cleanup", help="Delete expired snapshots")
    cleanup_parser.add_argument(
        "--dry-run", action="store_true", help="Log expired snapshots without deleting them"
    )

    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    # Load configuration
    try:
        config = SnapKeeperConfig.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.command == "cleanup" and args.dry_run:
        config.cleanup = replace(config.cleanup, dry_run=True)

    setup_logging(config, verbose=args.verbose)
    config.log_config()

    try:
        if args.command == "backup":
            report = asyncio.run(run_backup(config))
            print(f"Backup completed: {report.created} created, {report.skipped} skipped, "
                  f"{report.failed} failed")
        else:
            report = asyncio.run(run_cleanup(config))
            print(f"Cleanup completed: {report.deleted} deleted, {report.retained} retained, "
                  f"{report.ignored} ignored")
    except SnapKeeperError as e:
        logger.error(f"{args.command} pass aborted: {e}", exc_info=True)
        print(f"{args.command.capitalize()} failed: {e}", file=sys.stderr)
        sys.exit(1)

    sys.exit(0)


if __name__ == "__main__":
    main()
