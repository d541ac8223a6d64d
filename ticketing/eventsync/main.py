"""
EventSync admin CLI.

Operational entry point for inspecting and healing events across the
ledger, the database and the object store:

    eventsync resolve <event_id>      canonical view with divergences
    eventsync check <event_id>        provenance and discrepancy report
    eventsync repair <event_id>       corrective writes for one event
    eventsync sync [<event_id> ...]   sweep (all database events when no ids)
    eventsync health                  store health

Output is JSON on stdout. Exit codes: 0 success, 2 partial success,
1 failure.

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Adapters are always closed, even when a command fails
    - Logs go to stderr, results to stdout

How to change safely:
    - Keep exit codes stable, cron jobs and alerts depend on them
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

import json_log_formatter

from .config import EngineConfig
from .errors import EventSyncError
from .orchestrator import EventOrchestrator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PARTIAL = 2


def setup_logging(config: EngineConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Engine configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="eventsync",
        description="Inspect and repair events across ledger, database and object store",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    resolve = commands.add_parser("resolve", help="Show the canonical view of an event")
    resolve.add_argument("event_id")

    check = commands.add_parser("check", help="Report provenance and discrepancies")
    check.add_argument("event_id")

    repair = commands.add_parser("repair", help="Repair one event")
    repair.add_argument("event_id")

    sync = commands.add_parser("sync", help="Repair many events")
    sync.add_argument("event_ids", nargs="*", help="Events to sync (default: all in database)")

    commands.add_parser("health", help="Check store health")
    return parser


async def run_command(args: argparse.Namespace, events: EventOrchestrator) -> tuple[int, Any]:
    """Execute one CLI command.

    Returns:
        Tuple of (exit code, JSON-serializable payload)
    """
    if args.command == "resolve":
        resolved = await events.get_event_by_id(args.event_id)
        if resolved is None:
            return EXIT_FAILED, {"event_id": args.event_id, "error": "NOT_FOUND_ANYWHERE"}
        code = EXIT_OK if resolved.is_consistent else EXIT_PARTIAL
        return code, resolved.to_dict()

    if args.command == "check":
        report = await events.check_data_consistency(args.event_id)
        if not report.provenance.any:
            return EXIT_FAILED, report.to_dict()
        return (EXIT_OK if report.consistent else EXIT_PARTIAL), report.to_dict()

    if args.command == "repair":
        result = await events.repair_event_consistency(args.event_id)
        if result.success:
            code = EXIT_OK
        elif any(action.succeeded for action in result.actions):
            code = EXIT_PARTIAL
        else:
            code = EXIT_FAILED
        return code, result.to_dict()

    if args.command == "sync":
        report = await events.sync_data_consistency(args.event_ids or None)
        if report.failed == 0:
            code = EXIT_OK
        elif report.synced:
            code = EXIT_PARTIAL
        else:
            code = EXIT_FAILED
        return code, report.to_dict()

    if args.command == "health":
        health = await events.health_check()
        codes = {"healthy": EXIT_OK, "degraded": EXIT_PARTIAL, "unhealthy": EXIT_FAILED}
        return codes[health.overall.value], health.to_dict()

    raise ValueError(f"Unknown command: {args.command}")


async def run(args: argparse.Namespace, config: EngineConfig) -> int:
    """Connect, run one command, print its result and close."""
    events = EventOrchestrator.from_config(config)
    try:
        await events.connect()
        code, payload = await run_command(args, events)
    except EventSyncError as e:
        logger.error(f"Command failed: {e}", extra={"code": e.code})
        code, payload = EXIT_FAILED, {"error": e.code, "message": e.message, "details": e.details}
    finally:
        await events.close()

    print(json.dumps(payload, indent=2, default=str))
    return code


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = EngineConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_FAILED)

    setup_logging(config)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    config.log_config()

    sys.exit(asyncio.run(run(args, config)))


if __name__ == "__main__":
    main()
