"""Command-line entry point: ``order-sync``.

Runs one-shot operations against the local replica and the cloud API:
a sync round, outbox status, CSV export, and failed-operation handling.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from . import __version__
from .errors import AuthError, OrderSyncError
from .lifespan import Runtime, sync_runtime
from .logger import setup_logging
from .orders import export_filename
from .sync.reporter import (
    format_queue_status,
    format_sync_report,
    report_to_json,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _cmd_sync(runtime: Runtime, args: argparse.Namespace) -> int:
    if not runtime.client.has_token:
        print(
            "ERROR: No access token. Set ORDER_SYNC_ACCESS_TOKEN or pass --access-token.",
            file=sys.stderr,
        )
        return 1

    try:
        report = await runtime.engine.on_user_authenticated(args.user_id)
    except AuthError as e:
        print(f"ERROR: Access token rejected: {e}", file=sys.stderr)
        return 1
    except OrderSyncError as e:
        print(f"ERROR: Sync failed: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(report_to_json(report), indent=2))
    else:
        print(format_sync_report(report))
    return 1 if report.errors else 0


async def _cmd_status(runtime: Runtime, args: argparse.Namespace) -> int:
    pending = await runtime.queue.get_pending()
    failed = await runtime.queue.get_failed()
    if args.json:
        print(
            json.dumps(
                {
                    "pending": [
                        op.model_dump(mode="json", exclude={"payload"})
                        for op in pending
                    ],
                    "failed": [
                        op.model_dump(mode="json", exclude={"payload"})
                        for op in failed
                    ],
                },
                indent=2,
            )
        )
    else:
        print(format_queue_status(pending, failed))
    return 0


async def _cmd_export(runtime: Runtime, args: argparse.Namespace) -> int:
    text = await runtime.orders.export(
        user_id=args.user_id,
        search=args.search,
        status=args.status,
        sort=args.sort,
    )
    output = Path(args.output or export_filename())
    output.write_text(text, encoding="utf-8")
    print(f"Exported orders to {output}", file=sys.stderr)
    return 0


async def _cmd_clear_failed(runtime: Runtime, args: argparse.Namespace) -> int:
    failed = await runtime.queue.get_failed()
    await runtime.queue.clear_failed()
    print(f"Cleared {len(failed)} failed operation(s)", file=sys.stderr)
    return 0


async def _cmd_retry_failed(runtime: Runtime, args: argparse.Namespace) -> int:
    count = await runtime.queue.requeue_failed()
    print(f"Requeued {count} failed operation(s)", file=sys.stderr)
    if count and runtime.client.has_token:
        await runtime.engine.set_access_token(runtime.config.access_token)
    return 0


COMMANDS = {
    "sync": _cmd_sync,
    "status": _cmd_status,
    "export": _cmd_export,
    "clear-failed": _cmd_clear_failed,
    "retry-failed": _cmd_retry_failed,
}


async def main(
    args: argparse.Namespace, config_overrides: dict | None = None
) -> int:
    """Open a runtime and dispatch the chosen subcommand.

    Returns:
        Process exit code.
    """
    async with sync_runtime(config_overrides=config_overrides) as runtime:
        return await COMMANDS[args.command](runtime, args)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="order-sync",
        description="order-sync - reconcile the local order replica with the cloud API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Sync the local replica for a signed-in user
  order-sync sync --user-id 1234

  # Show queued and permanently failed remote operations
  order-sync status

  # Export commented orders, newest first
  order-sync export --status commented --output orders.csv

  # Give dropped operations another full set of retries
  order-sync retry-failed
        """,
    )

    parser.add_argument(
        "--api-url",
        help="Override API base URL (takes precedence over ORDER_SYNC_API_URL env var and config files)",
    )
    parser.add_argument(
        "--access-token",
        help="Bearer token for the API"
        " (visible in process list -- prefer ORDER_SYNC_ACCESS_TOKEN env var)",
    )
    parser.add_argument(
        "--data-dir",
        help="Directory holding the local replica (default: .order_sync/data)",
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Skip SSL certificate verification (use only for development)",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument(
        "--version",
        action="version",
        version=f"order-sync version {__version__}",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    p_sync = sub.add_parser("sync", help="Run one reconciliation round")
    p_sync.add_argument("--user-id", required=True, help="Signed-in user id")
    p_sync.add_argument(
        "--json", action="store_true", help="Print the report as JSON"
    )

    p_status = sub.add_parser("status", help="Show the outbox")
    p_status.add_argument(
        "--json", action="store_true", help="Print the outbox as JSON"
    )

    p_export = sub.add_parser("export", help="Export orders as CSV")
    p_export.add_argument(
        "--output", help="Output file (default: orders-YYYY-MM-DD.csv)"
    )
    p_export.add_argument("--user-id", help="Only this user's orders")
    p_export.add_argument("--search", default="", help="Search query")
    p_export.add_argument(
        "--status",
        default="all",
        choices=[
            "all",
            "uncommented",
            "commented",
            "comment_revealed",
            "reimbursed",
        ],
        help="Status filter (default: all)",
    )
    p_export.add_argument(
        "--sort",
        default="date-desc",
        choices=["date-desc", "date-asc"],
        help="Sort by order date (default: date-desc)",
    )

    sub.add_parser("clear-failed", help="Forget permanently failed operations")
    sub.add_parser(
        "retry-failed", help="Requeue permanently failed operations"
    )
    return parser


def _config_overrides(args: argparse.Namespace) -> dict:
    overrides = {}
    if args.api_url:
        overrides["url"] = args.api_url
    if args.access_token:
        overrides["access_token"] = args.access_token
    if args.data_dir:
        overrides["data_dir"] = args.data_dir
    if args.insecure:
        overrides["insecure"] = True
    if args.debug:
        overrides["debug"] = True
    return overrides


def run(argv: list[str] | None = None) -> None:
    """Entry point that handles errors gracefully and parses CLI arguments."""
    args = build_parser().parse_args(argv)
    setup_logging(mode="cli", debug=args.debug, log_file=args.log_file)

    overrides = _config_overrides(args)
    try:
        code = asyncio.run(main(args, overrides or None))
    except RuntimeError:
        # Error already printed to stderr by the runtime
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(0)
    sys.exit(code)


if __name__ == "__main__":
    run()
