"""Command line interface for strapi-sync.

Configuration is resolved with unified precedence:
CLI args > env vars (.env loaded first) > YAML config > defaults.
"""

import argparse
import json
import logging
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any

from dotenv import load_dotenv

from . import __version__
from .config import Config
from .config_loader import discover_config_files, ensure_config, load_hierarchical_config
from .config_schema import build_config, to_runtime_config
from .errors import StrapiSyncError
from .logger import setup_logging
from .service import DEFAULT_MERGE_REQUEST, MergeService
from .sync.models import CompareState, Direction, ProgressEvent, ProgressStatus
from .sync.reporter import (
    format_comparison,
    format_plan,
    format_run_report,
    plan_to_json,
    report_to_json,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_RUN_FAILED = 2


def _stderr_print(msg: str) -> None:
    print(msg, file=sys.stderr, flush=True)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def load_runtime_config(args: argparse.Namespace) -> tuple[Config, str | None]:
    """Resolve the runtime config and the log file from every source.

    Returns:
        ``(config, log_file)``.
    """
    # .env first so ${VAR} interpolation in YAML can use its values
    load_dotenv()

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config_files = discover_config_files()
    if config_files:
        logger.info("Configuration loaded from: %s", config_files[0])

    overrides = {
        "source_url": args.source_url,
        "source_token": args.source_token,
        "target_url": args.target_url,
        "target_token": args.target_token,
        "insecure": args.insecure,
        "debug": args.debug,
        "state_dir": args.state_dir,
    }
    config = to_runtime_config(
        unified, {k: v for k, v in overrides.items() if v not in (None, False)}
    )
    return config, args.log_file or unified.logging.file


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_check_schema(service: MergeService, args: argparse.Namespace) -> int:
    report = service.check_schema(args.merge_request, force=True)
    if args.json:
        _print_json(report.model_dump(mode="json"))
    else:
        print("Schemas are compatible.")
    return EXIT_OK


def cmd_compare(service: MergeService, args: argparse.Namespace) -> int:
    snapshot = service.compare(args.merge_request, force=args.force)
    if args.json:
        _print_json(
            {
                "compared_at": snapshot.compared_at,
                "counts": snapshot.counts(),
                "proposed_mappings": len(snapshot.proposed_mappings),
            }
        )
    else:
        print(format_comparison(snapshot))
    return EXIT_OK


def cmd_select(service: MergeService, args: argparse.Namespace) -> int:
    if args.all:
        count = service.select_all(
            args.merge_request, args.table, CompareState(args.all)
        )
        print(f"Selected {count} record(s) of {args.table}")
        return EXIT_OK
    if not args.document_ids:
        _stderr_print("ERROR: give document ids or --all STATE")
        return EXIT_ERROR
    direction = Direction(args.direction) if args.direction else None
    for document_id in args.document_ids:
        selection = service.select(
            args.merge_request, args.table, document_id, direction, args.locale
        )
        print(f"Selected {args.table}:{document_id} ({selection.direction.value})")
    return EXIT_OK


def cmd_exclude(service: MergeService, args: argparse.Namespace) -> int:
    for document_id in args.document_ids:
        service.exclude(args.merge_request, args.table, document_id)
        print(f"Excluded {args.table}:{document_id}")
    return EXIT_OK


def cmd_map(service: MergeService, args: argparse.Namespace) -> int:
    mapping = service.map_manually(
        args.table, args.source_document_id, args.target_document_id, args.locale
    )
    print(
        f"Mapped {mapping.content_type}:{mapping.source_document_id} -> "
        f"{mapping.target_document_id}"
    )
    return EXIT_OK


def cmd_plan(service: MergeService, args: argparse.Namespace) -> int:
    plan = service.plan(args.merge_request)
    if args.json:
        _print_json(plan_to_json(plan))
    else:
        print(format_plan(plan))
    return EXIT_OK


def _print_event(event: ProgressEvent) -> None:
    if event.status == ProgressStatus.PENDING:
        return
    line = (
        f"[{event.processed_items}/{event.total_items}] "
        f"{event.operation} {event.item_key}: {event.status.value}"
    )
    if event.message:
        line += f" ({event.message})"
    _stderr_print(line)


def cmd_run(service: MergeService, args: argparse.Namespace) -> int:
    cancel = threading.Event()
    on_event = None if args.quiet else _print_event
    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(service.run, args.merge_request, on_event, cancel)
        while True:
            try:
                report = future.result(timeout=0.5)
                break
            except FuturesTimeout:
                continue
            except KeyboardInterrupt:
                if not cancel.is_set():
                    cancel.set()
                    _stderr_print("Cancelling after the current item...")

    if args.json:
        _print_json(report_to_json(report))
    else:
        print(format_run_report(report))
    return EXIT_OK if report.status.value == "COMPLETED" else EXIT_RUN_FAILED


COMMANDS = {
    "check-schema": cmd_check_schema,
    "compare": cmd_compare,
    "select": cmd_select,
    "exclude": cmd_exclude,
    "map": cmd_map,
    "plan": cmd_plan,
    "run": cmd_run,
}


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="strapi-sync",
        description="Compare two Strapi instances and merge selected content",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Write a starter config to .strapi_sync/config.yml
  strapi-sync init

  # Compare staging with production
  strapi-sync compare --source-url https://staging.example.com --target-url https://cms.example.com

  # Select everything new in articles, then preview and run
  strapi-sync select api::article.article --all ONLY_IN_SOURCE
  strapi-sync plan
  strapi-sync run

Tokens are best passed as STRAPI_SOURCE_TOKEN / STRAPI_TARGET_TOKEN
env vars (or a .env file) rather than on the command line.
        """,
    )
    parser.add_argument("--source-url", help="Source instance URL")
    parser.add_argument(
        "--source-token",
        help="Source API token (visible in process list -- prefer STRAPI_SOURCE_TOKEN)",
    )
    parser.add_argument("--target-url", help="Target instance URL")
    parser.add_argument(
        "--target-token",
        help="Target API token (visible in process list -- prefer STRAPI_TARGET_TOKEN)",
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Skip SSL certificate verification (use only for development)",
    )
    parser.add_argument("--state-dir", help="Directory for mappings and selections")
    parser.add_argument(
        "-m",
        "--merge-request",
        default=DEFAULT_MERGE_REQUEST,
        help=f"Merge request id (default: {DEFAULT_MERGE_REQUEST})",
    )
    parser.add_argument("--json", action="store_true", help="Print JSON output")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument(
        "--version", action="version", version=f"strapi-sync version {__version__}"
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init", help="Write a starter config file")
    sub.add_parser("check-schema", help="Verify schema compatibility")

    compare = sub.add_parser("compare", help="Compare source and target")
    compare.add_argument(
        "--force", action="store_true", help="Ignore cached comparison"
    )

    select = sub.add_parser("select", help="Select records to sync")
    select.add_argument("table", help="Content type uid")
    select.add_argument("document_ids", nargs="*", help="Document ids")
    select.add_argument(
        "--direction",
        choices=[d.value for d in Direction],
        help="Override the direction derived from the comparison",
    )
    select.add_argument("--locale", help="Locale of the records")
    select.add_argument(
        "--all",
        metavar="STATE",
        choices=[
            CompareState.ONLY_IN_SOURCE.value,
            CompareState.ONLY_IN_TARGET.value,
            CompareState.DIFFERENT.value,
        ],
        help="Select every record of the table in this comparison state",
    )

    exclude = sub.add_parser("exclude", help="Exclude records from comparison")
    exclude.add_argument("table", help="Content type uid")
    exclude.add_argument("document_ids", nargs="+", help="Document ids")

    mapping = sub.add_parser("map", help="Map a source record to a target record")
    mapping.add_argument("table", help="Content type uid")
    mapping.add_argument("source_document_id")
    mapping.add_argument("target_document_id")
    mapping.add_argument("--locale", help="Locale of the records")

    sub.add_parser("plan", help="Show the execution plan")

    run = sub.add_parser("run", help="Execute the selections")
    run.add_argument(
        "--quiet", action="store_true", help="Do not print progress events"
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point that handles errors gracefully."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "init":
        setup_logging(mode="cli", debug=args.debug)
        path = ensure_config()
        print(f"Config: {path}")
        return EXIT_OK

    try:
        config, log_file = load_runtime_config(args)
    except ValueError as e:
        setup_logging(mode="cli", debug=args.debug)
        logger.error("Configuration error: %s", e)
        _stderr_print(f"ERROR: Configuration error: {e}")
        return EXIT_ERROR

    setup_logging(mode="cli", debug=config.debug, log_file=log_file)
    service = MergeService.from_config(config)

    try:
        return COMMANDS[args.command](service, args)
    except StrapiSyncError as e:
        logger.error("%s", e)
        _stderr_print(f"ERROR: {e}")
        return EXIT_ERROR
    except KeyError as e:
        _stderr_print(f"ERROR: {e.args[0] if e.args else e}")
        return EXIT_ERROR
    except KeyboardInterrupt:
        _stderr_print("\nInterrupted.")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
