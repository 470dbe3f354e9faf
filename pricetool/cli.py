"""
Command line interface.

    pricetool init-db
    pricetool ingest FILE [FILE ...] [--workers N] [--supersede] [--timeout S]

``ingest`` exits with status 1 when any load failed, 2 when the database
settings cannot run loads and 130 when interrupted.
"""
import argparse
import json
import sys
from typing import List, Optional

from pricetool.config.settings import get_settings
from pricetool.utils.errors import ConfigurationError
from pricetool.utils.logger import configure_logging, get_logger

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pricetool",
        description="Load hospital price transparency files into the pricing store",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: LOG_LEVEL or INFO)")
    parser.add_argument(
        "--log-format",
        choices=["json", "console"],
        default=None,
        help="Log output format (default: LOG_FORMAT or json)",
    )
    parser.add_argument("--log-file", default=None, help="Write logs to this file under ./logs")

    subcommands = parser.add_subparsers(dest="command", required=True)

    subcommands.add_parser("init-db", help="Create the database tables")

    ingest = subcommands.add_parser("ingest", help="Ingest one or more hospital files")
    ingest.add_argument("files", nargs="+", help="CSV or JSON machine-readable files")
    ingest.add_argument("--workers", type=int, default=None, help="Concurrent loads (default: INGEST_MAX_WORKERS)")
    ingest.add_argument(
        "--supersede",
        action="store_true",
        help="Replace earlier loads of the same hospital instead of adding a new one",
    )
    ingest.add_argument("--timeout", type=float, default=None, help="Per-load timeout in seconds")
    ingest.add_argument("--no-prefetch", action="store_true", help="Read rows on the loading thread")
    ingest.add_argument("--summary", action="store_true", help="Print one JSON result line per file")
    return parser


def _init_db() -> int:
    from pricetool.config.database import init_db

    init_db()
    return 0


def _ingest(args: argparse.Namespace) -> int:
    from pricetool.config.database import SessionLocal, reference_engine
    from pricetool.services.ingestion.resolver import ReferenceResolver
    from pricetool.services.ingestion.runner import IngestionRunner

    settings = get_settings()
    resolver = ReferenceResolver.for_engine(
        reference_engine,
        max_attempts=settings.resolver_max_attempts,
        backoff_seconds=settings.resolver_backoff_seconds,
    )
    try:
        runner = IngestionRunner(
            resolver,
            session_factory=SessionLocal,
            settings=settings,
            max_workers=args.workers,
            timeout_seconds=args.timeout,
            prefetch=not args.no_prefetch,
        )
    except ConfigurationError as e:
        logger.error("Invalid database configuration", error=e.message, **e.details)
        print(f"pricetool: {e.message}", file=sys.stderr)
        return 2

    try:
        results = runner.run(args.files, supersede=args.supersede)
    except KeyboardInterrupt:
        runner.cancel()
        logger.warning("Interrupted; running loads were rolled back")
        return 130

    if args.summary:
        for result in results:
            print(json.dumps(result.to_dict(), default=str))

    failed = [result for result in results if not result.succeeded]
    for result in failed:
        logger.error(
            "Load failed",
            file_path=result.file_path,
            error_type=result.error_type,
            error=result.error_message,
        )
    return 1 if failed else 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(
        log_level=args.log_level or settings.log_level,
        log_format=args.log_format or settings.log_format,
        log_file=args.log_file,
    )

    if args.command == "init-db":
        return _init_db()
    return _ingest(args)


if __name__ == "__main__":
    sys.exit(main())
