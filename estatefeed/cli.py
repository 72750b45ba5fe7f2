"""estatefeed — Command-line entrypoint.

    python -m estatefeed.cli init
    python -m estatefeed.cli collect [--url URL ...]
    python -m estatefeed.cli inspect [--url URL ...] [--reset]
    python -m estatefeed.cli sync [--dry-run] [--url URL ...]

Exits 2 when no feed file could be fetched and 3 when the job is already
running elsewhere.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from sqlmodel import Session

from estatefeed.core.errors import FetchError
from estatefeed.core.logging import get_logger
from estatefeed.database import engine, init_db
from estatefeed.scheduler.guard import JobAlreadyRunning
from estatefeed.scheduler.jobs import run_collect, run_inspect, run_sync

logger = get_logger("cli")


def configure_logging(verbose: bool) -> None:
    if not verbose:
        return
    for name in list(logging.root.manager.loggerDict):
        if name.startswith("estatefeed"):
            logging.getLogger(name).setLevel(logging.DEBUG)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="estatefeed feed pipeline")
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    commands = parser.add_subparsers(dest="command")

    commands.add_parser("init", help="create database tables and exit")

    for name, help_text in (
        ("collect", "download every endpoint and store a raw snapshot"),
        ("inspect", "infer the schema of the latest stored payloads"),
        ("sync", "reconcile the feed into the catalog tables"),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument(
            "--url",
            action="append",
            dest="urls",
            help="endpoint URL (repeatable; overrides FEED_ENDPOINTS)",
        )
        if name == "inspect":
            sub.add_argument(
                "--reset",
                action="store_true",
                default=None,
                help="replace stored observations instead of accumulating",
            )
        if name == "sync":
            sub.add_argument(
                "--dry-run",
                action="store_true",
                help="download and count records without writing",
            )
    return parser


async def _run(args: argparse.Namespace, session: Session) -> dict:
    if args.command == "collect":
        return await run_collect(session, endpoints=args.urls)
    if args.command == "inspect":
        return await run_inspect(session, endpoints=args.urls, reset=args.reset)
    summary = await run_sync(session, dry_run=args.dry_run, endpoints=args.urls)
    return summary.to_dict()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if args.command is None:
        parser.print_help()
        return 1

    init_db()
    if args.command == "init":
        return 0

    with Session(engine) as session:
        try:
            result = asyncio.run(_run(args, session))
        except FetchError as e:
            logger.error(f"{args.command} failed: {e}", extra={"job": args.command})
            return 2
        except JobAlreadyRunning as e:
            logger.warning(str(e), extra={"job": e.job})
            return 3

    print(json.dumps(result, indent=2, ensure_ascii=False, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
