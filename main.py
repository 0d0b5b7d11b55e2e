"""
main.py — Command-line entry point for the Opportunity Scout pipeline.
Starts batch scrapes and search-API syncs, watches session progress, and
runs the scheduled daily batch.
"""

import argparse
import json
import sys
import time
from datetime import datetime
from typing import Optional

import database
from config import RATE_LIMITS, validate_config
from email_digest import send_digest
from errors import DuplicateSession, InvalidRequest
from models import SessionSummary
from monitoring import get_logger, setup_logging
from orchestrator import BatchOrchestrator, new_session_id
from progress import ProgressChannel
from rate_limiter import RateLimiter

logger = get_logger("main")


def _startup(title: str):
    """Logging, config warnings and schema, in that order."""
    setup_logging()
    logger.info("=" * 60)
    logger.info(f"OPPORTUNITY SCOUT — {title}")
    logger.info(f"Timestamp: {datetime.now().isoformat()}")
    logger.info("=" * 60)

    for warning in validate_config():
        logger.warning(f"Config: {warning}")

    database.init_db()


def _print_json(data: dict):
    print(json.dumps(data, indent=2, default=str))


def _finish(summary: SessionSummary, duration: float, digest: bool) -> int:
    _print_json(summary.to_dict())
    if digest and summary.total_opportunities_inserted:
        send_digest(summary, database.get_opportunities_by_ids(summary.inserted_ids), duration)
    return 1 if summary.rate_limited else 0


def _load_sources(args: argparse.Namespace) -> list[dict]:
    sources = []
    if args.sources_file:
        with open(args.sources_file, "r") as f:
            loaded = json.load(f)
        if not isinstance(loaded, list):
            raise InvalidRequest(f"{args.sources_file} must contain a JSON list of sources")
        sources.extend(loaded)
    for url in args.source or []:
        sources.append({"url": url, "kind": args.kind})
    return sources


def cmd_batch(args: argparse.Namespace) -> int:
    _startup("Batch scrape")
    run_start = time.time()

    orchestrator = BatchOrchestrator(workers=args.workers)
    try:
        summary = orchestrator.start_batch(args.session_id or new_session_id("batch"), _load_sources(args), args.actor)
    except (InvalidRequest, DuplicateSession) as e:
        logger.error(f"Batch refused: {e}")
        _print_json({"error": str(e), "status": e.http_status})
        return 2
    finally:
        orchestrator.close()

    return _finish(summary, time.time() - run_start, not args.no_digest)


def cmd_search(args: argparse.Namespace) -> int:
    _startup("Search sync")
    run_start = time.time()

    request = {
        "days_back": args.days_back,
        "search_keywords": args.keywords,
        "search_id": args.search_id,
        "source_type": args.source_type,
    }
    orchestrator = BatchOrchestrator()
    try:
        summary = orchestrator.start_search_sync(request, args.actor, session_id=args.session_id)
    except (InvalidRequest, DuplicateSession) as e:
        logger.error(f"Search sync refused: {e}")
        _print_json({"error": str(e), "status": e.http_status})
        return 2
    finally:
        orchestrator.close()

    return _finish(summary, time.time() - run_start, not args.no_digest)


def cmd_watch(args: argparse.Namespace) -> int:
    setup_logging()
    channel = ProgressChannel()
    with channel.subscribe(args.session_id, timeout=args.timeout, poll_interval=args.poll_interval) as subscription:
        for event in subscription:
            for record in event.records:
                print(json.dumps({"event": event.kind, **record.to_dict()}, default=str), flush=True)
    return 0 if channel.is_complete(args.session_id) else 1


def cmd_cleanup(args: argparse.Namespace) -> int:
    _startup("Rate limit cleanup")
    removed = RateLimiter().cleanup(args.older_than_days)
    _print_json({"removed": removed})
    return 0


def run(actor_id: str = "scheduler") -> dict:
    """Execute the scheduled daily batch over every known source."""
    _startup("Daily batch")
    run_start = time.time()

    orchestrator = BatchOrchestrator()
    try:
        summary = orchestrator.start_daily(actor_id)
    finally:
        orchestrator.close()

    RateLimiter().cleanup(RATE_LIMITS.get("cleanup_after_days", 7))

    run_duration = time.time() - run_start
    send_digest(summary, database.get_opportunities_by_ids(summary.inserted_ids), run_duration)
    logger.info("OPPORTUNITY SCOUT — Daily batch complete")
    return summary.to_dict()


def cmd_daily(args: argparse.Namespace) -> int:
    result = run(args.actor)
    _print_json(result)
    return 1 if result["rate_limited"] else 0


def main(argv: Optional[list] = None) -> int:
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        prog="scout",
        description="Opportunity Scout - EMS procurement discovery pipeline"
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # batch command
    batch_parser = subparsers.add_parser("batch", help="Scrape a list of sources as one session")
    batch_parser.add_argument("--session-id", help="Session id (generated if omitted)")
    batch_parser.add_argument("--actor", default="cli", help="Actor the rate limits are counted against")
    batch_parser.add_argument("--source", action="append", help="Source URL (repeatable)")
    batch_parser.add_argument("--kind", choices=["local", "global", "custom"], default="custom",
                              help="Kind for --source URLs")
    batch_parser.add_argument("--sources-file", help="JSON file with a list of {url, name, kind} sources")
    batch_parser.add_argument("--workers", type=int, help="Concurrent sources (1 = sequential)")
    batch_parser.add_argument("--no-digest", action="store_true", help="Don't send the email digest")
    batch_parser.set_defaults(func=cmd_batch)

    # search command
    search_parser = subparsers.add_parser("search", help="Sync opportunities from the search API")
    search_parser.add_argument("--days-back", type=int, default=7, help="Days of captured opportunities (1-90)")
    search_parser.add_argument("--keywords", help="Search keywords")
    search_parser.add_argument("--search-id", help="Saved search id")
    search_parser.add_argument("--source-type", choices=["primary", "secondary", "all"], default="all")
    search_parser.add_argument("--session-id", help="Session id (generated if omitted)")
    search_parser.add_argument("--actor", default="cli", help="Actor the rate limits are counted against")
    search_parser.add_argument("--no-digest", action="store_true", help="Don't send the email digest")
    search_parser.set_defaults(func=cmd_search)

    # watch command
    watch_parser = subparsers.add_parser("watch", help="Stream progress for a session")
    watch_parser.add_argument("session_id", help="Session to watch")
    watch_parser.add_argument("--timeout", type=float, default=300.0,
                              help="Stop after this many seconds without an update")
    watch_parser.add_argument("--poll-interval", type=float, default=1.0,
                              help="Seconds between store reads for updates from other processes")
    watch_parser.set_defaults(func=cmd_watch)

    # daily command
    daily_parser = subparsers.add_parser("daily", help="Run the scheduled daily batch")
    daily_parser.add_argument("--actor", default="scheduler", help="Actor the rate limits are counted against")
    daily_parser.set_defaults(func=cmd_daily)

    # cleanup command
    cleanup_parser = subparsers.add_parser("cleanup", help="Delete expired rate limit attempts")
    cleanup_parser.add_argument("--older-than-days", type=int, default=RATE_LIMITS.get("cleanup_after_days", 7))
    cleanup_parser.set_defaults(func=cmd_cleanup)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
