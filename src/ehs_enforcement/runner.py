"""Command line entry point for scraping sessions, duplicate scans and match reviews."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import AgencyConfig, EnforcementConfig, ScrapingConfig
from .database import EnforcementDatabase
from .duplicate_detector import RESOURCE_TYPES, DuplicateDetector
from .errors import ReviewError
from .logging_config import get_logger, session_logger, setup_logging
from .models import (
    AGENCY_EA,
    AGENCY_HSE,
    REVIEW_APPROVED,
    REVIEW_FLAGGED,
    REVIEW_PENDING,
    REVIEW_SKIPPED,
    SESSION_COMPLETED,
    SESSION_STOPPED,
    MatchReview,
    ScrapeSession,
)
from .offender_resolver import OffenderResolver
from .progress import ProgressBroadcaster
from .registry import CompaniesHouseClient, NullRegistry
from .session import SessionManager

logger = get_logger("runner")

DEFAULT_DATABASES = {AGENCY_HSE: "convictions", AGENCY_EA: "enforcement_actions"}


def build_registry(config: EnforcementConfig) -> Any:
    api_key = config.registry_api_key
    if api_key:
        return CompaniesHouseClient(api_key)
    return NullRegistry()


def scraping_config_from_args(base: ScrapingConfig, args: argparse.Namespace) -> ScrapingConfig:
    """Apply command line threshold overrides on top of the loaded settings."""
    return base.with_overrides(
        max_pages=args.max_pages,
        consecutive_existing_threshold=args.threshold,
        max_consecutive_errors=args.max_errors,
        detail_delay_ms=args.detail_delay_ms,
        pause_between_pages_ms=args.page_pause_ms,
        refresh_existing=False if args.skip_existing else None,
    )


def range_params_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    if args.start_page is not None:
        params["start_page"] = args.start_page
    if args.end_page is not None:
        params["end_page"] = args.end_page
    if args.date_from:
        params["date_from"] = args.date_from
    if args.date_to:
        params["date_to"] = args.date_to
    return params


async def run_scrape(
    db: EnforcementDatabase,
    resolver: OffenderResolver,
    agency: str,
    database: str,
    range_params: Dict[str, Any],
    config: ScrapingConfig,
    agency_config: Optional[AgencyConfig] = None,
) -> ScrapeSession:
    """Run one session to completion, logging each progress event."""
    broadcaster = ProgressBroadcaster()
    manager = SessionManager(
        db,
        config=config,
        resolver=resolver,
        broadcaster=broadcaster,
        agency_configs={agency_config.code: agency_config} if agency_config else {},
    )
    queue = broadcaster.subscribe()
    handle = manager.start(agency, database, range_params)
    progress_log = session_logger("runner", handle.session_id, agency)

    async def report_progress() -> None:
        while True:
            event = await queue.get()
            progress_log.info("[%s] %s %s", event.event, event.status, event.counters)

    reporter = asyncio.create_task(report_progress())
    try:
        return await handle.wait()
    finally:
        reporter.cancel()
        broadcaster.unsubscribe(queue)


def session_exit_code(session: ScrapeSession) -> int:
    if session.status == SESSION_COMPLETED:
        return 0
    if session.status == SESSION_STOPPED:
        return 2
    return 1


def _review_to_dict(review: MatchReview) -> Dict[str, Any]:
    return {
        "id": review.id,
        "offender_id": review.offender_id,
        "status": review.status,
        "confidence_score": review.confidence_score,
        "candidate_companies": review.candidate_companies,
        "selected_candidate": review.selected_candidate,
        "reviewed_by": review.reviewed_by,
        "reviewed_at": review.reviewed_at,
        "review_notes": review.review_notes,
    }


def _print_session(session: ScrapeSession, as_json: bool) -> None:
    if as_json:
        print(json.dumps(session.to_dict(), indent=2, default=str))
        return
    counters = session.counters
    print(f"\n{'=' * 60}")
    print(f"Session {session.session_id}: {session.status.upper()}")
    print(f"{'=' * 60}")
    print(f"Agency: {session.agency_code} ({session.database})")
    print(f"Stop reason: {session.stop_reason}")
    print(f"Pages processed: {counters.pages_processed}")
    print(f"Records found: {counters.records_found}")
    print(f"  Created: {counters.records_created}")
    print(f"  Updated: {counters.records_updated}")
    print(f"  Existing: {counters.records_existing}")
    print(f"  Errors: {counters.errors_count}")
    if session.error_message:
        print(f"Error: {session.error_message}")
    print(f"{'=' * 60}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ehs-enforcement",
        description="Scrape HSE and EA enforcement registers and reconcile offenders",
    )
    parser.add_argument("--config", type=Path, help="Path to YAML configuration file")
    parser.add_argument("--db-path", type=Path, help="Path to database (default: database/ehs_enforcement.db)")
    parser.add_argument("--log-file", type=Path, help="Write logs to file (default: logs/ehs_enforcement.log)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--json", action="store_true", help="Output results as JSON")

    subparsers = parser.add_subparsers(dest="command", required=True)

    scrape = subparsers.add_parser("scrape", help="Run a scraping session")
    scrape.add_argument("agency", choices=[AGENCY_HSE, AGENCY_EA])
    scrape.add_argument("--database", help="Agency database (default: convictions for hse)")
    scrape.add_argument("--start-page", type=int, help="First listing page (HSE)")
    scrape.add_argument("--end-page", type=int, help="Last listing page (HSE)")
    scrape.add_argument("--date-from", help="Start of action date range, YYYY-MM-DD (EA)")
    scrape.add_argument("--date-to", help="End of action date range, YYYY-MM-DD (EA)")
    scrape.add_argument("--max-pages", type=int, help="Stop after this many listing pages")
    scrape.add_argument("--threshold", type=int, help="Stop after this many consecutive existing records")
    scrape.add_argument("--max-errors", type=int, help="Fail after this many consecutive record errors")
    scrape.add_argument("--detail-delay-ms", type=int, help="Delay between detail fetches")
    scrape.add_argument("--page-pause-ms", type=int, help="Pause between listing pages")
    scrape.add_argument(
        "--skip-existing",
        action="store_true",
        help="Do not re-fetch details for records already stored",
    )

    duplicates = subparsers.add_parser("duplicates", help="List near-duplicate records")
    duplicates.add_argument("resource_type", choices=RESOURCE_TYPES)

    reviews = subparsers.add_parser("reviews", help="Inspect and act on offender match reviews")
    review_actions = reviews.add_subparsers(dest="action", required=True)

    review_list = review_actions.add_parser("list", help="List match reviews")
    review_list.add_argument(
        "--status",
        choices=[REVIEW_PENDING, REVIEW_APPROVED, REVIEW_SKIPPED, REVIEW_FLAGGED],
        help="Only reviews in this status",
    )

    for name, help_text in (
        ("approve", "Link the review's offender to a candidate"),
        ("skip", "Keep the review's offender as a distinct organisation"),
        ("flag", "Mark the review for follow-up"),
    ):
        action = review_actions.add_parser(name, help=help_text)
        action.add_argument("review_id", type=int)
        if name == "approve":
            action.add_argument("--candidate", type=int, default=0, help="Index of the candidate (default: 0)")
        action.add_argument("--reviewed-by", help="Reviewer name")
        action.add_argument("--notes", help="Review notes")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(
        log_file=args.log_file,
        level=logging.DEBUG if args.verbose else logging.INFO,
    )

    config = EnforcementConfig(args.config)
    db = EnforcementDatabase(db_path=args.db_path) if args.db_path else EnforcementDatabase()
    resolver = OffenderResolver(db, registry=build_registry(config), config=config.scraping)

    try:
        if args.command == "scrape":
            database = args.database or DEFAULT_DATABASES[args.agency]
            session = asyncio.run(
                run_scrape(
                    db,
                    resolver,
                    args.agency,
                    database,
                    range_params_from_args(args),
                    scraping_config_from_args(config.scraping, args),
                    config.get_agency(args.agency),
                )
            )
            _print_session(session, args.json)
            return session_exit_code(session)

        if args.command == "duplicates":
            groups = DuplicateDetector(db, config.scraping).find_duplicates(args.resource_type)
            if args.json:
                print(json.dumps([group.__dict__ for group in groups], indent=2))
            else:
                print(f"{len(groups)} duplicate {args.resource_type} groups")
                for group in groups:
                    print(f"  {group.record_ids} ({', '.join(group.reasons)})")
            return 0

        if args.action == "list":
            reviews = db.list_match_reviews(args.status)
            if args.json:
                print(json.dumps([_review_to_dict(review) for review in reviews], indent=2))
            else:
                for review in reviews:
                    print(
                        f"#{review.id} offender={review.offender_id} status={review.status} "
                        f"score={review.confidence_score:.2f} candidates={len(review.candidate_companies)}"
                    )
            return 0

        if args.action == "approve":
            review = resolver.approve(
                args.review_id,
                candidate_index=args.candidate,
                reviewed_by=args.reviewed_by,
                notes=args.notes,
            )
        elif args.action == "skip":
            review = resolver.skip(args.review_id, reviewed_by=args.reviewed_by, notes=args.notes)
        else:
            review = resolver.flag(args.review_id, reviewed_by=args.reviewed_by, notes=args.notes)

        if args.json:
            print(json.dumps(_review_to_dict(review), indent=2))
        else:
            print(f"Review #{review.id} is now {review.status}")
        return 0

    except ReviewError as exc:
        logger.error("Review action failed: %s", exc)
        return 1
    except ValueError as exc:
        logger.error("Invalid arguments: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
