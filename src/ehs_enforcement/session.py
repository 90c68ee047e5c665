"""Scrape session controller.

Drives one scraping run end to end (listing -> detail -> normalize ->
resolve -> persist) as a state machine::

    pending -> running -> completed | failed | stopped

Each session runs as its own asyncio task. Within a session everything is
sequential so the detail-fetch delay paces requests to the agency site.
Stop requests are cooperative and observed at page and record boundaries.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .config import AgencyConfig, ScrapingConfig
from .database import STATUS_CREATED, STATUS_UPDATED, EnforcementDatabase
from .errors import FetchError, ParseError, SessionError
from .logging_config import get_logger, session_logger
from .models import (
    EVENT_COMPLETED,
    EVENT_FAILED,
    EVENT_PROGRESS,
    EVENT_STARTED,
    EVENT_STOPPED,
    SESSION_COMPLETED,
    SESSION_FAILED,
    SESSION_PENDING,
    SESSION_RUNNING,
    SESSION_STOPPED,
    ProgressEvent,
    ScrapeSession,
    SessionCounters,
    SummaryRecord,
)
from .normalizer import normalize
from .offender_resolver import OffenderResolver
from .progress import ProgressBroadcaster
from .sources import AgencySource, ListingRequest, build_source

logger = get_logger("session")

STOP_MAX_PAGES = "max_pages"
STOP_EXISTING_THRESHOLD = "consecutive_existing_threshold"
STOP_RANGE_EXHAUSTED = "range_exhausted"
STOP_REQUESTED = "stop_requested"
STOP_CONSECUTIVE_ERRORS = "max_consecutive_errors"
STOP_SUMMARY_FETCH_FAILED = "summary_fetch_failed"
STOP_UNEXPECTED_ERROR = "unexpected_error"

_TERMINAL_EVENTS = {
    SESSION_COMPLETED: EVENT_COMPLETED,
    SESSION_FAILED: EVENT_FAILED,
    SESSION_STOPPED: EVENT_STOPPED,
}


class ScrapeSessionController:
    """Owns and is the only writer of one ``ScrapeSession``."""

    def __init__(
        self,
        session: ScrapeSession,
        source: AgencySource,
        db: EnforcementDatabase,
        resolver: OffenderResolver,
        *,
        config: Optional[ScrapingConfig] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self.session = session
        self.source = source
        self.db = db
        self.resolver = resolver
        self.config = config or source.config
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self._sleep = sleep
        self.log = session_logger("session", session.session_id, session.agency_code)
        self._stop_event = asyncio.Event()
        self._consecutive_existing = 0
        self._consecutive_errors = 0

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def counters(self) -> SessionCounters:
        return self.session.counters

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self) -> bool:
        """Ask the session to stop at its next boundary; ignored once terminal."""
        if self.session.is_terminal:
            return False
        if not self._stop_event.is_set():
            self.log.info("Stop requested")
            self._stop_event.set()
        return True

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------
    async def run(self) -> ScrapeSession:
        if self.session.status != SESSION_PENDING:
            raise SessionError(f"Session {self.session_id} is already {self.session.status}")

        self.db.ensure_agency(self.session.agency_code)
        self.session.started_at = datetime.utcnow().replace(microsecond=0)
        self._transition(SESSION_RUNNING)
        self._publish(EVENT_STARTED)
        self.log.info(
            "Started: agency=%s database=%s range=%s",
            self.session.agency_code,
            self.session.database,
            self.session.range_params,
        )

        try:
            status, reason = await self._run_pages()
            self._finish(status, reason)
        except FetchError as exc:
            self.log.error("Listing fetch failed: %s", exc)
            self._finish(SESSION_FAILED, STOP_SUMMARY_FETCH_FAILED, error=str(exc))
        except asyncio.CancelledError:
            self._finish(SESSION_STOPPED, STOP_REQUESTED)
            raise
        except Exception as exc:
            self.log.exception("Failed unexpectedly: %s", exc)
            self._finish(SESSION_FAILED, STOP_UNEXPECTED_ERROR, error=f"{type(exc).__name__}: {exc}")
        return self.session

    async def _run_pages(self) -> Tuple[str, str]:
        pages_started = 0
        for request in self.source.listing_requests(self.session.range_params):
            if pages_started >= self.config.max_pages:
                return SESSION_COMPLETED, STOP_MAX_PAGES
            if self.stop_requested:
                return SESSION_STOPPED, STOP_REQUESTED
            if pages_started > 0 and self.config.page_pause_seconds > 0:
                await self._pause(self.config.page_pause_seconds)
                if self.stop_requested:
                    return SESSION_STOPPED, STOP_REQUESTED

            pages_started += 1
            records_on_page = await self._process_page(request)

            if self.stop_requested:
                return SESSION_STOPPED, STOP_REQUESTED
            if self._consecutive_errors >= self.config.max_consecutive_errors > 0:
                return SESSION_FAILED, STOP_CONSECUTIVE_ERRORS
            if 0 < self.config.consecutive_existing_threshold <= self._consecutive_existing:
                self.log.info("Reached %s consecutive existing records", self._consecutive_existing)
                return SESSION_COMPLETED, STOP_EXISTING_THRESHOLD
            if records_on_page == 0 and self.source.paginated:
                return SESSION_COMPLETED, STOP_RANGE_EXHAUSTED
        return SESSION_COMPLETED, STOP_RANGE_EXHAUSTED

    async def _process_page(self, request: ListingRequest) -> int:
        page = await self.source.fetch_summaries(request)
        page_counters = SessionCounters(records_found=len(page.records))
        created_ids: List[str] = []
        self.counters.records_found += len(page.records)

        for summary in page.records:
            if self.stop_requested:
                self.log.info("Stopping mid-page %s", request.page_number)
                break
            status = await self._process_record(summary)
            if status == STATUS_CREATED:
                page_counters.records_created += 1
                created_ids.append(summary.source_id)
            elif status == STATUS_UPDATED:
                page_counters.records_updated += 1
            elif status is None:
                page_counters.errors_count += 1
            else:
                page_counters.records_existing += 1
            if self._consecutive_errors >= self.config.max_consecutive_errors > 0:
                break

        self.counters.pages_processed += 1
        self.db.log_page(
            self.session_id,
            request.page_number,
            page_label=request.label,
            records_found=page_counters.records_found,
            records_created=page_counters.records_created,
            records_updated=page_counters.records_updated,
            records_existing=page_counters.records_existing,
            errors_count=page_counters.errors_count,
            created_source_ids=created_ids,
        )
        self.db.save_session(self.session)
        self._publish(EVENT_PROGRESS)
        self.log.info(
            "Page %s: found=%s created=%s updated=%s existing=%s errors=%s",
            request.page_number,
            page_counters.records_found,
            page_counters.records_created,
            page_counters.records_updated,
            page_counters.records_existing,
            page_counters.errors_count,
        )
        return len(page.records)

    async def _process_record(self, summary: SummaryRecord) -> Optional[str]:
        """Enrich, normalize, resolve and persist one record.

        Returns the upsert status, or None when the record failed.
        """
        if not self.config.refresh_existing and self.db.record_exists(summary.agency_code, summary.source_id):
            self._record_existing()
            return "existing"

        try:
            detail = await self.source.enrich(summary)
        except (FetchError, ParseError) as exc:
            self.counters.errors_count += 1
            self._consecutive_errors += 1
            self.log.warning(
                "Record %s failed (%s consecutive): %s",
                summary.source_id,
                self._consecutive_errors,
                exc,
            )
            return None

        self._consecutive_errors = 0
        attrs = normalize(detail)
        resolution = await self.resolver.resolve(attrs.offender)
        result = self.db.upsert_canonical_record(
            attrs.agency_code,
            attrs.source_id,
            attrs.to_db_params(),
            record_kind=attrs.record_kind,
            offender_id=resolution.offender.id,
        )

        if result.status == STATUS_CREATED:
            self.counters.records_created += 1
            self._consecutive_existing = 0
        elif result.status == STATUS_UPDATED:
            self.counters.records_updated += 1
            self._consecutive_existing += 1
        else:
            self._record_existing()
        return result.status

    def _record_existing(self) -> None:
        self.counters.records_existing += 1
        self._consecutive_existing += 1
        self._consecutive_errors = 0

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------
    async def _pause(self, seconds: float) -> None:
        if self._sleep is not None:
            await self._sleep(seconds)
            return
        # Wake early when a stop arrives during the pause.
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            self.log.debug("Paused %.1fs between pages", seconds)

    def _transition(self, status: str) -> None:
        previous = self.session.status
        self.session.status = status
        self.db.save_session(self.session)
        self.log.debug("%s -> %s", previous, status)

    def _finish(self, status: str, reason: str, *, error: Optional[str] = None) -> None:
        self.session.completed_at = datetime.utcnow().replace(microsecond=0)
        self.session.stop_reason = reason
        self.session.error_message = error
        self._transition(status)
        self._publish(_TERMINAL_EVENTS[status], message=error or reason)
        self.log.info(
            "Finished %s (%s): pages=%s found=%s created=%s updated=%s existing=%s errors=%s",
            status,
            reason,
            self.counters.pages_processed,
            self.counters.records_found,
            self.counters.records_created,
            self.counters.records_updated,
            self.counters.records_existing,
            self.counters.errors_count,
        )

    def _publish(self, event: str, message: Optional[str] = None) -> None:
        try:
            self.broadcaster.publish(
                ProgressEvent(
                    session_id=self.session_id,
                    event=event,
                    status=self.session.status,
                    counters=self.counters.to_dict(),
                    message=message,
                )
            )
        except Exception as exc:
            self.log.warning("Progress broadcast failed: %s", exc)


@dataclass
class SessionHandle:
    """What ``SessionManager.start`` gives back to the caller."""

    controller: ScrapeSessionController
    task: "asyncio.Task[ScrapeSession]"

    @property
    def session_id(self) -> str:
        return self.controller.session_id

    @property
    def session(self) -> ScrapeSession:
        return self.controller.session

    @property
    def done(self) -> bool:
        return self.task.done()

    def stop(self) -> bool:
        return self.controller.request_stop()

    async def wait(self) -> ScrapeSession:
        return await self.task


@dataclass
class SessionManager:
    """Starts sessions as independent tasks and keeps the handles it created.

    The manager is an ordinary object owned by its caller; several managers
    may coexist. ``agency_configs`` maps agency codes to their settings, which
    reach each session's source through ``source_factory``.
    """

    db: EnforcementDatabase
    config: ScrapingConfig = field(default_factory=ScrapingConfig)
    resolver: Optional[OffenderResolver] = None
    broadcaster: ProgressBroadcaster = field(default_factory=ProgressBroadcaster)
    agency_configs: Dict[str, AgencyConfig] = field(default_factory=dict)
    source_factory: Callable[..., AgencySource] = build_source
    _handles: Dict[str, SessionHandle] = field(default_factory=dict, init=False)

    def __post_init__(self) -> None:
        if self.resolver is None:
            self.resolver = OffenderResolver(self.db, config=self.config)

    def start(
        self,
        agency: str,
        database: str,
        range_params: Optional[Dict[str, Any]] = None,
        *,
        config: Optional[ScrapingConfig] = None,
        source: Optional[AgencySource] = None,
    ) -> SessionHandle:
        """Create a pending session and schedule it on the running event loop.

        Raises ``ValueError`` when the agency config disables the agency or
        does not list ``database``.
        """
        session_config = config or self.config
        agency_config = self.agency_configs.get(agency.lower())
        session = ScrapeSession(
            session_id=uuid.uuid4().hex,
            agency_code=agency.lower(),
            database=database,
            range_params=dict(range_params or {}),
        )
        source = source or self.source_factory(agency, database, session_config, agency_config=agency_config)
        controller = ScrapeSessionController(
            session,
            source,
            self.db,
            self.resolver,
            config=session_config,
            broadcaster=self.broadcaster,
        )
        self.db.save_session(session)
        task = asyncio.create_task(controller.run(), name=f"scrape-session-{session.session_id}")
        handle = SessionHandle(controller=controller, task=task)
        self._handles[session.session_id] = handle
        logger.info("Scheduled session %s for %s/%s", session.session_id, agency, database)
        return handle

    def stop(self, session_id: str) -> bool:
        """Request a stop. Returns False when the session is unknown."""
        handle = self._handles.get(session_id)
        if handle is None:
            return False
        handle.stop()
        return True

    def get(self, session_id: str) -> Optional[SessionHandle]:
        return self._handles.get(session_id)

    def active_sessions(self) -> List[SessionHandle]:
        return [handle for handle in self._handles.values() if not handle.done]

    async def wait_all(self) -> List[ScrapeSession]:
        handles = list(self._handles.values())
        results = await asyncio.gather(*(handle.task for handle in handles), return_exceptions=True)
        sessions = []
        for handle, result in zip(handles, results):
            if isinstance(result, BaseException):
                logger.error("Session %s task raised: %s", handle.session_id, result)
            sessions.append(handle.session)
        return sessions
