"""Data models for scraped enforcement records, offenders and sessions."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

# ----------------------------------------------------------------------
# Constants
# ----------------------------------------------------------------------
AGENCY_HSE = "hse"
AGENCY_EA = "ea"

RECORD_CASE = "case"
RECORD_NOTICE = "notice"

SESSION_PENDING = "pending"
SESSION_RUNNING = "running"
SESSION_COMPLETED = "completed"
SESSION_FAILED = "failed"
SESSION_STOPPED = "stopped"
SESSION_TERMINAL_STATES = frozenset({SESSION_COMPLETED, SESSION_FAILED, SESSION_STOPPED})

REVIEW_PENDING = "pending"
REVIEW_APPROVED = "approved"
REVIEW_SKIPPED = "skipped"
REVIEW_FLAGGED = "flagged"
REVIEW_TERMINAL_STATES = frozenset({REVIEW_APPROVED, REVIEW_SKIPPED})

EVENT_STARTED = "started"
EVENT_PROGRESS = "progress"
EVENT_STOPPED = "stopped"
EVENT_COMPLETED = "completed"
EVENT_FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.utcnow().replace(microsecond=0)


# ----------------------------------------------------------------------
# Scraped records
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class SummaryRecord:
    """Lightweight listing-page entry, joined to its detail page by ``source_id``.

    ``event_date`` holds the date text as published; the normalizer parses it.
    """

    agency_code: str
    source_id: str
    display_name: str
    event_date: str
    action_type: str
    detail_url: str
    raw_address: Optional[str] = None
    scraped_at: datetime = field(default_factory=_utcnow)
    extra: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class HseBreach:
    """One entry of an HSE breach list, e.g. ``Work at Height Regulations 2005 / Regulation 4(1)``."""

    text: str
    title: str
    year: Optional[int] = None
    section: Optional[str] = None

    @property
    def legislation(self) -> str:
        return f"{self.title} {self.year}" if self.year else self.title


@dataclass(frozen=True)
class HseCaseDetail:
    """HSE prosecution case enriched from its detail page."""

    summary: SummaryRecord
    address: Optional[str] = None
    local_authority: Optional[str] = None
    main_activity: Optional[str] = None
    industry: Optional[str] = None
    regulator_function: Optional[str] = None
    offence_description: Optional[str] = None
    breaches: Tuple[HseBreach, ...] = ()
    total_fine: Decimal = Decimal("0")
    total_costs: Decimal = Decimal("0")
    kind: str = field(default="hse_case", init=False)


@dataclass(frozen=True)
class HseNoticeDetail:
    """HSE enforcement notice enriched from its detail page."""

    summary: SummaryRecord
    notice_type: Optional[str] = None
    address: Optional[str] = None
    local_authority: Optional[str] = None
    main_activity: Optional[str] = None
    industry: Optional[str] = None
    sic_code: Optional[str] = None
    description: Optional[str] = None
    compliance_date: Optional[str] = None
    revised_compliance_date: Optional[str] = None
    result: Optional[str] = None
    breaches: Tuple[HseBreach, ...] = ()
    kind: str = field(default="hse_notice", init=False)


@dataclass(frozen=True)
class EaDetail:
    """Environment Agency enforcement action enriched from its detail page."""

    summary: SummaryRecord
    company_registration_number: Optional[str] = None
    industry_sector: Optional[str] = None
    address: Optional[str] = None
    town: Optional[str] = None
    county: Optional[str] = None
    postcode: Optional[str] = None
    total_fine: Decimal = Decimal("0")
    offence_description: Optional[str] = None
    case_reference: Optional[str] = None
    event_reference: Optional[str] = None
    agency_function: Optional[str] = None
    water_impact: Optional[str] = None
    land_impact: Optional[str] = None
    air_impact: Optional[str] = None
    act: Optional[str] = None
    section: Optional[str] = None
    kind: str = field(default="ea", init=False)


RawDetailRecord = Union[HseCaseDetail, HseNoticeDetail, EaDetail]


# ----------------------------------------------------------------------
# Canonical records
# ----------------------------------------------------------------------
@dataclass
class OffenderAttrs:
    """Organisation attributes extracted from a record, before resolution."""

    name: str
    normalized_name: str
    registration_number: Optional[str] = None
    address: Optional[str] = None
    town: Optional[str] = None
    county: Optional[str] = None
    postcode: Optional[str] = None
    local_authority: Optional[str] = None
    main_activity: Optional[str] = None
    industry: Optional[str] = None
    business_type: Optional[str] = None


@dataclass
class CanonicalAttrs:
    """Agency-neutral case or notice attributes produced by the normalizer."""

    record_kind: str
    agency_code: str
    source_id: str
    offender: OffenderAttrs
    regulator_url: Optional[str] = None
    offence_action_type: Optional[str] = None
    action_date: Optional[date] = None
    fine: Decimal = Decimal("0")
    costs: Decimal = Decimal("0")
    description: Optional[str] = None
    act: Optional[str] = None
    section: Optional[str] = None
    legal_reference: Optional[str] = None
    offence_hash: Optional[str] = None
    case_reference: Optional[str] = None
    event_reference: Optional[str] = None
    regulator_function: Optional[str] = None
    notice_type: Optional[str] = None
    compliance_date: Optional[date] = None
    revised_compliance_date: Optional[date] = None
    notice_result: Optional[str] = None
    water_impact: bool = False
    land_impact: bool = False
    air_impact: bool = False
    environmental_impact: Optional[str] = None
    environmental_receptor: Optional[str] = None
    impact_summary: Optional[str] = None

    def to_db_params(self) -> Dict[str, Any]:
        """Convert to column values for ``EnforcementDatabase.upsert_canonical_record``."""
        params = asdict(self)
        params.pop("offender")
        params.pop("record_kind")
        params.pop("agency_code")
        params.pop("source_id")
        return params


@dataclass
class Offender:
    """Persisted organisation identity; counters are computed on read."""

    id: int
    name: str
    normalized_name: str
    registration_number: Optional[str] = None
    address: Optional[str] = None
    town: Optional[str] = None
    county: Optional[str] = None
    postcode: Optional[str] = None
    local_authority: Optional[str] = None
    main_activity: Optional[str] = None
    industry: Optional[str] = None
    business_type: Optional[str] = None
    total_cases: int = 0
    total_notices: int = 0
    merged_into: Optional[int] = None


@dataclass
class MatchReview:
    """Human review task for an ambiguous offender match."""

    id: int
    offender_id: int
    status: str
    confidence_score: float
    candidate_companies: List[Dict[str, Any]] = field(default_factory=list)
    selected_candidate: Optional[Dict[str, Any]] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    review_notes: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in REVIEW_TERMINAL_STATES


# ----------------------------------------------------------------------
# Sessions
# ----------------------------------------------------------------------
@dataclass
class SessionCounters:
    pages_processed: int = 0
    records_found: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_existing: int = 0
    errors_count: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class ScrapeSession:
    """State of one scraping run. Only the owning controller mutates it."""

    session_id: str
    agency_code: str
    database: str
    range_params: Dict[str, Any] = field(default_factory=dict)
    status: str = SESSION_PENDING
    counters: SessionCounters = field(default_factory=SessionCounters)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    stop_reason: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in SESSION_TERMINAL_STATES

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "agency_code": self.agency_code,
            "database": self.database,
            "range_params": self.range_params,
            "status": self.status,
            **self.counters.to_dict(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "stop_reason": self.stop_reason,
            "error_message": self.error_message,
        }


@dataclass
class ProgressEvent:
    """Message published on a session's progress channel."""

    session_id: str
    event: str
    status: str
    counters: Dict[str, int] = field(default_factory=dict)
    message: Optional[str] = None


@dataclass
class DuplicateGroup:
    """Two or more records of one resource type judged equivalent."""

    resource_type: str
    record_ids: List[int]
    reasons: List[str] = field(default_factory=list)
