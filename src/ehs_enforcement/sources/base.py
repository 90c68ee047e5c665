"""Base classes and utilities for agency summary parsing and detail enrichment."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Union
from urllib.parse import parse_qs, urljoin, urlparse

from bs4 import BeautifulSoup
from bs4.element import Tag

from ..config import ScrapingConfig
from ..errors import ParseError
from ..http_client import FetchStats, HTTPClient, RateLimiter
from ..logging_config import get_logger
from ..models import RawDetailRecord, SummaryRecord
from ..parser_utils import clean_text, parse_date, parse_html, short_hash

RowOutcome = Union[SummaryRecord, ParseError]
RowLayout = Callable[[Sequence[Tag], str, int], RowOutcome]


@dataclass(frozen=True)
class ListingRequest:
    """One listing fetch in a session; the session treats it as a page."""

    page_number: int
    action_type: str
    url: str
    params: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    label: str = ""


@dataclass
class SummaryPage:
    """Parsed listing page: valid records plus the rows that were skipped."""

    request: ListingRequest
    records: List[SummaryRecord] = field(default_factory=list)
    errors: List[ParseError] = field(default_factory=list)
    duplicates: int = 0


def _normalise_label(text: Optional[str]) -> str:
    return (clean_text(text) or "").rstrip(":").strip().lower()


def extract_labelled_fields(document: Union[BeautifulSoup, Tag]) -> Dict[str, str]:
    """Collect label/value pairs from definition lists and two-column tables.

    ``<dt>Label</dt><dd>Value</dd>`` pairs are read first. Table rows are read
    cell by cell in (label, value) pairs so a row such as
    ``Total Fine | £1,000 | Total Costs | £500`` yields two fields. The first
    value seen for a label wins.
    """
    fields: Dict[str, str] = {}

    for dt in document.find_all("dt"):
        dd = dt.find_next_sibling("dd")
        label = _normalise_label(dt.get_text(" ", strip=True))
        if label and dd is not None and label not in fields:
            fields[label] = clean_text(dd.get_text(" ", strip=True)) or ""

    for row in document.find_all("tr"):
        cells = row.find_all(["th", "td"], recursive=False)
        for index in range(0, len(cells) - 1, 2):
            label = _normalise_label(cells[index].get_text(" ", strip=True))
            if not label or label in fields:
                continue
            fields[label] = clean_text(cells[index + 1].get_text(" ", strip=True)) or ""

    return fields


def field_value(fields: Dict[str, str], *labels: str) -> Optional[str]:
    """Look up the first present label; exact match first, then whole-word prefix."""
    for label in labels:
        value = fields.get(label.lower())
        if value:
            return value
    for label in labels:
        wanted = label.lower()
        for key, value in fields.items():
            if value and (key.startswith(wanted + " ") or key.startswith(wanted + "(")):
                return value
    return None


def query_param(url: Optional[str], name: str) -> Optional[str]:
    if not url:
        return None
    values = parse_qs(urlparse(url).query).get(name)
    if values and values[0].strip():
        return values[0].strip()
    return None


class AgencySource(ABC):
    """Summary parser and detail enricher for one agency database.

    A source instance belongs to a single session: it owns that session's
    rate limiter and remembers which ``source_id`` values it has returned.
    """

    agency_code: str = ""
    record_kind: str = ""
    # Scheme and host of the register; agency config may point it elsewhere.
    site_url: str = ""
    base_url: str = ""
    date_formats: Sequence[str] = ("%d/%m/%Y", "%Y-%m-%d")
    # Numbered listing pages: an empty page means the range is exhausted.
    paginated: bool = False

    def __init__(
        self,
        database: str,
        config: Optional[ScrapingConfig] = None,
        *,
        client: Optional[HTTPClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        site_url: Optional[str] = None,
    ) -> None:
        self.database = database
        self.site_url = (site_url or self.site_url).rstrip("/")
        self.config = config or ScrapingConfig()
        self.client = client or HTTPClient(self.config)
        self.rate_limiter = rate_limiter or RateLimiter(self.config.detail_delay_seconds)
        self.stats = FetchStats()
        self.logger = get_logger(f"sources.{self.agency_code}")
        self._seen_source_ids: Set[str] = set()

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------
    @abstractmethod
    def listing_requests(self, range_params: Dict[str, Any]) -> Iterator[ListingRequest]:
        """Yield listing requests in source order."""

    async def fetch_summaries(self, request: ListingRequest) -> SummaryPage:
        """Fetch one listing page. ``FetchError`` propagates to the caller."""
        html = await self.client.fetch(request.url, params=request.params or None, stats=self.stats)
        page = SummaryPage(request=request)
        for outcome in self.parse_summary_rows(parse_html(html), request.action_type):
            if isinstance(outcome, ParseError):
                page.errors.append(outcome)
                continue
            if outcome.source_id in self._seen_source_ids:
                page.duplicates += 1
                continue
            self._seen_source_ids.add(outcome.source_id)
            page.records.append(outcome)

        self.logger.info(
            "Parsed %s records from %s (%s rows skipped, %s duplicates)",
            len(page.records),
            request.label or request.url,
            len(page.errors),
            page.duplicates,
        )
        return page

    def parse_summary(self, document: Union[str, BeautifulSoup], action_type: str) -> List[SummaryRecord]:
        """Return the valid, de-duplicated summary records of a listing document."""
        if isinstance(document, str):
            document = parse_html(document)
        records: List[SummaryRecord] = []
        seen: Set[str] = set()
        for outcome in self.parse_summary_rows(document, action_type):
            if isinstance(outcome, ParseError) or outcome.source_id in seen:
                continue
            seen.add(outcome.source_id)
            records.append(outcome)
        return records

    def parse_summary_rows(self, document: BeautifulSoup, action_type: str) -> List[RowOutcome]:
        """Parse every data row, trying each layout from richest to minimal."""
        outcomes: List[RowOutcome] = []
        for index, row in enumerate(self._summary_rows(document)):
            cells = row.find_all("td")
            if not cells:
                continue
            outcome = self._parse_row_with_layouts(cells, action_type, index)
            if isinstance(outcome, ParseError):
                self.logger.debug("Skipping listing row %s: %s", index, outcome.message)
            outcomes.append(outcome)
        return outcomes

    def _parse_row_with_layouts(self, cells: Sequence[Tag], action_type: str, index: int) -> RowOutcome:
        # The minimal layout is tried last, so its error describes the row best.
        last_error: Optional[ParseError] = None
        for layout in self._row_layouts():
            outcome = layout(cells, action_type, index)
            if not isinstance(outcome, ParseError):
                return outcome
            last_error = outcome
        return last_error or ParseError("No row layout matched", row_index=index)

    def _summary_rows(self, document: BeautifulSoup) -> Iterable[Tag]:
        rows = document.select("table tbody tr")
        return rows or document.find_all("tr")

    @abstractmethod
    def _row_layouts(self) -> Sequence[RowLayout]:
        """Row parsers ordered from the richest layout to the minimal one."""

    # ------------------------------------------------------------------
    # Detail enrichment
    # ------------------------------------------------------------------
    async def enrich(self, summary: SummaryRecord) -> RawDetailRecord:
        """Fetch and parse the detail page for ``summary``.

        Waits on the rate limiter before every fetch. Raises ``FetchError``
        or ``ParseError``; callers treat either as a per-record failure.
        """
        await self.rate_limiter.wait()
        html = await self.client.fetch(summary.detail_url, stats=self.stats)
        document = parse_html(html)
        result = self.parse_detail(document, summary)
        if isinstance(result, ParseError):
            raise result
        return await self.complete_detail(document, result)

    async def complete_detail(self, document: BeautifulSoup, detail: RawDetailRecord) -> RawDetailRecord:
        """Make any follow-up fetches the detail record needs. None by default."""
        return detail

    @abstractmethod
    def parse_detail(self, document: BeautifulSoup, summary: SummaryRecord) -> Union[RawDetailRecord, ParseError]:
        """Build the agency detail variant from a detail document."""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _detail_fields(self, document: BeautifulSoup) -> Union[Dict[str, str], ParseError]:
        fields = extract_labelled_fields(document)
        if not fields:
            return ParseError("Detail page has no label/value fields", field="document")
        return fields

    def _absolute_url(self, href: Optional[str]) -> Optional[str]:
        if not href:
            return None
        href = href.strip()
        if not href:
            return None
        return urljoin(self.base_url, href)

    def _cell_text(self, cell: Optional[Tag]) -> Optional[str]:
        if cell is None:
            return None
        return clean_text(cell.get_text(" ", strip=True))

    def _cell_link(self, cell: Tag) -> Optional[str]:
        link = cell.find("a", href=True)
        if link is None:
            return None
        return self._absolute_url(link["href"])

    def _is_date(self, text: Optional[str]) -> bool:
        return parse_date(text, self.date_formats) is not None

    def _fallback_source_id(self, url: str) -> str:
        return short_hash(url, 8)

    def _missing(self, row_index: int, *names: str) -> ParseError:
        return ParseError(f"Row is missing {', '.join(names)}", field=names[0], row_index=row_index)
