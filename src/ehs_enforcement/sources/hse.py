"""Health and Safety Executive prosecution and notice sources."""

from __future__ import annotations

import itertools
import re
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from bs4 import BeautifulSoup
from bs4.element import Tag

from ..errors import ParseError
from ..models import (
    AGENCY_HSE,
    RECORD_CASE,
    RECORD_NOTICE,
    HseBreach,
    HseCaseDetail,
    HseNoticeDetail,
    SummaryRecord,
)
from ..parser_utils import clean_text, parse_html, parse_money
from .base import AgencySource, ListingRequest, RowLayout, RowOutcome, field_value, query_param

HSE_BASE_URL = "https://resources.hse.gov.uk"
HSE_CASE_DATABASES = ("convictions", "convictions-history", "appeals")
HSE_NOTICE_DATABASES = ("notices",)

BREACH_LINK_TEXT = "involved in this case"

_TITLE_YEAR = re.compile(r"^(.*?)\s+(\d{4})$")
_SECTION_REWRITES = (
    (re.compile(r"^reg (\d+)", re.IGNORECASE), r"Regulation \1"),
    (re.compile(r"^s\.?(\d+)", re.IGNORECASE), r"Section \1"),
    (re.compile(r"^regulation ", re.IGNORECASE), "Regulation "),
    (re.compile(r"^section ", re.IGNORECASE), "Section "),
)
TITLE_ABBREVIATIONS = {
    "PUWER": "Provision and Use of Work Equipment Regulations",
    "COSHH": "Control of Substances Hazardous to Health Regulations",
    "DSEAR": "Dangerous Substances and Explosive Atmospheres Regulations",
    "LOLER": "Lifting Operations and Lifting Equipment Regulations",
    "CDM": "Construction (Design and Management) Regulations",
    "COMAH": "Control of Major Accident Hazards Regulations",
}


def _page_numbers(range_params: Dict[str, Any]) -> Iterator[int]:
    """Pages from ``start_page`` to ``end_page``; open-ended without an end page.

    The session's ``max_pages`` bound ends an open-ended run.
    """
    start_page = int(range_params.get("start_page", 1))
    end_page = range_params.get("end_page")
    if end_page is None:
        return itertools.count(start_page)
    return iter(range(start_page, int(end_page) + 1))


def _clean_breach_title(title: str) -> str:
    title = re.sub(r"Regs\b", "Regulations", title)
    title = re.sub(r"\bEquip\b", "Equipment", title)
    title = re.sub(r"\s*&\s*", " and ", title)
    title = re.sub(r" {2,}", " ", title).strip()
    return TITLE_ABBREVIATIONS.get(title.upper(), title)


def _normalise_section(section: str) -> Optional[str]:
    section = section.strip()
    for pattern, replacement in _SECTION_REWRITES:
        section = pattern.sub(replacement, section)
    return section or None


def parse_breach_text(text: str) -> HseBreach:
    """Split ``"Title YYYY / section"`` into legislation title, year and section.

    ``"Work at Height Regs 2005 / reg 4(1)"`` becomes title ``"Work at Height
    Regulations"``, year 2005 and section ``"Regulation 4(1)"``. Text with more
    than one separator is kept whole as the title.
    """
    cleaned = clean_text(text) or ""
    while cleaned.endswith(" /"):
        cleaned = cleaned[:-2].rstrip()
    parts = [part.strip() for part in cleaned.split("/")]
    if len(parts) > 2:
        return HseBreach(text=cleaned, title=cleaned)

    year: Optional[int] = None
    title = parts[0]
    match = _TITLE_YEAR.match(title)
    if match:
        title, year = match.group(1), int(match.group(2))
    section = _normalise_section(parts[1]) if len(parts) == 2 else None
    return HseBreach(text=cleaned, title=_clean_breach_title(title), year=year, section=section)


def parse_breach_rows(document: BeautifulSoup, cell_count: int, text_column: int) -> List[HseBreach]:
    """Breaches from a breach list table whose data rows have ``cell_count`` cells."""
    breaches: List[HseBreach] = []
    for row in document.find_all("tr"):
        cells = row.find_all("td", recursive=False)
        if len(cells) != cell_count:
            continue
        text = clean_text(cells[text_column].get_text(" ", strip=True))
        if text:
            breaches.append(parse_breach_text(text))
    return breaches


def breach_case_number(document: BeautifulSoup) -> Optional[str]:
    """Case number behind a detail page's "Breach(es) involved in this Case" link."""
    for link in document.find_all("a", href=True):
        text = (clean_text(link.get_text(" ", strip=True)) or "").lower()
        if BREACH_LINK_TEXT not in text:
            continue
        number = query_param(link["href"], "SV")
        if number and query_param(link["href"], "SF") == "BID":
            # Breach ids are the case number followed by a three-digit suffix.
            return re.sub(r"\d{3}$", "", number) or None
        return number
    return None


class _HseSource(AgencySource):
    """Numbered listing pages and breach lists shared by the HSE registers."""

    agency_code = AGENCY_HSE
    site_url = HSE_BASE_URL
    paginated = True
    date_formats = ("%d/%m/%Y", "%Y-%m-%d")

    async def fetch_breaches(
        self,
        database: str,
        params: Dict[str, Any],
        *,
        cell_count: int,
        text_column: int,
    ) -> Tuple[HseBreach, ...]:
        """Fetch and parse a breach list, waiting on the rate limiter first."""
        await self.rate_limiter.wait()
        html = await self.client.fetch(
            f"{self.site_url}/{database}/breach/breach_list.asp",
            params={"ST": "B", "SN": "F", "EO": "=", **params},
            stats=self.stats,
        )
        breaches = parse_breach_rows(parse_html(html), cell_count, text_column)
        self.logger.debug("Parsed %s breaches for %s %s", len(breaches), params.get("SF"), params.get("SV"))
        return tuple(breaches)


class HseCaseSource(_HseSource):
    """Prosecution cases from the HSE convictions registers."""

    record_kind = RECORD_CASE
    action_type = "Court Case"

    def __init__(self, database: str = "convictions", *args: Any, **kwargs: Any) -> None:
        super().__init__(database, *args, **kwargs)
        self.base_url = f"{self.site_url}/{self.database}/case/"

    def listing_requests(self, range_params: Dict[str, Any]) -> Iterator[ListingRequest]:
        for page in _page_numbers(range_params):
            yield ListingRequest(
                page_number=page,
                action_type=self.action_type,
                url=f"{self.base_url}case_list.asp",
                params={
                    "PN": page,
                    "ST": "C",
                    "EO": "LIKE",
                    "SN": "F",
                    "SF": "DN",
                    "SV": "",
                    "SO": "DODS",
                },
                label=f"HSE {self.database} page {page}",
            )

    def detail_url(self, case_number: str) -> str:
        return f"{self.base_url}case_details.asp?SF=CN&SV={case_number}"

    def _row_layouts(self) -> Sequence[RowLayout]:
        return (self._parse_full_row, self._parse_minimal_row)

    def _parse_full_row(self, cells: Sequence[Tag], action_type: str, index: int) -> RowOutcome:
        # [case number link, defendant, date, local authority, main activity]
        if len(cells) < 5:
            return ParseError("Expected 5 cells for a full case row", row_index=index)
        outcome = self._parse_minimal_row(cells, action_type, index)
        if isinstance(outcome, ParseError):
            return outcome
        outcome.extra.update(
            {
                key: value
                for key, value in (
                    ("local_authority", self._cell_text(cells[3])),
                    ("main_activity", self._cell_text(cells[4])),
                )
                if value
            }
        )
        return outcome

    def _parse_minimal_row(self, cells: Sequence[Tag], action_type: str, index: int) -> RowOutcome:
        # [case number link, defendant, date]
        if len(cells) < 3:
            return ParseError("Expected at least 3 cells", row_index=index)
        case_number = self._cell_text(cells[0])
        name = self._cell_text(cells[1])
        date_text = self._cell_text(cells[2])
        link = self._cell_link(cells[0])

        if not name:
            return self._missing(index, "name")
        if not self._is_date(date_text):
            return self._missing(index, "date")
        source_id = query_param(link, "SV") or case_number
        if link is None and source_id:
            link = self.detail_url(source_id)
        if not link:
            return self._missing(index, "detail link")
        if not source_id:
            source_id = self._fallback_source_id(link)

        return SummaryRecord(
            agency_code=self.agency_code,
            source_id=source_id,
            display_name=name,
            event_date=date_text or "",
            action_type=action_type,
            detail_url=link,
            extra={},
        )

    def parse_detail(self, document: BeautifulSoup, summary: SummaryRecord) -> Union[HseCaseDetail, ParseError]:
        fields = self._detail_fields(document)
        if isinstance(fields, ParseError):
            return fields

        return HseCaseDetail(
            summary=summary,
            address=field_value(fields, "Address", "Defendant Address"),
            local_authority=field_value(fields, "Local Authority") or summary.extra.get("local_authority"),
            main_activity=field_value(fields, "Main Activity") or summary.extra.get("main_activity"),
            industry=field_value(fields, "Industry"),
            regulator_function=field_value(fields, "HSE Directorate"),
            offence_description=field_value(fields, "Offence", "Description"),
            total_fine=parse_money(field_value(fields, "Total Fine")),
            total_costs=parse_money(field_value(fields, "Total Costs Awarded to HSE", "Total Costs")),
        )

    async def complete_detail(self, document: BeautifulSoup, detail: HseCaseDetail) -> HseCaseDetail:
        """Attach the case's breaches, following the breach link when the page has one."""
        case_number = breach_case_number(document)
        if not case_number:
            self.logger.debug("No breach link on case %s", detail.summary.source_id)
            return detail
        breaches = await self.fetch_breaches(
            self.database,
            {"SF": "CN", "SV": case_number},
            cell_count=6,
            text_column=5,
        )
        return replace(detail, breaches=breaches)


class HseNoticeSource(_HseSource):
    """Enforcement notices from the HSE notices register."""

    record_kind = RECORD_NOTICE
    action_type = "Enforcement Notice"

    def __init__(self, database: str = "notices", *args: Any, country: str = "England", **kwargs: Any) -> None:
        super().__init__(database, *args, **kwargs)
        self.country = country
        self.base_url = f"{self.site_url}/notices/notices/"

    def listing_requests(self, range_params: Dict[str, Any]) -> Iterator[ListingRequest]:
        country = range_params.get("country", self.country)
        for page in _page_numbers(range_params):
            yield ListingRequest(
                page_number=page,
                action_type=self.action_type,
                url=f"{self.base_url}notice_list.asp",
                params={
                    "PN": page,
                    "ST": "N",
                    "CO": ",AND",
                    "SN": "F",
                    "EO": "=",
                    "SF": "CTR",
                    "SV": country,
                    "SO": "DNIS",
                },
                label=f"HSE notices ({country}) page {page}",
            )

    def detail_url(self, notice_number: str) -> str:
        return f"{self.base_url}notice_details.asp?SF=CN&SV={notice_number}"

    def _row_layouts(self) -> Sequence[RowLayout]:
        return (self._parse_full_row, self._parse_minimal_row)

    def _parse_full_row(self, cells: Sequence[Tag], action_type: str, index: int) -> RowOutcome:
        # [notice number link, recipient, notice type, issue date, local authority, SIC]
        if len(cells) < 6:
            return ParseError("Expected 6 cells for a full notice row", row_index=index)
        date_text = self._cell_text(cells[3])
        if not self._is_date(date_text):
            return self._missing(index, "date")
        outcome = self._build_summary(cells[0], self._cell_text(cells[1]), date_text, action_type, index)
        if isinstance(outcome, ParseError):
            return outcome
        outcome.extra.update(
            {
                key: value
                for key, value in (
                    ("notice_type", self._cell_text(cells[2])),
                    ("local_authority", self._cell_text(cells[4])),
                    ("sic_code", self._cell_text(cells[5])),
                )
                if value
            }
        )
        return outcome

    def _parse_minimal_row(self, cells: Sequence[Tag], action_type: str, index: int) -> RowOutcome:
        # [notice number link, recipient, issue date]
        if len(cells) < 3:
            return ParseError("Expected at least 3 cells", row_index=index)
        date_text = self._cell_text(cells[2])
        if not self._is_date(date_text):
            return self._missing(index, "date")
        return self._build_summary(cells[0], self._cell_text(cells[1]), date_text, action_type, index)

    def _build_summary(
        self,
        id_cell: Tag,
        name: Optional[str],
        date_text: Optional[str],
        action_type: str,
        index: int,
    ) -> RowOutcome:
        if not name:
            return self._missing(index, "name")
        notice_number = self._cell_text(id_cell)
        link = self._cell_link(id_cell)
        source_id = query_param(link, "SV") or notice_number
        if link is None and source_id:
            link = self.detail_url(source_id)
        if not link:
            return self._missing(index, "detail link")
        return SummaryRecord(
            agency_code=self.agency_code,
            source_id=source_id or self._fallback_source_id(link),
            display_name=name,
            event_date=date_text or "",
            action_type=action_type,
            detail_url=link,
            extra={},
        )

    def parse_detail(self, document: BeautifulSoup, summary: SummaryRecord) -> Union[HseNoticeDetail, ParseError]:
        fields = self._detail_fields(document)
        if isinstance(fields, ParseError):
            return fields

        return HseNoticeDetail(
            summary=summary,
            notice_type=field_value(fields, "Notice Type", "Type") or summary.extra.get("notice_type"),
            address=field_value(fields, "Address"),
            local_authority=field_value(fields, "Local Authority") or summary.extra.get("local_authority"),
            main_activity=field_value(fields, "Main Activity"),
            industry=field_value(fields, "Industry"),
            sic_code=field_value(fields, "SIC") or summary.extra.get("sic_code"),
            description=field_value(fields, "Description"),
            compliance_date=field_value(fields, "Compliance Date"),
            revised_compliance_date=field_value(fields, "Revised Compliance Date"),
            result=field_value(fields, "Result"),
        )

    async def complete_detail(self, document: BeautifulSoup, detail: HseNoticeDetail) -> HseNoticeDetail:
        breaches = await self.fetch_breaches(
            "notices",
            {"SF": "NN", "SV": detail.summary.source_id},
            cell_count=5,
            text_column=3,
        )
        return replace(detail, breaches=breaches)
