"""Environment Agency enforcement action source."""

from __future__ import annotations

import re
from datetime import date
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from bs4 import BeautifulSoup
from bs4.element import Tag

from ..errors import ParseError
from ..models import AGENCY_EA, RECORD_CASE, EaDetail, SummaryRecord
from ..parser_utils import parse_date, parse_money, short_hash
from .base import AgencySource, ListingRequest, RowLayout, RowOutcome, field_value

EA_HOST = "https://environment.data.gov.uk"
EA_REGISTER_PATH = "/public-register/enforcement-action/registration"
EA_ACTION_TYPE_BASE = "http://environment.data.gov.uk/public-register/enforcement-action/def/action-type"

EA_ACTION_TYPES: Dict[str, str] = {
    "court_case": f"{EA_ACTION_TYPE_BASE}/court-case",
    "caution": f"{EA_ACTION_TYPE_BASE}/caution",
    "enforcement_notice": f"{EA_ACTION_TYPE_BASE}/enforcement-notice",
}

RECORD_ID_PATTERN = re.compile(r"registration/(\d+)")


def year_windows(date_from: date, date_to: date) -> List[Tuple[date, date]]:
    """Split an inclusive date range into calendar-year windows."""
    if date_from > date_to:
        raise ValueError("date_from must not be after date_to")
    windows: List[Tuple[date, date]] = []
    start = date_from
    while start <= date_to:
        end = min(date(start.year, 12, 31), date_to)
        windows.append((start, end))
        start = date(start.year + 1, 1, 1)
    return windows


def _check_action_types(action_types: Sequence[str]) -> None:
    unknown = [action_type for action_type in action_types if action_type not in EA_ACTION_TYPES]
    if unknown:
        raise ValueError(f"Unknown EA action type: {', '.join(unknown)}")


def extract_record_id(url: Optional[str]) -> Optional[str]:
    """Numeric register id from a detail URL, else a short hash of the URL."""
    if not url:
        return None
    match = RECORD_ID_PATTERN.search(url)
    if match:
        return match.group(1)
    return short_hash(url, 8)


class EaSource(AgencySource):
    """Court cases, cautions and enforcement notices from the EA public register.

    The register returns every match for a query on one page, so each
    (action type, year window) pair is one listing request.
    """

    agency_code = AGENCY_EA
    record_kind = RECORD_CASE
    site_url = EA_HOST
    date_formats = ("%d/%m/%Y", "%Y-%m-%d")

    def __init__(
        self,
        database: str = "enforcement_actions",
        *args: Any,
        action_types: Optional[Sequence[str]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(database, *args, **kwargs)
        self.base_url = self.site_url
        self.register_url = f"{self.site_url}{EA_REGISTER_PATH}"
        self.action_types = list(action_types or EA_ACTION_TYPES)
        _check_action_types(self.action_types)

    def listing_requests(self, range_params: Dict[str, Any]) -> Iterator[ListingRequest]:
        date_from = parse_date(range_params.get("date_from"))
        date_to = parse_date(range_params.get("date_to")) or date.today()
        if date_from is None:
            raise ValueError("EA sessions require a date_from range parameter")

        action_types = range_params.get("action_types") or self.action_types
        _check_action_types(action_types)
        name_search = range_params.get("name_search") or ""
        page_number = 0
        for action_type in action_types:
            for window_start, window_end in year_windows(date_from, date_to):
                page_number += 1
                yield ListingRequest(
                    page_number=page_number,
                    action_type=action_type,
                    url=self.register_url,
                    params={
                        "name-search": name_search,
                        "actionType": EA_ACTION_TYPES[action_type],
                        "offenceType": "",
                        "agencyFunction": "",
                        "after": window_start.isoformat(),
                        "before": window_end.isoformat(),
                    },
                    label=f"EA {action_type} {window_start.isoformat()}..{window_end.isoformat()}",
                )

    def _row_layouts(self) -> Sequence[RowLayout]:
        return (self._parse_address_row, self._parse_minimal_row)

    def _parse_address_row(self, cells: Sequence[Tag], action_type: str, index: int) -> RowOutcome:
        # [name link, address, date]
        if len(cells) < 3:
            return ParseError("Expected 3 cells for an address row", row_index=index)
        return self._build_summary(cells[0], cells[2], action_type, index, address=self._cell_text(cells[1]))

    def _parse_minimal_row(self, cells: Sequence[Tag], action_type: str, index: int) -> RowOutcome:
        # [name link, date]
        if len(cells) < 2:
            return ParseError("Expected at least 2 cells", row_index=index)
        return self._build_summary(cells[0], cells[1], action_type, index)

    def _build_summary(
        self,
        name_cell: Tag,
        date_cell: Tag,
        action_type: str,
        index: int,
        *,
        address: Optional[str] = None,
    ) -> RowOutcome:
        name = self._cell_text(name_cell)
        date_text = self._cell_text(date_cell)
        detail_url = self._cell_link(name_cell)
        if not name:
            return self._missing(index, "name")
        if not self._is_date(date_text):
            return self._missing(index, "date")
        if not detail_url:
            return self._missing(index, "detail link")
        source_id = extract_record_id(detail_url)
        if not source_id:
            return self._missing(index, "record id")

        return SummaryRecord(
            agency_code=self.agency_code,
            source_id=source_id,
            display_name=name,
            event_date=date_text or "",
            action_type=action_type,
            detail_url=detail_url,
            raw_address=address,
        )

    def parse_detail(self, document: BeautifulSoup, summary: SummaryRecord) -> Union[EaDetail, ParseError]:
        fields = self._detail_fields(document)
        if isinstance(fields, ParseError):
            return fields

        return EaDetail(
            summary=summary,
            company_registration_number=field_value(fields, "Company No.", "Company Number", "Company No"),
            industry_sector=field_value(fields, "Industry Sector"),
            address=field_value(fields, "Address") or summary.raw_address,
            town=field_value(fields, "Town"),
            county=field_value(fields, "County"),
            postcode=field_value(fields, "Postcode"),
            total_fine=parse_money(field_value(fields, "Total Fine")),
            offence_description=field_value(fields, "Offence", "Offence Description"),
            case_reference=field_value(fields, "Case Reference"),
            event_reference=field_value(fields, "Event Reference"),
            agency_function=field_value(fields, "Agency Function"),
            water_impact=field_value(fields, "Water Impact"),
            land_impact=field_value(fields, "Land Impact"),
            air_impact=field_value(fields, "Air Impact"),
            act=field_value(fields, "Act"),
            section=field_value(fields, "Section"),
        )
