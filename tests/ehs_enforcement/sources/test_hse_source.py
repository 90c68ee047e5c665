"""Tests for the HSE case and notice sources."""

from decimal import Decimal
from itertools import islice
from pathlib import Path

import pytest

from src.ehs_enforcement.config import AgencyConfig, ScrapingConfig
from src.ehs_enforcement.errors import FetchError, ParseError
from src.ehs_enforcement.http_client import RateLimiter
from src.ehs_enforcement.models import HseBreach, HseCaseDetail, HseNoticeDetail
from src.ehs_enforcement.parser_utils import parse_html
from src.ehs_enforcement.sources import build_source
from src.ehs_enforcement.sources.hse import (
    HseCaseSource,
    HseNoticeSource,
    breach_case_number,
    parse_breach_rows,
    parse_breach_text,
)

FIXTURES = Path(__file__).parent / "fixtures"


def load_fixture(name: str) -> str:
    return (FIXTURES / name).read_text(encoding="utf-8")


class FakeClient:
    """Serves canned HTML by URL prefix."""

    def __init__(self, pages):
        self.pages = pages
        self.requests = []

    async def fetch(self, url, *, params=None, headers=None, stats=None):
        self.requests.append((url, params))
        for prefix, body in self.pages.items():
            if url.startswith(prefix):
                if isinstance(body, Exception):
                    raise body
                return body
        raise FetchError(url, "HTTP 404", status_code=404, attempts=1)


@pytest.fixture
def config():
    return ScrapingConfig(detail_delay_ms=0, pause_between_pages_ms=0)


def test_case_listing_requests_follow_page_range(config):
    source = HseCaseSource("convictions", config)
    requests = list(source.listing_requests({"start_page": 3, "end_page": 5}))

    assert [request.page_number for request in requests] == [3, 4, 5]
    first = requests[0]
    assert first.url == "https://resources.hse.gov.uk/convictions/case/case_list.asp"
    assert first.params["PN"] == 3
    assert first.params["SO"] == "DODS"
    assert first.action_type == "Court Case"


def test_case_listing_requests_are_open_ended_without_end_page():
    source = HseCaseSource("convictions", ScrapingConfig(max_pages=2))
    requests = islice(source.listing_requests({"start_page": 4}), 5)
    assert [request.page_number for request in requests] == [4, 5, 6, 7, 8]


def test_parse_case_summary_uses_full_then_minimal_layout(config):
    source = HseCaseSource("convictions", config)
    records = source.parse_summary(load_fixture("hse_case_list.html"), "Court Case")

    assert [record.source_id for record in records] == ["4482191", "4482200"]

    acme = records[0]
    assert acme.display_name == "ACME CONSTRUCTION LIMITED"
    assert acme.event_date == "12/03/2024"
    assert acme.detail_url == "https://resources.hse.gov.uk/convictions/case/case_details.asp?SF=CN&SV=4482191"
    assert acme.extra["local_authority"] == "Leeds City Council"
    assert acme.extra["main_activity"] == "Construction of commercial buildings"

    bristol = records[1]
    assert bristol.display_name == "Bristol Widgets Ltd"
    assert bristol.extra == {}


def test_parse_case_summary_rows_reports_skipped_rows(config):
    source = HseCaseSource("convictions", config)

    outcomes = source.parse_summary_rows(parse_html(load_fixture("hse_case_list.html")), "Court Case")
    errors = [outcome for outcome in outcomes if isinstance(outcome, ParseError)]

    assert len(outcomes) == 5
    assert [error.field for error in errors] == ["name", "date"]
    assert [error.row_index for error in errors] == [2, 3]


def test_parse_case_summary_of_empty_document(config):
    source = HseCaseSource("convictions", config)
    assert source.parse_summary("<html><body><p>No results</p></body></html>", "Court Case") == []


def test_parse_case_detail(config):
    source = HseCaseSource("convictions", config)
    summary = source.parse_summary(load_fixture("hse_case_list.html"), "Court Case")[0]

    detail = source.parse_detail(parse_html(load_fixture("hse_case_detail.html")), summary)

    assert isinstance(detail, HseCaseDetail)
    assert detail.summary is summary
    assert detail.address == "1 High Street, Leeds, LS1 4AB"
    assert detail.industry == "Construction"
    assert detail.regulator_function == "FIELD OPERATIONS DIRECTORATE"
    assert detail.offence_description == "Failed to ensure the safety of workers at height"
    assert detail.breaches == ()
    assert detail.total_fine == Decimal("120000.00")
    assert detail.total_costs == Decimal("8450.50")


def test_parse_case_detail_with_unparseable_money_defaults_to_zero(config):
    source = HseCaseSource("convictions", config)
    summary = source.parse_summary(load_fixture("hse_case_list.html"), "Court Case")[1]

    html = "<table><tr><th>Total Fine</th><td>Not disclosed</td></tr></table>"
    detail = source.parse_detail(parse_html(html), summary)

    assert detail.total_fine == Decimal("0")
    assert detail.total_costs == Decimal("0")


def test_parse_detail_without_fields_returns_parse_error(config):
    source = HseCaseSource("convictions", config)
    summary = source.parse_summary(load_fixture("hse_case_list.html"), "Court Case")[0]

    result = source.parse_detail(parse_html("<html><body>Service unavailable</body></html>"), summary)
    assert isinstance(result, ParseError)


@pytest.mark.asyncio
async def test_fetch_summaries_skips_ids_seen_on_earlier_pages(config):
    listing = load_fixture("hse_case_list.html")
    client = FakeClient({"https://resources.hse.gov.uk/convictions/case/case_list.asp": listing})
    source = HseCaseSource("convictions", config, client=client)
    first_request, second_request = list(source.listing_requests({"end_page": 2}))

    first = await source.fetch_summaries(first_request)
    second = await source.fetch_summaries(second_request)

    assert [record.source_id for record in first.records] == ["4482191", "4482200"]
    assert len(first.errors) == 2
    assert first.duplicates == 1
    assert second.records == []
    assert second.duplicates == 3
    assert client.requests[0][1]["PN"] == 1


@pytest.mark.asyncio
async def test_fetch_summaries_propagates_fetch_error(config):
    source = HseCaseSource("convictions", config, client=FakeClient({}))
    request = next(iter(source.listing_requests({})))

    with pytest.raises(FetchError):
        await source.fetch_summaries(request)


@pytest.mark.asyncio
async def test_enrich_follows_breach_link_through_rate_limiter(config):
    waits = []

    class RecordingLimiter(RateLimiter):
        async def wait(self):
            waits.append(True)
            return 0.0

    client = FakeClient(
        {
            "https://resources.hse.gov.uk/convictions/case/case_details.asp": load_fixture("hse_case_detail.html"),
            "https://resources.hse.gov.uk/convictions/breach/breach_list.asp": load_fixture("hse_breach_list.html"),
        }
    )
    source = HseCaseSource("convictions", config, client=client, rate_limiter=RecordingLimiter(0))
    summary = source.parse_summary(load_fixture("hse_case_list.html"), "Court Case")[0]

    detail = await source.enrich(summary)

    assert waits == [True, True]
    assert detail.total_fine == Decimal("120000.00")
    breach_url, breach_params = client.requests[1]
    assert breach_url == "https://resources.hse.gov.uk/convictions/breach/breach_list.asp"
    assert breach_params == {"ST": "B", "SN": "F", "EO": "=", "SF": "CN", "SV": "4482191"}
    assert detail.breaches == (
        HseBreach(
            text="Health and Safety at Work etc Act 1974 / s.2(1)",
            title="Health and Safety at Work etc Act",
            year=1974,
            section="Section 2(1)",
        ),
        HseBreach(
            text="Work at Height Regs 2005 / reg 4(1)",
            title="Work at Height Regulations",
            year=2005,
            section="Regulation 4(1)",
        ),
    )


@pytest.mark.asyncio
async def test_enrich_without_breach_link_makes_one_request(config):
    html = "<table><tr><th>Total Fine</th><td>&pound;5,000</td></tr></table>"
    client = FakeClient({"https://resources.hse.gov.uk/convictions/case/": html})
    source = HseCaseSource("convictions", config, client=client)
    summary = source.parse_summary(load_fixture("hse_case_list.html"), "Court Case")[0]

    detail = await source.enrich(summary)

    assert detail.breaches == ()
    assert len(client.requests) == 1


@pytest.mark.asyncio
async def test_breach_list_fetch_error_fails_the_record(config):
    client = FakeClient({"https://resources.hse.gov.uk/convictions/case/": load_fixture("hse_case_detail.html")})
    source = HseCaseSource("convictions", config, client=client)
    summary = source.parse_summary(load_fixture("hse_case_list.html"), "Court Case")[0]

    with pytest.raises(FetchError):
        await source.enrich(summary)


@pytest.mark.asyncio
async def test_notice_enrich_fetches_notice_breaches(config):
    client = FakeClient(
        {
            "https://resources.hse.gov.uk/notices/notices/": load_fixture("hse_notice_detail.html"),
            "https://resources.hse.gov.uk/notices/breach/breach_list.asp": load_fixture("hse_notice_breach_list.html"),
        }
    )
    source = HseNoticeSource("notices", config, client=client)
    summary = source.parse_summary(load_fixture("hse_notice_list.html"), "Enforcement Notice")[0]

    detail = await source.enrich(summary)

    assert client.requests[1][1]["SF"] == "NN"
    assert client.requests[1][1]["SV"] == "310887654"
    assert detail.breaches == (
        HseBreach(
            text="PUWER 1998 / Regulation 11",
            title="Provision and Use of Work Equipment Regulations",
            year=1998,
            section="Regulation 11",
        ),
    )


@pytest.mark.parametrize(
    "text, title, year, section",
    [
        (
            "Health and Safety at Work etc Act 1974 / Section 3(1)",
            "Health and Safety at Work etc Act",
            1974,
            "Section 3(1)",
        ),
        (
            "Management of Health & Safety at Work Regs 1999 / regulation 3",
            "Management of Health and Safety at Work Regulations",
            1999,
            "Regulation 3",
        ),
        (
            "Gas Safety (Installation and Use) Regulations 1998",
            "Gas Safety (Installation and Use) Regulations",
            1998,
            None,
        ),
        ("COSHH 2002 / reg 7", "Control of Substances Hazardous to Health Regulations", 2002, "Regulation 7"),
        ("Some order without a year / s 4", "Some order without a year", None, "s 4"),
    ],
)
def test_parse_breach_text(text, title, year, section):
    breach = parse_breach_text(text)

    assert breach.title == title
    assert breach.year == year
    assert breach.section == section


def test_parse_breach_text_with_extra_separators_keeps_whole_text():
    breach = parse_breach_text("Act 1974 / s.2 / s.3")

    assert breach.title == "Act 1974 / s.2 / s.3"
    assert breach.year is None
    assert breach.section is None
    assert breach.legislation == "Act 1974 / s.2 / s.3"


def test_parse_breach_rows_skips_header_and_short_rows():
    breaches = parse_breach_rows(parse_html(load_fixture("hse_breach_list.html")), 6, 5)
    assert [breach.legislation for breach in breaches] == [
        "Health and Safety at Work etc Act 1974",
        "Work at Height Regulations 2005",
    ]
    assert parse_breach_rows(parse_html(load_fixture("hse_breach_list.html")), 5, 3) == []


@pytest.mark.parametrize(
    "href, expected",
    [
        ("../breach/breach_details.asp?SF=BID&SV=4482191001", "4482191"),
        ("../search/search.asp?ST=B&SN=F&EO=%3D&SF=CN&SV=4482191", "4482191"),
    ],
)
def test_breach_case_number(href, expected):
    html = f'<table><tr><td><a href="{href}">Breach involved in this Case</a></td></tr></table>'
    assert breach_case_number(parse_html(html)) == expected


def test_breach_case_number_without_link():
    assert breach_case_number(parse_html('<a href="../search/search.asp?SV=1">Related Cases</a>')) is None


@pytest.mark.asyncio
async def test_enrich_raises_parse_error_for_empty_detail(config):
    client = FakeClient({"https://resources.hse.gov.uk/": "<html><body></body></html>"})
    source = HseCaseSource("convictions", config, client=client)
    summary = source.parse_summary(load_fixture("hse_case_list.html"), "Court Case")[0]

    with pytest.raises(ParseError):
        await source.enrich(summary)


def test_parse_notice_summary_and_detail(config):
    source = HseNoticeSource("notices", config)
    records = source.parse_summary(load_fixture("hse_notice_list.html"), "Enforcement Notice")

    assert [record.source_id for record in records] == ["310887654", "310887700"]
    assert records[0].extra == {
        "notice_type": "Improvement Notice",
        "local_authority": "Sheffield City Council",
        "sic_code": "10710",
    }
    assert records[0].detail_url == "https://resources.hse.gov.uk/notices/notices/notice_details.asp?SF=CN&SV=310887654"
    assert records[1].event_date == "18/06/2024"

    detail = source.parse_detail(parse_html(load_fixture("hse_notice_detail.html")), records[0])
    assert isinstance(detail, HseNoticeDetail)
    assert detail.notice_type == "Improvement Notice"
    assert detail.local_authority == "Sheffield City Council"
    assert detail.sic_code == "10710"
    assert detail.compliance_date == "20/08/2024"
    assert detail.revised_compliance_date is None
    assert detail.result == "Complied"
    assert detail.breaches == ()


def test_notice_listing_requests_filter_by_country(config):
    source = HseNoticeSource("notices", config, country="Scotland")
    request = next(iter(source.listing_requests({})))
    assert request.params["SV"] == "Scotland"
    assert request.params["SF"] == "CTR"

    override = next(iter(source.listing_requests({"country": "Wales"})))
    assert override.params["SV"] == "Wales"


def test_build_source_selects_hse_source_by_database(config):
    assert isinstance(build_source("hse", "convictions", config), HseCaseSource)
    assert isinstance(build_source("HSE", "appeals", config), HseCaseSource)
    assert isinstance(build_source("hse", "notices", config), HseNoticeSource)

    with pytest.raises(ValueError):
        build_source("hse", "prosecutions", config)
    with pytest.raises(ValueError):
        build_source("osha", "convictions", config)


def test_build_source_applies_agency_config(config):
    mirror = AgencyConfig(code="hse", base_url="https://hse.mirror.test/", country="Wales")

    cases = build_source("hse", "convictions", config, agency_config=mirror)
    request = next(iter(cases.listing_requests({})))
    assert request.url == "https://hse.mirror.test/convictions/case/case_list.asp"
    assert cases.detail_url("1") == "https://hse.mirror.test/convictions/case/case_details.asp?SF=CN&SV=1"

    notices = build_source("hse", "notices", config, agency_config=mirror)
    assert notices.country == "Wales"
    assert next(iter(notices.listing_requests({}))).url == "https://hse.mirror.test/notices/notices/notice_list.asp"


def test_build_source_rejects_disabled_agency_and_unlisted_database(config):
    with pytest.raises(ValueError):
        build_source("hse", "convictions", config, agency_config=AgencyConfig(code="hse", enabled=False))
    with pytest.raises(ValueError):
        build_source("hse", "appeals", config, agency_config=AgencyConfig(code="hse", databases=["convictions"]))
    assert isinstance(
        build_source("hse", "convictions", config, agency_config=AgencyConfig(code="hse", databases=["convictions"])),
        HseCaseSource,
    )
