"""Tests for the record normalizer."""

from datetime import date
from decimal import Decimal

import pytest

from src.ehs_enforcement.models import (
    RECORD_CASE,
    RECORD_NOTICE,
    EaDetail,
    HseBreach,
    HseCaseDetail,
    HseNoticeDetail,
    SummaryRecord,
)
from src.ehs_enforcement.normalizer import (
    assess_environmental_impact,
    build_environmental_impact_string,
    breach_legal_fields,
    build_legal_reference,
    detect_primary_receptor,
    has_impact,
    normalize,
    offence_hash,
    title_case_phrase,
)


HSWA_BREACH = HseBreach(
    text="Health and Safety at Work etc Act 1974 / s.2(1)",
    title="Health and Safety at Work etc Act",
    year=1974,
    section="Section 2(1)",
)
WAH_BREACH = HseBreach(
    text="Work at Height Regs 2005 / reg 4(1)",
    title="Work at Height Regulations",
    year=2005,
    section="Regulation 4(1)",
)


def hse_summary(**overrides):
    values = dict(
        agency_code="hse",
        source_id="4482191",
        display_name="ACME CONSTRUCTION LIMITED",
        event_date="12/03/2024",
        action_type="Court Case",
        detail_url="https://resources.hse.gov.uk/convictions/case/case_details.asp?SF=CN&SV=4482191",
    )
    values.update(overrides)
    return SummaryRecord(**values)


def ea_summary(**overrides):
    values = dict(
        agency_code="ea",
        source_id="10001",
        display_name="Severn Water Services Ltd",
        event_date="14/02/2023",
        action_type="court_case",
        detail_url="https://environment.data.gov.uk/public-register/enforcement-action/registration/10001",
        raw_address="Unit 4, Riverside, Gloucester, GL1 2AB",
    )
    values.update(overrides)
    return SummaryRecord(**values)


def test_build_legal_reference_requires_both_parts_for_composite():
    assert build_legal_reference("HSWA 1974", "Section 2(1)") == "HSWA 1974 - Section 2(1)"
    assert build_legal_reference("HSWA 1974", None) == "HSWA 1974"
    assert build_legal_reference(None, "Section 2(1)") is None


def test_offence_hash_is_stable():
    first = offence_hash("Failed to protect workers", "HSWA 1974", "Section 2")
    second = offence_hash("  Failed to protect   workers ", "HSWA 1974", "Section 2")
    assert first == second
    assert len(first) == 12
    assert first != offence_hash("Different offence", "HSWA 1974", "Section 2")


def test_title_case_phrase():
    assert title_case_phrase("FIELD OPERATIONS DIRECTORATE") == "Field Operations Directorate"
    assert title_case_phrase("Construction Division") == "Construction Division"
    assert title_case_phrase("  ") is None


@pytest.mark.parametrize(
    "value, expected",
    [
        ("Category 1 - Major", True),
        ("Minor", True),
        ("None", False),
        ("N/A", False),
        ("Category 4 - No Impact", False),
        ("", False),
        (None, False),
    ],
)
def test_has_impact(value, expected):
    assert has_impact(value) is expected


def test_environmental_assessment_helpers():
    assert assess_environmental_impact("Category 2", None, "Minor") == "major"
    assert assess_environmental_impact(None, "Minor", None) == "minor"
    assert assess_environmental_impact(None, "None", None) == "none"

    assert detect_primary_receptor("Minor", "Category 1", None) == "land"
    assert detect_primary_receptor("Minor", None, "Minor") == "water"
    assert detect_primary_receptor(None, None, None) == "land"

    assert build_environmental_impact_string("Category 2", None, "Minor") == "Category 2; Minor"
    assert build_environmental_impact_string(None, "", None) is None


def test_normalize_hse_case():
    detail = HseCaseDetail(
        summary=hse_summary(),
        address="1 High Street, Leeds, LS1 4AB",
        local_authority="Leeds City Council",
        main_activity="Construction of commercial buildings",
        industry="Construction",
        regulator_function="FIELD OPERATIONS DIRECTORATE",
        offence_description="Failed to ensure the safety of workers at height",
        breaches=(HSWA_BREACH, WAH_BREACH),
        total_fine=Decimal("120000.00"),
        total_costs=Decimal("8450.50"),
    )

    attrs = normalize(detail)

    assert attrs.record_kind == RECORD_CASE
    assert attrs.agency_code == "hse"
    assert attrs.source_id == "4482191"
    assert attrs.action_date == date(2024, 3, 12)
    assert attrs.fine == Decimal("120000.00")
    assert attrs.costs == Decimal("8450.50")
    assert attrs.act == "Health and Safety at Work etc Act 1974"
    assert attrs.section == "Section 2(1)"
    assert attrs.legal_reference == (
        "Health and Safety at Work etc Act 1974 - Section 2(1); Work at Height Regulations 2005 - Regulation 4(1)"
    )
    assert attrs.regulator_function == "Field Operations Directorate"
    assert attrs.offence_action_type == "Court Case"

    offender = attrs.offender
    assert offender.name == "ACME CONSTRUCTION LIMITED"
    assert offender.normalized_name == "ACME CONSTRUCTION LTD"
    assert offender.postcode == "LS1 4AB"
    assert offender.business_type == "limited_company"
    assert offender.local_authority == "Leeds City Council"


def test_normalize_hse_case_with_unparseable_date_keeps_record():
    attrs = normalize(HseCaseDetail(summary=hse_summary(event_date="sometime in March")))
    assert attrs.action_date is None
    assert attrs.legal_reference is None
    assert attrs.fine == Decimal("0")


def test_normalize_hse_notice():
    detail = HseNoticeDetail(
        summary=hse_summary(
            source_id="310887654",
            display_name="Riverside Bakery Ltd",
            event_date="20/06/2024",
            action_type="Enforcement Notice",
        ),
        notice_type="Improvement Notice",
        address="4 Mill Lane, Sheffield, S1 2BJ",
        description="Guarding on the dough mixer was inadequate",
        compliance_date="20/08/2024",
        revised_compliance_date="not set",
        result="Complied",
        breaches=(HseBreach(text="PUWER 1998 / Regulation 11", title="PUWER", year=1998, section="Regulation 11"),),
    )

    attrs = normalize(detail)

    assert attrs.record_kind == RECORD_NOTICE
    assert attrs.offence_action_type == "Improvement Notice"
    assert attrs.notice_type == "Improvement Notice"
    assert attrs.action_date == date(2024, 6, 20)
    assert attrs.compliance_date == date(2024, 8, 20)
    assert attrs.revised_compliance_date is None
    assert attrs.notice_result == "Complied"
    assert attrs.legal_reference == "PUWER 1998 - Regulation 11"
    assert attrs.offender.postcode == "S1 2BJ"


def test_normalize_ea_court_case():
    detail = EaDetail(
        summary=ea_summary(),
        company_registration_number="1234567",
        industry_sector="Water Supply",
        address="Unit 4, Riverside",
        town="Gloucester",
        county="Gloucestershire",
        postcode="gl1 2ab",
        total_fine=Decimal("45000"),
        offence_description="Discharge of sewage effluent to controlled waters",
        case_reference="EA/2023/0456",
        event_reference="EV-99812",
        agency_function="Water Quality",
        water_impact="Category 2 - Significant",
        air_impact="Category 3 - Minor",
        act="Environmental Permitting Regulations 2016",
        section="Regulation 38(1)",
    )

    attrs = normalize(detail)

    assert attrs.record_kind == RECORD_CASE
    assert attrs.agency_code == "ea"
    assert attrs.offence_action_type == "Court Case"
    assert attrs.action_date == date(2023, 2, 14)
    assert attrs.regulator_function == "water quality"
    assert attrs.water_impact is True
    assert attrs.land_impact is False
    assert attrs.air_impact is True
    assert attrs.environmental_impact == "major"
    assert attrs.environmental_receptor == "water"
    assert attrs.impact_summary == "Category 2 - Significant; Category 3 - Minor"
    assert attrs.notice_type is None

    offender = attrs.offender
    assert offender.registration_number == "01234567"
    assert offender.postcode == "GL1 2AB"
    assert offender.town == "Gloucester"
    assert offender.industry == "Water Supply"


def test_normalize_ea_enforcement_notice_is_a_notice():
    attrs = normalize(EaDetail(summary=ea_summary(action_type="enforcement_notice")))
    assert attrs.record_kind == RECORD_NOTICE
    assert attrs.notice_type == "Enforcement Notice"
    assert attrs.offender.address == "Unit 4, Riverside, Gloucester, GL1 2AB"
    assert attrs.offender.postcode == "GL1 2AB"
    assert attrs.environmental_impact == "none"


def test_normalize_is_deterministic():
    detail = HseCaseDetail(summary=hse_summary(), breaches=(HSWA_BREACH,))
    assert normalize(detail) == normalize(detail)


def test_normalize_rejects_unknown_variants():
    with pytest.raises(TypeError):
        normalize(hse_summary())


def test_to_db_params_excludes_identity_and_offender():
    attrs = normalize(HseCaseDetail(summary=hse_summary()))
    params = attrs.to_db_params()
    for key in ("offender", "record_kind", "agency_code", "source_id"):
        assert key not in params
    assert params["regulator_url"].endswith("SV=4482191")


def test_breach_legal_fields():
    assert breach_legal_fields(()) == (None, None, None)

    untitled = HseBreach(text="Some order", title="Some order")
    assert breach_legal_fields((untitled,)) == ("Some order", None, "Some order")


def test_offence_hash_covers_every_breach():
    first = normalize(HseCaseDetail(summary=hse_summary(), breaches=(HSWA_BREACH,)))
    both = normalize(HseCaseDetail(summary=hse_summary(), breaches=(HSWA_BREACH, WAH_BREACH)))

    assert first.act == both.act
    assert first.offence_hash != both.offence_hash
