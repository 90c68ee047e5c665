"""Record normalizer: agency detail variants to canonical case/notice attributes.

Everything here is pure. Dates that cannot be parsed become None and the
record is still produced.
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

from .models import (
    AGENCY_EA,
    RECORD_CASE,
    RECORD_NOTICE,
    CanonicalAttrs,
    EaDetail,
    HseBreach,
    HseCaseDetail,
    HseNoticeDetail,
    OffenderAttrs,
    RawDetailRecord,
)
from .parser_utils import (
    clean_text,
    detect_business_type,
    extract_postcode,
    normalize_company_name,
    normalize_registration_number,
    parse_date,
    short_hash,
)

HSE_DATE_FORMATS: Sequence[str] = ("%d/%m/%Y", "%d-%m-%Y", "%Y-%m-%d", "%d %B %Y")
EA_DATE_FORMATS: Sequence[str] = ("%d/%m/%Y", "%Y-%m-%d")

EA_ACTION_LABELS = {
    "court_case": "Court Case",
    "caution": "Formal Caution",
    "enforcement_notice": "Enforcement Notice",
}

IMPACT_MAJOR = "major"
IMPACT_MINOR = "minor"
IMPACT_NONE = "none"
_NO_IMPACT_VALUES = frozenset({"", "none", "no", "n/a", "na", "not applicable", "-"})


# ----------------------------------------------------------------------
# Shared derivations
# ----------------------------------------------------------------------
def build_legal_reference(act: Optional[str], section: Optional[str]) -> Optional[str]:
    """``"act - section"`` when both are present, the act alone, else None."""
    act = clean_text(act)
    section = clean_text(section)
    if act and section:
        return f"{act} - {section}"
    return act


def breach_legal_fields(breaches: Sequence[HseBreach]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """``(act, section, legal_reference)`` for an HSE breach list.

    Act and section come from the first breach. The legal reference lists
    every breach, joined with ``"; "``.
    """
    if not breaches:
        return None, None, None
    first = breaches[0]
    references = [build_legal_reference(breach.legislation, breach.section) for breach in breaches]
    legal_reference = "; ".join(reference for reference in references if reference)
    return clean_text(first.legislation), clean_text(first.section), legal_reference or None


def offence_hash(description: Optional[str], act: Optional[str], section: Optional[str]) -> str:
    content = "|".join((clean_text(description) or "", clean_text(act) or "", clean_text(section) or ""))
    return short_hash(content, 12)


def title_case_phrase(value: Optional[str]) -> Optional[str]:
    """``"FIELD OPERATIONS DIRECTORATE"`` -> ``"Field Operations Directorate"``."""
    text = clean_text(value)
    if not text:
        return None
    if text.isupper():
        return " ".join(word.capitalize() for word in text.split(" "))
    return text


def _impact_level(value: Optional[str]) -> Optional[str]:
    text = (clean_text(value) or "").lower()
    if text in _NO_IMPACT_VALUES or "no impact" in text or "category 4" in text:
        return None
    if IMPACT_MAJOR in text or "category 1" in text or "category 2" in text:
        return IMPACT_MAJOR
    return IMPACT_MINOR


def has_impact(value: Optional[str]) -> bool:
    return _impact_level(value) is not None


def assess_environmental_impact(water: Optional[str], land: Optional[str], air: Optional[str]) -> str:
    """Highest severity across the three receptors: major, minor or none."""
    levels = [_impact_level(value) for value in (water, land, air)]
    if IMPACT_MAJOR in levels:
        return IMPACT_MAJOR
    if IMPACT_MINOR in levels:
        return IMPACT_MINOR
    return IMPACT_NONE


def detect_primary_receptor(water: Optional[str], land: Optional[str], air: Optional[str]) -> str:
    """Most severely affected receptor, water before land before air; land by default."""
    levels = {"water": _impact_level(water), "land": _impact_level(land), "air": _impact_level(air)}
    for severity in (IMPACT_MAJOR, IMPACT_MINOR):
        for receptor in ("water", "land", "air"):
            if levels[receptor] == severity:
                return receptor
    return "land"


def build_environmental_impact_string(
    water: Optional[str],
    land: Optional[str],
    air: Optional[str],
) -> Optional[str]:
    parts = [clean_text(value) for value in (water, land, air)]
    joined = "; ".join(part for part in parts if part)
    return joined or None


def _offender_attrs(
    name: str,
    *,
    registration_number: Optional[str] = None,
    address: Optional[str] = None,
    town: Optional[str] = None,
    county: Optional[str] = None,
    postcode: Optional[str] = None,
    local_authority: Optional[str] = None,
    main_activity: Optional[str] = None,
    industry: Optional[str] = None,
) -> OffenderAttrs:
    cleaned_name = clean_text(name) or ""
    address = clean_text(address)
    return OffenderAttrs(
        name=cleaned_name,
        normalized_name=normalize_company_name(cleaned_name),
        registration_number=normalize_registration_number(registration_number),
        address=address,
        town=clean_text(town),
        county=clean_text(county),
        postcode=extract_postcode(postcode) or extract_postcode(address),
        local_authority=clean_text(local_authority),
        main_activity=clean_text(main_activity),
        industry=clean_text(industry),
        business_type=detect_business_type(cleaned_name),
    )


# ----------------------------------------------------------------------
# Per-variant normalization
# ----------------------------------------------------------------------
def normalize_hse_case(detail: HseCaseDetail) -> CanonicalAttrs:
    summary = detail.summary
    act, section, legal_reference = breach_legal_fields(detail.breaches)
    return CanonicalAttrs(
        record_kind=RECORD_CASE,
        agency_code=summary.agency_code,
        source_id=summary.source_id,
        regulator_url=summary.detail_url,
        offence_action_type=summary.action_type,
        action_date=parse_date(summary.event_date, HSE_DATE_FORMATS),
        fine=detail.total_fine,
        costs=detail.total_costs,
        description=clean_text(detail.offence_description),
        act=act,
        section=section,
        legal_reference=legal_reference,
        offence_hash=offence_hash(detail.offence_description, legal_reference, None),
        regulator_function=title_case_phrase(detail.regulator_function),
        offender=_offender_attrs(
            summary.display_name,
            address=detail.address,
            local_authority=detail.local_authority,
            main_activity=detail.main_activity,
            industry=detail.industry,
        ),
    )


def normalize_hse_notice(detail: HseNoticeDetail) -> CanonicalAttrs:
    summary = detail.summary
    act, section, legal_reference = breach_legal_fields(detail.breaches)
    return CanonicalAttrs(
        record_kind=RECORD_NOTICE,
        agency_code=summary.agency_code,
        source_id=summary.source_id,
        regulator_url=summary.detail_url,
        offence_action_type=clean_text(detail.notice_type) or summary.action_type,
        action_date=parse_date(summary.event_date, HSE_DATE_FORMATS),
        description=clean_text(detail.description),
        act=act,
        section=section,
        legal_reference=legal_reference,
        offence_hash=offence_hash(detail.description, legal_reference, None),
        notice_type=clean_text(detail.notice_type),
        compliance_date=parse_date(detail.compliance_date, HSE_DATE_FORMATS),
        revised_compliance_date=parse_date(detail.revised_compliance_date, HSE_DATE_FORMATS),
        notice_result=clean_text(detail.result),
        offender=_offender_attrs(
            summary.display_name,
            address=detail.address,
            local_authority=detail.local_authority,
            main_activity=detail.main_activity,
            industry=detail.industry,
        ),
    )


def normalize_ea(detail: EaDetail) -> CanonicalAttrs:
    summary = detail.summary
    water, land, air = detail.water_impact, detail.land_impact, detail.air_impact
    record_kind = RECORD_NOTICE if summary.action_type == "enforcement_notice" else RECORD_CASE
    agency_function = clean_text(detail.agency_function)
    return CanonicalAttrs(
        record_kind=record_kind,
        agency_code=AGENCY_EA,
        source_id=summary.source_id,
        regulator_url=summary.detail_url,
        offence_action_type=EA_ACTION_LABELS.get(summary.action_type, "Other"),
        action_date=parse_date(summary.event_date, EA_DATE_FORMATS),
        fine=detail.total_fine,
        description=clean_text(detail.offence_description),
        act=clean_text(detail.act),
        section=clean_text(detail.section),
        legal_reference=build_legal_reference(detail.act, detail.section),
        offence_hash=offence_hash(detail.offence_description, detail.act, detail.section),
        case_reference=clean_text(detail.case_reference),
        event_reference=clean_text(detail.event_reference),
        regulator_function=agency_function.lower() if agency_function else None,
        notice_type=EA_ACTION_LABELS["enforcement_notice"] if record_kind == RECORD_NOTICE else None,
        water_impact=has_impact(water),
        land_impact=has_impact(land),
        air_impact=has_impact(air),
        environmental_impact=assess_environmental_impact(water, land, air),
        environmental_receptor=detect_primary_receptor(water, land, air),
        impact_summary=build_environmental_impact_string(water, land, air),
        offender=_offender_attrs(
            summary.display_name,
            registration_number=detail.company_registration_number,
            address=detail.address or summary.raw_address,
            town=detail.town,
            county=detail.county,
            postcode=detail.postcode,
            industry=detail.industry_sector,
        ),
    )


def normalize(detail: RawDetailRecord) -> CanonicalAttrs:
    """Map any agency detail variant to canonical attributes."""
    if isinstance(detail, HseCaseDetail):
        return normalize_hse_case(detail)
    if isinstance(detail, HseNoticeDetail):
        return normalize_hse_notice(detail)
    if isinstance(detail, EaDetail):
        return normalize_ea(detail)
    raise TypeError(f"Unsupported detail record: {type(detail).__name__}")
