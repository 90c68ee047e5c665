"""Agency sources: listing parsers and detail enrichers."""

from __future__ import annotations

from typing import Optional

from ..config import AgencyConfig, ScrapingConfig
from ..http_client import HTTPClient, RateLimiter
from ..models import AGENCY_EA, AGENCY_HSE
from .base import AgencySource, ListingRequest, SummaryPage, extract_labelled_fields
from .ea import EaSource
from .hse import HSE_CASE_DATABASES, HSE_NOTICE_DATABASES, HseCaseSource, HseNoticeSource

__all__ = [
    "AgencySource",
    "EaSource",
    "HseCaseSource",
    "HseNoticeSource",
    "ListingRequest",
    "SummaryPage",
    "build_source",
    "extract_labelled_fields",
]


def build_source(
    agency: str,
    database: str,
    config: Optional[ScrapingConfig] = None,
    *,
    agency_config: Optional[AgencyConfig] = None,
    client: Optional[HTTPClient] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> AgencySource:
    """Create a fresh source for one session.

    ``agency_config`` supplies the site root (``base_url``), the HSE notice
    country and the default EA action types. A disabled agency, or a database
    missing from a non-empty ``databases`` list, raises ``ValueError``.
    """
    agency = agency.lower()
    if agency_config is not None:
        if not agency_config.enabled:
            raise ValueError(f"Agency {agency} is disabled in the configuration")
        if agency_config.databases and database not in agency_config.databases:
            raise ValueError(f"Database {database} is not configured for agency {agency}")
    kwargs = {
        "client": client,
        "rate_limiter": rate_limiter,
        "site_url": agency_config.base_url if agency_config else None,
    }
    if agency == AGENCY_HSE:
        if database in HSE_NOTICE_DATABASES:
            country = agency_config.country if agency_config else "England"
            return HseNoticeSource(database, config, country=country, **kwargs)
        if database in HSE_CASE_DATABASES:
            return HseCaseSource(database, config, **kwargs)
        raise ValueError(f"Unknown HSE database: {database}")
    if agency == AGENCY_EA:
        action_types = agency_config.action_types if agency_config else None
        return EaSource(database, config, action_types=action_types or None, **kwargs)
    raise ValueError(f"Unknown agency: {agency}")
