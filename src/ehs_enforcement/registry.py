"""Companies House registry lookup used to suggest offender matches.

The registry is best-effort: callers wrap lookups and carry on with no
candidates when it is unavailable.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import httpx

from .config import ScrapingConfig
from .errors import FetchError
from .http_client import HTTPClient
from .logging_config import get_logger
from .parser_utils import looks_like_registration_number, normalize_registration_number

logger = get_logger("registry")

COMPANIES_HOUSE_URL = "https://api.company-information.service.gov.uk"


@dataclass
class RegistryCandidate:
    """A company returned by the registry."""

    company_name: str
    company_number: str
    company_status: Optional[str] = None
    company_type: Optional[str] = None
    address: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return (self.company_status or "").lower() == "active"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class NullRegistry:
    """Registry stand-in used when no API key is configured."""

    async def lookup_company(self, name_or_number: str) -> List[RegistryCandidate]:
        return []


class CompaniesHouseClient:
    """Lookup companies by registration number or name.

    Args:
        api_key: Companies House REST API key (basic auth username)
        client: Optional pre-configured ``HTTPClient``
        items_per_page: Number of search results requested per name lookup
    """

    def __init__(
        self,
        api_key: str,
        *,
        client: Optional[HTTPClient] = None,
        items_per_page: int = 5,
        base_url: str = COMPANIES_HOUSE_URL,
    ) -> None:
        if not api_key:
            raise ValueError("A Companies House API key is required")
        self.api_key = api_key
        self.client = client or HTTPClient(ScrapingConfig(network_timeout_ms=10000, max_retries=2))
        self.items_per_page = items_per_page
        self.base_url = base_url.rstrip("/")

    @property
    def _auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self.api_key, "")

    async def lookup_company(self, name_or_number: str) -> List[RegistryCandidate]:
        """Return active registry companies for a registration number or a name."""
        query = (name_or_number or "").strip()
        if not query:
            return []
        if looks_like_registration_number(normalize_registration_number(query)):
            candidates = await self._get_company(normalize_registration_number(query) or query)
        else:
            candidates = await self.search_companies(query)
        return [candidate for candidate in candidates if candidate.is_active]

    async def search_companies(self, name: str) -> List[RegistryCandidate]:
        response = await self.client.get(
            f"{self.base_url}/search/companies",
            params={"q": name, "items_per_page": self.items_per_page, "start_index": 0},
            auth=self._auth,
        )
        items = response.json().get("items") or []
        return [
            RegistryCandidate(
                company_name=item.get("company_name") or item.get("title") or "",
                company_number=item.get("company_number", ""),
                company_status=item.get("company_status"),
                company_type=item.get("company_type"),
                address=item.get("address_snippet"),
            )
            for item in items
            if isinstance(item, dict) and item.get("company_number")
        ]

    async def _get_company(self, number: str) -> List[RegistryCandidate]:
        try:
            response = await self.client.get(f"{self.base_url}/company/{number}", auth=self._auth)
        except FetchError as exc:
            if exc.status_code == 404:
                logger.debug("Company %s not found in registry", number)
                return []
            raise
        profile = response.json()
        office = profile.get("registered_office_address") or {}
        address = ", ".join(
            str(office[key])
            for key in ("address_line_1", "address_line_2", "locality", "postal_code")
            if office.get(key)
        )
        return [
            RegistryCandidate(
                company_name=profile.get("company_name", ""),
                company_number=profile.get("company_number", number),
                company_status=profile.get("company_status"),
                company_type=profile.get("type"),
                address=address or None,
            )
        ]
