"""Configuration loader for the enforcement scraper."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .logging_config import get_logger

logger = get_logger("config")

REGISTRY_API_KEY_ENV = "COMPANIES_HOUSE_API_KEY"


@dataclass
class ScrapingConfig:
    """Tunable parameters for scraping sessions, matching and dedup.

    Durations are milliseconds unless the name says otherwise.
    """

    consecutive_existing_threshold: int = 10
    max_pages: int = 100
    max_consecutive_errors: int = 3
    network_timeout_ms: int = 30000
    detail_delay_ms: int = 3000
    pause_between_pages_ms: int = 3000
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    rate_limit_multiplier: float = 3.0
    batch_size: int = 50
    refresh_existing: bool = True
    user_agent: str = "EHS-Enforcement/1.0 (+https://github.com/ehs-enforcement)"

    # Offender matching
    auto_link_threshold: float = 0.85
    review_threshold: float = 0.5
    review_top_k: int = 3

    # Duplicate detection
    date_window_days: int = 7
    description_threshold: float = 0.85

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        non_negative = (
            "consecutive_existing_threshold",
            "max_pages",
            "max_consecutive_errors",
            "network_timeout_ms",
            "detail_delay_ms",
            "pause_between_pages_ms",
            "max_retries",
            "date_window_days",
        )
        for name in non_negative:
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        if self.max_retries < 1:
            raise ValueError("max_retries must allow at least one attempt")
        for name in ("auto_link_threshold", "review_threshold", "description_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1")
        if self.review_threshold > self.auto_link_threshold:
            raise ValueError("review_threshold must not exceed auto_link_threshold")

    @property
    def timeout_seconds(self) -> float:
        return self.network_timeout_ms / 1000.0

    @property
    def detail_delay_seconds(self) -> float:
        return self.detail_delay_ms / 1000.0

    @property
    def page_pause_seconds(self) -> float:
        return self.pause_between_pages_ms / 1000.0

    def with_overrides(self, **overrides: Any) -> "ScrapingConfig":
        """Return a copy with the non-None overrides applied."""
        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **values)

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]]) -> "ScrapingConfig":
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in (data or {}).items():
            if key in known:
                values[key] = value
            else:
                logger.warning("Ignoring unknown scraping setting: %s", key)
        return cls(**values)


@dataclass
class AgencyConfig:
    """Configuration for a single enforcement agency."""

    code: str
    name: str = ""
    enabled: bool = True
    base_url: Optional[str] = None
    databases: List[str] = field(default_factory=list)
    action_types: List[str] = field(default_factory=list)
    country: str = "England"

    @classmethod
    def from_mapping(cls, code: str, data: Dict[str, Any]) -> "AgencyConfig":
        return cls(
            code=code,
            name=data.get("name", code.upper()),
            enabled=data.get("enabled", True),
            base_url=data.get("base_url"),
            databases=list(data.get("databases", [])),
            action_types=list(data.get("action_types", [])),
            country=data.get("country", "England"),
        )


class EnforcementConfig:
    """Central configuration container loaded from YAML."""

    DEFAULT_CONFIG_PATH = Path("config/ehs_enforcement.yaml")

    def __init__(self, config_path: Optional[Path | str] = None) -> None:
        path = Path(config_path) if config_path else self.DEFAULT_CONFIG_PATH
        if not path.is_absolute():
            path = Path.cwd() / path
        self.config_path = path
        self._data = self._load_config()
        self.scraping = ScrapingConfig.from_mapping(self._data.get("scraping"))

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            logger.info("No config file at %s, using defaults", self.config_path)
            return {"scraping": {}, "agencies": {}, "registry": {}}
        with open(self.config_path, "r", encoding="utf-8") as handle:
            return yaml.safe_load(handle) or {}

    def get_agency(self, code: str) -> AgencyConfig:
        agencies = self._data.get("agencies") or {}
        return AgencyConfig.from_mapping(code, agencies.get(code) or {})

    def get_enabled_agencies(self) -> List[AgencyConfig]:
        agencies = self._data.get("agencies") or {}
        return [
            AgencyConfig.from_mapping(code, data or {})
            for code, data in agencies.items()
            if (data or {}).get("enabled", True)
        ]

    @property
    def registry_api_key(self) -> Optional[str]:
        registry = self._data.get("registry") or {}
        return registry.get("api_key") or os.environ.get(REGISTRY_API_KEY_ENV)

    def get_setting(self, key: str, default: Any = None) -> Any:
        return self._data.get("settings", {}).get(key, default)
