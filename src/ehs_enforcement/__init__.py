"""EHS enforcement scraper package namespace."""

from importlib import import_module
from typing import Any

__all__ = [
    "EnforcementDatabase",
    "EnforcementConfig",
    "ScrapingConfig",
    "OffenderResolver",
    "DuplicateDetector",
    "SessionManager",
    "ProgressBroadcaster",
    "normalize",
    "build_source",
]

_EXPORTS = {
    "EnforcementDatabase": "database",
    "EnforcementConfig": "config",
    "ScrapingConfig": "config",
    "OffenderResolver": "offender_resolver",
    "DuplicateDetector": "duplicate_detector",
    "SessionManager": "session",
    "ProgressBroadcaster": "progress",
    "normalize": "normalizer",
    "build_source": "sources",
}


def __getattr__(name: str) -> Any:
    if name in _EXPORTS:
        module = import_module(f".{_EXPORTS[name]}", __name__)
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(__all__)
