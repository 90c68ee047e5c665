"""Exception types shared by the scraper, resolver and session controller."""

from __future__ import annotations

from typing import Optional


class EnforcementError(Exception):
    """Base class for all package errors."""


class FetchError(EnforcementError):
    """An HTTP fetch failed permanently or after exhausting its retries."""

    def __init__(
        self,
        url: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        attempts: int = 0,
        retries: int = 0,
        transient: bool = False,
    ) -> None:
        super().__init__(f"{message} ({url})")
        self.url = url
        self.message = message
        self.status_code = status_code
        self.attempts = attempts
        self.retries = retries
        self.transient = transient


class ParseError(EnforcementError):
    """Expected document structure was missing.

    Row and field parsers return instances of this class as values so a
    single bad row never aborts a page. The detail enricher raises it when
    a whole detail page is unusable.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        row_index: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.row_index = row_index

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ParseError):
            return NotImplemented
        return (self.message, self.field, self.row_index) == (other.message, other.field, other.row_index)

    def __hash__(self) -> int:
        return hash((self.message, self.field, self.row_index))


class SessionError(EnforcementError):
    """Invalid use of the session control surface."""


class ReviewError(EnforcementError):
    """A match review action is not allowed in the review's current state."""
