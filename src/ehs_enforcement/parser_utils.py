"""Parsing utilities shared by the agency sources and the normalizer."""

from __future__ import annotations

import hashlib
import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional, Sequence, Union

from bs4 import BeautifulSoup
from dateutil import parser as date_parser

DEFAULT_DATE_FORMATS: Sequence[str] = (
    "%d/%m/%Y",
    "%Y-%m-%d",
    "%d-%m-%Y",
    "%d %B %Y",
    "%d %b %Y",
)

POSTCODE_PATTERN = re.compile(r"\b([A-Z]{1,2}\d[A-Z\d]?\s*\d[A-Z]{2})\b", re.IGNORECASE)
MONEY_STRIP_PATTERN = re.compile(r"[£$€,\s]|GBP", re.IGNORECASE)
MONEY_NUMBER_PATTERN = re.compile(r"-?\d+(?:\.\d+)?")

_NAME_REPLACEMENTS = (
    (re.compile(r"\bPUBLIC LIMITED COMPANY\b"), "PLC"),
    (re.compile(r"\bLIMITED\b"), "LTD"),
    (re.compile(r"\bCOMPANY\b"), "CO"),
    (re.compile(r"\bAND\b"), "&"),
)

_BUSINESS_TYPE_PATTERNS = (
    ("plc", re.compile(r"\b(PLC|P\.L\.C\.?)\s*$", re.IGNORECASE)),
    ("llp", re.compile(r"\bLLP\s*$", re.IGNORECASE)),
    ("limited_company", re.compile(r"\b(LTD|LIMITED)\.?\s*$", re.IGNORECASE)),
    ("limited_company", re.compile(r"\b(INC|CORP|CORPORATION)\.?\s*$", re.IGNORECASE)),
    ("partnership", re.compile(r"\b(PARTNERS|PARTNERSHIP)\s*$", re.IGNORECASE)),
    ("individual", re.compile(r"^(MR|MRS|MS|MISS|DR)\.?\s", re.IGNORECASE)),
)


def parse_html(html: str) -> BeautifulSoup:
    """Parse an HTML document with lxml."""
    return BeautifulSoup(html or "", "lxml")


def clean_text(value: Optional[str]) -> Optional[str]:
    """Collapse internal whitespace and strip; empty strings become None."""
    if value is None:
        return None
    cleaned = re.sub(r"\s+", " ", str(value).replace("\xa0", " ")).strip()
    return cleaned or None


def parse_date(
    value: Optional[Union[str, date, datetime]],
    formats: Iterable[str] = DEFAULT_DATE_FORMATS,
) -> Optional[date]:
    """Parse a date by trying each format in order, then ISO 8601.

    Returns None when nothing matches.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = clean_text(value)
    if not text:
        return None

    for fmt in formats:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue

    try:
        return date_parser.isoparse(text).date()
    except (ValueError, OverflowError):
        return None


def parse_money(value: Optional[Union[str, int, float, Decimal]]) -> Decimal:
    """Parse a currency amount such as ``"£12,500.00"``; failures yield zero."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))

    stripped = MONEY_STRIP_PATTERN.sub("", value)
    match = MONEY_NUMBER_PATTERN.search(stripped)
    if not match:
        return Decimal("0")
    try:
        return Decimal(match.group(0))
    except InvalidOperation:
        return Decimal("0")


def normalize_company_name(name: Optional[str]) -> str:
    """Canonical matching key for an organisation name."""
    text = clean_text(name) or ""
    text = text.upper()
    for pattern, replacement in _NAME_REPLACEMENTS:
        text = pattern.sub(replacement, text)
    text = re.sub(r"[.,;:]+$", "", text)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def extract_postcode(value: Optional[str]) -> Optional[str]:
    """Return the first UK postcode in ``value`` in upper case with one space."""
    if not value:
        return None
    match = POSTCODE_PATTERN.search(value)
    if not match:
        return None
    compact = re.sub(r"\s+", "", match.group(1)).upper()
    return f"{compact[:-3]} {compact[-3:]}"


def detect_business_type(name: Optional[str]) -> str:
    text = clean_text(name)
    if not text:
        return "other"
    for business_type, pattern in _BUSINESS_TYPE_PATTERNS:
        if pattern.search(text):
            return business_type
    return "other"


def looks_like_registration_number(value: Optional[str]) -> bool:
    """Companies House numbers are 8 characters: digits or a 2-letter prefix."""
    if not value:
        return False
    return bool(re.fullmatch(r"(\d{8}|[A-Z]{2}\d{6})", value.strip().upper()))


def normalize_registration_number(value: Optional[str]) -> Optional[str]:
    text = clean_text(value)
    if not text:
        return None
    text = text.upper().replace(" ", "")
    if text.isdigit() and len(text) < 8:
        text = text.zfill(8)
    return text


def short_hash(value: str, length: int = 8) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def utc_timestamp(value: Optional[datetime] = None) -> str:
    """ISO 8601 UTC timestamp with second precision and a Z suffix."""
    dt = value or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    iso = dt.astimezone(timezone.utc).replace(microsecond=0).isoformat()
    if iso.endswith("+00:00"):
        iso = iso[:-6] + "Z"
    return iso
